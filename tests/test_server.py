"""Tests for the HTTP API over a local backend."""

import pytest
from fastapi.testclient import TestClient

from api.server import create_app
from conftest import ALICE, OWNER
from core.config import load_settings
from core.local import LocalVaultBackend
from core.payroll import PayrollService, gated_name
from core.poller import StatusPoller


@pytest.fixture
def backend(vault, usdc):
    usdc.approve(OWNER, vault.address, 1_000 * 10**6)
    return LocalVaultBackend(vault, OWNER, follow_wall_clock=False)


@pytest.fixture
def service(backend, usdc):
    return PayrollService(backend, load_settings({}), usdc.address)


@pytest.fixture
def poller(service):
    return StatusPoller(service.subscription_status, interval=30)


@pytest.fixture
def client(service, poller):
    app = create_app(service, load_settings({}), poller=poller)
    return TestClient(app)


def _add(client, **overrides):
    body = {"agent": ALICE, "name": "agent:alice", "amountPerPeriod": "1", "intervalSeconds": 10}
    body.update(overrides)
    return client.post("/schedule/add-agent", json=body)


class TestScheduleRoutes:
    """/schedule/*"""

    def test_add_and_get_agreement(self, client):
        resp = _add(client)
        assert resp.status_code == 200
        assert resp.json()["agreementId"] == 0

        resp = client.get("/schedule/agreements/0")
        agreement = resp.json()["agreement"]
        assert agreement["amount_per_period"] == "100000000"
        assert agreement["amount"] == "1.0"
        assert agreement["status"] == "None"

    def test_add_agent_missing_fields(self, client):
        resp = client.post("/schedule/add-agent", json={"name": "x"})
        assert resp.status_code == 400
        assert resp.json()["success"] is False
        assert "agent" in resp.json()["error"]

    def test_short_interval_is_bad_request(self, client):
        resp = _add(client, intervalSeconds=5)
        assert resp.status_code == 400
        assert "interval" in resp.json()["error"]

    def test_bad_address(self, client):
        resp = _add(client, agent="0x1234")
        assert resp.status_code == 400

    def test_unknown_agreement_404(self, client):
        resp = client.get("/schedule/agreements/9")
        assert resp.status_code == 404
        assert resp.json() == {"success": False, "error": "agreement #9 does not exist"}

    def test_start_twice_conflict(self, client):
        _add(client)
        assert client.post("/schedule/start", json={"agreementId": 0}).status_code == 200
        resp = client.post("/schedule/start", json={"agreementId": 0})
        assert resp.status_code == 409
        assert resp.json()["success"] is False

    def test_update_cancel_retry(self, client, vault):
        _add(client)
        resp = client.post("/schedule/update-agent", json={"agreementId": 0, "intervalSeconds": 20})
        assert resp.status_code == 200
        assert vault.get_agreement(0).interval_seconds == 20

        client.post("/schedule/start", json={"agreementId": 0})
        resp = client.post("/schedule/cancel", json={"agreementId": 0})
        assert resp.json()["refunded"] == "0"
        resp = client.post("/schedule/retry", json={"agreementId": 0})
        assert resp.status_code == 200
        assert "nextPaymentTime" in resp.json()

    def test_list_and_history(self, client, vault):
        _add(client)
        client.post("/subscription/top-up", json={"agreementId": 0, "amount": "5"})
        client.post("/schedule/start", json={"agreementId": 0})
        vault.scheduler.advance(20)

        agreements = client.get("/schedule/agreements").json()["agreements"]
        assert agreements[0]["payment_count"] == 2
        history = client.get("/schedule/history", params={"count": 2}).json()["history"]
        assert [h["status"] for h in history] == ["Executed", "Pending"]
        assert client.get("/schedule/history", params={"count": 0}).status_code == 400

        mine = client.get("/schedule/agreements", params={"party": ALICE}).json()
        assert mine["party"] == ALICE
        assert len(mine["history"]) == 3


class TestSparkRoutes:
    """/spark/*"""

    def test_payout_onboarding(self, client):
        first = client.post("/spark/payout", json={"evmAddress": ALICE}).json()
        second = client.post("/spark/payout", json={"evmAddress": ALICE}).json()
        assert first["action"] == "added+started"
        assert second["action"] == "already_running"

        listed = client.get("/spark/payout").json()
        assert listed["success"] is True
        assert len(listed["agents"]) == 1

    def test_payout_requires_address(self, client):
        assert client.post("/spark/payout", json={}).status_code == 400

    def test_check_access(self, client):
        resp = client.post("/spark/check-access", json={"subscriberAddress": OWNER})
        assert resp.json()["hasAccess"] is False

        sub = client.post("/subscription/subscribe-hbar", json={
            "name": gated_name(OWNER), "amountPerPeriod": "1", "intervalSeconds": 10, "deposit": "2",
        }).json()
        client.post("/schedule/start", json={"agreementId": sub["agreementId"]})

        resp = client.post("/spark/check-access", json={"subscriberAddress": OWNER})
        assert resp.json()["hasAccess"] is True


class TestSubscriptionRoutes:
    """/subscription/*"""

    def test_status_live_then_polled(self, client, poller):
        live = client.get("/subscription/status").json()
        assert live["success"] is True
        assert "polledAt" not in live

        poller._snapshot = {"success": True, "subscriptionCount": 42}
        poller.last_updated = 1.0
        assert client.get("/subscription/status").json()["subscriptionCount"] == 42
        assert client.get("/subscription/status", params={"fresh": True}).json()["subscriptionCount"] == 0

    def test_subscribe_token_and_approve(self, client, vault):
        resp = client.post("/subscription/approve-token", json={"amount": "1"})
        assert resp.json()["approvedAmount"] == "1000.0"
        resp = client.post("/subscription/subscribe-token", json={
            "name": "sub", "amountPerPeriod": 1, "intervalSeconds": 10,
        })
        assert resp.status_code == 200
        assert vault.get_agreement(resp.json()["agreementId"]).amount_per_period == 1_000_000

    def test_top_up_token_agreement_rejected(self, client):
        sub = client.post("/subscription/subscribe-token", json={
            "name": "sub", "amountPerPeriod": "1", "intervalSeconds": 10,
        }).json()
        resp = client.post("/subscription/top-up", json={"agreementId": sub["agreementId"], "amount": "1"})
        assert resp.status_code == 400

    def test_set_gas_limit(self, client, vault):
        assert client.post("/subscription/set-gas-limit", json={"gasLimit": 100}).status_code == 400
        assert client.post("/subscription/set-gas-limit", json={"gasLimit": 450_000}).status_code == 200
        assert vault.scheduled_call_gas_limit == 450_000


class TestHealth:

    def test_health(self, client):
        body = client.get("/health").json()
        assert body["alive"] is True
        assert body["backend"]["backend"] == "local"
        assert body["poller"]["running"] is False
