"""Tests for the payroll service (human units, onboarding, aggregation)."""

import pytest

from conftest import ALICE, BOB, OWNER, T0
from core.backend import TxFailedError
from core.config import load_settings
from core.local import LocalVaultBackend
from core.payroll import PayrollService, contributor_name, gated_name
from core.units import UnitError
from vault.constants import VAULT_LAWS
from vault.errors import NotFoundError, ValidationError
from vault.models import ScheduleStatus


@pytest.fixture
def settings():
    return load_settings({})


@pytest.fixture
def backend(vault, usdc):
    usdc.approve(OWNER, vault.address, 1_000 * 10**6)
    return LocalVaultBackend(vault, OWNER, follow_wall_clock=False)


@pytest.fixture
def service(backend, settings, usdc):
    return PayrollService(backend, settings, usdc.address)


class TestAgents:
    """add / update / start / cancel / retry with human amounts."""

    @pytest.mark.asyncio
    async def test_add_agent_native_amount(self, service, vault):
        out = await service.add_agent(ALICE, "agent:alice", "1.5", 30)
        assert out["success"] is True
        assert out["agreementId"] == 0
        assert out["explorerUrl"].endswith(out["txHash"])
        agr = vault.get_agreement(0)
        assert agr.amount_per_period == 150_000_000
        assert agr.interval_seconds == 30

    @pytest.mark.asyncio
    async def test_add_agent_token_amount(self, service, vault, usdc):
        await service.add_agent(ALICE, "agent:alice", "2", 10, use_token=True)
        agr = vault.get_agreement(0)
        assert agr.amount_per_period == 2_000_000
        assert agr.token == usdc.address

    @pytest.mark.asyncio
    async def test_add_agent_token_needs_configured_token(self, backend, settings):
        service = PayrollService(backend, settings)
        with pytest.raises(ValidationError):
            await service.add_agent(ALICE, "agent:alice", "2", 10, use_token=True)

    @pytest.mark.asyncio
    async def test_add_agent_excess_precision(self, service):
        with pytest.raises(UnitError):
            await service.add_agent(ALICE, "agent:alice", "0.000000001", 10)

    @pytest.mark.asyncio
    async def test_vault_rejection_raises_tx_failed(self, service):
        with pytest.raises(TxFailedError) as exc:
            await service.add_agent(ALICE, "agent:alice", "1", 5)
        assert exc.value.code == "validation"

    @pytest.mark.asyncio
    async def test_update_uses_agreement_currency(self, service, vault):
        await service.add_agent(ALICE, "agent:alice", "1", 10, use_token=True)
        await service.update_agent(0, "3", 0)
        agr = vault.get_agreement(0)
        assert agr.amount_per_period == 3_000_000
        assert agr.interval_seconds == 10

    @pytest.mark.asyncio
    async def test_start_cancel_retry(self, service, vault):
        await service.add_agent(ALICE, "agent:alice", "1", 10)
        started = await service.start(0)
        assert started["nextPaymentTime"] == T0 + 10
        with pytest.raises(TxFailedError) as exc:
            await service.start(0)
        assert exc.value.code == "already_running"
        cancelled = await service.cancel(0)
        assert cancelled["refunded"] == "0"
        await service.retry(0)
        assert vault.get_agreement(0).status == ScheduleStatus.PENDING


class TestContributors:
    """Idempotent onboarding and the contributor list."""

    @pytest.mark.asyncio
    async def test_onboarding_is_idempotent(self, service, vault):
        first = await service.onboard_contributor(ALICE.lower())
        assert first["action"] == "added+started"
        assert first["evmAddress"] == ALICE

        agr = vault.get_agreement(first["agreementId"])
        assert agr.name == contributor_name(ALICE)
        assert agr.amount_per_period == 1_000_000
        assert agr.interval_seconds == 10
        assert agr.status == ScheduleStatus.PENDING

        second = await service.onboard_contributor(ALICE)
        assert second["action"] == "already_running"
        assert second["agreementId"] == first["agreementId"]

        await service.cancel(first["agreementId"])
        third = await service.onboard_contributor(ALICE)
        assert third["action"] == "restarted"
        assert vault.agreement_count() == 1
        assert vault.get_agreement(first["agreementId"]).active is True

    @pytest.mark.asyncio
    async def test_contributors_get_paid(self, service, vault, usdc):
        await service.onboard_contributor(ALICE)
        vault.scheduler.advance(30)
        assert usdc.balance_of(ALICE) == 3 * 10**6

    @pytest.mark.asyncio
    async def test_non_contributor_agents_ignored(self, service):
        await service.add_agent(ALICE, "agent:alice", "1", 10)
        out = await service.onboard_contributor(ALICE)
        assert out["action"] == "added+started"
        assert out["agreementId"] == 1

    @pytest.mark.asyncio
    async def test_list_contributors(self, service):
        await service.add_agent(BOB, "agent:bob", "1", 10)
        await service.onboard_contributor(ALICE)
        out = await service.list_contributors()
        assert [a["party"] for a in out["agents"]] == [ALICE]
        assert out["agents"][0]["amount"] == "1.0"
        assert out["payrollAllowance"] == "1000.0"


class TestSubscriptions:
    """Access checks, funding, status aggregation."""

    @pytest.mark.asyncio
    async def test_check_access_lifecycle(self, service):
        denied = await service.check_access(OWNER)
        assert denied["hasAccess"] is False

        sub = await service.subscribe_hbar(gated_name(OWNER), "1", 10, deposit="5")
        assert (await service.check_access(OWNER))["hasAccess"] is False

        await service.start(sub["agreementId"])
        granted = await service.check_access(OWNER)
        assert granted["hasAccess"] is True
        assert granted["subscription"]["escrow"] == "5.0"

        await service.cancel(sub["agreementId"])
        assert (await service.check_access(OWNER))["hasAccess"] is False

    @pytest.mark.asyncio
    async def test_subscribe_requires_terms(self, service):
        with pytest.raises(ValidationError):
            await service.subscribe_hbar("", "1", 10)
        with pytest.raises(ValidationError):
            await service.subscribe_token("sub", "0", 10)

    @pytest.mark.asyncio
    async def test_subscribe_token_and_approve(self, service, vault, usdc):
        out = await service.approve_token("2")
        assert out["approvedAmount"] == "2000.0"
        assert out["previousAllowance"] == "1000.0"

        sub = await service.subscribe_token("sub", "2", 10)
        agr = vault.get_agreement(sub["agreementId"])
        assert agr.amount_per_period == 2_000_000
        assert agr.mode.payer == OWNER

    @pytest.mark.asyncio
    async def test_top_up(self, service, vault):
        sub = await service.subscribe_hbar("sub", "1", 10)
        out = await service.top_up(sub["agreementId"], "2.5")
        assert out["amount"] == "2.5"
        assert vault.escrow_balance(sub["agreementId"]) == 250_000_000
        with pytest.raises(ValidationError):
            await service.top_up(sub["agreementId"], "0")

    @pytest.mark.asyncio
    async def test_set_gas_limit_floor(self, service, vault):
        with pytest.raises(ValidationError):
            await service.set_gas_limit(399_999)
        await service.set_gas_limit(400_000)
        assert vault.scheduled_call_gas_limit == 400_000

    @pytest.mark.asyncio
    async def test_subscription_status(self, service, vault):
        await service.add_agent(ALICE, "agent:alice", "1", 10)
        sub = await service.subscribe_hbar("sub", "1", 10, deposit="3")
        await service.start(sub["agreementId"])
        vault.scheduler.advance(20)

        status = await service.subscription_status()
        assert status["subscriptionCount"] == 1
        assert status["agreementCount"] == 2
        assert status["collectedHbar"] == "2.0"
        assert status["vaultHbarBalance"] == "3.0"
        assert status["subscriptions"][0]["escrow"] == "1.0"
        assert status["scheduleHistoryCount"] == 3
        assert len(status["recentHistory"]) == 3

    @pytest.mark.asyncio
    async def test_status_history_window(self, service, vault):
        sub = await service.subscribe_hbar("sub", "1", 10, deposit="100")
        await service.start(sub["agreementId"])
        vault.scheduler.advance(300)
        status = await service.subscription_status()
        assert status["scheduleHistoryCount"] == 31
        assert len(status["recentHistory"]) == 20


class TestReads:
    """Per-agreement and per-party views."""

    @pytest.mark.asyncio
    async def test_get_agreement_joins_history(self, service, vault):
        await service.add_agent(ALICE, "agent:alice", "1", 10)
        await service.start(0)
        out = await service.get_agreement(0)
        assert out["status"] == "Pending"
        assert len(out["history"]) == 1

    @pytest.mark.asyncio
    async def test_agreement_history_survives_busy_vault(self, service, vault):
        await service.add_agent(ALICE, "agent:alice", "1", 10)
        await service.start(0)
        sub = await service.subscribe_hbar("sub", "1", 10, deposit="200")
        await service.start(sub["agreementId"])
        vault.scheduler.advance(1_500)

        assert vault.history_count() > VAULT_LAWS.HISTORY_QUERY_MAX
        out = await service.get_agreement(0)
        assert [h["status"] for h in out["history"]] == ["Failed"]
        mine = await service.agreements_for(ALICE, include_failed=True)
        assert [h["status"] for h in mine["history"]] == ["Failed"]

    @pytest.mark.asyncio
    async def test_agreements_for_drops_failed_history(self, service, vault):
        await service.add_agent(ALICE, "agent:alice", "1", 10)
        await service.start(0)
        vault.scheduler.advance(10)

        clean = await service.agreements_for(ALICE)
        assert [a["id"] for a in clean["agreements"]] == [0]
        assert clean["history"] == []
        noisy = await service.agreements_for(ALICE, include_failed=True)
        assert [h["status"] for h in noisy["history"]] == ["Failed"]

        with pytest.raises(NotFoundError):
            await service.agreements_for(BOB)

    @pytest.mark.asyncio
    async def test_history_count_must_be_positive(self, service):
        with pytest.raises(ValidationError):
            await service.history(0)
