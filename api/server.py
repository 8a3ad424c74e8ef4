"""
Spark Vault API Server - FastAPI Backend

Endpoints:
- POST /schedule/add-agent          Register a payroll agent (human amount)
- POST /schedule/update-agent       Change amount / interval (0 keeps current)
- POST /schedule/start              Start an agreement's schedule
- POST /schedule/cancel             Cancel + refund escrow
- POST /schedule/retry              Restart a Failed / Cancelled agreement
- GET  /schedule/agreements         All agreements (or ?party=0x... for one party)
- GET  /schedule/agreements/{id}    One agreement + its recent history
- GET  /schedule/history            Most recent history records (?count=N)
- GET  /spark/payout                Contributor payroll list
- POST /spark/payout                Idempotent contributor onboarding
- POST /spark/check-access          Gated-knowledge subscription check
- GET  /subscription/status         Aggregated subscription view (polled)
- POST /subscription/subscribe-hbar Native subscription with escrow deposit
- POST /subscription/subscribe-token Token-pull subscription
- POST /subscription/top-up         Add native escrow to an agreement
- POST /subscription/approve-token  Approve the vault for 1000 periods
- POST /subscription/set-gas-limit  Owner: gas limit for scheduled calls
- GET  /health                      Heartbeat + backend status

Every failure returns {"success": false, "error": "<reason>"}.
"""

import logging
from decimal import Decimal
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from core.backend import BackendError, TxFailedError
from core.config import Settings
from core.payroll import PayrollService
from core.poller import StatusPoller
from core.units import UnitError
from vault.errors import VaultError

logger = logging.getLogger("spark.api")

# error code -> HTTP status
STATUS_BY_CODE = {
    "validation": 400,
    "capacity": 400,
    "invalid_state": 400,
    "insufficient_funds": 400,
    "insufficient_allowance": 400,
    "history_finalized": 400,
    "reverted": 400,
    "unauthorized": 403,
    "not_found": 404,
    "already_running": 409,
    "scheduler_unavailable": 502,
    "chain": 502,
    "backend": 502,
}


def status_for(code: str) -> int:
    return STATUS_BY_CODE.get(code, 400)


# ============================================================
# MODELS
# ============================================================

class _Body(BaseModel):
    """Accepts the camelCase keys dashboards send, or snake_case."""
    model_config = ConfigDict(populate_by_name=True)


class AddAgentRequest(_Body):
    agent: str
    name: str = Field(..., min_length=1, max_length=200)
    amount_per_period: Decimal = Field(Decimal("0"), alias="amountPerPeriod", ge=0)
    interval_seconds: int = Field(0, alias="intervalSeconds", ge=0)
    use_token: bool = Field(False, alias="useToken")


class UpdateAgentRequest(_Body):
    agreement_id: int = Field(..., alias="agreementId", ge=0)
    amount_per_period: Decimal = Field(Decimal("0"), alias="amountPerPeriod", ge=0)
    interval_seconds: int = Field(0, alias="intervalSeconds", ge=0)


class AgreementRequest(_Body):
    agreement_id: int = Field(..., alias="agreementId", ge=0)


class PayoutRequest(_Body):
    evm_address: str = Field(..., alias="evmAddress")


class CheckAccessRequest(_Body):
    subscriber_address: str = Field(..., alias="subscriberAddress")


class SubscribeHbarRequest(_Body):
    name: str = Field(..., min_length=1, max_length=200)
    amount_per_period: Decimal = Field(..., alias="amountPerPeriod", gt=0)
    interval_seconds: int = Field(..., alias="intervalSeconds", gt=0)
    deposit: Decimal = Field(Decimal("0"), ge=0)


class SubscribeTokenRequest(_Body):
    name: str = Field(..., min_length=1, max_length=200)
    amount_per_period: Decimal = Field(..., alias="amountPerPeriod", gt=0)
    interval_seconds: int = Field(..., alias="intervalSeconds", gt=0)
    token: Optional[str] = None


class TopUpRequest(_Body):
    agreement_id: int = Field(..., alias="agreementId", ge=0)
    amount: Decimal = Field(..., gt=0)


class ApproveTokenRequest(_Body):
    amount: Decimal = Field(..., gt=0)
    token: Optional[str] = None


class GasLimitRequest(_Body):
    gas_limit: int = Field(..., alias="gasLimit", gt=0)


# ============================================================
# SERVER FACTORY
# ============================================================

def create_app(
    service: PayrollService,
    settings: Settings,
    poller: Optional[StatusPoller] = None,
) -> FastAPI:
    """
    Create FastAPI app wired to the payroll service.

    poller: serves /subscription/status from its snapshot when present
    """
    app = FastAPI(
        title="Spark Vault",
        description="Recurring payroll and subscription payments driven by scheduled calls.",
        version="0.1.0",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def _fail(status: int, error: str) -> JSONResponse:
        return JSONResponse(status_code=status, content={"success": False, "error": error})

    # ============================================================
    # ERROR MAPPING
    # ============================================================

    @app.exception_handler(VaultError)
    async def _vault_error(request: Request, exc: VaultError):
        logger.info(f"{request.url.path} rejected [{exc.code}]: {exc}")
        return _fail(status_for(exc.code), str(exc))

    @app.exception_handler(TxFailedError)
    async def _tx_failed(request: Request, exc: TxFailedError):
        logger.warning(f"{request.url.path} tx failed [{exc.code}]: {exc}")
        body = exc.result.to_dict()
        body["success"] = False
        body["error"] = str(exc)
        return JSONResponse(status_code=status_for(exc.code), content=body)

    @app.exception_handler(BackendError)
    async def _backend_error(request: Request, exc: BackendError):
        logger.error(f"{request.url.path} backend error: {exc}")
        return _fail(502, str(exc))

    @app.exception_handler(UnitError)
    async def _unit_error(request: Request, exc: UnitError):
        return _fail(400, str(exc))

    @app.exception_handler(RequestValidationError)
    async def _bad_request(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        return _fail(400, f"{field}: {first.get('msg', 'invalid request')}" if field else "invalid request")

    # ============================================================
    # SCHEDULE ROUTES
    # ============================================================

    @app.post("/schedule/add-agent")
    async def add_agent(req: AddAgentRequest):
        return await service.add_agent(
            req.agent, req.name, req.amount_per_period, req.interval_seconds, use_token=req.use_token
        )

    @app.post("/schedule/update-agent")
    async def update_agent(req: UpdateAgentRequest):
        return await service.update_agent(req.agreement_id, req.amount_per_period, req.interval_seconds)

    @app.post("/schedule/start")
    async def start(req: AgreementRequest):
        return await service.start(req.agreement_id)

    @app.post("/schedule/cancel")
    async def cancel(req: AgreementRequest):
        return await service.cancel(req.agreement_id)

    @app.post("/schedule/retry")
    async def retry(req: AgreementRequest):
        return await service.retry(req.agreement_id)

    @app.get("/schedule/agreements")
    async def agreements(party: Optional[str] = None, include_failed: bool = False):
        """All agreements, or one party's agreements with their history."""
        if party:
            return await service.agreements_for(party, include_failed=include_failed)
        return {"success": True, "agreements": await service.list_agreements()}

    @app.get("/schedule/agreements/{agreement_id}")
    async def agreement(agreement_id: int):
        return {"success": True, "agreement": await service.get_agreement(agreement_id)}

    @app.get("/schedule/history")
    async def history(count: int = 20):
        return {"success": True, "history": await service.history(count)}

    # ============================================================
    # SPARK ROUTES
    # ============================================================

    @app.get("/spark/payout")
    async def list_payouts():
        return await service.list_contributors()

    @app.post("/spark/payout")
    async def payout(req: PayoutRequest):
        return await service.onboard_contributor(req.evm_address)

    @app.post("/spark/check-access")
    async def check_access(req: CheckAccessRequest):
        return await service.check_access(req.subscriber_address)

    # ============================================================
    # SUBSCRIPTION ROUTES
    # ============================================================

    @app.get("/subscription/status")
    async def subscription_status(fresh: bool = False):
        """Polled snapshot when available (may lag one poll interval)."""
        if poller is not None and not fresh:
            snapshot = poller.snapshot()
            if snapshot is not None:
                return snapshot
        return await service.subscription_status()

    @app.post("/subscription/subscribe-hbar")
    async def subscribe_hbar(req: SubscribeHbarRequest):
        return await service.subscribe_hbar(req.name, req.amount_per_period, req.interval_seconds, req.deposit)

    @app.post("/subscription/subscribe-token")
    async def subscribe_token(req: SubscribeTokenRequest):
        return await service.subscribe_token(req.name, req.amount_per_period, req.interval_seconds, req.token)

    @app.post("/subscription/top-up")
    async def top_up(req: TopUpRequest):
        return await service.top_up(req.agreement_id, req.amount)

    @app.post("/subscription/approve-token")
    async def approve_token(req: ApproveTokenRequest):
        return await service.approve_token(req.amount, req.token)

    @app.post("/subscription/set-gas-limit")
    async def set_gas_limit(req: GasLimitRequest):
        return await service.set_gas_limit(req.gas_limit)

    # ============================================================
    # HEALTH
    # ============================================================

    @app.get("/health")
    async def health():
        """Heartbeat endpoint."""
        return {
            "alive": True,
            "backend": service.backend.get_status(),
            "poller": poller.get_status() if poller is not None else None,
        }

    return app
