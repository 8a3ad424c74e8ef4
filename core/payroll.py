"""
Payroll Service - the off-chain handlers over a VaultBackend

Everything the HTTP layer does, minus HTTP:
- human amounts in, smallest units out (explicit decimals per currency)
- idempotent contributor onboarding (1 token unit every 10s by default)
- gated-knowledge access check by subscription name
- status aggregation: agreements joined with recent history + escrow

Failed writes raise TxFailedError; bad input raises VaultError / UnitError.
Successful writes return plain dicts, ready to serialize.
"""

import logging
from typing import Optional

from vault.constants import VAULT_LAWS
from vault.errors import NotFoundError, ValidationError
from vault.models import (
    Agreement,
    Direction,
    NativeEscrow,
    ScheduleStatus,
    normalize_address,
)

from .backend import TxFailedError, TxResult, VaultBackend
from .config import Settings
from .units import format_units, to_smallest_unit

logger = logging.getLogger("spark.payroll")

CONTRIBUTOR_PREFIX = "contributor:"
GATED_PREFIX = "gated-knowledge-"
STATUS_HISTORY_WINDOW = 20
APPROVE_PERIODS = 1000
ACCESS_STATUSES = (ScheduleStatus.PENDING, ScheduleStatus.EXECUTED)


def contributor_name(address: str) -> str:
    return f"{CONTRIBUTOR_PREFIX}{address[:10]}"


def gated_name(address: str) -> str:
    return f"{GATED_PREFIX}{address.lower()}"


def _checked(result: TxResult) -> TxResult:
    if not result.success:
        raise TxFailedError(result)
    return result


class PayrollService:
    """
    Usage:
        service = PayrollService(backend, settings, token_address)
        out = await service.onboard_contributor("0xabc...")
        # {"success": True, "action": "added+started", "agreementId": 0, ...}
    """

    def __init__(self, backend: VaultBackend, settings: Settings, token_address: str = ""):
        self.backend = backend
        self.settings = settings
        self.token_address = normalize_address(token_address) if token_address else ""

    # ============================================================
    # UNITS
    # ============================================================

    async def token_decimals(self, token: Optional[str] = None) -> int:
        """decimals() of the token when readable, else the configured default."""
        token = token or self.token_address
        if not token:
            return self.settings.token_decimals
        decimals = await self.backend.token_decimals(token)
        return self.settings.token_decimals if decimals is None else decimals

    async def _decimals_for(self, agr: Agreement) -> int:
        if isinstance(agr.mode, NativeEscrow):
            return self.settings.native_decimals
        return await self.token_decimals(agr.token)

    def _native(self, amount) -> int:
        return to_smallest_unit(amount, self.settings.native_decimals)

    def _require_token(self) -> str:
        if not self.token_address:
            raise ValidationError("no payment token configured (PAYMENT_TOKEN_ADDRESS)")
        return self.token_address

    async def describe(self, agr: Agreement) -> dict:
        """Agreement dict plus human-readable amounts."""
        decimals = await self._decimals_for(agr)
        out = agr.to_dict()
        out["amount"] = format_units(agr.amount_per_period, decimals)
        out["totalPaidFormatted"] = format_units(agr.total_paid, decimals)
        out["escrow"] = format_units(agr.escrow_balance, self.settings.native_decimals)
        return out

    def _tx(self, result: TxResult, **extra) -> dict:
        out = result.to_dict()
        if result.tx_hash:
            out["explorerUrl"] = self.settings.explorer_tx_url(result.tx_hash)
        out.update(extra)
        return out

    # ============================================================
    # PAYROLL AGENTS
    # ============================================================

    async def add_agent(self, party: str, name: str, amount="0", interval: int = 0,
                        use_token: bool = False) -> dict:
        """
        Register a push agent. `amount` is human units: native by default,
        payment token when use_token. Zero amount / interval mean vault defaults.
        """
        party = normalize_address(party)
        if not name or not name.strip():
            raise ValidationError("agent address and name are required")
        token = self._require_token() if use_token else None
        decimals = await self.token_decimals(token) if token else self.settings.native_decimals
        raw = to_smallest_unit(amount or "0", decimals)

        result = _checked(await self.backend.register_agent(party, name, raw, interval or 0, token=token))
        logger.info(f"Agent {name!r} added as #{result.agreement_id}")
        return self._tx(result, agent=party, name=name, message=f'Agent "{name}" added')

    async def update_agent(self, agreement_id: int, amount="0", interval: int = 0) -> dict:
        """New terms apply from the next registered callback. 0 keeps current."""
        agr = await self.backend.get_agreement(agreement_id)
        raw = to_smallest_unit(amount or "0", await self._decimals_for(agr))
        result = _checked(await self.backend.update(agreement_id, raw, interval or 0))
        return self._tx(result, agreementId=agreement_id, message=f"Agreement #{agreement_id} updated")

    async def start(self, agreement_id: int) -> dict:
        result = _checked(await self.backend.start(agreement_id))
        return self._tx(result, agreementId=agreement_id)

    async def cancel(self, agreement_id: int) -> dict:
        result = _checked(await self.backend.cancel(agreement_id))
        return self._tx(result, agreementId=agreement_id)

    async def retry(self, agreement_id: int) -> dict:
        result = _checked(await self.backend.retry(agreement_id))
        return self._tx(result, agreementId=agreement_id)

    # ============================================================
    # CONTRIBUTORS
    # ============================================================

    async def _find_contributor(self, address: str) -> Optional[Agreement]:
        ids = await self.backend.find_by_party(address)
        for agreement_id in reversed(ids):
            agr = await self.backend.get_agreement(agreement_id)
            if agr.direction is Direction.PUSH and agr.name.startswith(CONTRIBUTOR_PREFIX):
                return agr
        return None

    async def onboard_contributor(self, address: str) -> dict:
        """
        Add a contributor and start paying them. Safe to call repeatedly:
        an existing agreement is reused, restarted if it is not running.
        """
        address = normalize_address(address)
        existing = await self._find_contributor(address)

        if existing is not None:
            if existing.status == ScheduleStatus.PENDING:
                return {
                    "success": True,
                    "action": "already_running",
                    "agreementId": existing.id,
                    "evmAddress": address,
                    "message": f"Contributor already running as agreement #{existing.id}",
                }
            _checked(await self.backend.start(existing.id))
            logger.info(f"Contributor {address[:10]}... restarted (#{existing.id})")
            return {
                "success": True,
                "action": "restarted",
                "agreementId": existing.id,
                "evmAddress": address,
                "message": f"Contributor already exists (agreement #{existing.id}), restarted payroll",
            }

        token = self._require_token()
        decimals = await self.token_decimals(token)
        amount = to_smallest_unit(self.settings.contributor_payout_amount, decimals)
        interval = self.settings.contributor_payout_interval

        added = _checked(await self.backend.register_agent(
            address, contributor_name(address), amount, interval, token=token
        ))
        _checked(await self.backend.start(added.agreement_id))
        logger.info(f"Contributor {address[:10]}... added + started (#{added.agreement_id})")
        return {
            "success": True,
            "action": "added+started",
            "agreementId": added.agreement_id,
            "evmAddress": address,
            "message": (
                f"Added contributor as agreement #{added.agreement_id} and started payroll "
                f"({self.settings.contributor_payout_amount} every {interval}s)"
            ),
        }

    async def list_contributors(self) -> dict:
        agreements = await self.backend.get_all_agreements()
        contributors = [
            await self.describe(a) for a in agreements
            if a.direction is Direction.PUSH and a.name.startswith(CONTRIBUTOR_PREFIX)
        ]
        out = {"success": True, "agents": contributors}
        if self.token_address:
            decimals = await self.token_decimals()
            allowance = await self.backend.token_allowance(self.token_address, self.backend.operator_address)
            out["payrollAllowance"] = format_units(allowance, decimals)
        return out

    # ============================================================
    # SUBSCRIPTIONS
    # ============================================================

    async def check_access(self, subscriber: str) -> dict:
        """Access = an active gated-knowledge subscription that is Pending or Executed."""
        subscriber = normalize_address(subscriber)
        expected = gated_name(subscriber)
        for agr in await self.backend.get_all_agreements():
            if agr.active and agr.name.lower() == expected and agr.status in ACCESS_STATUSES:
                return {
                    "success": True,
                    "hasAccess": True,
                    "subscriberAddress": subscriber,
                    "subscription": await self.describe(agr),
                }
        return {"success": True, "hasAccess": False, "subscriberAddress": subscriber, "subscription": None}

    async def subscribe_hbar(self, name: str, amount, interval: int, deposit="0") -> dict:
        raw = self._native(amount or "0")
        if not name or not raw or not interval:
            raise ValidationError("name, amountPerPeriod, and intervalSeconds are required")
        result = _checked(await self.backend.subscribe_native(
            name, raw, interval, self._native(deposit or "0")
        ))
        logger.info(f"Native subscription {name!r} opened as #{result.agreement_id}")
        return self._tx(result, name=name, message=f'Subscribed "{name}" (HBAR escrow)')

    async def subscribe_token(self, name: str, amount, interval: int, token: Optional[str] = None) -> dict:
        token = normalize_address(token) if token else self._require_token()
        raw = to_smallest_unit(amount or "0", await self.token_decimals(token))
        if not name or not raw or not interval:
            raise ValidationError("token, name, amountPerPeriod, and intervalSeconds are required")
        result = _checked(await self.backend.subscribe_token(token, name, raw, interval))
        logger.info(f"Token subscription {name!r} opened as #{result.agreement_id}")
        return self._tx(result, name=name, token=token, message=f'Subscribed "{name}" (token pull)')

    async def top_up(self, agreement_id: int, amount) -> dict:
        raw = self._native(amount)
        if raw == 0:
            raise ValidationError("top-up amount must be positive")
        result = _checked(await self.backend.top_up(agreement_id, raw))
        return self._tx(result, agreementId=agreement_id, amount=format_units(raw, self.settings.native_decimals))

    async def approve_token(self, amount, token: Optional[str] = None) -> dict:
        """Approve the vault for APPROVE_PERIODS times a per-period amount."""
        token = normalize_address(token) if token else self._require_token()
        decimals = await self.token_decimals(token)
        approve_raw = to_smallest_unit(amount, decimals) * APPROVE_PERIODS
        if approve_raw == 0:
            raise ValidationError("amount must be positive")
        previous = await self.backend.token_allowance(token, self.backend.operator_address)
        result = _checked(await self.backend.approve_token(token, approve_raw))
        approved = format_units(approve_raw, decimals)
        return self._tx(
            result,
            approvedAmount=approved,
            previousAllowance=format_units(previous, decimals),
            message=f"Approved {approved} for vault",
        )

    async def set_gas_limit(self, gas_limit: int) -> dict:
        if gas_limit < VAULT_LAWS.MIN_SCHEDULED_GAS_LIMIT:
            raise ValidationError(f"gasLimit must be >= {VAULT_LAWS.MIN_SCHEDULED_GAS_LIMIT:,}")
        result = _checked(await self.backend.set_gas_limit(gas_limit))
        return self._tx(result, gasLimit=gas_limit)

    # ============================================================
    # READS / AGGREGATION
    # ============================================================

    async def get_agreement(self, agreement_id: int) -> dict:
        agr = await self.backend.get_agreement(agreement_id)
        out = await self.describe(agr)
        out["history"] = [r.to_dict() for r in await self.backend.get_agreement_history(agreement_id)]
        return out

    async def list_agreements(self) -> list[dict]:
        return [await self.describe(a) for a in await self.backend.get_all_agreements()]

    async def history(self, count: int) -> list[dict]:
        if count <= 0:
            raise ValidationError("count must be positive")
        return [r.to_dict() for r in await self.backend.get_history(min(count, VAULT_LAWS.HISTORY_QUERY_MAX))]

    async def agreements_for(self, party: str, include_failed: bool = False) -> dict:
        """A party's own agreements with their history; failed attempts dropped unless asked for."""
        party = normalize_address(party)
        ids = sorted(set(await self.backend.find_by_party(party)))
        if not ids:
            raise NotFoundError(f"no agreements for {party}")
        agreements = [await self.describe(await self.backend.get_agreement(i)) for i in ids]
        records = []
        for agreement_id in ids:
            records.extend(await self.backend.get_agreement_history(agreement_id))
        records.sort(key=lambda r: r.created_at)
        history = [r.to_dict() for r in records if include_failed or r.status != ScheduleStatus.FAILED]
        return {"success": True, "party": party, "agreements": agreements, "history": history}

    async def subscription_status(self) -> dict:
        """Subscriptions joined with the recent history window and per-subscription escrow."""
        agreements = await self.backend.get_all_agreements()
        subscriptions = [await self.describe(a) for a in agreements if a.direction is Direction.PULL]
        history_count = await self.backend.history_count()
        recent = await self.backend.get_history(min(history_count, STATUS_HISTORY_WINDOW))
        native = self.settings.native_decimals
        return {
            "success": True,
            "backend": self.backend.name,
            "vaultHbarBalance": format_units(await self.backend.vault_native_balance(), native),
            "collectedHbar": format_units(await self.backend.collected_native(), native),
            "subscriptionCount": len(subscriptions),
            "subscriptions": subscriptions,
            "agreementCount": len(agreements),
            "scheduleHistoryCount": history_count,
            "recentHistory": [r.to_dict() for r in recent],
        }
