"""
Recurring Payment Vault - self-rescheduling payroll / subscription state machine

Owns:
- the agreement registry (dense arena, ids never reused) + party index
- per-agreement native escrow, or token allowances pulled at execution time
- the append-only history of scheduled-call outcomes

Lifecycle per agreement:
    None -> Pending -> Executed -> Pending (rescheduled) ...
                    -> Failed     (funding / capacity, waits for retry)
                    -> Cancelled  (refund, waits for start / retry)

execute() is only ever invoked by the scheduler. On success it registers the
next callback itself, so the cycle continues with no off-chain driver.

Rules:
- Caller-initiated entrypoints validate first and raise before any mutation.
- Failures inside execute() are recorded in history + status, never raised.
- A callback whose handle is not the agreement's current one is ignored.
"""

import copy
import logging
from collections import deque
from typing import Callable, Optional

from web3 import Web3

from .constants import VAULT_LAWS
from .errors import (
    AlreadyRunningError,
    CapacityError,
    InsufficientFundsError,
    InvalidStateError,
    NotFoundError,
    SchedulerUnavailableError,
    UnauthorizedError,
    ValidationError,
    VaultError,
)
from .ledger import Ledger
from .models import (
    Agreement,
    Direction,
    ExecutionOutcome,
    HistoryRecord,
    NativeEscrow,
    ScheduleStatus,
    TokenPull,
    VaultEvent,
    normalize_address,
    same_address,
)
from .scheduler import ScheduledCall, Scheduler, SchedulerCapacityError

logger = logging.getLogger("spark.vault")

DEFAULT_VAULT_ADDRESS = Web3.to_checksum_address("0x" + "5a17".rjust(40, "0"))
EVENT_LOG_SIZE = 1000


def _check_uint(value, label: str) -> int:
    if not isinstance(value, int) or isinstance(value, bool) or value < 0:
        raise ValidationError(f"{label} must be a non-negative integer, got {value!r}")
    return value


class RecurringPaymentVault:
    """
    Single owned state object. Every mutating entrypoint takes the caller's
    address explicitly and checks it before touching state.

    Usage:
        vault = RecurringPaymentVault(owner, scheduler, ledger)
        idx = vault.register_agent(owner, alice, "contributor:alice", 100, 10)
        vault.top_up(owner, idx, 1_000)
        vault.start(owner, idx)
        scheduler.advance(10)   # scheduler calls vault.execute(...)
    """

    def __init__(
        self,
        owner: str,
        scheduler: Scheduler,
        ledger: Ledger,
        address: str = DEFAULT_VAULT_ADDRESS,
        default_amount: int = VAULT_LAWS.DEFAULT_AMOUNT,
        default_interval: int = VAULT_LAWS.DEFAULT_INTERVAL,
        gas_limit: int = VAULT_LAWS.DEFAULT_SCHEDULED_GAS_LIMIT,
    ):
        if default_interval < VAULT_LAWS.MIN_INTERVAL:
            raise ValidationError(
                f"default interval {default_interval}s below minimum {VAULT_LAWS.MIN_INTERVAL}s"
            )
        self.owner = normalize_address(owner)
        self.address = normalize_address(address)
        self.scheduler = scheduler
        self.ledger = ledger
        self.default_amount = _check_uint(default_amount, "default amount")
        self.default_interval = default_interval
        self.scheduled_call_gas_limit = gas_limit

        self._agreements: list[Agreement] = []
        self._by_party: dict[str, list[int]] = {}
        self._history: list[HistoryRecord] = []
        self._history_by_handle: dict[str, int] = {}

        self.collected_native: int = 0
        self._collected_tokens: dict[str, int] = {}

        self.events: deque[VaultEvent] = deque(maxlen=EVENT_LOG_SIZE)
        self._listeners: list[Callable[[VaultEvent], None]] = []

    # ============================================================
    # EVENTS
    # ============================================================

    def on_event(self, callback: Callable[[VaultEvent], None]):
        self._listeners.append(callback)

    def _emit(self, name: str, agreement_id: Optional[int] = None, /, **data):
        event = VaultEvent(name=name, agreement_id=agreement_id, timestamp=self.scheduler.now(), data=data)
        self.events.append(event)
        for listener in self._listeners:
            try:
                listener(event)
            except Exception as e:
                logger.warning(f"Event listener failed on {name}: {e}")

    # ============================================================
    # HELPERS
    # ============================================================

    def _get(self, agreement_id: int) -> Agreement:
        if not isinstance(agreement_id, int) or not 0 <= agreement_id < len(self._agreements):
            raise NotFoundError(f"agreement #{agreement_id} does not exist")
        return self._agreements[agreement_id]

    def _require_owner(self, caller: str):
        if not same_address(caller, self.owner):
            raise UnauthorizedError("only the vault owner may call this")

    def _require_manager(self, caller: str, agr: Agreement):
        if not (same_address(caller, self.owner) or same_address(caller, agr.controller)):
            raise UnauthorizedError(f"caller may not manage agreement #{agr.id}")

    def _register_callback(self, agr: Agreement) -> Optional[tuple[str, int]]:
        """
        Ask the scheduler for a callback at now + interval. On capacity
        exhaustion try once more one second later. None if both refused.
        """
        target = self.scheduler.now() + agr.interval_seconds
        for attempt in (target, target + VAULT_LAWS.RESCHEDULE_OFFSET_SECONDS):
            try:
                handle = self.scheduler.schedule_callback(
                    attempt,
                    ScheduledCall(receiver=self.execute, agreement_id=agr.id),
                    self.scheduled_call_gas_limit,
                )
                return handle, attempt
            except SchedulerCapacityError as e:
                logger.warning(f"Scheduler capacity exhausted for #{agr.id} at t={attempt}: {e}")
        return None

    def _open_record(self, agr: Agreement, handle: str, target: int):
        record = HistoryRecord(
            agreement_id=agr.id,
            schedule_handle=handle,
            scheduled_time=target,
            created_at=self.scheduler.now(),
            amount=agr.amount_per_period,
        )
        self._history.append(record)
        self._history_by_handle[handle] = len(self._history) - 1
        agr.current_schedule_handle = handle
        agr.next_payment_time = target
        agr.status = ScheduleStatus.PENDING
        self._emit("ScheduleCreated", agr.id, handle=handle, scheduled_time=target, amount=record.amount)

    def _clear_schedule(self, agr: Agreement):
        agr.current_schedule_handle = None
        agr.next_payment_time = 0

    # ============================================================
    # REGISTRATION
    # ============================================================

    def register(
        self,
        caller: str,
        party: str,
        name: str,
        amount: int,
        interval: int,
        direction: Direction = Direction.PUSH,
        token: Optional[str] = None,
        deposit: int = 0,
    ) -> int:
        """
        Create an agreement (status None, active). Returns its id.

        amount / interval of 0 mean the vault's default terms. Duplicate
        agreements for the same party are allowed; callers check find_by_party().
        """
        caller = normalize_address(caller)
        if len(self._agreements) >= VAULT_LAWS.MAX_AGREEMENTS:
            raise CapacityError(f"registry full ({VAULT_LAWS.MAX_AGREEMENTS} agreements)")
        party = normalize_address(party)
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("name is required")
        amount = _check_uint(amount, "amount") or self.default_amount
        interval = _check_uint(interval, "interval") or self.default_interval
        if interval < VAULT_LAWS.MIN_INTERVAL:
            raise ValidationError(f"interval {interval}s below minimum {VAULT_LAWS.MIN_INTERVAL}s")
        deposit = _check_uint(deposit, "deposit")

        if direction is Direction.PUSH:
            self._require_owner(caller)
            controller = self.owner
        else:
            if not (same_address(caller, party) or same_address(caller, self.owner)):
                raise UnauthorizedError("subscriptions are opened by the subscriber or the owner")
            controller = party

        if token is not None:
            if deposit:
                raise ValidationError("token agreements take no native deposit")
            token = normalize_address(token)
            if not self.ledger.has_token(token):
                raise ValidationError(f"unknown token {token}")
            payer = party if direction is Direction.PULL else self.owner
            mode = TokenPull(token=token, payer=payer)
        else:
            mode = NativeEscrow(balance=0)

        if deposit:
            self.ledger.transfer(caller, self.address, deposit)
            mode.balance = deposit

        agr = Agreement(
            id=len(self._agreements),
            party=party,
            name=name,
            amount_per_period=amount,
            interval_seconds=interval,
            direction=direction,
            mode=mode,
            controller=controller,
            created_at=self.scheduler.now(),
        )
        self._agreements.append(agr)
        self._by_party.setdefault(party, []).append(agr.id)

        logger.info(
            f"REGISTERED #{agr.id} [{direction.value}/{mode.label}] {name!r} "
            f"party={party[:10]}... amount={amount} every {interval}s"
        )
        self._emit(
            "AgreementRegistered", agr.id,
            party=party, name=name, amount=amount, interval=interval,
            direction=direction.value, mode=mode.label, deposit=deposit,
        )
        return agr.id

    def register_agent(self, caller: str, party: str, name: str, amount: int = 0,
                       interval: int = 0, token: Optional[str] = None) -> int:
        """Owner adds a payroll agent the vault pays every period."""
        return self.register(caller, party, name, amount, interval, Direction.PUSH, token=token)

    def subscribe_native(self, caller: str, name: str, amount: int, interval: int, deposit: int = 0) -> int:
        """Caller subscribes, escrowing `deposit` native funds up front."""
        return self.register(caller, caller, name, amount, interval, Direction.PULL, deposit=deposit)

    def subscribe_token(self, caller: str, token: str, name: str, amount: int, interval: int) -> int:
        """Caller subscribes; each period is pulled from the caller's allowance."""
        return self.register(caller, caller, name, amount, interval, Direction.PULL, token=token)

    # ============================================================
    # START / RETRY
    # ============================================================

    def start(self, caller: str, agreement_id: int) -> int:
        """
        Register the first callback of a new cycle. Returns its target time.
        Starting a cancelled agreement reactivates it.
        """
        agr = self._get(agreement_id)
        self._require_manager(caller, agr)
        if agr.status == ScheduleStatus.PENDING:
            raise AlreadyRunningError(f"agreement #{agr.id} already running")

        registered = self._register_callback(agr)
        if registered is None:
            raise SchedulerUnavailableError(f"scheduler has no capacity for agreement #{agr.id}")
        handle, target = registered

        if not agr.active:
            agr.active = True
            logger.info(f"REACTIVATED #{agr.id}")
        self._open_record(agr, handle, target)
        logger.info(f"STARTED #{agr.id} | first payment at t={target}")
        return target

    def retry(self, caller: str, agreement_id: int) -> int:
        agr = self._get(agreement_id)
        if agr.status not in (ScheduleStatus.FAILED, ScheduleStatus.CANCELLED):
            raise InvalidStateError(
                f"agreement #{agr.id} is {agr.status.label}; only Failed or Cancelled can be retried"
            )
        return self.start(caller, agreement_id)

    # ============================================================
    # EXECUTE (scheduler callback)
    # ============================================================

    def execute(self, caller: str, agreement_id: int, handle: Optional[str]) -> ExecutionOutcome:
        if not same_address(caller, self.scheduler.address):
            raise UnauthorizedError("execute may only be invoked by the scheduler")

        agr = self._agreements[agreement_id] if 0 <= agreement_id < len(self._agreements) else None
        if agr is None or handle is None or agr.current_schedule_handle != handle:
            logger.debug(f"Ignoring stale callback for #{agreement_id} (handle={handle})")
            return ExecutionOutcome.IGNORED

        record = self._history[self._history_by_handle[handle]]
        now = self.scheduler.now()
        amount = record.amount

        try:
            self._move_funds(agr, amount)
        except VaultError as e:
            record.finalize(ScheduleStatus.FAILED, now)
            agr.status = ScheduleStatus.FAILED
            self._clear_schedule(agr)
            logger.warning(f"PAYMENT FAILED #{agr.id}: {e} | waiting for retry")
            self._emit("PaymentFailed", agr.id, handle=handle, amount=amount, reason=e.code, detail=str(e))
            return ExecutionOutcome.FAILED

        agr.total_paid += amount
        agr.payment_count += 1
        record.finalize(ScheduleStatus.EXECUTED, now)
        agr.status = ScheduleStatus.EXECUTED
        self._clear_schedule(agr)
        logger.info(
            f"PAID #{agr.id} [{agr.direction.value}] {amount} | "
            f"count={agr.payment_count} total={agr.total_paid}"
        )
        self._emit("PaymentExecuted", agr.id, handle=handle, amount=amount, payment_count=agr.payment_count)

        if agr.active:
            registered = self._register_callback(agr)
            if registered is not None:
                self._open_record(agr, *registered)
            else:
                target = now + agr.interval_seconds
                self._history.append(HistoryRecord(
                    agreement_id=agr.id,
                    schedule_handle=None,
                    scheduled_time=target,
                    created_at=now,
                    amount=agr.amount_per_period,
                    status=ScheduleStatus.FAILED,
                ))
                agr.status = ScheduleStatus.FAILED
                logger.warning(f"RESCHEDULE FAILED #{agr.id}: scheduler capacity exhausted twice")
                self._emit("RescheduleFailed", agr.id, scheduled_time=target)

        return ExecutionOutcome.EXECUTED

    def _move_funds(self, agr: Agreement, amount: int):
        """All or nothing. Raises InsufficientFunds / InsufficientAllowance."""
        mode = agr.mode
        if isinstance(mode, NativeEscrow):
            if mode.balance < amount:
                raise InsufficientFundsError(f"escrow {mode.balance} < {amount}")
            if agr.direction is Direction.PUSH:
                self.ledger.transfer(self.address, agr.party, amount)
            else:
                self.collected_native += amount
            mode.balance -= amount
        elif isinstance(mode, TokenPull):
            token = self.ledger.token(mode.token)
            recipient = agr.party if agr.direction is Direction.PUSH else self.address
            token.transfer_from(self.address, mode.payer, recipient, amount)
            if agr.direction is Direction.PULL:
                self._collected_tokens[token.address] = self._collected_tokens.get(token.address, 0) + amount
        else:
            raise InvalidStateError(f"unknown payment mode {mode!r}")

    # ============================================================
    # CANCEL / UPDATE / TOP UP
    # ============================================================

    def cancel(self, caller: str, agreement_id: int) -> int:
        """Stop the agreement. Returns the escrow refunded to the party."""
        agr = self._get(agreement_id)
        self._require_manager(caller, agr)
        if not agr.active:
            logger.info(f"Cancel #{agr.id}: already cancelled")
            return 0

        handle = agr.current_schedule_handle
        if handle is not None:
            try:
                if not self.scheduler.cancel_callback(handle):
                    logger.info(f"Cancel #{agr.id}: schedule {handle[-8:]} already gone")
            except Exception as e:
                logger.warning(f"Cancel #{agr.id}: scheduler delete failed ({e}), continuing")
            record = self._history[self._history_by_handle[handle]]
            if not record.is_final:
                record.finalize(ScheduleStatus.CANCELLED)

        self._clear_schedule(agr)
        agr.active = False
        agr.status = ScheduleStatus.CANCELLED

        refund = 0
        if isinstance(agr.mode, NativeEscrow) and agr.mode.balance > 0:
            refund = agr.mode.balance
            self.ledger.transfer(self.address, agr.party, refund)
            agr.mode.balance = 0
            self._emit("EscrowRefunded", agr.id, amount=refund, to=agr.party)

        logger.info(f"CANCELLED #{agr.id} | refund={refund}")
        self._emit("ScheduleCancelled", agr.id, handle=handle, refund=refund)
        return refund

    def update(self, caller: str, agreement_id: int, new_amount: int = 0, new_interval: int = 0):
        """Change future terms. 0 keeps the current value. The pending callback is untouched."""
        agr = self._get(agreement_id)
        self._require_manager(caller, agr)
        new_amount = _check_uint(new_amount, "amount")
        new_interval = _check_uint(new_interval, "interval")
        if new_interval and new_interval < VAULT_LAWS.MIN_INTERVAL:
            raise ValidationError(f"interval {new_interval}s below minimum {VAULT_LAWS.MIN_INTERVAL}s")

        if new_amount:
            agr.amount_per_period = new_amount
        if new_interval:
            agr.interval_seconds = new_interval
        logger.info(f"UPDATED #{agr.id} | amount={agr.amount_per_period} interval={agr.interval_seconds}s")
        self._emit("AgreementUpdated", agr.id, amount=agr.amount_per_period, interval=agr.interval_seconds)

    def top_up(self, caller: str, agreement_id: int, amount: int):
        agr = self._get(agreement_id)
        if not isinstance(agr.mode, NativeEscrow):
            raise ValidationError(f"agreement #{agr.id} is token-funded; nothing to top up")
        if not agr.active:
            raise InvalidStateError(f"agreement #{agr.id} is cancelled")
        if _check_uint(amount, "amount") == 0:
            raise ValidationError("top-up amount must be positive")

        self.ledger.transfer(caller, self.address, amount)
        agr.mode.balance += amount
        logger.info(f"TOP UP #{agr.id} +{amount} | escrow={agr.mode.balance}")
        self._emit("EscrowToppedUp", agr.id, amount=amount, by=normalize_address(caller))

    # ============================================================
    # OWNER
    # ============================================================

    def set_gas_limit(self, caller: str, gas_limit: int):
        self._require_owner(caller)
        if _check_uint(gas_limit, "gas limit") < VAULT_LAWS.MIN_SCHEDULED_GAS_LIMIT:
            raise ValidationError(f"gas limit must be >= {VAULT_LAWS.MIN_SCHEDULED_GAS_LIMIT:,}")
        self.scheduled_call_gas_limit = gas_limit
        self._emit("GasLimitUpdated", gas_limit=gas_limit)

    def withdraw_native(self, caller: str, amount: int):
        """Owner withdraws collected subscription revenue. Escrow is never touchable."""
        self._require_owner(caller)
        if _check_uint(amount, "amount") > self.collected_native:
            raise InsufficientFundsError(f"collected {self.collected_native} < {amount}")
        self.ledger.transfer(self.address, self.owner, amount)
        self.collected_native -= amount
        self._emit("RevenueWithdrawn", amount=amount, token=None)

    def withdraw_tokens(self, caller: str, token: str, amount: int):
        self._require_owner(caller)
        contract = self.ledger.token(token)
        collected = self._collected_tokens.get(contract.address, 0)
        if _check_uint(amount, "amount") > collected:
            raise InsufficientFundsError(f"collected {contract.symbol} {collected} < {amount}")
        contract.transfer(self.address, self.owner, amount)
        self._collected_tokens[contract.address] = collected - amount
        self._emit("RevenueWithdrawn", amount=amount, token=contract.address)

    # ============================================================
    # READ VIEWS
    # ============================================================

    def get_agreement(self, agreement_id: int) -> Agreement:
        return copy.deepcopy(self._get(agreement_id))

    def get_all_agreements(self) -> list[Agreement]:
        return copy.deepcopy(self._agreements)

    def agreement_count(self) -> int:
        return len(self._agreements)

    def find_by_party(self, party: str) -> list[int]:
        try:
            return list(self._by_party.get(normalize_address(party), []))
        except ValidationError:
            return []

    def escrow_balance(self, agreement_id: int) -> int:
        return self._get(agreement_id).escrow_balance

    def collected_tokens(self, token: str) -> int:
        return self._collected_tokens.get(normalize_address(token), 0)

    def history_count(self) -> int:
        return len(self._history)

    def get_history_record(self, index: int) -> HistoryRecord:
        if not 0 <= index < len(self._history):
            raise NotFoundError(f"history record #{index} does not exist")
        return copy.deepcopy(self._history[index])

    def get_history(self, count: int) -> list[HistoryRecord]:
        """Most recent `count` records, oldest first."""
        count = max(0, min(count, VAULT_LAWS.HISTORY_QUERY_MAX, len(self._history)))
        if count == 0:
            return []
        return copy.deepcopy(self._history[-count:])

    def get_agreement_history(self, agreement_id: int) -> list[HistoryRecord]:
        self._get(agreement_id)
        return [copy.deepcopy(r) for r in self._history if r.agreement_id == agreement_id]

    def get_status(self) -> dict:
        """Status for dashboard / debugging."""
        by_status: dict[str, int] = {}
        for agr in self._agreements:
            by_status[agr.status.label] = by_status.get(agr.status.label, 0) + 1
        return {
            "address": self.address,
            "owner": self.owner,
            "agreements": len(self._agreements),
            "max_agreements": VAULT_LAWS.MAX_AGREEMENTS,
            "active": sum(1 for a in self._agreements if a.active),
            "by_status": by_status,
            "history_records": len(self._history),
            "collected_native": self.collected_native,
            "scheduled_call_gas_limit": self.scheduled_call_gas_limit,
            "vault_native_balance": self.ledger.balance_of(self.address),
        }
