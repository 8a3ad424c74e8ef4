"""
Vault data model

Agreement (push "agent" or pull "subscription"), the payment mode variants,
the append-only history record, and vault events.

Integer values of ScheduleStatus and the mode `kind` match the contract
enums, so records decoded from chain and records produced in-process are
the same objects.
"""

import time
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import ClassVar, Optional, Union

from web3 import Web3

from .constants import ZERO_ADDRESS
from .errors import HistoryFinalizedError, ValidationError


class ScheduleStatus(IntEnum):
    NONE = 0
    PENDING = 1
    EXECUTED = 2
    FAILED = 3
    CANCELLED = 4

    @property
    def label(self) -> str:
        return self.name.capitalize()


FINAL_STATUSES = (ScheduleStatus.EXECUTED, ScheduleStatus.FAILED, ScheduleStatus.CANCELLED)


class Direction(Enum):
    """Who pays whom each period."""
    PUSH = "push"     # Vault pays the party (payroll agent)
    PULL = "pull"     # Vault charges the party (subscription)


class ExecutionOutcome(Enum):
    EXECUTED = "executed"
    FAILED = "failed"
    IGNORED = "ignored"      # Stale or duplicate callback, no state change


# ============================================================
# ADDRESSES
# ============================================================

def normalize_address(address: str) -> str:
    """Checksum an address. Raises ValidationError on garbage or zero."""
    if not isinstance(address, str) or not Web3.is_address(address):
        raise ValidationError(f"invalid address: {address!r}")
    checksummed = Web3.to_checksum_address(address)
    if checksummed == ZERO_ADDRESS:
        raise ValidationError("zero address not allowed")
    return checksummed


def same_address(a: Optional[str], b: Optional[str]) -> bool:
    if not a or not b:
        return False
    return a.lower() == b.lower()


# ============================================================
# PAYMENT MODES
# ============================================================

@dataclass
class NativeEscrow:
    """Funds held by the vault for this agreement, in tinybar."""
    balance: int = 0
    kind: ClassVar[int] = 0
    label: ClassVar[str] = "HBAR"


@dataclass(frozen=True)
class TokenPull:
    """Each period `amount` is pulled from `payer` via allowance to the vault."""
    token: str
    payer: str
    kind: ClassVar[int] = 1
    label: ClassVar[str] = "Token"


PaymentMode = Union[NativeEscrow, TokenPull]


# ============================================================
# RECORDS
# ============================================================

@dataclass
class Agreement:
    id: int
    party: str
    name: str
    amount_per_period: int
    interval_seconds: int
    direction: Direction
    mode: PaymentMode
    controller: str
    created_at: int = 0
    next_payment_time: int = 0
    current_schedule_handle: Optional[str] = None
    status: ScheduleStatus = ScheduleStatus.NONE
    total_paid: int = 0
    payment_count: int = 0
    active: bool = True

    @property
    def token(self) -> str:
        if isinstance(self.mode, TokenPull):
            return self.mode.token
        return ZERO_ADDRESS

    @property
    def escrow_balance(self) -> int:
        if isinstance(self.mode, NativeEscrow):
            return self.mode.balance
        return 0

    @property
    def is_running(self) -> bool:
        return self.status == ScheduleStatus.PENDING

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "party": self.party,
            "name": self.name,
            "amount_per_period": str(self.amount_per_period),
            "interval_seconds": self.interval_seconds,
            "next_payment_time": self.next_payment_time,
            "current_schedule_handle": self.current_schedule_handle,
            "status": self.status.label,
            "total_paid": str(self.total_paid),
            "payment_count": self.payment_count,
            "active": self.active,
            "direction": self.direction.value,
            "mode": self.mode.label,
            "token": self.token,
            "escrow_balance": str(self.escrow_balance),
            "controller": self.controller,
            "created_at": self.created_at,
        }


@dataclass
class HistoryRecord:
    """
    One scheduled-execution attempt.

    Created Pending when a callback is registered and finalized exactly once.
    Integers are the network clock (seconds).
    """
    agreement_id: int
    schedule_handle: Optional[str]
    scheduled_time: int
    created_at: int
    amount: int
    executed_at: int = 0
    status: ScheduleStatus = ScheduleStatus.PENDING

    @property
    def is_final(self) -> bool:
        return self.status in FINAL_STATUSES

    def finalize(self, status: ScheduleStatus, executed_at: int = 0):
        if self.is_final:
            raise HistoryFinalizedError(
                f"history record for agreement #{self.agreement_id} already {self.status.label}"
            )
        if status not in FINAL_STATUSES:
            raise ValueError(f"{status!r} is not a final status")
        self.status = status
        self.executed_at = executed_at

    def to_dict(self) -> dict:
        return {
            "agreement_id": self.agreement_id,
            "schedule_handle": self.schedule_handle,
            "scheduled_time": self.scheduled_time,
            "created_at": self.created_at,
            "executed_at": self.executed_at,
            "status": self.status.label,
            "amount": str(self.amount),
        }


@dataclass
class VaultEvent:
    name: str
    agreement_id: Optional[int]
    timestamp: int
    data: dict = field(default_factory=dict)
    recorded_at: float = field(default_factory=time.time)
