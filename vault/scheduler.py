"""
Scheduling adapter - "invoke this contract method at this future time"

Scheduler (ABC) is the capability the vault consumes:
- schedule_callback(target_time, call, gas_limit) -> handle
- cancel_callback(handle) -> bool (False when already gone)
- now() -> network clock

SimulatedScheduler is an in-process implementation with the properties the
real schedule service has: per-second capacity, at-least-once delivery at or
after the target time, and synchronous registration failure. Time only moves
when advance()/run_until() is called, so callbacks are messages, not sleeping
threads.
"""

import heapq
import itertools
import logging
import time
from abc import ABC, abstractmethod
from collections import OrderedDict, deque
from dataclasses import dataclass
from typing import Callable, Optional

from .constants import SCHEDULE_SERVICE_ADDRESS
from .errors import SchedulerCapacityError

logger = logging.getLogger("spark.scheduler")

RECENT_DELIVERIES = 1000     # fired callbacks kept for redeliver()
DELIVERY_LOG_SIZE = 1000


@dataclass(frozen=True)
class ScheduledCall:
    """
    Payload of a registration: which receiver to invoke for which agreement.

    receiver is called as receiver(caller=<scheduler address>,
    agreement_id=..., handle=<registration handle>).
    """
    receiver: Callable
    agreement_id: int
    method: str = "execute"


@dataclass
class _Registration:
    handle: str
    target_time: int
    call: ScheduledCall
    gas_limit: int
    created_at: int


class Scheduler(ABC):

    @property
    @abstractmethod
    def address(self) -> str:
        """Caller identity the scheduler uses when it invokes a receiver."""
        ...

    @abstractmethod
    def now(self) -> int:
        ...

    @abstractmethod
    def schedule_callback(self, target_time: int, call: ScheduledCall, gas_limit: int) -> str:
        """Register a one-shot callback. Raises SchedulerCapacityError when full."""
        ...

    @abstractmethod
    def cancel_callback(self, handle: str) -> bool:
        ...


class SimulatedScheduler(Scheduler):
    """
    In-memory schedule service.

    capacity_per_second: max callbacks that may target the same second.
    max_pending: max undelivered callbacks overall (None = unbounded).
    """

    def __init__(
        self,
        start_time: Optional[int] = None,
        capacity_per_second: int = 10,
        max_pending: Optional[int] = None,
        address: str = SCHEDULE_SERVICE_ADDRESS,
    ):
        self._address = address
        self._now: int = int(start_time if start_time is not None else time.time())
        self.capacity_per_second = capacity_per_second
        self.max_pending = max_pending
        self._registrations: dict[str, _Registration] = {}     # pending only
        self._recent: OrderedDict[str, _Registration] = OrderedDict()
        self._queue: list[tuple[int, int, str]] = []     # (target_time, seq, handle)
        self._seq = itertools.count()
        self._per_second: dict[int, int] = {}
        self.delivery_log: deque[tuple[int, str, object]] = deque(maxlen=DELIVERY_LOG_SIZE)  # (time, handle, receiver result)

    @property
    def address(self) -> str:
        return self._address

    def now(self) -> int:
        return self._now

    # ============================================================
    # REGISTRATION
    # ============================================================

    def schedule_callback(self, target_time: int, call: ScheduledCall, gas_limit: int) -> str:
        target_time = int(target_time)
        if target_time <= self._now:
            raise ValueError(f"target time {target_time} is not in the future (now={self._now})")
        if self._per_second.get(target_time, 0) >= self.capacity_per_second:
            raise SchedulerCapacityError(f"no capacity left at t={target_time}")
        if self.max_pending is not None and self.pending_count() >= self.max_pending:
            raise SchedulerCapacityError(f"{self.max_pending} callbacks already pending")

        seq = next(self._seq)
        handle = f"0x{0x5c_0000_0000 + seq:040x}"
        self._registrations[handle] = _Registration(
            handle=handle,
            target_time=target_time,
            call=call,
            gas_limit=gas_limit,
            created_at=self._now,
        )
        self._per_second[target_time] = self._per_second.get(target_time, 0) + 1
        heapq.heappush(self._queue, (target_time, seq, handle))
        logger.debug(
            f"Scheduled {call.method}(#{call.agreement_id}) at t={target_time} "
            f"handle={handle[-8:]} gas={gas_limit}"
        )
        return handle

    def cancel_callback(self, handle: str) -> bool:
        reg = self._registrations.pop(handle, None)
        if reg is None:
            return False
        self._release(reg)
        logger.debug(f"Cancelled schedule {handle[-8:]}")
        return True

    def _release(self, reg: _Registration):
        left = self._per_second[reg.target_time] - 1
        if left:
            self._per_second[reg.target_time] = left
        else:
            del self._per_second[reg.target_time]

    # ============================================================
    # DELIVERY
    # ============================================================

    def pending_count(self) -> int:
        return len(self._registrations)

    def pending_handles(self) -> list[str]:
        return list(self._registrations)

    def is_pending(self, handle: str) -> bool:
        return handle in self._registrations

    def target_time(self, handle: str) -> Optional[int]:
        reg = self._registrations.get(handle) or self._recent.get(handle)
        return reg.target_time if reg else None

    def next_due_time(self) -> Optional[int]:
        while self._queue:
            target_time, _, handle = self._queue[0]
            if handle not in self._registrations:
                heapq.heappop(self._queue)
                continue
            return target_time
        return None

    def run_until(self, timestamp: int) -> int:
        """
        Move the clock to `timestamp`, delivering every callback due on the way
        in target-time order. Callbacks registered during delivery are delivered
        too if they fall due before `timestamp`. Returns deliveries made.
        """
        delivered = 0
        while True:
            due = self.next_due_time()
            if due is None or due > timestamp:
                break
            _, _, handle = heapq.heappop(self._queue)
            self._now = max(self._now, due)
            self._deliver(self._registrations.pop(handle))
            delivered += 1
        self._now = max(self._now, int(timestamp))
        return delivered

    def advance(self, seconds: int) -> int:
        return self.run_until(self._now + int(seconds))

    def redeliver(self, handle: str):
        """Deliver a recently fired callback again (at-least-once duplicate)."""
        reg = self._recent.get(handle)
        if reg is None:
            raise KeyError(handle)
        logger.debug(f"Duplicate delivery of {handle[-8:]}")
        return self._invoke(reg)

    def _deliver(self, reg: _Registration):
        self._release(reg)
        self._recent[reg.handle] = reg
        if len(self._recent) > RECENT_DELIVERIES:
            self._recent.popitem(last=False)
        self._invoke(reg)

    def _invoke(self, reg: _Registration):
        try:
            result = reg.call.receiver(
                caller=self._address,
                agreement_id=reg.call.agreement_id,
                handle=reg.handle,
            )
        except Exception as e:
            # A reverted scheduled transaction does not stop the service.
            logger.warning(f"Scheduled {reg.call.method}(#{reg.call.agreement_id}) reverted: {e}")
            result = e
        self.delivery_log.append((self._now, reg.handle, result))
        return result
