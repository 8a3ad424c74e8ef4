"""
Local Vault Backend - the vault hosted in-process

Runs RecurringPaymentVault against a SimulatedScheduler and an in-memory
Ledger. A clock task advances the scheduler to wall time once per tick, so
scheduled callbacks fire on their own just as the network's schedule service
fires them.

Design:
- One asyncio.Lock serialises every entrypoint, clock ticks included, so each
  vault call is atomic with respect to all others
- VaultError -> TxResult(success=False); reads raise
- Operator = vault owner; all writes are made as the operator
"""

import asyncio
import logging
import secrets
import threading
import time
from typing import Optional

from eth_account import Account

from vault.errors import VaultError
from vault.ledger import Ledger
from vault.machine import RecurringPaymentVault
from vault.models import Agreement, HistoryRecord, normalize_address
from vault.scheduler import SimulatedScheduler

from .backend import TxResult, VaultBackend
from .config import Settings
from .units import to_smallest_unit

logger = logging.getLogger("spark.local")

LOCAL_TOKEN_SUPPLY = "1000000"     # USDC minted to the operator at boot


class LocalVaultBackend(VaultBackend):

    name = "local"

    def __init__(self, vault: RecurringPaymentVault, operator: str,
                 follow_wall_clock: bool = True, tick_seconds: float = 1.0):
        self.vault = vault
        self._operator = normalize_address(operator)
        self.follow_wall_clock = follow_wall_clock
        self.tick_seconds = tick_seconds
        self._lock: Optional[asyncio.Lock] = None
        self._lock_init_guard = threading.Lock()
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._tx_count = 0

    @property
    def operator_address(self) -> str:
        return self._operator

    @property
    def scheduler(self) -> SimulatedScheduler:
        return self.vault.scheduler

    def get_lock(self) -> asyncio.Lock:
        """Created lazily: __init__ may run outside the event loop."""
        if self._lock is None:
            with self._lock_init_guard:
                if self._lock is None:
                    self._lock = asyncio.Lock()
        return self._lock

    # ============================================================
    # CLOCK
    # ============================================================

    def _sync_clock(self):
        if self.follow_wall_clock:
            fired = self.scheduler.run_until(int(time.time()))
            if fired:
                logger.debug(f"Clock tick delivered {fired} scheduled call(s)")

    async def _clock_loop(self):
        while self._running:
            async with self.get_lock():
                self._sync_clock()
            await asyncio.sleep(self.tick_seconds)

    def start_clock(self):
        if self._task is not None:
            return
        self._running = True
        self._task = asyncio.get_running_loop().create_task(self._clock_loop())
        logger.info(f"Local scheduler clock started (tick={self.tick_seconds}s)")

    async def stop_clock(self):
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    # ============================================================
    # WRITES
    # ============================================================

    async def _call(self, label: str, fn, *args, **kwargs) -> TxResult:
        async with self.get_lock():
            self._sync_clock()
            try:
                value = fn(*args, **kwargs)
            except VaultError as e:
                logger.warning(f"{label} rejected: {e}")
                return TxResult(success=False, error=str(e), error_code=e.code)
        self._tx_count += 1
        return TxResult(success=True, tx_hash="0x" + secrets.token_hex(32), data={"result": value})

    async def _register(self, label: str, fn, *args, **kwargs) -> TxResult:
        result = await self._call(label, fn, *args, **kwargs)
        if result.success:
            result.agreement_id = result.data.pop("result")
        return result

    async def register_agent(self, party, name, amount, interval, token=None) -> TxResult:
        return await self._register(
            "register_agent", self.vault.register_agent, self._operator, party, name, amount, interval, token=token
        )

    async def subscribe_native(self, name, amount, interval, deposit) -> TxResult:
        return await self._register(
            "subscribe_native", self.vault.subscribe_native, self._operator, name, amount, interval, deposit
        )

    async def subscribe_token(self, token, name, amount, interval) -> TxResult:
        return await self._register(
            "subscribe_token", self.vault.subscribe_token, self._operator, token, name, amount, interval
        )

    async def start(self, agreement_id: int) -> TxResult:
        result = await self._call("start", self.vault.start, self._operator, agreement_id)
        if result.success:
            result.data = {"nextPaymentTime": result.data["result"]}
        return result

    async def cancel(self, agreement_id: int) -> TxResult:
        result = await self._call("cancel", self.vault.cancel, self._operator, agreement_id)
        if result.success:
            result.data = {"refunded": str(result.data["result"])}
        return result

    async def retry(self, agreement_id: int) -> TxResult:
        result = await self._call("retry", self.vault.retry, self._operator, agreement_id)
        if result.success:
            result.data = {"nextPaymentTime": result.data["result"]}
        return result

    async def update(self, agreement_id: int, amount: int, interval: int) -> TxResult:
        result = await self._call("update", self.vault.update, self._operator, agreement_id, amount, interval)
        result.data.pop("result", None)
        return result

    async def top_up(self, agreement_id: int, amount: int) -> TxResult:
        result = await self._call("top_up", self.vault.top_up, self._operator, agreement_id, amount)
        result.data.pop("result", None)
        return result

    async def approve_token(self, token: str, amount: int) -> TxResult:
        def _approve():
            return self.vault.ledger.token(token).approve(self._operator, self.vault.address, amount)

        result = await self._call("approve_token", _approve)
        result.data.pop("result", None)
        return result

    async def set_gas_limit(self, gas_limit: int) -> TxResult:
        result = await self._call("set_gas_limit", self.vault.set_gas_limit, self._operator, gas_limit)
        result.data.pop("result", None)
        return result

    # ============================================================
    # READS
    # ============================================================

    async def get_agreement(self, agreement_id: int) -> Agreement:
        return self.vault.get_agreement(agreement_id)

    async def get_all_agreements(self) -> list[Agreement]:
        return self.vault.get_all_agreements()

    async def history_count(self) -> int:
        return self.vault.history_count()

    async def get_history(self, count: int) -> list[HistoryRecord]:
        return self.vault.get_history(count)

    async def get_agreement_history(self, agreement_id: int) -> list[HistoryRecord]:
        return self.vault.get_agreement_history(agreement_id)

    async def find_by_party(self, party: str) -> list[int]:
        return self.vault.find_by_party(party)

    async def collected_native(self) -> int:
        return self.vault.collected_native

    async def vault_native_balance(self) -> int:
        return self.vault.ledger.balance_of(self.vault.address)

    async def token_decimals(self, token: str) -> Optional[int]:
        try:
            return self.vault.ledger.token(token).decimals
        except VaultError:
            return None

    async def token_allowance(self, token: str, owner: str) -> int:
        return self.vault.ledger.token(token).allowance(owner, self.vault.address)

    def get_status(self) -> dict:
        return {
            "backend": self.name,
            "operator": self._operator[:10] + "...",
            "clock_running": self._running,
            "network_time": self.scheduler.now(),
            "pending_callbacks": self.scheduler.pending_count(),
            "tx_count": self._tx_count,
            "vault": self.vault.get_status(),
        }


def create_local_backend(settings: Settings) -> tuple[LocalVaultBackend, str]:
    """
    Boot a self-contained vault: ledger, scheduler, vault, a USDC-like token.
    Returns (backend, token_address).
    """
    if settings.private_key:
        operator = Account.from_key(settings.private_key).address
    else:
        operator = Account.create().address
        logger.info(f"No HEDERA_PRIVATE_KEY: using throwaway local operator {operator[:10]}...")

    ledger = Ledger()
    ledger.credit(operator, to_smallest_unit(settings.local_operator_balance, settings.native_decimals))
    token = ledger.deploy_token(
        "USDC", settings.token_decimals, address=settings.payment_token_address or None
    )
    token.mint(operator, to_smallest_unit(LOCAL_TOKEN_SUPPLY, settings.token_decimals))

    scheduler = SimulatedScheduler(start_time=int(time.time()))
    vault = RecurringPaymentVault(
        owner=operator,
        scheduler=scheduler,
        ledger=ledger,
        default_amount=settings.local_default_amount,
        default_interval=settings.local_default_interval,
    )
    # Token payroll pulls from the owner's allowance; grant it the minted supply
    token.approve(operator, vault.address, token.balance_of(operator))
    logger.info(f"Local vault ready at {vault.address} | owner={operator[:10]}... | token={token.address}")
    return LocalVaultBackend(vault, operator), token.address
