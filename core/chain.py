"""
Chain Vault Backend - drives a deployed vault contract over JSON-RPC

Same interface as the local backend, against the contract on Hedera (via the
JSON-RPC relay) or any EVM chain exposing the same ABI.

Design:
- Sync Web3 calls wrapped in run_in_executor() (web3.py async is fragile)
- Embedded minimal ABI (core/abi.py), no compiled artifacts needed
- Gas estimation + 20% buffer; payable calls use a fixed limit because the
  Hedera relay ignores `value` in eth_estimateGas
- Native amounts are tinybar (8 decimals) inside the contract but weibar
  (18 decimals) in a transaction's `value`; the relay converts
- Non-fatal: chain failure -> TxResult(success=False), logged
"""

import asyncio
import logging
from typing import Optional

from eth_account import Account
from web3 import Web3
from web3.logs import DISCARD

from .abi import ERC20_ABI, VAULT_ABI
from .backend import BackendError, TxResult, VaultBackend
from vault.constants import ZERO_ADDRESS
from vault.errors import NotFoundError
from vault.models import (
    Agreement,
    Direction,
    HistoryRecord,
    NativeEscrow,
    ScheduleStatus,
    TokenPull,
)

logger = logging.getLogger("spark.chain")

WEIBAR_PER_TINYBAR = 10 ** 10
PAYABLE_GAS_LIMIT = 3_000_000
FALLBACK_GAS_LIMIT = 1_000_000
RECEIPT_TIMEOUT = 120

_DIRECTIONS = {0: Direction.PUSH, 1: Direction.PULL}


# ============================================================
# DECODING (positional, core/abi.py component order)
# ============================================================

def _handle(addr: str) -> Optional[str]:
    if not addr or int(addr, 16) == 0:
        return None
    return addr


def decode_agreement(idx: int, raw) -> Agreement:
    (party, name, amount, interval, next_time, schedule_addr, status, total_paid,
     payment_count, active, direction, mode, token, payer, controller, escrow, created_at) = raw
    if int(mode) == TokenPull.kind:
        payment_mode = TokenPull(token=token, payer=payer)
    else:
        payment_mode = NativeEscrow(balance=int(escrow))
    return Agreement(
        id=idx,
        party=party,
        name=name,
        amount_per_period=int(amount),
        interval_seconds=int(interval),
        direction=_DIRECTIONS.get(int(direction), Direction.PUSH),
        mode=payment_mode,
        controller=controller,
        created_at=int(created_at),
        next_payment_time=int(next_time),
        current_schedule_handle=_handle(schedule_addr),
        status=ScheduleStatus(int(status)),
        total_paid=int(total_paid),
        payment_count=int(payment_count),
        active=bool(active),
    )


def decode_history(raw) -> HistoryRecord:
    agreement_id, schedule_addr, scheduled_time, created_at, executed_at, status, amount = raw
    return HistoryRecord(
        agreement_id=int(agreement_id),
        schedule_handle=_handle(schedule_addr),
        scheduled_time=int(scheduled_time),
        created_at=int(created_at),
        executed_at=int(executed_at),
        status=ScheduleStatus(int(status)),
        amount=int(amount),
    )


# ============================================================
# CHAIN BACKEND
# ============================================================

class ChainVaultBackend(VaultBackend):
    """
    Usage:
        backend = ChainVaultBackend()
        if backend.initialize(private_key, vault_address, rpc_url, chain_id):
            result = await backend.start(3)
    """

    name = "chain"

    def __init__(self):
        self._initialized: bool = False
        self._private_key: str = ""
        self._operator: str = ""
        self._w3 = None
        self._vault = None
        self._vault_address: str = ""
        self._chain_id: int = 0
        self._last_error: str = ""
        self._tx_count: int = 0

    @property
    def operator_address(self) -> str:
        return self._operator

    def initialize(self, private_key: str, vault_address: str, rpc_url: str, chain_id: int, w3=None) -> bool:
        """Connect to the RPC and bind the vault contract. False if unusable."""

        if not private_key:
            logger.warning("No HEDERA_PRIVATE_KEY — chain backend disabled")
            return False
        if not vault_address:
            logger.warning("No VAULT_ADDRESS — chain backend disabled")
            return False

        try:
            self._operator = Account.from_key(private_key).address
        except Exception as e:
            logger.error(f"Invalid HEDERA_PRIVATE_KEY: {e}")
            return False
        self._private_key = private_key

        try:
            if w3 is None:
                w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": 30}))
                if not w3.is_connected():
                    logger.warning(f"Cannot connect to RPC ({rpc_url})")
                    return False
            self._w3 = w3
            self._vault_address = Web3.to_checksum_address(vault_address)
            self._vault = w3.eth.contract(address=self._vault_address, abi=VAULT_ABI)
            self._chain_id = chain_id
        except Exception as e:
            logger.warning(f"Failed to bind vault contract: {e}")
            return False

        self._initialized = True
        logger.info(
            f"Chain backend connected | vault={self._vault_address[:10]}... | "
            f"operator={self._operator[:10]}... | chain={chain_id}"
        )
        return True

    # ============================================================
    # PLUMBING
    # ============================================================

    def _erc20(self, token: str):
        return self._w3.eth.contract(address=Web3.to_checksum_address(token), abi=ERC20_ABI)

    async def _read(self, fn_name: str, *args, contract=None):
        """Run a view .call() in the executor. Raises BackendError on failure."""
        if not self._initialized:
            raise BackendError("chain backend not initialized")
        try:
            fn = getattr((contract or self._vault).functions, fn_name)(*args)
            return await asyncio.get_running_loop().run_in_executor(None, fn.call)
        except Exception as e:
            self._last_error = f"{type(e).__name__}: {e}"
            raise BackendError(f"{fn_name} read failed: {e}") from e

    async def _send_tx(self, fn_name: str, *args, value_tinybar: int = 0, contract=None) -> TxResult:
        """
        Build, sign, and send a transaction. Handles gas + nonce.

        Args:
            fn_name: contract function (e.g. "startSchedule"), called with *args
            value_tinybar: native value to attach, in tinybar
            contract: target contract, the vault unless given
        """
        if not self._initialized:
            return TxResult(success=False, error="chain backend not initialized", error_code="backend")

        w3 = self._w3
        tx_fn = getattr((contract or self._vault).functions, fn_name)(*args)

        def _execute():
            tx = tx_fn.build_transaction({
                "from": self._operator,
                "nonce": w3.eth.get_transaction_count(self._operator),
                "gasPrice": w3.eth.gas_price,
                "chainId": self._chain_id,
                "value": value_tinybar * WEIBAR_PER_TINYBAR,
                "gas": PAYABLE_GAS_LIMIT,
            })
            if not value_tinybar:
                try:
                    tx["gas"] = int(w3.eth.estimate_gas(tx) * 1.2)
                except Exception as gas_err:
                    # A revert surfaces here first; keep the reason, skip sending
                    if "revert" in str(gas_err).lower():
                        raise
                    logger.warning(f"Gas estimation failed, using {FALLBACK_GAS_LIMIT:,}: {gas_err}")
                    tx["gas"] = FALLBACK_GAS_LIMIT

            signed = w3.eth.account.sign_transaction(tx, self._private_key)
            tx_hash = w3.eth.send_raw_transaction(signed.raw_transaction)
            receipt = w3.eth.wait_for_transaction_receipt(tx_hash, timeout=RECEIPT_TIMEOUT)
            return receipt, tx_hash.hex()

        try:
            receipt, tx_hash_hex = await asyncio.get_running_loop().run_in_executor(None, _execute)
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            code = "reverted" if "revert" in str(e).lower() else "chain"
            logger.warning(f"TX ERROR ({fn_name}): {error}")
            self._last_error = error
            return TxResult(success=False, error=error, error_code=code)

        if receipt["status"] != 1:
            error = f"TX reverted: {tx_hash_hex}"
            logger.warning(f"{fn_name}: {error}")
            self._last_error = error
            return TxResult(success=False, tx_hash=tx_hash_hex, error=error, error_code="reverted")

        self._tx_count += 1
        logger.info(f"TX SUCCESS ({fn_name}): {tx_hash_hex[:16]}... | gas={receipt.get('gasUsed', 0)}")
        return TxResult(success=True, tx_hash=tx_hash_hex, data={"receipt": receipt})

    async def _registered_id(self, result: TxResult) -> TxResult:
        """Pull the new agreement id out of the receipt, else count - 1."""
        receipt = result.data.pop("receipt", None)
        if not result.success:
            return result
        try:
            events = self._vault.events.AgreementRegistered().process_receipt(receipt, errors=DISCARD)
            if events:
                result.agreement_id = int(events[0]["args"]["idx"])
                return result
        except Exception as e:
            logger.debug(f"AgreementRegistered not decoded from receipt: {e}")
        try:
            count = await self._read("getAgreementCount")
        except BackendError as e:
            logger.warning(f"Registered, but agreement id unknown: {e}")
            return result
        result.agreement_id = int(count) - 1
        return result

    @staticmethod
    def _plain(result: TxResult) -> TxResult:
        result.data.pop("receipt", None)
        return result

    # ============================================================
    # WRITES
    # ============================================================

    async def register_agent(self, party, name, amount, interval, token=None) -> TxResult:
        token = Web3.to_checksum_address(token) if token else ZERO_ADDRESS
        result = await self._send_tx("addAgent", Web3.to_checksum_address(party), name, amount, interval, token)
        return await self._registered_id(result)

    async def subscribe_native(self, name, amount, interval, deposit) -> TxResult:
        result = await self._send_tx("subscribeHbar", name, amount, interval, value_tinybar=deposit)
        return await self._registered_id(result)

    async def subscribe_token(self, token, name, amount, interval) -> TxResult:
        result = await self._send_tx("subscribeToken", Web3.to_checksum_address(token), name, amount, interval)
        return await self._registered_id(result)

    async def start(self, agreement_id: int) -> TxResult:
        return self._plain(await self._send_tx("startSchedule", agreement_id))

    async def cancel(self, agreement_id: int) -> TxResult:
        return self._plain(await self._send_tx("cancelSchedule", agreement_id))

    async def retry(self, agreement_id: int) -> TxResult:
        return self._plain(await self._send_tx("retrySchedule", agreement_id))

    async def update(self, agreement_id: int, amount: int, interval: int) -> TxResult:
        return self._plain(await self._send_tx("updateAgreement", agreement_id, amount, interval))

    async def top_up(self, agreement_id: int, amount: int) -> TxResult:
        return self._plain(await self._send_tx("topUp", agreement_id, value_tinybar=amount))

    async def approve_token(self, token: str, amount: int) -> TxResult:
        if not self._initialized:
            return TxResult(success=False, error="chain backend not initialized", error_code="backend")
        erc20 = self._erc20(token)
        return self._plain(await self._send_tx("approve", self._vault_address, amount, contract=erc20))

    async def set_gas_limit(self, gas_limit: int) -> TxResult:
        return self._plain(await self._send_tx("setGasLimit", gas_limit))

    # ============================================================
    # READS
    # ============================================================

    async def get_agreement(self, agreement_id: int) -> Agreement:
        count = int(await self._read("getAgreementCount"))
        if not 0 <= agreement_id < count:
            raise NotFoundError(f"agreement #{agreement_id} does not exist")
        return decode_agreement(agreement_id, await self._read("getAgreement", agreement_id))

    async def get_all_agreements(self) -> list[Agreement]:
        raw = await self._read("getAllAgreements")
        return [decode_agreement(i, r) for i, r in enumerate(raw)]

    async def history_count(self) -> int:
        return int(await self._read("getHistoryCount"))

    async def get_history(self, count: int) -> list[HistoryRecord]:
        if count <= 0:
            return []
        return [decode_history(r) for r in await self._read("getRecentHistory", count)]

    async def get_agreement_history(self, agreement_id: int) -> list[HistoryRecord]:
        count = int(await self._read("getAgreementCount"))
        if not 0 <= agreement_id < count:
            raise NotFoundError(f"agreement #{agreement_id} does not exist")
        return [decode_history(r) for r in await self._read("getAgreementHistory", agreement_id)]

    async def find_by_party(self, party: str) -> list[int]:
        ids = await self._read("getAgreementsByParty", Web3.to_checksum_address(party))
        return [int(i) for i in ids]

    async def collected_native(self) -> int:
        return int(await self._read("getCollectedHbar"))

    async def vault_native_balance(self) -> int:
        return int(await self._read("getVaultBalance"))

    async def token_decimals(self, token: str) -> Optional[int]:
        if not self._initialized:
            return None
        try:
            return int(await self._read("decimals", contract=self._erc20(token)))
        except BackendError as e:
            logger.warning(f"decimals() unreadable for {token}: {e}")
            return None

    async def token_allowance(self, token: str, owner: str) -> int:
        if not self._initialized:
            raise BackendError("chain backend not initialized")
        return int(await self._read(
            "allowance", Web3.to_checksum_address(owner), self._vault_address, contract=self._erc20(token)
        ))

    # ============================================================
    # STATUS
    # ============================================================

    def get_status(self) -> dict:
        return {
            "backend": self.name,
            "initialized": self._initialized,
            "operator": self._operator[:10] + "..." if self._operator else "",
            "vault_address": self._vault_address,
            "chain_id": self._chain_id,
            "tx_count": self._tx_count,
            "last_error": self._last_error,
        }
