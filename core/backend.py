"""
Vault backends - the contract between off-chain callers and a vault.

Two implementations share this interface:
- LocalVaultBackend (core/local.py): vault hosted in-process
- ChainVaultBackend (core/chain.py): deployed contract via web3

Writes never raise: they return TxResult(success=False, error=...) so the
HTTP layer can surface the reason string. Reads raise VaultError (unknown id)
or BackendError (transport failure).
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

from vault.models import Agreement, HistoryRecord


class BackendError(Exception):
    """The backend could not reach or decode the vault."""
    code = "backend"


class TxFailedError(Exception):
    """A write came back success=False; carries the TxResult for the caller."""

    def __init__(self, result: "TxResult"):
        super().__init__(result.error or "transaction failed")
        self.result = result
        self.code = result.error_code or "backend"


@dataclass
class TxResult:
    """Result of a vault write."""
    success: bool
    tx_hash: str = ""
    agreement_id: Optional[int] = None
    error: str = ""
    error_code: str = ""
    data: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        out = {"success": self.success}
        if self.tx_hash:
            out["txHash"] = self.tx_hash
        if self.agreement_id is not None:
            out["agreementId"] = self.agreement_id
        if not self.success:
            out["error"] = self.error
        out.update(self.data)
        return out


class VaultBackend(ABC):

    name: str = "abstract"

    @property
    @abstractmethod
    def operator_address(self) -> str:
        """Account the backend signs / calls as."""
        ...

    @abstractmethod
    def get_status(self) -> dict:
        ...

    # ============================================================
    # WRITES
    # ============================================================

    @abstractmethod
    async def register_agent(self, party: str, name: str, amount: int, interval: int,
                             token: Optional[str] = None) -> TxResult:
        ...

    @abstractmethod
    async def subscribe_native(self, name: str, amount: int, interval: int, deposit: int) -> TxResult:
        ...

    @abstractmethod
    async def subscribe_token(self, token: str, name: str, amount: int, interval: int) -> TxResult:
        ...

    @abstractmethod
    async def start(self, agreement_id: int) -> TxResult:
        ...

    @abstractmethod
    async def cancel(self, agreement_id: int) -> TxResult:
        ...

    @abstractmethod
    async def retry(self, agreement_id: int) -> TxResult:
        ...

    @abstractmethod
    async def update(self, agreement_id: int, amount: int, interval: int) -> TxResult:
        ...

    @abstractmethod
    async def top_up(self, agreement_id: int, amount: int) -> TxResult:
        ...

    @abstractmethod
    async def approve_token(self, token: str, amount: int) -> TxResult:
        """Operator approves the vault to pull `amount` of `token`."""
        ...

    @abstractmethod
    async def set_gas_limit(self, gas_limit: int) -> TxResult:
        ...

    # ============================================================
    # READS
    # ============================================================

    @abstractmethod
    async def get_agreement(self, agreement_id: int) -> Agreement:
        ...

    @abstractmethod
    async def get_all_agreements(self) -> list[Agreement]:
        ...

    @abstractmethod
    async def history_count(self) -> int:
        ...

    @abstractmethod
    async def get_history(self, count: int) -> list[HistoryRecord]:
        """Most recent `count` records, oldest first."""
        ...

    @abstractmethod
    async def get_agreement_history(self, agreement_id: int) -> list[HistoryRecord]:
        """Every record for one agreement, oldest first. NotFoundError if unknown."""
        ...

    @abstractmethod
    async def find_by_party(self, party: str) -> list[int]:
        ...

    @abstractmethod
    async def collected_native(self) -> int:
        ...

    @abstractmethod
    async def vault_native_balance(self) -> int:
        ...

    @abstractmethod
    async def token_decimals(self, token: str) -> Optional[int]:
        """decimals() of a token contract, None if it cannot be read."""
        ...

    @abstractmethod
    async def token_allowance(self, token: str, owner: str) -> int:
        """How much `owner` has approved the vault to pull."""
        ...
