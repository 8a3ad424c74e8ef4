"""
Runtime configuration, read once from the environment (.env via python-dotenv
in main.py).
"""

import os
from dataclasses import dataclass
from typing import Optional

from .units import NATIVE_DECIMALS, TOKEN_DECIMALS


HEDERA_TESTNET = {
    "rpc": "https://testnet.hashio.io/api",
    "chain_id": 296,
    "explorer": "https://hashscan.io/testnet",
    "native_symbol": "HBAR",
}


@dataclass(frozen=True)
class Settings:
    backend: str = "local"                      # "local" | "chain"
    rpc_url: str = HEDERA_TESTNET["rpc"]
    chain_id: int = HEDERA_TESTNET["chain_id"]
    explorer_url: str = HEDERA_TESTNET["explorer"]
    private_key: str = ""
    vault_address: str = ""
    payment_token_address: str = ""
    native_decimals: int = NATIVE_DECIMALS
    token_decimals: int = TOKEN_DECIMALS
    status_poll_interval: int = 30
    contributor_payout_amount: str = "1"        # human units of the payment token
    contributor_payout_interval: int = 10
    local_operator_balance: str = "1000"        # native, human units
    local_default_amount: int = 100_000_000     # 1 HBAR in tinybar
    local_default_interval: int = 60
    cors_origins: tuple[str, ...] = ("*",)
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"

    def explorer_tx_url(self, tx_hash: str) -> str:
        return f"{self.explorer_url}/transaction/{tx_hash}"


def load_settings(env: Optional[dict] = None) -> Settings:
    """Build Settings from os.environ (or an explicit mapping, for tests)."""
    get = (os.environ if env is None else env).get

    backend = get("VAULT_BACKEND", "local").strip().lower()
    if backend not in ("local", "chain"):
        raise ValueError(f"VAULT_BACKEND must be 'local' or 'chain', got {backend!r}")

    def _num(name: str, default: int) -> int:
        raw = get(name)
        if raw is None or raw.strip() == "":
            return default
        try:
            return int(raw)
        except ValueError:
            raise ValueError(f"{name} must be an integer, got {raw!r}") from None

    return Settings(
        backend=backend,
        rpc_url=get("HEDERA_RPC_URL", HEDERA_TESTNET["rpc"]),
        chain_id=_num("HEDERA_CHAIN_ID", HEDERA_TESTNET["chain_id"]),
        explorer_url=get("EXPLORER_URL", HEDERA_TESTNET["explorer"]),
        private_key=get("HEDERA_PRIVATE_KEY", ""),
        vault_address=get("VAULT_ADDRESS", ""),
        payment_token_address=get("PAYMENT_TOKEN_ADDRESS", ""),
        native_decimals=_num("NATIVE_DECIMALS", NATIVE_DECIMALS),
        token_decimals=_num("TOKEN_DECIMALS", TOKEN_DECIMALS),
        status_poll_interval=_num("STATUS_POLL_INTERVAL", 30),
        contributor_payout_amount=get("CONTRIBUTOR_PAYOUT_AMOUNT", "1"),
        contributor_payout_interval=_num("CONTRIBUTOR_PAYOUT_INTERVAL", 10),
        local_operator_balance=get("LOCAL_OPERATOR_BALANCE", "1000"),
        local_default_amount=_num("LOCAL_DEFAULT_AMOUNT", 100_000_000),
        local_default_interval=_num("LOCAL_DEFAULT_INTERVAL", 60),
        cors_origins=tuple(o.strip() for o in get("CORS_ORIGINS", "*").split(",") if o.strip()),
        host=get("HOST", "0.0.0.0"),
        port=_num("PORT", 8000),
        log_level=get("LOG_LEVEL", "INFO").upper(),
    )
