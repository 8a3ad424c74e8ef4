"""
VAULT LAWS - protocol constants of the recurring payment vault

Hardcoded limits the vault enforces on every agreement. They bound registry
growth and scheduling load; nothing at runtime can change them.
"""

from dataclasses import dataclass
from typing import Final


ZERO_ADDRESS: Final[str] = "0x0000000000000000000000000000000000000000"

# Hedera Schedule Service system contract (HIP-1215). The local scheduler
# uses it as its caller identity so execute() authorisation reads the same.
SCHEDULE_SERVICE_ADDRESS: Final[str] = "0x000000000000000000000000000000000000016b"


@dataclass(frozen=True)
class VaultLaws:
    """Frozen dataclass = immutable at runtime."""

    # --- REGISTRY ---
    MAX_AGREEMENTS: Final[int] = 100                  # Hard cap on agreements ever registered
    MIN_INTERVAL: Final[int] = 10                     # Seconds; prevents scheduling storms

    # --- SCHEDULING ---
    DEFAULT_SCHEDULED_GAS_LIMIT: Final[int] = 1_000_000
    MIN_SCHEDULED_GAS_LIMIT: Final[int] = 400_000     # Below this execute() runs out of gas
    RESCHEDULE_OFFSET_SECONDS: Final[int] = 1         # Capacity retry lands one second later

    # --- QUERIES ---
    HISTORY_QUERY_MAX: Final[int] = 100               # Max records returned by get_history()

    # --- DEFAULT TERMS (deploy parameters) ---
    DEFAULT_AMOUNT: Final[int] = 100_000_000          # 1 HBAR in tinybar
    DEFAULT_INTERVAL: Final[int] = 60


VAULT_LAWS = VaultLaws()
