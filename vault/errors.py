"""
Vault errors.

Every error carries a short machine `code` so off-chain callers can map it
to a transport status without string matching.
"""


class VaultError(Exception):
    """Base class for every rejection raised by the vault."""
    code = "vault_error"


class ValidationError(VaultError):
    """Bad interval, bad amount, malformed address, empty name."""
    code = "validation"


class CapacityError(VaultError):
    """Registry already holds MAX_AGREEMENTS agreements."""
    code = "capacity"


class NotFoundError(VaultError):
    code = "not_found"


class UnauthorizedError(VaultError):
    """Caller is not allowed to invoke this entrypoint."""
    code = "unauthorized"


class AlreadyRunningError(VaultError):
    """Agreement already has a pending scheduled callback."""
    code = "already_running"


class InvalidStateError(VaultError):
    code = "invalid_state"


class SchedulerUnavailableError(VaultError):
    """Scheduler refused the registration twice (capacity exhausted)."""
    code = "scheduler_unavailable"


class HistoryFinalizedError(VaultError):
    """A finalized history record was asked to change."""
    code = "history_finalized"


# ============================================================
# LEDGER
# ============================================================

class LedgerError(VaultError):
    code = "ledger"


class InsufficientFundsError(LedgerError):
    code = "insufficient_funds"


class InsufficientAllowanceError(LedgerError):
    code = "insufficient_allowance"


# ============================================================
# SCHEDULER
# ============================================================

class SchedulerCapacityError(Exception):
    """Raised by a scheduler when it cannot accept another callback."""
    pass
