"""
Spark Vault - main entry point

Loads settings, builds the vault backend (in-process or on-chain), wires the
payroll service, poller and API, starts the server.

Usage:
    python main.py                      # local vault, simulated scheduler
    VAULT_BACKEND=chain python main.py  # deployed vault on Hedera
"""

import logging
import re
from contextlib import asynccontextmanager

import uvicorn
from dotenv import load_dotenv

# ============================================================
# BOOTSTRAP
# ============================================================

load_dotenv()

from core.config import Settings, load_settings

SETTINGS = load_settings()

logging.basicConfig(
    level=getattr(logging, SETTINGS.log_level, logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)


class _SecretMaskingFilter(logging.Filter):
    """Redact 64-char hex strings (private keys) from all log output."""
    _PATTERN = re.compile(r'(?<![0-9a-fA-F])([0-9a-fA-F]{64})(?![0-9a-fA-F])')

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        if isinstance(record.msg, str):
            record.msg = self._PATTERN.sub('[REDACTED]', record.msg)
        if record.args:
            try:
                formatted = record.getMessage()
            except (TypeError, ValueError):
                return True
            if self._PATTERN.search(formatted):
                record.msg = self._PATTERN.sub('[REDACTED]', formatted)
                record.args = None
        return True


_mask_filter = _SecretMaskingFilter()
for _h in logging.root.handlers:
    _h.addFilter(_mask_filter)

logger = logging.getLogger("spark.main")


# ============================================================
# MODULE IMPORTS
# ============================================================

from core.backend import VaultBackend
from core.chain import ChainVaultBackend
from core.local import LocalVaultBackend, create_local_backend
from core.payroll import PayrollService
from core.poller import StatusPoller
from api.server import create_app


def build_backend(settings: Settings) -> tuple[VaultBackend, str]:
    """Returns (backend, payment token address)."""
    if settings.backend == "chain":
        backend = ChainVaultBackend()
        if not backend.initialize(settings.private_key, settings.vault_address,
                                  settings.rpc_url, settings.chain_id):
            raise RuntimeError("VAULT_BACKEND=chain but the chain backend could not initialize")
        return backend, settings.payment_token_address
    return create_local_backend(settings)


def create_spark_app(settings: Settings = SETTINGS):
    """Create the fully wired FastAPI app."""
    backend, token_address = build_backend(settings)
    service = PayrollService(backend, settings, token_address)
    poller = StatusPoller(service.subscription_status, interval=settings.status_poll_interval)

    @asynccontextmanager
    async def lifespan(app):
        """Startup and shutdown."""
        logger.info("=" * 60)
        logger.info(f"Spark vault starting | backend={backend.name} | operator={backend.operator_address[:10]}...")
        logger.info("=" * 60)
        if isinstance(backend, LocalVaultBackend):
            backend.start_clock()
        poller.start()

        yield

        logger.info("Spark vault shutting down...")
        await poller.stop()
        if isinstance(backend, LocalVaultBackend):
            await backend.stop_clock()
        logger.info("Goodbye.")

    app = create_app(service, settings, poller=poller)
    app.router.lifespan_context = lifespan
    return app


# ============================================================
# ENTRY POINT
# ============================================================

app = create_spark_app()

if __name__ == "__main__":
    logger.info(f"Starting server on {SETTINGS.host}:{SETTINGS.port}")
    uvicorn.run(
        "main:app",
        host=SETTINGS.host,
        port=SETTINGS.port,
        log_level=SETTINGS.log_level.lower(),
    )
