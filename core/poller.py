"""
Status Poller - keeps a cached vault snapshot fresh.

Background task refreshes the aggregated subscription status every
STATUS_POLL_INTERVAL seconds (30 by default). Readers get the last good
snapshot; being up to one interval stale is expected. A failed fetch is
logged and the previous snapshot kept.

Sources:
- PayrollService.subscription_status (same process)
- RemoteStatusSource (another server's /subscription/status over HTTP)
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

import aiohttp

logger = logging.getLogger("spark.poller")

POLL_INTERVAL = 30  # seconds
REQUEST_TIMEOUT = 15

StatusSource = Callable[[], Awaitable[dict]]


class RemoteStatusSource:
    """GET {base_url}/subscription/status, returns the decoded JSON body."""

    def __init__(self, base_url: str, http_client: Optional[aiohttp.ClientSession] = None):
        self.url = base_url.rstrip("/") + "/subscription/status"
        self._client = http_client

    async def __call__(self) -> dict:
        if self._client is not None:
            return await self._fetch(self._client)
        async with aiohttp.ClientSession() as session:
            return await self._fetch(session)

    async def _fetch(self, session: aiohttp.ClientSession) -> dict:
        async with session.get(self.url, timeout=aiohttp.ClientTimeout(total=REQUEST_TIMEOUT)) as resp:
            if resp.status != 200:
                raise RuntimeError(f"{self.url} returned HTTP {resp.status}")
            return await resp.json()


class StatusPoller:
    """Polls a status source and caches the result."""

    def __init__(self, source: StatusSource, interval: int = POLL_INTERVAL):
        self.source = source
        self.interval = interval
        self._snapshot: Optional[dict] = None
        self.last_updated: float = 0.0
        self.last_error: str = ""
        self.poll_count = 0
        self.error_count = 0
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def poll_once(self) -> bool:
        """One fetch. True if the snapshot was replaced."""
        try:
            snapshot = await self.source()
        except Exception as e:
            self.error_count += 1
            self.last_error = f"{type(e).__name__}: {e}"
            logger.warning(f"Status poll failed, keeping last snapshot: {self.last_error}")
            return False
        self._snapshot = snapshot
        self.last_updated = time.time()
        self.poll_count += 1
        return True

    async def _loop(self):
        while self._running:
            await self.poll_once()
            await asyncio.sleep(self.interval)

    def start(self):
        if self._task is not None:
            return
        self._running = True
        self._task = asyncio.get_running_loop().create_task(self._loop())
        logger.info(f"Status poller started (every {self.interval}s)")

    async def stop(self):
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    def snapshot(self) -> Optional[dict]:
        """Last good snapshot with its age, or None before the first success."""
        if self._snapshot is None:
            return None
        out = dict(self._snapshot)
        out["polledAt"] = self.last_updated
        out["ageSeconds"] = round(time.time() - self.last_updated, 1)
        return out

    def get_status(self) -> dict:
        return {
            "running": self._running,
            "poll_interval_seconds": self.interval,
            "poll_count": self.poll_count,
            "error_count": self.error_count,
            "last_updated": self.last_updated,
            "last_error": self.last_error,
        }
