"""Debounced push / on-demand pull of the trips state against the remote store."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, Optional, Set, Tuple

import httpx

from concierge.config import LOG_LEVEL, SYNC_DEBOUNCE_SECONDS, SYNC_TIMEOUT, SYNC_URL

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("[%(levelname)s] %(name)s: %(message)s"))
    logger.addHandler(handler)
logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
logger.propagate = False

IDENTITY_HEADER = "X-User-Email"

SyncSource = Callable[[], Tuple[str, Dict[str, Any]]]


class Debouncer:
    """Cancel-and-reschedule timer bound to the running event loop."""

    def __init__(self, delay: float):
        self.delay = delay
        self._handle: Optional[asyncio.TimerHandle] = None
        self._callback: Optional[Callable[[], None]] = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def call(self, callback: Callable[[], None]) -> bool:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return False
        self.cancel()
        self._callback = callback
        self._handle = loop.call_later(self.delay, self._fire)
        return True

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
        self._handle = None
        self._callback = None

    def fire_now(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._fire()

    def _fire(self) -> None:
        callback = self._callback
        self._handle = None
        self._callback = None
        if callback is not None:
            callback()


class SyncBridge:
    """Fire-and-forget replication of the full trips state per user identity.

    Failures are logged and dropped; there is no retry queue. The next
    mutation starts a fresh debounce cycle and pushes again.
    """

    def __init__(
        self,
        endpoint: str = SYNC_URL,
        *,
        debounce: float = SYNC_DEBOUNCE_SECONDS,
        timeout: float = SYNC_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.endpoint = endpoint
        self.timeout = timeout
        self.transport = transport
        self._debouncer = Debouncer(debounce)
        self._tasks: Set[asyncio.Task] = set()

    @property
    def enabled(self) -> bool:
        return bool(self.endpoint)

    @property
    def pending(self) -> bool:
        return self._debouncer.pending or bool(self._tasks)

    def schedule(self, source: SyncSource) -> None:
        """(Re)start the debounce window; ``source`` is read when it fires."""
        if not self.enabled:
            return

        def _launch() -> None:
            email, trips_state = source()
            if not email:
                return
            task = asyncio.get_running_loop().create_task(self.push(email, trips_state))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        if not self._debouncer.call(_launch):
            logger.debug("No running event loop; remote sync skipped")

    def cancel(self) -> None:
        self._debouncer.cancel()

    async def flush(self) -> None:
        """Push anything still waiting on the debounce timer and wait for in-flight pushes."""
        self._debouncer.fire_now()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
            self._tasks.difference_update([task for task in self._tasks if task.done()])

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    async def push(self, email: str, trips_state: Dict[str, Any]) -> bool:
        try:
            async with self._client() as client:
                response = await client.post(
                    self.endpoint,
                    json={"email": email, "tripsState": trips_state},
                    headers={IDENTITY_HEADER: email},
                )
                response.raise_for_status()
        except Exception:
            logger.warning("Remote sync push failed for %s", email, exc_info=True)
            return False
        logger.debug("Pushed %d trip(s) for %s", len(trips_state.get("trips") or []), email)
        return True

    async def pull(self, email: str) -> Optional[Dict[str, Any]]:
        """Fetch the remote trips state for ``email``; ``None`` when absent or unreachable."""
        if not self.enabled or not email:
            return None
        try:
            async with self._client() as client:
                response = await client.get(self.endpoint, headers={IDENTITY_HEADER: email})
                response.raise_for_status()
                payload = response.json()
        except Exception:
            logger.warning("Remote sync pull failed for %s", email, exc_info=True)
            return None

        trips_state = payload.get("tripsState") if isinstance(payload, dict) else None
        if not isinstance(trips_state, dict):
            return None
        return trips_state
