from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from ..exceptions import PackError
from ..util.asyncio import spawn
from .archive import pack_async
from .folder import AuthFolder
from .store import AuthStore

logger = logging.getLogger(__name__)


class DebounceScheduler:
    """
    Trailing-edge debounce around one async callback.

    Owns a single timer handle: `schedule()` cancels the outstanding handle
    and arms a new one `delay_s` from now, `cancel()` disarms it. Callbacks
    that already fired keep running; `wait_idle()` waits for them.
    """

    def __init__(self, delay_s: float, callback: Callable[[], Awaitable[None]]) -> None:
        self.delay_s = delay_s
        self._callback = callback
        self._handle: asyncio.TimerHandle | None = None
        self._running: set[asyncio.Task[None]] = set()

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def schedule(self) -> None:
        self.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.delay_s, self._fire)

    def cancel(self) -> bool:
        if self._handle is None:
            return False
        self._handle.cancel()
        self._handle = None
        return True

    def _fire(self) -> None:
        self._handle = None
        spawn(self._callback(), name="hyperwa.debounce", track=self._running)

    async def wait_idle(self) -> None:
        while self._running:
            await asyncio.gather(*list(self._running), return_exceptions=True)


class DebouncedPersister:
    """
    Coalesces credential updates into archive uploads.

    Every `trigger()` pushes the upload back to `delay_s` after the latest
    update, so a burst of N updates results in a single upload of the final
    auth directory. Uploads are serialized with a lock and their failures are
    logged, never raised: the next trigger simply tries again.
    """

    def __init__(self, folder: AuthFolder, store: AuthStore, *, delay_s: float = 10.0) -> None:
        self.folder = folder
        self.store = store
        self._lock = asyncio.Lock()
        self._scheduler = DebounceScheduler(delay_s, self._persist_scheduled)
        self.persist_count = 0

    @property
    def pending(self) -> bool:
        return self._scheduler.pending

    def trigger(self) -> None:
        self._scheduler.schedule()

    async def save_creds_and_trigger(self, write: Callable[[], Awaitable[None]]) -> None:
        """Run the protocol library's own creds write, then schedule an upload."""

        await write()
        self.trigger()

    async def persist_now(self) -> None:
        async with self._lock:
            if not self.folder.creds_path.exists():
                raise PackError(f"{self.folder.creds_path} is missing; nothing to save")
            data = await pack_async(self.folder.archive_paths(), self.folder.path)
            await self.store.save(data)
            self.persist_count += 1
        logger.info("session saved to database (%d bytes)", len(data))

    async def _persist_scheduled(self) -> None:
        try:
            await self.persist_now()
        except Exception:
            logger.exception("failed to save session to database")

    async def aclose(self, *, flush: bool = True) -> None:
        was_pending = self._scheduler.cancel()
        if was_pending and flush:
            await self._persist_scheduled()
        await self._scheduler.wait_idle()
