from __future__ import annotations

import asyncio
import logging
from typing import Any

from .auth.folder import AuthFolder
from .auth.persist import DebouncedPersister
from .auth.restore import RestoreResult, SessionRestorer
from .auth.store import AuthStore, Database
from .connection.backoff import BackoffPolicy
from .connection.events import CredentialsChanged, IncomingMessage, OpenEvent
from .connection.lifecycle import ConnectionLifecycleManager, ConnectionState
from .connection.socket import SocketFactory
from .dispatch import CommandRateLimiter, MessageDispatcher
from .settings import Settings
from .util.asyncio import cancel_and_wait, spawn
from .util.events import Listener

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_LOGGED_OUT = 1
EXIT_FATAL = 1


class HyperWaBot:
    """
    Process host: database, session restore, socket lifecycle, dispatch.

    With `auth.use_mongo_auth` the auth directory is restored from MongoDB on
    startup and written back (debounced) whenever credentials change;
    otherwise the auth directory on disk is the only copy.
    """

    def __init__(
        self,
        settings: Settings,
        socket_factory: SocketFactory,
        *,
        database: Database | None = None,
    ) -> None:
        self.settings = settings
        self.folder = AuthFolder(settings.auth.auth_dir)
        self.dispatcher = self._build_dispatcher(settings)
        self.database = database
        self.store: AuthStore | None = None
        self.persister: DebouncedPersister | None = None
        self.restore_result: RestoreResult | None = None

        self.lifecycle = ConnectionLifecycleManager(
            self.folder,
            socket_factory,
            backoff=BackoffPolicy.from_settings(settings.backoff),
        )
        self.lifecycle.on_open(self._on_open)
        self.lifecycle.on_qr(self._on_qr)
        self.lifecycle.on_credentials(self._on_credentials)
        self.lifecycle.on_message(self._on_message)
        self.lifecycle.on_terminating(self._on_terminating)
        self.dispatcher.socket_provider = lambda: self.lifecycle.socket
        self.dispatcher.owner_provider = lambda: self.settings.bot.owner

        self._stop = asyncio.Event()
        self._closed = False
        self._tasks: set[asyncio.Task[Any]] = set()

    @staticmethod
    def _build_dispatcher(settings: Settings) -> MessageDispatcher:
        b = settings.bot
        limiter = None
        if b.rate_limiting:
            limiter = CommandRateLimiter(b.rate_limit_commands, b.rate_limit_window_s)
        return MessageDispatcher(
            b.prefix,
            mode=b.mode,
            admins=b.admins,
            blocked_users=b.blocked_users,
            rate_limiter=limiter,
            send_permission_error=b.send_permission_error,
        )

    @property
    def auth_method(self) -> str:
        return "MongoDB" if self.settings.auth.use_mongo_auth else "File-based"

    def connection_state(self) -> ConnectionState:
        return self.lifecycle.state

    def on_connection_open(self, hook: Listener) -> None:
        self.lifecycle.on_open(hook)

    def on_permanent_logout(self, hook: Listener) -> None:
        self.lifecycle.on_logout(hook)

    def on_qr(self, hook: Listener) -> None:
        self.lifecycle.on_qr(hook)

    async def force_logout(self) -> None:
        await self.lifecycle.force_logout()

    async def initialize(self) -> None:
        """
        Prepare persistence and start the socket.

        Raises `StoreUnavailable` when MongoDB auth is enabled but the
        database cannot be reached: without it there is no usable state.
        """

        logger.info("initializing %s v%s (auth: %s)", self.settings.bot.name, self.settings.bot.version, self.auth_method)
        if self.settings.auth.use_mongo_auth:
            if self.database is None:
                self.database = Database(self.settings.mongo)
            await self.database.connect()
            self.store = self.database.auth_store()

            restorer = SessionRestorer(self.store, cleanup=self.settings.auth.corruption_cleanup)
            self.restore_result = await restorer.restore(self.folder.path)
            logger.info("session restore: %s", self.restore_result.value)

            self.persister = DebouncedPersister(
                self.folder, self.store, delay_s=self.settings.auth.debounce_s
            )
            self.lifecycle.store = self.store
        else:
            await self.folder.ensure()

        await self.lifecycle.start()

    async def run(self) -> int:
        """Wait until `shutdown()` or a permanent logout; returns the exit code."""

        stop = asyncio.ensure_future(self._stop.wait())
        logout = asyncio.ensure_future(self.lifecycle.wait_terminated())
        try:
            await asyncio.wait({stop, logout}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop.cancel()
            logout.cancel()
        code = EXIT_LOGGED_OUT if self.lifecycle.terminated else EXIT_OK
        await self.shutdown()
        return code

    def request_stop(self) -> None:
        self._stop.set()

    async def shutdown(self) -> None:
        if self._closed:
            return
        self._closed = True
        logger.info("shutting down %s", self.settings.bot.name)
        self._stop.set()

        await self.lifecycle.shutdown()
        for task in list(self._tasks):
            await cancel_and_wait(task)
        if self.persister is not None:
            # A logged-out session must not be uploaded again.
            await self.persister.aclose(flush=not self.lifecycle.terminated)
        if self.database is not None:
            self.database.close()
        logger.info("shutdown complete")

    async def _on_credentials(self, event: CredentialsChanged) -> None:
        if self.lifecycle.terminated:
            return
        if event.save is not None and self.persister is not None:
            await self.persister.save_creds_and_trigger(event.save)
        elif event.save is not None:
            await event.save()
        elif self.persister is not None:
            self.persister.trigger()

    async def _on_terminating(self) -> None:
        if self.persister is not None:
            await self.persister.aclose(flush=False)

    async def _on_message(self, message: IncomingMessage) -> None:
        # Hooks run on the receive path; a handler awaiting a reply must not block it.
        spawn(self.dispatcher.dispatch(message), name="hyperwa.dispatch", track=self._tasks)

    async def _on_qr(self, payload: str) -> None:
        logger.info("scan the QR code in WhatsApp > Linked devices to pair (%d chars)", len(payload))

    async def _on_open(self, event: OpenEvent) -> None:
        if not self.settings.bot.owner and event.user_id:
            self.settings.bot.owner = event.user_id
            logger.info("owner set to %s", event.user_id)
        if self.settings.bot.send_startup_message:
            spawn(self.send_startup_message(), name="hyperwa.startup", track=self._tasks)

    def startup_message(self) -> str:
        b = self.settings.bot
        return (
            f"*{b.name} v{b.version}* is now online!\n\n"
            f"- Auth method: {self.auth_method}\n"
            f"- Commands: {len(self.dispatcher.commands)}\n"
            f"Type *{b.prefix}help* for available commands."
        )

    async def send_startup_message(self) -> bool:
        owner = self.settings.bot.owner
        sock = self.lifecycle.socket
        if not owner or sock is None:
            return False
        try:
            await sock.send_text(owner, self.startup_message())
        except Exception as e:
            logger.warning("failed to send startup message to %s: %s", owner, e)
            return False
        return True

    def __repr__(self) -> str:
        state: Any = self.lifecycle.state.phase.value
        return f"<HyperWaBot {self.settings.bot.name} {state}>"
