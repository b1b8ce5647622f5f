"""
Reconnect state machine for the WhatsApp socket.

Phases:

    idle --start()--> connecting --open--> open
    connecting|open --closed(transient)--> backoff --timer--> connecting
    connecting|open --closed(logged out) / force_logout()--> terminated
    any --shutdown()--> idle

The backoff attempt counter only resets on reaching `open`, so a socket that
keeps failing right after connecting keeps backing off.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from ..auth.folder import AuthFolder
from ..auth.store import AuthStore
from ..exceptions import PermanentLogout, StoreUnavailable, TransientDisconnect
from ..util.asyncio import cancel_and_wait, spawn
from ..util.events import HookRegistry, Listener
from .backoff import BackoffPolicy
from .events import (
    ClosedEvent,
    CloseReason,
    ConnectingEvent,
    ConnectionEvent,
    CredentialsChanged,
    IncomingMessage,
    OpenEvent,
    QrEvent,
    SocketEvent,
    classify_close,
)
from .socket import SessionSocket, SocketFactory

logger = logging.getLogger(__name__)


class Phase(enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    BACKOFF = "backoff"
    TERMINATED = "terminated"


@dataclass(frozen=True, slots=True)
class ConnectionState:
    phase: Phase = Phase.IDLE
    attempt: int = 0
    delay_s: float | None = None
    last_close: CloseReason | None = None


class ConnectionLifecycleManager:
    """
    Drives socket creation, reconnects and logout cleanup.

    Connection events are handled one at a time under a lock. Each socket gets
    a generation number and events from a socket that was already torn down
    are dropped, so a stale close can never schedule a second reconnect.

    Hooks (see `on_open`, `on_logout`, `on_terminating`, `on_qr`,
    `on_backoff`, `on_credentials`, `on_message`) are awaited in order and
    their failures are logged without affecting the state machine.
    """

    def __init__(
        self,
        folder: AuthFolder,
        socket_factory: SocketFactory,
        *,
        backoff: BackoffPolicy | None = None,
        store: AuthStore | None = None,
    ) -> None:
        self.folder = folder
        self.store = store
        self.backoff = backoff or BackoffPolicy()
        self.hooks = HookRegistry()

        self._factory = socket_factory
        self._socket: SessionSocket | None = None
        self._generation = 0
        self._attempt = 0
        self._state = ConnectionState()
        self._lock = asyncio.Lock()
        self._reconnect_handle: asyncio.TimerHandle | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._terminated = asyncio.Event()
        self.last_disconnect: TransientDisconnect | None = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def socket(self) -> SessionSocket | None:
        return self._socket

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_handle is not None

    @property
    def terminated(self) -> bool:
        return self._terminated.is_set()

    def on_open(self, hook: Listener) -> None:
        self.hooks.on("open", hook)

    def on_logout(self, hook: Listener) -> None:
        self.hooks.on("logout", hook)

    def on_qr(self, hook: Listener) -> None:
        self.hooks.on("qr", hook)

    def on_terminating(self, hook: Listener) -> None:
        """Hooks run on logout before the stored session is deleted."""

        self.hooks.on("terminating", hook)

    def on_backoff(self, hook: Listener) -> None:
        self.hooks.on("backoff", hook)

    def on_credentials(self, hook: Listener) -> None:
        self.hooks.on("credentials", hook)

    def on_message(self, hook: Listener) -> None:
        self.hooks.on("message", hook)

    async def start(self) -> None:
        """Create a socket and connect it (`idle|backoff -> connecting`)."""

        async with self._lock:
            if self.terminated:
                raise PermanentLogout("session was logged out; pair the device again")
            self._cancel_timer()
            try:
                sock, gen = await self._open_socket()
            except Exception:
                self._state = ConnectionState(Phase.IDLE, attempt=self._attempt)
                raise
        await self._connect(sock, gen)

    async def handle_event(self, event: SocketEvent) -> None:
        if isinstance(event, CredentialsChanged):
            if self.terminated:
                logger.debug("ignoring credentials update after logout")
            elif self.hooks.listener_count("credentials"):
                await self.hooks.emit("credentials", event)
            elif event.save is not None:
                await event.save()
            return
        if isinstance(event, IncomingMessage):
            await self.hooks.emit("message", event)
            return
        async with self._lock:
            await self._transition(event)

    async def force_logout(self) -> None:
        async with self._lock:
            if self.terminated:
                return
            await self._terminate()

    async def shutdown(self) -> None:
        """Stop without touching the stored session (not a logout)."""

        async with self._lock:
            await self._cancel_reconnect()
            await self._teardown()
            self._attempt = 0
            self._state = ConnectionState(Phase.IDLE, last_close=self._state.last_close)
        logger.info("connection manager stopped")

    async def wait_terminated(self) -> None:
        await self._terminated.wait()

    def _sink_for(self, gen: int) -> Callable[[SocketEvent], Awaitable[None]]:
        async def _sink(event: SocketEvent) -> None:
            # Credentials belong to the account, not to one socket.
            if gen != self._generation and not isinstance(event, CredentialsChanged):
                logger.debug("dropping %s from stale socket #%d", type(event).__name__, gen)
                return
            await self.handle_event(event)

        return _sink

    async def _open_socket(self) -> tuple[SessionSocket, int]:
        await self._teardown()
        gen = self._generation
        self._state = ConnectionState(Phase.CONNECTING, attempt=self._attempt)
        sock = await self._factory(self.folder, self._sink_for(gen))
        self._socket = sock
        logger.info("starting WhatsApp socket #%d", gen)
        return sock, gen

    async def _connect(self, sock: SessionSocket, gen: int) -> None:
        try:
            await sock.connect()
        except Exception as e:
            logger.warning("socket #%d failed to connect: %s", gen, e)
            if gen == self._generation:
                await self.handle_event(
                    ClosedEvent(status_code=getattr(e, "status_code", None), error=e)
                )

    async def _teardown(self) -> None:
        sock = self._socket
        self._socket = None
        # Bump first: the close below may emit events that must be ignored.
        self._generation += 1
        if sock is None:
            return
        logger.debug("closing previous WhatsApp socket")
        try:
            await sock.close()
        except Exception:
            logger.exception("error while closing WhatsApp socket")

    async def _transition(self, event: ConnectionEvent) -> None:
        phase = self._state.phase
        if phase in (Phase.TERMINATED, Phase.IDLE):
            logger.debug("ignoring %s in phase %s", type(event).__name__, phase.value)
            return

        if isinstance(event, QrEvent):
            logger.info("pairing QR code received")
            await self.hooks.emit("qr", event.payload)
        elif isinstance(event, ConnectingEvent):
            if phase is Phase.OPEN:
                self._state = ConnectionState(Phase.CONNECTING, attempt=self._attempt)
        elif isinstance(event, OpenEvent):
            self._attempt = 0
            self._state = ConnectionState(Phase.OPEN)
            logger.info("connected to WhatsApp as %s", event.user_id or "unknown")
            await self.hooks.emit("open", event)
        elif isinstance(event, ClosedEvent):
            if phase is Phase.BACKOFF:
                return
            if classify_close(event) is CloseReason.LOGGED_OUT:
                await self._terminate()
            else:
                await self._schedule_reconnect(event)
        else:
            raise TypeError(f"unknown connection event: {event!r}")

    async def _schedule_reconnect(self, event: ClosedEvent) -> None:
        err = TransientDisconnect(event.status_code)
        err.__cause__ = event.error
        self.last_disconnect = err
        delay = self.backoff.delay_for(self._attempt)
        self._attempt += 1
        self._state = ConnectionState(
            Phase.BACKOFF, attempt=self._attempt, delay_s=delay, last_close=CloseReason.TRANSIENT
        )
        logger.warning(
            "%s; reconnecting in %.1fs (attempt %d)",
            err,
            delay,
            self._attempt,
        )
        self._cancel_timer()
        loop = asyncio.get_running_loop()
        self._reconnect_handle = loop.call_later(delay, self._fire_reconnect)
        await self.hooks.emit("backoff", self._attempt, delay)

    def _fire_reconnect(self) -> None:
        self._reconnect_handle = None
        self._reconnect_task = spawn(self._reconnect(), name="hyperwa.reconnect")

    async def _reconnect(self) -> None:
        async with self._lock:
            if self._state.phase is not Phase.BACKOFF:
                return
            try:
                sock, gen = await self._open_socket()
            except Exception as e:
                logger.exception("failed to create WhatsApp socket")
                await self._schedule_reconnect(ClosedEvent(error=e))
                return
        await self._connect(sock, gen)

    def _cancel_timer(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

    async def _cancel_reconnect(self) -> None:
        self._cancel_timer()
        task, self._reconnect_task = self._reconnect_task, None
        await cancel_and_wait(task)

    async def _terminate(self) -> None:
        await self._cancel_reconnect()
        await self._teardown()
        self._attempt = 0
        self._state = ConnectionState(Phase.TERMINATED, last_close=CloseReason.LOGGED_OUT)
        await self.hooks.emit("terminating")

        if self.store is not None:
            try:
                await self.store.clear()
                logger.info("auth session removed from database")
            except StoreUnavailable:
                logger.exception("failed to clear auth session from database")
        await self.folder.empty()

        logger.error(
            "connection closed permanently: the device was logged out. "
            "Link the bot again (scan a new QR code) to continue."
        )
        await self.hooks.emit("logout")
        self._terminated.set()
