from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Protocol

from .events import SocketEvent

if TYPE_CHECKING:
    from ..auth.folder import AuthFolder

EventSink = Callable[[SocketEvent], Awaitable[None]]


class SessionSocket(Protocol):
    """What the lifecycle manager and the bot need from a live protocol socket."""

    @property
    def user_id(self) -> str | None: ...

    async def connect(self) -> None: ...

    async def close(self) -> None: ...

    async def send_text(self, jid: str, text: str) -> None: ...


class SocketFactory(Protocol):
    """
    Builds a fresh socket over the local auth directory.

    The socket reports everything through `sink`: connection transitions,
    credential changes (after `creds.json` was rewritten) and messages.
    """

    async def __call__(self, folder: AuthFolder, sink: EventSink) -> SessionSocket: ...
