from __future__ import annotations

import enum
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any


class DisconnectReason(enum.IntEnum):
    """Close status codes used by WhatsApp Web (same values as Baileys)."""

    CONNECTION_CLOSED = 428
    CONNECTION_LOST = 408
    CONNECTION_REPLACED = 440
    TIMED_OUT = 408
    LOGGED_OUT = 401
    BAD_SESSION = 500
    RESTART_REQUIRED = 515
    MULTIDEVICE_MISMATCH = 411
    FORBIDDEN = 403
    UNAVAILABLE_SERVICE = 503


class CloseReason(enum.Enum):
    TRANSIENT = "transient"
    LOGGED_OUT = "logged_out"


@dataclass(frozen=True, slots=True)
class ConnectingEvent:
    pass


@dataclass(frozen=True, slots=True)
class OpenEvent:
    user_id: str | None = None


@dataclass(frozen=True, slots=True)
class ClosedEvent:
    status_code: int | None = None
    error: BaseException | None = None


@dataclass(frozen=True, slots=True)
class QrEvent:
    payload: str


@dataclass(frozen=True, slots=True)
class CredentialsChanged:
    """
    The protocol library has new credentials.

    `save` writes them to `creds.json`; the host decides when to call it so
    the write and the upload trigger happen together.
    """

    save: Callable[[], Awaitable[None]] | None = None


@dataclass(frozen=True, slots=True)
class IncomingMessage:
    chat_jid: str
    sender_jid: str | None
    text: str | None
    from_me: bool = False
    id: str | None = None
    raw: Any | None = None


ConnectionEvent = ConnectingEvent | OpenEvent | ClosedEvent | QrEvent
SocketEvent = ConnectionEvent | CredentialsChanged | IncomingMessage


def classify_close(event: ClosedEvent) -> CloseReason:
    # Only the logged-out code is terminal; everything else is retried.
    if event.status_code == DisconnectReason.LOGGED_OUT:
        return CloseReason.LOGGED_OUT
    return CloseReason.TRANSIENT


def jid_user(jid: str | None) -> str:
    """`"1555:3@s.whatsapp.net"` -> `"1555"` (device and server dropped)."""

    if not jid:
        return ""
    return jid.split("@", 1)[0].split(":", 1)[0]
