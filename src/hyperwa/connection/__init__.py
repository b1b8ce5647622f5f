from __future__ import annotations

from .backoff import BackoffPolicy
from .events import (
    ClosedEvent,
    CloseReason,
    ConnectingEvent,
    ConnectionEvent,
    CredentialsChanged,
    DisconnectReason,
    IncomingMessage,
    OpenEvent,
    QrEvent,
    SocketEvent,
    classify_close,
    jid_user,
)
from .lifecycle import ConnectionLifecycleManager, ConnectionState, Phase
from .socket import EventSink, SessionSocket, SocketFactory

__all__ = [
    "BackoffPolicy",
    "CloseReason",
    "ClosedEvent",
    "ConnectingEvent",
    "ConnectionEvent",
    "ConnectionLifecycleManager",
    "ConnectionState",
    "CredentialsChanged",
    "DisconnectReason",
    "EventSink",
    "IncomingMessage",
    "OpenEvent",
    "Phase",
    "QrEvent",
    "SessionSocket",
    "SocketEvent",
    "SocketFactory",
    "classify_close",
    "jid_user",
]
