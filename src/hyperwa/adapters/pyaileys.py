"""
Socket factory backed by the `pyaileys` WhatsApp Web client.

`pyaileys` is an optional dependency (`pip install hyperwa[whatsapp]`); it is
imported when the first socket is built so the rest of the bot, and its
tests, do not need it.
"""

from __future__ import annotations

import dataclasses
import logging
import re
from typing import TYPE_CHECKING, Any

from ..connection.events import (
    ClosedEvent,
    ConnectingEvent,
    CredentialsChanged,
    DisconnectReason,
    IncomingMessage,
    OpenEvent,
    QrEvent,
    jid_user,
)
from ..exceptions import HyperWaError

if TYPE_CHECKING:
    from ..auth.folder import AuthFolder
    from ..connection.socket import EventSink

logger = logging.getLogger(__name__)

_CAMEL = re.compile(r"(?<!^)(?=[A-Z])")

# Values stored verbatim: their inner keys belong to the protocol, not to us.
_OPAQUE_CRED_FIELDS = {"account", "additional_data", "signal_identities", "processed_history_messages"}


def _snake(name: str) -> str:
    return _CAMEL.sub("_", name).lower()


def normalize_creds(d: dict[str, Any]) -> dict[str, Any]:
    """Accept Baileys (camelCase) credentials written by older bot versions."""

    out: dict[str, Any] = {}
    for key, value in d.items():
        k = _snake(key)
        if isinstance(value, dict) and k not in _OPAQUE_CRED_FIELDS:
            value = normalize_creds(value)
        out[k] = value
    return out


def _status_code(raw: str | None) -> int | None:
    if raw and raw.isdigit():
        return int(raw)
    return None


def _load_pyaileys() -> Any:
    try:
        import pyaileys
    except ImportError as e:
        raise HyperWaError(
            "the pyaileys package is required to connect; install hyperwa[whatsapp]"
        ) from e
    return pyaileys


class PyaileysSocket:
    """Adapts a `pyaileys.WhatsAppClient` to the bot's socket protocol."""

    def __init__(self, client: Any, folder: AuthFolder, sink: EventSink) -> None:
        self._client = client
        self._folder = folder
        self._sink = sink
        self._close_code: int | None = None

        client.on("connection.update", self._on_connection_update)
        client.on("creds.update", self._on_creds_update)
        client.on("message.decrypted", self._on_message)
        client.on("cb:stream:error", self._on_stream_error)
        client.on("cb:failure", self._on_failure)

    @property
    def user_id(self) -> str | None:
        me = self._client.socket.auth.creds.me
        return me.id if me else None

    async def connect(self) -> None:
        self._close_code = None
        await self._client.connect()

    async def close(self) -> None:
        await self._client.disconnect()

    async def send_text(self, jid: str, text: str) -> None:
        await self._client.send_text(jid, text)

    async def _on_stream_error(self, node: Any) -> None:
        self._close_code = _status_code(node.attrs.get("code"))

    async def _on_failure(self, node: Any) -> None:
        self._close_code = _status_code(node.attrs.get("reason"))

    async def _on_connection_update(self, update: Any) -> None:
        if update.qr:
            await self._sink(QrEvent(payload=update.qr))
        if update.connection == "connecting":
            # The library reconnects on its own after a 515 restart.
            self._close_code = None
            await self._sink(ConnectingEvent())
        elif update.connection == "open":
            self._close_code = None
            await self._sink(OpenEvent(user_id=self.user_id))
        elif update.connection == "close":
            code, self._close_code = self._close_code, None
            # The library restarts the stream by itself after pairing.
            if code == DisconnectReason.RESTART_REQUIRED:
                logger.debug("stream restart requested by server")
                return
            err = update.last_disconnect
            if code is None and err is not None:
                code = getattr(err, "status_code", None)
            await self._sink(ClosedEvent(status_code=code, error=err))

    async def _on_creds_update(self, creds: Any) -> None:
        async def save() -> None:
            await self._folder.write_creds(dataclasses.asdict(creds))

        await self._sink(CredentialsChanged(save=save))

    async def _on_message(self, ev: dict[str, Any]) -> None:
        chat = ev.get("chat_jid")
        if not chat:
            return
        sender = ev.get("sender_jid")
        # message.decrypted carries no from_me flag; compare against our own account.
        from_me = bool(ev.get("from_me")) or (
            bool(sender) and jid_user(sender) == jid_user(self.user_id)
        )
        await self._sink(
            IncomingMessage(
                chat_jid=str(chat),
                sender_jid=sender,
                text=ev.get("text"),
                from_me=from_me,
                id=ev.get("id"),
                raw=ev,
            )
        )


class PyaileysSocketFactory:
    """Builds a fresh `pyaileys` client over the local auth directory."""

    def __init__(self, *, socket_config: Any | None = None) -> None:
        self.socket_config = socket_config

    async def __call__(self, folder: AuthFolder, sink: EventSink) -> PyaileysSocket:
        pyaileys = _load_pyaileys()
        from pyaileys.auth import AuthenticationState, init_auth_creds
        from pyaileys.auth.serde import creds_from_dict
        from pyaileys.client import ClientConfig
        from pyaileys.socket_config import SocketConfig

        await folder.ensure()
        raw = await folder.read_creds()
        if raw is None:
            creds = init_auth_creds()
            await folder.write_creds(dataclasses.asdict(creds))
            logger.info("no credentials on disk; starting a new pairing")
        else:
            creds = creds_from_dict(normalize_creds(raw))

        auth = AuthenticationState(creds=creds, keys=folder.keys)
        config = ClientConfig(socket=self.socket_config or SocketConfig())
        client = pyaileys.WhatsAppClient(auth=auth, config=config)
        return PyaileysSocket(client, folder, sink)
