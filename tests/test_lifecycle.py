from __future__ import annotations

import asyncio

import pytest

from fakes import FakeCollection, FakeSocketFactory, sample_creds, wait_until
from hyperwa.auth.folder import AuthFolder
from hyperwa.auth.store import AuthStore
from hyperwa.connection import (
    BackoffPolicy,
    ClosedEvent,
    CloseReason,
    ConnectionLifecycleManager,
    CredentialsChanged,
    DisconnectReason,
    IncomingMessage,
    OpenEvent,
    Phase,
    QrEvent,
)
from hyperwa.exceptions import PermanentLogout

CLOSED = ClosedEvent(status_code=DisconnectReason.CONNECTION_CLOSED)
LOGGED_OUT = ClosedEvent(status_code=DisconnectReason.LOGGED_OUT)


def _manager(tmp_path, factory: FakeSocketFactory, *, base_s: float = 0.01, max_s: float = 0.04, store=None):
    return ConnectionLifecycleManager(
        AuthFolder(tmp_path / "auth"),
        factory,
        backoff=BackoffPolicy(base_s=base_s, max_s=max_s),
        store=store,
    )


@pytest.mark.asyncio
async def test_start_connects_socket(tmp_path) -> None:
    factory = FakeSocketFactory()
    lm = _manager(tmp_path, factory)

    await lm.start()

    assert len(factory.sockets) == 1
    assert factory.latest.connected
    assert lm.state.phase is Phase.CONNECTING
    assert lm.socket is factory.latest


@pytest.mark.asyncio
async def test_backoff_doubles_up_to_cap(tmp_path) -> None:
    factory = FakeSocketFactory()
    lm = _manager(tmp_path, factory)
    seen: list[tuple[int, float]] = []
    lm.on_backoff(lambda attempt, delay: seen.append((attempt, delay)))

    await lm.start()
    for n in range(1, 6):
        await factory.latest.emit(CLOSED)
        assert lm.state.phase is Phase.BACKOFF
        await wait_until(lambda n=n: len(factory.sockets) == n + 1)

    assert seen == [(1, 0.01), (2, 0.02), (3, 0.04), (4, 0.04), (5, 0.04)]
    # Every replaced socket was closed before its successor was created.
    assert all(s.closed for s in factory.sockets[:-1])
    await lm.shutdown()


@pytest.mark.asyncio
async def test_open_resets_attempts(tmp_path) -> None:
    factory = FakeSocketFactory()
    lm = _manager(tmp_path, factory)
    opened: list[OpenEvent] = []
    lm.on_open(opened.append)

    await lm.start()
    await factory.latest.emit(CLOSED)
    await wait_until(lambda: len(factory.sockets) == 2)
    await factory.latest.emit(CLOSED)
    assert lm.state.attempt == 2
    await wait_until(lambda: len(factory.sockets) == 3)

    await factory.latest.emit(OpenEvent(user_id="1@s.whatsapp.net"))
    assert lm.state.phase is Phase.OPEN
    assert lm.state.attempt == 0
    assert opened == [OpenEvent(user_id="1@s.whatsapp.net")]

    await factory.latest.emit(CLOSED)
    assert lm.state.attempt == 1
    assert lm.state.delay_s == 0.01
    await lm.shutdown()


@pytest.mark.asyncio
async def test_second_close_during_backoff_is_ignored(tmp_path) -> None:
    factory = FakeSocketFactory()
    lm = _manager(tmp_path, factory, base_s=0.05, max_s=0.05)
    seen: list[int] = []
    lm.on_backoff(lambda attempt, delay: seen.append(attempt))

    await lm.start()
    await factory.latest.emit(CLOSED)
    await factory.latest.emit(ClosedEvent(status_code=DisconnectReason.CONNECTION_LOST))

    assert seen == [1]
    await wait_until(lambda: len(factory.sockets) == 2)
    await asyncio.sleep(0.1)
    assert len(factory.sockets) == 2


@pytest.mark.asyncio
async def test_events_from_replaced_socket_are_dropped(tmp_path) -> None:
    factory = FakeSocketFactory()
    lm = _manager(tmp_path, factory)
    seen: list[int] = []
    lm.on_backoff(lambda attempt, delay: seen.append(attempt))

    await lm.start()
    old = factory.latest
    await old.emit(CLOSED)
    await wait_until(lambda: len(factory.sockets) == 2)

    await old.emit(CLOSED)
    await old.emit(LOGGED_OUT)

    assert seen == [1]
    assert lm.state.phase is Phase.CONNECTING
    assert not lm.reconnect_pending
    assert not lm.terminated


@pytest.mark.asyncio
async def test_logout_is_terminal(tmp_path) -> None:
    coll = FakeCollection()
    store = AuthStore(coll)
    await store.save(b"archive")
    factory = FakeSocketFactory()
    lm = _manager(tmp_path, factory, store=store)
    await lm.folder.write_creds(sample_creds())
    order: list[str] = []
    lm.on_terminating(lambda: order.append("terminating"))
    lm.on_logout(lambda: order.append("logout"))

    await lm.start()
    await factory.latest.emit(LOGGED_OUT)

    assert lm.state.phase is Phase.TERMINATED
    assert lm.state.last_close is CloseReason.LOGGED_OUT
    assert lm.terminated
    assert not lm.reconnect_pending
    assert lm.socket is None
    assert factory.latest.closed
    assert coll.docs == {}
    assert list(lm.folder.path.iterdir()) == []
    assert order == ["terminating", "logout"]

    await asyncio.sleep(0.05)
    assert len(factory.sockets) == 1
    await asyncio.wait_for(lm.wait_terminated(), 1)


@pytest.mark.asyncio
async def test_start_after_logout_raises(tmp_path) -> None:
    factory = FakeSocketFactory()
    lm = _manager(tmp_path, factory)
    await lm.start()
    await lm.force_logout()

    assert lm.terminated
    with pytest.raises(PermanentLogout):
        await lm.start()
    assert len(factory.sockets) == 1

    await lm.shutdown()
    assert lm.state.phase is Phase.IDLE
    with pytest.raises(PermanentLogout):
        await lm.start()
    assert len(factory.sockets) == 1


@pytest.mark.asyncio
async def test_force_logout_during_backoff_cancels_timer(tmp_path) -> None:
    factory = FakeSocketFactory()
    lm = _manager(tmp_path, factory, base_s=0.05, max_s=0.05)
    await lm.start()
    await factory.latest.emit(CLOSED)
    assert lm.reconnect_pending

    await lm.force_logout()
    await lm.force_logout()

    assert not lm.reconnect_pending
    await asyncio.sleep(0.1)
    assert len(factory.sockets) == 1


@pytest.mark.asyncio
async def test_shutdown_stops_reconnects_without_clearing_session(tmp_path) -> None:
    coll = FakeCollection()
    store = AuthStore(coll)
    await store.save(b"archive")
    factory = FakeSocketFactory()
    lm = _manager(tmp_path, factory, base_s=0.05, max_s=0.05, store=store)
    await lm.folder.write_creds(sample_creds())

    await lm.start()
    await factory.latest.emit(CLOSED)
    assert lm.reconnect_pending

    await lm.shutdown()

    assert lm.state.phase is Phase.IDLE
    assert not lm.reconnect_pending
    assert not lm.terminated
    await asyncio.sleep(0.1)
    assert len(factory.sockets) == 1
    assert "session" in coll.docs
    assert lm.folder.creds_path.exists()


@pytest.mark.asyncio
async def test_qr_is_forwarded_without_state_change(tmp_path) -> None:
    factory = FakeSocketFactory()
    lm = _manager(tmp_path, factory)
    payloads: list[str] = []
    lm.on_qr(payloads.append)

    await lm.start()
    await factory.latest.emit(QrEvent(payload="2@abc,def"))

    assert payloads == ["2@abc,def"]
    assert lm.state.phase is Phase.CONNECTING


@pytest.mark.asyncio
async def test_connect_failure_backs_off(tmp_path) -> None:
    factory = FakeSocketFactory()
    factory.connect_errors.append(ConnectionError("refused"))
    lm = _manager(tmp_path, factory)

    await lm.start()
    assert lm.state.phase is Phase.BACKOFF
    assert lm.state.last_close is CloseReason.TRANSIENT

    await wait_until(lambda: len(factory.sockets) == 2 and factory.latest.connected)
    assert lm.state.phase is Phase.CONNECTING


@pytest.mark.asyncio
async def test_factory_failure_on_start_returns_to_idle(tmp_path) -> None:
    factory = FakeSocketFactory()
    factory.create_errors.append(RuntimeError("no client"))
    lm = _manager(tmp_path, factory)

    with pytest.raises(RuntimeError):
        await lm.start()
    assert lm.state.phase is Phase.IDLE


@pytest.mark.asyncio
async def test_factory_failure_on_reconnect_backs_off_again(tmp_path) -> None:
    factory = FakeSocketFactory()
    lm = _manager(tmp_path, factory)
    seen: list[int] = []
    lm.on_backoff(lambda attempt, delay: seen.append(attempt))

    await lm.start()
    await factory.latest.emit(CLOSED)
    factory.create_errors.append(RuntimeError("no client"))

    await wait_until(lambda: len(factory.sockets) == 2)
    assert seen == [1, 2]


@pytest.mark.asyncio
async def test_credentials_and_messages_reach_hooks(tmp_path) -> None:
    factory = FakeSocketFactory()
    lm = _manager(tmp_path, factory)
    creds: list[int] = []
    messages: list[IncomingMessage] = []
    lm.on_credentials(lambda event: creds.append(1))
    lm.on_message(messages.append)

    await lm.start()
    msg = IncomingMessage(chat_jid="1@s.whatsapp.net", sender_jid="1@s.whatsapp.net", text="hi")
    await factory.latest.emit(CredentialsChanged())
    await factory.latest.emit(msg)

    assert creds == [1]
    assert messages == [msg]


@pytest.mark.asyncio
async def test_failing_hook_does_not_break_transition(tmp_path) -> None:
    factory = FakeSocketFactory()
    lm = _manager(tmp_path, factory)

    async def boom(event: OpenEvent) -> None:
        raise RuntimeError("hook failed")

    lm.on_open(boom)
    await lm.start()
    await factory.latest.emit(OpenEvent())

    assert lm.state.phase is Phase.OPEN


@pytest.mark.asyncio
async def test_credentials_are_saved_without_hooks(tmp_path) -> None:
    factory = FakeSocketFactory()
    lm = _manager(tmp_path, factory)
    saved: list[int] = []

    async def save() -> None:
        saved.append(1)

    await lm.start()
    await factory.latest.emit(CredentialsChanged(save=save))

    assert saved == [1]


@pytest.mark.asyncio
async def test_credentials_from_replaced_socket_are_kept(tmp_path) -> None:
    factory = FakeSocketFactory()
    lm = _manager(tmp_path, factory)
    saved: list[int] = []

    async def save() -> None:
        saved.append(1)

    await lm.start()
    old = factory.latest
    await old.emit(CLOSED)
    await wait_until(lambda: len(factory.sockets) == 2)

    await old.emit(CredentialsChanged(save=save))

    assert saved == [1]


@pytest.mark.asyncio
async def test_credentials_after_logout_are_ignored(tmp_path) -> None:
    factory = FakeSocketFactory()
    lm = _manager(tmp_path, factory)
    saved: list[int] = []

    async def save() -> None:
        saved.append(1)

    await lm.start()
    old = factory.latest
    await lm.force_logout()
    await old.emit(CredentialsChanged(save=save))

    assert saved == []


@pytest.mark.asyncio
async def test_last_disconnect_records_close(tmp_path) -> None:
    factory = FakeSocketFactory()
    lm = _manager(tmp_path, factory, base_s=60, max_s=60)
    err = ConnectionError("reset")

    await lm.start()
    assert lm.last_disconnect is None
    await factory.latest.emit(ClosedEvent(status_code=DisconnectReason.CONNECTION_CLOSED, error=err))

    assert lm.last_disconnect is not None
    assert lm.last_disconnect.status_code == DisconnectReason.CONNECTION_CLOSED
    assert lm.last_disconnect.__cause__ is err
    await lm.shutdown()
