from __future__ import annotations

import asyncio

import pytest

from fakes import FakeCollection, sample_creds, wait_until
from hyperwa.auth import archive
from hyperwa.auth.folder import AuthFolder
from hyperwa.auth.persist import DebouncedPersister, DebounceScheduler
from hyperwa.auth.store import AuthStore
from hyperwa.exceptions import PackError
from hyperwa.util import json as bufferjson


async def _stored_creds(store: AuthStore) -> dict:
    session = await store.load()
    assert session is not None
    members = dict(archive.read_members(session.archive))
    return bufferjson.loads(members["creds.json"])


@pytest.mark.asyncio
async def test_burst_of_triggers_persists_once_with_final_state(tmp_path) -> None:
    store = AuthStore(FakeCollection())
    folder = AuthFolder(tmp_path / "auth")
    persister = DebouncedPersister(folder, store, delay_s=0.2)

    for i in range(5):
        await persister.save_creds_and_trigger(
            lambda i=i: folder.write_creds(sample_creds(registrationId=i))
        )
        await asyncio.sleep(0.01)

    assert persister.persist_count == 0
    await wait_until(lambda: persister.persist_count == 1)
    await asyncio.sleep(0.1)

    assert persister.persist_count == 1
    assert (await _stored_creds(store))["registrationId"] == 4
    assert not persister.pending


@pytest.mark.asyncio
async def test_triggers_after_a_save_schedule_another(tmp_path) -> None:
    store = AuthStore(FakeCollection())
    folder = AuthFolder(tmp_path / "auth")
    await folder.write_creds(sample_creds())
    persister = DebouncedPersister(folder, store, delay_s=0.01)

    persister.trigger()
    await wait_until(lambda: persister.persist_count == 1)
    persister.trigger()
    await wait_until(lambda: persister.persist_count == 2)


@pytest.mark.asyncio
async def test_uploads_are_serialized(tmp_path) -> None:
    folder = AuthFolder(tmp_path / "auth")
    await folder.write_creds(sample_creds())

    class SlowStore:
        active = 0
        peak = 0

        async def save(self, data: bytes) -> None:
            SlowStore.active += 1
            SlowStore.peak = max(SlowStore.peak, SlowStore.active)
            await asyncio.sleep(0.02)
            SlowStore.active -= 1

    persister = DebouncedPersister(folder, SlowStore(), delay_s=0)  # type: ignore[arg-type]
    await asyncio.gather(*(persister.persist_now() for _ in range(4)))

    assert SlowStore.peak == 1
    assert persister.persist_count == 4


@pytest.mark.asyncio
async def test_failed_upload_is_logged_and_retried_on_next_trigger(tmp_path) -> None:
    coll = FakeCollection()
    folder = AuthFolder(tmp_path / "auth")
    await folder.write_creds(sample_creds())
    persister = DebouncedPersister(folder, AuthStore(coll), delay_s=0.01)

    coll.fail = True
    persister.trigger()
    await wait_until(lambda: "update_one" in coll.calls)
    await asyncio.sleep(0.02)
    assert persister.persist_count == 0

    coll.fail = False
    persister.trigger()
    await wait_until(lambda: persister.persist_count == 1)
    assert "session" in coll.docs


@pytest.mark.asyncio
async def test_persist_without_creds_is_refused(tmp_path) -> None:
    coll = FakeCollection()
    persister = DebouncedPersister(AuthFolder(tmp_path / "auth"), AuthStore(coll))
    with pytest.raises(PackError):
        await persister.persist_now()
    assert coll.docs == {}


@pytest.mark.asyncio
async def test_aclose_flushes_pending_upload(tmp_path) -> None:
    store = AuthStore(FakeCollection())
    folder = AuthFolder(tmp_path / "auth")
    await folder.write_creds(sample_creds())
    persister = DebouncedPersister(folder, store, delay_s=60)

    persister.trigger()
    assert persister.pending
    await persister.aclose()

    assert persister.persist_count == 1
    assert not persister.pending
    assert await store.load() is not None


@pytest.mark.asyncio
async def test_aclose_without_flush_drops_pending_upload(tmp_path) -> None:
    store = AuthStore(FakeCollection())
    folder = AuthFolder(tmp_path / "auth")
    await folder.write_creds(sample_creds())
    persister = DebouncedPersister(folder, store, delay_s=0.02)

    persister.trigger()
    await persister.aclose(flush=False)
    await asyncio.sleep(0.05)

    assert persister.persist_count == 0
    assert await store.load() is None


@pytest.mark.asyncio
async def test_scheduler_cancel_and_reschedule() -> None:
    fired: list[int] = []

    async def cb() -> None:
        fired.append(1)

    sched = DebounceScheduler(0.02, cb)
    assert sched.cancel() is False
    sched.schedule()
    assert sched.pending
    assert sched.cancel() is True
    await asyncio.sleep(0.05)
    assert fired == []

    sched.schedule()
    sched.schedule()
    await asyncio.sleep(0.05)
    await sched.wait_idle()
    assert fired == [1]
