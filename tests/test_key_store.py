from __future__ import annotations

import pytest

from hyperwa.auth.folder import AuthFolder, FileKeyStore
from hyperwa.util import json as bufferjson


@pytest.mark.asyncio
async def test_keystore_set_get(tmp_path) -> None:
    keys = FileKeyStore(tmp_path / "keys")
    await keys.set({"session": {"abc": {"some": "value", "raw": b"\x00\xff"}}})

    got = await keys.get("session", ["abc", "missing"])
    assert got["abc"] == {"some": "value", "raw": b"\x00\xff"}
    assert got["missing"] is None
    assert keys.count() == 1


@pytest.mark.asyncio
async def test_keystore_none_deletes(tmp_path) -> None:
    keys = FileKeyStore(tmp_path)
    await keys.set({"pre-key": {"1": {"k": 1}, "2": {"k": 2}}})
    await keys.set({"pre-key": {"1": None}})

    got = await keys.get("pre-key", ["1", "2"])
    assert got == {"1": None, "2": {"k": 2}}


@pytest.mark.asyncio
async def test_keystore_filenames_are_safe(tmp_path) -> None:
    keys = FileKeyStore(tmp_path)
    await keys.set({"sender-key": {"group@g.us::user:1": {"k": 1}}})
    assert [p.name for p in tmp_path.iterdir()] == ["sender-key-group@g.us--user-1.json"]


@pytest.mark.asyncio
async def test_keystore_clear(tmp_path) -> None:
    keys = FileKeyStore(tmp_path / "keys")
    await keys.clear()
    await keys.set({"session": {"a": {}, "b": {}}})
    await keys.clear()
    assert keys.count() == 0


@pytest.mark.asyncio
async def test_folder_creds_roundtrip(tmp_path) -> None:
    folder = AuthFolder(tmp_path / "auth")
    assert await folder.read_creds() is None

    await folder.write_creds({"registrationId": 7, "noiseKey": {"public": b"\x01"}})
    creds = await folder.read_creds()
    assert creds == {"registrationId": 7, "noiseKey": {"public": b"\x01"}}
    assert folder.archive_paths() == [folder.creds_path]


def test_buffer_json_reads_node_byte_lists() -> None:
    raw = '{"private": {"type": "Buffer", "data": [1, 2, 255]}, "public": {"type": "Buffer", "data": "AQI="}}'
    assert bufferjson.loads(raw) == {"private": b"\x01\x02\xff", "public": b"\x01\x02"}
    assert bufferjson.loads('{"type": "Buffer", "data": [1, "x"]}') == {"type": "Buffer", "data": [1, "x"]}
    assert bufferjson.dumps({"k": b"\x01\x02"}) == '{"k": {"data": "AQI=", "type": "Buffer"}}'


def test_buffer_json_rejects_unknown_objects() -> None:
    with pytest.raises(TypeError):
        bufferjson.dumps({"k": object()})
