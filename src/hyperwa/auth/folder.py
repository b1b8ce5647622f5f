from __future__ import annotations

import asyncio
import shutil
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from ..exceptions import CredentialIntegrityError
from ..util import json as bufferjson

CREDS_FILE = "creds.json"
KEYS_DIR = "keys"

# Mandatory credential fields as (Baileys name, Python protocol library name).
REQUIRED_CRED_FIELDS: tuple[tuple[str, str], ...] = (
    ("noiseKey", "noise_key"),
    ("signedIdentityKey", "signed_identity_key"),
    ("signedPreKey", "signed_pre_key"),
    ("registrationId", "registration_id"),
)


def _fix_filename(name: str) -> str:
    return name.replace("/", "__").replace(":", "-")


async def _read_text(path: Path) -> str:
    return await asyncio.to_thread(path.read_text, "utf-8")


async def _write_text(path: Path, data: str) -> None:
    await asyncio.to_thread(path.write_text, data, "utf-8")


async def _unlink(path: Path) -> None:
    await asyncio.to_thread(path.unlink, missing_ok=True)


class FileKeyStore:
    """
    Signal key store backed by `{type}-{id}.json` files.

    Records are addressed by `(key_type, key_id)`; writing `None` deletes the
    record. `get`, `set` and `clear` are the key store protocol the WhatsApp
    client expects.
    """

    def __init__(self, folder: Path) -> None:
        self._folder = folder
        self._locks: dict[Path, asyncio.Lock] = {}

    @property
    def folder(self) -> Path:
        return self._folder

    def _path(self, key_type: str, key_id: str) -> Path:
        return self._folder / _fix_filename(f"{key_type}-{key_id}.json")

    def _lock_for(self, path: Path) -> asyncio.Lock:
        lock = self._locks.get(path)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[path] = lock
        return lock

    async def get(self, key_type: str, ids: list[str]) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for key_id in ids:
            fn = self._path(key_type, key_id)
            try:
                async with self._lock_for(fn):
                    raw = await _read_text(fn)
                out[key_id] = bufferjson.loads(raw)
            except FileNotFoundError:
                out[key_id] = None
        return out

    async def set(self, data: Mapping[str, Mapping[str, Any | None]]) -> None:
        await asyncio.to_thread(self._folder.mkdir, parents=True, exist_ok=True)
        tasks: list[asyncio.Task[None]] = []
        for category, items in data.items():
            for key_id, value in items.items():
                fn = self._path(category, key_id)
                if value is None:
                    tasks.append(asyncio.create_task(self._remove(fn)))
                else:
                    tasks.append(asyncio.create_task(self._write(fn, value)))
        if tasks:
            await asyncio.gather(*tasks)

    async def clear(self) -> None:
        if not self._folder.exists():
            return
        for p in self._folder.glob("*.json"):
            await self._remove(p)

    def count(self) -> int:
        if not self._folder.is_dir():
            return 0
        return sum(1 for p in self._folder.iterdir() if p.is_file())

    async def _write(self, path: Path, obj: Any) -> None:
        async with self._lock_for(path):
            await _write_text(path, bufferjson.dumps(obj))

    async def _remove(self, path: Path) -> None:
        async with self._lock_for(path):
            await _unlink(path)


def missing_cred_fields(creds: Mapping[str, Any]) -> tuple[str, ...]:
    missing: list[str] = []
    for camel, snake in REQUIRED_CRED_FIELDS:
        if creds.get(camel) is None and creds.get(snake) is None:
            missing.append(camel)
    return tuple(missing)


class AuthFolder:
    """
    Local auth directory: `creds.json` plus a `keys/` directory.

    The credential payload is opaque here; only its mandatory fields are
    checked so a broken restore can be detected before the socket starts.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).expanduser()
        self.keys = FileKeyStore(self.path / KEYS_DIR)
        self._creds_lock = asyncio.Lock()

    @property
    def creds_path(self) -> Path:
        return self.path / CREDS_FILE

    @property
    def keys_path(self) -> Path:
        return self.path / KEYS_DIR

    def archive_paths(self) -> list[Path]:
        """Paths captured in the session archive (only those that exist)."""

        return [p for p in (self.creds_path, self.keys_path) if p.exists()]

    async def ensure(self) -> None:
        await asyncio.to_thread(self.path.mkdir, parents=True, exist_ok=True)

    async def read_creds(self) -> dict[str, Any] | None:
        async with self._creds_lock:
            try:
                raw = await _read_text(self.creds_path)
            except FileNotFoundError:
                return None
        d = bufferjson.loads(raw)
        if not isinstance(d, dict):
            raise CredentialIntegrityError(f"{self.creds_path} did not contain an object")
        return d

    async def write_creds(self, creds: Any) -> None:
        await self.ensure()
        async with self._creds_lock:
            await _write_text(self.creds_path, bufferjson.dumps(creds, indent=2))

    async def validate(self) -> dict[str, Any]:
        """Return the parsed credentials or raise `CredentialIntegrityError`."""

        try:
            creds = await self.read_creds()
        except ValueError as e:
            raise CredentialIntegrityError(f"{self.creds_path} is not valid JSON: {e}") from e
        except OSError as e:
            # A directory or unreadable file in place of creds.json.
            raise CredentialIntegrityError(f"cannot read {self.creds_path}: {e}") from e
        if creds is None:
            raise CredentialIntegrityError(f"{self.creds_path} is missing")
        missing = missing_cred_fields(creds)
        if missing:
            raise CredentialIntegrityError(
                f"{self.creds_path} lacks mandatory fields: {', '.join(missing)}", missing=missing
            )
        return creds

    async def adopt_flat_keys(self) -> int:
        """
        Move key files stored next to `creds.json` into `keys/`.

        The Baileys multi-file layout keeps every key file in the auth
        directory root; sessions archived that way are converted on restore.
        """

        def _adopt() -> int:
            moved = 0
            for p in sorted(self.path.glob("*.json")):
                if p.name == CREDS_FILE or not p.is_file():
                    continue
                self.keys_path.mkdir(parents=True, exist_ok=True)
                p.replace(self.keys_path / p.name)
                moved += 1
            return moved

        return await asyncio.to_thread(_adopt)

    async def empty(self) -> None:
        """Remove everything inside the auth directory, keeping the directory."""

        def _empty() -> None:
            if not self.path.exists():
                self.path.mkdir(parents=True, exist_ok=True)
                return
            for child in self.path.iterdir():
                if child.is_dir() and not child.is_symlink():
                    shutil.rmtree(child)
                else:
                    child.unlink(missing_ok=True)

        await asyncio.to_thread(_empty)
