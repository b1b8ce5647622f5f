from __future__ import annotations

import asyncio
import enum
import logging
import shutil
from collections.abc import Iterable
from pathlib import Path

from ..exceptions import CredentialIntegrityError, StoreUnavailable, UnpackError
from . import archive
from .folder import AuthFolder
from .store import AuthStore

logger = logging.getLogger(__name__)


class RestoreResult(enum.Enum):
    RESTORED = "restored"
    ABSENT = "absent"
    CORRUPTED_AND_CLEARED = "corrupted-and-cleared"


class SessionRestorer:
    """
    Pulls the stored session archive into the local auth directory.

    A stored archive that fails to unpack or yields unusable credentials is
    deleted from the store right away; otherwise every restart would restore
    the same broken state again.
    """

    def __init__(self, store: AuthStore, *, cleanup: Iterable[str | Path] = ()) -> None:
        self.store = store
        self.cleanup = tuple(Path(p) for p in cleanup)

    async def restore(self, auth_dir: str | Path) -> RestoreResult:
        folder = AuthFolder(auth_dir)
        await folder.ensure()

        session = await self.store.load()
        if session is None or not session.archive:
            logger.info("no session found in database; new pairing required")
            return RestoreResult.ABSENT

        tmp = folder.path.parent / f"{folder.path.name}.restore.tar"
        try:
            files = await self._unpack(session.archive, tmp, folder)
            await folder.validate()
        except (UnpackError, CredentialIntegrityError) as e:
            logger.warning("stored session is corrupted (%s); clearing it", e)
            await self._clear(folder)
            return RestoreResult.CORRUPTED_AND_CLEARED
        finally:
            if not tmp.is_dir():
                await asyncio.to_thread(tmp.unlink, missing_ok=True)

        adopted = await folder.adopt_flat_keys()
        if adopted:
            logger.info("moved %d legacy key files into keys/", adopted)
        if not folder.keys_path.is_dir():
            await asyncio.to_thread(folder.keys_path.mkdir, parents=True, exist_ok=True)
            logger.warning("keys/ was missing from the stored session; created empty, expect decrypt retries")
        else:
            logger.info("restored keys/ with %d session files", folder.keys.count())
        logger.info("auth session restored from database (%d files, %d bytes)", len(files), session.size)
        return RestoreResult.RESTORED

    async def _unpack(self, data: bytes, tmp: Path, folder: AuthFolder) -> list[str]:
        try:
            await asyncio.to_thread(tmp.write_bytes, data)
        except OSError as e:
            logger.warning("cannot stage archive at %s (%s); unpacking from memory", tmp, e)
            return await archive.unpack_async(data, folder.path)
        return await archive.unpack_file_async(tmp, folder.path)

    async def _clear(self, folder: AuthFolder) -> None:
        try:
            await self.store.clear()
        except StoreUnavailable:
            logger.exception("failed to delete corrupted session from database")
        await folder.empty()

        base = folder.path.parent
        for rel in self.cleanup:
            p = rel if rel.is_absolute() else base / rel
            if p.is_dir() and not p.is_symlink():
                await asyncio.to_thread(shutil.rmtree, p, True)
            else:
                await asyncio.to_thread(p.unlink, missing_ok=True)
            logger.debug("removed cached state %s", p)
