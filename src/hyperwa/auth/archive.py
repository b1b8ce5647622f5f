"""
Tar codec for the auth directory.

The session is stored as one portable tar blob whose root holds `creds.json`
and the `keys/` directory. Extraction is staged next to the destination and
swapped in only once every member was read successfully, so a malformed
archive never leaves a half-written auth directory behind.
"""

from __future__ import annotations

import asyncio
import io
import os
import secrets
import shutil
import tarfile
from collections.abc import Iterable
from pathlib import Path, PurePosixPath

from ..exceptions import PackError, UnpackError

# Archives written by the original Node bot wrapped everything in this folder.
LEGACY_ROOTS = ("auth_info",)


def _portable(info: tarfile.TarInfo) -> tarfile.TarInfo:
    info.uid = info.gid = 0
    info.uname = info.gname = ""
    return info


def pack(paths: Iterable[str | Path], root: str | Path) -> bytes:
    """
    Build a tar archive of `paths`, stored relative to `root`.

    Directories are added recursively. Raises `PackError` when a path is
    missing, outside `root`, or unreadable.
    """

    root_p = Path(root).resolve()
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w", format=tarfile.PAX_FORMAT) as tar:
        for raw in paths:
            p = Path(raw)
            if not p.is_absolute():
                p = root_p / p
            try:
                arcname = p.resolve().relative_to(root_p).as_posix()
            except ValueError as e:
                raise PackError(f"{p} is not inside {root_p}") from e
            try:
                tar.add(str(p), arcname=arcname, recursive=True, filter=_portable)
            except OSError as e:
                raise PackError(f"cannot archive {p}: {e}") from e
    return buf.getvalue()


def _member_parts(member: tarfile.TarInfo) -> tuple[str, ...]:
    name = member.name
    if name.startswith("/") or (len(name) > 1 and name[1] == ":"):
        raise UnpackError(f"absolute path in archive: {name!r}")
    parts = tuple(p for p in PurePosixPath(name).parts if p not in ("", "."))
    if ".." in parts:
        raise UnpackError(f"path traversal in archive: {name!r}")
    if not (member.isreg() or member.isdir()):
        raise UnpackError(f"unsupported member type in archive: {name!r}")
    return parts


def _strip_legacy_root(entries: list[tuple[tuple[str, ...], tarfile.TarInfo]]) -> list[
    tuple[tuple[str, ...], tarfile.TarInfo]
]:
    if not entries:
        return entries
    firsts = {parts[0] for parts, _ in entries if parts}
    if len(firsts) != 1:
        return entries
    (first,) = firsts
    if first not in LEGACY_ROOTS:
        return entries
    return [(parts[1:], m) for parts, m in entries if parts[1:]]


def read_members(data: bytes) -> list[tuple[str, bytes | None]]:
    """
    Parse and validate archive bytes.

    Returns `(relative_path, content)` pairs; `content` is None for
    directories. Raises `UnpackError` for anything malformed or unsafe.
    """

    if not data:
        raise UnpackError("archive is empty")
    try:
        with tarfile.open(fileobj=io.BytesIO(data), mode="r:*") as tar:
            entries = [(_member_parts(m), m) for m in tar.getmembers()]
            out: list[tuple[str, bytes | None]] = []
            for parts, m in _strip_legacy_root(entries):
                if not parts:
                    continue
                rel = "/".join(parts)
                if m.isdir():
                    out.append((rel, None))
                    continue
                fh = tar.extractfile(m)
                if fh is None:
                    raise UnpackError(f"cannot read archive member {m.name!r}")
                content = fh.read()
                if len(content) != m.size:
                    raise UnpackError(f"truncated archive member {m.name!r}")
                out.append((rel, content))
    except (tarfile.TarError, EOFError, OSError) as e:
        raise UnpackError(f"malformed archive: {e}") from e
    return out


def unpack(data: bytes, destination: str | Path) -> list[str]:
    """
    Replace `destination` with the contents of the archive.

    Returns the relative paths of the extracted files.
    """

    members = read_members(data)
    dest = Path(destination)
    dest.parent.mkdir(parents=True, exist_ok=True)

    token = secrets.token_hex(4)
    staging = dest.parent / f".{dest.name}.staging-{token}"
    backup = dest.parent / f".{dest.name}.old-{token}"

    files: list[str] = []
    try:
        staging.mkdir()
        for rel, content in members:
            target = staging / rel
            if content is None:
                target.mkdir(parents=True, exist_ok=True)
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(content)
            files.append(rel)
    except OSError as e:
        shutil.rmtree(staging, ignore_errors=True)
        raise UnpackError(f"failed to stage archive: {e}") from e

    had_dest = dest.exists()
    try:
        if had_dest:
            os.replace(dest, backup)
        os.replace(staging, dest)
    except OSError as e:
        if had_dest and backup.exists() and not dest.exists():
            os.replace(backup, dest)
        shutil.rmtree(staging, ignore_errors=True)
        raise UnpackError(f"failed to move archive into {dest}: {e}") from e

    shutil.rmtree(backup, ignore_errors=True)
    return sorted(files)


async def pack_async(paths: Iterable[str | Path], root: str | Path) -> bytes:
    return await asyncio.to_thread(pack, list(paths), root)


async def unpack_async(data: bytes, destination: str | Path) -> list[str]:
    return await asyncio.to_thread(unpack, data, destination)


async def unpack_file_async(path: str | Path, destination: str | Path) -> list[str]:
    def _run() -> list[str]:
        try:
            data = Path(path).read_bytes()
        except OSError as e:
            raise UnpackError(f"cannot read archive file {path}: {e}") from e
        return unpack(data, destination)

    return await asyncio.to_thread(_run)
