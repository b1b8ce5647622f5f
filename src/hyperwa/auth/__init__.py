from __future__ import annotations

from .folder import AuthFolder, FileKeyStore
from .persist import DebouncedPersister, DebounceScheduler
from .restore import RestoreResult, SessionRestorer
from .store import AuthSession, AuthStore, Database

__all__ = [
    "AuthFolder",
    "AuthSession",
    "AuthStore",
    "Database",
    "DebounceScheduler",
    "DebouncedPersister",
    "FileKeyStore",
    "RestoreResult",
    "SessionRestorer",
]
