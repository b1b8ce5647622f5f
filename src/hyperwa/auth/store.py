from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass
from typing import Any

from bson.binary import Binary
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import PyMongoError

from ..exceptions import StoreUnavailable
from ..settings import MongoSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class AuthSession:
    id: str
    archive: bytes
    timestamp: dt.datetime | None
    size: int


class Database:
    """
    Explicitly constructed MongoDB handle.

    One instance is created by the host and passed to whoever needs a
    collection; there is no module-level client.
    """

    def __init__(self, settings: MongoSettings, *, client: Any | None = None) -> None:
        self.settings = settings
        self._client = client

    @property
    def connected(self) -> bool:
        return self._client is not None

    async def connect(self) -> None:
        if self._client is None:
            if not self.settings.uri:
                raise StoreUnavailable("MongoDB URI is not configured")
            self._client = AsyncIOMotorClient(
                self.settings.uri,
                serverSelectionTimeoutMS=self.settings.server_selection_timeout_ms,
            )
        try:
            await self._client.admin.command("ping")
        except PyMongoError as e:
            raise StoreUnavailable(f"failed to connect to MongoDB: {e}") from e
        logger.info("connected to MongoDB database %s", self.settings.db_name)

    def collection(self, name: str) -> Any:
        if self._client is None:
            raise StoreUnavailable("database is not connected")
        return self._client[self.settings.db_name][name]

    def auth_store(self) -> AuthStore:
        return AuthStore(
            self.collection(self.settings.auth_collection), session_id=self.settings.session_id
        )

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None


class AuthStore:
    """
    Singleton session document holding the latest auth archive.

    Document shape: `{_id, archive: Binary, timestamp: datetime, size: int}`.
    Every save replaces the whole archive, so concurrent saves resolve to
    last-writer-wins without any read-modify-write.
    """

    def __init__(self, collection: Any, *, session_id: str = "session") -> None:
        self._coll = collection
        self.session_id = session_id

    async def load(self) -> AuthSession | None:
        try:
            doc = await self._coll.find_one({"_id": self.session_id})
        except PyMongoError as e:
            raise StoreUnavailable(f"failed to load auth session: {e}") from e
        if not doc:
            return None

        archive = doc.get("archive")
        if not isinstance(archive, (bytes, bytearray, memoryview)):
            archive = b""
        archive = bytes(archive)
        size = doc.get("size")
        return AuthSession(
            id=str(doc["_id"]),
            archive=archive,
            timestamp=doc.get("timestamp"),
            size=int(size) if isinstance(size, int) else len(archive),
        )

    async def save(self, archive: bytes) -> None:
        update = {
            "$set": {
                "archive": Binary(archive),
                "timestamp": dt.datetime.now(dt.UTC),
                "size": len(archive),
            }
        }
        try:
            await self._coll.update_one({"_id": self.session_id}, update, upsert=True)
        except PyMongoError as e:
            raise StoreUnavailable(f"failed to save auth session: {e}") from e
        logger.debug("auth session saved (%d bytes)", len(archive))

    async def clear(self) -> None:
        try:
            await self._coll.delete_one({"_id": self.session_id})
        except PyMongoError as e:
            raise StoreUnavailable(f"failed to clear auth session: {e}") from e
