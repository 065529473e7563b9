# src/services/session_store.py
"""
Session store adapters.

A store persists ``SessionRecord`` objects keyed by session id so sessions
survive process restarts. Three backends are provided:

``MongoSessionStore``
    Default. Uses the application database; expired documents are removed
    by a TTL index on ``expires``.
``RedisSessionStore``
    Keys with a native TTL, via ``RedisService``.
``MemorySessionStore``
    Process-local dict for development and tests.

Read and write failures are raised as ``SessionStoreError``; the pipeline
does not catch them.
"""
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, Optional
import logging

from pymongo.errors import PyMongoError

from src.core.config import Settings
from src.core.exceptions import RedisServiceError, SessionStoreError, config_error
from src.models.session_state import SessionRecord
from src.services.database_service import DatabaseService
from src.services.redis_service import RedisConfig, RedisService

logger = logging.getLogger(__name__)


class SessionStoreAdapter(ABC):
    """Persistence interface used by the session manager"""

    backend = "abstract"

    async def prepare(self) -> None:
        """Called once the database is ready, before the listener is bound."""
        pass

    async def close(self) -> None:
        """Release backend connections owned by the store."""
        pass

    @abstractmethod
    async def get(self, session_id: str) -> Optional[SessionRecord]:
        """Return the live record for ``session_id`` or None if absent/expired."""

    @abstractmethod
    async def set(self, record: SessionRecord) -> None:
        """Insert or replace ``record``."""

    @abstractmethod
    async def destroy(self, session_id: str) -> None:
        """Remove the record, if any."""


class MemorySessionStore(SessionStoreAdapter):
    """In-memory store. Not shared between processes and lost on restart."""

    backend = "memory"

    def __init__(self):
        self.sessions: Dict[str, SessionRecord] = {}

    async def get(self, session_id: str) -> Optional[SessionRecord]:
        record = self.sessions.get(session_id)
        if record is None:
            return None
        if record.is_expired():
            del self.sessions[session_id]
            return None
        return record.model_copy(deep=True)

    async def set(self, record: SessionRecord) -> None:
        self.sessions[record.session_id] = record.model_copy(deep=True)

    async def destroy(self, session_id: str) -> None:
        self.sessions.pop(session_id, None)


class MongoSessionStore(SessionStoreAdapter):
    """
    MongoDB-backed store.

    Collection schema (``sessions``)::

        {
            "_id": str,            # session id
            "expires": datetime,   # TTL index, expireAfterSeconds=0
            "created_at": datetime,
            "session": dict        # payload
        }
    """

    backend = "mongo"

    def __init__(self, database: DatabaseService, collection_name: str = "sessions"):
        self._database = database
        self._collection_name = collection_name

    @property
    def collection(self):
        return self._database.collection(self._collection_name)

    async def prepare(self) -> None:
        try:
            await self.collection.create_index("expires", expireAfterSeconds=0)
        except PyMongoError as e:
            raise SessionStoreError(f"Could not create session TTL index: {e}", backend=self.backend) from e
        logger.info(f"Session collection '{self._collection_name}' ready")

    async def get(self, session_id: str) -> Optional[SessionRecord]:
        now = datetime.now(timezone.utc)
        try:
            doc = await self.collection.find_one({"_id": session_id, "expires": {"$gt": now}})
        except PyMongoError as e:
            raise SessionStoreError(f"Session read failed: {e}", session_id=session_id, backend=self.backend) from e

        if doc is None:
            return None

        return SessionRecord(
            session_id=doc["_id"],
            created_at=_as_utc(doc["created_at"]),
            expires_at=_as_utc(doc["expires"]),
            data=doc.get("session", {})
        )

    async def set(self, record: SessionRecord) -> None:
        doc = {
            "_id": record.session_id,
            "expires": record.expires_at,
            "created_at": record.created_at,
            "session": record.data
        }
        try:
            await self.collection.replace_one({"_id": record.session_id}, doc, upsert=True)
        except PyMongoError as e:
            raise SessionStoreError(f"Session write failed: {e}", session_id=record.session_id, backend=self.backend) from e

    async def destroy(self, session_id: str) -> None:
        try:
            await self.collection.delete_one({"_id": session_id})
        except PyMongoError as e:
            raise SessionStoreError(f"Session delete failed: {e}", session_id=session_id, backend=self.backend) from e


class RedisSessionStore(SessionStoreAdapter):
    """Redis-backed store; each record is one JSON value with a TTL."""

    backend = "redis"

    def __init__(self, redis_service: RedisService, prefix: str = "sess:"):
        self._redis = redis_service
        self._prefix = prefix

    def _key(self, session_id: str) -> str:
        return f"{self._prefix}{session_id}"

    async def prepare(self) -> None:
        await self._redis.initialize()
        health = await self._redis.health_check()
        logger.info(f"Redis session backend {health['status']}: {health['details']}")

    async def close(self) -> None:
        await self._redis.shutdown()

    async def get(self, session_id: str) -> Optional[SessionRecord]:
        try:
            payload = await self._redis.get_json(self._key(session_id))
        except RedisServiceError as e:
            raise SessionStoreError(e.message, session_id=session_id, backend=self.backend) from e

        if payload is None:
            return None

        record = SessionRecord.model_validate(payload)
        return None if record.is_expired() else record

    async def set(self, record: SessionRecord) -> None:
        ttl = record.ttl_seconds()
        if ttl <= 0:
            await self.destroy(record.session_id)
            return

        try:
            await self._redis.set_json(self._key(record.session_id), record.model_dump(mode="json"), ttl)
        except RedisServiceError as e:
            raise SessionStoreError(e.message, session_id=record.session_id, backend=self.backend) from e

    async def destroy(self, session_id: str) -> None:
        try:
            await self._redis.delete(self._key(session_id))
        except RedisServiceError as e:
            raise SessionStoreError(e.message, session_id=session_id, backend=self.backend) from e


def _as_utc(value: datetime) -> datetime:
    # pymongo returns naive UTC datetimes unless tz_aware=True
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def create_session_store(current: Settings, database: DatabaseService) -> SessionStoreAdapter:
    """Build the store selected by SESSION_BACKEND."""
    if current.SESSION_BACKEND == "mongo":
        return MongoSessionStore(database, current.SESSION_COLLECTION)
    if current.SESSION_BACKEND == "redis":
        redis_service = RedisService(RedisConfig(url=current.REDIS_URL)) if current.REDIS_URL else RedisService()
        return RedisSessionStore(redis_service)
    if current.SESSION_BACKEND == "memory":
        logger.warning("Using in-memory session store - sessions are lost on restart")
        return MemorySessionStore()
    raise config_error(f"Unknown session backend: {current.SESSION_BACKEND}", component="sessions")
