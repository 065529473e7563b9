# src/services/redis_service.py
"""
Redis Service for webgate.

Async Redis client behind the ``redis`` session backend. Values are stored
as JSON with a TTL; every failure surfaces as RedisServiceError because a
session write that silently fails would log the user out.

The URL comes from REDIS_URL, or from the variables some hosting
providers set instead.
"""
import os
import json
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar
import logging

import redis.asyncio as redis

from src.core.service_base import BaseService, ServiceConfig
from src.core.exceptions import config_error, redis_error

logger = logging.getLogger(__name__)

URL_ENV_VARS = ("REDIS_URL", "REDIS_DIRECT_URI", "REDIS_TLS_URL")

T = TypeVar("T")


@dataclass
class RedisConfig(ServiceConfig):
    """Connection settings for the Redis session backend"""
    url: Optional[str] = None
    socket_timeout: float = 5.0
    max_connections: int = 10
    retry_on_timeout: bool = True
    health_check_interval: int = 30


class RedisService(BaseService[RedisConfig]):
    """JSON-over-Redis with TTLs, for session records."""

    def __init__(self, config: Optional[RedisConfig] = None):
        self._url_source = None

        if config is None:
            config = RedisConfig(url=self._url_from_env())

        super().__init__(config, logger)

    def _url_from_env(self) -> Optional[str]:
        for var in URL_ENV_VARS:
            if url := os.environ.get(var):
                self._url_source = var
                logger.info(f"Using Redis URL from {var}")
                return url
        return None

    def _validate_config(self) -> None:
        super()._validate_config()

        if not self.config.url:
            raise config_error(
                "No Redis URL found. Set REDIS_URL to use the redis session backend.",
                component="redis"
            )

    async def _initialize_client(self) -> redis.Redis:
        client = redis.from_url(
            self.config.url,
            decode_responses=True,
            socket_timeout=self.config.socket_timeout,
            max_connections=self.config.max_connections,
            retry_on_timeout=self.config.retry_on_timeout,
            health_check_interval=self.config.health_check_interval
        )

        try:
            await client.ping()
        except Exception:
            await client.aclose()
            raise

        return client

    async def _call(self, operation: str, key: str, command: Callable[[Any], Awaitable[T]]) -> T:
        """Run one Redis command, turning any driver failure into RedisServiceError."""
        client = self.client
        try:
            return await command(client)
        except Exception as e:
            self.logger.error(f"Redis {operation} failed for key '{key}': {e}")
            raise redis_error(f"Redis {operation} failed: {e}", key=key, operation=operation) from e

    async def get_json(self, key: str) -> Any:
        """The decoded value at ``key``, or None if it is missing."""
        raw = await self._call("get", key, lambda client: client.get(key))
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError as e:
            raise redis_error(f"Value at '{key}' is not JSON", key=key, operation="get") from e

    async def set_json(self, key: str, value: Any, ttl: int) -> None:
        """Store ``value`` as JSON, expiring after ``ttl`` seconds."""
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        payload = json.dumps(value)
        await self._call("set", key, lambda client: client.set(key, payload, ex=ttl))

    async def delete(self, *keys: str) -> int:
        """Delete keys, returning how many existed."""
        if not keys:
            return 0
        return await self._call("delete", keys[0], lambda client: client.delete(*keys))

    async def health_check(self) -> Dict[str, Any]:
        details = {"url_source": self._url_source, "endpoint": self.endpoint}

        if not self._client:
            return {"healthy": False, "status": "not_connected", "details": details}

        try:
            await self._client.ping()
            info = await self._client.info()
        except Exception as e:
            return {"healthy": False, "status": "error", "details": {**details, "error": str(e)}}

        details["redis_version"] = info.get("redis_version", "unknown")
        details["connected_clients"] = info.get("connected_clients", 0)
        return {"healthy": True, "status": "connected", "details": details}

    async def _cleanup(self) -> None:
        if self._client:
            await self._client.aclose()
