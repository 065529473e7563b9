# src/services/database_service.py
"""
Database Service for webgate.

Process-wide async MongoDB connection via ``motor``. The connection is
verified with a ``ping`` during initialize(), which is what the startup
sequencer waits on before the HTTP listener is bound.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional
import logging

import motor.motor_asyncio

from src.core.config import Settings, settings as default_settings
from src.core.service_base import BaseService, ServiceConfig
from src.core.exceptions import config_error

logger = logging.getLogger(__name__)


@dataclass
class DatabaseConfig(ServiceConfig):
    """Configuration for the database service"""
    url: Optional[str] = None
    database: str = "webgate"
    server_selection_timeout_ms: int = 5000

    @classmethod
    def from_settings(cls, current: Settings) -> "DatabaseConfig":
        return cls(
            url=current.connection_string,
            database=current.DATABASE_NAME,
            server_selection_timeout_ms=current.DB_SERVER_SELECTION_TIMEOUT_MS
        )


class DatabaseService(BaseService[DatabaseConfig]):
    """
    Async MongoDB service.

    The client is shared by every in-flight request; motor's connection
    pool handles concurrent use.
    """

    def __init__(self, config: Optional[DatabaseConfig] = None):
        if config is None:
            config = DatabaseConfig.from_settings(default_settings)
        super().__init__(config, logger)

    def _validate_config(self) -> None:
        super()._validate_config()

        if not self.config.url:
            raise config_error("CONNECTIONSTRING is not set", component="database")

    async def _initialize_client(self) -> motor.motor_asyncio.AsyncIOMotorClient:
        client = motor.motor_asyncio.AsyncIOMotorClient(
            self.config.url,
            serverSelectionTimeoutMS=self.config.server_selection_timeout_ms
        )

        try:
            await client.admin.command("ping")
        except Exception:
            client.close()
            raise

        self.logger.info("MongoDB connection successful")
        return client

    @property
    def db(self) -> motor.motor_asyncio.AsyncIOMotorDatabase:
        """The application database (from the URI, else DATABASE_NAME)."""
        return self.client.get_default_database(self.config.database)

    def collection(self, name: str) -> motor.motor_asyncio.AsyncIOMotorCollection:
        return self.db[name]

    async def health_check(self) -> Dict[str, Any]:
        if not self._initialized:
            return {
                "healthy": False,
                "status": "not_connected",
                "details": {"error": "Client not initialized"}
            }

        try:
            await self._client.admin.command("ping")
            return {
                "healthy": True,
                "status": "connected",
                "details": {"database": self.db.name}
            }
        except Exception as e:
            return {
                "healthy": False,
                "status": "error",
                "details": {"error": str(e)}
            }

    async def _cleanup(self) -> None:
        if self._client:
            self._client.close()
