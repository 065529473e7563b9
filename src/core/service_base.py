# src/core/service_base.py
"""
Base class for the long-lived connections webgate holds.

``DatabaseService`` (MongoDB) and ``RedisService`` (the redis session
backend) share one lifecycle:

    initialize()  validate config -> open client -> verify with a round trip
    client        the live client, only once initialized
    shutdown()    close and forget the client

Connection strings usually embed credentials, so anything logged or put
into an error goes through ``redact_url`` first.
"""
from abc import ABC, abstractmethod
from typing import Optional, Dict, Any, TypeVar, Generic
from urllib.parse import urlsplit, urlunsplit
import logging

from src.core.exceptions import ServiceError, ConfigurationError

ConfigType = TypeVar('ConfigType')


def redact_url(url: Optional[str]) -> str:
    """``mongodb://user:pw@host/db`` -> ``mongodb://***@host/db``"""
    if not url:
        return "<unset>"
    parts = urlsplit(url)
    if "@" not in parts.netloc:
        return url
    host = parts.netloc.rsplit("@", 1)[1]
    return urlunsplit((parts.scheme, f"***@{host}", parts.path, parts.query, parts.fragment))


class ServiceConfig:
    """Base configuration class for services; subclasses add a ``url``"""
    url: Optional[str] = None


class BaseService(ABC, Generic[ConfigType]):
    """
    Lifecycle shared by the database and Redis services.

    A failed ``initialize()`` leaves the service uninitialized, so the
    startup sequencer can call it again on its next attempt.
    """

    def __init__(
        self,
        config: Optional[ConfigType] = None,
        logger: Optional[logging.Logger] = None
    ):
        self.config = config
        self.logger = logger or logging.getLogger(self.__class__.__name__)
        self.service_name = self.__class__.__name__
        self._initialized = False
        self._client = None

    @property
    def endpoint(self) -> str:
        """Where the service connects to, safe to log."""
        return redact_url(getattr(self.config, "url", None))

    @abstractmethod
    async def _initialize_client(self) -> Any:
        """
        Open the client and verify it with a round trip to the server.

        Any exception raised here is wrapped into a ServiceError by
        initialize(); the implementation must release a half-open client
        before raising.
        """

    async def initialize(self) -> None:
        """
        Connect the service. A no-op once connected.

        Raises:
            ConfigurationError: The service cannot be configured (e.g. no URL)
            ServiceError: The server could not be reached
        """
        if self._initialized:
            self.logger.debug(f"{self.service_name} already initialized")
            return

        self.logger.info(f"Connecting {self.service_name} to {self.endpoint}...")
        self._validate_config()

        try:
            self._client = await self._initialize_client()
        except Exception as e:
            self._client = None
            self.logger.error(f"{self.service_name} could not connect to {self.endpoint}: {type(e).__name__}: {e}")
            raise ServiceError(
                message=f"Failed to initialize {self.service_name}",
                service_name=self.service_name,
                operation="initialize",
                details={
                    'endpoint': self.endpoint,
                    'original_error': str(e),
                    'error_type': type(e).__name__
                }
            ) from e

        self._initialized = True
        self.logger.info(f"{self.service_name} connected")

    def _validate_config(self) -> None:
        """Raise ConfigurationError when the service cannot even try to connect."""
        if self.config is None:
            raise ConfigurationError(f"{self.service_name} has no configuration", component=self.service_name)

    @abstractmethod
    async def health_check(self) -> Dict[str, Any]:
        """Return ``{"healthy": bool, "status": str, "details": dict}``."""

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def client(self) -> Any:
        """
        The live client.

        Raises:
            ServiceError: If the service is not initialized
        """
        if not self._initialized or self._client is None:
            raise ServiceError(
                message=f"{self.service_name} is not initialized. Call initialize() first.",
                service_name=self.service_name
            )
        return self._client

    async def shutdown(self) -> None:
        """Close the client. Errors are logged, never raised, so shutdown always completes."""
        if not self._initialized:
            return

        self.logger.info(f"Shutting down {self.service_name}...")
        try:
            await self._cleanup()
        except Exception:
            self.logger.error(f"Error during {self.service_name} shutdown", exc_info=True)
        finally:
            self._client = None
            self._initialized = False

    async def _cleanup(self) -> None:
        """Service-specific cleanup logic."""
        pass
