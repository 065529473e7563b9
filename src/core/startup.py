# src/core/startup.py
"""
Startup sequencing: the HTTP listener is bound only after the database is up.

    DISCONNECTED -> CONNECTING -> READY  -> listener bound
                               -> FAILED -> logged, never listens

The transition to READY or FAILED resolves a one-shot readiness future
(``True``/``False``). ``run()`` awaits it and only then calls the listen
coroutine, so no request can be served against an unavailable database.
"""

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Optional

from src.core.exceptions import AppBaseException, StartupError
from src.services.database_service import DatabaseService

logger = logging.getLogger(__name__)


class StartupState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    READY = "ready"
    FAILED = "failed"


class StartupSequencer:
    """
    Connects the database, then starts the listener.

    Args:
        database: The process-wide database service
        listen: Coroutine factory that binds and serves; called only once READY
        retries: Extra connection attempts after the first failure
        backoff_seconds: Initial delay between attempts, doubled each retry
    """

    def __init__(
        self,
        database: DatabaseService,
        listen: Callable[[], Awaitable[None]],
        retries: int = 0,
        backoff_seconds: float = 1.0
    ):
        self.database = database
        self._listen = listen
        self.retries = max(retries, 0)
        self.backoff_seconds = backoff_seconds
        self.state = StartupState.DISCONNECTED
        self.last_error: Optional[Exception] = None
        self._ready: Optional[asyncio.Future] = None

    @property
    def ready(self) -> asyncio.Future:
        """Resolves to True once READY, False once FAILED."""
        if self._ready is None:
            self._ready = asyncio.get_running_loop().create_future()
        return self._ready

    async def connect(self) -> bool:
        if self.state is not StartupState.DISCONNECTED:
            raise StartupError(f"connect() called in state '{self.state.value}'")

        self.state = StartupState.CONNECTING
        ready = self.ready
        attempts = self.retries + 1

        for attempt in range(1, attempts + 1):
            try:
                await self.database.initialize()
            except AppBaseException as e:
                self.last_error = e
                logger.error(f"Database connection failed (attempt {attempt}/{attempts}): {e}")
                if attempt < attempts:
                    delay = self.backoff_seconds * (2 ** (attempt - 1))
                    logger.info(f"Retrying database connection in {delay:.1f}s")
                    await asyncio.sleep(delay)
                continue

            self.state = StartupState.READY
            logger.info("Database ready")
            ready.set_result(True)
            return True

        self.state = StartupState.FAILED
        ready.set_result(False)
        return False

    async def run(self) -> bool:
        """
        Connect, then listen. Returns False without ever listening when the
        database could not be reached or the listener setup (session store
        preparation) failed.
        """
        await self.connect()

        if not await self.ready:
            logger.error("Startup failed - HTTP listener not started")
            return False

        health = await self.database.health_check()
        logger.info(f"Database health: {health['status']} {health['details']}")

        try:
            await self._listen()
        except AppBaseException as e:
            self.last_error = e
            logger.error(f"Startup failed - HTTP listener not started: {e}")
            return False
        return True
