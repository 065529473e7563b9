# src/core/config.py
import logging
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings

BASE_DIR = Path(__file__).resolve().parent.parent.parent

DEFAULT_SESSION_SECRET = "change-me-in-production"


class Settings(BaseSettings):
    """Application settings, loaded from the environment and ``.env``"""
    APP_NAME: str = "webgate"
    DEBUG: bool = False

    # Database
    CONNECTIONSTRING: Optional[SecretStr] = Field(default=None)
    DATABASE_NAME: str = "webgate"
    DB_SERVER_SELECTION_TIMEOUT_MS: int = 5000
    DB_CONNECT_RETRIES: int = 0
    DB_CONNECT_BACKOFF_SECONDS: float = 1.0

    # HTTP listener
    HOST: str = "0.0.0.0"
    PORT: int = 3000

    # Sessions
    SESSION_SECRET: SecretStr = SecretStr(DEFAULT_SESSION_SECRET)
    SESSION_COOKIE_NAME: str = "session"
    SESSION_MAX_AGE: int = 60 * 60 * 24 * 7
    SESSION_COOKIE_SECURE: bool = False
    SESSION_COOKIE_SAMESITE: Literal["lax", "strict", "none"] = "lax"
    SESSION_BACKEND: Literal["mongo", "redis", "memory"] = "mongo"
    SESSION_COLLECTION: str = "sessions"
    REDIS_URL: Optional[str] = None

    # Views and assets
    STATIC_DIR: Path = BASE_DIR / "public"
    STATIC_URL_PREFIX: str = "/"
    VIEWS_DIR: Path = BASE_DIR / "src" / "views"

    # "package.module:attribute" pointing at an APIRouter
    ROUTES: Optional[str] = None

    # Request handling
    BODY_LIMIT_BYTES: int = 100 * 1024
    REQUEST_TIMEOUT_SECONDS: float = 30.0
    CSRF_ERROR_MESSAGE: str = "Your form expired or was tampered with. Please try again."

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore"
    }

    @property
    def connection_string(self) -> Optional[str]:
        if self.CONNECTIONSTRING is None:
            return None
        return self.CONNECTIONSTRING.get_secret_value() or None


# Settings singleton
settings = Settings()


def validate_required_settings(current: Optional[Settings] = None) -> bool:
    """Check that the settings needed to serve traffic are present"""
    current = current or settings
    logger = logging.getLogger(__name__)
    valid = True

    if not current.connection_string:
        logger.warning("Missing environment variable: CONNECTIONSTRING")
        logger.warning("The database connection will fail and the server will not start.")
        valid = False

    if current.SESSION_SECRET.get_secret_value() == DEFAULT_SESSION_SECRET:
        logger.warning("SESSION_SECRET is not set - session cookies are signed with the default secret!")

    if current.SESSION_BACKEND == "redis" and not current.REDIS_URL:
        logger.warning("SESSION_BACKEND=redis but REDIS_URL is not set")
        valid = False

    return valid
