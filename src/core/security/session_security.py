"""
Session management for the request pipeline.

Reads the signed session-id cookie, loads the record from the store
adapter and, at the end of the request, persists it and re-issues the
cookie only when the session was modified.

Cookie policy:
- HttpOnly, Path=/
- Max-Age of SESSION_MAX_AGE seconds (7 days by default)
- Secure only when SESSION_COOKIE_SECURE is enabled
"""

from dataclasses import dataclass
from typing import Literal, Optional
import logging

from itsdangerous import BadSignature, TimestampSigner
from starlette.requests import Request
from starlette.responses import Response

from src.core.config import Settings
from src.models.session_state import Session, SessionRecord
from src.services.session_store import SessionStoreAdapter

logger = logging.getLogger(__name__)


@dataclass
class CookieParameters:
    """Attributes of the session cookie"""
    name: str = "session"
    max_age: int = 60 * 60 * 24 * 7
    httponly: bool = True
    secure: bool = False
    samesite: Literal["lax", "strict", "none"] = "lax"
    path: str = "/"

    @classmethod
    def from_settings(cls, current: Settings) -> "CookieParameters":
        return cls(
            name=current.SESSION_COOKIE_NAME,
            max_age=current.SESSION_MAX_AGE,
            secure=current.SESSION_COOKIE_SECURE,
            samesite=current.SESSION_COOKIE_SAMESITE
        )


class SessionManager:
    """
    Issues and reads session cookies backed by a store adapter.

    The cookie carries only the session id, signed with a timestamped
    HMAC so a forged or stale id never reaches the store.
    """

    def __init__(
        self,
        store: SessionStoreAdapter,
        secret_key: str,
        cookie: Optional[CookieParameters] = None
    ):
        self.store = store
        self.cookie = cookie or CookieParameters()
        self._signer = TimestampSigner(secret_key, salt="webgate.session")

    def sign(self, session_id: str) -> str:
        return self._signer.sign(session_id).decode("utf-8")

    def unsign(self, cookie_value: str) -> Optional[str]:
        """Return the session id, or None when the signature is bad or too old."""
        try:
            return self._signer.unsign(cookie_value, max_age=self.cookie.max_age).decode("utf-8")
        except BadSignature:
            return None

    def new_session(self) -> Session:
        session = Session(SessionRecord(), is_new=True)
        session.touch(self.cookie.max_age)
        return session

    async def load(self, request: Request) -> Session:
        """
        Resolve the session for ``request``.

        A missing, tampered, expired or unknown cookie yields a new anonymous
        session. Store failures propagate.
        """
        cookie_value = request.cookies.get(self.cookie.name)
        if not cookie_value:
            return self.new_session()

        session_id = self.unsign(cookie_value)
        if session_id is None:
            logger.info("Rejected session cookie with invalid signature")
            return self.new_session()

        record = await self.store.get(session_id)
        if record is None:
            logger.debug(f"Session {session_id[:8]}... not found or expired")
            return self.new_session()

        return Session(record)

    async def commit(self, session: Session, response: Response) -> None:
        """Persist ``session`` and set or clear the cookie on ``response``."""
        if session.destroyed:
            await self.store.destroy(session.id)
            for old_id in session.replaced_ids:
                await self.store.destroy(old_id)
            response.delete_cookie(self.cookie.name, path=self.cookie.path)
            logger.debug(f"Destroyed session {session.id[:8]}...")
            return

        for old_id in session.replaced_ids:
            await self.store.destroy(old_id)

        if not session.modified:
            return

        session.touch(self.cookie.max_age)
        await self.store.set(session.record)

        response.set_cookie(
            self.cookie.name,
            self.sign(session.id),
            max_age=self.cookie.max_age,
            path=self.cookie.path,
            secure=self.cookie.secure,
            httponly=self.cookie.httponly,
            samesite=self.cookie.samesite
        )

        if session.is_new:
            logger.info(f"Created session {session.id[:8]}...")
