"""
CSRF tokens derived from a per-session secret.

Token format: ``<salt>.<digest>`` where digest is the unpadded base64url
HMAC-SHA256 of the salt keyed with the session secret. Every render can
present a fresh token while the session keeps a single secret.
"""

import base64
import hashlib
import hmac
import secrets
from typing import Optional

from starlette.requests import Request

from src.core.exceptions import csrf_error

SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})

TOKEN_HEADERS = ("csrf-token", "xsrf-token", "x-csrf-token", "x-xsrf-token")

SECRET_SESSION_KEY = "csrf_secret"


class CsrfTokens:
    """Create secrets, derive tokens from them and verify presented tokens"""

    def __init__(self, secret_length: int = 18, salt_length: int = 8):
        self.secret_length = secret_length
        self.salt_length = salt_length

    def create_secret(self) -> str:
        return secrets.token_urlsafe(self.secret_length)

    def create(self, secret: str) -> str:
        salt = secrets.token_urlsafe(self.salt_length)[:self.salt_length]
        return f"{salt}.{self._digest(secret, salt)}"

    def verify(self, secret: Optional[str], token: Optional[str]) -> bool:
        if not secret or not token or not isinstance(token, str):
            return False

        salt, sep, digest = token.partition(".")
        if not sep or not salt or not digest:
            return False

        return secrets.compare_digest(digest, self._digest(secret, salt))

    @staticmethod
    def _digest(secret: str, salt: str) -> str:
        mac = hmac.new(secret.encode("utf-8"), salt.encode("utf-8"), hashlib.sha256).digest()
        return base64.urlsafe_b64encode(mac).rstrip(b"=").decode("ascii")


class CsrfGuard:
    """
    Validates unsafe requests against the session's CSRF secret.

    The token is looked up in the parsed body field, then the query string,
    then the conventional headers.
    """

    def __init__(self, tokens: Optional[CsrfTokens] = None, field_name: str = "_csrf"):
        self.tokens = tokens or CsrfTokens()
        self.field_name = field_name

    def ensure_secret(self, session) -> str:
        secret = session.get(SECRET_SESSION_KEY)
        if not secret:
            secret = self.tokens.create_secret()
            session[SECRET_SESSION_KEY] = secret
        return secret

    def extract_token(self, request: Request, form: Optional[dict] = None, body_json=None) -> Optional[str]:
        if form and form.get(self.field_name):
            return form[self.field_name]
        if isinstance(body_json, dict) and body_json.get(self.field_name):
            return body_json[self.field_name]
        if request.query_params.get(self.field_name):
            return request.query_params[self.field_name]
        for header in TOKEN_HEADERS:
            if value := request.headers.get(header):
                return value
        return None

    def validate(self, request: Request, secret: str, form: Optional[dict] = None, body_json=None) -> None:
        """Raise CsrfError unless the request is safe or carries a valid token."""
        if request.method.upper() in SAFE_METHODS:
            return

        token = self.extract_token(request, form, body_json)
        if not token:
            raise csrf_error("missing")
        if not self.tokens.verify(secret, token):
            raise csrf_error("invalid")
