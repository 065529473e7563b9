"""
Security module for webgate.

Centralizes the security-related pieces the request pipeline relies on:
- Signed session cookies backed by a store adapter
- CSRF secrets and tokens
"""

from .csrf import (
    CsrfGuard,
    CsrfTokens,
    SAFE_METHODS,
)
from .session_security import (
    CookieParameters,
    SessionManager,
)

__all__ = [
    'CookieParameters',
    'CsrfGuard',
    'CsrfTokens',
    'SAFE_METHODS',
    'SessionManager',
]
