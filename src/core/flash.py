# src/core/flash.py
"""Single-use, session-scoped status messages."""

from typing import Dict, List

from src.models.session_state import Session

FLASH_SESSION_KEY = "flash"


class FlashChannel:
    """
    Queue of messages by category, stored in the session.

    ``push`` appends for a later request; ``drain_all`` returns everything
    pending and removes it from the session in the same step, so a message
    is shown once and then gone.
    """

    def __init__(self, session: Session):
        self._session = session

    def push(self, category: str, message: str) -> None:
        pending = self._session.get(FLASH_SESSION_KEY)
        if pending is None:
            pending = {}
            self._session[FLASH_SESSION_KEY] = pending
        pending.setdefault(category, []).append(message)
        self._session.mark_modified()

    def peek(self) -> Dict[str, List[str]]:
        return {category: list(messages) for category, messages in self._session.get(FLASH_SESSION_KEY, {}).items()}

    def drain(self, category: str) -> List[str]:
        pending = self._session.get(FLASH_SESSION_KEY)
        if not pending or category not in pending:
            return []
        messages = pending.pop(category)
        if not pending:
            del self._session[FLASH_SESSION_KEY]
        else:
            self._session.mark_modified()
        return messages

    def drain_all(self) -> Dict[str, List[str]]:
        return self._session.pop(FLASH_SESSION_KEY, None) or {}
