# src/models/session_state.py

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterator, List, Optional
import secrets

from pydantic import BaseModel, Field


def new_session_id() -> str:
    return secrets.token_urlsafe(24)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionRecord(BaseModel):
    """
    The persisted form of a session: id, lifetime and the key-value
    payload (CSRF secret, flash queue and application data).
    """
    session_id: str = Field(default_factory=new_session_id)
    created_at: datetime = Field(default_factory=_utcnow)
    expires_at: datetime = Field(default_factory=_utcnow)
    data: Dict[str, Any] = Field(default_factory=dict)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or _utcnow()) >= self.expires_at

    def ttl_seconds(self, now: Optional[datetime] = None) -> int:
        remaining = (self.expires_at - (now or _utcnow())).total_seconds()
        return max(int(remaining), 0)


class Session:
    """
    Per-request view of a session.

    Every mutation sets ``modified``; the session stage persists the record
    once, when the response is flushed, and only if it was modified.
    """

    def __init__(self, record: SessionRecord, is_new: bool = False):
        self.record = record
        self.is_new = is_new
        self.modified = False
        self.destroyed = False
        self.replaced_ids: List[str] = []

    @property
    def id(self) -> str:
        return self.record.session_id

    @property
    def data(self) -> Dict[str, Any]:
        return self.record.data

    def __getitem__(self, key: str) -> Any:
        return self.record.data[key]

    def __setitem__(self, key: str, value: Any) -> None:
        self.record.data[key] = value
        self.modified = True

    def __delitem__(self, key: str) -> None:
        del self.record.data[key]
        self.modified = True

    def __contains__(self, key: object) -> bool:
        return key in self.record.data

    def __iter__(self) -> Iterator[str]:
        return iter(self.record.data)

    def __len__(self) -> int:
        return len(self.record.data)

    def get(self, key: str, default: Any = None) -> Any:
        return self.record.data.get(key, default)

    def pop(self, key: str, default: Any = None) -> Any:
        if key not in self.record.data:
            return default
        self.modified = True
        return self.record.data.pop(key)

    def clear(self) -> None:
        if self.record.data:
            self.record.data.clear()
            self.modified = True

    def mark_modified(self) -> None:
        """Flag in-place changes to nested values (e.g. appending to a list)."""
        self.modified = True

    def touch(self, max_age: int) -> None:
        self.record.expires_at = _utcnow() + timedelta(seconds=max_age)

    def regenerate(self) -> None:
        """Swap to a fresh id with an empty payload, e.g. after login."""
        self.replaced_ids.append(self.record.session_id)
        self.record = SessionRecord(expires_at=self.record.expires_at)
        self.is_new = True
        self.modified = True

    def destroy(self) -> None:
        self.destroyed = True
