from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    """Account record; ``current_session_id`` is the single-active-session registry.

    At most one session id is valid per user. Writing a new value invalidates
    the previous one immediately; ``None`` means no valid session.
    """

    id: str
    email: str
    full_name: str = ""
    profile_pic: str = ""
    google_id: Optional[str] = None
    is_admin: bool = False
    created_at: datetime = field(default_factory=utcnow)
    current_session_id: Optional[str] = None
    last_login_at: Optional[datetime] = None
