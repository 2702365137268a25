from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

ROLES = ("user", "admin")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    """URL-safe random identifier, same shape for every collection."""
    return secrets.token_urlsafe(16)


def normalize_email(email: str) -> str:
    return email.strip().lower()


@dataclass
class User:
    id: str
    email: str
    first_name: str
    last_name: str
    password_hash: str
    role: str = "user"
    is_active: bool = True
    email_verified: bool = False
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


@dataclass
class Session:
    id: str
    user_id: str
    token: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    last_activity_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        token: str,
        ttl: timedelta,
        *,
        session_id: str | None = None,
        now: datetime | None = None,
    ) -> "Session":
        issued = now or utcnow()
        return cls(
            id=session_id or new_id(),
            user_id=user_id,
            token=token,
            expires_at=issued + ttl,
            created_at=issued,
            last_activity_at=issued,
        )

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.expires_at < (now or utcnow())


@dataclass
class LoginAttempt:
    id: str
    email: str
    success: bool = False
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    attempted_at: datetime = field(default_factory=utcnow)
