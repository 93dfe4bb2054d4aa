from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    first_name: str = ""
    last_name: str = ""
    roles: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)

    @property
    def normalized_email(self) -> str:
        return normalize_email(self.email)


@dataclass
class UserCredential:
    user_id: str
    password_hash: Optional[str] = None
    password_algo: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    last_updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class LockoutState:
    """Per-account failed login bookkeeping.

    ``last_reset_at`` records when the counter was last cleared by a successful
    login, so that failures observed before that instant can be discarded.
    """

    failed_count: int = 0
    lockout_end: Optional[datetime] = None
    last_reset_at: Optional[datetime] = None


@dataclass
class RefreshToken:
    id: str
    token: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    created_by_ip: str = "127.0.0.1"
    revoked_at: Optional[datetime] = None
    revoked_by_ip: Optional[str] = None
    reason_revoked: Optional[str] = None
    replaced_by_token: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        token: str,
        *,
        ttl_days: int,
        created_by_ip: str,
        now: datetime | None = None,
    ) -> "RefreshToken":
        issued = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            token=token,
            user_id=user_id,
            created_at=issued,
            expires_at=issued + timedelta(days=ttl_days),
            created_by_ip=created_by_ip,
        )

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def is_active(self, now: datetime | None = None) -> bool:
        return not self.is_revoked and not self.is_expired(now)


@dataclass
class PasswordResetToken:
    user_id: str
    token_hash: str
    created_at: datetime
    expires_at: datetime
    used_at: Optional[datetime] = None


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


DEFAULT_ROLES = ("Admin", "User", "Client")
