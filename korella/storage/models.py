from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional

ACCOUNT_ACTIVE = "active"
ACCOUNT_DEACTIVATED = "deactivated"

SUBSCRIPTION_TIERS = ("trial", "free", "pro", "enterprise")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    full_name: str
    password_hash: Optional[str] = None
    password_algo: Optional[str] = None
    email_verified: bool = False
    email_verified_at: Optional[datetime] = None
    account_status: str = ACCOUNT_ACTIVE
    subscription_tier: str = "trial"
    trial_expires_at: Optional[datetime] = None
    failed_login_count: int = 0
    locked_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    last_login_ip: Optional[str] = None
    is_deleted: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def is_locked(self, now: Optional[datetime] = None) -> bool:
        if self.locked_until is None:
            return False
        return self.locked_until > (now or utcnow())


@dataclass
class Session:
    """Server-side record of an issued session token (``sid`` claim)."""

    id: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        expires_at: datetime,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> "Session":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            created_at=utcnow(),
            expires_at=expires_at,
            ip_address=ip_address,
            user_agent=user_agent,
        )


@dataclass
class PasswordReset:
    id: str
    user_id: str
    token: str
    expires_at: datetime
    used: bool = False
    used_at: Optional[datetime] = None
    request_ip: Optional[str] = None
    request_user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        return not self.used and self.expires_at > (now or utcnow())


@dataclass
class EmailVerification:
    id: str
    user_id: str
    token: str
    expires_at: datetime
    used: bool = False
    used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class AuthLog:
    event_type: str
    success: bool
    user_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    session_id: Optional[str] = None
    target_email: Optional[str] = None
    failure_reason: Optional[str] = None
    event_details: Dict | None = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utcnow)
