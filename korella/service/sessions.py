"""Per-request account checks behind every authenticated call.

A valid signature only proves who the caller was when the token was issued.
:class:`SessionValidator` re-reads the account on each request so deletion,
deactivation, lockout and missing email verification take effect at once.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional, Tuple

from korella.logging import get_logger
from korella.storage.common import AccountStore
from korella.storage.models import (
    ACCOUNT_DEACTIVATED,
    SUBSCRIPTION_TIERS,
    User,
    utcnow,
)

logger = get_logger(__name__)


class SessionErrorCode(str, Enum):
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    ACCOUNT_DEACTIVATED = "ACCOUNT_DEACTIVATED"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    INVALID_TOKEN = "INVALID_TOKEN"


class SessionState(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"
    INVALID = "invalid"


@dataclass(frozen=True)
class SessionError:
    code: SessionErrorCode
    message: str
    locked_until: Optional[datetime] = None


@dataclass(frozen=True)
class SessionValidationResult:
    valid: bool
    user: Optional[User] = None
    error: Optional[SessionError] = None


@dataclass(frozen=True)
class SessionStateInfo:
    state: SessionState
    reason: Optional[str] = None


def _is_missing(user: Optional[User], now: datetime) -> bool:
    return user is None


def _is_deleted(user: User, now: datetime) -> bool:
    return user.is_deleted


def _is_deactivated(user: User, now: datetime) -> bool:
    return user.account_status == ACCOUNT_DEACTIVATED


def _is_locked(user: User, now: datetime) -> bool:
    return user.is_locked(now)


def _is_unverified(user: User, now: datetime) -> bool:
    return not user.email_verified


# First match wins; later predicates may assume the user exists.
_CHECKS: Tuple[Tuple[Callable[..., bool], SessionErrorCode, str], ...] = (
    (_is_missing, SessionErrorCode.USER_NOT_FOUND, "User not found"),
    (_is_deleted, SessionErrorCode.USER_NOT_FOUND, "User not found"),
    (
        _is_deactivated,
        SessionErrorCode.ACCOUNT_DEACTIVATED,
        "Account has been deactivated",
    ),
    (
        _is_locked,
        SessionErrorCode.ACCOUNT_LOCKED,
        "Account is temporarily locked due to multiple failed login attempts",
    ),
    (
        _is_unverified,
        SessionErrorCode.ACCOUNT_DEACTIVATED,
        "Email address must be verified",
    ),
)


def evaluate_user(user: Optional[User], now: Optional[datetime] = None) -> SessionValidationResult:
    current = now or utcnow()
    for predicate, code, message in _CHECKS:
        if predicate(user, current):
            locked_until = (
                user.locked_until if code is SessionErrorCode.ACCOUNT_LOCKED else None
            )
            return SessionValidationResult(
                valid=False, error=SessionError(code, message, locked_until)
            )
    return SessionValidationResult(valid=True, user=user)


class SessionValidator:
    def __init__(
        self,
        store: AccountStore,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self._clock = clock or utcnow

    def validate(self, user_id: str) -> SessionValidationResult:
        try:
            user = self.store.get_user(user_id)
            return evaluate_user(user, self._clock())
        except Exception as exc:
            logger.error("session_validation_failed", user_id=user_id, error=str(exc))
            return SessionValidationResult(
                valid=False,
                error=SessionError(
                    SessionErrorCode.INVALID_TOKEN, "Session validation failed"
                ),
            )


def get_lock_expiration_time(
    locked_until: datetime, now: Optional[datetime] = None
) -> str:
    """Human-readable time left on a lock, rounded down."""

    diff = (locked_until - (now or utcnow())).total_seconds()
    if diff <= 0:
        return "now"
    minutes = int(diff // 60)
    if minutes < 60:
        return f"{minutes} minute{'s' if minutes > 1 else ''}"
    hours = minutes // 60
    return f"{hours} hour{'s' if hours > 1 else ''}"


def get_session_state(
    user: User,
    token_expires_at: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> SessionStateInfo:
    current = now or utcnow()
    if token_expires_at is not None and token_expires_at <= current:
        return SessionStateInfo(SessionState.EXPIRED, "Session token has expired")
    if user.is_deleted:
        return SessionStateInfo(SessionState.INVALID, "User account has been deleted")
    if user.account_status == ACCOUNT_DEACTIVATED:
        return SessionStateInfo(SessionState.REVOKED, "Account has been deactivated")
    if user.locked_until and user.is_locked(current):
        remaining = get_lock_expiration_time(user.locked_until, current)
        return SessionStateInfo(
            SessionState.REVOKED, f"Account is locked for {remaining}"
        )
    if not user.email_verified:
        return SessionStateInfo(SessionState.REVOKED, "Email address must be verified")
    return SessionStateInfo(SessionState.ACTIVE)


def has_required_tier(tier: str, required: str) -> bool:
    order = list(SUBSCRIPTION_TIERS)
    user_rank = order.index(tier) if tier in order else -1
    required_rank = order.index(required) if required in order else -1
    return user_rank >= required_rank


def subscription_status(user: User, now: Optional[datetime] = None) -> dict:
    current = now or utcnow()
    tier = user.subscription_tier or "free"
    is_trial = tier == "trial"
    trial_end = user.trial_expires_at if is_trial else None
    days_remaining = None
    if trial_end is not None:
        days_remaining = max(0, int((trial_end - current).total_seconds() // 86400))
    return {
        "tier": tier,
        "is_trial": is_trial,
        "is_trial_expired": bool(trial_end and trial_end < current),
        "days_remaining": days_remaining,
        "accessible_tiers": [t for t in SUBSCRIPTION_TIERS if has_required_tier(tier, t)],
    }


__all__ = [
    "SessionError",
    "SessionErrorCode",
    "SessionState",
    "SessionStateInfo",
    "SessionValidationResult",
    "SessionValidator",
    "evaluate_user",
    "get_lock_expiration_time",
    "get_session_state",
    "has_required_tier",
    "subscription_status",
]
