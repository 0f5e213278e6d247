from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from korella.logging import get_logger
from korella.storage.common import AccountStore
from korella.storage.models import AuthLog

logger = get_logger(__name__)


class AuthEventType(str, Enum):
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAIL = "login_fail"
    LOGOUT = "logout"
    REGISTRATION = "registration"
    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET_REQUEST = "password_reset_request"
    PASSWORD_RESET_COMPLETE = "password_reset_complete"
    PASSWORD_CHANGE = "password_change"
    ACCOUNT_LOCKOUT = "account_lockout"
    ACCOUNT_UNLOCK = "account_unlock"
    SESSION_INVALIDATED = "session_invalidated"


class AuthEventLogger:
    """Append-only audit trail of authentication events.

    Writes are best-effort: an audit failure is reported through structlog and
    never interrupts the login, reset or change that triggered it.
    """

    def __init__(self, store: AccountStore) -> None:
        self.store = store

    def log(
        self,
        event_type: AuthEventType | str,
        *,
        success: bool,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        session_id: Optional[str] = None,
        target_email: Optional[str] = None,
        failure_reason: Optional[str] = None,
        event_details: Optional[Dict[str, Any]] = None,
    ) -> bool:
        event = event_type.value if isinstance(event_type, AuthEventType) else event_type
        try:
            self.store.append_auth_log(
                AuthLog(
                    event_type=event,
                    success=success,
                    user_id=user_id,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    session_id=session_id,
                    target_email=target_email,
                    failure_reason=failure_reason,
                    event_details=event_details,
                )
            )
        except Exception as exc:
            logger.error(
                "auth_event_log_failed",
                event_type=event,
                user_id=user_id,
                error=str(exc),
            )
            return False
        return True

    def recent_events(self, user_id: str, limit: int = 50) -> List[AuthLog]:
        return self.store.list_auth_logs(user_id=user_id, limit=limit)


__all__ = ["AuthEventLogger", "AuthEventType"]
