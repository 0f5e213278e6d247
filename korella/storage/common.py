"""Contract shared by the memory and Postgres account stores."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol

from korella.storage.models import (
    AuthLog,
    EmailVerification,
    PasswordReset,
    Session,
    User,
)


def normalize_email(email: str) -> str:
    """Emails are unique case-insensitively; store and compare lower-case."""
    return email.strip().lower()


class AccountStore(Protocol):
    # users
    def create_user(
        self,
        email: str,
        full_name: str,
        *,
        password_hash: Optional[str] = None,
        password_algo: Optional[str] = None,
        email_verified: bool = False,
        subscription_tier: str = "trial",
        trial_expires_at: Optional[datetime] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(
        self, email: str, *, include_deleted: bool = False
    ) -> Optional[User]: ...

    def update_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> bool: ...

    def set_account_status(self, user_id: str, status: str) -> Optional[User]: ...

    def soft_delete_user(self, user_id: str) -> bool: ...

    def mark_email_verified(self, user_id: str) -> Optional[User]: ...

    # lockout
    def record_failed_login(
        self, user_id: str, *, max_attempts: int, lock_until: datetime
    ) -> tuple[int, Optional[datetime]]: ...

    def clear_lockout(self, user_id: str) -> None: ...

    def record_successful_login(
        self, user_id: str, ip_address: Optional[str]
    ) -> None: ...

    # password reset tokens
    def create_password_reset(
        self,
        user_id: str,
        token: str,
        expires_at: datetime,
        *,
        request_ip: Optional[str] = None,
        request_user_agent: Optional[str] = None,
    ) -> PasswordReset: ...

    def get_valid_password_reset(
        self, token: str, now: datetime
    ) -> Optional[PasswordReset]: ...

    def consume_password_reset(
        self, reset_id: str, password_hash: str, password_algo: str, now: datetime
    ) -> Optional[str]: ...

    # email verification tokens
    def create_email_verification(
        self, user_id: str, token: str, expires_at: datetime
    ) -> EmailVerification: ...

    def consume_email_verification(self, token: str, now: datetime) -> Optional[str]: ...

    # sessions
    def create_session(
        self,
        user_id: str,
        expires_at: datetime,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def delete_session(self, session_id: str) -> bool: ...

    def delete_user_sessions(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int: ...

    # audit log
    def append_auth_log(self, entry: AuthLog) -> None: ...

    def list_auth_logs(
        self,
        *,
        user_id: Optional[str] = None,
        event_type: Optional[str] = None,
        target_email: Optional[str] = None,
        limit: int = 50,
    ) -> List[AuthLog]: ...

    # retention
    def purge_auth_logs(self, older_than: datetime) -> int: ...

    def purge_password_resets(self, now: datetime, used_before: datetime) -> int: ...

    def purge_email_verifications(self, now: datetime, used_before: datetime) -> int: ...

    def verify_connection(self) -> None: ...


__all__ = ["AccountStore", "normalize_email"]
