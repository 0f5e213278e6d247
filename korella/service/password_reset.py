"""Forgot-password and reset-token workflow plus authenticated password change."""

from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from korella.logging import email_fingerprint, get_logger
from korella.service.auth_log import AuthEventLogger, AuthEventType
from korella.service.email import EmailService
from korella.service.hashing import CredentialHasher
from korella.service.password_policy import sanitize_password, validate_password
from korella.storage.common import AccountStore
from korella.storage.models import PasswordReset, utcnow

logger = get_logger(__name__)

INVALID_TOKEN_MESSAGE = "Invalid or expired password reset token"


@dataclass(frozen=True)
class OperationResult:
    success: bool
    error: Optional[str] = None


class PasswordService:
    """Forgot-password, reset completion and authenticated password change."""

    def __init__(
        self,
        store: AccountStore,
        hasher: CredentialHasher,
        email: EmailService,
        auth_log: AuthEventLogger,
        *,
        reset_expiration_hours: int = 24,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.email = email
        self.auth_log = auth_log
        self.reset_expiration_hours = reset_expiration_hours
        self._clock = clock or utcnow

    @staticmethod
    def generate_token() -> str:
        return secrets.token_urlsafe(32)

    async def request_reset(
        self,
        email: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[PasswordReset]:
        """Create a reset token and mail the link.

        Unknown emails return ``None`` with no side effects so callers can
        answer every request identically.
        """

        user = self.store.get_user_by_email(email)
        if not user:
            logger.debug(
                "password_reset_unknown_email", email_fingerprint=email_fingerprint(email)
            )
            return None

        expires_at = self._clock() + timedelta(hours=self.reset_expiration_hours)
        reset = self.store.create_password_reset(
            user.id,
            self.generate_token(),
            expires_at,
            request_ip=ip_address,
            request_user_agent=user_agent,
        )
        sent = await asyncio.to_thread(
            self.email.send_password_reset,
            user.email,
            user.full_name,
            reset.token,
            self.reset_expiration_hours,
        )
        if not sent:
            logger.warning("password_reset_email_failed", user_id=user.id)
        self.auth_log.log(
            AuthEventType.PASSWORD_RESET_REQUEST,
            success=True,
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        logger.info("password_reset_requested", user_id=user.id, reset_id=reset.id)
        return reset

    def validate_reset_token(self, token: str) -> Optional[PasswordReset]:
        return self.store.get_valid_password_reset(token, self._clock())

    async def complete_reset(
        self,
        token: str,
        new_password: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> OperationResult:
        try:
            reset = self.validate_reset_token(token)
            if not reset:
                logger.warning("password_reset_invalid_token", token_prefix=token[:8])
                return OperationResult(False, INVALID_TOKEN_MESSAGE)

            validation = validate_password(new_password)
            if not validation.valid:
                return OperationResult(False, validation.message)

            password_hash, algo = await asyncio.to_thread(self.hasher.hash, new_password)
            user_id = self.store.consume_password_reset(
                reset.id, password_hash, algo, self._clock()
            )
            if not user_id:
                logger.warning("password_reset_token_race_lost", reset_id=reset.id)
                return OperationResult(False, INVALID_TOKEN_MESSAGE)

            revoked = self.store.delete_user_sessions(user_id)
            user = self.store.get_user(user_id)
            if user:
                await asyncio.to_thread(
                    self.email.send_password_changed, user.email, user.full_name
                )
            self.auth_log.log(
                AuthEventType.PASSWORD_RESET_COMPLETE,
                success=True,
                user_id=user_id,
                ip_address=ip_address,
                user_agent=user_agent,
                event_details={"sessions_revoked": revoked},
            )
            logger.info(
                "password_reset_completed", user_id=user_id, sessions_revoked=revoked
            )
            return OperationResult(True)
        except Exception as exc:
            logger.exception(
                "password_reset_failed", error=sanitize_password(str(exc))
            )
            return OperationResult(False, "Failed to complete password reset")

    async def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        *,
        keep_session_id: Optional[str] = None,
    ) -> OperationResult:
        try:
            user = self.store.get_user(user_id)
            if not user or user.is_deleted:
                return OperationResult(False, "User not found")

            current_ok = await asyncio.to_thread(
                self.hasher.verify, current_password, user.password_hash, user.password_algo
            )
            if not current_ok:
                self.auth_log.log(
                    AuthEventType.PASSWORD_CHANGE,
                    success=False,
                    user_id=user.id,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    failure_reason="current_password_incorrect",
                )
                return OperationResult(False, "Current password is incorrect")

            unchanged = await asyncio.to_thread(
                self.hasher.verify, new_password, user.password_hash, user.password_algo
            )
            if unchanged:
                return OperationResult(
                    False, "New password must be different from current password"
                )

            validation = validate_password(new_password)
            if not validation.valid:
                return OperationResult(False, validation.message)

            password_hash, algo = await asyncio.to_thread(self.hasher.hash, new_password)
            if not self.store.update_password(user.id, password_hash, algo):
                return OperationResult(False, "User not found")

            revoked = self.store.delete_user_sessions(
                user.id, except_session_id=keep_session_id
            )
            await asyncio.to_thread(
                self.email.send_password_changed, user.email, user.full_name
            )
            self.auth_log.log(
                AuthEventType.PASSWORD_CHANGE,
                success=True,
                user_id=user.id,
                ip_address=ip_address,
                user_agent=user_agent,
                session_id=keep_session_id,
                event_details={"sessions_revoked": revoked},
            )
            logger.info("password_changed", user_id=user.id, sessions_revoked=revoked)
            return OperationResult(True)
        except Exception as exc:
            logger.exception(
                "password_change_failed", user_id=user_id, error=sanitize_password(str(exc))
            )
            return OperationResult(False, "Failed to change password")


__all__ = ["INVALID_TOKEN_MESSAGE", "OperationResult", "PasswordService"]
