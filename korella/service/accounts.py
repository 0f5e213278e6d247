from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from korella.config import Settings
from korella.logging import email_fingerprint, get_logger
from korella.service.auth_log import AuthEventLogger, AuthEventType
from korella.service.email import EmailService
from korella.service.errors import (
    AuthenticationError,
    ConflictError,
    ValidationError,
)
from korella.service.hashing import CredentialHasher
from korella.service.password_policy import validate_password
from korella.service.sessions import (
    SessionErrorCode,
    SessionValidator,
    get_lock_expiration_time,
)
from korella.service.tokens import (
    TokenError,
    TokenErrorCode,
    TokenPayload,
    TokenService,
    extract_from_header,
)
from korella.storage.common import AccountStore
from korella.storage.errors import ConstraintViolation
from korella.storage.models import ACCOUNT_DEACTIVATED, User, utcnow

logger = get_logger(__name__)

INVALID_CREDENTIALS = "Invalid email or password"


@dataclass
class LoginResult:
    success: bool
    message: str
    status_code: int = 200
    error_code: Optional[str] = None
    token: Optional[str] = None
    expires_at: Optional[datetime] = None
    user: Optional[User] = None
    session_id: Optional[str] = None
    locked_until: Optional[datetime] = None


@dataclass
class AuthContext:
    user: User
    payload: TokenPayload
    session_id: Optional[str] = None

    @property
    def user_id(self) -> str:
        return self.user.id


class AccountService:
    """Registration, email verification, login with lockout, and request auth."""

    def __init__(
        self,
        store: AccountStore,
        hasher: CredentialHasher,
        tokens: TokenService,
        validator: SessionValidator,
        email: EmailService,
        auth_log: AuthEventLogger,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.tokens = tokens
        self.validator = validator
        self.email = email
        self.auth_log = auth_log
        self.settings = settings
        self._clock = clock or utcnow

    # registration
    async def register(
        self,
        email: str,
        password: str,
        full_name: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> User:
        validation = validate_password(password)
        if not validation.valid:
            raise ValidationError(validation.message, detail={"errors": validation.errors})

        existing = self.store.get_user_by_email(email, include_deleted=True)
        if existing:
            if existing.is_deleted:
                raise ConflictError(
                    "This email address was previously deleted. Please contact support."
                )
            raise ConflictError("An account with this email already exists.")

        password_hash, algo = await asyncio.to_thread(self.hasher.hash, password)
        now = self._clock()
        try:
            user = self.store.create_user(
                email,
                full_name,
                password_hash=password_hash,
                password_algo=algo,
                email_verified=False,
                subscription_tier="trial",
                trial_expires_at=now + timedelta(days=self.settings.trial_period_days),
            )
        except ConstraintViolation:
            raise ConflictError("An account with this email already exists.")

        await self._send_verification(user)
        self.auth_log.log(
            AuthEventType.REGISTRATION,
            success=True,
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        logger.info("user_registered", user_id=user.id)
        return user

    async def _send_verification(self, user: User) -> None:
        hours = self.settings.email_verification_expiration_hours
        record = self.store.create_email_verification(
            user.id, secrets.token_urlsafe(32), self._clock() + timedelta(hours=hours)
        )
        sent = await asyncio.to_thread(
            self.email.send_email_verification,
            user.email,
            user.full_name,
            record.token,
            hours,
        )
        if not sent:
            logger.warning("verification_email_failed", user_id=user.id)

    async def verify_email(
        self,
        token: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> str:
        user_id = self.store.consume_email_verification(token, self._clock())
        if not user_id:
            logger.warning("email_verification_invalid_token", token_prefix=token[:8])
            raise ValidationError("Invalid or expired verification token")
        self.auth_log.log(
            AuthEventType.EMAIL_VERIFICATION,
            success=True,
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        logger.info("email_verified", user_id=user_id)
        return user_id

    async def resend_verification(self, email: str) -> bool:
        user = self.store.get_user_by_email(email)
        if not user or user.email_verified:
            logger.debug(
                "verification_resend_skipped", email_fingerprint=email_fingerprint(email)
            )
            return False
        await self._send_verification(user)
        return True

    # login
    def _locked_result(self, locked_until: datetime, now: datetime) -> LoginResult:
        duration = get_lock_expiration_time(locked_until, now)
        return LoginResult(
            success=False,
            message=(
                "Account is locked due to too many failed login attempts. "
                f"Try again in {duration}"
            ),
            status_code=423,
            error_code=SessionErrorCode.ACCOUNT_LOCKED.value,
            locked_until=locked_until,
        )

    async def login(
        self,
        email: str,
        password: str,
        *,
        remember_me: bool = False,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        now = self._clock()
        user = self.store.get_user_by_email(email)
        if not user:
            self.auth_log.log(
                AuthEventType.LOGIN_FAIL,
                success=False,
                target_email=email.strip().lower(),
                ip_address=ip_address,
                user_agent=user_agent,
                failure_reason="unknown_email",
            )
            return LoginResult(False, INVALID_CREDENTIALS, 401, "INVALID_CREDENTIALS")

        if user.locked_until is not None:
            if user.is_locked(now):
                self.auth_log.log(
                    AuthEventType.LOGIN_FAIL,
                    success=False,
                    user_id=user.id,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    failure_reason="account_locked",
                )
                return self._locked_result(user.locked_until, now)
            self.store.clear_lockout(user.id)
            self.auth_log.log(
                AuthEventType.ACCOUNT_UNLOCK,
                success=True,
                user_id=user.id,
                ip_address=ip_address,
                user_agent=user_agent,
                event_details={"reason": "lock_expired"},
            )

        password_ok = await asyncio.to_thread(
            self.hasher.verify, password, user.password_hash, user.password_algo
        )
        if not password_ok:
            return self._record_failure(user, now, ip_address, user_agent)

        if user.account_status == ACCOUNT_DEACTIVATED:
            self.auth_log.log(
                AuthEventType.LOGIN_FAIL,
                success=False,
                user_id=user.id,
                ip_address=ip_address,
                user_agent=user_agent,
                failure_reason="account_deactivated",
            )
            return LoginResult(
                False,
                "Account has been deactivated",
                403,
                SessionErrorCode.ACCOUNT_DEACTIVATED.value,
            )
        if not user.email_verified:
            self.auth_log.log(
                AuthEventType.LOGIN_FAIL,
                success=False,
                user_id=user.id,
                ip_address=ip_address,
                user_agent=user_agent,
                failure_reason="email_not_verified",
            )
            return LoginResult(
                False,
                "Please verify your email before logging in",
                403,
                SessionErrorCode.ACCOUNT_DEACTIVATED.value,
            )

        self.store.record_successful_login(user.id, ip_address)
        if self.hasher.needs_rehash(user.password_algo):
            new_hash, algo = await asyncio.to_thread(self.hasher.hash, password)
            self.store.update_password(user.id, new_hash, algo)
            logger.info("password_rehashed", user_id=user.id, previous_algo=user.password_algo)

        expires_at = self.tokens.expiration_for(remember_me, now)
        session = self.store.create_session(
            user.id, expires_at, ip_address=ip_address, user_agent=user_agent
        )
        fresh = self.store.get_user(user.id) or user
        token, expires_at = self.tokens.issue(
            fresh, remember_me=remember_me, session_id=session.id
        )
        self.auth_log.log(
            AuthEventType.LOGIN_SUCCESS,
            success=True,
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
            session_id=session.id,
            event_details={"remember_me": remember_me},
        )
        logger.info("login_success", user_id=user.id, session_id=session.id)
        return LoginResult(
            success=True,
            message="Login successful",
            token=token,
            expires_at=expires_at,
            user=fresh,
            session_id=session.id,
        )

    def _record_failure(
        self,
        user: User,
        now: datetime,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> LoginResult:
        max_attempts = self.settings.max_failed_login_attempts
        count, locked_until = self.store.record_failed_login(
            user.id,
            max_attempts=max_attempts,
            lock_until=now + timedelta(minutes=self.settings.lockout_duration_minutes),
        )
        self.auth_log.log(
            AuthEventType.LOGIN_FAIL,
            success=False,
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
            failure_reason="invalid_password",
            event_details={"failed_login_count": count},
        )
        if count >= max_attempts and locked_until is not None:
            self.auth_log.log(
                AuthEventType.ACCOUNT_LOCKOUT,
                success=True,
                user_id=user.id,
                ip_address=ip_address,
                user_agent=user_agent,
                event_details={
                    "failed_login_count": count,
                    "locked_until": locked_until.isoformat(),
                },
            )
            logger.warning("account_locked", user_id=user.id, attempts=count)
            return self._locked_result(locked_until, now)
        return LoginResult(False, INVALID_CREDENTIALS, 401, "INVALID_CREDENTIALS")

    async def logout(
        self,
        context: AuthContext,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> bool:
        removed = False
        if context.session_id:
            removed = self.store.delete_session(context.session_id)
        self.auth_log.log(
            AuthEventType.LOGOUT,
            success=True,
            user_id=context.user.id,
            ip_address=ip_address,
            user_agent=user_agent,
            session_id=context.session_id,
        )
        logger.info("logout", user_id=context.user.id, session_removed=removed)
        return removed

    # request authentication
    def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = extract_from_header(authorization)
        if not token:
            raise TokenError(TokenErrorCode.MISSING)
        payload = self.tokens.verify(token)

        result = self.validator.validate(payload.user_id)
        if not result.valid or result.user is None:
            error = result.error
            detail: dict = {"reason": error.code.value if error else "INVALID_TOKEN"}
            if error and error.locked_until:
                detail["locked_until"] = error.locked_until.isoformat()
            if error and error.code in (
                SessionErrorCode.ACCOUNT_DEACTIVATED,
                SessionErrorCode.ACCOUNT_LOCKED,
            ):
                self.auth_log.log(
                    AuthEventType.SESSION_INVALIDATED,
                    success=False,
                    user_id=payload.user_id,
                    session_id=payload.session_id,
                    failure_reason=error.code.value,
                )
            raise AuthenticationError(
                error.message if error else "Session validation failed", detail=detail
            )

        if self.settings.enforce_server_sessions:
            session = (
                self.store.get_session(payload.session_id) if payload.session_id else None
            )
            if (
                not session
                or session.user_id != result.user.id
                or session.expires_at <= self._clock()
            ):
                raise AuthenticationError(
                    "Session has been revoked. Please login again",
                    detail={"reason": SessionErrorCode.INVALID_TOKEN.value},
                )

        return AuthContext(user=result.user, payload=payload, session_id=payload.session_id)


__all__ = ["AccountService", "AuthContext", "INVALID_CREDENTIALS", "LoginResult"]
