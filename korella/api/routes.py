from __future__ import annotations

import asyncio
import hmac
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response
from fastapi.responses import JSONResponse

from korella.api.schemas import (
    ActionResponse,
    AuthActivityResponse,
    AuthEventResponse,
    ChangePasswordRequest,
    DataResponse,
    EmailVerificationRequest,
    ForgotPasswordRequest,
    LoginRequest,
    LoginResponse,
    RegisterRequest,
    ResendVerificationRequest,
    ResetPasswordRequest,
    UserResponse,
)
from korella.logging import get_logger
from korella.service.accounts import AuthContext
from korella.service.errors import (
    AccountLockedError,
    AuthenticationError,
    ForbiddenError,
    ServerError,
)
from korella.service.rate_limit import (
    RateLimitPolicy,
    api_key,
    client_ip,
    email_verification_key,
    login_attempt_key,
    password_reset_key,
)
from korella.service.runtime import get_runtime
from korella.service.sessions import get_session_state, subscription_status
from korella.service.tokens import time_remaining
from korella.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/api")

FORGOT_PASSWORD_MESSAGE = (
    "If an account exists with this email, a password reset link has been sent"
)
RESEND_VERIFICATION_MESSAGE = (
    "If an unverified account exists with this email, a verification link has been sent"
)
_LOGIN_ERRORS = {401: AuthenticationError, 403: ForbiddenError, 423: AccountLockedError}


def _http_error(
    code: str,
    message: str,
    status_code: int,
    details: Optional[dict] = None,
    *,
    retry_after: Optional[int] = None,
    headers: Optional[dict[str, str]] = None,
) -> HTTPException:
    error: dict[str, object] = {"code": code, "message": message}
    if details is not None:
        error["details"] = details
    if retry_after is not None:
        error["retry_after"] = retry_after
    return HTTPException(status_code=status_code, detail={"error": error}, headers=headers)


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_at")

    def __init__(self, limit: int, remaining: int, reset_at: datetime):
        self.limit = limit
        self.remaining = remaining
        self.reset_at = reset_at

    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(max(0, self.remaining)),
            "X-RateLimit-Reset": self.reset_at.isoformat(),
        }

    def apply_headers(self, response: Response) -> None:
        for name, value in self.headers().items():
            response.headers[name] = value


def _enforce_rate_limit(
    key: str, policy: RateLimitPolicy, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Count a hit against ``key`` and reject the request once over the policy.

    Raises:
        HTTPException with 429 and a ``Retry-After`` hint if the limit is exceeded
    """
    limiter = get_runtime().rate_limiter
    result = limiter.check(key, policy)
    info = RateLimitInfo(result.limit, result.remaining, result.reset_at)
    if response is not None:
        info.apply_headers(response)
    if not result.allowed:
        retry_after = result.retry_after(limiter.now())
        raise _http_error(
            "rate_limited",
            f"Rate limit exceeded. Try again after {result.reset_at.isoformat()}",
            status_code=429,
            retry_after=retry_after,
            headers={**info.headers(), "Retry-After": str(retry_after)},
        )
    return info


def _request_ip(request: Request) -> str:
    return client_ip(request.headers, request.client.host if request.client else None)


def _user_agent(request: Request) -> Optional[str]:
    return request.headers.get("user-agent")


def _user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        full_name=user.full_name,
        email_verified=user.email_verified,
        account_status=user.account_status,
        subscription_tier=user.subscription_tier,
        trial_expires_at=user.trial_expires_at,
        last_login_at=user.last_login_at,
        created_at=user.created_at,
    )


async def get_current_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    return get_runtime().accounts.authenticate(authorization)


@router.post("/auth/register", response_model=DataResponse, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create an unverified trial account and mail a verification link.

    Raises:
        400: If the password fails the complexity rules
        409: If the email is already registered
        429: If the strict API limit is exceeded
    """
    runtime = get_runtime()
    ip = _request_ip(request)
    _enforce_rate_limit(api_key(ip, "register"), runtime.rate_limits.api_strict, response=response)
    user = await runtime.accounts.register(
        body.email, body.password, body.full_name, ip, _user_agent(request)
    )
    return DataResponse(
        message="Registration successful. Please check your email to verify your account.",
        data=_user_response(user),
    )


@router.post("/auth/verify-email", response_model=ActionResponse, tags=["auth"])
async def verify_email(body: EmailVerificationRequest, request: Request, response: Response):
    runtime = get_runtime()
    ip = _request_ip(request)
    _enforce_rate_limit(api_key(ip, "verify-email"), runtime.rate_limits.api_strict, response=response)
    await runtime.accounts.verify_email(body.token, ip, _user_agent(request))
    return ActionResponse(message="Email verified successfully. You can now log in.")


@router.post("/auth/resend-verification", response_model=ActionResponse, tags=["auth"])
async def resend_verification(body: ResendVerificationRequest, response: Response):
    runtime = get_runtime()
    _enforce_rate_limit(
        email_verification_key(body.email),
        runtime.rate_limits.email_verification,
        response=response,
    )
    await runtime.accounts.resend_verification(body.email)
    return ActionResponse(message=RESEND_VERIFICATION_MESSAGE)


@router.post("/auth/login", response_model=LoginResponse, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password and issue a session token.

    Raises:
        401: If the credentials are invalid
        403: If the account is deactivated or unverified
        423: If the account is locked after repeated failures
        429: If the login limit for this IP is exceeded
    """
    runtime = get_runtime()
    ip = _request_ip(request)
    _enforce_rate_limit(login_attempt_key(ip), runtime.rate_limits.login, response=response)
    result = await runtime.accounts.login(
        body.email,
        body.password,
        remember_me=body.remember_me,
        ip_address=ip,
        user_agent=_user_agent(request),
    )
    if not result.success:
        details: dict[str, object] = {}
        if result.error_code:
            details["reason"] = result.error_code
        if result.locked_until:
            details["locked_until"] = result.locked_until.isoformat()
        error_cls = _LOGIN_ERRORS.get(result.status_code, AuthenticationError)
        raise error_cls(result.message, detail=details)
    return LoginResponse(
        message=result.message,
        token=result.token,
        expires_at=result.expires_at,
        user=_user_response(result.user),
    )


@router.post("/auth/logout", response_model=ActionResponse, tags=["auth"])
async def logout(request: Request, principal: AuthContext = Depends(get_current_user)):
    runtime = get_runtime()
    await runtime.accounts.logout(principal, _request_ip(request), _user_agent(request))
    return ActionResponse(message="Logged out successfully")


@router.get("/auth/session", response_model=DataResponse, tags=["auth"])
async def session_info(
    request: Request,
    response: Response,
    principal: AuthContext = Depends(get_current_user),
):
    """Describe the caller's session: state, token lifetime and subscription."""
    runtime = get_runtime()
    _enforce_rate_limit(
        api_key(_request_ip(request), "session"), runtime.rate_limits.api_general, response=response
    )
    now = runtime.rate_limiter.now()
    payload = principal.payload
    state = get_session_state(principal.user, payload.expires_at, now)
    remaining = time_remaining(payload, now)
    return DataResponse(
        data={
            "user": _user_response(principal.user).model_dump(mode="json"),
            "session": {
                "id": principal.session_id,
                "state": state.state.value,
                "reason": state.reason,
                "lifetime": runtime.tokens.classify(payload).value,
                "remember_me": payload.remember_me,
                "issued_at": payload.issued_at.isoformat(),
                "expires_at": payload.expires_at.isoformat(),
                "time_remaining": {
                    "expired": remaining.expired,
                    "seconds": remaining.seconds,
                    "minutes": remaining.minutes,
                    "hours": remaining.hours,
                    "days": remaining.days,
                },
            },
            "subscription": subscription_status(principal.user, now),
        }
    )


@router.get("/auth/activity", response_model=AuthActivityResponse, tags=["auth"])
async def auth_activity(
    request: Request,
    response: Response,
    limit: int = 50,
    principal: AuthContext = Depends(get_current_user),
):
    runtime = get_runtime()
    _enforce_rate_limit(
        api_key(_request_ip(request), "activity"), runtime.rate_limits.api_general, response=response
    )
    events = runtime.auth_log.recent_events(principal.user_id, limit=max(1, min(limit, 200)))
    return AuthActivityResponse(
        data=[
            AuthEventResponse(
                id=event.id,
                event_type=event.event_type,
                success=event.success,
                failure_reason=event.failure_reason,
                ip_address=event.ip_address,
                user_agent=event.user_agent,
                created_at=event.created_at,
            )
            for event in events
        ]
    )


@router.post("/auth/forgot-password", response_model=ActionResponse, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest, request: Request, response: Response):
    """Start a password reset without revealing whether the account exists.

    Raises:
        400: If the email is malformed
        429: If this email and IP pair exceeded the reset limit
        500: If the reset request could not be stored or mailed
    """
    runtime = get_runtime()
    ip = _request_ip(request)
    _enforce_rate_limit(
        password_reset_key(body.email, ip), runtime.rate_limits.password_reset, response=response
    )
    try:
        await runtime.passwords.request_reset(body.email, ip, _user_agent(request))
    except Exception as exc:
        logger.exception("forgot_password_failed", error=str(exc))
        raise ServerError("Failed to process password reset request") from exc
    return ActionResponse(message=FORGOT_PASSWORD_MESSAGE)


@router.post("/auth/reset-password", response_model=ActionResponse, tags=["auth"])
async def reset_password(body: ResetPasswordRequest, request: Request, response: Response):
    runtime = get_runtime()
    ip = _request_ip(request)
    _enforce_rate_limit(api_key(ip, "reset-password"), runtime.rate_limits.api_strict, response=response)
    result = await runtime.passwords.complete_reset(
        body.token, body.new_password, ip, _user_agent(request)
    )
    if not result.success:
        raise _http_error("validation_error", result.error, status_code=400)
    return ActionResponse(
        message="Password reset successfully. Please login with your new password."
    )


@router.post("/auth/change-password", response_model=ActionResponse, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest,
    request: Request,
    response: Response,
    principal: AuthContext = Depends(get_current_user),
):
    """Change the password of the signed-in user and revoke their other sessions.

    Raises:
        400: If the current password is wrong or the new one is rejected
        401: If the caller is not authenticated
        429: If the strict API limit is exceeded
    """
    runtime = get_runtime()
    ip = _request_ip(request)
    _enforce_rate_limit(
        api_key(ip, f"change-password:{principal.user_id}"),
        runtime.rate_limits.api_strict,
        response=response,
    )
    if body.current_password == body.new_password:
        raise _http_error(
            "validation_error",
            "New password must be different from current password",
            status_code=400,
        )
    result = await runtime.passwords.change_password(
        principal.user_id,
        body.current_password,
        body.new_password,
        ip,
        _user_agent(request),
        keep_session_id=principal.session_id,
    )
    if not result.success:
        raise _http_error("validation_error", result.error, status_code=400)
    return ActionResponse(message="Password changed successfully")


@router.api_route(
    "/cron/purge-auth-logs",
    methods=["GET", "POST"],
    response_model=DataResponse,
    tags=["cron"],
)
async def purge_auth_logs(authorization: Optional[str] = Header(None)):
    """Delete auth logs and spent tokens past their retention window.

    Raises:
        401: If ``CRON_SECRET`` is set and the bearer value does not match
    """
    runtime = get_runtime()
    secret = runtime.settings.cron_secret
    if secret:
        if not hmac.compare_digest((authorization or "").encode(), f"Bearer {secret}".encode()):
            logger.warning("cron_secret_mismatch")
            raise _http_error("unauthorized", "Invalid cron secret", status_code=401)
    else:
        logger.warning("cron_secret_not_configured")

    report = await asyncio.to_thread(runtime.retention.run)
    if not report.success:
        return JSONResponse(
            status_code=500,
            content=DataResponse(
                success=False, message="Failed to purge auth logs", data=report.to_dict()
            ).model_dump(),
        )
    return DataResponse(message="Auth logs purged successfully", data=report.to_dict())


__all__ = ["RateLimitInfo", "get_current_user", "router"]
