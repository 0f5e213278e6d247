from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

_VALID_ERROR_CODES = frozenset(
    {
        "validation_error",
        "unauthorized",
        "forbidden",
        "not_found",
        "conflict",
        "locked",
        "rate_limited",
        "server_error",
    }
)


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after dropping zero-width and bidi override characters."""
    zero_width = "​‌‍﻿"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(
        c for c in value if c not in zero_width and c not in bidi_overrides
    )
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")

EMAIL_REQUIRED_MESSAGE = "Valid email address is required"


def _validate_email(value: str) -> str:
    normalized = _normalize_unicode((value or "").strip().lower())
    if not 3 <= len(normalized) <= 254:
        raise ValueError(EMAIL_REQUIRED_MESSAGE)
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain or len(local) > 64:
        raise ValueError(EMAIL_REQUIRED_MESSAGE)
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError(EMAIL_REQUIRED_MESSAGE)
    labels = domain.split(".")
    if len(labels) < 2:
        raise ValueError(EMAIL_REQUIRED_MESSAGE)
    for label in labels:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError(EMAIL_REQUIRED_MESSAGE)
    return normalized


class _EmailBody(BaseModel):
    email: str = Field(default="", validate_default=True, max_length=320)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)


# requests
class RegisterRequest(_EmailBody):
    password: str = Field(..., max_length=1024)
    full_name: str = Field(..., min_length=1, max_length=200)

    @field_validator("full_name")
    @classmethod
    def _clean_name(cls, value: str) -> str:
        cleaned = _normalize_unicode(value).strip()
        if not cleaned:
            raise ValueError("Full name is required")
        return cleaned


class LoginRequest(_EmailBody):
    password: str = Field(..., min_length=1, max_length=1024)
    remember_me: bool = False


class EmailVerificationRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)


class ResendVerificationRequest(_EmailBody):
    pass


class ForgotPasswordRequest(_EmailBody):
    pass


class ResetPasswordRequest(BaseModel):
    token: str = Field(default="", validate_default=True, max_length=256)
    new_password: str = Field(default="", validate_default=True, max_length=1024)

    @field_validator("token")
    @classmethod
    def _check_token(cls, value: str) -> str:
        if len(value) < 10:
            raise ValueError("Valid reset token is required")
        return value

    @field_validator("new_password")
    @classmethod
    def _check_new_password(cls, value: str) -> str:
        if not value:
            raise ValueError("New password is required")
        return value


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=1024)
    new_password: str = Field(..., min_length=1, max_length=1024)


# responses
class ErrorResponse(BaseModel):
    """Error body shared by every non-2xx response."""

    model_config = ConfigDict(populate_by_name=True)

    error: str
    message: str
    code: str
    details: Optional[Any] = None
    retry_after: Optional[int] = Field(default=None, alias="retryAfter")

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class ActionResponse(BaseModel):
    success: bool = True
    message: str


class DataResponse(BaseModel):
    success: bool = True
    message: Optional[str] = None
    data: Optional[Any] = None


class UserResponse(BaseModel):
    id: str
    email: str
    full_name: str
    email_verified: bool
    account_status: str
    subscription_tier: str
    trial_expires_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime


class LoginResponse(BaseModel):
    success: bool = True
    message: str
    token: str
    expires_at: datetime
    user: UserResponse


class AuthEventResponse(BaseModel):
    id: str
    event_type: str
    success: bool
    failure_reason: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime


class AuthActivityResponse(BaseModel):
    success: bool = True
    data: List[AuthEventResponse]
