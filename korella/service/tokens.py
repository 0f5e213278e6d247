"""HS256 session tokens: issuing, verifying and inspecting payloads."""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from korella.config import Settings
from korella.logging import get_logger
from korella.service.errors import AuthenticationError
from korella.storage.models import User, utcnow

logger = get_logger(__name__)

DEFAULT_EXPIRATION_DAYS = 3
EXTENDED_EXPIRATION_DAYS = 30
LIFETIME_TOLERANCE_SECONDS = 60
# 9999-12-31T23:59:59Z, the last instant datetime can represent
MAX_TIMESTAMP = 253402300799


class TokenErrorCode(str, Enum):
    MISSING = "MISSING"
    INVALID_FORMAT = "INVALID_FORMAT"
    MALFORMED = "MALFORMED"
    EXPIRED = "EXPIRED"


TOKEN_ERROR_MESSAGES = {
    TokenErrorCode.MISSING: "Authentication required",
    TokenErrorCode.INVALID_FORMAT: "Invalid token format",
    TokenErrorCode.MALFORMED: "Invalid token",
    TokenErrorCode.EXPIRED: "Session expired. Please login again",
}


class TokenError(AuthenticationError):
    """Bearer token rejected; always surfaces as 401."""

    def __init__(self, code: TokenErrorCode) -> None:
        super().__init__(TOKEN_ERROR_MESSAGES[code], detail={"reason": code.value})
        self.code = code


class TokenLifetime(str, Enum):
    DEFAULT = "default"
    EXTENDED = "extended"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class TokenPayload:
    user_id: str
    email: Optional[str]
    name: Optional[str]
    subscription_tier: str
    iat: int
    exp: int
    remember_me: bool = False
    session_id: Optional[str] = None

    @property
    def expires_at(self) -> datetime:
        return datetime.fromtimestamp(self.exp, tz=timezone.utc)

    @property
    def issued_at(self) -> datetime:
        return datetime.fromtimestamp(self.iat, tz=timezone.utc)


@dataclass(frozen=True)
class TimeRemaining:
    expired: bool
    seconds: int
    minutes: int
    hours: int
    days: int
    expires_at: datetime


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _split(token: str) -> Optional[list[str]]:
    parts = token.split(".")
    if len(parts) != 3 or not all(parts):
        return None
    return parts


def expiration_for(
    remember_me: bool,
    now: Optional[datetime] = None,
    *,
    default_days: int = DEFAULT_EXPIRATION_DAYS,
    extended_days: int = EXTENDED_EXPIRATION_DAYS,
) -> datetime:
    days = extended_days if remember_me else default_days
    return (now or utcnow()) + timedelta(days=days)


def extract_from_header(value: Optional[str]) -> Optional[str]:
    """Return the token of a ``Bearer <token>`` header, or ``None``."""

    if not value or not value.startswith("Bearer "):
        return None
    token = value[len("Bearer "):].strip()
    return token or None


def _claim_timestamp(value: Any) -> Optional[int]:
    """``iat``/``exp`` as epoch seconds, or ``None`` if not a usable number."""

    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    timestamp = int(value)
    if not 0 <= timestamp <= MAX_TIMESTAMP:
        return None
    return timestamp


def parse_payload(token: str) -> Optional[TokenPayload]:
    """Decode the claims segment without checking the signature."""

    parts = _split(token)
    if parts is None:
        return None
    try:
        claims = json.loads(_decode_segment(parts[1]))
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return None
    if not isinstance(claims, dict):
        return None
    user_id = claims.get("sub") or claims.get("userId")
    iat = _claim_timestamp(claims.get("iat"))
    exp = _claim_timestamp(claims.get("exp"))
    if iat is None or exp is None or not user_id:
        return None
    return TokenPayload(
        user_id=str(user_id),
        email=claims.get("email"),
        name=claims.get("name"),
        subscription_tier=claims.get("subscriptionTier") or "trial",
        iat=iat,
        exp=exp,
        remember_me=bool(claims.get("rememberMe") or False),
        session_id=claims.get("sid"),
    )


def is_expired(payload: TokenPayload, now: Optional[datetime] = None) -> bool:
    return payload.exp <= int((now or utcnow()).timestamp())


def classify(
    payload: TokenPayload,
    *,
    default_days: int = DEFAULT_EXPIRATION_DAYS,
    extended_days: int = EXTENDED_EXPIRATION_DAYS,
) -> TokenLifetime:
    lifetime = payload.exp - payload.iat
    if abs(lifetime - extended_days * 86400) <= LIFETIME_TOLERANCE_SECONDS:
        return TokenLifetime.EXTENDED
    if abs(lifetime - default_days * 86400) <= LIFETIME_TOLERANCE_SECONDS:
        return TokenLifetime.DEFAULT
    return TokenLifetime.UNKNOWN


def time_remaining(payload: TokenPayload, now: Optional[datetime] = None) -> TimeRemaining:
    current = now or utcnow()
    diff = (payload.expires_at - current).total_seconds()
    seconds = max(0, int(diff))
    return TimeRemaining(
        expired=diff <= 0,
        seconds=seconds,
        minutes=seconds // 60,
        hours=seconds // 3600,
        days=seconds // 86400,
        expires_at=payload.expires_at,
    )


class TokenService:
    """Signs and verifies session tokens with the shared ``JWT_SECRET``."""

    def __init__(self, settings: Settings, *, clock=None) -> None:
        self.settings = settings
        self._clock = clock or utcnow

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(
            self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
        ).digest()
        return _encode_segment(digest)

    def _encode_jwt(self, claims: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(claims, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def expiration_for(self, remember_me: bool, now: Optional[datetime] = None) -> datetime:
        return expiration_for(
            remember_me,
            now or self._clock(),
            default_days=self.settings.default_jwt_expiration_days,
            extended_days=self.settings.extended_jwt_expiration_days,
        )

    def classify(self, payload: TokenPayload) -> TokenLifetime:
        return classify(
            payload,
            default_days=self.settings.default_jwt_expiration_days,
            extended_days=self.settings.extended_jwt_expiration_days,
        )

    def issue(
        self, user: User, *, remember_me: bool = False, session_id: Optional[str] = None
    ) -> tuple[str, datetime]:
        now = self._clock()
        expires_at = self.expiration_for(remember_me, now)
        claims: dict[str, Any] = {
            "iss": self.settings.jwt_issuer,
            "sub": user.id,
            "email": user.email,
            "name": user.full_name,
            "subscriptionTier": user.subscription_tier,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            "rememberMe": remember_me,
        }
        if session_id:
            claims["sid"] = session_id
        return self._encode_jwt(claims), expires_at

    def verify(self, token: str) -> TokenPayload:
        parts = _split(token)
        if parts is None:
            raise TokenError(TokenErrorCode.INVALID_FORMAT)
        header_b64, payload_b64, sig_b64 = parts

        try:
            header = json.loads(_decode_segment(header_b64))
        except (binascii.Error, UnicodeDecodeError, ValueError):
            logger.warning("jwt_header_decode_failed")
            raise TokenError(TokenErrorCode.MALFORMED)
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise TokenError(TokenErrorCode.MALFORMED)

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise TokenError(TokenErrorCode.MALFORMED)

        try:
            claims = json.loads(_decode_segment(payload_b64))
        except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenError(TokenErrorCode.MALFORMED)
        if not isinstance(claims, dict) or claims.get("iss") != self.settings.jwt_issuer:
            raise TokenError(TokenErrorCode.MALFORMED)

        payload = parse_payload(token)
        if payload is None:
            raise TokenError(TokenErrorCode.MALFORMED)
        if is_expired(payload, self._clock()):
            raise TokenError(TokenErrorCode.EXPIRED)
        return payload


__all__ = [
    "TOKEN_ERROR_MESSAGES",
    "TimeRemaining",
    "TokenError",
    "TokenErrorCode",
    "TokenLifetime",
    "TokenPayload",
    "TokenService",
    "classify",
    "expiration_for",
    "extract_from_header",
    "is_expired",
    "parse_payload",
    "time_remaining",
]
