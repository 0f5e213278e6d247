"""Password complexity rules and strength scoring."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import List

MIN_LENGTH = 8
MAX_LENGTH = 128
SYMBOLS = "!@#$%^&*()_+-=[]{}|;:,.<>?"

COMMON_PASSWORDS = frozenset(
    {
        "password",
        "password123",
        "12345678",
        "qwerty",
        "abc123",
        "monkey",
        "master",
        "dragon",
        "letmein",
        "login",
        "welcome",
        "football",
        "shadow",
        "superman",
        "iloveyou",
        "starwars",
        "password1",
    }
)

_UPPER = re.compile(r"[A-Z]")
_LOWER = re.compile(r"[a-z]")
_DIGIT = re.compile(r"[0-9]")
_SYMBOL = re.compile(r"[!@#$%^&*()_+\-=\[\]{}|;:,.<>?]")

_WEAK_PATTERNS = (
    re.compile(r"(.)\1{2,}"),
    re.compile(r"^(0123|1234|2345|3456|4567|5678|6789|7890)"),
    re.compile(
        r"^(abc|bcd|cde|def|efg|fgh|ghi|hij|ijk|jkl|klm|lmn|mno|nop|opq|pqr|qrs|rst|stu|tuv|uvw|vwx|wxy|xyz)",
        re.IGNORECASE,
    ),
    re.compile(
        r"^(qwe|wer|ert|rty|tyu|yui|uio|iop|asd|sdf|dfg|fgh|ghj|hjk|jkl|kl|zxc|xcv|cvb|vbn|bnm)",
        re.IGNORECASE,
    ),
)

_SECRET_FRAGMENTS = (
    re.compile(r'password["\s:=]+[^\s"]+', re.IGNORECASE),
    re.compile(r'pwd["\s:=]+[^\s"]+', re.IGNORECASE),
    re.compile(r'new_password["\s:=]+[^\s"]+', re.IGNORECASE),
    re.compile(r'current_password["\s:=]+[^\s"]+', re.IGNORECASE),
)

_KEY_SPLIT = re.compile(r"[=\s:]+")

PREDICTABLE_WARNING = (
    "Password contains predictable patterns. Consider using a more complex password"
)
WEAK_WARNING = (
    "This password is weak. Consider adding more characters, numbers, or symbols"
)


@dataclass
class PasswordStrength:
    score: int
    level: str
    feedback: List[str] = field(default_factory=list)


@dataclass
class PasswordValidationResult:
    valid: bool
    strength: str
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def message(self) -> str:
        return ", ".join(self.errors)


def calculate_password_strength(password: str) -> PasswordStrength:
    score = 0
    feedback: List[str] = []

    if len(password) >= 8:
        score += 1
    if len(password) >= 12:
        score += 1
    if len(password) < 8:
        feedback.append("Add more characters to increase strength")

    variety = sum(
        1
        for pattern in (_UPPER, _LOWER, _DIGIT, _SYMBOL)
        if pattern.search(password)
    )
    if variety >= 2:
        score += 1
    if variety >= 4:
        score += 1
    if variety < 2:
        feedback.append("Mix uppercase, lowercase, numbers, and symbols")

    if len(password) >= 16:
        score += 1
    if len(password) >= 20:
        score += 1

    if score <= 2:
        level = "weak"
        if not feedback:
            feedback.append("Consider a longer, more complex password")
    elif score <= 4:
        level = "medium"
        if not feedback:
            feedback.append("Good password, but could be stronger")
    else:
        level = "strong"
        feedback.append("Strong password!")

    return PasswordStrength(score=score, level=level, feedback=feedback)


def validate_password(password: str) -> PasswordValidationResult:
    errors: List[str] = []
    warnings: List[str] = []

    if len(password) < MIN_LENGTH:
        errors.append(f"Password must be at least {MIN_LENGTH} characters long")
    if len(password) > MAX_LENGTH:
        errors.append(f"Password must not exceed {MAX_LENGTH} characters")
    if not _UPPER.search(password):
        errors.append("Password must contain at least one uppercase letter")
    if not _LOWER.search(password):
        errors.append("Password must contain at least one lowercase letter")
    if not _DIGIT.search(password):
        errors.append("Password must contain at least one number")
    if not _SYMBOL.search(password):
        errors.append("Password must contain at least one special character")
    if password.lower() in COMMON_PASSWORDS:
        errors.append(
            "This is a commonly used password. Please choose a more secure password"
        )

    if any(pattern.search(password) for pattern in _WEAK_PATTERNS):
        warnings.append(PREDICTABLE_WARNING)

    strength = calculate_password_strength(password)
    if strength.level == "weak":
        warnings.append(WEAK_WARNING)

    return PasswordValidationResult(
        valid=not errors,
        strength=strength.level,
        errors=errors,
        warnings=warnings,
    )


def sanitize_password(message: str) -> str:
    """Mask ``password=...`` style fragments before a message is logged."""

    sanitized = message
    for pattern in _SECRET_FRAGMENTS:
        sanitized = pattern.sub(
            lambda match: f"{_KEY_SPLIT.split(match.group(0))[0]}=***", sanitized
        )
    return sanitized


__all__ = [
    "COMMON_PASSWORDS",
    "PasswordStrength",
    "PasswordValidationResult",
    "calculate_password_strength",
    "sanitize_password",
    "validate_password",
]
