from __future__ import annotations

from typing import Optional, Tuple

import bcrypt
from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from korella.logging import get_logger

logger = get_logger(__name__)

BCRYPT = "bcrypt"
ARGON2ID = "argon2id"

# bcrypt only reads the first 72 bytes of a secret
_BCRYPT_MAX_BYTES = 72


class CredentialHasher:
    """Hashes new passwords with bcrypt and still verifies legacy argon2id rows."""

    def __init__(self, cost: int = 12) -> None:
        self.cost = cost
        self._argon2 = PasswordHasher(type=Type.ID)

    @staticmethod
    def _secret(password: str) -> bytes:
        return password.encode("utf-8")[:_BCRYPT_MAX_BYTES]

    def hash(self, password: str) -> Tuple[str, str]:
        digest = bcrypt.hashpw(self._secret(password), bcrypt.gensalt(rounds=self.cost))
        return digest.decode("utf-8"), BCRYPT

    def verify(
        self, password: str, stored_hash: Optional[str], algo: Optional[str]
    ) -> bool:
        if not stored_hash:
            return False
        if algo in (None, BCRYPT):
            try:
                return bcrypt.checkpw(self._secret(password), stored_hash.encode("utf-8"))
            except ValueError:
                logger.warning("password_hash_invalid", algo=BCRYPT)
                return False
        if algo == ARGON2ID:
            try:
                return self._argon2.verify(stored_hash, password)
            except (InvalidHash, VerificationError):
                return False
        logger.warning("password_algo_unsupported", algo=algo)
        return False

    def needs_rehash(self, algo: Optional[str]) -> bool:
        return algo != BCRYPT


__all__ = ["ARGON2ID", "BCRYPT", "CredentialHasher"]
