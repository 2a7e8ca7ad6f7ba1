from __future__ import annotations

import re
from typing import Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from storefront_auth.logging import get_logger

PASSWORD_ALGO = "argon2id"
MIN_PASSWORD_LENGTH = 8

_PASSWORD_RULES = (
    (re.compile(r"[a-z]"), "one lowercase letter"),
    (re.compile(r"[A-Z]"), "one uppercase letter"),
    (re.compile(r"\d"), "one number"),
)

logger = get_logger(__name__)


def password_problems(password: str) -> list[str]:
    """Return the unmet strength rules for ``password`` (empty when it is acceptable)."""

    problems = []
    if len(password or "") < MIN_PASSWORD_LENGTH:
        problems.append(f"at least {MIN_PASSWORD_LENGTH} characters")
    for pattern, label in _PASSWORD_RULES:
        if not pattern.search(password or ""):
            problems.append(label)
    return problems


class PasswordService:
    """argon2id hashing with rehash detection."""

    def __init__(self, hasher: PasswordHasher | None = None) -> None:
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)

    def hash(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def verify(self, stored_hash: str, algo: str, password: str) -> bool:
        if not stored_hash:
            return False
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unverifiable")
            return False

    def needs_rehash(self, stored_hash: str) -> bool:
        try:
            return self._pwd_hasher.check_needs_rehash(stored_hash)
        except InvalidHash:
            return True
