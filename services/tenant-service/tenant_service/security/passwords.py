"""Password hashing for scoped accounts using bcrypt."""

from __future__ import annotations

import logging

import bcrypt

logger = logging.getLogger(__name__)


class PasswordHasher:
    """Salted bcrypt hashing with a configurable work factor.

    bcrypt only looks at the first 72 bytes of its input, so longer
    passwords are rejected instead of being silently truncated.
    """

    MAX_PASSWORD_BYTES = 72

    def __init__(self, rounds: int = 12) -> None:
        self._rounds = rounds
        self._dummy_hash: str | None = None

    def hash(self, password: str) -> str:
        """Hash a password, raising ``ValueError`` when it is empty or too long."""
        if not password:
            raise ValueError("password cannot be empty")
        encoded = password.encode("utf-8")
        if len(encoded) > self.MAX_PASSWORD_BYTES:
            raise ValueError("password too long")
        return bcrypt.hashpw(encoded, bcrypt.gensalt(rounds=self._rounds)).decode("utf-8")

    def verify(self, password: str, password_hash: str) -> bool:
        """Constant-time comparison of ``password`` against a stored hash."""
        if not password or not password_hash:
            return False
        try:
            return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
        except ValueError as exc:
            logger.warning("password verification failed: %s", exc)
            return False

    def burn(self, password: str | None) -> None:
        """Spend one verification on a throwaway hash so misses cost as much as hits."""
        if self._dummy_hash is None:
            self._dummy_hash = self.hash("dummy-password")
        self.verify(password or "", self._dummy_hash)
