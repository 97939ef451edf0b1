"""Opaque session token helpers."""

from __future__ import annotations

import hashlib
import secrets


def generate_session_token() -> tuple[str, str]:
    """Generate a session token string and its SHA-256 hash."""
    token = secrets.token_urlsafe(32)
    return token, hash_session_token(token)


def hash_session_token(token: str) -> str:
    """Return the SHA-256 hex digest for a session token string."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()
