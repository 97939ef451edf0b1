from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime


@dataclass(slots=True)
class ScopedAccount:
    """End-user identity that exists only inside one tenant's namespace."""

    account_id: str
    tenant_id: str
    created_at: datetime
    username: str | None = None
    email: str | None = None
    password_hash: str | None = None
    external_id: str | None = None
    session_id: str | None = None

    @property
    def federated(self) -> bool:
        return self.external_id is not None

    def projection(self) -> "AccountProjection":
        return AccountProjection(
            account_id=self.account_id,
            tenant_id=self.tenant_id,
            username=self.username,
            email=self.email,
            federated=self.federated,
        )


@dataclass(slots=True, frozen=True)
class AccountProjection:
    """Public view of a scoped account; never carries the password hash."""

    account_id: str
    tenant_id: str
    username: str | None
    email: str | None
    federated: bool = False


@dataclass(slots=True, frozen=True)
class Session:
    """Stored session record, looked up by the digest of its token."""

    session_id: str
    token_hash: str
    tenant_id: str
    account_id: str
    issued_at: datetime
    expires_at: datetime


@dataclass(slots=True, frozen=True)
class IssuedSession:
    """Result of a successful login or signup."""

    token: str
    session_id: str
    expires_at: datetime
    account: AccountProjection


def is_record_id(value: str) -> bool:
    """True when ``value`` has the shape of a stored record identifier (UUID)."""
    try:
        uuid.UUID(value)
    except (ValueError, TypeError, AttributeError):
        return False
    return True
