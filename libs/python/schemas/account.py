"""Scoped account DTOs shared across services."""

from __future__ import annotations

from datetime import datetime
from pydantic import BaseModel


class ScopedAccount(BaseModel):
    account_id: str
    tenant_id: str
    username: str | None = None
    email: str | None = None
    federated: bool = False


class SessionGrant(BaseModel):
    token: str
    token_type: str = "bearer"
    expires_at: datetime
    account: ScopedAccount
