"""Credential vault for tenant-scoped accounts."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone

from ..domain.account import ScopedAccount, is_record_id
from ..domain.contracts import Credentials
from ..domain.tenant import Tenant
from ..errors import AccountExists, AccountNotFound, InvalidCredentials, InvalidInput
from ..repository import TenantRepository
from ..security.passwords import PasswordHasher
from ..security.sessions import SessionIssuer

logger = logging.getLogger(__name__)


class CredentialVault:
    """Stores scoped accounts and checks their passwords.

    Lookups never leave the tenant: platform accounts live elsewhere and are
    never consulted here.
    """

    def __init__(
        self,
        repository: TenantRepository,
        hasher: PasswordHasher,
        sessions: SessionIssuer,
        *,
        min_password_length: int = 8,
    ) -> None:
        self._repository = repository
        self._hasher = hasher
        self._sessions = sessions
        self._min_password_length = min_password_length

    def create(self, tenant: Tenant, credentials: Credentials) -> ScopedAccount:
        username = (credentials.username or "").strip() or None
        email = (credentials.email or "").strip().lower() or None
        if username is None and email is None:
            raise InvalidInput("username or email required")
        if email is not None and "@" not in email:
            raise InvalidInput("email is malformed")
        password = credentials.password or ""
        if len(password) < self._min_password_length:
            raise InvalidInput("password too short", {"min_length": self._min_password_length})

        if username and self._repository.find_account(tenant.tenant_id, username=username):
            raise AccountExists("account already exists")
        if email and self._repository.find_account(tenant.tenant_id, email=email):
            raise AccountExists("account already exists")

        try:
            password_hash = self._hasher.hash(password)
        except ValueError as exc:
            raise InvalidInput(str(exc)) from exc

        account = ScopedAccount(
            account_id=str(uuid.uuid4()),
            tenant_id=tenant.tenant_id,
            username=username,
            email=email,
            password_hash=password_hash,
            created_at=datetime.now(timezone.utc),
        )
        self._repository.create_account(account)
        logger.info("created scoped account %s in tenant %s", account.account_id, tenant.name)
        return account

    def find(self, tenant: Tenant, identifier: str) -> ScopedAccount | None:
        """Resolve ``identifier`` as username or email, preferring the shape it looks like."""
        identifier = identifier.strip()
        if not identifier:
            return None
        if "@" in identifier:
            order = ({"email": identifier.lower()}, {"username": identifier})
        else:
            order = ({"username": identifier}, {"email": identifier.lower()})
        for lookup in order:
            account = self._repository.find_account(tenant.tenant_id, **lookup)
            if account is not None:
                return account
        return None

    def verify(self, tenant: Tenant, identifier: str, password: str) -> ScopedAccount:
        """Return the account whose password matches.

        Raises ``AccountNotFound`` or ``InvalidCredentials``; callers facing
        end users must report both the same way.
        """
        account = self.find(tenant, identifier or "")
        if account is None:
            self._hasher.burn(password)
            raise AccountNotFound("account not found")
        if account.password_hash is None:
            self._hasher.burn(password)
            raise InvalidCredentials()
        if not self._hasher.verify(password or "", account.password_hash):
            raise InvalidCredentials()
        return account

    def remove(self, tenant: Tenant, identifier: str) -> ScopedAccount:
        account = self.find(tenant, identifier or "")
        if account is None and is_record_id(identifier):
            account = self._repository.get_account(tenant.tenant_id, identifier)
        if account is None:
            raise AccountNotFound("account not found", {"identifier": identifier})
        self._repository.delete_account(tenant.tenant_id, account.account_id)
        revoked = self._sessions.revoke_account(tenant.tenant_id, account.account_id)
        logger.info(
            "removed scoped account %s from tenant %s (%d sessions revoked)",
            account.account_id,
            tenant.name,
            revoked,
        )
        return account