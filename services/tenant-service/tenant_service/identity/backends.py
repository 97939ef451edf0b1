"""Login/signup backends sharing one session contract.

A tenant uses exactly one backend: the local credential vault, or the
federated delegate when its identity provider is configured and enabled.
Both hand out sessions through the same ``SessionIssuer``, so nothing
downstream can tell which one authenticated the caller.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Protocol

from ..domain.account import IssuedSession, ScopedAccount
from ..domain.contracts import Credentials, ExternalIdentity, ProviderEvent
from ..domain.tenant import FederatedIdentityConfig, Tenant
from ..errors import AccountNotFound, InvalidCredentials, InvalidInput
from ..metrics import LOGINS
from ..repository import TenantRepository
from ..security.sessions import SessionIssuer
from .provider import IdentityProviderAdapter
from .vault import CredentialVault

logger = logging.getLogger(__name__)


class IdentityBackend(Protocol):
    name: str

    def signup(self, tenant: Tenant, credentials: Credentials) -> IssuedSession: ...

    def login(self, tenant: Tenant, credentials: Credentials) -> IssuedSession: ...


def _open_session(repository: TenantRepository, sessions: SessionIssuer, account: ScopedAccount) -> IssuedSession:
    issued = sessions.issue(account)
    account.session_id = issued.session_id
    repository.update_account(account)
    return issued


class LocalIdentityBackend:
    name = "local"

    def __init__(self, vault: CredentialVault, sessions: SessionIssuer, repository: TenantRepository) -> None:
        self._vault = vault
        self._sessions = sessions
        self._repository = repository

    def signup(self, tenant: Tenant, credentials: Credentials) -> IssuedSession:
        account = self._vault.create(tenant, credentials)
        return _open_session(self._repository, self._sessions, account)

    def login(self, tenant: Tenant, credentials: Credentials) -> IssuedSession:
        if not credentials.identifier:
            raise InvalidInput("username or email required")
        try:
            account = self._vault.verify(tenant, credentials.identifier, credentials.password or "")
        except (AccountNotFound, InvalidCredentials):
            LOGINS.labels(backend=self.name, outcome="rejected").inc()
            raise InvalidCredentials() from None
        LOGINS.labels(backend=self.name, outcome="accepted").inc()
        return _open_session(self._repository, self._sessions, account)


class FederatedIdentityDelegate:
    """Defers credential checks to the tenant's identity provider.

    The provider's stable id is the join key: the first successful login or
    signup creates a passwordless scoped account carrying ``external_id``.
    """

    name = "federated"

    def __init__(
        self,
        adapter: IdentityProviderAdapter,
        sessions: SessionIssuer,
        repository: TenantRepository,
    ) -> None:
        self._adapter = adapter
        self._sessions = sessions
        self._repository = repository

    def signup(self, tenant: Tenant, credentials: Credentials) -> IssuedSession:
        identity = self._adapter.register(self._config(tenant), credentials)
        account = self._link(tenant, identity)
        return _open_session(self._repository, self._sessions, account)

    def login(self, tenant: Tenant, credentials: Credentials) -> IssuedSession:
        try:
            identity = self._adapter.authenticate(self._config(tenant), credentials)
        except InvalidCredentials:
            LOGINS.labels(backend=self.name, outcome="rejected").inc()
            raise
        LOGINS.labels(backend=self.name, outcome="accepted").inc()
        account = self._link(tenant, identity)
        return _open_session(self._repository, self._sessions, account)

    def handle_event(self, tenant: Tenant, event: ProviderEvent) -> ScopedAccount | None:
        """Apply a provider-side account change to the tenant's scoped accounts."""
        identity = ExternalIdentity(external_id=event.external_id, username=event.username, email=event.email)
        if event.event_type in ("user.created", "user.updated"):
            return self._link(tenant, identity)
        if event.event_type == "user.deleted":
            account = self._repository.find_account(tenant.tenant_id, external_id=event.external_id)
            if account is None:
                return None
            self._repository.delete_account(tenant.tenant_id, account.account_id)
            self._sessions.revoke_account(tenant.tenant_id, account.account_id)
            logger.info("provider deleted account %s in tenant %s", account.account_id, tenant.name)
            return account
        raise InvalidInput("unsupported provider event", {"event_type": event.event_type})

    def _config(self, tenant: Tenant) -> FederatedIdentityConfig:
        if tenant.federated is None:
            raise InvalidInput("tenant has no identity provider configured")
        return tenant.federated

    def _link(self, tenant: Tenant, identity: ExternalIdentity) -> ScopedAccount:
        """Return the scoped account for a provider identity, creating or claiming one.

        Matching goes by external id first. An account created before the
        tenant federated (no external id yet) is claimed when its username or
        email matches. A new account leaves out any username or email another
        account already holds.
        """
        email = identity.email.lower() if identity.email else None
        account = self._repository.find_account(tenant.tenant_id, external_id=identity.external_id)
        changed = False
        if account is None:
            account = self._unlinked_account(tenant, identity.username, email)
            if account is None:
                return self._create_linked(tenant, identity, email)
            account.external_id = identity.external_id
            changed = True
            logger.info(
                "linked provider identity %s to existing account %s in tenant %s",
                identity.external_id,
                account.account_id,
                tenant.name,
            )

        username = identity.username
        if username and username != account.username and self._unclaimed(tenant, username=username):
            account.username = username
            changed = True
        if email and email != account.email and self._unclaimed(tenant, email=email):
            account.email = email
            changed = True
        if changed:
            self._repository.update_account(account)
        return account

    def _unlinked_account(self, tenant: Tenant, username: str | None, email: str | None) -> ScopedAccount | None:
        for key, value in (("username", username), ("email", email)):
            if not value:
                continue
            account = self._repository.find_account(tenant.tenant_id, **{key: value})
            if account is not None and account.external_id is None:
                return account
        return None

    def _unclaimed(self, tenant: Tenant, **key: str) -> bool:
        return self._repository.find_account(tenant.tenant_id, **key) is None

    def _create_linked(self, tenant: Tenant, identity: ExternalIdentity, email: str | None) -> ScopedAccount:
        username = identity.username
        if username and not self._unclaimed(tenant, username=username):
            username = None
        if email and not self._unclaimed(tenant, email=email):
            email = None
        if username != identity.username or (identity.email and email is None):
            logger.warning(
                "provider identity %s in tenant %s shares a username or email with another account",
                identity.external_id,
                tenant.name,
            )
        account = ScopedAccount(
            account_id=str(uuid.uuid4()),
            tenant_id=tenant.tenant_id,
            username=username,
            email=email,
            external_id=identity.external_id,
            created_at=datetime.now(timezone.utc),
        )
        self._repository.create_account(account)
        logger.info("linked provider identity %s in tenant %s", identity.external_id, tenant.name)
        return account
