"""Tenant orchestrator: the public contract consumed by the HTTP layer."""

from __future__ import annotations

import logging
import re
import uuid
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from datetime import datetime, timezone
from threading import Lock
from typing import Any

from ..errors import (
    InvalidInput,
    InvalidTransition,
    ServiceError,
    SessionExpired,
    SessionNotFound,
    TenantBusy,
    TenantNotFound,
)
from ..identity.backends import FederatedIdentityDelegate, IdentityBackend, LocalIdentityBackend
from ..identity.vault import CredentialVault
from ..metrics import PROVISIONING_TRANSITIONS
from ..repository import TenantRepository
from ..security.sessions import SessionIssuer
from ..storage.gateway import ObjectInfo
from .access import Directory, Grant, Group, PermissionDecision
from .account import AccountProjection, IssuedSession, ScopedAccount
from .authorization import AuthorizationGraph
from .contracts import CreateTenantInput, Credentials, DirectorySpec, GroupPatch, GroupSpec, ProviderEvent
from .provisioning import ProvisioningEngine, PublishedFile, TemplateApplication
from .tenant import FederatedIdentityConfig, ProvisioningState, Tenant

logger = logging.getLogger(__name__)

TENANT_NAME = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,48}[a-z0-9])?$")

_CREATABLE = {
    ProvisioningState.unprovisioned,
    ProvisioningState.provisioning,
    ProvisioningState.provisioning_failed,
    ProvisioningState.removed,
}
_RESUMABLE = {ProvisioningState.provisioning, ProvisioningState.provisioning_failed}


class TenantLocks:
    """One mutual-exclusion lock per tenant name, acquired with a timeout."""

    def __init__(self, timeout_seconds: float = 30.0) -> None:
        self._timeout = timeout_seconds
        self._locks: dict[str, Lock] = {}
        self._guard = Lock()

    @contextmanager
    def hold(self, name: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(name, Lock())
        if not lock.acquire(timeout=self._timeout):
            raise TenantBusy("another operation is in progress for this tenant")
        try:
            yield
        finally:
            lock.release()


class TenantOrchestrator:
    """Composes provisioning, identity, and authorization per tenant.

    Provisioning lifecycle::

        unprovisioned -> provisioning -> provisioned -> deprovisioning -> removed
                              |                               |
                     provisioning_failed           deprovisioning_failed

    The two failed states accept a retry of the transition that failed, and
    a removed tenant may be provisioned again. Lifecycle changes run under
    the tenant's lock; reads do not.
    """

    def __init__(
        self,
        repository: TenantRepository,
        engine: ProvisioningEngine,
        vault: CredentialVault,
        sessions: SessionIssuer,
        delegate: FederatedIdentityDelegate,
        graph: AuthorizationGraph,
        *,
        locks: TenantLocks | None = None,
    ) -> None:
        self._repository = repository
        self._engine = engine
        self._vault = vault
        self._sessions = sessions
        self._delegate = delegate
        self._local = LocalIdentityBackend(vault, sessions, repository)
        self._graph = graph
        self._locks = locks or TenantLocks()

    # tenants

    def create_tenant(self, payload: CreateTenantInput) -> Tenant:
        name = (payload.name or "").strip()
        if not TENANT_NAME.match(name):
            raise InvalidInput("tenant name must be lowercase letters, digits, or dashes", {"name": name})
        if not payload.owner_id:
            raise InvalidInput("owner is required to create a tenant")

        now = datetime.now(timezone.utc)
        tenant = Tenant(
            tenant_id=str(uuid.uuid4()),
            name=name,
            owner_id=payload.owner_id,
            collaborators=set(payload.collaborators) - {payload.owner_id},
            federated=payload.federated,
            created_at=now,
            updated_at=now,
        )
        with self._tenant_context(name):
            self._repository.create_tenant(tenant)
            logger.info("registered tenant %s owned by %s", name, payload.owner_id)
        if payload.template:
            self.create_storage(name)
            self.apply_template(name, payload.template)
            tenant = self.get_tenant(name)
        return tenant

    def get_tenant(self, name: str) -> Tenant:
        tenant = self._repository.get_tenant_by_name(name)
        if tenant is None:
            error = TenantNotFound("tenant not found", {"name": name})
            error.tenant = name
            raise error
        return tenant

    def list_tenants(self, member_id: str | None = None) -> list[Tenant]:
        return self._repository.list_tenants(member_id)

    def configure_federation(self, name: str, config: FederatedIdentityConfig | None) -> Tenant:
        with self._tenant_context(name), self._locks.hold(name):
            tenant = self.get_tenant(name)
            tenant.federated = config
            tenant.updated_at = datetime.now(timezone.utc)
            self._repository.save_tenant(tenant)
            return tenant

    def get_providers(self, name: str) -> dict[str, str]:
        tenant = self.get_tenant(name)
        if not tenant.federation_enabled:
            return {}
        return {tenant.federated.provider: tenant.federated.client_id}

    def delete_tenant(self, name: str) -> Tenant:
        """Tear down storage, then drop the tenant and everything it owns."""
        with self._tenant_context(name), self._locks.hold(name):
            tenant = self.get_tenant(name)
            self._teardown(tenant)
            revoked = self._sessions.revoke_tenant(tenant.tenant_id)
            self._repository.delete_tenant(tenant.tenant_id)
            logger.info("deleted tenant %s (%d sessions revoked)", name, revoked)
            return tenant

    # provisioning lifecycle

    def create_storage(self, name: str) -> Tenant:
        with self._tenant_context(name), self._locks.hold(name):
            tenant = self.get_tenant(name)
            if tenant.state not in _CREATABLE:
                raise InvalidTransition(
                    "storage cannot be created from this state", {"state": tenant.state.value}
                )
            resume = tenant.state in _RESUMABLE
            self._transition(tenant, ProvisioningState.provisioning)
            try:
                storage = self._engine.create_storage(tenant, resume=resume)
            except ServiceError:
                self._transition(tenant, ProvisioningState.provisioning_failed)
                raise
            self._transition(tenant, ProvisioningState.provisioned, storage=storage)
            return tenant

    def remove_storage(self, name: str) -> Tenant:
        with self._tenant_context(name), self._locks.hold(name):
            tenant = self.get_tenant(name)
            self._teardown(tenant)
            return tenant

    def apply_template(self, name: str, template: str, *, replace_all: bool | None = None) -> TemplateApplication:
        with self._tenant_context(name), self._locks.hold(name):
            tenant = self._require_provisioned(name)
            return self._engine.apply_template(tenant, template, replace_all=replace_all)

    def publish_file(
        self, name: str, key: str, content: str | bytes, content_type: str | None = None
    ) -> PublishedFile:
        with self._tenant_context(name):
            tenant = self._require_provisioned(name)
            return self._engine.publish_file(tenant, key, content, content_type)

    def get_structure(self, name: str) -> Iterator[ObjectInfo]:
        with self._tenant_context(name):
            tenant = self.get_tenant(name)
        return self._engine.get_structure(tenant)

    # scoped identity

    def signup(self, name: str, credentials: Credentials) -> IssuedSession:
        with self._tenant_context(name):
            tenant = self.get_tenant(name)
            return self._backend_for(tenant).signup(tenant, credentials)

    def login(self, name: str, credentials: Credentials) -> IssuedSession:
        with self._tenant_context(name):
            tenant = self.get_tenant(name)
            return self._backend_for(tenant).login(tenant, credentials)

    def logout(self, name: str, token: str) -> None:
        with self._tenant_context(name):
            tenant = self.get_tenant(name)
            try:
                session = self._sessions.validate(token)
            except (SessionNotFound, SessionExpired):
                return
            if session.tenant_id != tenant.tenant_id:
                return
            if self._sessions.revoke(token) is None:
                return
            account = self._repository.get_account(tenant.tenant_id, session.account_id)
            if account is not None and account.session_id == session.session_id:
                account.session_id = None
                self._repository.update_account(account)

    def validate_session(self, name: str, token: str) -> AccountProjection:
        with self._tenant_context(name):
            tenant = self.get_tenant(name)
            session = self._sessions.validate(token)
            if session.tenant_id != tenant.tenant_id:
                raise SessionNotFound("session not found")
            account = self._repository.get_account(tenant.tenant_id, session.account_id)
            if account is None:
                self._sessions.revoke(token)
                raise SessionNotFound("session not found")
            return account.projection()

    def remove_account(self, name: str, identifier: str) -> ScopedAccount:
        with self._tenant_context(name):
            return self._vault.remove(self.get_tenant(name), identifier)

    def handle_provider_event(self, name: str, event: ProviderEvent) -> ScopedAccount | None:
        with self._tenant_context(name):
            tenant = self.get_tenant(name)
            if not tenant.federation_enabled:
                raise InvalidInput("tenant does not use an identity provider")
            return self._delegate.handle_event(tenant, event)

    # authorization

    def add_group(self, name: str, spec: GroupSpec) -> Group:
        with self._tenant_context(name):
            return self._graph.add_group(self.get_tenant(name), spec)

    def update_group(self, name: str, group: str, patch: GroupPatch | Mapping[str, Any] | None) -> Group | None:
        """Partially update ``group``. An empty or missing patch deletes the group."""
        if not isinstance(patch, GroupPatch):
            patch = GroupPatch.from_mapping(patch)
        with self._tenant_context(name):
            return self._graph.update_group(self.get_tenant(name), group, patch)

    def delete_group(self, name: str, group: str) -> Group:
        with self._tenant_context(name):
            return self._graph.delete_group(self.get_tenant(name), group)

    def get_group(self, name: str, group: str) -> Group:
        with self._tenant_context(name):
            return self._graph.get_group(self.get_tenant(name), group)

    def list_groups(self, name: str) -> list[Group]:
        with self._tenant_context(name):
            return self._graph.list_groups(self.get_tenant(name))

    def group_directories(self, name: str, group: Group) -> list[str]:
        return self._graph.group_directories(self.get_tenant(name), group)

    def add_directory(self, name: str, spec: DirectorySpec) -> Directory:
        with self._tenant_context(name):
            return self._graph.add_directory(self.get_tenant(name), spec)

    def delete_directory(self, name: str, path: str) -> Directory:
        with self._tenant_context(name):
            return self._graph.delete_directory(self.get_tenant(name), path)

    def list_directories(self, name: str) -> list[Directory]:
        with self._tenant_context(name):
            return self._graph.list_directories(self.get_tenant(name))

    def add_collaborators(self, name: str, account_refs: Iterable[str]) -> set[str]:
        with self._tenant_context(name), self._locks.hold(name):
            return self._graph.add_collaborators(self.get_tenant(name), account_refs)

    def remove_collaborators(self, name: str, account_refs: Iterable[str]) -> set[str]:
        with self._tenant_context(name), self._locks.hold(name):
            return self._graph.remove_collaborators(self.get_tenant(name), account_refs)

    def resolve_permission(
        self, name: str, account_id: str, path: str, action: Grant | str = Grant.read
    ) -> PermissionDecision:
        with self._tenant_context(name):
            return self._graph.resolve_permission(self.get_tenant(name), account_id, path, action)

    # internals

    def _backend_for(self, tenant: Tenant) -> IdentityBackend:
        return self._delegate if tenant.federation_enabled else self._local

    def _teardown(self, tenant: Tenant) -> None:
        if tenant.state is ProvisioningState.removed:
            return
        self._transition(tenant, ProvisioningState.deprovisioning)
        try:
            self._engine.remove_storage(tenant)
        except ServiceError:
            self._transition(tenant, ProvisioningState.deprovisioning_failed)
            raise
        self._transition(tenant, ProvisioningState.removed, storage=None)

    def _require_provisioned(self, name: str) -> Tenant:
        tenant = self.get_tenant(name)
        if tenant.state is not ProvisioningState.provisioned:
            raise InvalidTransition("tenant storage is not provisioned", {"state": tenant.state.value})
        return tenant

    def _transition(self, tenant: Tenant, state: ProvisioningState, **changes: Any) -> None:
        previous = tenant.state
        tenant.state = state
        if "storage" in changes:
            tenant.storage = changes["storage"]
        tenant.updated_at = datetime.now(timezone.utc)
        self._repository.save_tenant(tenant)
        PROVISIONING_TRANSITIONS.labels(state=state.value).inc()
        logger.info("tenant %s: %s -> %s", tenant.name, previous.value, state.value)

    @contextmanager
    def _tenant_context(self, name: str) -> Iterator[None]:
        try:
            yield
        except ServiceError as exc:
            if exc.tenant is None:
                exc.tenant = name
            raise
