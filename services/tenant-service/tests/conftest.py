from __future__ import annotations

import copy
from datetime import datetime, timezone

import pytest

from tenant_service.domain.access import Directory, Group
from tenant_service.domain.account import ScopedAccount
from tenant_service.domain.authorization import AuthorizationGraph
from tenant_service.domain.contracts import CreateTenantInput, ExternalIdentity
from tenant_service.domain.orchestrator import TenantLocks, TenantOrchestrator
from tenant_service.domain.provisioning import ProvisioningEngine
from tenant_service.domain.tenant import Tenant
from tenant_service.errors import (
    AccountExists,
    DirectoryExists,
    GroupExists,
    InvalidCredentials,
    StorageProviderError,
    TenantExists,
)
from tenant_service.identity.backends import FederatedIdentityDelegate
from tenant_service.identity.vault import CredentialVault
from tenant_service.security.passwords import PasswordHasher
from tenant_service.security.sessions import InMemorySessionStore, SessionIssuer
from tenant_service.storage.gateway import InMemoryStorageGateway
from tenant_service.storage.templates import InMemoryTemplateRepository

OWNER_ID = "platform-owner-1"


class FakeRepository:
    """In-memory repository mimicking the Postgres-backed behaviors.

    Records are copied on the way in and out so callers must save changes
    explicitly, as they do against the database.
    """

    def __init__(self) -> None:
        self._tenants: dict[str, Tenant] = {}
        self._accounts: dict[str, ScopedAccount] = {}
        self._groups: dict[str, Group] = {}
        self._directories: dict[str, Directory] = {}

    # tenants

    def create_tenant(self, tenant: Tenant) -> Tenant:
        if any(t.name == tenant.name for t in self._tenants.values()):
            raise TenantExists("tenant already exists", {"name": tenant.name})
        self._tenants[tenant.tenant_id] = copy.deepcopy(tenant)
        return tenant

    def get_tenant_by_name(self, name: str) -> Tenant | None:
        for tenant in self._tenants.values():
            if tenant.name == name:
                return copy.deepcopy(tenant)
        return None

    def list_tenants(self, member_id: str | None = None) -> list[Tenant]:
        tenants = [
            t
            for t in self._tenants.values()
            if member_id is None or t.owner_id == member_id or member_id in t.collaborators
        ]
        return [copy.deepcopy(t) for t in sorted(tenants, key=lambda t: t.name)]

    def save_tenant(self, tenant: Tenant) -> None:
        if tenant.tenant_id in self._tenants:
            self._tenants[tenant.tenant_id] = copy.deepcopy(tenant)

    def delete_tenant(self, tenant_id: str) -> bool:
        if self._tenants.pop(tenant_id, None) is None:
            return False
        for table in (self._accounts, self._groups, self._directories):
            for key in [key for key, record in table.items() if record.tenant_id == tenant_id]:
                del table[key]
        return True

    # accounts

    def create_account(self, account: ScopedAccount) -> ScopedAccount:
        self._check_account_unique(account)
        self._accounts[account.account_id] = copy.deepcopy(account)
        return account

    def get_account(self, tenant_id: str, account_id: str) -> ScopedAccount | None:
        account = self._accounts.get(account_id)
        if account is None or account.tenant_id != tenant_id:
            return None
        return copy.deepcopy(account)

    def find_account(
        self,
        tenant_id: str,
        *,
        username: str | None = None,
        email: str | None = None,
        external_id: str | None = None,
    ) -> ScopedAccount | None:
        for account in self._accounts.values():
            if account.tenant_id != tenant_id:
                continue
            if username is not None:
                matched = account.username == username
            elif email is not None:
                matched = account.email is not None and account.email.lower() == email.lower()
            elif external_id is not None:
                matched = account.external_id == external_id
            else:
                return None
            if matched:
                return copy.deepcopy(account)
        return None

    def update_account(self, account: ScopedAccount) -> None:
        self._check_account_unique(account)
        if account.account_id in self._accounts:
            self._accounts[account.account_id] = copy.deepcopy(account)

    def delete_account(self, tenant_id: str, account_id: str) -> bool:
        for record in [*self._groups.values(), *self._directories.values()]:
            if record.tenant_id == tenant_id:
                record.accounts.discard(account_id)
        account = self._accounts.get(account_id)
        if account is None or account.tenant_id != tenant_id:
            return False
        del self._accounts[account_id]
        return True

    def _check_account_unique(self, account: ScopedAccount) -> None:
        for other in self._accounts.values():
            if other.tenant_id != account.tenant_id or other.account_id == account.account_id:
                continue
            if account.username is not None and other.username == account.username:
                raise AccountExists("account already exists")
            if account.email is not None and (other.email or "").lower() == account.email.lower():
                raise AccountExists("account already exists")
            if account.external_id is not None and other.external_id == account.external_id:
                raise AccountExists("account already exists")

    # groups

    def create_group(self, group: Group) -> Group:
        if self.get_group(group.tenant_id, group.name) is not None:
            raise GroupExists("group already exists", {"group": group.name})
        self._groups[group.group_id] = copy.deepcopy(group)
        return group

    def get_group(self, tenant_id: str, name: str) -> Group | None:
        for group in self._groups.values():
            if group.tenant_id == tenant_id and group.name == name:
                return copy.deepcopy(group)
        return None

    def list_groups(self, tenant_id: str) -> list[Group]:
        groups = [g for g in self._groups.values() if g.tenant_id == tenant_id]
        return [copy.deepcopy(g) for g in sorted(groups, key=lambda g: g.name)]

    def save_group(self, group: Group) -> None:
        for other in self._groups.values():
            if other.tenant_id == group.tenant_id and other.name == group.name and other.group_id != group.group_id:
                raise GroupExists("group already exists", {"group": group.name})
        if group.group_id in self._groups:
            self._groups[group.group_id] = copy.deepcopy(group)

    def delete_group(self, tenant_id: str, group_id: str) -> bool:
        for directory in self._directories.values():
            if directory.tenant_id == tenant_id:
                directory.groups.discard(group_id)
        return self._groups.pop(group_id, None) is not None

    # directories

    def create_directory(self, directory: Directory) -> Directory:
        if self.get_directory(directory.tenant_id, directory.path) is not None:
            raise DirectoryExists("directory already exists", {"path": directory.path})
        self._directories[directory.directory_id] = copy.deepcopy(directory)
        return directory

    def get_directory(self, tenant_id: str, path: str) -> Directory | None:
        for directory in self._directories.values():
            if directory.tenant_id == tenant_id and directory.path == path:
                return copy.deepcopy(directory)
        return None

    def list_directories(self, tenant_id: str) -> list[Directory]:
        directories = [d for d in self._directories.values() if d.tenant_id == tenant_id]
        return [copy.deepcopy(d) for d in sorted(directories, key=lambda d: d.path)]

    def save_directory(self, directory: Directory) -> None:
        if directory.directory_id in self._directories:
            self._directories[directory.directory_id] = copy.deepcopy(directory)

    def delete_directory(self, tenant_id: str, directory_id: str) -> bool:
        return self._directories.pop(directory_id, None) is not None


class FlakyGateway:
    """Wraps a gateway and fails selected calls with a storage error.

    ``failures`` maps an operation name to the number of consecutive calls
    that should fail; ``fail_keys`` fails ``put_object`` for specific keys
    until removed from the set. ``lost_replies`` works like ``failures`` but
    the wrapped call goes through before the error is raised.
    """

    def __init__(self, inner: InMemoryStorageGateway, *, retryable: bool = True) -> None:
        self.inner = inner
        self.provider = inner.provider
        self.retryable = retryable
        self.failures: dict[str, int] = {}
        self.fail_keys: set[str] = set()
        self.lost_replies: dict[str, int] = {}
        self.calls: list[tuple[str, tuple]] = []

    def _maybe_fail(self, operation: str, *args) -> None:
        self.calls.append((operation, args))
        remaining = self.failures.get(operation, 0)
        if remaining:
            self.failures[operation] = remaining - 1
            raise StorageProviderError(f"{operation} failed", retryable=self.retryable)

    def _maybe_lose_reply(self, operation: str) -> None:
        remaining = self.lost_replies.get(operation, 0)
        if remaining:
            self.lost_replies[operation] = remaining - 1
            raise StorageProviderError(f"{operation} reply lost", retryable=self.retryable)

    def site_url(self, name: str) -> str:
        return self.inner.site_url(name)

    def create_bucket(self, name: str) -> str:
        self._maybe_fail("create_bucket", name)
        site_url = self.inner.create_bucket(name)
        self._maybe_lose_reply("create_bucket")
        return site_url

    def delete_bucket(self, name: str) -> None:
        self._maybe_fail("delete_bucket", name)
        self.inner.delete_bucket(name)

    def put_object(self, bucket: str, key: str, data: bytes, content_type: str) -> None:
        self._maybe_fail("put_object", bucket, key)
        if key in self.fail_keys:
            raise StorageProviderError(f"put_object failed for {key}", retryable=self.retryable)
        self.inner.put_object(bucket, key, data, content_type)

    def delete_object(self, bucket: str, key: str) -> None:
        self._maybe_fail("delete_object", bucket, key)
        self.inner.delete_object(bucket, key)

    def list_objects(self, bucket: str, prefix: str = ""):
        self._maybe_fail("list_objects", bucket)
        return self.inner.list_objects(bucket, prefix)

    def put_count(self, key: str) -> int:
        return sum(1 for operation, args in self.calls if operation == "put_object" and args[1] == key)


class FakeIdentityProvider:
    """Identity provider adapter double keyed by username."""

    def __init__(self) -> None:
        self.users: dict[str, tuple[str, str, str | None]] = {}
        self.error: Exception | None = None
        self.calls: list[str] = []

    def add_user(self, external_id: str, username: str, password: str, email: str | None = None) -> None:
        self.users[username] = (external_id, password, email)

    def authenticate(self, config, credentials):
        self.calls.append("login")
        if self.error is not None:
            raise self.error
        record = self.users.get(credentials.username or "")
        if record is None or record[1] != credentials.password:
            raise InvalidCredentials()
        return ExternalIdentity(external_id=record[0], username=credentials.username, email=record[2])

    def register(self, config, credentials):
        self.calls.append("signup")
        if self.error is not None:
            raise self.error
        if credentials.username in self.users:
            raise AccountExists("account already exists")
        external_id = f"ext-{len(self.users) + 1}"
        self.add_user(external_id, credentials.username, credentials.password, credentials.email)
        return ExternalIdentity(external_id=external_id, username=credentials.username, email=credentials.email)


@pytest.fixture()
def repository() -> FakeRepository:
    return FakeRepository()


@pytest.fixture()
def storage() -> InMemoryStorageGateway:
    return InMemoryStorageGateway()


@pytest.fixture()
def flaky(storage) -> FlakyGateway:
    return FlakyGateway(storage)


@pytest.fixture()
def templates() -> InMemoryTemplateRepository:
    return InMemoryTemplateRepository(
        {
            "starter": {
                "index.html": "<h1>Welcome</h1>",
                "css/site.css": "body { margin: 0; }",
                "js/app.js": "console.log('hi');",
            },
            "blank": {"index.html": "<html></html>"},
        }
    )


@pytest.fixture()
def engine(flaky, templates):
    engine = ProvisioningEngine(flaky, templates, timeout_seconds=2.0, retry_attempts=3, sleep=lambda _: None)
    yield engine
    engine.close()


@pytest.fixture()
def hasher() -> PasswordHasher:
    return PasswordHasher(rounds=4)


@pytest.fixture()
def session_store() -> InMemorySessionStore:
    return InMemorySessionStore()


@pytest.fixture()
def sessions(session_store) -> SessionIssuer:
    return SessionIssuer(session_store, ttl_seconds=3600)


@pytest.fixture()
def vault(repository, hasher, sessions) -> CredentialVault:
    return CredentialVault(repository, hasher, sessions)


@pytest.fixture()
def identity_provider() -> FakeIdentityProvider:
    return FakeIdentityProvider()


@pytest.fixture()
def delegate(identity_provider, sessions, repository) -> FederatedIdentityDelegate:
    return FederatedIdentityDelegate(identity_provider, sessions, repository)


@pytest.fixture()
def graph(repository) -> AuthorizationGraph:
    return AuthorizationGraph(repository)


@pytest.fixture()
def orchestrator(repository, engine, vault, sessions, delegate, graph) -> TenantOrchestrator:
    return TenantOrchestrator(
        repository,
        engine,
        vault,
        sessions,
        delegate,
        graph,
        locks=TenantLocks(timeout_seconds=0.2),
    )


@pytest.fixture()
def demo(orchestrator) -> Tenant:
    return orchestrator.create_tenant(CreateTenantInput(name="demo", owner_id=OWNER_ID))


@pytest.fixture()
def provisioned(orchestrator, demo) -> Tenant:
    return orchestrator.create_storage("demo")


@pytest.fixture()
def detached_tenant() -> Tenant:
    """A tenant record the engine can act on without going through the orchestrator."""
    now = datetime.now(timezone.utc)
    return Tenant(tenant_id="tenant-1", name="demo", owner_id=OWNER_ID, created_at=now, updated_at=now)
