"""Postgres persistence for tenants and the records they own."""

from __future__ import annotations

from typing import Any

from psycopg import errors as pg_errors
from psycopg.rows import tuple_row
from psycopg.types.json import Json
from psycopg_pool import ConnectionPool

from .domain.access import Directory, Grant, Group
from .domain.account import ScopedAccount
from .domain.tenant import FederatedIdentityConfig, ProvisioningState, StorageDescriptor, Tenant
from .errors import AccountExists, DirectoryExists, GroupExists, TenantExists

_TENANT_COLUMNS = (
    "tenant_id, name, owner_id, collaborators, state, storage, federated, created_at, updated_at"
)
_ACCOUNT_COLUMNS = (
    "account_id, tenant_id, username, email, password_hash, external_id, session_id, created_at"
)


class TenantRepository:
    """Postgres-backed storage for tenants, scoped accounts, groups, and directories.

    Uniqueness rules live in the schema (``db/schema.sql``); violations come
    back as the matching ``Conflict`` error. Deleting a tenant cascades to
    every record it owns through foreign keys.
    """

    def __init__(self, pool: ConnectionPool) -> None:
        """Store the connection pool used for all database interactions."""
        self._pool = pool

    def create_tenant(self, tenant: Tenant) -> Tenant:
        """Insert a tenant row, raising ``TenantExists`` when the name is taken."""
        try:
            self._execute(
                f"""
                INSERT INTO tenants ({_TENANT_COLUMNS})
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                self._tenant_params(tenant),
            )
        except pg_errors.UniqueViolation as exc:
            raise TenantExists("tenant already exists", {"name": tenant.name}) from exc
        return tenant

    def get_tenant_by_name(self, name: str) -> Tenant | None:
        """Fetch a tenant by its unique name or return ``None``."""
        row = self._fetch_one(f"SELECT {_TENANT_COLUMNS} FROM tenants WHERE name = %s", (name,))
        return self._map_tenant(row) if row else None

    def list_tenants(self, member_id: str | None = None) -> list[Tenant]:
        """Return tenants ordered by name, limited to those ``member_id`` owns or collaborates on."""
        if member_id is None:
            rows = self._fetch_all(f"SELECT {_TENANT_COLUMNS} FROM tenants ORDER BY name", ())
        else:
            rows = self._fetch_all(
                f"""
                SELECT {_TENANT_COLUMNS} FROM tenants
                WHERE owner_id = %s OR %s = ANY(collaborators)
                ORDER BY name
                """,
                (member_id, member_id),
            )
        return [self._map_tenant(row) for row in rows]

    def save_tenant(self, tenant: Tenant) -> None:
        """Persist the mutable tenant fields: collaborators, state, storage and federation."""
        self._execute(
            """
            UPDATE tenants
            SET collaborators = %s, state = %s, storage = %s, federated = %s, updated_at = %s
            WHERE tenant_id = %s
            """,
            (
                sorted(tenant.collaborators),
                tenant.state.value,
                _json_or_none(_storage_dict(tenant.storage)),
                _json_or_none(_federated_dict(tenant.federated)),
                tenant.updated_at,
                tenant.tenant_id,
            ),
        )

    def delete_tenant(self, tenant_id: str) -> bool:
        """Delete a tenant; groups, directories and accounts go with it."""
        return self._execute("DELETE FROM tenants WHERE tenant_id = %s", (tenant_id,)) > 0

    def create_account(self, account: ScopedAccount) -> ScopedAccount:
        """Insert a scoped account, raising ``AccountExists`` on a clashing natural key."""
        try:
            self._execute(
                f"""
                INSERT INTO scoped_accounts ({_ACCOUNT_COLUMNS})
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    account.account_id,
                    account.tenant_id,
                    account.username,
                    account.email,
                    account.password_hash,
                    account.external_id,
                    account.session_id,
                    account.created_at,
                ),
            )
        except pg_errors.UniqueViolation as exc:
            raise AccountExists("account already exists") from exc
        return account

    def get_account(self, tenant_id: str, account_id: str) -> ScopedAccount | None:
        """Fetch an account belonging to the given tenant or return ``None``."""
        row = self._fetch_one(
            f"SELECT {_ACCOUNT_COLUMNS} FROM scoped_accounts WHERE tenant_id = %s AND account_id = %s",
            (tenant_id, account_id),
        )
        return self._map_account(row) if row else None

    def find_account(
        self,
        tenant_id: str,
        *,
        username: str | None = None,
        email: str | None = None,
        external_id: str | None = None,
    ) -> ScopedAccount | None:
        """Look up an account by exactly one natural key within the tenant."""
        if username is not None:
            clause, value = "username = %s", username
        elif email is not None:
            clause, value = "lower(email) = lower(%s)", email
        elif external_id is not None:
            clause, value = "external_id = %s", external_id
        else:
            return None
        row = self._fetch_one(
            f"SELECT {_ACCOUNT_COLUMNS} FROM scoped_accounts WHERE tenant_id = %s AND {clause}",
            (tenant_id, value),
        )
        return self._map_account(row) if row else None

    def update_account(self, account: ScopedAccount) -> None:
        """Persist credential, identity and session fields of an existing account."""
        try:
            self._execute(
                """
                UPDATE scoped_accounts
                SET username = %s, email = %s, password_hash = %s, external_id = %s, session_id = %s
                WHERE tenant_id = %s AND account_id = %s
                """,
                (
                    account.username,
                    account.email,
                    account.password_hash,
                    account.external_id,
                    account.session_id,
                    account.tenant_id,
                    account.account_id,
                ),
            )
        except pg_errors.UniqueViolation as exc:
            raise AccountExists("account already exists") from exc

    def delete_account(self, tenant_id: str, account_id: str) -> bool:
        """Delete an account and drop it from every group and directory of the tenant."""
        with self._pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "UPDATE tenant_groups SET accounts = array_remove(accounts, %s) WHERE tenant_id = %s",
                    (account_id, tenant_id),
                )
                cur.execute(
                    "UPDATE tenant_directories SET accounts = array_remove(accounts, %s) WHERE tenant_id = %s",
                    (account_id, tenant_id),
                )
                cur.execute(
                    "DELETE FROM scoped_accounts WHERE tenant_id = %s AND account_id = %s",
                    (tenant_id, account_id),
                )
                deleted = cur.rowcount
            conn.commit()
        return deleted > 0

    def create_group(self, group: Group) -> Group:
        """Insert a group, raising ``GroupExists`` when the name is taken."""
        try:
            self._execute(
                "INSERT INTO tenant_groups (group_id, tenant_id, name, accounts) VALUES (%s, %s, %s, %s)",
                (group.group_id, group.tenant_id, group.name, sorted(group.accounts)),
            )
        except pg_errors.UniqueViolation as exc:
            raise GroupExists("group already exists", {"group": group.name}) from exc
        return group

    def get_group(self, tenant_id: str, name: str) -> Group | None:
        """Fetch a group by name within the tenant or return ``None``."""
        row = self._fetch_one(
            "SELECT group_id, tenant_id, name, accounts FROM tenant_groups WHERE tenant_id = %s AND name = %s",
            (tenant_id, name),
        )
        return self._map_group(row) if row else None

    def list_groups(self, tenant_id: str) -> list[Group]:
        """Return the tenant's groups ordered by name."""
        rows = self._fetch_all(
            "SELECT group_id, tenant_id, name, accounts FROM tenant_groups WHERE tenant_id = %s ORDER BY name",
            (tenant_id,),
        )
        return [self._map_group(row) for row in rows]

    def save_group(self, group: Group) -> None:
        """Persist a group's name and members."""
        try:
            self._execute(
                "UPDATE tenant_groups SET name = %s, accounts = %s WHERE tenant_id = %s AND group_id = %s",
                (group.name, sorted(group.accounts), group.tenant_id, group.group_id),
            )
        except pg_errors.UniqueViolation as exc:
            raise GroupExists("group already exists", {"group": group.name}) from exc

    def delete_group(self, tenant_id: str, group_id: str) -> bool:
        """Delete a group and detach it from the tenant's directories."""
        with self._pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "UPDATE tenant_directories SET groups = array_remove(groups, %s) WHERE tenant_id = %s",
                    (group_id, tenant_id),
                )
                cur.execute(
                    "DELETE FROM tenant_groups WHERE tenant_id = %s AND group_id = %s",
                    (tenant_id, group_id),
                )
                deleted = cur.rowcount
            conn.commit()
        return deleted > 0

    def create_directory(self, directory: Directory) -> Directory:
        """Insert a directory rule, raising ``DirectoryExists`` when the path is taken."""
        try:
            self._execute(
                """
                INSERT INTO tenant_directories (directory_id, tenant_id, path, grant_level, groups, accounts)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (
                    directory.directory_id,
                    directory.tenant_id,
                    directory.path,
                    directory.grant.value,
                    sorted(directory.groups),
                    sorted(directory.accounts),
                ),
            )
        except pg_errors.UniqueViolation as exc:
            raise DirectoryExists("directory already exists", {"path": directory.path}) from exc
        return directory

    def get_directory(self, tenant_id: str, path: str) -> Directory | None:
        """Fetch a directory rule by path within the tenant or return ``None``."""
        row = self._fetch_one(
            """
            SELECT directory_id, tenant_id, path, grant_level, groups, accounts
            FROM tenant_directories WHERE tenant_id = %s AND path = %s
            """,
            (tenant_id, path),
        )
        return self._map_directory(row) if row else None

    def list_directories(self, tenant_id: str) -> list[Directory]:
        """Return the tenant's directory rules ordered by path."""
        rows = self._fetch_all(
            """
            SELECT directory_id, tenant_id, path, grant_level, groups, accounts
            FROM tenant_directories WHERE tenant_id = %s ORDER BY path
            """,
            (tenant_id,),
        )
        return [self._map_directory(row) for row in rows]

    def save_directory(self, directory: Directory) -> None:
        """Persist a directory's grant level and members."""
        self._execute(
            """
            UPDATE tenant_directories SET grant_level = %s, groups = %s, accounts = %s
            WHERE tenant_id = %s AND directory_id = %s
            """,
            (
                directory.grant.value,
                sorted(directory.groups),
                sorted(directory.accounts),
                directory.tenant_id,
                directory.directory_id,
            ),
        )

    def delete_directory(self, tenant_id: str, directory_id: str) -> bool:
        """Delete a directory rule."""
        return (
            self._execute(
                "DELETE FROM tenant_directories WHERE tenant_id = %s AND directory_id = %s",
                (tenant_id, directory_id),
            )
            > 0
        )

    def _execute(self, query: str, params: tuple[Any, ...]) -> int:
        with self._pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(query, params)
                affected = cur.rowcount
            conn.commit()
        return affected

    def _fetch_one(self, query: str, params: tuple[Any, ...]) -> tuple | None:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(query, params)
                return cur.fetchone()

    def _fetch_all(self, query: str, params: tuple[Any, ...]) -> list[tuple]:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(query, params)
                return cur.fetchall()

    def _tenant_params(self, tenant: Tenant) -> tuple[Any, ...]:
        return (
            tenant.tenant_id,
            tenant.name,
            tenant.owner_id,
            sorted(tenant.collaborators),
            tenant.state.value,
            _json_or_none(_storage_dict(tenant.storage)),
            _json_or_none(_federated_dict(tenant.federated)),
            tenant.created_at,
            tenant.updated_at,
        )

    def _map_tenant(self, row: tuple) -> Tenant:
        """Convert a raw database tuple into the domain ``Tenant`` dataclass."""
        storage = row[5]
        federated = row[6]
        return Tenant(
            tenant_id=str(row[0]),
            name=row[1],
            owner_id=row[2],
            collaborators=set(row[3] or ()),
            state=ProvisioningState(row[4]),
            storage=StorageDescriptor(**storage) if storage else None,
            federated=FederatedIdentityConfig(**federated) if federated else None,
            created_at=row[7],
            updated_at=row[8],
        )

    def _map_account(self, row: tuple) -> ScopedAccount:
        """Convert a raw database tuple into the domain ``ScopedAccount`` dataclass."""
        return ScopedAccount(
            account_id=str(row[0]),
            tenant_id=str(row[1]),
            username=row[2],
            email=row[3],
            password_hash=row[4],
            external_id=row[5],
            session_id=row[6],
            created_at=row[7],
        )

    def _map_group(self, row: tuple) -> Group:
        return Group(group_id=str(row[0]), tenant_id=str(row[1]), name=row[2], accounts=set(row[3] or ()))

    def _map_directory(self, row: tuple) -> Directory:
        return Directory(
            directory_id=str(row[0]),
            tenant_id=str(row[1]),
            path=row[2],
            grant=Grant(row[3]),
            groups=set(row[4] or ()),
            accounts=set(row[5] or ()),
        )


def _storage_dict(storage: StorageDescriptor | None) -> dict[str, Any] | None:
    if storage is None:
        return None
    return {"provider": storage.provider, "bucket": storage.bucket, "site_url": storage.site_url}


def _federated_dict(config: FederatedIdentityConfig | None) -> dict[str, Any] | None:
    if config is None:
        return None
    return {
        "provider": config.provider,
        "endpoint": config.endpoint,
        "client_id": config.client_id,
        "enabled": config.enabled,
    }


def _json_or_none(value: dict[str, Any] | None) -> Json | None:
    return Json(value) if value is not None else None
