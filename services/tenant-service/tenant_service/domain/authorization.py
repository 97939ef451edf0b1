"""Tenant authorization graph: owner, collaborators, groups, and directories."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from datetime import datetime, timezone
from fnmatch import fnmatchcase

from ..errors import DirectoryNotFound, GroupExists, GroupNotFound, InvalidInput
from ..repository import TenantRepository
from .access import Directory, Grant, Group, PermissionDecision
from .account import is_record_id
from .contracts import DirectorySpec, GroupPatch, GroupSpec
from .tenant import Tenant

logger = logging.getLogger(__name__)

_WILDCARDS = set("*?[")


def normalize_path(path: str) -> str:
    if not path or not path.strip():
        raise InvalidInput("path is required")
    path = path.strip()
    if not path.startswith("/"):
        path = "/" + path
    if len(path) > 1:
        path = path.rstrip("/") or "/"
    return path


def path_matches(pattern: str, path: str) -> bool:
    """Shell-style match; a plain pattern also covers everything beneath it."""
    if _WILDCARDS & set(pattern):
        return fnmatchcase(path, pattern)
    if pattern == "/":
        return True
    return path == pattern or path.startswith(pattern + "/")


class AuthorizationGraph:
    """Permission resolution with a fixed, most-privileged-first precedence.

    1. tenant owner: full access
    2. collaborator: full access
    3. a directory matching the path lists the account, directly or through
       one of its groups, with a grant covering the action
    4. otherwise denied
    """

    def __init__(self, repository: TenantRepository) -> None:
        self._repository = repository

    def add_group(self, tenant: Tenant, spec: GroupSpec) -> Group:
        name = _group_name(spec.name)
        if self._repository.get_group(tenant.tenant_id, name) is not None:
            raise GroupExists("group already exists", {"group": name})
        directories = self._require_directories(tenant, spec.directories)
        group = Group(
            group_id=str(uuid.uuid4()),
            tenant_id=tenant.tenant_id,
            name=name,
            accounts=self._require_accounts(tenant, spec.accounts),
        )
        self._repository.create_group(group)
        for directory in directories:
            directory.groups.add(group.group_id)
            self._repository.save_directory(directory)
        logger.info("added group %s to tenant %s", name, tenant.name)
        return group

    def update_group(self, tenant: Tenant, name: str, patch: GroupPatch | None) -> Group | None:
        """Apply a partial update to a group.

        An absent or empty patch DELETES the group and returns ``None``. This
        mirrors the long-standing public contract of the groups endpoint, where
        an empty body was a delete request.
        """
        if patch is None or patch.is_empty():
            logger.warning("empty update for group %s in tenant %s, deleting it", name, tenant.name)
            self.delete_group(tenant, name)
            return None

        group = self.get_group(tenant, name)
        if patch.name is not None:
            new_name = _group_name(patch.name)
            if new_name != group.name and self._repository.get_group(tenant.tenant_id, new_name) is not None:
                raise GroupExists("group already exists", {"group": new_name})
            group.name = new_name
        if patch.accounts is not None:
            group.accounts = self._require_accounts(tenant, patch.accounts)
        self._repository.save_group(group)

        if patch.directories is not None:
            wanted = {d.directory_id for d in self._require_directories(tenant, patch.directories)}
            for directory in self._repository.list_directories(tenant.tenant_id):
                member = group.group_id in directory.groups
                if (directory.directory_id in wanted) != member:
                    directory.groups.symmetric_difference_update({group.group_id})
                    self._repository.save_directory(directory)
        return group

    def delete_group(self, tenant: Tenant, name: str) -> Group:
        group = self.get_group(tenant, name)
        self._repository.delete_group(tenant.tenant_id, group.group_id)
        logger.info("deleted group %s from tenant %s", name, tenant.name)
        return group

    def get_group(self, tenant: Tenant, name: str) -> Group:
        group = self._repository.get_group(tenant.tenant_id, name)
        if group is None:
            raise GroupNotFound("group not found", {"group": name})
        return group

    def list_groups(self, tenant: Tenant) -> list[Group]:
        return self._repository.list_groups(tenant.tenant_id)

    def group_directories(self, tenant: Tenant, group: Group) -> list[str]:
        return [d.path for d in self._repository.list_directories(tenant.tenant_id) if group.group_id in d.groups]

    def add_directory(self, tenant: Tenant, spec: DirectorySpec) -> Directory:
        groups: set[str] = set()
        for name in spec.groups:
            groups.add(self.get_group(tenant, name).group_id)
        directory = Directory(
            directory_id=str(uuid.uuid4()),
            tenant_id=tenant.tenant_id,
            path=normalize_path(spec.path),
            grant=spec.grant,
            groups=groups,
            accounts=self._require_accounts(tenant, spec.accounts),
        )
        return self._repository.create_directory(directory)

    def delete_directory(self, tenant: Tenant, path: str) -> Directory:
        directory = self._repository.get_directory(tenant.tenant_id, normalize_path(path))
        if directory is None:
            raise DirectoryNotFound("directory not found", {"path": path})
        self._repository.delete_directory(tenant.tenant_id, directory.directory_id)
        return directory

    def list_directories(self, tenant: Tenant) -> list[Directory]:
        return self._repository.list_directories(tenant.tenant_id)

    def add_collaborators(self, tenant: Tenant, account_refs: Iterable[str]) -> set[str]:
        refs = {ref.strip() for ref in account_refs if ref and ref.strip()}
        added = refs - tenant.collaborators - {tenant.owner_id}
        if added:
            tenant.collaborators |= added
            tenant.updated_at = datetime.now(timezone.utc)
            self._repository.save_tenant(tenant)
        return set(tenant.collaborators)

    def remove_collaborators(self, tenant: Tenant, account_refs: Iterable[str]) -> set[str]:
        removed = tenant.collaborators & set(account_refs)
        if removed:
            tenant.collaborators -= removed
            tenant.updated_at = datetime.now(timezone.utc)
            self._repository.save_tenant(tenant)
        return set(tenant.collaborators)

    def resolve_permission(
        self, tenant: Tenant, account_id: str, path: str, action: Grant | str = Grant.read
    ) -> PermissionDecision:
        try:
            action = Grant(action)
        except ValueError:
            raise InvalidInput("unknown action", {"action": str(action)}) from None
        if account_id == tenant.owner_id:
            return PermissionDecision(allowed=True, rule="owner")
        if account_id in tenant.collaborators:
            return PermissionDecision(allowed=True, rule="collaborator")

        target = normalize_path(path)
        member_of = {g.group_id for g in self._repository.list_groups(tenant.tenant_id) if account_id in g.accounts}
        for directory in self._repository.list_directories(tenant.tenant_id):
            if not path_matches(directory.path, target):
                continue
            listed = account_id in directory.accounts or bool(member_of & directory.groups)
            if listed and directory.grant.allows(action):
                return PermissionDecision(allowed=True, rule="directory", directory=directory.path)
        return PermissionDecision(allowed=False, rule="denied")

    def _require_accounts(self, tenant: Tenant, account_ids: Iterable[str]) -> set[str]:
        accounts = set(account_ids)
        unknown = sorted(
            a for a in accounts if not is_record_id(a) or self._repository.get_account(tenant.tenant_id, a) is None
        )
        if unknown:
            raise InvalidInput("unknown accounts", {"accounts": unknown})
        return accounts

    def _require_directories(self, tenant: Tenant, paths: Iterable[str]) -> list[Directory]:
        directories = []
        for path in paths:
            directory = self._repository.get_directory(tenant.tenant_id, normalize_path(path))
            if directory is None:
                raise DirectoryNotFound("directory not found", {"path": path})
            directories.append(directory)
        return directories


def _group_name(name: str | None) -> str:
    if not name or not name.strip():
        raise InvalidInput("group name is required")
    return name.strip()
