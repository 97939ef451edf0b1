from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class Grant(str, Enum):
    read = "read"
    write = "write"

    def allows(self, action: "Grant") -> bool:
        return self is Grant.write or action is Grant.read


@dataclass(slots=True)
class Group:
    group_id: str
    tenant_id: str
    name: str
    accounts: set[str] = field(default_factory=set)


@dataclass(slots=True)
class Directory:
    """Path-scoped authorization boundary inside a tenant site."""

    directory_id: str
    tenant_id: str
    path: str
    grant: Grant = Grant.read
    groups: set[str] = field(default_factory=set)
    accounts: set[str] = field(default_factory=set)


@dataclass(slots=True, frozen=True)
class PermissionDecision:
    allowed: bool
    rule: str
    directory: str | None = None

    def __bool__(self) -> bool:
        return self.allowed
