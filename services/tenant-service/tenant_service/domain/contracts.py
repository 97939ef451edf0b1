"""Domain-level request contracts shared by multiple layers."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from ..errors import InvalidInput
from .access import Grant
from .tenant import FederatedIdentityConfig


@dataclass(slots=True)
class CreateTenantInput:
    """Validated inputs required to register a tenant."""

    name: str
    owner_id: str
    collaborators: set[str] = field(default_factory=set)
    federated: FederatedIdentityConfig | None = None
    template: str | None = None


@dataclass(slots=True)
class Credentials:
    username: str | None = None
    email: str | None = None
    password: str | None = None

    @property
    def identifier(self) -> str | None:
        return self.username or self.email


@dataclass(slots=True)
class GroupSpec:
    name: str
    accounts: set[str] = field(default_factory=set)
    directories: set[str] = field(default_factory=set)


@dataclass(slots=True)
class GroupPatch:
    """Partial group update. A patch with no fields set means "delete the group"."""

    name: str | None = None
    accounts: set[str] | None = None
    directories: set[str] | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> "GroupPatch":
        if not data:
            return cls()
        unknown = set(data) - {"name", "accounts", "directories"}
        if unknown:
            raise InvalidInput("unknown group fields", {"fields": sorted(unknown)})
        return cls(
            name=data.get("name"),
            accounts=_optional_set(data.get("accounts")),
            directories=_optional_set(data.get("directories")),
        )

    def is_empty(self) -> bool:
        return self.name is None and self.accounts is None and self.directories is None


@dataclass(slots=True)
class DirectorySpec:
    path: str
    grant: Grant = Grant.read
    groups: set[str] = field(default_factory=set)
    accounts: set[str] = field(default_factory=set)


@dataclass(slots=True, frozen=True)
class ExternalIdentity:
    """Identity asserted by a federated provider; ``external_id`` is stable."""

    external_id: str
    username: str | None = None
    email: str | None = None


@dataclass(slots=True)
class ProviderEvent:
    """Account lifecycle notification pushed by a federated provider."""

    event_type: str
    external_id: str
    username: str | None = None
    email: str | None = None


def _optional_set(value: Iterable[str] | None) -> set[str] | None:
    if value is None:
        return None
    if isinstance(value, str):
        raise InvalidInput("expected a list of identifiers")
    return set(value)
