from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class ProvisioningState(str, Enum):
    unprovisioned = "unprovisioned"
    provisioning = "provisioning"
    provisioned = "provisioned"
    provisioning_failed = "provisioning_failed"
    deprovisioning = "deprovisioning"
    deprovisioning_failed = "deprovisioning_failed"
    removed = "removed"


@dataclass(slots=True, frozen=True)
class StorageDescriptor:
    """Where a provisioned tenant site lives. Present only once fully provisioned."""

    provider: str
    bucket: str
    site_url: str


@dataclass(slots=True, frozen=True)
class FederatedIdentityConfig:
    """Delegated identity provider settings for a tenant."""

    provider: str
    endpoint: str
    client_id: str
    enabled: bool = True


@dataclass(slots=True)
class Tenant:
    """Aggregate root for a hosted site and everything scoped to it."""

    tenant_id: str
    name: str
    owner_id: str
    created_at: datetime
    updated_at: datetime
    collaborators: set[str] = field(default_factory=set)
    state: ProvisioningState = ProvisioningState.unprovisioned
    storage: StorageDescriptor | None = None
    federated: FederatedIdentityConfig | None = None

    @property
    def federation_enabled(self) -> bool:
        return self.federated is not None and self.federated.enabled
