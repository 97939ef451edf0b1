"""Prometheus collectors shared by the provisioning components."""

from __future__ import annotations

from prometheus_client import Counter

PROVISIONING_TRANSITIONS = Counter(
    "tenant_provisioning_transitions_total",
    "Provisioning state transitions by target state.",
    ["state"],
)

STORAGE_RETRIES = Counter(
    "tenant_storage_retries_total",
    "Storage gateway calls retried after a transient failure.",
    ["operation"],
)

LOGINS = Counter(
    "tenant_logins_total",
    "Scoped login attempts by identity backend and outcome.",
    ["backend", "outcome"],
)
