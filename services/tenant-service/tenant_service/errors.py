"""Typed failures raised by the tenant service core.

Every failure belongs to one kind (``NotFound``, ``Conflict``, ``InvalidInput``,
``Unauthorized``, ``ProviderError``, ``PartialFailure``). Components raise the
precise subclass; the orchestrator only stamps the tenant name onto the error
before letting it propagate, and the HTTP layer maps kinds to status codes.
"""

from __future__ import annotations

from typing import Any


class ServiceError(Exception):
    """Base class for all tenant service failures."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        self.tenant: str | None = None
        super().__init__(message)

    def __str__(self) -> str:
        if self.tenant:
            return f"[{self.tenant}] {self.message}"
        return self.message


class NotFound(ServiceError):
    pass


class Conflict(ServiceError):
    pass


class InvalidInput(ServiceError):
    pass


class Unauthorized(ServiceError):
    pass


class ProviderError(ServiceError):
    """Failure of an external backend (object storage or identity provider)."""

    def __init__(
        self,
        message: str,
        *,
        retryable: bool = False,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details)
        self.retryable = retryable


class PartialFailure(ServiceError):
    """A multi-step operation stopped half way; re-invoking it is safe."""

    def __init__(self, message: str, *, phase: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, details)
        self.phase = phase


class TenantNotFound(NotFound):
    pass


class AccountNotFound(NotFound):
    pass


class GroupNotFound(NotFound):
    pass


class DirectoryNotFound(NotFound):
    pass


class TemplateNotFound(NotFound):
    pass


class BucketNotFound(NotFound):
    pass


class TenantExists(Conflict):
    pass


class AccountExists(Conflict):
    pass


class GroupExists(Conflict):
    pass


class DirectoryExists(Conflict):
    pass


class StorageConflict(Conflict):
    pass


class InvalidTransition(Conflict):
    """The tenant's provisioning state does not allow the requested operation."""


class TenantBusy(Conflict):
    """Another lifecycle operation holds the tenant lock."""


class InvalidKey(InvalidInput):
    pass


class InvalidCredentials(Unauthorized):
    def __init__(self, message: str = "invalid credentials", details: dict[str, Any] | None = None) -> None:
        super().__init__(message, details)


class SessionNotFound(Unauthorized):
    pass


class SessionExpired(Unauthorized):
    pass


class StorageProviderError(ProviderError):
    pass


class IdentityProviderError(ProviderError):
    pass


class StorageTeardownIncomplete(PartialFailure):
    pass


class TemplateApplyIncomplete(PartialFailure):
    pass
