"""HTTP route definitions for the tenant service."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Body, Depends, Header, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field
from schemas import (
    Directory as DirectoryView,
    FileEntry,
    Group as GroupView,
    PermissionDecision as PermissionView,
    PublishedFile as PublishedFileView,
    ScopedAccount as ScopedAccountView,
    SessionGrant,
    StorageDescriptor as StorageView,
    TemplateApplication as TemplateApplicationView,
    Tenant as TenantView,
)

from ..domain.access import Directory, Grant, Group
from ..domain.account import AccountProjection, IssuedSession
from ..domain.contracts import CreateTenantInput, Credentials, DirectorySpec, GroupSpec, ProviderEvent
from ..domain.orchestrator import TenantOrchestrator
from ..domain.tenant import FederatedIdentityConfig, Tenant
from ..errors import (
    Conflict,
    InvalidInput,
    NotFound,
    PartialFailure,
    ProviderError,
    ServiceError,
    SessionExpired,
    SessionNotFound,
    Unauthorized,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1")


class FederationRequest(BaseModel):
    """Identity provider settings supplied by a tenant owner."""

    provider: str
    endpoint: str
    client_id: str
    enabled: bool = True

    def to_domain(self) -> FederatedIdentityConfig:
        return FederatedIdentityConfig(
            provider=self.provider, endpoint=self.endpoint, client_id=self.client_id, enabled=self.enabled
        )


class CreateTenantRequest(BaseModel):
    """Payload accepted when registering a tenant."""

    name: str
    collaborators: list[str] = Field(default_factory=list)
    federated: FederationRequest | None = None
    template: str | None = None


class TemplateRequest(BaseModel):
    name: str
    replace_all: bool | None = None


class PublishRequest(BaseModel):
    key: str
    content: str
    content_type: str | None = None


class CollaboratorsRequest(BaseModel):
    accounts: list[str]


class CredentialsRequest(BaseModel):
    username: str | None = None
    email: EmailStr | None = None
    password: str | None = None

    def to_domain(self) -> Credentials:
        return Credentials(username=self.username, email=self.email, password=self.password)


class GroupRequest(BaseModel):
    name: str
    accounts: list[str] = Field(default_factory=list)
    directories: list[str] = Field(default_factory=list)


class ProviderEventRequest(BaseModel):
    event_type: str
    user_id: str
    username: str | None = None
    email: str | None = None


def get_orchestrator(request: Request) -> TenantOrchestrator:
    """Resolve the `TenantOrchestrator` stored on the FastAPI application state."""
    orchestrator: TenantOrchestrator = request.app.state.orchestrator
    return orchestrator


def bearer_token(authorization: str | None = Header(default=None)) -> str:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise SessionNotFound("bearer token required")
    return authorization[7:].strip()


@router.post("/tenants", response_model=TenantView, status_code=status.HTTP_201_CREATED)
def create_tenant(
    payload: CreateTenantRequest,
    account_id: str = Header(..., alias="X-Account-ID"),
    orchestrator: TenantOrchestrator = Depends(get_orchestrator),
) -> TenantView:
    """Register a tenant owned by the calling platform account."""
    tenant = orchestrator.create_tenant(
        CreateTenantInput(
            name=payload.name,
            owner_id=account_id,
            collaborators=set(payload.collaborators),
            federated=payload.federated.to_domain() if payload.federated else None,
            template=payload.template,
        )
    )
    return _tenant_view(tenant)


@router.get("/tenants", response_model=list[TenantView])
def list_tenants(
    account_id: str | None = Header(default=None, alias="X-Account-ID"),
    orchestrator: TenantOrchestrator = Depends(get_orchestrator),
) -> list[TenantView]:
    """List tenants the caller owns or collaborates on (all tenants without a caller)."""
    return [_tenant_view(tenant) for tenant in orchestrator.list_tenants(account_id)]


@router.get("/tenants/{name}", response_model=TenantView)
def get_tenant(name: str, orchestrator: TenantOrchestrator = Depends(get_orchestrator)) -> TenantView:
    return _tenant_view(orchestrator.get_tenant(name))


@router.delete("/tenants/{name}", response_model=TenantView)
def delete_tenant(name: str, orchestrator: TenantOrchestrator = Depends(get_orchestrator)) -> TenantView:
    return _tenant_view(orchestrator.delete_tenant(name))


@router.put("/tenants/{name}/federation", response_model=TenantView)
def configure_federation(
    name: str,
    payload: FederationRequest | None = Body(default=None),
    orchestrator: TenantOrchestrator = Depends(get_orchestrator),
) -> TenantView:
    """Set or clear (empty body) the tenant's identity provider."""
    config = payload.to_domain() if payload else None
    return _tenant_view(orchestrator.configure_federation(name, config))


@router.get("/tenants/{name}/providers", response_model=dict[str, str])
def get_providers(name: str, orchestrator: TenantOrchestrator = Depends(get_orchestrator)) -> dict[str, str]:
    return orchestrator.get_providers(name)


@router.put("/tenants/{name}/storage", response_model=TenantView)
def create_storage(name: str, orchestrator: TenantOrchestrator = Depends(get_orchestrator)) -> TenantView:
    return _tenant_view(orchestrator.create_storage(name))


@router.delete("/tenants/{name}/storage", response_model=TenantView)
def remove_storage(name: str, orchestrator: TenantOrchestrator = Depends(get_orchestrator)) -> TenantView:
    return _tenant_view(orchestrator.remove_storage(name))


@router.put("/tenants/{name}/template", response_model=TemplateApplicationView)
def apply_template(
    name: str,
    payload: TemplateRequest,
    orchestrator: TenantOrchestrator = Depends(get_orchestrator),
) -> TemplateApplicationView:
    result = orchestrator.apply_template(name, payload.name, replace_all=payload.replace_all)
    return TemplateApplicationView(
        template=result.template, written=result.written, skipped=result.skipped, replaced=result.replaced
    )


@router.put("/tenants/{name}/publish", response_model=PublishedFileView)
def publish_file(
    name: str,
    payload: PublishRequest,
    orchestrator: TenantOrchestrator = Depends(get_orchestrator),
) -> PublishedFileView:
    published = orchestrator.publish_file(name, payload.key, payload.content, payload.content_type)
    return PublishedFileView(
        key=published.key, content_type=published.content_type, size=published.size, url=published.url
    )


@router.get("/tenants/{name}/files", response_model=list[FileEntry])
def list_files(name: str, orchestrator: TenantOrchestrator = Depends(get_orchestrator)) -> list[FileEntry]:
    return [
        FileEntry(
            key=info.key,
            size=info.size,
            content_type=info.content_type,
            last_modified=info.last_modified,
            etag=info.etag,
        )
        for info in orchestrator.get_structure(name)
    ]


@router.post("/tenants/{name}/collaborators", response_model=list[str])
def add_collaborators(
    name: str,
    payload: CollaboratorsRequest,
    orchestrator: TenantOrchestrator = Depends(get_orchestrator),
) -> list[str]:
    return sorted(orchestrator.add_collaborators(name, payload.accounts))


@router.post("/tenants/{name}/signup", response_model=SessionGrant)
def signup(
    name: str,
    payload: CredentialsRequest,
    orchestrator: TenantOrchestrator = Depends(get_orchestrator),
) -> SessionGrant:
    return _session_grant(orchestrator.signup(name, payload.to_domain()))


@router.post("/tenants/{name}/login", response_model=SessionGrant)
def login(
    name: str,
    payload: CredentialsRequest,
    orchestrator: TenantOrchestrator = Depends(get_orchestrator),
) -> SessionGrant:
    return _session_grant(orchestrator.login(name, payload.to_domain()))


@router.post("/tenants/{name}/logout")
def logout(
    name: str,
    token: str = Depends(bearer_token),
    orchestrator: TenantOrchestrator = Depends(get_orchestrator),
) -> dict[str, str]:
    orchestrator.logout(name, token)
    return {"message": "logout successful"}


@router.get("/tenants/{name}/session", response_model=ScopedAccountView)
def verify_session(
    name: str,
    token: str = Depends(bearer_token),
    orchestrator: TenantOrchestrator = Depends(get_orchestrator),
) -> ScopedAccountView:
    return _account_view(orchestrator.validate_session(name, token))


@router.delete("/tenants/{name}/accounts/{identifier}", response_model=ScopedAccountView)
def remove_account(
    name: str, identifier: str, orchestrator: TenantOrchestrator = Depends(get_orchestrator)
) -> ScopedAccountView:
    return _account_view(orchestrator.remove_account(name, identifier).projection())


@router.post("/tenants/{name}/provider-events")
def provider_event(
    name: str,
    payload: ProviderEventRequest,
    orchestrator: TenantOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    account = orchestrator.handle_provider_event(
        name,
        ProviderEvent(
            event_type=payload.event_type,
            external_id=payload.user_id,
            username=payload.username,
            email=payload.email,
        ),
    )
    return {"event_type": payload.event_type, "account_id": account.account_id if account else None}


@router.get("/tenants/{name}/groups", response_model=list[GroupView])
def list_groups(name: str, orchestrator: TenantOrchestrator = Depends(get_orchestrator)) -> list[GroupView]:
    return [_group_view(orchestrator, name, group) for group in orchestrator.list_groups(name)]


@router.post("/tenants/{name}/groups", response_model=GroupView, status_code=status.HTTP_201_CREATED)
def add_group(
    name: str,
    payload: GroupRequest,
    orchestrator: TenantOrchestrator = Depends(get_orchestrator),
) -> GroupView:
    group = orchestrator.add_group(
        name,
        GroupSpec(name=payload.name, accounts=set(payload.accounts), directories=set(payload.directories)),
    )
    return _group_view(orchestrator, name, group)


@router.put("/tenants/{name}/groups/{group}", response_model=GroupView | None)
def update_group(
    name: str,
    group: str,
    payload: dict[str, Any] | None = Body(default=None),
    orchestrator: TenantOrchestrator = Depends(get_orchestrator),
) -> GroupView | None:
    """Partially update a group.

    An empty body deletes the group and returns ``null``.
    """
    updated = orchestrator.update_group(name, group, payload)
    return _group_view(orchestrator, name, updated) if updated else None


@router.delete("/tenants/{name}/groups/{group}", response_model=GroupView)
def delete_group(
    name: str, group: str, orchestrator: TenantOrchestrator = Depends(get_orchestrator)
) -> GroupView:
    return GroupView(name=group, accounts=sorted(orchestrator.delete_group(name, group).accounts))


@router.get("/tenants/{name}/directories", response_model=list[DirectoryView])
def list_directories(
    name: str, orchestrator: TenantOrchestrator = Depends(get_orchestrator)
) -> list[DirectoryView]:
    names = {group.group_id: group.name for group in orchestrator.list_groups(name)}
    return [_directory_view(directory, names) for directory in orchestrator.list_directories(name)]


@router.post("/tenants/{name}/directories", response_model=DirectoryView, status_code=status.HTTP_201_CREATED)
def add_directory(
    name: str,
    payload: DirectoryView,
    orchestrator: TenantOrchestrator = Depends(get_orchestrator),
) -> DirectoryView:
    directory = orchestrator.add_directory(
        name,
        DirectorySpec(
            path=payload.path,
            grant=Grant(payload.grant),
            groups=set(payload.groups),
            accounts=set(payload.accounts),
        ),
    )
    names = {group.group_id: group.name for group in orchestrator.list_groups(name)}
    return _directory_view(directory, names)


@router.delete("/tenants/{name}/directories", response_model=DirectoryView)
def delete_directory(
    name: str,
    path: str = Query(...),
    orchestrator: TenantOrchestrator = Depends(get_orchestrator),
) -> DirectoryView:
    return _directory_view(orchestrator.delete_directory(name, path), {})


@router.get("/tenants/{name}/permissions", response_model=PermissionView)
def resolve_permission(
    name: str,
    account_id: str = Query(...),
    path: str = Query(...),
    action: str = Query(default="read"),
    orchestrator: TenantOrchestrator = Depends(get_orchestrator),
) -> PermissionView:
    decision = orchestrator.resolve_permission(name, account_id, path, action)
    return PermissionView(allowed=decision.allowed, rule=decision.rule, directory=decision.directory)


def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    """Translate core failure kinds into HTTP responses."""
    status_code, body = _error_response(exc)
    if status_code >= 500:
        logger.error("request %s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status_code, content=body)


def _error_response(exc: ServiceError) -> tuple[int, dict[str, Any]]:
    if isinstance(exc, SessionExpired):
        return status.HTTP_401_UNAUTHORIZED, {"detail": "session expired"}
    if isinstance(exc, SessionNotFound):
        return status.HTTP_401_UNAUTHORIZED, {"detail": "invalid session"}
    if isinstance(exc, Unauthorized):
        return status.HTTP_401_UNAUTHORIZED, {"detail": "invalid credentials"}
    if isinstance(exc, NotFound):
        return status.HTTP_404_NOT_FOUND, {"detail": exc.message, **exc.details}
    if isinstance(exc, Conflict):
        return status.HTTP_409_CONFLICT, {"detail": exc.message, **exc.details}
    if isinstance(exc, InvalidInput):
        return status.HTTP_422_UNPROCESSABLE_ENTITY, {"detail": exc.message, **exc.details}
    if isinstance(exc, PartialFailure):
        return status.HTTP_500_INTERNAL_SERVER_ERROR, {"detail": exc.message, "phase": exc.phase, **exc.details}
    if isinstance(exc, ProviderError):
        code = status.HTTP_503_SERVICE_UNAVAILABLE if exc.retryable else status.HTTP_502_BAD_GATEWAY
        return code, {"detail": exc.message}
    return status.HTTP_500_INTERNAL_SERVER_ERROR, {"detail": exc.message}


def _tenant_view(tenant: Tenant) -> TenantView:
    storage = tenant.storage
    providers = {}
    if tenant.federation_enabled:
        providers = {tenant.federated.provider: tenant.federated.client_id}
    return TenantView(
        name=tenant.name,
        owner_id=tenant.owner_id,
        collaborators=sorted(tenant.collaborators),
        state=tenant.state.value,
        storage=StorageView(provider=storage.provider, bucket=storage.bucket, site_url=storage.site_url)
        if storage
        else None,
        providers=providers,
        created_at=tenant.created_at,
        updated_at=tenant.updated_at,
    )


def _account_view(account: AccountProjection) -> ScopedAccountView:
    return ScopedAccountView(
        account_id=account.account_id,
        tenant_id=account.tenant_id,
        username=account.username,
        email=account.email,
        federated=account.federated,
    )


def _session_grant(issued: IssuedSession) -> SessionGrant:
    return SessionGrant(token=issued.token, expires_at=issued.expires_at, account=_account_view(issued.account))


def _group_view(orchestrator: TenantOrchestrator, name: str, group: Group) -> GroupView:
    return GroupView(
        name=group.name,
        accounts=sorted(group.accounts),
        directories=orchestrator.group_directories(name, group),
    )


def _directory_view(directory: Directory, group_names: dict[str, str]) -> DirectoryView:
    return DirectoryView(
        path=directory.path,
        grant=directory.grant.value,
        groups=sorted(group_names.get(group_id, group_id) for group_id in directory.groups),
        accounts=sorted(directory.accounts),
    )
