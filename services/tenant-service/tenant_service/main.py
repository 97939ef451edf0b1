"""FastAPI application wiring for the tenant service."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import redis
from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from psycopg_pool import ConnectionPool

from .api.routes import router as v1_router
from .api.routes import service_error_handler
from .config import Settings, get_settings
from .domain.authorization import AuthorizationGraph
from .domain.orchestrator import TenantLocks, TenantOrchestrator
from .domain.provisioning import ProvisioningEngine
from .errors import ServiceError
from .identity.backends import FederatedIdentityDelegate
from .identity.provider import HttpIdentityProviderAdapter
from .identity.vault import CredentialVault
from .repository import TenantRepository
from .security.passwords import PasswordHasher
from .security.redis_sessions import RedisSessionStore
from .security.sessions import InMemorySessionStore, SessionIssuer, SessionStore
from .storage.gateway import InMemoryStorageGateway
from .storage.templates import DirectoryTemplateRepository

settings = get_settings()
logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


def _build_session_store(settings: Settings) -> SessionStore:
    """Instantiate the configured session store, preferring Redis when available."""
    if settings.session_backend == "redis" and settings.redis_url:
        try:
            client = redis.from_url(settings.redis_url)
            client.ping()
            logger.info("session store configured for redis backend at %s", settings.redis_url)
            return RedisSessionStore(client)
        except redis.RedisError as exc:
            logger.warning("redis session store unavailable, falling back to in-memory: %s", exc)

    logger.info("session store using in-memory backend")
    return InMemorySessionStore()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialise shared resources (Postgres pool, storage, identity) for the app lifecycle."""
    pool = ConnectionPool(settings.database_url, open=False)
    pool.open()
    repository = TenantRepository(pool)

    engine = ProvisioningEngine(
        InMemoryStorageGateway(settings.site_url_template),
        DirectoryTemplateRepository(settings.template_root),
        bucket_prefix=settings.bucket_prefix,
        timeout_seconds=settings.storage_timeout_seconds,
        retry_attempts=settings.storage_retry_attempts,
        backoff_seconds=settings.storage_retry_backoff_seconds,
        replace_all_default=settings.template_replace_all,
        max_workers=settings.storage_workers,
    )
    sessions = SessionIssuer(_build_session_store(settings), ttl_seconds=settings.session_ttl_seconds)
    vault = CredentialVault(
        repository,
        PasswordHasher(rounds=settings.password_hash_rounds),
        sessions,
        min_password_length=settings.password_min_length,
    )
    adapter = HttpIdentityProviderAdapter(timeout=settings.identity_provider_timeout_seconds)

    app.state.pool = pool
    app.state.orchestrator = TenantOrchestrator(
        repository,
        engine,
        vault,
        sessions,
        FederatedIdentityDelegate(adapter, sessions, repository),
        AuthorizationGraph(repository),
        locks=TenantLocks(settings.tenant_lock_timeout_seconds),
    )
    try:
        yield
    finally:
        adapter.close()
        engine.close()
        pool.close()
        pool.wait_close()


app = FastAPI(title=settings.app_name, version=settings.version, lifespan=lifespan)
app.add_exception_handler(ServiceError, service_error_handler)

# CORS for local frontend dev
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://127.0.0.1:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    max_age=600,
)


@app.get("/healthz", tags=["health"])
def healthz() -> dict[str, str]:
    """Return a minimal readiness indicator used by orchestration systems."""
    return {"status": "ok"}


@app.get("/metrics", tags=["health"])
def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


app.include_router(v1_router)
