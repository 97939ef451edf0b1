"""Tests for the credential vault, session issuer, and identity backends."""

from __future__ import annotations

import json
import threading
from datetime import datetime, timedelta, timezone

import fakeredis
import httpx
import pytest

from tenant_service.domain.account import ScopedAccount
from tenant_service.domain.contracts import Credentials, ProviderEvent
from tenant_service.domain.tenant import FederatedIdentityConfig
from tenant_service.errors import (
    AccountExists,
    AccountNotFound,
    IdentityProviderError,
    InvalidCredentials,
    InvalidInput,
    SessionExpired,
    SessionNotFound,
)
from tenant_service.identity.backends import LocalIdentityBackend
from tenant_service.identity.provider import HttpIdentityProviderAdapter
from tenant_service.security.redis_sessions import RedisSessionStore
from tenant_service.security.sessions import SessionIssuer
from tenant_service.security.tokens import hash_session_token

PROVIDER = FederatedIdentityConfig(provider="acme", endpoint="https://idp.example.com/", client_id="client-1")


def _account(tenant_id: str = "tenant-1", account_id: str = "account-1") -> ScopedAccount:
    return ScopedAccount(account_id=account_id, tenant_id=tenant_id, created_at=datetime.now(timezone.utc))


class Clock:
    def __init__(self) -> None:
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


def test_password_hasher_round_trip(hasher):
    hashed = hasher.hash("correct horse")
    assert hashed != "correct horse"
    assert hasher.verify("correct horse", hashed)
    assert not hasher.verify("wrong horse", hashed)


def test_password_hasher_rejects_overlong_passwords(hasher):
    with pytest.raises(ValueError):
        hasher.hash("x" * 73)


def test_vault_create_hashes_password_and_normalizes_email(vault, repository, detached_tenant):
    repository.create_tenant(detached_tenant)
    account = vault.create(detached_tenant, Credentials(username="alice", email="Alice@Example.com", password="pw123456"))

    stored = repository.get_account(detached_tenant.tenant_id, account.account_id)
    assert stored.email == "alice@example.com"
    assert stored.password_hash and stored.password_hash != "pw123456"


@pytest.mark.parametrize(
    "credentials",
    [
        Credentials(password="pw123456"),
        Credentials(username="bob", password="short"),
        Credentials(email="not-an-email", password="pw123456"),
    ],
)
def test_vault_create_validates_input(vault, detached_tenant, credentials):
    with pytest.raises(InvalidInput):
        vault.create(detached_tenant, credentials)


def test_vault_create_rejects_duplicates(vault, detached_tenant):
    vault.create(detached_tenant, Credentials(username="alice", email="a@example.com", password="pw123456"))
    with pytest.raises(AccountExists):
        vault.create(detached_tenant, Credentials(username="alice", password="pw123456"))
    with pytest.raises(AccountExists):
        vault.create(detached_tenant, Credentials(username="other", email="A@example.com", password="pw123456"))


def test_vault_find_prefers_identifier_shape(vault, detached_tenant):
    by_name = vault.create(detached_tenant, Credentials(username="x@y.io", password="pw123456"))
    by_email = vault.create(detached_tenant, Credentials(username="carol", email="x@y.io", password="pw123456"))

    assert vault.find(detached_tenant, "x@y.io").account_id == by_email.account_id
    assert vault.find(detached_tenant, "carol").account_id == by_email.account_id
    assert by_name.account_id != by_email.account_id
    assert vault.find(detached_tenant, "nobody") is None


def test_vault_verify_distinguishes_failures_internally(vault, detached_tenant):
    vault.create(detached_tenant, Credentials(username="alice", password="pw123456"))

    assert vault.verify(detached_tenant, "alice", "pw123456").username == "alice"
    with pytest.raises(InvalidCredentials):
        vault.verify(detached_tenant, "alice", "wrong-password")
    with pytest.raises(AccountNotFound):
        vault.verify(detached_tenant, "mallory", "pw123456")


def test_vault_remove_revokes_sessions(vault, sessions, detached_tenant):
    account = vault.create(detached_tenant, Credentials(username="alice", password="pw123456"))
    issued = sessions.issue(account)

    vault.remove(detached_tenant, "alice")

    with pytest.raises(SessionNotFound):
        sessions.validate(issued.token)
    with pytest.raises(AccountNotFound):
        vault.remove(detached_tenant, account.account_id)


def test_local_backend_hides_which_check_failed(vault, sessions, repository, detached_tenant):
    backend = LocalIdentityBackend(vault, sessions, repository)
    backend.signup(detached_tenant, Credentials(username="alice", password="pw123456"))

    with pytest.raises(InvalidCredentials) as wrong_password:
        backend.login(detached_tenant, Credentials(username="alice", password="nope-nope"))
    with pytest.raises(InvalidCredentials) as unknown_user:
        backend.login(detached_tenant, Credentials(username="mallory", password="pw123456"))

    assert type(wrong_password.value) is type(unknown_user.value)
    assert str(wrong_password.value) == str(unknown_user.value)


def test_local_backend_records_latest_session(vault, sessions, repository, detached_tenant):
    backend = LocalIdentityBackend(vault, sessions, repository)
    backend.signup(detached_tenant, Credentials(username="alice", password="pw123456"))

    issued = backend.login(detached_tenant, Credentials(username="alice", password="pw123456"))

    stored = repository.get_account(detached_tenant.tenant_id, issued.account.account_id)
    assert stored.session_id == issued.session_id
    assert issued.account.username == "alice"


def test_session_tokens_are_stored_hashed(sessions, session_store):
    issued = sessions.issue(_account())

    assert session_store.get(issued.token) is None
    stored = session_store.get(hash_session_token(issued.token))
    assert stored.session_id == issued.session_id


def test_session_expiry_uses_clock(session_store):
    clock = Clock()
    issuer = SessionIssuer(session_store, ttl_seconds=60, clock=clock)
    issued = issuer.issue(_account())

    assert issuer.validate(issued.token).account_id == "account-1"
    clock.now += timedelta(seconds=61)
    with pytest.raises(SessionExpired):
        issuer.validate(issued.token)
    with pytest.raises(SessionNotFound):
        issuer.validate(issued.token)


def test_session_revoke_is_single_shot(sessions):
    issued = sessions.issue(_account())

    assert sessions.revoke(issued.token) is not None
    assert sessions.revoke(issued.token) is None
    with pytest.raises(SessionNotFound):
        sessions.validate(issued.token)


def test_concurrent_revoke_succeeds_once(sessions):
    issued = sessions.issue(_account())
    barrier = threading.Barrier(8)
    results: list[object] = []
    results_lock = threading.Lock()

    def revoke() -> None:
        barrier.wait(5)
        outcome = sessions.revoke(issued.token)
        with results_lock:
            results.append(outcome)

    workers = [threading.Thread(target=revoke) for _ in range(8)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join(5)

    assert len(results) == 8
    assert sum(outcome is not None for outcome in results) == 1


def test_revoke_tenant_only_touches_that_tenant(sessions):
    first = sessions.issue(_account("tenant-1", "a"))
    second = sessions.issue(_account("tenant-1", "b"))
    other = sessions.issue(_account("tenant-2", "c"))

    assert sessions.revoke_tenant("tenant-1") == 2
    for token in (first.token, second.token):
        with pytest.raises(SessionNotFound):
            sessions.validate(token)
    assert sessions.validate(other.token).tenant_id == "tenant-2"


@pytest.fixture()
def redis_client() -> fakeredis.FakeStrictRedis:
    client = fakeredis.FakeStrictRedis()
    client.flushall()
    return client


def test_redis_session_store_round_trip(redis_client):
    issuer = SessionIssuer(RedisSessionStore(redis_client, key_prefix="test"), ttl_seconds=300)
    issued = issuer.issue(_account())

    session = issuer.validate(issued.token)
    assert session.session_id == issued.session_id
    assert session.expires_at == issued.expires_at
    assert 0 < redis_client.ttl(f"test:session:{hash_session_token(issued.token)}") <= 300

    assert issuer.revoke(issued.token).session_id == issued.session_id
    assert issuer.revoke(issued.token) is None


def test_redis_session_store_revokes_by_account_and_tenant(redis_client):
    issuer = SessionIssuer(RedisSessionStore(redis_client, key_prefix="test"), ttl_seconds=300)
    a1 = issuer.issue(_account("tenant-1", "a"))
    a2 = issuer.issue(_account("tenant-1", "a"))
    b = issuer.issue(_account("tenant-1", "b"))
    c = issuer.issue(_account("tenant-2", "c"))

    assert issuer.revoke_account("tenant-1", "a") == 2
    for token in (a1.token, a2.token):
        with pytest.raises(SessionNotFound):
            issuer.validate(token)
    assert issuer.revoke_tenant("tenant-1") == 1
    with pytest.raises(SessionNotFound):
        issuer.validate(b.token)
    assert issuer.validate(c.token).account_id == "c"


def _adapter(handler) -> HttpIdentityProviderAdapter:
    return HttpIdentityProviderAdapter(timeout=1.0, transport=httpx.MockTransport(handler))


def test_http_adapter_posts_credentials_and_parses_identity():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"id": 42, "username": "alice", "email": "alice@example.com"})

    adapter = _adapter(handler)
    identity = adapter.authenticate(PROVIDER, Credentials(username="alice", password="pw123456"))
    adapter.close()

    assert identity.external_id == "42"
    assert identity.email == "alice@example.com"
    assert str(seen[0].url) == "https://idp.example.com/login"
    assert json.loads(seen[0].content) == {
        "client_id": "client-1",
        "username": "alice",
        "email": None,
        "password": "pw123456",
    }


@pytest.mark.parametrize(
    ("status_code", "error", "retryable"),
    [
        (401, InvalidCredentials, None),
        (404, InvalidCredentials, None),
        (409, AccountExists, None),
        (503, IdentityProviderError, True),
        (302, IdentityProviderError, False),
    ],
)
def test_http_adapter_maps_status_codes(status_code, error, retryable):
    adapter = _adapter(lambda request: httpx.Response(status_code))
    with pytest.raises(error) as excinfo:
        adapter.register(PROVIDER, Credentials(username="alice", password="pw123456"))
    if retryable is not None:
        assert excinfo.value.retryable is retryable


def test_http_adapter_reports_timeouts_as_retryable():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(IdentityProviderError) as excinfo:
        _adapter(handler).authenticate(PROVIDER, Credentials(username="alice", password="pw123456"))
    assert excinfo.value.retryable


def test_http_adapter_rejects_malformed_body():
    adapter = _adapter(lambda request: httpx.Response(200, json={"username": "alice"}))
    with pytest.raises(IdentityProviderError):
        adapter.authenticate(PROVIDER, Credentials(username="alice", password="pw123456"))


def test_delegate_links_accounts_by_external_id(delegate, identity_provider, repository, detached_tenant):
    detached_tenant.federated = PROVIDER
    identity_provider.add_user("ext-9", "alice", "pw123456", "alice@example.com")

    first = delegate.login(detached_tenant, Credentials(username="alice", password="pw123456"))
    second = delegate.login(detached_tenant, Credentials(username="alice", password="pw123456"))

    assert first.account.account_id == second.account.account_id
    assert first.account.federated
    stored = repository.find_account(detached_tenant.tenant_id, external_id="ext-9")
    assert stored.password_hash is None
    assert stored.session_id == second.session_id


def test_delegate_claims_account_created_before_federation(
    delegate, vault, identity_provider, repository, detached_tenant
):
    local = vault.create(detached_tenant, Credentials(username="alice", password="pw123456"))
    detached_tenant.federated = PROVIDER
    identity_provider.add_user("ext-9", "alice", "provider-pw", "alice@example.com")

    issued = delegate.login(detached_tenant, Credentials(username="alice", password="provider-pw"))

    assert issued.account.account_id == local.account_id
    stored = repository.get_account(detached_tenant.tenant_id, local.account_id)
    assert stored.external_id == "ext-9"
    assert stored.email == "alice@example.com"


def test_delegate_does_not_claim_accounts_linked_elsewhere(delegate, repository, detached_tenant):
    detached_tenant.federated = PROVIDER
    first = delegate.handle_event(
        detached_tenant, ProviderEvent(event_type="user.created", external_id="ext-1", username="erin")
    )
    second = delegate.handle_event(
        detached_tenant,
        ProviderEvent(event_type="user.created", external_id="ext-2", username="erin", email="erin@example.com"),
    )

    assert second.account_id != first.account_id
    assert second.username is None
    assert second.email == "erin@example.com"
    assert repository.find_account(detached_tenant.tenant_id, username="erin").external_id == "ext-1"


def test_delegate_signup_registers_with_provider(delegate, identity_provider, detached_tenant):
    detached_tenant.federated = PROVIDER

    issued = delegate.signup(detached_tenant, Credentials(username="dave", password="pw123456"))

    assert identity_provider.calls == ["signup"]
    assert issued.account.username == "dave"


def test_delegate_propagates_rejections(delegate, detached_tenant):
    detached_tenant.federated = PROVIDER
    with pytest.raises(InvalidCredentials):
        delegate.login(detached_tenant, Credentials(username="ghost", password="pw123456"))


def test_delegate_applies_provider_events(delegate, sessions, repository, detached_tenant):
    detached_tenant.federated = PROVIDER
    created = delegate.handle_event(
        detached_tenant, ProviderEvent(event_type="user.created", external_id="ext-1", username="erin")
    )
    updated = delegate.handle_event(
        detached_tenant,
        ProviderEvent(event_type="user.updated", external_id="ext-1", username="erin2", email="E@Example.com"),
    )
    assert created.account_id == updated.account_id
    assert repository.get_account(detached_tenant.tenant_id, created.account_id).email == "e@example.com"

    issued = sessions.issue(updated)
    deleted = delegate.handle_event(detached_tenant, ProviderEvent(event_type="user.deleted", external_id="ext-1"))

    assert deleted.account_id == created.account_id
    assert repository.get_account(detached_tenant.tenant_id, created.account_id) is None
    with pytest.raises(SessionNotFound):
        sessions.validate(issued.token)
    assert delegate.handle_event(
        detached_tenant, ProviderEvent(event_type="user.deleted", external_id="ext-1")
    ) is None
    with pytest.raises(InvalidInput):
        delegate.handle_event(detached_tenant, ProviderEvent(event_type="user.renamed", external_id="ext-1"))
