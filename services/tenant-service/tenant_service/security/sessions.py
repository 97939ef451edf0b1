"""Session issuance and the in-memory session store."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Protocol

from ..domain.account import IssuedSession, ScopedAccount, Session
from ..errors import SessionExpired, SessionNotFound
from .tokens import generate_session_token, hash_session_token

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionStore(Protocol):
    def save(self, session: Session) -> None: ...

    def get(self, token_hash: str) -> Session | None: ...

    def pop(self, token_hash: str) -> Session | None: ...

    def delete_for_account(self, tenant_id: str, account_id: str) -> int: ...

    def delete_for_tenant(self, tenant_id: str) -> int: ...


class InMemorySessionStore:
    """Process-local session store; ``pop`` is an atomic check-and-remove."""

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}
        self._lock = Lock()

    def save(self, session: Session) -> None:
        with self._lock:
            self._sessions[session.token_hash] = session

    def get(self, token_hash: str) -> Session | None:
        with self._lock:
            return self._sessions.get(token_hash)

    def pop(self, token_hash: str) -> Session | None:
        with self._lock:
            return self._sessions.pop(token_hash, None)

    def delete_for_account(self, tenant_id: str, account_id: str) -> int:
        return self._delete_where(lambda s: s.tenant_id == tenant_id and s.account_id == account_id)

    def delete_for_tenant(self, tenant_id: str) -> int:
        return self._delete_where(lambda s: s.tenant_id == tenant_id)

    def _delete_where(self, predicate: Callable[[Session], bool]) -> int:
        with self._lock:
            doomed = [key for key, session in self._sessions.items() if predicate(session)]
            for key in doomed:
                del self._sessions[key]
        return len(doomed)


class SessionIssuer:
    """Issues, validates, and revokes opaque tokens bound to (tenant, scoped account).

    Only the SHA-256 digest of a token is stored, so a leaked store cannot be
    replayed as credentials.
    """

    def __init__(
        self,
        store: SessionStore,
        *,
        ttl_seconds: int = 86400,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock

    def issue(self, account: ScopedAccount) -> IssuedSession:
        token, token_hash = generate_session_token()
        now = self._clock()
        session = Session(
            session_id=str(uuid.uuid4()),
            token_hash=token_hash,
            tenant_id=account.tenant_id,
            account_id=account.account_id,
            issued_at=now,
            expires_at=now + self._ttl,
        )
        self._store.save(session)
        logger.info("issued session %s for account %s", session.session_id, account.account_id)
        return IssuedSession(
            token=token,
            session_id=session.session_id,
            expires_at=session.expires_at,
            account=account.projection(),
        )

    def validate(self, token: str) -> Session:
        token_hash = hash_session_token(token)
        session = self._store.get(token_hash)
        if session is None:
            raise SessionNotFound("session not found")
        if session.expires_at <= self._clock():
            self._store.pop(token_hash)
            raise SessionExpired("session expired")
        return session

    def revoke(self, token: str) -> Session | None:
        """Invalidate ``token``; returns the removed session, or ``None`` if it was already gone."""
        session = self._store.pop(hash_session_token(token))
        if session is not None:
            logger.info("revoked session %s", session.session_id)
        return session

    def revoke_account(self, tenant_id: str, account_id: str) -> int:
        return self._store.delete_for_account(tenant_id, account_id)

    def revoke_tenant(self, tenant_id: str) -> int:
        return self._store.delete_for_tenant(tenant_id)
