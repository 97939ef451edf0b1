"""Redis-backed session store shared by every service instance."""

from __future__ import annotations

import json
import math
from datetime import datetime, timezone

from redis import Redis

from ..domain.account import Session


class RedisSessionStore:
    """Sessions as JSON strings expiring with the session, plus per-account index sets.

    ``pop`` relies on ``GETDEL`` so two concurrent revocations of the same
    token can never both observe it.
    """

    def __init__(self, client: Redis, *, key_prefix: str = "tenant-sessions") -> None:
        self._client = client
        self._prefix = key_prefix

    def save(self, session: Session) -> None:
        ttl = max(1, math.ceil((session.expires_at - datetime.now(timezone.utc)).total_seconds()))
        index_key = self._index_key(session.tenant_id, session.account_id)
        pipe = self._client.pipeline()
        pipe.set(self._session_key(session.token_hash), self._encode(session), ex=ttl)
        pipe.sadd(index_key, session.token_hash)
        pipe.expire(index_key, ttl)
        pipe.execute()

    def get(self, token_hash: str) -> Session | None:
        raw = self._client.get(self._session_key(token_hash))
        return self._decode(raw) if raw else None

    def pop(self, token_hash: str) -> Session | None:
        raw = self._client.getdel(self._session_key(token_hash))
        if not raw:
            return None
        session = self._decode(raw)
        self._client.srem(self._index_key(session.tenant_id, session.account_id), token_hash)
        return session

    def delete_for_account(self, tenant_id: str, account_id: str) -> int:
        return self._delete_index(self._index_key(tenant_id, account_id))

    def delete_for_tenant(self, tenant_id: str) -> int:
        removed = 0
        for index_key in self._client.scan_iter(match=f"{self._prefix}:account:{tenant_id}:*"):
            removed += self._delete_index(index_key)
        return removed

    def _delete_index(self, index_key: str | bytes) -> int:
        hashes = self._client.smembers(index_key)
        keys = [self._session_key(_text(value)) for value in hashes]
        removed = self._client.delete(*keys) if keys else 0
        self._client.delete(index_key)
        return int(removed)

    def _session_key(self, token_hash: str) -> str:
        return f"{self._prefix}:session:{token_hash}"

    def _index_key(self, tenant_id: str, account_id: str) -> str:
        return f"{self._prefix}:account:{tenant_id}:{account_id}"

    @staticmethod
    def _encode(session: Session) -> str:
        return json.dumps(
            {
                "session_id": session.session_id,
                "token_hash": session.token_hash,
                "tenant_id": session.tenant_id,
                "account_id": session.account_id,
                "issued_at": session.issued_at.isoformat(),
                "expires_at": session.expires_at.isoformat(),
            }
        )

    @staticmethod
    def _decode(raw: str | bytes) -> Session:
        data = json.loads(_text(raw))
        return Session(
            session_id=data["session_id"],
            token_hash=data["token_hash"],
            tenant_id=data["tenant_id"],
            account_id=data["account_id"],
            issued_at=datetime.fromisoformat(data["issued_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
        )


def _text(value: str | bytes) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else value
