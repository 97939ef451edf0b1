"""Adapters that talk to a tenant's external identity provider."""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from ..domain.contracts import Credentials, ExternalIdentity
from ..domain.tenant import FederatedIdentityConfig
from ..errors import AccountExists, IdentityProviderError, InvalidCredentials

logger = logging.getLogger(__name__)


class IdentityProviderAdapter(Protocol):
    def authenticate(self, config: FederatedIdentityConfig, credentials: Credentials) -> ExternalIdentity: ...

    def register(self, config: FederatedIdentityConfig, credentials: Credentials) -> ExternalIdentity: ...


class HttpIdentityProviderAdapter:
    """JSON-over-HTTP provider client.

    Posts ``{client_id, username, email, password}`` to ``{endpoint}/login``
    or ``{endpoint}/signup`` and expects ``{"id", "username", "email"}`` back.
    Every request carries a timeout.
    """

    def __init__(self, *, timeout: float = 10.0, transport: httpx.BaseTransport | None = None) -> None:
        self._client = httpx.Client(timeout=timeout, transport=transport)

    def close(self) -> None:
        self._client.close()

    def authenticate(self, config: FederatedIdentityConfig, credentials: Credentials) -> ExternalIdentity:
        return self._post(config, "login", credentials)

    def register(self, config: FederatedIdentityConfig, credentials: Credentials) -> ExternalIdentity:
        return self._post(config, "signup", credentials)

    def _post(self, config: FederatedIdentityConfig, action: str, credentials: Credentials) -> ExternalIdentity:
        url = f"{config.endpoint.rstrip('/')}/{action}"
        payload = {
            "client_id": config.client_id,
            "username": credentials.username,
            "email": credentials.email,
            "password": credentials.password,
        }
        try:
            response = self._client.post(url, json=payload)
        except httpx.TimeoutException as exc:
            raise IdentityProviderError(
                "identity provider timed out", retryable=True, details={"provider": config.provider}
            ) from exc
        except httpx.TransportError as exc:
            raise IdentityProviderError(
                "identity provider unreachable", retryable=True, details={"provider": config.provider}
            ) from exc

        if response.status_code in (400, 401, 403, 404):
            raise InvalidCredentials()
        if response.status_code == 409:
            raise AccountExists("account already exists")
        if response.status_code >= 500:
            logger.warning("identity provider %s answered %s", config.provider, response.status_code)
            raise IdentityProviderError(
                "identity provider error",
                retryable=True,
                details={"provider": config.provider, "status_code": response.status_code},
            )
        if response.status_code >= 300:
            raise IdentityProviderError(
                "unexpected identity provider response",
                details={"provider": config.provider, "status_code": response.status_code},
            )
        return _parse_identity(config, response)


def _parse_identity(config: FederatedIdentityConfig, response: httpx.Response) -> ExternalIdentity:
    try:
        body: Any = response.json()
        external_id = str(body["id"])
    except (ValueError, KeyError, TypeError) as exc:
        raise IdentityProviderError(
            "malformed identity provider response", details={"provider": config.provider}
        ) from exc
    if not external_id:
        raise IdentityProviderError("identity provider returned an empty id", details={"provider": config.provider})
    return ExternalIdentity(external_id=external_id, username=body.get("username"), email=body.get("email"))
