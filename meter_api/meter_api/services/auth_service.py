"""Bearer credential resolution against the identity provider.

The gateway does not issue or sign tokens itself; it forwards the caller's
access token to a GoTrue-compatible identity service (``GET /auth/v1/user``)
and trusts the user id that service returns.
"""

from __future__ import annotations

import logging
from typing import Protocol

import httpx
from meter_core.errors import Unauthenticated
from pydantic import BaseModel, ConfigDict

logger = logging.getLogger(__name__)


class UserIdentity(BaseModel):
    """A resolved caller identity."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    email: str | None = None


class IdentityProvider(Protocol):
    """Protocol for services that validate access tokens."""

    async def get_user(self, token: str) -> UserIdentity | None:
        """Return the identity behind *token*, or ``None`` if rejected."""
        ...


def extract_bearer(header: str | None) -> str:
    """Return the token from an ``Authorization: Bearer <token>`` header.

    Raises
    ------
    Unauthenticated
        If the header is missing, uses another scheme, or carries no token.
    """
    if not header:
        raise Unauthenticated("No authorization header")
    parts = header.split(None, 1)
    if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1].strip():
        raise Unauthenticated("Authorization header must use Bearer scheme")
    return parts[1].strip()


class SupabaseIdentityProvider:
    """Validate access tokens with a GoTrue ``/auth/v1/user`` endpoint.

    Parameters
    ----------
    base_url:
        Root URL of the identity service (e.g. ``https://xyz.supabase.co``).
    api_key:
        Project API key sent as the ``apikey`` header.
    timeout:
        Per-request timeout in seconds.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 5.0,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers: dict[str, str] = {}
        if api_key:
            headers["apikey"] = api_key
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout),
            headers=headers,
            transport=transport,
        )

    async def get_user(self, token: str) -> UserIdentity | None:
        try:
            response = await self._client.get(
                "/auth/v1/user",
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.RequestError as exc:
            # Fail closed: an unreachable identity provider authenticates nobody.
            logger.warning("Identity provider request failed: %s", exc)
            return None

        if response.status_code != 200:
            if response.status_code >= 500:
                logger.warning("Identity provider returned %d", response.status_code)
            return None

        try:
            body = response.json()
        except ValueError:
            logger.warning("Identity provider returned a non-JSON body")
            return None

        user_id = body.get("id") if isinstance(body, dict) else None
        if not user_id:
            return None
        return UserIdentity(user_id=str(user_id), email=body.get("email"))

    async def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        await self._client.aclose()


class AuthGate:
    """Resolve a bearer credential to a stable user identity.

    Stateless and side-effect free; every failure surfaces as
    :class:`Unauthenticated`.
    """

    def __init__(self, provider: IdentityProvider) -> None:
        self._provider = provider

    async def resolve(self, credential: str) -> UserIdentity:
        if not credential or not credential.strip():
            raise Unauthenticated("No authorization header")
        identity = await self._provider.get_user(credential.strip())
        if identity is None:
            raise Unauthenticated("Invalid token")
        return identity

    async def resolve_header(self, header: str | None) -> UserIdentity:
        """Resolve a raw ``Authorization`` header value."""
        return await self.resolve(extract_bearer(header))
