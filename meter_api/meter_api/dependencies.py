"""FastAPI dependency injection for settings, database sessions, and gateway services."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, Header
from meter_core.state.database import get_engine
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from meter_api.config import APISettings, load_api_settings
from meter_api.services.auth_service import AuthGate, SupabaseIdentityProvider, UserIdentity
from meter_api.services.billing_service import BillingReconciler
from meter_api.services.llm_client import UpstreamLLMClient
from meter_api.services.proxy_service import UsageProxy
from meter_api.services.quota_service import QuotaLedger
from meter_api.services.usage_recorder import UsageRecorder

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: APISettings | None = None


def get_settings() -> APISettings:
    """Return the cached :class:`APISettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_api_settings()
    return _settings_cache


SettingsDep = Annotated[APISettings, Depends(get_settings)]

# ---------------------------------------------------------------------------
# Database session
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: APISettings) -> AsyncEngine:
    """Create and cache the global async engine."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = get_engine(settings.database_url)
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the global async session factory.

    The ledger, recorder, and reconciler open their own short-lived
    sessions from this factory so each commits independently.
    """
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _session_factory


SessionFactoryDep = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` for read-mostly endpoints.

    The session commits on clean exit and rolls back on exception.
    """
    session = get_session_factory()()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


SessionDep = Annotated[AsyncSession, Depends(get_db_session)]

# ---------------------------------------------------------------------------
# Upstream LLM client
# ---------------------------------------------------------------------------

_upstream_client: UpstreamLLMClient | None = None


def init_upstream_client(settings: APISettings) -> UpstreamLLMClient:
    """Create and cache the global :class:`UpstreamLLMClient`."""
    global _upstream_client  # noqa: PLW0603
    _upstream_client = UpstreamLLMClient(
        base_url=settings.upstream_url,
        api_key=settings.upstream_api_key.get_secret_value(),
        timeout=settings.upstream_timeout,
    )
    return _upstream_client


async def dispose_upstream_client() -> None:
    """Close the upstream client's underlying HTTP pool."""
    global _upstream_client  # noqa: PLW0603
    if _upstream_client is not None:
        await _upstream_client.close()
        _upstream_client = None


def get_upstream_client() -> UpstreamLLMClient:
    """Return the cached :class:`UpstreamLLMClient` singleton."""
    if _upstream_client is None:
        raise RuntimeError(
            "Upstream client has not been initialised. "
            "Ensure init_upstream_client() is called during application startup."
        )
    return _upstream_client


UpstreamClientDep = Annotated[UpstreamLLMClient, Depends(get_upstream_client)]

# ---------------------------------------------------------------------------
# Identity provider
# ---------------------------------------------------------------------------

_identity_provider: SupabaseIdentityProvider | None = None


def init_identity_provider(settings: APISettings) -> SupabaseIdentityProvider:
    """Create and cache the global :class:`SupabaseIdentityProvider`."""
    global _identity_provider  # noqa: PLW0603
    _identity_provider = SupabaseIdentityProvider(
        base_url=settings.identity_url,
        api_key=settings.identity_api_key.get_secret_value(),
        timeout=settings.identity_timeout,
    )
    return _identity_provider


async def dispose_identity_provider() -> None:
    """Close the identity provider's underlying HTTP pool."""
    global _identity_provider  # noqa: PLW0603
    if _identity_provider is not None:
        await _identity_provider.close()
        _identity_provider = None


def get_auth_gate() -> AuthGate:
    """Return an :class:`AuthGate` over the cached identity provider."""
    if _identity_provider is None:
        raise RuntimeError(
            "Identity provider has not been initialised. "
            "Ensure init_identity_provider() is called during application startup."
        )
    return AuthGate(_identity_provider)


AuthGateDep = Annotated[AuthGate, Depends(get_auth_gate)]

# ---------------------------------------------------------------------------
# Gateway services (cheap to construct; built per request)
# ---------------------------------------------------------------------------


def get_quota_ledger(settings: SettingsDep, session_factory: SessionFactoryDep) -> QuotaLedger:
    return QuotaLedger(session_factory, overdraft_policy=settings.overdraft_policy)


QuotaLedgerDep = Annotated[QuotaLedger, Depends(get_quota_ledger)]


def get_usage_recorder(session_factory: SessionFactoryDep) -> UsageRecorder:
    return UsageRecorder(session_factory)


UsageRecorderDep = Annotated[UsageRecorder, Depends(get_usage_recorder)]


def get_usage_proxy(
    settings: SettingsDep,
    auth_gate: AuthGateDep,
    ledger: QuotaLedgerDep,
    upstream: UpstreamClientDep,
    recorder: UsageRecorderDep,
) -> UsageProxy:
    """Assemble the :class:`UsageProxy` for one request."""
    return UsageProxy(auth_gate, ledger, upstream, recorder, settings)


UsageProxyDep = Annotated[UsageProxy, Depends(get_usage_proxy)]


def get_billing_reconciler(settings: SettingsDep, session_factory: SessionFactoryDep) -> BillingReconciler:
    return BillingReconciler(session_factory, settings)


BillingReconcilerDep = Annotated[BillingReconciler, Depends(get_billing_reconciler)]

# ---------------------------------------------------------------------------
# Caller identity
# ---------------------------------------------------------------------------


async def get_current_user(
    auth_gate: AuthGateDep,
    authorization: Annotated[str | None, Header()] = None,
) -> UserIdentity:
    """Resolve the ``Authorization`` header; raises ``Unauthenticated`` on failure."""
    return await auth_gate.resolve_header(authorization)


CurrentUserDep = Annotated[UserIdentity, Depends(get_current_user)]
