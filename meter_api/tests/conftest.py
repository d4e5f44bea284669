"""Shared fixtures for meter API tests.

Provides test settings, a file-backed SQLite store, a fake identity
provider, a scripted upstream transport, and an async httpx client bound
to the FastAPI app with all external dependencies overridden.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from meter_core.models.account import Tier
from meter_core.state.repository import AccountRepository
from meter_core.state.sqlite_adapter import create_local_tables, get_local_engine
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from meter_api.config import APISettings
from meter_api.dependencies import (
    get_auth_gate,
    get_db_session,
    get_session_factory,
    get_settings,
    get_upstream_client,
)
from meter_api.main import create_app
from meter_api.services.auth_service import AuthGate, UserIdentity
from meter_api.services.llm_client import UpstreamLLMClient

TEST_TOKEN = "token-user-1"
AUTH_HEADERS: dict[str, str] = {"Authorization": f"Bearer {TEST_TOKEN}"}

UPSTREAM_URL = "https://upstream.test/api/v1"


# ---------------------------------------------------------------------------
# Settings fixture
# ---------------------------------------------------------------------------


@pytest.fixture()
def test_settings() -> APISettings:
    """Return a settings object suitable for testing."""
    return APISettings(
        debug=True,
        platform_env="dev",
        database_url="sqlite+aiosqlite:///:memory:",
        upstream_url=UPSTREAM_URL,
        upstream_api_key="sk-upstream-test",
        upstream_timeout=5.0,
        identity_url="http://identity.test",
        stripe_webhook_secret="whsec_test_secret",
        cors_origins=["*"],
    )


# ---------------------------------------------------------------------------
# Account store (real SQLite, one file per test)
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture()
async def session_factory(tmp_path: Path) -> async_sessionmaker[AsyncSession]:
    """Yield a session factory bound to a fresh on-disk SQLite database."""
    engine = get_local_engine(tmp_path / "state.db")
    await create_local_tables(engine)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


async def seed_account(
    factory: async_sessionmaker[AsyncSession],
    user_id: str = "user-1",
    *,
    email: str | None = "user1@example.com",
    tokens: int = 10_000,
    tier: Tier = Tier.FREE,
    subscription_id: str | None = None,
) -> None:
    """Insert a profile row and commit."""
    async with factory() as session:
        repo = AccountRepository(session)
        await repo.create(user_id, email=email, tier=tier, tokens_remaining=tokens)
        if subscription_id is not None:
            await repo.update(user_id, billing_subscription_id=subscription_id)
        await session.commit()


async def read_balance(factory: async_sessionmaker[AsyncSession], user_id: str = "user-1") -> int:
    """Return the persisted balance for *user_id*."""
    async with factory() as session:
        account = await AccountRepository(session).get(user_id)
    assert account is not None
    return account.tokens_remaining


# ---------------------------------------------------------------------------
# Identity provider
# ---------------------------------------------------------------------------


class FakeIdentityProvider:
    """In-memory token -> identity map standing in for the identity service."""

    def __init__(self, users: dict[str, UserIdentity] | None = None) -> None:
        self.users = users if users is not None else {TEST_TOKEN: UserIdentity(user_id="user-1")}
        self.calls: list[str] = []

    async def get_user(self, token: str) -> UserIdentity | None:
        self.calls.append(token)
        return self.users.get(token)


@pytest.fixture()
def identity_provider() -> FakeIdentityProvider:
    return FakeIdentityProvider()


# ---------------------------------------------------------------------------
# Upstream LLM
# ---------------------------------------------------------------------------


def completion_body(total_tokens: int | None = 812, content: str = "Hello!") -> dict[str, Any]:
    """Return an OpenAI-style chat completion body."""
    body: dict[str, Any] = {
        "id": "gen-abc123",
        "object": "chat.completion",
        "model": "anthropic/claude-3.5-sonnet",
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": "stop",
            }
        ],
    }
    if total_tokens is not None:
        body["usage"] = {
            "prompt_tokens": total_tokens // 2,
            "completion_tokens": total_tokens - total_tokens // 2,
            "total_tokens": total_tokens,
        }
    return body


class ScriptedUpstream:
    """httpx mock handler that records requests and replays a scripted reply."""

    def __init__(self) -> None:
        self.requests: list[dict[str, Any]] = []
        self.headers: list[httpx.Headers] = []
        self.handler: Callable[[httpx.Request], httpx.Response] = lambda request: httpx.Response(
            200, json=completion_body()
        )

    def reply(self, status_code: int = 200, **kwargs: Any) -> None:
        self.handler = lambda request: httpx.Response(status_code, **kwargs)

    def fail(self, exc: Exception) -> None:
        def _raise(request: httpx.Request) -> httpx.Response:
            raise exc

        self.handler = _raise

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(json.loads(request.content))
        self.headers.append(request.headers)
        return self.handler(request)

    @property
    def call_count(self) -> int:
        return len(self.requests)


@pytest.fixture()
def upstream() -> ScriptedUpstream:
    return ScriptedUpstream()


@pytest.fixture()
def upstream_client(upstream: ScriptedUpstream) -> UpstreamLLMClient:
    return UpstreamLLMClient(
        base_url=UPSTREAM_URL,
        api_key="sk-upstream-test",
        timeout=5.0,
        transport=httpx.MockTransport(upstream),
    )


# ---------------------------------------------------------------------------
# FastAPI app and client (async httpx)
# ---------------------------------------------------------------------------


@pytest.fixture()
def app(
    test_settings: APISettings,
    session_factory: async_sessionmaker[AsyncSession],
    identity_provider: FakeIdentityProvider,
    upstream_client: UpstreamLLMClient,
):
    """Create a FastAPI app with dependency overrides for testing.

    The account store is a real SQLite file; the identity provider and the
    upstream are in-process fakes, so no network access is required.
    """
    application = create_app()

    async def _override_session():
        async with session_factory() as session:
            yield session
            await session.commit()

    application.dependency_overrides[get_settings] = lambda: test_settings
    application.dependency_overrides[get_session_factory] = lambda: session_factory
    application.dependency_overrides[get_db_session] = _override_session
    application.dependency_overrides[get_auth_gate] = lambda: AuthGate(identity_provider)
    application.dependency_overrides[get_upstream_client] = lambda: upstream_client
    return application


@pytest_asyncio.fixture()
async def client(app) -> AsyncClient:
    """Yield an async httpx client bound to the test app.

    Uses ASGITransport so requests go directly to the ASGI app without
    opening a real TCP socket.  Requests carry no credentials by default.
    """
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture()
def seed(session_factory: async_sessionmaker[AsyncSession]) -> Callable[..., Any]:
    """Return ``seed(user_id, **fields)`` bound to the test store."""

    async def _seed(user_id: str = "user-1", **kwargs: Any) -> None:
        await seed_account(session_factory, user_id, **kwargs)

    return _seed


@pytest.fixture()
def balance(session_factory: async_sessionmaker[AsyncSession]) -> Callable[..., Any]:
    """Return ``balance(user_id)`` reading the persisted balance."""

    async def _balance(user_id: str = "user-1") -> int:
        return await read_balance(session_factory, user_id)

    return _balance
