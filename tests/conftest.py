"""
tests/conftest.py -- Shared test fixtures for Gatehouse tests.

This module provides:
  - FakeChallengeVerifier / FakeIdentityProvider / FakeOAuthRegistry: stand-ins
    for Cloudflare Turnstile and the OAuth providers, so no test touches the network
  - make_store(): isolated in-memory account database
  - make_account(): insert an account with a bcrypt-hashed password
  - make_login_service(): the full login core wired around a store
  - api_client: TestClient with a super-admin JWT for API integration tests

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

The DEBUG env var must be set before any auth module import so get_settings()
auto-generates SECRET_KEY and falls back to the Turnstile test secret instead
of raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager

# CRITICAL: Set env before any auth/core import; get_settings() is cached.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.responses import RedirectResponse
from fastapi.testclient import TestClient

from api.main import app, wire_state
from auth.challenge import ChallengeGate
from auth.credentials import CredentialVerifier
from auth.federation import FederatedLoginCoordinator
from auth.flow import LoginService
from auth.models import Account, AccountStatus, FederatedIdentity, Role
from auth.sessions import SessionIssuer
from auth.store import AccountStore
from auth.tokens import create_session_token, hash_password
from core.config import get_settings

PASSING_RESPONSE = "pass"

# ---------------------------------------------------------------------------
# Fakes for the external services
# ---------------------------------------------------------------------------


class FakeChallengeVerifier:
    """Accepts exactly the widget response "pass". Records every call."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []

    def verify_challenge_response(self, token: str, response: str) -> bool:
        self.calls.append((token, response))
        return response == PASSING_RESPONSE


class FakeIdentityProvider:
    """Maps provider_token -> FederatedIdentity. Unknown tokens fail like a provider would.

    Accepts either a plain key or an auth.oauth.ProviderToken whose token dict
    carries {"code": key}.
    """

    def __init__(self, identities: dict[str, FederatedIdentity] | None = None) -> None:
        self.identities = dict(identities or {})

    async def exchange_token(self, provider_token) -> FederatedIdentity:
        key = provider_token
        if hasattr(provider_token, "token"):
            key = provider_token.token.get("code")
        try:
            return self.identities[key]
        except KeyError:
            raise ValueError(f"provider rejected token {key!r}") from None


class FakeOAuthClient:
    async def authorize_redirect(self, request, redirect_uri):
        return RedirectResponse(f"{redirect_uri}?code=granted", status_code=302)

    async def authorize_access_token(self, request):
        return {"code": request.query_params.get("code"), "token_type": "bearer"}


class FakeOAuthRegistry:
    """Same create_client() contract as authlib's OAuth: None for unknown names."""

    def __init__(self, providers: tuple[str, ...] = ("github",)) -> None:
        self._providers = providers

    def create_client(self, name: str):
        return FakeOAuthClient() if name in self._providers else None


def github_identity(email: str, subject: str, name: str | None = None) -> FederatedIdentity:
    return FederatedIdentity(
        provider="github",
        provider_subject_id=subject,
        email=email,
        display_name=name,
        photo_ref=f"https://avatars.example.com/{subject}.png",
    )


# ---------------------------------------------------------------------------
# Store and service helpers
# ---------------------------------------------------------------------------


def make_store(name: str = "unit") -> AccountStore:
    """Isolated named shared-memory database. The uuid keeps tests from sharing state."""
    return AccountStore(db_url=f"sqlite:///file:test_{name}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true")


def make_account(
    store: AccountStore,
    username: str,
    password: str | None = "Correct#Horse1",
    role: Role = Role.USER,
    status: AccountStatus = AccountStatus.ACTIVE,
    email: str | None = None,
) -> Account:
    account = Account(
        username=username,
        role=role,
        status=status,
        hashed_password=hash_password(password) if password else None,
        email=email,
    )
    account.id = store.create_account(account)
    return store.get_by_id(account.id)


def make_login_service(
    store: AccountStore,
    verifier: FakeChallengeVerifier | None = None,
    provider: FakeIdentityProvider | None = None,
    ttl_seconds: int = 3600,
    **settings_overrides,
) -> LoginService:
    settings = get_settings().model_copy(update=settings_overrides)
    return LoginService(
        gate=ChallengeGate(verifier or FakeChallengeVerifier(), ttl_seconds=300),
        credentials=CredentialVerifier(store),
        federation=FederatedLoginCoordinator(provider or FakeIdentityProvider(), store),
        issuer=SessionIssuer(store, ttl_seconds=ttl_seconds),
        store=store,
        settings=settings,
    )


@pytest.fixture
def store() -> Generator[AccountStore, None, None]:
    s = make_store()
    yield s
    s.close()


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------


def _patch_lifespan(store: AccountStore, provider: FakeIdentityProvider):
    """Return an async context manager that replaces the real lifespan.

    Wires the test store and fakes into app.state through the same
    wire_state() the real lifespan uses.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        wire_state(app, store, FakeChallengeVerifier(), provider, FakeOAuthRegistry())
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def identity_provider() -> FakeIdentityProvider:
    return FakeIdentityProvider()


@pytest.fixture(scope="module")
def api_client(identity_provider) -> Generator[tuple[TestClient, str, int], None, None]:
    """Yield (client, token, account_id) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so
    tests hit real route handlers but use an isolated in-memory store.
    The super admin is created and given a live session before the client
    starts; its JWT goes in Authorization headers.
    """
    store = make_store("api")
    admin = make_account(store, "testadmin", role=Role.SUPER_ADMIN)
    session = SessionIssuer(store, ttl_seconds=3600).issue(admin)
    token = create_session_token(session, admin)

    app.router.lifespan_context = _patch_lifespan(store, identity_provider)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, token, admin.id

    store.close()
