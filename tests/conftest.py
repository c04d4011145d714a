"""
tests/conftest.py -- Shared test fixtures for the identity service tests.

This module provides:
  - FakeProvider: a ProviderClient that answers from canned profiles instead
    of calling a real OAuth provider
  - _make_test_store(): creates an isolated in-memory DB per test module
  - _patch_lifespan(): wires test collaborators into app.state, bypassing real startup
  - api_client: module-scoped TestClient plus an access token for a seeded user
  - client: the same TestClient with an empty cookie jar for each test
  - signup_user: helper that creates a local account through the API

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker
thread. The named URI format (file:name?mode=memory&cache=shared&uri=true)
shares one in-memory instance across all connections in the same process.

Environment variables must be set before any api/auth/core import:
  DEBUG=true          -- get_settings() auto-generates SECRET_KEY.
  ALLOWED_HOSTS       -- TestClient sends Host: testserver.
  BCRYPT_ROUNDS=4     -- keeps password hashing fast.
  *_RATE_LIMIT        -- the limiter's counters are shared by every test module.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager

# CRITICAL: Set env before any auth/core import so get_settings() picks it up.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("SIGNUP_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.errors import UpstreamError
from auth.issuance import TokenResponder
from auth.models import Identity, ProviderProfile, User
from auth.oauth import OAuthFlow
from auth.providers import ProviderClient
from auth.reconcile import AccountReconciler
from auth.state import StateStore
from auth.store import UserStore
from auth.tokens import TokenIssuer, hash_password

TEST_SECRET = "test-secret-key-that-is-at-least-32-characters"
MOBILE_TEMPLATE = "taskapp://oauth?access={access_token}&refresh={refresh_token}&type={token_type}&exp={expires_at}"


# ---------------------------------------------------------------------------
# Fake OAuth provider
# ---------------------------------------------------------------------------


class FakeProvider(ProviderClient):
    """ProviderClient double with no network I/O.

    The authorization code doubles as the provider access token. Each code
    maps to a canned ProviderProfile registered with add_code(); an unknown
    code fails the exchange exactly like a provider rejecting it.
    """

    def __init__(self, name: str, label: str) -> None:
        super().__init__("fake-client-id", "fake-client-secret", f"http://testserver/api/v1/auth/{name}/callback")
        self.name = name
        self.label = label
        self.authorize_url = f"https://{name}.example.test/authorize"
        self.profiles: dict[str, ProviderProfile] = {}
        self.exchanged: list[str] = []

    def add_code(self, code: str, profile: ProviderProfile) -> str:
        self.profiles[code] = profile
        return code

    def exchange_code(self, code: str) -> dict:
        self.exchanged.append(code)
        if code not in self.profiles:
            raise UpstreamError("Failed to exchange token", code="token_exchange_failed", debug=f"unknown code {code}")
        return {"access_token": code, "token_type": "bearer"}

    def load_profile(self, token: dict) -> ProviderProfile:
        return self.profiles[token["access_token"]]


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _make_test_store(db_suffix: str) -> UserStore:
    """Create an isolated named shared-memory SQLite store.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   don't share state.
    """
    return UserStore(db_url=f"sqlite:///file:test_identity_{db_suffix}?mode=memory&cache=shared&uri=true")


def _patch_lifespan(user_store: UserStore, issuer: TokenIssuer, providers: dict[str, ProviderClient]):
    """Return an async context manager that replaces the real lifespan.

    Builds the same collaborator graph as api.main.lifespan but from the test
    store, a fixed-secret issuer, and fake providers.

    The sweep_task is a long-sleeping coroutine (a real asyncio.Task is
    required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = user_store
        app.state.token_issuer = issuer
        app.state.state_store = StateStore(ttl_seconds=600)
        app.state.token_responder = TokenResponder(issuer, mobile_template=MOBILE_TEMPLATE)
        app.state.oauth_flow = OAuthFlow(
            providers=providers,
            state_store=app.state.state_store,
            reconciler=AccountReconciler(user_store),
            responder=app.state.token_responder,
        )
        app.state.sweep_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.sweep_task.cancel()

    return test_lifespan


# ---------------------------------------------------------------------------
# Module-scoped fixtures -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, str, str], None, None]:
    """Yield (client, token, user_id) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so tests
    hit real route handlers but use an isolated in-memory store. A local user
    is created before the client starts; token is an access token for it.

    follow_redirects=False: the OAuth routes answer with 302s whose Location
    headers are what the tests assert on.
    """
    suffix = request.module.__name__.rsplit(".", 1)[-1]
    user_store = _make_test_store(suffix)
    issuer = TokenIssuer(TEST_SECRET, access_ttl_seconds=3600, refresh_ttl_seconds=86400)
    providers = {
        "google": FakeProvider("google", "Google"),
        "github": FakeProvider("github", "GitHub"),
    }

    owner = user_store.create_user_with_password(
        User(first_name="Test", last_name="Owner", email="owner@example.com"),
        hash_password("ownerpass123", rounds=4),
    )
    token = issuer.mint(Identity.for_user(owner, provider="local")).access_token

    app.router.lifespan_context = _patch_lifespan(user_store, issuer, providers)

    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield client, token, owner.id

    user_store.close()


@pytest.fixture
def client(api_client) -> TestClient:
    """The module's TestClient with an empty cookie jar.

    Responses that issue tokens also set cookies, and the jar would otherwise
    authenticate every later request in the module.
    """
    test_client, _token, _uid = api_client
    test_client.cookies.clear()
    return test_client


@pytest.fixture
def providers(api_client) -> dict[str, FakeProvider]:
    return api_client[0].app.state.oauth_flow.providers


@pytest.fixture
def signup_user(client) -> Callable[..., dict]:
    """Return a helper that signs up a local account and returns the token body."""

    def _signup(email: str, password: str = "correct-horse", firstname: str = "Ada", lastname: str = "Lovelace") -> dict:
        resp = client.post(
            "/api/v1/auth/signup",
            json={"firstname": firstname, "lastname": lastname, "email": email, "password": password},
        )
        assert resp.status_code == 200, resp.text
        client.cookies.clear()
        return resp.json()

    return _signup
