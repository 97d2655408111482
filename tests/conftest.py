"""
tests/conftest.py -- Shared test fixtures for the auth core.

This module provides:
  - make_store(): isolated in-memory PrincipalStore, seeded with default roles
  - FakeMailer: records outgoing tokens instead of talking to SMTP
  - FakeAdapter: identity-provider adapter returning a canned Profile
  - service fixtures (tokens, rbac, credentials, oauth, admin) over one store
  - api_client: TestClient over the real app with a patched lifespan

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

The DEBUG env var must be set before any auth module import so get_settings()
auto-generates the signing secrets in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate the JWT secrets in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app, wire_services
from auth.admin import AdminService
from auth.credentials import CredentialService
from auth.models import Principal, Profile, Provider
from auth.oauth import OAuthOrchestrator
from auth.rbac import RbacResolver
from auth.store import PrincipalStore
from auth.tokens import TokenService, hash_password
from core.config import Settings, get_settings
from core.errors import AuthCoreError, Unauthorized

# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeMailer:
    """Mailer that records (email, token) pairs. Set fail=True to simulate SMTP outages."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.verifications: list[tuple[str, str]] = []
        self.resets: list[tuple[str, str]] = []

    async def send_verification_email(self, email: str, token: str) -> None:
        if self.fail:
            raise ConnectionError("SMTP unreachable")
        self.verifications.append((email, token))

    async def send_password_reset_email(self, email: str, token: str) -> None:
        if self.fail:
            raise ConnectionError("SMTP unreachable")
        self.resets.append((email, token))


class FakeAdapter:
    """Identity-provider adapter that accepts one credential and returns a canned profile."""

    def __init__(
        self,
        profile: Profile,
        provider: Provider = Provider.GOOGLE,
        credential: str = "good-credential",
        label: str = "Fake",
    ) -> None:
        self.profile = profile
        self.provider = provider
        self.credential = credential
        self.label = label
        self.error: AuthCoreError | None = None
        self.calls = 0

    async def verify_and_extract_profile(self, credential: str) -> Profile:
        self.calls += 1
        if self.error is not None:
            raise self.error
        if credential != self.credential:
            raise Unauthorized("Fake authentication failed.")
        return self.profile


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def memory_url(prefix: str = "auth") -> str:
    return f"sqlite:///file:test_{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


def make_store(cls: type[PrincipalStore] = PrincipalStore) -> PrincipalStore:
    """Create an isolated named shared-memory store with default roles seeded."""
    store = cls(db_url=memory_url())
    store.seed_defaults()
    return store


def add_principal(
    store: PrincipalStore,
    email: str,
    password: str = "secret123",
    role_names: tuple[str, ...] = ("user",),
    **fields,
) -> Principal:
    """Insert a verified principal with a password and the named roles."""
    role_ids = [store.find_role_by_name(name).id for name in role_names]
    fields.setdefault("is_verified", True)
    username = fields.pop("username", email.split("@")[0])
    return store.create(
        Principal(
            email=email,
            username=username,
            first_name="Test",
            last_name="Principal",
            hashed_password=hash_password(password),
            role_ids=role_ids,
            **fields,
        )
    )


# ---------------------------------------------------------------------------
# Service fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return get_settings()


@pytest.fixture
def store() -> Generator[PrincipalStore, None, None]:
    s = make_store()
    yield s
    s.close()


@pytest.fixture
def tokens(settings: Settings) -> TokenService:
    return TokenService.from_settings(settings)


@pytest.fixture
def rbac(store: PrincipalStore) -> RbacResolver:
    return RbacResolver(store)


@pytest.fixture
def mailer() -> FakeMailer:
    return FakeMailer()


@pytest.fixture
def credentials(
    settings: Settings, store: PrincipalStore, tokens: TokenService, rbac: RbacResolver, mailer: FakeMailer
) -> CredentialService:
    return CredentialService.from_settings(settings, store, tokens, rbac, mailer)


@pytest.fixture
def oauth(store: PrincipalStore, credentials: CredentialService) -> OAuthOrchestrator:
    return OAuthOrchestrator(store, credentials)


@pytest.fixture
def admin_service(store: PrincipalStore) -> AdminService:
    return AdminService(store)


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------


def _patch_lifespan(store: PrincipalStore, mailer: FakeMailer, adapters: dict):
    """Return an async context manager that replaces the real lifespan.

    Runs the real wire_services() against the test store, a fake mailer and
    fake provider adapters, so no SMTP or provider network call is made.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        wire_services(app, get_settings(), store, mailer, adapters)
        yield

    return test_lifespan


@pytest.fixture
def api_client() -> Generator[tuple[TestClient, PrincipalStore, FakeMailer, dict], None, None]:
    """Yield (client, store, mailer, adapters) over the real app with isolated state.

    adapters holds a FakeAdapter under "google"; tests may mutate its profile
    or error before calling the oauth route. The rate limiter is reset so
    login limits never leak between tests.
    """
    store = PrincipalStore(db_url=memory_url("api"))
    mailer = FakeMailer()
    adapters = {"google": FakeAdapter(Profile(email="fed@example.com", name="Fed User", provider_id="g-1"))}
    app.router.lifespan_context = _patch_lifespan(store, mailer, adapters)
    limiter.reset()

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, store, mailer, adapters

    store.close()


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}
