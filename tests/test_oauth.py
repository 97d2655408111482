"""
tests/test_oauth.py -- Federated login orchestration and provider adapters.

Covers:
  - first login creates one verified principal with the default role and no password
  - second login for the same email reuses the principal
  - name splitting and placeholder names
  - provider id linked on login, not overwritten once set
  - banned principal -> Forbidden; unverified principal verified by the login
  - duplicate-key race: re-query succeeds; re-query empty -> InternalError
  - adapter errors propagate unchanged; missing default role -> ConfigurationError
  - adapters over httpx.MockTransport: Google ID token, Google code exchange,
    Facebook, error normalization (BadRequest / Unauthorized / InternalError)
  - build_adapters() only enables configured providers
"""

from __future__ import annotations

import httpx
import pytest

from auth.credentials import CredentialService
from auth.models import Principal, Profile, Provider
from auth.oauth import OAuthOrchestrator, split_name
from auth.providers import (
    FACEBOOK_APP_TOKEN_URL,
    FACEBOOK_DEBUG_TOKEN_URL,
    FACEBOOK_PROFILE_URL,
    GOOGLE_TOKEN_URL,
    GOOGLE_TOKENINFO_URL,
    GOOGLE_USERINFO_URL,
    FacebookAdapter,
    GoogleCodeAdapter,
    GoogleIdTokenAdapter,
    MicrosoftAdapter,
    build_adapters,
    enabled_providers,
)
from auth.rbac import RbacResolver
from auth.store import PrincipalStore
from auth.tokens import TokenPurpose, TokenService
from conftest import FakeAdapter, FakeMailer, add_principal, make_store
from core.config import Settings
from core.errors import BadRequest, ConfigurationError, DuplicateKey, Forbidden, InternalError, Unauthorized


def _adapter(email: str = "b@example.com", name: str | None = "Grace Brewster Hopper", pid: str = "g-1") -> FakeAdapter:
    return FakeAdapter(Profile(email=email, name=name, provider_id=pid))


class TestAuthenticate:
    @pytest.mark.asyncio
    async def test_first_login_creates_verified_principal(
        self, oauth: OAuthOrchestrator, store: PrincipalStore, tokens: TokenService
    ) -> None:
        pair = await oauth.authenticate(_adapter(), "good-credential")

        principals = store.list_principals(email="b@example.com")
        assert len(principals) == 1
        principal = principals[0]
        assert principal.is_verified is True
        assert principal.hashed_password is None
        assert principal.role_ids == [store.find_role_by_name("user").id]
        assert (principal.first_name, principal.last_name) == ("Grace", "Brewster Hopper")
        assert principal.username.startswith("b-")
        assert principal.google_id == "g-1"
        assert tokens.verify(TokenPurpose.ACCESS, pair.access_token)["sub"] == principal.id

    @pytest.mark.asyncio
    async def test_second_login_reuses_principal(self, oauth: OAuthOrchestrator, store: PrincipalStore) -> None:
        adapter = _adapter()
        await oauth.authenticate(adapter, "good-credential")
        await oauth.authenticate(adapter, "good-credential")
        assert len(store.list_principals()) == 1

    @pytest.mark.asyncio
    async def test_links_existing_password_principal(self, oauth: OAuthOrchestrator, store: PrincipalStore) -> None:
        existing = store.create(Principal(email="b@example.com", username="b", is_verified=True))
        await oauth.authenticate(_adapter(pid="g-77"), "good-credential")
        assert store.find_by_id(existing.id).google_id == "g-77"

    @pytest.mark.asyncio
    async def test_linked_provider_id_not_overwritten(self, oauth: OAuthOrchestrator, store: PrincipalStore) -> None:
        existing = store.create(Principal(email="b@example.com", username="b", google_id="g-old", is_verified=True))
        await oauth.authenticate(_adapter(pid="g-new"), "good-credential")
        assert store.find_by_id(existing.id).google_id == "g-old"

    @pytest.mark.asyncio
    async def test_banned_principal_is_refused(self, oauth: OAuthOrchestrator, store: PrincipalStore) -> None:
        banned = add_principal(store, "b@example.com", is_banned=True)
        with pytest.raises(Forbidden):
            await oauth.authenticate(_adapter(), "good-credential")
        assert store.find_by_id(banned.id).refresh_token is None

    @pytest.mark.asyncio
    async def test_unverified_principal_is_verified(
        self, oauth: OAuthOrchestrator, store: PrincipalStore, tokens: TokenService
    ) -> None:
        pending = add_principal(store, "b@example.com", is_verified=False)
        pair = await oauth.authenticate(_adapter(), "good-credential")
        assert store.find_by_id(pending.id).is_verified is True
        assert tokens.verify(TokenPurpose.ACCESS, pair.access_token)["sub"] == pending.id

    @pytest.mark.asyncio
    async def test_adapter_error_propagates(self, oauth: OAuthOrchestrator, store: PrincipalStore) -> None:
        adapter = _adapter()
        adapter.error = BadRequest("Email not provided by Fake.")
        with pytest.raises(BadRequest):
            await oauth.authenticate(adapter, "good-credential")
        with pytest.raises(Unauthorized):
            await oauth.authenticate(_adapter(), "bad-credential")
        assert store.list_principals() == []

    @pytest.mark.asyncio
    async def test_missing_default_role(self, oauth: OAuthOrchestrator, store: PrincipalStore) -> None:
        store.delete_role(store.find_role_by_name("user").id)
        with pytest.raises(ConfigurationError):
            await oauth.authenticate(_adapter(), "good-credential")


class TestCreationRace:
    def _orchestrator(self, store: PrincipalStore, settings: Settings, tokens: TokenService) -> OAuthOrchestrator:
        credentials = CredentialService.from_settings(settings, store, tokens, RbacResolver(store), FakeMailer())
        return OAuthOrchestrator(store, credentials)

    @pytest.mark.asyncio
    async def test_duplicate_key_requeries_and_uses_winner(self, settings: Settings, tokens: TokenService) -> None:
        class RacingStore(PrincipalStore):
            """A concurrent federated login creates the principal first."""

            def create(self, principal: Principal) -> Principal:
                super().create(
                    Principal(email=principal.email, username="winner", is_verified=True, role_ids=principal.role_ids)
                )
                raise DuplicateKey("email")

        store = make_store(RacingStore)
        pair = await self._orchestrator(store, settings, tokens).authenticate(_adapter(), "good-credential")

        winner = store.find_by_email("b@example.com")
        assert winner.username == "winner"
        assert tokens.verify(TokenPurpose.ACCESS, pair.access_token)["sub"] == winner.id
        assert len(store.list_principals()) == 1
        store.close()

    @pytest.mark.asyncio
    async def test_duplicate_key_with_nothing_found_is_internal_error(
        self, settings: Settings, tokens: TokenService
    ) -> None:
        class PhantomStore(PrincipalStore):
            def create(self, principal: Principal) -> Principal:
                raise DuplicateKey("email")

        store = make_store(PhantomStore)
        with pytest.raises(InternalError):
            await self._orchestrator(store, settings, tokens).authenticate(_adapter(), "good-credential")
        store.close()


class TestSplitName:
    @pytest.mark.parametrize(
        ("name", "expected"),
        [
            ("Grace Hopper", ("Grace", "Hopper")),
            ("Grace Brewster Murray Hopper", ("Grace", "Brewster Murray Hopper")),
            ("Cher", ("Cher", "OAuth")),
            (None, ("User", "OAuth")),
            ("   ", ("User", "OAuth")),
        ],
    )
    def test_split(self, name, expected) -> None:
        assert split_name(name) == expected


# ---------------------------------------------------------------------------
# Adapters over a mocked transport (no network)
# ---------------------------------------------------------------------------


def _transport(routes: dict[str, httpx.Response | Exception]) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        url = f"{request.url.scheme}://{request.url.host}{request.url.path}"
        outcome = routes.get(url)
        if outcome is None:
            return httpx.Response(404, json={"error": "not mocked"})
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    return httpx.MockTransport(handler)


class TestGoogleIdTokenAdapter:
    @pytest.mark.asyncio
    async def test_valid_token(self) -> None:
        transport = _transport(
            {
                GOOGLE_TOKENINFO_URL: httpx.Response(
                    200,
                    json={"aud": "cid", "email": "g@example.com", "email_verified": "true", "name": "G", "sub": "s1"},
                )
            }
        )
        profile = await GoogleIdTokenAdapter(client_id="cid", transport=transport).verify_and_extract_profile("tok")
        assert profile == Profile(email="g@example.com", name="G", provider_id="s1")

    @pytest.mark.asyncio
    async def test_missing_email_is_bad_request(self) -> None:
        transport = _transport({GOOGLE_TOKENINFO_URL: httpx.Response(200, json={"aud": "cid", "sub": "s1"})})
        with pytest.raises(BadRequest):
            await GoogleIdTokenAdapter(client_id="cid", transport=transport).verify_and_extract_profile("tok")

    @pytest.mark.asyncio
    async def test_unverified_email_is_unauthorized(self) -> None:
        transport = _transport(
            {GOOGLE_TOKENINFO_URL: httpx.Response(200, json={"aud": "cid", "email": "g@example.com", "email_verified": "false"})}
        )
        with pytest.raises(Unauthorized):
            await GoogleIdTokenAdapter(client_id="cid", transport=transport).verify_and_extract_profile("tok")

    @pytest.mark.asyncio
    async def test_wrong_audience_is_unauthorized(self) -> None:
        transport = _transport(
            {GOOGLE_TOKENINFO_URL: httpx.Response(200, json={"aud": "other", "email": "g@example.com", "email_verified": "true"})}
        )
        with pytest.raises(Unauthorized):
            await GoogleIdTokenAdapter(client_id="cid", transport=transport).verify_and_extract_profile("tok")

    @pytest.mark.asyncio
    async def test_provider_rejection_is_unauthorized(self) -> None:
        transport = _transport({GOOGLE_TOKENINFO_URL: httpx.Response(400, json={"error": "invalid_token"})})
        with pytest.raises(Unauthorized):
            await GoogleIdTokenAdapter(transport=transport).verify_and_extract_profile("tok")

    @pytest.mark.asyncio
    async def test_timeout_is_internal_error(self) -> None:
        transport = _transport({GOOGLE_TOKENINFO_URL: httpx.ReadTimeout("timed out")})
        with pytest.raises(InternalError):
            await GoogleIdTokenAdapter(transport=transport).verify_and_extract_profile("tok")


class TestGoogleCodeAdapter:
    @pytest.mark.asyncio
    async def test_code_exchange(self) -> None:
        transport = _transport(
            {
                GOOGLE_TOKEN_URL: httpx.Response(200, json={"access_token": "at", "token_type": "Bearer", "expires_in": 3600}),
                GOOGLE_USERINFO_URL: httpx.Response(
                    200, json={"id": "g-5", "email": "code@example.com", "verified_email": True, "name": "Code User"}
                ),
            }
        )
        adapter = GoogleCodeAdapter("cid", "csecret", transport=transport)
        profile = await adapter.verify_and_extract_profile("auth-code")
        assert profile == Profile(email="code@example.com", name="Code User", provider_id="g-5")

    @pytest.mark.asyncio
    async def test_rejected_code_is_unauthorized(self) -> None:
        transport = _transport({GOOGLE_TOKEN_URL: httpx.Response(400, json={"error": "invalid_grant"})})
        with pytest.raises(Unauthorized):
            await GoogleCodeAdapter("cid", "csecret", transport=transport).verify_and_extract_profile("bad-code")


class TestFacebookAdapter:
    def _routes(self, is_valid: bool = True, profile: dict | None = None) -> dict:
        return {
            FACEBOOK_APP_TOKEN_URL: httpx.Response(200, json={"access_token": "app-token"}),
            FACEBOOK_DEBUG_TOKEN_URL: httpx.Response(200, json={"data": {"is_valid": is_valid}}),
            FACEBOOK_PROFILE_URL: httpx.Response(
                200, json=profile if profile is not None else {"id": "fb-1", "name": "Fb User", "email": "fb@example.com"}
            ),
        }

    @pytest.mark.asyncio
    async def test_valid_token(self) -> None:
        adapter = FacebookAdapter("app", "secret", transport=_transport(self._routes()))
        profile = await adapter.verify_and_extract_profile("user-token")
        assert profile == Profile(email="fb@example.com", name="Fb User", provider_id="fb-1")

    @pytest.mark.asyncio
    async def test_invalid_token_is_unauthorized(self) -> None:
        adapter = FacebookAdapter("app", "secret", transport=_transport(self._routes(is_valid=False)))
        with pytest.raises(Unauthorized):
            await adapter.verify_and_extract_profile("user-token")

    @pytest.mark.asyncio
    async def test_profile_without_email_is_bad_request(self) -> None:
        adapter = FacebookAdapter("app", "secret", transport=_transport(self._routes(profile={"id": "fb-1", "name": "X"})))
        with pytest.raises(BadRequest):
            await adapter.verify_and_extract_profile("user-token")

    @pytest.mark.asyncio
    async def test_missing_app_token_is_internal_error(self) -> None:
        routes = self._routes()
        routes[FACEBOOK_APP_TOKEN_URL] = httpx.Response(200, json={})
        adapter = FacebookAdapter("app", "secret", transport=_transport(routes))
        with pytest.raises(InternalError):
            await adapter.verify_and_extract_profile("user-token")


class TestMicrosoftAdapter:
    @pytest.mark.asyncio
    async def test_malformed_token_is_unauthorized(self) -> None:
        jwks_url = "https://login.example.com/keys"
        adapter = MicrosoftAdapter("cid", jwks_url=jwks_url, transport=_transport({jwks_url: httpx.Response(200, json={"keys": []})}))
        with pytest.raises(Unauthorized):
            await adapter.verify_and_extract_profile("not.a.jwt")


class TestRegistry:
    def test_only_configured_providers_enabled(self, settings: Settings) -> None:
        configured = settings.model_copy(
            update={"google_client_id": "gid", "google_client_secret": "", "fb_client_id": "fid", "fb_client_secret": ""}
        )
        adapters = build_adapters(configured)
        assert set(adapters) == {"google"}
        assert enabled_providers(adapters) == [{"name": "google", "label": "Google"}]

    def test_all_providers(self, settings: Settings) -> None:
        configured = settings.model_copy(
            update={
                "google_client_id": "gid",
                "google_client_secret": "gsecret",
                "microsoft_client_id": "mid",
                "fb_client_id": "fid",
                "fb_client_secret": "fsecret",
            }
        )
        adapters = build_adapters(configured)
        assert set(adapters) == {"google", "google-code", "microsoft", "facebook"}
        assert adapters["microsoft"].provider is Provider.MICROSOFT
