"""
auth/providers.py -- Identity-provider adapters for federated login.

Every adapter implements one coroutine:
    verify_and_extract_profile(credential) -> Profile
The OAuth orchestrator depends only on that interface, so adding a provider
never touches orchestration logic.

Supported adapters:
  google       -- Google ID token, checked against the tokeninfo endpoint.
  google-code  -- Google authorization code ("postmessage" redirect), exchanged
                  with authlib's AsyncOAuth2Client, profile from userinfo.
  microsoft    -- Microsoft ID token, RS256 signature verified locally against
                  the published JWKS (authlib.jose), audience = client id.
  facebook     -- Facebook user access token, validated with the app token
                  via /debug_token, profile from the Graph API.

Error normalization [P1]: provider-specific failures never leave this module.
  - missing email (or other required field)  -> BadRequest
  - provider call timed out                  -> InternalError
  - anything else (bad/expired credential,
    non-2xx response, signature failure)     -> Unauthorized
AuthCoreError subclasses raised inside an adapter pass through unchanged.

Security notes:
  [H1] Google reports whether it has confirmed the email; an unconfirmed
       address is refused. A federated login marks the local principal
       verified, so trusting an unconfirmed email would let an attacker claim
       a victim's account.

Network calls go through httpx with a bounded timeout
(PROVIDER_TIMEOUT_SECONDS). Tests inject an httpx transport instead of
patching module globals.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Protocol

import httpx
from authlib.integrations.httpx_client import AsyncOAuth2Client
from authlib.jose import JsonWebKey, JsonWebToken

from auth.models import Profile, Provider
from core.config import Settings
from core.errors import AuthCoreError, BadRequest, InternalError, Unauthorized

logger = logging.getLogger("authcore.providers")

GOOGLE_TOKENINFO_URL = "https://oauth2.googleapis.com/tokeninfo"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"  # noqa: S105 -- URL, not a password
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
MICROSOFT_JWKS_URL = "https://login.microsoftonline.com/common/discovery/v2.0/keys"
FACEBOOK_APP_TOKEN_URL = "https://graph.facebook.com/oauth/access_token"  # noqa: S105 -- URL, not a password
FACEBOOK_DEBUG_TOKEN_URL = "https://graph.facebook.com/debug_token"  # noqa: S105 -- URL, not a password
FACEBOOK_PROFILE_URL = "https://graph.facebook.com/me"

_JWKS_TTL_SECONDS = 3600


class IdentityProviderAdapter(Protocol):
    provider: Provider

    async def verify_and_extract_profile(self, credential: str) -> Profile: ...


# ---------------------------------------------------------------------------
# Error normalization [P1]
# ---------------------------------------------------------------------------


def handle_provider_error(exc: Exception, provider: str, operation: str) -> AuthCoreError:
    """Map a provider failure to the core error the orchestrator should see."""
    if isinstance(exc, AuthCoreError):
        return exc
    if isinstance(exc, httpx.TimeoutException):
        logger.error("%s %s timed out", provider, operation)
        return InternalError(f"{provider} did not respond in time.")
    logger.warning("%s %s failed: %s", provider, operation, exc)
    return Unauthorized(f"{provider} authentication failed.")


def require_field(value: Any, field_name: str, provider: str) -> Any:
    if not value:
        raise BadRequest(f"{field_name} not provided by {provider}.")
    return value


def _is_true(value: Any) -> bool:
    # tokeninfo sends booleans as strings
    return value is True or str(value).lower() == "true"


class _HttpAdapter:
    """Shared httpx plumbing: bounded timeout and an injectable transport."""

    provider: Provider
    label: str = ""

    def __init__(self, timeout: float = 10.0, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    async def _get_json(self, client: httpx.AsyncClient, url: str, **kwargs) -> dict:
        resp = await client.get(url, **kwargs)
        resp.raise_for_status()
        return resp.json()


# ---------------------------------------------------------------------------
# Google
# ---------------------------------------------------------------------------


class GoogleIdTokenAdapter(_HttpAdapter):
    """Verify a Google ID token via the tokeninfo endpoint."""

    provider = Provider.GOOGLE
    label = "Google"

    def __init__(self, client_id: str = "", **kwargs) -> None:
        super().__init__(**kwargs)
        self._client_id = client_id

    async def verify_and_extract_profile(self, credential: str) -> Profile:
        try:
            async with self._client() as client:
                data = await self._get_json(client, GOOGLE_TOKENINFO_URL, params={"id_token": credential})
            if self._client_id and data.get("aud") != self._client_id:
                raise Unauthorized("Google token was issued for a different client.")
            email = require_field(data.get("email"), "Email", "Google")
            if not _is_true(data.get("email_verified")):
                raise Unauthorized("Google has not verified this email address.")
            return Profile(email=email, name=data.get("name"), provider_id=data.get("sub"))
        except AuthCoreError:
            raise
        except Exception as exc:
            raise handle_provider_error(exc, "Google", "ID token verification") from exc


class GoogleCodeAdapter(_HttpAdapter):
    """Exchange a Google authorization code (popup "postmessage" flow) for a profile."""

    provider = Provider.GOOGLE
    label = "Google"

    def __init__(self, client_id: str, client_secret: str, **kwargs) -> None:
        super().__init__(**kwargs)
        self._client_id = client_id
        self._client_secret = client_secret

    async def verify_and_extract_profile(self, credential: str) -> Profile:
        try:
            async with AsyncOAuth2Client(
                client_id=self._client_id,
                client_secret=self._client_secret,
                redirect_uri="postmessage",
                timeout=self._timeout,
                transport=self._transport,
            ) as client:
                token = await client.fetch_token(GOOGLE_TOKEN_URL, code=credential, grant_type="authorization_code")
                require_field(token.get("access_token"), "Access token", "Google")
                data = await self._get_json(client, GOOGLE_USERINFO_URL)
            email = require_field(data.get("email"), "Email", "Google")
            if not _is_true(data.get("verified_email", True)):
                raise Unauthorized("Google has not verified this email address.")
            return Profile(email=email, name=data.get("name"), provider_id=data.get("id"))
        except AuthCoreError:
            raise
        except Exception as exc:
            raise handle_provider_error(exc, "Google", "code exchange") from exc


# ---------------------------------------------------------------------------
# Microsoft
# ---------------------------------------------------------------------------


class MicrosoftAdapter(_HttpAdapter):
    """Verify a Microsoft identity-platform ID token against the published JWKS.

    The key set is cached for an hour and refetched once when a token names
    a key id that is not in the cached set (Microsoft rotates keys).
    """

    provider = Provider.MICROSOFT
    label = "Microsoft"

    def __init__(self, client_id: str, jwks_url: str = MICROSOFT_JWKS_URL, **kwargs) -> None:
        super().__init__(**kwargs)
        self._client_id = client_id
        self._jwks_url = jwks_url
        self._jwks: dict | None = None
        self._jwks_fetched_at = 0.0
        self._jwt = JsonWebToken(["RS256"])

    async def verify_and_extract_profile(self, credential: str) -> Profile:
        try:
            claims = await self._decode(credential)
            email = require_field(claims.get("preferred_username") or claims.get("email"), "Email", "Microsoft")
            return Profile(email=email, name=claims.get("name"), provider_id=claims.get("oid") or claims.get("sub"))
        except AuthCoreError:
            raise
        except Exception as exc:
            raise handle_provider_error(exc, "Microsoft", "ID token verification") from exc

    async def _decode(self, token: str):
        claims_options = {"aud": {"essential": True, "value": self._client_id}}
        try:
            claims = self._jwt.decode(token, JsonWebKey.import_key_set(await self._key_set()), claims_options=claims_options)
        except ValueError:
            # authlib raises ValueError when no key matches the token's kid
            claims = self._jwt.decode(
                token, JsonWebKey.import_key_set(await self._key_set(force=True)), claims_options=claims_options
            )
        claims.validate(leeway=60)
        return claims

    async def _key_set(self, force: bool = False) -> dict:
        expired = time.monotonic() - self._jwks_fetched_at > _JWKS_TTL_SECONDS
        if force or self._jwks is None or expired:
            async with self._client() as client:
                self._jwks = await self._get_json(client, self._jwks_url)
            self._jwks_fetched_at = time.monotonic()
            logger.info("Fetched Microsoft signing keys (%d keys)", len(self._jwks.get("keys", [])))
        return self._jwks


# ---------------------------------------------------------------------------
# Facebook
# ---------------------------------------------------------------------------


class FacebookAdapter(_HttpAdapter):
    """Validate a Facebook user access token and read the profile from the Graph API."""

    provider = Provider.FACEBOOK
    label = "Facebook"

    def __init__(self, client_id: str, client_secret: str, **kwargs) -> None:
        super().__init__(**kwargs)
        self._client_id = client_id
        self._client_secret = client_secret

    async def verify_and_extract_profile(self, credential: str) -> Profile:
        try:
            async with self._client() as client:
                app_token = await self._app_access_token(client)
                debug = await self._get_json(
                    client, FACEBOOK_DEBUG_TOKEN_URL, params={"input_token": credential, "access_token": app_token}
                )
                if not (debug.get("data") or {}).get("is_valid"):
                    raise Unauthorized("Invalid Facebook access token.")
                data = await self._get_json(
                    client, FACEBOOK_PROFILE_URL, params={"access_token": credential, "fields": "id,name,email"}
                )
            email = require_field(data.get("email"), "Email", "Facebook")
            return Profile(email=email, name=data.get("name"), provider_id=data.get("id"))
        except AuthCoreError:
            raise
        except Exception as exc:
            raise handle_provider_error(exc, "Facebook", "access token verification") from exc

    async def _app_access_token(self, client: httpx.AsyncClient) -> str:
        data = await self._get_json(
            client,
            FACEBOOK_APP_TOKEN_URL,
            params={
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "grant_type": "client_credentials",
            },
        )
        if not data.get("access_token"):
            logger.error("Facebook returned no app access token")
            raise InternalError("Failed to get Facebook app token.")
        return data["access_token"]


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


def build_adapters(
    settings: Settings, transport: httpx.AsyncBaseTransport | None = None
) -> dict[str, IdentityProviderAdapter]:
    """Return the adapters whose provider is configured, keyed by route name.

    A provider is included only when every credential it needs is set.
    """
    common = {"timeout": settings.provider_timeout_seconds, "transport": transport}
    adapters: dict[str, IdentityProviderAdapter] = {}
    if settings.google_client_id:
        adapters["google"] = GoogleIdTokenAdapter(client_id=settings.google_client_id, **common)
        if settings.google_client_secret:
            adapters["google-code"] = GoogleCodeAdapter(
                settings.google_client_id, settings.google_client_secret, **common
            )
    if settings.microsoft_client_id:
        adapters["microsoft"] = MicrosoftAdapter(settings.microsoft_client_id, **common)
    if settings.fb_client_id and settings.fb_client_secret:
        adapters["facebook"] = FacebookAdapter(settings.fb_client_id, settings.fb_client_secret, **common)
    for name in adapters:
        logger.info("Identity provider %s enabled", name)
    return adapters


def enabled_providers(adapters: dict[str, IdentityProviderAdapter]) -> list[dict]:
    """Return [{"name", "label"}] for each configured adapter, for GET /oauth/providers."""
    return [{"name": name, "label": getattr(adapter, "label", name)} for name, adapter in adapters.items()]
