"""
auth/oauth.py -- Federated login: find-or-create a principal from a provider profile.

Flow (OAuthOrchestrator.authenticate):
  1. The adapter verifies the provider credential and extracts a Profile.
     Adapter errors are already normalized (Unauthorized / BadRequest /
     InternalError) and propagate unchanged.
  2. Look the principal up by email. If absent, create one: verified, no
     password, default role, name split into first/last, username derived
     from the email local-part. A banned principal is refused with Forbidden,
     as in password login. An existing unverified principal is marked
     verified: the provider has confirmed the email.
  3. Race [R1]: two first logins for the same email can both miss the lookup.
     The loser's insert raises DuplicateKey; it re-queries by email once and
     continues with the winner's principal. If that lookup is still empty the
     request fails with InternalError.
  4. Link the provider id onto the principal when not yet set.
  5. Issue tokens exactly as a password login does.

Security notes:
  [H1] The profile email is trusted as verified. Adapters refuse emails the
       provider has not confirmed (see auth/providers.py).

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import re
import secrets

from auth.credentials import CredentialService
from auth.models import Principal, Profile, TokenPair
from auth.providers import IdentityProviderAdapter
from auth.store import PrincipalStore, normalize_email
from core.errors import ConfigurationError, DuplicateKey, Forbidden, InternalError

logger = logging.getLogger("authcore.oauth")

_PLACEHOLDER_FIRST = "User"
_PLACEHOLDER_LAST = "OAuth"


def split_name(name: str | None) -> tuple[str, str]:
    """Split a display name into (first, last).

    First word is the given name, the remainder is the family name. A missing
    name falls back to the placeholder pair; a single word keeps the given
    name and uses the placeholder family name.
    """
    parts = (name or "").split()
    if not parts:
        return _PLACEHOLDER_FIRST, _PLACEHOLDER_LAST
    return parts[0], " ".join(parts[1:]) or _PLACEHOLDER_LAST


def username_from_email(email: str) -> str:
    local = re.sub(r"[^a-z0-9._-]+", "", email.split("@")[0].lower()) or "user"
    return f"{local[:24]}-{secrets.token_hex(2)}"


class OAuthOrchestrator:
    """Turn a verified provider profile into a local principal and a token pair."""

    def __init__(self, store: PrincipalStore, credentials: CredentialService, default_role_name: str = "user") -> None:
        self._store = store
        self._credentials = credentials
        self.default_role_name = default_role_name

    async def authenticate(self, adapter: IdentityProviderAdapter, credential: str) -> TokenPair:
        profile = await adapter.verify_and_extract_profile(credential)
        email = normalize_email(profile.email)

        principal = self._store.find_by_email(email)
        if principal is None:
            principal = self._create_or_recover(email, profile)
        if principal.is_banned:
            logger.info("Federated login refused for banned principal %s", principal.id)
            raise Forbidden("Account has been banned. Please contact support.")
        if not principal.is_verified:
            # the provider has confirmed the email
            self._store.update_by_id(principal.id, is_verified=True)
            logger.info("Principal %s verified by federated login", principal.id)

        self._link_provider(principal, adapter, profile)
        return self._credentials.issue_tokens_for_user(principal.id)

    def _create_or_recover(self, email: str, profile: Profile) -> Principal:
        role = self._store.find_role_by_name(self.default_role_name)
        if role is None:
            logger.error("Default role %r not found -- seed data may be missing", self.default_role_name)
            raise ConfigurationError(f"Default role {self.default_role_name!r} is not seeded.")

        first, last = split_name(profile.name)
        try:
            principal = self._store.create(
                Principal(
                    email=email,
                    username=username_from_email(email),
                    first_name=first,
                    last_name=last,
                    role_ids=[role.id],
                    is_verified=True,
                )
            )
        except DuplicateKey as exc:
            # [R1] a concurrent request created the principal first
            logger.info("Federated create for %s lost a race on %s; re-querying", email, exc.field or "unknown field")
            principal = self._store.find_by_email(email)
            if principal is None:
                logger.error("Principal for %s missing after duplicate-key retry", email)
                raise InternalError("Failed to create account.") from exc
            return principal

        logger.info("Created federated principal %s", principal.id)
        return principal

    def _link_provider(self, principal: Principal, adapter: IdentityProviderAdapter, profile: Profile) -> None:
        provider = getattr(adapter, "provider", None)
        if provider is None or not profile.provider_id:
            return
        if getattr(principal, provider.id_field):
            return
        try:
            self._store.update_by_id(principal.id, **{provider.id_field: profile.provider_id})
        except DuplicateKey:
            # the provider id already belongs to another principal; login proceeds on email match
            logger.warning("%s id already linked to another principal; not linking %s", provider.value, principal.id)
