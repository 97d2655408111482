"""
auth/tokens.py -- Purpose-tagged JWT signing/verification and password hashing.

Security design decisions:
  JWT: python-jose with HS256. There are four token purposes -- access,
       refresh, verify (email verification) and reset (password reset). Each
       purpose has its own secret and default lifetime [S1], so a token minted
       for one purpose fails signature verification under any other. Non-access
       tokens additionally carry a "purpose" claim that verify() checks; access
       tokens carry none, and a token WITH a purpose claim is never accepted
       as an access token even if the secrets were configured identically.

  iat: written as a float (microsecond precision) rather than whole seconds.
       The refresh and guard paths compare iat with the principal's
       password_changed_at; whole-second truncation would let a token minted
       just before a password change survive it, or reject one minted just
       after registration.

  Passwords: bcrypt directly (no passlib wrapper). _DUMMY_HASH enables timing
       equalization in login so response time does not reveal whether an
       email exists.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

import bcrypt
from jose import ExpiredSignatureError, JWTError, jwt

from core.config import Settings
from core.durations import parse_duration
from core.errors import BadRequest, ConfigurationError, ExpiredToken, InvalidToken, WrongPurpose

logger = logging.getLogger("authcore.tokens")

_ALGORITHM = "HS256"
_BCRYPT_ROUNDS = 10
MAX_PASSWORD_BYTES = 72

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt accepts at most 72 bytes of UTF-8. Longer input is a BadRequest,
    never silently truncated.
    """
    encoded = plain.encode("utf-8")
    if len(encoded) > MAX_PASSWORD_BYTES:
        raise BadRequest(f"Password must be at most {MAX_PASSWORD_BYTES} bytes.")
    return bcrypt.hashpw(encoded, bcrypt.gensalt(rounds=_BCRYPT_ROUNDS)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except (ValueError, TypeError):
        return False


# Timing equalization dummy hash.
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones. Always call verify_password() even when the
# email does not exist.
_DUMMY_HASH: str = hash_password("authcore_timing_dummy")


def burn_password_check(plain: str) -> None:
    """Run a bcrypt comparison whose result is discarded (timing equalization)."""
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# Token purposes and policies
# ---------------------------------------------------------------------------


class TokenPurpose(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"
    VERIFY = "verify"
    RESET = "reset"

    @property
    def claim(self) -> str | None:
        """Value of the "purpose" claim; access tokens are purpose-less."""
        return None if self is TokenPurpose.ACCESS else self.value


@dataclass(frozen=True)
class TokenPolicy:
    """Signing secret and lifetime for one token purpose."""

    secret: str
    lifetime: timedelta


def policies_from_settings(settings: Settings) -> dict[TokenPurpose, TokenPolicy]:
    """Build the per-purpose policies from configuration.

    Raises ConfigurationError on an unparseable expiry string.
    """
    return {
        TokenPurpose.ACCESS: TokenPolicy(settings.jwt_secret, parse_duration(settings.jwt_access_token_expires_in)),
        TokenPurpose.REFRESH: TokenPolicy(
            settings.jwt_refresh_secret, parse_duration(settings.jwt_refresh_token_expires_in)
        ),
        TokenPurpose.VERIFY: TokenPolicy(settings.jwt_email_secret, parse_duration(settings.jwt_email_token_expires_in)),
        TokenPurpose.RESET: TokenPolicy(settings.jwt_reset_secret, parse_duration(settings.jwt_reset_token_expires_in)),
    }


# ---------------------------------------------------------------------------
# Token service
# ---------------------------------------------------------------------------


class TokenService:
    """Signs and verifies purpose-tagged tokens.

    sign() never fails except on missing configuration (ConfigurationError).
    verify() raises InvalidToken on a bad signature or malformed token,
    ExpiredToken once the lifetime has passed, and WrongPurpose when the
    decoded purpose tag differs from the expected one.

    Usage:
        tokens = TokenService.from_settings(get_settings())
        raw = tokens.sign(TokenPurpose.RESET, {"sub": principal.id})
        claims = tokens.verify(TokenPurpose.RESET, raw)
    """

    def __init__(self, policies: dict[TokenPurpose, TokenPolicy]) -> None:
        self._policies = dict(policies)

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenService":
        return cls(policies_from_settings(settings))

    def lifetime(self, purpose: TokenPurpose) -> timedelta:
        return self._policy(purpose).lifetime

    def sign(self, purpose: TokenPurpose, payload: dict[str, Any]) -> str:
        """Return a signed token carrying payload plus iat/exp (and purpose for non-access tokens)."""
        policy = self._policy(purpose)
        now = datetime.now(timezone.utc)
        claims = dict(payload)
        claims.pop("purpose", None)
        if purpose.claim is not None:
            claims["purpose"] = purpose.claim
        claims["iat"] = now.timestamp()
        claims["exp"] = now + policy.lifetime
        return jwt.encode(claims, policy.secret, algorithm=_ALGORITHM)

    def verify(self, purpose: TokenPurpose, token: str) -> dict[str, Any]:
        """Decode token under the purpose's secret and return its claims."""
        policy = self._policy(purpose)
        try:
            payload = jwt.decode(token, policy.secret, algorithms=[_ALGORITHM])
        except ExpiredSignatureError as exc:
            raise ExpiredToken() from exc
        except JWTError as exc:
            raise InvalidToken() from exc
        if payload.get("purpose") != purpose.claim:
            raise WrongPurpose()
        if not payload.get("sub") or "iat" not in payload:
            raise InvalidToken()
        return payload

    def _policy(self, purpose: TokenPurpose) -> TokenPolicy:
        policy = self._policies.get(purpose)
        if policy is None or not policy.secret:
            logger.error("No signing secret configured for %s tokens", purpose.value)
            raise ConfigurationError(f"Signing secret for {purpose.value} tokens is not configured.")
        return policy


def issued_before(claims: dict[str, Any], moment: datetime | None) -> bool:
    """Return True if the token's iat predates moment (e.g. a password change)."""
    if moment is None:
        return False
    return float(claims["iat"]) < moment.timestamp()


# ---------------------------------------------------------------------------
# Cookie helper
# ---------------------------------------------------------------------------


def set_refresh_cookie(response, token: str, max_age: int, secure: bool = False) -> None:
    """Write the refresh token as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST -- CSRF mitigation.
    max_age: matches the refresh-token lifetime so both expire together.
    """
    response.set_cookie(
        "refresh_token",
        value=token,
        httponly=True,
        samesite="lax",
        secure=secure,
        max_age=max_age,
        path="/",
    )
