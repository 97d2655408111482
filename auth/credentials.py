"""
auth/credentials.py -- Password-credential lifecycle: register, login, refresh, reset, verify.

Flow overview:
  register  -> principal created unverified with the default role, verify-token
               mailed best-effort (a mail failure is reported, never rolled back)
  verify    -> verify-token flips is_verified (idempotent)
  login     -> lockout check, bcrypt check, ban/verification check, token pair
  refresh   -> refresh-token rotation; the stored value is the only live token
  forgot    -> reset-token mailed; identical response whether or not the email exists
  reset     -> new hash + password_changed_at, which makes every earlier token stale

Security notes:
  [A1] Anti-enumeration. Unknown email and wrong password produce the same
       Unauthorized message, and bcrypt runs in both cases (timing
       equalization). forgot_password() and resend_verification() always
       return the same generic outcome and swallow internal failures.

  [A2] Lockout. login() is the single place lockout state is mutated. Each
       bad password increments failed_login_attempts; reaching the threshold
       sets lock_until and resets the counter. While lock_until lies in the
       future every attempt is refused with AccountLocked, even with the
       correct password.

  [A3] Single live refresh token. issue_tokens_for_user() persists the new
       refresh token on the principal. refresh() rejects any token that does
       not match the stored value, so rotation (or logout) revokes the
       previous one without a deny-list.

  [A4] Staleness. A refresh token whose iat predates password_changed_at is
       rejected, forcing a fresh login after a credential change.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import asyncio
import hmac
import logging
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from auth.mail import Mailer
from auth.models import Principal, TokenPair
from auth.rbac import RbacResolver
from auth.store import PrincipalStore, normalize_email
from auth.tokens import (
    TokenPurpose,
    TokenService,
    burn_password_check,
    hash_password,
    issued_before,
    verify_password,
)
from core.config import Settings
from core.errors import (
    AccountLocked,
    ConfigurationError,
    Conflict,
    DuplicateKey,
    Forbidden,
    NotFound,
    Unauthorized,
)

logger = logging.getLogger("authcore.credentials")

_BAD_CREDENTIALS = "Invalid email or password."
_DUPLICATE_ACCOUNT = "An account with these credentials already exists."
_FORGOT_MESSAGE = "If the email exists, a password reset link has been sent."
_RESEND_MESSAGE = "If the email exists and is unverified, a verification email has been sent."


@dataclass
class Outcome:
    """Result of an operation whose only output is a user-facing message."""

    message: str
    ok: bool = True


@dataclass
class RegistrationResult:
    id: str
    email: str
    email_sent: bool
    email_error: str | None = None


def generate_username(first_name: str, last_name: str, email: str = "") -> str:
    """Derive a username from first-last name (or the email local-part) plus a random suffix.

    The suffix keeps two "John Smith" registrations from colliding on the
    UNIQUE username column.
    """
    base = re.sub(r"[^a-z0-9]+", "-", f"{first_name} {last_name}".lower()).strip("-")
    if not base:
        base = re.sub(r"[^a-z0-9]+", "", email.split("@")[0].lower()) or "user"
    return f"{base[:24]}-{secrets.token_hex(2)}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CredentialService:
    """Password-based account lifecycle on top of the store, token service and mailer."""

    def __init__(
        self,
        store: PrincipalStore,
        tokens: TokenService,
        rbac: RbacResolver,
        mailer: Mailer,
        *,
        max_failed_attempts: int = 3,
        lock_duration: timedelta = timedelta(minutes=15),
        default_role_name: str = "user",
    ) -> None:
        self._store = store
        self._tokens = tokens
        self._rbac = rbac
        self._mailer = mailer
        self.max_failed_attempts = max_failed_attempts
        self.lock_duration = lock_duration
        self.default_role_name = default_role_name

    @classmethod
    def from_settings(
        cls, settings: Settings, store: PrincipalStore, tokens: TokenService, rbac: RbacResolver, mailer: Mailer
    ) -> "CredentialService":
        return cls(
            store,
            tokens,
            rbac,
            mailer,
            max_failed_attempts=settings.max_failed_login_attempts,
            lock_duration=timedelta(minutes=settings.account_lock_time_minutes),
            default_role_name=settings.default_role_name,
        )

    # ------------------------------------------------------------------
    # Token issuance (shared with the OAuth orchestrator)
    # ------------------------------------------------------------------

    def issue_tokens_for_user(self, principal_id: str) -> TokenPair:
        """Sign an access+refresh pair for principal_id and persist the refresh token [A3].

        The access token embeds the principal's role ids and deduplicated
        permission names, resolved fresh from the store.
        """
        principal, access = self._rbac.resolve_for_id(principal_id)
        access_token = self._tokens.sign(
            TokenPurpose.ACCESS,
            {"sub": principal.id, "roles": access.role_ids, "permissions": access.permissions},
        )
        refresh_token = self._tokens.sign(TokenPurpose.REFRESH, {"sub": principal.id})
        self._store.update_by_id(principal.id, refresh_token=refresh_token)
        return TokenPair(access_token=access_token, refresh_token=refresh_token)

    # ------------------------------------------------------------------
    # Registration and verification
    # ------------------------------------------------------------------

    async def register(
        self,
        email: str,
        password: str,
        first_name: str,
        last_name: str,
        username: str | None = None,
        phone_number: str | None = None,
    ) -> RegistrationResult:
        """Create an unverified principal with the default role and mail a verify token.

        Raises Conflict when email, username or phone is taken -- including
        when a concurrent registration wins the insert race. Raises
        ConfigurationError when the default role has not been seeded.
        """
        email = normalize_email(email)
        username = (username or "").strip() or generate_username(first_name, last_name, email)

        taken = (
            self._store.find_by_email(email) is not None
            or self._store.find_by_username(username) is not None
            or (phone_number is not None and self._store.find_by_phone(phone_number) is not None)
        )
        if taken:
            raise Conflict(_DUPLICATE_ACCOUNT)

        hashed = hash_password(password)
        role = self._store.find_role_by_name(self.default_role_name)
        if role is None:
            logger.error("Default role %r not found -- seed data may be missing", self.default_role_name)
            raise ConfigurationError(f"Default role {self.default_role_name!r} is not seeded.")

        try:
            principal = self._store.create(
                Principal(
                    email=email,
                    username=username,
                    first_name=first_name,
                    last_name=last_name,
                    phone_number=phone_number,
                    hashed_password=hashed,
                    role_ids=[role.id],
                    is_verified=False,
                    password_changed_at=_utcnow(),
                )
            )
        except DuplicateKey as exc:
            logger.info("Registration lost a uniqueness race on %s", exc.field or "unknown field")
            raise Conflict(_DUPLICATE_ACCOUNT) from exc

        logger.info("Registered principal %s", principal.id)
        sent, error = await self._send_verification(principal)
        return RegistrationResult(id=principal.id, email=principal.email, email_sent=sent, email_error=error)

    async def verify_email(self, token: str) -> Outcome:
        """Mark the token's principal verified. Already-verified principals are left untouched."""
        claims = self._tokens.verify(TokenPurpose.VERIFY, token)
        principal = self._store.find_by_id(claims["sub"])
        if principal is None:
            raise NotFound("Principal not found.")
        if principal.is_verified:
            return Outcome("Email already verified.")
        self._store.update_by_id(principal.id, is_verified=True)
        logger.info("Principal %s verified email", principal.id)
        return Outcome("Email verified successfully.")

    async def resend_verification(self, email: str) -> Outcome:
        """Re-send the verify token. Same outcome whether or not the email exists [A1]."""
        try:
            principal = self._store.find_by_email(email)
            if principal is not None and not principal.is_verified:
                await self._send_verification(principal)
        except Exception:
            logger.exception("Resend verification failed")
        return Outcome(_RESEND_MESSAGE)

    # ------------------------------------------------------------------
    # Login and refresh
    # ------------------------------------------------------------------

    async def login(self, email: str, password: str) -> TokenPair:
        """Authenticate with email and password and return a fresh token pair [A1][A2].

        bcrypt and the store calls run in a worker thread so the event loop is
        not blocked.
        """
        return await asyncio.to_thread(self.authenticate, email, password)

    def authenticate(self, email: str, password: str) -> TokenPair:
        """Synchronous password login. Sync routes call this directly."""
        principal = self._store.find_by_email(email)
        if principal is None:
            burn_password_check(password)
            raise Unauthorized(_BAD_CREDENTIALS)

        now = _utcnow()
        if principal.is_locked(now):
            logger.warning("Login refused for locked principal %s", principal.id)
            raise AccountLocked(principal.lock_until)

        if principal.hashed_password is None:
            burn_password_check(password)
            self._record_failed_login(principal, now)
            raise Unauthorized(_BAD_CREDENTIALS)
        if not verify_password(password, principal.hashed_password):
            self._record_failed_login(principal, now)
            raise Unauthorized(_BAD_CREDENTIALS)

        if principal.is_banned:
            raise Forbidden("Account has been banned. Please contact support.")
        if not principal.is_verified:
            raise Forbidden("Email not verified. Please check your inbox.")

        if principal.failed_login_attempts or principal.lock_until is not None:
            self._store.update_by_id(principal.id, failed_login_attempts=0, lock_until=None)
        return self.issue_tokens_for_user(principal.id)

    async def refresh(self, refresh_token: str) -> TokenPair:
        """Exchange a live refresh token for a new pair, superseding the old one [A3][A4]."""
        claims = self._tokens.verify(TokenPurpose.REFRESH, refresh_token)
        principal = self._store.find_by_id(claims["sub"])
        if principal is None:
            raise Unauthorized("Invalid refresh token.")
        if principal.is_banned:
            raise Forbidden("Account has been banned.")
        if not principal.is_verified:
            raise Forbidden("Email not verified.")
        if issued_before(claims, principal.password_changed_at):
            raise Unauthorized("Token expired due to password change.")
        if not principal.refresh_token or not hmac.compare_digest(principal.refresh_token, refresh_token):
            logger.warning("Superseded refresh token presented for principal %s", principal.id)
            raise Unauthorized("Refresh token has been revoked.")
        return self.issue_tokens_for_user(principal.id)

    async def logout(self, principal_id: str) -> Outcome:
        """Drop the stored refresh token so the outstanding one can no longer be used."""
        if not self._store.update_by_id(principal_id, refresh_token=None):
            raise NotFound("Principal not found.")
        return Outcome("Logged out.")

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    async def forgot_password(self, email: str) -> Outcome:
        """Mail a reset token if the email exists. Same outcome either way [A1]."""
        try:
            principal = self._store.find_by_email(email)
            if principal is not None:
                token = self._tokens.sign(TokenPurpose.RESET, {"sub": principal.id})
                await self._mailer.send_password_reset_email(principal.email, token)
        except Exception:
            logger.exception("Forgot-password processing failed")
        return Outcome(_FORGOT_MESSAGE)

    async def reset_password(self, token: str, new_password: str) -> Outcome:
        """Set a new password from a reset token and invalidate every earlier token [A4]."""
        claims = self._tokens.verify(TokenPurpose.RESET, token)
        principal = self._store.find_by_id(claims["sub"])
        if principal is None:
            raise NotFound("Principal not found.")
        self._store.update_by_id(
            principal.id,
            hashed_password=hash_password(new_password),
            password_changed_at=_utcnow(),
            refresh_token=None,
            failed_login_attempts=0,
            lock_until=None,
        )
        logger.info("Password reset for principal %s", principal.id)
        return Outcome("Password reset successfully.")

    # ------------------------------------------------------------------
    # Profile and deletion
    # ------------------------------------------------------------------

    def get_me(self, principal_id: str) -> dict:
        """Return the principal's profile without secret fields."""
        principal, access = self._rbac.resolve_for_id(principal_id)
        if principal.is_banned:
            raise Forbidden("Account has been banned. Please contact support.")
        return {
            "id": principal.id,
            "kind": principal.kind.value,
            "email": principal.email,
            "username": principal.username,
            "first_name": principal.first_name,
            "last_name": principal.last_name,
            "phone_number": principal.phone_number,
            "is_verified": principal.is_verified,
            "roles": access.role_names,
            "permissions": access.permissions,
            "providers": principal.linked_providers(),
            "created_at": principal.created_at,
        }

    async def delete_account(self, principal_id: str) -> Outcome:
        """Hard-delete a principal. Raises NotFound if it does not exist."""
        if not self._store.delete_by_id(principal_id):
            raise NotFound("Principal not found.")
        logger.info("Deleted principal %s", principal_id)
        return Outcome("Account deleted successfully.")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _record_failed_login(self, principal: Principal, now: datetime) -> None:
        attempts = principal.failed_login_attempts + 1
        if attempts >= self.max_failed_attempts:
            lock_until = now + self.lock_duration
            self._store.update_by_id(principal.id, failed_login_attempts=0, lock_until=lock_until)
            logger.warning("Principal %s locked until %s after %d failed logins", principal.id, lock_until, attempts)
        else:
            self._store.update_by_id(principal.id, failed_login_attempts=attempts, lock_until=None)

    async def _send_verification(self, principal: Principal) -> tuple[bool, str | None]:
        """Mail a verify token. Returns (sent, error) and never raises for delivery failures."""
        token = self._tokens.sign(TokenPurpose.VERIFY, {"sub": principal.id})
        try:
            await self._mailer.send_verification_email(principal.email, token)
        except Exception as exc:
            logger.error("Failed to send verification email for principal %s: %s", principal.id, exc)
            return False, "Verification email could not be sent. You can request a new one later."
        return True, None
