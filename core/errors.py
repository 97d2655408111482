"""
core/errors.py -- Typed error taxonomy shared by the auth core and the API.

Every failure the core reports to a caller is an AuthCoreError subclass. Each
class carries the HTTP status and machine-readable code the API layer uses to
build the standard error envelope, so auth/ never imports fastapi to raise
HTTPException and api/ never has to guess a status from a message string.

ConfigurationError and InternalError are opaque: their message is replaced
by a generic one at the API boundary and the real detail goes to the log.

DuplicateKey is NOT an AuthCoreError. It is the store contract's way of
reporting a uniqueness violation; services decide what it means (Conflict on
registration, retry-by-lookup on the federated race path).

Layer rule: core/ is the kernel. No imports from api/ or auth/.
"""

from __future__ import annotations

from datetime import datetime


class AuthCoreError(Exception):
    """Base class for every error the auth core surfaces to callers."""

    status_code: int = 500
    code: str = "error"
    default_message: str = "Request failed."
    # Opaque errors never expose their message to clients.
    expose: bool = True

    def __init__(self, message: str | None = None, *, detail: str | None = None) -> None:
        self.message = message or self.default_message
        self.detail = detail
        super().__init__(self.message)

    def public_message(self) -> str:
        return self.message if self.expose else self.default_message


class BadRequest(AuthCoreError):
    status_code = 400
    code = "bad_request"
    default_message = "Bad request."


class Unauthorized(AuthCoreError):
    status_code = 401
    code = "unauthorized"
    default_message = "Authentication required."


class InvalidToken(Unauthorized):
    code = "invalid_token"
    default_message = "Invalid token."


class ExpiredToken(Unauthorized):
    code = "token_expired"
    default_message = "Token has expired."


class WrongPurpose(Unauthorized):
    code = "wrong_token_purpose"
    default_message = "Token is not valid for this operation."


class Forbidden(AuthCoreError):
    status_code = 403
    code = "forbidden"
    default_message = "Access denied."


class AccountLocked(Forbidden):
    """Raised while a principal's lock-until timestamp lies in the future."""

    code = "account_locked"
    default_message = "Account is temporarily locked."

    def __init__(self, locked_until: datetime) -> None:
        self.locked_until = locked_until
        super().__init__(
            f"Account is temporarily locked until {locked_until.isoformat()}.",
            detail=locked_until.isoformat(),
        )


class NotFound(AuthCoreError):
    status_code = 404
    code = "not_found"
    default_message = "Resource not found."


class Conflict(AuthCoreError):
    status_code = 409
    code = "conflict"
    default_message = "Resource already exists."


class ConfigurationError(AuthCoreError):
    """Missing signing secret, bad duration, or unseeded bootstrap data.

    Fatal for the request and a sign the process was started without the
    configuration it needs.
    """

    code = "configuration_error"
    default_message = "Server configuration error."
    expose = False


class InternalError(AuthCoreError):
    code = "internal_error"
    default_message = "An unexpected error occurred."
    expose = False


class DuplicateKey(Exception):
    """A store write violated a uniqueness constraint.

    field is the violated column when the backend reports it ("email",
    "username", ...), otherwise None.
    """

    def __init__(self, field: str | None = None) -> None:
        self.field = field
        super().__init__(f"Duplicate key{f' on {field}' if field else ''}")
