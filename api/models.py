"""
API request and response models for the auth core REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from typing import Annotated, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, EmailStr, Field

from auth.tokens import MAX_PASSWORD_BYTES


def _fits_bcrypt(value: str) -> str:
    # bcrypt limit is in bytes; multibyte characters count more than once
    if len(value.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise ValueError(f"password must be at most {MAX_PASSWORD_BYTES} bytes when UTF-8 encoded")
    return value


_Password = Annotated[str, Field(min_length=6, max_length=MAX_PASSWORD_BYTES), AfterValidator(_fits_bcrypt)]


# ---------------------------------------------------------------------------
# Error envelope
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Every error response body: {"error": {"code", "message", "detail"?}}."""

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str]


class MessageResponse(BaseModel):
    ok: bool = True
    message: str


# ---------------------------------------------------------------------------
# Auth requests
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr
    password: _Password
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    username: Optional[str] = Field(default=None, min_length=3, max_length=64, pattern=r"^[A-Za-z0-9._-]+$")
    phone_number: Optional[str] = Field(default=None, min_length=6, max_length=20, pattern=r"^\+?[0-9 -]+$")


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1, max_length=72)


class RefreshRequest(BaseModel):
    """Body for POST /auth/refresh-token. The refresh_token cookie is used when omitted."""

    refresh_token: Optional[str] = None


class TokenRequest(BaseModel):
    token: str = Field(min_length=1)


class EmailRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    token: str = Field(min_length=1)
    new_password: _Password


class OAuthRequest(BaseModel):
    """Provider credential: an ID token, an access token, or an authorization code."""

    credential: str = Field(min_length=1)


# ---------------------------------------------------------------------------
# Auth responses
# ---------------------------------------------------------------------------


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


class RegisterResponse(BaseModel):
    ok: bool = True
    id: str
    email: str
    email_sent: bool
    email_error: Optional[str] = None


class MeResponse(BaseModel):
    id: str
    kind: str
    email: str
    username: str
    first_name: str
    last_name: str
    phone_number: Optional[str]
    is_verified: bool
    roles: list[str]
    permissions: list[str]
    providers: list[str]
    created_at: Optional[str]


class OAuthProviderInfo(BaseModel):
    name: str
    label: str


# ---------------------------------------------------------------------------
# Admin requests / responses
# ---------------------------------------------------------------------------


class PermissionCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=100, pattern=r"^[a-z0-9_.-]+(:[a-z0-9_.-]+)*$")
    category: Optional[str] = Field(default=None, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)


class PermissionPatch(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100, pattern=r"^[a-z0-9_.-]+(:[a-z0-9_.-]+)*$")
    category: Optional[str] = Field(default=None, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)


class PermissionResponse(BaseModel):
    id: str
    name: str
    category: Optional[str]
    description: Optional[str]


class RoleCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    permission_ids: list[str] = Field(default_factory=list)


class RolePatch(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)


class RolePermissionsUpdate(BaseModel):
    permission_ids: list[str]


class RoleResponse(BaseModel):
    id: str
    name: str
    description: Optional[str]
    permission_ids: list[str]


class PrincipalRolesUpdate(BaseModel):
    role_ids: list[str]


class AdminPrincipalCreate(BaseModel):
    """Body for POST /admin/users. The principal is created already verified."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr
    password: _Password
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    username: Optional[str] = Field(default=None, min_length=3, max_length=64, pattern=r"^[A-Za-z0-9._-]+$")
    role_ids: list[str] = Field(default_factory=list)


class PrincipalResponse(BaseModel):
    id: str
    kind: str
    email: str
    username: str
    first_name: str
    last_name: str
    is_verified: bool
    is_banned: bool
    role_ids: list[str]
    providers: list[str]
    locked_until: Optional[str] = None
    created_at: Optional[str]
