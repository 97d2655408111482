"""
api/routes/v1/auth.py -- Credential lifecycle and federated login REST endpoints.

Routes:
  POST   /api/v1/auth/register              -- create unverified account, mail verify link
  POST   /api/v1/auth/login                 -- password login; token pair + refresh cookie
  POST   /api/v1/auth/refresh-token         -- rotate refresh token (body or cookie)
  POST   /api/v1/auth/logout                -- revoke stored refresh token (requires auth)
  POST   /api/v1/auth/verify-email          -- consume verify token
  POST   /api/v1/auth/resend-verification   -- generic response, mails a new verify link
  POST   /api/v1/auth/forgot-password       -- generic response, mails a reset link
  POST   /api/v1/auth/reset-password        -- consume reset token, set new password
  GET    /api/v1/auth/me                    -- current principal profile (requires auth)
  DELETE /api/v1/auth/account               -- delete own account (requires auth)
  POST   /api/v1/auth/oauth/{provider}      -- federated login (google, google-code, microsoft, facebook)
  GET    /api/v1/auth/oauth/providers       -- configured providers (public)

Security:
  [H2] POST /login is rate-limited per IP (LOGIN_RATE_LIMIT, default 10/minute).
  [M5] Cache-Control: no-store on every response that carries tokens.
  The refresh token is also written as an httpOnly cookie so browser clients
  never handle it in JS; API clients may send it in the body instead.

Handlers raise core errors; api/main.py renders them as the standard envelope.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_rate_limit
from api.models import (
    EmailRequest,
    LoginRequest,
    MeResponse,
    MessageResponse,
    OAuthProviderInfo,
    OAuthRequest,
    RefreshRequest,
    RegisterRequest,
    RegisterResponse,
    ResetPasswordRequest,
    TokenRequest,
    TokenResponse,
)
from auth.credentials import CredentialService
from auth.dependencies import get_current_principal
from auth.models import Principal, TokenPair
from auth.providers import enabled_providers
from auth.tokens import TokenPurpose, set_refresh_cookie
from core.errors import NotFound, Unauthorized

# Auth policy:
# - register, login, refresh-token, verify-email, resend-verification,
#   forgot-password, reset-password, oauth/*: public
# - logout, me, account: requires auth (get_current_principal)
router = APIRouter()


def _credentials(request: Request) -> CredentialService:
    return request.app.state.credentials


def _token_response(request: Request, pair: TokenPair) -> JSONResponse:
    """Render a token pair as JSON and mirror the refresh token into its cookie."""
    tokens = request.app.state.tokens
    resp = JSONResponse(
        content=TokenResponse(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=int(tokens.lifetime(TokenPurpose.ACCESS).total_seconds()),
        ).model_dump()
    )
    set_refresh_cookie(
        resp,
        pair.refresh_token,
        max_age=int(tokens.lifetime(TokenPurpose.REFRESH).total_seconds()),
        secure=request.app.state.settings.secure_cookies,
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Registration and verification
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=RegisterResponse, status_code=201)
async def register(request: Request, body: RegisterRequest) -> RegisterResponse:
    """Create an account. email_sent=False means the verify link must be re-requested."""
    result = await _credentials(request).register(
        email=body.email,
        password=body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        username=body.username,
        phone_number=body.phone_number,
    )
    return RegisterResponse(
        id=result.id, email=result.email, email_sent=result.email_sent, email_error=result.email_error
    )


@router.post("/auth/verify-email", response_model=MessageResponse)
async def verify_email(request: Request, body: TokenRequest) -> MessageResponse:
    outcome = await _credentials(request).verify_email(body.token)
    return MessageResponse(message=outcome.message)


@router.post("/auth/resend-verification", response_model=MessageResponse)
async def resend_verification(request: Request, body: EmailRequest) -> MessageResponse:
    outcome = await _credentials(request).resend_verification(body.email)
    return MessageResponse(message=outcome.message)


# ---------------------------------------------------------------------------
# Login / refresh / logout
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=TokenResponse)
@limiter.limit(login_rate_limit)  # [H2]
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password.

    Unknown email and wrong password return the same 401 so the response
    does not reveal whether an account exists.

    Plain def so bcrypt runs in the threadpool, off the event loop.
    """
    pair = _credentials(request).authenticate(body.email, body.password)
    return _token_response(request, pair)


@router.post("/auth/refresh-token", response_model=TokenResponse)
async def refresh_token(request: Request, body: RefreshRequest | None = None) -> JSONResponse:
    """Exchange the live refresh token for a new pair. The presented token is superseded."""
    token = (body.refresh_token if body else None) or request.cookies.get("refresh_token")
    if not token:
        raise Unauthorized("Refresh token missing.")
    pair = await _credentials(request).refresh(token)
    return _token_response(request, pair)


@router.post("/auth/logout", response_model=MessageResponse)
async def logout(request: Request, principal: Principal = Depends(get_current_principal)) -> JSONResponse:
    """Revoke the stored refresh token and clear the cookie."""
    outcome = await _credentials(request).logout(principal.id)
    resp = JSONResponse(content=MessageResponse(message=outcome.message).model_dump())
    resp.delete_cookie("refresh_token", path="/")
    return resp


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


@router.post("/auth/forgot-password", response_model=MessageResponse)
async def forgot_password(request: Request, body: EmailRequest) -> MessageResponse:
    outcome = await _credentials(request).forgot_password(body.email)
    return MessageResponse(message=outcome.message)


@router.post("/auth/reset-password", response_model=MessageResponse)
async def reset_password(request: Request, body: ResetPasswordRequest) -> MessageResponse:
    outcome = await _credentials(request).reset_password(body.token, body.new_password)
    return MessageResponse(message=outcome.message)


# ---------------------------------------------------------------------------
# Current principal
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
async def me(request: Request, principal: Principal = Depends(get_current_principal)) -> MeResponse:
    return MeResponse(**_credentials(request).get_me(principal.id))


@router.delete("/auth/account", response_model=MessageResponse)
async def delete_account(request: Request, principal: Principal = Depends(get_current_principal)) -> JSONResponse:
    outcome = await _credentials(request).delete_account(principal.id)
    resp = JSONResponse(content=MessageResponse(message=outcome.message).model_dump())
    resp.delete_cookie("refresh_token", path="/")
    return resp


# ---------------------------------------------------------------------------
# Federated login
# ---------------------------------------------------------------------------


@router.get("/auth/oauth/providers", response_model=list[OAuthProviderInfo])
async def list_providers(request: Request) -> list[OAuthProviderInfo]:
    """Return the configured identity providers.

    Public endpoint -- the login page calls this to decide which provider
    buttons to render. Returns an empty list if no provider is configured.
    """
    return [OAuthProviderInfo(**p) for p in enabled_providers(request.app.state.adapters)]


@router.post("/auth/oauth/{provider}", response_model=TokenResponse)
async def oauth_login(request: Request, provider: str, body: OAuthRequest) -> JSONResponse:
    """Log in with a provider credential, creating the account on first use."""
    adapter = request.app.state.adapters.get(provider)
    if adapter is None:
        raise NotFound(f"Identity provider {provider!r} is not enabled.")
    pair = await request.app.state.oauth.authenticate(adapter, body.credential)
    return _token_response(request, pair)
