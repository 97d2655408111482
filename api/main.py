"""
api/main.py -- FastAPI application entry point for the auth core.

Run with:  uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. CORSMiddleware    -- adds CORS headers for the configured frontend origin
  2. SlowAPIMiddleware -- enforces per-route rate limits from api.limiter

Lifespan opens the Principal Store, seeds the default roles and permissions,
and wires every service onto app.state (see wire_services()). Shutdown
disposes the store's engine.

Every error leaves the API in one envelope:
    {"error": {"code": "...", "message": "...", "detail": "..."}}
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.admin import router as admin_router
from api.routes.v1.auth import router as auth_router
from auth.admin import AdminService
from auth.credentials import CredentialService
from auth.dependencies import AdminRoleCache
from auth.mail import Mailer, SmtpMailer
from auth.oauth import OAuthOrchestrator
from auth.providers import IdentityProviderAdapter, build_adapters
from auth.rbac import RbacResolver
from auth.store import PrincipalStore
from auth.tokens import TokenService
from core.config import Settings, get_settings
from core.errors import AuthCoreError

API_VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("authcore.api")


# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def wire_services(
    app: FastAPI,
    settings: Settings,
    store: PrincipalStore,
    mailer: Mailer,
    adapters: dict[str, IdentityProviderAdapter],
) -> None:
    """Seed bootstrap data and attach every service to app.state.

    Shared by the real lifespan and the test lifespan so both run the same
    object graph; only the store, mailer and adapters differ.
    """
    store.seed_defaults(settings.default_role_name, settings.admin_role_name)
    tokens = TokenService.from_settings(settings)
    rbac = RbacResolver(store)
    credentials = CredentialService.from_settings(settings, store, tokens, rbac, mailer)

    app.state.settings = settings
    app.state.store = store
    app.state.tokens = tokens
    app.state.rbac = rbac
    app.state.credentials = credentials
    app.state.oauth = OAuthOrchestrator(store, credentials, settings.default_role_name)
    app.state.admin = AdminService(store, settings.default_role_name)
    app.state.admin_role_cache = AdminRoleCache(store, settings.admin_role_name)
    app.state.adapters = adapters


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open the store and wire services on startup; dispose the store on shutdown.

    Settings validation runs first: a production process without signing
    secrets fails here rather than on the first request.
    """
    settings = get_settings()
    logger.info("Auth core API starting up")
    store = PrincipalStore(settings.database_url)
    wire_services(app, settings, store, SmtpMailer(settings), build_adapters(settings))
    logger.info("Auth core initialized (%d identity providers)", len(app.state.adapters))

    yield

    store.close()
    logger.info("Auth core API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Auth Core API",
    description="Token issuance, role-based access control, password and federated login.",
    version=API_VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[get_settings().frontend_url],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(admin_router, prefix="/api/v1", tags=["Admin"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(
            exclude_none=True
        ),
    )


@app.exception_handler(AuthCoreError)
async def auth_core_error_handler(request: Request, exc: AuthCoreError) -> JSONResponse:
    """Render a core error with its own status and code.

    Opaque errors (configuration, internal) are logged with the real cause
    and reach the client only as a generic message.
    """
    if not exc.expose:
        logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message, exc_info=exc)
        return _error(exc.status_code, exc.code, exc.public_message())
    return _error(exc.status_code, exc.code, exc.message, exc.detail)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with Retry-After so clients know how long to back off."""
    retry_after = int(getattr(exc, "retry_after", 60))
    logger.warning("Rate limit exceeded on %s from %s", request.url.path, request.client.host if request.client else "unknown")
    response = _error(429, "rate_limited", "Too many requests.", str(exc.detail))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    fields = ", ".join(".".join(str(p) for p in err.get("loc", ())) for err in exc.errors())
    return _error(422, "validation_error", "Request validation failed.", fields or None)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Unknown routes and wrong methods reach here; render them in the same envelope."""
    return _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
async def health(request: Request) -> HealthResponse:
    """Return API liveness, version and whether the store answers."""
    try:
        request.app.state.store.ping()
    except SQLAlchemyError:
        logger.exception("Health check: store unavailable")
        return HealthResponse(status="degraded", version=API_VERSION, components={"app": "ok", "database": "error"})
    return HealthResponse(version=API_VERSION, components={"app": "ok", "database": "ok"})
