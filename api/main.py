"""
api/main.py -- FastAPI application entry point for the task manager identity service.

Exposes local signup/login, OAuth login and account linking (Google, GitHub),
token refresh, and caller information over HTTP.

Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan builds every collaborator once and stores it on app.state:

  settings -> UserStore -> TokenIssuer -> StateStore -> providers
           -> AccountReconciler -> TokenResponder -> OAuthFlow

Nothing in auth/ reaches for a module-level singleton; routes read their
collaborators from request.app.state. Shutdown cancels the sweep task and
disposes the database engine.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.oauth import router as oauth_router
from api.routes.v1.users import router as users_router
from auth.dependencies import get_current_identity
from auth.errors import AuthError
from auth.issuance import TokenResponder
from auth.models import Identity
from auth.oauth import OAuthFlow
from auth.providers import build_providers
from auth.reconcile import AccountReconciler
from auth.state import StateStore
from auth.store import DuplicateRecordError, StoreError, UserStore
from auth.tokens import TokenIssuer
from core.config import get_settings

API_VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("taskmanager.api")

# ---------------------------------------------------------------------------
# Background sweep task
# ---------------------------------------------------------------------------


async def _sweep_loop(app: FastAPI) -> None:
    """Drop expired state tokens and refresh-token ids on a fixed interval.

    Runs as a background asyncio task started in lifespan startup.
    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly. A failing sweep is
    logged and the loop keeps going.
    """
    interval = app.state.settings.oauth_state_sweep_seconds
    while True:
        await asyncio.sleep(interval)
        try:
            states = app.state.state_store.sweep()
            refresh_ids = app.state.token_issuer.prune_expired()
        except Exception:
            logger.exception("Sweep failed")
            continue
        if states or refresh_ids:
            logger.info("Sweep removed %d state tokens, %d refresh token ids", states, refresh_ids)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the identity collaborators on startup, release them on shutdown.

    Everything before yield runs on startup; everything after yield runs on
    shutdown. Construction order follows the dependencies: the reconciler
    needs the store, the responder needs the issuer, and the flow needs all
    of them. The sweep task starts last because it reads the state store and
    the issuer from app.state.
    """
    # Startup
    logger.info("Identity API starting up")
    settings = get_settings()
    app.state.settings = settings

    app.state.user_store = UserStore(settings.database_url)
    app.state.token_issuer = TokenIssuer(
        settings.secret_key,
        access_ttl_seconds=settings.access_token_expire_seconds,
        refresh_ttl_seconds=settings.refresh_token_expire_seconds,
    )
    app.state.state_store = StateStore(ttl_seconds=settings.oauth_state_ttl_seconds)
    providers = build_providers(settings)
    app.state.token_responder = TokenResponder(
        app.state.token_issuer,
        mobile_template=settings.oauth_mobile_deeplink_template,
        web_template=settings.oauth_web_redirect_template,
        secure_cookies=settings.secure_cookies,
    )
    app.state.oauth_flow = OAuthFlow(
        providers=providers,
        state_store=app.state.state_store,
        reconciler=AccountReconciler(app.state.user_store),
        responder=app.state.token_responder,
    )
    logger.info("Auth initialized (providers=%s)", ",".join(sorted(providers)) or "none")
    app.state.sweep_task = asyncio.create_task(_sweep_loop(app))

    yield

    # Shutdown
    app.state.sweep_task.cancel()
    app.state.user_store.close()
    logger.info("Identity API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Task Manager Identity API",
    description="Local accounts, OAuth login and account linking, JWT issuance.",
    version=API_VERSION,
    lifespan=lifespan,
    # Built-in /docs and /redoc are replaced by auth-protected equivalents below.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI. Host and origin lists come from settings.
# ---------------------------------------------------------------------------

_settings = get_settings()

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=_settings.allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Request logging middleware
#
# Every request passes through this coroutine before reaching a route. The
# request id is taken from X-Request-ID when the caller sends one, generated
# otherwise, and echoed on the response so client and server logs line up.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID", "").strip()[:64] or uuid.uuid4().hex
    request.state.request_id = request_id
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    response.headers["X-Request-ID"] = request_id
    logger.info(
        "%s %s %d %.1fms %s rid=%s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
        request_id,
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
#
# auth_router before oauth_router: the literal /auth/providers path must be
# matched before the /auth/{provider}/... templates are considered.
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(oauth_router, prefix="/api/v1", tags=["OAuth"])
app.include_router(users_router, prefix="/api/v1", tags=["User"])


# ---------------------------------------------------------------------------
# Auth-protected API documentation
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
async def docs(identity: Identity = Depends(get_current_identity)):
    """Swagger UI -- requires authentication."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="Task Manager Identity API")


@app.get("/redoc", include_in_schema=False)
async def redoc(identity: Identity = Depends(get_current_identity)):
    """ReDoc UI -- requires authentication."""
    return get_redoc_html(openapi_url="/openapi.json", title="Task Manager Identity API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error_response(status_code: int, code: str, message: str, details: dict | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, details=details)).model_dump(),
    )


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render identity-flow failures.

    exc.debug carries raw provider or database text. It goes to the server
    log only, never into the response body.
    """
    level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        level,
        "%s %s -> %d %s: %s%s",
        request.method,
        request.url.path,
        exc.status_code,
        exc.code,
        exc.message,
        f" [{exc.debug}]" if exc.debug else "",
    )
    response = _error_response(exc.status_code, exc.code, exc.message, exc.details)
    response.headers["Cache-Control"] = "no-store"
    return response


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError) -> JSONResponse:
    """Storage failures that escaped a route without being translated."""
    if isinstance(exc, DuplicateRecordError):
        logger.warning("Duplicate record on %s %s: %r", request.method, request.url.path, exc.__cause__ or exc)
        return _error_response(409, "conflict", "Resource already exists.")
    logger.error("Storage failure on %s %s: %r", request.method, request.url.path, exc.__cause__ or exc)
    return _error_response(500, "database_error", "database error")


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded.

    Retry-After tells clients how many seconds to wait before retrying.
    """
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error_response(429, "rate_limited", "Too many requests.", {"limit": str(exc.detail)})
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with the offending fields when the body or query fails validation."""
    fields = {".".join(str(p) for p in err.get("loc", ()) if p != "body"): err.get("msg", "") for err in exc.errors()}
    return _error_response(422, "validation_error", "Request validation failed.", {"fields": fields})


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Dependencies raise HTTPException with a dict detail ({"code", "message"}).
    When detail is already a structured dict, use it directly as the error
    field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": {"details": None, **exc.detail}},
        )
    return _error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    Security note: the raw exception is written to the log only, never to the
    response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py so it is always reachable regardless of router
# registration state. No rate limit applied.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"], response_model=HealthResponse)
def health(request: Request) -> JSONResponse:
    """Return liveness, version, and database reachability.

    503 with status "degraded" when the database does not answer.
    """
    db_ok = request.app.state.user_store.ping()
    body = HealthResponse(
        status="healthy" if db_ok else "degraded",
        version=API_VERSION,
        components={"app": "ok", "database": "ok" if db_ok else "error"},
    )
    return JSONResponse(status_code=200 if db_ok else 503, content=body.model_dump())
