"""
api/routes/v1/auth.py -- Local account authentication endpoints.

Routes:
  POST /api/v1/auth/signup     -- create email/password account; returns tokens
  POST /api/v1/auth/login      -- password login; returns tokens, sets cookies
  POST /api/v1/auth/refresh    -- rotate the refresh token; returns a new pair
  POST /api/v1/auth/logout     -- revoke the refresh token, clear cookies (requires auth)
  GET  /api/v1/auth/providers  -- list configured OAuth providers (public)

Security:
  [H2] POST /login and POST /signup are rate-limited per IP (LOGIN_RATE_LIMIT,
       SIGNUP_RATE_LIMIT).
  [C1] authenticate_user() provides timing equalization -- use it, never inline.
  [M5] Cache-Control: no-store on every response that carries tokens.
  Refresh tokens are single-use. Presenting a rotated or revoked token is 401.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from starlette.responses import Response

from api.limiter import limiter, login_limit, signup_limit
from api.models import LoginRequest, LogoutResponse, OAuthProviderInfo, RefreshRequest, SignupRequest, TokenResponse
from auth.dependencies import get_current_identity
from auth.errors import ConflictError, UnauthorizedError
from auth.issuance import TokenResponder
from auth.models import Identity, Provider, User, UserType
from auth.store import DuplicateRecordError, UserStore
from auth.tokens import REFRESH_COOKIE, TokenIssuer, authenticate_user, clear_auth_cookies, hash_password
from core.config import get_settings

logger = logging.getLogger("taskmanager.api.auth")

# Auth policy:
# - POST /api/v1/auth/signup:     public -- account creation
# - POST /api/v1/auth/login:      public -- login endpoint must be unauthenticated
# - POST /api/v1/auth/refresh:    public -- the refresh token itself is the credential
# - POST /api/v1/auth/logout:     requires auth (get_current_identity)
# - GET  /api/v1/auth/providers:  public -- clients call this to render OAuth buttons
router = APIRouter()


def _presented_refresh_token(request: Request, body: Optional[RefreshRequest]) -> str:
    if body is not None and body.refresh_token:
        return body.refresh_token.strip()
    return (request.cookies.get(REFRESH_COOKIE) or "").strip()


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(signup_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/signup", response_model=TokenResponse)
def signup(request: Request, body: SignupRequest) -> Response:
    """Create a local account and return a token pair.

    The user row and its password hash are written in one transaction. A
    duplicate email is reported as 409 whether it is caught by the lookup or
    by the UNIQUE constraint (two signups racing for one address).
    """
    user_store: UserStore = request.app.state.user_store
    responder: TokenResponder = request.app.state.token_responder

    if user_store.get_user_by_email(body.email) is not None:
        raise ConflictError("email already in use")

    password_hash = hash_password(body.password, rounds=get_settings().bcrypt_rounds)
    try:
        user = user_store.create_user_with_password(
            User(
                first_name=body.firstname,
                last_name=body.lastname,
                email=body.email,
                user_type=UserType.standard.value,
            ),
            password_hash,
        )
    except DuplicateRecordError as exc:
        raise ConflictError("email already in use") from exc

    logger.info("signup user_id=%s", user.id)
    return responder.respond(Identity.for_user(user, provider=Provider.local.value))


@limiter.limit(login_limit)  # [H2] brute-force mitigation -- must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=TokenResponse)
def login(request: Request, body: LoginRequest) -> Response:
    """Authenticate with email and password; return tokens and set cookies.

    Uses authenticate_user() which includes timing equalization [C1]. Do NOT
    inline get_user_by_email() + verify_password() -- that re-introduces the
    timing attack.

    Returns the same generic error for unknown email, OAuth-only account and
    wrong password ("bad_credentials") to avoid leaking account existence.
    """
    user_store: UserStore = request.app.state.user_store
    responder: TokenResponder = request.app.state.token_responder

    user = authenticate_user(user_store, body.email, body.password, rounds=get_settings().bcrypt_rounds)
    if user is None:
        raise UnauthorizedError("Invalid email or password.", code="bad_credentials")

    logger.info("login_local user_id=%s", user.id)
    return responder.respond(Identity.for_user(user, provider=Provider.local.value))


@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(request: Request, body: Optional[RefreshRequest] = None) -> Response:
    """Exchange a live refresh token for a new pair (rotation).

    The presented token is consumed even when the owning user has since been
    deleted, so it cannot be retried.
    """
    issuer: TokenIssuer = request.app.state.token_issuer
    user_store: UserStore = request.app.state.user_store
    responder: TokenResponder = request.app.state.token_responder

    token = _presented_refresh_token(request, body)
    claims = issuer.redeem_refresh_token(token) if token else None
    if claims is None:
        raise UnauthorizedError("invalid or expired refresh token", code="invalid_refresh_token")

    user = user_store.get_user_by_id(claims["sub"])
    if user is None:
        raise UnauthorizedError("invalid or expired refresh token", code="invalid_refresh_token")

    identity = Identity.for_user(
        user,
        provider=claims.get("provider") or Provider.local.value,
        avatar_url=claims.get("avatar", ""),
    )
    return responder.respond(identity)


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
def list_providers(request: Request) -> list[OAuthProviderInfo]:
    """Return the configured OAuth providers.

    Public endpoint. Returns an empty list if no provider credentials are set.
    """
    return [OAuthProviderInfo(**p) for p in request.app.state.oauth_flow.enabled_providers()]


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=LogoutResponse)
def logout(
    request: Request,
    body: Optional[RefreshRequest] = None,
    identity: Identity = Depends(get_current_identity),
) -> JSONResponse:
    """Revoke the presented refresh token and clear both auth cookies.

    The access token stays valid until it expires; it is short-lived and
    carries no server-side session to destroy.
    """
    issuer: TokenIssuer = request.app.state.token_issuer
    token = _presented_refresh_token(request, body)
    if token:
        issuer.revoke(token)

    resp = JSONResponse(content=LogoutResponse(message="Logged out.", user=identity.email).model_dump())
    clear_auth_cookies(resp)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp
