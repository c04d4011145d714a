"""
api/routes/v1/oauth.py -- OAuth login, link, and callback endpoints.

Routes:
  GET /api/v1/auth/{provider}/login?platform=mobile|web   -- 302 to the provider
  GET /api/v1/auth/{provider}/link?platform=mobile|web    -- 302 to the provider (requires auth)
  GET /api/v1/auth/{provider}/callback?code=..&state=..   -- tokens (JSON) or 302 to the client

The handlers are thin: every decision lives in auth.oauth.OAuthFlow, which
raises AuthError subclasses rendered by the handler in api/main.py.

Security:
  The state token is the CSRF defence for the authorization code flow. It is
  random, short-lived, single-use, and bound to the provider it was issued
  for. No session cookie is involved.
  [M5] Cache-Control: no-store on the provider redirects and token responses.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import RedirectResponse
from starlette.responses import Response

from auth.dependencies import get_current_identity
from auth.models import Identity
from auth.oauth import OAuthFlow

# Auth policy:
# - GET /api/v1/auth/{provider}/login:     public
# - GET /api/v1/auth/{provider}/link:      requires auth (get_current_identity)
# - GET /api/v1/auth/{provider}/callback:  public -- authenticated by the state token
router = APIRouter()


def _redirect(url: str) -> RedirectResponse:
    resp = RedirectResponse(url, status_code=302)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.get("/auth/{provider}/login")
def oauth_login(request: Request, provider: str, platform: Optional[str] = None) -> RedirectResponse:
    """Start an OAuth login or first-time signup with the provider."""
    flow: OAuthFlow = request.app.state.oauth_flow
    return _redirect(flow.begin_login(provider, platform))


@router.get("/auth/{provider}/link")
def oauth_link(
    request: Request,
    provider: str,
    platform: Optional[str] = None,
    identity: Identity = Depends(get_current_identity),
) -> RedirectResponse:
    """Start linking the provider to the authenticated account.

    The acting user id is captured in the state token here, so the callback
    does not depend on the access token still being present.
    """
    flow: OAuthFlow = request.app.state.oauth_flow
    return _redirect(flow.begin_link(provider, platform, identity))


@router.get("/auth/{provider}/callback", name="oauth_callback")
def oauth_callback(
    request: Request,
    provider: str,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
) -> Response:
    """Complete the flow: validate state, exchange code, reconcile, issue tokens."""
    flow: OAuthFlow = request.app.state.oauth_flow
    return flow.handle_callback(provider, code=code, state=state, error=error)
