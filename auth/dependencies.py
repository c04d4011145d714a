"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two transports are checked in priority order by TokenIssuer.extract_identity():
  1. JWT cookie ("access_token") -- set by login, signup, and OAuth callbacks.
  2. Authorization: Bearer <token> header -- mobile and API clients.

The identity is rebuilt from the access token's claims alone; no database
read happens on the authenticated path.

try_get_current_identity() is the soft variant (returns None on failure).
get_current_identity() wraps it and raises HTTP 401 if unauthenticated.

Layer rule: no imports from api/ or core/.
  auth/dependencies.py may import from fastapi (for HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.models import Identity


def try_get_current_identity(request: Request) -> Identity | None:
    """Return the caller's Identity, or None. Never raises."""
    issuer = request.app.state.token_issuer
    return issuer.extract_identity(request)


def get_current_identity(request: Request) -> Identity:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(identity: Identity = Depends(get_current_identity)): ...
    """
    identity = try_get_current_identity(request)
    if identity is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return identity
