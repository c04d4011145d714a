"""
api/routes/v1/users.py -- Endpoints about the authenticated caller.

Routes:
  GET /api/v1/user/me         -- identity from the access token claims (requires auth)
  GET /api/v1/user/providers  -- OAuth providers linked to the caller (requires auth)
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.models import LinkedProviderResponse, MeResponse
from auth.dependencies import get_current_identity
from auth.models import Identity
from auth.store import UserStore

router = APIRouter()


@router.get("/user/me", response_model=MeResponse)
def me(identity: Identity = Depends(get_current_identity)) -> MeResponse:
    return MeResponse.from_identity(identity)


@router.get("/user/providers", response_model=list[LinkedProviderResponse])
def linked_providers(
    request: Request,
    identity: Identity = Depends(get_current_identity),
) -> list[LinkedProviderResponse]:
    """List the caller's provider links, oldest first."""
    user_store: UserStore = request.app.state.user_store
    return [LinkedProviderResponse.from_link(link) for link in user_store.list_auth_provider_links(identity.id)]
