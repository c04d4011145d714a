"""
auth/oauth.py -- OAuth login/link flow orchestration.

OAuthFlow is the seam between the HTTP routes and the identity core. It is
built once in the application lifespan with every collaborator injected:

  providers   -- dict of configured ProviderClient adapters (auth/providers.py)
  state_store -- one-time state tokens (auth/state.py)
  reconciler  -- the login/signup/link decision engine (auth/reconcile.py)
  responder   -- token minting + JSON/redirect delivery (auth/issuance.py)

Entry points:
  begin_login(provider, platform)           -> provider authorization URL
  begin_link(provider, platform, identity)  -> provider authorization URL
  handle_callback(provider, code, state)    -> token response or redirect

Callback sequence:
  1. Consume the state token (one time). Missing, expired, replayed, forged,
     or issued for a different provider -> BadRequestError. The token is
     consumed before any network I/O so it cannot be replayed while the
     provider round trip is in flight.
  2. Exchange the code for a provider token  (failure -> UpstreamError).
  3. Fetch and normalize the profile          (failure -> UpstreamError).
  4. Reconcile according to the state's mode.
  5. Issue tokens.

Every step is synchronous; routes run in FastAPI's thread pool, so the
provider and database round trips of one request never block another.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
from typing import Optional

from starlette.responses import Response

from auth.errors import BadRequestError, NotFoundError, UnauthorizedError
from auth.issuance import TokenResponder, normalize_platform
from auth.models import FlowMode, Identity, StateData
from auth.providers import PROVIDER_CLASSES, ProviderClient
from auth.reconcile import AccountReconciler
from auth.state import StateStore

logger = logging.getLogger("taskmanager.auth.oauth")


class OAuthFlow:
    def __init__(
        self,
        providers: dict[str, ProviderClient],
        state_store: StateStore,
        reconciler: AccountReconciler,
        responder: TokenResponder,
    ) -> None:
        self.providers = providers
        self.state_store = state_store
        self.reconciler = reconciler
        self.responder = responder

    # ------------------------------------------------------------------
    # Provider metadata
    # ------------------------------------------------------------------

    def enabled_providers(self) -> list[dict]:
        """Return {"name", "label"} for every configured provider.

        Used by GET /api/v1/auth/providers so clients render only the buttons
        that will work.
        """
        return [{"name": p.name, "label": p.label} for p in self.providers.values()]

    def provider(self, name: str) -> ProviderClient:
        """Resolve a provider by name.

        Unknown names -> NotFoundError. Known but unconfigured (no client id
        or secret) -> BadRequestError, so a half-configured deployment answers
        with a client error instead of crashing.
        """
        if name not in PROVIDER_CLASSES:
            raise NotFoundError(f"Unknown provider: {name}")
        client = self.providers.get(name)
        if client is None:
            label = PROVIDER_CLASSES[name].label
            raise BadRequestError(f"{label} OAuth not configured", code="provider_not_configured")
        return client

    # ------------------------------------------------------------------
    # Flow entry points
    # ------------------------------------------------------------------

    def begin_login(self, provider: str, platform: Optional[str] = None) -> str:
        client = self.provider(provider)
        state = self.state_store.generate(
            StateData(platform=normalize_platform(platform), mode=FlowMode.login.value, provider=client.name)
        )
        return client.build_authorization_url(state)

    def begin_link(self, provider: str, platform: Optional[str], identity: Optional[Identity]) -> str:
        client = self.provider(provider)
        if identity is None or not identity.id:
            raise UnauthorizedError("unauthorized")
        state = self.state_store.generate(
            StateData(
                platform=normalize_platform(platform),
                mode=FlowMode.link.value,
                acting_user_id=identity.id,
                provider=client.name,
            )
        )
        return client.build_authorization_url(state)

    def handle_callback(
        self,
        provider: str,
        code: Optional[str],
        state: Optional[str],
        error: Optional[str] = None,
    ) -> Response:
        client = self.provider(provider)

        state_data = self.state_store.consume(state or "")
        if state_data is None:
            raise BadRequestError("Invalid state token")
        if state_data.provider and state_data.provider != client.name:
            raise BadRequestError(
                "Invalid state token",
                debug=f"state issued for {state_data.provider!r}, callback for {client.name!r}",
            )
        if error:
            raise BadRequestError("Authorization was not granted", code="authorization_denied", debug=error)
        if not code:
            raise BadRequestError("Missing authorization code")

        token = client.exchange_code(code)
        profile = client.load_profile(token)
        resolution = self.reconciler.reconcile(state_data, profile)
        logger.info(
            "oauth_callback provider=%s outcome=%s user_id=%s platform=%s",
            client.name,
            resolution.outcome.value,
            resolution.user.id,
            state_data.platform or "json",
        )
        return self.responder.respond(resolution.identity(), state_data.platform)
