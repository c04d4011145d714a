"""
auth/providers.py -- OAuth provider adapters and profile normalization.

Each provider is a small adapter over authlib's requests-based OAuth2Session
implementing one common capability set:

  build_authorization_url(state) -> URL to redirect the browser to
  exchange_code(code)            -> provider token dict
  fetch_profile(token)           -> raw userinfo payload (provider shape)
  load_profile(token)            -> canonical ProviderProfile

Raw payloads never leave this module: load_profile() normalizes them at the
boundary with the pure normalize_* functions below, so the reconciler only
ever sees ProviderProfile.

Normalization rules:
  - email is trimmed and lower-cased; every other string is trimmed.
  - provider_user_id is the provider's immutable id rendered as a string
    (Google "id", GitHub numeric "id") -- never the mutable login.
  - GitHub may withhold the email from /user. GitHubProvider then reads
    /user/emails and picks the primary entry, else the first one.

Failures talking to the provider (transport errors, non-2xx, OAuth error
responses, unparsable JSON) are raised as UpstreamError with the raw text in
.debug only. Nothing is retried -- the user restarts the flow.

Layer rule: no imports from api/ or core/. build_providers() takes the
settings object as an argument.
"""

from __future__ import annotations

import logging
from typing import Any

import requests
from authlib.integrations.requests_client import OAuth2Session, OAuthError

from auth.errors import UpstreamError
from auth.models import Provider, ProviderProfile

logger = logging.getLogger("taskmanager.auth.providers")


# ---------------------------------------------------------------------------
# Pure normalizers
# ---------------------------------------------------------------------------


def _clean(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def normalize_google(payload: dict) -> ProviderProfile:
    """Map a Google v2 userinfo payload (id/email/name/picture) to a profile."""
    return ProviderProfile(
        provider=Provider.google.value,
        provider_user_id=_clean(payload.get("id")),
        email=_clean(payload.get("email")).lower(),
        display_name=_clean(payload.get("name")),
        avatar_url=_clean(payload.get("picture")),
    )


def normalize_github(payload: dict, fallback_email: str = "") -> ProviderProfile:
    """Map a GitHub /user payload (id/login/email/name/avatar_url) to a profile.

    fallback_email is used only when the payload's own email is empty.
    """
    email = _clean(payload.get("email")) or _clean(fallback_email)
    return ProviderProfile(
        provider=Provider.github.value,
        provider_user_id=_clean(payload.get("id")),
        email=email.lower(),
        username=_clean(payload.get("login")),
        display_name=_clean(payload.get("name")),
        avatar_url=_clean(payload.get("avatar_url")),
    )


def pick_github_email(entries: list) -> str:
    """Choose the primary address from GitHub's /user/emails, else the first."""
    for entry in entries:
        if isinstance(entry, dict) and entry.get("primary") and entry.get("email"):
            return _clean(entry["email"])
    for entry in entries:
        if isinstance(entry, dict) and entry.get("email"):
            return _clean(entry["email"])
    return ""


# ---------------------------------------------------------------------------
# Provider adapters
# ---------------------------------------------------------------------------


class ProviderClient:
    """Base adapter. Subclasses set the endpoints and implement load_profile()."""

    name: str = ""
    label: str = ""
    authorize_url: str = ""
    token_url: str = ""
    userinfo_url: str = ""
    scope: str = ""

    def __init__(self, client_id: str, client_secret: str, redirect_uri: str, timeout: float = 10) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.timeout = timeout

    def _session(self, token: dict | None = None) -> OAuth2Session:
        return OAuth2Session(
            self.client_id,
            self.client_secret,
            scope=self.scope,
            redirect_uri=self.redirect_uri,
            token=token,
        )

    def authorization_params(self) -> dict[str, str]:
        return {}

    def build_authorization_url(self, state: str) -> str:
        with self._session() as session:
            url, _state = session.create_authorization_url(self.authorize_url, state=state, **self.authorization_params())
        return url

    def exchange_code(self, code: str) -> dict:
        """Exchange the authorization code for a provider token."""
        try:
            with self._session() as session:
                return session.fetch_token(self.token_url, code=code, timeout=self.timeout)
        except (OAuthError, requests.RequestException, ValueError) as exc:
            raise UpstreamError(
                "Failed to exchange token",
                code="token_exchange_failed",
                debug=f"{self.name}: {exc!r}",
            ) from exc

    def _get_json(self, token: dict, url: str) -> Any:
        try:
            with self._session(token) as session:
                resp = session.get(url, timeout=self.timeout)
                resp.raise_for_status()
                return resp.json()
        except (OAuthError, requests.RequestException, ValueError) as exc:
            raise UpstreamError(
                "Failed to get user info",
                code="profile_fetch_failed",
                debug=f"{self.name} GET {url}: {exc!r}",
            ) from exc

    def fetch_profile(self, token: dict) -> dict:
        """Return the provider's raw userinfo payload."""
        payload = self._get_json(token, self.userinfo_url)
        if not isinstance(payload, dict):
            raise UpstreamError(
                "Failed to parse user info",
                code="profile_fetch_failed",
                debug=f"{self.name}: userinfo payload is {type(payload).__name__}",
            )
        return payload

    def load_profile(self, token: dict) -> ProviderProfile:
        raise NotImplementedError


class GoogleProvider(ProviderClient):
    name = Provider.google.value
    label = "Google"
    authorize_url = "https://accounts.google.com/o/oauth2/v2/auth"
    token_url = "https://oauth2.googleapis.com/token"  # noqa: S105 -- URL, not a password
    userinfo_url = "https://www.googleapis.com/oauth2/v2/userinfo"
    scope = "https://www.googleapis.com/auth/userinfo.email https://www.googleapis.com/auth/userinfo.profile"

    def authorization_params(self) -> dict[str, str]:
        return {"access_type": "offline"}

    def load_profile(self, token: dict) -> ProviderProfile:
        return normalize_google(self.fetch_profile(token))


class GitHubProvider(ProviderClient):
    name = Provider.github.value
    label = "GitHub"
    authorize_url = "https://github.com/login/oauth/authorize"
    token_url = "https://github.com/login/oauth/access_token"  # noqa: S105 -- URL, not a password
    userinfo_url = "https://api.github.com/user"
    emails_url = "https://api.github.com/user/emails"
    scope = "user:email"

    def fetch_emails(self, token: dict) -> list:
        """Return GitHub's /user/emails list; [] when unavailable.

        The fallback is best effort: a failure here is logged and the caller
        ends up with an empty email instead of an upstream error.
        """
        try:
            entries = self._get_json(token, self.emails_url)
        except UpstreamError as exc:
            logger.warning("GitHub email fallback failed: %s", exc.debug)
            return []
        return entries if isinstance(entries, list) else []

    def load_profile(self, token: dict) -> ProviderProfile:
        payload = self.fetch_profile(token)
        fallback = ""
        if not _clean(payload.get("email")):
            fallback = pick_github_email(self.fetch_emails(token))
        return normalize_github(payload, fallback_email=fallback)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

PROVIDER_CLASSES: dict[str, type[ProviderClient]] = {
    GoogleProvider.name: GoogleProvider,
    GitHubProvider.name: GitHubProvider,
}


def build_providers(settings) -> dict[str, ProviderClient]:
    """Instantiate an adapter for every provider with both client id and secret.

    Callback URLs are {public_base_url}/api/v1/auth/{provider}/callback.
    """
    providers: dict[str, ProviderClient] = {}
    for name, cls in PROVIDER_CLASSES.items():
        client_id = getattr(settings, f"{name}_client_id", "")
        client_secret = getattr(settings, f"{name}_client_secret", "")
        if not (client_id and client_secret):
            continue
        providers[name] = cls(
            client_id=client_id,
            client_secret=client_secret,
            redirect_uri=f"{settings.public_base_url}/api/v1/auth/{name}/callback",
            timeout=settings.provider_timeout_seconds,
        )
        logger.info("%s OAuth provider registered", cls.label)
    return providers
