"""
auth/models.py -- Domain dataclasses for identity entities.

Pattern: Data class (pure data container, zero logic). Stores and flows do
the work; these classes only own the shape.

Persisted: User, AuthProviderLink (password hashes are stored but never
surface as an entity -- UserStore returns the raw hash string).
Transient: ProviderProfile, StateData, Identity, TokenPair.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Provider(str, Enum):
    google = "google"
    github = "github"
    local = "local"


class UserType(str, Enum):
    standard = "standard"
    admin = "admin"


class FlowMode(str, Enum):
    login = "login"
    link = "link"


class Platform(str, Enum):
    mobile = "mobile"
    web = "web"


@dataclass
class User:
    """A local account. Email is the only natural key.

    email is stored trimmed and lower-cased; lookups normalize the same way,
    so comparisons are effectively case-insensitive.
    """

    first_name: str
    last_name: str
    email: str
    user_type: str = UserType.standard.value
    id: str | None = None  # UUID string, assigned by UserStore when absent
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class AuthProviderLink:
    """Associates a User with one remote account at one provider.

    (provider, provider_user_id) maps to at most one user_id, and
    (user_id, provider) maps to at most one provider_user_id. Both are UNIQUE
    constraints in auth/store.py.

    The profile columns are a snapshot from the moment the link was created.
    They are not refreshed on later logins.
    """

    user_id: str
    provider: str
    provider_user_id: str
    email: str = ""
    username: str = ""
    display_name: str = ""
    avatar_url: str = ""
    id: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass(frozen=True)
class ProviderProfile:
    """Canonical shape of a remote identity, produced by auth/providers.py.

    provider_user_id is the provider's immutable id (never the login name).
    email may be empty when the provider withheld it.
    """

    provider: str
    provider_user_id: str
    email: str = ""
    username: str = ""
    display_name: str = ""
    avatar_url: str = ""

    @property
    def is_valid(self) -> bool:
        return bool(self.provider) and bool(self.provider_user_id)


@dataclass(frozen=True)
class StateData:
    """Flow metadata bound to a state token.

    mode is kept as the raw string so an unexpected value reaches the
    reconciler and is rejected there instead of being silently defaulted.
    """

    platform: str = ""
    mode: str = FlowMode.login.value
    acting_user_id: str = ""
    provider: str = ""


@dataclass(frozen=True)
class Identity:
    """The claims carried by an access token."""

    id: str
    email: str
    first_name: str = ""
    last_name: str = ""
    provider: str = Provider.local.value
    avatar_url: str = ""
    user_type: str = UserType.standard.value

    @classmethod
    def for_user(cls, user: User, provider: str, avatar_url: str = "") -> "Identity":
        return cls(
            id=str(user.id),
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            provider=provider,
            avatar_url=avatar_url,
            user_type=user.user_type,
        )


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    token_type: str
    expires_at: int  # unix seconds, access token expiry
