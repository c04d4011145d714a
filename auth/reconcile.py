"""
auth/reconcile.py -- Account reconciliation for OAuth callbacks.

Maps a verified remote identity (ProviderProfile) plus the flow metadata
carried by the consumed state token (StateData) to exactly one outcome:

  login  -- the remote account is already linked; resolve as its owner.
  signup -- nothing matches; create a User and its first link atomically.
  linked / already_linked -- link flow succeeded (created or idempotent).
  reject -- raise BadRequestError / ForbiddenError / ConflictError.

Evaluation order is fixed:
  1. Profile validity (provider and provider_user_id non-empty).
  2. Mode dispatch: "" and "login" -> login, "link" -> link, anything else
     -> BadRequestError. Never silently defaulted.

Login never auto-links by email. If the profile's email already belongs to a
local account that has not linked this provider, the flow stops with
ForbiddenError. An attacker who controls a matching address at a third-party
provider must not gain the target account; the owner signs in with the
existing method and links the provider explicitly.

Link profile fields (display name, avatar) are written once, when the link is
created, and not refreshed on later logins.

Uniqueness races (two callbacks creating the same email or the same remote
account at once) surface from the store as DuplicateRecordError and become
ConflictError. Other storage failures become StorageError.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from enum import Enum

from auth.errors import BadRequestError, ConflictError, ForbiddenError, StorageError, UpstreamError
from auth.models import AuthProviderLink, FlowMode, Identity, ProviderProfile, StateData, User, UserType
from auth.store import DuplicateRecordError, StoreError, UserStore

logger = logging.getLogger("taskmanager.auth.reconcile")


class Outcome(str, Enum):
    login = "login"
    signup = "signup"
    linked = "linked"
    already_linked = "already_linked"


@dataclass(frozen=True)
class Resolution:
    user: User
    outcome: Outcome
    profile: ProviderProfile

    def identity(self) -> Identity:
        return Identity.for_user(self.user, provider=self.profile.provider, avatar_url=self.profile.avatar_url)


def _link_for(user_id: str, profile: ProviderProfile) -> AuthProviderLink:
    return AuthProviderLink(
        user_id=user_id,
        provider=profile.provider,
        provider_user_id=profile.provider_user_id,
        email=profile.email,
        username=profile.username,
        display_name=profile.display_name,
        avatar_url=profile.avatar_url,
    )


def _storage_failure(exc: StoreError) -> StorageError:
    return StorageError("database error", debug=repr(exc.__cause__ or exc))


class AccountReconciler:
    """Decides and executes login / signup / link for one callback."""

    def __init__(self, store: UserStore) -> None:
        self.store = store

    def reconcile(self, state: StateData, profile: ProviderProfile) -> Resolution:
        if not profile.is_valid:
            raise BadRequestError("invalid provider response", debug=f"profile={profile!r}")

        mode = state.mode
        try:
            if mode in ("", FlowMode.login.value):
                return self._login(profile)
            if mode == FlowMode.link.value:
                return self._link(state.acting_user_id, profile)
        except DuplicateRecordError as exc:
            logger.warning(
                "oauth_conflict_race provider=%s provider_user_id=%s",
                profile.provider,
                profile.provider_user_id,
            )
            raise ConflictError("account already exists", debug=repr(exc.__cause__ or exc)) from exc
        except StoreError as exc:
            raise _storage_failure(exc) from exc
        raise BadRequestError("invalid state", debug=f"mode={mode!r}")

    # ------------------------------------------------------------------
    # Login mode
    # ------------------------------------------------------------------

    def _login(self, profile: ProviderProfile) -> Resolution:
        # 1. Remote account already linked -> log its owner in.
        owner = self.store.get_user_by_auth_provider(profile.provider, profile.provider_user_id)
        if owner is not None:
            logger.info(
                "oauth_login provider=%s provider_user_id=%s user_id=%s",
                profile.provider,
                profile.provider_user_id,
                owner.id,
            )
            return Resolution(user=owner, outcome=Outcome.login, profile=profile)

        # 2. Email belongs to an account that has not linked this provider -> hard stop.
        if profile.email.strip():
            existing = self.store.get_user_by_email(profile.email)
            if existing is not None:
                logger.info(
                    "oauth_login_forbidden_not_linked provider=%s provider_user_id=%s",
                    profile.provider,
                    profile.provider_user_id,
                )
                raise ForbiddenError(
                    "provider not linked to this account; login with your existing method and link it in your profile"
                )

        # 3. First-time signup.
        if not profile.email.strip():
            raise UpstreamError(
                "failed to get user email",
                code="email_unavailable",
                debug=f"{profile.provider} returned no email",
            )
        user = User(
            first_name=profile.display_name or profile.username,
            last_name="",
            email=profile.email,
            user_type=UserType.standard.value,
        )
        created, _link = self.store.create_user_with_link(user, _link_for("", profile))
        logger.info(
            "oauth_signup provider=%s provider_user_id=%s user_id=%s",
            profile.provider,
            profile.provider_user_id,
            created.id,
        )
        return Resolution(user=created, outcome=Outcome.signup, profile=profile)

    # ------------------------------------------------------------------
    # Link mode
    # ------------------------------------------------------------------

    def _link(self, acting_user_id: str, profile: ProviderProfile) -> Resolution:
        try:
            user_id = str(uuid.UUID(acting_user_id.strip()))
        except (ValueError, AttributeError) as exc:
            raise BadRequestError("invalid user id in state") from exc

        user = self.store.get_user_by_id(user_id)
        if user is None:
            raise BadRequestError("user not found")

        owner = self.store.get_user_by_auth_provider(profile.provider, profile.provider_user_id)
        if owner is not None and owner.id != user.id:
            raise ConflictError("provider account already linked to another user")

        existing = self.store.get_auth_provider_link(user.id, profile.provider)
        if existing is not None:
            if existing.provider_user_id != profile.provider_user_id:
                raise ConflictError("this provider is already linked to a different provider account")
            return Resolution(user=user, outcome=Outcome.already_linked, profile=profile)

        try:
            self.store.create_auth_provider_link(_link_for(user.id, profile))
        except DuplicateRecordError:
            # A concurrent link attempt may have won; identical result is still success.
            winner = self.store.get_auth_provider_link(user.id, profile.provider)
            if winner is not None and winner.provider_user_id == profile.provider_user_id:
                return Resolution(user=user, outcome=Outcome.already_linked, profile=profile)
            raise
        logger.info(
            "oauth_link provider=%s provider_user_id=%s user_id=%s",
            profile.provider,
            profile.provider_user_id,
            user.id,
        )
        return Resolution(user=user, outcome=Outcome.linked, profile=profile)
