"""
API request and response models for the identity REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import AuthProviderLink, Identity
from auth.tokens import BCRYPT_MAX_BYTES

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Deliberately loose: one "@", a dot in the domain, no whitespace. Deliverability
# is the mail server's problem, not the signup form's.
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class _EmailBody(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(max_length=254, pattern=EMAIL_PATTERN)

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, value: Any) -> Any:
        """Trim and lower-case before the pattern check (mode='before')."""
        if isinstance(value, str):
            return value.strip().lower()
        return value


def _check_password_bytes(value: str) -> str:
    # Counted in bytes: a 30-character password can exceed 72 bytes in UTF-8.
    if len(value.encode("utf-8")) > BCRYPT_MAX_BYTES:
        raise ValueError(f"password must be at most {BCRYPT_MAX_BYTES} bytes when UTF-8 encoded")
    return value


class SignupRequest(_EmailBody):
    """Request body for POST /api/v1/auth/signup."""

    firstname: str = Field(min_length=2, max_length=100)
    lastname: str = Field(min_length=2, max_length=100)
    password: str = Field(min_length=8, max_length=128)

    @field_validator("password")
    @classmethod
    def password_fits_bcrypt(cls, value: str) -> str:
        return _check_password_bytes(value)


class LoginRequest(_EmailBody):
    """Request body for POST /api/v1/auth/login."""

    password: str = Field(min_length=1, max_length=128)

    @field_validator("password")
    @classmethod
    def password_fits_bcrypt(cls, value: str) -> str:
        return _check_password_bytes(value)


class RefreshRequest(BaseModel):
    """Request body for POST /api/v1/auth/refresh and /auth/logout.

    The refresh token may come from this body or from the refresh_token
    cookie; the body wins when both are present.
    """

    refresh_token: Optional[str] = Field(default=None, max_length=4096)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class TokenResponse(BaseModel):
    """Token pair returned by signup, login, refresh, and JSON OAuth callbacks."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str
    expires_at: int


class MeResponse(BaseModel):
    """Response for GET /api/v1/user/me -- built from the access token claims."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    firstname: str
    lastname: str
    email: str
    user_type: str
    provider: str
    avatar_url: str = ""

    @classmethod
    def from_identity(cls, identity: Identity) -> "MeResponse":
        return cls(
            user_id=identity.id,
            firstname=identity.first_name,
            lastname=identity.last_name,
            email=identity.email,
            user_type=identity.user_type,
            provider=identity.provider,
            avatar_url=identity.avatar_url,
        )


class LinkedProviderResponse(BaseModel):
    """One provider link in GET /api/v1/user/providers."""

    model_config = ConfigDict(frozen=True)

    provider: str
    provider_user_id: str
    email: str = ""
    username: str = ""
    display_name: str = ""
    avatar_url: str = ""
    created_at: str = ""

    @classmethod
    def from_link(cls, link: AuthProviderLink) -> "LinkedProviderResponse":
        return cls(
            provider=link.provider,
            provider_user_id=link.provider_user_id,
            email=link.email,
            username=link.username,
            display_name=link.display_name,
            avatar_url=link.avatar_url,
            created_at=link.created_at or "",
        )


class OAuthProviderInfo(BaseModel):
    """One configured OAuth provider in GET /api/v1/auth/providers."""

    model_config = ConfigDict(frozen=True)

    name: str
    label: str


class LogoutResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    user: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    details: Optional[dict[str, Any]] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
