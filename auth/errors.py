"""
auth/errors.py -- Error taxonomy for the identity flows.

Every terminal failure in signup, login, and the OAuth login/link state
machine is raised as one of these exceptions. The API layer owns a single
exception handler that renders them as the structured error envelope:

    {"error": {"code": "...", "message": "...", "details": {...}}}

Fields:
  code    -- stable machine-readable identifier. Never change a code once a
             client relies on it.
  message -- human readable, safe for the client.
  details -- optional structured data, safe for the client.
  debug   -- server-side diagnostics only (raw provider/database error text).
             Logged by the handler, never serialized into the response.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from typing import Any, Optional


class AuthError(Exception):
    """Base class for all identity-flow failures."""

    status_code: int = 500
    default_code: str = "internal_error"

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        debug: str = "",
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details
        self.debug = debug


class BadRequestError(AuthError):
    """Malformed state, invalid mode, invalid profile, unconfigured provider."""

    status_code = 400
    default_code = "invalid_request"


class UnauthorizedError(AuthError):
    status_code = 401
    default_code = "unauthorized"


class ForbiddenError(AuthError):
    """Email already belongs to an account under a different login method."""

    status_code = 403
    default_code = "forbidden"


class NotFoundError(AuthError):
    status_code = 404
    default_code = "not_found"


class ConflictError(AuthError):
    """Provider linked elsewhere, provider-link mismatch, or a uniqueness race."""

    status_code = 409
    default_code = "conflict"


class UpstreamError(AuthError):
    """Provider code exchange or profile fetch failed. Never retried internally."""

    status_code = 502
    default_code = "upstream_error"


class StorageError(AuthError):
    """Repository failure that does not match a known conflict pattern."""

    status_code = 500
    default_code = "database_error"
