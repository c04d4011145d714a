"""
auth/tokens.py -- JWT issuance, password hashing, and auth cookies.

Security design decisions:
  JWT: python-jose with HS256. TokenIssuer is constructed once at startup with
       the secret and lifetimes and injected wherever tokens are minted or
       read -- there is no module-level signing state.

       Access tokens carry the identity claims (sub, email, names, provider,
       avatar, user_type) and a "typ" of "access". Refresh tokens carry only
       sub/provider/avatar, a "typ" of "refresh" and a random jti.

       Refresh tokens are single-use: the issuer tracks live jti values and
       redeem_refresh_token() pops the jti, so a replayed refresh token is
       rejected. revoke() (logout) pops it as well. The registry is in-memory,
       so a restart invalidates outstanding refresh tokens.

  Passwords: bcrypt directly (no passlib wrapper). authenticate_user() always
       runs one bcrypt comparison, against a dummy hash of the same cost when
       the account is unknown or OAuth-only, so response time does not reveal
       whether an email is registered [C1].

Layer rule: no imports from api/. auth/ receives configuration through
constructor arguments, never by reading core.config itself.
"""

from __future__ import annotations

import logging
import secrets
import threading
import time
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt

from auth.models import Identity, TokenPair

if TYPE_CHECKING:
    from starlette.requests import Request
    from starlette.responses import Response

    from auth.models import User
    from auth.store import UserStore

logger = logging.getLogger("taskmanager.auth")

_ALGORITHM = "HS256"

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"
# Refresh cookie is only sent to /auth/refresh and /auth/logout.
REFRESH_COOKIE_PATH = "/api/v1/auth"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


# bcrypt only reads the first 72 bytes and newer releases reject longer input.
BCRYPT_MAX_BYTES = 72


def hash_password(plain: str, rounds: int = 12) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Callers must keep the UTF-8 encoding within BCRYPT_MAX_BYTES;
    api.models rejects longer passwords with a 422 before they get here.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed hash in storage.
        return False


@lru_cache
def _dummy_hash(rounds: int) -> str:
    # One per cost factor so the dummy comparison costs the same as a real one [C1].
    return hash_password("taskmanager_timing_dummy", rounds=rounds)


def authenticate_user(store: UserStore, email: str, password: str, rounds: int = 12) -> User | None:
    """Authenticate a local email/password login with timing equalization.

    Returns the User on success, None on any failure:
      - unknown email
      - OAuth-only account (no password hash stored)
      - wrong password
    """
    user = store.get_user_by_email(email)
    password_hash = store.get_password_hash(user.id) if user is not None else ""
    if user is None or not password_hash:
        # Equalize timing -- do NOT return early before running bcrypt [C1]
        verify_password(password, _dummy_hash(rounds))
        return None
    if not verify_password(password, password_hash):
        return None
    return user


# ---------------------------------------------------------------------------
# JWT issuer
# ---------------------------------------------------------------------------


class TokenIssuer:
    """Mints, reads, rotates and revokes JWTs for resolved identities."""

    token_type = "Bearer"  # noqa: S105 -- OAuth token type, not a password

    def __init__(self, secret_key: str, access_ttl_seconds: int = 3600, refresh_ttl_seconds: int = 86400) -> None:
        self._secret_key = secret_key
        self.access_ttl = access_ttl_seconds
        self.refresh_ttl = refresh_ttl_seconds
        self._lock = threading.Lock()
        self._live_refresh: dict[str, float] = {}  # jti -> exp (unix seconds)

    def mint(self, identity: Identity) -> TokenPair:
        """Return a fresh access/refresh pair for the identity."""
        now = datetime.now(timezone.utc)
        access_exp = now + timedelta(seconds=self.access_ttl)
        refresh_exp = now + timedelta(seconds=self.refresh_ttl)
        jti = secrets.token_hex(16)

        access = jwt.encode(
            {
                "sub": identity.id,
                "email": identity.email,
                "firstname": identity.first_name,
                "lastname": identity.last_name,
                "provider": identity.provider,
                "avatar": identity.avatar_url,
                "user_type": identity.user_type,
                "typ": "access",
                "iat": now,
                "exp": access_exp,
            },
            self._secret_key,
            algorithm=_ALGORITHM,
        )
        refresh = jwt.encode(
            {
                "sub": identity.id,
                "provider": identity.provider,
                "avatar": identity.avatar_url,
                "typ": "refresh",
                "jti": jti,
                "iat": now,
                "exp": refresh_exp,
            },
            self._secret_key,
            algorithm=_ALGORITHM,
        )
        with self._lock:
            self._live_refresh[jti] = refresh_exp.timestamp()
        return TokenPair(
            access_token=access,
            refresh_token=refresh,
            token_type=self.token_type,
            expires_at=int(access_exp.timestamp()),
        )

    def decode(self, token: str, expected_type: str = "access") -> dict | None:
        """Decode and verify a JWT. Returns the claims or None on any failure.

        Returning None (rather than raising) keeps callers simple: any invalid,
        expired, or wrong-type token is treated as unauthenticated.
        """
        try:
            claims = jwt.decode(token, self._secret_key, algorithms=[_ALGORITHM])
        except JWTError:
            return None
        if claims.get("typ") != expected_type or not claims.get("sub"):
            return None
        return claims

    def extract_identity(self, request: Request) -> Identity | None:
        """Read the access token from the cookie or Bearer header.

        Candidates, first valid one wins:
          1. access_token cookie -- set by the login/callback responses.
          2. Authorization: Bearer header -- API and mobile clients.

        A stale cookie left in a browser does not mask a valid header.
        """
        candidates = [request.cookies.get(ACCESS_COOKIE, "")]
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            candidates.append(auth_header[7:].strip())
        claims = None
        for token in candidates:
            claims = self.decode(token, "access") if token else None
            if claims is not None:
                break
        if claims is None:
            return None
        return Identity(
            id=claims["sub"],
            email=claims.get("email", ""),
            first_name=claims.get("firstname", ""),
            last_name=claims.get("lastname", ""),
            provider=claims.get("provider", ""),
            avatar_url=claims.get("avatar", ""),
            user_type=claims.get("user_type", ""),
        )

    def redeem_refresh_token(self, token: str) -> dict | None:
        """Validate a refresh token and consume its jti (rotation).

        Returns the refresh claims on success. A second call with the same
        token returns None.
        """
        claims = self.decode(token, "refresh")
        if claims is None:
            return None
        with self._lock:
            live = self._live_refresh.pop(claims.get("jti", ""), None)
        if live is None:
            logger.warning("refresh_token_replay user_id=%s", claims["sub"])
            return None
        return claims

    def revoke(self, token: str) -> bool:
        """Revoke a refresh token. Returns True if it was live."""
        claims = self.decode(token, "refresh")
        if claims is None:
            return False
        with self._lock:
            return self._live_refresh.pop(claims.get("jti", ""), None) is not None

    def prune_expired(self) -> int:
        """Forget refresh jti values whose tokens have expired anyway."""
        now = time.time()
        with self._lock:
            expired = [jti for jti, exp in self._live_refresh.items() if exp < now]
            for jti in expired:
                del self._live_refresh[jti]
        return len(expired)


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_auth_cookies(response: Response, pair: TokenPair, issuer: TokenIssuer, secure: bool = False) -> None:
    """Write the access and refresh tokens as httpOnly cookies.

    httponly=True: JS cannot read the cookies (XSS mitigation).
    samesite="lax": not sent on cross-site POSTs (CSRF mitigation).
    max_age matches each token's own expiry.
    """
    response.set_cookie(
        ACCESS_COOKIE,
        value=pair.access_token,
        httponly=True,
        samesite="lax",
        secure=secure,
        max_age=issuer.access_ttl,
    )
    response.set_cookie(
        REFRESH_COOKIE,
        value=pair.refresh_token,
        httponly=True,
        samesite="lax",
        secure=secure,
        max_age=issuer.refresh_ttl,
        path=REFRESH_COOKIE_PATH,
    )


def clear_auth_cookies(response: Response) -> None:
    response.delete_cookie(ACCESS_COOKIE)
    response.delete_cookie(REFRESH_COOKIE, path=REFRESH_COOKIE_PATH)
