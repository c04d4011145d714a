"""Unit tests for auth/tokens.py -- passwords, JWT issuance, refresh rotation.

Covers:
- bcrypt hash/verify, including a malformed stored hash
- authenticate_user(): success, wrong password, unknown email, OAuth-only account
- mint(): access/refresh claims and the TokenPair shape
- decode(): wrong type, wrong secret, expired token
- extract_identity(): cookie first, then Bearer header; a stale cookie
  does not hide a valid header
- refresh tokens are single-use; revoke() and prune_expired()
- cookie helpers set httpOnly cookies with the right paths
"""

import time
from types import SimpleNamespace

import pytest
from fastapi.responses import JSONResponse
from jose import jwt

from auth.models import Identity, User
from auth.store import UserStore
from auth.tokens import (
    ACCESS_COOKIE,
    REFRESH_COOKIE,
    REFRESH_COOKIE_PATH,
    TokenIssuer,
    authenticate_user,
    clear_auth_cookies,
    hash_password,
    set_auth_cookies,
    verify_password,
)

SECRET = "unit-test-secret-key-with-at-least-32-chars"

IDENTITY = Identity(
    id="5f0c6f8e-8f43-4b8e-9a57-3b0a9d3b2d10",
    email="ada@example.com",
    first_name="Ada",
    last_name="Lovelace",
    provider="github",
    avatar_url="https://avatars.example/ada",
    user_type="standard",
)


def _request(cookies: dict | None = None, headers: dict | None = None) -> SimpleNamespace:
    return SimpleNamespace(cookies=cookies or {}, headers=headers or {})


@pytest.fixture
def issuer() -> TokenIssuer:
    return TokenIssuer(SECRET, access_ttl_seconds=3600, refresh_ttl_seconds=86400)


# ---------------------------------------------------------------------------
# Passwords
# ---------------------------------------------------------------------------


class TestPasswords:
    def test_hash_and_verify(self) -> None:
        hashed = hash_password("correct-horse", rounds=4)
        assert hashed.startswith("$2")
        assert verify_password("correct-horse", hashed)
        assert not verify_password("wrong-horse", hashed)

    def test_malformed_hash_is_a_mismatch(self) -> None:
        assert verify_password("anything", "not-a-bcrypt-hash") is False


class TestAuthenticateUser:
    @pytest.fixture
    def store(self):
        s = UserStore("sqlite:///:memory:")
        s.create_user_with_password(
            User(first_name="Ada", last_name="Lovelace", email="ada@example.com"),
            hash_password("correct-horse", rounds=4),
        )
        s.create_user(User(first_name="Oauth", last_name="Only", email="oauth@example.com"))
        yield s
        s.close()

    def test_success(self, store: UserStore) -> None:
        user = authenticate_user(store, "ADA@example.com", "correct-horse", rounds=4)
        assert user is not None
        assert user.email == "ada@example.com"

    @pytest.mark.parametrize(
        "email, password",
        [
            ("ada@example.com", "wrong-horse"),
            ("nobody@example.com", "correct-horse"),
            ("oauth@example.com", "correct-horse"),
        ],
    )
    def test_failures_return_none(self, store: UserStore, email: str, password: str) -> None:
        assert authenticate_user(store, email, password, rounds=4) is None


# ---------------------------------------------------------------------------
# Minting and decoding
# ---------------------------------------------------------------------------


class TestMint:
    def test_access_claims(self, issuer: TokenIssuer) -> None:
        pair = issuer.mint(IDENTITY)
        claims = issuer.decode(pair.access_token, "access")
        assert claims is not None
        assert claims["sub"] == IDENTITY.id
        assert claims["email"] == "ada@example.com"
        assert claims["firstname"] == "Ada"
        assert claims["lastname"] == "Lovelace"
        assert claims["provider"] == "github"
        assert claims["avatar"] == "https://avatars.example/ada"
        assert claims["user_type"] == "standard"
        assert claims["exp"] == pair.expires_at

    def test_refresh_claims_are_minimal(self, issuer: TokenIssuer) -> None:
        pair = issuer.mint(IDENTITY)
        claims = issuer.decode(pair.refresh_token, "refresh")
        assert claims is not None
        assert claims["sub"] == IDENTITY.id
        assert claims["provider"] == "github"
        assert claims["jti"]
        assert "email" not in claims

    def test_token_pair_shape(self, issuer: TokenIssuer) -> None:
        pair = issuer.mint(IDENTITY)
        assert pair.token_type == "Bearer"
        assert abs(pair.expires_at - (int(time.time()) + 3600)) <= 5

    def test_types_are_not_interchangeable(self, issuer: TokenIssuer) -> None:
        pair = issuer.mint(IDENTITY)
        assert issuer.decode(pair.refresh_token, "access") is None
        assert issuer.decode(pair.access_token, "refresh") is None

    def test_foreign_secret_rejected(self, issuer: TokenIssuer) -> None:
        other = TokenIssuer("another-secret-key-that-is-32-chars-long!")
        assert issuer.decode(other.mint(IDENTITY).access_token) is None

    def test_expired_token_rejected(self, issuer: TokenIssuer) -> None:
        expired = jwt.encode(
            {"sub": IDENTITY.id, "typ": "access", "exp": int(time.time()) - 10},
            SECRET,
            algorithm="HS256",
        )
        assert issuer.decode(expired) is None

    def test_garbage_rejected(self, issuer: TokenIssuer) -> None:
        assert issuer.decode("not.a.jwt") is None


class TestExtractIdentity:
    def test_from_cookie(self, issuer: TokenIssuer) -> None:
        pair = issuer.mint(IDENTITY)
        assert issuer.extract_identity(_request(cookies={ACCESS_COOKIE: pair.access_token})) == IDENTITY

    def test_from_bearer_header(self, issuer: TokenIssuer) -> None:
        pair = issuer.mint(IDENTITY)
        request = _request(headers={"Authorization": f"Bearer {pair.access_token}"})
        assert issuer.extract_identity(request) == IDENTITY

    def test_cookie_takes_priority(self, issuer: TokenIssuer) -> None:
        other = Identity(id="11111111-2222-3333-4444-555555555555", email="other@example.com")
        request = _request(
            cookies={ACCESS_COOKIE: issuer.mint(IDENTITY).access_token},
            headers={"Authorization": f"Bearer {issuer.mint(other).access_token}"},
        )
        assert issuer.extract_identity(request).id == IDENTITY.id

    def test_stale_cookie_falls_back_to_header(self, issuer: TokenIssuer) -> None:
        stale = TokenIssuer("another-secret-key-that-is-32-chars-long").mint(IDENTITY).access_token
        request = _request(
            cookies={ACCESS_COOKIE: stale},
            headers={"Authorization": f"Bearer {issuer.mint(IDENTITY).access_token}"},
        )
        assert issuer.extract_identity(request) == IDENTITY

    def test_stale_cookie_without_header(self, issuer: TokenIssuer) -> None:
        assert issuer.extract_identity(_request(cookies={ACCESS_COOKIE: "not.a.jwt"})) is None

    @pytest.mark.parametrize("header", ["", "Basic abc", "Bearer ", "Bearer garbage"])
    def test_missing_or_invalid(self, issuer: TokenIssuer, header: str) -> None:
        assert issuer.extract_identity(_request(headers={"Authorization": header})) is None

    def test_refresh_token_is_not_an_identity(self, issuer: TokenIssuer) -> None:
        pair = issuer.mint(IDENTITY)
        assert issuer.extract_identity(_request(headers={"Authorization": f"Bearer {pair.refresh_token}"})) is None


# ---------------------------------------------------------------------------
# Refresh rotation and revocation
# ---------------------------------------------------------------------------


class TestRefreshRotation:
    def test_refresh_token_is_single_use(self, issuer: TokenIssuer) -> None:
        pair = issuer.mint(IDENTITY)
        assert issuer.redeem_refresh_token(pair.refresh_token) is not None
        assert issuer.redeem_refresh_token(pair.refresh_token) is None

    def test_access_token_cannot_be_redeemed(self, issuer: TokenIssuer) -> None:
        assert issuer.redeem_refresh_token(issuer.mint(IDENTITY).access_token) is None

    def test_revoke(self, issuer: TokenIssuer) -> None:
        pair = issuer.mint(IDENTITY)
        assert issuer.revoke(pair.refresh_token) is True
        assert issuer.revoke(pair.refresh_token) is False
        assert issuer.redeem_refresh_token(pair.refresh_token) is None

    def test_revoke_garbage(self, issuer: TokenIssuer) -> None:
        assert issuer.revoke("garbage") is False

    def test_other_issuer_instance_does_not_know_the_token(self, issuer: TokenIssuer) -> None:
        """The jti registry is per process; a restart invalidates refresh tokens."""
        pair = issuer.mint(IDENTITY)
        restarted = TokenIssuer(SECRET)
        assert restarted.redeem_refresh_token(pair.refresh_token) is None

    def test_prune_expired(self) -> None:
        short = TokenIssuer(SECRET, refresh_ttl_seconds=-1)
        short.mint(IDENTITY)
        short.mint(IDENTITY)
        assert short.prune_expired() == 2
        assert short.prune_expired() == 0

    def test_prune_keeps_live(self, issuer: TokenIssuer) -> None:
        pair = issuer.mint(IDENTITY)
        assert issuer.prune_expired() == 0
        assert issuer.redeem_refresh_token(pair.refresh_token) is not None


class TestCookies:
    def _set_cookie_headers(self, resp: JSONResponse) -> list[str]:
        return [v.decode() for k, v in resp.raw_headers if k == b"set-cookie"]

    def test_set_auth_cookies(self, issuer: TokenIssuer) -> None:
        resp = JSONResponse({})
        set_auth_cookies(resp, issuer.mint(IDENTITY), issuer, secure=True)
        headers = self._set_cookie_headers(resp)
        access = next(h for h in headers if h.startswith(f"{ACCESS_COOKIE}="))
        refresh = next(h for h in headers if h.startswith(f"{REFRESH_COOKIE}="))
        assert "HttpOnly" in access and "Secure" in access
        assert "Max-Age=3600" in access
        assert f"Path={REFRESH_COOKIE_PATH}" in refresh
        assert "Max-Age=86400" in refresh
        assert "samesite=lax" in refresh.lower()

    def test_clear_auth_cookies(self) -> None:
        resp = JSONResponse({})
        clear_auth_cookies(resp)
        headers = self._set_cookie_headers(resp)
        assert len(headers) == 2
        assert all("Max-Age=0" in h for h in headers)
