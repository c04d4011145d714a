"""Unit tests for auth/issuance.py -- delivering tokens as JSON or redirects.

Covers:
- normalize_platform(): trimmed, lower-cased, anything else becomes ""
- fill_redirect_template(): exactly four placeholders, URL-escaped values
- TokenResponder: 302 for mobile/web with a template, JSON otherwise
- every response sets both auth cookies and Cache-Control: no-store
"""

from urllib.parse import parse_qs, urlparse

import pytest

from auth.issuance import TokenResponder, fill_redirect_template, normalize_platform, token_body
from auth.models import Identity, TokenPair
from auth.tokens import ACCESS_COOKIE, REFRESH_COOKIE, TokenIssuer

IDENTITY = Identity(id="5f0c6f8e-8f43-4b8e-9a57-3b0a9d3b2d10", email="ada@example.com", provider="google")
MOBILE = "taskapp://oauth?access={access_token}&refresh={refresh_token}&type={token_type}&exp={expires_at}"
WEB = "https://app.example.com/oauth/done#access={access_token}&refresh={refresh_token}"


@pytest.fixture
def issuer() -> TokenIssuer:
    return TokenIssuer("issuance-test-secret-key-with-32-plus-chars")


def _cookie_names(resp) -> set[str]:
    return {v.decode().split("=", 1)[0] for k, v in resp.raw_headers if k == b"set-cookie"}


class TestNormalizePlatform:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("mobile", "mobile"),
            (" Mobile ", "mobile"),
            ("WEB", "web"),
            ("desktop", ""),
            ("", ""),
            (None, ""),
        ],
    )
    def test_values(self, raw, expected) -> None:
        assert normalize_platform(raw) == expected


class TestFillRedirectTemplate:
    def test_substitutes_all_placeholders(self) -> None:
        pair = TokenPair(access_token="a.b.c", refresh_token="d.e.f", token_type="Bearer", expires_at=1700000000)
        url = fill_redirect_template(MOBILE, pair)
        assert url == "taskapp://oauth?access=a.b.c&refresh=d.e.f&type=Bearer&exp=1700000000"

    def test_values_are_url_escaped(self) -> None:
        pair = TokenPair(access_token="a+b/c=&", refresh_token="r r", token_type="Bearer", expires_at=1)
        url = fill_redirect_template("x://cb?a={access_token}&r={refresh_token}", pair)
        assert url == "x://cb?a=a%2Bb%2Fc%3D%26&r=r+r"

    def test_unknown_placeholders_left_alone(self) -> None:
        pair = TokenPair(access_token="t", refresh_token="r", token_type="Bearer", expires_at=1)
        assert fill_redirect_template("x://cb?u={user_id}&a={access_token}", pair) == "x://cb?u={user_id}&a=t"


class TestTokenResponder:
    def test_json_when_no_platform(self, issuer: TokenIssuer) -> None:
        resp = TokenResponder(issuer, mobile_template=MOBILE, web_template=WEB).respond(IDENTITY, "")
        assert resp.status_code == 200
        assert resp.headers["cache-control"] == "no-store"
        assert _cookie_names(resp) == {ACCESS_COOKIE, REFRESH_COOKIE}

    def test_mobile_redirect(self, issuer: TokenIssuer) -> None:
        resp = TokenResponder(issuer, mobile_template=MOBILE).respond(IDENTITY, "mobile")
        assert resp.status_code == 302
        location = urlparse(resp.headers["location"])
        assert location.scheme == "taskapp"
        query = parse_qs(location.query)
        assert query["type"] == ["Bearer"]
        assert issuer.decode(query["access"][0])["sub"] == IDENTITY.id
        assert issuer.decode(query["refresh"][0], "refresh")["sub"] == IDENTITY.id
        assert resp.headers["cache-control"] == "no-store"
        assert _cookie_names(resp) == {ACCESS_COOKIE, REFRESH_COOKIE}

    def test_web_redirect(self, issuer: TokenIssuer) -> None:
        resp = TokenResponder(issuer, web_template=WEB).respond(IDENTITY, "web")
        assert resp.status_code == 302
        assert resp.headers["location"].startswith("https://app.example.com/oauth/done#access=")

    def test_platform_without_template_falls_back_to_json(self, issuer: TokenIssuer) -> None:
        resp = TokenResponder(issuer, mobile_template=MOBILE).respond(IDENTITY, "web")
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("application/json")

    def test_blank_template_is_disabled(self, issuer: TokenIssuer) -> None:
        resp = TokenResponder(issuer, mobile_template="   ").respond(IDENTITY, "mobile")
        assert resp.status_code == 200

    def test_json_body_shape(self, issuer: TokenIssuer) -> None:
        pair = issuer.mint(IDENTITY)
        assert token_body(pair) == {
            "access_token": pair.access_token,
            "refresh_token": pair.refresh_token,
            "token_type": "Bearer",
            "expires_at": pair.expires_at,
        }
