"""
auth/issuance.py -- Deliver freshly minted tokens to the client.

TokenResponder wraps the injected TokenIssuer. For a resolved identity it
mints a TokenPair, sets the auth cookies, and picks the transport:

  platform "mobile" + OAUTH_MOBILE_DEEPLINK_TEMPLATE set -> 302 to deep link
  platform "web"    + OAUTH_WEB_REDIRECT_TEMPLATE set    -> 302 to web page
  anything else                                          -> JSON body

Templates are plain strings. Exactly four placeholders are substituted, each
value URL-escaped:

  {access_token} {refresh_token} {token_type} {expires_at}

e.g. "myapp://oauth?access={access_token}&refresh={refresh_token}"

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from urllib.parse import quote_plus

from fastapi.responses import JSONResponse, RedirectResponse
from starlette.responses import Response

from auth.models import Identity, Platform, TokenPair
from auth.tokens import TokenIssuer, set_auth_cookies


def normalize_platform(raw: str | None) -> str:
    """Return "mobile" or "web"; any other value becomes ""."""
    value = (raw or "").strip().lower()
    if value in (Platform.mobile.value, Platform.web.value):
        return value
    return ""


def fill_redirect_template(template: str, pair: TokenPair) -> str:
    replacements = {
        "{access_token}": quote_plus(pair.access_token),
        "{refresh_token}": quote_plus(pair.refresh_token),
        "{token_type}": quote_plus(pair.token_type),
        "{expires_at}": quote_plus(str(pair.expires_at)),
    }
    result = template
    for placeholder, value in replacements.items():
        result = result.replace(placeholder, value)
    return result


def token_body(pair: TokenPair) -> dict:
    return {
        "access_token": pair.access_token,
        "refresh_token": pair.refresh_token,
        "token_type": pair.token_type,
        "expires_at": pair.expires_at,
    }


class TokenResponder:
    def __init__(
        self,
        issuer: TokenIssuer,
        mobile_template: str = "",
        web_template: str = "",
        secure_cookies: bool = False,
    ) -> None:
        self.issuer = issuer
        self.templates = {
            Platform.mobile.value: mobile_template.strip(),
            Platform.web.value: web_template.strip(),
        }
        self.secure_cookies = secure_cookies

    def respond(self, identity: Identity, platform: str = "") -> Response:
        """Mint tokens for identity and return the redirect or JSON response."""
        pair = self.issuer.mint(identity)
        template = self.templates.get(platform, "")
        if template:
            resp: Response = RedirectResponse(fill_redirect_template(template, pair), status_code=302)
        else:
            resp = JSONResponse(status_code=200, content=token_body(pair))
        set_auth_cookies(resp, pair, self.issuer, secure=self.secure_cookies)
        resp.headers["Cache-Control"] = "no-store"  # [M5]
        return resp
