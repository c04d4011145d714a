"""
core/config.py -- Settings for the identity service.

Every value comes from the environment (or a .env file in the working
directory); field names map to upper-cased variable names, e.g.
github_client_id -> GITHUB_CLIENT_ID. Nothing else in the tree reads
os.environ. Long-lived collaborators receive the values they need through
their constructors in api.main.lifespan; request-time code (rate limits,
bcrypt rounds) calls get_settings().

SECRET_KEY signs every access and refresh token:
  - at least 32 characters, always
  - DEBUG=true with no key: a random key is generated and a warning logged;
    issued tokens die with the process
  - DEBUG unset/false with no key: startup fails

OAuth providers are optional. A provider is enabled only when both its client
id and secret are set; otherwise its endpoints answer 400
provider_not_configured.

Layer rule: core/ imports nothing from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("taskmanager.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'task_manager.db'}"
_MIN_SECRET_LENGTH = 32


class Settings(BaseSettings):
    """Environment-backed settings. Settings() works without a .env file when DEBUG=true."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Service
    # ------------------------------------------------------------------

    debug: bool = False
    secret_key: str = ""
    database_url: str = _DEFAULT_DB_URL
    # Origin the service is reachable at; OAuth callback URLs hang off it.
    public_base_url: str = "http://localhost:8000"

    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost:3000"]

    # ------------------------------------------------------------------
    # Tokens and passwords
    # ------------------------------------------------------------------

    access_token_expire_seconds: int = 3600
    refresh_token_expire_seconds: int = 86400
    secure_cookies: bool = False
    bcrypt_rounds: int = 12

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    google_client_id: str = ""
    google_client_secret: str = ""
    github_client_id: str = ""
    github_client_secret: str = ""

    # Placeholders: {access_token} {refresh_token} {token_type} {expires_at}.
    # Empty means callbacks for that platform answer with JSON.
    oauth_mobile_deeplink_template: str = ""
    oauth_web_redirect_template: str = ""

    oauth_state_ttl_seconds: float = 600
    oauth_state_sweep_seconds: float = 600
    provider_timeout_seconds: float = 10

    # ------------------------------------------------------------------
    # Rate limits (slowapi syntax)
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    signup_rate_limit: str = "5/minute"

    @field_validator("public_base_url")
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @model_validator(mode="after")
    def ensure_secret_key(self) -> "Settings":
        if not self.secret_key:
            if not self.debug:
                raise ValueError(
                    "SECRET_KEY is required unless DEBUG=true. "
                    "Set it in the environment or in .env."
                )
            self.secret_key = secrets.token_hex(32)
            logger.warning("WARNING: SECRET_KEY not set; generated a random key. Issued tokens will not survive a restart.")
        if len(self.secret_key) < _MIN_SECRET_LENGTH:
            raise ValueError(f"SECRET_KEY must be at least {_MIN_SECRET_LENGTH} characters.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide Settings, built on first call.

    Tests that change the environment must call get_settings.cache_clear().
    """
    return Settings()
