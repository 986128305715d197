"""
core/config.py -- Gatehouse settings, read from the environment and .env.

Every environment variable the service looks at is a Settings field; other
modules call get_settings() and never touch os.environ. Field names map to
variable names (token_expire_seconds -> TOKEN_EXPIRE_SECONDS) and
pydantic-settings does the type coercion.

get_settings() is lru_cached, so the first call fixes the configuration for
the life of the process. Tests set their environment before importing
anything that calls it.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. Session JWT
       signing relies on key entropy.

  [M7] In production mode a missing SECRET_KEY or TURNSTILE_SECRET_KEY is a
       hard startup failure. Dev mode falls back to a random signing key and
       to Cloudflare's documented always-pass Turnstile test secret.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("gatehouse.config")

# Cloudflare publishes this secret for local testing: every response verifies.
TURNSTILE_TEST_SECRET = "1x0000000000000000000000000000000AA"

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'gatehouse.db'}"


class Settings(BaseSettings):
    """Environment-backed configuration. Every field has a working default except
    the two secrets, which the validators below fill in for DEBUG only.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the sentinel for "not configured".
    secret_key: str = ""
    database_url: str = _DEFAULT_DB_URL
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    token_expire_seconds: int = 24 * 3600
    # Unread termination signals are dropped by the purge loop after this long.
    signal_retention_seconds: int = 7 * 24 * 3600
    # Sweep interval for stale challenge tokens and expired sessions.
    purge_interval_seconds: int = 300

    # ------------------------------------------------------------------
    # Bot challenge (Cloudflare Turnstile)
    # ------------------------------------------------------------------

    turnstile_secret_key: str = ""
    turnstile_verify_url: str = "https://challenges.cloudflare.com/turnstile/v0/siteverify"
    # Turnstile responses are valid for 300 seconds.
    challenge_ttl_seconds: int = 300
    # Unfinished login attempts (including parked provisioning prompts) are
    # abandoned by the purge loop after this long.
    attempt_ttl_seconds: int = 900

    # ------------------------------------------------------------------
    # OAuth providers (optional -- empty string means provider is disabled)
    # ------------------------------------------------------------------

    github_client_id: str = ""
    github_client_secret: str = ""
    google_client_id: str = ""
    google_client_secret: str = ""

    # Generic OIDC (Okta, Azure AD, Keycloak, Authentik, etc.)
    oidc_client_id: str = ""
    oidc_client_secret: str = ""
    oidc_discovery_url: str = ""
    oidc_display_name: str = "SSO"

    # ------------------------------------------------------------------
    # Rate limiting / registration
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    self_registration_enabled: bool = True

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """[M6][M7] Generate a throwaway key in DEBUG, refuse to start without one otherwise."""
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("Using auto-generated SECRET_KEY. Sessions will not persist across restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def validate_turnstile_secret(self) -> "Settings":
        """Require a real Turnstile secret outside of DEBUG [M7].

        Without it every challenge fails closed and nobody can log in.
        """
        if not self.turnstile_secret_key:
            if self.debug:
                self.turnstile_secret_key = TURNSTILE_TEST_SECRET
                logger.warning("Using the Turnstile always-pass test secret. Bot challenges are not enforced.")
            else:
                raise ValueError(
                    "TURNSTILE_SECRET_KEY is required in production mode. "
                    "To run in development mode, set DEBUG=true."
                )
        return self


@lru_cache
def get_settings() -> Settings:
    """The process-wide Settings instance (built on first call)."""
    return Settings()
