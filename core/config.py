"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for tillgate happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. session_secret -> SESSION_SECRET). Type coercion is built in.

Secrets are held here as raw strings and are NOT validated on construction.
Building Settings must never fail in tooling that merely imports the package
(linters, the OpenAPI exporter, the CLI's --help). Validation is a separate,
explicit startup step: core.secrets.init_secrets(settings).

Environment policy:
  DEBUG=true           -> development runtime. Weak or missing secrets log a
                          warning and fall back to deterministic dev values.
  DEBUG unset / false  -> production runtime. Weak or missing secrets are a
                          hard startup failure.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
or ratelimit/.
"""

from datetime import datetime, timezone
from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

_DEFAULT_DB_URL = "sqlite:///tillgate.db"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file.

    Environment variable name mapping: field names are uppercased automatically.
    E.g. `hmac_secret` reads from HMAC_SECRET, `debug` reads from DEBUG.
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
    database_url: str = _DEFAULT_DB_URL
    # Base URL of the browser-facing app. Only used to decide cookie scoping
    # and as the default CORS origin.
    app_base_url: str = "http://localhost:3000"
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "testserver", "*.localhost"]
    cors_origins: list[str] = []

    # ------------------------------------------------------------------
    # Secrets (validated by core.secrets.init_secrets, never here)
    # ------------------------------------------------------------------

    # Empty string is the sentinel for "not configured".
    session_secret: str = ""
    # Optional. Falls back to session_secret when empty.
    csrf_secret: str = ""
    hmac_secret: str = ""
    # 32 bytes, base64 or raw.
    crypto_key: str = ""

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    session_max_age_seconds: int = 60 * 60 * 24 * 7
    password_reset_ttl_seconds: int = 60 * 60
    email_verification_ttl_seconds: int = 60 * 60 * 24

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    rate_limit_backend: Literal["auto", "redis", "memory", "off"] = "auto"
    rate_limit_redis_url: str = ""
    rate_limit_redis_token: str = ""
    # Soft ceiling on identifiers tracked by the in-memory backend before a
    # cleanup sweep runs.
    rate_limit_memory_max_tracked: int = 10_000

    # ------------------------------------------------------------------
    # Registration / teams
    # ------------------------------------------------------------------

    self_registration_enabled: bool = True
    # 0 means unlimited. Individual teams may carry their own max_members.
    default_team_max_members: int = 0

    @property
    def is_production(self) -> bool:
        return not self.debug

    @property
    def session_cookie_name(self) -> str:
        """__Host- prefix pins the cookie to Secure, path=/ and no Domain attribute."""
        return "__Host-session" if self.is_production else "session"

    @property
    def secure_cookies(self) -> bool:
        return self.is_production or self.app_base_url.startswith("https://")

    def effective_cors_origins(self) -> list[str]:
        return self.cors_origins or [self.app_base_url]


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    All modules should call get_settings() rather than constructing Settings() directly.

    In tests: construct Settings(...) explicitly and pass it to the service
    factory instead of mutating the environment.
    """
    return Settings()


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
