"""
core/secrets.py -- Secret provider: resolve, validate, and hand out signing keys.

Four secret kinds are used by tillgate:

  session  SESSION_SECRET  HMAC key for session cookies.
  csrf     CSRF_SECRET     HMAC key for anti-forgery tokens. Optional -- falls
                           back to the session secret when unset.
  hmac     HMAC_SECRET     Key for the deterministic email lookup digest.
  crypto   CRYPTO_KEY      32-byte AES-256-GCM key for the encrypted email blob.

Startup sequence (called once from the app lifespan or a CLI command):

    check = load_secrets(settings)      # pure, never raises, never logs
    bundle = init_secrets(settings)     # applies the environment policy

load_secrets() returns a SecretCheck result listing every problem found.
init_secrets() turns that result into a SecretBundle:

  Production: any problem raises ConfigurationError. The process must refuse
      to serve traffic with a missing or guessable key.
  Development: each problem is logged as a warning and the affected secret is
      replaced by a deterministic per-kind fallback, so local sessions survive
      restarts and nobody is blocked by missing .env entries.

Nothing here runs at import time. The SecretBundle is passed to the services
that need it (see api/services.py); there is no module-level cache.

Layer rule: core/ is the kernel. No imports from api/, auth/, or ratelimit/.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import re
from dataclasses import dataclass, field
from enum import Enum

from core.config import Settings
from core.errors import ConfigurationError

logger = logging.getLogger("tillgate.secrets")

_MIN_SECRET_LENGTH = 32

# Values copied from .env.example files and tutorials. A secret containing any
# of these is treated as unset, whatever its length.
_FORBIDDEN_SECRET_VALUES = (
    "your-random-session-secret-here",
    "your-random-hmac-secret-here",
    "your-random-crypto-key-here",
    "changeme",
    "change-me",
    "replace-me",
    "example",
    "test-secret",
    "dev-secret",
    "development-secret",
    "placeholder",
)

_REPEATED_CHAR_RE = re.compile(r"^(.)\1+$", re.DOTALL)
_WEAK_PREFIX_RE = re.compile(r"^(012|123|abc|test|pass|admin)", re.IGNORECASE)


class SecretKind(str, Enum):
    SESSION = "session"
    CSRF = "csrf"
    HMAC = "hmac"
    CRYPTO = "crypto"

    @property
    def env_name(self) -> str:
        return {
            SecretKind.SESSION: "SESSION_SECRET",
            SecretKind.CSRF: "CSRF_SECRET",
            SecretKind.HMAC: "HMAC_SECRET",
            SecretKind.CRYPTO: "CRYPTO_KEY",
        }[self]


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def secret_problem(name: str, value: str) -> str | None:
    """Return a human-readable problem with a secret value, or None if it is acceptable."""
    if not value:
        return f"{name} is not set"
    lowered = value.lower()
    if any(forbidden in lowered for forbidden in _FORBIDDEN_SECRET_VALUES):
        return f"{name} contains a placeholder value copied from an example file"
    if len(value) < _MIN_SECRET_LENGTH:
        return f"{name} is too short ({len(value)} chars); at least {_MIN_SECRET_LENGTH} are required"
    if _REPEATED_CHAR_RE.match(value):
        return f"{name} contains only one repeated character"
    if _WEAK_PREFIX_RE.match(value):
        return f"{name} starts with a common weak pattern"
    return None


def decode_hmac_key(value: str) -> bytes:
    """Prefer the base64 reading when it yields at least 16 bytes; otherwise use UTF-8."""
    try:
        decoded = base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        decoded = b""
    if len(decoded) >= 16:
        return decoded
    return value.encode("utf-8")


def decode_crypto_key(value: str) -> bytes | None:
    """Return the 32-byte AES key encoded in value (base64 or raw), or None."""
    try:
        decoded = base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        decoded = b""
    if len(decoded) == 32:
        return decoded
    raw = value.encode("utf-8")
    if len(raw) == 32:
        return raw
    return None


def _dev_fallback(kind: SecretKind) -> str:
    # Deterministic so dev sessions and encrypted rows survive restarts.
    return hashlib.sha256(f"tillgate-development-fallback:{kind.value}".encode()).hexdigest()


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SecretBundle:
    """Validated key material, injected into the services that sign or encrypt."""

    session: str
    csrf: str
    hmac_key: bytes
    crypto_key: bytes

    def get(self, kind: SecretKind) -> str | bytes:
        """get_signing_secret(kind) -- the single lookup point for key material."""
        return {
            SecretKind.SESSION: self.session,
            SecretKind.CSRF: self.csrf,
            SecretKind.HMAC: self.hmac_key,
            SecretKind.CRYPTO: self.crypto_key,
        }[kind]


@dataclass(frozen=True)
class SecretCheck:
    """Outcome of load_secrets(): raw values plus every problem found, keyed by kind."""

    values: dict[SecretKind, str]
    problems: dict[SecretKind, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.problems


def load_secrets(settings: Settings) -> SecretCheck:
    """Resolve and validate every secret kind. Pure: never raises, never logs."""
    values = {
        SecretKind.SESSION: settings.session_secret,
        SecretKind.CSRF: settings.csrf_secret,
        SecretKind.HMAC: settings.hmac_secret,
        SecretKind.CRYPTO: settings.crypto_key,
    }
    problems: dict[SecretKind, str] = {}
    for kind, value in values.items():
        if kind is SecretKind.CSRF and not value:
            continue  # optional, inherits the session secret
        problem = secret_problem(kind.env_name, value)
        if problem is None and kind is SecretKind.CRYPTO and decode_crypto_key(value) is None:
            problem = "CRYPTO_KEY must be 32 bytes (base64-encoded or raw)"
        if problem is not None:
            problems[kind] = problem
    return SecretCheck(values=values, problems=problems)


def init_secrets(settings: Settings) -> SecretBundle:
    """Validate secrets once at startup and apply the production / development policy.

    Raises:
        ConfigurationError: production runtime with at least one problem.
    """
    check = load_secrets(settings)
    if check.problems and settings.is_production:
        details = "; ".join(check.problems.values())
        raise ConfigurationError(
            f"Refusing to start with unsafe secrets: {details}. "
            "Generate one with: python main.py gen-secret"
        )

    resolved: dict[SecretKind, str] = {}
    for kind, value in check.values.items():
        if kind in check.problems:
            logger.warning(
                "%s -- using a deterministic development fallback. Never deploy this configuration.",
                check.problems[kind],
            )
            resolved[kind] = _dev_fallback(kind)
        else:
            resolved[kind] = value

    session = resolved[SecretKind.SESSION]
    csrf = resolved[SecretKind.CSRF] or session
    crypto_key = decode_crypto_key(resolved[SecretKind.CRYPTO])
    if crypto_key is None:
        # Dev fallback is 64 hex chars; use its digest as the 32-byte key.
        crypto_key = hashlib.sha256(resolved[SecretKind.CRYPTO].encode()).digest()

    if check.ok:
        logger.info("All secrets validated")
    return SecretBundle(
        session=session,
        csrf=csrf,
        hmac_key=decode_hmac_key(resolved[SecretKind.HMAC]),
        crypto_key=crypto_key,
    )
