"""
auth/csrf.py -- Stateless anti-forgery tokens bound to the session's user.

Token format: random.signature, where

    random    = base64url(32 random bytes)
    signature = base64url(HMAC-SHA256(csrf_secret, random + ":" + user_id))

Nothing is stored server-side. A token minted for one user never verifies for
another, and it lives exactly as long as the session that fetched it.

This is defense in depth on top of SameSite=Strict session cookies. Clients
fetch a token from GET /api/v1/auth/csrf-token and echo it in the
X-CSRF-Token (or CSRF-Token) header on every non-safe request.

Layer rule: no imports from api/ or ratelimit/.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
from collections.abc import Mapping

from auth.models import Identity
from core.errors import AuthenticationError, CsrfError

CSRF_HEADER_NAMES = ("X-CSRF-Token", "CSRF-Token")
_SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})
_TOKEN_BYTES = 32


class CsrfTokenService:
    def __init__(self, secret: str) -> None:
        self._key = secret.encode("utf-8")

    def _sign(self, random_value: str, user_id: int) -> str:
        mac = hmac.new(self._key, f"{random_value}:{user_id}".encode("utf-8"), hashlib.sha256).digest()
        return base64.urlsafe_b64encode(mac).rstrip(b"=").decode("ascii")

    def issue(self, identity: Identity) -> str:
        random_value = secrets.token_urlsafe(_TOKEN_BYTES)
        return f"{random_value}.{self._sign(random_value, identity.user_id)}"

    def verify(self, token: str | None, identity: Identity | None) -> bool:
        if not token or identity is None:
            return False
        parts = token.split(".")
        if len(parts) != 2:
            return False
        random_value, provided = parts
        expected = self._sign(random_value, identity.user_id)
        return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))

    def require_valid(self, headers: Mapping[str, str], identity: Identity | None) -> None:
        """Raise unless headers carry a valid token for identity.

        Raises:
            AuthenticationError: no identity (401).
            CsrfError: token missing or invalid (403).
        """
        if identity is None:
            raise AuthenticationError("No active session.")
        token = next((headers.get(name) for name in CSRF_HEADER_NAMES if headers.get(name)), None)
        if not self.verify(token, identity):
            raise CsrfError()

    @staticmethod
    def method_requires_protection(method: str) -> bool:
        return method.upper() not in _SAFE_METHODS
