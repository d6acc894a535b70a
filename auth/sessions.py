"""
auth/sessions.py -- Signed session tokens, revocation, and the session cookie.

Token format:

    base64url(json payload) + "." + base64url(HMAC-SHA256(secret, encoded payload))

Payload keys: sub (user id), name, role, iat, exp. Both are epoch seconds;
iat keeps millisecond precision. The format is not JWT: there is no header,
no algorithm field and so nothing for a client to negotiate.

Lifecycle: ISSUED -> VALID -> EXPIRED (now >= exp) or REVOKED (iat earlier
than users.session_revoked_at). Revocation is a per-user timestamp in epoch
milliseconds, so "log out everywhere" is one UPDATE and no token list is
stored. A token minted in the same millisecond as the mark survives it, which
lets logout-others reissue this device's cookie right after revoking.

Verification never raises. Non-ASCII cookie text, bad signature, bad JSON,
expiry, unknown or inactive user, and any storage error all map to None
(fail closed). The HTTP layer turns None into 401.

Callers choose between two strengths:
  verify(token)                              signature + expiry + revocation
  verify(token, skip_revocation_check=True)  signature + expiry only, for
                                             cosmetic redirects where a DB
                                             round trip is not worth it

Cookie: HTTP-only, SameSite=Strict, path "/". Secure and the __Host- name
prefix in production (see Settings.session_cookie_name).

Layer rule: no imports from api/ or ratelimit/.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import math
import time
from typing import TYPE_CHECKING, Callable

from sqlalchemy.exc import SQLAlchemyError

from auth.models import Identity, SessionToken

if TYPE_CHECKING:
    from starlette.responses import Response

    from auth.store import UserStore

logger = logging.getLogger("tillgate.sessions")

_EPOCH_EXPIRES = "Thu, 01 Jan 1970 00:00:00 GMT"


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64url_decode(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


def _to_ms(epoch_seconds: float) -> int:
    return round(epoch_seconds * 1000)


class SessionTokenService:
    """Issue, verify and revoke session tokens.

    Args:
        secret:          The session signing secret (SecretBundle.session).
        store:           UserStore used for the revocation lookup.
        cookie_name:     "__Host-session" in production, "session" in development.
        secure:          Whether the cookie carries the Secure attribute.
        default_max_age: Token and cookie lifetime when none is given.
        clock:           Returns the current time in epoch seconds. Injected by tests.
    """

    def __init__(
        self,
        secret: str,
        store: UserStore,
        *,
        cookie_name: str = "session",
        secure: bool = True,
        default_max_age: int = 60 * 60 * 24 * 7,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._key = secret.encode("utf-8")
        self._store = store
        self.cookie_name = cookie_name
        self.secure = secure
        self.default_max_age = default_max_age
        self._clock = clock

    def now(self) -> int:
        return int(self._clock())

    def now_ms(self) -> int:
        """Current time in epoch milliseconds, the unit of the revocation mark."""
        return _to_ms(self._clock())

    def _sign(self, encoded_payload: str) -> str:
        mac = hmac.new(self._key, encoded_payload.encode("ascii"), hashlib.sha256).digest()
        return _b64url_encode(mac)

    # ------------------------------------------------------------------
    # Issue / decode / verify
    # ------------------------------------------------------------------

    def issue(self, identity: Identity, max_age_seconds: int | None = None) -> str:
        max_age = max_age_seconds if max_age_seconds and max_age_seconds > 0 else self.default_max_age
        now = self._clock()
        payload = {
            "sub": identity.user_id,
            "name": identity.display_name,
            "role": identity.role,
            "iat": _to_ms(now) / 1000,
            "exp": int(now) + max_age,
        }
        encoded = _b64url_encode(json.dumps(payload, separators=(",", ":")).encode("utf-8"))
        return f"{encoded}.{self._sign(encoded)}"

    def decode(self, token: str | None) -> SessionToken | None:
        """Check signature, shape and expiry. Performs no storage lookup."""
        # Starlette decodes cookie headers as latin-1; real tokens are base64url.
        if not token or not token.isascii() or "." not in token:
            return None
        encoded, _, signature = token.rpartition(".")
        if not hmac.compare_digest(signature.encode("ascii"), self._sign(encoded).encode("ascii")):
            return None
        try:
            payload = json.loads(_b64url_decode(encoded))
            identity = Identity(
                user_id=int(payload["sub"]),
                display_name=str(payload["name"]),
                role=str(payload["role"]),
            )
            issued_at, expires_at = float(payload["iat"]), int(payload["exp"])
        except (binascii.Error, UnicodeDecodeError, ValueError, TypeError, KeyError):
            return None
        if not math.isfinite(issued_at) or issued_at >= expires_at or self.now() >= expires_at:
            return None
        return SessionToken(identity=identity, issued_at=issued_at, expires_at=expires_at)

    def verify(self, token: str | None, skip_revocation_check: bool = False) -> Identity | None:
        decoded = self.decode(token)
        if decoded is None:
            return None
        if skip_revocation_check:
            return decoded.identity
        try:
            user = self._store.get_by_id(decoded.identity.user_id)
        except SQLAlchemyError:
            logger.exception("Revocation lookup failed for user %s; denying", decoded.identity.user_id)
            return None
        if user is None or not user.is_active:
            return None
        if user.session_revoked_at is not None and _to_ms(decoded.issued_at) < user.session_revoked_at:
            return None
        return decoded.identity

    def revoke_all(self, user_id: int) -> int:
        """Invalidate every token issued for user_id before now. Returns the mark written (epoch ms)."""
        revoked_at = self.now_ms()
        self._store.set_session_revoked_at(user_id, revoked_at)
        logger.info("Sessions revoked for user %s at %s", user_id, revoked_at)
        return revoked_at

    # ------------------------------------------------------------------
    # Cookie
    # ------------------------------------------------------------------

    def set_cookie(self, response: Response, token: str, max_age: int | None = None) -> None:
        response.set_cookie(
            self.cookie_name,
            value=token,
            max_age=max_age if max_age and max_age > 0 else self.default_max_age,
            path="/",
            secure=self.secure,
            httponly=True,
            samesite="strict",
        )

    def clear(self, response: Response) -> None:
        """Overwrite the cookie with an empty, already-expired one carrying the same attributes."""
        response.set_cookie(
            self.cookie_name,
            value="",
            max_age=0,
            expires=_EPOCH_EXPIRES,
            path="/",
            secure=self.secure,
            httponly=True,
            samesite="strict",
        )
