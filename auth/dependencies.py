"""
auth/dependencies.py -- FastAPI Depends() helpers for identity and CSRF.

The only credential is the session cookie (name from
SessionTokenService.cookie_name). Two strengths of identity lookup exist:

  try_get_identity_hint()  signature + expiry only, no DB hit. Never raises.
                           For cosmetic decisions such as "show the login
                           link or the account menu". Never authorize on it.
  get_current_identity()   signature + expiry + revocation mark. Raises
                           AuthenticationError (401). Use for anything
                           privileged.

require_csrf() layers the anti-forgery check on top of get_current_identity()
for non-safe methods (everything except GET, HEAD, OPTIONS).

Services are read from request.app.state.services (see api/services.py).

Layer rule: auth/dependencies.py may import from fastapi because this module
is part of the FastAPI dependency injection system. No imports from api/ or
ratelimit/.
"""

from __future__ import annotations

from fastapi import Depends, Request

from auth.models import Identity
from core.errors import AuthenticationError


def _session_token(request: Request) -> str | None:
    sessions = request.app.state.services.sessions
    return request.cookies.get(sessions.cookie_name) or None


def try_get_identity_hint(request: Request) -> Identity | None:
    """Return the cookie's identity without the revocation lookup, or None."""
    token = _session_token(request)
    if token is None:
        return None
    return request.app.state.services.sessions.verify(token, skip_revocation_check=True)


def get_current_identity(request: Request) -> Identity:
    """Require a valid, unrevoked session. Raises AuthenticationError (401) otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(identity: Identity = Depends(get_current_identity)): ...
    """
    token = _session_token(request)
    identity = request.app.state.services.sessions.verify(token) if token else None
    if identity is None:
        raise AuthenticationError()
    return identity


def require_csrf(request: Request, identity: Identity = Depends(get_current_identity)) -> Identity:
    """Require a valid session and, on mutating methods, a matching CSRF token header.

    Raises CsrfError (403) when the token is missing or minted for someone else.
    """
    csrf = request.app.state.services.csrf
    if csrf.method_requires_protection(request.method):
        csrf.require_valid(request.headers, identity)
    return identity
