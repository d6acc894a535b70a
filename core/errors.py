"""
core/errors.py -- Exception taxonomy shared by every tillgate layer.

Only two kinds of failure are raised:
  - ConfigurationError: a programmer / operator error (missing or weak secret,
    missing shared rate-limit backend in production). Allowed to crash startup.
  - The request-scoped denials below, raised at the HTTP boundary by
    auth.dependencies and the route handlers. api/main.py maps each one to the
    JSON error envelope and status code it carries.

Services underneath (session verification, CSRF verification, rate-limit
checks, login) never raise for expected outcomes; they return None, False, or
a result object and the boundary decides which of these exceptions to raise.

Layer rule: core/ is the kernel. No imports from api/, auth/, or ratelimit/.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ratelimit.backends import RateLimitResult


class TillgateError(Exception):
    """Base class. status_code and code drive the HTTP error envelope."""

    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ConfigurationError(TillgateError):
    """Required configuration is missing or unsafe. Fatal in production."""

    code = "configuration_error"


class AuthenticationError(TillgateError):
    """No session, or the session failed verification."""

    status_code = 401
    code = "unauthorized"

    def __init__(self, message: str = "Authentication required.") -> None:
        super().__init__(message)


class CsrfError(TillgateError):
    """Missing or invalid anti-forgery token on a mutating request."""

    status_code = 403
    code = "csrf_failed"

    def __init__(self, message: str = "Invalid or missing CSRF token.") -> None:
        super().__init__(message)


class AuthorizationCode(str, Enum):
    NOT_MEMBER = "NOT_MEMBER"
    INSUFFICIENT_ROLE = "INSUFFICIENT_ROLE"
    OWNER_ONLY = "OWNER_ONLY"
    OWNER_REQUIRED_FOR_ROLE = "OWNER_REQUIRED_FOR_ROLE"
    OWNER_ASSIGNMENT_FORBIDDEN = "OWNER_ASSIGNMENT_FORBIDDEN"
    LIMIT_EXCEEDED = "LIMIT_EXCEEDED"
    NOT_FOUND = "NOT_FOUND"


class AuthorizationError(TillgateError):
    """A verified identity is not allowed to touch a team-scoped resource.

    Every code maps to 403, NOT_FOUND included: a missing resource and a
    foreign one share a status and differ only in code and message.
    """

    status_code = 403

    def __init__(self, message: str, code: AuthorizationCode) -> None:
        super().__init__(message)
        self.code = code.value
        self.reason = code


class RateLimitExceeded(TillgateError):
    """Admission control denied the request. Carries the limiter's metadata."""

    status_code = 429
    code = "rate_limited"

    def __init__(self, result: RateLimitResult, message: str = "Too many requests.") -> None:
        super().__init__(message)
        self.result = result
