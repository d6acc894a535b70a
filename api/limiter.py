"""
api/limiter.py -- Route-level rate limiting as a FastAPI dependency.

Usage:

    @router.post("/auth/login")
    def login(..., _: RateLimitResult = Depends(rate_limit("login"))): ...

The dependency checks the shared limiter on app.state.services under the
policy's namespace. Allowed requests get X-RateLimit-* headers on the
response; denied requests raise RateLimitExceeded, which the handler in
api/main.py turns into 429 with Retry-After.

Policy names are resolved when the route module is imported, so a typo fails
at startup rather than on the first request.

Client identifier: the right-most X-Forwarded-For entry (the hop appended by
our own proxy, which the client cannot forge), else X-Real-IP, else the
socket peer, joined with the first 50 characters of the User-Agent.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from fastapi import Request, Response

from core.errors import RateLimitExceeded
from ratelimit.backends import RateLimitResult
from ratelimit.policies import get_policy

logger = logging.getLogger("tillgate.ratelimit")

_UA_PREFIX_LENGTH = 50


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For", "")
    hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
    if hops:
        return hops[-1]
    real_ip = request.headers.get("X-Real-IP", "").strip()
    if real_ip:
        return real_ip
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def client_identifier(request: Request) -> str:
    user_agent = request.headers.get("User-Agent") or "unknown"
    return f"{client_ip(request)}:{user_agent[:_UA_PREFIX_LENGTH]}"


def rate_limit(policy_name: str) -> Callable[[Request, Response], RateLimitResult]:
    policy = get_policy(policy_name)

    def dependency(request: Request, response: Response) -> RateLimitResult:
        services = request.app.state.services
        result = services.rate_limiter.check(
            client_identifier(request),
            policy.limit_for(services.settings),
            policy.window_seconds,
            namespace=policy.name,
        )
        if not result.allowed:
            logger.warning(
                "Rate limit %s exceeded for %s (retry in %ss)",
                policy.name,
                client_ip(request),
                result.retry_after,
            )
            raise RateLimitExceeded(result)
        response.headers.update(result.headers())
        return result

    return dependency
