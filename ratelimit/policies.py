"""
ratelimit/policies.py -- Named rate-limit policies.

Each policy is a namespace plus a (limit, window) pair. Development limits are
roughly ten times the production ones so local testing is not throttled, but
still finite so a runaway loop shows up.
"""

from __future__ import annotations

from dataclasses import dataclass

from core.config import Settings

_MINUTE = 60
_HOUR = 60 * _MINUTE


@dataclass(frozen=True)
class RateLimitPolicy:
    name: str
    limit: int
    window_seconds: int
    dev_limit: int

    def limit_for(self, settings: Settings) -> int:
        return self.limit if settings.is_production else self.dev_limit


POLICIES: dict[str, RateLimitPolicy] = {
    p.name: p
    for p in (
        RateLimitPolicy("login", 5, 15 * _MINUTE, 100),
        RateLimitPolicy("register", 3, 15 * _MINUTE, 100),
        RateLimitPolicy("password_forgot", 3, _HOUR, 100),
        RateLimitPolicy("password_reset", 5, _HOUR, 100),
        RateLimitPolicy("email_verify_resend", 3, 15 * _MINUTE, 100),
        RateLimitPolicy("receipt_create", 30, _MINUTE, 300),
        RateLimitPolicy("place_create", 10, 15 * _MINUTE, 100),
        RateLimitPolicy("item_create", 50, _MINUTE, 500),
        RateLimitPolicy("item_update", 100, _MINUTE, 1000),
        RateLimitPolicy("api_default", 60, _MINUTE, 600),
    )
}


def get_policy(name: str) -> RateLimitPolicy:
    """Raises KeyError for an unknown policy name, at route definition time."""
    return POLICIES[name]
