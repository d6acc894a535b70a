"""
api/services.py -- The injected services container.

Pattern: Composition root. build_services() is the only place where secrets,
stores, codecs and the rate limiter are wired together. The lifespan in
api/main.py calls it once and stores the result on app.state.services; route
handlers and dependencies read it from there. Tests call it with in-memory
stores and a MemoryRateLimiter instead of patching module globals.

Order matters:
  1. init_secrets()        -- raises ConfigurationError in production when unsafe
  2. build_rate_limiter()  -- raises ConfigurationError in production without Redis
  3. stores and services   -- depend on both
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from auth.audit import AuditLog
from auth.authorization import AuthorizationGuard
from auth.csrf import CsrfTokenService
from auth.email_codec import EmailCodec, redact_email
from auth.sessions import SessionTokenService
from auth.store import AuditStore, TeamStore, UserStore
from core.config import Settings
from core.secrets import SecretBundle, init_secrets
from ratelimit.backends import RateLimiter, build_rate_limiter

logger = logging.getLogger("tillgate.api")

# (plaintext email, one-time URL) -> None. Carries password reset and email
# verification links. Mail transport lives outside tillgate.
LinkNotifier = Callable[[str, str], None]


def link_logger(is_production: bool) -> LinkNotifier:
    """Default notifier: no mail transport is wired in, so record that a link was issued.

    The URL itself is only logged in development; in production it would be a
    working credential sitting in a log file.
    """

    def notify(email: str, url: str) -> None:
        if is_production:
            logger.info("One-time link issued for %s (no mail transport configured)", redact_email(email))
        else:
            logger.info("One-time link for %s: %s", redact_email(email), url)

    return notify


@dataclass
class Services:
    settings: Settings
    secrets: SecretBundle
    user_store: UserStore
    team_store: TeamStore
    audit_store: AuditStore
    codec: EmailCodec
    sessions: SessionTokenService
    csrf: CsrfTokenService
    rate_limiter: RateLimiter
    guard: AuthorizationGuard
    audit: AuditLog
    link_notifier: LinkNotifier

    def close(self) -> None:
        self.user_store.close()


def build_services(
    settings: Settings,
    *,
    user_store: UserStore | None = None,
    rate_limiter: RateLimiter | None = None,
    link_notifier: LinkNotifier | None = None,
    clock: Callable[[], float] = time.time,
) -> Services:
    """Validate configuration and assemble every runtime service.

    Raises:
        ConfigurationError: unsafe secrets or a missing rate-limit backend in production.
    """
    bundle = init_secrets(settings)
    limiter = rate_limiter if rate_limiter is not None else build_rate_limiter(settings)

    users = user_store if user_store is not None else UserStore(db_url=settings.database_url)
    teams = TeamStore(users.engine)
    audit_store = AuditStore(users.engine)

    return Services(
        settings=settings,
        secrets=bundle,
        user_store=users,
        team_store=teams,
        audit_store=audit_store,
        codec=EmailCodec(bundle.hmac_key, bundle.crypto_key),
        sessions=SessionTokenService(
            bundle.session,
            users,
            cookie_name=settings.session_cookie_name,
            secure=settings.secure_cookies,
            default_max_age=settings.session_max_age_seconds,
            clock=clock,
        ),
        csrf=CsrfTokenService(bundle.csrf),
        rate_limiter=limiter,
        guard=AuthorizationGuard(teams, default_max_members=settings.default_team_max_members),
        audit=AuditLog(audit_store),
        link_notifier=link_notifier or link_logger(settings.is_production),
    )
