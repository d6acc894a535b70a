"""
auth/audit.py -- Best-effort audit trail for authentication and team events.

AuditLog.record() is scheduled with FastAPI BackgroundTasks, so it runs after
the response has been sent. A failing audit write must never turn a
successful login into a 500: storage errors are logged to "tillgate.audit",
counted, and dropped.

Emails never reach this module in plaintext. Routes pass
EmailCodec.redact(...) output in metadata when an address is relevant.

Layer rule: no imports from api/ or ratelimit/.
"""

from __future__ import annotations

import logging
import threading

from sqlalchemy.exc import SQLAlchemyError

from auth.models import AuditEntry
from auth.store import AuditStore

logger = logging.getLogger("tillgate.audit")


class AuditLog:
    def __init__(self, store: AuditStore) -> None:
        self._store = store
        self._failures = 0
        self._lock = threading.Lock()

    @property
    def failures(self) -> int:
        """Number of entries dropped because the store rejected them."""
        return self._failures

    def record(self, entry: AuditEntry) -> None:
        try:
            self._store.insert(entry)
        except SQLAlchemyError:
            with self._lock:
                self._failures += 1
            logger.exception("Audit write failed for action=%s status=%s", entry.action, entry.status)
