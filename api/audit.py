"""
api/audit.py -- Schedule audit entries from route handlers.

Entries are written by auth.audit.AuditLog in a BackgroundTask, after the
response is sent. This helper only gathers request metadata (client IP and
User-Agent) and queues the write.
"""

from __future__ import annotations

from fastapi import BackgroundTasks, Request

from api.limiter import client_ip
from auth.models import AuditEntry


def schedule_audit(
    request: Request,
    background_tasks: BackgroundTasks,
    action: str,
    status: str,
    *,
    actor_user_id: int | None = None,
    team_id: int | None = None,
    message: str | None = None,
    metadata: dict | None = None,
) -> None:
    entry = AuditEntry(
        action=action,
        status=status,
        message=message,
        actor_user_id=actor_user_id,
        team_id=team_id,
        ip=client_ip(request),
        user_agent=request.headers.get("User-Agent"),
        metadata=metadata,
    )
    background_tasks.add_task(request.app.state.services.audit.record, entry)
