"""
api/routes/v1/teams.py -- Team and membership REST endpoints.

Routes:
  POST   /api/v1/teams                              -- create a team; caller becomes OWNER
  GET    /api/v1/teams/{team_id}                    -- team detail (member)
  GET    /api/v1/teams/{team_id}/members            -- list members (member)
  GET    /api/v1/teams/{team_id}/audit-logs         -- recent audit entries, redacted (member)
  POST   /api/v1/teams/{team_id}/members            -- add a member (admin, role policy, member limit)
  PATCH  /api/v1/teams/{team_id}/members/{user_id}  -- change a member's role (admin, role policy)
  DELETE /api/v1/teams/{team_id}                    -- delete the team (owner)

Every permission decision goes through services.guard (auth/authorization.py).
A missing team is reported as 403 NOT_FOUND before membership is evaluated;
an existing team the caller does not belong to is 403 NOT_MEMBER.
"""

from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, Response
from sqlalchemy.exc import IntegrityError

from api.audit import schedule_audit
from api.limiter import rate_limit
from api.models import (
    AuditLogEntryResponse,
    TeamCreate,
    TeamMemberCreate,
    TeamMemberPatch,
    TeamMemberResponse,
    TeamResponse,
)
from api.services import Services
from auth.dependencies import get_current_identity, require_csrf
from auth.models import AuditEntry, Identity, Membership, Team, TeamMember, TeamRole
from core.errors import AuthorizationCode, AuthorizationError
from ratelimit.backends import RateLimitResult

# Auth policy:
# - GET    /teams/{id}, /teams/{id}/members,
#          /teams/{id}/audit-logs:            requires auth + membership
# - POST   /teams:                            requires auth + CSRF
# - POST   /teams/{id}/members:               requires auth + CSRF + ADMIN/OWNER
# - PATCH  /teams/{id}/members/{user_id}:     requires auth + CSRF + ADMIN/OWNER
# - DELETE /teams/{id}:                       requires auth + CSRF + OWNER
router = APIRouter()


@router.post("/teams", response_model=TeamResponse, status_code=201)
def create_team(
    request: Request,
    body: TeamCreate,
    identity: Identity = Depends(require_csrf),
    _: RateLimitResult = Depends(rate_limit("api_default")),
) -> TeamResponse:
    services = _services(request)
    team_id = services.team_store.create_team(
        Team(name=body.name, owner_id=identity.user_id, max_members=body.max_members)
    )
    team = services.team_store.get_team(team_id)
    return _team_to_response(team, TeamRole.OWNER)


@router.get("/teams/{team_id}", response_model=TeamResponse)
def get_team(
    request: Request,
    team_id: int,
    identity: Identity = Depends(get_current_identity),
) -> TeamResponse:
    team, membership = _load_team(_services(request), identity, team_id)
    return _team_to_response(team, membership.role)


@router.get("/teams/{team_id}/members", response_model=list[TeamMemberResponse])
def list_members(
    request: Request,
    team_id: int,
    identity: Identity = Depends(get_current_identity),
) -> list[TeamMemberResponse]:
    services = _services(request)
    _load_team(services, identity, team_id)
    return [_member_to_response(m) for m in services.team_store.list_members(team_id)]


@router.get("/teams/{team_id}/audit-logs", response_model=list[AuditLogEntryResponse])
def list_audit_logs(
    request: Request,
    team_id: int,
    limit: int = 50,
    identity: Identity = Depends(get_current_identity),
) -> list[AuditLogEntryResponse]:
    """Newest entries for the team and its current members. limit is clamped to 1..200."""
    services = _services(request)
    _load_team(services, identity, team_id)
    member_ids = [m.user_id for m in services.team_store.list_members(team_id)]
    entries = services.audit_store.for_team(team_id, member_ids, limit=max(1, min(limit, 200)))
    return [_audit_to_response(e) for e in entries]


@router.post("/teams/{team_id}/members", response_model=TeamMemberResponse, status_code=201)
def add_member(
    request: Request,
    team_id: int,
    body: TeamMemberCreate,
    background_tasks: BackgroundTasks,
    identity: Identity = Depends(require_csrf),
    _: RateLimitResult = Depends(rate_limit("api_default")),
) -> TeamMemberResponse:
    """Add an existing user to the team.

    Check order: team exists, caller is ADMIN/OWNER, the requested role is one
    the caller may grant, the team is under its member cap.
    """
    services = _services(request)
    _load_team(services, identity, team_id)
    membership = services.guard.require_admin(identity, team_id)
    target_role = TeamRole(body.role.value)
    services.guard.validate_role_assignment(membership, target_role)

    if services.user_store.get_by_id(body.user_id) is None:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "User not found."})
    services.guard.check_member_limit(team_id)

    try:
        services.team_store.add_member(TeamMember(team_id=team_id, user_id=body.user_id, role=target_role.value))
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": "User is already a member of this team."},
        ) from exc

    schedule_audit(
        request,
        background_tasks,
        "team.member.add",
        "SUCCESS",
        actor_user_id=identity.user_id,
        team_id=team_id,
        metadata={"user_id": body.user_id, "role": target_role.value},
    )
    return _member_to_response(services.team_store.get_member(team_id, body.user_id))


@router.patch("/teams/{team_id}/members/{user_id}", response_model=TeamMemberResponse)
def update_member_role(
    request: Request,
    team_id: int,
    user_id: int,
    body: TeamMemberPatch,
    background_tasks: BackgroundTasks,
    identity: Identity = Depends(require_csrf),
) -> TeamMemberResponse:
    """Change a member's role.

    The owner's own row cannot be edited here, and only the owner may touch an
    existing ADMIN (demoting an admin is as sensitive as promoting one).
    """
    services = _services(request)
    team, _membership = _load_team(services, identity, team_id)
    membership = services.guard.require_admin(identity, team_id)
    target_role = TeamRole(body.role.value)
    services.guard.validate_role_assignment(membership, target_role)

    target = services.team_store.get_member(team_id, user_id)
    if target is None:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "Member not found."})
    if user_id == team.owner_id:
        raise AuthorizationError("The owner's role cannot be changed.", AuthorizationCode.OWNER_ASSIGNMENT_FORBIDDEN)
    if target.role == TeamRole.ADMIN.value and not membership.is_owner:
        raise AuthorizationError(
            "Only team owners can change an admin's role",
            AuthorizationCode.OWNER_REQUIRED_FOR_ROLE,
        )

    services.team_store.update_member_role(team_id, user_id, target_role.value)
    schedule_audit(
        request,
        background_tasks,
        "team.member.role",
        "SUCCESS",
        actor_user_id=identity.user_id,
        team_id=team_id,
        metadata={"user_id": user_id, "from": target.role, "to": target_role.value},
    )
    return _member_to_response(services.team_store.get_member(team_id, user_id))


@router.delete("/teams/{team_id}", status_code=204)
def delete_team(
    request: Request,
    team_id: int,
    background_tasks: BackgroundTasks,
    identity: Identity = Depends(require_csrf),
) -> Response:
    services = _services(request)
    _load_team(services, identity, team_id)
    services.guard.require_owner(identity, team_id)
    services.team_store.delete_team(team_id)
    schedule_audit(
        request,
        background_tasks,
        "team.delete",
        "SUCCESS",
        actor_user_id=identity.user_id,
        team_id=team_id,
    )
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _services(request: Request) -> Services:
    return request.app.state.services


def _load_team(services: Services, identity: Identity, team_id: int) -> tuple[Team, Membership]:
    """403 NOT_FOUND for a missing team, 403 NOT_MEMBER for a stranger."""
    return services.guard.require_resource_access(identity, services.team_store.get_team(team_id), "Team")


def _team_to_response(team: Team | None, role: TeamRole) -> TeamResponse:
    if team is None:
        raise HTTPException(
            status_code=500,
            detail={"code": "internal_error", "message": "Team not found after write."},
        )
    return TeamResponse(
        id=team.id,
        name=team.name,
        owner_id=team.owner_id,
        max_members=team.max_members,
        created_at=team.created_at or "",
        your_role=role.value,
    )


def _member_to_response(member: TeamMember | None) -> TeamMemberResponse:
    if member is None:
        raise HTTPException(
            status_code=500,
            detail={"code": "internal_error", "message": "Member not found after write."},
        )
    return TeamMemberResponse(
        team_id=member.team_id,
        user_id=member.user_id,
        role=member.role,
        created_at=member.created_at or "",
    )


def _audit_to_response(entry: AuditEntry) -> AuditLogEntryResponse:
    # ip and user_agent are never exposed.
    return AuditLogEntryResponse(
        id=entry.id,
        action=entry.action,
        status=entry.status,
        message=entry.message,
        actor_user_id=entry.actor_user_id,
        team_id=entry.team_id,
        metadata=entry.metadata,
        created_at=entry.created_at or "",
    )
