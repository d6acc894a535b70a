"""
auth/authorization.py -- Team-scoped permission checks.

Every handler that touches a team resource goes through AuthorizationGuard.
There is one place that decides "is this user allowed here", so a new route
cannot forget a check by inlining its own membership query.

Roles, strongest first: OWNER > ADMIN > MEMBER. The owner is the user named
in teams.owner_id; a membership row is not required for the owner.

Denials raise core.errors.AuthorizationError carrying an AuthorizationCode:

  NOT_MEMBER                 user has no relationship to the team
  INSUFFICIENT_ROLE          member, but ADMIN or OWNER was required
  OWNER_ONLY                 only the owner may do this
  OWNER_REQUIRED_FOR_ROLE    a non-owner tried to grant ADMIN or OWNER
  OWNER_ASSIGNMENT_FORBIDDEN OWNER is never granted through membership edits
  LIMIT_EXCEEDED             team is at its member cap
  NOT_FOUND                  the resource does not exist

NOT_FOUND and NOT_MEMBER share status 403 and differ in code and message. A missing
resource is reported as missing before membership is evaluated.

Layer rule: no imports from api/ or ratelimit/.
"""

from __future__ import annotations

from typing import Protocol, TypeVar

from auth.models import Identity, Membership, TeamRole
from auth.store import TeamStore
from core.errors import AuthorizationCode, AuthorizationError


class TeamOwned(Protocol):
    team_id: int


R = TypeVar("R", bound=TeamOwned)


class AuthorizationGuard:
    def __init__(self, team_store: TeamStore, default_max_members: int = 0) -> None:
        self._teams = team_store
        self._default_max_members = default_max_members

    def get_membership(self, user_id: int, team_id: int) -> Membership | None:
        """Resolve the user's role in a team. None when the team is missing or the user is unrelated."""
        team = self._teams.get_team(team_id)
        if team is None:
            return None
        is_owner = team.owner_id == user_id
        member = self._teams.get_member(team_id, user_id)
        if member is None and not is_owner:
            return None
        role = TeamRole(member.role) if member is not None else TeamRole.OWNER
        return Membership(team_id=team_id, user_id=user_id, role=role, is_owner=is_owner)

    def require_member(self, identity: Identity, team_id: int) -> Membership:
        membership = self.get_membership(identity.user_id, team_id)
        if membership is None:
            raise AuthorizationError("User is not a member of this team", AuthorizationCode.NOT_MEMBER)
        return membership

    def require_admin(self, identity: Identity, team_id: int) -> Membership:
        membership = self.require_member(identity, team_id)
        if membership.role is TeamRole.MEMBER:
            raise AuthorizationError("Admin or Owner role required", AuthorizationCode.INSUFFICIENT_ROLE)
        return membership

    def require_owner(self, identity: Identity, team_id: int) -> Membership:
        membership = self.require_member(identity, team_id)
        if not membership.is_owner:
            raise AuthorizationError("Owner role required", AuthorizationCode.OWNER_ONLY)
        return membership

    @staticmethod
    def validate_role_assignment(assigner: Membership, target_role: TeamRole) -> None:
        """Only the owner grants ADMIN; nobody grants OWNER through this path."""
        if target_role in (TeamRole.OWNER, TeamRole.ADMIN) and not assigner.is_owner:
            raise AuthorizationError(
                "Only team owners can assign OWNER or ADMIN roles",
                AuthorizationCode.OWNER_REQUIRED_FOR_ROLE,
            )
        if target_role is TeamRole.OWNER:
            raise AuthorizationError(
                "Cannot assign OWNER role. Use ownership transfer instead.",
                AuthorizationCode.OWNER_ASSIGNMENT_FORBIDDEN,
            )

    def require_resource_access(self, identity: Identity, resource: R | None, name: str) -> tuple[R, Membership]:
        if resource is None:
            raise AuthorizationError(f"{name} not found", AuthorizationCode.NOT_FOUND)
        return resource, self.require_member(identity, resource.team_id)

    def check_member_limit(self, team_id: int) -> None:
        """Raise LIMIT_EXCEEDED when one more member would pass the team's cap. 0 or None means unlimited."""
        team = self._teams.get_team(team_id)
        if team is None:
            raise AuthorizationError("Team not found", AuthorizationCode.NOT_FOUND)
        max_members = team.max_members if team.max_members is not None else self._default_max_members
        if max_members and self._teams.count_members(team_id) >= max_members:
            raise AuthorizationError(
                f"Team member limit reached ({max_members}).",
                AuthorizationCode.LIMIT_EXCEEDED,
            )
