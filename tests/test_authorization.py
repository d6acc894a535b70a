"""Unit tests for auth/authorization.py.

Fixture team: owner Olga, admin Adam, member Mia. Outsider Otto has no
relationship to the team.
"""

from __future__ import annotations

from dataclasses import dataclass

import pytest
from conftest import create_user

from auth.authorization import AuthorizationGuard
from auth.email_codec import EmailCodec
from auth.models import Identity, Team, TeamMember, TeamRole
from auth.store import TeamStore, UserStore
from core.errors import AuthorizationCode, AuthorizationError


@dataclass
class Receipt:
    id: int
    team_id: int


@dataclass
class TeamFixture:
    team_id: int
    owner: Identity
    admin: Identity
    member: Identity
    outsider: Identity


@pytest.fixture
def guard(team_store: TeamStore) -> AuthorizationGuard:
    return AuthorizationGuard(team_store)


@pytest.fixture
def team(user_store: UserStore, team_store: TeamStore, codec: EmailCodec) -> TeamFixture:
    people = {
        name: Identity.from_user(create_user(user_store, codec, email=f"{name}@example.com", name=name))
        for name in ("olga", "adam", "mia", "otto")
    }
    team_id = team_store.create_team(Team(name="Corner Shop", owner_id=people["olga"].user_id, max_members=4))
    team_store.add_member(TeamMember(team_id=team_id, user_id=people["adam"].user_id, role=TeamRole.ADMIN.value))
    team_store.add_member(TeamMember(team_id=team_id, user_id=people["mia"].user_id, role=TeamRole.MEMBER.value))
    return TeamFixture(team_id, people["olga"], people["adam"], people["mia"], people["otto"])


def _code(exc_info: pytest.ExceptionInfo) -> AuthorizationCode:
    return exc_info.value.reason


class TestMembership:
    def test_owner_resolves_as_owner(self, guard: AuthorizationGuard, team: TeamFixture) -> None:
        membership = guard.get_membership(team.owner.user_id, team.team_id)
        assert membership.role is TeamRole.OWNER
        assert membership.is_owner

    def test_outsider_has_none(self, guard: AuthorizationGuard, team: TeamFixture) -> None:
        assert guard.get_membership(team.outsider.user_id, team.team_id) is None

    def test_missing_team_has_none(self, guard: AuthorizationGuard, team: TeamFixture) -> None:
        assert guard.get_membership(team.owner.user_id, 999) is None


class TestRoleChecks:
    def test_require_member(self, guard: AuthorizationGuard, team: TeamFixture) -> None:
        assert guard.require_member(team.member, team.team_id).role is TeamRole.MEMBER
        with pytest.raises(AuthorizationError) as exc_info:
            guard.require_member(team.outsider, team.team_id)
        assert _code(exc_info) is AuthorizationCode.NOT_MEMBER
        assert exc_info.value.status_code == 403

    def test_require_admin(self, guard: AuthorizationGuard, team: TeamFixture) -> None:
        guard.require_admin(team.owner, team.team_id)
        guard.require_admin(team.admin, team.team_id)
        with pytest.raises(AuthorizationError) as exc_info:
            guard.require_admin(team.member, team.team_id)
        assert _code(exc_info) is AuthorizationCode.INSUFFICIENT_ROLE

    def test_require_owner(self, guard: AuthorizationGuard, team: TeamFixture) -> None:
        guard.require_owner(team.owner, team.team_id)
        with pytest.raises(AuthorizationError) as exc_info:
            guard.require_owner(team.admin, team.team_id)
        assert _code(exc_info) is AuthorizationCode.OWNER_ONLY

    def test_outsider_fails_before_role(self, guard: AuthorizationGuard, team: TeamFixture) -> None:
        with pytest.raises(AuthorizationError) as exc_info:
            guard.require_owner(team.outsider, team.team_id)
        assert _code(exc_info) is AuthorizationCode.NOT_MEMBER


class TestRoleAssignment:
    def test_owner_may_grant_admin(self, guard: AuthorizationGuard, team: TeamFixture) -> None:
        owner = guard.require_member(team.owner, team.team_id)
        AuthorizationGuard.validate_role_assignment(owner, TeamRole.ADMIN)
        AuthorizationGuard.validate_role_assignment(owner, TeamRole.MEMBER)

    def test_admin_may_grant_member_only(self, guard: AuthorizationGuard, team: TeamFixture) -> None:
        admin = guard.require_member(team.admin, team.team_id)
        AuthorizationGuard.validate_role_assignment(admin, TeamRole.MEMBER)
        with pytest.raises(AuthorizationError) as exc_info:
            AuthorizationGuard.validate_role_assignment(admin, TeamRole.ADMIN)
        assert _code(exc_info) is AuthorizationCode.OWNER_REQUIRED_FOR_ROLE

    def test_non_owner_granting_owner(self, guard: AuthorizationGuard, team: TeamFixture) -> None:
        admin = guard.require_member(team.admin, team.team_id)
        with pytest.raises(AuthorizationError) as exc_info:
            AuthorizationGuard.validate_role_assignment(admin, TeamRole.OWNER)
        assert _code(exc_info) is AuthorizationCode.OWNER_REQUIRED_FOR_ROLE

    def test_owner_role_never_assignable(self, guard: AuthorizationGuard, team: TeamFixture) -> None:
        owner = guard.require_member(team.owner, team.team_id)
        with pytest.raises(AuthorizationError) as exc_info:
            AuthorizationGuard.validate_role_assignment(owner, TeamRole.OWNER)
        assert _code(exc_info) is AuthorizationCode.OWNER_ASSIGNMENT_FORBIDDEN


class TestResourceAccess:
    def test_member_reaches_team_resource(self, guard: AuthorizationGuard, team: TeamFixture) -> None:
        receipt = Receipt(id=7, team_id=team.team_id)
        resource, membership = guard.require_resource_access(team.member, receipt, "Receipt")
        assert resource is receipt
        assert membership.role is TeamRole.MEMBER

    def test_missing_resource_is_not_found(self, guard: AuthorizationGuard, team: TeamFixture) -> None:
        with pytest.raises(AuthorizationError) as exc_info:
            guard.require_resource_access(team.outsider, None, "Receipt")
        assert _code(exc_info) is AuthorizationCode.NOT_FOUND
        assert exc_info.value.status_code == 403
        assert exc_info.value.message == "Receipt not found"

    def test_outsider_denied_existing_resource(self, guard: AuthorizationGuard, team: TeamFixture) -> None:
        with pytest.raises(AuthorizationError) as exc_info:
            guard.require_resource_access(team.outsider, Receipt(id=7, team_id=team.team_id), "Receipt")
        assert _code(exc_info) is AuthorizationCode.NOT_MEMBER


class TestMemberLimit:
    def test_under_limit(self, guard: AuthorizationGuard, team: TeamFixture) -> None:
        guard.check_member_limit(team.team_id)

    def test_at_limit(
        self, guard: AuthorizationGuard, team: TeamFixture, team_store: TeamStore
    ) -> None:
        team_store.add_member(TeamMember(team_id=team.team_id, user_id=team.outsider.user_id))
        with pytest.raises(AuthorizationError) as exc_info:
            guard.check_member_limit(team.team_id)
        assert _code(exc_info) is AuthorizationCode.LIMIT_EXCEEDED
        assert "4" in exc_info.value.message

    def test_missing_team(self, guard: AuthorizationGuard) -> None:
        with pytest.raises(AuthorizationError) as exc_info:
            guard.check_member_limit(404)
        assert _code(exc_info) is AuthorizationCode.NOT_FOUND

    def test_default_cap_applies_when_team_has_none(
        self, team_store: TeamStore, team: TeamFixture
    ) -> None:
        team_id = team_store.create_team(Team(name="Kiosk", owner_id=team.owner.user_id))
        AuthorizationGuard(team_store).check_member_limit(team_id)
        with pytest.raises(AuthorizationError):
            AuthorizationGuard(team_store, default_max_members=1).check_member_limit(team_id)
