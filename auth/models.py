"""
auth/models.py -- Domain dataclasses for authentication and team entities.

Pattern: Data class (pure data container, zero logic). Stores and services do
the work; these only own the shape.

Layer rule: no imports from api/ or ratelimit/.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class UserRole(str, Enum):
    USER = "USER"
    ADMIN = "ADMIN"


class TeamRole(str, Enum):
    OWNER = "OWNER"
    ADMIN = "ADMIN"
    MEMBER = "MEMBER"


@dataclass
class User:
    """A first-party account.

    There is no plaintext email field. email_digest is the HMAC lookup key
    (unique), email_enc the AES-GCM blob used to redisplay or mail the address.
    See auth/email_codec.py.

    session_revoked_at is the revocation mark in epoch milliseconds: any session
    token issued before it is rejected. None means "never revoked".
    """

    display_name: str
    email_digest: str
    email_enc: str
    role: str = UserRole.USER.value
    id: int | None = None
    password_hash: str | None = None
    is_active: bool = True
    email_verified: bool = False
    session_revoked_at: int | None = None
    created_at: str | None = None
    last_login: str | None = None


@dataclass(frozen=True)
class Identity:
    """The payload a session token vouches for. Hashable so it can key caches and tests."""

    user_id: int
    display_name: str
    role: str

    @classmethod
    def from_user(cls, user: User) -> Identity:
        if user.id is None:
            raise ValueError("Cannot build an identity for an unsaved user")
        return cls(user_id=user.id, display_name=user.display_name, role=user.role)


@dataclass(frozen=True)
class SessionToken:
    """A decoded, signature-checked session token."""

    identity: Identity
    issued_at: float  # epoch seconds, millisecond precision
    expires_at: int


@dataclass
class Team:
    name: str
    owner_id: int
    id: int | None = None
    # None means "use the deployment default".
    max_members: int | None = None
    created_at: str | None = None

    @property
    def team_id(self) -> int | None:
        """Lets a Team pass through AuthorizationGuard.require_resource_access like any team-owned row."""
        return self.id


@dataclass
class TeamMember:
    team_id: int
    user_id: int
    role: str = TeamRole.MEMBER.value
    created_at: str | None = None


@dataclass(frozen=True)
class Membership:
    """Resolved relationship between a user and a team, as seen by the authorization guard."""

    team_id: int
    user_id: int
    role: TeamRole
    is_owner: bool


@dataclass
class PasswordResetToken:
    """A single-use reset credential. Only the SHA-256 of the raw token is stored."""

    user_id: int
    token_digest: str
    expires_at: str
    id: int | None = None
    used_at: str | None = None
    created_at: str | None = None


@dataclass
class EmailVerificationToken:
    """Proof of address ownership. At most one per user; deleted when consumed."""

    user_id: int
    token_digest: str
    expires_at: str
    id: int | None = None
    created_at: str | None = None


@dataclass
class AuditEntry:
    action: str
    status: str  # "SUCCESS", "DENIED", "ERROR"
    message: str | None = None
    actor_user_id: int | None = None
    team_id: int | None = None
    ip: str | None = None
    user_agent: str | None = None
    metadata: dict | None = None
    id: int | None = None
    created_at: str | None = None
