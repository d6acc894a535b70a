"""
API request and response models for tillgate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.

Emails are accepted as plain strings with a light shape check rather than
EmailStr, so the project does not need the email-validator extra. The codec
normalizes before digesting, so case and surrounding whitespace never matter.
"""

from enum import Enum
from typing import Annotated, Optional

from pydantic import BaseModel, ConfigDict, Field, StringConstraints

from auth.models import Identity

# Loose shape check: one "@", something on each side, a dot in the domain.
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

# Addresses and names are trimmed. Passwords never are: every endpoint hashes
# and compares exactly the characters the user typed.
EmailText = Annotated[str, StringConstraints(strip_whitespace=True, min_length=3, max_length=254)]
EmailAddress = Annotated[
    str, StringConstraints(strip_whitespace=True, min_length=3, max_length=254, pattern=EMAIL_PATTERN)
]
DisplayName = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=100)]


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class AssignableTeamRole(str, Enum):
    """Roles accepted by membership endpoints. OWNER is rejected by the guard, not the schema."""

    OWNER = "OWNER"
    ADMIN = "ADMIN"
    MEMBER = "MEMBER"


# ---------------------------------------------------------------------------
# Auth request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    email: EmailText
    password: str = Field(min_length=1, max_length=255)


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register. Strength rules run in the route."""

    display_name: DisplayName
    email: EmailAddress
    password: str = Field(min_length=1, max_length=255)


class PasswordConfirm(BaseModel):
    """Request body for POST /api/v1/auth/logout-others."""

    password: str = Field(min_length=1, max_length=255)


class EmailRequest(BaseModel):
    """Request body for POST /api/v1/auth/password/forgot and /verify-email/resend."""

    email: EmailText


class ResetPasswordRequest(BaseModel):
    token: str = Field(min_length=16, max_length=256)
    password: str = Field(min_length=1, max_length=255)


class VerifyEmailRequest(BaseModel):
    token: str = Field(min_length=16, max_length=256)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(min_length=1, max_length=255)
    new_password: str = Field(min_length=1, max_length=255)


# ---------------------------------------------------------------------------
# Auth response models
# ---------------------------------------------------------------------------


class MeResponse(BaseModel):
    """Response for GET /api/v1/auth/me. email is decrypted for the owner only."""

    model_config = ConfigDict(frozen=True)

    user_id: int
    display_name: str
    role: str
    email: Optional[str] = None
    email_verified: bool = False


class LoginResponse(BaseModel):
    """Response for POST /api/v1/auth/login and /register. The token itself travels only in the cookie."""

    model_config = ConfigDict(frozen=True)

    user: MeResponse
    expires_in: int


class CsrfTokenResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    csrf_token: str


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


# ---------------------------------------------------------------------------
# Team models
# ---------------------------------------------------------------------------


class TeamCreate(BaseModel):
    """Request body for POST /api/v1/teams."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=255)
    max_members: Optional[int] = Field(default=None, ge=1, le=10_000)


class TeamResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    owner_id: int
    max_members: Optional[int]
    created_at: str
    your_role: str


class TeamMemberCreate(BaseModel):
    """Request body for POST /api/v1/teams/{team_id}/members."""

    user_id: int = Field(ge=1)
    role: AssignableTeamRole = AssignableTeamRole.MEMBER


class TeamMemberPatch(BaseModel):
    """Request body for PATCH /api/v1/teams/{team_id}/members/{user_id}."""

    role: AssignableTeamRole


class TeamMemberResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    team_id: int
    user_id: int
    role: str
    created_at: str


class AuditLogEntryResponse(BaseModel):
    """One row of GET /api/v1/teams/{team_id}/audit-logs.

    IP address and User-Agent stay in the database. Emails in metadata were
    redacted before they were written.
    """

    model_config = ConfigDict(frozen=True)

    id: int
    action: str
    status: str
    message: Optional[str] = None
    actor_user_id: Optional[int] = None
    team_id: Optional[int] = None
    metadata: Optional[dict] = None
    created_at: str


# ---------------------------------------------------------------------------
# Envelope / health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str]


def identity_to_me(identity: Identity, email: Optional[str] = None, email_verified: bool = False) -> MeResponse:
    return MeResponse(
        user_id=identity.user_id,
        display_name=identity.display_name,
        role=identity.role,
        email=email,
        email_verified=email_verified,
    )
