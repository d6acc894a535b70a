"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. UserStore, TeamStore and AuditStore are the
repositories; the _row_to_* functions are the mappers. Services and route
handlers never touch SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  The users table has no plaintext email column. email_digest is the unique
  lookup key and email_enc the encrypted display copy (auth/email_codec.py).

  password_reset_tokens and email_verification_tokens store SHA-256(raw_token),
  never the raw token, so a database read does not hand out working links.

Engine sharing: UserStore owns the Engine. TeamStore and AuditStore are built
on the same Engine (see api/services.py) so one SQLite file or one in-memory
test database holds every table.

DB path: ./tillgate.db by default (DATABASE_URL overrides).

Layer rule: no imports from api/ or ratelimit/.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    or_,
    select,
)
from sqlalchemy.engine import Engine

from auth.models import (
    AuditEntry,
    EmailVerificationToken,
    PasswordResetToken,
    Team,
    TeamMember,
    TeamRole,
    User,
)
from core.config import now_iso

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("display_name", String(255), nullable=False),
    Column("email_digest", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("email_enc", Text, nullable=False),  # v1:iv:ct:tag
    Column("password_hash", Text),
    Column("role", String(30), nullable=False, server_default="USER"),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("email_verified", Integer, nullable=False, server_default="0"),
    Column("session_revoked_at", BigInteger),  # epoch milliseconds, NULL = never revoked
    Column("created_at", String(32), nullable=False),
    Column("last_login", String(32)),
)

_teams = Table(
    "teams",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False),
    Column("owner_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("max_members", Integer),
    Column("created_at", String(32), nullable=False),
)

_team_members = Table(
    "team_members",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("team_id", Integer, ForeignKey("teams.id", ondelete="CASCADE"), nullable=False),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("role", String(16), nullable=False, server_default="MEMBER"),
    Column("created_at", String(32), nullable=False),
    UniqueConstraint("team_id", "user_id", name="uq_team_member"),
)

_reset_tokens = Table(
    "password_reset_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("token_digest", String(64), nullable=False, unique=True),  # SHA-256 hex
    Column("expires_at", String(32), nullable=False),
    Column("used_at", String(32)),
    Column("created_at", String(32), nullable=False),
)

_verification_tokens = Table(
    "email_verification_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False, unique=True),  # one live token per user
    Column("token_digest", String(64), nullable=False, unique=True),  # SHA-256 hex
    Column("expires_at", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
)

_audit_log = Table(
    "audit_log",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("action", String(64), nullable=False),
    Column("status", String(16), nullable=False),
    Column("message", Text),
    Column("actor_user_id", Integer),
    Column("team_id", Integer),
    Column("ip", String(64)),
    Column("user_agent", String(255)),
    Column("meta", Text),  # JSON blob
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _is_expired(iso_timestamp: str, now: datetime | None = None) -> bool:
    now = now or datetime.now(timezone.utc)
    return datetime.fromisoformat(iso_timestamp) <= now


# ---------------------------------------------------------------------------
# Users and one-time tokens
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User, PasswordResetToken and EmailVerificationToken entities.

    Usage:
        store = UserStore()
        uid = store.create_user(User(display_name="Ana", email_digest=d, email_enc=e))
        user = store.get_by_email_digest(d)
        store.close()
    """

    def __init__(self, db_url: str = "sqlite:///tillgate.db") -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite") and ":memory:" not in db_url and "mode=memory" not in db_url:
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the email digest already
        exists. Callers treat that as "address already registered".
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    display_name=user.display_name,
                    email_digest=user.email_digest,
                    email_enc=user.email_enc,
                    password_hash=user.password_hash,
                    role=user.role,
                    is_active=1 if user.is_active else 0,
                    email_verified=1 if user.email_verified else 0,
                    session_revoked_at=user.session_revoked_at,
                    created_at=now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email_digest(self, email_digest: str) -> User | None:
        """Look up a user by the keyed email digest. The only email-based lookup there is."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email_digest == email_digest)).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(self) -> list[User]:
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.id)).fetchall()
        return [_row_to_user(r) for r in rows]

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable fields on an existing user.

        Accepted fields: display_name, role, is_active, email_verified,
        password_hash, session_revoked_at. Booleans are converted to int.

        Returns True if a row was updated, False if user_id was not found.
        """
        for flag in ("is_active", "email_verified"):
            if flag in fields:
                fields[flag] = 1 if fields[flag] else 0
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def set_session_revoked_at(self, user_id: int, revoked_at: int) -> bool:
        """Stamp the revocation mark. Every token issued before revoked_at becomes invalid."""
        return self.update_user(user_id, session_revoked_at=revoked_at)

    def update_last_login(self, user_id: int) -> None:
        with self.engine.connect() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login=now_iso()))
            conn.commit()

    # ------------------------------------------------------------------
    # Password reset tokens
    # ------------------------------------------------------------------

    def create_reset_token(self, token: PasswordResetToken) -> int:
        """Store a new reset token after discarding this user's expired and used ones."""
        now = datetime.now(timezone.utc)
        with self.engine.begin() as conn:
            rows = conn.execute(_reset_tokens.select().where(_reset_tokens.c.user_id == token.user_id)).fetchall()
            stale = [r.id for r in rows if r.used_at is not None or _is_expired(r.expires_at, now)]
            if stale:
                conn.execute(_reset_tokens.delete().where(_reset_tokens.c.id.in_(stale)))
            result = conn.execute(
                _reset_tokens.insert().values(
                    user_id=token.user_id,
                    token_digest=token.token_digest,
                    expires_at=token.expires_at,
                    created_at=now_iso(),
                )
            )
            return result.inserted_primary_key[0]

    def get_reset_token(self, token_digest: str) -> PasswordResetToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(_reset_tokens.select().where(_reset_tokens.c.token_digest == token_digest)).fetchone()
        return _row_to_reset_token(row) if row is not None else None

    def consume_reset_token(self, token_id: int, user_id: int, password_hash: str, revoked_at: int) -> bool:
        """Apply a password reset in one transaction.

        Sets the new hash, stamps the revocation mark, marks this token used,
        and deletes the user's other unused tokens. Returns False (and changes
        nothing) if the token was consumed concurrently.
        """
        with self.engine.begin() as conn:
            claimed = conn.execute(
                _reset_tokens.update()
                .where((_reset_tokens.c.id == token_id) & (_reset_tokens.c.used_at.is_(None)))
                .values(used_at=now_iso())
            )
            if claimed.rowcount == 0:
                return False
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(password_hash=password_hash, session_revoked_at=revoked_at)
            )
            conn.execute(
                _reset_tokens.delete().where(
                    (_reset_tokens.c.user_id == user_id)
                    & (_reset_tokens.c.used_at.is_(None))
                    & (_reset_tokens.c.id != token_id)
                )
            )
        return True

    # ------------------------------------------------------------------
    # Email verification tokens
    # ------------------------------------------------------------------

    def replace_verification_token(self, token: EmailVerificationToken) -> int:
        """Store token as the user's only verification token, discarding any earlier one."""
        with self.engine.begin() as conn:
            conn.execute(_verification_tokens.delete().where(_verification_tokens.c.user_id == token.user_id))
            result = conn.execute(
                _verification_tokens.insert().values(
                    user_id=token.user_id,
                    token_digest=token.token_digest,
                    expires_at=token.expires_at,
                    created_at=now_iso(),
                )
            )
            return result.inserted_primary_key[0]

    def get_verification_token(self, token_digest: str) -> EmailVerificationToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _verification_tokens.select().where(_verification_tokens.c.token_digest == token_digest)
            ).fetchone()
        return _row_to_verification_token(row) if row is not None else None

    def delete_verification_token(self, token_id: int) -> None:
        with self.engine.begin() as conn:
            conn.execute(_verification_tokens.delete().where(_verification_tokens.c.id == token_id))

    def consume_verification_token(self, token_id: int, user_id: int) -> bool:
        """Delete the token and mark the address verified in one transaction.

        Returns False (and changes nothing) if the token was consumed concurrently.
        """
        with self.engine.begin() as conn:
            claimed = conn.execute(_verification_tokens.delete().where(_verification_tokens.c.id == token_id))
            if claimed.rowcount == 0:
                return False
            conn.execute(_users.update().where(_users.c.id == user_id).values(email_verified=1))
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Teams
# ---------------------------------------------------------------------------


class TeamStore:
    """Repository for Team and TeamMember entities. Shares the UserStore engine."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def create_team(self, team: Team) -> int:
        """Insert a team and its owner's membership row atomically."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _teams.insert().values(
                    name=team.name,
                    owner_id=team.owner_id,
                    max_members=team.max_members,
                    created_at=now_iso(),
                )
            )
            team_id = result.inserted_primary_key[0]
            conn.execute(
                _team_members.insert().values(
                    team_id=team_id,
                    user_id=team.owner_id,
                    role=TeamRole.OWNER.value,
                    created_at=now_iso(),
                )
            )
        return team_id

    def get_team(self, team_id: int) -> Team | None:
        with self.engine.connect() as conn:
            row = conn.execute(_teams.select().where(_teams.c.id == team_id)).fetchone()
        return _row_to_team(row) if row is not None else None

    def delete_team(self, team_id: int) -> bool:
        with self.engine.begin() as conn:
            conn.execute(_team_members.delete().where(_team_members.c.team_id == team_id))
            result = conn.execute(_teams.delete().where(_teams.c.id == team_id))
        return result.rowcount > 0

    def get_member(self, team_id: int, user_id: int) -> TeamMember | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _team_members.select().where(
                    (_team_members.c.team_id == team_id) & (_team_members.c.user_id == user_id)
                )
            ).fetchone()
        return _row_to_member(row) if row is not None else None

    def list_members(self, team_id: int) -> list[TeamMember]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _team_members.select().where(_team_members.c.team_id == team_id).order_by(_team_members.c.id)
            ).fetchall()
        return [_row_to_member(r) for r in rows]

    def count_members(self, team_id: int) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count()).select_from(_team_members).where(_team_members.c.team_id == team_id)
            ).scalar()
        return result or 0

    def add_member(self, member: TeamMember) -> None:
        """Raises sqlalchemy.exc.IntegrityError if the user is already a member."""
        with self.engine.connect() as conn:
            conn.execute(
                _team_members.insert().values(
                    team_id=member.team_id,
                    user_id=member.user_id,
                    role=member.role,
                    created_at=now_iso(),
                )
            )
            conn.commit()

    def update_member_role(self, team_id: int, user_id: int, role: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _team_members.update()
                .where((_team_members.c.team_id == team_id) & (_team_members.c.user_id == user_id))
                .values(role=role)
            )
            conn.commit()
        return result.rowcount > 0


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------


class AuditStore:
    """Append-only audit trail. Writes are driven by auth.audit.AuditLog."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def insert(self, entry: AuditEntry) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _audit_log.insert().values(
                    action=entry.action,
                    status=entry.status,
                    message=entry.message,
                    actor_user_id=entry.actor_user_id,
                    team_id=entry.team_id,
                    ip=entry.ip,
                    user_agent=(entry.user_agent or "")[:255] or None,
                    meta=json.dumps(entry.metadata) if entry.metadata is not None else None,
                    created_at=now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def recent(self, limit: int = 100, action: str | None = None) -> list[AuditEntry]:
        """Return the newest entries first, optionally filtered by action."""
        query = _audit_log.select()
        if action is not None:
            query = query.where(_audit_log.c.action == action)
        with self.engine.connect() as conn:
            rows = conn.execute(query.order_by(_audit_log.c.id.desc()).limit(limit)).fetchall()
        return [_row_to_audit(r) for r in rows]

    def for_team(self, team_id: int, member_ids: list[int], limit: int = 50) -> list[AuditEntry]:
        """Newest first: entries scoped to the team plus anything its current members did."""
        condition = _audit_log.c.team_id == team_id
        if member_ids:
            condition = or_(condition, _audit_log.c.actor_user_id.in_(member_ids))
        with self.engine.connect() as conn:
            rows = conn.execute(
                _audit_log.select().where(condition).order_by(_audit_log.c.id.desc()).limit(limit)
            ).fetchall()
        return [_row_to_audit(r) for r in rows]


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        display_name=row.display_name,
        email_digest=row.email_digest,
        email_enc=row.email_enc,
        password_hash=row.password_hash,
        role=row.role,
        is_active=bool(row.is_active),
        email_verified=bool(row.email_verified),
        session_revoked_at=row.session_revoked_at,
        created_at=row.created_at,
        last_login=row.last_login,
    )


def _row_to_reset_token(row) -> PasswordResetToken:
    return PasswordResetToken(
        id=row.id,
        user_id=row.user_id,
        token_digest=row.token_digest,
        expires_at=row.expires_at,
        used_at=row.used_at,
        created_at=row.created_at,
    )


def _row_to_verification_token(row) -> EmailVerificationToken:
    return EmailVerificationToken(
        id=row.id,
        user_id=row.user_id,
        token_digest=row.token_digest,
        expires_at=row.expires_at,
        created_at=row.created_at,
    )


def _row_to_team(row) -> Team:
    return Team(
        id=row.id,
        name=row.name,
        owner_id=row.owner_id,
        max_members=row.max_members,
        created_at=row.created_at,
    )


def _row_to_member(row) -> TeamMember:
    return TeamMember(
        team_id=row.team_id,
        user_id=row.user_id,
        role=row.role,
        created_at=row.created_at,
    )


def _row_to_audit(row) -> AuditEntry:
    return AuditEntry(
        id=row.id,
        action=row.action,
        status=row.status,
        message=row.message,
        actor_user_id=row.actor_user_id,
        team_id=row.team_id,
        ip=row.ip,
        user_agent=row.user_agent,
        metadata=json.loads(row.meta) if row.meta else None,
        created_at=row.created_at,
    )
