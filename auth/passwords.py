"""
auth/passwords.py -- Password hashing, strength rules, and credential checks.

Passwords: bcrypt used directly (no passlib wrapper). bcrypt's cost factor
makes offline brute force expensive; the 72-byte input limit is enforced by
validate_password() so nothing is ever silently truncated.

authenticate_user() returns a LoginResult instead of raising. Every outcome
other than OK is reported to the client with the same generic message; the
outcome value exists for audit logging only.

Timing: when no account matches the email digest, bcrypt still runs against
_DUMMY_HASH so response time does not reveal whether an address is registered.

Layer rule: no imports from api/ or ratelimit/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

import bcrypt

if TYPE_CHECKING:
    from auth.email_codec import EmailCodec
    from auth.models import User
    from auth.store import UserStore

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_BYTES = 72  # bcrypt input limit

# Top entries from public breach corpora. Compared case-insensitively.
_COMMON_PASSWORDS = frozenset(
    {
        "password", "123456", "12345678", "qwerty", "abc123", "monkey",
        "letmein", "trustno1", "dragon", "baseball", "iloveyou", "master",
        "sunshine", "ashley", "bailey", "passw0rd", "shadow", "superman",
        "123123", "password1", "qazwsx", "password123", "welcome", "admin",
        "login", "admin123", "root", "test", "pass", "password12", "12341234",
        "secret", "password!", "1q2w3e4r", "asdf", "zxcvbn", "qwerty123",
        "123456789", "1234567890", "football", "princess", "starwars",
    }
)


# ---------------------------------------------------------------------------
# Hashing
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password."""
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str | None) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    if not hashed:
        return False
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed hash in the DB, or a password over bcrypt's input limit.
        return False


# Computed once at import so the first login is not measurably slower.
_DUMMY_HASH: str = hash_password("tillgate_timing_dummy")


# ---------------------------------------------------------------------------
# Strength
# ---------------------------------------------------------------------------


@dataclass
class PasswordCheck:
    valid: bool
    errors: list[str] = field(default_factory=list)
    strength: str = "weak"  # "weak", "medium", "strong"


def validate_password(password: str) -> PasswordCheck:
    """Check a candidate password against length, breach-list and pattern rules.

    Length-and-uniqueness only, no composition rules. Strength is advisory.
    """
    if len(password) < MIN_PASSWORD_LENGTH:
        return PasswordCheck(False, [f"Password must be at least {MIN_PASSWORD_LENGTH} characters long"])
    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        return PasswordCheck(False, [f"Password must be at most {MAX_PASSWORD_BYTES} bytes long"])
    if password.lower() in _COMMON_PASSWORDS:
        return PasswordCheck(False, ["Password is too common. Please choose a more unique password."])
    if _has_sequential_run(password):
        return PasswordCheck(False, ["Password contains too many sequential characters"])
    if _has_repeated_run(password):
        return PasswordCheck(False, ["Password contains too many repeated characters"])

    strength = "weak"
    if len(password) >= 12 and _character_classes(password) >= 3:
        strength = "strong"
    elif len(password) >= 10:
        strength = "medium"
    return PasswordCheck(True, [], strength)


def _has_sequential_run(password: str, run: int = 4) -> bool:
    """True for runs like 'abcd' or '4321' of at least `run` characters."""
    ascending = descending = 1
    for prev, cur in zip(password, password[1:]):
        diff = ord(cur) - ord(prev)
        ascending = ascending + 1 if diff == 1 else 1
        descending = descending + 1 if diff == -1 else 1
        if ascending >= run or descending >= run:
            return True
    return False


def _has_repeated_run(password: str, run: int = 4) -> bool:
    count = 1
    for prev, cur in zip(password, password[1:]):
        count = count + 1 if cur == prev else 1
        if count >= run:
            return True
    return False


def _character_classes(password: str) -> int:
    return sum(
        (
            any(c.islower() for c in password),
            any(c.isupper() for c in password),
            any(c.isdigit() for c in password),
            any(not c.isalnum() for c in password),
        )
    )


# ---------------------------------------------------------------------------
# Credential check
# ---------------------------------------------------------------------------


class LoginOutcome(str, Enum):
    OK = "ok"
    UNKNOWN_EMAIL = "unknown_email"
    BAD_PASSWORD = "bad_password"
    INACTIVE = "inactive"


@dataclass(frozen=True)
class LoginResult:
    outcome: LoginOutcome
    user: User | None = None
    email_digest: str = ""

    @property
    def ok(self) -> bool:
        return self.outcome is LoginOutcome.OK


def authenticate_user(store: UserStore, codec: EmailCodec, email: str, password: str) -> LoginResult:
    """Check an email/password pair with timing equalization.

    Always runs bcrypt whether or not the account exists:
    - Unknown email: bcrypt runs against _DUMMY_HASH (same cost as a real check)
    - Wrong password: bcrypt runs against the real hash
    """
    digest = codec.digest(email)
    user = store.get_by_email_digest(digest)
    if user is None or not user.password_hash:
        verify_password(password, _DUMMY_HASH)
        return LoginResult(LoginOutcome.UNKNOWN_EMAIL, email_digest=digest)
    if not verify_password(password, user.password_hash):
        return LoginResult(LoginOutcome.BAD_PASSWORD, user=user, email_digest=digest)
    if not user.is_active:
        return LoginResult(LoginOutcome.INACTIVE, user=user, email_digest=digest)
    return LoginResult(LoginOutcome.OK, user=user, email_digest=digest)
