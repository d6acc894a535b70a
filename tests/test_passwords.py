"""Unit tests for auth/passwords.py: hashing, strength rules, authenticate_user()."""

from __future__ import annotations

from conftest import DEFAULT_PASSWORD, create_user

from auth.email_codec import EmailCodec
from auth.passwords import (
    LoginOutcome,
    authenticate_user,
    hash_password,
    validate_password,
    verify_password,
)
from auth.store import UserStore


class TestHashing:
    def test_hash_verifies(self) -> None:
        hashed = hash_password("s3cure-Passphrase")
        assert hashed.startswith("$2")
        assert verify_password("s3cure-Passphrase", hashed)

    def test_wrong_password(self) -> None:
        assert not verify_password("nope", hash_password("s3cure-Passphrase"))

    def test_missing_or_malformed_hash(self) -> None:
        assert not verify_password("anything", None)
        assert not verify_password("anything", "not-a-bcrypt-hash")


class TestValidatePassword:
    def test_too_short(self) -> None:
        check = validate_password("Ab1!")
        assert not check.valid
        assert "at least 8" in check.errors[0]

    def test_over_bcrypt_limit(self) -> None:
        assert not validate_password("Xy9" * 30).valid

    def test_common_password_case_insensitive(self) -> None:
        assert not validate_password("PASSWORD123").valid

    def test_sequential_run(self) -> None:
        check = validate_password("xx-abcd-Zq")
        assert not check.valid
        assert "sequential" in check.errors[0]

    def test_descending_digits(self) -> None:
        assert not validate_password("Zq!-9876-xx").valid

    def test_repeated_run(self) -> None:
        check = validate_password("Zq!-aaaa-xx")
        assert not check.valid
        assert "repeated" in check.errors[0]

    def test_strength_grades(self) -> None:
        assert validate_password("mvrkqzlt").strength == "weak"
        assert validate_password("mvrkqzltwp").strength == "medium"
        assert validate_password(DEFAULT_PASSWORD).strength == "strong"


class TestAuthenticateUser:
    def test_ok(self, user_store: UserStore, codec: EmailCodec) -> None:
        user = create_user(user_store, codec)
        result = authenticate_user(user_store, codec, " ANA@example.com", DEFAULT_PASSWORD)
        assert result.ok
        assert result.user.id == user.id

    def test_unknown_email(self, user_store: UserStore, codec: EmailCodec) -> None:
        result = authenticate_user(user_store, codec, "ghost@example.com", DEFAULT_PASSWORD)
        assert result.outcome is LoginOutcome.UNKNOWN_EMAIL
        assert result.user is None
        assert result.email_digest == codec.digest("ghost@example.com")

    def test_bad_password(self, user_store: UserStore, codec: EmailCodec) -> None:
        create_user(user_store, codec)
        result = authenticate_user(user_store, codec, "ana@example.com", "wrong-password-1")
        assert result.outcome is LoginOutcome.BAD_PASSWORD
        assert not result.ok

    def test_inactive_checked_after_password(self, user_store: UserStore, codec: EmailCodec) -> None:
        create_user(user_store, codec, is_active=False)
        assert authenticate_user(user_store, codec, "ana@example.com", "wrong").outcome is LoginOutcome.BAD_PASSWORD
        assert (
            authenticate_user(user_store, codec, "ana@example.com", DEFAULT_PASSWORD).outcome
            is LoginOutcome.INACTIVE
        )
