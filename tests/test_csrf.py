"""Unit tests for auth/csrf.py."""

from __future__ import annotations

import pytest
from conftest import CSRF_SECRET

from auth.csrf import CsrfTokenService
from auth.models import Identity
from core.errors import AuthenticationError, CsrfError

ANA = Identity(user_id=1, display_name="Ana", role="USER")
BEN = Identity(user_id=2, display_name="Ben", role="USER")


@pytest.fixture
def csrf() -> CsrfTokenService:
    return CsrfTokenService(CSRF_SECRET)


class TestIssueVerify:
    def test_token_verifies_for_its_user(self, csrf: CsrfTokenService) -> None:
        assert csrf.verify(csrf.issue(ANA), ANA)

    def test_token_rejected_for_another_user(self, csrf: CsrfTokenService) -> None:
        assert not csrf.verify(csrf.issue(ANA), BEN)

    def test_tokens_are_unique(self, csrf: CsrfTokenService) -> None:
        assert csrf.issue(ANA) != csrf.issue(ANA)

    def test_other_secret_rejected(self, csrf: CsrfTokenService) -> None:
        other = CsrfTokenService("Pp0Oo9Ii8Uu7Yy6Tt5Rr4Ee3Ww2Qq1Aa")
        assert not csrf.verify(other.issue(ANA), ANA)

    def test_no_identity_never_verifies(self, csrf: CsrfTokenService) -> None:
        assert not csrf.verify(csrf.issue(ANA), None)

    @pytest.mark.parametrize("token", [None, "", "nodot", "a.b.c", ".", "random."])
    def test_malformed_rejected(self, csrf: CsrfTokenService, token) -> None:
        assert not csrf.verify(token, ANA)

    def test_swapped_random_part_rejected(self, csrf: CsrfTokenService) -> None:
        first = csrf.issue(ANA).split(".")
        second = csrf.issue(ANA).split(".")
        assert not csrf.verify(f"{first[0]}.{second[1]}", ANA)


class TestRequireValid:
    def test_accepts_primary_header(self, csrf: CsrfTokenService) -> None:
        csrf.require_valid({"X-CSRF-Token": csrf.issue(ANA)}, ANA)

    def test_accepts_alternate_header(self, csrf: CsrfTokenService) -> None:
        csrf.require_valid({"CSRF-Token": csrf.issue(ANA)}, ANA)

    def test_missing_identity_is_401(self, csrf: CsrfTokenService) -> None:
        with pytest.raises(AuthenticationError) as exc_info:
            csrf.require_valid({"X-CSRF-Token": csrf.issue(ANA)}, None)
        assert exc_info.value.status_code == 401

    def test_missing_header_is_403(self, csrf: CsrfTokenService) -> None:
        with pytest.raises(CsrfError) as exc_info:
            csrf.require_valid({}, ANA)
        assert exc_info.value.status_code == 403
        assert exc_info.value.code == "csrf_failed"

    def test_cross_user_token_is_403(self, csrf: CsrfTokenService) -> None:
        with pytest.raises(CsrfError):
            csrf.require_valid({"X-CSRF-Token": csrf.issue(BEN)}, ANA)


class TestMethodExemptions:
    @pytest.mark.parametrize("method", ["GET", "HEAD", "OPTIONS", "get"])
    def test_safe_methods_exempt(self, method: str) -> None:
        assert not CsrfTokenService.method_requires_protection(method)

    @pytest.mark.parametrize("method", ["POST", "PUT", "PATCH", "DELETE"])
    def test_mutating_methods_protected(self, method: str) -> None:
        assert CsrfTokenService.method_requires_protection(method)
