"""
api/routes/v1/auth.py -- Session, CSRF and password REST endpoints.

Routes:
  POST /api/v1/auth/login               -- password login; sets the session cookie
  POST /api/v1/auth/register            -- self-registration; sets the session cookie
  POST /api/v1/auth/logout              -- revokes sessions, clears the cookie
  POST /api/v1/auth/logout-others       -- revokes every other device, keeps this one
  GET  /api/v1/auth/me                  -- current identity (revocation enforced)
  GET  /api/v1/auth/csrf-token          -- mint a CSRF token for the current session
  POST /api/v1/auth/password/forgot     -- issue a single-use reset link
  POST /api/v1/auth/password/reset      -- consume a reset token
  POST /api/v1/auth/password/change     -- change password while signed in
  POST /api/v1/auth/verify-email        -- consume an email verification token
  POST /api/v1/auth/verify-email/resend -- issue a fresh verification link

Security:
  authenticate_user() provides timing equalization -- use it, never inline
  get_by_email_digest() + verify_password().
  Login, forgot-password and verification resend answer with one generic
  message whatever the reason, so none of them reveals whether an address is
  registered.
  Every password change or reset stamps the revocation mark, which kills all
  outstanding session cookies for the user.
  Denials are audited with redacted emails only.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

from api.audit import schedule_audit
from api.limiter import rate_limit
from api.models import (
    ChangePasswordRequest,
    CsrfTokenResponse,
    EmailRequest,
    ErrorDetail,
    ErrorResponse,
    LoginRequest,
    LoginResponse,
    MeResponse,
    MessageResponse,
    PasswordConfirm,
    RegisterRequest,
    ResetPasswordRequest,
    VerifyEmailRequest,
    identity_to_me,
)
from api.services import Services
from auth.dependencies import get_current_identity, require_csrf
from auth.email_codec import EmailDecryptError, redact_email
from auth.models import EmailVerificationToken, Identity, PasswordResetToken, User
from auth.passwords import authenticate_user, hash_password, validate_password, verify_password
from ratelimit.backends import RateLimitResult

logger = logging.getLogger("tillgate.auth")

_GENERIC_LOGIN_ERROR = "Invalid email or password."
_GENERIC_FORGOT_MESSAGE = "If that email exists, a reset link was sent."
_INVALID_RESET_TOKEN = "Invalid or expired reset token."
_GENERIC_RESEND_MESSAGE = "If that email needs verification, a new link was sent."
_INVALID_VERIFICATION_TOKEN = "Invalid or expired verification token."

# Auth policy:
# - POST /auth/login, /auth/register:                public, rate limited
# - POST /auth/password/forgot, /password/reset:     public, rate limited (no session to bind CSRF to)
# - POST /auth/verify-email, /verify-email/resend:   public, rate limited (link opened from a mail client)
# - GET  /auth/me, /auth/csrf-token:                 requires auth (get_current_identity)
# - POST /auth/logout, /auth/logout-others,
#        /auth/password/change:                      requires auth + CSRF (require_csrf)
router = APIRouter()


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=LoginResponse)
def login(
    request: Request,
    response: Response,
    body: LoginRequest,
    background_tasks: BackgroundTasks,
    _: RateLimitResult = Depends(rate_limit("login")),
) -> LoginResponse | JSONResponse:
    """Authenticate with email and password; set the session cookie.

    Unknown email, wrong password and disabled account all produce the same
    401 body. The LoginOutcome is recorded in the audit entry only.
    """
    services = _services(request)
    result = authenticate_user(services.user_store, services.codec, body.email, body.password)
    if not result.ok:
        schedule_audit(
            request,
            background_tasks,
            "auth.login",
            "DENIED",
            actor_user_id=result.user.id if result.user else None,
            message="Invalid credentials",
            metadata={"email": redact_email(body.email), "reason": result.outcome.value},
        )
        return _error(401, "unauthorized", _GENERIC_LOGIN_ERROR, response)

    user = result.user
    _start_session(services, response, user)
    services.user_store.update_last_login(user.id)
    schedule_audit(request, background_tasks, "auth.login", "SUCCESS", actor_user_id=user.id)
    return LoginResponse(user=_me(services, user), expires_in=services.sessions.default_max_age)


@router.post("/auth/register", response_model=LoginResponse, status_code=201)
def register(
    request: Request,
    response: Response,
    body: RegisterRequest,
    background_tasks: BackgroundTasks,
    _: RateLimitResult = Depends(rate_limit("register")),
) -> LoginResponse:
    """Create a USER account, sign it in and send a verification link.

    The address is stored only as its keyed digest and encrypted blob.
    Returns 409 when the digest is already taken.
    """
    services = _services(request)
    if not services.settings.self_registration_enabled:
        raise HTTPException(
            status_code=403,
            detail={"code": "registration_disabled", "message": "Self-registration is disabled."},
        )
    check = validate_password(body.password)
    if not check.valid:
        raise HTTPException(status_code=400, detail={"code": "weak_password", "message": check.errors[0]})

    codec = services.codec
    user = User(
        display_name=body.display_name,
        email_digest=codec.digest(body.email),
        email_enc=codec.encrypt(body.email),
        password_hash=hash_password(body.password),
    )
    try:
        user.id = services.user_store.create_user(user)
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": "An account with that email already exists."},
        ) from exc

    _start_session(services, response, user)
    _send_verification(services, background_tasks, user.id, body.email)
    schedule_audit(
        request,
        background_tasks,
        "auth.register",
        "SUCCESS",
        actor_user_id=user.id,
        metadata={"email": redact_email(body.email)},
    )
    return LoginResponse(user=_me(services, user), expires_in=services.sessions.default_max_age)


@router.post("/auth/password/forgot", response_model=MessageResponse)
def forgot_password(
    request: Request,
    body: EmailRequest,
    background_tasks: BackgroundTasks,
    _: RateLimitResult = Depends(rate_limit("password_forgot")),
) -> MessageResponse:
    """Issue a single-use reset link. Always answers with the same message.

    Only SHA-256(raw token) is stored. The raw token leaves the process once,
    inside the URL handed to the link notifier.
    """
    services = _services(request)
    user = services.user_store.get_by_email_digest(services.codec.digest(body.email))
    if user is None or not user.is_active:
        schedule_audit(
            request,
            background_tasks,
            "auth.password.forgot",
            "DENIED",
            metadata={"email": redact_email(body.email), "reason": "unknown_email"},
        )
        return MessageResponse(message=_GENERIC_FORGOT_MESSAGE)

    raw_token = secrets.token_urlsafe(32)
    expires_at = datetime.now(timezone.utc) + timedelta(seconds=services.settings.password_reset_ttl_seconds)
    services.user_store.create_reset_token(
        PasswordResetToken(
            user_id=user.id,
            token_digest=_token_digest(raw_token),
            expires_at=expires_at.isoformat(),
        )
    )
    reset_url = f"{services.settings.app_base_url.rstrip('/')}/auth/reset-password?token={raw_token}"
    background_tasks.add_task(services.link_notifier, services.codec.normalize(body.email), reset_url)
    schedule_audit(request, background_tasks, "auth.password.forgot", "SUCCESS", actor_user_id=user.id)
    return MessageResponse(message=_GENERIC_FORGOT_MESSAGE)


@router.post("/auth/password/reset", response_model=MessageResponse)
def reset_password(
    request: Request,
    response: Response,
    body: ResetPasswordRequest,
    background_tasks: BackgroundTasks,
    _: RateLimitResult = Depends(rate_limit("password_reset")),
) -> MessageResponse | JSONResponse:
    """Consume a reset token, set the new password and revoke every session.

    Unknown, expired and already-used tokens get the same 400.
    """
    services = _services(request)
    check = validate_password(body.password)
    if not check.valid:
        raise HTTPException(status_code=400, detail={"code": "weak_password", "message": check.errors[0]})

    token = services.user_store.get_reset_token(_token_digest(body.token))
    now = datetime.now(timezone.utc)
    if token is None or token.used_at is not None or datetime.fromisoformat(token.expires_at) <= now:
        schedule_audit(request, background_tasks, "auth.password.reset", "DENIED", message="Invalid token")
        return _error(400, "invalid_token", _INVALID_RESET_TOKEN, response)

    consumed = services.user_store.consume_reset_token(
        token.id,
        token.user_id,
        hash_password(body.password),
        revoked_at=services.sessions.now_ms(),
    )
    if not consumed:
        schedule_audit(request, background_tasks, "auth.password.reset", "DENIED", message="Token already used")
        return _error(400, "invalid_token", _INVALID_RESET_TOKEN, response)

    services.sessions.clear(response)
    schedule_audit(request, background_tasks, "auth.password.reset", "SUCCESS", actor_user_id=token.user_id)
    return MessageResponse(message="Password has been reset. Please sign in again.")


@router.post("/auth/verify-email", response_model=MessageResponse)
def verify_email(
    request: Request,
    response: Response,
    body: VerifyEmailRequest,
    background_tasks: BackgroundTasks,
    _: RateLimitResult = Depends(rate_limit("api_default")),
) -> MessageResponse | JSONResponse:
    """Mark the address as verified. The token is deleted on first use."""
    services = _services(request)
    token = services.user_store.get_verification_token(_token_digest(body.token))
    if token is None:
        schedule_audit(request, background_tasks, "auth.verify_email", "DENIED", message="Invalid token")
        return _error(400, "invalid_token", _INVALID_VERIFICATION_TOKEN, response)

    if datetime.fromisoformat(token.expires_at) <= datetime.now(timezone.utc):
        services.user_store.delete_verification_token(token.id)
        schedule_audit(
            request,
            background_tasks,
            "auth.verify_email",
            "DENIED",
            actor_user_id=token.user_id,
            message="Token expired",
        )
        return _error(400, "invalid_token", _INVALID_VERIFICATION_TOKEN, response)

    if not services.user_store.consume_verification_token(token.id, token.user_id):
        schedule_audit(request, background_tasks, "auth.verify_email", "DENIED", message="Token already used")
        return _error(400, "invalid_token", _INVALID_VERIFICATION_TOKEN, response)

    schedule_audit(request, background_tasks, "auth.verify_email", "SUCCESS", actor_user_id=token.user_id)
    return MessageResponse(message="Email address verified.")


@router.post("/auth/verify-email/resend", response_model=MessageResponse)
def resend_verification(
    request: Request,
    body: EmailRequest,
    background_tasks: BackgroundTasks,
    _: RateLimitResult = Depends(rate_limit("email_verify_resend")),
) -> MessageResponse:
    """Replace the user's verification token and send a new link.

    Unknown, disabled and already-verified accounts get the same answer.
    """
    services = _services(request)
    user = services.user_store.get_by_email_digest(services.codec.digest(body.email))
    if user is None or not user.is_active or user.email_verified:
        reason = "unknown_email" if user is None or not user.is_active else "already_verified"
        schedule_audit(
            request,
            background_tasks,
            "auth.verify_email.resend",
            "DENIED",
            actor_user_id=user.id if user else None,
            metadata={"email": redact_email(body.email), "reason": reason},
        )
        return MessageResponse(message=_GENERIC_RESEND_MESSAGE)

    _send_verification(services, background_tasks, user.id, body.email)
    schedule_audit(request, background_tasks, "auth.verify_email.resend", "SUCCESS", actor_user_id=user.id)
    return MessageResponse(message=_GENERIC_RESEND_MESSAGE)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
def me(request: Request, identity: Identity = Depends(get_current_identity)) -> MeResponse:
    """Return the current identity, with the owner's own email decrypted."""
    services = _services(request)
    user = services.user_store.get_by_id(identity.user_id)
    if user is None:
        return identity_to_me(identity)
    return _me(services, user)


@router.get("/auth/csrf-token", response_model=CsrfTokenResponse)
def csrf_token(
    request: Request,
    response: Response,
    identity: Identity = Depends(get_current_identity),
) -> CsrfTokenResponse:
    """Mint a CSRF token bound to the current user. Never cached."""
    response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate"
    return CsrfTokenResponse(csrf_token=_services(request).csrf.issue(identity))


@router.post("/auth/logout", response_model=MessageResponse)
def logout(
    request: Request,
    response: Response,
    background_tasks: BackgroundTasks,
    identity: Identity = Depends(require_csrf),
) -> MessageResponse:
    """Stamp the revocation mark and clear the cookie."""
    services = _services(request)
    services.sessions.revoke_all(identity.user_id)
    services.sessions.clear(response)
    schedule_audit(request, background_tasks, "auth.logout", "SUCCESS", actor_user_id=identity.user_id)
    return MessageResponse(message="Logged out.")


@router.post("/auth/logout-others", response_model=MessageResponse)
def logout_others(
    request: Request,
    response: Response,
    body: PasswordConfirm,
    background_tasks: BackgroundTasks,
    identity: Identity = Depends(require_csrf),
) -> MessageResponse | JSONResponse:
    """Sign out every other device after re-checking the password.

    The revocation mark kills all existing cookies, including this one, so a
    fresh session is issued for the calling device in the same response.
    """
    services = _services(request)
    user = services.user_store.get_by_id(identity.user_id)
    if user is None or not verify_password(body.password, user.password_hash):
        schedule_audit(
            request,
            background_tasks,
            "auth.logout_others",
            "DENIED",
            actor_user_id=identity.user_id,
            message="Invalid password",
        )
        return _error(403, "invalid_password", "Invalid password.", response)

    services.sessions.revoke_all(user.id)
    _start_session(services, response, user)
    schedule_audit(request, background_tasks, "auth.logout_others", "SUCCESS", actor_user_id=user.id)
    return MessageResponse(message="Other sessions signed out.")


@router.post("/auth/password/change", response_model=MessageResponse)
def change_password(
    request: Request,
    response: Response,
    body: ChangePasswordRequest,
    background_tasks: BackgroundTasks,
    identity: Identity = Depends(require_csrf),
) -> MessageResponse | JSONResponse:
    """Change the password, revoke every session and keep this device signed in."""
    services = _services(request)
    user = services.user_store.get_by_id(identity.user_id)
    if user is None or not verify_password(body.current_password, user.password_hash):
        schedule_audit(
            request,
            background_tasks,
            "auth.password.change",
            "DENIED",
            actor_user_id=identity.user_id,
            message="Invalid current password",
        )
        return _error(403, "invalid_password", "Invalid password.", response)

    check = validate_password(body.new_password)
    if not check.valid:
        raise HTTPException(status_code=400, detail={"code": "weak_password", "message": check.errors[0]})

    services.user_store.update_user(user.id, password_hash=hash_password(body.new_password))
    services.sessions.revoke_all(user.id)
    _start_session(services, response, user)
    schedule_audit(request, background_tasks, "auth.password.change", "SUCCESS", actor_user_id=user.id)
    return MessageResponse(message="Password changed.")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _services(request: Request) -> Services:
    return request.app.state.services


def _start_session(services: Services, response: Response, user: User) -> None:
    token = services.sessions.issue(Identity.from_user(user))
    services.sessions.set_cookie(response, token)


def _token_digest(raw_token: str) -> str:
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def _send_verification(services: Services, background_tasks: BackgroundTasks, user_id: int, email: str) -> None:
    raw_token = secrets.token_urlsafe(32)
    expires_at = datetime.now(timezone.utc) + timedelta(seconds=services.settings.email_verification_ttl_seconds)
    services.user_store.replace_verification_token(
        EmailVerificationToken(
            user_id=user_id,
            token_digest=_token_digest(raw_token),
            expires_at=expires_at.isoformat(),
        )
    )
    verify_url = f"{services.settings.app_base_url.rstrip('/')}/auth/verify-email?token={raw_token}"
    background_tasks.add_task(services.link_notifier, services.codec.normalize(email), verify_url)


def _me(services: Services, user: User) -> MeResponse:
    try:
        email = services.codec.decrypt(user.email_enc) or None
    except EmailDecryptError:
        # Row sealed under a previous CRYPTO_KEY. Identity still works.
        logger.warning("Stored email for user %s could not be decrypted", user.id)
        email = None
    return identity_to_me(Identity.from_user(user), email=email, email_verified=user.email_verified)


def _error(status_code: int, code: str, message: str, response: Response) -> JSONResponse:
    """Error envelope returned directly, so queued background tasks (audit) still run.

    FastAPI drops headers set on the injected Response when a handler returns
    its own, so the X-RateLimit-* headers are copied across here.
    """
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message)).model_dump(),
        headers={k: v for k, v in response.headers.items() if k.startswith("x-ratelimit-")},
    )
