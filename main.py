#!/usr/bin/env python3
"""
tillgate -- operator commands.

Usage:
  python main.py gen-secret                   # print a fresh .env block for every secret
  python main.py gen-secret --kind crypto     # one value only
  python main.py check-secrets                # validate the current environment, exit 1 on problems
  python main.py create-user --email a@b.co --name "Ana" [--admin]
  python main.py revoke-sessions --email a@b.co [--email ...]
  python main.py revoke-sessions --all

Every command reads configuration the same way the API does (environment and
.env via core.config). Commands that touch stored emails run the same secret
policy as the server: in production, unsafe secrets abort the command.
"""

import argparse
import base64
import getpass
import secrets
import sys
from typing import Optional

from sqlalchemy.exc import IntegrityError

from auth.email_codec import EmailCodec, redact_email
from auth.models import User, UserRole
from auth.passwords import hash_password, validate_password
from auth.sessions import SessionTokenService
from auth.store import UserStore
from core.config import get_settings
from core.errors import ConfigurationError
from core.secrets import SecretKind, init_secrets, load_secrets


def generate_secret(kind: SecretKind) -> str:
    """Return a value that passes validation for the given kind.

    CRYPTO_KEY is 32 random bytes, base64-encoded. Every other kind is
    48 random bytes as URL-safe base64 (64 chars).
    """
    if kind is SecretKind.CRYPTO:
        return base64.b64encode(secrets.token_bytes(32)).decode("ascii")
    return secrets.token_urlsafe(48)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def cmd_gen_secret(args: argparse.Namespace) -> int:
    kinds = [SecretKind(args.kind)] if args.kind else list(SecretKind)
    for kind in kinds:
        value = generate_secret(kind)
        print(f"{kind.env_name}={value}" if not args.kind else value)
    return 0


def cmd_check_secrets(args: argparse.Namespace) -> int:
    settings = get_settings()
    check = load_secrets(settings)
    runtime = "production" if settings.is_production else "development"
    if check.ok:
        print(f"  All secrets valid ({runtime} runtime).")
        return 0
    print(f"  [!] {len(check.problems)} secret problem(s) ({runtime} runtime):")
    for problem in check.problems.values():
        print(f"      - {problem}")
    print("  Generate replacements with: python main.py gen-secret")
    return 1


def cmd_create_user(args: argparse.Namespace) -> int:
    password = args.password if args.password is not None else _prompt_password()
    if password is None:
        return 1
    check = validate_password(password)
    if not check.valid:
        print(f"  [!] {check.errors[0]}")
        return 1

    store, codec, _ = _open(args)

    user = User(
        display_name=args.name,
        email_digest=codec.digest(args.email),
        email_enc=codec.encrypt(args.email),
        password_hash=hash_password(password),
        role=UserRole.ADMIN.value if args.admin else UserRole.USER.value,
        email_verified=True,
    )
    try:
        uid = store.create_user(user)
    except IntegrityError:
        print(f"  [!] An account for {redact_email(args.email)} already exists.")
        return 1
    finally:
        store.close()
    print(f"  Created {user.role} user {uid} ({redact_email(args.email)}).")
    return 0


def cmd_revoke_sessions(args: argparse.Namespace) -> int:
    store, codec, sessions = _open(args)
    try:
        if args.all:
            targets = store.list_users()
        else:
            targets = []
            for email in args.email or []:
                user = store.get_by_email_digest(codec.digest(email))
                if user is None:
                    print(f"  [!] No account for {redact_email(email)}.")
                    continue
                targets.append(user)
        for user in targets:
            sessions.revoke_all(user.id)
        print(f"  Revoked sessions for {len(targets)} user(s).")
    finally:
        store.close()
    return 0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _open(args: argparse.Namespace) -> tuple[UserStore, EmailCodec, SessionTokenService]:
    settings = get_settings()
    bundle = init_secrets(settings)
    store = UserStore(db_url=args.database_url or settings.database_url)
    return store, EmailCodec(bundle.hmac_key, bundle.crypto_key), SessionTokenService(bundle.session, store)


def _prompt_password() -> Optional[str]:
    first = getpass.getpass("  Password: ")
    second = getpass.getpass("  Repeat password: ")
    if first != second:
        print("  [!] Passwords do not match.")
        return None
    return first


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tillgate",
        description="Operator commands for the tillgate auth core.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py gen-secret >> .env
  python main.py check-secrets
  python main.py create-user --email owner@example.com --name Owner --admin
  python main.py revoke-sessions --email stolen-laptop@example.com
        """,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    gen = sub.add_parser("gen-secret", help="Print freshly generated secret values")
    gen.add_argument(
        "--kind",
        choices=[k.value for k in SecretKind],
        default=None,
        help="Print a single bare value for this kind instead of a full .env block",
    )
    gen.set_defaults(func=cmd_gen_secret)

    check = sub.add_parser("check-secrets", help="Validate configured secrets; exit 1 on any problem")
    check.set_defaults(func=cmd_check_secrets)

    create = sub.add_parser("create-user", help="Create an account (password is prompted)")
    create.add_argument("--email", required=True)
    create.add_argument("--name", required=True, help="Display name")
    create.add_argument("--admin", action="store_true", help="Create with the ADMIN site role")
    create.add_argument("--password", default=None, help=argparse.SUPPRESS)
    create.add_argument("--database-url", default=None, help="Override DATABASE_URL")
    create.set_defaults(func=cmd_create_user)

    revoke = sub.add_parser("revoke-sessions", help="Invalidate every session cookie for some or all users")
    target = revoke.add_mutually_exclusive_group(required=True)
    target.add_argument("--email", action="append", help="Account email (repeatable)")
    target.add_argument("--all", action="store_true", help="Every account")
    revoke.add_argument("--database-url", default=None, help="Override DATABASE_URL")
    revoke.set_defaults(func=cmd_revoke_sessions)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return args.func(args)
    except ConfigurationError as exc:
        print(f"  [!] {exc.message}")
        return 2


if __name__ == "__main__":
    sys.exit(main())
