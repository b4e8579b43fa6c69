#!/usr/bin/env python3
"""
Haven auth -- operator command line.

Usage:
  python main.py init-db
  python main.py create-admin --email admin@example.com
  python main.py create-admin --email admin@example.com --password 'S3cure!pass'
  python main.py prune-tokens
  python main.py reset-token --email someone@example.com

Configuration comes from the same environment / .env file as the API
(SECRET_KEY, DATABASE_URL, ...). See core/config.py.
"""

import argparse
import logging
import sys

from auth.errors import AuthError
from auth.models import Role
from auth.service import AuthService, build_auth_service
from auth.store import create_db_engine
from core.config import get_settings

logger = logging.getLogger("haven.cli")


def _cmd_init_db(service: AuthService, args: argparse.Namespace) -> int:
    # create_db_engine() has already created any missing tables.
    print("Database schema is up to date.")
    return 0


def _cmd_create_admin(service: AuthService, args: argparse.Namespace) -> int:
    """Register a principal and promote it to admin.

    Without --password a strong random one is generated and printed once.
    """
    password = args.password or service.passwords.generate_random(16)
    session = service.register(args.email, password, username=args.username, full_name=args.full_name)
    # The CLI never hands out tokens; revoke the refresh token register() stored.
    service.logout(session.refresh_token)
    admin = service.change_role(session.principal.id, Role.ADMIN)
    print(f"Created admin {admin.email} (id={admin.id}, username={admin.username})")
    if not args.password:
        print(f"Generated password: {password}")
    return 0


def _cmd_prune_tokens(service: AuthService, args: argparse.Namespace) -> int:
    removed = service.prune_expired_tokens()
    print(f"Removed {removed} expired token row(s).")
    return 0


def _cmd_reset_token(service: AuthService, args: argparse.Namespace) -> int:
    """Print a one-time reset token for out-of-band delivery to the account owner."""
    token = service.request_password_reset(args.email)
    if token is None:
        print(f"No active account for {args.email}.", file=sys.stderr)
        return 1
    print(token)
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="haven-auth", description="Haven auth administration.")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create any missing auth tables.").set_defaults(func=_cmd_init_db)

    admin = sub.add_parser("create-admin", help="Create an admin account.")
    admin.add_argument("--email", required=True)
    admin.add_argument("--password", help="Omit to generate a random strong password.")
    admin.add_argument("--username")
    admin.add_argument("--full-name", dest="full_name")
    admin.set_defaults(func=_cmd_create_admin)

    sub.add_parser("prune-tokens", help="Delete expired refresh tokens and spent reset grants.").set_defaults(
        func=_cmd_prune_tokens
    )

    reset = sub.add_parser("reset-token", help="Issue a one-time password reset token.")
    reset.add_argument("--email", required=True)
    reset.set_defaults(func=_cmd_reset_token)

    return parser


def main(argv: list[str] | None = None) -> int:
    logging.basicConfig(level=logging.WARNING, format="%(levelname)-5s %(name)s %(message)s")
    args = _build_parser().parse_args(argv)

    settings = get_settings()
    engine = create_db_engine(settings.database_url)
    try:
        service = build_auth_service(settings, engine)
        return args.func(service, args)
    except AuthError as exc:
        print(f"Error: {exc.message}", file=sys.stderr)
        for detail in getattr(exc, "errors", []):
            print(f"  - {detail}", file=sys.stderr)
        return 1
    finally:
        engine.dispose()


if __name__ == "__main__":
    sys.exit(main())
