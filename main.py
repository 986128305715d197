#!/usr/bin/env python3
"""
Gatehouse -- management CLI.

Runs against the same database as the API server (DATABASE_URL), so a lock
or delete issued here ends the account's live session and the user's browser
is told why on its next visit to the login page.

Usage:
  python main.py create-admin alice
  python main.py create-admin alice@example.com --role super_admin --no-password
  python main.py lock alice
  python main.py unlock alice
  python main.py delete alice
  python main.py purge

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the account database (default: gatehouse.db)
  DEBUG         Set to true for local use without SECRET_KEY / TURNSTILE_SECRET_KEY
"""

import argparse
import getpass
import logging

from auth.admin import AccountAdmin
from auth.errors import AuthError
from auth.models import Role
from auth.policy import validate_password
from auth.sessions import SessionIssuer
from auth.store import AccountStore
from core.config import get_settings


def _read_password() -> str:
    """Prompt twice without echo. Applies the full password policy."""
    password = getpass.getpass("  Password: ")
    confirm = getpass.getpass("  Confirm password: ")
    validate_password(password, confirm)
    return password


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gatehouse",
        description="Out-of-band account management for the Gatehouse login service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-admin alice
  python main.py create-admin ops@example.com --no-password
  python main.py lock mallory
  DATABASE_URL=sqlite:////srv/gatehouse.db python main.py purge
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    create = sub.add_parser("create-admin", help="Create an ADMIN or SUPER_ADMIN account")
    create.add_argument("username", help="Login name, or the provider email for SSO-only admins")
    create.add_argument(
        "--role",
        choices=[Role.ADMIN.value, Role.SUPER_ADMIN.value],
        default=Role.ADMIN.value,
        help="Role for the new account (default: admin)",
    )
    create.add_argument(
        "--no-password",
        action="store_true",
        help="Create without a local password; the account is linked on first provider login",
    )

    for name, help_text in (
        ("lock", "Lock an account and end its active session"),
        ("unlock", "Reactivate a locked or deleted account"),
        ("delete", "Soft-delete an account and end its active session"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("username")

    sub.add_parser("purge", help="Expire lapsed sessions and drop old superseded session rows")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 1

    logging.basicConfig(level=logging.WARNING, format="%(levelname)-5s %(name)s %(message)s")
    settings = get_settings()
    store = AccountStore()
    issuer = SessionIssuer(
        store,
        ttl_seconds=settings.token_expire_seconds,
        signal_retention_seconds=settings.signal_retention_seconds,
    )
    admin = AccountAdmin(store, issuer)

    try:
        if args.command == "create-admin":
            password = None if args.no_password else _read_password()
            account = admin.create(args.username, password, Role(args.role))
            print(f"  Created {account.role.value} account '{account.username}' (id {account.id}).")
        elif args.command == "purge":
            touched = issuer.purge_expired()
            print(f"  Purged {touched} session record(s).")
        else:
            target = admin.get_by_username(args.username)
            action = {"lock": admin.lock, "unlock": admin.unlock, "delete": admin.delete}[args.command]
            account = action(target.id)
            print(f"  Account '{account.username}' is now {account.status.value}.")
    except AuthError as e:
        print(f"  [!] {e}")
        return 1
    finally:
        store.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
