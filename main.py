#!/usr/bin/env python3
"""
SafeVault -- operator CLI for the input-screening and credential core.

Usage:
  python main.py check "<script>alert(1)</script>"
  python main.py screen --username johndoe123 --email john.doe@example.com
  python main.py register johndoe123 john.doe@example.com
  python main.py register admin admin@example.com --role admin
  python main.py login johndoe123
  python main.py passwd johndoe123
  python main.py users
  python main.py deactivate johndoe123

Passwords are always read with getpass, never from argv.

Environment variables (see core/config.py for the full list):
  DATABASE_URL   SQLAlchemy URL of the user store (default: auth/safevault_auth.db)
  LOG_LEVEL      Logging level for the safevault.* loggers (default: INFO)
  DEBUG          Allow cheap Argon2 parameters for local experiments
"""

import argparse
import asyncio
import getpass
import logging
import sys
from typing import Optional

from auth.flow import AuthFlow
from auth.store import SqlUserStore
from core.config import get_settings
from core.errors import NotFoundError, SafeVaultError, SecuritySignalError, ValidationError
from core.sanitizer import SanitizationEngine

logger = logging.getLogger("safevault.cli")

EXIT_OK = 0
EXIT_REJECTED = 1


def _configure_logging() -> None:
    logging.basicConfig(
        level=get_settings().log_level.upper(),
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _read_password(prompt: str, confirm: bool = False) -> Optional[str]:
    password = getpass.getpass(prompt)
    if confirm and getpass.getpass("Repeat password: ") != password:
        print("  [!] Passwords do not match.")
        return None
    return password


def _print_errors(errors) -> None:
    for error in errors:
        print(f"  [!] {error}")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def cmd_check(args: argparse.Namespace) -> int:
    verdict = SanitizationEngine().scan(args.text)
    print(verdict.value)
    return EXIT_REJECTED if verdict.is_threat else EXIT_OK


def cmd_screen(args: argparse.Namespace) -> int:
    outcome = SanitizationEngine().sanitize_and_validate(args.username, args.email)
    for name, entry in outcome.fields.items():
        status = "ok" if entry.valid else "invalid"
        print(f"  {name:<9} {status:<8} {entry.cleaned}")
    if outcome.is_valid:
        print("Input is valid.")
        return EXIT_OK
    _print_errors(outcome.errors)
    return EXIT_REJECTED


async def cmd_register(args: argparse.Namespace, flow: AuthFlow) -> int:
    password = _read_password("Password: ", confirm=True)
    if password is None:
        return EXIT_REJECTED
    result = await flow.register(args.username, args.email, password, role=args.role)
    if not result.success:
        _print_errors(result.errors)
        return EXIT_REJECTED
    print(f"{result.message} id={result.user.id} role={result.user.role.value}")
    return EXIT_OK


async def cmd_login(args: argparse.Namespace, flow: AuthFlow) -> int:
    result = await flow.login(args.username, _read_password("Password: "))
    print(result.message)
    if not result.success:
        return EXIT_REJECTED
    print(f"  id={result.user.id} role={result.user.role.value}")
    return EXIT_OK


async def cmd_passwd(args: argparse.Namespace, flow: AuthFlow) -> int:
    # Authenticate first: change_password expects an established identity.
    current = _read_password("Current password: ")
    result = await flow.login(args.username, current)
    if not result.success:
        print(result.message)
        return EXIT_REJECTED
    new_password = _read_password("New password: ", confirm=True)
    if new_password is None:
        return EXIT_REJECTED
    try:
        changed = await flow.change_password(result.user.id, current, new_password)
    except SafeVaultError as exc:
        print(f"  [!] {exc.public_message}")
        return EXIT_REJECTED
    print("Password changed." if changed else "Password was not changed.")
    return EXIT_OK if changed else EXIT_REJECTED


async def cmd_users(args: argparse.Namespace, store: SqlUserStore) -> int:
    users = await store.list_users()
    if not users:
        print("No users.")
        return EXIT_OK
    print(f"  {'ID':>4}  {'USERNAME':<20} {'EMAIL':<32} {'ROLE':<6} {'ACTIVE':<6} LAST LOGIN")
    for user in users:
        print(
            f"  {user.id:>4}  {user.username:<20} {user.email:<32} {user.role.value:<6} "
            f"{'yes' if user.is_active else 'no':<6} {user.last_login or '-'}"
        )
    return EXIT_OK


async def cmd_deactivate(args: argparse.Namespace, store: SqlUserStore) -> int:
    username = SanitizationEngine().require_safe(args.username, "Username")
    user = await store.find_by_username(username)
    if user is None or not await store.set_active(user.id, args.activate):
        raise NotFoundError(f"no user {username!r}", public_message=f"No such user: {username}")
    print(f"{user.username} is now {'active' if args.activate else 'inactive'}.")
    return EXIT_OK


_STORE_COMMANDS = {
    "register": cmd_register,
    "login": cmd_login,
    "passwd": cmd_passwd,
}
_ADMIN_COMMANDS = {
    "users": cmd_users,
    "deactivate": cmd_deactivate,
}


async def _run_with_store(args: argparse.Namespace) -> int:
    store = SqlUserStore()
    try:
        if args.command in _ADMIN_COMMANDS:
            return await _ADMIN_COMMANDS[args.command](args, store)
        return await _STORE_COMMANDS[args.command](args, AuthFlow(store))
    except (ValidationError, SecuritySignalError, NotFoundError) as exc:
        print(f"  [!] {exc.public_message}")
        return EXIT_REJECTED
    except SafeVaultError as exc:
        logger.error("Command %s failed", args.command, exc_info=True)
        print(f"  [!] {exc.public_message}")
        return EXIT_REJECTED
    finally:
        store.close()


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="safevault",
        description="Screen untrusted input and manage local credentials.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py check "admin'; DROP TABLE Users; --"
  python main.py screen --username johndoe123 --email john.doe@example.com
  python main.py register johndoe123 john.doe@example.com --role user
  DATABASE_URL=sqlite:///users.db python main.py users
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p = sub.add_parser("check", help="Screen one string against the threat-signature table")
    p.add_argument("text", help="Text to screen")

    p = sub.add_parser("screen", help="Sanitize and validate a username/email pair")
    p.add_argument("--username", default="", help="Username as submitted")
    p.add_argument("--email", default="", help="Email as submitted")

    p = sub.add_parser("register", help="Create a user (password prompted)")
    p.add_argument("username")
    p.add_argument("email")
    p.add_argument("--role", choices=["user", "admin"], default="user", help="Role for the new user (default: user)")

    p = sub.add_parser("login", help="Verify a username/password pair (password prompted)")
    p.add_argument("username")

    p = sub.add_parser("passwd", help="Change a user's password (current password prompted)")
    p.add_argument("username")

    sub.add_parser("users", help="List users (no credential material is shown)")

    p = sub.add_parser("deactivate", help="Deactivate (or with --activate, reactivate) a user")
    p.add_argument("username")
    p.add_argument("--activate", action="store_true", help="Reactivate instead of deactivating")

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return EXIT_OK

    _configure_logging()

    if args.command == "check":
        return cmd_check(args)
    if args.command == "screen":
        return cmd_screen(args)
    return asyncio.run(_run_with_store(args))


if __name__ == "__main__":
    sys.exit(main())
