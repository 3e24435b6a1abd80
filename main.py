#!/usr/bin/env python3
"""
LibraryAuth -- management commands for the library authorization service.

Usage:
  python main.py create-admin USERNAME EMAIL
  python main.py unlock USER_ID
  python main.py permissions
  python main.py permissions --module borrow
  python main.py role librarian

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the auth database (default: ./libraryauth.db)
  SECRET_KEY    Required unless DEBUG=true (see core/config.py)
"""

import argparse
import getpass
from typing import Optional

from api.models import PASSWORD_MIN_LENGTH, check_password_strength
from auth import permissions
from auth.errors import AuthError, NotFound
from auth.guard import AccountSecurityGuard
from auth.models import User
from auth.store import UserStore
from auth.tokens import hash_password
from core.config import get_settings


def _prompt_password() -> Optional[str]:
    """Read and confirm a password without echoing it. None if rejected."""
    password = getpass.getpass("  Password: ")
    if len(password) < PASSWORD_MIN_LENGTH:
        print(f"  [!] Password must be at least {PASSWORD_MIN_LENGTH} characters.")
        return None
    try:
        check_password_strength(password)
    except ValueError as e:
        print(f"  [!] {e}")
        return None
    if getpass.getpass("  Confirm password: ") != password:
        print("  [!] Passwords do not match.")
        return None
    return password


def create_admin(store: UserStore, username: str, email: str) -> int:
    """Create an account holding the built-in admin role."""
    username = username.strip().lower()
    email = email.strip().lower()
    if store.username_exists(username) or store.email_exists(email):
        print(f"  [!] A user with username '{username}' or email '{email}' already exists.")
        return 1
    role = store.get_role_by_name("admin")
    if role is None:
        print("  [!] The admin role is missing or inactive.")
        return 1

    password = _prompt_password()
    if password is None:
        return 1

    user_id = store.create_user(
        User(
            username=username,
            email=email,
            password_hash=hash_password(password),
            role_id=role.id,
            user_type="admin",
        )
    )
    print(f"  Admin '{username}' created (id={user_id}).")
    return 0


def unlock(store: UserStore, user_id: int) -> int:
    guard = AccountSecurityGuard(store)
    try:
        guard.unlock(user_id)
    except NotFound:
        print(f"  [!] No user with id {user_id}.")
        return 1
    print(f"  User {user_id} unlocked.")
    return 0


def list_permissions(module: Optional[str] = None) -> int:
    entries = permissions.by_module(module.lower()) if module else permissions.all_permissions()
    if not entries:
        print(f"  [!] Unknown module '{module}'. Modules: {', '.join(permissions.modules())}")
        return 1
    current = None
    for info in entries:
        if info.module != current:
            current = info.module
            print(f"\n  {current}")
            print("  " + "─" * 40)
        print(f"  {info.name:<24} {info.bit_value:>10}  {info.display_name}")
    print()
    return 0


def show_role(store: UserStore, name: str) -> int:
    role = store.get_role_by_name(name.strip().lower())
    if role is None:
        print(f"  [!] No active role named '{name}'.")
        return 1
    print(f"\n  {role.display_name or role.name} ({role.name}, id={role.id})")
    print(f"  Mask: {role.permissions}")
    print("  " + "─" * 40)
    for info in permissions.permissions_to_names(role.permissions):
        print(f"  {info.name:<24} {info.display_name}")
    print()
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="libraryauth",
        description="Manage users, roles and permissions of the library authorization service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-admin alice alice@library.org
  python main.py unlock 42
  python main.py permissions --module borrow
  python main.py role librarian
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p_admin = sub.add_parser("create-admin", help="Create an administrator account (password is prompted)")
    p_admin.add_argument("username")
    p_admin.add_argument("email")

    p_unlock = sub.add_parser("unlock", help="Clear a user's failed-login lockout")
    p_unlock.add_argument("user_id", type=int)

    p_perms = sub.add_parser("permissions", help="List the permission catalog")
    p_perms.add_argument("--module", metavar="MODULE", help="Only this module (e.g. books, borrow)")

    p_role = sub.add_parser("role", help="Show the permissions granted to a role")
    p_role.add_argument("name")

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1
    if args.command == "permissions":
        return list_permissions(args.module)

    store = UserStore(get_settings().database_url)
    try:
        if args.command == "create-admin":
            return create_admin(store, args.username, args.email)
        if args.command == "unlock":
            return unlock(store, args.user_id)
        return show_role(store, args.name)
    except AuthError as e:
        print(f"  [!] {e}")
        return 1
    finally:
        store.close()


if __name__ == "__main__":
    raise SystemExit(main())
