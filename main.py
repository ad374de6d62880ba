#!/usr/bin/env python3
"""
RouteGuard -- administration CLI.

Usage:
  python main.py create-user alice --role super_admin
  python main.py list-roles
  python main.py seed-roles
  python main.py check-route GET /api/v1/posts/private/posts
  python main.py revoke-sessions 7

Environment variables:
  DATABASE_URL     SQLAlchemy URL of the store (default: sqlite routeguard.db)
  ROUTE_MAP_FILE   Optional JSON route table used by check-route
  SECRET_KEY       Required unless DEBUG=true (read through core.config)
"""

import argparse
import getpass
import sys
from typing import Optional

from sqlalchemy.exc import IntegrityError

from auth.models import User
from auth.permissions import DEFAULT_ROLES
from auth.sessions import SessionRegistry
from auth.store import RoleStore, UserStore
from auth.tokens import hash_password
from core.config import get_settings
from guard.route_map import DEFAULT_ROUTE_MAP
from guard.rules import RuleTable, build_rule_table, load_rule_table


def _route_table(route_map_file: str) -> RuleTable:
    if route_map_file:
        return load_rule_table(route_map_file)
    return build_rule_table(DEFAULT_ROUTE_MAP)


def cmd_create_user(args: argparse.Namespace, db_url: str) -> int:
    password: Optional[str] = args.password or getpass.getpass("Password: ")
    if len(password) < 8:
        print("  [!] Password must be at least 8 characters.")
        return 1
    roles = RoleStore(db_url)
    users = UserStore(db_url)
    try:
        roles.seed_defaults(DEFAULT_ROLES)
        if roles.get_role(args.role) is None:
            print(f"  [!] Role '{args.role}' does not exist.")
            return 1
        try:
            user_id = users.create_user(
                User(
                    username=args.username,
                    display_name=args.display_name or args.username,
                    role=args.role,
                    hashed_password=hash_password(password),
                )
            )
        except IntegrityError:
            print(f"  [!] User '{args.username}' already exists.")
            return 1
    finally:
        roles.close()
        users.close()
    print(f"Created user {args.username} (id={user_id}, role={args.role}).")
    return 0


def cmd_list_roles(args: argparse.Namespace, db_url: str) -> int:
    store = RoleStore(db_url)
    try:
        roles = store.list_roles()
    finally:
        store.close()
    if not roles:
        print("No roles defined. Run 'seed-roles' first.")
        return 0
    for role in roles:
        print(f"{role.name:<16} {', '.join(role.permissions) or '-'}")
    return 0


def cmd_seed_roles(args: argparse.Namespace, db_url: str) -> int:
    store = RoleStore(db_url)
    try:
        inserted = store.seed_defaults(DEFAULT_ROLES)
    finally:
        store.close()
    if inserted:
        print(f"Seeded {inserted} default roles.")
    else:
        print("Role table is not empty; nothing seeded.")
    return 0


def cmd_check_route(args: argparse.Namespace, route_map_file: str) -> int:
    table = _route_table(route_map_file)
    method = args.method.upper()
    rule = table.match(args.path.split("?", 1)[0], method)
    if rule is None:
        print(f"{method} {args.path}: no rule (unmapped)")
        return 0
    if rule.public:
        access = "public"
    elif rule.permission is None:
        access = "login required"
    else:
        access = f"requires {rule.permission}"
    print(f"{method} {args.path}: {access}")
    print(f"  rule #{table.position(rule)} of {len(table)}: {rule.describe()}")
    return 0


def cmd_revoke_sessions(args: argparse.Namespace, db_url: str) -> int:
    registry = SessionRegistry(db_url)
    try:
        removed = registry.delete_for_user(str(args.user_id))
    finally:
        registry.close()
    print(f"Revoked {removed} session(s) for user {args.user_id}.")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="routeguard",
        description="Administer RouteGuard users, roles, sessions and the route table.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-user alice --role super_admin
  python main.py check-route PUT /api/v1/posts/42
  DATABASE_URL=sqlite:////var/lib/routeguard.db python main.py list-roles
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    create = sub.add_parser("create-user", help="Create a local user account")
    create.add_argument("username")
    create.add_argument("--role", default="user", help="Role to assign (default: user)")
    create.add_argument("--display-name", default="", help="Display name (default: the username)")
    create.add_argument("--password", default=None, help="Password (prompted when omitted)")

    sub.add_parser("list-roles", help="Print every role and its permissions")
    sub.add_parser("seed-roles", help="Insert the default roles into an empty role table")

    check = sub.add_parser("check-route", help="Show which rule governs a request")
    check.add_argument("method", metavar="METHOD")
    check.add_argument("path", metavar="PATH")

    revoke = sub.add_parser("revoke-sessions", help="Revoke every session of a user")
    revoke.add_argument("user_id", metavar="USER_ID")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 0

    settings = get_settings()
    if args.command == "check-route":
        return cmd_check_route(args, settings.route_map_file)

    handlers = {
        "create-user": cmd_create_user,
        "list-roles": cmd_list_roles,
        "seed-roles": cmd_seed_roles,
        "revoke-sessions": cmd_revoke_sessions,
    }
    return handlers[args.command](args, settings.database_url)


if __name__ == "__main__":
    sys.exit(main())
