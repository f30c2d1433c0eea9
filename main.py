#!/usr/bin/env python3
"""
Gatehouse -- authentication and session security service.

Usage:
  python main.py serve
  python main.py serve --host 0.0.0.0 --port 8000 --reload
  python main.py create-user admin admin@example.com --role "Super Admin"
  python main.py add-ip-rule 203.0.113.0/24 blacklist --reason "scanner"
  python main.py list-ip-rules
  python main.py reap

Environment variables (see core/config.py for the full list):
  SECRET_KEY     Required unless DEBUG=true. At least 32 characters.
  DATABASE_URL   SQLAlchemy URL. Defaults to gatehouse.db next to this file.
"""

import argparse
import getpass
import sys

from sqlalchemy.exc import IntegrityError

from auth.models import Account, Role
from auth.tokens import hash_password
from core.db import now_iso
from security.ip_access import parse_rule_address
from security.models import IpRule, IpRuleKind


def _serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("api.main:app", host=args.host, port=args.port, reload=args.reload)
    return 0


def _create_user(args: argparse.Namespace) -> int:
    from auth.store import AccountStore

    password = args.password or getpass.getpass("Password: ")
    if len(password) < 8 or len(password.encode("utf-8")) > 72:
        print("  [!] Password must be 8 to 72 bytes.")
        return 1
    store = AccountStore()
    try:
        user_id = store.create_account(
            Account(
                username=args.username,
                email=args.email.lower(),
                name=args.name,
                hashed_password=hash_password(password),
                role=Role(args.role),
                password_updated_at=now_iso(),
            )
        )
    except IntegrityError:
        print(f"  [!] A user named '{args.username}' or with email '{args.email}' already exists.")
        return 1
    finally:
        store.close()
    print(f"  Created user {args.username} (id={user_id}, role={args.role}).")
    return 0


def _add_ip_rule(args: argparse.Namespace) -> int:
    from security.store import SecurityStore

    try:
        parse_rule_address(args.address)
    except ValueError:
        print(f"  [!] '{args.address}' is not an IP address or CIDR block.")
        return 1
    store = SecurityStore()
    try:
        rule_id = store.create_ip_rule(IpRule(ip_address=args.address, kind=IpRuleKind(args.type), reason=args.reason))
    except IntegrityError:
        print(f"  [!] {args.address} already has a {args.type} rule.")
        return 1
    finally:
        store.close()
    print(f"  Added {args.type} rule {rule_id} for {args.address}.")
    return 0


def _list_ip_rules(args: argparse.Namespace) -> int:
    from security.store import SecurityStore

    store = SecurityStore()
    try:
        rules = store.list_ip_rules()
    finally:
        store.close()
    if not rules:
        print("  No IP rules.")
        return 0
    for rule in rules:
        print(f"  {rule.id:>4}  {rule.kind.value:<9}  {rule.ip_address:<40}  {rule.reason or ''}")
    return 0


def _reap(args: argparse.Namespace) -> int:
    from auth.sessions import SessionStore

    store = SessionStore()
    try:
        sessions = store.expire_sessions()
        pending = store.purge_expired_pending()
    finally:
        store.close()
    print(f"  Expired {sessions} session(s), purged {pending} pending record(s).")
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="gatehouse",
        description="Authentication and session security service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  DEBUG=true python main.py serve --reload
  python main.py create-user alice alice@example.com
  python main.py add-ip-rule 10.0.0.0/8 whitelist
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    serve = sub.add_parser("serve", help="Run the HTTP API with uvicorn")
    serve.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    serve.add_argument("--port", type=int, default=8000, help="Bind port (default: 8000)")
    serve.add_argument("--reload", action="store_true", help="Reload on code changes (development only)")
    serve.set_defaults(func=_serve)

    create = sub.add_parser("create-user", help="Create a local account")
    create.add_argument("username")
    create.add_argument("email")
    create.add_argument("--name", default=None, help="Display name")
    create.add_argument(
        "--role",
        choices=[r.value for r in Role],
        default=Role.SUBSCRIBER.value,
        metavar="ROLE",
        help="One of: " + ", ".join(r.value for r in Role) + " (default: Subscriber)",
    )
    create.add_argument("--password", default=None, help="Password (prompted for when omitted)")
    create.set_defaults(func=_create_user)

    add_rule = sub.add_parser("add-ip-rule", help="Whitelist or blacklist an address or CIDR block")
    add_rule.add_argument("address")
    add_rule.add_argument("type", choices=[k.value for k in IpRuleKind])
    add_rule.add_argument("--reason", default=None)
    add_rule.set_defaults(func=_add_ip_rule)

    list_rules = sub.add_parser("list-ip-rules", help="Print every IP rule")
    list_rules.set_defaults(func=_list_ip_rules)

    reap = sub.add_parser("reap", help="Expire old sessions and purge stale pending auth state")
    reap.set_defaults(func=_reap)

    args = parser.parse_args()
    if not getattr(args, "func", None):
        parser.print_help()
        sys.exit(1)
    sys.exit(args.func(args))


if __name__ == "__main__":
    main()
