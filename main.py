#!/usr/bin/env python3
"""
QC Guard -- local administration for the QC dashboard identity store.

Works directly on the identity database (DATABASE_URL), without the API
server. Administrative commands act on behalf of an existing administrator
named with --as, and go through the same services and policy checks as the
HTTP routes.

Usage:
  python main.py init-admin alice
  python main.py issue-code --as alice --role quality-control --unit 3
  python main.py issue-code --as alice --role production-operator --never-expires
  python main.py validate-code QC482913
  python main.py pending --as alice
  python main.py accounts --as alice
  python main.py set-status --as alice bob disabled
  python main.py reset-password --as alice bob
  python main.py purge-tokens
"""

from __future__ import annotations

import argparse
import getpass
import sys

from auth.accounts import AccountService
from auth.codes import CodeRegistry
from auth.errors import IdentityError, NotFound
from auth.models import Account, AccountStatus, Role
from auth.notifications import NotificationCenter
from auth.registration import RegistrationWorkflow
from auth.store import IdentityStore
from core.clock import to_iso, utcnow


def _actor(store: IdentityStore, username: str) -> Account:
    account = store.get_account_by_username(username)
    if account is None:
        raise NotFound(f"No account named {username!r}.")
    return account


def _cmd_init_admin(store: IdentityStore, args: argparse.Namespace) -> None:
    password = args.password or getpass.getpass("  Password for the first administrator: ")
    admin = AccountService(store).bootstrap_admin(args.username, password)
    print(f"  Administrator {admin.username!r} created.")


def _cmd_issue_code(store: IdentityStore, args: argparse.Namespace) -> None:
    issuer = _actor(store, args.actor)
    record = CodeRegistry(store).issue(
        issuer.id,
        args.role,
        unit_id=args.unit,
        sub_unit_id=args.sub_unit,
        group_id=args.group,
        expires_in_hours=args.hours,
        never_expires=args.never_expires,
    )
    expiry = record.expires_at or "never"
    print(f"  {record.code}  role={record.role}  expires={expiry}")


def _cmd_validate_code(store: IdentityStore, args: argparse.Namespace) -> None:
    result = CodeRegistry(store).validate(args.code)
    if result.valid:
        print(f"  valid  role={result.role}  unit={result.unit_id}")
    else:
        print(f"  invalid ({result.reason})")


def _cmd_pending(store: IdentityStore, args: argparse.Namespace) -> None:
    reviewer = _actor(store, args.actor)
    workflow = RegistrationWorkflow(store, CodeRegistry(store), NotificationCenter(store))
    pending = workflow.list_pending(reviewer.id)
    if not pending:
        print("  No pending requests.")
        return
    for r in pending:
        print(f"  #{r.id:<5} {r.username:<24} {r.requested_role:<20} unit={r.requested_unit_id}  {r.created_at}")


def _cmd_accounts(store: IdentityStore, args: argparse.Namespace) -> None:
    actor = _actor(store, args.actor)
    for a in AccountService(store).list_accounts(actor.id):
        print(f"  {a.username:<24} {a.role:<20} {a.status:<9} last_login={a.last_login or '-'}")


def _cmd_set_status(store: IdentityStore, args: argparse.Namespace) -> None:
    actor = _actor(store, args.actor)
    target = _actor(store, args.username)
    AccountService(store).set_status(actor.id, target.id, args.status)
    print(f"  {target.username!r} is now {args.status}.")


def _cmd_reset_password(store: IdentityStore, args: argparse.Namespace) -> None:
    actor = _actor(store, args.actor)
    target = _actor(store, args.username)
    temporary = AccountService(store).reset_password(actor.id, target.id)
    print(f"  Temporary password for {target.username!r}: {temporary}")


def _cmd_purge_tokens(store: IdentityStore, args: argparse.Namespace) -> None:
    purged = store.purge_expired_remember_tokens(to_iso(utcnow()))
    print(f"  {purged} expired remember token(s) removed.")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="qcguard",
        description="Local administration for the QC dashboard identity store.",
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p = sub.add_parser("init-admin", help="Create the first administrator (empty store only)")
    p.add_argument("username")
    p.add_argument("--password", help="Prompted for when omitted")
    p.set_defaults(func=_cmd_init_admin)

    p = sub.add_parser("issue-code", help="Issue an enrollment code")
    p.add_argument("--as", dest="actor", required=True, metavar="ADMIN")
    p.add_argument("--role", required=True, choices=[r.value for r in Role])
    p.add_argument("--unit", type=int)
    p.add_argument("--sub-unit", type=int)
    p.add_argument("--group", type=int)
    expiry = p.add_mutually_exclusive_group()
    expiry.add_argument("--hours", type=int, help="Lifetime in hours (default: CODE_EXPIRY_HOURS)")
    expiry.add_argument("--never-expires", action="store_true")
    p.set_defaults(func=_cmd_issue_code)

    p = sub.add_parser("validate-code", help="Check an enrollment code without consuming it")
    p.add_argument("code")
    p.set_defaults(func=_cmd_validate_code)

    p = sub.add_parser("pending", help="List registration requests the reviewer may act on")
    p.add_argument("--as", dest="actor", required=True, metavar="REVIEWER")
    p.set_defaults(func=_cmd_pending)

    p = sub.add_parser("accounts", help="List all accounts")
    p.add_argument("--as", dest="actor", required=True, metavar="ADMIN")
    p.set_defaults(func=_cmd_accounts)

    p = sub.add_parser("set-status", help="Enable or disable an account")
    p.add_argument("--as", dest="actor", required=True, metavar="ADMIN")
    p.add_argument("username")
    p.add_argument("status", choices=[s.value for s in AccountStatus])
    p.set_defaults(func=_cmd_set_status)

    p = sub.add_parser("reset-password", help="Replace an account's password with a temporary one")
    p.add_argument("--as", dest="actor", required=True, metavar="ADMIN")
    p.add_argument("username")
    p.set_defaults(func=_cmd_reset_password)

    p = sub.add_parser("purge-tokens", help="Delete expired remember-me tokens")
    p.set_defaults(func=_cmd_purge_tokens)

    return parser


def main(argv: list[str] | None = None, store: IdentityStore | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 0

    own_store = store is None
    store = store or IdentityStore()
    try:
        args.func(store, args)
    except IdentityError as exc:
        print(f"  [!] {exc.message}")
        return 1
    finally:
        if own_store:
            store.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
