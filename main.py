#!/usr/bin/env python3
"""
Lattice CMDB -- maintenance commands.

The HTTP API (api/main.py) is the primary interface. This CLI covers the
out-of-band chores: bootstrapping users and tokens, retention cleanup, audit
export, cache purging, and nudging a running server's graph index.

Usage:
  python main.py create-user --username admin --role admin
  python main.py issue-token --username admin
  python main.py audit-cleanup --days 365
  python main.py audit-export --output audit.csv --entity-type ci
  python main.py purge-cache
  python main.py reconcile-graph --username admin --url http://127.0.0.1:8000
  python main.py drain-outbox --username admin

The graph index lives inside the API process, so reconcile-graph and
drain-outbox call the running server's admin endpoints rather than touching
the outbox directly.

Configuration comes from the same environment / .env file as the API
(DATABASE_URL, AUDIT_DATABASE_URL, REDIS_URL, SECRET_KEY, ...).
"""

import argparse
import sys
from pathlib import Path
from typing import Optional

import requests
from sqlalchemy.exc import IntegrityError

from audit.export import to_csv
from audit.models import AuditFilters
from audit.store import AuditStore
from auth.models import ROLES, User
from auth.store import UserStore
from auth.tokens import create_access_token
from cache.store import build_cache
from core.config import Settings, get_settings

_session = requests.Session()
_session.max_redirects = 3


def _user_store(settings: Settings) -> UserStore:
    return UserStore(db_url=settings.database_url) if settings.database_url else UserStore()


def _audit_store(settings: Settings) -> AuditStore:
    url = settings.resolved_audit_database_url()
    return AuditStore(db_url=url) if url else AuditStore()


def _token_for(settings: Settings, username: str, expire_seconds: int = 0) -> Optional[str]:
    users = _user_store(settings)
    try:
        user = users.get_by_username(username)
    finally:
        users.close()
    if user is None or not user.is_active:
        print(f"  [!] No active user named '{username}'.", file=sys.stderr)
        return None
    return create_access_token(user.id, user.username, user.role, expire_seconds=expire_seconds)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def cmd_create_user(args: argparse.Namespace, settings: Settings) -> int:
    users = _user_store(settings)
    try:
        user_id = users.create_user(User(username=args.username, role=args.role))
    except IntegrityError:
        print(f"  [!] User '{args.username}' already exists.", file=sys.stderr)
        return 1
    finally:
        users.close()
    print(f"Created {args.role} user '{args.username}' (id {user_id}).")
    return 0


def cmd_issue_token(args: argparse.Namespace, settings: Settings) -> int:
    token = _token_for(settings, args.username, args.expire_seconds)
    if token is None:
        return 1
    print(token)
    return 0


def cmd_audit_cleanup(args: argparse.Namespace, settings: Settings) -> int:
    days = args.days or settings.audit_retention_days
    audit = _audit_store(settings)
    try:
        removed = audit.cleanup(days)
    finally:
        audit.close()
    print(f"Removed {removed} audit entr{'y' if removed == 1 else 'ies'} older than {days} days.")
    return 0


def cmd_audit_export(args: argparse.Namespace, settings: Settings) -> int:
    filters = AuditFilters(
        entity_type=args.entity_type,
        action=args.action,
        performed_by=args.performed_by,
        start_date=args.start_date,
        end_date=args.end_date,
    )
    audit = _audit_store(settings)
    try:
        rows = audit.export_rows(filters)
    except ValueError as e:
        print(f"  [!] {e}", file=sys.stderr)
        return 2
    finally:
        audit.close()
    body = to_csv(rows)
    if args.output:
        Path(args.output).write_text(body, encoding="utf-8")
        print(f"Wrote {len(rows)} rows to {args.output}.")
    else:
        sys.stdout.write(body)
    return 0


def cmd_purge_cache(args: argparse.Namespace, settings: Settings) -> int:
    cache = build_cache(settings)
    try:
        removed = cache.purge_expired()
    finally:
        cache.close()
    print(f"Purged {removed} expired cache entr{'y' if removed == 1 else 'ies'}.")
    return 0


def _call_admin(args: argparse.Namespace, settings: Settings, path: str) -> Optional[dict]:
    token = _token_for(settings, args.username)
    if token is None:
        return None
    url = args.url.rstrip("/") + path
    try:
        resp = _session.post(url, headers={"Authorization": f"Bearer {token}"}, timeout=args.timeout)
        resp.raise_for_status()
        return resp.json()
    except requests.RequestException as e:
        print(f"  [!] {url} failed: {e}", file=sys.stderr)
        return None


def cmd_reconcile_graph(args: argparse.Namespace, settings: Settings) -> int:
    report = _call_admin(args, settings, "/api/v1/admin/graph/reconcile")
    if report is None:
        return 1
    print(
        f"Graph index rebuilt: {report['nodes']} nodes, {report['edges']} edges, "
        f"{report['cleared']} outbox row(s) cleared."
    )
    return 0


def cmd_drain_outbox(args: argparse.Namespace, settings: Settings) -> int:
    report = _call_admin(args, settings, "/api/v1/admin/graph/drain")
    if report is None:
        return 1
    print(f"Outbox drained: {report['applied']} applied, {report['failed']} failed.")
    if report["divergent"]:
        print(f"  [!] Diverged (run reconcile-graph): {', '.join(report['divergent'])}")
        return 1
    return 0


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lattice",
        description="Lattice CMDB maintenance commands.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-user --username admin --role admin
  python main.py issue-token --username admin > token.txt
  python main.py audit-export --start-date 2024-01-01 --output q1.csv
  python main.py reconcile-graph --username admin
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p = sub.add_parser("create-user", help="Create an API user")
    p.add_argument("--username", required=True)
    p.add_argument("--role", choices=ROLES, default="user")
    p.set_defaults(func=cmd_create_user)

    p = sub.add_parser("issue-token", help="Print a signed JWT for an existing user")
    p.add_argument("--username", required=True)
    p.add_argument(
        "--expire-seconds",
        type=int,
        default=0,
        metavar="N",
        help="Token lifetime (default: TOKEN_EXPIRE_SECONDS)",
    )
    p.set_defaults(func=cmd_issue_token)

    p = sub.add_parser("audit-cleanup", help="Delete audit entries past the retention period")
    p.add_argument("--days", type=int, default=None, metavar="N", help="Retention (default: AUDIT_RETENTION_DAYS)")
    p.set_defaults(func=cmd_audit_cleanup)

    p = sub.add_parser("audit-export", help="Write audit entries as CSV")
    p.add_argument("--output", metavar="PATH", help="File to write (default: stdout)")
    p.add_argument("--entity-type", choices=["ci", "ci_type", "relationship"])
    p.add_argument("--action", choices=["create", "update", "delete"])
    p.add_argument("--performed-by", metavar="USER_ID")
    p.add_argument("--start-date", metavar="YYYY-MM-DD")
    p.add_argument("--end-date", metavar="YYYY-MM-DD")
    p.set_defaults(func=cmd_audit_export)

    p = sub.add_parser("purge-cache", help="Remove expired CI cache entries")
    p.set_defaults(func=cmd_purge_cache)

    for name, func, help_text in (
        ("reconcile-graph", cmd_reconcile_graph, "Rebuild a running server's graph index"),
        ("drain-outbox", cmd_drain_outbox, "Retry a running server's pending graph mirror operations"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("--username", required=True, help="Admin user to authenticate as")
        p.add_argument("--url", default="http://127.0.0.1:8000", help="API base URL")
        p.add_argument("--timeout", type=float, default=30.0, metavar="SECONDS")
        p.set_defaults(func=func)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "func", None):
        parser.print_help()
        return 0
    if getattr(args, "days", None) is not None and args.days < 1:
        parser.error("--days must be at least 1")
    return args.func(args, get_settings())


if __name__ == "__main__":
    sys.exit(main())
