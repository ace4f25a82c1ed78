from __future__ import annotations

import argparse
import datetime as dt
import subprocess
import sys

from sqlalchemy import text

from core.alembic_utils import ensure_up_to_date, migration_status
from core.db import get_engine, init_database, session_scope
from core.errors import ServiceError
from core.models import AuditEvent, Company
from core.repositories import companies as companies_repo
from core.services import companies as company_service
from core.services import statutory
from core.services.auth import issue_admin_token, issue_user_token
from core.services.idempotency import purge_expired


def _run(cmd: list[str]) -> int:
    print("$", " ".join(cmd))
    return subprocess.call(cmd)


def _company(session, args: argparse.Namespace) -> Company | None:
    if getattr(args, "company_id", None):
        return companies_repo.get_by_id(session, int(args.company_id))
    if getattr(args, "slug", None):
        return companies_repo.get_by_slug(session, args.slug)
    return None


def cmd_migrate(_: argparse.Namespace) -> int:
    return _run(["alembic", "upgrade", "head"])


def cmd_downgrade(args: argparse.Namespace) -> int:
    return _run(["alembic", "downgrade", args.to or "base"])


def cmd_seed_demo(_: argparse.Namespace) -> int:
    from scripts import dev_seed

    dev_seed.main()
    return 0


def cmd_db_check(_: argparse.Namespace) -> int:
    engine = init_database()
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
    print("DB OK")
    return 0


def cmd_db_status(_: argparse.Namespace) -> int:
    status = migration_status(get_engine())
    print(f"current: {', '.join(sorted(status.current)) or '(none)'}")
    print(f"head:    {', '.join(sorted(status.expected))}")
    for revision in status.pending:
        print(f"pending: {revision}")
    try:
        ensure_up_to_date(get_engine())
    except RuntimeError as exc:
        print(f"Schema status: FAIL ({exc})", file=sys.stderr)
        return 1
    print("Schema status: OK (DB at head)")
    return 0


def cmd_create_company(args: argparse.Namespace) -> int:
    with session_scope() as session:
        try:
            company = company_service.create_company(session, args.name, args.slug, tin=args.tin or "")
        except ServiceError as exc:
            print(exc.message, file=sys.stderr)
            return 1
        print(f"Created company: id={company.id} slug={company.slug}")
    return 0


def cmd_create_user(args: argparse.Namespace) -> int:
    with session_scope() as session:
        company = _company(session, args)
        if company is None:
            print("Company not found", file=sys.stderr)
            return 1
        try:
            user = company_service.create_user(
                session,
                company,
                username=args.username,
                password=args.password,
                role=args.role,
                full_name=args.full_name or "",
                employee_id=args.employee_id,
                is_request_approver=args.approver,
                is_material_request_purchaser=args.purchaser,
                is_material_request_poster=args.poster,
            )
        except ServiceError as exc:
            print(exc.message, file=sys.stderr)
            return 1
        print(f"Created user: id={user.id} username={user.username} role={user.role}")
    return 0


def cmd_issue_token(args: argparse.Namespace) -> int:
    if args.admin:
        print(issue_admin_token())
        return 0
    with session_scope() as session:
        company = _company(session, args)
        if company is None:
            print("Company not found", file=sys.stderr)
            return 1
        user = companies_repo.get_user_by_username(session, company.id, args.username or "")
        if user is None:
            print("User not found", file=sys.stderr)
            return 1
        print(issue_user_token(session, user, ttl_seconds=args.ttl))
    return 0


def cmd_rotate_company_token_key(args: argparse.Namespace) -> int:
    with session_scope() as session:
        company = _company(session, args)
        if company is None:
            print("Company not found", file=sys.stderr)
            return 1
        company_service.rotate_company_token_key(session, company)
        print(f"Rotated token key for company id={company.id} slug={company.slug}")
    return 0


def cmd_seed_statutory(args: argparse.Namespace) -> int:
    effective = dt.date.fromisoformat(args.effective_from) if args.effective_from else dt.date(dt.date.today().year, 1, 1)
    init_database()
    with session_scope() as session:
        print(statutory.seed_default_tables(session, effective, actor="cli"))
    return 0


def cmd_list_companies(_: argparse.Namespace) -> int:
    init_database()
    with session_scope() as session:
        for c in companies_repo.list_companies(session):
            print(f"{c.id}\t{c.slug}\t{c.name}\t{c.created_at}")
    return 0


def cmd_prune_idempotency(args: argparse.Namespace) -> int:
    with session_scope() as session:
        n = purge_expired(session, older_than=dt.timedelta(days=int(args.days)))
        print(f"Pruned {n} idempotency records older than {args.days}d")
    return 0


def cmd_audit_tail(args: argparse.Namespace) -> int:
    with session_scope() as session:
        q = session.query(AuditEvent)
        if args.company_id:
            q = q.filter(AuditEvent.company_id == int(args.company_id))
        for ev in q.order_by(AuditEvent.ts.desc()).limit(int(args.limit)).all():
            print(f"{ev.ts}\t{ev.actor}\t{ev.action}\t{ev.resource}\t{ev.result}")
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(prog="manage", description="HRIS management CLI")
    sub = parser.add_subparsers(dest="cmd", required=True)

    sub.add_parser("migrate", help="Upgrade DB to head").set_defaults(func=cmd_migrate)

    p_down = sub.add_parser("downgrade", help="Downgrade DB to target (default base)")
    p_down.add_argument("to", nargs="?", default="base")
    p_down.set_defaults(func=cmd_downgrade)

    sub.add_parser("seed-demo", help="Create a demo company with HR and employee users").set_defaults(func=cmd_seed_demo)

    sub.add_parser("db-check", help="Run a simple DB connectivity check").set_defaults(func=cmd_db_check)
    sub.add_parser("db-status", help="Verify the DB is at the Alembic head").set_defaults(func=cmd_db_status)

    p_company = sub.add_parser("create-company", help="Create a company")
    p_company.add_argument("--name", required=True)
    p_company.add_argument("--slug", required=True)
    p_company.add_argument("--tin")
    p_company.set_defaults(func=cmd_create_company)

    p_user = sub.add_parser("create-user", help="Create a user in a company")
    p_user.add_argument("--company-id", type=int)
    p_user.add_argument("--slug")
    p_user.add_argument("--username", required=True)
    p_user.add_argument("--password", required=True)
    p_user.add_argument("--role", default="EMPLOYEE", choices=sorted(company_service.ROLES))
    p_user.add_argument("--full-name")
    p_user.add_argument("--employee-id", type=int)
    p_user.add_argument("--approver", action="store_true")
    p_user.add_argument("--purchaser", action="store_true")
    p_user.add_argument("--poster", action="store_true")
    p_user.set_defaults(func=cmd_create_user)

    p_token = sub.add_parser("issue-token", help="Issue a user token (or an admin token with --admin)")
    p_token.add_argument("--admin", action="store_true")
    p_token.add_argument("--company-id", type=int)
    p_token.add_argument("--slug")
    p_token.add_argument("--username")
    p_token.add_argument("--ttl", type=int)
    p_token.set_defaults(func=cmd_issue_token)

    p_rot = sub.add_parser("rotate-company-token-key", help="Rotate company token key (revoke tokens)")
    p_rot.add_argument("--company-id", type=int)
    p_rot.add_argument("--slug")
    p_rot.set_defaults(func=cmd_rotate_company_token_key)

    p_seed = sub.add_parser("seed-statutory", help="Load the bundled SSS/PhilHealth/Pag-IBIG/tax tables")
    p_seed.add_argument("--effective-from", help="YYYY-MM-DD (default: Jan 1 of this year)")
    p_seed.set_defaults(func=cmd_seed_statutory)

    sub.add_parser("list-companies", help="List companies").set_defaults(func=cmd_list_companies)

    p_prune = sub.add_parser("prune-idempotency", help="Delete idempotency records older than N days")
    p_prune.add_argument("--days", type=int, default=7)
    p_prune.set_defaults(func=cmd_prune_idempotency)

    p_audit = sub.add_parser("audit-tail", help="Print the latest audit events")
    p_audit.add_argument("--company-id", type=int)
    p_audit.add_argument("--limit", type=int, default=20)
    p_audit.set_defaults(func=cmd_audit_tail)

    args = parser.parse_args()
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
