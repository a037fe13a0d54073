"""Operator commands for maintaining the query telemetry store."""

from __future__ import annotations

import argparse
import json
import sys
from datetime import timedelta
from typing import Any, Callable

from sqlalchemy import text

from app.core.settings import get_settings

from .consistency import audit_counters
from .database import bootstrap_database, database_path
from .pruner import prune
from .reconciler import recanonicalize, reconcile_duplicates, verify_no_duplicates
from .sessions import list_running_sessions


def _emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _cmd_migrate(_: argparse.Namespace) -> int:
    bootstrap_database()
    _emit({"database": str(database_path()), "status": "migrated"})
    return 0


def _cmd_prune(args: argparse.Namespace) -> int:
    days = args.days if args.days is not None else get_settings().retention_days
    deleted = prune(timedelta(days=days), target_id=args.target)
    _emit({"target_id": args.target, "retention_days": days, "deleted": deleted})
    return 0


def _cmd_reconcile(args: argparse.Namespace) -> int:
    merged = reconcile_duplicates(args.target)
    _emit({"target_id": args.target, "merged_groups": merged})
    return 0


def _cmd_recanonicalize(args: argparse.Namespace) -> int:
    _emit(recanonicalize(args.target).to_dict())
    return 0


def _cmd_verify(args: argparse.Namespace) -> int:
    report = verify_no_duplicates(args.target)
    _emit(report.to_dict())
    if not report.ok:
        print(
            f"Found {len(report.duplicate_groups)} duplicated canonical query groups",
            file=sys.stderr,
        )
        return 1
    return 0


def _cmd_audit(args: argparse.Namespace) -> int:
    drifts = audit_counters(args.target, repair=not args.dry_run)
    _emit({"target_id": args.target, "repaired": not args.dry_run, "drifts": [d.to_dict() for d in drifts]})
    return 0


def _cmd_status(_: argparse.Namespace) -> int:
    engine = bootstrap_database()
    with engine.connect() as connection:
        counts = {
            table: int(connection.execute(text(f"SELECT COUNT(*) FROM {table}")).scalar_one())
            for table in ("canonical_queries", "query_samples", "query_groups", "monitoring_sessions")
        }
    _emit(
        {
            "database": str(database_path()),
            "counts": counts,
            "running_sessions": [session.to_dict() for session in list_running_sessions()],
        }
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="query-telemetry", description=__doc__)
    subparsers = parser.add_subparsers(dest="command", required=True)

    migrate = subparsers.add_parser("migrate", help="Apply pending schema migrations.")
    migrate.set_defaults(handler=_cmd_migrate)

    prune_parser = subparsers.add_parser("prune", help="Delete samples older than the retention horizon.")
    prune_parser.add_argument("--days", type=float, help="Retention horizon in days (defaults to settings).")
    prune_parser.add_argument("--target", type=int, help="Restrict pruning to one target.")
    prune_parser.set_defaults(handler=_cmd_prune)

    commands: dict[str, tuple[str, Callable[[argparse.Namespace], int]]] = {
        "reconcile": ("Merge duplicate canonical queries.", _cmd_reconcile),
        "recanonicalize": ("Re-derive canonical forms from stored samples.", _cmd_recanonicalize),
        "verify": ("Report duplicate canonical queries; exits 1 when any exist.", _cmd_verify),
        "audit": ("Check and repair derived counters.", _cmd_audit),
    }
    for name, (help_text, handler) in commands.items():
        command = subparsers.add_parser(name, help=help_text)
        command.add_argument("--target", type=int, required=True, help="Target identifier.")
        command.set_defaults(handler=handler)
        if name == "audit":
            command.add_argument("--dry-run", action="store_true", help="Report drift without repairing it.")

    status = subparsers.add_parser("status", help="Show row counts and running sessions.")
    status.set_defaults(handler=_cmd_status)
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if getattr(args, "days", None) is not None and args.days < 0:
        parser.error("--days must not be negative")
    return args.handler(args)


__all__ = ["build_parser", "main"]


if __name__ == "__main__":
    sys.exit(main())
