"""Operational CLI over a persisted local cache.

Usage:
    python -m engagement status [--user USER] [--json]
    python -m engagement sync [--user USER] [--remote {http,sql}]
    python -m engagement check [--repair] [--remote {http,sql}]
    python -m engagement init-db

Examples:
    python -m engagement status --user alice   Show alice's engagements
    python -m engagement sync                  Replay parked writes
    python -m engagement check --repair        Fix users with two active engagements
"""

import argparse
import asyncio
import json
import sys

from engagement.challenges.state_machine import current_acceptance, derive_effective_status
from engagement.config import EngagementSettings, get_settings
from engagement.infrastructure.database.session import create_engine, create_tables
from engagement.reconciliation.consistency import ConsistencyChecker
from engagement.reconciliation.reconciler import Reconciler
from engagement.repositories.base import EngagementStore
from engagement.repositories.exceptions import RepositoryError
from engagement.repositories.http import HttpEngagementStore
from engagement.repositories.memory import InMemoryEngagementStore
from engagement.repositories.sql import SqlEngagementStore
from engagement.shared.utils.logging import configure_logging, get_logger

logger = get_logger(__name__)

DEFAULT_CACHE_PATH = "engagement-cache.json"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="engagement",
        description="Inspect and reconcile the challenge engagement cache",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--cache",
        default=None,
        help=f"Local cache file (default: ENGAGEMENT_LOCAL_CACHE_PATH or {DEFAULT_CACHE_PATH})",
    )
    parser.add_argument(
        "--remote",
        choices=["http", "sql"],
        default="http",
        help="Authoritative store to talk to (default: http)",
    )
    parser.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error"],
        default=None,
        help="Logging level (default: ENGAGEMENT_LOG_LEVEL)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    status = subparsers.add_parser("status", help="Show engagements and unsynced writes")
    status.add_argument("--user", default=None, help="Only show this user")
    status.add_argument("--json", action="store_true", help="Print JSON")

    sync = subparsers.add_parser("sync", help="Replay parked writes and optionally reload a user")
    sync.add_argument("--user", default=None, help="Reload this user from the authority afterwards")

    check = subparsers.add_parser("check", help="Detect users with more than one active engagement")
    check.add_argument("--repair", action="store_true", help="Force-withdraw all but the newest")

    subparsers.add_parser("init-db", help="Create the SQL authority's tables")

    return parser


def _build_remote(kind: str, settings: EngagementSettings) -> EngagementStore:
    if kind == "sql":
        return SqlEngagementStore(create_engine(settings.database_url, settings.database_echo))
    return HttpEngagementStore(
        base_url=settings.remote_base_url,
        api_token=settings.remote_api_token,
        timeout=settings.remote_timeout_seconds,
    )


def _status_rows(reconciler: Reconciler, username: str | None) -> list[dict[str, object]]:
    local = reconciler.local
    rows = []
    pairs = sorted({(a.username, a.challenge_id) for a in local.find_acceptances(username=username)})
    for user, challenge_id in pairs:
        acceptance = current_acceptance(local.find_acceptances(user, challenge_id), user, challenge_id)
        review = local.find_review(acceptance.id)
        rows.append({
            "username": user,
            "challenge_id": challenge_id,
            "status": derive_effective_status(acceptance, review).value,
            "committed_date": acceptance.committed_date.isoformat(),
            "points_awarded": review.points_awarded if review else None,
            "unsynced": reconciler.is_unsynced(acceptance.id),
        })
    return rows


def cmd_status(args: argparse.Namespace, reconciler: Reconciler) -> int:
    rows = _status_rows(reconciler, args.user)
    pending = len(reconciler.outbox.pending(args.user))

    if args.json:
        print(json.dumps({"engagements": rows, "pending_operations": pending}, indent=2))
        return 0

    if not rows:
        print("No engagements.")
    for row in rows:
        marker = " (unsynced)" if row["unsynced"] else ""
        points = "" if row["points_awarded"] is None else f" points={row['points_awarded']}"
        print(
            f"{row['username']:<20} {row['challenge_id']:<20} {row['status']:<15} "
            f"due={row['committed_date']}{points}{marker}"
        )
    print(f"Pending operations: {pending}")
    return 0


async def cmd_sync(args: argparse.Namespace, reconciler: Reconciler) -> int:
    reachable = await reconciler.check_connectivity()
    if not reachable:
        print("Remote store unreachable; pending operations kept.", file=sys.stderr)
        return 1
    if args.user:
        try:
            await reconciler.reload(args.user)
        except RepositoryError as e:
            print(f"Reload failed: {e.message}", file=sys.stderr)
            return 1
    remaining = len(reconciler.outbox)
    print(f"Pending operations: {remaining}")
    return 0 if remaining == 0 else 1


async def cmd_check(args: argparse.Namespace, reconciler: Reconciler) -> int:
    checker = ConsistencyChecker(reconciler)
    violations = checker.check()
    for violation in violations:
        print(violation.describe())
    if not violations:
        print("No consistency violations.")
        return 0
    if args.repair:
        repaired = await checker.check_and_repair()
        print(f"Repaired {len(repaired)} violation(s).")
        return 0 if len(repaired) == len(violations) else 1
    return 1


async def run(args: argparse.Namespace, settings: EngagementSettings) -> int:
    if args.command == "init-db":
        engine = create_engine(settings.database_url, settings.database_echo)
        try:
            await create_tables(engine)
        finally:
            await engine.dispose()
        print("Database tables created.")
        return 0

    cache_path = args.cache or settings.local_cache_path or DEFAULT_CACHE_PATH
    remote = _build_remote(args.remote, settings)
    reconciler = Reconciler.from_settings(InMemoryEngagementStore(), remote, settings)
    reconciler.load_state(cache_path)

    try:
        if args.command == "status":
            return cmd_status(args, reconciler)
        if args.command == "sync":
            code = await cmd_sync(args, reconciler)
        else:
            code = await cmd_check(args, reconciler)
        reconciler.save_state(cache_path)
        return code
    finally:
        await remote.close()


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    settings = get_settings()

    configure_logging(
        level=(args.log_level or settings.log_level).upper(),
        json_format=settings.log_json,
        service_name=settings.service_name,
        stream=sys.stderr,
    )

    return asyncio.run(run(args, settings))


if __name__ == "__main__":
    sys.exit(main())
