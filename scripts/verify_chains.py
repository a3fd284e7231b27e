"""Validate stored batch chains and inspect what they contain.

Walks every tracked account's chain (or the ones named on the command line),
checks link structure, ordering and fold consistency, and prints a per-account
verdict. The ``batches`` and ``mentions`` subcommands list stored batches of an
account and the batches that mention an arbitrary account ID. ``export`` prints
the materialized members of one side, now or as of a past timestamp, one ID per
line.

Usage:
    python -m scripts.verify_chains validate [--account 12345 ...]
    python -m scripts.verify_chains batches 12345
    python -m scripts.verify_chains mentions 67890 [--limit 50]
    python -m scripts.verify_chains export 12345 --side followed [--at 1700000000]
"""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from followledger.chain import BatchChainManager
from followledger.config import create_ledger_engine, get_ledger_settings
from followledger.diff import Side
from followledger.errors import CorruptChain, StorageUnavailable
from followledger.logging_utils import setup_ledger_logging
from followledger.reverse_index import ReverseIndex
from followledger.store import BatchStore, DiffRole

LOGGER = logging.getLogger(__name__)

CHECK = "✓"
CROSS = "✗"


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Validate and inspect follow ledger chains")
    parser.add_argument(
        "--log-dir",
        type=Path,
        default=Path("logs"),
        help="Directory for the rotating log file (default: logs)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    validate = subparsers.add_parser("validate", help="Check chain integrity")
    validate.add_argument(
        "--account",
        type=int,
        action="append",
        dest="accounts",
        help="Tracked account ID to validate (repeatable; default: all)",
    )

    batches = subparsers.add_parser("batches", help="List batches of a tracked account")
    batches.add_argument("account", type=int)

    mentions = subparsers.add_parser("mentions", help="List batches mentioning an account")
    mentions.add_argument("account", type=int)
    mentions.add_argument(
        "--limit",
        type=int,
        default=100,
        help="Maximum number of mentions to print (default: 100)",
    )

    export = subparsers.add_parser("export", help="Print the members of one side")
    export.add_argument("account", type=int)
    export.add_argument(
        "--side",
        type=Side,
        choices=list(Side),
        metavar="{follower,followed}",
        default=Side.FOLLOWER,
        help="Membership list to print (default: follower)",
    )
    export.add_argument(
        "--at",
        type=int,
        default=None,
        help="Epoch seconds; print the state of the latest capture at or before it",
    )
    return parser.parse_args(argv)


def validate_chains(store: BatchStore, accounts=None) -> int:
    accounts = accounts or store.tracked_account_ids()
    if not accounts:
        print("No tracked accounts.")
        return 0

    failures = 0
    for account_id in accounts:
        report = store.validate_chain(account_id)
        if report.ok:
            print(
                f"{CHECK} {account_id}: {report.batch_count} batches, "
                f"{report.follower_count} followers, {report.followed_count} followed"
            )
            continue
        failures += 1
        print(f"{CROSS} {account_id}: {report.batch_count} batches")
        for problem in report.problems:
            print(f"    - {problem}")

    print(f"\n{len(accounts) - failures}/{len(accounts)} chains valid")
    return 1 if failures else 0


def list_batches(store: BatchStore, account_id: int) -> int:
    summaries = store.list_batches(account_id)
    if not summaries:
        print(f"No batches for account {account_id}.")
        return 1

    tracked = store.get_tracked_account(account_id)
    label = f"@{tracked.screen_name}" if tracked and tracked.screen_name else str(account_id)
    print(f"Batches for {label}:")
    print(f"{'seq':>5} {'id':>8} {'timestamp':>12}  +fwr   -fwr   +fwd   -fwd")
    for summary in summaries:
        counts = summary.counts
        print(
            f"{summary.sequence:>5} {summary.id:>8} {summary.timestamp:>12}  "
            f"{counts[DiffRole.FOLLOWER_ADDITION]:<6} {counts[DiffRole.FOLLOWER_REMOVAL]:<6} "
            f"{counts[DiffRole.FOLLOWED_ADDITION]:<6} {counts[DiffRole.FOLLOWED_REMOVAL]:<6}"
        )
    return 0


def list_mentions(index: ReverseIndex, account_id: int, limit: int) -> int:
    total = index.count(account_id)
    print(f"Account {account_id} appears in {total} diff sets")
    for shown, mention in enumerate(index.find_batches_mentioning(account_id)):
        if shown >= limit:
            print(f"... {total - limit} more")
            break
        print(
            f"  batch {mention.batch_id:>8} at {mention.timestamp:>12} "
            f"{mention.role.value:<18} (tracked {mention.tracked_account_id})"
        )
    return 0


def export_members(manager: BatchChainManager, account_id: int, side: Side, at=None) -> int:
    if at is None:
        state = manager.materialize(account_id)
    else:
        state = manager.materialize_at(account_id, timestamp=at)
    if state is None:
        print(f"No batches for account {account_id}.", file=sys.stderr)
        return 1

    for member in state.members(side):
        print(member)
    return 0


def main(argv=None) -> int:
    args = parse_args(argv)
    setup_ledger_logging(console_level=logging.WARNING, log_dir=args.log_dir)

    settings = get_ledger_settings()
    engine = create_ledger_engine(settings)
    try:
        store = BatchStore(
            engine,
            max_attempts=settings.storage_max_attempts,
            base_delay_seconds=settings.storage_retry_delay_seconds,
        )
        if args.command == "validate":
            return validate_chains(store, args.accounts)
        if args.command == "batches":
            return list_batches(store, args.account)
        if args.command == "export":
            manager = BatchChainManager(store, settings=settings)
            return export_members(manager, args.account, args.side, args.at)
        index = ReverseIndex(store, page_size=settings.reverse_index_page_size)
        return list_mentions(index, args.account, args.limit)
    except StorageUnavailable as exc:
        LOGGER.error("Ledger database unavailable: %s", exc)
        return 2
    except CorruptChain as exc:
        print(f"{CROSS} {exc}", file=sys.stderr)
        return 1
    finally:
        engine.dispose()


if __name__ == "__main__":
    sys.exit(main())
