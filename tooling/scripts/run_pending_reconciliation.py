"""Run the pending-transaction reconciliation sweep once.

Example:
    python tooling/scripts/run_pending_reconciliation.py --dry-run --batch-size 50
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from loguru import logger


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Fail PENDING exchange rows that can no longer complete")
    parser.add_argument(
        "--trigger",
        default="manual",
        help="Label recorded in run metadata to describe the invocation source.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report which rows would be failed without writing.",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=None,
        help="Override the page size used while scanning PENDING rows.",
    )
    return parser.parse_args()


async def _run(trigger: str, dry_run: bool, batch_size: int | None) -> dict:
    repo_root = Path(__file__).resolve().parents[2]
    api_src = repo_root / "src"
    if str(api_src) not in sys.path:
        sys.path.insert(0, str(api_src))

    from cardpool_api.db.session import async_session  # type: ignore import-position
    from cardpool_api.jobs.pending_reconciliation import run_pending_reconciliation  # type: ignore import-position

    return await run_pending_reconciliation(
        session_factory=async_session,
        dry_run=dry_run,
        batch_size=batch_size,
        triggered_by=trigger,
    )


def main() -> int:
    args = parse_args()
    summary = asyncio.run(_run(args.trigger, args.dry_run, args.batch_size))
    logger.success(
        "Pending reconciliation run completed",
        scanned=summary.get("scanned", 0),
        failed=summary.get("failed", 0),
        dry_run=args.dry_run,
        trigger=args.trigger,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
