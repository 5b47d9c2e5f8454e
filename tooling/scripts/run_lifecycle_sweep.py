"""Run the account lifecycle sweep once.

Example:
    python tooling/scripts/run_lifecycle_sweep.py --trigger cron
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from loguru import logger


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Correct stale, orphaned and idle account states once")
    parser.add_argument(
        "--trigger",
        default="manual",
        help="Label recorded in run metadata to describe the invocation source.",
    )
    return parser.parse_args()


async def _run(trigger: str) -> dict:
    repo_root = Path(__file__).resolve().parents[2]
    api_src = repo_root / "src"
    if str(api_src) not in sys.path:
        sys.path.insert(0, str(api_src))

    from cardpool_api.db.session import async_session  # type: ignore import-position
    from cardpool_api.jobs.account_lifecycle import run_account_lifecycle_sweep  # type: ignore import-position

    return await run_account_lifecycle_sweep(session_factory=async_session, triggered_by=trigger)


def main() -> int:
    args = parse_args()
    summary = asyncio.run(_run(args.trigger))
    logger.success(
        "Account lifecycle sweep completed",
        stale_locks_released=summary.get("stale_locks_released", 0),
        completed=summary.get("completed", 0),
        days_advanced=summary.get("days_advanced", 0),
        trigger=args.trigger,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
