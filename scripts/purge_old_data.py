"""Delete rows past their retention window.

Run from the repository root: python -m scripts.purge_old_data
"""

import argparse
import asyncio
import logging
from datetime import datetime, timezone

from config import (
    ACTIVITY_RETENTION_DAYS,
    BATTLE_RETENTION_DAYS,
    NOTIFICATION_RETENTION_DAYS,
    SNAPSHOT_RETENTION_DAYS,
)
from db import close_db, connect_db, purge_old_data

logger = logging.getLogger(__name__)


async def run_purge(args: argparse.Namespace) -> dict[str, int]:
    await connect_db()
    try:
        deleted = await purge_old_data(
            datetime.now(timezone.utc),
            activity_days=args.activity_days,
            battle_days=args.battle_days,
            snapshot_days=args.snapshot_days,
            notification_days=args.notification_days,
        )
    finally:
        await close_db()

    logger.info(
        "Deleted rows - activity_log: %s, battle_history: %s, "
        "brawler_snapshots: %s, notifications (read): %s",
        deleted["activity_log"],
        deleted["battle_history"],
        deleted["brawler_snapshots"],
        deleted["notifications"],
    )
    return deleted


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
    parser = argparse.ArgumentParser(description="Purge old tracker data.")
    parser.add_argument("--activity-days", type=int, default=ACTIVITY_RETENTION_DAYS)
    parser.add_argument("--battle-days", type=int, default=BATTLE_RETENTION_DAYS)
    parser.add_argument("--snapshot-days", type=int, default=SNAPSHOT_RETENTION_DAYS)
    parser.add_argument(
        "--notification-days",
        type=int,
        default=NOTIFICATION_RETENTION_DAYS,
        help="Read notifications older than this are deleted.",
    )
    args = parser.parse_args()
    asyncio.run(run_purge(args))


if __name__ == "__main__":
    main()
