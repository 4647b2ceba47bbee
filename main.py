"""Main entry point for the Brawl Stars club tracker."""

import argparse
import asyncio
import logging
from datetime import datetime, timezone

from brawl_api import BrawlStarsAPI, BrawlStarsAPIError
from config import SYNC_INTERVAL_SECONDS
from db import close_db, connect_db, set_settings
from reports import (
    build_leaderboards,
    build_member_detail,
    build_weekly_report,
    format_leaderboard,
    format_member_detail,
    format_weekly_report,
)
from sync import SyncSummary, load_sync_settings, run_sync
from tags import normalize_tag

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

SYNC_LOCK = asyncio.Lock()


async def sync_once(initial_setup: bool = False) -> SyncSummary | None:
    """Run one sync unless another one is already in progress."""
    if SYNC_LOCK.locked():
        logger.warning("Sync already in progress; skipping this run")
        return None
    async with SYNC_LOCK:
        return await run_sync(initial_setup=initial_setup)


async def background_sync_task(interval_seconds: int = SYNC_INTERVAL_SECONDS) -> None:
    """Background task that periodically syncs the club."""
    logger.info("Starting background sync task with interval: %ss", interval_seconds)

    while True:
        try:
            summary = await sync_once()
            if summary is not None and not summary.success:
                logger.warning("Sync finished with problems: %s", summary.message)
        except asyncio.CancelledError:
            logger.info("Background sync task cancelled")
            break
        except Exception as e:
            logger.error("Error in background task: %s", e, exc_info=True)

        # Wait for the next interval
        await asyncio.sleep(interval_seconds)


async def verify_club(club_tag: str, api_key: str | None, save: bool) -> int:
    """Check that the key can read the club; optionally store both in settings."""
    settings = await load_sync_settings()
    api_key = api_key or settings.api_key
    if not api_key:
        logger.error("No API key given and none configured")
        return 1
    tag = normalize_tag(club_tag)
    async with BrawlStarsAPI(api_key) as api:
        try:
            info = await api.verify_club(tag)
        except BrawlStarsAPIError as e:
            logger.error("Club verification failed: %s", e.message)
            return 1
    print(
        f"{info['club_name']} ({tag}): {info['member_count']} member(s), "
        f"required trophies {info['required_trophies']}"
    )
    if save:
        await set_settings(
            {
                "club_tag": tag,
                "api_key": api_key,
                "club_name": info["club_name"],
                "required_trophies": info["required_trophies"],
            }
        )
        logger.info("Saved club settings for %s", tag)
    return 0


async def print_report(kind: str, player_tag: str | None = None) -> int:
    now = datetime.now(timezone.utc)
    if kind == "weekly":
        print(format_weekly_report(await build_weekly_report(now)))
        return 0
    if kind == "member":
        tag = normalize_tag(player_tag)
        if not tag:
            logger.error("A player tag is required for the member report")
            return 1
        detail = await build_member_detail(tag, now)
        if detail is None:
            logger.error("Member %s not found", tag)
            return 1
        print(format_member_detail(detail))
        return 0
    boards = await build_leaderboards(now)
    print(format_leaderboard("Trophy leaders", boards["trophy_leaders"], lambda e: e["trophies"]))
    print()
    print(
        format_leaderboard(
            "Most battles this week",
            boards["weekly_battlers"],
            lambda e: e["weekly"].battles,
        )
    )
    print()
    print(
        format_leaderboard(
            "Best win rate this week",
            boards["weekly_win_rate"],
            lambda e: f"{e['weekly'].win_rate}%",
        )
    )
    return 0


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Brawl Stars club tracker.")
    subparsers = parser.add_subparsers(dest="command")

    run_parser = subparsers.add_parser("run", help="Sync on a fixed interval (default).")
    run_parser.add_argument("--interval", type=int, default=SYNC_INTERVAL_SECONDS)

    sync_parser = subparsers.add_parser("sync", help="Run a single sync.")
    sync_parser.add_argument(
        "--initial-setup",
        action="store_true",
        help="Record current members without announcing them as joins.",
    )

    verify_parser = subparsers.add_parser("verify", help="Verify club access.")
    verify_parser.add_argument("club_tag")
    verify_parser.add_argument("--api-key", default=None)
    verify_parser.add_argument("--save", action="store_true")

    report_parser = subparsers.add_parser("report", help="Print a report.")
    report_parser.add_argument(
        "kind",
        choices=("weekly", "leaderboard", "member"),
        nargs="?",
        default="weekly",
    )
    report_parser.add_argument(
        "player_tag", nargs="?", help="Player tag for the member report."
    )
    return parser.parse_args()


async def main() -> int:
    """Main function to run the tracker."""
    args = _parse_args()
    command = args.command or "run"

    await connect_db()
    logger.info("Connected to PostgreSQL")
    try:
        if command == "sync":
            summary = await sync_once(initial_setup=args.initial_setup)
            if summary is None:
                return 1
            print(summary.message)
            return 0 if summary.success else 1
        if command == "verify":
            return await verify_club(args.club_tag, args.api_key, args.save)
        if command == "report":
            return await print_report(args.kind, args.player_tag)

        sync_task = asyncio.create_task(
            background_sync_task(getattr(args, "interval", SYNC_INTERVAL_SECONDS))
        )
        try:
            await sync_task
        except asyncio.CancelledError:
            pass
        return 0
    finally:
        await close_db()
        logger.info("Cleanup complete")


def cli() -> None:
    raise SystemExit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
