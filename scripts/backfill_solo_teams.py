"""Backfill missing rosters (teams_json) on solo showdown battles.

Dry run by default; pass --apply to write. Run from the repository root:

    python -m scripts.backfill_solo_teams --days 7 --apply
"""

import argparse
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Mapping

from battles import parse_battle_time, serialize_teams
from brawl_api import BrawlStarsAPI, BrawlStarsAPIError
from config import BRAWL_API_KEY
from db import (
    close_db,
    connect_db,
    get_battles_missing_teams,
    get_setting,
    set_battle_teams_json,
)

logger = logging.getLogger(__name__)

SOLO_SHOWDOWN = "soloShowdown"


def rosters_by_time(items: Iterable[Mapping[str, Any]]) -> dict[datetime, str]:
    """Serialized rosters of solo showdown battles keyed by battle time."""
    rosters: dict[datetime, str] = {}
    for item in items:
        event = item.get("event") or {}
        battle = item.get("battle") or {}
        if (event.get("mode") or battle.get("mode")) != SOLO_SHOWDOWN:
            continue
        battle_time = parse_battle_time(item.get("battleTime"))
        teams_json = serialize_teams(battle)
        if battle_time is not None and teams_json:
            rosters[battle_time] = teams_json
    return rosters


async def run_backfill(apply: bool, days: int, limit: int) -> dict[str, Any]:
    await connect_db()
    summary: dict[str, Any] = {
        "apply": apply,
        "days": days,
        "limit": limit,
        "candidates": 0,
        "matched": 0,
        "no_match": 0,
        "updated": 0,
    }
    try:
        since = datetime.now(timezone.utc) - timedelta(days=days)
        rows = await get_battles_missing_teams(SOLO_SHOWDOWN, since, limit=limit)
        summary["candidates"] = len(rows)
        if not rows:
            return summary

        api_key = await get_setting("api_key") or BRAWL_API_KEY
        if not api_key:
            raise ValueError("Missing Brawl Stars API key in settings(api_key) and BRAWL_API_KEY")

        per_tag: dict[str, dict[datetime, str]] = {}
        async with BrawlStarsAPI(api_key) as api:
            for tag in sorted({row["player_tag"] for row in rows}):
                try:
                    per_tag[tag] = rosters_by_time(await api.get_battle_log(tag))
                except BrawlStarsAPIError as e:
                    logger.warning("Could not fetch battle log for %s: %s", tag, e)
                    per_tag[tag] = {}

        for row in rows:
            teams_json = per_tag.get(row["player_tag"], {}).get(row["battle_time"])
            if not teams_json:
                summary["no_match"] += 1
                continue
            summary["matched"] += 1
            if apply and await set_battle_teams_json(row["id"], teams_json):
                summary["updated"] += 1
    finally:
        await close_db()
        logger.info(
            "Backfill %s: %s candidate(s), %s matched, %s without match, %s updated",
            "applied" if apply else "dry run",
            summary["candidates"],
            summary["matched"],
            summary["no_match"],
            summary["updated"],
        )
    return summary


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
    parser = argparse.ArgumentParser(
        description="Backfill rosters for solo showdown battles stored without one."
    )
    parser.add_argument("--apply", action="store_true", help="Write the updates.")
    parser.add_argument("--days", type=int, default=30)
    parser.add_argument("--limit", type=int, default=50)
    args = parser.parse_args()
    asyncio.run(run_backfill(args.apply, args.days, args.limit))


if __name__ == "__main__":
    main()
