"""Brawler power-up and unlock tracking from daily snapshots."""

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

from tags import normalize_tag

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class BrawlerDelta:
    power_ups: int = 0
    unlocks: int = 0

    @property
    def is_positive(self) -> bool:
        return self.power_ups > 0 or self.unlocks > 0


def build_snapshot_rows(
    player_tag: str, brawlers: Iterable[dict[str, Any]]
) -> list[dict[str, Any]]:
    """Map the upstream brawler list of one player to snapshot rows."""
    tag = normalize_tag(player_tag)
    rows: dict[int, dict[str, Any]] = {}
    for brawler in brawlers or []:
        brawler_id = brawler.get("id")
        if brawler_id is None:
            continue
        rows[int(brawler_id)] = {
            "player_tag": tag,
            "brawler_id": int(brawler_id),
            "brawler_name": brawler.get("name") or str(brawler_id),
            "power_level": int(brawler.get("power") or 0),
            "trophies": int(brawler.get("trophies") or 0),
            "highest_trophies": int(brawler.get("highestTrophies") or 0),
            "rank": int(brawler.get("rank") or 0),
            "gadgets_count": len(brawler.get("gadgets") or []),
            "star_powers_count": len(brawler.get("starPowers") or []),
            "gears_count": len(brawler.get("gears") or []),
        }
    return list(rows.values())


def _power_map(rows: Iterable[Mapping[str, Any]]) -> dict[int, int]:
    return {int(r["brawler_id"]): int(r.get("power_level") or 0) for r in rows}


def diff_snapshots(
    today: Iterable[Mapping[str, Any]], baseline: Iterable[Mapping[str, Any]]
) -> BrawlerDelta:
    """Power-ups and unlocks between a baseline set and today's set.

    Nothing counts as an unlock when the baseline is empty: a player seen
    for the first time has no history to compare against.
    """
    baseline_power = _power_map(baseline)
    delta = BrawlerDelta()
    for brawler_id, power in _power_map(today).items():
        previous = baseline_power.get(brawler_id)
        if previous is None:
            if baseline_power:
                delta.unlocks += 1
        elif power > previous:
            delta.power_ups += power - previous
    return delta


def compute_brawler_deltas(
    today: Mapping[str, list[Mapping[str, Any]]],
    prior: Mapping[str, list[Mapping[str, Any]]],
    already_today: Mapping[str, list[Mapping[str, Any]]] | None = None,
) -> dict[str, BrawlerDelta]:
    """Increments to add to each player's tracking accumulators.

    ``prior`` holds each player's most recent snapshot set captured before
    today. ``already_today`` holds rows an earlier run stored today; the
    changes they already account for were credited by that run and are
    subtracted here.
    """
    already_today = already_today or {}
    deltas: dict[str, BrawlerDelta] = {}
    for player_tag, rows in today.items():
        baseline = prior.get(player_tag) or []
        full = diff_snapshots(rows, baseline)
        stored_today = already_today.get(player_tag)
        if stored_today:
            credited = diff_snapshots(stored_today, baseline)
            full = BrawlerDelta(
                power_ups=max(full.power_ups - credited.power_ups, 0),
                unlocks=max(full.unlocks - credited.unlocks, 0),
            )
        deltas[player_tag] = full
    return deltas


def group_by_player(
    rows: Iterable[Mapping[str, Any]],
) -> dict[str, list[Mapping[str, Any]]]:
    grouped: dict[str, list[Mapping[str, Any]]] = {}
    for row in rows:
        grouped.setdefault(row["player_tag"], []).append(row)
    return grouped
