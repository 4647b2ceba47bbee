"""Per-player, per-day battle rollups."""

from dataclasses import asdict, dataclass
from datetime import date, datetime
from typing import Any, Iterable

from battles import RESULT_DEFEAT, RESULT_VICTORY


@dataclass(slots=True)
class DailyStatRow:
    player_tag: str
    date: date
    battles: int = 0
    wins: int = 0
    losses: int = 0
    star_player: int = 0
    trophies_gained: int = 0
    trophies_lost: int = 0

    def to_row(self) -> dict[str, Any]:
        return asdict(self)


def _field(battle: Any, name: str) -> Any:
    if isinstance(battle, dict):
        return battle.get(name)
    return getattr(battle, name, None)


def battle_day(battle_time: datetime) -> date:
    """Calendar day (UTC) a battle belongs to."""
    return battle_time.date()


def affected_days(battles: Iterable[Any]) -> set[tuple[str, date]]:
    return {
        (_field(b, "player_tag"), battle_day(_field(b, "battle_time")))
        for b in battles
    }


def aggregate_daily_stats(battles: Iterable[Any]) -> list[DailyStatRow]:
    """Fold battles into (player, day) rollups.

    Accepts Battle objects or stored battle rows. A battle seen twice
    (same player and time) is counted once.
    """
    seen: set[tuple[str, datetime]] = set()
    rows: dict[tuple[str, date], DailyStatRow] = {}

    for battle in battles:
        player_tag = _field(battle, "player_tag")
        battle_time = _field(battle, "battle_time")
        if not player_tag or battle_time is None:
            continue
        if (player_tag, battle_time) in seen:
            continue
        seen.add((player_tag, battle_time))

        day = battle_day(battle_time)
        row = rows.get((player_tag, day))
        if row is None:
            row = DailyStatRow(player_tag=player_tag, date=day)
            rows[(player_tag, day)] = row

        row.battles += 1
        result = _field(battle, "result")
        if result == RESULT_VICTORY:
            row.wins += 1
        elif result == RESULT_DEFEAT:
            row.losses += 1
        if _field(battle, "is_star_player"):
            row.star_player += 1
        trophy_change = _field(battle, "trophy_change") or 0
        if trophy_change > 0:
            row.trophies_gained += trophy_change
        elif trophy_change < 0:
            row.trophies_lost += abs(trophy_change)

    return sorted(rows.values(), key=lambda r: (r.player_tag, r.date))
