"""Battle log parsing and normalization."""

import json
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable

from tags import normalize_tag, tags_match

logger = logging.getLogger(__name__)

RESULT_VICTORY = "victory"
RESULT_DEFEAT = "defeat"
RESULT_DRAW = "draw"
RESULT_UNKNOWN = "unknown"

# Placement modes (showdown) report a rank; top 4 counts as a win.
PLACEMENT_WIN_MAX_RANK = 4

CLOCK_SKEW_TOLERANCE = timedelta(seconds=60)


@dataclass(slots=True)
class Battle:
    player_tag: str
    battle_time: datetime
    mode: str | None
    map: str | None
    battle_type: str | None
    result: str
    trophy_change: int
    is_star_player: bool
    brawler_name: str | None
    brawler_power: int | None
    brawler_trophies: int | None
    duration: int | None
    teams_json: str | None

    @property
    def key(self) -> tuple[str, datetime]:
        return (self.player_tag, self.battle_time)

    def to_row(self) -> dict[str, Any]:
        return {
            "player_tag": self.player_tag,
            "battle_time": self.battle_time,
            "mode": self.mode,
            "map": self.map,
            "battle_type": self.battle_type,
            "result": self.result,
            "trophy_change": self.trophy_change,
            "is_star_player": self.is_star_player,
            "brawler_name": self.brawler_name,
            "brawler_power": self.brawler_power,
            "brawler_trophies": self.brawler_trophies,
            "duration": self.duration,
            "teams_json": self.teams_json,
        }


def decode_battle_time(raw: str | None) -> str | None:
    """Turn ``20260127T203456.000Z`` into ``2026-01-27T20:34:56.000Z``.

    The upstream value looks like ISO-8601 but is not; it has to be sliced
    by position.
    """
    if not raw or len(raw) < 15 or raw[8] != "T":
        return None
    year, month, day = raw[0:4], raw[4:6], raw[6:8]
    hour, minute, second = raw[9:11], raw[11:13], raw[13:15]
    if not all(part.isdigit() for part in (year, month, day, hour, minute, second)):
        return None
    return f"{year}-{month}-{day}T{hour}:{minute}:{second}.000Z"


def parse_battle_time(raw: str | None) -> datetime | None:
    iso = decode_battle_time(raw)
    if iso is None:
        return None
    try:
        return datetime.strptime(iso, "%Y-%m-%dT%H:%M:%S.000Z").replace(
            tzinfo=timezone.utc
        )
    except ValueError:
        return None


def infer_result(battle: dict[str, Any]) -> str:
    result = battle.get("result")
    if result:
        return str(result)
    rank = battle.get("rank")
    if rank is None:
        return RESULT_UNKNOWN
    try:
        rank = int(rank)
    except (TypeError, ValueError):
        return RESULT_UNKNOWN
    return RESULT_VICTORY if rank <= PLACEMENT_WIN_MAX_RANK else RESULT_DEFEAT


def _iter_players(battle: dict[str, Any]) -> Iterable[dict[str, Any]]:
    teams = battle.get("teams")
    if isinstance(teams, list):
        for team in teams:
            if isinstance(team, list):
                for player in team:
                    if isinstance(player, dict):
                        yield player
    players = battle.get("players")
    if isinstance(players, list):
        for player in players:
            if isinstance(player, dict):
                yield player


def _player_brawler(player: dict[str, Any]) -> dict[str, Any] | None:
    brawler = player.get("brawler")
    if isinstance(brawler, dict):
        return brawler
    brawlers = player.get("brawlers")
    if isinstance(brawlers, list) and brawlers and isinstance(brawlers[0], dict):
        return brawlers[0]
    return None


def find_player_brawler(
    battle: dict[str, Any], player_tag: str
) -> dict[str, Any] | None:
    for player in _iter_players(battle):
        if tags_match(player.get("tag"), player_tag):
            return _player_brawler(player)
    return None


def _simplify_player(player: dict[str, Any]) -> dict[str, Any] | None:
    tag = normalize_tag(player.get("tag"))
    if not tag:
        return None
    brawler = _player_brawler(player) or {}
    return {
        "tag": tag,
        "name": player.get("name") or tag,
        "brawler": brawler.get("name"),
        "power": brawler.get("power"),
        "trophies": brawler.get("trophies"),
    }


def serialize_teams(battle: dict[str, Any]) -> str | None:
    """Serialize the match roster; free-for-all players become solo teams."""
    try:
        teams: list[list[dict[str, Any]]] = []
        raw_teams = battle.get("teams")
        raw_players = battle.get("players")
        if isinstance(raw_teams, list) and raw_teams:
            for team in raw_teams:
                if not isinstance(team, list):
                    continue
                members = [_simplify_player(p) for p in team if isinstance(p, dict)]
                members = [m for m in members if m]
                if members:
                    teams.append(members)
        elif isinstance(raw_players, list) and raw_players:
            for player in raw_players:
                if not isinstance(player, dict):
                    continue
                simplified = _simplify_player(player)
                if simplified:
                    teams.append([simplified])
        if not teams:
            return None
        return json.dumps(teams, separators=(",", ":"))
    except (TypeError, ValueError, AttributeError) as e:
        logger.debug("Could not serialize battle roster: %s", e)
        return None


def parse_teams_json(value: Any) -> list[list[dict[str, Any]]] | None:
    if value is None:
        return None
    if isinstance(value, list):
        return value
    try:
        parsed = json.loads(value)
    except (TypeError, ValueError):
        return None
    return parsed if isinstance(parsed, list) else None


def _as_int(value: Any) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def normalize_battle(player_tag: str, item: dict[str, Any]) -> Battle | None:
    """Convert one raw battle-log item into a canonical Battle."""
    battle_time = parse_battle_time(item.get("battleTime"))
    if battle_time is None:
        return None
    owner = normalize_tag(player_tag)
    event = item.get("event") or {}
    battle = item.get("battle") or {}

    star_player = battle.get("starPlayer") or {}
    brawler = find_player_brawler(battle, owner) or {}

    return Battle(
        player_tag=owner,
        battle_time=battle_time,
        mode=event.get("mode") or battle.get("mode"),
        map=event.get("map"),
        battle_type=battle.get("type"),
        result=infer_result(battle),
        trophy_change=_as_int(battle.get("trophyChange")) or 0,
        is_star_player=tags_match(star_player.get("tag"), owner),
        brawler_name=brawler.get("name"),
        brawler_power=_as_int(brawler.get("power")),
        brawler_trophies=_as_int(brawler.get("trophies")),
        duration=_as_int(battle.get("duration")),
        teams_json=serialize_teams(battle),
    )


def process_battle_log(player_tag: str, items: Iterable[dict[str, Any]]) -> list[Battle]:
    battles: list[Battle] = []
    for item in items or []:
        if not isinstance(item, dict):
            continue
        battle = normalize_battle(player_tag, item)
        if battle is None:
            logger.debug(
                "Skipping battle with unreadable time for %s: %r",
                player_tag,
                item.get("battleTime"),
            )
            continue
        battles.append(battle)
    return battles


def calculate_win_rate(battles: Iterable[Battle]) -> int | None:
    """Percent of decided battles won, or None when nothing was decided."""
    wins = 0
    losses = 0
    for battle in battles:
        if battle.result == RESULT_VICTORY:
            wins += 1
        elif battle.result == RESULT_DEFEAT:
            losses += 1
    decided = wins + losses
    if decided == 0:
        return None
    return round(wins / decided * 100)


def clock_skew_offset(
    battle_times: Iterable[datetime], now: datetime
) -> timedelta:
    """Whole-hour offset to subtract when upstream times run in the future.

    Known workaround: the upstream clock is not always UTC. When the newest
    battle is more than a minute ahead of local time, the difference is
    rounded to the nearest whole hour (at least one), so a few seconds of
    extra drift never changes the offset.
    """
    latest = max(battle_times, default=None)
    if latest is None or latest <= now + CLOCK_SKEW_TOLERANCE:
        return timedelta(0)
    hours = max(1, round((latest - now).total_seconds() / 3600))
    return timedelta(hours=hours)


def correct_clock_skew(battles: list[Battle], now: datetime) -> list[Battle]:
    offset = clock_skew_offset((b.battle_time for b in battles), now)
    if not offset:
        return battles
    logger.warning(
        "Battle times are ahead of local time; shifting batch back by %s", offset
    )
    return [replace(b, battle_time=b.battle_time - offset) for b in battles]
