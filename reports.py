"""Report builders: leaderboards, insights, trophy gains, battle feed, member detail
and weekly report.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Iterable, Mapping, Sequence

from battles import clock_skew_offset, parse_teams_json
from db import (
    get_activity_logs,
    get_battle_modes,
    get_battles,
    get_club_events,
    get_current_members,
    get_daily_stats,
    get_member,
    get_member_history,
    get_members,
    get_player_tracking,
)

LEADERBOARD_SIZE = 30
WEEKLY_WIN_RATE_MIN_BATTLES = 10
KICK_LIST_WINDOW_HOURS = 48
TREND_FLAT_BAND = 5
REPORT_TOP_MOVERS = 5
REPORT_RECENT_EVENTS = 10
FEED_MAX_LIMIT = 200
MEMBER_DETAIL_LOGS = 30
MEMBER_DETAIL_DAYS = 28


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _percent(part: int, whole: int) -> int:
    return round(part / whole * 100) if whole > 0 else 0


@dataclass(slots=True)
class PeriodTotals:
    battles: int = 0
    wins: int = 0
    losses: int = 0
    star_player: int = 0
    trophies_gained: int = 0
    trophies_lost: int = 0
    active_days: int = 0

    @property
    def win_rate(self) -> int:
        return _percent(self.wins, self.battles)

    @property
    def net_trophies(self) -> int:
        return self.trophies_gained - self.trophies_lost


@dataclass(slots=True)
class Streaks:
    current: int = 0
    best: int = 0
    peak_day_battles: int = 0


def summarize_daily_stats(
    rows: Iterable[Mapping[str, Any]], since: date | None = None
) -> dict[str, PeriodTotals]:
    """Sum daily stat rows per player, optionally only from ``since`` on."""
    totals: dict[str, PeriodTotals] = {}
    for row in rows:
        if since is not None and row["date"] < since:
            continue
        entry = totals.setdefault(row["player_tag"], PeriodTotals())
        battles = row.get("battles") or 0
        entry.battles += battles
        entry.wins += row.get("wins") or 0
        entry.losses += row.get("losses") or 0
        entry.star_player += row.get("star_player") or 0
        entry.trophies_gained += row.get("trophies_gained") or 0
        entry.trophies_lost += row.get("trophies_lost") or 0
        if battles > 0:
            entry.active_days += 1
    return totals


def compute_streaks(
    rows: Iterable[Mapping[str, Any]], today: date
) -> dict[str, Streaks]:
    """Consecutive active-day streaks per player.

    The current streak only counts if the last active day is today or
    yesterday.
    """
    active_days: dict[str, dict[date, int]] = {}
    for row in rows:
        battles = row.get("battles") or 0
        if battles > 0:
            days = active_days.setdefault(row["player_tag"], {})
            days[row["date"]] = days.get(row["date"], 0) + battles

    streaks: dict[str, Streaks] = {}
    for tag, days in active_days.items():
        ordered = sorted(days)
        best = run = 1
        for previous, current in zip(ordered, ordered[1:]):
            if (current - previous).days == 1:
                run += 1
            else:
                best = max(best, run)
                run = 1
        best = max(best, run)
        current_streak = run if (today - ordered[-1]).days <= 1 else 0
        streaks[tag] = Streaks(
            current=current_streak,
            best=best,
            peak_day_battles=max(days.values()),
        )
    return streaks


def rank_leaderboards(
    members: Sequence[Mapping[str, Any]],
    daily_rows: Sequence[Mapping[str, Any]],
    today: date,
    size: int = LEADERBOARD_SIZE,
) -> dict[str, list[dict[str, Any]]]:
    """Leaderboard categories over current members."""
    weekly = summarize_daily_stats(daily_rows, since=today - timedelta(days=7))
    all_time = summarize_daily_stats(daily_rows)
    streaks = compute_streaks(daily_rows, today)

    entries = []
    for member in members:
        tag = member["player_tag"]
        entries.append(
            {
                "tag": tag,
                "name": member.get("player_name"),
                "role": member.get("role"),
                "trophies": member.get("trophies") or 0,
                "total_victories": (member.get("solo_victories") or 0)
                + (member.get("duo_victories") or 0)
                + (member.get("trio_victories") or 0),
                "weekly": weekly.get(tag, PeriodTotals()),
                "all_time": all_time.get(tag, PeriodTotals()),
                "streaks": streaks.get(tag, Streaks()),
            }
        )

    def top(candidates, key):
        return sorted(candidates, key=key, reverse=True)[:size]

    return {
        "trophy_leaders": top(entries, lambda e: e["trophies"]),
        "weekly_battlers": top(
            [e for e in entries if e["weekly"].battles > 0],
            lambda e: e["weekly"].battles,
        ),
        "weekly_win_rate": top(
            [e for e in entries if e["weekly"].battles >= WEEKLY_WIN_RATE_MIN_BATTLES],
            lambda e: e["weekly"].win_rate,
        ),
        "weekly_trophy_gainers": top(
            [e for e in entries if e["weekly"].net_trophies != 0],
            lambda e: e["weekly"].net_trophies,
        ),
        "weekly_star_players": top(
            [e for e in entries if e["weekly"].star_player > 0],
            lambda e: e["weekly"].star_player,
        ),
        "most_active": top(
            [e for e in entries if e["all_time"].active_days > 0],
            lambda e: (e["all_time"].active_days, e["streaks"].current),
        ),
        "all_time_battlers": top(
            [e for e in entries if e["all_time"].battles > 0],
            lambda e: e["all_time"].battles,
        ),
    }


def compute_insights(
    members: Sequence[Mapping[str, Any]],
    this_week: Sequence[Mapping[str, Any]],
    previous_week: Sequence[Mapping[str, Any]],
    recent_battle_tags: set[str],
) -> dict[str, Any]:
    total_battles = sum(row.get("battles") or 0 for row in this_week)
    total_wins = sum(row.get("wins") or 0 for row in this_week)
    previous_total = sum(row.get("battles") or 0 for row in previous_week)

    if previous_total > 0:
        trend = round((total_battles - previous_total) / previous_total * 100)
    else:
        trend = 100 if total_battles > 0 else 0
    if trend > TREND_FLAT_BAND:
        direction = "up"
    elif trend < -TREND_FLAT_BAND:
        direction = "down"
    else:
        direction = "flat"

    names = {m["player_tag"]: m.get("player_name") for m in members}
    kick_list = sorted(
        (
            {"tag": tag, "name": name or tag}
            for tag, name in names.items()
            if tag not in recent_battle_tags
        ),
        key=lambda item: item["name"].lower(),
    )

    gains: dict[str, int] = {}
    for row in this_week:
        gains[row["player_tag"]] = gains.get(row["player_tag"], 0) + (
            row.get("trophies_gained") or 0
        )
    mvp_tag = None
    mvp_trophies = 0
    for tag, gained in gains.items():
        if gained > mvp_trophies:
            mvp_tag, mvp_trophies = tag, gained

    return {
        "win_rate": _percent(total_wins, total_battles),
        "total_wins": total_wins,
        "total_battles": total_battles,
        "kick_list": kick_list,
        "this_week_total": total_battles,
        "previous_week_total": previous_total,
        "trend_percent": trend,
        "trend_direction": direction,
        "mvp_name": (names.get(mvp_tag) or mvp_tag) if mvp_tag else None,
        "mvp_trophies": mvp_trophies,
    }


def compute_trophy_gains(
    current_trophies: int,
    logs: Sequence[Mapping[str, Any]],
    now: datetime,
) -> tuple[int | None, int | None]:
    """(24h gain, 7d gain) for one player from their ascending activity logs.

    The 24h baseline is the first log of the current UTC day. The 7d
    baseline is the latest log at or before seven days before midnight,
    falling back to the oldest log.
    """
    if not logs:
        return None, None
    midnight = datetime.combine(now.date(), time.min, tzinfo=timezone.utc)
    week_ago = midnight - timedelta(days=7)

    today_logs = [log for log in logs if log["recorded_at"] >= midnight]
    gain_24h = current_trophies - today_logs[0]["trophies"] if today_logs else None

    older = [log for log in logs if log["recorded_at"] <= week_ago]
    baseline = older[-1] if older else logs[0]
    return gain_24h, current_trophies - baseline["trophies"]


def _feed_player(player: Mapping[str, Any], names: Mapping[str, str]) -> dict[str, Any]:
    return {
        "tag": player.get("tag"),
        "name": names.get(player.get("tag")) or player.get("name"),
        "brawler": player.get("brawler"),
        "power": player.get("power"),
    }


def group_battle_feed(
    battles: Sequence[Mapping[str, Any]],
    names: Mapping[str, str],
    now: datetime,
) -> list[dict[str, Any]]:
    """Group club members' battle rows into matches, newest first.

    Rows with the same time, mode and map are one match. The team holding
    a club member is ``our_team``; every other team is flattened into
    ``their_team``.
    """
    matches: dict[tuple, dict[str, Any]] = {}
    for battle in battles:
        key = (battle["battle_time"], battle.get("mode"), battle.get("map"))
        match = matches.get(key)
        if match is None:
            match = {
                "battle_time": battle["battle_time"],
                "mode": battle.get("mode") or "unknown",
                "map": battle.get("map") or "unknown",
                "club_players": [],
                "teams": None,
            }
            matches[key] = match
        if match["teams"] is None:
            match["teams"] = parse_teams_json(battle.get("teams_json"))
        if any(p["tag"] == battle["player_tag"] for p in match["club_players"]):
            continue
        match["club_players"].append(
            {
                "tag": battle["player_tag"],
                "name": names.get(battle["player_tag"]) or battle["player_tag"],
                "brawler": battle.get("brawler_name"),
                "power": battle.get("brawler_power"),
                "result": battle.get("result") or "unknown",
                "trophy_change": battle.get("trophy_change") or 0,
                "is_star_player": bool(battle.get("is_star_player")),
            }
        )

    feed = []
    for match in matches.values():
        our_team: list[dict[str, Any]] = []
        their_team: list[dict[str, Any]] = []
        teams = match.pop("teams") or []
        if len(teams) >= 2:
            club_tags = {p["tag"] for p in match["club_players"]} | set(names)
            ours = next(
                (
                    index
                    for index, team in enumerate(teams)
                    if any(isinstance(p, dict) and p.get("tag") in club_tags for p in team)
                ),
                None,
            )
            if ours is not None:
                for index, team in enumerate(teams):
                    players = [p for p in team if isinstance(p, dict)]
                    if index == ours:
                        our_team = [_feed_player(p, names) for p in players]
                    else:
                        their_team.extend(_feed_player(p, {}) for p in players)
        match["our_team"] = our_team or None
        match["their_team"] = their_team or None
        feed.append(match)

    offset = clock_skew_offset((m["battle_time"] for m in feed), now)
    if offset:
        for match in feed:
            match["battle_time"] -= offset
    feed.sort(key=lambda m: m["battle_time"], reverse=True)
    return feed


def compute_weekly_report(
    members: Sequence[Mapping[str, Any]],
    activity_logs: Sequence[Mapping[str, Any]],
    events: Sequence[Mapping[str, Any]],
    now: datetime,
) -> dict[str, Any]:
    total_members = len(members)
    total_trophies = sum(m.get("trophies") or 0 for m in members)
    active_count = sum(1 for m in members if m.get("is_active"))
    names = {m["player_tag"]: m.get("player_name") for m in members}

    changes: dict[str, int] = {}
    per_day: dict[date, dict[str, int]] = {}
    for log in activity_logs:
        tag = log["player_tag"]
        changes[tag] = changes.get(tag, 0) + (log.get("trophy_change") or 0)
        per_day.setdefault(log["recorded_at"].date(), {})[tag] = log["trophies"]

    def mover(tag: str, change: int) -> dict[str, Any]:
        return {"tag": tag, "name": names.get(tag) or "Unknown", "trophy_change": change}

    gainers = sorted(
        (mover(t, c) for t, c in changes.items() if c > 0),
        key=lambda m: m["trophy_change"],
        reverse=True,
    )[:REPORT_TOP_MOVERS]
    losers = sorted(
        (mover(t, c) for t, c in changes.items() if c < 0),
        key=lambda m: m["trophy_change"],
    )[:REPORT_TOP_MOVERS]

    trend = {day: sum(values.values()) for day, values in per_day.items()}
    if now.date() not in trend and members:
        trend[now.date()] = total_trophies

    return {
        "generated_at": now,
        "period_start": now - timedelta(days=7),
        "period_end": now,
        "total_members": total_members,
        "total_trophies": total_trophies,
        "average_trophies": round(total_trophies / total_members) if total_members else 0,
        "active_members": active_count,
        "activity_rate": _percent(active_count, total_members),
        "top_gainers": gainers,
        "top_losers": losers,
        "recent_events": list(events[:REPORT_RECENT_EVENTS]),
        "trophy_trend": sorted(trend.items()),
    }


def compute_member_detail(
    member: Mapping[str, Any],
    activity_logs: Sequence[Mapping[str, Any]],
    history: Mapping[str, Any] | None,
    daily_rows: Sequence[Mapping[str, Any]],
    tracking: Mapping[str, Any] | None,
    now: datetime,
) -> dict[str, Any]:
    """Everything stored about one member.

    ``activity_logs`` are ascending; the detail keeps the newest
    MEMBER_DETAIL_LOGS of them, newest first. ``daily_rows`` are the
    member's daily stats for the detail period.
    """
    tag = member["player_tag"]
    totals = summarize_daily_stats(daily_rows).get(tag, PeriodTotals())
    streaks = compute_streaks(daily_rows, now.date()).get(tag, Streaks())
    gain_24h, gain_7d = compute_trophy_gains(
        member.get("trophies") or 0, activity_logs, now
    )
    return {
        "member": dict(member),
        "history": dict(history) if history else None,
        "activity_history": [
            dict(log) for log in reversed(activity_logs[-MEMBER_DETAIL_LOGS:])
        ],
        "daily_stats": [dict(row) for row in daily_rows],
        "totals": totals,
        "streaks": streaks,
        "average_battles_per_active_day": (
            round(totals.battles / totals.active_days, 1) if totals.active_days else 0
        ),
        "trophies_24h": gain_24h,
        "trophies_7d": gain_7d,
        "power_ups": (tracking or {}).get("power_ups") or 0,
        "unlocks": (tracking or {}).get("unlocks") or 0,
        "tracking_started": (tracking or {}).get("tracking_started"),
    }


async def build_leaderboards(now: datetime | None = None) -> dict[str, list[dict[str, Any]]]:
    now = now or _utc_now()
    members = await get_current_members()
    daily_rows = await get_daily_stats()
    return rank_leaderboards(members, daily_rows, now.date())


async def build_insights(now: datetime | None = None) -> dict[str, Any]:
    now = now or _utc_now()
    today = now.date()
    members = await get_current_members()
    this_week = await get_daily_stats(since=today - timedelta(days=7))
    previous_week = await get_daily_stats(
        since=today - timedelta(days=14), until=today - timedelta(days=7)
    )
    recent, _ = await get_battles(
        since=now - timedelta(hours=KICK_LIST_WINDOW_HOURS), limit=10_000
    )
    return compute_insights(
        members, this_week, previous_week, {b["player_tag"] for b in recent}
    )


async def build_member_gains(now: datetime | None = None) -> list[dict[str, Any]]:
    """Current members with their 24h and 7d trophy gains."""
    now = now or _utc_now()
    members = await get_current_members()
    logs_by_tag: dict[str, list[dict[str, Any]]] = {}
    for log in await get_activity_logs():
        logs_by_tag.setdefault(log["player_tag"], []).append(log)
    result = []
    for member in members:
        gain_24h, gain_7d = compute_trophy_gains(
            member.get("trophies") or 0, logs_by_tag.get(member["player_tag"], []), now
        )
        result.append({**member, "trophies_24h": gain_24h, "trophies_7d": gain_7d})
    return result


async def build_battle_feed(
    *,
    limit: int = 50,
    offset: int = 0,
    mode: str | None = None,
    player_tag: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    now = now or _utc_now()
    members = await get_members()
    names = {tag: row.get("player_name") for tag, row in members.items()}
    battles, total = await get_battles(
        mode=mode,
        player_tag=player_tag,
        limit=min(max(limit, 1), FEED_MAX_LIMIT),
        offset=max(offset, 0),
    )
    return {
        "matches": group_battle_feed(battles, names, now),
        "total": total,
        "modes": await get_battle_modes(),
    }


async def build_weekly_report(now: datetime | None = None) -> dict[str, Any]:
    now = now or _utc_now()
    week_ago = now - timedelta(days=7)
    members = await get_current_members()
    logs = await get_activity_logs(since=week_ago)
    events = await get_club_events(since=week_ago, limit=None)
    return compute_weekly_report(members, logs, events, now)


async def build_member_detail(
    player_tag: str, now: datetime | None = None
) -> dict[str, Any] | None:
    """Detail for one member, or None if the tag was never stored."""
    now = now or _utc_now()
    member = await get_member(player_tag)
    if member is None:
        return None
    logs = await get_activity_logs(player_tag=player_tag)
    history = await get_member_history(player_tag)
    daily_rows = await get_daily_stats(
        since=now.date() - timedelta(days=MEMBER_DETAIL_DAYS), player_tag=player_tag
    )
    tracking = await get_player_tracking(player_tag)
    return compute_member_detail(member, logs, history, daily_rows, tracking, now)


def _signed(value: int) -> str:
    return f"+{value}" if value > 0 else str(value)


def format_weekly_report(report: Mapping[str, Any]) -> str:
    lines = [
        f"Weekly Report - {report['period_start']:%Y-%m-%d} to {report['period_end']:%Y-%m-%d}",
        "",
        f"Members: {report['total_members']} "
        f"(active {report['active_members']}, {report['activity_rate']}%)",
        f"Trophies: {report['total_trophies']} (avg {report['average_trophies']})",
        "",
        "Top gainers",
    ]
    for index, row in enumerate(report["top_gainers"], 1):
        lines.append(f"{index}) {row['name']} {_signed(row['trophy_change'])}")
    if not report["top_gainers"]:
        lines.append("No data available.")
    lines += ["", "Biggest losses"]
    for index, row in enumerate(report["top_losers"], 1):
        lines.append(f"{index}) {row['name']} {_signed(row['trophy_change'])}")
    if not report["top_losers"]:
        lines.append("No data available.")
    if report["recent_events"]:
        lines += ["", "Recent events"]
        for event in report["recent_events"]:
            lines.append(
                f"- {event['event_time']:%Y-%m-%d %H:%M} {event['event_type']}: "
                f"{event['player_name']}"
            )
    return "\n".join(lines)


def format_leaderboard(title: str, entries: Iterable[Mapping[str, Any]], value) -> str:
    lines = [title]
    for index, entry in enumerate(entries, 1):
        lines.append(f"{index}) {entry['name']} - {value(entry)}")
    if len(lines) == 1:
        lines.append("No data available.")
    return "\n".join(lines)


def format_member_detail(detail: Mapping[str, Any]) -> str:
    member = detail["member"]
    totals = detail["totals"]
    lines = [
        f"{member.get('player_name')} ({member['player_tag']}) - "
        f"{member.get('role') or 'member'}",
        f"Trophies: {member.get('trophies') or 0} "
        f"(highest {member.get('highest_trophies') or 0})",
        f"Rank: {member.get('rank_current') or 'Unranked'} "
        f"(best {member.get('rank_highest') or 'Unranked'})",
    ]
    gains = []
    if detail["trophies_24h"] is not None:
        gains.append(f"24h {_signed(detail['trophies_24h'])}")
    if detail["trophies_7d"] is not None:
        gains.append(f"7d {_signed(detail['trophies_7d'])}")
    if gains:
        lines.append("Gains: " + ", ".join(gains))

    history = detail["history"]
    if history:
        lines.append(
            f"Member since {history['first_seen']:%Y-%m-%d}, "
            f"joined {history['times_joined']}x, left {history['times_left']}x"
        )
        if history.get("notes"):
            lines.append(f"Notes: {history['notes']}")

    lines += [
        "",
        f"Last {MEMBER_DETAIL_DAYS} days",
        f"Battles: {totals.battles} ({totals.wins}W/{totals.losses}L, "
        f"{totals.win_rate}% win rate)",
        f"Star player: {totals.star_player}",
        f"Trophies: {_signed(totals.net_trophies)}",
        f"Active days: {totals.active_days} "
        f"(avg {detail['average_battles_per_active_day']} battles)",
        f"Streak: {detail['streaks'].current} (best {detail['streaks'].best})",
        f"Power-ups: {detail['power_ups']}, unlocks: {detail['unlocks']}",
        "",
        "Recent activity",
    ]
    for log in detail["activity_history"]:
        lines.append(
            f"- {log['recorded_at']:%Y-%m-%d %H:%M} {log['trophies']} "
            f"({_signed(log.get('trophy_change') or 0)}) {log.get('activity_type')}"
        )
    if not detail["activity_history"]:
        lines.append("No data available.")
    return "\n".join(lines)
