"""Club sync: fetch upstream state, reconcile it and persist the results.

A run is split into independent write groups (members, history, battles,
brawlers, notifications, maintenance). Each group commits in its own
transaction; a failing group is logged and counted while the others still
run, so a partial failure keeps whatever already committed.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable, Mapping

from sqlalchemy.ext.asyncio import AsyncSession

from battles import Battle, calculate_win_rate, correct_clock_skew, process_battle_log
from brawl_api import BrawlStarsAPI, BrawlStarsAPIError, RankedInfo
from brawler_tracker import build_snapshot_rows, compute_brawler_deltas
from config import (
    ACTIVITY_RETENTION_DAYS,
    BATTLE_RETENTION_DAYS,
    BRAWL_API_KEY,
    CLUB_TAG,
    DISCORD_WEBHOOK_URL,
    INACTIVITY_THRESHOLD_HOURS,
    MEMBER_BATCH_DELAY_SECONDS,
    MEMBER_BATCH_SIZE,
    NOTIFICATION_RETENTION_DAYS,
    NOTIFICATIONS_ENABLED,
    SNAPSHOT_RETENTION_DAYS,
)
from daily_stats import affected_days, aggregate_daily_stats
from db import (
    add_player_tracking,
    get_battles_for_days,
    get_club_events,
    get_latest_prior_snapshots,
    get_member_histories,
    get_members,
    get_recent_notifications,
    get_recently_active_tags,
    get_session,
    get_settings,
    get_snapshots_for_day,
    insert_activity_logs,
    insert_battles,
    insert_club_events,
    insert_notifications,
    mark_members_inactive,
    purge_old_data,
    replace_snapshots_for_day,
    set_settings,
    update_member_profiles,
    upsert_daily_stats,
    upsert_member_histories,
    upsert_members,
)
from membership import (
    HistoryRecord,
    MembershipEvent,
    RosterEntry,
    activity_window_start,
    classify_activity,
    parse_roster,
    reconcile_roster,
)
from notifications import (
    CLUB_EVENT_KINDS,
    build_event_notifications,
    build_inactive_notification,
    dedupe_within_batch,
    filter_recent_events,
    filter_recent_notifications,
    inactive_alert_due,
    recency_cutoff,
    send_webhook,
)
from tags import normalize_tag

logger = logging.getLogger(__name__)

SETTING_KEYS = (
    "club_tag",
    "club_name",
    "api_key",
    "discord_webhook",
    "notifications_enabled",
    "inactivity_threshold",
    "last_sync_time",
    "last_inactive_alert",
    "required_trophies",
)


class SyncAuthorizationError(Exception):
    """Raised when the upstream API rejects the key (HTTP 403)."""


@dataclass(slots=True)
class SyncSettings:
    club_tag: str | None
    api_key: str | None
    inactivity_threshold_hours: int = INACTIVITY_THRESHOLD_HOURS
    notifications_enabled: bool = NOTIFICATIONS_ENABLED
    webhook_url: str | None = None
    last_inactive_alert: str | None = None


@dataclass(slots=True)
class SyncSummary:
    success: bool
    synced: int = 0
    events: int = 0
    notifications: int = 0
    battles: int = 0
    errors: int = 0
    message: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "synced": self.synced,
            "events": self.events,
            "notifications": self.notifications,
            "battles": self.battles,
            "errors": self.errors,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(slots=True)
class MemberFetch:
    entry: RosterEntry
    player: dict[str, Any]
    ranked: RankedInfo
    battles: list[Battle]
    win_rate: int | None


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None or not value.strip():
        return default
    return value.strip().lower() in ("1", "true", "yes", "y", "on")


def _parse_int(value: str | None, default: int) -> int:
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning("Ignoring non-numeric setting value %r", value)
        return default


def settings_from_mapping(stored: Mapping[str, str]) -> SyncSettings:
    """Merge settings-table values over the environment fallbacks."""
    club_tag = stored.get("club_tag") or CLUB_TAG
    return SyncSettings(
        club_tag=normalize_tag(club_tag) if club_tag else None,
        api_key=stored.get("api_key") or BRAWL_API_KEY,
        inactivity_threshold_hours=_parse_int(
            stored.get("inactivity_threshold"), INACTIVITY_THRESHOLD_HOURS
        ),
        notifications_enabled=_parse_bool(
            stored.get("notifications_enabled"), NOTIFICATIONS_ENABLED
        ),
        webhook_url=stored.get("discord_webhook") or DISCORD_WEBHOOK_URL,
        last_inactive_alert=stored.get("last_inactive_alert"),
    )


async def load_sync_settings(session: AsyncSession | None = None) -> SyncSettings:
    stored = await get_settings(SETTING_KEYS, session=session)
    return settings_from_mapping(stored)


async def fetch_member(api: BrawlStarsAPI, entry: RosterEntry, now: datetime) -> MemberFetch:
    """Profile, ranked info and battle log for one member, fetched concurrently.

    Every request is awaited before any failure is raised; a rejected key
    takes precedence over other errors.
    """
    results = await asyncio.gather(
        api.get_player(entry.tag),
        api.get_ranked_info(entry.tag),
        api.get_battle_log(entry.tag),
        return_exceptions=True,
    )
    failures = [result for result in results if isinstance(result, BaseException)]
    for failure in failures:
        if isinstance(failure, BrawlStarsAPIError) and failure.is_forbidden:
            raise failure
    if failures:
        raise failures[0]
    player, ranked, battle_log = results
    battles = correct_clock_skew(process_battle_log(entry.tag, battle_log), now)
    return MemberFetch(
        entry=entry,
        player=player,
        ranked=ranked,
        battles=battles,
        win_rate=calculate_win_rate(battles),
    )


async def fetch_members(
    api: BrawlStarsAPI,
    roster: list[RosterEntry],
    now: datetime,
    *,
    batch_size: int = MEMBER_BATCH_SIZE,
    batch_delay: float = MEMBER_BATCH_DELAY_SECONDS,
) -> tuple[list[MemberFetch], list[str]]:
    """Fetch members in fixed-size batches; returns (fetched, failed tags).

    A failing member is skipped and picked up again on the next run. An
    authorization failure aborts the whole run.
    """
    fetched: list[MemberFetch] = []
    failed: list[str] = []
    batch_size = max(batch_size, 1)
    for start in range(0, len(roster), batch_size):
        if start > 0 and batch_delay > 0:
            await asyncio.sleep(batch_delay)
        batch = roster[start : start + batch_size]
        results = await asyncio.gather(
            *(fetch_member(api, entry, now) for entry in batch),
            return_exceptions=True,
        )
        for entry, result in zip(batch, results):
            if isinstance(result, BrawlStarsAPIError) and result.is_forbidden:
                raise SyncAuthorizationError(result.message) from result
            if isinstance(result, Exception):
                logger.warning("Failed to fetch member %s: %s", entry.tag, result)
                failed.append(entry.tag)
                continue
            if isinstance(result, BaseException):
                raise result
            fetched.append(result)
    return fetched, failed


def build_member_updates(
    fetched: Iterable[MemberFetch],
    stored_members: Mapping[str, Mapping[str, Any]],
    recently_active: set[str],
    now: datetime,
) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
    """Member rows to upsert and activity log rows to insert."""
    member_rows: list[dict[str, Any]] = []
    activity_rows: list[dict[str, Any]] = []
    for item in fetched:
        entry = item.entry
        player = item.player
        trophies = int(player.get("trophies") or 0)
        stored = stored_members.get(entry.tag)
        trophy_change = trophies - int(stored.get("trophies") or 0) if stored else 0
        assessment = classify_activity(
            trophy_change, had_recent_activity=entry.tag in recently_active
        )
        member_rows.append(
            {
                "player_tag": entry.tag,
                "player_name": entry.name,
                "role": entry.role or "member",
                "trophies": trophies,
                "highest_trophies": int(player.get("highestTrophies") or 0),
                "exp_level": int(player.get("expLevel") or 1),
                "rank_current": item.ranked.current_rank,
                "rank_highest": item.ranked.highest_rank,
                "win_rate": item.win_rate,
                "brawlers_count": len(player.get("brawlers") or []),
                "solo_victories": int(player.get("soloVictories") or 0),
                "duo_victories": int(player.get("duoVictories") or 0),
                "trio_victories": int(player.get("3vs3Victories") or 0),
                "is_active": assessment.is_active,
                "last_updated": now,
            }
        )
        activity_rows.append(
            {
                "player_tag": entry.tag,
                "trophies": trophies,
                "trophy_change": trophy_change,
                "activity_type": assessment.activity_type,
                "recorded_at": now,
            }
        )
    return member_rows, activity_rows


def profile_updates(
    roster: Iterable[RosterEntry], fetched_tags: set[str]
) -> list[dict[str, Any]]:
    """Name and role rows for rostered members whose profile fetch failed."""
    return [
        {"player_tag": entry.tag, "player_name": entry.name, "role": entry.role}
        for entry in roster
        if entry.tag not in fetched_tags
    ]


def inactive_member_names(
    member_rows: Iterable[Mapping[str, Any]],
    stored_members: Mapping[str, Mapping[str, Any]],
    *,
    initial_setup: bool = False,
) -> list[str]:
    """Names for the inactivity alert.

    Members seen for the first time have no trophy baseline yet, so they
    are left out; the first sync of a club alerts nobody.
    """
    if initial_setup:
        return []
    return [
        row["player_name"]
        for row in member_rows
        if not row["is_active"] and row["player_tag"] in stored_members
    ]


def event_rows(events: Iterable[MembershipEvent], now: datetime) -> list[dict[str, Any]]:
    return [
        {
            "event_type": event.kind,
            "player_tag": event.player_tag,
            "player_name": event.player_name,
            "event_time": now,
        }
        for event in events
        if event.kind in CLUB_EVENT_KINDS
    ]


async def _run_write_group(
    name: str,
    operation: Callable[[AsyncSession], Awaitable[Any]],
    errors: list[str],
) -> Any:
    """Run one write group in its own transaction; failures are recorded, not raised."""
    try:
        async with get_session() as session:
            try:
                result = await operation(session)
                await session.commit()
                return result
            except Exception:
                await session.rollback()
                raise
    except Exception as e:
        logger.error(
            "Write group %s failed: %s",
            name,
            e,
            exc_info=logger.isEnabledFor(logging.DEBUG),
        )
        errors.append(name)
        return None


async def sync_club(
    api: BrawlStarsAPI,
    settings: SyncSettings,
    *,
    now: datetime | None = None,
    initial_setup: bool = False,
) -> SyncSummary:
    """One full sync of the configured club.

    Raises SyncAuthorizationError when the upstream rejects the key and
    BrawlStarsAPIError when the club itself cannot be fetched.
    """
    now = now or datetime.now(timezone.utc)
    errors: list[str] = []

    try:
        club = await api.get_club(settings.club_tag)
    except BrawlStarsAPIError as e:
        if e.is_forbidden:
            raise SyncAuthorizationError(e.message) from e
        raise
    roster = parse_roster(club)
    logger.info(
        "Syncing club %s (%s) with %s member(s)",
        club.get("name"),
        settings.club_tag,
        len(roster),
    )

    stored_members = await get_members()
    histories = {
        row["player_tag"]: HistoryRecord.from_row(row)
        for row in await get_member_histories()
    }
    recently_active = await get_recently_active_tags(
        activity_window_start(now, settings.inactivity_threshold_hours)
    )

    fetched, failed = await fetch_members(api, roster, now)
    if failed:
        logger.warning("%s member(s) failed to fetch: %s", len(failed), ", ".join(failed))

    reconciled = reconcile_roster(
        roster, histories, stored_members, now, initial_setup=initial_setup
    )
    member_rows, activity_rows = build_member_updates(
        fetched, stored_members, recently_active, now
    )
    stale_profiles = profile_updates(roster, {item.entry.tag for item in fetched})

    async def write_members(session: AsyncSession) -> None:
        await upsert_members(member_rows, session=session)
        await update_member_profiles(stale_profiles, session=session)
        await insert_activity_logs(activity_rows, session=session)

    await _run_write_group("members", write_members, errors)

    async def write_history(session: AsyncSession) -> list[MembershipEvent]:
        recent_events = await get_club_events(
            since=recency_cutoff(now), limit=None, session=session
        )
        events = filter_recent_events(reconciled.events, recent_events)
        await upsert_member_histories(
            [history.to_row() for history in reconciled.histories], session=session
        )
        await insert_club_events(event_rows(events, now), session=session)
        await mark_members_inactive(
            [history.player_tag for history in reconciled.departed], session=session
        )
        return events

    recorded_events = await _run_write_group("history", write_history, errors) or []

    all_battles = [battle for item in fetched for battle in item.battles]

    async def write_battles(session: AsyncSession) -> int:
        inserted = await insert_battles(
            [battle.to_row() for battle in all_battles], session=session
        )
        stored = await get_battles_for_days(affected_days(all_battles), session=session)
        await upsert_daily_stats(
            [row.to_row() for row in aggregate_daily_stats(stored)], session=session
        )
        return inserted

    inserted_battles = 0
    if all_battles:
        inserted_battles = await _run_write_group("battles", write_battles, errors) or 0

    snapshots = {
        item.entry.tag: build_snapshot_rows(item.entry.tag, item.player.get("brawlers"))
        for item in fetched
    }

    async def write_brawlers(session: AsyncSession) -> None:
        today = now.date()
        tags = list(snapshots)
        prior = await get_latest_prior_snapshots(tags, today, session=session)
        already_today = await get_snapshots_for_day(tags, today, session=session)
        deltas = compute_brawler_deltas(snapshots, prior, already_today)
        await replace_snapshots_for_day(
            tags,
            today,
            [row for rows in snapshots.values() for row in rows],
            session=session,
        )
        await add_player_tracking(
            {
                tag: (delta.power_ups, delta.unlocks)
                for tag, delta in deltas.items()
                if delta.is_positive
            },
            now,
            session=session,
        )

    if snapshots:
        await _run_write_group("brawlers", write_brawlers, errors)

    notified = 0
    if settings.notifications_enabled:
        inactive_names = inactive_member_names(
            member_rows, stored_members, initial_setup=reconciled.initial_setup
        )
        notified = await _notify(settings, recorded_events, inactive_names, now, errors)

    async def write_maintenance(session: AsyncSession) -> None:
        await purge_old_data(
            now,
            activity_days=ACTIVITY_RETENTION_DAYS,
            battle_days=BATTLE_RETENTION_DAYS,
            snapshot_days=SNAPSHOT_RETENTION_DAYS,
            notification_days=NOTIFICATION_RETENTION_DAYS,
            session=session,
        )
        club_settings = {"last_sync_time": now.isoformat()}
        if club.get("name"):
            club_settings["club_name"] = club["name"]
        if club.get("requiredTrophies") is not None:
            club_settings["required_trophies"] = club["requiredTrophies"]
        await set_settings(club_settings, session=session)

    await _run_write_group("maintenance", write_maintenance, errors)

    summary = SyncSummary(
        success=not errors,
        synced=len(member_rows),
        events=len(recorded_events),
        notifications=notified,
        battles=inserted_battles,
        errors=len(errors),
        message=(
            f"Synced {len(member_rows)} of {len(roster)} member(s)"
            + (f"; failed write groups: {', '.join(errors)}" if errors else "")
        ),
        timestamp=now,
    )
    logger.info(
        "Sync finished: %s synced, %s event(s), %s notification(s), %s new battle(s), %s error(s)",
        summary.synced,
        summary.events,
        summary.notifications,
        summary.battles,
        summary.errors,
    )
    return summary


async def _notify(
    settings: SyncSettings,
    events: list[MembershipEvent],
    inactive_names: list[str],
    now: datetime,
    errors: list[str],
) -> int:
    """Store new notifications, then push them to the webhook."""
    candidates = build_event_notifications(events)
    inactive_alert = None
    if inactive_names and inactive_alert_due(settings.last_inactive_alert, now):
        inactive_alert = build_inactive_notification(
            inactive_names, settings.inactivity_threshold_hours
        )
        if inactive_alert is not None:
            candidates.append(inactive_alert)
    candidates = dedupe_within_batch(candidates)
    if not candidates:
        return 0

    async def write_notifications(session: AsyncSession):
        recent = await get_recent_notifications(recency_cutoff(now), session=session)
        fresh = filter_recent_notifications(candidates, recent)
        rows = {c.identity: c.to_row(now) for c in fresh}
        inserted_keys = set(
            await insert_notifications(list(rows.values()), session=session)
        )
        if inactive_alert is not None and inactive_alert in fresh:
            await set_settings({"last_inactive_alert": now.isoformat()}, session=session)
        return [c for c in fresh if rows[c.identity]["dedupe_key"] in inserted_keys]

    stored = await _run_write_group("notifications", write_notifications, errors)
    if not stored:
        return 0
    await send_webhook(settings.webhook_url, stored)
    return len(stored)


async def run_sync(
    *,
    api: BrawlStarsAPI | None = None,
    now: datetime | None = None,
    initial_setup: bool = False,
) -> SyncSummary:
    """Entry point for callers: never raises for expected failures."""
    try:
        settings = await load_sync_settings()
    except Exception as e:
        logger.error("Failed to load settings: %s", e)
        return SyncSummary(success=False, errors=1, message=f"Failed to load settings: {e}")

    if not settings.club_tag or not settings.api_key:
        message = "Club tag and API key are required. Configure them in settings or .env."
        logger.error(message)
        return SyncSummary(success=False, message=message)

    own_api = api is None
    if own_api:
        api = BrawlStarsAPI(settings.api_key)
    try:
        return await sync_club(api, settings, now=now, initial_setup=initial_setup)
    except SyncAuthorizationError as e:
        logger.error("Sync aborted, API key rejected: %s", e)
        return SyncSummary(success=False, errors=1, message=str(e))
    except BrawlStarsAPIError as e:
        logger.error("Sync aborted, club fetch failed: %s", e)
        return SyncSummary(success=False, errors=1, message=e.message)
    finally:
        if own_api:
            await api.close()
