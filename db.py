"""Database module for PostgreSQL operations using SQLAlchemy async."""

from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta, timezone
import os
from typing import Any, AsyncIterator, Iterable, Mapping, Sequence

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    and_,
    delete,
    func,
    or_,
    select,
    update,
)
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

INSERT_CHUNK_SIZE = 500


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class Member(Base):
    __tablename__ = "members"
    __table_args__ = (Index("ix_members_trophies", "trophies"),)

    player_tag: Mapped[str] = mapped_column(String(20), primary_key=True)
    player_name: Mapped[str] = mapped_column(String(64), nullable=False)
    role: Mapped[str] = mapped_column(String(32), nullable=False, default="member")
    trophies: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    highest_trophies: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    exp_level: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    rank_current: Mapped[str | None] = mapped_column(String(32))
    rank_highest: Mapped[str | None] = mapped_column(String(32))
    win_rate: Mapped[int | None] = mapped_column(Integer)
    brawlers_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    solo_victories: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    duo_victories: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    trio_victories: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, nullable=False
    )


class MemberHistory(Base):
    __tablename__ = "member_history"
    __table_args__ = (
        Index("ix_member_history_current", "is_current_member"),
    )

    player_tag: Mapped[str] = mapped_column(String(20), primary_key=True)
    player_name: Mapped[str] = mapped_column(String(64), nullable=False)
    first_seen: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, nullable=False
    )
    last_seen: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, nullable=False
    )
    last_left_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    times_joined: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    times_left: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_current_member: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True
    )
    role_at_leave: Mapped[str | None] = mapped_column(String(32))
    trophies_at_leave: Mapped[int | None] = mapped_column(Integer)
    notes: Mapped[str | None] = mapped_column(Text)


class ActivityLog(Base):
    __tablename__ = "activity_log"
    __table_args__ = (
        Index("ix_activity_log_player", "player_tag"),
        Index("ix_activity_log_recorded_at", "recorded_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    player_tag: Mapped[str] = mapped_column(String(20), nullable=False)
    trophies: Mapped[int] = mapped_column(Integer, nullable=False)
    trophy_change: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    activity_type: Mapped[str] = mapped_column(
        String(16), nullable=False, default="inactive"
    )
    recorded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, nullable=False
    )


class ClubEvent(Base):
    __tablename__ = "club_events"
    __table_args__ = (
        Index("ix_club_events_event_time", "event_time"),
        Index("ix_club_events_type_player", "event_type", "player_tag"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    event_type: Mapped[str] = mapped_column(String(16), nullable=False)
    player_tag: Mapped[str] = mapped_column(String(20), nullable=False)
    player_name: Mapped[str] = mapped_column(String(64), nullable=False)
    event_time: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, nullable=False
    )


class BattleHistory(Base):
    __tablename__ = "battle_history"
    __table_args__ = (
        UniqueConstraint(
            "player_tag", "battle_time", name="uq_battle_history_player_time"
        ),
        Index("ix_battle_history_battle_time", "battle_time"),
        Index("ix_battle_history_mode", "mode"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    player_tag: Mapped[str] = mapped_column(String(20), nullable=False)
    battle_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    mode: Mapped[str | None] = mapped_column(String(64))
    map: Mapped[str | None] = mapped_column(String(128))
    battle_type: Mapped[str | None] = mapped_column(String(32))
    result: Mapped[str] = mapped_column(String(16), nullable=False, default="unknown")
    trophy_change: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_star_player: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    brawler_name: Mapped[str | None] = mapped_column(String(64))
    brawler_power: Mapped[int | None] = mapped_column(Integer)
    brawler_trophies: Mapped[int | None] = mapped_column(Integer)
    duration: Mapped[int | None] = mapped_column(Integer)
    teams_json: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, nullable=False
    )


class DailyStat(Base):
    __tablename__ = "daily_stats"
    __table_args__ = (
        UniqueConstraint("player_tag", "date", name="uq_daily_stats_player_date"),
        Index("ix_daily_stats_date", "date"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    player_tag: Mapped[str] = mapped_column(String(20), nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    battles: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    wins: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    losses: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    star_player: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    trophies_gained: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    trophies_lost: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, onupdate=_utc_now, nullable=False
    )


class BrawlerSnapshot(Base):
    __tablename__ = "brawler_snapshots"
    __table_args__ = (
        UniqueConstraint(
            "player_tag",
            "brawler_id",
            "captured_on",
            name="uq_brawler_snapshots_player_brawler_day",
        ),
        Index("ix_brawler_snapshots_player_day", "player_tag", "captured_on"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    player_tag: Mapped[str] = mapped_column(String(20), nullable=False)
    brawler_id: Mapped[int] = mapped_column(Integer, nullable=False)
    brawler_name: Mapped[str] = mapped_column(String(64), nullable=False)
    power_level: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    trophies: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    highest_trophies: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    rank: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    gadgets_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    star_powers_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    gears_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    captured_on: Mapped[date] = mapped_column(Date, nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, nullable=False
    )


class PlayerTracking(Base):
    __tablename__ = "player_tracking"

    player_tag: Mapped[str] = mapped_column(String(20), primary_key=True)
    power_ups: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unlocks: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    tracking_started: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, nullable=False
    )
    last_updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, nullable=False
    )


class Notification(Base):
    __tablename__ = "notifications"
    __table_args__ = (
        UniqueConstraint("dedupe_key", name="uq_notifications_dedupe_key"),
        Index("ix_notifications_created_at", "created_at"),
        Index("ix_notifications_is_read", "is_read"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    notification_type: Mapped[str] = mapped_column(String(32), nullable=False)
    title: Mapped[str] = mapped_column(String(128), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    player_tag: Mapped[str | None] = mapped_column(String(20))
    player_name: Mapped[str | None] = mapped_column(String(64))
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    dedupe_key: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, nullable=False
    )


class Setting(Base):
    __tablename__ = "settings"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, onupdate=_utc_now, nullable=False
    )


_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _require_database_url() -> str:
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        raise ValueError(
            "DATABASE_URL is not set. Configure it in the environment before running a sync."
        )
    return database_url


def _build_async_database_url(raw_url: str) -> str:
    if raw_url.startswith("postgres://"):
        return raw_url.replace("postgres://", "postgresql+asyncpg://", 1)
    if raw_url.startswith("postgresql+psycopg://"):
        return raw_url.replace("postgresql+psycopg://", "postgresql+asyncpg://", 1)
    if raw_url.startswith("postgresql://"):
        return raw_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return raw_url


async def connect_db() -> None:
    """Create the async engine and session factory."""
    global _engine, _session_factory
    if _engine is None:
        raw_url = _require_database_url()
        async_url = _build_async_database_url(raw_url)
        _engine = create_async_engine(async_url, pool_pre_ping=True)
        _session_factory = async_sessionmaker(_engine, expire_on_commit=False)


async def close_db() -> None:
    """Dispose the async engine."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    async with _get_session() as session:
        yield session


@asynccontextmanager
async def _get_session() -> AsyncIterator[AsyncSession]:
    if _session_factory is None:
        await connect_db()
    assert _session_factory is not None
    async with _session_factory() as session:
        yield session


@asynccontextmanager
async def _write_session(session: AsyncSession | None) -> AsyncIterator[AsyncSession]:
    """Use the caller's session, or open one that commits on success."""
    if session is not None:
        yield session
        return
    async with _get_session() as own_session:
        try:
            yield own_session
            await own_session.commit()
        except Exception:
            await own_session.rollback()
            raise


@asynccontextmanager
async def _read_session(session: AsyncSession | None) -> AsyncIterator[AsyncSession]:
    if session is not None:
        yield session
        return
    async with _get_session() as own_session:
        yield own_session


def _row_to_dict(row: Base) -> dict[str, Any]:
    return {column.key: getattr(row, column.key) for column in row.__table__.columns}


def _chunks(rows: Sequence[Mapping[str, Any]], size: int = INSERT_CHUNK_SIZE):
    for start in range(0, len(rows), size):
        yield rows[start : start + size]


# Settings


async def get_settings(
    keys: Iterable[str] | None = None, session: AsyncSession | None = None
) -> dict[str, str]:
    """Return settings as a flat dict, optionally limited to ``keys``."""
    stmt = select(Setting.key, Setting.value)
    if keys is not None:
        stmt = stmt.where(Setting.key.in_(list(keys)))
    async with _read_session(session) as s:
        result = await s.execute(stmt)
        return {key: value for key, value in result.all()}


async def get_setting(key: str, session: AsyncSession | None = None) -> str | None:
    settings = await get_settings([key], session=session)
    return settings.get(key)


async def set_settings(
    values: Mapping[str, Any], session: AsyncSession | None = None
) -> None:
    if not values:
        return
    now = _utc_now()
    rows = [
        {"key": key, "value": "" if value is None else str(value), "updated_at": now}
        for key, value in values.items()
    ]
    stmt = pg_insert(Setting.__table__).values(rows)
    stmt = stmt.on_conflict_do_update(
        index_elements=["key"],
        set_={"value": stmt.excluded.value, "updated_at": now},
    )
    async with _write_session(session) as s:
        await s.execute(stmt)


# Members


async def get_members(session: AsyncSession | None = None) -> dict[str, dict[str, Any]]:
    async with _read_session(session) as s:
        result = await s.execute(select(Member))
        return {row.player_tag: _row_to_dict(row) for row in result.scalars().all()}


async def get_member(
    player_tag: str, session: AsyncSession | None = None
) -> dict[str, Any] | None:
    async with _read_session(session) as s:
        row = await s.get(Member, player_tag)
        return _row_to_dict(row) if row else None


async def get_current_members(
    session: AsyncSession | None = None,
) -> list[dict[str, Any]]:
    """Members whose history row says they are still in the club."""
    async with _read_session(session) as s:
        result = await s.execute(
            select(Member)
            .join(MemberHistory, MemberHistory.player_tag == Member.player_tag)
            .where(MemberHistory.is_current_member.is_(True))
            .order_by(Member.trophies.desc())
        )
        return [_row_to_dict(row) for row in result.scalars().all()]


async def upsert_members(
    rows: Sequence[Mapping[str, Any]], session: AsyncSession | None = None
) -> None:
    if not rows:
        return
    async with _write_session(session) as s:
        for chunk in _chunks(rows):
            stmt = pg_insert(Member.__table__).values(list(chunk))
            stmt = stmt.on_conflict_do_update(
                index_elements=["player_tag"],
                set_={
                    column: stmt.excluded[column]
                    for column in chunk[0].keys()
                    if column != "player_tag"
                },
            )
            await s.execute(stmt)


async def mark_members_inactive(
    player_tags: Iterable[str], session: AsyncSession | None = None
) -> None:
    tags = list(player_tags)
    if not tags:
        return
    async with _write_session(session) as s:
        await s.execute(
            update(Member).where(Member.player_tag.in_(tags)).values(is_active=False)
        )


async def update_member_profiles(
    rows: Sequence[Mapping[str, Any]], session: AsyncSession | None = None
) -> int:
    """Refresh name and role of existing members; a missing role keeps the stored one."""
    updated = 0
    async with _write_session(session) as s:
        for row in rows:
            values = {"player_name": row["player_name"]}
            if row.get("role"):
                values["role"] = row["role"]
            result = await s.execute(
                update(Member)
                .where(Member.player_tag == row["player_tag"])
                .values(**values)
            )
            updated += result.rowcount
    return updated


# Member history


async def get_member_histories(
    session: AsyncSession | None = None,
) -> list[dict[str, Any]]:
    async with _read_session(session) as s:
        result = await s.execute(
            select(MemberHistory).order_by(MemberHistory.last_seen.desc())
        )
        return [_row_to_dict(row) for row in result.scalars().all()]


async def get_member_history(
    player_tag: str, session: AsyncSession | None = None
) -> dict[str, Any] | None:
    async with _read_session(session) as s:
        row = await s.get(MemberHistory, player_tag)
        return _row_to_dict(row) if row else None


async def upsert_member_histories(
    rows: Sequence[Mapping[str, Any]], session: AsyncSession | None = None
) -> None:
    """Write history rows; free-text notes are never overwritten here."""
    if not rows:
        return
    async with _write_session(session) as s:
        for chunk in _chunks(rows):
            stmt = pg_insert(MemberHistory.__table__).values(list(chunk))
            stmt = stmt.on_conflict_do_update(
                index_elements=["player_tag"],
                set_={
                    column: stmt.excluded[column]
                    for column in chunk[0].keys()
                    if column not in ("player_tag", "first_seen", "notes")
                },
            )
            await s.execute(stmt)


async def update_member_notes(
    player_tag: str, notes: str | None, session: AsyncSession | None = None
) -> bool:
    async with _write_session(session) as s:
        result = await s.execute(
            update(MemberHistory)
            .where(MemberHistory.player_tag == player_tag)
            .values(notes=notes or None)
        )
        return result.rowcount > 0


# Activity log


async def insert_activity_logs(
    rows: Sequence[Mapping[str, Any]], session: AsyncSession | None = None
) -> None:
    if not rows:
        return
    async with _write_session(session) as s:
        for chunk in _chunks(rows):
            await s.execute(pg_insert(ActivityLog.__table__).values(list(chunk)))


async def get_recently_active_tags(
    since: datetime, session: AsyncSession | None = None
) -> set[str]:
    """Tags with a nonzero trophy change logged at or after ``since``."""
    async with _read_session(session) as s:
        result = await s.execute(
            select(ActivityLog.player_tag)
            .where(
                ActivityLog.recorded_at >= since,
                ActivityLog.trophy_change != 0,
            )
            .distinct()
        )
        return set(result.scalars().all())


async def get_activity_logs(
    since: datetime | None = None,
    player_tag: str | None = None,
    session: AsyncSession | None = None,
) -> list[dict[str, Any]]:
    stmt = select(ActivityLog).order_by(ActivityLog.recorded_at.asc())
    if since is not None:
        stmt = stmt.where(ActivityLog.recorded_at >= since)
    if player_tag is not None:
        stmt = stmt.where(ActivityLog.player_tag == player_tag)
    async with _read_session(session) as s:
        result = await s.execute(stmt)
        return [_row_to_dict(row) for row in result.scalars().all()]


# Club events


async def insert_club_events(
    rows: Sequence[Mapping[str, Any]], session: AsyncSession | None = None
) -> None:
    if not rows:
        return
    async with _write_session(session) as s:
        await s.execute(pg_insert(ClubEvent.__table__).values(list(rows)))


async def get_club_events(
    since: datetime | None = None,
    limit: int | None = 50,
    session: AsyncSession | None = None,
) -> list[dict[str, Any]]:
    stmt = select(ClubEvent).order_by(ClubEvent.event_time.desc())
    if since is not None:
        stmt = stmt.where(ClubEvent.event_time >= since)
    if limit is not None:
        stmt = stmt.limit(limit)
    async with _read_session(session) as s:
        result = await s.execute(stmt)
        return [_row_to_dict(row) for row in result.scalars().all()]


# Battles


async def insert_battles(
    rows: Sequence[Mapping[str, Any]], session: AsyncSession | None = None
) -> int:
    """Insert battles, skipping ones already stored; returns the new row count."""
    if not rows:
        return 0
    inserted = 0
    async with _write_session(session) as s:
        for chunk in _chunks(rows):
            stmt = (
                pg_insert(BattleHistory.__table__)
                .values(list(chunk))
                .on_conflict_do_nothing(index_elements=["player_tag", "battle_time"])
                .returning(BattleHistory.__table__.c.id)
            )
            result = await s.execute(stmt)
            inserted += len(result.fetchall())
    return inserted


async def get_battles_for_days(
    keys: Iterable[tuple[str, date]], session: AsyncSession | None = None
) -> list[dict[str, Any]]:
    """Stored battles for each (player_tag, UTC day) pair."""
    conditions = []
    for player_tag, day in sorted(set(keys)):
        start = datetime(day.year, day.month, day.day, tzinfo=timezone.utc)
        conditions.append(
            and_(
                BattleHistory.player_tag == player_tag,
                BattleHistory.battle_time >= start,
                BattleHistory.battle_time < start + timedelta(days=1),
            )
        )
    if not conditions:
        return []
    async with _read_session(session) as s:
        result = await s.execute(select(BattleHistory).where(or_(*conditions)))
        return [_row_to_dict(row) for row in result.scalars().all()]


async def get_battles(
    *,
    since: datetime | None = None,
    mode: str | None = None,
    player_tag: str | None = None,
    limit: int = 50,
    offset: int = 0,
    session: AsyncSession | None = None,
) -> tuple[list[dict[str, Any]], int]:
    """A page of battles (newest first) and the total matching count."""
    filters = []
    if since is not None:
        filters.append(BattleHistory.battle_time >= since)
    if mode:
        filters.append(BattleHistory.mode == mode)
    if player_tag:
        filters.append(BattleHistory.player_tag == player_tag)
    async with _read_session(session) as s:
        total = await s.execute(
            select(func.count()).select_from(BattleHistory).where(*filters)
        )
        result = await s.execute(
            select(BattleHistory)
            .where(*filters)
            .order_by(BattleHistory.battle_time.desc())
            .offset(offset)
            .limit(limit)
        )
        return [_row_to_dict(row) for row in result.scalars().all()], int(
            total.scalar_one()
        )


async def get_battle_modes(session: AsyncSession | None = None) -> list[str]:
    async with _read_session(session) as s:
        result = await s.execute(
            select(BattleHistory.mode)
            .where(BattleHistory.mode.is_not(None))
            .distinct()
            .order_by(BattleHistory.mode)
        )
        return [mode for mode in result.scalars().all() if mode]


async def get_battles_missing_teams(
    mode: str,
    since: datetime,
    limit: int = 50,
    session: AsyncSession | None = None,
) -> list[dict[str, Any]]:
    async with _read_session(session) as s:
        result = await s.execute(
            select(BattleHistory)
            .where(
                BattleHistory.mode == mode,
                BattleHistory.teams_json.is_(None),
                BattleHistory.battle_time >= since,
            )
            .order_by(BattleHistory.battle_time.desc())
            .limit(limit)
        )
        return [_row_to_dict(row) for row in result.scalars().all()]


async def set_battle_teams_json(
    battle_id: int, teams_json: str, session: AsyncSession | None = None
) -> bool:
    async with _write_session(session) as s:
        result = await s.execute(
            update(BattleHistory)
            .where(BattleHistory.id == battle_id, BattleHistory.teams_json.is_(None))
            .values(teams_json=teams_json)
        )
        return result.rowcount > 0


# Daily stats


async def upsert_daily_stats(
    rows: Sequence[Mapping[str, Any]], session: AsyncSession | None = None
) -> None:
    if not rows:
        return
    now = _utc_now()
    async with _write_session(session) as s:
        for chunk in _chunks(rows):
            values = [{**row, "updated_at": now} for row in chunk]
            stmt = pg_insert(DailyStat.__table__).values(values)
            stmt = stmt.on_conflict_do_update(
                index_elements=["player_tag", "date"],
                set_={
                    "battles": stmt.excluded.battles,
                    "wins": stmt.excluded.wins,
                    "losses": stmt.excluded.losses,
                    "star_player": stmt.excluded.star_player,
                    "trophies_gained": stmt.excluded.trophies_gained,
                    "trophies_lost": stmt.excluded.trophies_lost,
                    "updated_at": now,
                },
            )
            await s.execute(stmt)


async def get_daily_stats(
    *,
    since: date | None = None,
    until: date | None = None,
    player_tag: str | None = None,
    session: AsyncSession | None = None,
) -> list[dict[str, Any]]:
    stmt = select(DailyStat).order_by(DailyStat.date.asc())
    if since is not None:
        stmt = stmt.where(DailyStat.date >= since)
    if until is not None:
        stmt = stmt.where(DailyStat.date < until)
    if player_tag is not None:
        stmt = stmt.where(DailyStat.player_tag == player_tag)
    async with _read_session(session) as s:
        result = await s.execute(stmt)
        return [_row_to_dict(row) for row in result.scalars().all()]


# Brawler snapshots and tracking


def _group_rows(rows: Iterable[BrawlerSnapshot]) -> dict[str, list[dict[str, Any]]]:
    grouped: dict[str, list[dict[str, Any]]] = {}
    for row in rows:
        grouped.setdefault(row.player_tag, []).append(_row_to_dict(row))
    return grouped


async def get_latest_prior_snapshots(
    player_tags: Iterable[str],
    before: date,
    session: AsyncSession | None = None,
) -> dict[str, list[dict[str, Any]]]:
    """Each player's most recent snapshot set captured strictly before ``before``."""
    tags = list(player_tags)
    if not tags:
        return {}
    latest = (
        select(
            BrawlerSnapshot.player_tag.label("player_tag"),
            func.max(BrawlerSnapshot.captured_on).label("captured_on"),
        )
        .where(
            BrawlerSnapshot.player_tag.in_(tags),
            BrawlerSnapshot.captured_on < before,
        )
        .group_by(BrawlerSnapshot.player_tag)
        .subquery()
    )
    async with _read_session(session) as s:
        result = await s.execute(
            select(BrawlerSnapshot).join(
                latest,
                and_(
                    BrawlerSnapshot.player_tag == latest.c.player_tag,
                    BrawlerSnapshot.captured_on == latest.c.captured_on,
                ),
            )
        )
        return _group_rows(result.scalars().all())


async def get_snapshots_for_day(
    player_tags: Iterable[str],
    day: date,
    session: AsyncSession | None = None,
) -> dict[str, list[dict[str, Any]]]:
    tags = list(player_tags)
    if not tags:
        return {}
    async with _read_session(session) as s:
        result = await s.execute(
            select(BrawlerSnapshot).where(
                BrawlerSnapshot.player_tag.in_(tags),
                BrawlerSnapshot.captured_on == day,
            )
        )
        return _group_rows(result.scalars().all())


async def replace_snapshots_for_day(
    player_tags: Iterable[str],
    day: date,
    rows: Sequence[Mapping[str, Any]],
    session: AsyncSession | None = None,
) -> None:
    """Delete the day's snapshot rows for these players, then insert ``rows``.

    Both statements run in one transaction, so a re-run on the same day
    replaces the set instead of colliding with it.
    """
    tags = list(player_tags)
    if not tags:
        return
    now = _utc_now()
    async with _write_session(session) as s:
        await s.execute(
            delete(BrawlerSnapshot).where(
                BrawlerSnapshot.player_tag.in_(tags),
                BrawlerSnapshot.captured_on == day,
            )
        )
        values = [{**row, "captured_on": day, "recorded_at": now} for row in rows]
        for chunk in _chunks(values):
            await s.execute(pg_insert(BrawlerSnapshot.__table__).values(list(chunk)))


async def add_player_tracking(
    increments: Mapping[str, tuple[int, int]],
    now: datetime | None = None,
    session: AsyncSession | None = None,
) -> None:
    """Add (power_ups, unlocks) increments to each player's accumulators."""
    rows = [
        {"player_tag": tag, "power_ups": power_ups, "unlocks": unlocks}
        for tag, (power_ups, unlocks) in increments.items()
        if power_ups > 0 or unlocks > 0
    ]
    if not rows:
        return
    now = now or _utc_now()
    table = PlayerTracking.__table__
    stmt = pg_insert(table).values(
        [{**row, "tracking_started": now, "last_updated": now} for row in rows]
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["player_tag"],
        set_={
            "power_ups": table.c.power_ups + stmt.excluded.power_ups,
            "unlocks": table.c.unlocks + stmt.excluded.unlocks,
            "last_updated": now,
        },
    )
    async with _write_session(session) as s:
        await s.execute(stmt)


async def get_player_tracking(
    player_tag: str, session: AsyncSession | None = None
) -> dict[str, Any] | None:
    async with _read_session(session) as s:
        result = await s.execute(
            select(PlayerTracking).where(PlayerTracking.player_tag == player_tag)
        )
        row = result.scalar_one_or_none()
        return _row_to_dict(row) if row else None


# Notifications


async def get_recent_notifications(
    since: datetime, session: AsyncSession | None = None
) -> list[dict[str, Any]]:
    async with _read_session(session) as s:
        result = await s.execute(
            select(Notification).where(Notification.created_at >= since)
        )
        return [_row_to_dict(row) for row in result.scalars().all()]


async def insert_notifications(
    rows: Sequence[Mapping[str, Any]], session: AsyncSession | None = None
) -> list[str]:
    """Insert notifications, ignoring dedupe-key conflicts; returns the new dedupe keys."""
    if not rows:
        return []
    stmt = (
        pg_insert(Notification.__table__)
        .values(list(rows))
        .on_conflict_do_nothing(index_elements=["dedupe_key"])
        .returning(Notification.__table__.c.dedupe_key)
    )
    async with _write_session(session) as s:
        result = await s.execute(stmt)
        return [row[0] for row in result.fetchall()]


async def get_notifications(
    *,
    limit: int = 50,
    unread_only: bool = False,
    session: AsyncSession | None = None,
) -> list[dict[str, Any]]:
    stmt = (
        select(Notification)
        .order_by(Notification.created_at.desc())
        .limit(min(max(limit, 1), 100))
    )
    if unread_only:
        stmt = stmt.where(Notification.is_read.is_(False))
    async with _read_session(session) as s:
        result = await s.execute(stmt)
        return [_row_to_dict(row) for row in result.scalars().all()]


async def mark_notifications_read(
    ids: Iterable[int] | None = None,
    *,
    mark_all: bool = False,
    session: AsyncSession | None = None,
) -> int:
    stmt = update(Notification).where(Notification.is_read.is_(False))
    if not mark_all:
        id_list = list(ids or [])
        if not id_list:
            raise ValueError("Provide notification ids or mark_all=True")
        stmt = stmt.where(Notification.id.in_(id_list))
    async with _write_session(session) as s:
        result = await s.execute(stmt.values(is_read=True))
        return result.rowcount


# Retention


async def purge_old_data(
    now: datetime,
    *,
    activity_days: int,
    battle_days: int,
    snapshot_days: int,
    notification_days: int,
    session: AsyncSession | None = None,
) -> dict[str, int]:
    """Delete rows past their retention window; returns deleted counts."""
    async with _write_session(session) as s:
        activity = await s.execute(
            delete(ActivityLog).where(
                ActivityLog.recorded_at < now - timedelta(days=activity_days)
            )
        )
        battles = await s.execute(
            delete(BattleHistory).where(
                BattleHistory.battle_time < now - timedelta(days=battle_days)
            )
        )
        snapshots = await s.execute(
            delete(BrawlerSnapshot).where(
                BrawlerSnapshot.captured_on
                < (now - timedelta(days=snapshot_days)).date()
            )
        )
        notifications = await s.execute(
            delete(Notification).where(
                Notification.is_read.is_(True),
                Notification.created_at < now - timedelta(days=notification_days),
            )
        )
    return {
        "activity_log": activity.rowcount,
        "battle_history": battles.rowcount,
        "brawler_snapshots": snapshots.rowcount,
        "notifications": notifications.rowcount,
    }
