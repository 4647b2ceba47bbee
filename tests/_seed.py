"""Minimal realistic seed builders for DB tests."""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Iterable

from sqlalchemy.ext.asyncio import AsyncSession

from db import ActivityLog, DailyStat, Member, MemberHistory


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def seed_member(
    session: AsyncSession,
    *,
    player_tag: str,
    player_name: str,
    trophies: int = 1000,
    role: str = "member",
    is_current_member: bool = True,
    is_active: bool = True,
    now: datetime | None = None,
) -> None:
    now = now or _utc_now()
    session.add(
        Member(
            player_tag=player_tag,
            player_name=player_name,
            role=role,
            trophies=trophies,
            highest_trophies=trophies,
            exp_level=1,
            brawlers_count=0,
            solo_victories=0,
            duo_victories=0,
            trio_victories=0,
            is_active=is_active,
            last_updated=now,
        )
    )
    session.add(
        MemberHistory(
            player_tag=player_tag,
            player_name=player_name,
            first_seen=now,
            last_seen=now,
            times_joined=1,
            times_left=0 if is_current_member else 1,
            is_current_member=is_current_member,
        )
    )
    await session.flush()


async def seed_activity(
    session: AsyncSession,
    *,
    player_tag: str,
    entries: Iterable[tuple[datetime, int, int]],
) -> None:
    """Activity rows from (recorded_at, trophies, trophy_change) tuples."""
    for recorded_at, trophies, change in entries:
        session.add(
            ActivityLog(
                player_tag=player_tag,
                trophies=trophies,
                trophy_change=change,
                activity_type="active" if abs(change) >= 20 else "minimal" if change else "inactive",
                recorded_at=recorded_at,
            )
        )
    await session.flush()


async def seed_daily_stat(
    session: AsyncSession,
    *,
    player_tag: str,
    day: date,
    battles: int,
    wins: int = 0,
    trophies_gained: int = 0,
) -> None:
    session.add(
        DailyStat(
            player_tag=player_tag,
            date=day,
            battles=battles,
            wins=wins,
            losses=max(battles - wins, 0),
            star_player=0,
            trophies_gained=trophies_gained,
            trophies_lost=0,
            updated_at=_utc_now(),
        )
    )
    await session.flush()
