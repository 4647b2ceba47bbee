"""Notification building, deduplication and webhook delivery."""

import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Mapping, Sequence

import httpx

from config import (
    INACTIVE_ALERT_COOLDOWN_HOURS,
    NOTIFICATION_DEDUP_MINUTES,
    WEBHOOK_BATCH_SIZE,
    WEBHOOK_TIMEOUT_SECONDS,
)
from membership import (
    EVENT_DEMOTION,
    EVENT_JOIN,
    EVENT_LEAVE,
    EVENT_NAME_CHANGE,
    EVENT_PROMOTION,
    EVENT_ROLE_CHANGE,
    MembershipEvent,
)

logger = logging.getLogger(__name__)

TYPE_INACTIVE = "inactive_members"

# Discord embed colors
EMBED_COLORS = {
    EVENT_JOIN: 0x2ECC71,
    EVENT_LEAVE: 0xE74C3C,
    EVENT_NAME_CHANGE: 0x3498DB,
    EVENT_PROMOTION: 0xF1C40F,
    EVENT_DEMOTION: 0xE67E22,
    EVENT_ROLE_CHANGE: 0x9B59B6,
    TYPE_INACTIVE: 0x95A5A6,
}

# Event kinds also recorded as club_events rows
CLUB_EVENT_KINDS = (EVENT_JOIN, EVENT_LEAVE)

INACTIVE_NAMES_SHOWN = 10


@dataclass(slots=True)
class NotificationCandidate:
    notification_type: str
    title: str
    message: str
    player_tag: str | None = None
    player_name: str | None = None

    @property
    def identity(self) -> tuple[str, str | None, str, str]:
        return (self.notification_type, self.player_tag, self.title, self.message)

    def to_row(self, created_at: datetime) -> dict[str, Any]:
        return {
            "notification_type": self.notification_type,
            "title": self.title,
            "message": self.message,
            "player_tag": self.player_tag,
            "player_name": self.player_name,
            "is_read": False,
            "created_at": created_at,
            "dedupe_key": compute_dedupe_key(
                self.notification_type,
                self.player_tag,
                self.title,
                self.message,
                created_at,
            ),
        }


def compute_dedupe_key(
    notification_type: str,
    player_tag: str | None,
    title: str,
    message: str,
    created_at: datetime,
) -> str:
    """SHA-256 over the notification fields, timestamp truncated to the second."""
    stamp = created_at.astimezone(timezone.utc).replace(microsecond=0).isoformat()
    payload = "|".join(
        [notification_type, player_tag or "", title, message, stamp]
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _event_text(event: MembershipEvent) -> tuple[str, str] | None:
    name = event.player_name
    if event.kind == EVENT_JOIN:
        return "Member joined", f"{name} joined the club"
    if event.kind == EVENT_LEAVE:
        return "Member left", f"{name} left the club"
    if event.kind == EVENT_NAME_CHANGE:
        return "Name changed", f"{event.old_value} is now known as {event.new_value}"
    if event.kind == EVENT_PROMOTION:
        return (
            "Member promoted",
            f"{name} was promoted from {event.old_value} to {event.new_value}",
        )
    if event.kind == EVENT_DEMOTION:
        return (
            "Member demoted",
            f"{name} was demoted from {event.old_value} to {event.new_value}",
        )
    if event.kind == EVENT_ROLE_CHANGE:
        return (
            "Role changed",
            f"{name} changed role from {event.old_value} to {event.new_value}",
        )
    return None


def build_event_notifications(
    events: Iterable[MembershipEvent],
) -> list[NotificationCandidate]:
    candidates: list[NotificationCandidate] = []
    for event in events:
        text = _event_text(event)
        if text is None:
            logger.debug("No notification template for event kind %s", event.kind)
            continue
        title, message = text
        candidates.append(
            NotificationCandidate(
                notification_type=event.kind,
                title=title,
                message=message,
                player_tag=event.player_tag,
                player_name=event.player_name,
            )
        )
    return candidates


def build_inactive_notification(
    inactive_names: Sequence[str], threshold_hours: int
) -> NotificationCandidate | None:
    """One aggregate alert naming the members with no recent activity."""
    if not inactive_names:
        return None
    names = sorted(inactive_names, key=str.lower)
    shown = ", ".join(names[:INACTIVE_NAMES_SHOWN])
    extra = len(names) - INACTIVE_NAMES_SHOWN
    if extra > 0:
        shown = f"{shown} and {extra} more"
    count = len(names)
    noun = "member has" if count == 1 else "members have"
    return NotificationCandidate(
        notification_type=TYPE_INACTIVE,
        title="Inactive members",
        message=f"{count} {noun} been inactive for {threshold_hours}h+: {shown}",
    )


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def inactive_alert_due(
    last_alert: str | None,
    now: datetime,
    cooldown_hours: int = INACTIVE_ALERT_COOLDOWN_HOURS,
) -> bool:
    """True when the last inactivity alert is older than the cooldown."""
    last = _parse_timestamp(last_alert)
    if last is None:
        return True
    return now - last >= timedelta(hours=cooldown_hours)


def dedupe_within_batch(
    candidates: Iterable[NotificationCandidate],
) -> list[NotificationCandidate]:
    seen: set[tuple[str, str | None, str, str]] = set()
    unique: list[NotificationCandidate] = []
    for candidate in candidates:
        if candidate.identity in seen:
            continue
        seen.add(candidate.identity)
        unique.append(candidate)
    return unique


def recency_cutoff(
    now: datetime, minutes: int = NOTIFICATION_DEDUP_MINUTES
) -> datetime:
    return now - timedelta(minutes=minutes)


def filter_recent_notifications(
    candidates: Iterable[NotificationCandidate],
    recent: Iterable[Mapping[str, Any]],
) -> list[NotificationCandidate]:
    """Drop candidates already stored inside the recency window."""
    stored = {
        (
            row.get("notification_type"),
            row.get("player_tag"),
            row.get("title"),
            row.get("message"),
        )
        for row in recent
    }
    kept = [c for c in candidates if c.identity not in stored]
    return kept


def filter_recent_events(
    events: Iterable[MembershipEvent],
    recent_club_events: Iterable[Mapping[str, Any]],
) -> list[MembershipEvent]:
    """Drop join/leave events a concurrent run already recorded."""
    stored = {
        (row.get("event_type"), row.get("player_tag")) for row in recent_club_events
    }
    kept: list[MembershipEvent] = []
    for event in events:
        if event.kind in CLUB_EVENT_KINDS and (event.kind, event.player_tag) in stored:
            logger.info(
                "Skipping duplicate %s event for %s", event.kind, event.player_tag
            )
            continue
        kept.append(event)
    return kept


def build_embed(candidate: NotificationCandidate) -> dict[str, Any]:
    embed: dict[str, Any] = {
        "title": candidate.title,
        "description": candidate.message,
        "color": EMBED_COLORS.get(candidate.notification_type, 0x7F8C8D),
    }
    if candidate.player_tag:
        embed["footer"] = {"text": candidate.player_tag}
    return embed


async def _post_embeds(
    client: httpx.AsyncClient, url: str, embeds: list[dict[str, Any]]
) -> bool:
    try:
        response = await client.post(url, json={"embeds": embeds})
    except httpx.HTTPError as e:
        logger.warning("Webhook delivery failed: %s", e)
        return False
    if response.status_code >= 400:
        logger.warning(
            "Webhook returned HTTP %s: %s",
            response.status_code,
            response.text[:200],
        )
        return False
    return True


async def send_webhook(
    url: str | None,
    candidates: Sequence[NotificationCandidate],
    *,
    client: httpx.AsyncClient | None = None,
    batch_size: int = WEBHOOK_BATCH_SIZE,
    timeout: float = WEBHOOK_TIMEOUT_SECONDS,
) -> int:
    """POST candidates as Discord embeds; returns how many were delivered.

    Failures are logged and never raised, and nothing is retried.
    """
    if not url or not candidates:
        return 0
    embeds = [build_embed(c) for c in candidates]
    batch_size = max(batch_size, 1)
    delivered = 0

    own_client = client is None
    if own_client:
        client = httpx.AsyncClient(timeout=timeout)
    try:
        for start in range(0, len(embeds), batch_size):
            batch = embeds[start : start + batch_size]
            if await _post_embeds(client, url, batch):
                delivered += len(batch)
    finally:
        if own_client:
            await client.aclose()

    if delivered < len(embeds):
        logger.warning(
            "Webhook delivered %s of %s notification(s)", delivered, len(embeds)
        )
    return delivered
