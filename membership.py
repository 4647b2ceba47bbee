"""Club membership reconciliation.

Every tag ever seen in the club is in one of three states, derived from its
member_history row:

    NotTracked  no history row yet
    Current     history row with is_current_member = true
    Departed    history row with is_current_member = false

Each sync run feeds every tag one observation (present in the fresh roster
or absent from it). ``observe_present`` and ``observe_absent`` return the
new history row plus the events to emit; ``reconcile_roster`` applies them
to a whole roster. Nothing here touches the database.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Iterable, Mapping

from config import ACTIVE_TROPHY_DELTA
from tags import normalize_tag

logger = logging.getLogger(__name__)

EVENT_JOIN = "join"
EVENT_LEAVE = "leave"
EVENT_NAME_CHANGE = "name_change"
EVENT_PROMOTION = "promotion"
EVENT_DEMOTION = "demotion"
EVENT_ROLE_CHANGE = "role_change"

ACTIVITY_ACTIVE = "active"
ACTIVITY_MINIMAL = "minimal"
ACTIVITY_INACTIVE = "inactive"

ROLE_TIERS = {
    "member": 0,
    "senior": 1,
    "vicepresident": 2,
    "president": 3,
}

ROLE_LABELS = {
    "member": "Member",
    "senior": "Senior",
    "vicepresident": "Vice President",
    "president": "President",
}


@dataclass(slots=True)
class RosterEntry:
    tag: str
    name: str
    role: str | None = None
    trophies: int | None = None


@dataclass(slots=True)
class HistoryRecord:
    player_tag: str
    player_name: str
    first_seen: datetime
    last_seen: datetime
    times_joined: int = 1
    times_left: int = 0
    is_current_member: bool = True
    last_left_at: datetime | None = None
    role_at_leave: str | None = None
    trophies_at_leave: int | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "HistoryRecord":
        return cls(
            player_tag=row["player_tag"],
            player_name=row["player_name"],
            first_seen=row["first_seen"],
            last_seen=row["last_seen"],
            times_joined=int(row.get("times_joined") or 1),
            times_left=int(row.get("times_left") or 0),
            is_current_member=bool(row.get("is_current_member")),
            last_left_at=row.get("last_left_at"),
            role_at_leave=row.get("role_at_leave"),
            trophies_at_leave=row.get("trophies_at_leave"),
        )

    def to_row(self) -> dict[str, Any]:
        return {
            "player_tag": self.player_tag,
            "player_name": self.player_name,
            "first_seen": self.first_seen,
            "last_seen": self.last_seen,
            "times_joined": self.times_joined,
            "times_left": self.times_left,
            "is_current_member": self.is_current_member,
            "last_left_at": self.last_left_at,
            "role_at_leave": self.role_at_leave,
            "trophies_at_leave": self.trophies_at_leave,
        }


@dataclass(frozen=True, slots=True)
class NotTracked:
    pass


@dataclass(frozen=True, slots=True)
class Current:
    history: HistoryRecord


@dataclass(frozen=True, slots=True)
class Departed:
    history: HistoryRecord


MembershipState = NotTracked | Current | Departed


@dataclass(slots=True)
class MembershipEvent:
    kind: str
    player_tag: str
    player_name: str
    old_value: str | None = None
    new_value: str | None = None


@dataclass(slots=True)
class Transition:
    state: MembershipState
    events: list[MembershipEvent] = field(default_factory=list)

    @property
    def history(self) -> HistoryRecord:
        if isinstance(self.state, NotTracked):
            raise ValueError("An untracked player has no history record")
        return self.state.history


@dataclass(slots=True)
class ActivityAssessment:
    trophy_change: int
    activity_type: str
    is_active: bool


@dataclass(slots=True)
class ReconcileResult:
    histories: list[HistoryRecord] = field(default_factory=list)
    events: list[MembershipEvent] = field(default_factory=list)
    departed: list[HistoryRecord] = field(default_factory=list)
    initial_setup: bool = False


def parse_roster(club: Mapping[str, Any]) -> list[RosterEntry]:
    roster: list[RosterEntry] = []
    seen: set[str] = set()
    for member in club.get("members") or []:
        tag = normalize_tag(member.get("tag"))
        if not tag or tag in seen:
            continue
        seen.add(tag)
        roster.append(
            RosterEntry(
                tag=tag,
                name=member.get("name") or tag,
                role=member.get("role"),
                trophies=member.get("trophies"),
            )
        )
    return roster


def state_from_history(history: HistoryRecord | None) -> MembershipState:
    if history is None:
        return NotTracked()
    if history.is_current_member:
        return Current(history)
    return Departed(history)


def normalize_role(role: str | None) -> str:
    if not role:
        return ""
    return "".join(ch for ch in role.lower() if ch not in " \t\n_-")


def role_tier(role: str | None) -> int | None:
    return ROLE_TIERS.get(normalize_role(role))


def role_label(role: str | None) -> str:
    normalized = normalize_role(role)
    return ROLE_LABELS.get(normalized, role or "Unknown")


def detect_profile_changes(
    entry: RosterEntry,
    stored_name: str | None,
    stored_role: str | None,
) -> list[MembershipEvent]:
    """Name and role changes between the stored member row and the roster."""
    events: list[MembershipEvent] = []
    if stored_name is not None and entry.name and entry.name != stored_name:
        events.append(
            MembershipEvent(
                kind=EVENT_NAME_CHANGE,
                player_tag=entry.tag,
                player_name=entry.name,
                old_value=stored_name,
                new_value=entry.name,
            )
        )

    if stored_role is None or entry.role is None:
        return events
    old_role = normalize_role(stored_role)
    new_role = normalize_role(entry.role)
    if not new_role or old_role == new_role:
        return events

    old_tier = ROLE_TIERS.get(old_role)
    new_tier = ROLE_TIERS.get(new_role)
    if old_tier is None or new_tier is None or old_tier == new_tier:
        kind = EVENT_ROLE_CHANGE
    elif new_tier > old_tier:
        kind = EVENT_PROMOTION
    else:
        kind = EVENT_DEMOTION
    events.append(
        MembershipEvent(
            kind=kind,
            player_tag=entry.tag,
            player_name=entry.name,
            old_value=role_label(stored_role),
            new_value=role_label(entry.role),
        )
    )
    return events


def observe_present(
    state: MembershipState,
    entry: RosterEntry,
    now: datetime,
    *,
    initial_setup: bool = False,
    stored_name: str | None = None,
    stored_role: str | None = None,
) -> Transition:
    """Apply a roster sighting of ``entry`` to its current state."""
    if isinstance(state, NotTracked):
        history = HistoryRecord(
            player_tag=entry.tag,
            player_name=entry.name,
            first_seen=now,
            last_seen=now,
            times_joined=1,
            times_left=0,
            is_current_member=True,
        )
        events = []
        if not initial_setup:
            events.append(MembershipEvent(EVENT_JOIN, entry.tag, entry.name))
        events.extend(detect_profile_changes(entry, stored_name, stored_role))
        return Transition(Current(history), events)

    if isinstance(state, Departed):
        history = replace(
            state.history,
            player_name=entry.name,
            last_seen=now,
            times_joined=state.history.times_joined + 1,
            is_current_member=True,
        )
        return Transition(
            Current(history), [MembershipEvent(EVENT_JOIN, entry.tag, entry.name)]
        )

    history = replace(state.history, player_name=entry.name, last_seen=now)
    return Transition(
        Current(history), detect_profile_changes(entry, stored_name, stored_role)
    )


def observe_absent(
    state: MembershipState,
    now: datetime,
    *,
    role: str | None = None,
    trophies: int | None = None,
) -> Transition:
    """Apply the absence of a tag from the fresh roster."""
    if not isinstance(state, Current):
        return Transition(state)
    previous = state.history
    history = replace(
        previous,
        last_seen=now,
        last_left_at=now,
        times_left=previous.times_left + 1,
        is_current_member=False,
        role_at_leave=role,
        trophies_at_leave=trophies,
    )
    return Transition(
        Departed(history),
        [MembershipEvent(EVENT_LEAVE, previous.player_tag, previous.player_name)],
    )


def classify_activity(
    trophy_change: int,
    had_recent_activity: bool = False,
    active_delta: int = ACTIVE_TROPHY_DELTA,
) -> ActivityAssessment:
    """Classify one observation from its trophy delta.

    ``activity_type`` describes this observation only. ``is_active`` also
    stays true for players with a nonzero delta logged inside the
    inactivity window.
    """
    magnitude = abs(trophy_change)
    if magnitude >= active_delta:
        activity_type = ACTIVITY_ACTIVE
    elif magnitude > 0:
        activity_type = ACTIVITY_MINIMAL
    else:
        activity_type = ACTIVITY_INACTIVE
    return ActivityAssessment(
        trophy_change=trophy_change,
        activity_type=activity_type,
        is_active=magnitude > 0 or had_recent_activity,
    )


def activity_window_start(now: datetime, threshold_hours: int) -> datetime:
    return now - timedelta(hours=threshold_hours)


def reconcile_roster(
    roster: Iterable[RosterEntry],
    histories: Mapping[str, HistoryRecord],
    stored_members: Mapping[str, Mapping[str, Any]],
    now: datetime,
    *,
    initial_setup: bool = False,
) -> ReconcileResult:
    """Run one observation per known or rostered tag.

    The very first sync (no history rows at all) never emits joins, so the
    members already in the club are not announced as newcomers.
    """
    first_sync = initial_setup or not histories
    result = ReconcileResult(initial_setup=first_sync)
    present: set[str] = set()

    for entry in roster:
        present.add(entry.tag)
        stored = stored_members.get(entry.tag) or {}
        transition = observe_present(
            state_from_history(histories.get(entry.tag)),
            entry,
            now,
            initial_setup=first_sync,
            stored_name=stored.get("player_name"),
            stored_role=stored.get("role"),
        )
        result.histories.append(transition.history)
        result.events.extend(transition.events)

    for tag, history in histories.items():
        if tag in present or not history.is_current_member:
            continue
        stored = stored_members.get(tag) or {}
        transition = observe_absent(
            Current(history),
            now,
            role=stored.get("role"),
            trophies=stored.get("trophies"),
        )
        result.histories.append(transition.history)
        result.departed.append(transition.history)
        result.events.extend(transition.events)

    logger.info(
        "Reconciled roster: %s present, %s departed, %s event(s)%s",
        len(present),
        len(result.departed),
        len(result.events),
        " (initial setup)" if first_sync else "",
    )
    return result
