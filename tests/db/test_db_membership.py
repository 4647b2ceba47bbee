from datetime import datetime, timedelta, timezone
import unittest

try:
    import sqlalchemy  # noqa: F401
except Exception:
    raise unittest.SkipTest("sqlalchemy not available")

from battles import process_battle_log
from db import (
    get_activity_logs,
    get_battles,
    get_current_members,
    get_member,
    get_member_histories,
    get_member_history,
    get_notifications,
    get_recently_active_tags,
    insert_battles,
    insert_notifications,
    mark_notifications_read,
    purge_old_data,
    update_member_notes,
    update_member_profiles,
    upsert_member_histories,
)
from membership import HistoryRecord
from notifications import NotificationCandidate
from tests._db_harness import DBTestCase
from tests._fakes import battle_item
from tests._seed import seed_activity, seed_member

NOW = datetime(2026, 2, 10, 12, 0, tzinfo=timezone.utc)


class DBMembershipTests(DBTestCase):
    async def test_current_members_follow_history(self) -> None:
        await seed_member(self.session, player_tag="#DBM1", player_name="Stays", trophies=2000)
        await seed_member(
            self.session, player_tag="#DBM2", player_name="Left", is_current_member=False
        )
        tags = [m["player_tag"] for m in await get_current_members(session=self.session)]
        self.assertIn("#DBM1", tags)
        self.assertNotIn("#DBM2", tags)

    async def test_history_upsert_keeps_notes_and_first_seen(self) -> None:
        first_seen = NOW - timedelta(days=30)
        record = HistoryRecord("#DBM3", "Noted", first_seen, NOW - timedelta(days=1))
        await upsert_member_histories([record.to_row()], session=self.session)
        self.assertTrue(await update_member_notes("#DBM3", "Trial member", session=self.session))

        record.first_seen = NOW
        record.last_seen = NOW
        record.times_left = 1
        record.is_current_member = False
        await upsert_member_histories([record.to_row()], session=self.session)

        rows = {r["player_tag"]: r for r in await get_member_histories(session=self.session)}
        stored = rows["#DBM3"]
        self.assertEqual("Trial member", stored["notes"])
        self.assertEqual(first_seen, stored["first_seen"])
        self.assertEqual(1, stored["times_left"])
        self.assertFalse(stored["is_current_member"])
        self.assertFalse(await update_member_notes("#NOPE", "x", session=self.session))

    async def test_profile_refresh_only_touches_name_and_role(self) -> None:
        await seed_member(self.session, player_tag="#DBM20", player_name="Old", trophies=1500)
        await seed_member(self.session, player_tag="#DBM21", player_name="Keep", role="senior")
        updated = await update_member_profiles(
            [
                {"player_tag": "#DBM20", "player_name": "New", "role": "vicePresident"},
                {"player_tag": "#DBM21", "player_name": "Kept", "role": None},
                {"player_tag": "#NOPE", "player_name": "Ghost", "role": "member"},
            ],
            session=self.session,
        )
        self.assertEqual(2, updated)
        renamed = await get_member("#DBM20", session=self.session)
        self.assertEqual(
            ("New", "vicePresident", 1500),
            (renamed["player_name"], renamed["role"], renamed["trophies"]),
        )
        kept = await get_member("#DBM21", session=self.session)
        self.assertEqual(("Kept", "senior"), (kept["player_name"], kept["role"]))
        self.assertIsNone(await get_member("#NOPE", session=self.session))
        history = await get_member_history("#DBM20", session=self.session)
        self.assertTrue(history["is_current_member"])
        self.assertIsNone(await get_member_history("#NOPE", session=self.session))

    async def test_recently_active_ignores_zero_changes(self) -> None:
        await seed_activity(
            self.session,
            player_tag="#DBM4",
            entries=[(NOW - timedelta(hours=1), 1000, 0)],
        )
        await seed_activity(
            self.session,
            player_tag="#DBM5",
            entries=[(NOW - timedelta(hours=2), 1010, 10), (NOW - timedelta(days=5), 990, 30)],
        )
        await seed_activity(
            self.session,
            player_tag="#DBM6",
            entries=[(NOW - timedelta(days=5), 990, 30)],
        )
        active = await get_recently_active_tags(NOW - timedelta(hours=48), session=self.session)
        self.assertIn("#DBM5", active)
        self.assertNotIn("#DBM4", active)
        self.assertNotIn("#DBM6", active)

    async def test_battle_page_and_total(self) -> None:
        items = [
            battle_item("#DBM7", f"20260210T10{minute:02d}00.000Z", mode=mode)
            for minute, mode in [(0, "gemGrab"), (10, "brawlBall"), (20, "gemGrab")]
        ]
        await insert_battles(
            [b.to_row() for b in process_battle_log("#DBM7", items)], session=self.session
        )
        page, total = await get_battles(
            player_tag="#DBM7", mode="gemGrab", limit=1, session=self.session
        )
        self.assertEqual(2, total)
        self.assertEqual(datetime(2026, 2, 10, 10, 20, tzinfo=timezone.utc), page[0]["battle_time"])

    async def test_mark_read_and_purge(self) -> None:
        old = NOW - timedelta(days=40)
        rows = [
            NotificationCandidate("leave", "Member left", "Old left the club", "#DBM8").to_row(old),
            NotificationCandidate("leave", "Member left", "Unread left the club", "#DBM9").to_row(old),
        ]
        await insert_notifications(rows, session=self.session)
        with self.assertRaises(ValueError):
            await mark_notifications_read(session=self.session)

        stored = {
            n["player_tag"]: n
            for n in await get_notifications(limit=100, session=self.session)
            if n["player_tag"] in ("#DBM8", "#DBM9")
        }
        updated = await mark_notifications_read([stored["#DBM8"]["id"]], session=self.session)
        self.assertEqual(1, updated)

        await seed_activity(self.session, player_tag="#DBM8", entries=[(old, 900, 5), (NOW, 950, 50)])
        counts = await purge_old_data(
            NOW,
            activity_days=30,
            battle_days=30,
            snapshot_days=30,
            notification_days=30,
            session=self.session,
        )
        self.assertGreaterEqual(counts["activity_log"], 1)
        self.assertGreaterEqual(counts["notifications"], 1)

        remaining_logs = await get_activity_logs(player_tag="#DBM8", session=self.session)
        self.assertEqual([NOW], [log["recorded_at"] for log in remaining_logs])
        remaining = {
            n["player_tag"] for n in await get_notifications(limit=100, session=self.session)
        }
        self.assertNotIn("#DBM8", remaining)
        self.assertIn("#DBM9", remaining)
