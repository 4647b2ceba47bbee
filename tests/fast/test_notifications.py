import unittest
from datetime import datetime, timedelta, timezone

import httpx

from membership import EVENT_JOIN, EVENT_LEAVE, EVENT_PROMOTION, MembershipEvent
from notifications import (
    TYPE_INACTIVE,
    NotificationCandidate,
    build_event_notifications,
    build_inactive_notification,
    compute_dedupe_key,
    dedupe_within_batch,
    filter_recent_events,
    filter_recent_notifications,
    inactive_alert_due,
    send_webhook,
)
from tests._fakes import FakeHTTPClient, FakeResponse

NOW = datetime(2026, 2, 10, 12, 0, tzinfo=timezone.utc)


class BuildNotificationTests(unittest.TestCase):
    def test_event_titles(self) -> None:
        candidates = build_event_notifications(
            [
                MembershipEvent(EVENT_JOIN, "#A", "Alice"),
                MembershipEvent(EVENT_PROMOTION, "#B", "Bob", "Member", "Senior"),
                MembershipEvent("unknown", "#C", "Cara"),
            ]
        )
        self.assertEqual(2, len(candidates))
        self.assertEqual("Member joined", candidates[0].title)
        self.assertEqual("Alice joined the club", candidates[0].message)
        self.assertIn("from Member to Senior", candidates[1].message)

    def test_inactive_notification(self) -> None:
        names = [f"P{i:02d}" for i in range(12)]
        candidate = build_inactive_notification(names, 48)
        self.assertEqual(TYPE_INACTIVE, candidate.notification_type)
        self.assertIn("12 members have been inactive for 48h+", candidate.message)
        self.assertIn("and 2 more", candidate.message)
        self.assertIsNone(build_inactive_notification([], 48))


class DedupTests(unittest.TestCase):
    def test_dedupe_key_truncates_to_second(self) -> None:
        a = compute_dedupe_key("join", "#A", "t", "m", NOW.replace(microsecond=1))
        b = compute_dedupe_key("join", "#A", "t", "m", NOW.replace(microsecond=999999))
        c = compute_dedupe_key("join", "#A", "t", "m", NOW + timedelta(seconds=1))
        self.assertEqual(a, b)
        self.assertNotEqual(a, c)
        self.assertEqual(64, len(a))

    def test_dedupe_within_batch(self) -> None:
        one = NotificationCandidate("join", "t", "m", "#A", "Alice")
        same = NotificationCandidate("join", "t", "m", "#A", "Alice (renamed)")
        other = NotificationCandidate("join", "t", "m", "#B", "Bob")
        self.assertEqual([one, other], dedupe_within_batch([one, same, other]))

    def test_filter_recent_notifications(self) -> None:
        fresh = NotificationCandidate("join", "Member joined", "A joined", "#A")
        stale = NotificationCandidate("join", "Member joined", "B joined", "#B")
        recent = [
            {
                "notification_type": "join",
                "player_tag": "#B",
                "title": "Member joined",
                "message": "B joined",
            }
        ]
        self.assertEqual([fresh], filter_recent_notifications([fresh, stale], recent))

    def test_filter_recent_events_only_join_leave(self) -> None:
        events = [
            MembershipEvent(EVENT_JOIN, "#A", "Alice"),
            MembershipEvent(EVENT_LEAVE, "#B", "Bob"),
            MembershipEvent(EVENT_PROMOTION, "#A", "Alice", "Member", "Senior"),
        ]
        recent = [
            {"event_type": EVENT_JOIN, "player_tag": "#A"},
            {"event_type": EVENT_JOIN, "player_tag": "#B"},
        ]
        kept = filter_recent_events(events, recent)
        self.assertEqual([EVENT_LEAVE, EVENT_PROMOTION], [e.kind for e in kept])

    def test_inactive_alert_throttle(self) -> None:
        self.assertTrue(inactive_alert_due(None, NOW))
        self.assertTrue(inactive_alert_due("garbage", NOW))
        recent = (NOW - timedelta(hours=23)).isoformat()
        old = (NOW - timedelta(hours=24)).isoformat()
        self.assertFalse(inactive_alert_due(recent, NOW))
        self.assertTrue(inactive_alert_due(old, NOW))
        self.assertFalse(inactive_alert_due("2026-02-10T11:00:00Z", NOW))


class WebhookTests(unittest.IsolatedAsyncioTestCase):
    def _candidates(self, n):
        return [
            NotificationCandidate("join", "Member joined", f"P{i} joined", f"#P{i}")
            for i in range(n)
        ]

    async def test_batches_of_ten(self) -> None:
        client = FakeHTTPClient(post=[FakeResponse(204)] * 3)
        delivered = await send_webhook("https://hook", self._candidates(23), client=client)
        self.assertEqual(23, delivered)
        sizes = [len(call.kwargs["json"]["embeds"]) for call in client.post.await_args_list]
        self.assertEqual([10, 10, 3], sizes)
        client.aclose.assert_not_awaited()

    async def test_failures_are_logged_not_raised(self) -> None:
        client = FakeHTTPClient(
            post=[httpx.ConnectError("down"), FakeResponse(500, text="err")]
        )
        with self.assertLogs("notifications", level="WARNING"):
            delivered = await send_webhook(
                "https://hook", self._candidates(15), client=client
            )
        self.assertEqual(0, delivered)
        self.assertEqual(2, client.post.await_count)

    async def test_no_url_sends_nothing(self) -> None:
        client = FakeHTTPClient()
        self.assertEqual(0, await send_webhook(None, self._candidates(2), client=client))
        client.post.assert_not_awaited()

    async def test_embed_shape(self) -> None:
        client = FakeHTTPClient(post=[FakeResponse(200)])
        await send_webhook("https://hook", self._candidates(1), client=client)
        embed = client.post.await_args.kwargs["json"]["embeds"][0]
        self.assertEqual("Member joined", embed["title"])
        self.assertEqual("P0 joined", embed["description"])
        self.assertEqual({"text": "#P0"}, embed["footer"])
        self.assertIsInstance(embed["color"], int)
