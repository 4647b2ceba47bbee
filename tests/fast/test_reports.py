import json
import unittest
from datetime import date, datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import reports
from reports import (
    compute_insights,
    compute_member_detail,
    compute_streaks,
    compute_trophy_gains,
    compute_weekly_report,
    format_leaderboard,
    format_member_detail,
    format_weekly_report,
    group_battle_feed,
    rank_leaderboards,
    summarize_daily_stats,
)
from tests._assert import assert_has_section, assert_player_count_in_section
from tests._clock import pinned_utc

NOW = datetime(2026, 2, 10, 12, 0, tzinfo=timezone.utc)
TODAY = NOW.date()


def _day(tag, day, battles, wins=0, gained=0, lost=0, stars=0):
    return {
        "player_tag": tag,
        "date": day,
        "battles": battles,
        "wins": wins,
        "losses": battles - wins,
        "star_player": stars,
        "trophies_gained": gained,
        "trophies_lost": lost,
    }


def _member(tag, name, trophies=1000, **extra):
    row = {"player_tag": tag, "player_name": name, "role": "member", "trophies": trophies}
    row.update(extra)
    return row


class SummaryTests(unittest.TestCase):
    def test_summarize_with_since(self) -> None:
        rows = [
            _day("#A", TODAY, 4, wins=3, gained=20, lost=5),
            _day("#A", TODAY - timedelta(days=10), 6, wins=1),
            _day("#A", TODAY - timedelta(days=1), 0),
        ]
        week = summarize_daily_stats(rows, since=TODAY - timedelta(days=7))["#A"]
        self.assertEqual(4, week.battles)
        self.assertEqual(75, week.win_rate)
        self.assertEqual(15, week.net_trophies)
        self.assertEqual(1, week.active_days)
        self.assertEqual(10, summarize_daily_stats(rows)["#A"].battles)

    def test_streaks(self) -> None:
        rows = [
            _day("#A", TODAY, 2),
            _day("#A", TODAY - timedelta(days=1), 5),
            _day("#A", TODAY - timedelta(days=2), 1),
            _day("#A", TODAY - timedelta(days=6), 3),
            _day("#B", TODAY - timedelta(days=3), 4),
            _day("#B", TODAY - timedelta(days=4), 1),
            _day("#C", TODAY, 0),
        ]
        streaks = compute_streaks(rows, TODAY)
        self.assertEqual((3, 3, 5), (streaks["#A"].current, streaks["#A"].best, streaks["#A"].peak_day_battles))
        self.assertEqual(0, streaks["#B"].current)
        self.assertEqual(2, streaks["#B"].best)
        self.assertNotIn("#C", streaks)

    def test_streak_survives_until_tomorrow(self) -> None:
        rows = [_day("#A", TODAY - timedelta(days=1), 1)]
        self.assertEqual(1, compute_streaks(rows, TODAY)["#A"].current)


class LeaderboardTests(unittest.TestCase):
    def setUp(self) -> None:
        self.members = [
            _member("#A", "Alice", 3000, solo_victories=5, duo_victories=1, trio_victories=10),
            _member("#B", "Bob", 5000),
            _member("#C", "Cara", 4000),
        ]
        self.rows = [
            _day("#A", TODAY, 12, wins=9, gained=60, lost=20, stars=2),
            _day("#B", TODAY - timedelta(days=1), 3, wins=1, gained=8, lost=16),
            _day("#C", TODAY - timedelta(days=30), 40, wins=20),
        ]

    def test_categories(self) -> None:
        boards = rank_leaderboards(self.members, self.rows, TODAY)
        self.assertEqual(["#B", "#C", "#A"], [e["tag"] for e in boards["trophy_leaders"]])
        self.assertEqual(["#A", "#B"], [e["tag"] for e in boards["weekly_battlers"]])
        self.assertEqual(["#A"], [e["tag"] for e in boards["weekly_win_rate"]])
        self.assertEqual(["#A", "#B"], [e["tag"] for e in boards["weekly_trophy_gainers"]])
        self.assertEqual(["#A"], [e["tag"] for e in boards["weekly_star_players"]])
        self.assertEqual(["#C", "#A", "#B"], [e["tag"] for e in boards["all_time_battlers"]])
        self.assertEqual(16, boards["trophy_leaders"][2]["total_victories"])

    def test_size_limit(self) -> None:
        boards = rank_leaderboards(self.members, self.rows, TODAY, size=1)
        self.assertEqual(1, len(boards["trophy_leaders"]))

    def test_format_leaderboard(self) -> None:
        boards = rank_leaderboards(self.members, self.rows, TODAY)
        text = format_leaderboard("Trophy leaders", boards["trophy_leaders"], lambda e: e["trophies"])
        assert_player_count_in_section(text, "Trophy leaders", 3)
        self.assertIn("1) Bob - 5000", text)
        self.assertIn("No data available.", format_leaderboard("Empty", [], str))


class InsightsTests(unittest.TestCase):
    def test_trend_and_kick_list(self) -> None:
        members = [_member("#A", "alice"), _member("#B", "Bob"), _member("#C", "Cara")]
        this_week = [_day("#A", TODAY, 100, wins=60, gained=90), _day("#B", TODAY, 6, wins=3, gained=30)]
        previous = [_day("#A", TODAY - timedelta(days=8), 100)]
        insights = compute_insights(members, this_week, previous, {"#A"})

        self.assertEqual(106, insights["total_battles"])
        self.assertEqual(6, insights["trend_percent"])
        self.assertEqual("up", insights["trend_direction"])
        self.assertEqual(["Bob", "Cara"], [m["name"] for m in insights["kick_list"]])
        self.assertEqual("alice", insights["mvp_name"])
        self.assertEqual(90, insights["mvp_trophies"])
        self.assertEqual(59, insights["win_rate"])

    def test_flat_band(self) -> None:
        insights = compute_insights(
            [], [_day("#A", TODAY, 105)], [_day("#A", TODAY - timedelta(days=8), 100)], set()
        )
        self.assertEqual("flat", insights["trend_direction"])

    def test_no_previous_week(self) -> None:
        insights = compute_insights([], [_day("#A", TODAY, 3)], [], set())
        self.assertEqual(100, insights["trend_percent"])
        self.assertIsNone(compute_insights([], [], [], set())["mvp_name"])


class TrophyGainTests(unittest.TestCase):
    def _log(self, when, trophies):
        return {"recorded_at": when, "trophies": trophies}

    def test_gains(self) -> None:
        logs = [
            self._log(datetime(2026, 2, 1, 10, tzinfo=timezone.utc), 900),
            self._log(datetime(2026, 2, 2, 10, tzinfo=timezone.utc), 950),
            self._log(datetime(2026, 2, 9, 10, tzinfo=timezone.utc), 1000),
            self._log(datetime(2026, 2, 10, 1, tzinfo=timezone.utc), 1010),
        ]
        self.assertEqual((20, 80), compute_trophy_gains(1030, logs, NOW))

    def test_short_history_falls_back_to_oldest(self) -> None:
        logs = [self._log(datetime(2026, 2, 8, 10, tzinfo=timezone.utc), 1000)]
        self.assertEqual((None, 25), compute_trophy_gains(1025, logs, NOW))

    def test_no_logs(self) -> None:
        self.assertEqual((None, None), compute_trophy_gains(1000, [], NOW))


class BattleFeedTests(unittest.TestCase):
    def _row(self, tag, when, **extra):
        row = {
            "player_tag": tag,
            "battle_time": when,
            "mode": "gemGrab",
            "map": "Hard Rock Mine",
            "result": "victory",
            "trophy_change": 8,
            "brawler_name": "SHELLY",
            "brawler_power": 9,
            "is_star_player": False,
            "teams_json": None,
        }
        row.update(extra)
        return row

    def test_groups_club_players_into_one_match(self) -> None:
        when = NOW - timedelta(hours=2)
        teams = json.dumps(
            [
                [{"tag": "#X", "name": "X"}, {"tag": "#Y", "name": "Y"}],
                [{"tag": "#A", "name": "a", "brawler": "SHELLY", "power": 9}, {"tag": "#B", "name": "b"}],
            ]
        )
        feed = group_battle_feed(
            [
                self._row("#A", when, teams_json=teams, is_star_player=True),
                self._row("#B", when),
                self._row("#A", when - timedelta(hours=1), mode="brawlBall"),
            ],
            {"#A": "Alice", "#B": "Bob"},
            NOW,
        )
        self.assertEqual(2, len(feed))
        match = feed[0]
        self.assertEqual(["Alice", "Bob"], [p["name"] for p in match["club_players"]])
        self.assertTrue(match["club_players"][0]["is_star_player"])
        self.assertEqual(["#A", "#B"], [p["tag"] for p in match["our_team"]])
        self.assertEqual("Alice", match["our_team"][0]["name"])
        self.assertEqual(["#X", "#Y"], [p["tag"] for p in match["their_team"]])
        self.assertIsNone(feed[1]["our_team"])
        self.assertEqual("brawlBall", feed[1]["mode"])

    def test_future_times_are_shifted_back(self) -> None:
        feed = group_battle_feed(
            [self._row("#A", NOW + timedelta(minutes=160))], {"#A": "Alice"}, NOW
        )
        self.assertEqual(NOW - timedelta(minutes=20), feed[0]["battle_time"])


class WeeklyReportTests(unittest.TestCase):
    def _report(self):
        members = [
            _member("#A", "Alice", 1200, is_active=True),
            _member("#B", "Bob", 800, is_active=False),
        ]
        logs = [
            {"player_tag": "#A", "trophies": 1150, "trophy_change": 50, "recorded_at": NOW - timedelta(days=2)},
            {"player_tag": "#A", "trophies": 1200, "trophy_change": 50, "recorded_at": NOW - timedelta(days=1)},
            {"player_tag": "#B", "trophies": 800, "trophy_change": -30, "recorded_at": NOW - timedelta(days=1)},
        ]
        events = [
            {"event_type": "join", "player_name": "Bob", "event_time": NOW - timedelta(days=3)},
        ]
        return compute_weekly_report(members, logs, events, NOW)

    def test_numbers(self) -> None:
        report = self._report()
        self.assertEqual(2, report["total_members"])
        self.assertEqual(1000, report["average_trophies"])
        self.assertEqual(50, report["activity_rate"])
        self.assertEqual([("#A", 100)], [(m["tag"], m["trophy_change"]) for m in report["top_gainers"]])
        self.assertEqual([("#B", -30)], [(m["tag"], m["trophy_change"]) for m in report["top_losers"]])
        trend = dict(report["trophy_trend"])
        self.assertEqual(1150, trend[(NOW - timedelta(days=2)).date()])
        self.assertEqual(2000, trend[(NOW - timedelta(days=1)).date()])
        self.assertEqual(2000, trend[TODAY])

    def test_format(self) -> None:
        text = format_weekly_report(self._report())
        assert_has_section(text, "Top gainers")
        assert_player_count_in_section(text, "Top gainers", 1)
        assert_player_count_in_section(text, "Biggest losses", 1)
        assert_has_section(text, "Recent events")
        self.assertIn("1) Alice +100", text)
        self.assertIn("1) Bob -30", text)
        self.assertIn("join: Bob", text)

    def test_empty_club(self) -> None:
        report = compute_weekly_report([], [], [], NOW)
        self.assertEqual(0, report["average_trophies"])
        self.assertEqual([], report["trophy_trend"])
        text = format_weekly_report(report)
        self.assertNotIn("Recent events", text)


class MemberDetailTests(unittest.TestCase):
    def _inputs(self):
        member = _member(
            "#A",
            "Alice",
            1040,
            highest_trophies=1100,
            rank_current="Mythic I",
            rank_highest="Legendary II",
        )
        logs = [
            {
                "player_tag": "#A",
                "trophies": 1000 + i,
                "trophy_change": 1,
                "activity_type": "minimal",
                "recorded_at": NOW - timedelta(hours=35 - i),
            }
            for i in range(36)
        ]
        history = {
            "player_tag": "#A",
            "player_name": "Alice",
            "first_seen": NOW - timedelta(days=40),
            "times_joined": 2,
            "times_left": 1,
            "notes": "Trial member",
        }
        daily = [
            _day("#A", TODAY - timedelta(days=3), 0),
            _day("#A", TODAY - timedelta(days=1), 4, wins=2),
            _day("#A", TODAY, 10, wins=6, gained=80, lost=20, stars=2),
        ]
        tracking = {"player_tag": "#A", "power_ups": 3, "unlocks": 1}
        return member, logs, history, daily, tracking

    def test_detail(self) -> None:
        detail = compute_member_detail(*self._inputs(), NOW)
        self.assertEqual(reports.MEMBER_DETAIL_LOGS, len(detail["activity_history"]))
        self.assertEqual(1035, detail["activity_history"][0]["trophies"])
        self.assertEqual(14, detail["totals"].battles)
        self.assertEqual(57, detail["totals"].win_rate)
        self.assertEqual(60, detail["totals"].net_trophies)
        self.assertEqual(7.0, detail["average_battles_per_active_day"])
        self.assertEqual((2, 2), (detail["streaks"].current, detail["streaks"].best))
        # first log of the day is at midnight, 1023 trophies
        self.assertEqual(17, detail["trophies_24h"])
        self.assertEqual(40, detail["trophies_7d"])
        self.assertEqual((3, 1), (detail["power_ups"], detail["unlocks"]))

    def test_new_member_without_stats(self) -> None:
        detail = compute_member_detail(_member("#N", "New"), [], None, [], None, NOW)
        self.assertEqual([], detail["activity_history"])
        self.assertIsNone(detail["history"])
        self.assertEqual(0, detail["totals"].battles)
        self.assertEqual(0, detail["average_battles_per_active_day"])
        self.assertIsNone(detail["trophies_24h"])
        self.assertEqual(0, detail["power_ups"])
        text = format_member_detail(detail)
        self.assertNotIn("Gains:", text)
        self.assertIn("No data available.", text)

    def test_format(self) -> None:
        text = format_member_detail(compute_member_detail(*self._inputs(), NOW))
        self.assertIn("Alice (#A) - member", text)
        self.assertIn("Gains: 24h +17, 7d +40", text)
        self.assertIn("joined 2x, left 1x", text)
        self.assertIn("Notes: Trial member", text)
        self.assertIn("Battles: 14 (8W/6L, 57% win rate)", text)
        self.assertIn("Power-ups: 3, unlocks: 1", text)
        assert_has_section(text, "Recent activity")
        self.assertIn("1035 (+1) minimal", text.splitlines()[-reports.MEMBER_DETAIL_LOGS])


class ReportBuilderTests(unittest.IsolatedAsyncioTestCase):
    async def test_battle_feed_clamps_paging(self) -> None:
        get_battles = AsyncMock(return_value=([], 0))
        with patch.object(reports, "get_members", new=AsyncMock(return_value={})), patch.object(
            reports, "get_battles", new=get_battles
        ), patch.object(reports, "get_battle_modes", new=AsyncMock(return_value=["gemGrab"])):
            result = await reports.build_battle_feed(limit=1000, offset=-5, now=NOW)
        self.assertEqual({"matches": [], "total": 0, "modes": ["gemGrab"]}, result)
        kwargs = get_battles.await_args.kwargs
        self.assertEqual(reports.FEED_MAX_LIMIT, kwargs["limit"])
        self.assertEqual(0, kwargs["offset"])

    async def test_member_gains(self) -> None:
        logs = [
            {"player_tag": "#A", "trophies": 1000, "recorded_at": datetime(2026, 2, 10, 1, tzinfo=timezone.utc)},
        ]
        with patch.object(
            reports, "get_current_members", new=AsyncMock(return_value=[_member("#A", "Alice", 1040)])
        ), patch.object(reports, "get_activity_logs", new=AsyncMock(return_value=logs)):
            rows = await reports.build_member_gains(NOW)
        self.assertEqual(40, rows[0]["trophies_24h"])
        self.assertEqual(40, rows[0]["trophies_7d"])

    async def test_member_detail_reads_one_member(self) -> None:
        get_daily_stats = AsyncMock(return_value=[_day("#A", TODAY, 3, wins=2)])
        get_activity_logs = AsyncMock(return_value=[])
        with patch.object(
            reports, "get_member", new=AsyncMock(return_value=_member("#A", "Alice"))
        ), patch.object(reports, "get_activity_logs", new=get_activity_logs), patch.object(
            reports, "get_member_history", new=AsyncMock(return_value=None)
        ), patch.object(reports, "get_daily_stats", new=get_daily_stats), patch.object(
            reports,
            "get_player_tracking",
            new=AsyncMock(return_value={"power_ups": 2, "unlocks": 0}),
        ), pinned_utc(NOW):
            detail = await reports.build_member_detail("#A")
        get_activity_logs.assert_awaited_once_with(player_tag="#A")
        self.assertEqual(
            {"since": TODAY - timedelta(days=reports.MEMBER_DETAIL_DAYS), "player_tag": "#A"},
            get_daily_stats.await_args.kwargs,
        )
        self.assertEqual(3, detail["totals"].battles)
        self.assertEqual(2, detail["power_ups"])

    async def test_member_detail_unknown_tag(self) -> None:
        get_activity_logs = AsyncMock()
        with patch.object(
            reports, "get_member", new=AsyncMock(return_value=None)
        ), patch.object(reports, "get_activity_logs", new=get_activity_logs):
            self.assertIsNone(await reports.build_member_detail("#NOPE", NOW))
        get_activity_logs.assert_not_awaited()

    async def test_weekly_report_defaults_to_current_time(self) -> None:
        get_activity_logs = AsyncMock(return_value=[])
        with patch.object(
            reports, "get_current_members", new=AsyncMock(return_value=[])
        ), patch.object(reports, "get_activity_logs", new=get_activity_logs), patch.object(
            reports, "get_club_events", new=AsyncMock(return_value=[])
        ), pinned_utc(NOW):
            report = await reports.build_weekly_report()
        self.assertEqual(NOW, report["generated_at"])
        get_activity_logs.assert_awaited_once_with(since=NOW - timedelta(days=7))
