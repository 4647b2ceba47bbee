import unittest
from datetime import date

from battles import process_battle_log
from daily_stats import DailyStatRow, affected_days, aggregate_daily_stats
from tests._fakes import battle_item


class DailyStatsTests(unittest.TestCase):
    def _battles(self):
        return process_battle_log(
            "#ME",
            [
                battle_item("#ME", "20260127T100000.000Z", result="victory", trophy_change=8, star_tag="#ME"),
                battle_item("#ME", "20260127T110000.000Z", result="defeat", trophy_change=-5),
                battle_item("#ME", "20260127T120000.000Z", result="draw", trophy_change=0),
                battle_item("#ME", "20260128T000100.000Z", result="victory", trophy_change=10),
            ],
        )

    def test_aggregate_by_day(self) -> None:
        rows = aggregate_daily_stats(self._battles())
        self.assertEqual(
            [
                DailyStatRow("#ME", date(2026, 1, 27), 3, 1, 1, 1, 8, 5),
                DailyStatRow("#ME", date(2026, 1, 28), 1, 1, 0, 0, 10, 0),
            ],
            rows,
        )

    def test_duplicate_battles_counted_once(self) -> None:
        battles = self._battles()
        rows = aggregate_daily_stats(battles + battles)
        self.assertEqual(3, rows[0].battles)

    def test_accepts_stored_rows(self) -> None:
        stored = [b.to_row() for b in self._battles()]
        self.assertEqual(aggregate_daily_stats(self._battles()), aggregate_daily_stats(stored))

    def test_affected_days(self) -> None:
        self.assertEqual(
            {("#ME", date(2026, 1, 27)), ("#ME", date(2026, 1, 28))},
            affected_days(self._battles()),
        )
