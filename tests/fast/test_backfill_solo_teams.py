import json
import unittest
from datetime import datetime, timezone

from scripts.backfill_solo_teams import rosters_by_time
from tests._fakes import battle_item


class RostersByTimeTests(unittest.TestCase):
    def test_only_solo_showdown_with_players(self) -> None:
        items = [
            battle_item("#ME", "20260127T203456.000Z", mode="soloShowdown", result=None, rank=2),
            battle_item("#ME", "20260127T210000.000Z", mode="gemGrab"),
            battle_item("#ME", "not a time", mode="soloShowdown", result=None, rank=1),
        ]
        rosters = rosters_by_time(items)
        when = datetime(2026, 1, 27, 20, 34, 56, tzinfo=timezone.utc)
        self.assertEqual([when], list(rosters))
        teams = json.loads(rosters[when])
        self.assertEqual([["#ME"], ["#OPP1"]], [[p["tag"] for p in team] for team in teams])

    def test_empty_log(self) -> None:
        self.assertEqual({}, rosters_by_time([]))
