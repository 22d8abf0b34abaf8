"""Tests for supply_tracker.analytics.report."""

from datetime import timedelta

import pytest

from supply_tracker.analytics.report import (
    comparison_report,
    history_statistics,
    supply_details,
)
from supply_tracker.core.models import SupplySeries

pytestmark = pytest.mark.unit


@pytest.fixture
def btc_series(make_observation) -> SupplySeries:
    return SupplySeries(
        symbol="BTC",
        observations=[
            make_observation(100, days_ago=45),
            make_observation(110, days_ago=8),
            make_observation(118, days_ago=2),
            make_observation(120, days_ago=0),
        ],
    )


class TestSupplyDetails:
    def test_readings(self, btc_series, fixed_now):
        details = supply_details(btc_series, fixed_now)

        assert details.symbol == "BTC"
        assert details.total_records == 4
        assert details.latest_supply == 120
        assert details.readings["day"].value == 118
        assert details.readings["week"].value == 110
        assert details.readings["month"].value == 100
        assert details.readings["month"].timestamp == fixed_now - timedelta(days=45)
        assert details.observations == []

    def test_no_acceptance_window(self, make_observation, fixed_now):
        series = SupplySeries(symbol="X", observations=[make_observation(5, days_ago=90)])
        details = supply_details(series, fixed_now)
        assert details.readings["day"].value == 5

    def test_include_observations_newest_first(self, btc_series, fixed_now):
        details = supply_details(btc_series, fixed_now, include_observations=True)
        assert [o.value for o in details.observations] == [120, 118, 110, 100]

    def test_empty_series(self, fixed_now):
        details = supply_details(SupplySeries(symbol="X"), fixed_now)
        assert details.latest_supply is None
        assert details.readings == {"day": None, "week": None, "month": None}


class TestComparisonReport:
    def test_changes(self, btc_series, fixed_now):
        [entry] = comparison_report({"BTC": btc_series}, fixed_now)

        assert entry.symbol == "BTC"
        assert entry.latest == 120
        week = entry.changes["week"]
        assert week.absolute == 10
        assert week.percentage == pytest.approx(100 / 11)
        assert week.old_value == 110
        assert week.diff_days == pytest.approx(1.0)

    def test_non_positive_old_value(self, make_observation, fixed_now):
        series = SupplySeries(
            symbol="NEW",
            observations=[make_observation(0, days_ago=3), make_observation(50)],
        )
        [entry] = comparison_report({"NEW": series}, fixed_now)
        assert entry.changes["day"] is None
        assert entry.changes["month"] is None

    def test_skips_empty_and_sorts(self, make_observation, fixed_now):
        all_series = {
            "ETH": SupplySeries(symbol="ETH", observations=[make_observation(1)]),
            "EMPTY": SupplySeries(symbol="EMPTY"),
            "BTC": SupplySeries(symbol="BTC", observations=[make_observation(2)]),
        }
        assert [e.symbol for e in comparison_report(all_series, fixed_now)] == ["BTC", "ETH"]


class TestHistoryStatistics:
    def test_counts(self, make_observation, fixed_now):
        all_series = [
            SupplySeries(symbol="BTC", observations=[make_observation(1, days_ago=d) for d in (0, 1, 2)]),
            SupplySeries(symbol="ETH", observations=[make_observation(1, days_ago=1)]),
            SupplySeries(symbol="SOL", observations=[make_observation(1)]),
        ]

        stats = history_statistics(all_series, fixed_now.date())

        assert stats.total_series == 3
        assert stats.single_record == 2
        assert stats.multi_record == 1
        assert stats.observed_today == 2
        assert stats.most_records[0] == ("BTC", 3)
        assert stats.fewest_records[0] == ("ETH", 1)

    def test_accepts_generator(self, make_observation, fixed_now):
        gen = (SupplySeries(symbol=s, observations=[make_observation(1)]) for s in ("A", "B"))
        stats = history_statistics(gen, fixed_now.date())
        assert stats.total_series == 2
        assert stats.observed_today == 2
