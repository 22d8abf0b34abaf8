"""Tests for supply_tracker.analytics.changes."""

from datetime import timedelta

import pytest

from supply_tracker.analytics.changes import (
    SupplyChangeCalculator,
    nearest_prior,
    round_half_up,
)
from supply_tracker.core.config import ChangesConfig
from supply_tracker.core.models import Observation

pytestmark = pytest.mark.unit


@pytest.fixture
def calculator() -> SupplyChangeCalculator:
    return SupplyChangeCalculator(ChangesConfig())


class TestRoundHalfUp:
    @pytest.mark.parametrize(
        "value, expected",
        [(2.5, 3), (2.4999, 2), (-2.5, -2), (-2.6, -3), (0.5, 1), (-0.5, 0)],
    )
    def test_rounding(self, value, expected):
        assert round_half_up(value) == expected


class TestNearestPrior:
    def test_ignores_observations_after_target(self, make_observation, fixed_now):
        obs = [make_observation(1, days_ago=0.5), make_observation(2, days_ago=3)]
        assert nearest_prior(obs, fixed_now - timedelta(days=1)).value == 2

    def test_observation_at_target_counts(self, make_observation, fixed_now):
        obs = [make_observation(5, days_ago=7)]
        assert nearest_prior(obs, fixed_now - timedelta(days=7)).value == 5

    def test_tie_keeps_first_scanned(self, fixed_now):
        ts = fixed_now - timedelta(days=8)
        obs = [Observation(value=1, timestamp=ts), Observation(value=2, timestamp=ts)]
        assert nearest_prior(obs, fixed_now - timedelta(days=7)).value == 1

    def test_max_distance(self, make_observation, fixed_now):
        obs = [make_observation(1, days_ago=20)]
        target = fixed_now - timedelta(days=1)
        assert nearest_prior(obs, target, max_distance=timedelta(days=7)) is None
        assert nearest_prior(obs, target).value == 1

    def test_unsorted_input(self, make_observation, fixed_now):
        obs = [
            make_observation(3, days_ago=2),
            make_observation(1, days_ago=40),
            make_observation(2, days_ago=10),
        ]
        assert nearest_prior(obs, fixed_now - timedelta(days=7)).value == 2


class TestChangeOver:
    def test_nearest_prior_for_week(self, calculator, make_observation, fixed_now):
        obs = [
            make_observation(100, days_ago=40),
            make_observation(90, days_ago=10),
            make_observation(80, days_ago=2),
        ]

        result = calculator.change_over(obs, 120, 7, now=fixed_now)

        assert result.change == 30
        assert result.reference_value == 90
        assert result.reference_timestamp == fixed_now - timedelta(days=10)
        assert result.is_estimated is False

    def test_acceptance_window_rejects_old_reference(self, calculator, make_observation, fixed_now):
        obs = [make_observation(100, days_ago=20)]

        assert calculator.change_over(obs, 120, 1, now=fixed_now).is_empty
        assert calculator.change_over(obs, 120, 7, now=fixed_now).is_empty

    def test_month_extrapolates_from_recent_only_history(
        self, calculator, make_observation, fixed_now
    ):
        obs = [make_observation(100, days_ago=20)]

        result = calculator.change_over(obs, 120, 30, now=fixed_now)

        # 20 units over 20 days -> 1/day -> 30 over the month
        assert result.change == 30
        assert result.reference_value == 90
        assert result.is_estimated is True

    def test_month_uses_most_recent_for_extrapolation(
        self, calculator, make_observation, fixed_now
    ):
        obs = [make_observation(100, days_ago=20), make_observation(110, days_ago=10)]
        result = calculator.change_over(obs, 120, 30, now=fixed_now)
        assert result.reference_timestamp == fixed_now - timedelta(days=10)
        assert result.change == 30

    def test_extrapolation_elapsed_floor_is_one_day(self, calculator, fixed_now):
        obs = [Observation(value=99.9, timestamp=fixed_now - timedelta(hours=6))]
        result = calculator.change_over(obs, 100, 30, now=fixed_now)
        assert result.change == 3
        assert result.reference_value == 97
        assert result.is_estimated

    def test_extrapolation_non_positive_past_is_rejected(
        self, calculator, make_observation, fixed_now
    ):
        obs = [make_observation(10, days_ago=1)]
        assert calculator.change_over(obs, 100, 30, now=fixed_now).is_empty

    def test_long_window_has_no_acceptance_cutoff(self, calculator, make_observation, fixed_now):
        obs = [make_observation(50, days_ago=100)]
        result = calculator.change_over(obs, 80, 30, now=fixed_now)
        assert result.change == 30
        assert result.reference_value == 50
        assert not result.is_estimated

    def test_non_positive_baseline(self, calculator, make_observation, fixed_now):
        obs = [make_observation(0, days_ago=7)]
        assert calculator.change_over(obs, 120, 7, now=fixed_now).is_empty
        assert calculator.change_over(obs, 120, 30, now=fixed_now).is_empty

    @pytest.mark.parametrize("current", [0, -5, None])
    def test_non_positive_current(self, calculator, make_observation, fixed_now, current):
        obs = [make_observation(100, days_ago=7)]
        assert calculator.change_over(obs, current, 7, now=fixed_now).is_empty

    def test_empty_series(self, calculator, fixed_now):
        assert calculator.change_over([], 100, 1, now=fixed_now).is_empty

    def test_only_future_observations_short_window(self, calculator, make_observation, fixed_now):
        obs = [make_observation(100, days_ago=0.1)]
        assert calculator.change_over(obs, 100, 1, now=fixed_now).is_empty

    def test_change_is_rounded_half_up(self, calculator, make_observation, fixed_now):
        obs = [make_observation(100, days_ago=1)]
        assert calculator.change_over(obs, 100.5, 1, now=fixed_now).change == 1
        assert calculator.change_over(obs, 99.5, 1, now=fixed_now).change == 0

    def test_thresholds_from_config(self, make_observation, fixed_now):
        calc = SupplyChangeCalculator(ChangesConfig(acceptance_window_days=30))
        obs = [make_observation(100, days_ago=20)]
        assert calc.change_over(obs, 120, 1, now=fixed_now).change == 20


class TestChangesFor:
    def test_all_windows(self, calculator, make_observation, fixed_now):
        obs = [
            make_observation(100, days_ago=31),
            make_observation(107, days_ago=7),
            make_observation(109, days_ago=1),
        ]

        results = calculator.changes_for(obs, 110, now=fixed_now)

        assert set(results) == {"1d", "1w", "1m"}
        assert results["1d"].change == 1
        assert results["1w"].change == 3
        assert results["1m"].change == 10
