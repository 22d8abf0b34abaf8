"""Tests for supply_tracker.core.models."""

from datetime import UTC, date, datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from supply_tracker.core.models import (
    ChangeResult,
    CoinRecord,
    Observation,
    RawAsset,
    RawAssetDetail,
    Snapshot,
    SupplySeries,
)

pytestmark = pytest.mark.unit


class TestObservation:
    def test_naive_timestamp_is_utc(self):
        obs = Observation(value=1, timestamp=datetime(2024, 1, 1, 23, 30))
        assert obs.timestamp.tzinfo is UTC

    def test_offset_converted_to_utc_day(self):
        plus_three = timezone(timedelta(hours=3))
        obs = Observation(value=1, timestamp=datetime(2024, 1, 2, 1, 0, tzinfo=plus_three))
        assert obs.day == date(2024, 1, 1)

    def test_negative_value_rejected(self):
        with pytest.raises(ValidationError, match="cannot be negative"):
            Observation(value=-1, timestamp=datetime(2024, 1, 1))

    def test_frozen(self):
        obs = Observation(value=1, timestamp=datetime(2024, 1, 1))
        with pytest.raises(ValidationError):
            obs.value = 2


class TestSupplySeries:
    def test_symbol_canonical(self):
        assert SupplySeries(symbol=" bnb ").symbol == "BNB"

    def test_empty_symbol_rejected(self):
        with pytest.raises(ValidationError, match="cannot be empty"):
            SupplySeries(symbol="  ")

    def test_sorted_desc_and_latest(self, make_observation):
        series = SupplySeries(
            symbol="BTC",
            observations=[
                make_observation(100, days_ago=5),
                make_observation(120, days_ago=1),
                make_observation(110, days_ago=3),
            ],
        )
        assert [o.value for o in series.sorted_desc()] == [120, 110, 100]
        assert series.latest().value == 120
        assert len(series) == 3

    def test_latest_empty(self):
        assert SupplySeries(symbol="BTC").latest() is None

    def test_daily_keeps_latest_per_day(self, fixed_now):
        day = fixed_now.replace(hour=0)
        series = SupplySeries(
            symbol="BTC",
            observations=[
                Observation(value=1, timestamp=day + timedelta(hours=1)),
                Observation(value=2, timestamp=day + timedelta(hours=9)),
                Observation(value=3, timestamp=day - timedelta(days=1)),
            ],
        )
        assert [o.value for o in series.daily()] == [2, 3]
        assert series.has_observation_on(fixed_now.date())
        assert not series.has_observation_on(fixed_now.date() + timedelta(days=1))


class TestChangeResult:
    def test_empty(self):
        result = ChangeResult.empty()
        assert result.is_empty
        assert result.percent_change is None

    def test_percent_change(self):
        result = ChangeResult(change=10, reference_value=200.0)
        assert result.percent_change == pytest.approx(5.0)
        assert not result.is_empty

    def test_percent_change_in_dump(self):
        dumped = ChangeResult(change=-50, reference_value=100.0).model_dump()
        assert dumped["percent_change"] == pytest.approx(-50.0)


class TestRawAsset:
    def test_unknown_fields_ignored(self):
        asset = RawAsset.model_validate(
            {"id": "bitcoin", "symbol": "btc", "sparkline_in_7d": None, "ath": 1}
        )
        assert asset.circulating_supply is None
        assert not asset.has_valid_supply

    def test_zero_supply_is_not_valid(self, make_asset):
        assert not make_asset(circulating_supply=0).has_valid_supply
        assert make_asset().has_valid_supply


class TestRawAssetDetail:
    def test_flattens_market_data(self):
        detail = RawAssetDetail.from_payload(
            {
                "id": "binancecoin",
                "symbol": "bnb",
                "name": "BNB",
                "market_data": {"circulating_supply": 150.0, "total_supply": 200.0},
            }
        )
        assert detail.circulating_supply == 150.0
        assert detail.max_supply is None
        assert detail.has_valid_supply

    def test_missing_market_data(self):
        detail = RawAssetDetail.from_payload({"id": "x", "symbol": "x"})
        assert not detail.has_valid_supply

    def test_missing_id_raises(self):
        with pytest.raises(KeyError):
            RawAssetDetail.from_payload({"symbol": "x"})


class TestSnapshot:
    def test_get_coin_case_insensitive(self, fixed_now):
        coin = CoinRecord(rank=1, name="Bitcoin", symbol="btc", circulating_supply=1.0)
        snap = Snapshot(day=fixed_now.date(), captured_at=fixed_now, coins=[coin])
        assert snap.get_coin("BTC") is coin
        assert snap.get_coin("eth") is None

    def test_rank_must_be_positive(self):
        with pytest.raises(ValidationError, match="rank"):
            CoinRecord(rank=0, name="x", symbol="x", circulating_supply=1.0)
