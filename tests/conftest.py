"""Shared pytest fixtures for supply-tracker."""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from supply_tracker.core.config import (
    IngestionConfig,
    ProviderConfig,
    StorageConfig,
    TrackerConfig,
)
from supply_tracker.core.models import Observation, RawAsset
from supply_tracker.ingestion.store import SqliteStore

BASE_URL = "https://api.test/api/v3"

FIXED_NOW = datetime(2024, 6, 15, 12, 0, 0, tzinfo=UTC)


@pytest.fixture
def fixed_now() -> datetime:
    return FIXED_NOW


@pytest.fixture
def provider_config() -> ProviderConfig:
    """Provider config with zero backoff and an effectively unlimited rate."""
    return ProviderConfig(
        base_url=BASE_URL,
        rate_limit_per_minute=10000,
        default_retry_after=0,
        transient_backoff_seconds=0,
        request_timeout=5,
    )


@pytest.fixture
def tracker_config(provider_config: ProviderConfig) -> TrackerConfig:
    return TrackerConfig(
        provider=provider_config,
        ingestion=IngestionConfig(
            page_delay_seconds=0,
            detail_delay_seconds=0,
            failure_delay_seconds=0,
        ),
        storage=StorageConfig(sqlite_path=":memory:"),
    )


@pytest.fixture
async def store():
    """In-memory SqliteStore."""
    s = SqliteStore(StorageConfig(sqlite_path=":memory:"))
    await s.initialize()
    yield s
    await s.close()


@pytest.fixture
def make_observation():
    """Factory: observation `days_ago` days before FIXED_NOW."""

    def _make(value: float, days_ago: float = 0, now: datetime = FIXED_NOW) -> Observation:
        return Observation(value=value, timestamp=now - timedelta(days=days_ago))

    return _make


@pytest.fixture
def make_asset():
    """Factory for RawAsset with overridable defaults."""

    def _make(asset_id: str = "bitcoin", symbol: str = "btc", **overrides) -> RawAsset:
        defaults = dict(
            id=asset_id,
            symbol=symbol,
            name=asset_id.title(),
            image=f"https://img.test/{asset_id}.png",
            current_price=1.0,
            market_cap=1_000_000.0,
            total_volume=10_000.0,
            circulating_supply=1_000_000.0,
            total_supply=2_000_000.0,
            max_supply=None,
        )
        defaults.update(overrides)
        return RawAsset(**defaults)

    return _make


@pytest.fixture
def sleeps(monkeypatch) -> list[float]:
    """Record every non-zero asyncio.sleep delay instead of waiting it out."""
    recorded: list[float] = []
    real_sleep = asyncio.sleep

    async def _sleep(delay, *args, **kwargs):
        if delay:
            recorded.append(delay)
        await real_sleep(0)

    monkeypatch.setattr(asyncio, "sleep", _sleep)
    return recorded
