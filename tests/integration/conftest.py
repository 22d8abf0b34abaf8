"""Integration test fixtures: real SQLite files and a stubbed provider, no network."""

from __future__ import annotations

from pathlib import Path

import httpx
import pytest
import respx

from supply_tracker.core.config import (
    IngestionConfig,
    ProviderConfig,
    StorageConfig,
    TrackerConfig,
)
from supply_tracker.core.models import StorageBackend
from supply_tracker.ingestion.store import SqliteStore

STUB_BASE_URL = "https://stub.test/api/v3"


class ProviderStub:
    """In-memory markets provider served through respx side effects.

    `supply` maps asset id to its current circulating supply; tests mutate
    it between cycles to simulate supply drift.
    Ids in `malformed` are served without a symbol.
    """

    def __init__(self, count: int) -> None:
        self.supply: dict[str, float | None] = {
            f"asset-{i}": 1_000_000.0 + i for i in range(count)
        }
        self.detail_supply: dict[str, float] = {}
        self.malformed: set[str] = set()
        self.market_calls = 0
        self.detail_calls = 0

    def _record(self, asset_id: str) -> dict:
        index = int(asset_id.split("-")[1])
        return {
            "id": asset_id,
            "symbol": None if asset_id in self.malformed else f"a{index}",
            "name": f"Asset {index}",
            "image": f"https://img.test/{asset_id}.png",
            "current_price": 1.0 + index,
            "market_cap": 1e9 - index,
            "market_cap_rank": index + 1,
            "total_volume": 1e6,
            "circulating_supply": self.supply[asset_id],
            "total_supply": None,
            "max_supply": None,
        }

    def markets(self, request: httpx.Request) -> httpx.Response:
        self.market_calls += 1
        page = int(request.url.params["page"])
        per_page = int(request.url.params["per_page"])
        ids = list(self.supply)[(page - 1) * per_page : page * per_page]
        return httpx.Response(200, json=[self._record(i) for i in ids])

    def detail(self, request: httpx.Request, asset_id: str) -> httpx.Response:
        self.detail_calls += 1
        if asset_id not in self.detail_supply:
            return httpx.Response(404, json={"error": "coin not found"})
        index = int(asset_id.split("-")[1])
        return httpx.Response(
            200,
            json={
                "id": asset_id,
                "symbol": f"a{index}",
                "name": f"Asset {index}",
                "market_data": {"circulating_supply": self.detail_supply[asset_id]},
            },
        )

    def install(self, router) -> None:
        router.get(f"{STUB_BASE_URL}/coins/markets").mock(side_effect=self.markets)
        router.get(host="stub.test", path__regex=r"^/api/v3/coins/(?P<asset_id>[\w-]+)$").mock(
            side_effect=self.detail
        )


@pytest.fixture
def integration_config(tmp_path: Path) -> TrackerConfig:
    return TrackerConfig(
        provider=ProviderConfig(
            base_url=STUB_BASE_URL,
            rate_limit_per_minute=10000,
            default_retry_after=0,
            transient_backoff_seconds=0,
        ),
        ingestion=IngestionConfig(
            page_delay_seconds=0,
            detail_delay_seconds=0,
            failure_delay_seconds=0,
            priority_symbols=(),
        ),
        storage=StorageConfig(
            backend=StorageBackend.SQLITE,
            sqlite_path=str(tmp_path / "integration.db"),
        ),
    )


@pytest.fixture
async def integration_store(integration_config: TrackerConfig) -> SqliteStore:
    """An initialized file-backed SqliteStore."""
    store = SqliteStore(integration_config.storage)
    await store.initialize()
    yield store
    await store.close()


@pytest.fixture
def stub() -> ProviderStub:
    """Three-asset provider: asset-0..asset-2 with symbols A0..A2."""
    return ProviderStub(3)


@pytest.fixture
def mocked_provider(stub: ProviderStub):
    with respx.mock(assert_all_called=False) as router:
        stub.install(router)
        yield stub
