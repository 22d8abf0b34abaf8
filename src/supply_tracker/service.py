"""Inbound operations over the store and the ingestion cycle."""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta

from pydantic import BaseModel, ConfigDict

from supply_tracker.analytics.changes import SupplyChangeCalculator
from supply_tracker.analytics.report import (
    ComparisonEntry,
    HistoryStatistics,
    SupplyDetails,
    comparison_report,
    history_statistics,
    supply_details,
)
from supply_tracker.core.config import TrackerConfig
from supply_tracker.core.exceptions import (
    DuplicateObservationError,
    IngestionError,
    NotFoundError,
)
from supply_tracker.core.models import (
    ChangeResult,
    CoinRecord,
    CycleSummary,
    Observation,
    SupplySeries,
    Symbol,
    as_utc,
    normalize_symbol,
    utc_now,
)
from supply_tracker.ingestion.client import MarketDataClient
from supply_tracker.ingestion.orchestrator import IngestionOrchestrator
from supply_tracker.ingestion.store import StorageProtocol, create_store

logger = logging.getLogger(__name__)


class SnapshotPage(BaseModel):
    """One page of the latest snapshot's coins."""

    model_config = ConfigDict(frozen=True)

    coins: list[CoinRecord]
    page: int
    limit: int
    total_coins: int
    max_page: int
    last_updated: datetime


class HistoryPoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    captured_at: datetime
    price: float | None
    volume_24h: float | None
    market_cap: float | None
    circulating_supply: float


class SupplyService:
    """Entry point for callers: trigger a cycle, query series and snapshots.

    Usage:
        async with await SupplyService.create(config) as service:
            summary = await service.run_cycle()
    """

    def __init__(
        self,
        config: TrackerConfig,
        store: StorageProtocol,
        client: MarketDataClient | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._config = config
        self._store = store
        self._client = client
        self._clock = clock
        self._calculator = SupplyChangeCalculator(config.changes)

    @classmethod
    async def create(cls, config: TrackerConfig) -> SupplyService:
        store = await create_store(config.storage)
        return cls(config, store)

    async def __aenter__(self) -> SupplyService:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def close(self) -> None:
        await self._store.close()

    # --- Cycle ---

    async def run_cycle(self, force: bool = False) -> CycleSummary:
        """Trigger one ingestion cycle; a no-op if today's snapshot exists."""
        if self._client is not None:
            return await self._orchestrator(self._client).run_cycle(force=force)
        async with MarketDataClient(self._config.provider) as client:
            return await self._orchestrator(client).run_cycle(force=force)

    def _orchestrator(self, client: MarketDataClient) -> IngestionOrchestrator:
        return IngestionOrchestrator(
            self._config,
            client,
            self._store,
            calculator=self._calculator,
            clock=self._clock,
        )

    async def run_schedule(
        self,
        interval_seconds: float | None = None,
        max_cycles: int | None = None,
        on_summary: Callable[[CycleSummary], None] | None = None,
    ) -> int:
        """Run cycles back to back with a fixed wait between them.

        A cycle that fails on the provider side is logged and the loop goes
        on; storage errors propagate. Returns the number of cycles run once
        `max_cycles` is reached.
        """
        interval = interval_seconds or self._config.ingestion.schedule_interval_seconds
        cycles = 0
        while max_cycles is None or cycles < max_cycles:
            cycles += 1
            try:
                summary = await self.run_cycle()
            except IngestionError as e:
                logger.error("Scheduled cycle %d failed: %s", cycles, e)
            else:
                logger.info("Scheduled cycle %d: %s", cycles, summary.message)
                if on_summary is not None:
                    on_summary(summary)
            if max_cycles is not None and cycles >= max_cycles:
                break
            logger.debug("Next cycle in %.0fs", interval)
            await asyncio.sleep(interval)
        return cycles

    # --- Series ---

    async def latest_series(
        self,
        symbol: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> SupplySeries:
        """Series for one symbol, newest observation first.

        `start` and `end` (inclusive) narrow the observations returned; the
        series may come back empty when nothing falls inside the range.

        Raises:
            NotFoundError: If no series exists for the symbol.
            ValueError: If start is after end.
        """
        if start is not None and end is not None and as_utc(start) > as_utc(end):
            raise ValueError("start must not be after end")
        series = await self._store.get_series(symbol)
        if series is None:
            raise NotFoundError(
                f"No supply history for {normalize_symbol(symbol)}",
                context={"symbol": normalize_symbol(symbol)},
            )
        if start is not None or end is not None:
            in_range = await self._store.observations_between(series.symbol, start, end)
            series = series.model_copy(update={"observations": in_range})
        return series.model_copy(update={"observations": series.sorted_desc()})

    async def bulk_series(self, symbols: Iterable[str]) -> dict[Symbol, list[Observation]]:
        """Daily-grouped history (latest per day, newest first) for each known symbol.

        Unknown symbols are omitted from the result.
        """
        found = await self._store.get_series_bulk(symbols)
        return {symbol: series.daily() for symbol, series in found.items()}

    async def record_observation(self, symbol: str, value: float) -> Observation:
        """Manually append today's observation for a symbol.

        Raises:
            DuplicateObservationError: If the symbol already has one today.
        """
        now = as_utc(self._clock())
        canonical = normalize_symbol(symbol)
        if await self._store.has_observation_on_day(canonical, now.date()):
            raise DuplicateObservationError(
                f"{canonical} already has an observation for {now.date()}",
                context={"symbol": canonical, "day": now.date().isoformat()},
            )
        observation = Observation(value=value, timestamp=now)
        await self._store.append_observation(canonical, observation)
        logger.info("Recorded %s supply %s", canonical, value)
        return observation

    async def changes(self, symbol: str, current_value: float | None = None) -> dict[str, ChangeResult]:
        """1d/1w/1m changes of a symbol against its own latest observation."""
        series = await self.latest_series(symbol)
        if current_value is None:
            latest = series.latest()
            current_value = latest.value if latest else None
        return self._calculator.changes_for(series.observations, current_value, self._clock())

    async def delete_series(self, symbol: str) -> bool:
        deleted = await self._store.delete_series(symbol)
        if deleted:
            logger.warning("Deleted supply series %s", normalize_symbol(symbol))
        return deleted

    # --- Snapshots ---

    async def latest_snapshot(self, page: int = 1, limit: int = 50) -> SnapshotPage:
        """Paginate the latest snapshot's coins.

        Raises:
            ValueError: If page or limit < 1, or page is past the last page.
            NotFoundError: If no snapshot has been saved yet.
        """
        if page < 1 or limit < 1:
            raise ValueError("page and limit must be >= 1")
        snapshot = await self._store.get_latest_snapshot()
        if snapshot is None:
            raise NotFoundError("No coin data available", context={"table": "snapshots"})

        total = len(snapshot.coins)
        max_page = math.ceil(total / limit)
        start = (page - 1) * limit
        if start >= total:
            raise ValueError(f"Page {page} exceeds available data. Max page: {max_page}")
        return SnapshotPage(
            coins=snapshot.coins[start : start + limit],
            page=page,
            limit=limit,
            total_coins=total,
            max_page=max_page,
            last_updated=snapshot.captured_at,
        )

    async def coin_history(self, symbol: str, days: int = 30) -> list[HistoryPoint]:
        """Per-snapshot records of one coin over the last `days`, oldest first.

        Raises:
            NotFoundError: If no snapshot in range contains the symbol.
        """
        canonical = normalize_symbol(symbol)
        now = as_utc(self._clock())
        snapshots = await self._store.get_snapshots(
            start_day=(now - timedelta(days=days)).date(), end_day=now.date()
        )
        points: list[HistoryPoint] = []
        for snapshot in snapshots:
            coin = snapshot.get_coin(canonical)
            if coin is None:
                continue
            points.append(
                HistoryPoint(
                    captured_at=snapshot.captured_at,
                    price=coin.price,
                    volume_24h=coin.volume_24h,
                    market_cap=coin.market_cap,
                    circulating_supply=coin.circulating_supply,
                )
            )
        if not points:
            raise NotFoundError(
                f"No historical data found for {canonical}",
                context={"symbol": canonical, "days": days},
            )
        return points

    async def reset_snapshots(self) -> int:
        removed = await self._store.delete_snapshots()
        logger.warning("Deleted %d snapshot batches", removed)
        return removed

    # --- Reports ---

    async def supply_details(self, symbol: str) -> SupplyDetails:
        series = await self.latest_series(symbol)
        return supply_details(series, self._clock(), include_observations=True)

    async def comparison_report(self) -> list[ComparisonEntry]:
        return comparison_report(await self._store.get_all_series(), self._clock())

    async def history_statistics(self) -> HistoryStatistics:
        all_series = await self._store.get_all_series()
        return history_statistics(all_series.values(), as_utc(self._clock()).date())

    async def status(self) -> dict:
        stats = await self._store.get_statistics()
        stats["healthy"] = await self._store.health_check()
        return stats
