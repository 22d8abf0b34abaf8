"""One collection cycle: paginate, resolve, backfill, persist, snapshot."""

from __future__ import annotations

import asyncio
import logging
import weakref
from collections.abc import Callable
from datetime import date, datetime

from supply_tracker.analytics.changes import SupplyChangeCalculator
from supply_tracker.analytics.snapshot import SnapshotBuilder
from supply_tracker.core.config import TrackerConfig
from supply_tracker.core.exceptions import ExhaustedError, IngestionError, StorageError
from supply_tracker.core.models import (
    CycleState,
    CycleSummary,
    Observation,
    RawAsset,
    RawAssetDetail,
    Symbol,
    as_utc,
    utc_now,
)
from supply_tracker.ingestion.client import MarketDataClient
from supply_tracker.ingestion.resolver import SymbolMap, SymbolResolver
from supply_tracker.ingestion.store import StorageProtocol

logger = logging.getLogger(__name__)


class DayLocks:
    """Process-wide single-flight locks, one per UTC day and event loop."""

    def __init__(self) -> None:
        self._by_loop: weakref.WeakKeyDictionary[
            asyncio.AbstractEventLoop, dict[date, asyncio.Lock]
        ] = weakref.WeakKeyDictionary()

    def get(self, day: date) -> asyncio.Lock:
        loop = asyncio.get_running_loop()
        locks = self._by_loop.setdefault(loop, {})
        for stale in [d for d in locks if d < day and not locks[d].locked()]:
            del locks[stale]
        return locks.setdefault(day, asyncio.Lock())


_DAY_LOCKS = DayLocks()


class _CycleRun:
    """Mutable working state of one cycle, folded into a CycleSummary at the end."""

    def __init__(self, now: datetime) -> None:
        self.now = now
        self.day = now.date()
        self.state = CycleState.IDLE
        self.assets: list[RawAsset] = []
        self.symbol_map = SymbolMap()
        self.valid: dict[Symbol, RawAsset] = {}
        self.pages_fetched = 0
        self.pages_failed = 0
        self.backfill_attempted = 0
        self.backfill_recovered = 0
        self.assets_dropped = 0
        self.detail_ids: set[str] = set()
        self.written = 0
        self.already_present = 0
        self.corrected = 0
        self.failed: dict[Symbol, str] = {}
        self.snapshot_coins = 0

    def summary(self, success: bool, message: str, finished_at: datetime) -> CycleSummary:
        return CycleSummary(
            success=success,
            message=message,
            state=self.state,
            day=self.day,
            pages_fetched=self.pages_fetched,
            pages_failed=self.pages_failed,
            assets_fetched=len(self.assets),
            backfill_attempted=self.backfill_attempted,
            backfill_recovered=self.backfill_recovered,
            written=self.written,
            already_present=self.already_present,
            corrected=self.corrected,
            failed=dict(self.failed),
            snapshot_coins=self.snapshot_coins,
            started_at=self.now,
            finished_at=finished_at,
        )


class IngestionOrchestrator:
    """Runs collection cycles against a market-data client and a store.

    State machine per cycle:
        IDLE -> PAGINATING -> RESOLVING -> BACKFILLING -> PERSISTING -> DONE
        IDLE -> SKIPPED when today's snapshot already exists.

    With `force=True` the IDLE gate is bypassed: same-day observations are
    corrected in place and today's snapshot is replaced wholesale.

    The snapshot is saved last, so a cycle interrupted earlier is completed
    by the next same-day run; observations already committed are left as-is.
    """

    def __init__(
        self,
        config: TrackerConfig,
        client: MarketDataClient,
        store: StorageProtocol,
        resolver: SymbolResolver | None = None,
        calculator: SupplyChangeCalculator | None = None,
        builder: SnapshotBuilder | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._config = config
        self._client = client
        self._store = store
        self._resolver = resolver or SymbolResolver()
        self._builder = builder or SnapshotBuilder(
            calculator or SupplyChangeCalculator(config.changes)
        )
        self._clock = clock

    async def run_cycle(self, force: bool = False) -> CycleSummary:
        """Run one collection cycle for the current UTC day.

        Raises:
            ExhaustedError: If every page request failed.
            StorageError: If the store fails outside a grouped write.
        """
        now = as_utc(self._clock())
        lock = _DAY_LOCKS.get(now.date())
        if lock.locked():
            logger.info("Cycle for %s already running, waiting for it", now.date())
        async with lock:
            return await self._run(_CycleRun(now), force)

    async def _run(self, run: _CycleRun, force: bool) -> CycleSummary:
        if not force and await self._store.snapshot_exists_for_day(run.day):
            run.state = CycleState.SKIPPED
            logger.info("Snapshot for %s already exists, skipping cycle", run.day)
            return run.summary(True, f"Already collected for {run.day}", self._finished())

        run.state = CycleState.PAGINATING
        await self._paginate(run)
        if not run.assets:
            logger.error("Cycle for %s produced no usable assets", run.day)
            return run.summary(False, "No usable assets fetched", self._finished())

        run.state = CycleState.RESOLVING
        await self._resolve(run)

        run.state = CycleState.BACKFILLING
        await self._backfill(run)

        run.state = CycleState.PERSISTING
        await self._persist(run, force)

        run.state = CycleState.DONE
        message = (
            f"Collected {len(run.valid)} symbols: {run.written} written, "
            f"{run.already_present} already present"
        )
        if run.corrected:
            message += f", {run.corrected} corrected"
        if run.failed:
            message += f", {len(run.failed)} failed"
        logger.info("Cycle for %s done. %s", run.day, message)
        return run.summary(True, message, self._finished())

    # --- Paginating ---

    async def _paginate(self, run: _CycleRun) -> None:
        cfg = self._config.ingestion
        per_page = self._config.provider.per_page

        for page in range(1, cfg.page_count + 1):
            try:
                listing_page = await self._client.fetch_listing_page(page)
            except IngestionError as e:
                run.pages_failed += 1
                logger.warning("Page %d skipped: %s", page, e)
                await asyncio.sleep(cfg.failure_delay_seconds)
                continue

            run.pages_fetched += 1
            run.assets.extend(listing_page.assets)
            run.assets_dropped += listing_page.dropped
            if listing_page.received < per_page:
                logger.info(
                    "Page %d is short (%d records), stopping pagination",
                    page, listing_page.received,
                )
                break
            if page < cfg.page_count:
                await asyncio.sleep(cfg.page_delay_seconds)

        if run.pages_fetched == 0:
            raise ExhaustedError(
                f"All {run.pages_failed} page requests failed",
                context={"day": run.day.isoformat(), "pages_failed": run.pages_failed},
            )
        logger.info(
            "Fetched %d assets from %d pages (%d failed, %d malformed records dropped)",
            len(run.assets), run.pages_fetched, run.pages_failed, run.assets_dropped,
        )

    # --- Resolving ---

    async def _resolve(self, run: _CycleRun) -> None:
        listing = await self._client.fetch_symbol_listing()
        run.symbol_map = self._resolver.resolve(run.assets, listing)
        for asset in run.assets:
            symbol = run.symbol_map.symbol_for(asset.id)
            if symbol is not None and asset.has_valid_supply:
                run.valid.setdefault(symbol, asset)

    def _missing_supply(self, run: _CycleRun) -> list[RawAsset]:
        missing: list[RawAsset] = []
        seen_ids: set[str] = set()
        for asset in run.assets:
            symbol = run.symbol_map.symbol_for(asset.id)
            if symbol is None or symbol in run.valid or asset.id in seen_ids:
                continue
            seen_ids.add(asset.id)
            missing.append(asset)
        return missing

    # --- Backfilling ---

    async def _backfill(self, run: _CycleRun) -> None:
        cfg = self._config.ingestion
        missing = self._missing_supply(run)
        if len(missing) > cfg.backfill_cap:
            logger.info(
                "%d assets missing supply, backfilling the first %d",
                len(missing), cfg.backfill_cap,
            )

        for asset in missing[: cfg.backfill_cap]:
            symbol = run.symbol_map.symbol_for(asset.id)
            if symbol in run.valid:
                continue
            detail = await self._try_detail(run, asset.id)
            if detail is None:
                continue
            if detail.has_valid_supply:
                self._apply_detail(run, symbol, detail, asset)
            await asyncio.sleep(cfg.detail_delay_seconds)

        for symbol in cfg.priority_symbols:
            if symbol in run.valid:
                continue
            provider_id = run.symbol_map.id_for(symbol) or cfg.priority_fallback_ids.get(
                symbol, symbol.lower()
            )
            if provider_id in run.detail_ids:
                logger.debug("Detail for %s already tried this cycle", provider_id)
                continue
            detail = await self._try_detail(run, provider_id)
            if detail is None:
                continue
            if detail.has_valid_supply:
                self._apply_detail(run, symbol, detail, self._asset_by_id(run, detail.id))
            else:
                logger.warning("Priority symbol %s has no supply in detail", symbol)
            await asyncio.sleep(cfg.detail_delay_seconds)

        logger.info(
            "Backfill recovered %d of %d attempted",
            run.backfill_recovered, run.backfill_attempted,
        )

    async def _try_detail(self, run: _CycleRun, provider_id: str) -> RawAssetDetail | None:
        run.backfill_attempted += 1
        run.detail_ids.add(provider_id)
        try:
            return await self._client.fetch_detail(provider_id)
        except IngestionError as e:
            logger.warning("Detail for %s skipped: %s", provider_id, e)
            await asyncio.sleep(self._config.ingestion.failure_delay_seconds)
            return None

    def _apply_detail(
        self,
        run: _CycleRun,
        symbol: Symbol,
        detail: RawAssetDetail,
        asset: RawAsset | None,
    ) -> None:
        """Merge recovered supply into the cycle's asset list."""
        if asset is None:
            asset = RawAsset(id=detail.id, symbol=symbol, name=detail.name)
            run.assets.append(asset)
        updated = asset.model_copy(
            update={
                "circulating_supply": detail.circulating_supply,
                "total_supply": detail.total_supply or asset.total_supply,
                "max_supply": detail.max_supply or asset.max_supply,
            }
        )
        run.assets[run.assets.index(asset)] = updated
        if detail.id not in run.symbol_map:
            run.symbol_map.assign(detail.id, symbol)
        run.valid[symbol] = updated
        run.backfill_recovered += 1
        logger.debug("Recovered supply for %s: %s", symbol, detail.circulating_supply)

    @staticmethod
    def _asset_by_id(run: _CycleRun, asset_id: str) -> RawAsset | None:
        for asset in run.assets:
            if asset.id == asset_id:
                return asset
        return None

    # --- Persisting ---

    async def _persist(self, run: _CycleRun, force: bool) -> None:
        queue: dict[Symbol, Observation] = {}
        for symbol, asset in run.valid.items():
            observation = Observation(value=asset.circulating_supply, timestamp=run.now)
            if not await self._store.has_observation_on_day(symbol, run.day):
                queue[symbol] = observation
                continue
            if not force:
                run.already_present += 1
                continue
            try:
                await self._store.replace_observation_on_day(symbol, run.day, observation)
                run.corrected += 1
            except StorageError as e:
                logger.error("Correction for %s failed: %s", symbol, e)
                run.failed[symbol] = str(e)

        if queue:
            failures = await self._store.append_observations(queue)
            run.written = len(queue) - len(failures)
            run.failed.update({symbol: str(e) for symbol, e in failures.items()})

        series = await self._store.get_series_bulk(run.valid.keys())
        snapshot = self._builder.build(run.assets, run.symbol_map, series, run.now)
        if force:
            await self._store.replace_snapshot(snapshot)
        else:
            await self._store.save_snapshot(snapshot)
        run.snapshot_coins = len(snapshot.coins)
        logger.info("Saved snapshot for %s with %d coins", run.day, run.snapshot_coins)

    def _finished(self) -> datetime:
        return as_utc(self._clock())
