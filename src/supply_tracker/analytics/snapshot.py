"""Daily CoinRecord batch construction."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import TYPE_CHECKING

from supply_tracker.analytics.changes import SupplyChangeCalculator
from supply_tracker.core.models import (
    ChangeResult,
    CoinRecord,
    RawAsset,
    Snapshot,
    SupplySeries,
    as_utc,
)

if TYPE_CHECKING:
    from supply_tracker.ingestion.resolver import SymbolMap

logger = logging.getLogger(__name__)


class SnapshotBuilder:
    """Builds one day's denormalized, re-ranked CoinRecord batch."""

    def __init__(self, calculator: SupplyChangeCalculator | None = None) -> None:
        self._calculator = calculator or SupplyChangeCalculator()

    def build(
        self,
        assets: Iterable[RawAsset],
        symbol_map: SymbolMap,
        series_by_symbol: Mapping[str, SupplySeries],
        now: datetime,
    ) -> Snapshot:
        """One record per canonical symbol, in listing order.

        Assets without a positive circulating supply are dropped and the
        remaining records are ranked 1..N.
        """
        now = as_utc(now)
        records: list[CoinRecord] = []
        seen: set[str] = set()
        dropped = 0

        for asset in assets:
            symbol = symbol_map.symbol_for(asset.id)
            if symbol is None or symbol in seen:
                continue
            if not asset.has_valid_supply:
                dropped += 1
                continue
            seen.add(symbol)

            series = series_by_symbol.get(symbol)
            observations = series.observations if series is not None else []
            changes = self._calculator.changes_for(
                observations, asset.circulating_supply, now
            )
            records.append(
                CoinRecord(
                    rank=len(records) + 1,
                    name=asset.name or symbol,
                    symbol=symbol,
                    icon=asset.image,
                    price=asset.current_price,
                    volume_24h=asset.total_volume,
                    market_cap=asset.market_cap,
                    circulating_supply=asset.circulating_supply,
                    total_supply=asset.total_supply or asset.circulating_supply,
                    max_supply=asset.max_supply,
                    supply_change_1d=changes.get("1d", ChangeResult.empty()),
                    supply_change_1w=changes.get("1w", ChangeResult.empty()),
                    supply_change_1m=changes.get("1m", ChangeResult.empty()),
                )
            )

        if dropped:
            logger.info("Snapshot dropped %d assets without supply", dropped)
        return Snapshot(day=now.date(), captured_at=now, coins=records)
