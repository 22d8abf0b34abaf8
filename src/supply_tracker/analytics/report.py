"""Read-side supply reports: per-symbol details, comparisons, history stats."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import date, datetime, timedelta

from pydantic import BaseModel, ConfigDict

from supply_tracker.analytics.changes import nearest_prior
from supply_tracker.core.models import Observation, Symbol, SupplySeries, as_utc

REPORT_WINDOWS: dict[str, int] = {"day": 1, "week": 7, "month": 30}


class WindowReading(BaseModel):
    """Nearest-prior supply reading for one lookback window."""

    model_config = ConfigDict(frozen=True)

    value: float
    timestamp: datetime


class SupplyDetails(BaseModel):
    model_config = ConfigDict(frozen=True)

    symbol: Symbol
    total_records: int
    latest_supply: float | None
    readings: dict[str, WindowReading | None]
    observations: list[Observation] = []


class WindowComparison(BaseModel):
    """Latest supply against one historical reading."""

    model_config = ConfigDict(frozen=True)

    absolute: float
    percentage: float
    old_value: float
    date: datetime
    diff_days: float


class ComparisonEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    symbol: Symbol
    latest: float
    changes: dict[str, WindowComparison | None]


class HistoryStatistics(BaseModel):
    """Shape of the stored history: how many series can yield a change at all."""

    model_config = ConfigDict(frozen=True)

    total_series: int
    single_record: int
    multi_record: int
    empty: int
    most_records: list[tuple[Symbol, int]]
    fewest_records: list[tuple[Symbol, int]]
    observed_today: int


def supply_details(
    series: SupplySeries, now: datetime, include_observations: bool = False
) -> SupplyDetails:
    """Latest supply plus nearest-prior readings at 1 day, 1 week and 1 month.

    No acceptance window applies here; any older reading qualifies.
    """
    now = as_utc(now)
    ordered = series.sorted_desc()
    readings: dict[str, WindowReading | None] = {}
    for name, days in REPORT_WINDOWS.items():
        obs = nearest_prior(ordered, now - timedelta(days=days))
        readings[name] = (
            WindowReading(value=obs.value, timestamp=obs.timestamp) if obs else None
        )
    return SupplyDetails(
        symbol=series.symbol,
        total_records=len(ordered),
        latest_supply=ordered[0].value if ordered else None,
        readings=readings,
        observations=ordered if include_observations else [],
    )


def comparison_report(
    all_series: Mapping[str, SupplySeries], now: datetime
) -> list[ComparisonEntry]:
    """Per-symbol latest-vs-window comparisons; empty series are skipped."""
    now = as_utc(now)
    entries: list[ComparisonEntry] = []
    for symbol in sorted(all_series):
        ordered = all_series[symbol].sorted_desc()
        if not ordered:
            continue
        latest = ordered[0].value
        changes: dict[str, WindowComparison | None] = {}
        for name, days in REPORT_WINDOWS.items():
            target = now - timedelta(days=days)
            obs = nearest_prior(ordered, target)
            if obs is None or obs.value <= 0:
                changes[name] = None
                continue
            absolute = latest - obs.value
            changes[name] = WindowComparison(
                absolute=absolute,
                percentage=absolute / obs.value * 100,
                old_value=obs.value,
                date=obs.timestamp,
                diff_days=(target - obs.timestamp).total_seconds() / 86400,
            )
        entries.append(ComparisonEntry(symbol=symbol, latest=latest, changes=changes))
    return entries


def history_statistics(
    all_series: Iterable[SupplySeries], today: date, sample_size: int = 10
) -> HistoryStatistics:
    series_list = list(all_series)
    counts = [(s.symbol, len(s)) for s in series_list]
    by_count_desc = sorted(counts, key=lambda c: (-c[1], c[0]))
    by_count_asc = sorted(counts, key=lambda c: (c[1], c[0]))
    observed_today = sum(1 for s in series_list if s.has_observation_on(today))
    return HistoryStatistics(
        total_series=len(counts),
        single_record=sum(1 for _, n in counts if n == 1),
        multi_record=sum(1 for _, n in counts if n > 1),
        empty=sum(1 for _, n in counts if n == 0),
        most_records=by_count_desc[:sample_size],
        fewest_records=by_count_asc[:sample_size],
        observed_today=observed_today,
    )
