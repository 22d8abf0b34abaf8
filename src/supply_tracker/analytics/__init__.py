"""supply_tracker.analytics: supply-change computation and reporting."""

from supply_tracker.analytics.changes import (
    SupplyChangeCalculator,
    nearest_prior,
    round_half_up,
)
from supply_tracker.analytics.report import (
    ComparisonEntry,
    HistoryStatistics,
    SupplyDetails,
    WindowComparison,
    WindowReading,
    comparison_report,
    history_statistics,
    supply_details,
)
from supply_tracker.analytics.snapshot import SnapshotBuilder

__all__ = [
    "SupplyChangeCalculator",
    "SnapshotBuilder",
    "nearest_prior",
    "round_half_up",
    # Reports
    "supply_details",
    "comparison_report",
    "history_statistics",
    "SupplyDetails",
    "WindowReading",
    "WindowComparison",
    "ComparisonEntry",
    "HistoryStatistics",
]
