"""Windowed supply-change computation over sparse observation histories."""

from __future__ import annotations

import logging
import math
from collections.abc import Sequence
from datetime import datetime, timedelta

from supply_tracker.core.config import ChangesConfig
from supply_tracker.core.models import ChangeResult, Observation, as_utc, utc_now

logger = logging.getLogger(__name__)

_SECONDS_PER_DAY = 86400.0


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves toward +infinity."""
    return int(math.floor(value + 0.5))


def nearest_prior(
    observations: Sequence[Observation],
    target: datetime,
    max_distance: timedelta | None = None,
) -> Observation | None:
    """Observation closest to `target` without being after it.

    Ties keep the first one scanned. Candidates further than `max_distance`
    from the target are ignored when a limit is given.
    """
    target = as_utc(target)
    best: Observation | None = None
    best_distance: timedelta | None = None
    for obs in observations:
        if obs.timestamp > target:
            continue
        distance = target - obs.timestamp
        if max_distance is not None and distance > max_distance:
            continue
        if best_distance is None or distance < best_distance:
            best, best_distance = obs, distance
    return best


class SupplyChangeCalculator:
    """Nearest-prior supply deltas with an acceptance window for short lookbacks.

    Short windows (up to `short_window_max_days`) only accept a reference
    within `acceptance_window_days` of the target instant. The extrapolation
    window (30 days) falls back to a linear estimate from the most recent
    observation when the history does not reach back far enough; such
    results are flagged `is_estimated`.
    """

    def __init__(self, config: ChangesConfig | None = None) -> None:
        self._config = config or ChangesConfig()

    @property
    def windows(self) -> dict[str, int]:
        return dict(self._config.windows)

    def change_over(
        self,
        observations: Sequence[Observation],
        current_value: float | None,
        window_days: int,
        now: datetime | None = None,
    ) -> ChangeResult:
        if not observations or current_value is None or current_value <= 0:
            return ChangeResult.empty()

        now = as_utc(now) if now is not None else utc_now()
        target = now - timedelta(days=window_days)

        max_distance = None
        if window_days <= self._config.short_window_max_days:
            max_distance = timedelta(days=self._config.acceptance_window_days)

        reference = nearest_prior(observations, target, max_distance)

        if reference is None:
            if window_days == self._config.extrapolation_window_days:
                return self._extrapolate(observations, current_value, window_days, now)
            return ChangeResult.empty()

        if reference.value <= 0:
            return ChangeResult.empty()

        return ChangeResult(
            change=round_half_up(current_value - reference.value),
            reference_value=reference.value,
            reference_timestamp=reference.timestamp,
        )

    def changes_for(
        self,
        observations: Sequence[Observation],
        current_value: float | None,
        now: datetime | None = None,
    ) -> dict[str, ChangeResult]:
        """ChangeResult for every configured window, keyed by window name."""
        now = as_utc(now) if now is not None else utc_now()
        return {
            name: self.change_over(observations, current_value, days, now)
            for name, days in self._config.windows.items()
        }

    def _extrapolate(
        self,
        observations: Sequence[Observation],
        current_value: float,
        window_days: int,
        now: datetime,
    ) -> ChangeResult:
        latest = max(observations, key=lambda o: o.timestamp)
        elapsed_days = max(
            1.0, abs((now - latest.timestamp).total_seconds()) / _SECONDS_PER_DAY
        )
        rate = (current_value - latest.value) / elapsed_days
        estimated_change = rate * window_days
        estimated_past = current_value - estimated_change
        if estimated_past <= 0:
            logger.debug(
                "Extrapolated %d-day reference is non-positive (%.2f), discarding",
                window_days, estimated_past,
            )
            return ChangeResult.empty()
        return ChangeResult(
            change=round_half_up(estimated_change),
            reference_value=float(round_half_up(estimated_past)),
            reference_timestamp=latest.timestamp,
            is_estimated=True,
        )
