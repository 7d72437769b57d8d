"""Window and period statistics: pure functions over measurement lists.

No I/O and no clock: identical inputs always produce identical outputs, so
a window's statistics can be recomputed from scratch at any time and
compared against the stored snapshot.

Averages, spikes, standard deviations and percentages are rounded to one
decimal place.
"""

from __future__ import annotations

import statistics
from datetime import datetime
from typing import Sequence

from cgm_agent.models import Measurement, RangeStats, TargetBand, WindowStats

_DEFAULT_BAND = TargetBand()


def _round1(value: float) -> float:
    return round(value, 1)


def _band_percentages(values: Sequence[float], band: TargetBand) -> tuple[float, float, float]:
    """Return ``(in_range, above, below)`` as percentages of *readings*.

    Each reading counts once regardless of the gap to its neighbours.
    """
    n = len(values)
    in_range = sum(1 for v in values if band.low <= v <= band.high)
    above = sum(1 for v in values if v > band.high)
    below = sum(1 for v in values if v < band.low)
    return (
        _round1(100.0 * in_range / n),
        _round1(100.0 * above / n),
        _round1(100.0 * below / n),
    )


def value_nearest(measurements: Sequence[Measurement], anchor_time: datetime) -> Measurement | None:
    """Measurement closest to *anchor_time*; ties go to the earlier one."""
    if not measurements:
        return None
    return min(
        measurements,
        key=lambda m: (abs((m.timestamp - anchor_time).total_seconds()), m.timestamp),
    )


def compute_window_stats(
    measurements: Sequence[Measurement],
    anchor_time: datetime,
    band: TargetBand = _DEFAULT_BAND,
) -> WindowStats:
    """Compute :class:`WindowStats` for one marker window.

    Parameters
    ----------
    measurements:
        Readings already restricted to ``[period_start, period_end]``.
    anchor_time:
        The marker's own timestamp.
    band:
        Target range for the time-in-range percentages.

    An empty input yields ``WindowStats(count=0)``, a valid "no data"
    state, not an error.
    """
    anchor = value_nearest(measurements, anchor_time)
    if anchor is None:
        return WindowStats()

    values = [m.value for m in measurements]
    value_at_anchor = anchor.value

    spike: float | None = None
    peak_time: datetime | None = None
    after = [m for m in measurements if m.timestamp >= anchor_time]
    if after:
        # max() keeps the first of equal values, i.e. the earliest peak.
        peak = max(after, key=lambda m: m.value)
        peak_time = peak.timestamp
        spike = _round1(peak.value - value_at_anchor)

    in_range, above, below = _band_percentages(values, band)

    return WindowStats(
        count=len(values),
        min=min(values),
        max=max(values),
        avg=_round1(statistics.fmean(values)),
        std_dev=_round1(statistics.pstdev(values)),
        value_at_anchor=value_at_anchor,
        spike=spike,
        peak_time=peak_time,
        time_in_range=in_range,
        time_above_range=above,
        time_below_range=below,
    )


def compute_range_stats(
    measurements: Sequence[Measurement],
    band: TargetBand = _DEFAULT_BAND,
) -> RangeStats:
    """Day / period statistics: the window algorithm without the anchor.

    Standard deviation uses the population formula.
    """
    if not measurements:
        return RangeStats()

    values = [m.value for m in measurements]
    in_range, above, below = _band_percentages(values, band)

    return RangeStats(
        count=len(values),
        min=min(values),
        max=max(values),
        avg=_round1(statistics.fmean(values)),
        std_dev=_round1(statistics.pstdev(values)),
        time_in_range=in_range,
        time_above_range=above,
        time_below_range=below,
        first_timestamp=measurements[0].timestamp,
        last_timestamp=measurements[-1].timestamp,
    )
