"""Window segmentation: boundaries of each marker's analysis window.

For the marker at index ``i`` in timestamp order::

    period_start = markers[i-1].timestamp            if i > 0
                   markers[i].timestamp - lookback   otherwise
    period_end   = max(markers[i].timestamp + minimum_lookahead,
                       markers[i+1].timestamp)       if a next marker exists
                   markers[i].timestamp + lookahead  otherwise

Consecutive windows overlap in the raw measurements they cover whenever
the next marker is closer than ``minimum_lookahead``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Sequence

from cgm_agent.models import Marker, Window

if TYPE_CHECKING:
    from cgm_agent.config import Settings


@dataclass(frozen=True, slots=True)
class SegmentationParams:
    default_lookback: timedelta = timedelta(hours=3)
    default_lookahead: timedelta = timedelta(hours=4)
    minimum_lookahead: timedelta = timedelta(hours=3)

    @classmethod
    def from_settings(cls, settings: Settings) -> SegmentationParams:
        return cls(
            default_lookback=settings.default_lookback,
            default_lookahead=settings.default_lookahead,
            minimum_lookahead=settings.minimum_lookahead,
        )


def window_bounds(
    timestamp: datetime,
    previous: datetime | None,
    following: datetime | None,
    params: SegmentationParams,
) -> tuple[datetime, datetime]:
    """Return ``(period_start, period_end)`` for a marker at *timestamp*.

    *previous* / *following* are the neighbouring markers' timestamps, or
    ``None`` when the marker is first / last.
    """
    start = previous if previous is not None else timestamp - params.default_lookback
    if following is not None:
        end = max(timestamp + params.minimum_lookahead, following)
    else:
        end = timestamp + params.default_lookahead
    return start, end


def compute_boundaries(
    sorted_markers: Sequence[Marker],
    default_lookback: timedelta,
    default_lookahead: timedelta,
    minimum_lookahead: timedelta,
) -> list[Window]:
    """Compute one window per marker over the whole marker stream.

    Returned windows carry empty statistics; callers fill them in.
    Raises :class:`ValueError` when *sorted_markers* is not in timestamp
    order.
    """
    params = SegmentationParams(default_lookback, default_lookahead, minimum_lookahead)
    for earlier, later in zip(sorted_markers, sorted_markers[1:]):
        if later.timestamp < earlier.timestamp:
            raise ValueError(
                f"markers must be sorted by timestamp: {earlier.id} at {earlier.timestamp} "
                f"precedes {later.id} at {later.timestamp}"
            )

    windows: list[Window] = []
    for i, marker in enumerate(sorted_markers):
        previous = sorted_markers[i - 1].timestamp if i > 0 else None
        following = sorted_markers[i + 1].timestamp if i + 1 < len(sorted_markers) else None
        start, end = window_bounds(marker.timestamp, previous, following, params)
        windows.append(
            Window(
                marker_id=marker.id,
                marker_timestamp=marker.timestamp,
                period_start=start,
                period_end=end,
            )
        )
    return windows
