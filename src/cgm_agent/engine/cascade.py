"""Recompute cascade: which windows change when markers or measurements arrive.

Two triggers exist:

* a marker is inserted: the previous marker's window may need a new
  ``period_end`` and the new marker needs its own window;
* a batch of measurements arrives: every window overlapping the batch is
  recomputed from scratch and kept only when its statistics changed.

The cascade persists the windows it touches and returns them as
:class:`CascadeCandidate` objects.  Deciding whether a candidate is actually
sent to the analyzer (cooldown, already-queued) is the coordinator's job.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import structlog

from cgm_agent.analysis.change import DEFAULT_EPSILON, has_changed
from cgm_agent.analysis.segmentation import SegmentationParams, compute_boundaries, window_bounds
from cgm_agent.analysis.stats import compute_window_stats
from cgm_agent.errors import InvariantViolation
from cgm_agent.models import AnalysisReason, Marker, Measurement, TargetBand, Window, WindowStats
from cgm_agent.storage.repository import (
    HistoryRepository,
    MarkerRepository,
    MeasurementRepository,
    WindowRepository,
)

logger = structlog.get_logger(__name__)


@dataclass(frozen=True, slots=True)
class CascadeCandidate:
    """A window the cascade just (re)computed and wants analysed."""

    window: Window
    forced: bool
    reason: str


class RecomputeCascade:
    """Keeps persisted windows consistent with the marker and measurement streams."""

    def __init__(
        self,
        measurements: MeasurementRepository,
        markers: MarkerRepository,
        windows: WindowRepository,
        history: HistoryRepository,
        *,
        params: SegmentationParams | None = None,
        band: TargetBand | None = None,
        epsilon: float = DEFAULT_EPSILON,
    ) -> None:
        self._measurements = measurements
        self._markers = markers
        self._windows = windows
        self._history = history
        self._params = params or SegmentationParams()
        self._band = band or TargetBand()
        self._epsilon = epsilon

    @property
    def params(self) -> SegmentationParams:
        return self._params

    async def recompute_window(self, window: Window) -> WindowStats:
        """Statistics of *window* over its full ``[period_start, period_end]``."""
        readings = await self._measurements.query_range(window.period_start, window.period_end)
        return compute_window_stats(readings, window.marker_timestamp, self._band)

    # ── Marker inserted ───────────────────────────────────────

    async def on_marker_inserted(self, marker: Marker) -> list[CascadeCandidate]:
        """Create *marker*'s window and stretch / shrink the previous one.

        The previous window is persisted first.  Windows of later markers
        are left untouched even when the new marker is inserted in between.
        """
        candidates: list[CascadeCandidate] = []
        previous = await self._markers.previous(marker)
        following = await self._markers.next(marker)

        if previous is not None:
            prev_window = await self._windows.get(previous.id)
            if prev_window is not None:
                _, new_end = window_bounds(previous.timestamp, None, marker.timestamp, self._params)
                if new_end != prev_window.period_end:
                    moved = prev_window.model_copy(update={"period_end": new_end})
                    stats = await self.recompute_window(moved)
                    moved = moved.model_copy(update={"stats": stats, "enriched": False})
                    await self._windows.upsert(moved)
                    logger.info(
                        "cascade.boundary_changed",
                        window_id=moved.id,
                        old_end=prev_window.period_end.isoformat(),
                        new_end=new_end.isoformat(),
                    )
                    candidates.append(
                        CascadeCandidate(moved, forced=True, reason=AnalysisReason.BOUNDARY_CHANGED.value)
                    )

        start, end = window_bounds(
            marker.timestamp,
            previous.timestamp if previous is not None else None,
            following.timestamp if following is not None else None,
            self._params,
        )
        existing = await self._windows.get(marker.id)
        if existing is not None:
            window = existing.model_copy(update={"period_start": start, "period_end": end})
        else:
            window = Window(
                marker_id=marker.id,
                marker_timestamp=marker.timestamp,
                period_start=start,
                period_end=end,
            )
        stats = await self.recompute_window(window)
        window = window.model_copy(update={"stats": stats, "enriched": False})
        await self._windows.upsert(window)

        has_history = await self._history.latest(window.id) is not None
        reason = AnalysisReason.NEW_DATA if has_history else AnalysisReason.INITIAL
        logger.info("cascade.window_created", window_id=window.id, readings=stats.count)
        candidates.append(CascadeCandidate(window, forced=False, reason=reason.value))
        return candidates

    async def catch_up(self) -> list[CascadeCandidate]:
        """Create windows for markers that have none yet, oldest first."""
        candidates: list[CascadeCandidate] = []
        for marker in await self._markers.list_without_window():
            candidates.extend(await self.on_marker_inserted(marker))
        if candidates:
            logger.info("cascade.catch_up", windows=len(candidates))
        return candidates

    # ── Measurements arrived ──────────────────────────────────

    async def on_measurements_arrived(self, batch: Sequence[Measurement]) -> list[CascadeCandidate]:
        """Recompute every window overlapping *batch*; keep the changed ones."""
        if not batch:
            return []
        lo = min(m.timestamp for m in batch)
        hi = max(m.timestamp for m in batch)

        candidates: list[CascadeCandidate] = []
        for window in await self._windows.list_overlapping(lo, hi):
            if await self._markers.get(window.marker_id) is None:
                raise InvariantViolation(f"window {window.id!r} has no marker")

            stats = await self.recompute_window(window)
            if not has_changed(window.stats, stats, self._epsilon):
                continue

            updated = window.model_copy(update={"stats": stats, "enriched": False})
            await self._windows.upsert(updated)
            has_history = await self._history.latest(window.id) is not None
            reason = AnalysisReason.NEW_DATA if has_history else AnalysisReason.INITIAL
            candidates.append(CascadeCandidate(updated, forced=False, reason=reason.value))

        logger.info(
            "cascade.measurements_arrived",
            batch=len(batch),
            changed_windows=len(candidates),
        )
        return candidates

    # ── Full rebuild ──────────────────────────────────────────

    async def recompute_all(self) -> list[CascadeCandidate]:
        """Re-derive every window from the full marker stream.

        Used after segmentation settings change.  Windows whose boundaries
        or statistics differ are persisted un-enriched and returned.
        """
        markers = await self._markers.list_all()
        fresh = compute_boundaries(
            markers,
            self._params.default_lookback,
            self._params.default_lookahead,
            self._params.minimum_lookahead,
        )
        candidates: list[CascadeCandidate] = []
        for window in fresh:
            existing = await self._windows.get(window.id)
            stats = await self.recompute_window(window)
            if existing is not None:
                moved = (
                    existing.period_start != window.period_start
                    or existing.period_end != window.period_end
                )
                if not moved and not has_changed(existing.stats, stats, self._epsilon):
                    continue
                updated = existing.model_copy(
                    update={
                        "period_start": window.period_start,
                        "period_end": window.period_end,
                        "stats": stats,
                        "enriched": False,
                    }
                )
                reason = AnalysisReason.BOUNDARY_CHANGED if moved else AnalysisReason.NEW_DATA
                if await self._history.latest(window.id) is None:
                    reason = AnalysisReason.INITIAL
            else:
                updated = window.model_copy(update={"stats": stats})
                reason = AnalysisReason.INITIAL
            await self._windows.upsert(updated)
            candidates.append(CascadeCandidate(updated, forced=False, reason=reason.value))

        logger.info("cascade.recompute_all", markers=len(markers), changed_windows=len(candidates))
        return candidates
