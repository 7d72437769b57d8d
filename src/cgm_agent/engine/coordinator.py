"""Enrichment coordinator: from new input to queued window-analysis jobs.

The coordinator is the single entry point for the two input streams.  It
persists what arrives, lets :class:`~cgm_agent.engine.cascade.RecomputeCascade`
work out which windows changed, and then decides which of those windows
are actually sent to the analyzer:

1. Candidates for the same window are merged; ``forced`` wins.
2. Plain candidates for windows already waiting in (or being processed by)
   the queue are skipped.  Forced candidates are always enqueued: they
   replace the reason of a waiting job, or follow the running one.
3. The cooldown policy filters plain candidates against the window's history.
4. Survivors are enqueued with the candidate's reason.

Nothing is enqueued while the analyzer is not configured; windows stay
un-enriched and are picked up by the first cycle after a key is set.
"""

from __future__ import annotations

from typing import Sequence

import structlog

from cgm_agent.analysis.cooldown import may_reanalyze
from cgm_agent.clock import Clock, SystemClock
from cgm_agent.collectors.base import MarkerSource, MeasurementSource
from cgm_agent.config import Settings, get_settings
from cgm_agent.engine.cascade import CascadeCandidate, RecomputeCascade
from cgm_agent.models import AnalysisReason, Job, Marker, Measurement
from cgm_agent.notifications.handlers import NotificationSink
from cgm_agent.queue.job_queue import JobQueue
from cgm_agent.storage.repository import (
    HistoryRepository,
    MarkerRepository,
    MeasurementRepository,
    WindowRepository,
)

logger = structlog.get_logger(__name__)


def merge_candidates(candidates: Sequence[CascadeCandidate]) -> list[CascadeCandidate]:
    """One candidate per window, first-seen order; a forced candidate replaces a plain one."""
    merged: dict[str, CascadeCandidate] = {}
    for c in candidates:
        seen = merged.get(c.window.id)
        if seen is None or (c.forced and not seen.forced):
            merged[c.window.id] = c
        elif seen.forced == c.forced:
            # Same priority: keep the reason, take the freshest window state.
            merged[c.window.id] = CascadeCandidate(c.window, seen.forced, seen.reason)
    return list(merged.values())


class EnrichmentCoordinator:
    """Ingests measurements and markers and feeds the window-analysis queue.

    Usage::

        coordinator = EnrichmentCoordinator(cascade, queue, ...)
        await coordinator.ingest_measurements(batch)
        await coordinator.run_cycle()
    """

    def __init__(
        self,
        cascade: RecomputeCascade,
        queue: JobQueue,
        measurements: MeasurementRepository,
        markers: MarkerRepository,
        windows: WindowRepository,
        history: HistoryRepository,
        *,
        settings: Settings | None = None,
        clock: Clock | None = None,
        notifier: NotificationSink | None = None,
        analyzer_enabled: bool | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._cascade = cascade
        self._queue = queue
        self._measurements = measurements
        self._markers = markers
        self._windows = windows
        self._history = history
        self._clock = clock or SystemClock()
        self._notifier = notifier
        self._analyzer_enabled = (
            self._settings.analyzer_configured if analyzer_enabled is None else analyzer_enabled
        )

    # ── Ingestion ─────────────────────────────────────────────

    async def ingest_measurements(self, batch: Sequence[Measurement]) -> list[Job]:
        """Store *batch*, recompute overlapping windows and enqueue the changed ones."""
        fresh = await self._measurements.save_batch(batch)
        if not fresh:
            logger.debug("coordinator.no_new_measurements", received=len(batch))
            return []
        await self._notify("measurements.new", len(fresh))
        candidates = await self._cascade.on_measurements_arrived(fresh)
        return await self.dispatch(candidates)

    async def ingest_markers(self, markers: Sequence[Marker]) -> list[Job]:
        """Store markers not seen before (oldest first) and run the insert cascade for each."""
        candidates: list[CascadeCandidate] = []
        inserted = 0
        for marker in sorted(markers, key=lambda m: (m.timestamp, m.id)):
            if await self._markers.get(marker.id) is not None:
                continue
            await self._markers.insert(marker)
            inserted += 1
            candidates.extend(await self._cascade.on_marker_inserted(marker))
        if inserted:
            logger.info("coordinator.markers_ingested", inserted=inserted)
            await self._notify("markers.new", inserted)
        return await self.dispatch(candidates)

    async def poll_measurements(self, source: MeasurementSource) -> int:
        """Fetch readings newer than the last stored one and ingest them."""
        since = await self._measurements.latest_timestamp(source.name)
        batch = await source.fetch_since(since)
        await self.ingest_measurements(batch)
        return len(batch)

    async def poll_markers(self, source: MarkerSource) -> int:
        markers = await source.fetch()
        await self.ingest_markers(markers)
        return len(markers)

    # ── Periodic trigger ──────────────────────────────────────

    async def run_cycle(self) -> list[Job]:
        """Create missing windows, then enqueue every window still un-enriched.

        Re-queues windows whose previous analysis failed or was skipped,
        subject to the same cooldown and single-flight rules.
        """
        candidates = await self._cascade.catch_up()
        for window in await self._windows.list_unenriched():
            has_history = await self._history.latest(window.id) is not None
            reason = AnalysisReason.NEW_DATA if has_history else AnalysisReason.INITIAL
            candidates.append(CascadeCandidate(window, forced=False, reason=reason.value))
        jobs = await self.dispatch(candidates)
        logger.info("coordinator.cycle", candidates=len(candidates), enqueued=len(jobs))
        return jobs

    async def recompute_all(self) -> list[Job]:
        """Rebuild every window from the full marker stream and enqueue what changed."""
        return await self.dispatch(await self._cascade.recompute_all())

    # ── Filtering ─────────────────────────────────────────────

    async def dispatch(self, candidates: Sequence[CascadeCandidate]) -> list[Job]:
        """Apply single-flight and cooldown rules to *candidates* and enqueue survivors."""
        if not candidates:
            return []
        merged = merge_candidates(candidates)
        if not self._analyzer_enabled:
            logger.warning("coordinator.analyzer_disabled", skipped=len(merged))
            return []

        cooldown = self._settings.reanalysis_cooldown
        now = self._clock.now()
        jobs: list[Job] = []
        for candidate in merged:
            window = candidate.window
            if not candidate.forced and self._queue.is_active(window.id):
                logger.debug("coordinator.already_queued", window_id=window.id)
                continue
            history = await self._history.list_for_window(window.id)
            if not may_reanalyze(window, history, cooldown, candidate.forced, now=now):
                continue
            jobs.append(
                await self._queue.enqueue(window.id, reason=candidate.reason, replace_reason=candidate.forced)
            )
        return jobs

    async def _notify(self, kind: str, count: int) -> None:
        if self._notifier is None:
            return
        try:
            await self._notifier.publish(kind, count)
        except Exception:
            logger.exception("coordinator.notify_error", kind=kind)
