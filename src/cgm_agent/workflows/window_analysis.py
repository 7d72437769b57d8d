"""Window analysis: send one marker window to the analyzer and keep the result.

On success a new history entry is appended and projected onto the window
in the same commit.  On a soft failure usage is still recorded, nothing is
written to the window, and the job fails; the window stays un-enriched and
is picked up again by a later cycle.
"""

from __future__ import annotations

from typing import Any

import structlog

from cgm_agent.agent.prompts import build_window_context
from cgm_agent.analysis.change import has_changed
from cgm_agent.analysis.stats import compute_window_stats
from cgm_agent.errors import InvariantViolation, SubjectNotFound
from cgm_agent.models import AnalysisReason, EnrichmentHistoryEntry, Job, JobKind, Marker, Window
from cgm_agent.storage.repository import (
    HistoryRepository,
    MarkerRepository,
    MeasurementRepository,
    WindowRepository,
)
from cgm_agent.workflows.base import EnrichmentWorkflow
from cgm_agent.workflows.food_tags import FoodTagWorkflow

logger = structlog.get_logger(__name__)


class WindowAnalysisWorkflow(EnrichmentWorkflow):
    """``window_analysis`` jobs; the subject is a window (= marker) id."""

    kind = JobKind.WINDOW_ANALYSIS

    def __init__(
        self,
        *args: Any,
        measurements: MeasurementRepository,
        markers: MarkerRepository,
        windows: WindowRepository,
        history: HistoryRepository,
        food_tags: FoodTagWorkflow | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(*args, **kwargs)
        self._measurements = measurements
        self._markers = markers
        self._windows = windows
        self._history = history
        self._food_tags = food_tags

    async def reanalyze(self, window_id: str, model_override: str | None = None) -> Job:
        """Queue a manual re-run, bypassing cooldown."""
        if await self._windows.get(window_id) is None:
            raise SubjectNotFound("window", window_id)
        return await self.queue.enqueue(
            window_id,
            model_override=model_override,
            reason=AnalysisReason.MANUAL.value,
        )

    async def _neighbours(self, window: Window, marker: Marker) -> list[tuple[Marker, Window | None]]:
        others = await self._markers.list_in_range(window.period_start, window.period_end, inclusive_end=True)
        return [(m, await self._windows.get(m.id)) for m in others if m.id != marker.id]

    async def _already_enriched(self, window: Window) -> bool:
        """``True`` when the newest history entry covers *window* exactly as it is now."""
        if not window.enriched:
            return False
        latest = await self._history.latest(window.id)
        return (
            latest is not None
            and latest.period_start == window.period_start
            and latest.period_end == window.period_end
            and not has_changed(latest.stats_at_time, window.stats, self._settings.stats_change_epsilon)
        )

    async def process(self, job: Job) -> None:
        window = await self._windows.get(job.subject_id)
        if window is None:
            raise SubjectNotFound("window", job.subject_id)
        marker = await self._markers.get(window.marker_id)
        if marker is None:
            raise InvariantViolation(f"window {window.id!r} has no marker")

        readings = await self._measurements.query_range(window.period_start, window.period_end)
        stats = compute_window_stats(readings, marker.timestamp, self.band)
        if has_changed(window.stats, stats, self._settings.stats_change_epsilon):
            window = window.model_copy(update={"stats": stats, "enriched": False})
            await self._windows.upsert(window)

        reason = job.reason or AnalysisReason.INITIAL.value
        if reason != AnalysisReason.MANUAL.value and await self._already_enriched(window):
            # A re-delivered job whose result was already stored.
            logger.info("window.already_enriched", window_id=window.id, job_id=job.id)
            await self._request_food_tags(marker)
            return

        context = build_window_context(
            window,
            marker,
            readings,
            await self._neighbours(window, marker),
            tz_name=self._settings.display_timezone,
            max_tokens=self._settings.openai_max_tokens,
        )
        result = await self.call_analyzer(
            context,
            subject_id=window.id,
            model=job.model_override or self._settings.openai_model,
            reason=reason,
        )

        entry = EnrichmentHistoryEntry(
            window_id=window.id,
            stats_at_time=window.stats,
            period_start=window.period_start,
            period_end=window.period_end,
            result=result.content or "",
            classification=result.classification,
            model=result.model,
            reason=reason,
            analyzed_at=self._clock.now(),
        )
        updated = await self._history.record_enrichment(entry)
        logger.info(
            "window.enriched",
            window_id=window.id,
            classification=entry.classification,
            reason=reason,
            still_pending=not updated.enriched,
        )
        await self.notify("windows.updated", 1, window.id)
        await self._request_food_tags(marker)

    async def _request_food_tags(self, marker: Marker) -> None:
        if self._food_tags is not None:
            await self._food_tags.request(marker.id)
