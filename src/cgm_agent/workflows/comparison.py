"""Period comparison: statistics for two periods side by side, plus an analysis."""

from __future__ import annotations

from datetime import datetime
from typing import Any

import structlog

from cgm_agent.agent.prompts import build_comparison_context, marker_titles
from cgm_agent.analysis.stats import compute_range_stats
from cgm_agent.errors import SubjectNotFound
from cgm_agent.models import Job, JobKind, JobStatus, Marker, PeriodComparison, Window
from cgm_agent.storage.repository import (
    ComparisonRepository,
    MarkerRepository,
    MeasurementRepository,
    WindowRepository,
)
from cgm_agent.workflows.base import EnrichmentWorkflow

logger = structlog.get_logger(__name__)


async def windows_for(markers: list[Marker], windows: WindowRepository) -> dict[str, Window]:
    found: dict[str, Window] = {}
    for m in markers:
        w = await windows.get(m.id)
        if w is not None:
            found[m.id] = w
    return found


class ComparisonWorkflow(EnrichmentWorkflow):
    """``comparison`` jobs; the subject is a :class:`PeriodComparison` id.

    Periods are half-open: ``[start, end)``.
    """

    kind = JobKind.COMPARISON

    def __init__(
        self,
        *args: Any,
        comparisons: ComparisonRepository,
        measurements: MeasurementRepository,
        markers: MarkerRepository,
        windows: WindowRepository,
        **kwargs: Any,
    ) -> None:
        super().__init__(*args, **kwargs)
        self._comparisons = comparisons
        self._measurements = measurements
        self._markers = markers
        self._windows = windows

    async def create(
        self,
        period_a: tuple[datetime, datetime],
        period_b: tuple[datetime, datetime],
        *,
        name: str | None = None,
        label_a: str | None = None,
        label_b: str | None = None,
        model_override: str | None = None,
    ) -> PeriodComparison:
        for start, end in (period_a, period_b):
            if end <= start:
                raise ValueError(f"period end {end} must be after start {start}")
        comparison = PeriodComparison(
            name=name,
            period_a_start=period_a[0],
            period_a_end=period_a[1],
            period_a_label=label_a,
            period_b_start=period_b[0],
            period_b_end=period_b[1],
            period_b_label=label_b,
            created_at=self._clock.now(),
        )
        await self._comparisons.save(comparison)
        await self.queue.enqueue(comparison.id, model_override=model_override)
        return comparison

    async def process(self, job: Job) -> None:
        comparison = await self._comparisons.get(job.subject_id)
        if comparison is None:
            raise SubjectNotFound("comparison", job.subject_id)

        comparison = comparison.model_copy(update={"status": JobStatus.PROCESSING})
        await self._comparisons.save(comparison)

        readings_a = await self._measurements.query_period(comparison.period_a_start, comparison.period_a_end)
        readings_b = await self._measurements.query_period(comparison.period_b_start, comparison.period_b_end)
        markers_a = await self._markers.list_in_range(comparison.period_a_start, comparison.period_a_end)
        markers_b = await self._markers.list_in_range(comparison.period_b_start, comparison.period_b_end)

        comparison = comparison.model_copy(
            update={
                "stats_a": compute_range_stats(readings_a, self.band),
                "stats_b": compute_range_stats(readings_b, self.band),
                "marker_count_a": len(markers_a),
                "marker_count_b": len(markers_b),
                "marker_titles_a": marker_titles(markers_a) or None,
                "marker_titles_b": marker_titles(markers_b) or None,
            }
        )
        await self._comparisons.save(comparison)

        if not self.analyzer_enabled:
            logger.warning("comparison.no_analyzer", comparison_id=comparison.id)
            await self._complete(comparison)
            return

        windows = await windows_for(markers_a + markers_b, self._windows)
        context = build_comparison_context(
            comparison,
            markers_a,
            markers_b,
            windows,
            band=self.band,
            tz_name=self._settings.display_timezone,
            max_tokens=self._settings.openai_max_tokens,
        )
        result = await self.call_analyzer(
            context,
            subject_id=comparison.id,
            model=job.model_override or self._settings.comparison_model,
            reason="Period comparison",
        )
        await self._complete(
            comparison.model_copy(
                update={"result": result.content, "classification": result.classification, "model": result.model}
            )
        )

    async def _complete(self, comparison: PeriodComparison) -> None:
        await self._comparisons.save(
            comparison.model_copy(
                update={"status": JobStatus.COMPLETED, "error_message": None, "completed_at": self._clock.now()}
            )
        )
        logger.info("comparison.completed", comparison_id=comparison.id)
        await self.notify("comparisons.updated", 1, comparison.id)

    async def on_failure(self, job: Job, error: str) -> None:
        comparison = await self._comparisons.get(job.subject_id)
        if comparison is None:
            return
        await self._comparisons.save(
            comparison.model_copy(
                update={"status": JobStatus.FAILED, "error_message": error, "completed_at": self._clock.now()}
            )
        )
        await self.notify("comparisons.updated", 1, comparison.id)
