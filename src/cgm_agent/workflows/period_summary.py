"""Period summary: statistics and an analysis for one user-chosen period."""

from __future__ import annotations

from datetime import datetime
from typing import Any

import structlog

from cgm_agent.agent.prompts import build_summary_context, marker_titles
from cgm_agent.analysis.stats import compute_range_stats
from cgm_agent.errors import SubjectNotFound
from cgm_agent.models import Job, JobKind, JobStatus, PeriodSummary
from cgm_agent.storage.repository import (
    MarkerRepository,
    MeasurementRepository,
    SummaryRepository,
    WindowRepository,
)
from cgm_agent.workflows.base import EnrichmentWorkflow
from cgm_agent.workflows.comparison import windows_for

logger = structlog.get_logger(__name__)


class PeriodSummaryWorkflow(EnrichmentWorkflow):
    """``period_summary`` jobs; the subject is a :class:`PeriodSummary` id."""

    kind = JobKind.PERIOD_SUMMARY

    def __init__(
        self,
        *args: Any,
        summaries: SummaryRepository,
        measurements: MeasurementRepository,
        markers: MarkerRepository,
        windows: WindowRepository,
        **kwargs: Any,
    ) -> None:
        super().__init__(*args, **kwargs)
        self._summaries = summaries
        self._measurements = measurements
        self._markers = markers
        self._windows = windows

    async def create(
        self,
        period_start: datetime,
        period_end: datetime,
        *,
        name: str | None = None,
        model_override: str | None = None,
    ) -> PeriodSummary:
        if period_end <= period_start:
            raise ValueError(f"period end {period_end} must be after start {period_start}")
        summary = PeriodSummary(
            name=name,
            period_start=period_start,
            period_end=period_end,
            created_at=self._clock.now(),
        )
        await self._summaries.save(summary)
        await self.queue.enqueue(summary.id, model_override=model_override)
        return summary

    async def process(self, job: Job) -> None:
        summary = await self._summaries.get(job.subject_id)
        if summary is None:
            raise SubjectNotFound("period summary", job.subject_id)

        readings = await self._measurements.query_period(summary.period_start, summary.period_end)
        markers = await self._markers.list_in_range(summary.period_start, summary.period_end)
        summary = summary.model_copy(
            update={
                "status": JobStatus.PROCESSING,
                "stats": compute_range_stats(readings, self.band),
                "marker_count": len(markers),
                "marker_ids": ",".join(m.id for m in markers) or None,
                "marker_titles": marker_titles(markers) or None,
            }
        )
        await self._summaries.save(summary)

        if not self.analyzer_enabled:
            logger.warning("period_summary.no_analyzer", summary_id=summary.id)
            await self._complete(summary)
            return

        context = build_summary_context(
            summary,
            markers,
            readings,
            await windows_for(markers, self._windows),
            band=self.band,
            tz_name=self._settings.display_timezone,
            max_tokens=self._settings.openai_max_tokens,
        )
        result = await self.call_analyzer(
            context,
            subject_id=summary.id,
            model=job.model_override or self._settings.comparison_model,
            reason="Period summary",
        )
        await self._complete(
            summary.model_copy(
                update={"result": result.content, "classification": result.classification, "model": result.model}
            )
        )

    async def _complete(self, summary: PeriodSummary) -> None:
        await self._summaries.save(
            summary.model_copy(
                update={"status": JobStatus.COMPLETED, "error_message": None, "completed_at": self._clock.now()}
            )
        )
        logger.info("period_summary.completed", summary_id=summary.id)
        await self.notify("period_summaries.updated", 1, summary.id)

    async def on_failure(self, job: Job, error: str) -> None:
        summary = await self._summaries.get(job.subject_id)
        if summary is None:
            return
        await self._summaries.save(
            summary.model_copy(
                update={"status": JobStatus.FAILED, "error_message": error, "completed_at": self._clock.now()}
            )
        )
        await self.notify("period_summaries.updated", 1, summary.id)
