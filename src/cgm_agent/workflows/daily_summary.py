"""Daily summaries: one analysis per local calendar day, with a snapshot trail.

A day is the span between two local midnights in ``display_timezone``,
stored as naive-UTC bounds.  Days are summarised once complete; a day that
was summarised while still running (``period_end`` short of the next
midnight) is summarised again once it is over.  The current day is only
summarised on a manual trigger.

Every successful analysis appends a :class:`DailySummarySnapshot` and
becomes the day's current summary in the same commit.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from typing import Any
from zoneinfo import ZoneInfo

import structlog

from cgm_agent.agent.prompts import build_daily_summary_context, marker_titles, resolve_timezone, to_local
from cgm_agent.analysis.stats import compute_range_stats
from cgm_agent.errors import SubjectNotFound
from cgm_agent.models import DailySummary, DailySummarySnapshot, Job, JobKind
from cgm_agent.storage.repository import (
    DailySummaryRepository,
    MarkerRepository,
    MeasurementRepository,
    WindowRepository,
)
from cgm_agent.workflows.base import EnrichmentWorkflow
from cgm_agent.workflows.comparison import windows_for

logger = structlog.get_logger(__name__)

AUTO_TRIGGER = "auto"
MANUAL_TRIGGER = "manual"

# A stored summary ending this far before midnight counts as partial.
PARTIAL_DAY_TOLERANCE = timedelta(minutes=5)


def day_bounds(day: date, tz: ZoneInfo | timezone) -> tuple[datetime, datetime]:
    """Naive-UTC ``[start, end)`` of the local calendar *day*."""

    def midnight(d: date) -> datetime:
        return datetime.combine(d, time.min, tzinfo=tz).astimezone(timezone.utc).replace(tzinfo=None)

    return midnight(day), midnight(day + timedelta(days=1))


class DailySummaryWorkflow(EnrichmentWorkflow):
    """``daily_summary`` jobs; the subject is the ISO date, the reason the trigger."""

    kind = JobKind.DAILY_SUMMARY

    def __init__(
        self,
        *args: Any,
        daily: DailySummaryRepository,
        measurements: MeasurementRepository,
        markers: MarkerRepository,
        windows: WindowRepository,
        **kwargs: Any,
    ) -> None:
        super().__init__(*args, **kwargs)
        self._daily = daily
        self._measurements = measurements
        self._markers = markers
        self._windows = windows

    @property
    def tz(self) -> ZoneInfo | timezone:
        return resolve_timezone(self._settings.display_timezone)

    # ── Scheduling ────────────────────────────────────────────

    async def days_to_summarize(self, *, include_today: bool = False) -> list[date]:
        """Days from the first reading onward that have no complete summary yet.

        Covers every day up to yesterday (up to today with *include_today*):
        days never summarised, and past days whose stored summary was cut
        short.  With *include_today* the current day is always included.
        """
        earliest = await self._measurements.earliest_timestamp()
        if earliest is None:
            return []
        tz = self.tz
        today = to_local(self._clock.now(), tz).date()
        last = today if include_today else today - timedelta(days=1)
        existing = {s.day: s for s in await self._daily.list_all()}

        days: list[date] = []
        day = to_local(earliest, tz).date()
        while day <= last:
            summary = existing.get(day)
            if summary is None or not summary.processed or day == today:
                days.append(day)
            elif summary.period_end < day_bounds(day, tz)[1] - PARTIAL_DAY_TOLERANCE:
                logger.info("daily_summary.partial_day", day=day.isoformat())
                days.append(day)
            day += timedelta(days=1)
        return days

    async def schedule(self, *, include_today: bool = False, trigger: str = AUTO_TRIGGER) -> list[Job]:
        """Enqueue every day :meth:`days_to_summarize` returns."""
        if not self.analyzer_enabled:
            logger.debug("daily_summary.no_analyzer")
            return []
        days = await self.days_to_summarize(include_today=include_today)
        jobs = [
            await self.queue.enqueue(d.isoformat(), reason=trigger, replace_reason=trigger == MANUAL_TRIGGER)
            for d in days
        ]
        if jobs:
            logger.info("daily_summary.scheduled", days=len(jobs), trigger=trigger)
        return jobs

    async def summarize_now(self) -> list[Job]:
        """Manual trigger: every pending day including the current, partial one."""
        return await self.schedule(include_today=True, trigger=MANUAL_TRIGGER)

    # ── Processing ────────────────────────────────────────────

    async def process(self, job: Job) -> None:
        try:
            day = date.fromisoformat(job.subject_id)
        except ValueError:
            raise SubjectNotFound("daily summary", job.subject_id) from None
        trigger = job.reason or AUTO_TRIGGER
        tz = self.tz
        now = self._clock.now()
        start, full_end = day_bounds(day, tz)
        end = min(full_end, now)
        if end <= start:
            logger.info("daily_summary.not_started", day=job.subject_id)
            return

        existing = await self._daily.get(day)
        if (
            trigger != MANUAL_TRIGGER
            and existing is not None
            and existing.processed
            and existing.period_end >= full_end - PARTIAL_DAY_TOLERANCE
        ):
            logger.info("daily_summary.already_processed", day=job.subject_id, job_id=job.id)
            return

        readings = await self._measurements.query_period(start, end)
        markers = await self._markers.list_in_range(start, end)
        if not readings and not markers:
            logger.info("daily_summary.no_data", day=job.subject_id)
            return

        stats = compute_range_stats(readings, self.band)
        summary = DailySummary(
            day=day,
            period_start=start,
            period_end=end,
            timezone=self._settings.display_timezone,
            stats=stats,
            marker_count=len(markers),
            marker_ids=",".join(m.id for m in markers) or None,
            marker_titles=marker_titles(markers) or None,
            updated_at=now,
        )
        await self._daily.upsert(summary)

        if not self.analyzer_enabled:
            logger.warning("daily_summary.no_analyzer", day=job.subject_id)
            return

        context = build_daily_summary_context(
            summary,
            markers,
            readings,
            await windows_for(markers, self._windows),
            band=self.band,
            partial=end < full_end,
            max_tokens=self._settings.openai_max_tokens,
        )
        result = await self.call_analyzer(
            context,
            subject_id=job.subject_id,
            model=job.model_override or self._settings.daily_summary_model,
            reason=f"Daily summary for {job.subject_id} ({trigger})",
        )
        await self._daily.record_snapshot(
            DailySummarySnapshot(
                day=day,
                generated_at=self._clock.now(),
                trigger=trigger,
                data_start=start,
                data_end=end,
                first_reading_at=stats.first_timestamp,
                last_reading_at=stats.last_timestamp,
                marker_count=summary.marker_count,
                marker_ids=summary.marker_ids,
                marker_titles=summary.marker_titles,
                stats=stats,
                result=result.content or "",
                classification=result.classification,
                model=result.model,
            )
        )
        logger.info(
            "daily_summary.completed",
            day=job.subject_id,
            trigger=trigger,
            markers=len(markers),
            readings=len(readings),
        )
        await self.notify("daily_summaries.updated", 1, job.subject_id)
