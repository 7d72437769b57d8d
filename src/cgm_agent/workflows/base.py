"""Shared plumbing for every enrichment workflow.

A workflow owns one :class:`~cgm_agent.queue.job_queue.JobQueue` and
provides its processing coroutine.  Analyzer calls go through
:meth:`EnrichmentWorkflow.call_analyzer`, which paces calls, records usage
(successful or not) and turns an unusable answer into
:class:`~cgm_agent.errors.AnalyzerSoftFailure` so the job ends ``failed``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

import structlog

from cgm_agent.agent.analyzer import ANALYZER_PACING_SECONDS, Analyzer, PacedAnalyzer
from cgm_agent.analysis.cost import compute_cost
from cgm_agent.clock import Clock, SystemClock
from cgm_agent.config import Settings, get_settings
from cgm_agent.errors import AnalyzerSoftFailure
from cgm_agent.models import AnalysisContext, AnalyzerResult, AnalyzerUsage, Job, JobKind, TargetBand
from cgm_agent.notifications.handlers import NotificationSink
from cgm_agent.queue.job_queue import JobQueue
from cgm_agent.storage.repository import JobRepository, UsageRepository

logger = structlog.get_logger(__name__)


class EnrichmentWorkflow(ABC):
    """Base class: one job kind, one queue, one paced analyzer."""

    kind: JobKind

    def __init__(
        self,
        analyzer: Analyzer,
        jobs: JobRepository,
        usage: UsageRepository,
        *,
        settings: Settings | None = None,
        clock: Clock | None = None,
        notifier: NotificationSink | None = None,
        pacing_seconds: float = ANALYZER_PACING_SECONDS,
        analyzer_enabled: bool | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._clock = clock or SystemClock()
        self._notifier = notifier
        self._analyzer = PacedAnalyzer(analyzer, pacing_seconds)
        self._usage = usage
        self._analyzer_enabled = (
            self._settings.analyzer_configured if analyzer_enabled is None else analyzer_enabled
        )
        self.queue = JobQueue(
            self.kind,
            self.process,
            jobs,
            notifier=notifier,
            clock=self._clock,
            on_failure=self.on_failure,
            error_max_length=self.error_max_length,
        )

    # ── Configuration ─────────────────────────────────────────

    @property
    def error_max_length(self) -> int:
        return self._settings.job_error_max_length

    @property
    def analyzer_enabled(self) -> bool:
        return self._analyzer_enabled

    @property
    def band(self) -> TargetBand:
        return TargetBand(low=self._settings.target_range_low, high=self._settings.target_range_high)

    # ── Hooks ─────────────────────────────────────────────────

    @abstractmethod
    async def process(self, job: Job) -> None:
        """Handle one job.  Raise to fail it."""

    async def on_failure(self, job: Job, error: str) -> None:  # noqa: ARG002
        """Called after a job is marked failed (default: nothing)."""
        return None

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(self) -> None:
        await self.queue.start()

    async def stop(self) -> None:
        await self.queue.stop()

    # ── Shared helpers ────────────────────────────────────────

    async def notify(self, kind: str, count: int = 1, subject_id: str | None = None) -> None:
        if self._notifier is None:
            return
        try:
            await self._notifier.publish(kind, count, subject_id)
        except Exception:
            logger.exception("workflow.notify_error", kind=kind)

    async def call_analyzer(
        self,
        context: AnalysisContext,
        *,
        subject_id: str,
        model: str,
        reason: str | None = None,
    ) -> AnalyzerResult:
        """Call the analyzer, record usage, and return a usable result.

        Raises :class:`AnalyzerSoftFailure` when the answer is empty or the
        call failed; usage is recorded either way.
        """
        result = await self._analyzer.enrich(context, model)
        cost = compute_cost(result.model, result.input_tokens, result.output_tokens)
        await self._usage.record(
            AnalyzerUsage(
                kind=self.kind,
                subject_id=subject_id,
                model=result.model,
                input_tokens=result.input_tokens,
                output_tokens=result.output_tokens,
                total_tokens=result.total_tokens,
                cost_usd=cost,
                reason=reason,
                success=result.usable,
                finish_reason=result.finish_reason,
                duration_ms=result.duration_ms,
                called_at=self._clock.now(),
            )
        )
        await self.notify("analyzer_usage.updated", 1, subject_id)

        logger.info(
            "workflow.analyzer_called",
            kind=self.kind.value,
            subject_id=subject_id,
            model=result.model,
            tokens=result.total_tokens,
            cost_usd=round(cost, 6),
            success=result.usable,
        )
        if not result.usable:
            detail = result.error or f"empty response (finish_reason={result.finish_reason or 'unknown'})"
            raise AnalyzerSoftFailure(f"analyzer returned no usable content: {detail}")
        return result
