"""Process wiring: repositories, queues, coordinator and loops in one place."""

from __future__ import annotations

from typing import Any, Sequence

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cgm_agent.agent.analyzer import ANALYZER_PACING_SECONDS, Analyzer, OpenAIAnalyzer
from cgm_agent.analysis.food_patterns import aggregate_food_patterns
from cgm_agent.analysis.segmentation import SegmentationParams
from cgm_agent.clock import Clock, SystemClock
from cgm_agent.collectors.base import MarkerSource, MeasurementSource
from cgm_agent.config import Settings, get_settings
from cgm_agent.engine.cascade import RecomputeCascade
from cgm_agent.engine.coordinator import EnrichmentCoordinator
from cgm_agent.models import FoodPattern, JobKind, TargetBand
from cgm_agent.notifications.handlers import NotificationSink, create_dispatcher
from cgm_agent.scheduler.service import SchedulerService
from cgm_agent.storage.database import get_session_factory
from cgm_agent.storage.repository import (
    ChatRepository,
    ComparisonRepository,
    DailySummaryRepository,
    FoodTagRepository,
    HistoryRepository,
    JobRepository,
    MarkerRepository,
    MeasurementRepository,
    SummaryRepository,
    UsageRepository,
    WindowRepository,
)
from cgm_agent.workflows.base import EnrichmentWorkflow
from cgm_agent.workflows.chat import ChatWorkflow
from cgm_agent.workflows.comparison import ComparisonWorkflow
from cgm_agent.workflows.daily_summary import DailySummaryWorkflow
from cgm_agent.workflows.food_tags import FoodTagWorkflow
from cgm_agent.workflows.period_summary import PeriodSummaryWorkflow
from cgm_agent.workflows.window_analysis import WindowAnalysisWorkflow

logger = structlog.get_logger(__name__)


class Runtime:
    """Everything a running worker needs, built from settings.

    Integration::

        runtime = Runtime()
        await runtime.start()
        ...
        await runtime.stop()
    """

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        analyzer: Analyzer | None = None,
        clock: Clock | None = None,
        notifier: NotificationSink | None = None,
        measurement_sources: Sequence[MeasurementSource] = (),
        marker_sources: Sequence[MarkerSource] = (),
        pacing_seconds: float = ANALYZER_PACING_SECONDS,
        analyzer_enabled: bool | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        factory = session_factory or get_session_factory()
        self.clock = clock or SystemClock()
        self.notifier = notifier or create_dispatcher(self.settings)
        analyzer = analyzer or OpenAIAnalyzer(
            api_key=self.settings.openai_api_key,
            default_model=self.settings.openai_model,
            request_timeout=self.settings.openai_request_timeout,
        )

        # ── Repositories ──────────────────────────────────────
        self.measurements = MeasurementRepository(factory)
        self.markers = MarkerRepository(factory)
        self.windows = WindowRepository(factory)
        self.history = HistoryRepository(factory)
        self.jobs = JobRepository(factory)
        self.usage = UsageRepository(factory)
        self.chats = ChatRepository(factory)
        self.comparisons = ComparisonRepository(factory)
        self.summaries = SummaryRepository(factory)
        self.food_tags = FoodTagRepository(factory)
        self.daily_summaries = DailySummaryRepository(factory)

        # ── Workflows ─────────────────────────────────────────
        common = dict(
            settings=self.settings,
            clock=self.clock,
            notifier=self.notifier,
            pacing_seconds=pacing_seconds,
            analyzer_enabled=analyzer_enabled,
        )
        self.food_tag_workflow = FoodTagWorkflow(
            analyzer, self.jobs, self.usage, markers=self.markers, food_tags=self.food_tags, **common
        )
        self.window_workflow = WindowAnalysisWorkflow(
            analyzer,
            self.jobs,
            self.usage,
            measurements=self.measurements,
            markers=self.markers,
            windows=self.windows,
            history=self.history,
            food_tags=self.food_tag_workflow,
            **common,
        )
        self.chat_workflow = ChatWorkflow(
            analyzer,
            self.jobs,
            self.usage,
            chats=self.chats,
            measurements=self.measurements,
            markers=self.markers,
            windows=self.windows,
            **common,
        )
        self.comparison_workflow = ComparisonWorkflow(
            analyzer,
            self.jobs,
            self.usage,
            comparisons=self.comparisons,
            measurements=self.measurements,
            markers=self.markers,
            windows=self.windows,
            **common,
        )
        self.summary_workflow = PeriodSummaryWorkflow(
            analyzer,
            self.jobs,
            self.usage,
            summaries=self.summaries,
            measurements=self.measurements,
            markers=self.markers,
            windows=self.windows,
            **common,
        )
        self.daily_summary_workflow = DailySummaryWorkflow(
            analyzer,
            self.jobs,
            self.usage,
            daily=self.daily_summaries,
            measurements=self.measurements,
            markers=self.markers,
            windows=self.windows,
            **common,
        )

        # ── Engine ────────────────────────────────────────────
        self.cascade = RecomputeCascade(
            self.measurements,
            self.markers,
            self.windows,
            self.history,
            params=SegmentationParams.from_settings(self.settings),
            band=TargetBand(low=self.settings.target_range_low, high=self.settings.target_range_high),
            epsilon=self.settings.stats_change_epsilon,
        )
        self.coordinator = EnrichmentCoordinator(
            self.cascade,
            self.window_workflow.queue,
            self.measurements,
            self.markers,
            self.windows,
            self.history,
            settings=self.settings,
            clock=self.clock,
            notifier=self.notifier,
            analyzer_enabled=self.window_workflow.analyzer_enabled,
        )
        self.scheduler = SchedulerService(
            self.coordinator,
            measurement_sources=measurement_sources,
            marker_sources=marker_sources,
            settings=self.settings,
            daily_summary=self.daily_summary_workflow.schedule,
        )

    @property
    def workflows(self) -> list[EnrichmentWorkflow]:
        return [
            self.window_workflow,
            self.food_tag_workflow,
            self.chat_workflow,
            self.comparison_workflow,
            self.summary_workflow,
            self.daily_summary_workflow,
        ]

    async def start(self, *, with_scheduler: bool = True) -> None:
        """Start every queue worker (recovering unfinished jobs), then the loops."""
        if not self.window_workflow.analyzer_enabled:
            logger.warning("runtime.analyzer_not_configured")
        for workflow in self.workflows:
            await workflow.start()
        if with_scheduler:
            await self.scheduler.start()
        logger.info("runtime.started", scheduler=with_scheduler)

    async def stop(self) -> None:
        await self.scheduler.stop()
        for workflow in self.workflows:
            await workflow.stop()
        logger.info("runtime.stopped")

    async def wait_idle(self, timeout: float | None = None) -> None:
        """Wait until every queue is drained.

        Queues are awaited in order, so follow-up work (food tags queued by
        window analysis) is included.
        """
        for workflow in self.workflows:
            await workflow.queue.wait_idle(timeout)

    async def food_patterns(self) -> list[FoodPattern]:
        """Aggregate every food tag against its marker's window."""
        tags = await self.food_tags.list_all()
        markers = {m.id: m for m in await self.markers.list_all()}
        windows = {w.id: w for w in await self.windows.list_all()}
        return aggregate_food_patterns(tags, markers, windows)

    async def status(self) -> dict[str, Any]:
        """Counts and analyzer spend, for operators."""
        return {
            "measurements": await self.measurements.count(),
            "markers": len(await self.markers.list_all()),
            "windows_pending": len(await self.windows.list_unenriched()),
            "queued": {w.kind.value: w.queue.pending_count for w in self.workflows},
            "cost_usd": {
                "total": round(await self.usage.total_cost(), 6),
                **{kind.value: round(await self.usage.total_cost(kind), 6) for kind in JobKind},
            },
        }
