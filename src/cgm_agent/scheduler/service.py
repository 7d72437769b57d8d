"""Scheduler service: the periodic loops that drive the worker.

Architecture
~~~~~~~~~~~~
Up to four :class:`PeriodicLoop` instances run side by side:

1. ``measurement-poll``: pull new readings from every measurement source
   and ingest them (recompute cascade + enqueue).
2. ``marker-poll``: pull markers from every marker source and ingest the
   unseen ones.
3. ``cascade-trigger``: create missing windows and re-queue windows that
   are still un-enriched.
4. ``daily-summary``: queue a summary for every finished day that has
   none yet (or only one made while the day was still running).

Each loop re-reads its interval from configuration after every cycle, so
an edited ``.env`` takes effect without a restart.  A failing cycle is
logged and the loop carries on; the next cycle retries.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable, Sequence

import structlog

from cgm_agent.collectors.base import MarkerSource, MeasurementSource
from cgm_agent.config import Settings, reload_settings
from cgm_agent.engine.coordinator import EnrichmentCoordinator

logger = structlog.get_logger(__name__)

IntervalProvider = Callable[[], float]


def _minutes(pick: Callable[[Settings], int]) -> IntervalProvider:
    """Interval provider reading a ``*_minutes`` setting fresh on every call."""

    def provider() -> float:
        return max(1, pick(reload_settings())) * 60.0

    return provider


class PeriodicLoop:
    """Run ``fn`` forever, sleeping ``interval_provider()`` seconds between runs.

    Integration::

        loop = PeriodicLoop("cascade-trigger", coordinator.run_cycle, provider)
        await loop.start()
        ...
        await loop.stop()
    """

    def __init__(
        self,
        name: str,
        fn: Callable[[], Awaitable[Any]],
        interval_provider: IntervalProvider,
        *,
        startup_delay: float = 0.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.name = name
        self._fn = fn
        self._interval_provider = interval_provider
        self._startup_delay = startup_delay
        self._sleep = sleep
        self._running = False
        self._task: asyncio.Task | None = None
        self._stats: dict[str, Any] = {"last_run": None, "total_runs": 0, "errors": 0}

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop(), name=f"loop-{self.name}")
        logger.info("scheduler.loop_started", loop=self.name)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("scheduler.loop_stopped", loop=self.name)

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def stats(self) -> dict[str, Any]:
        return dict(self._stats)

    # ── Main loop ─────────────────────────────────────────────

    async def run_once(self) -> None:
        """One cycle; errors are logged and counted, never raised."""
        self._stats["total_runs"] += 1
        self._stats["last_run"] = datetime.now(UTC).isoformat()
        try:
            await self._fn()
        except Exception:
            self._stats["errors"] += 1
            logger.exception("scheduler.cycle_error", loop=self.name)

    async def _run_loop(self) -> None:
        if self._startup_delay > 0:
            await self._sleep(self._startup_delay)
        while self._running:
            await self.run_once()
            try:
                interval = self._interval_provider()
            except Exception:
                logger.exception("scheduler.interval_error", loop=self.name)
                interval = 60.0
            await self._sleep(interval)


class SchedulerService:
    """Owns the polling, cascade-trigger and daily-summary loops."""

    def __init__(
        self,
        coordinator: EnrichmentCoordinator,
        *,
        measurement_sources: Sequence[MeasurementSource] = (),
        marker_sources: Sequence[MarkerSource] = (),
        settings: Settings | None = None,
        daily_summary: Callable[[], Awaitable[Any]] | None = None,
    ) -> None:
        self._coordinator = coordinator
        self._measurement_sources = list(measurement_sources)
        self._marker_sources = list(marker_sources)
        delay = float(settings.startup_delay_seconds) if settings is not None else 0.0
        summary_delay = float(settings.daily_summary_startup_delay_seconds) if settings is not None else 0.0

        self.loops: list[PeriodicLoop] = []
        if self._measurement_sources:
            self.loops.append(
                PeriodicLoop(
                    "measurement-poll",
                    self.poll_measurements,
                    _minutes(lambda s: s.measurement_poll_interval_minutes),
                    startup_delay=delay,
                )
            )
        if self._marker_sources:
            self.loops.append(
                PeriodicLoop(
                    "marker-poll",
                    self.poll_markers,
                    _minutes(lambda s: s.marker_poll_interval_minutes),
                    startup_delay=delay,
                )
            )
        self.loops.append(
            PeriodicLoop(
                "cascade-trigger",
                coordinator.run_cycle,
                _minutes(lambda s: s.analysis_interval_minutes),
                startup_delay=delay,
            )
        )
        if daily_summary is not None:
            self.loops.append(
                PeriodicLoop(
                    "daily-summary",
                    daily_summary,
                    _minutes(lambda s: s.daily_summary_interval_minutes),
                    startup_delay=summary_delay,
                )
            )

    async def start(self) -> None:
        for loop in self.loops:
            await loop.start()
        logger.info("scheduler.started", loops=[loop.name for loop in self.loops])

    async def stop(self) -> None:
        for loop in self.loops:
            await loop.stop()
        for source in [*self._measurement_sources, *self._marker_sources]:
            await source.close()
        logger.info("scheduler.stopped")

    # ── Cycles ────────────────────────────────────────────────

    async def poll_measurements(self) -> int:
        """Poll every measurement source; one failing source does not block the others."""
        total = 0
        for source in self._measurement_sources:
            try:
                total += await self._coordinator.poll_measurements(source)
            except Exception:
                logger.exception("scheduler.measurement_source_error", source=source.name)
        logger.debug("scheduler.measurements_polled", readings=total)
        return total

    async def poll_markers(self) -> int:
        total = 0
        for source in self._marker_sources:
            try:
                total += await self._coordinator.poll_markers(source)
            except Exception:
                logger.exception("scheduler.marker_source_error", source=source.name)
        logger.debug("scheduler.markers_polled", markers=total)
        return total
