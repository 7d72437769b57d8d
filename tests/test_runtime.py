"""End-to-end tests through the wired runtime."""

import asyncio
from datetime import timedelta

import pytest
from conftest import T0, marker, readings

from cgm_agent.agent.prompts import FOOD_TAG_SYSTEM_PROMPT
from cgm_agent.main import main
from cgm_agent.models import AnalysisReason, JobKind, JobStatus
from cgm_agent.runtime import Runtime

H = timedelta(hours=1)


@pytest.fixture
async def runtime(session_factory, settings, analyzer, clock, notifier):
    rt = Runtime(
        settings=settings,
        session_factory=session_factory,
        analyzer=analyzer,
        clock=clock,
        notifier=notifier,
        pacing_seconds=0,
    )
    await rt.start(with_scheduler=False)
    yield rt
    await rt.stop()


@pytest.mark.asyncio
async def test_marker_then_data_flow(runtime, analyzer, clock):
    breakfast = marker(T0, "Breakfast: oats")
    await runtime.coordinator.ingest_markers([breakfast])
    await runtime.wait_idle(timeout=5)

    first = await runtime.windows.get(breakfast.id)
    assert first.enriched is True
    assert first.stats.count == 0

    # Data inside the cooldown is stored but not analysed yet.
    clock.advance(timedelta(minutes=5))
    await runtime.coordinator.ingest_measurements(readings(T0, [100, 130, 160, 150]))
    await runtime.wait_idle(timeout=5)
    assert (await runtime.windows.get(breakfast.id)).enriched is False

    # A new marker moves the previous boundary: forced past the cooldown.
    lunch = marker(T0 + 5 * H, "Lunch")
    await runtime.coordinator.ingest_markers([lunch])
    await runtime.wait_idle(timeout=5)

    history = await runtime.history.list_for_window(breakfast.id)
    assert [h.reason for h in history] == [
        AnalysisReason.INITIAL.value,
        AnalysisReason.BOUNDARY_CHANGED.value,
    ]
    updated = await runtime.windows.get(breakfast.id)
    assert updated.enriched is True
    assert updated.period_end == T0 + 5 * H
    assert updated.stats.count == 4
    assert (await runtime.windows.get(lunch.id)).enriched is True


@pytest.mark.asyncio
async def test_boundary_change_during_analysis_is_not_lost(runtime, analyzer, clock):
    analyzer.gate = asyncio.Event()

    def one_minute_per_call(context):
        clock.advance(timedelta(minutes=1))
        return "Looks stable."

    analyzer.responder = one_minute_per_call
    first = marker(T0, "Breakfast")
    await runtime.coordinator.ingest_markers([first])
    await asyncio.wait_for(analyzer.entered.wait(), timeout=2)

    # The next marker arrives while the first window is with the analyzer.
    second = marker(T0 + 5 * H, "Lunch")
    jobs = await runtime.coordinator.ingest_markers([second])
    assert (first.id, AnalysisReason.BOUNDARY_CHANGED.value) in [(j.subject_id, j.reason) for j in jobs]

    analyzer.gate.set()
    await runtime.wait_idle(timeout=5)

    history = await runtime.history.list_for_window(first.id)
    assert [h.reason for h in history] == [
        AnalysisReason.INITIAL.value,
        AnalysisReason.BOUNDARY_CHANGED.value,
    ]
    assert history[-1].period_end == T0 + 5 * H
    stored = await runtime.windows.get(first.id)
    assert stored.enriched is True
    assert stored.period_end == T0 + 5 * H

    # Nothing left for the periodic trigger.
    clock.advance(timedelta(minutes=1))
    assert await runtime.coordinator.run_cycle() == []


@pytest.mark.asyncio
async def test_restart_recovers_pending_work(session_factory, settings, analyzer, clock, notifier):
    stopped = Runtime(
        settings=settings,
        session_factory=session_factory,
        analyzer=analyzer,
        clock=clock,
        notifier=notifier,
        pacing_seconds=0,
    )
    m = marker(T0)
    # Queue work without any worker running, as if the process died.
    jobs = await stopped.coordinator.ingest_markers([m])
    assert len(jobs) == 1

    fresh = Runtime(
        settings=settings,
        session_factory=session_factory,
        analyzer=analyzer,
        clock=clock,
        notifier=notifier,
        pacing_seconds=0,
    )
    await fresh.start(with_scheduler=False)
    try:
        await fresh.wait_idle(timeout=5)
    finally:
        await fresh.stop()

    assert (await fresh.jobs.get(jobs[0].id)).status == JobStatus.COMPLETED
    assert (await fresh.windows.get(m.id)).enriched is True


@pytest.mark.asyncio
async def test_food_patterns_from_tagged_windows(runtime, analyzer):
    analyzer.responder = lambda ctx: '["Oatmeal"]' if ctx.system_prompt == FOOD_TAG_SYSTEM_PROMPT else "Gentle rise."
    await runtime.coordinator.ingest_measurements(readings(T0 - H, [95, 100, 105, 100, 140, 170, 150, 120]))
    breakfast = marker(T0, "Oatmeal with berries")
    await runtime.coordinator.ingest_markers([breakfast])
    await runtime.wait_idle(timeout=5)

    [oatmeal] = await runtime.food_patterns()
    assert oatmeal.normalized_name == "oatmeal"
    assert oatmeal.occurrences == 1
    assert oatmeal.green_count == 1
    assert oatmeal.avg_spike == (await runtime.windows.get(breakfast.id)).stats.spike
    assert oatmeal.first_seen == T0


@pytest.mark.asyncio
async def test_status_counts_and_spend(runtime):
    await runtime.coordinator.ingest_measurements(readings(T0, [100, 120]))
    await runtime.coordinator.ingest_markers([marker(T0)])
    await runtime.wait_idle(timeout=5)

    status = await runtime.status()
    assert status["measurements"] == 2
    assert status["markers"] == 1
    assert status["windows_pending"] == 0
    assert set(status["queued"]) == {kind.value for kind in JobKind}
    spent = status["cost_usd"]
    assert spent["total"] == pytest.approx(spent["window_analysis"] + spent["food_tags"])
    assert spent["window_analysis"] > 0


def test_cli_without_command_exits():
    with pytest.raises(SystemExit) as exc:
        main([])
    assert exc.value.code == 1
