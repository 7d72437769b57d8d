"""Tests for the recompute cascade and the enrichment coordinator."""

from datetime import timedelta

import pytest
from conftest import T0, marker, readings

from cgm_agent.analysis.segmentation import SegmentationParams
from cgm_agent.engine.cascade import CascadeCandidate, RecomputeCascade
from cgm_agent.engine.coordinator import EnrichmentCoordinator, merge_candidates
from cgm_agent.errors import InvariantViolation
from cgm_agent.models import AnalysisReason, EnrichmentHistoryEntry, JobKind, Window
from cgm_agent.queue.job_queue import JobQueue

H = timedelta(hours=1)


@pytest.fixture
def cascade(repos) -> RecomputeCascade:
    return RecomputeCascade(repos.measurements, repos.markers, repos.windows, repos.history)


async def _noop(job):
    return None


@pytest.fixture
async def queue(repos, clock):
    q = JobQueue(JobKind.WINDOW_ANALYSIS, _noop, repos.jobs, clock=clock)
    yield q
    await q.stop()


@pytest.fixture
def coordinator(cascade, queue, repos, settings, clock, notifier) -> EnrichmentCoordinator:
    return EnrichmentCoordinator(
        cascade,
        queue,
        repos.measurements,
        repos.markers,
        repos.windows,
        repos.history,
        settings=settings,
        clock=clock,
        notifier=notifier,
    )


async def _enrich(repos, window: Window, at) -> None:
    await repos.history.record_enrichment(
        EnrichmentHistoryEntry(
            window_id=window.id,
            stats_at_time=window.stats,
            period_start=window.period_start,
            period_end=window.period_end,
            result="ok",
            reason=AnalysisReason.INITIAL.value,
            analyzed_at=at,
        )
    )


class TestMarkerInserted:
    @pytest.mark.asyncio
    async def test_first_marker_creates_initial_window(self, repos, cascade):
        await repos.measurements.save_batch(readings(T0 - H, [100, 110, 120, 150, 170]))
        m = await repos.markers.insert(marker(T0))

        [candidate] = await cascade.on_marker_inserted(m)
        assert candidate.forced is False
        assert candidate.reason == AnalysisReason.INITIAL.value
        assert candidate.window.period_start == T0 - 3 * H
        assert candidate.window.period_end == T0 + 4 * H
        assert candidate.window.stats.count == 5

        stored = await repos.windows.get(m.id)
        assert stored.enriched is False
        assert stored.stats == candidate.window.stats

    @pytest.mark.asyncio
    async def test_previous_window_updated_first_and_forced(self, repos, cascade):
        await repos.measurements.save_batch(readings(T0, [100] * 40))
        a = await repos.markers.insert(marker(T0, "Breakfast"))
        await cascade.on_marker_inserted(a)
        await _enrich(repos, await repos.windows.get(a.id), T0)

        b = await repos.markers.insert(marker(T0 + 5 * H, "Lunch"))
        first, second = await cascade.on_marker_inserted(b)

        assert first.window.id == a.id
        assert first.forced is True
        assert first.reason == AnalysisReason.BOUNDARY_CHANGED.value
        assert first.window.period_end == T0 + 5 * H

        assert second.window.id == b.id
        assert second.forced is False
        assert second.window.period_start == T0

        stored_a = await repos.windows.get(a.id)
        assert stored_a.enriched is False
        assert stored_a.period_end == T0 + 5 * H
        # The old analysis stays visible until the next one lands.
        assert stored_a.enrichment_result == "ok"

    @pytest.mark.asyncio
    async def test_unchanged_previous_end_is_not_emitted(self, repos, cascade):
        a = await repos.markers.insert(marker(T0))
        await cascade.on_marker_inserted(a)
        # Default lookahead 4h equals max(3h minimum, next marker at +4h).
        b = await repos.markers.insert(marker(T0 + 4 * H))
        candidates = await cascade.on_marker_inserted(b)
        assert [c.window.id for c in candidates] == [b.id]

    @pytest.mark.asyncio
    async def test_later_windows_untouched(self, repos, cascade):
        a = await repos.markers.insert(marker(T0))
        c = await repos.markers.insert(marker(T0 + 8 * H))
        await cascade.on_marker_inserted(a)
        await cascade.on_marker_inserted(c)
        before = await repos.windows.get(c.id)

        b = await repos.markers.insert(marker(T0 + 4 * H))
        candidates = await cascade.on_marker_inserted(b)

        assert c.id not in {x.window.id for x in candidates}
        assert await repos.windows.get(c.id) == before

    @pytest.mark.asyncio
    async def test_catch_up_processes_markers_without_window(self, repos, cascade):
        a = await repos.markers.insert(marker(T0))
        b = await repos.markers.insert(marker(T0 + 6 * H))
        candidates = await cascade.catch_up()
        assert {c.window.id for c in candidates} >= {a.id, b.id}
        assert await repos.markers.list_without_window() == []
        assert await cascade.catch_up() == []


class TestMeasurementsArrived:
    @pytest.mark.asyncio
    async def test_only_changed_overlapping_windows(self, repos, cascade):
        a = await repos.markers.insert(marker(T0))
        far = await repos.markers.insert(marker(T0 + 24 * H))
        await cascade.catch_up()

        batch = await repos.measurements.save_batch(readings(T0 - H, [120, 140, 160]))
        candidates = await cascade.on_measurements_arrived(batch)

        assert [c.window.id for c in candidates] == [a.id]
        assert candidates[0].window.stats.count == 3
        assert candidates[0].reason == AnalysisReason.INITIAL.value
        assert (await repos.windows.get(far.id)).stats.count == 0

    @pytest.mark.asyncio
    async def test_identical_recompute_is_not_emitted(self, repos, cascade):
        a = await repos.markers.insert(marker(T0))
        await repos.measurements.save_batch(readings(T0, [120, 140, 160]))
        await cascade.catch_up()
        # Same stats as already stored: nothing changes.
        assert await cascade.on_measurements_arrived(readings(T0, [120, 140, 160])) == []
        assert (await repos.windows.get(a.id)).stats.count == 3

    @pytest.mark.asyncio
    async def test_new_data_reason_after_enrichment(self, repos, cascade):
        a = await repos.markers.insert(marker(T0))
        await repos.measurements.save_batch(readings(T0, [120]))
        await cascade.catch_up()
        await _enrich(repos, await repos.windows.get(a.id), T0)

        batch = await repos.measurements.save_batch(readings(T0 + H, [180]))
        [candidate] = await cascade.on_measurements_arrived(batch)
        assert candidate.reason == AnalysisReason.NEW_DATA.value
        assert (await repos.windows.get(a.id)).enriched is False

    @pytest.mark.asyncio
    async def test_window_without_marker_is_invariant_violation(self, repos, cascade):
        orphan = Window(marker_id="gone", marker_timestamp=T0, period_start=T0 - H, period_end=T0 + H)
        await repos.windows.upsert(orphan)
        with pytest.raises(InvariantViolation):
            await cascade.on_measurements_arrived(readings(T0, [100]))

    @pytest.mark.asyncio
    async def test_empty_batch(self, cascade):
        assert await cascade.on_measurements_arrived([]) == []


class TestRecomputeAll:
    @pytest.mark.asyncio
    async def test_rebuild_after_params_change(self, repos, cascade):
        a = await repos.markers.insert(marker(T0))
        await cascade.catch_up()
        wider = RecomputeCascade(
            repos.measurements,
            repos.markers,
            repos.windows,
            repos.history,
            params=SegmentationParams(default_lookback=5 * H),
        )
        [candidate] = await wider.recompute_all()
        assert candidate.window.id == a.id
        assert candidate.window.period_start == T0 - 5 * H
        assert await wider.recompute_all() == []


class TestCoordinator:
    def test_merge_prefers_forced(self):
        w = Window(marker_id="m", marker_timestamp=T0, period_start=T0, period_end=T0 + H)
        plain = CascadeCandidate(w, False, AnalysisReason.NEW_DATA.value)
        forced = CascadeCandidate(w, True, AnalysisReason.BOUNDARY_CHANGED.value)
        [merged] = merge_candidates([plain, forced])
        assert merged.forced is True
        assert merged.reason == AnalysisReason.BOUNDARY_CHANGED.value

    @pytest.mark.asyncio
    async def test_ingest_markers_enqueues_with_reason(self, coordinator, queue, repos):
        jobs = await coordinator.ingest_markers([marker(T0), marker(T0 + 5 * H)])
        # The first window's boundary change folds into its own candidate.
        assert len(jobs) == 2
        assert queue.pending_count == 2
        stored = await repos.jobs.list_unfinished(JobKind.WINDOW_ANALYSIS)
        assert {j.reason for j in stored} == {AnalysisReason.BOUNDARY_CHANGED.value, AnalysisReason.INITIAL.value}

    @pytest.mark.asyncio
    async def test_known_markers_ignored(self, coordinator, repos, notifier):
        m = marker(T0)
        await coordinator.ingest_markers([m])
        assert await coordinator.ingest_markers([m]) == []
        assert notifier.kinds().count("markers.new") == 1

    @pytest.mark.asyncio
    async def test_cooldown_blocks_new_data(self, coordinator, queue, repos, clock):
        await queue.start()
        m = marker(T0)
        await coordinator.ingest_markers([m])
        await queue.wait_idle(timeout=2)
        assert not queue.is_active(m.id)
        await _enrich(repos, await repos.windows.get(m.id), T0)

        clock.advance(timedelta(minutes=10))
        assert await coordinator.ingest_measurements(readings(T0, [150, 160])) == []
        assert (await repos.windows.get(m.id)).enriched is False

        clock.advance(timedelta(minutes=25))
        jobs = await coordinator.run_cycle()
        assert [j.subject_id for j in jobs] == [m.id]
        assert jobs[0].reason == AnalysisReason.NEW_DATA.value

    @pytest.mark.asyncio
    async def test_already_queued_window_skipped(self, coordinator, queue):
        m = marker(T0)
        await coordinator.ingest_markers([m])
        assert queue.is_active(m.id)
        assert await coordinator.ingest_measurements(readings(T0, [150])) == []
        assert queue.pending_count == 1

    @pytest.mark.asyncio
    async def test_forced_candidate_upgrades_waiting_job(self, coordinator, queue, repos):
        a = marker(T0)
        [initial] = await coordinator.ingest_markers([a])
        assert initial.reason == AnalysisReason.INITIAL.value

        jobs = await coordinator.ingest_markers([marker(T0 + 5 * H)])
        upgraded = next(j for j in jobs if j.subject_id == a.id)
        assert upgraded.id == initial.id
        assert upgraded.reason == AnalysisReason.BOUNDARY_CHANGED.value
        assert (await repos.jobs.get(initial.id)).reason == AnalysisReason.BOUNDARY_CHANGED.value
        assert queue.pending_count == 2

    @pytest.mark.asyncio
    async def test_nothing_enqueued_without_analyzer(self, cascade, queue, repos, settings, clock):
        disabled = EnrichmentCoordinator(
            cascade,
            queue,
            repos.measurements,
            repos.markers,
            repos.windows,
            repos.history,
            settings=settings,
            clock=clock,
            analyzer_enabled=False,
        )
        m = marker(T0)
        assert await disabled.ingest_markers([m]) == []
        assert queue.pending_count == 0
        assert await repos.windows.get(m.id) is not None

    @pytest.mark.asyncio
    async def test_ingest_measurements_notifies(self, coordinator, notifier):
        await coordinator.ingest_measurements(readings(T0, [100, 110]))
        assert ("measurements.new", 2, None) in notifier.events
        assert await coordinator.ingest_measurements(readings(T0, [100, 110])) == []
