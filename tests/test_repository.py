"""Tests for the SQLAlchemy repositories."""

from datetime import timedelta

import pytest
from conftest import T0, marker, readings

from cgm_agent.errors import InvariantViolation
from cgm_agent.models import (
    AnalyzerUsage,
    ChatMessage,
    ChatRole,
    ChatSession,
    EnrichmentHistoryEntry,
    FoodTag,
    Job,
    JobKind,
    JobStatus,
    Measurement,
    Window,
    WindowStats,
)

H = timedelta(hours=1)


def _window(m, **kw) -> Window:
    return Window(
        marker_id=m.id,
        marker_timestamp=m.timestamp,
        period_start=kw.pop("start", m.timestamp - 3 * H),
        period_end=kw.pop("end", m.timestamp + 4 * H),
        **kw,
    )


def _entry(window: Window, at, stats=None, reason="Initial analysis") -> EnrichmentHistoryEntry:
    return EnrichmentHistoryEntry(
        window_id=window.id,
        stats_at_time=stats or window.stats,
        period_start=window.period_start,
        period_end=window.period_end,
        result=f"analysis at {at:%H:%M}",
        classification="green",
        model="gpt-4o-mini",
        reason=reason,
        analyzed_at=at,
    )


class TestMeasurements:
    @pytest.mark.asyncio
    async def test_duplicates_rejected(self, repos):
        first = await repos.measurements.save_batch(readings(T0, [100, 110, 120]))
        assert len(first) == 3

        again = readings(T0, [100, 110, 120, 130])
        fresh = await repos.measurements.save_batch(again)
        assert [m.value for m in fresh] == [130]
        assert await repos.measurements.count() == 4

    @pytest.mark.asyncio
    async def test_duplicates_within_batch(self, repos):
        batch = [Measurement(timestamp=T0, value=100), Measurement(timestamp=T0, value=101)]
        fresh = await repos.measurements.save_batch(batch)
        assert len(fresh) == 1

    @pytest.mark.asyncio
    async def test_same_timestamp_other_source_kept(self, repos):
        batch = [Measurement(timestamp=T0, value=100), Measurement(timestamp=T0, value=101, source="backup")]
        assert len(await repos.measurements.save_batch(batch)) == 2
        assert await repos.measurements.latest_timestamp("backup") == T0

    @pytest.mark.asyncio
    async def test_range_inclusive_period_half_open(self, repos):
        await repos.measurements.save_batch(readings(T0, [100, 110, 120, 130]))
        end = T0 + timedelta(minutes=45)
        assert len(await repos.measurements.query_range(T0, end)) == 4
        assert len(await repos.measurements.query_period(T0, end)) == 3


class TestMarkers:
    @pytest.mark.asyncio
    async def test_neighbours_and_missing_windows(self, repos):
        a, b, c = marker(T0, "a"), marker(T0 + H, "b"), marker(T0 + 2 * H, "c")
        for m in (c, a, b):
            await repos.markers.insert(m)

        assert (await repos.markers.previous(b)).id == a.id
        assert (await repos.markers.next(b)).id == c.id
        assert await repos.markers.previous(a) is None
        assert await repos.markers.next(c) is None

        await repos.windows.upsert(_window(a))
        missing = await repos.markers.list_without_window()
        assert [m.id for m in missing] == [b.id, c.id]

    @pytest.mark.asyncio
    async def test_equal_timestamps_ordered_by_id(self, repos):
        a = marker(T0, marker_id="aaa")
        b = marker(T0, marker_id="bbb")
        await repos.markers.insert(b)
        await repos.markers.insert(a)
        assert (await repos.markers.next(a)).id == "bbb"
        assert (await repos.markers.previous(b)).id == "aaa"


class TestWindowsAndHistory:
    @pytest.mark.asyncio
    async def test_upsert_never_touches_projection(self, repos):
        m = marker(T0)
        await repos.markers.insert(m)
        window = _window(m, stats=WindowStats(count=2, avg=100.0))
        await repos.windows.upsert(window)
        await repos.history.record_enrichment(_entry(window, T0))

        await repos.windows.upsert(window.model_copy(update={"enriched": False, "enrichment_result": "bogus"}))
        stored = await repos.windows.get(m.id)
        assert stored.enrichment_result == "analysis at 08:00"
        assert stored.enriched is False

    @pytest.mark.asyncio
    async def test_record_enrichment_projects_newest_entry(self, repos):
        m = marker(T0)
        await repos.markers.insert(m)
        window = _window(m, stats=WindowStats(count=2, avg=100.0))
        await repos.windows.upsert(window)

        await repos.history.record_enrichment(_entry(window, T0))
        updated = await repos.history.record_enrichment(_entry(window, T0 + H, reason="Manual re-analysis"))

        assert updated.enriched is True
        assert updated.enrichment_result == "analysis at 09:00"
        assert updated.last_enriched_at == T0 + H
        history = await repos.history.list_for_window(m.id)
        assert [h.analyzed_at for h in history] == [T0, T0 + H]
        assert (await repos.history.latest(m.id)).reason == "Manual re-analysis"

    @pytest.mark.asyncio
    async def test_record_enrichment_keeps_window_pending_when_stats_moved(self, repos):
        m = marker(T0)
        await repos.markers.insert(m)
        analysed = _window(m, stats=WindowStats(count=2, avg=100.0))
        await repos.windows.upsert(analysed.model_copy(update={"stats": WindowStats(count=3, avg=110.0)}))

        updated = await repos.history.record_enrichment(_entry(analysed, T0))
        assert updated.enriched is False
        assert updated.enrichment_result == "analysis at 08:00"
        assert updated.stats.count == 3

    @pytest.mark.asyncio
    async def test_record_enrichment_for_missing_window(self, repos):
        m = marker(T0)
        with pytest.raises(InvariantViolation):
            await repos.history.record_enrichment(_entry(_window(m), T0))
        assert await repos.history.list_for_window(m.id) == []

    @pytest.mark.asyncio
    async def test_overlap_is_inclusive(self, repos):
        m = marker(T0)
        await repos.markers.insert(m)
        await repos.windows.upsert(_window(m))
        end = T0 + 4 * H
        assert len(await repos.windows.list_overlapping(end, end + H)) == 1
        assert await repos.windows.list_overlapping(end + timedelta(seconds=1), end + H) == []


class TestJobs:
    @pytest.mark.asyncio
    async def test_lifecycle_and_unfinished(self, repos):
        job = await repos.jobs.create(Job(kind=JobKind.CHAT, subject_id="s1", created_at=T0))
        other = await repos.jobs.create(Job(kind=JobKind.COMPARISON, subject_id="c1", created_at=T0))

        await repos.jobs.mark_processing(job.id, T0)
        assert [j.id for j in await repos.jobs.list_unfinished(JobKind.CHAT)] == [job.id]

        await repos.jobs.mark_failed(job.id, "boom", T0 + H)
        stored = await repos.jobs.get(job.id)
        assert stored.status == JobStatus.FAILED
        assert stored.error == "boom"
        assert stored.finished_at == T0 + H
        assert await repos.jobs.list_unfinished(JobKind.CHAT) == []
        assert [j.id for j in await repos.jobs.list_unfinished(JobKind.COMPARISON)] == [other.id]


class TestChat:
    @pytest.mark.asyncio
    async def test_messages_keep_insertion_order(self, repos):
        chat = await repos.chats.create_session(ChatSession(title="t", created_at=T0, updated_at=T0))
        for i in range(4):
            role = ChatRole.USER if i % 2 == 0 else ChatRole.ASSISTANT
            await repos.chats.add_message(
                ChatMessage(session_id=chat.id, role=role, content=str(i), created_at=T0)
            )
        messages = await repos.chats.list_messages(chat.id)
        assert [m.content for m in messages] == ["0", "1", "2", "3"]

    @pytest.mark.asyncio
    async def test_update_message(self, repos):
        chat = await repos.chats.create_session(ChatSession(created_at=T0, updated_at=T0))
        msg = await repos.chats.add_message(
            ChatMessage(session_id=chat.id, role=ChatRole.ASSISTANT, status=JobStatus.PENDING, created_at=T0)
        )
        await repos.chats.update_message(msg.id, status=JobStatus.COMPLETED, content="hello")
        stored = await repos.chats.get_message(msg.id)
        assert stored.status == JobStatus.COMPLETED
        assert stored.content == "hello"


class TestFoodTags:
    @pytest.mark.asyncio
    async def test_add_many_dedupes(self, repos):
        tags = [
            FoodTag(marker_id="m1", name="Rice", normalized_name="rice"),
            FoodTag(marker_id="m1", name="rice", normalized_name="rice"),
            FoodTag(marker_id="m1", name="Chicken", normalized_name="chicken"),
        ]
        assert await repos.food_tags.add_many(tags) == 2
        assert await repos.food_tags.add_many(tags[:1]) == 0
        assert await repos.food_tags.has_tags("m1")
        assert not await repos.food_tags.has_tags("m2")
        assert [t.name for t in await repos.food_tags.list_for_marker("m1")] == ["Chicken", "Rice"]


class TestUsage:
    @pytest.mark.asyncio
    async def test_total_cost_per_kind(self, repos):
        for kind, cost in ((JobKind.WINDOW_ANALYSIS, 0.002), (JobKind.WINDOW_ANALYSIS, 0.001), (JobKind.CHAT, 0.01)):
            await repos.usage.record(
                AnalyzerUsage(kind=kind, subject_id="s1", model="gpt-4o-mini", cost_usd=cost, success=True, called_at=T0)
            )
        assert await repos.usage.total_cost() == pytest.approx(0.013)
        assert await repos.usage.total_cost(JobKind.WINDOW_ANALYSIS) == pytest.approx(0.003)
        assert await repos.usage.total_cost(JobKind.COMPARISON) == 0.0
