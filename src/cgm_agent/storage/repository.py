"""Data-access layer: thin async wrappers around SQLAlchemy queries.

Every public method opens its own short-lived session and commits before
returning, so no session is ever held across an analyzer call.  Rows are
converted to the pydantic models in :mod:`cgm_agent.models` on the way out.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import AsyncIterator, Sequence

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cgm_agent.analysis.change import has_changed
from cgm_agent.errors import InvariantViolation
from cgm_agent.models import (
    AnalyzerUsage,
    ChatMessage,
    ChatRole,
    ChatSession,
    DailySummary,
    DailySummarySnapshot,
    EnrichmentHistoryEntry,
    FoodTag,
    Job,
    JobKind,
    JobStatus,
    Marker,
    Measurement,
    PeriodComparison,
    PeriodSummary,
    RangeStats,
    Window,
    WindowStats,
)
from cgm_agent.storage.database import (
    AnalyzerUsageRow,
    ChatMessageRow,
    ChatSessionRow,
    DailySummaryRow,
    DailySummarySnapshotRow,
    EnrichmentHistoryRow,
    FoodTagRow,
    JobRow,
    MarkerRow,
    MeasurementRow,
    PeriodComparisonRow,
    PeriodSummaryRow,
    WindowRow,
    get_session_factory,
)


class BaseRepository:
    """Shared base with session management for all repositories."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._factory = session_factory

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        factory = self._factory or get_session_factory()
        async with factory() as session:
            yield session


# ── Row converters ────────────────────────────────────────────

def _measurement(row: MeasurementRow) -> Measurement:
    return Measurement(id=row.id, timestamp=row.timestamp, value=row.value, source=row.source)


def _marker(row: MarkerRow) -> Marker:
    return Marker(id=row.id, timestamp=row.timestamp, title=row.title or "", payload=row.payload or "")


def _window(row: WindowRow) -> Window:
    return Window(
        marker_id=row.marker_id,
        marker_timestamp=row.marker_timestamp,
        period_start=row.period_start,
        period_end=row.period_end,
        stats=WindowStats.model_validate_json(row.stats_json or "{}"),
        enriched=bool(row.enriched),
        enrichment_result=row.enrichment_result,
        classification=row.classification,
        model=row.model,
        last_enriched_at=row.last_enriched_at,
    )


def _history(row: EnrichmentHistoryRow) -> EnrichmentHistoryEntry:
    return EnrichmentHistoryEntry(
        id=row.id,
        window_id=row.window_id,
        stats_at_time=WindowStats.model_validate_json(row.stats_json or "{}"),
        period_start=row.period_start,
        period_end=row.period_end,
        result=row.result,
        classification=row.classification,
        model=row.model,
        reason=row.reason,
        analyzed_at=row.analyzed_at,
    )


def _job(row: JobRow) -> Job:
    return Job(
        id=row.id,
        kind=JobKind(row.kind),
        subject_id=row.subject_id,
        status=JobStatus(row.status),
        model_override=row.model_override,
        reason=row.reason,
        error=row.error,
        created_at=row.created_at,
        started_at=row.started_at,
        finished_at=row.finished_at,
    )


def _range_stats(raw: str | None) -> RangeStats | None:
    return RangeStats.model_validate_json(raw) if raw else None


def _dump(stats: RangeStats | None) -> str | None:
    return stats.model_dump_json() if stats is not None else None


# ── Measurements & markers ────────────────────────────────────

class MeasurementRepository(BaseRepository):
    """Append-only store of sensor readings."""

    async def save_batch(self, measurements: Sequence[Measurement]) -> list[Measurement]:
        """Store *measurements*, skipping ``(source, timestamp)`` duplicates.

        Returns only the newly stored measurements, sorted by timestamp.
        """
        if not measurements:
            return []
        lo = min(m.timestamp for m in measurements)
        hi = max(m.timestamp for m in measurements)

        async with self._session() as session:
            stmt = select(MeasurementRow.source, MeasurementRow.timestamp).where(
                MeasurementRow.timestamp >= lo,
                MeasurementRow.timestamp <= hi,
            )
            seen = {(src, ts) for src, ts in (await session.execute(stmt)).all()}

            fresh: list[Measurement] = []
            for m in sorted(measurements, key=lambda m: m.timestamp):
                key = (m.source, m.timestamp)
                if key in seen:
                    continue
                seen.add(key)
                fresh.append(m)

            session.add_all(
                MeasurementRow(id=m.id, source=m.source, timestamp=m.timestamp, value=m.value)
                for m in fresh
            )
            await session.commit()
        return fresh

    async def query_range(self, start: datetime, end: datetime) -> list[Measurement]:
        """Measurements in ``[start, end]``, ordered by timestamp."""
        async with self._session() as session:
            stmt = (
                select(MeasurementRow)
                .where(MeasurementRow.timestamp >= start, MeasurementRow.timestamp <= end)
                .order_by(MeasurementRow.timestamp.asc())
            )
            result = await session.execute(stmt)
            return [_measurement(r) for r in result.scalars().all()]

    async def query_period(self, start: datetime, end: datetime) -> list[Measurement]:
        """Measurements in the half-open period ``[start, end)``."""
        async with self._session() as session:
            stmt = (
                select(MeasurementRow)
                .where(MeasurementRow.timestamp >= start, MeasurementRow.timestamp < end)
                .order_by(MeasurementRow.timestamp.asc())
            )
            result = await session.execute(stmt)
            return [_measurement(r) for r in result.scalars().all()]

    async def latest_timestamp(self, source: str | None = None) -> datetime | None:
        async with self._session() as session:
            stmt = select(func.max(MeasurementRow.timestamp))
            if source is not None:
                stmt = stmt.where(MeasurementRow.source == source)
            return (await session.execute(stmt)).scalar()

    async def earliest_timestamp(self) -> datetime | None:
        async with self._session() as session:
            return (await session.execute(select(func.min(MeasurementRow.timestamp)))).scalar()

    async def count(self) -> int:
        async with self._session() as session:
            stmt = select(func.count()).select_from(MeasurementRow)
            return (await session.execute(stmt)).scalar() or 0


class MarkerRepository(BaseRepository):
    """Markers ordered by ``(timestamp, id)``."""

    async def insert(self, marker: Marker) -> Marker:
        async with self._session() as session:
            session.add(
                MarkerRow(id=marker.id, timestamp=marker.timestamp, title=marker.title, payload=marker.payload)
            )
            await session.commit()
        return marker

    async def get(self, marker_id: str) -> Marker | None:
        async with self._session() as session:
            row = await session.get(MarkerRow, marker_id)
            return _marker(row) if row is not None else None

    async def list_all(self) -> list[Marker]:
        async with self._session() as session:
            stmt = select(MarkerRow).order_by(MarkerRow.timestamp.asc(), MarkerRow.id.asc())
            result = await session.execute(stmt)
            return [_marker(r) for r in result.scalars().all()]

    async def previous(self, marker: Marker) -> Marker | None:
        """The marker immediately before *marker* in ``(timestamp, id)`` order."""
        async with self._session() as session:
            stmt = (
                select(MarkerRow)
                .where(
                    or_(
                        MarkerRow.timestamp < marker.timestamp,
                        and_(MarkerRow.timestamp == marker.timestamp, MarkerRow.id < marker.id),
                    )
                )
                .order_by(MarkerRow.timestamp.desc(), MarkerRow.id.desc())
                .limit(1)
            )
            row = (await session.execute(stmt)).scalar_one_or_none()
            return _marker(row) if row is not None else None

    async def next(self, marker: Marker) -> Marker | None:
        """The marker immediately after *marker* in ``(timestamp, id)`` order."""
        async with self._session() as session:
            stmt = (
                select(MarkerRow)
                .where(
                    or_(
                        MarkerRow.timestamp > marker.timestamp,
                        and_(MarkerRow.timestamp == marker.timestamp, MarkerRow.id > marker.id),
                    )
                )
                .order_by(MarkerRow.timestamp.asc(), MarkerRow.id.asc())
                .limit(1)
            )
            row = (await session.execute(stmt)).scalar_one_or_none()
            return _marker(row) if row is not None else None

    async def list_without_window(self) -> list[Marker]:
        async with self._session() as session:
            stmt = (
                select(MarkerRow)
                .outerjoin(WindowRow, WindowRow.marker_id == MarkerRow.id)
                .where(WindowRow.marker_id.is_(None))
                .order_by(MarkerRow.timestamp.asc(), MarkerRow.id.asc())
            )
            result = await session.execute(stmt)
            return [_marker(r) for r in result.scalars().all()]

    async def list_in_range(
        self, start: datetime, end: datetime, *, inclusive_end: bool = False
    ) -> list[Marker]:
        """Markers in ``[start, end)`` (or ``[start, end]`` with *inclusive_end*)."""
        upper = MarkerRow.timestamp <= end if inclusive_end else MarkerRow.timestamp < end
        async with self._session() as session:
            stmt = (
                select(MarkerRow)
                .where(MarkerRow.timestamp >= start, upper)
                .order_by(MarkerRow.timestamp.asc(), MarkerRow.id.asc())
            )
            result = await session.execute(stmt)
            return [_marker(r) for r in result.scalars().all()]


# ── Windows & history ────────────────────────────────────────

class WindowRepository(BaseRepository):
    """Analysis windows.

    :meth:`upsert` writes boundaries, statistics and the ``enriched`` flag
    only.  The enrichment projection is written exclusively by
    :meth:`HistoryRepository.record_enrichment`.
    """

    async def get(self, window_id: str) -> Window | None:
        async with self._session() as session:
            row = await session.get(WindowRow, window_id)
            return _window(row) if row is not None else None

    async def upsert(self, window: Window) -> None:
        async with self._session() as session:
            row = await session.get(WindowRow, window.marker_id)
            if row is None:
                row = WindowRow(marker_id=window.marker_id)
                session.add(row)
            row.marker_timestamp = window.marker_timestamp
            row.period_start = window.period_start
            row.period_end = window.period_end
            row.stats_json = window.stats.model_dump_json()
            row.enriched = int(window.enriched)
            await session.commit()

    async def list_all(self) -> list[Window]:
        async with self._session() as session:
            stmt = select(WindowRow).order_by(WindowRow.marker_timestamp.asc(), WindowRow.marker_id.asc())
            result = await session.execute(stmt)
            return [_window(r) for r in result.scalars().all()]

    async def list_unenriched(self) -> list[Window]:
        async with self._session() as session:
            stmt = (
                select(WindowRow)
                .where(WindowRow.enriched == 0)
                .order_by(WindowRow.marker_timestamp.asc(), WindowRow.marker_id.asc())
            )
            result = await session.execute(stmt)
            return [_window(r) for r in result.scalars().all()]

    async def list_overlapping(self, lo: datetime, hi: datetime) -> list[Window]:
        """Windows whose ``[period_start, period_end]`` intersects ``[lo, hi]``."""
        async with self._session() as session:
            stmt = (
                select(WindowRow)
                .where(WindowRow.period_start <= hi, WindowRow.period_end >= lo)
                .order_by(WindowRow.marker_timestamp.asc(), WindowRow.marker_id.asc())
            )
            result = await session.execute(stmt)
            return [_window(r) for r in result.scalars().all()]


class HistoryRepository(BaseRepository):
    """Append-only enrichment history."""

    @staticmethod
    def _row(entry: EnrichmentHistoryEntry) -> EnrichmentHistoryRow:
        return EnrichmentHistoryRow(
            id=entry.id,
            window_id=entry.window_id,
            stats_json=entry.stats_at_time.model_dump_json(),
            period_start=entry.period_start,
            period_end=entry.period_end,
            result=entry.result,
            classification=entry.classification,
            model=entry.model,
            reason=entry.reason,
            analyzed_at=entry.analyzed_at,
        )

    async def record_enrichment(self, entry: EnrichmentHistoryEntry) -> Window:
        """Append *entry* and project it onto its window in one commit.

        The window is only flagged ``enriched`` when its stored boundaries
        and statistics still match what was analysed; otherwise newer data
        arrived meanwhile and the window stays pending.
        """
        async with self._session() as session:
            row = await session.get(WindowRow, entry.window_id)
            if row is None:
                raise InvariantViolation(f"history entry for missing window {entry.window_id!r}")

            session.add(self._row(entry))

            current = WindowStats.model_validate_json(row.stats_json or "{}")
            unchanged = (
                row.period_start == entry.period_start
                and row.period_end == entry.period_end
                and not has_changed(current, entry.stats_at_time)
            )
            row.enrichment_result = entry.result
            row.classification = entry.classification
            row.model = entry.model
            row.last_enriched_at = entry.analyzed_at
            if unchanged:
                row.stats_json = entry.stats_at_time.model_dump_json()
                row.enriched = 1
            await session.commit()
            return _window(row)

    async def list_for_window(self, window_id: str) -> list[EnrichmentHistoryEntry]:
        async with self._session() as session:
            stmt = (
                select(EnrichmentHistoryRow)
                .where(EnrichmentHistoryRow.window_id == window_id)
                .order_by(EnrichmentHistoryRow.analyzed_at.asc())
            )
            result = await session.execute(stmt)
            return [_history(r) for r in result.scalars().all()]

    async def latest(self, window_id: str) -> EnrichmentHistoryEntry | None:
        async with self._session() as session:
            stmt = (
                select(EnrichmentHistoryRow)
                .where(EnrichmentHistoryRow.window_id == window_id)
                .order_by(EnrichmentHistoryRow.analyzed_at.desc())
                .limit(1)
            )
            row = (await session.execute(stmt)).scalar_one_or_none()
            return _history(row) if row is not None else None


# ── Jobs & usage ──────────────────────────────────────────────

class JobRepository(BaseRepository):
    """Durable job rows backing every :class:`~cgm_agent.queue.job_queue.JobQueue`."""

    async def create(self, job: Job) -> Job:
        async with self._session() as session:
            session.add(
                JobRow(
                    id=job.id,
                    kind=job.kind.value,
                    subject_id=job.subject_id,
                    status=job.status.value,
                    model_override=job.model_override,
                    reason=job.reason,
                    created_at=job.created_at,
                )
            )
            await session.commit()
        return job

    async def get(self, job_id: str) -> Job | None:
        async with self._session() as session:
            row = await session.get(JobRow, job_id)
            return _job(row) if row is not None else None

    async def _set(self, job_id: str, **values: object) -> None:
        async with self._session() as session:
            await session.execute(update(JobRow).where(JobRow.id == job_id).values(**values))
            await session.commit()

    async def set_reason(self, job_id: str, reason: str) -> None:
        await self._set(job_id, reason=reason)

    async def mark_processing(self, job_id: str, at: datetime) -> None:
        await self._set(job_id, status=JobStatus.PROCESSING.value, started_at=at)

    async def mark_completed(self, job_id: str, at: datetime) -> None:
        await self._set(job_id, status=JobStatus.COMPLETED.value, finished_at=at, error=None)

    async def mark_failed(self, job_id: str, error: str, at: datetime) -> None:
        await self._set(job_id, status=JobStatus.FAILED.value, finished_at=at, error=error)

    async def list_unfinished(self, kind: JobKind) -> list[Job]:
        """Pending and processing jobs of *kind*, oldest first."""
        async with self._session() as session:
            stmt = (
                select(JobRow)
                .where(
                    JobRow.kind == kind.value,
                    JobRow.status.in_([JobStatus.PENDING.value, JobStatus.PROCESSING.value]),
                )
                .order_by(JobRow.created_at.asc(), JobRow.id.asc())
            )
            result = await session.execute(stmt)
            return [_job(r) for r in result.scalars().all()]

    async def list_for_subject(self, subject_id: str, kind: JobKind | None = None) -> list[Job]:
        async with self._session() as session:
            stmt = select(JobRow).where(JobRow.subject_id == subject_id)
            if kind is not None:
                stmt = stmt.where(JobRow.kind == kind.value)
            result = await session.execute(stmt.order_by(JobRow.created_at.asc()))
            return [_job(r) for r in result.scalars().all()]


class UsageRepository(BaseRepository):
    """Analyzer call log."""

    async def record(self, usage: AnalyzerUsage) -> None:
        async with self._session() as session:
            session.add(
                AnalyzerUsageRow(
                    id=usage.id,
                    kind=usage.kind.value,
                    subject_id=usage.subject_id,
                    model=usage.model,
                    input_tokens=usage.input_tokens,
                    output_tokens=usage.output_tokens,
                    total_tokens=usage.total_tokens,
                    cost_usd=usage.cost_usd,
                    reason=usage.reason,
                    success=int(usage.success),
                    finish_reason=usage.finish_reason,
                    duration_ms=usage.duration_ms,
                    called_at=usage.called_at,
                )
            )
            await session.commit()

    async def list_for_subject(self, subject_id: str) -> list[AnalyzerUsage]:
        async with self._session() as session:
            stmt = (
                select(AnalyzerUsageRow)
                .where(AnalyzerUsageRow.subject_id == subject_id)
                .order_by(AnalyzerUsageRow.called_at.asc())
            )
            rows = (await session.execute(stmt)).scalars().all()
            return [
                AnalyzerUsage(
                    id=r.id,
                    kind=JobKind(r.kind),
                    subject_id=r.subject_id,
                    model=r.model,
                    input_tokens=r.input_tokens,
                    output_tokens=r.output_tokens,
                    total_tokens=r.total_tokens,
                    cost_usd=r.cost_usd,
                    reason=r.reason,
                    success=bool(r.success),
                    finish_reason=r.finish_reason,
                    duration_ms=r.duration_ms,
                    called_at=r.called_at,
                )
                for r in rows
            ]

    async def total_cost(self, kind: JobKind | None = None) -> float:
        async with self._session() as session:
            stmt = select(func.coalesce(func.sum(AnalyzerUsageRow.cost_usd), 0.0))
            if kind is not None:
                stmt = stmt.where(AnalyzerUsageRow.kind == kind.value)
            return float((await session.execute(stmt)).scalar() or 0.0)


# ── Chat ──────────────────────────────────────────────────────

class ChatRepository(BaseRepository):
    """Chat sessions and their messages."""

    async def create_session(self, chat: ChatSession) -> ChatSession:
        async with self._session() as session:
            session.add(
                ChatSessionRow(
                    id=chat.id,
                    title=chat.title,
                    period_start=chat.period_start,
                    period_end=chat.period_end,
                    created_at=chat.created_at,
                    updated_at=chat.updated_at or chat.created_at,
                )
            )
            await session.commit()
        return chat

    async def get_session(self, session_id: str) -> ChatSession | None:
        async with self._session() as session:
            row = await session.get(ChatSessionRow, session_id)
            if row is None:
                return None
            return ChatSession(
                id=row.id,
                title=row.title,
                period_start=row.period_start,
                period_end=row.period_end,
                created_at=row.created_at,
                updated_at=row.updated_at,
            )

    async def add_message(self, message: ChatMessage) -> ChatMessage:
        """Append *message*; messages keep their insertion order within a session."""
        async with self._session() as session:
            last = (
                await session.execute(
                    select(func.max(ChatMessageRow.position)).where(
                        ChatMessageRow.session_id == message.session_id
                    )
                )
            ).scalar()
            session.add(
                ChatMessageRow(
                    id=message.id,
                    session_id=message.session_id,
                    position=(last or 0) + 1,
                    role=message.role.value,
                    content=message.content,
                    status=message.status.value,
                    error_message=message.error_message,
                    model=message.model,
                    created_at=message.created_at,
                )
            )
            await session.execute(
                update(ChatSessionRow)
                .where(ChatSessionRow.id == message.session_id)
                .values(updated_at=message.created_at)
            )
            await session.commit()
        return message

    @staticmethod
    def _message(row: ChatMessageRow) -> ChatMessage:
        return ChatMessage(
            id=row.id,
            session_id=row.session_id,
            role=ChatRole(row.role),
            content=row.content or "",
            status=JobStatus(row.status),
            error_message=row.error_message,
            model=row.model,
            input_tokens=row.input_tokens,
            output_tokens=row.output_tokens,
            cost_usd=row.cost_usd,
            created_at=row.created_at,
        )

    async def get_message(self, message_id: str) -> ChatMessage | None:
        async with self._session() as session:
            row = await session.get(ChatMessageRow, message_id)
            return self._message(row) if row is not None else None

    async def list_messages(self, session_id: str) -> list[ChatMessage]:
        async with self._session() as session:
            stmt = (
                select(ChatMessageRow)
                .where(ChatMessageRow.session_id == session_id)
                .order_by(ChatMessageRow.position.asc())
            )
            result = await session.execute(stmt)
            return [self._message(r) for r in result.scalars().all()]

    async def update_message(self, message_id: str, **values: object) -> None:
        if "status" in values and isinstance(values["status"], JobStatus):
            values["status"] = values["status"].value
        async with self._session() as session:
            await session.execute(
                update(ChatMessageRow).where(ChatMessageRow.id == message_id).values(**values)
            )
            await session.commit()


# ── Period comparisons & summaries ────────────────────────────

class ComparisonRepository(BaseRepository):
    async def save(self, comparison: PeriodComparison) -> PeriodComparison:
        async with self._session() as session:
            await session.merge(
                PeriodComparisonRow(
                    id=comparison.id,
                    name=comparison.name,
                    period_a_start=comparison.period_a_start,
                    period_a_end=comparison.period_a_end,
                    period_a_label=comparison.period_a_label,
                    period_b_start=comparison.period_b_start,
                    period_b_end=comparison.period_b_end,
                    period_b_label=comparison.period_b_label,
                    stats_a_json=_dump(comparison.stats_a),
                    stats_b_json=_dump(comparison.stats_b),
                    marker_count_a=comparison.marker_count_a,
                    marker_count_b=comparison.marker_count_b,
                    marker_titles_a=comparison.marker_titles_a,
                    marker_titles_b=comparison.marker_titles_b,
                    result=comparison.result,
                    classification=comparison.classification,
                    model=comparison.model,
                    status=comparison.status.value,
                    error_message=comparison.error_message,
                    created_at=comparison.created_at,
                    completed_at=comparison.completed_at,
                )
            )
            await session.commit()
        return comparison

    async def get(self, comparison_id: str) -> PeriodComparison | None:
        async with self._session() as session:
            row = await session.get(PeriodComparisonRow, comparison_id)
            if row is None:
                return None
            return PeriodComparison(
                id=row.id,
                name=row.name,
                period_a_start=row.period_a_start,
                period_a_end=row.period_a_end,
                period_a_label=row.period_a_label,
                period_b_start=row.period_b_start,
                period_b_end=row.period_b_end,
                period_b_label=row.period_b_label,
                stats_a=_range_stats(row.stats_a_json),
                stats_b=_range_stats(row.stats_b_json),
                marker_count_a=row.marker_count_a,
                marker_count_b=row.marker_count_b,
                marker_titles_a=row.marker_titles_a,
                marker_titles_b=row.marker_titles_b,
                result=row.result,
                classification=row.classification,
                model=row.model,
                status=JobStatus(row.status),
                error_message=row.error_message,
                created_at=row.created_at,
                completed_at=row.completed_at,
            )


class SummaryRepository(BaseRepository):
    async def save(self, summary: PeriodSummary) -> PeriodSummary:
        async with self._session() as session:
            await session.merge(
                PeriodSummaryRow(
                    id=summary.id,
                    name=summary.name,
                    period_start=summary.period_start,
                    period_end=summary.period_end,
                    stats_json=_dump(summary.stats),
                    marker_count=summary.marker_count,
                    marker_ids=summary.marker_ids,
                    marker_titles=summary.marker_titles,
                    result=summary.result,
                    classification=summary.classification,
                    model=summary.model,
                    status=summary.status.value,
                    error_message=summary.error_message,
                    created_at=summary.created_at,
                    completed_at=summary.completed_at,
                )
            )
            await session.commit()
        return summary

    async def get(self, summary_id: str) -> PeriodSummary | None:
        async with self._session() as session:
            row = await session.get(PeriodSummaryRow, summary_id)
            if row is None:
                return None
            return PeriodSummary(
                id=row.id,
                name=row.name,
                period_start=row.period_start,
                period_end=row.period_end,
                stats=_range_stats(row.stats_json),
                marker_count=row.marker_count,
                marker_ids=row.marker_ids,
                marker_titles=row.marker_titles,
                result=row.result,
                classification=row.classification,
                model=row.model,
                status=JobStatus(row.status),
                error_message=row.error_message,
                created_at=row.created_at,
                completed_at=row.completed_at,
            )


# ── Food tags ─────────────────────────────────────────────────

class FoodTagRepository(BaseRepository):
    async def has_tags(self, marker_id: str) -> bool:
        async with self._session() as session:
            stmt = select(func.count()).select_from(FoodTagRow).where(FoodTagRow.marker_id == marker_id)
            return bool((await session.execute(stmt)).scalar())

    async def add_many(self, tags: Sequence[FoodTag]) -> int:
        """Store *tags*, skipping names already tagged on the same marker."""
        if not tags:
            return 0
        async with self._session() as session:
            marker_ids = {t.marker_id for t in tags}
            stmt = select(FoodTagRow.marker_id, FoodTagRow.normalized_name).where(
                FoodTagRow.marker_id.in_(marker_ids)
            )
            seen = {(m, n) for m, n in (await session.execute(stmt)).all()}
            added = 0
            for tag in tags:
                key = (tag.marker_id, tag.normalized_name)
                if key in seen:
                    continue
                seen.add(key)
                session.add(
                    FoodTagRow(id=tag.id, marker_id=tag.marker_id, name=tag.name, normalized_name=tag.normalized_name)
                )
                added += 1
            await session.commit()
            return added

    async def list_for_marker(self, marker_id: str) -> list[FoodTag]:
        async with self._session() as session:
            stmt = select(FoodTagRow).where(FoodTagRow.marker_id == marker_id).order_by(FoodTagRow.name.asc())
            rows = (await session.execute(stmt)).scalars().all()
            return [
                FoodTag(id=r.id, marker_id=r.marker_id, name=r.name, normalized_name=r.normalized_name)
                for r in rows
            ]

    async def list_all(self) -> list[FoodTag]:
        async with self._session() as session:
            stmt = select(FoodTagRow).order_by(FoodTagRow.normalized_name.asc(), FoodTagRow.marker_id.asc())
            rows = (await session.execute(stmt)).scalars().all()
            return [
                FoodTag(id=r.id, marker_id=r.marker_id, name=r.name, normalized_name=r.normalized_name)
                for r in rows
            ]


# ── Daily summaries ───────────────────────────────────────────

def _daily(row: DailySummaryRow) -> DailySummary:
    return DailySummary(
        day=date.fromisoformat(row.day),
        period_start=row.period_start,
        period_end=row.period_end,
        timezone=row.timezone,
        stats=_range_stats(row.stats_json),
        marker_count=row.marker_count,
        marker_ids=row.marker_ids,
        marker_titles=row.marker_titles,
        result=row.result,
        classification=row.classification,
        model=row.model,
        processed=bool(row.processed),
        processed_at=row.processed_at,
        updated_at=row.updated_at,
    )


def _snapshot(row: DailySummarySnapshotRow) -> DailySummarySnapshot:
    return DailySummarySnapshot(
        id=row.id,
        day=date.fromisoformat(row.day),
        generated_at=row.generated_at,
        trigger=row.trigger,
        data_start=row.data_start,
        data_end=row.data_end,
        first_reading_at=row.first_reading_at,
        last_reading_at=row.last_reading_at,
        marker_count=row.marker_count,
        marker_ids=row.marker_ids,
        marker_titles=row.marker_titles,
        stats=_range_stats(row.stats_json),
        result=row.result,
        classification=row.classification,
        model=row.model,
    )


class DailySummaryRepository(BaseRepository):
    """One current row per local day plus an append-only snapshot trail.

    As with windows, the analysis fields of a day are only written by
    :meth:`record_snapshot`, together with the snapshot itself.
    """

    async def get(self, day: date) -> DailySummary | None:
        async with self._session() as session:
            row = await session.get(DailySummaryRow, day.isoformat())
            return _daily(row) if row is not None else None

    async def upsert(self, summary: DailySummary) -> None:
        """Write the day's bounds, statistics and markers; analysis fields are kept."""
        async with self._session() as session:
            row = await session.get(DailySummaryRow, summary.day.isoformat())
            if row is None:
                row = DailySummaryRow(day=summary.day.isoformat(), processed=0)
                session.add(row)
            row.period_start = summary.period_start
            row.period_end = summary.period_end
            row.timezone = summary.timezone
            row.stats_json = _dump(summary.stats)
            row.marker_count = summary.marker_count
            row.marker_ids = summary.marker_ids
            row.marker_titles = summary.marker_titles
            row.updated_at = summary.updated_at
            await session.commit()

    async def list_all(self) -> list[DailySummary]:
        async with self._session() as session:
            stmt = select(DailySummaryRow).order_by(DailySummaryRow.day.asc())
            return [_daily(r) for r in (await session.execute(stmt)).scalars().all()]

    async def record_snapshot(self, snapshot: DailySummarySnapshot) -> DailySummary:
        """Append *snapshot* and make it the day's current summary in one commit."""
        async with self._session() as session:
            row = await session.get(DailySummaryRow, snapshot.day.isoformat())
            if row is None:
                raise InvariantViolation(f"snapshot for missing daily summary {snapshot.day.isoformat()!r}")
            session.add(
                DailySummarySnapshotRow(
                    id=snapshot.id,
                    day=snapshot.day.isoformat(),
                    generated_at=snapshot.generated_at,
                    trigger=snapshot.trigger,
                    data_start=snapshot.data_start,
                    data_end=snapshot.data_end,
                    first_reading_at=snapshot.first_reading_at,
                    last_reading_at=snapshot.last_reading_at,
                    marker_count=snapshot.marker_count,
                    marker_ids=snapshot.marker_ids,
                    marker_titles=snapshot.marker_titles,
                    stats_json=_dump(snapshot.stats),
                    result=snapshot.result,
                    classification=snapshot.classification,
                    model=snapshot.model,
                )
            )
            row.result = snapshot.result
            row.classification = snapshot.classification
            row.model = snapshot.model
            row.processed = 1
            row.processed_at = snapshot.generated_at
            await session.commit()
            return _daily(row)

    async def list_snapshots(self, day: date) -> list[DailySummarySnapshot]:
        async with self._session() as session:
            stmt = (
                select(DailySummarySnapshotRow)
                .where(DailySummarySnapshotRow.day == day.isoformat())
                .order_by(DailySummarySnapshotRow.generated_at.asc())
            )
            return [_snapshot(r) for r in (await session.execute(stmt)).scalars().all()]
