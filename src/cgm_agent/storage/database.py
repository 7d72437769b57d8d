"""SQLAlchemy async engine, session factory, and ORM table definitions."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path

from sqlalchemy import DateTime, Float, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from cgm_agent.config import get_settings


# ── Base ──────────────────────────────────────────────────────

class Base(DeclarativeBase):
    """Shared declarative base for all ORM models."""


# ── Input streams ─────────────────────────────────────────────

class MeasurementRow(Base):
    """Persisted sensor reading."""

    __tablename__ = "measurements"
    __table_args__ = (UniqueConstraint("source", "timestamp", name="uq_measurement_source_ts"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    source: Mapped[str] = mapped_column(String(64), default="default")
    timestamp: Mapped[datetime] = mapped_column(DateTime, index=True)
    value: Mapped[float] = mapped_column(Float)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class MarkerRow(Base):
    """Persisted user note (meal, activity...)."""

    __tablename__ = "markers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, index=True)
    title: Mapped[str] = mapped_column(String(512), default="")
    payload: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


# ── Windows & history ────────────────────────────────────────

class WindowRow(Base):
    """Analysis window; keyed by the marker that owns it."""

    __tablename__ = "windows"

    marker_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    marker_timestamp: Mapped[datetime] = mapped_column(DateTime, index=True)
    period_start: Mapped[datetime] = mapped_column(DateTime, index=True)
    period_end: Mapped[datetime] = mapped_column(DateTime, index=True)
    stats_json: Mapped[str] = mapped_column(Text, default="{}")
    enriched: Mapped[int] = mapped_column(Integer, default=0, index=True)

    # Projection of the newest history row
    enrichment_result: Mapped[str | None] = mapped_column(Text, nullable=True)
    classification: Mapped[str | None] = mapped_column(String(16), nullable=True)
    model: Mapped[str | None] = mapped_column(String(64), nullable=True)
    last_enriched_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now()
    )


class EnrichmentHistoryRow(Base):
    """Append-only record of one enrichment."""

    __tablename__ = "enrichment_history"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    window_id: Mapped[str] = mapped_column(String(36), index=True)
    stats_json: Mapped[str] = mapped_column(Text, default="{}")
    period_start: Mapped[datetime] = mapped_column(DateTime)
    period_end: Mapped[datetime] = mapped_column(DateTime)
    result: Mapped[str] = mapped_column(Text)
    classification: Mapped[str | None] = mapped_column(String(16), nullable=True)
    model: Mapped[str | None] = mapped_column(String(64), nullable=True)
    reason: Mapped[str] = mapped_column(String(128))
    analyzed_at: Mapped[datetime] = mapped_column(DateTime, index=True)


# ── Jobs & usage ──────────────────────────────────────────────

class JobRow(Base):
    """Durable queue entry."""

    __tablename__ = "jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    kind: Mapped[str] = mapped_column(String(32), index=True)
    subject_id: Mapped[str] = mapped_column(String(36), index=True)
    status: Mapped[str] = mapped_column(String(16), index=True, default="pending")
    model_override: Mapped[str | None] = mapped_column(String(64), nullable=True)
    reason: Mapped[str | None] = mapped_column(String(128), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime)
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class AnalyzerUsageRow(Base):
    """One analyzer call, successful or not."""

    __tablename__ = "analyzer_usage"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    kind: Mapped[str] = mapped_column(String(32), index=True)
    subject_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    model: Mapped[str] = mapped_column(String(64))
    input_tokens: Mapped[int] = mapped_column(Integer, default=0)
    output_tokens: Mapped[int] = mapped_column(Integer, default=0)
    total_tokens: Mapped[int] = mapped_column(Integer, default=0)
    cost_usd: Mapped[float] = mapped_column(Float, default=0.0)
    reason: Mapped[str | None] = mapped_column(String(128), nullable=True)
    success: Mapped[int] = mapped_column(Integer, default=1)
    finish_reason: Mapped[str | None] = mapped_column(String(32), nullable=True)
    duration_ms: Mapped[int] = mapped_column(Integer, default=0)
    called_at: Mapped[datetime] = mapped_column(DateTime, index=True)


# ── Enrichment subjects ───────────────────────────────────────

class ChatSessionRow(Base):
    __tablename__ = "chat_sessions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    title: Mapped[str] = mapped_column(String(256), default="")
    period_start: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    period_end: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime)
    updated_at: Mapped[datetime] = mapped_column(DateTime)


class ChatMessageRow(Base):
    __tablename__ = "chat_messages"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    session_id: Mapped[str] = mapped_column(String(36), index=True)
    position: Mapped[int] = mapped_column(Integer, default=0)
    role: Mapped[str] = mapped_column(String(16))
    content: Mapped[str] = mapped_column(Text, default="")
    status: Mapped[str] = mapped_column(String(16), default="completed")
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    model: Mapped[str | None] = mapped_column(String(64), nullable=True)
    input_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    output_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    cost_usd: Mapped[float | None] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, index=True)


class PeriodComparisonRow(Base):
    __tablename__ = "period_comparisons"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    period_a_start: Mapped[datetime] = mapped_column(DateTime)
    period_a_end: Mapped[datetime] = mapped_column(DateTime)
    period_a_label: Mapped[str | None] = mapped_column(String(128), nullable=True)
    period_b_start: Mapped[datetime] = mapped_column(DateTime)
    period_b_end: Mapped[datetime] = mapped_column(DateTime)
    period_b_label: Mapped[str | None] = mapped_column(String(128), nullable=True)
    stats_a_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    stats_b_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    marker_count_a: Mapped[int] = mapped_column(Integer, default=0)
    marker_count_b: Mapped[int] = mapped_column(Integer, default=0)
    marker_titles_a: Mapped[str | None] = mapped_column(Text, nullable=True)
    marker_titles_b: Mapped[str | None] = mapped_column(Text, nullable=True)
    result: Mapped[str | None] = mapped_column(Text, nullable=True)
    classification: Mapped[str | None] = mapped_column(String(16), nullable=True)
    model: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="pending")
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class PeriodSummaryRow(Base):
    __tablename__ = "period_summaries"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    period_start: Mapped[datetime] = mapped_column(DateTime)
    period_end: Mapped[datetime] = mapped_column(DateTime)
    stats_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    marker_count: Mapped[int] = mapped_column(Integer, default=0)
    marker_ids: Mapped[str | None] = mapped_column(Text, nullable=True)
    marker_titles: Mapped[str | None] = mapped_column(Text, nullable=True)
    result: Mapped[str | None] = mapped_column(Text, nullable=True)
    classification: Mapped[str | None] = mapped_column(String(16), nullable=True)
    model: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="pending")
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class FoodTagRow(Base):
    __tablename__ = "food_tags"
    __table_args__ = (UniqueConstraint("marker_id", "normalized_name", name="uq_food_tag_marker_name"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    marker_id: Mapped[str] = mapped_column(String(36), index=True)
    name: Mapped[str] = mapped_column(String(128))
    normalized_name: Mapped[str] = mapped_column(String(128), index=True)


class DailySummaryRow(Base):
    """Latest summary per local day; ``day`` is the ISO date."""

    __tablename__ = "daily_summaries"

    day: Mapped[str] = mapped_column(String(10), primary_key=True)
    period_start: Mapped[datetime] = mapped_column(DateTime)
    period_end: Mapped[datetime] = mapped_column(DateTime)
    timezone: Mapped[str] = mapped_column(String(64))
    stats_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    marker_count: Mapped[int] = mapped_column(Integer, default=0)
    marker_ids: Mapped[str | None] = mapped_column(Text, nullable=True)
    marker_titles: Mapped[str | None] = mapped_column(Text, nullable=True)
    result: Mapped[str | None] = mapped_column(Text, nullable=True)
    classification: Mapped[str | None] = mapped_column(String(16), nullable=True)
    model: Mapped[str | None] = mapped_column(String(64), nullable=True)
    processed: Mapped[int] = mapped_column(Integer, default=0)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class DailySummarySnapshotRow(Base):
    """Append-only record of every generated daily summary."""

    __tablename__ = "daily_summary_snapshots"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    day: Mapped[str] = mapped_column(String(10), index=True)
    generated_at: Mapped[datetime] = mapped_column(DateTime)
    trigger: Mapped[str] = mapped_column(String(16))
    data_start: Mapped[datetime] = mapped_column(DateTime)
    data_end: Mapped[datetime] = mapped_column(DateTime)
    first_reading_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_reading_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    marker_count: Mapped[int] = mapped_column(Integer, default=0)
    marker_ids: Mapped[str | None] = mapped_column(Text, nullable=True)
    marker_titles: Mapped[str | None] = mapped_column(Text, nullable=True)
    stats_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    result: Mapped[str] = mapped_column(Text)
    classification: Mapped[str | None] = mapped_column(String(16), nullable=True)
    model: Mapped[str | None] = mapped_column(String(64), nullable=True)


# ── Engine & session ──────────────────────────────────────────

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_async_engine(settings.database_url, echo=False)
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(_get_engine(), expire_on_commit=False)
    return _session_factory


async def init_db() -> None:
    """Create all tables (idempotent)."""
    url = get_settings().database_url
    if url.startswith("sqlite"):
        # URL format: sqlite+aiosqlite:///path/to/db
        db_path = Path(url.split("///", 1)[-1])
        db_path.parent.mkdir(parents=True, exist_ok=True)

    engine = _get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose the engine; the next call to :func:`get_session_factory` reconnects."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None
