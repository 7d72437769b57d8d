"""Shared Pydantic models used across the framework.

Timestamps are naive UTC throughout (see :mod:`cgm_agent.clock`).
"""

from __future__ import annotations

import uuid
from datetime import date, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


def _new_id() -> str:
    return str(uuid.uuid4())


# ── Enums ─────────────────────────────────────────────────────

class JobKind(str, Enum):
    """One durable queue (and one worker) exists per kind."""
    WINDOW_ANALYSIS = "window_analysis"
    CHAT = "chat"
    COMPARISON = "comparison"
    PERIOD_SUMMARY = "period_summary"
    FOOD_TAGS = "food_tags"
    DAILY_SUMMARY = "daily_summary"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class AnalysisReason(str, Enum):
    """Why a window is (re-)analysed; recorded verbatim in its history."""
    INITIAL = "Initial analysis"
    BOUNDARY_CHANGED = "Re-analysis: boundary changed"
    NEW_DATA = "Re-analysis: new data received"
    MANUAL = "Manual re-analysis"


class Classification(str, Enum):
    """Traffic-light verdict the analyzer prefixes its answer with."""
    GREEN = "green"
    YELLOW = "yellow"
    RED = "red"


class ChatRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


# ── Input streams ─────────────────────────────────────────────

class Measurement(BaseModel):
    """A single sensor value (mg/dL) at a point in time."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    timestamp: datetime
    value: float
    source: str = "default"


class Marker(BaseModel):
    """A user-authored note that anchors one analysis window."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    timestamp: datetime
    title: str = ""
    payload: str = ""


# ── Statistics ────────────────────────────────────────────────

class TargetBand(BaseModel):
    """Inclusive target range used for the time-in-range family."""
    model_config = ConfigDict(frozen=True)

    low: float = 70.0
    high: float = 180.0


class WindowStats(BaseModel):
    """Statistics for one marker window.

    ``count == 0`` means "no data": every other field is ``None``.
    """
    model_config = ConfigDict(frozen=True)

    count: int = 0
    min: float | None = None
    max: float | None = None
    avg: float | None = None
    std_dev: float | None = None
    value_at_anchor: float | None = None
    spike: float | None = None
    peak_time: datetime | None = None
    time_in_range: float | None = None
    time_above_range: float | None = None
    time_below_range: float | None = None

    @property
    def has_data(self) -> bool:
        return self.count > 0


class RangeStats(BaseModel):
    """Day / arbitrary-period statistics (no anchor-relative fields)."""
    model_config = ConfigDict(frozen=True)

    count: int = 0
    min: float | None = None
    max: float | None = None
    avg: float | None = None
    std_dev: float | None = None
    time_in_range: float | None = None
    time_above_range: float | None = None
    time_below_range: float | None = None
    first_timestamp: datetime | None = None
    last_timestamp: datetime | None = None


# ── Windows & history ────────────────────────────────────────

class Window(BaseModel):
    """Derived analysis window owned by exactly one marker.

    ``enrichment_result``, ``classification``, ``model`` and
    ``last_enriched_at`` mirror the newest :class:`EnrichmentHistoryEntry`
    and are only written together with it.
    """
    model_config = ConfigDict(frozen=True)

    marker_id: str
    marker_timestamp: datetime
    period_start: datetime
    period_end: datetime
    stats: WindowStats = Field(default_factory=WindowStats)
    enriched: bool = False
    enrichment_result: str | None = None
    classification: str | None = None
    model: str | None = None
    last_enriched_at: datetime | None = None

    @property
    def id(self) -> str:
        return self.marker_id

    def contains(self, timestamp: datetime) -> bool:
        return self.period_start <= timestamp <= self.period_end


class EnrichmentHistoryEntry(BaseModel):
    """Immutable record of one successful enrichment of a window."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    window_id: str
    stats_at_time: WindowStats
    period_start: datetime
    period_end: datetime
    result: str
    classification: str | None = None
    model: str | None = None
    reason: str
    analyzed_at: datetime


# ── Jobs ──────────────────────────────────────────────────────

class Job(BaseModel):
    """Durable record of one unit of queued enrichment work."""
    id: str = Field(default_factory=_new_id)
    kind: JobKind
    subject_id: str
    status: JobStatus = JobStatus.PENDING
    model_override: str | None = None
    reason: str | None = None
    error: str | None = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None


# ── Analyzer contract ─────────────────────────────────────────

class AnalysisContext(BaseModel):
    """What the analyzer is asked: a system and a user prompt."""
    system_prompt: str
    user_prompt: str
    max_tokens: int = 4096


class AnalyzerResult(BaseModel):
    """Outcome of one analyzer call.  Failures are values, not exceptions."""
    success: bool
    content: str | None = None
    classification: str | None = None
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    finish_reason: str | None = None
    duration_ms: int = 0
    error: str | None = None

    @classmethod
    def failure(cls, model: str, duration_ms: int, error: str | None) -> AnalyzerResult:
        return cls(success=False, model=model, duration_ms=duration_ms, error=error)

    @property
    def usable(self) -> bool:
        return self.success and bool(self.content and self.content.strip())


class AnalyzerUsage(BaseModel):
    """One analyzer call, recorded whether or not it succeeded."""
    id: str = Field(default_factory=_new_id)
    kind: JobKind
    subject_id: str | None = None
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    cost_usd: float = 0.0
    reason: str | None = None
    success: bool
    finish_reason: str | None = None
    duration_ms: int = 0
    called_at: datetime


# ── Enrichment subjects ───────────────────────────────────────

class ChatSession(BaseModel):
    id: str = Field(default_factory=_new_id)
    title: str = ""
    period_start: datetime | None = None
    period_end: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class ChatMessage(BaseModel):
    id: str = Field(default_factory=_new_id)
    session_id: str
    role: ChatRole
    content: str = ""
    status: JobStatus = JobStatus.COMPLETED
    error_message: str | None = None
    model: str | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    cost_usd: float | None = None
    created_at: datetime | None = None


class PeriodComparison(BaseModel):
    id: str = Field(default_factory=_new_id)
    name: str | None = None
    period_a_start: datetime
    period_a_end: datetime
    period_a_label: str | None = None
    period_b_start: datetime
    period_b_end: datetime
    period_b_label: str | None = None
    stats_a: RangeStats | None = None
    stats_b: RangeStats | None = None
    marker_count_a: int = 0
    marker_count_b: int = 0
    marker_titles_a: str | None = None
    marker_titles_b: str | None = None
    result: str | None = None
    classification: str | None = None
    model: str | None = None
    status: JobStatus = JobStatus.PENDING
    error_message: str | None = None
    created_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def label_a(self) -> str:
        return self.period_a_label or "Period A"

    @property
    def label_b(self) -> str:
        return self.period_b_label or "Period B"


class PeriodSummary(BaseModel):
    id: str = Field(default_factory=_new_id)
    name: str | None = None
    period_start: datetime
    period_end: datetime
    stats: RangeStats | None = None
    marker_count: int = 0
    marker_ids: str | None = None
    marker_titles: str | None = None
    result: str | None = None
    classification: str | None = None
    model: str | None = None
    status: JobStatus = JobStatus.PENDING
    error_message: str | None = None
    created_at: datetime | None = None
    completed_at: datetime | None = None


class FoodTag(BaseModel):
    id: str = Field(default_factory=_new_id)
    marker_id: str
    name: str
    normalized_name: str


class FoodPattern(BaseModel):
    """How one food tends to affect glucose, aggregated over every tagged window.

    Averages skip occurrences whose window has no value for that metric.
    Recovery is measured from the peak to the window end, and only for
    occurrences that spiked.
    """

    normalized_name: str
    name: str
    occurrences: int = 0
    avg_spike: float | None = None
    worst_spike: float | None = None
    best_spike: float | None = None
    avg_value_at_marker: float | None = None
    avg_max: float | None = None
    avg_min: float | None = None
    avg_recovery_minutes: float | None = None
    green_count: int = 0
    yellow_count: int = 0
    red_count: int = 0
    first_seen: datetime | None = None
    last_seen: datetime | None = None


# ── Daily summaries ───────────────────────────────────────────

class DailySummary(BaseModel):
    """Current summary of one local calendar day.

    ``period_start``/``period_end`` are the naive-UTC bounds of the data
    summarised; ``period_end`` falls short of the next local midnight while
    the day is still running.
    """

    day: date
    period_start: datetime
    period_end: datetime
    timezone: str
    stats: RangeStats | None = None
    marker_count: int = 0
    marker_ids: str | None = None
    marker_titles: str | None = None
    result: str | None = None
    classification: str | None = None
    model: str | None = None
    processed: bool = False
    processed_at: datetime | None = None
    updated_at: datetime | None = None


class DailySummarySnapshot(BaseModel):
    """One generated summary of a day, kept even after the day is re-summarised."""

    id: str = Field(default_factory=_new_id)
    day: date
    generated_at: datetime
    trigger: str
    data_start: datetime
    data_end: datetime
    first_reading_at: datetime | None = None
    last_reading_at: datetime | None = None
    marker_count: int = 0
    marker_ids: str | None = None
    marker_titles: str | None = None
    stats: RangeStats | None = None
    result: str
    classification: str | None = None
    model: str | None = None
