"""Shared pytest fixtures."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Callable

import pytest
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker

from cgm_agent.clock import FrozenClock
from cgm_agent.config import Settings
from cgm_agent.models import AnalysisContext, AnalyzerResult, Marker, Measurement
from cgm_agent.storage.database import Base
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

T0 = datetime(2024, 5, 1, 8, 0)


# ── Test doubles ──────────────────────────────────────────────

class FakeAnalyzer:
    """Analyzer returning canned results and remembering every context it saw."""

    def __init__(self, content: str | None = "Looks stable.", classification: str | None = "green") -> None:
        self.content = content
        self.classification = classification
        self.success = True
        self.error: str | None = None
        self.calls: list[tuple[AnalysisContext, str | None]] = []
        self.responder: Callable[[AnalysisContext], str] | None = None
        # When set, calls block on it after announcing themselves via ``entered``.
        self.gate: asyncio.Event | None = None
        self.entered = asyncio.Event()

    async def enrich(self, context: AnalysisContext, model_hint: str | None = None) -> AnalyzerResult:
        self.calls.append((context, model_hint))
        self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        if not self.success:
            return AnalyzerResult.failure(model_hint or "gpt-4o-mini", 5, self.error)
        content = self.responder(context) if self.responder is not None else self.content
        return AnalyzerResult(
            success=True,
            content=content,
            classification=self.classification,
            model=model_hint or "gpt-4o-mini",
            input_tokens=1000,
            output_tokens=200,
            total_tokens=1200,
            finish_reason="stop",
            duration_ms=5,
        )


class RecordingNotifier:
    def __init__(self) -> None:
        self.events: list[tuple[str, int, str | None]] = []

    async def publish(self, kind: str, count: int = 1, subject_id: str | None = None) -> None:
        self.events.append((kind, count, subject_id))

    def kinds(self) -> list[str]:
        return [k for k, _, _ in self.events]


class Repos:
    """All repositories bound to one test database."""

    def __init__(self, factory: async_sessionmaker) -> None:
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


def readings(start: datetime, values: list[float], step_minutes: int = 15, source: str = "default") -> list[Measurement]:
    return [
        Measurement(timestamp=start + timedelta(minutes=step_minutes * i), value=v, source=source)
        for i, v in enumerate(values)
    ]


def marker(at: datetime, title: str = "Lunch", marker_id: str | None = None) -> Marker:
    if marker_id is None:
        return Marker(timestamp=at, title=title)
    return Marker(id=marker_id, timestamp=at, title=title)


# ── Fixtures ──────────────────────────────────────────────────

@pytest.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def repos(session_factory) -> Repos:
    return Repos(session_factory)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(T0)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        openai_api_key="sk-test",
        reanalysis_cooldown_minutes=30,
        job_error_max_length=2000,
        chat_error_max_length=500,
        display_timezone="UTC",
    )


@pytest.fixture
def analyzer() -> FakeAnalyzer:
    return FakeAnalyzer()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()
