"""Chat: answer user questions about a glucose period in the background."""

from __future__ import annotations

from datetime import datetime
from typing import Any

import structlog

from cgm_agent.agent.prompts import build_chat_context
from cgm_agent.analysis.cost import compute_cost
from cgm_agent.analysis.stats import compute_range_stats
from cgm_agent.errors import SubjectNotFound
from cgm_agent.models import (
    ChatMessage,
    ChatRole,
    ChatSession,
    Job,
    JobKind,
    JobStatus,
    Marker,
    RangeStats,
    Window,
)
from cgm_agent.storage.repository import ChatRepository, MarkerRepository, MeasurementRepository, WindowRepository
from cgm_agent.workflows.base import EnrichmentWorkflow
from cgm_agent.workflows.comparison import windows_for

logger = structlog.get_logger(__name__)

NOT_CONFIGURED_REPLY = "The analyzer API key is not configured."


class ChatWorkflow(EnrichmentWorkflow):
    """``chat`` jobs; the subject is the pending assistant message id."""

    kind = JobKind.CHAT

    def __init__(
        self,
        *args: Any,
        chats: ChatRepository,
        measurements: MeasurementRepository,
        markers: MarkerRepository,
        windows: WindowRepository,
        **kwargs: Any,
    ) -> None:
        super().__init__(*args, **kwargs)
        self._chats = chats
        self._measurements = measurements
        self._markers = markers
        self._windows = windows

    @property
    def error_max_length(self) -> int:
        return self._settings.chat_error_max_length

    # ── Producer side ─────────────────────────────────────────

    async def create_session(
        self,
        title: str = "",
        period_start: datetime | None = None,
        period_end: datetime | None = None,
    ) -> ChatSession:
        now = self._clock.now()
        return await self._chats.create_session(
            ChatSession(title=title, period_start=period_start, period_end=period_end, created_at=now, updated_at=now)
        )

    async def post_message(self, session_id: str, text: str, model_override: str | None = None) -> ChatMessage:
        """Store the user turn plus a pending assistant turn, and queue the reply."""
        if await self._chats.get_session(session_id) is None:
            raise SubjectNotFound("chat session", session_id)

        now = self._clock.now()
        await self._chats.add_message(
            ChatMessage(session_id=session_id, role=ChatRole.USER, content=text, created_at=now)
        )
        reply = await self._chats.add_message(
            ChatMessage(
                session_id=session_id,
                role=ChatRole.ASSISTANT,
                status=JobStatus.PENDING,
                model=model_override,
                created_at=now,
            )
        )
        await self.queue.enqueue(reply.id, model_override=model_override)
        return reply

    # ── Worker side ───────────────────────────────────────────

    async def _period_context(
        self, session: ChatSession
    ) -> tuple[RangeStats | None, list[Marker], dict[str, Window]]:
        if session.period_start is None or session.period_end is None:
            return None, [], {}
        readings = await self._measurements.query_period(session.period_start, session.period_end)
        markers = await self._markers.list_in_range(session.period_start, session.period_end)
        windows = await windows_for(markers, self._windows)
        return compute_range_stats(readings, self.band), markers, windows

    async def process(self, job: Job) -> None:
        reply = await self._chats.get_message(job.subject_id)
        if reply is None:
            raise SubjectNotFound("chat message", job.subject_id)
        session = await self._chats.get_session(reply.session_id)
        if session is None:
            raise SubjectNotFound("chat session", reply.session_id)

        if not self.analyzer_enabled:
            await self._chats.update_message(
                reply.id,
                content=NOT_CONFIGURED_REPLY,
                status=JobStatus.FAILED,
                error_message="API key not configured",
            )
            await self.notify("chat.updated", 1, session.id)
            return

        await self._chats.update_message(reply.id, status=JobStatus.PROCESSING)

        history: list[ChatMessage] = []
        for msg in await self._chats.list_messages(session.id):
            if msg.id == reply.id:
                break
            if msg.role == ChatRole.USER or msg.status == JobStatus.COMPLETED:
                history.append(msg)

        stats, markers, windows = await self._period_context(session)
        context = build_chat_context(
            session,
            history,
            stats,
            markers,
            windows,
            band=self.band,
            tz_name=self._settings.display_timezone,
            max_tokens=self._settings.openai_max_tokens,
        )
        result = await self.call_analyzer(
            context,
            subject_id=reply.id,
            model=job.model_override or self._settings.openai_model,
            reason="Chat reply",
        )
        await self._chats.update_message(
            reply.id,
            content=result.content or "",
            status=JobStatus.COMPLETED,
            error_message=None,
            model=result.model,
            input_tokens=result.input_tokens,
            output_tokens=result.output_tokens,
            cost_usd=compute_cost(result.model, result.input_tokens, result.output_tokens),
        )
        logger.info("chat.replied", session_id=session.id, message_id=reply.id)
        await self.notify("chat.updated", 1, session.id)

    async def on_failure(self, job: Job, error: str) -> None:
        await self._chats.update_message(job.subject_id, status=JobStatus.FAILED, error_message=error)
        reply = await self._chats.get_message(job.subject_id)
        await self.notify("chat.updated", 1, reply.session_id if reply is not None else None)
