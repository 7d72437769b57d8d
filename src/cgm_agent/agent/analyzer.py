"""Analyzer port and its LangChain / OpenAI adapter.

Failures are returned as :class:`AnalyzerResult` values with
``success=False``; the adapter never raises for a failed call.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Protocol

import structlog
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from cgm_agent.analysis.classification import parse_classification
from cgm_agent.config import get_settings
from cgm_agent.models import AnalysisContext, AnalyzerResult

logger = structlog.get_logger(__name__)

# Minimum pause between consecutive calls made by one worker.
ANALYZER_PACING_SECONDS = 2.0


class Analyzer(Protocol):
    async def enrich(self, context: AnalysisContext, model_hint: str | None = None) -> AnalyzerResult: ...


def _message_text(message: BaseMessage) -> str:
    content = message.content
    if isinstance(content, str):
        return content
    parts: list[str] = []
    for part in content:
        if isinstance(part, str):
            parts.append(part)
        elif isinstance(part, dict) and part.get("type") == "text":
            parts.append(str(part.get("text", "")))
    return "".join(parts)


class OpenAIAnalyzer:
    """Call an OpenAI chat model through ``langchain_openai.ChatOpenAI``.

    One ``ChatOpenAI`` client is built lazily per ``(model, max_tokens)``
    pair.  The classification tag, if present, is stripped from the content
    and returned separately.
    """

    def __init__(
        self,
        *,
        api_key: str | None = None,
        default_model: str | None = None,
        request_timeout: float | None = None,
    ) -> None:
        settings = get_settings()
        self._api_key = api_key if api_key is not None else settings.openai_api_key
        self._default_model = default_model or settings.openai_model
        self._timeout = request_timeout or settings.openai_request_timeout
        self._clients: dict[tuple[str, int], ChatOpenAI] = {}

    @property
    def default_model(self) -> str:
        return self._default_model

    def _client(self, model: str, max_tokens: int) -> ChatOpenAI:
        key = (model, max_tokens)
        if key not in self._clients:
            self._clients[key] = ChatOpenAI(
                model=model,
                api_key=self._api_key,
                max_tokens=max_tokens,
                timeout=self._timeout,
                max_retries=0,
            )
            logger.info("analyzer.llm_initialised", model=model)
        return self._clients[key]

    async def enrich(self, context: AnalysisContext, model_hint: str | None = None) -> AnalyzerResult:
        model = model_hint or self._default_model
        started = time.monotonic()
        try:
            message = await self._client(model, context.max_tokens).ainvoke(
                [
                    SystemMessage(content=context.system_prompt),
                    HumanMessage(content=context.user_prompt),
                ]
            )
        except Exception as exc:
            duration_ms = int((time.monotonic() - started) * 1000)
            logger.warning("analyzer.call_failed", model=model, error=str(exc))
            return AnalyzerResult.failure(model, duration_ms, str(exc) or type(exc).__name__)

        duration_ms = int((time.monotonic() - started) * 1000)
        usage: dict[str, Any] = dict(getattr(message, "usage_metadata", None) or {})
        meta: dict[str, Any] = dict(getattr(message, "response_metadata", None) or {})
        finish_reason = meta.get("finish_reason")
        raw = _message_text(message)

        if not raw.strip():
            logger.warning("analyzer.empty_content", model=model, finish_reason=finish_reason)

        content, classification = parse_classification(raw)
        input_tokens = int(usage.get("input_tokens", 0))
        output_tokens = int(usage.get("output_tokens", 0))
        return AnalyzerResult(
            success=True,
            content=content,
            classification=classification,
            model=meta.get("model_name") or model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=int(usage.get("total_tokens", input_tokens + output_tokens)),
            finish_reason=finish_reason,
            duration_ms=duration_ms,
        )


class PacedAnalyzer:
    """Wrap an analyzer so consecutive calls are at least *interval* apart.

    Each queue worker owns one instance.  The pause is measured from the end
    of the previous call.
    """

    def __init__(
        self,
        inner: Analyzer,
        interval: float = ANALYZER_PACING_SECONDS,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._inner = inner
        self._interval = interval
        self._sleep = sleep
        self._monotonic = monotonic
        self._last_finished: float | None = None
        self._lock = asyncio.Lock()

    async def enrich(self, context: AnalysisContext, model_hint: str | None = None) -> AnalyzerResult:
        async with self._lock:
            if self._last_finished is not None:
                wait = self._interval - (self._monotonic() - self._last_finished)
                if wait > 0:
                    await self._sleep(wait)
            try:
                return await self._inner.enrich(context, model_hint)
            finally:
                self._last_finished = self._monotonic()
