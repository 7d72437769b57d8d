"""Food-tag extraction: turn a marker's free text into normalised food names."""

from __future__ import annotations

import json
import re
from typing import Any

import structlog

from cgm_agent.agent.prompts import build_food_tag_context
from cgm_agent.errors import SubjectNotFound
from cgm_agent.models import FoodTag, Job, JobKind
from cgm_agent.storage.repository import FoodTagRepository, MarkerRepository
from cgm_agent.workflows.base import EnrichmentWorkflow

logger = structlog.get_logger(__name__)

_FENCE_OPEN = re.compile(r"^```(?:json)?\s*")
_FENCE_CLOSE = re.compile(r"\s*```$")

EXTRACTION_REASON = "Food extraction"


def parse_food_names(raw: str) -> list[str]:
    """Parse the analyzer's JSON array into distinct, trimmed food names.

    Accepts a bare array of strings or of ``{"name": ...}`` objects, with or
    without a markdown code fence.  Raises :class:`ValueError` for anything
    else.
    """
    text = _FENCE_CLOSE.sub("", _FENCE_OPEN.sub("", raw.strip())).strip()
    try:
        data: Any = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValueError(f"food extraction returned invalid JSON: {exc.msg}") from exc
    if not isinstance(data, list):
        raise ValueError("food extraction did not return a JSON array")

    names: list[str] = []
    seen: set[str] = set()
    for item in data:
        name = item.get("name") if isinstance(item, dict) else item
        if not isinstance(name, str) or not name.strip():
            continue
        name = name.strip()
        key = name.lower()
        if key in seen:
            continue
        seen.add(key)
        names.append(name)
    return names


class FoodTagWorkflow(EnrichmentWorkflow):
    """``food_tags`` jobs; the subject is a marker id.

    Markers that already carry tags are skipped, so requesting extraction
    twice is harmless.
    """

    kind = JobKind.FOOD_TAGS

    def __init__(self, *args: Any, markers: MarkerRepository, food_tags: FoodTagRepository, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._markers = markers
        self._food_tags = food_tags

    async def request(self, marker_id: str) -> Job | None:
        if not self.analyzer_enabled:
            return None
        return await self.queue.enqueue(marker_id, reason=EXTRACTION_REASON)

    async def process(self, job: Job) -> None:
        marker = await self._markers.get(job.subject_id)
        if marker is None:
            raise SubjectNotFound("marker", job.subject_id)
        if await self._food_tags.has_tags(marker.id):
            logger.debug("food_tags.already_tagged", marker_id=marker.id)
            return

        context = build_food_tag_context(marker)
        if context is None:
            return

        result = await self.call_analyzer(
            context,
            subject_id=marker.id,
            model=job.model_override or self._settings.extraction_model,
            reason=EXTRACTION_REASON,
        )
        names = parse_food_names(result.content or "")
        tags = [FoodTag(marker_id=marker.id, name=n, normalized_name=n.lower()) for n in names]
        added = await self._food_tags.add_many(tags)
        logger.info("food_tags.extracted", marker_id=marker.id, tags=added)
        if added:
            await self.notify("food_tags.updated", added, marker.id)
