"""Re-analysis cooldown policy."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Sequence

import structlog

from cgm_agent.models import EnrichmentHistoryEntry, Window

logger = structlog.get_logger(__name__)


def latest_entry(history: Sequence[EnrichmentHistoryEntry]) -> EnrichmentHistoryEntry | None:
    if not history:
        return None
    return max(history, key=lambda h: h.analyzed_at)


def may_reanalyze(
    window: Window,
    history: Sequence[EnrichmentHistoryEntry],
    cooldown: timedelta,
    forced: bool,
    *,
    now: datetime,
) -> bool:
    """Decide whether *window* may be sent to the analyzer right now.

    ``forced`` is set when the window's boundaries just moved because a
    neighbouring marker appeared; that always proceeds.  Otherwise a window
    with no history proceeds (first analysis) and one with history only
    once *cooldown* has elapsed since its newest entry.
    """
    if forced:
        return True
    latest = latest_entry(history)
    if latest is None:
        return True
    elapsed = now - latest.analyzed_at
    if elapsed >= cooldown:
        return True
    logger.debug(
        "cooldown.skip",
        window_id=window.id,
        elapsed_minutes=round(elapsed.total_seconds() / 60, 1),
        cooldown_minutes=round(cooldown.total_seconds() / 60, 1),
    )
    return False
