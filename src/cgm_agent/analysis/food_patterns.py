"""Food patterns: per-food glucose response aggregated across tagged windows.

Pure functions, like :mod:`cgm_agent.analysis.stats`; the caller loads tags,
markers and windows and hands them over.
"""

from __future__ import annotations

import statistics
from collections import defaultdict
from typing import Mapping, Sequence

from cgm_agent.models import Classification, FoodPattern, FoodTag, Marker, Window


def _avg(values: list[float]) -> float | None:
    return round(statistics.fmean(values), 1) if values else None


def recovery_minutes(window: Window) -> float | None:
    """Minutes from the peak to the end of the window, for windows that spiked."""
    stats = window.stats
    if stats.spike is None or stats.spike <= 0 or stats.peak_time is None:
        return None
    return (window.period_end - stats.peak_time).total_seconds() / 60.0


def aggregate_food_patterns(
    tags: Sequence[FoodTag],
    markers: Mapping[str, Marker],
    windows: Mapping[str, Window],
) -> list[FoodPattern]:
    """One :class:`FoodPattern` per normalized food name.

    Every tag counts as an occurrence.  Metrics come from the tagged
    marker's window and are skipped when the window is missing or has no
    value.  The display name is the name used on the earliest marker.
    Patterns are ordered by occurrences, most frequent first, then by name.
    """
    grouped: dict[str, list[FoodTag]] = defaultdict(list)
    for tag in tags:
        grouped[tag.normalized_name].append(tag)

    patterns: list[FoodPattern] = []
    for normalized, group in grouped.items():
        spikes: list[float] = []
        at_marker: list[float] = []
        maxima: list[float] = []
        minima: list[float] = []
        recoveries: list[float] = []
        verdicts: dict[str, int] = defaultdict(int)
        seen = sorted(
            (markers[t.marker_id].timestamp, t.name) for t in group if t.marker_id in markers
        )

        for tag in group:
            window = windows.get(tag.marker_id)
            if window is None:
                continue
            stats = window.stats
            if stats.spike is not None:
                spikes.append(stats.spike)
            if stats.value_at_anchor is not None:
                at_marker.append(stats.value_at_anchor)
            if stats.max is not None:
                maxima.append(stats.max)
            if stats.min is not None:
                minima.append(stats.min)
            recovery = recovery_minutes(window)
            if recovery is not None:
                recoveries.append(recovery)
            if window.classification:
                verdicts[window.classification] += 1

        patterns.append(
            FoodPattern(
                normalized_name=normalized,
                name=seen[0][1] if seen else group[0].name,
                occurrences=len(group),
                avg_spike=_avg(spikes),
                worst_spike=max(spikes) if spikes else None,
                best_spike=min(spikes) if spikes else None,
                avg_value_at_marker=_avg(at_marker),
                avg_max=_avg(maxima),
                avg_min=_avg(minima),
                avg_recovery_minutes=_avg(recoveries),
                green_count=verdicts[Classification.GREEN.value],
                yellow_count=verdicts[Classification.YELLOW.value],
                red_count=verdicts[Classification.RED.value],
                first_seen=seen[0][0] if seen else None,
                last_seen=seen[-1][0] if seen else None,
            )
        )

    patterns.sort(key=lambda p: (-p.occurrences, p.normalized_name))
    return patterns
