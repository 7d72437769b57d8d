"""Prompt templates and builders for every enrichment kind."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from cgm_agent.models import (
    AnalysisContext,
    ChatMessage,
    ChatRole,
    ChatSession,
    DailySummary,
    Marker,
    Measurement,
    PeriodComparison,
    PeriodSummary,
    RangeStats,
    TargetBand,
    Window,
)

_CLASSIFICATION_HEADER = """\
IMPORTANT: Your response MUST start with a classification line in this exact format:
[CLASSIFICATION: green]
or [CLASSIFICATION: yellow] or [CLASSIFICATION: red]
"""

WINDOW_SYSTEM_PROMPT = f"""\
You are a diabetes management assistant analysing glucose responses to food \
and activities.  Given a note describing what the user ate or did, plus the \
glucose readings before and after it, provide a clear and helpful analysis.

{_CLASSIFICATION_HEADER}
Classification guide:
- **green**: well-controlled response. Spike <= 30 mg/dL, stayed in range, good recovery.
- **yellow**: concerning response. Spike 30-60 mg/dL, briefly above range, or slow recovery.
- **red**: problematic response. Spike > 60 mg/dL, extended time above range, or a low.

After the classification line cover: baseline, glucose response (peak and \
time to peak), spike size, recovery, overall impact and one practical tip.

Other notes may fall inside the same observation window.  When they do, \
explain how they likely shaped the response and say so when the main \
note's effect cannot be isolated.

Keep it to 2-3 short paragraphs, in markdown, without a title heading.  Use \
mg/dL.  All timestamps are in the user's local time."""

COMPARISON_SYSTEM_PROMPT = f"""\
You are a diabetes management assistant comparing TWO TIME PERIODS of \
glucose data.  Explain how glucose control differed and what likely caused it.

{_CLASSIFICATION_HEADER}
Classification guide (based on the comparison outcome):
- **green**: improvement, or both periods well-controlled.
- **yellow**: mixed results, or both periods moderately controlled.
- **red**: deterioration, or both periods poorly controlled.

Use these bold sections: **Overview**, **Key Metrics Comparison**, \
**Event Analysis**, **Pattern Differences**, **What Caused the Difference**, \
**Actionable Insights**.

Markdown, no title heading, mg/dL units, local timestamps, supportive tone."""

SUMMARY_SYSTEM_PROMPT = f"""\
You are a diabetes management assistant analysing a USER-CHOSEN TIME PERIOD \
of glucose data.  The period may span hours or months; adapt the depth.

{_CLASSIFICATION_HEADER}
Classification guide:
- **green**: good control, high time in range, few or mild spikes.
- **yellow**: moderate control, elevated variability or occasional large spikes.
- **red**: poor control, frequent or severe spikes, or dangerous lows.

Use these bold sections: **Overview**, **Key Metrics**, **Glucose Patterns**, \
**Event Analysis**, **Night & Morning Analysis**, **Actionable Insights**.

Markdown, no title heading, mg/dL units, local timestamps, supportive tone."""

DAILY_SUMMARY_SYSTEM_PROMPT = f"""\
You are a diabetes management assistant writing a DAILY SUMMARY of \
continuous glucose data and every note logged that day.  The day may still \
be in progress; if so, say so and judge only the data available so far.

{_CLASSIFICATION_HEADER}
Classification guide for the whole day:
- **green**: good day. Time in range >= 70%, no spike above 60 mg/dL, no lows.
- **yellow**: concerning day. Time in range 50-70%, notable spikes or moderate variability.
- **red**: difficult day. Time in range < 50%, large spikes, lows, or long stretches above range.

Use these bold sections: **Day Overview**, **Key Metrics**, **Meal & Activity Impacts**, \
**Patterns & Trends**, **Best & Worst Moments**, **Actionable Insights**.

Markdown, no title heading, mg/dL units, local timestamps, supportive tone."""

CHAT_SYSTEM_PROMPT = """\
You are a friendly diabetes management assistant.  Answer the user's \
question using the glucose statistics, notes and conversation below.  When \
the data does not answer the question, say so instead of guessing.  Use \
markdown and mg/dL units.  All timestamps are in the user's local time."""

FOOD_TAG_SYSTEM_PROMPT = """\
You extract food and drink names from meal/activity notes.
Return a JSON array of objects, each with "name" (original language, \
lowercase) and "name_en" (English translation, lowercase).
Use simple, normalized names (lowercase, singular form, common name).
If the note describes an activity rather than food, or no specific food \
can be identified, return an empty array.
Return ONLY the JSON array, nothing else."""

FOOD_TAG_MAX_TOKENS = 512

_TIMELINE_SAMPLE = 50


# ── Helpers ───────────────────────────────────────────────────

def resolve_timezone(name: str) -> ZoneInfo | timezone:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return timezone.utc


def to_local(ts: datetime, tz: ZoneInfo | timezone) -> datetime:
    """Naive-UTC *ts* as a naive local time in *tz*."""
    return ts.replace(tzinfo=timezone.utc).astimezone(tz).replace(tzinfo=None)


def _fmt(ts: datetime, tz: ZoneInfo | timezone, pattern: str = "%Y-%m-%d %H:%M") -> str:
    return to_local(ts, tz).strftime(pattern)


def _truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def _format_duration(start: datetime, end: datetime) -> str:
    total_minutes = int((end - start).total_seconds() // 60)
    days, rem = divmod(total_minutes, 60 * 24)
    hours, minutes = divmod(rem, 60)
    parts = []
    if days:
        parts.append(f"{days}d")
    if hours:
        parts.append(f"{hours}h")
    if minutes or not parts:
        parts.append(f"{minutes}m")
    return " ".join(parts)


def range_stats_lines(stats: RangeStats | None, band: TargetBand) -> list[str]:
    if stats is None or stats.count == 0:
        return ["  Readings: 0"]
    low, high = int(band.low), int(band.high)
    return [
        f"  Readings: {stats.count}",
        f"  Glucose range: {stats.min} - {stats.max} mg/dL",
        f"  Average: {stats.avg} mg/dL",
        f"  Std deviation: {stats.std_dev} mg/dL",
        f"  Time in range ({low}-{high}): {stats.time_in_range}%",
        f"  Time above range (>{high}): {stats.time_above_range}%",
        f"  Time below range (<{low}): {stats.time_below_range}%",
    ]


def _marker_lines(
    markers: Sequence[Marker],
    windows: dict[str, Window],
    tz: ZoneInfo | timezone,
) -> list[str]:
    lines: list[str] = []
    for m in markers:
        lines.append(f"  * {_fmt(m.timestamp, tz)}: {m.title}")
        if m.payload.strip():
            lines.append(f"    Content: {_truncate(m.payload, 200)}")
        w = windows.get(m.id)
        if w is not None and w.stats.value_at_anchor is not None:
            spike = f"+{w.stats.spike}" if w.stats.spike is not None else "N/A"
            lines.append(f"    Glucose: {w.stats.value_at_anchor} mg/dL, Spike: {spike} mg/dL")
        if w is not None and w.classification:
            lines.append(f"    Classification: {w.classification}")
    return lines


def marker_titles(markers: Sequence[Marker]) -> str:
    return ", ".join(m.title for m in markers if m.title)


def _timeline_lines(
    readings: Sequence[Measurement],
    tz: ZoneInfo | timezone,
    pattern: str = "%Y-%m-%d %H:%M",
) -> list[str]:
    """Every reading, or about fifty evenly spaced ones when there are more than sixty."""
    sample: Sequence[Measurement] = readings
    if len(readings) > 60:
        step = len(readings) // _TIMELINE_SAMPLE + 1
        sample = readings[::step]
    return [f"  {_fmt(r.timestamp, tz, pattern)} -> {r.value} mg/dL" for r in sample]


# ── Window analysis ───────────────────────────────────────────

def build_window_context(
    window: Window,
    marker: Marker,
    readings: Sequence[Measurement],
    others: Sequence[tuple[Marker, Window | None]],
    *,
    tz_name: str,
    max_tokens: int = 4096,
) -> AnalysisContext:
    """Prompt for one marker window.

    Readings are split around the marker: the last 10 before it and the
    first 15 at or after it are listed individually.
    """
    tz = resolve_timezone(tz_name)
    before = [r for r in readings if r.timestamp < marker.timestamp]
    after = [r for r in readings if r.timestamp >= marker.timestamp]
    lines: list[str] = ["=== GLUCOSE DATA BEFORE NOTE ==="]

    if before:
        values = [r.value for r in before]
        lines += [
            f"Readings: {len(before)}",
            f"Range: {min(values)} - {max(values)} mg/dL",
            f"Average: {round(sum(values) / len(values), 1)} mg/dL",
            f"Last reading before note: {before[-1].value} mg/dL at {_fmt(before[-1].timestamp, tz, '%H:%M')}",
            "Recent readings before:",
        ]
        lines += [f"  {_fmt(r.timestamp, tz)} -> {r.value} mg/dL" for r in before[-10:]]
    else:
        lines.append("No glucose readings before the note.")

    lines += ["", "=== GLUCOSE DATA AFTER NOTE ==="]
    if after:
        values = [r.value for r in after]
        peak = max(after, key=lambda r: r.value)
        lines += [
            f"Readings: {len(after)}",
            f"Range: {min(values)} - {max(values)} mg/dL",
            f"Average: {round(sum(values) / len(values), 1)} mg/dL",
            f"Peak: {peak.value} mg/dL at {_fmt(peak.timestamp, tz, '%H:%M')}",
        ]
        if window.stats.spike is not None:
            lines.append(f"Spike from baseline: +{window.stats.spike} mg/dL")
        minutes = (peak.timestamp - marker.timestamp).total_seconds() / 60
        lines.append(f"Time to peak: {minutes:.0f} minutes")
        lines.append("Readings after note:")
        lines += [f"  {_fmt(r.timestamp, tz)} -> {r.value} mg/dL" for r in after[:15]]
    else:
        lines.append("No glucose readings after the note.")

    if others:
        lines += [
            "",
            "=== OTHER NOTES IN THIS GLUCOSE WINDOW ===",
            f"There are {len(others)} other note(s) within this observation period.",
            "",
        ]
        for other, other_window in others:
            offset = (other.timestamp - marker.timestamp).total_seconds() / 60
            direction = "after" if offset >= 0 else "before"
            lines.append(
                f'  * "{other.title}" at {_fmt(other.timestamp, tz, "%H:%M")} '
                f"({abs(offset):.0f} min {direction} this note)"
            )
            if other.payload.strip():
                lines.append(f"    Content: {_truncate(other.payload, 200)}")
            if other_window is not None and other_window.stats.value_at_anchor is not None:
                lines.append(f"    Glucose at that note: {other_window.stats.value_at_anchor} mg/dL")
            if other_window is not None and other_window.classification:
                lines.append(f"    Classification: {other_window.classification}")

    at_note = (
        f"{window.stats.value_at_anchor} mg/dL" if window.stats.value_at_anchor is not None else "N/A"
    )
    user_prompt = (
        f"**Note Title:** {marker.title}\n"
        f"**Note Content:** {marker.payload or '(no text content)'}\n"
        f"**Note Time:** {_fmt(marker.timestamp, tz)} (local time)\n"
        f"**Glucose at Note:** {at_note}\n\n"
        + "\n".join(lines)
        + "\n\nPlease analyse this glucose response."
    )
    return AnalysisContext(system_prompt=WINDOW_SYSTEM_PROMPT, user_prompt=user_prompt, max_tokens=max_tokens)


# ── Period comparison & summary ───────────────────────────────

def build_comparison_context(
    comparison: PeriodComparison,
    markers_a: Sequence[Marker],
    markers_b: Sequence[Marker],
    windows: dict[str, Window],
    *,
    band: TargetBand,
    tz_name: str,
    max_tokens: int = 4096,
) -> AnalysisContext:
    tz = resolve_timezone(tz_name)
    lines: list[str] = []
    periods = (
        (comparison.label_a, comparison.period_a_start, comparison.period_a_end, comparison.stats_a, markers_a),
        (comparison.label_b, comparison.period_b_start, comparison.period_b_end, comparison.stats_b, markers_b),
    )
    for label, start, end, stats, markers in periods:
        lines += [
            f"=== {label.upper()} ===",
            f"From: {_fmt(start, tz)}",
            f"To:   {_fmt(end, tz)}",
            f"Duration: {_format_duration(start, end)}",
            "Statistics:",
            *range_stats_lines(stats, band),
            f"Notes ({len(markers)}):",
            *_marker_lines(markers, windows, tz),
            "",
        ]
    name = f"\nComparison name: {comparison.name}\n" if comparison.name else ""
    user_prompt = f"Please compare these two glucose monitoring periods:\n{name}\n" + "\n".join(lines)
    return AnalysisContext(system_prompt=COMPARISON_SYSTEM_PROMPT, user_prompt=user_prompt, max_tokens=max_tokens)


def build_summary_context(
    summary: PeriodSummary,
    markers: Sequence[Marker],
    readings: Sequence[Measurement],
    windows: dict[str, Window],
    *,
    band: TargetBand,
    tz_name: str,
    max_tokens: int = 4096,
) -> AnalysisContext:
    tz = resolve_timezone(tz_name)
    lines = ["=== PERIOD OVERVIEW ==="]
    if summary.name:
        lines.append(f"Label: {summary.name}")
    lines += [
        f"From: {_fmt(summary.period_start, tz)}",
        f"To:   {_fmt(summary.period_end, tz)}",
        f"Duration: {_format_duration(summary.period_start, summary.period_end)}",
        "",
        "=== GLUCOSE STATISTICS ===",
        *range_stats_lines(summary.stats, band),
        "",
        f"=== NOTES ({len(markers)}) ===",
        *_marker_lines(markers, windows, tz),
        "",
        "=== GLUCOSE TIMELINE (sampled) ===",
    ]
    lines += _timeline_lines(readings, tz)

    label = f"\nPeriod label: {summary.name}\n" if summary.name else ""
    user_prompt = f"Please analyse this glucose monitoring period:\n{label}\n" + "\n".join(lines)
    return AnalysisContext(system_prompt=SUMMARY_SYSTEM_PROMPT, user_prompt=user_prompt, max_tokens=max_tokens)


# ── Daily summary ─────────────────────────────────────────────

def _hourly_profile_lines(readings: Sequence[Measurement], tz: ZoneInfo | timezone) -> list[str]:
    by_hour: dict[int, list[float]] = {}
    for r in readings:
        by_hour.setdefault(to_local(r.timestamp, tz).hour, []).append(r.value)
    lines = []
    for hour in sorted(by_hour):
        values = by_hour[hour]
        avg = round(sum(values) / len(values), 1)
        lines.append(
            f"  {hour:02d}:00 -> avg {avg}, range {min(values)} - {max(values)} mg/dL ({len(values)} readings)"
        )
    return lines


def build_daily_summary_context(
    summary: DailySummary,
    markers: Sequence[Marker],
    readings: Sequence[Measurement],
    windows: dict[str, Window],
    *,
    band: TargetBand,
    partial: bool,
    max_tokens: int = 4096,
) -> AnalysisContext:
    """Prompt for one local day; *summary* carries the day's bounds and statistics.

    The day's own timezone (``summary.timezone``) is used for every local
    time, so a summary stays consistent if the display setting changes later.
    """
    tz = resolve_timezone(summary.timezone)
    lines = [f"=== DAY OVERVIEW: {summary.day.isoformat()} ({summary.day.strftime('%A')}) ==="]
    if partial:
        last = _fmt(readings[-1].timestamp, tz, "%H:%M") if readings else "N/A"
        lines.append(f"PARTIAL DAY: data available up to {last} (day still in progress)")
    lines += [
        *range_stats_lines(summary.stats, band),
        "",
        f"=== NOTES ({len(markers)}) ===",
        *(_marker_lines(markers, windows, tz) or ["  No meal or activity notes logged this day."]),
        "",
        "=== HOURLY GLUCOSE PROFILE ===",
        *_hourly_profile_lines(readings, tz),
        "",
        "=== GLUCOSE TIMELINE ===",
        *_timeline_lines(readings, tz, "%H:%M"),
    ]
    user_prompt = "Please provide a daily summary analysis for this day's glucose data:\n\n" + "\n".join(lines)
    return AnalysisContext(
        system_prompt=DAILY_SUMMARY_SYSTEM_PROMPT, user_prompt=user_prompt, max_tokens=max_tokens
    )


# ── Chat ──────────────────────────────────────────────────────

def build_chat_context(
    session: ChatSession,
    history: Sequence[ChatMessage],
    stats: RangeStats | None,
    markers: Sequence[Marker],
    windows: dict[str, Window],
    *,
    band: TargetBand,
    tz_name: str,
    max_tokens: int = 4096,
) -> AnalysisContext:
    """Prompt for the next assistant turn.

    *history* holds the completed turns in order, ending with the user
    message being answered.
    """
    tz = resolve_timezone(tz_name)
    lines: list[str] = []

    if session.period_start is not None and session.period_end is not None:
        lines += [
            "=== GLUCOSE AND NOTE DATA ===",
            f"Period: {_fmt(session.period_start, tz)} to {_fmt(session.period_end, tz)}",
            *range_stats_lines(stats, band),
            f"Notes ({len(markers)}):",
            *_marker_lines(markers, windows, tz),
            "=== END GLUCOSE AND NOTE DATA ===",
            "",
        ]

    if len(history) > 1:
        lines.append("=== CONVERSATION HISTORY ===")
        for msg in history[:-1]:
            role = "User" if msg.role == ChatRole.USER else "Assistant"
            lines += [f"[{role}]: {_truncate(msg.content, 2000)}", ""]
        lines += ["=== END CONVERSATION HISTORY ===", ""]

    last_user = next((m for m in reversed(history) if m.role == ChatRole.USER), None)
    if last_user is not None:
        lines.append(last_user.content)

    return AnalysisContext(system_prompt=CHAT_SYSTEM_PROMPT, user_prompt="\n".join(lines), max_tokens=max_tokens)


# ── Food tags ─────────────────────────────────────────────────

def build_food_tag_context(marker: Marker) -> AnalysisContext | None:
    """``None`` when the marker has no text to extract from."""
    note = f"{marker.title}\n{marker.payload}".strip()
    if not note:
        return None
    return AnalysisContext(
        system_prompt=FOOD_TAG_SYSTEM_PROMPT,
        user_prompt=f"Extract food names from this note:\n\n{note}",
        max_tokens=FOOD_TAG_MAX_TOKENS,
    )
