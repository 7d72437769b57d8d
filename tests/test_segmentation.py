"""Tests for window segmentation, change detection and the cooldown policy."""

from datetime import timedelta

import pytest
from conftest import T0, marker

from cgm_agent.analysis.change import has_changed
from cgm_agent.analysis.cooldown import may_reanalyze
from cgm_agent.analysis.segmentation import SegmentationParams, compute_boundaries, window_bounds
from cgm_agent.config import Settings
from cgm_agent.models import EnrichmentHistoryEntry, Window, WindowStats

H = timedelta(hours=1)
PARAMS = SegmentationParams()


def _bounds(markers):
    return compute_boundaries(markers, PARAMS.default_lookback, PARAMS.default_lookahead, PARAMS.minimum_lookahead)


class TestSegmentation:
    def test_single_marker_uses_defaults(self):
        [w] = _bounds([marker(T0)])
        assert w.period_start == T0 - 3 * H
        assert w.period_end == T0 + 4 * H

    def test_close_markers_overlap_by_minimum_lookahead(self):
        a, b = marker(T0, "Breakfast"), marker(T0 + H, "Snack")
        wa, wb = _bounds([a, b])
        assert wa.period_start == T0 - 3 * H
        assert wa.period_end == T0 + 3 * H
        assert wb.period_start == T0
        assert wb.period_end == T0 + 5 * H

    def test_distant_next_marker_extends_window(self):
        a, b = marker(T0), marker(T0 + 6 * H)
        wa, _ = _bounds([a, b])
        assert wa.period_end == T0 + 6 * H

    def test_idempotent(self):
        markers = [marker(T0), marker(T0 + 2 * H), marker(T0 + 9 * H)]
        assert _bounds(markers) == _bounds(markers)

    def test_unsorted_input_rejected(self):
        with pytest.raises(ValueError):
            _bounds([marker(T0 + H), marker(T0)])

    def test_empty_stream(self):
        assert _bounds([]) == []

    def test_window_bounds_matches_full_computation(self):
        a, b, c = marker(T0), marker(T0 + 2 * H), marker(T0 + 8 * H)
        _, wb, _ = _bounds([a, b, c])
        assert window_bounds(b.timestamp, a.timestamp, c.timestamp, PARAMS) == (wb.period_start, wb.period_end)


class TestChangeDetection:
    def test_none_handling(self):
        assert has_changed(None, None) is False
        assert has_changed(None, WindowStats()) is True
        assert has_changed(WindowStats(), None) is True

    def test_within_epsilon_is_unchanged(self):
        old = WindowStats(count=3, avg=120.0, std_dev=4.0)
        new = WindowStats(count=3, avg=120.005, std_dev=4.0)
        assert has_changed(old, new) is False

    def test_beyond_epsilon_is_changed(self):
        old = WindowStats(count=3, avg=120.0)
        new = WindowStats(count=3, avg=120.1)
        assert has_changed(old, new) is True

    def test_count_change_ignores_epsilon(self):
        assert has_changed(WindowStats(count=3), WindowStats(count=4), epsilon=1e9) is True

    def test_presence_difference_is_changed(self):
        old = WindowStats(count=3, avg=120.0, spike=None)
        new = WindowStats(count=3, avg=120.0, spike=10.0)
        assert has_changed(old, new) is True

    def test_peak_time_compared_by_equality(self):
        old = WindowStats(count=3, peak_time=T0)
        new = WindowStats(count=3, peak_time=T0 + timedelta(minutes=5))
        assert has_changed(old, new) is True
        assert has_changed(old, WindowStats(count=3, peak_time=T0)) is False


class TestCooldown:
    window = Window(marker_id="m1", marker_timestamp=T0, period_start=T0 - 3 * H, period_end=T0 + 4 * H)

    def _entry(self, at):
        return EnrichmentHistoryEntry(
            window_id="m1",
            stats_at_time=WindowStats(),
            period_start=self.window.period_start,
            period_end=self.window.period_end,
            result="ok",
            reason="Initial analysis",
            analyzed_at=at,
        )

    def test_no_history_proceeds(self):
        assert may_reanalyze(self.window, [], timedelta(minutes=30), False, now=T0) is True

    def test_within_cooldown_is_blocked(self):
        history = [self._entry(T0)]
        now = T0 + timedelta(minutes=10)
        assert may_reanalyze(self.window, history, timedelta(minutes=30), False, now=now) is False

    def test_forced_bypasses_cooldown(self):
        history = [self._entry(T0)]
        now = T0 + timedelta(minutes=10)
        assert may_reanalyze(self.window, history, timedelta(minutes=30), True, now=now) is True

    def test_elapsed_cooldown_proceeds(self):
        history = [self._entry(T0 - 2 * H), self._entry(T0)]
        now = T0 + timedelta(minutes=30)
        assert may_reanalyze(self.window, history, timedelta(minutes=30), False, now=now) is True

    def test_uses_newest_entry(self):
        history = [self._entry(T0), self._entry(T0 - 2 * H)]
        now = T0 + timedelta(minutes=20)
        assert may_reanalyze(self.window, history, timedelta(minutes=30), False, now=now) is False

    def test_configured_cooldown_never_below_one_minute(self):
        assert Settings(_env_file=None, reanalysis_cooldown_minutes=0).reanalysis_cooldown == timedelta(minutes=1)
        assert Settings(_env_file=None, reanalysis_cooldown_minutes=45).reanalysis_cooldown == timedelta(minutes=45)
