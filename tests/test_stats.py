"""Tests for window and range statistics."""

from datetime import timedelta

from conftest import T0, readings

from cgm_agent.analysis.stats import compute_range_stats, compute_window_stats, value_nearest
from cgm_agent.models import Measurement, TargetBand


class TestWindowStats:
    def test_empty_input_is_no_data(self):
        stats = compute_window_stats([], T0)
        assert stats.count == 0
        assert stats.has_data is False
        assert stats.avg is None
        assert stats.spike is None
        assert stats.time_in_range is None

    def test_basic_fields(self):
        data = readings(T0 - timedelta(minutes=30), [100, 110, 120, 180, 150])
        stats = compute_window_stats(data, T0)

        assert stats.count == 5
        assert stats.min == 100
        assert stats.max == 180
        assert stats.avg == 132.0
        assert stats.value_at_anchor == 120
        assert stats.spike == 60.0
        assert stats.peak_time == T0 + timedelta(minutes=15)

    def test_population_std_dev_rounded(self):
        data = readings(T0, [100, 200])
        stats = compute_window_stats(data, T0)
        assert stats.std_dev == 50.0

    def test_anchor_tie_prefers_earlier_reading(self):
        data = [
            Measurement(timestamp=T0 - timedelta(minutes=5), value=90),
            Measurement(timestamp=T0 + timedelta(minutes=5), value=140),
        ]
        assert value_nearest(data, T0).value == 90
        stats = compute_window_stats(data, T0)
        assert stats.value_at_anchor == 90
        assert stats.spike == 50.0

    def test_no_reading_after_anchor_means_no_spike(self):
        data = readings(T0 - timedelta(hours=1), [100, 105, 110])
        stats = compute_window_stats(data, T0)
        assert stats.spike is None
        assert stats.peak_time is None
        assert stats.value_at_anchor == 110

    def test_peak_time_is_first_of_equal_maxima(self):
        data = readings(T0, [100, 150, 150, 120])
        stats = compute_window_stats(data, T0)
        assert stats.peak_time == T0 + timedelta(minutes=15)

    def test_spike_is_zero_when_glucose_only_falls(self):
        data = readings(T0, [150, 140, 130])
        stats = compute_window_stats(data, T0)
        assert stats.spike == 0.0

        data = readings(T0 - timedelta(minutes=15), [200, 150, 140])
        stats = compute_window_stats(data, T0)
        assert stats.value_at_anchor == 150
        assert stats.spike == 0.0

    def test_band_is_inclusive(self):
        data = readings(T0, [69, 70, 180, 181])
        stats = compute_window_stats(data, T0)
        assert stats.time_in_range == 50.0
        assert stats.time_above_range == 25.0
        assert stats.time_below_range == 25.0

    def test_custom_band(self):
        data = readings(T0, [90, 100, 150])
        stats = compute_window_stats(data, T0, TargetBand(low=95, high=140))
        assert stats.time_in_range == 33.3
        assert stats.time_below_range == 33.3
        assert stats.time_above_range == 33.3

    def test_recompute_is_deterministic(self):
        data = readings(T0, [101.3, 99.7, 133.1, 150.9])
        assert compute_window_stats(data, T0) == compute_window_stats(list(data), T0)


class TestRangeStats:
    def test_empty(self):
        stats = compute_range_stats([])
        assert stats.count == 0
        assert stats.first_timestamp is None

    def test_fields(self):
        data = readings(T0, [60, 100, 200, 120])
        stats = compute_range_stats(data)
        assert stats.count == 4
        assert stats.avg == 120.0
        assert stats.time_below_range == 25.0
        assert stats.time_above_range == 25.0
        assert stats.time_in_range == 50.0
        assert stats.first_timestamp == T0
        assert stats.last_timestamp == T0 + timedelta(minutes=45)
