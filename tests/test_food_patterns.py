"""Tests for per-food aggregation over tagged windows."""

from datetime import timedelta

from conftest import T0, marker

from cgm_agent.analysis.food_patterns import aggregate_food_patterns, recovery_minutes
from cgm_agent.models import FoodTag, Window, WindowStats

H = timedelta(hours=1)


def _window(m, *, spike, peak_after, value_at_anchor, low, high, classification=None):
    return Window(
        marker_id=m.id,
        marker_timestamp=m.timestamp,
        period_start=m.timestamp - 3 * H,
        period_end=m.timestamp + 4 * H,
        stats=WindowStats(
            count=10,
            min=low,
            max=high,
            value_at_anchor=value_at_anchor,
            spike=spike,
            peak_time=m.timestamp + peak_after,
        ),
        classification=classification,
    )


def _tag(m_id, name):
    return FoodTag(marker_id=m_id, name=name, normalized_name=name.lower())


class TestRecovery:
    def test_peak_to_window_end(self):
        m = marker(T0)
        w = _window(m, spike=40.0, peak_after=H, value_at_anchor=100.0, low=95.0, high=140.0)
        assert recovery_minutes(w) == 180.0

    def test_no_recovery_without_spike(self):
        m = marker(T0)
        w = _window(m, spike=0.0, peak_after=H, value_at_anchor=100.0, low=95.0, high=100.0)
        assert recovery_minutes(w) is None


class TestAggregate:
    def test_metrics_per_food(self):
        lunch = marker(T0, "Rice and chicken")
        dinner = marker(T0 + 24 * H, "rice")
        coffee = marker(T0 + 2 * H, "kawa")
        markers = {m.id: m for m in (lunch, dinner, coffee)}
        windows = {
            lunch.id: _window(
                lunch, spike=60.0, peak_after=H, value_at_anchor=100.0, low=90.0, high=160.0, classification="yellow"
            ),
            dinner.id: _window(
                dinner,
                spike=20.0,
                peak_after=timedelta(minutes=30),
                value_at_anchor=100.0,
                low=80.0,
                high=120.0,
                classification="green",
            ),
            coffee.id: _window(coffee, spike=0.0, peak_after=H, value_at_anchor=110.0, low=100.0, high=110.0),
        }
        tags = [
            _tag(dinner.id, "rice"),
            _tag(lunch.id, "Rice"),
            _tag(coffee.id, "kawa"),
            # Tag whose marker is gone: counted, but contributes no metrics.
            _tag("deleted-marker", "Kawa"),
        ]

        kawa, rice = aggregate_food_patterns(tags, markers, windows)

        assert rice.normalized_name == "rice"
        assert rice.name == "Rice"
        assert rice.occurrences == 2
        assert (rice.avg_spike, rice.worst_spike, rice.best_spike) == (40.0, 60.0, 20.0)
        assert rice.avg_value_at_marker == 100.0
        assert (rice.avg_min, rice.avg_max) == (85.0, 140.0)
        assert rice.avg_recovery_minutes == 195.0
        assert (rice.green_count, rice.yellow_count, rice.red_count) == (1, 1, 0)
        assert (rice.first_seen, rice.last_seen) == (T0, T0 + 24 * H)

        assert kawa.occurrences == 2
        assert kawa.avg_spike == 0.0
        assert kawa.avg_recovery_minutes is None
        assert kawa.first_seen == kawa.last_seen == T0 + 2 * H
        assert kawa.green_count + kawa.yellow_count + kawa.red_count == 0

    def test_most_frequent_first(self):
        a, b = marker(T0), marker(T0 + H)
        tags = [_tag(a.id, "tea"), _tag(a.id, "bread"), _tag(b.id, "bread")]
        patterns = aggregate_food_patterns(tags, {a.id: a, b.id: b}, {})
        assert [p.normalized_name for p in patterns] == ["bread", "tea"]
        assert patterns[0].avg_spike is None

    def test_no_tags(self):
        assert aggregate_food_patterns([], {}, {}) == []
