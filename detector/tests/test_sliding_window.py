"""Tests for SlidingWindow — boundaries, eviction, peaks, drift guard."""

from dataclasses import dataclass

from detector.sliding_window import SlidingWindow, _MAX_DRIFT_SECONDS, peak_count, within_drift

NOW = 1_700_000_000.0


@dataclass
class _Ev:
    timestamp: float


class TestEviction:
    def test_events_within_window_are_kept(self):
        w = SlidingWindow(60)
        w.add(NOW - 30, {"id": 1})
        w.add(NOW - 10, {"id": 2})
        assert len(w.events(NOW)) == 2

    def test_event_exactly_at_boundary_stays_in_window(self):
        """cutoff uses strict <, so timestamp == cutoff is not evicted."""
        w = SlidingWindow(60)
        w.add(NOW - 60, {"id": "boundary"})
        assert len(w.events(NOW)) == 1

    def test_events_just_past_boundary_are_evicted(self):
        w = SlidingWindow(60)
        w.add(NOW - 60.001, {"id": "old"})
        assert len(w.events(NOW)) == 0

    def test_progressive_eviction(self):
        """Adding a newer event evicts the ones that fell out of the span."""
        w = SlidingWindow(10)
        w.add(NOW, {"id": "a"})
        w.add(NOW + 5, {"id": "b"})
        w.add(NOW + 12, {"id": "c"})  # "a" is now 12 s old

        ids = [e["id"] for e in w.events(NOW + 12)]
        assert ids == ["b", "c"]

    def test_add_returns_window_size(self):
        w = SlidingWindow(10)
        assert w.add(NOW) == 1
        assert w.add(NOW + 1) == 2
        assert w.add(NOW + 20) == 1


class TestPeak:
    def test_peak_survives_eviction(self):
        w = SlidingWindow(1)
        for i in range(5):
            w.add(NOW + i * 0.1)
        w.add(NOW + 10)
        assert len(w) == 1
        assert w.peak == 5

    def test_clear_resets_peak(self):
        w = SlidingWindow(60)
        w.add(NOW)
        w.add(NOW)
        w.clear()
        assert len(w) == 0
        assert w.peak == 0
        assert w.events(NOW) == []


class TestPeakCount:
    def test_empty(self):
        assert peak_count([], 1.0) == 0

    def test_burst_inside_one_second(self):
        timestamps = [NOW + i / 150 for i in range(150)]
        assert peak_count(timestamps, 1.0) == 150

    def test_evenly_spread_second_is_not_overcounted(self):
        """101 stamps spanning exactly 1.0 s: the two ends are one span apart."""
        timestamps = [NOW + i / 100 for i in range(101)]
        assert peak_count(timestamps, 1.0) == 100

    def test_densest_stretch_wins(self):
        sparse = [NOW + i for i in range(30)]
        dense = [NOW + 40 + i * 0.01 for i in range(20)]
        assert peak_count(sparse + dense, 1.0) == 20

    def test_unsorted_input(self):
        timestamps = [NOW + 0.5, NOW, NOW + 0.2, NOW + 5]
        assert peak_count(timestamps, 1.0) == 3


class TestDriftGuard:
    def test_past_and_present_events_kept(self):
        events = [_Ev(NOW - 30), _Ev(NOW)]
        assert within_drift(events, NOW) == events

    def test_event_slightly_in_future_is_kept(self):
        assert len(within_drift([_Ev(NOW + 1)], NOW)) == 1

    def test_event_exactly_at_drift_limit_is_kept(self):
        assert len(within_drift([_Ev(NOW + _MAX_DRIFT_SECONDS)], NOW)) == 1

    def test_event_beyond_drift_limit_is_dropped(self):
        assert within_drift([_Ev(NOW + _MAX_DRIFT_SECONDS + 1)], NOW) == []
