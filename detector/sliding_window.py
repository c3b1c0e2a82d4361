"""Event-time sliding window.

The detectors replay a subject's recent events (read from the store, oldest
first) through a window of fixed span to find the densest stretch, e.g.
the most requests inside any one second of the last minute.  Deque-based:
O(1) append, amortized O(1) eviction, so one pass over N events is O(N).

Eviction is driven by event timestamps, not the wall clock, which keeps the
result identical whether the events are replayed live or hours later.
"""

from collections import deque

# Events stamped more than this far past "now" are ignored by the
# detectors; guards against bogus timestamps poisoning a sweep.
_MAX_DRIFT_SECONDS = 5


class SlidingWindow:
    __slots__ = ("max_age", "closed", "_buf", "peak")

    def __init__(self, max_age_seconds: float, closed: bool = True):
        self.max_age = max_age_seconds
        # closed: an event exactly max_age old stays in the window.
        self.closed = closed
        self._buf: deque[tuple[float, object]] = deque()
        self.peak = 0

    def add(self, timestamp: float, event: object = None) -> int:
        """Append an event (timestamps must not decrease); returns the window size."""
        self._evict(timestamp)
        self._buf.append((timestamp, event))
        if len(self._buf) > self.peak:
            self.peak = len(self._buf)
        return len(self._buf)

    def events(self, now: float) -> list:
        """Return all events currently inside the window."""
        self._evict(now)
        return [e for _, e in self._buf]

    def clear(self) -> None:
        self._buf.clear()
        self.peak = 0

    def _evict(self, now: float) -> None:
        cutoff = now - self.max_age
        buf = self._buf
        if self.closed:
            while buf and buf[0][0] < cutoff:
                buf.popleft()
        else:
            while buf and buf[0][0] <= cutoff:
                buf.popleft()

    def __len__(self) -> int:
        return len(self._buf)


def peak_count(timestamps, span_seconds: float) -> int:
    """Most timestamps falling inside any window of *span_seconds*.

    A span of 1.0 answers "peak requests per second".  Timestamps that are
    exactly *span_seconds* apart are not counted in the same window, so 100
    requests spread evenly over one second peak at 100, not 101.
    """
    window = SlidingWindow(span_seconds, closed=False)
    for ts in sorted(timestamps):
        window.add(ts)
    return window.peak


def within_drift(events, now: float) -> list:
    """Drop events stamped implausibly far in the future."""
    return [e for e in events if e.timestamp <= now + _MAX_DRIFT_SECONDS]
