"""Rapid sequential requests — machine-speed request cadence.

Humans and well-behaved integrations leave gaps between calls; scrapers and
brute-force tools fire back-to-back.  Fires when the mean gap between a
subject's requests is at or below ``rapid_threshold_seconds`` (0.1 s).

Requires ``rapid_min_requests`` (10) in the window so two requests that
happen to land close together don't count as a pattern.
"""

from detector.rules import Rule

# Epoch timestamps carry ~1e-7 s of float noise; don't let it flip the boundary.
_TOLERANCE = 1e-6


def mean_interval(events) -> float | None:
    if len(events) < 2:
        return None
    return (events[-1].timestamp - events[0].timestamp) / (len(events) - 1)


class RapidSequentialRequests(Rule):
    """Mean inter-request interval at machine speed."""

    id = "rapid_sequential_requests"
    name = "Rapid Sequential Requests"
    severity = "high"

    def trigger(self, events):
        if len(events) < self.settings.rapid_min_requests:
            return False
        return mean_interval(events) <= self.settings.rapid_threshold_seconds + _TOLERANCE

    def evidence(self, events):
        gap = mean_interval(events)
        return {
            "request_count": len(events),
            "mean_interval_seconds": round(gap, 4) if gap is not None else None,
            "threshold_seconds": self.settings.rapid_threshold_seconds,
        }
