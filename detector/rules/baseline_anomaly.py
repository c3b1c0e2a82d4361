"""Baseline anomaly — far more traffic this hour than the subject's usual.

The window rules judge traffic against fixed thresholds; this one judges a
subject against itself.  Baseline is the subject's mean requests per
active hour over the last ``baseline_days`` (7), rounded, with the current
hour included.  Fires when the current hour's count reaches
``baseline_multiplier`` (3) times the baseline.  A subject with no history
has a baseline equal to its current hour and never fires.
"""

from detector.rules import Rule
from shield.store.base import hour_start
from shield.subjects import API_KEY_PREFIX


def baseline(hourly: dict) -> int:
    """Mean requests per active hour, rounded half up."""
    if not hourly:
        return 0
    return int(sum(hourly.values()) / len(hourly) + 0.5)


class BaselineAnomaly(Rule):
    """Current hour well above the subject's own hourly average."""

    id = "baseline_anomaly"
    name = "Baseline Anomaly"
    severity = "medium"

    def hourly_counts(self, store, subject, now):
        since = now - self.settings.baseline_days * 86400
        if subject.startswith(API_KEY_PREFIX):
            return store.hourly_counts(since, identifier=subject)
        return store.hourly_counts(since, ip=subject)

    def assess(self, hourly: dict, now: float) -> dict:
        current = hourly.get(hour_start(now), 0)
        mean = baseline(hourly)
        return {
            "current_hour_requests": current,
            "baseline_hourly_requests": mean,
            "threshold": mean * self.settings.baseline_multiplier,
            "hours_observed": len(hourly),
        }

    def evaluate(self, events, store, subject, now):
        evidence = self.assess(self.hourly_counts(store, subject, now), now)
        mean = evidence["baseline_hourly_requests"]
        if mean <= 0 or evidence["current_hour_requests"] < evidence["threshold"]:
            return None
        return evidence
