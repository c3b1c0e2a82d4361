# Abuse pattern rules as Python classes, one per file.
#
# Each rule looks at one subject's recent requests (oldest first) and
# decides whether its pattern is present.  Findings are non-exclusive: the
# analyzer runs every rule and sums their weighted severities into the
# anomaly score, so a subject can be rapid AND error-prone at once.
#
# Thresholds come from AbuseSettings; weights too, so a deployment can make
# one pattern count for more without touching code.
#
# Most rules only look at the analysis window.  A rule that needs longer
# history (the hourly baseline) overrides evaluate() and asks the store.

from shield.config import AbuseSettings

SEVERITY_FACTORS = {"high": 1.0, "medium": 0.6, "low": 0.3}


class Rule:
    """Base pattern rule. Subclass and implement trigger() + evidence()."""

    id: str
    name: str
    severity: str  # low | medium | high

    def __init__(self, settings: AbuseSettings | None = None):
        self.settings = settings or AbuseSettings()

    @property
    def weight(self) -> float:
        return float(self.settings.weights.get(self.id, 0))

    @property
    def score(self) -> float:
        """Contribution to the anomaly score when this rule fires."""
        return self.weight * SEVERITY_FACTORS[self.severity]

    def match(self, event) -> bool:
        """Return True if this event counts toward the rule.  Default: all requests."""
        return True

    def trigger(self, events: list) -> bool:
        """Given the subject's matching events in the window, is the pattern present?"""
        raise NotImplementedError

    def evidence(self, events: list) -> dict:
        """Statistics behind the finding, attached to alerts and CLI output."""
        return {}

    def evaluate(self, events: list, store, subject: str, now: float) -> dict | None:
        """Evidence when the pattern is present for *subject*, else None."""
        matching = [e for e in events if self.match(e)]
        if not self.trigger(matching):
            return None
        return self.evidence(matching)

    def describe(self) -> dict:
        return {"id": self.id, "name": self.name, "severity": self.severity,
                "weight": self.weight, "description": (self.__doc__ or "").strip()}


from detector.rules.rapid_sequential import RapidSequentialRequests
from detector.rules.error_rate import HighErrorRate
from detector.rules.excessive_requests import ExcessiveRequests
from detector.rules.single_endpoint import SingleEndpointAbuse
from detector.rules.diversity import HighEndpointDiversity, HighUserAgentDiversity
from detector.rules.baseline_anomaly import BaselineAnomaly

ALL_RULES = [
    RapidSequentialRequests,
    HighErrorRate,
    ExcessiveRequests,
    SingleEndpointAbuse,
    HighEndpointDiversity,
    HighUserAgentDiversity,
    BaselineAnomaly,
]


def build_rules(settings: AbuseSettings | None = None) -> list[Rule]:
    return [rule(settings) for rule in ALL_RULES]
