"""High error rate — most of a subject's requests fail.

Credential stuffing, ID enumeration and fuzzing all produce a stream of
4xx/5xx responses.  Fires when ``errors / total`` exceeds
``error_rate_threshold`` (0.5), counting any status >= 400 as an error.
Requests with no recorded status count toward the total only.
"""

from detector.rules import Rule


def error_count(events) -> int:
    return sum(1 for e in events if e.response_code is not None and e.response_code >= 400)


class HighErrorRate(Rule):
    """Share of failing responses above the threshold."""

    id = "high_error_rate"
    name = "High Error Rate"
    severity = "medium"

    def trigger(self, events):
        if not events:
            return False
        return error_count(events) / len(events) > self.settings.error_rate_threshold

    def evidence(self, events):
        errors = error_count(events)
        return {
            "error_count": errors,
            "request_count": len(events),
            "error_rate": round(errors / len(events), 3) if events else 0.0,
        }
