"""Excessive requests — raw volume well past normal use."""

from detector.rules import Rule


class ExcessiveRequests(Rule):
    """More requests in the window than any legitimate client sends."""

    id = "excessive_requests"
    name = "Excessive Requests"
    severity = "high"

    def trigger(self, events):
        return len(events) > self.settings.excessive_threshold

    def evidence(self, events):
        return {"request_count": len(events),
                "threshold": self.settings.excessive_threshold}
