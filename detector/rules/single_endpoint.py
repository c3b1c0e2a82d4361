"""Single-endpoint abuse — hammering one endpoint.

A login or search endpoint hit hundreds of times with nothing else in
between is the shape of brute force or scraping.  Fires when every request
in the window went to the same endpoint and the total exceeds
``single_endpoint_threshold`` (500).  Requests with no recorded endpoint
say nothing about which endpoint was hit and are left out.
"""

from detector.rules import Rule


def with_endpoint(events) -> list:
    return [e for e in events if e.endpoint]


class SingleEndpointAbuse(Rule):
    """One distinct endpoint, high volume."""

    id = "single_endpoint_abuse"
    name = "Single Endpoint Abuse"
    severity = "medium"

    def trigger(self, events):
        events = with_endpoint(events)
        if len(events) <= self.settings.single_endpoint_threshold:
            return False
        return len({e.endpoint for e in events}) == 1

    def evidence(self, events):
        events = with_endpoint(events)
        endpoints = {e.endpoint for e in events}
        return {
            "request_count": len(events),
            "endpoint": next(iter(endpoints)) if len(endpoints) == 1 else None,
            "distinct_endpoints": len(endpoints),
        }
