"""Behavioral diversity — one source that looks like many clients.

Crawlers walk the whole API surface (many distinct endpoints) and
bot farms behind a NAT or proxy rotate user agents.  Both rules are weak
signals on their own (severity low) and mostly matter in combination.
"""

from detector.rules import Rule


class HighEndpointDiversity(Rule):
    """More distinct endpoints than an application client touches."""

    id = "high_endpoint_diversity"
    name = "High Endpoint Diversity"
    severity = "low"

    def trigger(self, events):
        endpoints = {e.endpoint for e in events if e.endpoint}
        return len(endpoints) > self.settings.endpoint_diversity_threshold

    def evidence(self, events):
        return {"distinct_endpoints": len({e.endpoint for e in events if e.endpoint})}


class HighUserAgentDiversity(Rule):
    """Many distinct user agents from one subject."""

    id = "high_user_agent_diversity"
    name = "High User-Agent Diversity"
    severity = "low"

    def trigger(self, events):
        agents = {e.user_agent for e in events if e.user_agent}
        return len(agents) > self.settings.user_agent_diversity_threshold

    def evidence(self, events):
        return {"distinct_user_agents": len({e.user_agent for e in events if e.user_agent})}
