"""Alert routing — which destinations hear about an alert.

Rules are ``(component, level, type) → destinations`` with ``*`` matching
anything.  More specific rules are tried first:

    security:critical:ddos_detected   (all three concrete)
    security:*:ddos_detected          (component + type)
    security:critical:*               (component + level)
    *:critical:ddos_detected          (level + type)
    ...
    *:*:*

The first rule that matches wins; rules equally specific keep their order
in the configuration file.  An alert no rule matches goes to the default
recipients for its level.
"""

from dataclasses import dataclass

from shield.config import AlertSettings
from shield.models import AlertLevel

WILDCARD = "*"


@dataclass(frozen=True)
class RoutingRule:
    component: str
    level: str
    type: str
    destinations: tuple

    @classmethod
    def from_dict(cls, raw: dict) -> "RoutingRule":
        level = str(raw["level"])
        if level != WILDCARD:
            level = AlertLevel(level).value
        return cls(str(raw["component"]), level, str(raw["type"]),
                   tuple(raw["destinations"]))

    @property
    def pattern(self) -> str:
        return f"{self.component}:{self.level}:{self.type}"

    def matches(self, component: str, level: str, type: str) -> bool:
        return (self.component in (WILDCARD, component)
                and self.level in (WILDCARD, level)
                and self.type in (WILDCARD, type))

    def specificity(self) -> tuple:
        # Fewer wildcards first; among equals, a concrete component beats a
        # concrete type, which beats a concrete level.
        concrete = [self.component != WILDCARD, self.type != WILDCARD,
                    self.level != WILDCARD]
        return (-sum(concrete), *[not c for c in concrete])

    def to_dict(self) -> dict:
        return {"component": self.component, "level": self.level,
                "type": self.type, "destinations": list(self.destinations)}


class Router:

    def __init__(self, rules: list[RoutingRule], default_recipients: dict[str, list]):
        indexed = list(enumerate(rules))
        indexed.sort(key=lambda item: (item[1].specificity(), item[0]))
        self._rules = [rule for _, rule in indexed]
        self.default_recipients = {k: list(v) for k, v in default_recipients.items()}

    @classmethod
    def from_settings(cls, routing: list, alerts: AlertSettings) -> "Router":
        return cls([RoutingRule.from_dict(r) for r in routing], alerts.default_recipients)

    def rules(self) -> list[RoutingRule]:
        """Rules in evaluation order."""
        return list(self._rules)

    def match(self, component: str, level, type: str):
        level = AlertLevel(level).value
        for rule in self._rules:
            if rule.matches(component, level, type):
                return rule
        return None

    def route(self, alert) -> list[str]:
        """Destinations for anything with component / level / type (alerts, groups)."""
        rule = self.match(alert.component, alert.level, alert.type)
        if rule is not None:
            return list(rule.destinations)
        return list(self.default_recipients.get(AlertLevel(alert.level).value, []))
