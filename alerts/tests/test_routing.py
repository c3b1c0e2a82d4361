"""Tests for alert routing — specificity order, ties, defaults."""

import pytest

from alerts.routing import Router, RoutingRule
from shield.config import AlertSettings
from shield.models import Alert, AlertLevel


def _alert(component="security", level=AlertLevel.CRITICAL, type="ddos_detected"):
    return Alert(id="a1", component=component, level=level, type=type, message="m",
                 created_at=0.0, updated_at=0.0)


def _rule(component, level, type, *destinations):
    return RoutingRule(component, level, type, tuple(destinations))


class TestSpecificity:
    def test_exact_beats_wildcards_regardless_of_order(self):
        router = Router([
            _rule("*", "*", "*", "catch-all"),
            _rule("security", "*", "*", "security-team"),
            _rule("security", "critical", "ddos_detected", "netops"),
        ], {})
        assert router.route(_alert()) == ["netops"]

    def test_component_and_type_beats_component_and_level(self):
        router = Router([
            _rule("security", "critical", "*", "by-level"),
            _rule("security", "*", "ddos_detected", "by-type"),
        ], {})
        assert router.route(_alert()) == ["by-type"]

    def test_equal_specificity_keeps_configuration_order(self):
        router = Router([
            _rule("security", "*", "*", "first"),
            _rule("security", "*", "*", "second"),
        ], {})
        assert router.route(_alert()) == ["first"]

    def test_rules_are_listed_in_evaluation_order(self):
        router = Router([
            _rule("*", "*", "*", "d"),
            _rule("security", "critical", "*", "c"),
            _rule("security", "critical", "ddos_detected", "a"),
            _rule("security", "*", "ddos_detected", "b"),
        ], {})
        assert [r.destinations[0] for r in router.rules()] == ["a", "b", "c", "d"]


class TestFallback:
    def test_unmatched_alert_uses_level_defaults(self):
        router = Router([_rule("api", "*", "*", "api-team")],
                        {"critical": ["pager"], "warning": ["email"], "info": []})
        assert router.route(_alert()) == ["pager"]
        assert router.route(_alert(level=AlertLevel.WARNING)) == ["email"]
        assert router.route(_alert(level=AlertLevel.INFO)) == []

    def test_from_settings(self):
        routing = [{"component": "security", "level": "*", "type": "abuse_detected",
                    "destinations": ["trust-safety"]}]
        router = Router.from_settings(routing, AlertSettings())
        assert router.route(_alert(level=AlertLevel.WARNING, type="abuse_detected")) == [
            "trust-safety"]
        assert router.route(_alert()) == ["admin@example.com"]

    def test_invalid_level_in_rule(self):
        with pytest.raises(ValueError):
            RoutingRule.from_dict({"component": "x", "level": "urgent", "type": "*",
                                   "destinations": ["d"]})
