"""Tests for escalation — delays, multipliers, jumps, acknowledgment halt."""

import pytest

from alerts.escalation import EscalationPolicy
from alerts.manager import AlertManager
from alerts.notify import LogNotifier
from shield.clock import FakeClock
from shield.config import EscalationSettings
from shield.errors import PolicyConflict
from shield.store import InMemoryEventStore


def _settings():
    return EscalationSettings(
        level1_recipients=["l1"], level2_recipients=["l2"], level3_recipients=["l3"],
        oncall_primary="alice", oncall_secondary="bob",
    )


class TestEscalationSweep:
    def setup_method(self):
        self.clock = FakeClock()
        self.notifier = LogNotifier()
        self.alerts = AlertManager(InMemoryEventStore(), policy=EscalationPolicy(_settings()),
                                   notifier=self.notifier, clock=self.clock)

    def test_critical_escalates_after_delay(self):
        alert = self.alerts.create("security", "critical", "ddos_detected", "flood")
        self.clock.advance(14 * 60)
        assert self.alerts.escalation_sweep() == []

        self.clock.advance(60)
        escalated = self.alerts.escalation_sweep()
        assert len(escalated) == 1
        assert (escalated[0].from_level, escalated[0].to_level) == (0, 1)
        assert escalated[0].recipients == ["l1"]
        assert self.alerts.show(alert.id).escalation_level == 1
        assert self.alerts.show(alert.id).last_escalated_at == self.clock.now

    def test_sweep_is_idempotent_at_the_same_level(self):
        self.alerts.create("security", "critical", "ddos_detected", "flood")
        self.clock.advance(16 * 60)
        assert len(self.alerts.escalation_sweep()) == 1
        assert self.alerts.escalation_sweep() == []

    def test_late_sweep_jumps_to_highest_due_level(self):
        alert = self.alerts.create("security", "critical", "ddos_detected", "flood")
        self.clock.advance(2 * 3600)
        escalated = self.alerts.escalation_sweep()
        assert (escalated[0].from_level, escalated[0].to_level) == (0, 3)
        assert self.alerts.show(alert.id).escalation_level == 3

    def test_warning_waits_twice_as_long(self):
        self.alerts.create("security", "warning", "abuse_detected", "abuse")
        self.clock.advance(16 * 60)
        assert self.alerts.escalation_sweep() == []
        self.clock.advance(15 * 60)
        assert self.alerts.escalation_sweep()[0].to_level == 1

    def test_info_never_escalates(self):
        self.alerts.create("api", "info", "deploy", "deployed")
        self.clock.advance(24 * 3600)
        assert self.alerts.escalation_sweep() == []

    def test_acknowledgment_halts_escalation(self):
        alert = self.alerts.create("security", "critical", "ddos_detected", "flood")
        self.clock.advance(16 * 60)
        self.alerts.escalation_sweep()
        self.alerts.acknowledge(alert.id, "alice")
        self.clock.advance(3600)
        assert self.alerts.escalation_sweep() == []
        assert self.alerts.show(alert.id).escalation_level == 1

    def test_escalation_notifies_level_recipients(self):
        self.alerts.create("security", "critical", "ddos_detected", "flood")
        self.clock.advance(31 * 60)
        self.alerts.escalation_sweep()
        last_destination, last_message = self.notifier.sent[-1]
        assert last_destination == "l2"
        assert last_message.startswith("ESCALATION L2")


class TestManualEscalation:
    def setup_method(self):
        self.clock = FakeClock()
        self.alerts = AlertManager(InMemoryEventStore(), policy=EscalationPolicy(_settings()),
                                   clock=self.clock)
        self.alert = self.alerts.create("security", "warning", "abuse_detected", "abuse")

    def test_one_step_up(self):
        result = self.alerts.escalate(self.alert.id)
        assert (result.from_level, result.to_level) == (0, 1)

    def test_explicit_level(self):
        assert self.alerts.escalate(self.alert.id, level=3).recipients == ["l3"]

    def test_acknowledged_alert_can_be_escalated_manually(self):
        self.alerts.acknowledge(self.alert.id, "alice")
        assert self.alerts.escalate(self.alert.id).to_level == 1

    def test_cannot_escalate_down(self):
        self.alerts.escalate(self.alert.id, level=2)
        with pytest.raises(PolicyConflict):
            self.alerts.escalate(self.alert.id, level=1)

    def test_level_out_of_range(self):
        with pytest.raises(ValueError):
            self.alerts.escalate(self.alert.id, level=4)

    def test_resolved_alert(self):
        self.alerts.resolve(self.alert.id, "alice")
        with pytest.raises(PolicyConflict):
            self.alerts.escalate(self.alert.id)


class TestPolicy:
    def test_rules_show_effective_delays(self):
        rules = EscalationPolicy(_settings()).rules()
        assert [r["level"] for r in rules] == [1, 2, 3]
        assert rules[0]["effective_minutes"] == {"critical": 15, "warning": 30}

    def test_oncall(self):
        oncall = AlertManager(InMemoryEventStore(),
                              policy=EscalationPolicy(_settings())).oncall()
        assert (oncall.primary, oncall.secondary) == ("alice", "bob")
        assert oncall.rotation_enabled is False
