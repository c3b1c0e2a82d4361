"""Escalation policy for unacknowledged alerts.

Three levels, each with a delay and its own recipients.  An alert reaches
level k once ``now - created_at >= delay_k * multiplier(level)``; critical
alerts use the configured delays as-is, warnings wait twice as long, and
info alerts never escalate.  A sweep jumps an alert straight to the highest
level that is due rather than walking the ladder one step per tick, so a
sweep that was delayed (or a service that was down) catches up in one go.

Only ACTIVE alerts escalate: acknowledging an alert stops its clock.
"""

from dataclasses import dataclass, field
from typing import Optional

from shield.config import EscalationSettings
from shield.models import Alert, AlertLevel, AlertStatus


@dataclass(frozen=True)
class EscalationLevel:
    level: int
    delay_minutes: float
    recipients: tuple


@dataclass
class Escalated:
    alert_id: str
    from_level: int
    to_level: int
    recipients: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"alert_id": self.alert_id, "from_level": self.from_level,
                "to_level": self.to_level, "recipients": self.recipients}


@dataclass(frozen=True)
class OnCall:
    primary: str
    secondary: str
    rotation_enabled: bool

    def to_dict(self) -> dict:
        return {"primary": self.primary, "secondary": self.secondary,
                "rotation_enabled": self.rotation_enabled}


class EscalationPolicy:

    def __init__(self, settings: Optional[EscalationSettings] = None):
        self.settings = settings or EscalationSettings()
        s = self.settings
        self.levels = [
            EscalationLevel(1, s.level1_minutes, tuple(s.level1_recipients)),
            EscalationLevel(2, s.level2_minutes, tuple(s.level2_recipients)),
            EscalationLevel(3, s.level3_minutes, tuple(s.level3_recipients)),
        ]
        self.multipliers = {AlertLevel(k): v for k, v in s.level_multipliers.items()}

    @property
    def max_level(self) -> int:
        return self.levels[-1].level

    def delay_seconds(self, alert_level: AlertLevel, level: int) -> Optional[float]:
        """Seconds after creation at which *level* is due, or None if never."""
        multiplier = self.multipliers.get(AlertLevel(alert_level))
        if not multiplier:
            return None
        return self.levels[level - 1].delay_minutes * 60 * multiplier

    def due_level(self, alert: Alert, now: float) -> int:
        if not self.settings.enabled or alert.status != AlertStatus.ACTIVE:
            return alert.escalation_level
        age = now - alert.created_at
        for lvl in reversed(self.levels):
            delay = self.delay_seconds(alert.level, lvl.level)
            if delay is not None and age >= delay:
                return max(lvl.level, alert.escalation_level)
        return alert.escalation_level

    def recipients(self, level: int) -> list[str]:
        if level < 1:
            return []
        return list(self.levels[min(level, self.max_level) - 1].recipients)

    def rules(self) -> list[dict]:
        return [
            {
                "level": lvl.level,
                "delay_minutes": lvl.delay_minutes,
                "recipients": list(lvl.recipients),
                "effective_minutes": {
                    level.value: lvl.delay_minutes * m
                    for level, m in self.multipliers.items() if m
                },
            }
            for lvl in self.levels
        ]

    def oncall(self) -> OnCall:
        s = self.settings
        return OnCall(s.oncall_primary, s.oncall_secondary, s.oncall_rotation_enabled)
