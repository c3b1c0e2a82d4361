"""Alert lifecycle — create, deduplicate, acknowledge, resolve, escalate.

    ACTIVE ──acknowledge──► ACKNOWLEDGED ──resolve──► RESOLVED
       └──────────────────resolve─────────────────────┘

Creating an alert while an ACTIVE one with the same (component, type,
level) exists inside the dedup window does not open a second alert: the
existing one's ``occurrence_count`` goes up and ``updated_at`` is
refreshed.  Creation runs inside the store's critical section for that
dedup key so two detectors racing on the same condition still end up with
one alert.  Every other change is a version compare-and-swap, retried a
bounded number of times.

Resolved alerts are kept for ``retention_days`` and then purged by
cleanup().
"""

import uuid
from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, Optional

import structlog

from alerts.escalation import Escalated, EscalationPolicy, OnCall
from alerts.notify import NotificationError, Notifier, render
from alerts.routing import Router, RoutingRule
from shield.clock import system_clock
from shield.config import AlertSettings, Settings
from shield.errors import ConcurrencyConflict, NotFound, PolicyConflict
from shield.models import Alert, AlertFilter, AlertLevel, AlertStatus
from shield.store import EventStore
from shield.store.base import ALERTS

logger = structlog.get_logger()

_MAX_RETRIES = 5


@dataclass
class AlertGroup:
    """Active alerts sharing (component, type) inside the aggregation window."""

    component: str
    type: str
    level: AlertLevel
    alert_ids: list = field(default_factory=list)
    occurrences: int = 0
    first_seen: float = 0.0
    last_seen: float = 0.0
    levels: dict = field(default_factory=dict)

    @property
    def count(self) -> int:
        return len(self.alert_ids)

    def to_dict(self) -> dict:
        return {
            "component": self.component,
            "type": self.type,
            "level": self.level.value,
            "count": self.count,
            "occurrences": self.occurrences,
            "alert_ids": self.alert_ids,
            "levels": self.levels,
            "first_seen": self.first_seen,
            "last_seen": self.last_seen,
        }


class AlertManager:

    def __init__(self, store: EventStore, settings: Optional[AlertSettings] = None,
                 router: Optional[Router] = None, policy: Optional[EscalationPolicy] = None,
                 notifier: Optional[Notifier] = None,
                 clock: Callable[[], float] = system_clock):
        self.store = store
        self.settings = settings or AlertSettings()
        self.router = router or Router([], self.settings.default_recipients)
        self.policy = policy or EscalationPolicy()
        self.notifier = notifier
        self.clock = clock

    @classmethod
    def from_settings(cls, store: EventStore, settings: Settings,
                      notifier: Optional[Notifier] = None,
                      clock: Callable[[], float] = system_clock) -> "AlertManager":
        return cls(
            store, settings.alerts,
            router=Router.from_settings(settings.routing, settings.alerts),
            policy=EscalationPolicy(settings.escalation),
            notifier=notifier, clock=clock,
        )

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create(self, component: str, level: AlertLevel | str, type: str, message: str,
               metadata: Optional[dict] = None) -> Alert:
        if not component or not type:
            raise ValueError("component and type are required")
        level = AlertLevel(level)
        metadata = dict(metadata or {})
        key = f"alert:{component}:{type}:{level.value}"

        for attempt in range(1, _MAX_RETRIES + 1):
            with self.store.serialized(key):
                now = self.clock()
                since = now - self.settings.dedup_window_minutes * 60
                existing = self.store.find_active_alert(component, type, level, since)
                if existing is None:
                    alert = self.store.insert_alert(Alert(
                        id=uuid.uuid4().hex, component=component, level=level,
                        type=type, message=message, created_at=now, updated_at=now,
                        metadata=metadata,
                    ))
                    break
                merged = {**existing.metadata, **metadata}
                try:
                    alert = self.store.update_alert(
                        existing.copy(occurrence_count=existing.occurrence_count + 1,
                                      updated_at=now, message=message, metadata=merged),
                        existing.version,
                    )
                except ConcurrencyConflict:
                    logger.info("alert_cas_retry", key=key, attempt=attempt)
                    continue
                logger.info("alert_deduplicated", alert_id=alert.id, type=type,
                            occurrences=alert.occurrence_count)
                return alert
        else:
            raise ConcurrencyConflict("alert dedup kept losing races", key=key,
                                      attempts=_MAX_RETRIES)

        logger.warning("alert_created", alert_id=alert.id, component=component,
                       level=level.value, type=type)
        self._dispatch(alert, self.route(alert))
        return alert

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def acknowledge(self, alert_id: str, actor: str) -> Alert:
        def change(alert):
            if alert.status == AlertStatus.RESOLVED:
                raise PolicyConflict("alert is already resolved", alert_id=alert_id,
                                     operation="acknowledge")
            if alert.status == AlertStatus.ACKNOWLEDGED:
                return None
            now = self.clock()
            return alert.copy(status=AlertStatus.ACKNOWLEDGED, acknowledged_by=actor,
                              acknowledged_at=now, updated_at=now)

        alert = self._update(alert_id, change)
        logger.info("alert_acknowledged", alert_id=alert_id, actor=actor)
        return alert

    def resolve(self, alert_id: str, actor: str) -> Alert:
        def change(alert):
            if alert.status == AlertStatus.RESOLVED:
                return None
            now = self.clock()
            return alert.copy(status=AlertStatus.RESOLVED, resolved_by=actor,
                              resolved_at=now, updated_at=now)

        alert = self._update(alert_id, change)
        logger.info("alert_resolved", alert_id=alert_id, actor=actor)
        return alert

    def _update(self, alert_id, change):
        for attempt in range(1, _MAX_RETRIES + 1):
            current = self.show(alert_id)
            updated = change(current)
            if updated is None:
                return current
            try:
                return self.store.update_alert(updated, current.version)
            except ConcurrencyConflict:
                logger.info("alert_cas_retry", alert_id=alert_id, attempt=attempt)
        raise ConcurrencyConflict("alert update kept losing races", alert_id=alert_id,
                                  attempts=_MAX_RETRIES)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def show(self, alert_id: str) -> Alert:
        alert = self.store.get_alert(alert_id)
        if alert is None:
            raise NotFound("no such alert", alert_id=alert_id)
        return alert

    def list_alerts(self, flt: Optional[AlertFilter] = None) -> list[Alert]:
        return self.store.query_alerts(flt or AlertFilter())

    def history(self, days: float = 7, component: Optional[str] = None) -> list[Alert]:
        since = self.clock() - days * 86400
        return self.store.query_alerts(AlertFilter(component=component, since=since))

    def aggregate(self, component: Optional[str] = None,
                  window_minutes: Optional[float] = None) -> list[AlertGroup]:
        if window_minutes is None:
            window_minutes = self.settings.aggregation_window_minutes
        since = self.clock() - window_minutes * 60
        active = self.store.query_alerts(AlertFilter(
            component=component, status=AlertStatus.ACTIVE, since=since,
        ))

        groups: dict[tuple[str, str], AlertGroup] = {}
        for alert in sorted(active, key=lambda a: a.created_at):
            key = (alert.component, alert.type)
            group = groups.get(key)
            if group is None:
                group = groups[key] = AlertGroup(
                    alert.component, alert.type, alert.level,
                    first_seen=alert.created_at,
                )
            group.alert_ids.append(alert.id)
            group.occurrences += alert.occurrence_count
            group.levels[alert.level.value] = group.levels.get(alert.level.value, 0) + 1
            group.last_seen = max(group.last_seen, alert.updated_at)
            if alert.level.rank > group.level.rank:
                group.level = alert.level
        return sorted(groups.values(), key=lambda g: (-g.level.rank, -g.count))

    def stats(self, days: Optional[float] = None) -> dict:
        since = self.clock() - days * 86400 if days is not None else None
        alerts = self.store.query_alerts(AlertFilter(since=since))
        ack_times = [a.acknowledged_at - a.created_at for a in alerts if a.acknowledged_at]
        resolve_times = [a.resolved_at - a.created_at for a in alerts if a.resolved_at]
        return {
            "total": len(alerts),
            "by_status": dict(Counter(a.status.value for a in alerts)),
            "by_level": dict(Counter(a.level.value for a in alerts)),
            "by_component": dict(Counter(a.component for a in alerts)),
            "by_type": dict(Counter(a.type for a in alerts)),
            "occurrences": sum(a.occurrence_count for a in alerts),
            "escalated": sum(1 for a in alerts if a.escalation_level > 0),
            "mean_seconds_to_acknowledge": _mean(ack_times),
            "mean_seconds_to_resolve": _mean(resolve_times),
        }

    def cleanup(self, retention_days: Optional[float] = None) -> int:
        """Purge resolved alerts older than the retention period."""
        if retention_days is None:
            retention_days = self.settings.retention_days
        purged = self.store.purge_expired(ALERTS, self.clock() - retention_days * 86400)
        if purged:
            logger.info("alerts_purged", count=purged, retention_days=retention_days)
        return purged

    # ------------------------------------------------------------------
    # Escalation & routing
    # ------------------------------------------------------------------

    def escalation_sweep(self) -> list[Escalated]:
        now = self.clock()
        escalated = []
        for alert in self.store.query_alerts(AlertFilter(status=AlertStatus.ACTIVE)):
            due = self.policy.due_level(alert, now)
            if due > alert.escalation_level:
                result = self._escalate_to(alert.id, due)
                if result is not None:
                    escalated.append(result)
        return escalated

    def escalate(self, alert_id: str, level: Optional[int] = None) -> Escalated:
        """Manually escalate (to *level*, or one step up)."""
        alert = self.show(alert_id)
        if alert.status == AlertStatus.RESOLVED:
            raise PolicyConflict("alert is already resolved", alert_id=alert_id,
                                 operation="escalate")
        target = alert.escalation_level + 1 if level is None else level
        if not 1 <= target <= self.policy.max_level:
            raise ValueError(f"escalation level must be between 1 and {self.policy.max_level}")
        if target <= alert.escalation_level:
            raise PolicyConflict("alert is already at or above that level",
                                 alert_id=alert_id, level=alert.escalation_level)
        result = self._escalate_to(alert_id, target, manual=True)
        if result is None:
            raise PolicyConflict("alert was escalated concurrently", alert_id=alert_id)
        return result

    def _escalate_to(self, alert_id, level, manual=False):
        before = None

        def change(alert):
            nonlocal before
            before = None
            if alert.escalation_level >= level:
                return None
            if not manual and alert.status != AlertStatus.ACTIVE:
                return None
            before = alert.escalation_level
            return alert.copy(escalation_level=level, last_escalated_at=self.clock(),
                              updated_at=self.clock())

        alert = self._update(alert_id, change)
        if before is None:
            return None

        recipients = self.policy.recipients(level)
        logger.warning("alert_escalated", alert_id=alert_id, from_level=before,
                       to_level=level, recipients=recipients, manual=manual)
        self._dispatch(alert, recipients, escalation_level=level)
        return Escalated(alert_id, before, level, recipients)

    def route(self, alert) -> list[str]:
        return self.router.route(alert)

    def rules(self) -> list[RoutingRule]:
        return self.router.rules()

    def oncall(self) -> OnCall:
        return self.policy.oncall()

    def _dispatch(self, alert, destinations, escalation_level=None):
        if self.notifier is None or not destinations:
            return
        message = render(alert, escalation_level)
        for destination in destinations:
            try:
                self.notifier.notify(destination, message)
            except NotificationError as e:
                logger.error("notification_failed", alert_id=alert.id,
                             destination=destination, error=str(e))


def _mean(values):
    return round(sum(values) / len(values), 3) if values else None
