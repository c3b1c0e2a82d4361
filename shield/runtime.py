"""Wire the engine components from one Settings object.

The gateway, the sweep service and the CLI all need the same graph:
one store shared by the limiter, lifecycle manager, detectors and alert
manager, all reading the same clock.
"""

from dataclasses import dataclass
from typing import Callable, Optional

from admission.gate import AdmissionGate
from admission.lifecycle import LifecycleManager
from admission.limiter import RateLimiter
from alerts.manager import AlertManager
from alerts.notify import Notifier
from detector.engine import AbuseAnalyzer
from detector.flood import FloodDetector
from detector.geo import GeoFilter
from shield.clock import system_clock
from shield.config import Settings
from shield.store import EventStore, open_store
from shield.store.base import EVENTS


@dataclass
class Engine:
    settings: Settings
    store: EventStore
    limiter: RateLimiter
    lifecycle: LifecycleManager
    gate: AdmissionGate
    alerts: AlertManager
    flood: FloodDetector
    abuse: AbuseAnalyzer
    clock: Callable[[], float]

    def purge_events(self) -> int:
        """Drop request events past the retention period."""
        days = self.settings.store.event_retention_days
        return self.store.purge_expired(EVENTS, self.clock() - days * 86400)

    def close(self) -> None:
        self.store.close()


def build_engine(settings: Settings, store: Optional[EventStore] = None,
                 notifier: Optional[Notifier] = None,
                 clock: Callable[[], float] = system_clock) -> Engine:
    if store is None:
        store = open_store(settings.store.url, settings.store.timeout_seconds)
    lifecycle = LifecycleManager(store, settings.lifecycle, clock)
    limiter = RateLimiter(store, settings.rate_limit, clock)
    geo = GeoFilter(settings.ddos) if settings.ddos.geo_filtering_enabled else None
    alerts = AlertManager.from_settings(store, settings, notifier=notifier, clock=clock)
    return Engine(
        settings=settings,
        store=store,
        limiter=limiter,
        lifecycle=lifecycle,
        gate=AdmissionGate(limiter, lifecycle, geo),
        alerts=alerts,
        flood=FloodDetector(store, lifecycle, alerts, settings.ddos, clock),
        abuse=AbuseAnalyzer(store, lifecycle, alerts, settings.abuse, clock),
        clock=clock,
    )
