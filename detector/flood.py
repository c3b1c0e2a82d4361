"""Flood / DDoS detector.

Per-subject state:

    Monitoring ──(threshold crossed)──► Detected ──► Blocked
        ▲                                              │
        └───────────(block expires / unblock)──────────┘

A sweep looks at every IP seen in the detection window (60 s), replays its
requests through event-time sliding windows and measures two peaks:

  requests_per_second   most requests inside any 1-second span
  concurrent_estimate   most requests inside any concurrency_window span

Crossing either threshold blocks the IP through the lifecycle manager
(source "ddos", so the violation ladder applies to repeat floods) and
raises a critical ``ddos_detected`` alert carrying the measurements.

Separately, the number of distinct IPs active in the concurrency window is
a global signal: too many at once raises a warning
``ddos_high_concurrency`` alert with no subject to block.
"""

import enum
from dataclasses import dataclass, field
from typing import Callable, Optional

import structlog

from admission.lifecycle import LifecycleManager
from alerts.manager import AlertManager
from detector.sliding_window import peak_count, within_drift
from shield.clock import system_clock
from shield.config import DDoSSettings
from shield.errors import PolicyConflict
from shield.models import AlertLevel, ListType, Membership
from shield.store import EventStore
from shield.subjects import normalize_subject

logger = structlog.get_logger()

COMPONENT = "security"


class FloodState(str, enum.Enum):
    MONITORING = "monitoring"
    DETECTED = "detected"
    BLOCKED = "blocked"


@dataclass
class Detection:
    subject: str
    requests_per_second: int
    concurrent_estimate: int
    request_count: int
    reasons: list = field(default_factory=list)
    blocked: bool = False
    expires_at: Optional[float] = None
    alert_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "subject": self.subject,
            "requests_per_second": self.requests_per_second,
            "concurrent_estimate": self.concurrent_estimate,
            "request_count": self.request_count,
            "reasons": self.reasons,
            "blocked": self.blocked,
            "expires_at": self.expires_at,
            "alert_id": self.alert_id,
        }


class FloodDetector:

    def __init__(self, store: EventStore, lifecycle: LifecycleManager,
                 alerts: Optional[AlertManager] = None,
                 settings: Optional[DDoSSettings] = None,
                 clock: Callable[[], float] = system_clock):
        self.store = store
        self.lifecycle = lifecycle
        self.alerts = alerts
        self.settings = settings or DDoSSettings()
        self.clock = clock
        self._sweeps = 0
        self._detections = 0
        self._last_sweep: Optional[float] = None

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    def sweep(self, window: Optional[float] = None) -> list[Detection]:
        if not self.settings.enabled:
            return []
        now = self.clock()
        window = window or self.settings.detection_window_seconds
        detections = []

        for ip in self.store.active_ips(now - window):
            membership = self.lifecycle.status(ip)
            if membership != Membership.NONE:
                continue
            detection = self._measure(ip, now, window)
            if detection.reasons:
                detections.append(self._respond(detection))

        self._check_global_concurrency(now)
        self._sweeps += 1
        self._detections += len(detections)
        self._last_sweep = now
        if detections:
            logger.warning("ddos_sweep_detections", count=len(detections),
                           subjects=[d.subject for d in detections])
        return detections

    def check(self, subject: str, block: bool = False) -> bool:
        """Is *subject* flooding right now?  Optionally act on it like a sweep would."""
        subject = normalize_subject(subject)
        detection = self._measure(subject, self.clock(), self.settings.detection_window_seconds)
        if not detection.reasons:
            return False
        if block and self.lifecycle.status(subject) == Membership.NONE:
            self._respond(detection)
        return True

    # ------------------------------------------------------------------
    # Manual control
    # ------------------------------------------------------------------

    def block(self, subject: str, reason: str, actor: Optional[str] = None):
        return self.lifecycle.block(subject, reason,
                                    duration_minutes=self.settings.auto_block_duration_minutes,
                                    source="ddos", actor=actor)

    def unblock(self, subject: str) -> bool:
        return self.lifecycle.remove(subject, ListType.TEMP_BLOCK)

    def state(self, subject: str) -> FloodState:
        subject = normalize_subject(subject)
        membership = self.lifecycle.status(subject)
        if membership in (Membership.TEMP_BLOCKED, Membership.BLACKLISTED):
            return FloodState.BLOCKED
        detection = self._measure(subject, self.clock(), self.settings.detection_window_seconds)
        return FloodState.DETECTED if detection.reasons else FloodState.MONITORING

    def stats(self) -> dict:
        now = self.clock()
        blocked = [
            r for r in self.lifecycle.list_records(Membership.TEMP_BLOCKED)
            if r.source == "ddos" and r.is_active_block(now)
        ]
        return {
            "sweeps": self._sweeps,
            "detections": self._detections,
            "last_sweep": self._last_sweep,
            "active_ddos_blocks": len(blocked),
            "active_ips": len(self.store.active_ips(now - self.settings.detection_window_seconds)),
            "requests_per_second_threshold": self.settings.requests_per_second_threshold,
            "concurrent_threshold": self.settings.concurrent_threshold,
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _measure(self, ip: str, now: float, window: float) -> Detection:
        events = within_drift(self.store.query_events(ip=ip, since=now - window), now)
        timestamps = [e.timestamp for e in events]
        rps = peak_count(timestamps, 1.0)
        concurrent = peak_count(timestamps, self.settings.concurrency_window_seconds)

        reasons = []
        if rps >= self.settings.requests_per_second_threshold:
            reasons.append("requests_per_second")
        if concurrent >= self.settings.concurrent_threshold:
            reasons.append("concurrent_estimate")
        return Detection(ip, rps, concurrent, len(events), reasons)

    def _respond(self, detection: Detection) -> Detection:
        reason = (f"DDoS attack detected ({detection.requests_per_second} req/s, "
                  f"threshold {self.settings.requests_per_second_threshold})")
        try:
            record = self.block(detection.subject, reason)
        except PolicyConflict:
            # Whitelisted between the membership check and the block.
            logger.info("ddos_block_skipped", subject=detection.subject, reason="whitelisted")
            return detection
        detection.blocked = record.is_active_block(self.clock())
        detection.expires_at = record.expires_at

        if self.alerts is not None:
            alert = self.alerts.create(
                COMPONENT, AlertLevel.CRITICAL, "ddos_detected",
                f"DDoS attack detected from {detection.subject}",
                metadata={**detection.to_dict(), "membership": record.membership.value,
                          "violation_count": record.violation_count},
            )
            detection.alert_id = alert.id
        logger.warning("ddos_detected", subject=detection.subject,
                       requests_per_second=detection.requests_per_second,
                       concurrent_estimate=detection.concurrent_estimate,
                       expires_at=detection.expires_at)
        return detection

    def _check_global_concurrency(self, now: float) -> int:
        distinct = len(self.store.active_ips(now - self.settings.concurrency_window_seconds))
        if distinct >= self.settings.concurrent_threshold and self.alerts is not None:
            self.alerts.create(
                COMPONENT, AlertLevel.WARNING, "ddos_high_concurrency",
                f"High concurrency: {distinct} distinct IPs in "
                f"{self.settings.concurrency_window_seconds}s",
                metadata={"distinct_ips": distinct,
                          "threshold": self.settings.concurrent_threshold},
            )
            logger.warning("ddos_high_concurrency", distinct_ips=distinct)
        return distinct
