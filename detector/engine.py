"""Abuse pattern analyzer — evaluates a subject's recent requests against all rules.

Pure business logic over the store, no Kafka dependency.  The sweep service
calls sweep() on a schedule; operators call analyze()/check() from the CLI.

For one subject:
  1. Load   — its requests in the analysis window (oldest first)
  2. Match  — every rule decides independently; findings are non-exclusive
              (the baseline rule also reads hourly history from the store)
  3. Score  — min(100, Σ weight × severity factor) over the findings
  4. Act    — score >= action_threshold blocks the subject (source "abuse")
              and raises a warning ``abuse_detected`` alert with evidence
"""

from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, Optional

import structlog

from admission.lifecycle import LifecycleManager
from alerts.manager import AlertManager
from detector.rules import Rule, build_rules
from detector.sliding_window import within_drift
from shield.clock import system_clock
from shield.config import AbuseSettings
from shield.errors import PolicyConflict
from shield.models import AlertLevel, Membership
from shield.store import EventStore
from shield.subjects import API_KEY_PREFIX, normalize_subject

logger = structlog.get_logger()

COMPONENT = "security"
MAX_SCORE = 100.0


@dataclass
class Finding:
    pattern: str
    severity: str
    score: float
    evidence: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"pattern": self.pattern, "severity": self.severity,
                "score": self.score, "evidence": self.evidence}


@dataclass
class AnalysisResult:
    subject: str
    window_seconds: float
    request_count: int
    findings: list = field(default_factory=list)
    score: float = 0.0
    actionable: bool = False
    blocked: bool = False
    alert_id: Optional[str] = None

    @property
    def patterns(self) -> list[str]:
        return [f.pattern for f in self.findings]

    def to_dict(self) -> dict:
        return {
            "subject": self.subject,
            "window_seconds": self.window_seconds,
            "request_count": self.request_count,
            "score": self.score,
            "actionable": self.actionable,
            "blocked": self.blocked,
            "alert_id": self.alert_id,
            "findings": [f.to_dict() for f in self.findings],
        }


class AbuseAnalyzer:

    def __init__(self, store: EventStore, lifecycle: LifecycleManager,
                 alerts: Optional[AlertManager] = None,
                 settings: Optional[AbuseSettings] = None,
                 clock: Callable[[], float] = system_clock,
                 rules: Optional[list[Rule]] = None):
        self.store = store
        self.lifecycle = lifecycle
        self.alerts = alerts
        self.settings = settings or AbuseSettings()
        self.clock = clock
        self.rules = rules or build_rules(self.settings)
        self._analyzed = 0
        self._actions = 0
        self._findings: Counter = Counter()

    def analyze(self, subject: str, window: Optional[float] = None) -> AnalysisResult:
        """Evaluate *subject* without acting on the result."""
        subject = normalize_subject(subject)
        window = window or self.settings.analysis_window_seconds
        now = self.clock()
        events = self._events(subject, now - window, now)

        findings = []
        for rule in self.rules:
            evidence = rule.evaluate(events, self.store, subject, now)
            if evidence is not None:
                findings.append(Finding(rule.id, rule.severity, rule.score, evidence))

        score = min(MAX_SCORE, round(sum(f.score for f in findings), 2))
        self._analyzed += 1
        self._findings.update(f.pattern for f in findings)
        return AnalysisResult(subject, window, len(events), findings, score,
                              actionable=score >= self.settings.action_threshold)

    def check(self, subject: str) -> bool:
        """Analyze and act; True if the subject is abusive."""
        result = self.analyze(subject)
        if result.actionable and self.lifecycle.status(result.subject) == Membership.NONE:
            self._respond(result)
        return result.actionable

    def sweep(self) -> list[AnalysisResult]:
        """Analyze every recently active IP; returns the results with findings."""
        if not self.settings.enabled:
            return []
        since = self.clock() - self.settings.analysis_window_seconds
        results = []
        for ip in self.store.active_ips(since):
            if self.lifecycle.status(ip) != Membership.NONE:
                continue
            result = self.analyze(ip)
            if result.actionable:
                self._respond(result)
            if result.findings:
                results.append(result)
        return results

    def stats(self) -> dict:
        now = self.clock()
        blocked = [
            r for r in self.lifecycle.list_records(Membership.TEMP_BLOCKED)
            if r.source == "abuse" and r.is_active_block(now)
        ]
        return {
            "subjects_analyzed": self._analyzed,
            "actions_taken": self._actions,
            "findings_by_pattern": dict(self._findings),
            "active_abuse_blocks": len(blocked),
            "action_threshold": self.settings.action_threshold,
        }

    def patterns(self) -> list[dict]:
        return [rule.describe() for rule in self.rules]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _events(self, subject, since, now):
        if subject.startswith(API_KEY_PREFIX):
            events = self.store.query_events(identifier=subject, since=since)
        else:
            events = self.store.query_events(ip=subject, since=since)
        return sorted(within_drift(events, now), key=lambda e: e.timestamp)

    def _respond(self, result: AnalysisResult) -> AnalysisResult:
        reason = f"Abuse detected (score {result.score:g}: {', '.join(result.patterns)})"
        try:
            record = self.lifecycle.block(result.subject, reason, source="abuse")
        except PolicyConflict:
            logger.info("abuse_block_skipped", subject=result.subject, reason="whitelisted")
            return result
        result.blocked = record.is_active_block(self.clock())
        self._actions += 1

        if self.alerts is not None:
            alert = self.alerts.create(
                COMPONENT, AlertLevel.WARNING, "abuse_detected",
                f"Abuse pattern detected for {result.subject}",
                metadata={
                    "subject": result.subject,
                    "score": result.score,
                    "patterns": result.patterns,
                    "evidence": {f.pattern: f.evidence for f in result.findings},
                    "membership": record.membership.value,
                    "violation_count": record.violation_count,
                },
            )
            result.alert_id = alert.id
        logger.warning("abuse_detected", subject=result.subject, score=result.score,
                       patterns=result.patterns)
        return result
