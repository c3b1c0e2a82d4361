"""Admission gate — the single request-path entry point.

Order of evaluation for one inbound request:

  1. Lifecycle precedence over every subject present (API key, then IP):
     any whitelisted subject short-circuits to allow; otherwise any
     blacklisted or actively blocked subject short-circuits to deny.
  2. Geographic gate (optional), before quota is touched.
  3. Rate limiter atomic admit.

Every request admit() sees is recorded, whichever step decides it, so the
flood and abuse detectors see the traffic a blocked or throttled client
keeps sending.  Only admitted requests count toward quota.

StoreUnavailable propagates out of admit()/check(); the gate never turns a
store failure into a decision.  Callers that want a decision anyway go
through ``admit_with_policy`` and name their policy explicitly.
"""

from typing import Optional

import structlog

from admission.lifecycle import LifecycleManager
from admission.limiter import RateLimiter
from detector.geo import GeoFilter
from shield.errors import StoreUnavailable
from shield.models import Decision, DenyReason, Membership, Subjects
from shield.subjects import identifier_for, lifecycle_subjects, validate_subjects

logger = structlog.get_logger()

FAIL_CLOSED = "closed"
FAIL_OPEN = "open"


class AdmissionGate:

    def __init__(self, limiter: RateLimiter, lifecycle: LifecycleManager,
                 geo: Optional[GeoFilter] = None):
        self.limiter = limiter
        self.lifecycle = lifecycle
        self.geo = geo

    def admit(self, subjects: Subjects, response_code: Optional[int] = None,
              user_agent: Optional[str] = None) -> Decision:
        subjects = validate_subjects(subjects)
        early = self._precheck(subjects)
        if early is not None:
            self.limiter.record(subjects, response_code=response_code,
                                user_agent=user_agent, admitted=early.allowed)
            return early
        return self.limiter.admit(subjects, response_code=response_code,
                                  user_agent=user_agent)

    def check(self, subjects: Subjects) -> Decision:
        subjects = validate_subjects(subjects)
        early = self._precheck(subjects)
        if early is not None:
            return early
        return self.limiter.check(subjects)

    def _precheck(self, subjects: Subjects) -> Optional[Decision]:
        _, identifier = identifier_for(subjects)
        now = self.lifecycle.clock()

        resolved = [(s, *self.lifecycle.effective(s)) for s in lifecycle_subjects(subjects)]
        for subject, membership, record in resolved:
            if membership == Membership.WHITELISTED:
                return Decision.allow(identifier, whitelisted=subject)

        for subject, membership, record in resolved:
            if membership == Membership.BLACKLISTED:
                return Decision.deny(identifier, DenyReason.BLACKLISTED,
                                     subject=subject, reason_detail=record.reason)
            if membership == Membership.TEMP_BLOCKED:
                reason = (DenyReason.DDOS_BLOCK if record.source == "ddos"
                          else DenyReason.TEMP_BLOCKED)
                return Decision.deny(identifier, reason, record.expires_at - now,
                                     subject=subject, reason_detail=record.reason)

        if self.geo is not None and self.geo.is_blocked(subjects.ip):
            return Decision.deny(identifier, DenyReason.GEO_BLOCKED,
                                 subject=subjects.ip, country=self.geo.country(subjects.ip))
        return None


def admit_with_policy(gate: AdmissionGate, subjects: Subjects, policy: str,
                      **kwargs) -> Decision:
    """Admit, mapping StoreUnavailable to an explicit fail-open/closed decision."""
    if policy not in (FAIL_CLOSED, FAIL_OPEN):
        raise ValueError(f"Unknown failure policy: {policy}")
    try:
        return gate.admit(subjects, **kwargs)
    except StoreUnavailable as e:
        _, identifier = identifier_for(subjects)
        logger.error("admission_store_unavailable", identifier=identifier,
                     policy=policy, error=str(e))
        if policy == FAIL_OPEN:
            return Decision.allow(identifier, failure_policy=FAIL_OPEN)
        return Decision.deny(identifier, DenyReason.STORE_UNAVAILABLE,
                             failure_policy=FAIL_CLOSED)
