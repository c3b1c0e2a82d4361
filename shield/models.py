"""Entities shared across the engine.

Plain dataclasses: the engine owns the decision logic over these, the store
owns their durability.  Nothing here is cached authoritatively between
decisions: every admission re-reads from the store.
"""

import enum
from dataclasses import dataclass, field, replace
from typing import Optional


class Membership(str, enum.Enum):
    NONE = "none"
    WHITELISTED = "whitelisted"
    BLACKLISTED = "blacklisted"
    TEMP_BLOCKED = "temp_blocked"


class ListType(str, enum.Enum):
    """Lists an operator can add a subject to (CLI vocabulary)."""

    WHITELIST = "whitelist"
    BLACKLIST = "blacklist"
    TEMP_BLOCK = "temp_block"

    @property
    def membership(self) -> Membership:
        return {
            ListType.WHITELIST: Membership.WHITELISTED,
            ListType.BLACKLIST: Membership.BLACKLISTED,
            ListType.TEMP_BLOCK: Membership.TEMP_BLOCKED,
        }[self]


class AlertLevel(str, enum.Enum):
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"

    @property
    def rank(self) -> int:
        return {"info": 0, "warning": 1, "critical": 2}[self.value]


class AlertStatus(str, enum.Enum):
    ACTIVE = "active"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"


class DenyReason(str, enum.Enum):
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    BLACKLISTED = "blacklisted"
    TEMP_BLOCKED = "temp_blocked"
    DDOS_BLOCK = "ddos_block"
    GEO_BLOCKED = "geo_blocked"
    # Only produced by a caller applying the fail-closed policy.
    STORE_UNAVAILABLE = "store_unavailable"


# ---------------------------------------------------------------------------
# Request path
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Subjects:
    """Identifiers present on one inbound request."""

    ip: str
    api_key: Optional[str] = None
    endpoint: Optional[str] = None


@dataclass
class RequestEvent:
    identifier: str
    ip: str
    timestamp: float
    api_key: Optional[str] = None
    endpoint: Optional[str] = None
    response_code: Optional[int] = None
    user_agent: Optional[str] = None
    # Denied requests are kept for the detectors but never count toward quota.
    admitted: bool = True
    id: Optional[int] = None  # assigned by the store

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "identifier": self.identifier,
            "ip": self.ip,
            "api_key": self.api_key,
            "endpoint": self.endpoint,
            "timestamp": self.timestamp,
            "response_code": self.response_code,
            "user_agent": self.user_agent,
            "admitted": self.admitted,
        }


@dataclass
class TierInfo:
    """Outcome of one sliding-window tier for one decision."""

    name: str
    window_seconds: int
    limit: int
    count: int

    @property
    def remaining(self) -> int:
        return max(self.limit - self.count, 0)

    @property
    def exceeded(self) -> bool:
        return self.count >= self.limit


@dataclass
class Decision:
    allowed: bool
    identifier: str
    reason: Optional[DenyReason] = None
    retry_after: float = 0.0
    limit_info: dict = field(default_factory=dict)

    @classmethod
    def deny(cls, identifier: str, reason: DenyReason, retry_after: float = 0.0,
             **limit_info) -> "Decision":
        return cls(False, identifier, reason, max(retry_after, 0.0), limit_info)

    @classmethod
    def allow(cls, identifier: str, **limit_info) -> "Decision":
        return cls(True, identifier, None, 0.0, limit_info)

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "identifier": self.identifier,
            "reason": self.reason.value if self.reason else None,
            "retry_after": round(self.retry_after, 3),
            "limit_info": self.limit_info,
        }


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

@dataclass
class IdentityRecord:
    subject: str
    membership: Membership
    reason: str
    created_at: float
    updated_at: float
    expires_at: Optional[float] = None
    violation_count: int = 0
    source: Optional[str] = None      # ddos | abuse | manual
    created_by: Optional[str] = None
    version: int = 0                  # CAS token, bumped by the store

    def is_active_block(self, now: float) -> bool:
        if self.membership == Membership.BLACKLISTED:
            return True
        if self.membership == Membership.TEMP_BLOCKED:
            return self.expires_at is not None and self.expires_at > now
        return False

    def copy(self, **changes) -> "IdentityRecord":
        return replace(self, **changes)

    def to_dict(self) -> dict:
        return {
            "subject": self.subject,
            "membership": self.membership.value,
            "reason": self.reason,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "expires_at": self.expires_at,
            "violation_count": self.violation_count,
            "source": self.source,
            "created_by": self.created_by,
        }


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------

@dataclass
class Alert:
    id: str
    component: str
    level: AlertLevel
    type: str
    message: str
    created_at: float
    updated_at: float
    metadata: dict = field(default_factory=dict)
    status: AlertStatus = AlertStatus.ACTIVE
    escalation_level: int = 0
    occurrence_count: int = 1
    acknowledged_by: Optional[str] = None
    acknowledged_at: Optional[float] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[float] = None
    last_escalated_at: Optional[float] = None
    version: int = 0

    def copy(self, **changes) -> "Alert":
        changes.setdefault("metadata", dict(self.metadata))
        return replace(self, **changes)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "component": self.component,
            "level": self.level.value,
            "type": self.type,
            "message": self.message,
            "metadata": self.metadata,
            "status": self.status.value,
            "escalation_level": self.escalation_level,
            "occurrence_count": self.occurrence_count,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "acknowledged_by": self.acknowledged_by,
            "acknowledged_at": self.acknowledged_at,
            "resolved_by": self.resolved_by,
            "resolved_at": self.resolved_at,
            "last_escalated_at": self.last_escalated_at,
        }


@dataclass(frozen=True)
class AlertFilter:
    component: Optional[str] = None
    level: Optional[AlertLevel] = None
    type: Optional[str] = None
    status: Optional[AlertStatus] = None
    since: Optional[float] = None
    until: Optional[float] = None
    limit: Optional[int] = None
