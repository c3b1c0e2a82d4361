"""Event Store Gateway — the operations the engine needs from durable storage.

The engine owns decision logic; implementations own durability.  Every
implementation must:

  * bound each call by a timeout and raise StoreUnavailable instead of
    hanging the request path;
  * provide ``serialized(key)``: a critical section shared by every engine
    instance using the same store, so insert-then-count on one identifier
    is atomic and per-subject record updates don't interleave;
  * enforce compare-and-swap on ``version`` for identity records and alerts
    (ConcurrencyConflict on mismatch);
  * assign event ids monotonically and never let one identifier's
    timestamps go backwards;
  * keep every request event, admitted or not.  Quota queries
    (count_events, oldest_event_time, insert_and_count) see admitted
    events only; detector queries (query_events, active_ips) see all.

Queries are always parameterized; no implementation builds SQL from strings.
"""

import abc
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional

from shield.models import (
    Alert, AlertFilter, AlertLevel, IdentityRecord, Membership, RequestEvent,
)

# Table names accepted by purge_expired().
EVENTS = "events"
ALERTS = "alerts"
IDENTITY_RECORDS = "identity_records"

HOUR_SECONDS = 3600


def hour_start(timestamp: float) -> float:
    """Start of the UTC hour containing *timestamp*."""
    return timestamp - timestamp % HOUR_SECONDS


@dataclass
class IdentifierStats:
    identifier: str
    ip: str
    request_count: int
    first_request: float
    last_request: float
    denied_count: int = 0


class EventStore(abc.ABC):

    # ------------------------------------------------------------------
    # Coordination
    # ------------------------------------------------------------------

    @abc.abstractmethod
    @contextmanager
    def serialized(self, key: str) -> Iterator[None]:
        """Hold the cross-instance critical section for *key*.  Re-entrant."""

    # ------------------------------------------------------------------
    # Request events
    # ------------------------------------------------------------------

    @abc.abstractmethod
    def insert_event(self, event: RequestEvent) -> RequestEvent:
        """Append *event*; returns it with ``id`` (and clamped timestamp) set."""

    @abc.abstractmethod
    def mark_denied(self, event_id: int) -> None:
        """Flag a stored event as denied so it stops counting toward quota."""

    @abc.abstractmethod
    def count_events(self, identifier: str, since: float,
                     endpoint: Optional[str] = None) -> int:
        """Admitted events for *identifier* with ``timestamp >= since``."""

    @abc.abstractmethod
    def oldest_event_time(self, identifier: str, since: float) -> Optional[float]:
        """Timestamp of the oldest admitted event at or after *since*."""

    @abc.abstractmethod
    def query_events(self, ip: Optional[str] = None,
                     identifier: Optional[str] = None,
                     since: Optional[float] = None,
                     until: Optional[float] = None) -> list[RequestEvent]:
        """All events, denied included, ordered by id."""

    @abc.abstractmethod
    def hourly_counts(self, since: float, ip: Optional[str] = None,
                      identifier: Optional[str] = None) -> dict[float, int]:
        """Events (denied included) per hour since *since*, keyed by hour start.

        Hours without events are absent.
        """

    @abc.abstractmethod
    def active_ips(self, since: float) -> list[str]:
        """Distinct IPs with at least one event since *since*, sorted."""

    @abc.abstractmethod
    def delete_events(self, ip: str, endpoint: Optional[str] = None) -> int:
        ...

    @abc.abstractmethod
    def event_stats(self, since: float, ip: Optional[str] = None,
                    endpoint: Optional[str] = None,
                    limit: int = 20) -> list[IdentifierStats]:
        """Per-identifier request counts since *since*, busiest first."""

    def insert_and_count(self, event: RequestEvent,
                         windows: dict[str, float]) -> tuple[RequestEvent, dict[str, int]]:
        """Atomically insert *event* and count its identifier per window.

        *windows* maps a label to a window start.  The returned counts
        include the inserted event.
        """
        with self.serialized(event.identifier):
            stored = self.insert_event(event)
            counts = {
                name: self.count_events(stored.identifier, since)
                for name, since in windows.items()
            }
        return stored, counts

    # ------------------------------------------------------------------
    # Identity records
    # ------------------------------------------------------------------

    @abc.abstractmethod
    def get_identity_record(self, subject: str) -> Optional[IdentityRecord]:
        ...

    @abc.abstractmethod
    def upsert_identity_record(self, record: IdentityRecord,
                               expected_version: Optional[int]) -> IdentityRecord:
        """Write *record* if the stored version equals *expected_version*.

        ``expected_version=None`` means the record must not exist yet.
        Returns the stored record with its new version.
        """

    @abc.abstractmethod
    def list_identity_records(self, membership: Optional[Membership] = None
                              ) -> list[IdentityRecord]:
        ...

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    @abc.abstractmethod
    def insert_alert(self, alert: Alert) -> Alert:
        ...

    @abc.abstractmethod
    def get_alert(self, alert_id: str) -> Optional[Alert]:
        ...

    @abc.abstractmethod
    def find_active_alert(self, component: str, type: str, level: AlertLevel,
                          since: float) -> Optional[Alert]:
        """Newest active alert for the key created at or after *since*."""

    @abc.abstractmethod
    def update_alert(self, alert: Alert, expected_version: int) -> Alert:
        ...

    @abc.abstractmethod
    def query_alerts(self, flt: AlertFilter) -> list[Alert]:
        """Alerts matching *flt*, newest first."""

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    @abc.abstractmethod
    def purge_expired(self, table: str, before: float) -> int:
        """Delete rows past retention.

        events: ``timestamp < before``; alerts: resolved with
        ``resolved_at < before``; identity_records: membership ``none``
        with no violations and ``updated_at < before``.
        """

    def close(self) -> None:
        pass
