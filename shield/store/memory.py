"""In-process store.

Used by tests, replay tooling and single-instance deployments.  One
re-entrant lock guards the data; ``serialized()`` maps each key onto a
fixed set of re-entrant lock stripes, so memory stays flat however many
identifiers pass through.  Lock acquisition is bounded by ``timeout`` and
surfaces StoreUnavailable, matching the contract of the SQL store.
"""

import bisect
import threading
from collections import defaultdict
from contextlib import contextmanager

from shield.errors import ConcurrencyConflict, StoreUnavailable
from shield.models import (
    Alert, AlertFilter, AlertLevel, AlertStatus, IdentityRecord, Membership,
    RequestEvent,
)
from shield.store.base import (
    ALERTS, EVENTS, IDENTITY_RECORDS, EventStore, IdentifierStats, hour_start,
)

LOCK_STRIPES = 64


class InMemoryEventStore(EventStore):

    def __init__(self, timeout: float = 2.0, stripes: int = LOCK_STRIPES):
        self.timeout = timeout
        self._lock = threading.RLock()
        self._key_locks = [threading.RLock() for _ in range(stripes)]
        self._next_id = 1
        self._events: dict[int, RequestEvent] = {}
        # identifier -> sorted (timestamp, id) of its admitted events
        self._by_identifier: dict[str, list[tuple[float, int]]] = {}
        self._records: dict[str, IdentityRecord] = {}
        self._alerts: dict[str, Alert] = {}

    @contextmanager
    def _guard(self):
        if not self._lock.acquire(timeout=self.timeout):
            raise StoreUnavailable("store lock timed out", timeout=self.timeout)
        try:
            yield
        finally:
            self._lock.release()

    @contextmanager
    def serialized(self, key):
        lock = self._key_locks[hash(key) % len(self._key_locks)]
        if not lock.acquire(timeout=self.timeout):
            raise StoreUnavailable("serialization lock timed out", key=key)
        try:
            yield
        finally:
            lock.release()

    # ------------------------------------------------------------------
    # Request events
    # ------------------------------------------------------------------

    def insert_event(self, event):
        with self._guard():
            index = self._by_identifier.get(event.identifier, [])
            ts = event.timestamp
            if index and ts < index[-1][0]:
                ts = index[-1][0]
            stored = RequestEvent(**{**event.to_dict(), "id": self._next_id, "timestamp": ts})
            self._next_id += 1
            self._events[stored.id] = stored
            if stored.admitted:
                self._by_identifier.setdefault(stored.identifier, index).append((ts, stored.id))
            return stored

    def mark_denied(self, event_id):
        with self._guard():
            event = self._events.get(event_id)
            if event is None or not event.admitted:
                return
            self._events[event_id] = RequestEvent(**{**event.to_dict(), "admitted": False})
            self._unindex(event)

    def _unindex(self, event):
        index = self._by_identifier.get(event.identifier)
        if index is None:
            return
        position = bisect.bisect_left(index, (event.timestamp, event.id))
        if position < len(index) and index[position] == (event.timestamp, event.id):
            del index[position]
        if not index:
            del self._by_identifier[event.identifier]

    def _delete(self, event_id):
        event = self._events.pop(event_id)
        if event.admitted:
            self._unindex(event)

    def count_events(self, identifier, since, endpoint=None):
        with self._guard():
            index = self._by_identifier.get(identifier, [])
            start = bisect.bisect_left(index, (since, 0))
            if endpoint is None:
                return len(index) - start
            return sum(1 for _, eid in index[start:]
                       if self._events[eid].endpoint == endpoint)

    def oldest_event_time(self, identifier, since):
        with self._guard():
            index = self._by_identifier.get(identifier, [])
            start = bisect.bisect_left(index, (since, 0))
            return index[start][0] if start < len(index) else None

    def query_events(self, ip=None, identifier=None, since=None, until=None):
        with self._guard():
            return [e for _, e in sorted(self._events.items())
                    if _event_matches(e, ip, identifier, since, until)]

    def hourly_counts(self, since, ip=None, identifier=None):
        with self._guard():
            counts: dict[float, int] = defaultdict(int)
            for e in self._events.values():
                if _event_matches(e, ip, identifier, since, None):
                    counts[hour_start(e.timestamp)] += 1
            return dict(sorted(counts.items()))

    def active_ips(self, since):
        with self._guard():
            return sorted({e.ip for e in self._events.values() if e.timestamp >= since})

    def delete_events(self, ip, endpoint=None):
        with self._guard():
            doomed = [
                eid for eid, e in self._events.items()
                if e.ip == ip and (endpoint is None or e.endpoint == endpoint)
            ]
            for eid in doomed:
                self._delete(eid)
            return len(doomed)

    def event_stats(self, since, ip=None, endpoint=None, limit=20):
        with self._guard():
            grouped: dict[str, list[RequestEvent]] = defaultdict(list)
            for e in self._events.values():
                if e.timestamp < since:
                    continue
                if ip is not None and e.ip != ip:
                    continue
                if endpoint is not None and e.endpoint != endpoint:
                    continue
                grouped[e.identifier].append(e)
            stats = [
                IdentifierStats(
                    identifier=identifier,
                    ip=events[0].ip,
                    request_count=len(events),
                    first_request=min(e.timestamp for e in events),
                    last_request=max(e.timestamp for e in events),
                    denied_count=sum(1 for e in events if not e.admitted),
                )
                for identifier, events in grouped.items()
            ]
            stats.sort(key=lambda s: (-s.request_count, s.identifier))
            return stats[:limit]

    # ------------------------------------------------------------------
    # Identity records
    # ------------------------------------------------------------------

    def get_identity_record(self, subject):
        with self._guard():
            record = self._records.get(subject)
            return record.copy() if record else None

    def upsert_identity_record(self, record, expected_version):
        with self._guard():
            current = self._records.get(record.subject)
            current_version = current.version if current else None
            if current_version != expected_version:
                raise ConcurrencyConflict(
                    "identity record changed concurrently",
                    subject=record.subject, expected=expected_version,
                    actual=current_version,
                )
            stored = record.copy(version=(current_version or 0) + 1)
            self._records[record.subject] = stored
            return stored.copy()

    def list_identity_records(self, membership=None):
        with self._guard():
            return [
                r.copy() for _, r in sorted(self._records.items())
                if membership is None or r.membership == membership
            ]

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    def insert_alert(self, alert):
        with self._guard():
            stored = alert.copy(version=1)
            self._alerts[alert.id] = stored
            return stored.copy()

    def get_alert(self, alert_id):
        with self._guard():
            alert = self._alerts.get(alert_id)
            return alert.copy() if alert else None

    def find_active_alert(self, component, type, level, since):
        with self._guard():
            candidates = [
                a for a in self._alerts.values()
                if a.status == AlertStatus.ACTIVE
                and a.component == component and a.type == type
                and a.level == AlertLevel(level) and a.created_at >= since
            ]
            if not candidates:
                return None
            return max(candidates, key=lambda a: a.created_at).copy()

    def update_alert(self, alert, expected_version):
        with self._guard():
            current = self._alerts.get(alert.id)
            if current is None or current.version != expected_version:
                raise ConcurrencyConflict(
                    "alert changed concurrently", alert_id=alert.id,
                    expected=expected_version,
                    actual=current.version if current else None,
                )
            stored = alert.copy(version=expected_version + 1)
            self._alerts[alert.id] = stored
            return stored.copy()

    def query_alerts(self, flt):
        with self._guard():
            out = [a.copy() for a in self._alerts.values() if _matches(a, flt)]
        out.sort(key=lambda a: (a.created_at, a.id), reverse=True)
        return out[:flt.limit] if flt.limit else out

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    def purge_expired(self, table, before):
        with self._guard():
            if table == EVENTS:
                doomed = [eid for eid, e in self._events.items() if e.timestamp < before]
                for eid in doomed:
                    self._delete(eid)
                return len(doomed)
            if table == ALERTS:
                doomed = [
                    aid for aid, a in self._alerts.items()
                    if a.status == AlertStatus.RESOLVED
                    and a.resolved_at is not None and a.resolved_at < before
                ]
                for aid in doomed:
                    del self._alerts[aid]
                return len(doomed)
            if table == IDENTITY_RECORDS:
                doomed = [
                    s for s, r in self._records.items()
                    if r.membership == Membership.NONE and r.violation_count == 0
                    and r.updated_at < before
                ]
                for s in doomed:
                    del self._records[s]
                return len(doomed)
            raise ValueError(f"Unknown table: {table}")


def _event_matches(event, ip, identifier, since, until) -> bool:
    if ip is not None and event.ip != ip:
        return False
    if identifier is not None and event.identifier != identifier:
        return False
    if since is not None and event.timestamp < since:
        return False
    if until is not None and event.timestamp > until:
        return False
    return True


def _matches(alert: Alert, flt: AlertFilter) -> bool:
    if flt.component is not None and alert.component != flt.component:
        return False
    if flt.level is not None and alert.level != flt.level:
        return False
    if flt.type is not None and alert.type != flt.type:
        return False
    if flt.status is not None and alert.status != flt.status:
        return False
    if flt.since is not None and alert.created_at < flt.since:
        return False
    if flt.until is not None and alert.created_at > flt.until:
        return False
    return True
