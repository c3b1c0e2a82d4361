"""Store contract tests, run against the in-memory and SQLite backends."""

import threading

import pytest

from shield.errors import ConcurrencyConflict, StoreUnavailable
from shield.models import (
    Alert, AlertFilter, AlertLevel, AlertStatus, IdentityRecord, Membership, RequestEvent,
)
from shield.store import InMemoryEventStore, open_store
from shield.store.base import ALERTS, EVENTS, IDENTITY_RECORDS

T0 = 1_700_000_000.0


@pytest.fixture(params=["memory://", "sqlite://"])
def store(request):
    s = open_store(request.param)
    yield s
    s.close()


def _event(identifier="203.0.113.1", ts=T0, ip=None, endpoint=None, code=200, admitted=True):
    return RequestEvent(identifier=identifier, ip=ip or identifier.split(":")[0],
                        timestamp=ts, endpoint=endpoint, response_code=code,
                        admitted=admitted)


def _alert(id="a1", created_at=T0, level=AlertLevel.WARNING, type="abuse_detected"):
    return Alert(id=id, component="security", level=level, type=type, message="m",
                 created_at=created_at, updated_at=created_at, metadata={"k": 1})


# ----------------------------------------------------------------------
# Request events
# ----------------------------------------------------------------------

class TestEvents:
    def test_open_store_picks_backend(self):
        assert isinstance(open_store("memory://"), InMemoryEventStore)

    def test_insert_assigns_increasing_ids(self, store):
        a = store.insert_event(_event())
        b = store.insert_event(_event(ts=T0 + 1))
        assert a.id is not None and b.id > a.id

    def test_timestamps_never_go_backwards(self, store):
        store.insert_event(_event(ts=T0 + 10))
        late = store.insert_event(_event(ts=T0))
        assert late.timestamp == T0 + 10

    def test_count_is_inclusive_of_since(self, store):
        for i in range(5):
            store.insert_event(_event(ts=T0 + i))
        assert store.count_events("203.0.113.1", T0 + 2) == 3
        assert store.count_events("203.0.113.9", T0) == 0

    def test_oldest_event_time(self, store):
        for i in range(3):
            store.insert_event(_event(ts=T0 + i))
        assert store.oldest_event_time("203.0.113.1", T0 + 0.5) == T0 + 1
        assert store.oldest_event_time("203.0.113.1", T0 + 5) is None

    def test_denied_events_are_kept_but_not_counted(self, store):
        kept = store.insert_event(_event(ts=T0))
        denied = store.insert_event(_event(ts=T0 + 1))
        store.mark_denied(denied.id)
        store.insert_event(_event(ts=T0 + 2, admitted=False))
        assert store.count_events("203.0.113.1", 0) == 1
        assert store.oldest_event_time("203.0.113.1", T0 + 0.5) is None
        events = store.query_events(ip="203.0.113.1")
        assert [e.admitted for e in events] == [True, False, False]
        assert events[0].id == kept.id
        assert store.active_ips(T0 + 1) == ["203.0.113.1"]

    def test_hourly_counts(self, store):
        hour = T0 - T0 % 3600
        for ts in (hour - 10, hour + 1, hour + 2):
            store.insert_event(_event(ts=ts))
        store.insert_event(_event(identifier="203.0.113.2", ts=hour + 5, admitted=False))
        assert store.hourly_counts(0, ip="203.0.113.1") == {hour - 3600: 1, hour: 2}
        assert store.hourly_counts(hour, identifier="203.0.113.2") == {hour: 1}
        assert store.hourly_counts(hour + 1) == {hour: 3}

    def test_query_by_ip_and_window(self, store):
        store.insert_event(_event(ts=T0))
        store.insert_event(_event(identifier="203.0.113.1:/a", ip="203.0.113.1",
                                  ts=T0 + 5, endpoint="/a"))
        store.insert_event(_event(identifier="203.0.113.2", ts=T0 + 5))
        events = store.query_events(ip="203.0.113.1", since=T0 + 1)
        assert [e.endpoint for e in events] == ["/a"]
        assert len(store.query_events(identifier="203.0.113.1", until=T0)) == 1

    def test_active_ips(self, store):
        store.insert_event(_event(identifier="203.0.113.2", ts=T0))
        store.insert_event(_event(identifier="203.0.113.1", ts=T0 + 10))
        store.insert_event(_event(identifier="203.0.113.1", ts=T0 + 11))
        assert store.active_ips(T0) == ["203.0.113.1", "203.0.113.2"]
        assert store.active_ips(T0 + 5) == ["203.0.113.1"]

    def test_delete_events_by_endpoint(self, store):
        store.insert_event(_event(identifier="203.0.113.1:/a", ip="203.0.113.1", endpoint="/a"))
        store.insert_event(_event(identifier="203.0.113.1:/b", ip="203.0.113.1", endpoint="/b"))
        assert store.delete_events("203.0.113.1", endpoint="/a") == 1
        assert store.delete_events("203.0.113.1") == 1

    def test_event_stats(self, store):
        for i in range(3):
            store.insert_event(_event(ts=T0 + i))
        store.insert_event(_event(ts=T0 + 3, admitted=False))
        store.insert_event(_event(identifier="203.0.113.2", ts=T0))
        stats = store.event_stats(T0)
        assert [(s.identifier, s.request_count, s.denied_count) for s in stats] == [
            ("203.0.113.1", 4, 1), ("203.0.113.2", 1, 0)]
        assert stats[0].first_request == T0
        assert stats[0].last_request == T0 + 3

    def test_insert_and_count(self, store):
        store.insert_event(_event(ts=T0 - 100))
        stored, counts = store.insert_and_count(
            _event(ts=T0), {"minute": T0 - 60, "hour": T0 - 3600})
        assert stored.id is not None
        assert counts == {"minute": 1, "hour": 2}

    def test_serialized_is_reentrant(self, store):
        with store.serialized("203.0.113.1"):
            with store.serialized("203.0.113.1"):
                store.insert_event(_event())
        assert store.count_events("203.0.113.1", 0) == 1


# ----------------------------------------------------------------------
# Identity records
# ----------------------------------------------------------------------

class TestIdentityRecords:
    def _record(self, **changes):
        base = IdentityRecord(subject="203.0.113.1", membership=Membership.TEMP_BLOCKED,
                              reason="flood", created_at=T0, updated_at=T0,
                              expires_at=T0 + 900, violation_count=1, source="ddos")
        return base.copy(**changes)

    def test_insert_then_update_with_cas(self, store):
        created = store.upsert_identity_record(self._record(), None)
        assert created.version == 1
        updated = store.upsert_identity_record(
            created.copy(membership=Membership.NONE, expires_at=None), 1)
        assert updated.version == 2
        assert store.get_identity_record("203.0.113.1").membership == Membership.NONE

    def test_stale_version_conflicts(self, store):
        store.upsert_identity_record(self._record(), None)
        with pytest.raises(ConcurrencyConflict):
            store.upsert_identity_record(self._record(reason="other"), None)
        with pytest.raises(ConcurrencyConflict):
            store.upsert_identity_record(self._record(reason="other"), 7)

    def test_round_trip_fields(self, store):
        store.upsert_identity_record(self._record(created_by="oncall"), None)
        record = store.get_identity_record("203.0.113.1")
        assert record.expires_at == T0 + 900
        assert record.source == "ddos"
        assert record.created_by == "oncall"
        assert store.get_identity_record("203.0.113.9") is None

    def test_list_by_membership(self, store):
        store.upsert_identity_record(self._record(), None)
        store.upsert_identity_record(
            self._record(subject="10.0.0.0/8", membership=Membership.WHITELISTED,
                         expires_at=None), None)
        assert [r.subject for r in store.list_identity_records()] == [
            "10.0.0.0/8", "203.0.113.1"]
        whitelisted = store.list_identity_records(Membership.WHITELISTED)
        assert [r.subject for r in whitelisted] == ["10.0.0.0/8"]


# ----------------------------------------------------------------------
# Alerts
# ----------------------------------------------------------------------

class TestAlerts:
    def test_insert_and_get(self, store):
        store.insert_alert(_alert())
        alert = store.get_alert("a1")
        assert alert.version == 1
        assert alert.level == AlertLevel.WARNING
        assert alert.metadata == {"k": 1}
        assert store.get_alert("missing") is None

    def test_update_with_cas(self, store):
        stored = store.insert_alert(_alert())
        updated = store.update_alert(stored.copy(occurrence_count=2), 1)
        assert updated.version == 2
        with pytest.raises(ConcurrencyConflict):
            store.update_alert(stored.copy(occurrence_count=3), 1)

    def test_find_active_alert(self, store):
        store.insert_alert(_alert(id="old", created_at=T0 - 7200))
        store.insert_alert(_alert(id="new", created_at=T0))
        found = store.find_active_alert("security", "abuse_detected", AlertLevel.WARNING,
                                        T0 - 3600)
        assert found.id == "new"
        assert store.find_active_alert("security", "abuse_detected", AlertLevel.CRITICAL,
                                       T0 - 3600) is None

    def test_query_newest_first_with_filters(self, store):
        store.insert_alert(_alert(id="a1", created_at=T0))
        store.insert_alert(_alert(id="a2", created_at=T0 + 1, level=AlertLevel.CRITICAL,
                                  type="ddos_detected"))
        assert [a.id for a in store.query_alerts(AlertFilter())] == ["a2", "a1"]
        assert [a.id for a in store.query_alerts(AlertFilter(level=AlertLevel.WARNING))] == [
            "a1"]
        assert len(store.query_alerts(AlertFilter(limit=1))) == 1
        assert store.query_alerts(AlertFilter(since=T0 + 0.5))[0].id == "a2"


# ----------------------------------------------------------------------
# Retention
# ----------------------------------------------------------------------

class TestPurge:
    def test_purge_events(self, store):
        store.insert_event(_event(ts=T0))
        store.insert_event(_event(ts=T0 + 100))
        assert store.purge_expired(EVENTS, T0 + 50) == 1
        assert store.count_events("203.0.113.1", 0) == 1

    def test_purge_only_resolved_alerts(self, store):
        resolved = store.insert_alert(_alert(id="done"))
        store.update_alert(resolved.copy(status=AlertStatus.RESOLVED, resolved_at=T0), 1)
        store.insert_alert(_alert(id="open"))
        assert store.purge_expired(ALERTS, T0 + 1) == 1
        assert [a.id for a in store.query_alerts(AlertFilter())] == ["open"]

    def test_purge_keeps_records_with_history(self, store):
        store.upsert_identity_record(IdentityRecord(
            subject="203.0.113.1", membership=Membership.NONE, reason="released",
            created_at=T0, updated_at=T0, violation_count=1), None)
        store.upsert_identity_record(IdentityRecord(
            subject="203.0.113.2", membership=Membership.NONE, reason="unlisted",
            created_at=T0, updated_at=T0), None)
        assert store.purge_expired(IDENTITY_RECORDS, T0 + 1) == 1
        assert store.get_identity_record("203.0.113.1") is not None

    def test_unknown_table(self, store):
        with pytest.raises(ValueError):
            store.purge_expired("sessions", T0)


# ----------------------------------------------------------------------
# In-memory footprint
# ----------------------------------------------------------------------

class TestInMemoryFootprint:
    def test_lock_stripes_do_not_grow(self):
        store = InMemoryEventStore(stripes=4)
        for i in range(200):
            with store.serialized(f"identity:203.0.113.{i}"):
                pass
        assert len(store._key_locks) == 4

    def test_same_key_is_exclusive_across_threads(self):
        store = InMemoryEventStore(timeout=0.05)
        entered = threading.Event()
        release = threading.Event()

        def holder():
            with store.serialized("203.0.113.1"):
                entered.set()
                release.wait(5)

        t = threading.Thread(target=holder)
        t.start()
        try:
            assert entered.wait(5)
            with pytest.raises(StoreUnavailable):
                with store.serialized("203.0.113.1"):
                    pass
        finally:
            release.set()
            t.join()

    def test_empty_indexes_are_dropped(self):
        store = InMemoryEventStore()
        store.insert_event(_event(ts=T0))
        denied = store.insert_event(_event(identifier="203.0.113.2", ts=T0))
        store.mark_denied(denied.id)
        assert list(store._by_identifier) == ["203.0.113.1"]
        store.purge_expired(EVENTS, T0 + 1)
        assert store._by_identifier == {}
