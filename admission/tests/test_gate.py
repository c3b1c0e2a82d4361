"""Tests for the admission gate: lifecycle precedence, geo, failure policy."""

import pytest

from admission.gate import FAIL_CLOSED, FAIL_OPEN, AdmissionGate, admit_with_policy
from admission.lifecycle import LifecycleManager
from admission.limiter import RateLimiter
from detector.geo import GeoFilter
from shield.clock import FakeClock
from shield.config import DDoSSettings, RateLimitSettings
from shield.errors import StoreUnavailable
from shield.models import DenyReason, ListType, Subjects
from shield.store import InMemoryEventStore

IP = "192.0.2.44"
KEY = "tenant-key-00000001"


class _DownStore(InMemoryEventStore):
    def get_identity_record(self, subject):
        raise StoreUnavailable("database is locked")


def _gate(store, clock, geo=None, **limits):
    limiter = RateLimiter(store, RateLimitSettings(**limits), clock=clock)
    return AdmissionGate(limiter, LifecycleManager(store, clock=clock), geo)


class TestLifecyclePrecedence:
    def setup_method(self):
        self.clock = FakeClock()
        self.store = InMemoryEventStore()
        self.gate = _gate(self.store, self.clock, per_ip_per_minute=2, burst_size=1)
        self.lifecycle = self.gate.lifecycle

    def test_whitelisted_ip_skips_rate_limit(self):
        self.lifecycle.add(IP, ListType.WHITELIST, "health checker")
        decisions = [self.gate.admit(Subjects(ip=IP)) for _ in range(5)]
        assert all(d.allowed for d in decisions)
        assert decisions[0].limit_info == {"whitelisted": IP}

    def test_whitelisted_ip_wins_over_blacklisted_key(self):
        self.lifecycle.add(IP, ListType.WHITELIST, "office")
        self.lifecycle.add(f"api_key:{KEY}", ListType.BLACKLIST, "leaked")
        assert self.gate.admit(Subjects(ip=IP, api_key=KEY)).allowed

    def test_blacklisted_ip(self):
        self.lifecycle.add(IP, ListType.BLACKLIST, "scraper")
        decision = self.gate.admit(Subjects(ip=IP))
        assert not decision.allowed
        assert decision.reason == DenyReason.BLACKLISTED
        assert decision.retry_after == 0

    def test_blacklisted_key_on_clean_ip(self):
        self.lifecycle.add(f"api_key:{KEY}", ListType.BLACKLIST, "leaked")
        decision = self.gate.admit(Subjects(ip=IP, api_key=KEY))
        assert decision.reason == DenyReason.BLACKLISTED
        assert decision.limit_info["subject"] == f"api_key:{KEY}"

    def test_temp_block_reports_time_left(self):
        self.lifecycle.block(IP, "manual block", duration_minutes=10)
        self.clock.advance(60)
        decision = self.gate.admit(Subjects(ip=IP))
        assert decision.reason == DenyReason.TEMP_BLOCKED
        assert decision.retry_after == pytest.approx(9 * 60)

    def test_ddos_block_has_its_own_reason(self):
        self.lifecycle.block(IP, "flood", source="ddos")
        assert self.gate.admit(Subjects(ip=IP)).reason == DenyReason.DDOS_BLOCK

    def test_denied_by_lifecycle_consumes_no_quota(self):
        self.lifecycle.add(IP, ListType.BLACKLIST, "scraper")
        self.gate.admit(Subjects(ip=IP))
        assert self.store.count_events(IP, 0) == 0

    def test_denied_by_lifecycle_is_still_recorded(self):
        self.lifecycle.block(IP, "flood", source="ddos")
        self.gate.admit(Subjects(ip=IP, endpoint="/login"), response_code=429,
                        user_agent="hydra")
        [event] = self.store.query_events(ip=IP)
        assert not event.admitted
        assert event.endpoint == "/login"
        assert event.user_agent == "hydra"

    def test_whitelisted_requests_are_recorded(self):
        self.lifecycle.add(IP, ListType.WHITELIST, "health checker")
        self.gate.admit(Subjects(ip=IP))
        assert [e.admitted for e in self.store.query_events(ip=IP)] == [True]

    def test_falls_through_to_rate_limit(self):
        decisions = [self.gate.admit(Subjects(ip=IP)) for _ in range(3)]
        assert [d.allowed for d in decisions] == [True, True, False]
        assert decisions[2].reason == DenyReason.RATE_LIMIT_EXCEEDED

    def test_check_is_read_only(self):
        assert self.gate.check(Subjects(ip=IP)).allowed
        assert self.store.query_events(ip=IP) == []


class TestGeo:
    def setup_method(self):
        self.store = InMemoryEventStore()
        geo = GeoFilter(DDoSSettings(geo_filtering_enabled=True, blocked_countries=["ZZ"],
                                     country_networks={"192.0.2.0/24": "ZZ"}))
        self.gate = _gate(self.store, FakeClock(), geo=geo)

    def test_blocked_country_denied_before_quota(self):
        decision = self.gate.admit(Subjects(ip=IP))
        assert decision.reason == DenyReason.GEO_BLOCKED
        assert decision.limit_info["country"] == "ZZ"
        assert self.store.count_events(IP, 0) == 0
        assert len(self.store.query_events(ip=IP)) == 1

    def test_whitelist_overrides_geo(self):
        self.gate.lifecycle.add(IP, ListType.WHITELIST, "travelling admin")
        assert self.gate.admit(Subjects(ip=IP)).allowed

    def test_other_countries_pass(self):
        assert self.gate.admit(Subjects(ip="203.0.113.1")).allowed


class TestFailurePolicy:
    def setup_method(self):
        self.gate = _gate(_DownStore(), FakeClock())

    def test_store_failure_propagates_from_admit(self):
        with pytest.raises(StoreUnavailable):
            self.gate.admit(Subjects(ip=IP))

    def test_fail_closed(self):
        decision = admit_with_policy(self.gate, Subjects(ip=IP), FAIL_CLOSED)
        assert not decision.allowed
        assert decision.reason == DenyReason.STORE_UNAVAILABLE

    def test_fail_open(self):
        decision = admit_with_policy(self.gate, Subjects(ip=IP), FAIL_OPEN)
        assert decision.allowed
        assert decision.limit_info["failure_policy"] == FAIL_OPEN

    def test_unknown_policy(self):
        with pytest.raises(ValueError):
            admit_with_policy(self.gate, Subjects(ip=IP), "maybe")
