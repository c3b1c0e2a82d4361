"""Tests for the whitelist / blacklist / temporary-block lifecycle."""

import pytest

from admission.lifecycle import LifecycleManager
from shield.clock import FakeClock
from shield.errors import ConcurrencyConflict, InvalidSubject, PolicyConflict
from shield.models import ListType, Membership
from shield.store import InMemoryEventStore

IP = "198.51.100.23"
KEY = "api_key:partner-0123456789"


class _RacyStore(InMemoryEventStore):
    """Loses the compare-and-swap the first *losses* times."""

    def __init__(self, losses):
        super().__init__()
        self.losses = losses
        self.attempts = 0

    def upsert_identity_record(self, record, expected_version):
        self.attempts += 1
        if self.attempts <= self.losses:
            raise ConcurrencyConflict("lost the race", subject=record.subject)
        return super().upsert_identity_record(record, expected_version)


# ----------------------------------------------------------------------
# Precedence
# ----------------------------------------------------------------------

class TestPrecedence:
    def setup_method(self):
        self.clock = FakeClock()
        self.lifecycle = LifecycleManager(InMemoryEventStore(), clock=self.clock)

    def test_unknown_subject(self):
        assert self.lifecycle.status(IP) == Membership.NONE
        assert self.lifecycle.record(IP) is None

    def test_whitelist_network_beats_own_blacklist(self):
        self.lifecycle.add(IP, ListType.BLACKLIST, "scraper")
        self.lifecycle.add("198.51.100.0/24", ListType.WHITELIST, "office")
        membership, record = self.lifecycle.effective(IP)
        assert membership == Membership.WHITELISTED
        assert record.subject == "198.51.100.0/24"

    def test_blacklist_network(self):
        self.lifecycle.add("198.51.100.0/24", "blacklist", "bad range")
        assert self.lifecycle.status(IP) == Membership.BLACKLISTED
        assert self.lifecycle.status("198.51.101.1") == Membership.NONE

    def test_blacklist_beats_temp_block(self):
        self.lifecycle.block(IP, "flood")
        self.lifecycle.add("198.51.100.0/24", ListType.BLACKLIST, "bad range")
        assert self.lifecycle.status(IP) == Membership.BLACKLISTED

    def test_expired_block_reads_as_none(self):
        self.lifecycle.block(IP, "flood")
        self.clock.advance(15 * 60 + 1)
        assert self.lifecycle.status(IP) == Membership.NONE
        assert self.lifecycle.list_records(Membership.TEMP_BLOCKED) == []

    def test_api_keys_are_subjects(self):
        self.lifecycle.add(KEY, ListType.BLACKLIST, "leaked")
        assert self.lifecycle.status(KEY) == Membership.BLACKLISTED

    def test_single_address_network_is_an_ip(self):
        record = self.lifecycle.add(f"{IP}/32", ListType.WHITELIST, "monitor")
        assert record.subject == IP

    def test_invalid_subjects(self):
        with pytest.raises(InvalidSubject):
            self.lifecycle.status("not-an-ip")
        with pytest.raises(InvalidSubject):
            self.lifecycle.block("198.51.100.0/24", "networks are list-only")


# ----------------------------------------------------------------------
# Violation ladder
# ----------------------------------------------------------------------

class TestLadder:
    def setup_method(self):
        self.clock = FakeClock()
        self.lifecycle = LifecycleManager(InMemoryEventStore(), clock=self.clock)

    def _expire(self, record):
        self.clock.set(record.expires_at + 1)

    def test_repeat_offender_climbs_to_blacklist(self):
        durations = []
        for _ in range(3):
            record = self.lifecycle.block(IP, "flood", source="ddos")
            durations.append((record.expires_at - self.clock.now) / 60)
            self._expire(record)
        assert durations == [15, 60, 1440]

        fourth = self.lifecycle.block(IP, "flood", source="ddos")
        assert fourth.membership == Membership.BLACKLISTED
        assert fourth.expires_at is None
        assert fourth.violation_count == 4
        assert self.lifecycle.status(IP) == Membership.BLACKLISTED

    def test_duration_override_applies_to_first_rung_only(self):
        first = self.lifecycle.block(IP, "flood", duration_minutes=5)
        assert first.expires_at == self.clock.now + 5 * 60
        self._expire(first)
        second = self.lifecycle.block(IP, "flood", duration_minutes=5)
        assert second.expires_at == self.clock.now + 60 * 60

    def test_unblock_keeps_history(self):
        self.lifecycle.block(IP, "flood")
        assert self.lifecycle.remove(IP, ListType.TEMP_BLOCK)
        assert self.lifecycle.status(IP) == Membership.NONE
        assert self.lifecycle.block(IP, "flood").violation_count == 2

    def test_cleanup_releases_expired_blocks(self):
        self.lifecycle.block(IP, "flood")
        self.lifecycle.block("198.51.100.24", "flood", duration_minutes=120)
        self.clock.advance(16 * 60)

        assert self.lifecycle.cleanup() == 1
        record = self.lifecycle.record(IP)
        assert record.membership == Membership.NONE
        assert record.violation_count == 1
        assert self.lifecycle.status("198.51.100.24") == Membership.TEMP_BLOCKED
        assert self.lifecycle.cleanup() == 0

    def test_blocking_blacklisted_subject_is_a_noop(self):
        listed = self.lifecycle.add(IP, ListType.BLACKLIST, "known bad")
        again = self.lifecycle.block(IP, "flood")
        assert again.membership == Membership.BLACKLISTED
        assert again.version == listed.version

    def test_blocking_whitelisted_subject_conflicts(self):
        self.lifecycle.add("198.51.100.0/24", ListType.WHITELIST, "office")
        with pytest.raises(PolicyConflict):
            self.lifecycle.block(IP, "flood")
        assert self.lifecycle.record(IP) is None


# ----------------------------------------------------------------------
# List management
# ----------------------------------------------------------------------

class TestLists:
    def setup_method(self):
        self.clock = FakeClock()
        self.lifecycle = LifecycleManager(InMemoryEventStore(), clock=self.clock)

    def test_opposite_list_needs_override(self):
        self.lifecycle.add(IP, ListType.WHITELIST, "partner")
        with pytest.raises(PolicyConflict):
            self.lifecycle.add(IP, ListType.BLACKLIST, "abuse")
        record = self.lifecycle.add(IP, ListType.BLACKLIST, "abuse", override=True,
                                    actor="oncall")
        assert record.membership == Membership.BLACKLISTED
        assert record.created_by == "oncall"

    def test_add_temp_block_through_add(self):
        record = self.lifecycle.add(IP, ListType.TEMP_BLOCK, "manual", duration_minutes=30)
        assert record.membership == Membership.TEMP_BLOCKED
        assert record.expires_at == self.clock.now + 30 * 60

    def test_remove_requires_matching_list(self):
        self.lifecycle.add(IP, ListType.BLACKLIST, "abuse")
        assert self.lifecycle.remove(IP, ListType.WHITELIST) is False
        assert self.lifecycle.remove(IP, ListType.BLACKLIST) is True
        assert self.lifecycle.status(IP) == Membership.NONE
        assert self.lifecycle.remove("198.51.100.99", "blacklist") is False

    def test_list_records_by_membership(self):
        self.lifecycle.add(IP, ListType.WHITELIST, "a")
        self.lifecycle.add("198.51.100.24", ListType.BLACKLIST, "b")
        self.lifecycle.block("198.51.100.25", "c")
        listed = self.lifecycle.list_records(Membership.BLACKLISTED)
        assert [r.subject for r in listed] == ["198.51.100.24"]
        assert len(self.lifecycle.list_records()) == 3


# ----------------------------------------------------------------------
# Compare-and-swap
# ----------------------------------------------------------------------

class TestConcurrency:
    def test_lost_race_is_retried(self):
        store = _RacyStore(losses=2)
        lifecycle = LifecycleManager(store, clock=FakeClock())
        record = lifecycle.block(IP, "flood")
        assert record.violation_count == 1
        assert store.attempts == 3

    def test_gives_up_after_bounded_retries(self):
        store = _RacyStore(losses=100)
        lifecycle = LifecycleManager(store, clock=FakeClock())
        with pytest.raises(ConcurrencyConflict):
            lifecycle.block(IP, "flood")
        assert store.attempts == lifecycle.settings.max_retries
