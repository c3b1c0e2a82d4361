"""IP / API-key lifecycle — whitelist, blacklist, temporary blocks.

State per subject:

    none ──► whitelisted
      │ ──► blacklisted                  (manual removal only)
      └───► temp_blocked(expires_at) ──► none    (expiry / cleanup / unblock)

Precedence when answering status(): whitelisted > blacklisted >
temp_blocked (unexpired) > none.  Whitelist and blacklist entries may be
CIDR networks; an IP inside a whitelisted network is whitelisted no matter
what its own record says.

Repeat offenders climb a ladder: the Nth temporary block on the same
subject lasts ``block_ladder_minutes[N-1]`` (15 min, 1 h, 24 h by default)
and the block after the last rung promotes the subject to the blacklist.
``violation_count`` never decreases: unblocking or expiry keeps history.

Every mutation runs inside the store's per-subject critical section and is
written with compare-and-swap on the record version, retried a bounded
number of times before ConcurrencyConflict surfaces.
"""

from typing import Callable, Optional

import structlog

from shield.clock import system_clock
from shield.config import LifecycleSettings
from shield.errors import ConcurrencyConflict, PolicyConflict
from shield.models import IdentityRecord, ListType, Membership
from shield.store import EventStore
from shield.subjects import (
    API_KEY_PREFIX, is_network, network_contains, normalize_subject,
)

logger = structlog.get_logger()


class LifecycleManager:

    def __init__(self, store: EventStore, settings: Optional[LifecycleSettings] = None,
                 clock: Callable[[], float] = system_clock):
        self.store = store
        self.settings = settings or LifecycleSettings()
        self.clock = clock

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def status(self, subject: str) -> Membership:
        membership, _ = self.effective(subject)
        return membership

    def effective(self, subject: str) -> tuple[Membership, Optional[IdentityRecord]]:
        """Resolve precedence; returns the membership and the record that decided it."""
        subject = normalize_subject(subject, allow_network=True)
        now = self.clock()
        record = self.store.get_identity_record(subject)
        check_networks = not is_network(subject) and not subject.startswith(API_KEY_PREFIX)

        if record and record.membership == Membership.WHITELISTED:
            return Membership.WHITELISTED, record
        if check_networks:
            net = self._containing_network(subject, Membership.WHITELISTED)
            if net:
                return Membership.WHITELISTED, net

        if record and record.membership == Membership.BLACKLISTED:
            return Membership.BLACKLISTED, record
        if check_networks:
            net = self._containing_network(subject, Membership.BLACKLISTED)
            if net:
                return Membership.BLACKLISTED, net

        if record and record.is_active_block(now):
            return Membership.TEMP_BLOCKED, record
        return Membership.NONE, record

    def record(self, subject: str) -> Optional[IdentityRecord]:
        return self.store.get_identity_record(normalize_subject(subject, allow_network=True))

    def list_records(self, membership: Optional[Membership] = None) -> list[IdentityRecord]:
        records = self.store.list_identity_records(membership)
        if membership == Membership.TEMP_BLOCKED:
            now = self.clock()
            records = [r for r in records if r.is_active_block(now)]
        return records

    def _containing_network(self, ip, membership):
        for record in self.store.list_identity_records(membership):
            if is_network(record.subject) and network_contains(record.subject, ip):
                return record
        return None

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def add(self, subject: str, list_type: ListType | str, reason: str,
            duration_minutes: Optional[float] = None, override: bool = False,
            actor: Optional[str] = None, source: str = "manual") -> IdentityRecord:
        list_type = ListType(list_type)
        if list_type == ListType.TEMP_BLOCK:
            return self.block(subject, reason, duration_minutes, source=source, actor=actor)

        subject = normalize_subject(subject, allow_network=True)
        target = list_type.membership
        opposite = (Membership.BLACKLISTED if target == Membership.WHITELISTED
                    else Membership.WHITELISTED)

        def change(current):
            now = self.clock()
            if current and current.membership == opposite and not override:
                raise PolicyConflict(
                    f"subject is {opposite.value}; pass override to replace it",
                    subject=subject, operation=f"add {list_type.value}",
                )
            return _transition(current, subject, target, reason, now,
                               expires_at=None, source=source, actor=actor)

        record = self._mutate(subject, change)
        logger.info("subject_listed", subject=subject, list=list_type.value,
                    reason=reason, override=override, actor=actor)
        return record

    def block(self, subject: str, reason: str, duration_minutes: Optional[float] = None,
              source: str = "manual", actor: Optional[str] = None) -> IdentityRecord:
        """Issue a temporary block, climbing the violation ladder.

        *duration_minutes* replaces the first rung only; repeat offenders
        always get the configured ladder.  Blocking a whitelisted subject
        is a PolicyConflict; blocking a blacklisted one is a no-op.
        """
        subject = normalize_subject(subject)
        ladder = self.settings.block_ladder_minutes

        membership, decided_by = self.effective(subject)
        if membership == Membership.WHITELISTED:
            raise PolicyConflict("subject is whitelisted", subject=subject,
                                 operation="temp_block",
                                 whitelisted_by=decided_by.subject if decided_by else subject)

        def change(current):
            now = self.clock()
            if current and current.membership == Membership.WHITELISTED:
                raise PolicyConflict("subject is whitelisted", subject=subject,
                                     operation="temp_block")
            if current and current.membership == Membership.BLACKLISTED:
                return None
            violations = (current.violation_count if current else 0) + 1
            if violations > len(ladder):
                return _transition(current, subject, Membership.BLACKLISTED,
                                   f"{reason} (violation #{violations}, promoted to blacklist)",
                                   now, expires_at=None, source=source, actor=actor,
                                   violation_count=violations)
            minutes = ladder[violations - 1]
            if violations == 1 and duration_minutes is not None:
                minutes = duration_minutes
            return _transition(current, subject, Membership.TEMP_BLOCKED,
                               f"{reason} (violation #{violations})", now,
                               expires_at=now + minutes * 60, source=source, actor=actor,
                               violation_count=violations)

        record = self._mutate(subject, change)
        logger.warning("subject_blocked", subject=subject, membership=record.membership.value,
                       violation_count=record.violation_count, expires_at=record.expires_at,
                       source=source)
        return record

    def remove(self, subject: str, list_type: ListType | str) -> bool:
        list_type = ListType(list_type)
        subject = normalize_subject(subject, allow_network=True)
        removed = False

        def change(current):
            nonlocal removed
            if current is None or current.membership != list_type.membership:
                return None
            removed = True
            return current.copy(membership=Membership.NONE, expires_at=None,
                                updated_at=self.clock(),
                                reason=f"removed from {list_type.value}")

        self._mutate(subject, change)
        if removed:
            logger.info("subject_unlisted", subject=subject, list=list_type.value)
        return removed

    def cleanup(self) -> int:
        """Release expired temporary blocks; returns how many were released."""
        now = self.clock()
        released = 0
        for record in self.store.list_identity_records(Membership.TEMP_BLOCKED):
            if record.expires_at is not None and record.expires_at > now:
                continue
            hit = False

            def change(current):
                nonlocal hit
                if (current is None or current.membership != Membership.TEMP_BLOCKED
                        or (current.expires_at is not None and current.expires_at > now)):
                    return None
                hit = True
                return current.copy(membership=Membership.NONE, expires_at=None,
                                    updated_at=now, reason="temporary block expired")

            self._mutate(record.subject, change)
            released += hit
        if released:
            logger.info("expired_blocks_released", count=released)
        return released

    def _mutate(self, subject, change):
        attempts = self.settings.max_retries
        for attempt in range(1, attempts + 1):
            with self.store.serialized(f"identity:{subject}"):
                current = self.store.get_identity_record(subject)
                updated = change(current)
                if updated is None:
                    return current
                try:
                    return self.store.upsert_identity_record(
                        updated, current.version if current else None,
                    )
                except ConcurrencyConflict:
                    logger.info("identity_cas_retry", subject=subject, attempt=attempt)
        raise ConcurrencyConflict("identity record update kept losing races",
                                  subject=subject, attempts=attempts)


def _transition(current, subject, membership, reason, now, expires_at, source, actor,
                violation_count=None):
    if current is None:
        return IdentityRecord(
            subject=subject, membership=membership, reason=reason,
            created_at=now, updated_at=now, expires_at=expires_at,
            violation_count=violation_count or 0, source=source, created_by=actor,
        )
    return current.copy(
        membership=membership, reason=reason, updated_at=now, expires_at=expires_at,
        violation_count=(current.violation_count if violation_count is None
                         else max(violation_count, current.violation_count)),
        source=source, created_by=actor or current.created_by,
    )
