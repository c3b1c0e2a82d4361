"""Multi-identifier sliding-window rate limiter with burst handling.

The identifier counted against is chosen by precedence API key > endpoint >
IP, and it also selects which limit set applies (keys get the most room to
reward authentication).  The three primary tiers (minute, hour, day) are
evaluated independently over true sliding windows ``[now - window, now]``;
any tier at or over its limit denies (the limit is exclusive: the Lth
request is allowed, the L+1th is not).

Burst: a short window (default 5 s) with its own allowance.  A request
passes the minute tier if it fits under the burst allowance OR under the
minute limit.  Once the current burst window already holds ``burst_size``
admitted requests, the minute tier is applied strictly.  Hour and day tiers
are never relaxed by the burst allowance.

Counts live only in the store.  ``admit()``, the request-path call, does
insert-then-count inside the store's per-identifier critical section, so
concurrent callers on any number of instances can never admit more than the
limit.  A denied request's event stays in the store, flagged as denied:
the detectors still see it, the quota counts never do.
"""

from typing import Callable, Optional

import structlog

from shield.clock import system_clock
from shield.config import RateLimitSettings
from shield.models import Decision, DenyReason, RequestEvent, Subjects, TierInfo
from shield.store import EventStore, IdentifierStats
from shield.subjects import identifier_for, validate_ip, validate_subjects

logger = structlog.get_logger()

TIERS = (("minute", 60), ("hour", 3600), ("day", 86400))


class RateLimiter:

    def __init__(self, store: EventStore, settings: Optional[RateLimitSettings] = None,
                 clock: Callable[[], float] = system_clock):
        self.store = store
        self.settings = settings or RateLimitSettings()
        self.clock = clock

    # ------------------------------------------------------------------
    # Request path
    # ------------------------------------------------------------------

    def admit(self, subjects: Subjects, response_code: Optional[int] = None,
              user_agent: Optional[str] = None) -> Decision:
        """Atomically decide and, if allowed, record the request."""
        subjects = validate_subjects(subjects)
        scope, identifier = identifier_for(subjects)
        now = self.clock()
        event = self._event(subjects, identifier, now, response_code, user_agent)

        with self.store.serialized(identifier):
            stored, counts = self.store.insert_and_count(event, self._windows(now))
            # Counts include the tentative event; decide on what preceded it.
            before = {name: n - 1 for name, n in counts.items()}
            decision = self._decide(identifier, scope, before, now)
            if not decision.allowed:
                self.store.mark_denied(stored.id)

        if not decision.allowed:
            logger.info("rate_limit_exceeded", identifier=identifier,
                        retry_after=round(decision.retry_after, 3),
                        path=decision.limit_info.get("path"))
        return decision

    def check(self, subjects: Subjects) -> Decision:
        """Read-only decision for the next request; records nothing."""
        subjects = validate_subjects(subjects)
        scope, identifier = identifier_for(subjects)
        now = self.clock()
        counts = {
            name: self.store.count_events(identifier, since)
            for name, since in self._windows(now).items()
        }
        return self._decide(identifier, scope, counts, now)

    def record(self, subjects: Subjects, response_code: Optional[int] = None,
               user_agent: Optional[str] = None, admitted: bool = True) -> RequestEvent:
        """Record a request without deciding (e.g. replaying gateway logs).

        The gate also records requests it turned away before the limiter
        (lifecycle, geo) with ``admitted=False``.
        """
        subjects = validate_subjects(subjects)
        _, identifier = identifier_for(subjects)
        event = self._event(subjects, identifier, self.clock(), response_code, user_agent)
        event.admitted = admitted
        return self.store.insert_event(event)

    # ------------------------------------------------------------------
    # Operator surface
    # ------------------------------------------------------------------

    def stats(self, ip: Optional[str] = None, endpoint: Optional[str] = None,
              window_seconds: int = 3600, limit: int = 20) -> list[IdentifierStats]:
        if ip is not None:
            ip = validate_ip(ip)
        return self.store.event_stats(self.clock() - window_seconds, ip=ip,
                                      endpoint=endpoint, limit=limit)

    def reset(self, ip: str, endpoint: Optional[str] = None) -> int:
        """Drop recorded requests for *ip* (optionally one endpoint only)."""
        ip = validate_ip(ip)
        removed = self.store.delete_events(ip, endpoint)
        logger.info("rate_limit_reset", ip=ip, endpoint=endpoint, removed=removed)
        return removed

    # ------------------------------------------------------------------
    # Decision
    # ------------------------------------------------------------------

    def _windows(self, now: float) -> dict[str, float]:
        windows = {name: now - seconds for name, seconds in TIERS}
        windows["burst"] = now - self.settings.burst_window_seconds
        return windows

    def _decide(self, identifier: str, scope: str, counts: dict[str, int],
                now: float) -> Decision:
        limits = self.settings.limits_for(scope)
        tiers = [TierInfo(name, seconds, limits[name], counts[name]) for name, seconds in TIERS]
        burst = TierInfo("burst", self.settings.burst_window_seconds,
                         self.settings.burst_size, counts["burst"])

        denying = []
        path = "primary"
        for tier in tiers:
            if not tier.exceeded:
                continue
            if tier.name == "minute" and not burst.exceeded:
                path = "burst"
                continue
            denying.append(tier)

        info = {
            "scope": scope,
            "path": path,
            "tiers": {
                t.name: {"limit": t.limit, "count": t.count, "remaining": t.remaining,
                         "window_seconds": t.window_seconds}
                for t in tiers
            },
            "burst": {"limit": burst.limit, "count": burst.count,
                      "remaining": burst.remaining, "window_seconds": burst.window_seconds},
        }
        if not denying:
            return Decision.allow(identifier, **info)

        info["denied_by"] = [t.name for t in denying]
        retry_after = max(self._retry_after(identifier, t, burst, now) for t in denying)
        return Decision.deny(identifier, DenyReason.RATE_LIMIT_EXCEEDED, retry_after, **info)

    def _retry_after(self, identifier, tier, burst, now):
        """Seconds until the oldest event in *tier*'s window falls out of it."""
        oldest = self.store.oldest_event_time(identifier, now - tier.window_seconds)
        wait = (oldest + tier.window_seconds - now) if oldest is not None else 0.0
        if tier.name == "minute":
            # The minute tier also reopens as soon as the burst window frees up.
            oldest_burst = self.store.oldest_event_time(identifier, now - burst.window_seconds)
            if oldest_burst is not None:
                wait = min(wait, oldest_burst + burst.window_seconds - now)
        return max(wait, 0.0)

    @staticmethod
    def _event(subjects, identifier, now, response_code, user_agent):
        return RequestEvent(
            identifier=identifier, ip=subjects.ip, timestamp=now,
            api_key=subjects.api_key, endpoint=subjects.endpoint,
            response_code=response_code, user_agent=user_agent,
        )
