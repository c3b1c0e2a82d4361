"""Tests for the sweep service wiring: jobs and alert publishing."""

import json

from alerts.notify import LogNotifier
from detector.main import AlertPublisher, build_jobs
from shield.clock import FakeClock
from shield.config import Settings
from shield.models import Membership, RequestEvent
from shield.runtime import build_engine
from shield.scheduler import SweepScheduler
from shield.store import InMemoryEventStore

IP = "198.51.100.200"


class _FakeProducer:
    def __init__(self):
        self.messages = []

    def produce(self, topic, key=None, value=None):
        self.messages.append((topic, key, json.loads(value)))

    def poll(self, timeout):
        return 0


class TestSweepJobs:
    def setup_method(self):
        self.clock = FakeClock()
        self.engine = build_engine(Settings(), store=InMemoryEventStore(),
                                   notifier=LogNotifier(), clock=self.clock)
        self.producer = _FakeProducer()
        self.publisher = AlertPublisher(self.producer, "alerts", self.engine.alerts)
        self.scheduler = build_jobs(self.engine, SweepScheduler(), self.publisher)

    def _flood(self, n=150):
        start = self.clock.now - 5
        for i in range(n):
            self.engine.store.insert_event(RequestEvent(
                identifier=IP, ip=IP, timestamp=start + i * (0.5 / n), endpoint="/login",
            ))

    def test_registers_all_jobs(self):
        assert set(self.scheduler.jobs) == {"ddos", "abuse", "escalation", "cleanup",
                                            "alert_cleanup"}
        assert self.scheduler.jobs["alert_cleanup"].interval == 86400

    def test_flood_sweep_blocks_and_publishes(self):
        self._flood()
        assert self.scheduler.jobs["ddos"].run() == 1
        assert self.engine.lifecycle.status(IP) == Membership.TEMP_BLOCKED

        published = [m for m in self.producer.messages if m[2]["type"] == "ddos_detected"]
        assert len(published) == 1
        topic, key, alert = published[0]
        assert topic == "alerts"
        assert key == b"ddos_detected"
        assert alert["metadata"]["subject"] == IP

    def test_quiet_tick_publishes_nothing(self):
        self.scheduler.run_all()
        assert self.producer.messages == []
        assert self.scheduler.jobs["ddos"].last_result == 0

    def test_cleanup_job_releases_expired_blocks(self):
        self.engine.lifecycle.block(IP, "manual", duration_minutes=1)
        self.clock.advance(120)
        self.scheduler.jobs["cleanup"].run()
        assert self.scheduler.jobs["cleanup"].last_result["released"] == 1
