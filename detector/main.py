"""Sweep service — runs the detectors and housekeeping on their intervals.

Jobs (intervals from the ``scheduler`` config section):
  ddos            flood sweep over IPs active in the detection window
  abuse           pattern analysis over IPs active in the analysis window
  escalation      escalate unacknowledged alerts that are overdue
  cleanup         release expired temp blocks, purge old request events
  alert_cleanup   purge resolved alerts past retention

Jobs run on APScheduler worker threads; a job whose previous run is still
going is skipped for that tick.  New alerts are published to the alerts
topic for the metrics exporter, and notifications go to the notifications
topic.  Several instances may run against the same store: every write goes
through the store's atomic operations.

Usage:
    python -m detector.main --config config/shield.yml
    python -m detector.main --bootstrap-servers kafka-1:29092 --workers 8
"""

import argparse
import json
import signal
import sys
import time

from confluent_kafka import Producer
from confluent_kafka.admin import AdminClient, NewTopic

from alerts.notify import KafkaNotifier
from shield.config import load_settings
from shield.errors import ShieldError
from shield.logs import configure_logging
from shield.runtime import build_engine
from shield.scheduler import SweepScheduler

running = True


def _shutdown(sig, frame):
    global running
    print("\nShutting down sweep service...")
    running = False


def _ensure_topics(bootstrap_servers, topics):
    """Create the output topics if they don't already exist."""
    admin = AdminClient({"bootstrap.servers": bootstrap_servers})
    fs = admin.create_topics([NewTopic(t, num_partitions=3, replication_factor=1) for t in topics])
    for t, f in fs.items():
        try:
            f.result()
            print(f"Created topic '{t}'")
        except Exception as e:
            if "TOPIC_ALREADY_EXISTS" in str(e):
                print(f"Topic '{t}' already exists")
            else:
                raise


class AlertPublisher:
    """Publishes alerts raised by a sweep to the alerts topic."""

    def __init__(self, producer, topic, alerts):
        self.producer = producer
        self.topic = topic
        self.alerts = alerts
        self.published = 0

    def publish(self, alert_ids):
        for alert_id in alert_ids:
            if not alert_id:
                continue
            alert = self.alerts.show(alert_id)
            self.producer.produce(
                self.topic,
                key=alert.type.encode("utf-8"),
                value=json.dumps(alert.to_dict()).encode("utf-8"),
            )
            self.published += 1
            print(f"ALERT  type={alert.type:<22s} level={alert.level.value:<8s} "
                  f"occurrences={alert.occurrence_count}  {alert.message}")
        self.producer.poll(0)


def build_jobs(engine, scheduler, publisher=None):
    """Register the five sweeps on *scheduler*."""
    intervals = engine.settings.scheduler

    def ddos():
        detections = engine.flood.sweep()
        if publisher:
            publisher.publish(d.alert_id for d in detections)
        return len(detections)

    def abuse():
        results = engine.abuse.sweep()
        if publisher:
            publisher.publish(r.alert_id for r in results)
        return len(results)

    def escalation():
        escalated = engine.alerts.escalation_sweep()
        for e in escalated:
            print(f"ESCALATED  alert={e.alert_id}  L{e.from_level} -> L{e.to_level}  "
                  f"recipients={','.join(e.recipients)}")
        return len(escalated)

    def cleanup():
        return {"released": engine.lifecycle.cleanup(), "purged": engine.purge_events()}

    def alert_cleanup():
        return engine.alerts.cleanup()

    scheduler.add("ddos", intervals.ddos_interval_seconds, ddos)
    scheduler.add("abuse", intervals.abuse_interval_seconds, abuse)
    scheduler.add("escalation", intervals.escalation_interval_seconds, escalation)
    scheduler.add("cleanup", intervals.cleanup_interval_seconds, cleanup)
    scheduler.add("alert_cleanup", intervals.alert_cleanup_interval_seconds, alert_cleanup,
                  run_immediately=False)
    return scheduler


def main():
    parser = argparse.ArgumentParser(description="Detection sweep service")
    parser.add_argument("--config", default=None, help="YAML settings file")
    parser.add_argument("--bootstrap-servers", default=None)
    parser.add_argument("--workers", type=int, default=4, help="Sweep worker threads")
    parser.add_argument("--log-json", action="store_true")
    args = parser.parse_args()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)
    configure_logging(json=args.log_json)

    try:
        settings = load_settings(args.config)
    except ShieldError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(2)
    kafka = settings.kafka
    bootstrap = args.bootstrap_servers or kafka.bootstrap_servers

    _ensure_topics(bootstrap, [kafka.alerts_topic, kafka.notifications_topic])
    producer = Producer({"bootstrap.servers": bootstrap})
    engine = build_engine(settings, notifier=KafkaNotifier(producer, kafka.notifications_topic))
    publisher = AlertPublisher(producer, kafka.alerts_topic, engine.alerts)

    scheduler = build_jobs(engine, SweepScheduler(args.workers), publisher)

    print(f"Sweep service started  store={settings.store.url}  "
          f"alerts={kafka.alerts_topic}  jobs={','.join(scheduler.jobs)}")

    scheduler.start()
    try:
        while running:
            time.sleep(1)
    finally:
        scheduler.shutdown(wait=True)
        producer.flush()
        engine.close()
        summary = ", ".join(f"{j.name}={j.runs} runs/{j.skipped} skipped"
                            for j in scheduler.jobs.values())
        print(f"Done. {publisher.published} alerts published. {summary}")


if __name__ == "__main__":
    main()
