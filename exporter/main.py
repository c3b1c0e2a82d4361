"""Prometheus metrics exporter — consumes decisions and alerts, exposes metrics.

Subscribes to the admission-decisions and alerts topics, updating
Prometheus counters, histograms and gauges in real time.  Grafana reads
from Prometheus to render the API security dashboard.

Usage:
    python -m exporter.main
    python -m exporter.main --bootstrap-servers kafka-1:29092 --port 9090
"""

import argparse
import json
import signal
import sys
import time

from confluent_kafka import Consumer, KafkaError
from prometheus_client import Counter, Gauge, Histogram, start_http_server

# ---------------------------------------------------------------------------
# Admission metrics
# ---------------------------------------------------------------------------
# Each Counter/Histogram/Gauge below auto-registers itself in the global
# REGISTRY on construction; start_http_server() serves whatever is there.
decisions_total = Counter(
    "shield_decisions_total",
    "Admission decisions",
    ["outcome", "reason"],
)
decisions_by_scope = Counter(
    "shield_decisions_by_scope_total",
    "Rate-limited decisions by identifier scope and decision path",
    ["scope", "path", "outcome"],
)
denials_by_ip = Counter(
    "shield_denials_by_ip_total",
    "Denied requests per client IP",
    ["ip", "reason"],
)
retry_after_seconds = Histogram(
    "shield_retry_after_seconds",
    "Retry-After handed back on denied requests",
    buckets=[1, 5, 15, 30, 60, 300, 900, 3600, 86400],
)

# ---------------------------------------------------------------------------
# Alert metrics
# ---------------------------------------------------------------------------
alerts_total = Counter(
    "shield_alerts_total",
    "Alerts published by the sweep service",
    ["type", "level"],
)
blocks_total = Counter(
    "shield_blocks_total",
    "Subjects blocked by a detector",
    ["type", "membership"],
)
alert_occurrences = Histogram(
    "shield_alert_occurrences",
    "Occurrence count of an alert when published (dedup pressure)",
    buckets=[1, 2, 5, 10, 25, 50, 100],
)

# ---------------------------------------------------------------------------
# Throughput gauge (updated every second)
# ---------------------------------------------------------------------------
decisions_per_second = Gauge(
    "shield_decisions_per_second",
    "Current admission decision rate",
)
export_errors_total = Counter(
    "shield_export_errors_total",
    "JSON parse or Kafka consumer errors in the exporter",
)

running = True


def _shutdown(sig, frame):
    global running
    print("\nShutting down exporter...")
    running = False


# ---------------------------------------------------------------------------
# Metric updaters
# ---------------------------------------------------------------------------

def process_decision(record: dict):
    """Update Prometheus metrics for one admission decision."""
    outcome = "allowed" if record.get("allowed") else "denied"
    reason = record.get("reason") or "none"
    decisions_total.labels(outcome=outcome, reason=reason).inc()

    info = record.get("limit_info") or {}
    if "scope" in info:
        decisions_by_scope.labels(scope=info["scope"], path=info.get("path", "primary"),
                                  outcome=outcome).inc()

    if outcome == "denied":
        denials_by_ip.labels(ip=record.get("ip", "unknown"), reason=reason).inc()
        retry_after_seconds.observe(record.get("retry_after", 0))


def process_alert(alert: dict):
    """Update Prometheus metrics for one published alert."""
    alert_type = alert.get("type", "unknown")
    alerts_total.labels(type=alert_type, level=alert.get("level", "unknown")).inc()
    alert_occurrences.observe(alert.get("occurrence_count", 1))

    membership = (alert.get("metadata") or {}).get("membership")
    if membership:
        blocks_total.labels(type=alert_type, membership=membership).inc()


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def main():
    parser = argparse.ArgumentParser(description="Prometheus metrics exporter")
    parser.add_argument("--bootstrap-servers", default="localhost:9092")
    parser.add_argument("--decisions-topic", default="admission-decisions")
    parser.add_argument("--alerts-topic", default="alerts")
    parser.add_argument(
        "--port", type=int, default=9090, help="Prometheus metrics HTTP port",
    )
    args = parser.parse_args()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    start_http_server(args.port)
    print(f"Prometheus metrics server started on :{args.port}")

    consumer = Consumer({
        "bootstrap.servers": args.bootstrap_servers,
        "group.id": "metrics-exporter",
        "auto.offset.reset": "latest",
        "enable.auto.commit": True,
    })
    consumer.subscribe([args.decisions_topic, args.alerts_topic])

    count = 0
    window_start = time.time()
    window_count = 0

    print(f"Exporter consuming from {args.decisions_topic} + {args.alerts_topic} ...")

    try:
        while running:
            msg = consumer.poll(1.0)
            if msg is None:
                continue
            if msg.error():
                if msg.error().code() == KafkaError._PARTITION_EOF:
                    continue
                export_errors_total.inc()
                print(f"Consumer error: {msg.error()}", file=sys.stderr)
                continue

            try:
                data = json.loads(msg.value().decode("utf-8"))
            except (json.JSONDecodeError, UnicodeDecodeError):
                export_errors_total.inc()
                continue

            topic = msg.topic()

            if topic == args.decisions_topic:
                process_decision(data)
                window_count += 1
            elif topic == args.alerts_topic:
                process_alert(data)

            count += 1

            # Update the rate gauge roughly every second
            now = time.time()
            elapsed = now - window_start
            if elapsed >= 1.0:
                decisions_per_second.set(window_count / elapsed)
                window_start = now
                window_count = 0

            if count % 5000 == 0:
                print(f"  ... {count} messages exported to metrics")
    finally:
        consumer.close()
        print(f"Exporter done. {count} messages processed.")


if __name__ == "__main__":
    main()
