"""Admission gateway — decides every inbound request read from Kafka.

Consumes request events from raw-api-events, runs each through the
admission gate (lifecycle precedence, geo gate, rate limiter) and publishes
the decision to admission-decisions.  Scale out with more instances in the
same consumer group: decisions stay correct across instances because all
counting happens inside the shared store.

If the store is unreachable the configured ``failure_policy`` applies
(closed by default: deny with reason store_unavailable).

Usage:
    python consumer.py --config config/shield.yml
    python consumer.py --bootstrap-servers kafka-1:29092 --topic raw-api-events
"""

import argparse
import json
import signal
import sys

import structlog
from confluent_kafka import Consumer, KafkaError, Producer

from admission.gate import admit_with_policy
from shield.config import load_settings
from shield.errors import InvalidSubject, ShieldError
from shield.logs import configure_logging
from shield.models import Subjects
from shield.runtime import build_engine

logger = structlog.get_logger()

running = True


def _shutdown(sig, frame):
    global running
    print("\nShutting down gateway...")
    running = False


def decide(engine, event: dict, policy: str) -> dict:
    """Admit one request event; returns the record published downstream."""
    subjects = Subjects(ip=event["ip"], api_key=event.get("api_key"),
                        endpoint=event.get("endpoint"))
    decision = admit_with_policy(engine.gate, subjects, policy,
                                 response_code=event.get("status_code"),
                                 user_agent=event.get("user_agent"))
    return {
        "request_id": event.get("request_id"),
        "ip": subjects.ip,
        "endpoint": subjects.endpoint,
        "timestamp": engine.clock(),
        **decision.to_dict(),
    }


def main():
    parser = argparse.ArgumentParser(description="Admission gateway")
    parser.add_argument("--config", default=None, help="YAML settings file")
    parser.add_argument("--bootstrap-servers", default=None)
    parser.add_argument("--topic", default=None, help="Request events topic")
    parser.add_argument("--output-topic", default=None, help="Decisions topic")
    parser.add_argument("--group-id", default="admission-gateway")
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
    input_topic = args.topic or kafka.events_topic
    output_topic = args.output_topic or kafka.decisions_topic

    consumer = Consumer({
        "bootstrap.servers": bootstrap,
        "group.id": args.group_id,
        "auto.offset.reset": "earliest",
        "enable.auto.commit": True,
    })
    consumer.subscribe([input_topic])
    producer = Producer({"bootstrap.servers": bootstrap})
    engine = build_engine(settings)

    print(f"Admission gateway started  input={input_topic}  output={output_topic}  "
          f"failure_policy={settings.failure_policy}")

    count = 0
    denied = 0
    try:
        while running:
            msg = consumer.poll(1.0)
            if msg is None:
                continue
            if msg.error():
                if msg.error().code() == KafkaError._PARTITION_EOF:
                    continue
                print(f"Consumer error: {msg.error()}", file=sys.stderr)
                continue

            try:
                event = json.loads(msg.value().decode("utf-8"))
                record = decide(engine, event, settings.failure_policy)
            except (json.JSONDecodeError, UnicodeDecodeError, KeyError, InvalidSubject) as e:
                logger.warning("malformed_request_event", partition=msg.partition(),
                               offset=msg.offset(), error=str(e))
                continue

            producer.produce(
                output_topic,
                key=record["ip"].encode("utf-8"),
                value=json.dumps(record).encode("utf-8"),
            )
            producer.poll(0)
            count += 1
            if not record["allowed"]:
                denied += 1
                print(f"DENY   {record['identifier']:<40s} reason={record['reason']:<20s} "
                      f"retry_after={record['retry_after']}")

            if count % 500 == 0:
                print(f"  ... {count} requests decided, {denied} denied")
    finally:
        producer.flush()
        consumer.close()
        engine.close()
        print(f"Done. {count} requests decided, {denied} denied.")


if __name__ == "__main__":
    main()
