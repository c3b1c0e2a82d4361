"""Notification delivery.

The manager renders an alert into a plain-text message and hands it to a
Notifier once per destination.  Delivery is fire-and-forget from the
engine's point of view: a notifier signals failure by raising
NotificationError, which the manager logs and moves past.
"""

import json
from typing import Optional, Protocol

import structlog
from confluent_kafka import KafkaException, Producer

from shield.models import Alert

logger = structlog.get_logger()


class NotificationError(Exception):
    pass


class Notifier(Protocol):
    def notify(self, destination: str, message: str) -> None: ...


class LogNotifier:
    """Writes notifications to the structured log; keeps them for inspection."""

    def __init__(self):
        self.sent: list[tuple[str, str]] = []

    def notify(self, destination: str, message: str) -> None:
        self.sent.append((destination, message))
        logger.info("notification_sent", destination=destination,
                    message=message.splitlines()[0] if message else "")


class KafkaNotifier:
    """Publishes notifications to a topic for a downstream mailer/pager."""

    def __init__(self, producer: Producer, topic: str = "notifications"):
        self.producer = producer
        self.topic = topic

    @classmethod
    def connect(cls, bootstrap_servers: str, topic: str = "notifications") -> "KafkaNotifier":
        return cls(Producer({"bootstrap.servers": bootstrap_servers}), topic)

    def notify(self, destination: str, message: str) -> None:
        payload = {"destination": destination, "message": message}
        try:
            self.producer.produce(
                self.topic,
                key=destination.encode("utf-8"),
                value=json.dumps(payload).encode("utf-8"),
            )
            self.producer.poll(0)
        except (KafkaException, BufferError) as e:
            raise NotificationError(f"kafka publish failed: {e}") from e


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

def render(alert: Alert, escalation_level: Optional[int] = None) -> str:
    """Format an alert + metadata into a human-readable notification."""
    header = f"[{alert.level.value.upper()}] {alert.component}/{alert.type}"
    if escalation_level:
        header = f"ESCALATION L{escalation_level} {header}"

    metadata_lines = ""
    if alert.metadata:
        metadata_lines = "\n".join(f"  {k}: {v}" for k, v in alert.metadata.items())

    return (
        f"{header}\n\n"
        f"{alert.message}\n\n"
        f"ALERT: {alert.id}\n"
        f"STATUS: {alert.status.value}\n"
        f"OCCURRENCES: {alert.occurrence_count}\n\n"
        f"DETAILS:\n{metadata_lines}"
    )
