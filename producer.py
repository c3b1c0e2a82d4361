"""API request event generator.

Simulates inbound traffic at the edge of a public API with configurable
normal and abusive client profiles, for driving the admission gateway and
the detectors end-to-end.  Each event is one inbound request as the
gateway sees it (client IP, optional API key, endpoint, user agent and the
upstream status code).

Usage:
    python producer.py
    python producer.py --normal 20 --flooders 1 --scrapers 2 --brute-forcers 1
    python producer.py --eps 100 --topic raw-api-events
"""

import argparse
import json
import random
import signal
import time
import uuid
from dataclasses import dataclass, field

from confluent_kafka import Producer
from confluent_kafka.admin import AdminClient, NewTopic

ENDPOINTS = [
    "/api/v1/notes", "/api/v1/notes/search", "/api/v1/users", "/api/v1/users/me",
    "/api/v1/stats", "/api/v1/changesets", "/api/v1/map", "/api/v1/health",
]
USER_AGENTS = [
    "Mozilla/5.0 (X11; Linux x86_64) Firefox/128.0",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_5) Safari/605.1.15",
    "python-requests/2.32.3",
    "JOSM/1.5 (19067 en)",
]

running = True


def _shutdown(sig, frame):
    global running
    print("\nShutting down generator...")
    running = False


# ---------------------------------------------------------------------------
# Client profiles
# ---------------------------------------------------------------------------

@dataclass
class Client:
    ip: str
    role: str  # normal | flooder | scraper | brute_forcer | ua_rotator
    events_per_min: float
    api_key: str | None = None
    endpoints: list = field(default_factory=lambda: list(ENDPOINTS))
    user_agents: list = field(default_factory=lambda: [random.choice(USER_AGENTS)])
    error_rate: float = 0.02


def _ip(n):
    return f"203.0.{113 + n // 250}.{n % 250 + 1}"


def _create_clients(n_normal, n_flooders, n_scrapers, n_brute_forcers, n_rotators):
    """Build the client pool. Each client gets a stable IP."""
    clients = []
    n = 0
    normal_rpm = {"light": (3, 10), "regular": (20, 50), "integration": (60, 150)}

    # --- Normal clients: some authenticate with an API key ---
    for _ in range(n_normal):
        n += 1
        archetype = random.choice(list(normal_rpm))
        clients.append(Client(
            ip=_ip(n), role="normal", events_per_min=random.uniform(*normal_rpm[archetype]),
            api_key=f"key_{uuid.uuid4().hex[:16]}" if random.random() < 0.4 else None,
        ))

    # --- Flooders: volumetric, one cheap endpoint ---
    for _ in range(n_flooders):
        n += 1
        clients.append(Client(
            ip=_ip(n), role="flooder", events_per_min=random.uniform(6000, 12000),
            endpoints=["/api/v1/health"],
        ))

    # --- Scrapers: machine-speed walk over every endpoint ---
    for _ in range(n_scrapers):
        n += 1
        clients.append(Client(
            ip=_ip(n), role="scraper", events_per_min=random.uniform(700, 1200),
            endpoints=ENDPOINTS + [f"/api/v1/notes/{i}" for i in range(40)],
        ))

    # --- Brute forcers: one auth endpoint, mostly 401s ---
    for _ in range(n_brute_forcers):
        n += 1
        clients.append(Client(
            ip=_ip(n), role="brute_forcer", events_per_min=random.uniform(300, 600),
            endpoints=["/api/v1/login"], error_rate=0.9,
        ))

    # --- UA rotators: bot farm behind one address ---
    for _ in range(n_rotators):
        n += 1
        clients.append(Client(
            ip=_ip(n), role="ua_rotator", events_per_min=random.uniform(60, 120),
            user_agents=[f"Mozilla/5.0 (bot-{i}) Chrome/{100 + i}.0" for i in range(25)],
        ))

    return clients


# ---------------------------------------------------------------------------
# Event generation
# ---------------------------------------------------------------------------

def _make_event(client: Client) -> dict:
    """Generate a single request event for a client based on its profile."""
    failed = random.random() < client.error_rate
    status = random.choice([401, 403, 404, 500]) if failed else 200
    if client.role == "brute_forcer" and failed:
        status = 401
    return {
        "event_type": "api_request",
        "timestamp": time.time(),
        "request_id": f"req_{uuid.uuid4().hex[:12]}",
        "ip": client.ip,
        "api_key": client.api_key,
        "endpoint": random.choice(client.endpoints),
        "method": "POST" if client.role == "brute_forcer" else "GET",
        "user_agent": random.choice(client.user_agents),
        "status_code": status,
        "latency_ms": random.randint(5, 800),
    }


# ---------------------------------------------------------------------------
# Initialization
# ---------------------------------------------------------------------------

def _ensure_topics(bootstrap_servers, topics):
    """Create Kafka topics if they don't already exist."""
    admin = AdminClient({"bootstrap.servers": bootstrap_servers})
    new_topics = [NewTopic(t, num_partitions=3, replication_factor=1) for t in topics]
    fs = admin.create_topics(new_topics)
    for topic, f in fs.items():
        try:
            f.result()
            print(f"Created topic '{topic}'")
        except Exception as e:
            if "TOPIC_ALREADY_EXISTS" in str(e):
                print(f"Topic '{topic}' already exists")
            else:
                raise


# ---------------------------------------------------------------------------
# Main loop
# ---------------------------------------------------------------------------

def main():
    parser = argparse.ArgumentParser(description="API request event generator")
    parser.add_argument("--bootstrap-servers", default="localhost:9092")
    parser.add_argument("--topic", default="raw-api-events")
    parser.add_argument("--normal", type=int, default=8)
    parser.add_argument("--flooders", type=int, default=1)
    parser.add_argument("--scrapers", type=int, default=1)
    parser.add_argument("--brute-forcers", type=int, default=1)
    parser.add_argument("--ua-rotators", type=int, default=1)
    parser.add_argument("--eps", type=float, default=50, help="Target events/sec")
    args = parser.parse_args()

    signal.signal(signal.SIGINT, _shutdown)   # Ctrl+C (local dev)
    signal.signal(signal.SIGTERM, _shutdown)  # docker stop / k8s pod termination

    clients = _create_clients(
        args.normal, args.flooders, args.scrapers, args.brute_forcers, args.ua_rotators,
    )
    weights = [c.events_per_min for c in clients]

    print(f"Generating to topic '{args.topic}' at ~{args.eps} events/sec")
    print(f"Clients: {len(clients)} total")
    for c in clients:
        print(f"  {c.ip:<15s} {c.role:<13s} ~{c.events_per_min:>6.0f} epm"
              f"{'  key' if c.api_key else ''}")

    _ensure_topics(args.bootstrap_servers, [args.topic])

    producer = Producer({
        "bootstrap.servers": args.bootstrap_servers,
        "acks": "all",
        "client.id": "api-request-generator",
    })

    count = 0
    delay = 1.0 / args.eps

    while running:
        client = random.choices(clients, weights=weights, k=1)[0]
        event = _make_event(client)

        producer.produce(
            topic=args.topic,
            key=event["ip"].encode(),
            value=json.dumps(event),
        )
        producer.poll(0)

        count += 1
        if count % 500 == 0:
            print(f"  ... {count} events produced")

        time.sleep(delay)

    producer.flush()
    print(f"Done. {count} events produced.")


if __name__ == "__main__":
    main()
