"""Operator CLI for the security engine.

Usage:
    python -m control.main ratelimit check --ip 203.0.113.7 --endpoint /api/v1/notes
    python -m control.main ipblock add 198.51.100.0/24 --list blacklist --reason "abuse"
    python -m control.main ddos monitor --interval 10
    python -m control.main abuse analyze 203.0.113.7
    python -m control.main alerts list --status active --level critical
    python -m control.main escalation check
    python -m control.main --config config/shield.yml --json alerts stats

Exit codes: 0 success, 1 the request would be denied / the subject is
flagged, 2 error (message on stderr).
"""

import argparse
import json
import sys
import time
from dataclasses import asdict, is_dataclass

from alerts.notify import LogNotifier
from shield.config import load_settings
from shield.errors import ShieldError
from shield.logs import configure_logging
from shield.models import AlertFilter, AlertLevel, AlertStatus, ListType, Membership, Subjects
from shield.runtime import build_engine

EXIT_OK = 0
EXIT_DENIED = 1
EXIT_ERROR = 2


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------

def _plain(obj):
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    if is_dataclass(obj):
        return asdict(obj)
    if isinstance(obj, (list, tuple)):
        return [_plain(o) for o in obj]
    if hasattr(obj, "value"):
        return obj.value
    return obj


def _emit(args, obj, line=None):
    """Print *obj* as JSON (--json) or as human-readable lines."""
    data = _plain(obj)
    if args.json:
        print(json.dumps(data, indent=2, default=str))
        return
    if isinstance(data, list):
        if not data:
            print("(none)")
        for item in data:
            print(line(item) if line else item)
    elif isinstance(data, dict):
        if line:
            print(line(data))
            return
        for k, v in data.items():
            print(f"{k:<28s} {v}")
    else:
        print(data)


def _decision_line(d):
    verdict = "ALLOW" if d["allowed"] else "DENY "
    extra = f"  reason={d['reason']}  retry_after={d['retry_after']}" if not d["allowed"] else ""
    return f"{verdict}  {d['identifier']}{extra}"


def _record_line(r):
    expires = f"  expires_at={r['expires_at']:.0f}" if r.get("expires_at") else ""
    return (f"{r['subject']:<40s} {r['membership']:<12s} violations={r['violation_count']}"
            f"{expires}  reason={r['reason']}")


def _alert_line(a):
    return (f"{a['id'][:12]}  {a['level']:<8s} {a['status']:<12s} {a['component']}/{a['type']}"
            f"  x{a['occurrence_count']}  L{a['escalation_level']}  {a['message']}")


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------

def _subjects(args):
    return Subjects(ip=args.ip, api_key=args.api_key, endpoint=args.endpoint)


def cmd_ratelimit(engine, args):
    if args.action == "check":
        decision = engine.gate.check(_subjects(args))
        _emit(args, decision, _decision_line)
        return EXIT_OK if decision.allowed else EXIT_DENIED
    if args.action == "record":
        decision = engine.gate.admit(_subjects(args), response_code=args.status,
                                     user_agent=args.user_agent)
        _emit(args, decision, _decision_line)
        return EXIT_OK if decision.allowed else EXIT_DENIED
    if args.action == "stats":
        stats = engine.limiter.stats(ip=args.ip, endpoint=args.endpoint,
                                     window_seconds=args.window, limit=args.limit)
        _emit(args, stats, lambda s: f"{s['identifier']:<48s} {s['request_count']:>7d} requests")
        return EXIT_OK
    removed = engine.limiter.reset(args.ip, args.endpoint)
    _emit(args, {"ip": args.ip, "endpoint": args.endpoint, "removed": removed})
    return EXIT_OK


def cmd_ddos(engine, args):
    flood = engine.flood
    if args.action == "monitor":
        return _monitor(flood, args)
    if args.action == "check":
        flagged = flood.check(args.subject, block=args.block)
        _emit(args, {"subject": args.subject, "flooding": flagged,
                     "state": flood.state(args.subject).value})
        return EXIT_DENIED if flagged else EXIT_OK
    if args.action == "block":
        _emit(args, flood.block(args.subject, args.reason, actor=args.actor), _record_line)
        return EXIT_OK
    if args.action == "unblock":
        removed = flood.unblock(args.subject)
        _emit(args, {"subject": args.subject, "unblocked": removed})
        return EXIT_OK
    _emit(args, flood.stats())
    return EXIT_OK


def _monitor(flood, args):
    """One sweep, or with --interval a sweep loop until Ctrl-C (or --count sweeps)."""
    sweeps = 0
    try:
        while True:
            detections = flood.sweep(args.window)
            sweeps += 1
            _emit(args, detections, lambda d: (
                f"{d['subject']:<40s} rps={d['requests_per_second']}  "
                f"concurrent={d['concurrent_estimate']}  blocked={d['blocked']}"))
            if args.interval is None or (args.count and sweeps >= args.count):
                break
            time.sleep(args.interval)
    except KeyboardInterrupt:
        print(f"\nStopped after {sweeps} sweeps.", file=sys.stderr)
    return EXIT_OK


def cmd_abuse(engine, args):
    abuse = engine.abuse
    if args.action == "analyze":
        result = abuse.analyze(args.subject, args.window)
        if args.json:
            _emit(args, result)
        else:
            print(f"{result.subject}  score={result.score:g}  requests={result.request_count}"
                  f"  actionable={result.actionable}")
            for f in result.findings:
                print(f"  {f.pattern:<28s} {f.severity:<7s} +{f.score:g}  {f.evidence}")
        return EXIT_DENIED if result.actionable else EXIT_OK
    if args.action == "check":
        flagged = abuse.check(args.subject)
        _emit(args, {"subject": args.subject, "abusive": flagged})
        return EXIT_DENIED if flagged else EXIT_OK
    if args.action == "patterns":
        _emit(args, abuse.patterns(), lambda p: (
            f"{p['id']:<28s} {p['severity']:<7s} weight={p['weight']:g}  {p['description']}"))
        return EXIT_OK
    _emit(args, abuse.stats())
    return EXIT_OK


def cmd_ipblock(engine, args):
    lifecycle = engine.lifecycle
    if args.action == "add":
        record = lifecycle.add(args.subject, ListType(args.list), args.reason,
                               duration_minutes=args.duration, override=args.override,
                               actor=args.actor)
        _emit(args, record, _record_line)
        return EXIT_OK
    if args.action == "remove":
        removed = lifecycle.remove(args.subject, ListType(args.list))
        _emit(args, {"subject": args.subject, "list": args.list, "removed": removed})
        return EXIT_OK
    if args.action == "list":
        membership = Membership(args.membership) if args.membership else None
        _emit(args, lifecycle.list_records(membership), _record_line)
        return EXIT_OK
    if args.action == "status":
        membership, record = lifecycle.effective(args.subject)
        _emit(args, {"subject": args.subject, "membership": membership.value,
                     "decided_by": record.subject if record else None,
                     "violation_count": record.violation_count if record else 0,
                     "expires_at": record.expires_at if record else None})
        return EXIT_DENIED if membership in (Membership.BLACKLISTED,
                                             Membership.TEMP_BLOCKED) else EXIT_OK
    _emit(args, {"released": lifecycle.cleanup()})
    return EXIT_OK


def cmd_alerts(engine, args):
    alerts = engine.alerts
    if args.action == "list":
        since = engine.clock() - args.since_hours * 3600 if args.since_hours else None
        flt = AlertFilter(
            component=args.component,
            level=AlertLevel(args.level) if args.level else None,
            type=args.type,
            status=AlertStatus(args.status) if args.status else None,
            since=since, limit=args.limit,
        )
        _emit(args, alerts.list_alerts(flt), _alert_line)
    elif args.action == "show":
        alert = alerts.show(args.id)
        _emit(args, {**alert.to_dict(), "destinations": alerts.route(alert)})
    elif args.action == "acknowledge":
        _emit(args, alerts.acknowledge(args.id, args.actor), _alert_line)
    elif args.action == "resolve":
        _emit(args, alerts.resolve(args.id, args.actor), _alert_line)
    elif args.action == "aggregate":
        _emit(args, alerts.aggregate(args.component, args.window), lambda g: (
            f"{g['component']}/{g['type']:<28s} {g['level']:<8s} alerts={g['count']}"
            f"  occurrences={g['occurrences']}"))
    elif args.action == "history":
        _emit(args, alerts.history(args.days, args.component), _alert_line)
    elif args.action == "stats":
        _emit(args, alerts.stats(args.days))
    else:
        _emit(args, {"purged": alerts.cleanup(args.retention_days)})
    return EXIT_OK


def cmd_escalation(engine, args):
    alerts = engine.alerts
    if args.action == "check":
        _emit(args, alerts.escalation_sweep(), lambda e: (
            f"{e['alert_id'][:12]}  L{e['from_level']} -> L{e['to_level']}"
            f"  recipients={','.join(e['recipients'])}"))
    elif args.action == "escalate":
        _emit(args, alerts.escalate(args.id, args.level))
    elif args.action == "rules":
        if args.json:
            _emit(args, {"escalation": alerts.policy.rules(),
                         "routing": [r.to_dict() for r in alerts.rules()]})
        else:
            for lvl in alerts.policy.rules():
                print(f"L{lvl['level']}  after {lvl['effective_minutes']} min"
                      f"  -> {','.join(lvl['recipients'])}")
            for rule in alerts.rules():
                print(f"route {rule.pattern:<48s} -> {','.join(rule.destinations)}")
    else:
        _emit(args, alerts.oncall())
    return EXIT_OK


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="shield", description="API security engine CLI")
    parser.add_argument("--config", default=None, help="YAML settings file")
    parser.add_argument("--json", action="store_true", help="Machine-readable output")
    parser.add_argument("--log-level", default="WARNING")
    groups = parser.add_subparsers(dest="group", required=True)

    # ratelimit
    rl = groups.add_parser("ratelimit", help="Rate limiter").add_subparsers(
        dest="action", required=True)
    for name in ("check", "record"):
        p = rl.add_parser(name)
        p.add_argument("--ip", required=True)
        p.add_argument("--api-key")
        p.add_argument("--endpoint")
        if name == "record":
            p.add_argument("--status", type=int)
            p.add_argument("--user-agent")
    p = rl.add_parser("stats")
    p.add_argument("--ip")
    p.add_argument("--endpoint")
    p.add_argument("--window", type=int, default=3600, help="Seconds")
    p.add_argument("--limit", type=int, default=20)
    p = rl.add_parser("reset")
    p.add_argument("--ip", required=True)
    p.add_argument("--endpoint")

    # ddos
    dd = groups.add_parser("ddos", help="Flood / DDoS detector").add_subparsers(
        dest="action", required=True)
    p = dd.add_parser("monitor")
    p.add_argument("--window", type=float, help="Detection window, seconds")
    p.add_argument("--interval", type=float, help="Repeat the sweep every N seconds")
    p.add_argument("--count", type=int, help="Stop after N sweeps")
    p = dd.add_parser("check")
    p.add_argument("subject")
    p.add_argument("--block", action="store_true")
    p = dd.add_parser("block")
    p.add_argument("subject")
    p.add_argument("--reason", default="manual DDoS block")
    p.add_argument("--actor")
    dd.add_parser("unblock").add_argument("subject")
    dd.add_parser("stats")

    # abuse
    ab = groups.add_parser("abuse", help="Abuse pattern analyzer").add_subparsers(
        dest="action", required=True)
    p = ab.add_parser("analyze")
    p.add_argument("subject")
    p.add_argument("--window", type=float, help="Analysis window, seconds")
    ab.add_parser("check").add_argument("subject")
    ab.add_parser("stats")
    ab.add_parser("patterns")

    # ipblock
    ib = groups.add_parser("ipblock", help="Whitelist / blacklist / temp blocks").add_subparsers(
        dest="action", required=True)
    lists = [t.value for t in ListType]
    p = ib.add_parser("add")
    p.add_argument("subject")
    p.add_argument("--list", required=True, choices=lists)
    p.add_argument("--reason", required=True)
    p.add_argument("--duration", type=float, help="Temp block minutes")
    p.add_argument("--override", action="store_true")
    p.add_argument("--actor")
    p = ib.add_parser("remove")
    p.add_argument("subject")
    p.add_argument("--list", required=True, choices=lists)
    p = ib.add_parser("list")
    p.add_argument("--membership", choices=[m.value for m in Membership])
    ib.add_parser("status").add_argument("subject")
    ib.add_parser("cleanup")

    # alerts
    al = groups.add_parser("alerts", help="Alert lifecycle").add_subparsers(
        dest="action", required=True)
    p = al.add_parser("list")
    p.add_argument("--component")
    p.add_argument("--level", choices=[v.value for v in AlertLevel])
    p.add_argument("--type")
    p.add_argument("--status", choices=[s.value for s in AlertStatus])
    p.add_argument("--since-hours", type=float)
    p.add_argument("--limit", type=int, default=50)
    al.add_parser("show").add_argument("id")
    for name in ("acknowledge", "resolve"):
        p = al.add_parser(name)
        p.add_argument("id")
        p.add_argument("--actor", required=True)
    p = al.add_parser("aggregate")
    p.add_argument("--component")
    p.add_argument("--window", type=float, help="Minutes")
    p = al.add_parser("history")
    p.add_argument("--days", type=float, default=7)
    p.add_argument("--component")
    al.add_parser("stats").add_argument("--days", type=float)
    al.add_parser("cleanup").add_argument("--retention-days", type=float)

    # escalation
    es = groups.add_parser("escalation", help="Escalation & routing").add_subparsers(
        dest="action", required=True)
    es.add_parser("check")
    p = es.add_parser("escalate")
    p.add_argument("id")
    p.add_argument("--level", type=int)
    es.add_parser("rules")
    es.add_parser("oncall")

    return parser


COMMANDS = {
    "ratelimit": cmd_ratelimit,
    "ddos": cmd_ddos,
    "abuse": cmd_abuse,
    "ipblock": cmd_ipblock,
    "alerts": cmd_alerts,
    "escalation": cmd_escalation,
}


def main(argv=None, engine=None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)
    owned = engine is None
    try:
        if owned:
            engine = build_engine(load_settings(args.config), notifier=LogNotifier())
        return COMMANDS[args.group](engine, args)
    except (ShieldError, ValueError) as e:
        print(f"error: {e}", file=sys.stderr)
        return EXIT_ERROR
    finally:
        if owned and engine is not None:
            engine.close()


if __name__ == "__main__":
    sys.exit(main())
