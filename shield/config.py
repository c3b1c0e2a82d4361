"""Settings loaded from a YAML file.

Every threshold, window and duration the engine uses lives here with its
default.  A YAML file only needs the keys it overrides:

    rate_limit:
      per_ip_per_minute: 120
    ddos:
      blocked_countries: [XX, YY]

Unknown sections or keys, wrong types and non-positive thresholds raise
ConfigurationError naming the offending key, so a typo never silently
falls back to a default.
"""

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Optional

import yaml

from shield.errors import ConfigurationError


@dataclass
class RateLimitSettings:
    per_ip_per_minute: int = 60
    per_ip_per_hour: int = 1000
    per_ip_per_day: int = 10000
    per_api_key_per_minute: int = 100
    per_api_key_per_hour: int = 5000
    per_api_key_per_day: int = 50000
    per_endpoint_per_minute: int = 200
    per_endpoint_per_hour: int = 5000
    per_endpoint_per_day: int = 50000
    burst_size: int = 10
    burst_window_seconds: int = 5

    def limits_for(self, scope: str) -> dict[str, int]:
        prefix = {"api_key": "per_api_key", "endpoint": "per_endpoint"}.get(scope, "per_ip")
        return {
            tier: getattr(self, f"{prefix}_per_{tier}")
            for tier in ("minute", "hour", "day")
        }


@dataclass
class LifecycleSettings:
    # Temp-block durations for the 1st, 2nd and 3rd violation; the next
    # violation promotes the subject to the blacklist.
    block_ladder_minutes: list = field(default_factory=lambda: [15, 60, 1440])
    max_retries: int = 5


@dataclass
class DDoSSettings:
    enabled: bool = True
    requests_per_second_threshold: int = 100
    concurrent_threshold: int = 500
    detection_window_seconds: int = 60
    concurrency_window_seconds: int = 10
    auto_block_duration_minutes: int = 15
    geo_filtering_enabled: bool = False
    blocked_countries: list = field(default_factory=list)
    allowed_countries: list = field(default_factory=list)
    # CIDR -> ISO country code, used by the default country resolver.
    country_networks: dict = field(default_factory=dict)


@dataclass
class AbuseSettings:
    enabled: bool = True
    analysis_window_seconds: int = 300
    rapid_threshold_seconds: float = 0.1
    rapid_min_requests: int = 10
    error_rate_threshold: float = 0.5
    excessive_threshold: int = 1000
    single_endpoint_threshold: int = 500
    endpoint_diversity_threshold: int = 20
    user_agent_diversity_threshold: int = 10
    baseline_days: int = 7
    baseline_multiplier: float = 3.0
    action_threshold: float = 40.0
    weights: dict = field(default_factory=lambda: {
        "rapid_sequential_requests": 40,
        "excessive_requests": 40,
        "high_error_rate": 25,
        "single_endpoint_abuse": 25,
        "high_endpoint_diversity": 15,
        "high_user_agent_diversity": 15,
        "baseline_anomaly": 25,
    })


@dataclass
class AlertSettings:
    dedup_window_minutes: int = 60
    aggregation_window_minutes: int = 15
    retention_days: int = 180
    default_recipients: dict = field(default_factory=lambda: {
        "critical": ["admin@example.com"],
        "warning": ["admin@example.com"],
        "info": [],
    })


@dataclass
class EscalationSettings:
    enabled: bool = True
    level1_minutes: int = 15
    level2_minutes: int = 30
    level3_minutes: int = 60
    level1_recipients: list = field(default_factory=lambda: ["admin@example.com"])
    level2_recipients: list = field(default_factory=lambda: ["admin@example.com"])
    level3_recipients: list = field(default_factory=lambda: ["admin@example.com"])
    # Delay multiplier per alert level; levels not listed never escalate.
    level_multipliers: dict = field(default_factory=lambda: {"critical": 1, "warning": 2})
    oncall_rotation_enabled: bool = False
    oncall_primary: str = "admin@example.com"
    oncall_secondary: str = "admin@example.com"


@dataclass
class StoreSettings:
    url: str = "sqlite:///shield.db"
    timeout_seconds: float = 2.0
    event_retention_days: int = 7


@dataclass
class KafkaSettings:
    bootstrap_servers: str = "localhost:9092"
    events_topic: str = "raw-api-events"
    decisions_topic: str = "admission-decisions"
    alerts_topic: str = "alerts"
    notifications_topic: str = "notifications"


@dataclass
class SchedulerSettings:
    ddos_interval_seconds: int = 10
    abuse_interval_seconds: int = 60
    escalation_interval_seconds: int = 60
    cleanup_interval_seconds: int = 300
    alert_cleanup_interval_seconds: int = 86400


@dataclass
class Settings:
    rate_limit: RateLimitSettings = field(default_factory=RateLimitSettings)
    lifecycle: LifecycleSettings = field(default_factory=LifecycleSettings)
    ddos: DDoSSettings = field(default_factory=DDoSSettings)
    abuse: AbuseSettings = field(default_factory=AbuseSettings)
    alerts: AlertSettings = field(default_factory=AlertSettings)
    escalation: EscalationSettings = field(default_factory=EscalationSettings)
    store: StoreSettings = field(default_factory=StoreSettings)
    kafka: KafkaSettings = field(default_factory=KafkaSettings)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    # Alert routing rules: [{component, level, type, destinations}], '*' wildcards.
    routing: list = field(default_factory=list)
    # What the gateway does when the store is unreachable: closed | open.
    failure_policy: str = "closed"


# Settings that must be strictly positive.  Everything numeric not listed
# here must merely be non-negative.
_POSITIVE = {
    "burst_window_seconds", "requests_per_second_threshold", "concurrent_threshold",
    "detection_window_seconds", "concurrency_window_seconds",
    "auto_block_duration_minutes", "analysis_window_seconds",
    "rapid_threshold_seconds", "rapid_min_requests", "baseline_days",
    "baseline_multiplier", "dedup_window_minutes",
    "aggregation_window_minutes", "level1_minutes", "level2_minutes",
    "level3_minutes", "timeout_seconds", "max_retries",
}
_POSITIVE_PREFIXES = ("per_",)


def load_settings(path: Optional[str | Path] = None) -> Settings:
    """Parse *path* (YAML) into Settings.  No path → all defaults."""
    if path is None:
        return Settings()
    path = Path(path)
    if not path.is_file():
        raise ConfigurationError("configuration file not found", path=str(path))
    with open(path) as f:
        try:
            raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"invalid YAML: {e}", path=str(path)) from None
    return settings_from_dict(raw, source=path.name)


def settings_from_dict(raw: dict, source: str = "<dict>") -> Settings:
    if not isinstance(raw, dict):
        raise ConfigurationError("configuration root must be a mapping", source=source)

    settings = Settings()
    known = {f.name: f for f in fields(Settings)}
    for section, values in raw.items():
        if section not in known:
            raise ConfigurationError("unknown configuration section",
                                     key=section, source=source)
        current = getattr(settings, section)
        if section == "routing":
            setattr(settings, section, _validate_routing(values, source))
        elif section == "failure_policy":
            if values not in ("closed", "open"):
                raise ConfigurationError("failure_policy must be 'closed' or 'open'",
                                         key=section, source=source)
            settings.failure_policy = values
        else:
            setattr(settings, section, _merge_section(section, current, values, source))

    _validate(settings, source)
    return settings


def _merge_section(section, current, values, source):
    if values is None:
        return current
    if not isinstance(values, dict):
        raise ConfigurationError("section must be a mapping", key=section, source=source)
    allowed = {f.name: f for f in fields(current)}
    for key, value in values.items():
        if key not in allowed:
            raise ConfigurationError("unknown configuration key",
                                     key=f"{section}.{key}", source=source)
        default = getattr(current, key)
        setattr(current, key, _coerce(f"{section}.{key}", default, value, source))
    return current


def _coerce(key, default, value, source):
    if isinstance(default, bool):
        if not isinstance(value, bool):
            raise ConfigurationError("expected a boolean", key=key, source=source)
        return value
    if isinstance(default, (int, float)):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigurationError("expected a number", key=key, source=source)
        if isinstance(default, int) and not isinstance(default, bool):
            if isinstance(value, float) and not value.is_integer():
                raise ConfigurationError("expected an integer", key=key, source=source)
            return int(value)
        return float(value)
    if isinstance(default, list):
        if not isinstance(value, list):
            raise ConfigurationError("expected a list", key=key, source=source)
        return value
    if isinstance(default, dict):
        if not isinstance(value, dict):
            raise ConfigurationError("expected a mapping", key=key, source=source)
        return value
    if not isinstance(value, str):
        raise ConfigurationError("expected a string", key=key, source=source)
    return value


def _validate(settings: Settings, source: str) -> None:
    for f in fields(Settings):
        section = getattr(settings, f.name)
        if not hasattr(section, "__dataclass_fields__"):
            continue
        for sf in fields(section):
            value = getattr(section, sf.name)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                continue
            key = f"{f.name}.{sf.name}"
            if sf.name in _POSITIVE or sf.name.startswith(_POSITIVE_PREFIXES):
                if value <= 0:
                    raise ConfigurationError("must be positive", key=key, source=source)
            elif value < 0:
                raise ConfigurationError("must not be negative", key=key, source=source)

    ladder = settings.lifecycle.block_ladder_minutes
    if not ladder or any(
        isinstance(m, bool) or not isinstance(m, (int, float)) or m <= 0 for m in ladder
    ):
        raise ConfigurationError("must be a non-empty list of positive minutes",
                                 key="lifecycle.block_ladder_minutes", source=source)

    rate = settings.abuse.error_rate_threshold
    if not 0 <= rate <= 1:
        raise ConfigurationError("must be a fraction between 0 and 1",
                                 key="abuse.error_rate_threshold", source=source)

    esc = settings.escalation
    if not esc.level1_minutes <= esc.level2_minutes <= esc.level3_minutes:
        raise ConfigurationError("escalation delays must be non-decreasing",
                                 key="escalation", source=source)

    for name in ("blocked_countries", "allowed_countries"):
        codes = getattr(settings.ddos, name)
        setattr(settings.ddos, name, [str(c).strip().upper() for c in codes])


def _validate_routing(rules, source):
    if rules is None:
        return []
    if not isinstance(rules, list):
        raise ConfigurationError("routing must be a list of rules",
                                 key="routing", source=source)
    for i, rule in enumerate(rules):
        if not isinstance(rule, dict):
            raise ConfigurationError("routing rule must be a mapping",
                                     key=f"routing[{i}]", source=source)
        for required in ("component", "level", "type", "destinations"):
            if required not in rule:
                raise ConfigurationError(f"routing rule missing '{required}'",
                                         key=f"routing[{i}]", source=source)
        if not isinstance(rule["destinations"], list) or not rule["destinations"]:
            raise ConfigurationError("destinations must be a non-empty list",
                                     key=f"routing[{i}].destinations", source=source)
    return rules
