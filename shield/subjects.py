"""Subject validation and identifier construction.

A *subject* is what the lifecycle manager blocks or allows: an IP address,
an API key (``api_key:<token>``) or, for white/blacklists only, a CIDR
network.  An *identifier* is what the rate limiter counts against, chosen by
precedence API key > endpoint > IP.
"""

import ipaddress
import re

from shield.errors import InvalidSubject
from shield.models import Subjects

API_KEY_PREFIX = "api_key:"
_API_KEY_RE = re.compile(r"^[A-Za-z0-9_\-]{8,128}$")
_ENDPOINT_RE = re.compile(r"^/[\x21-\x7e]{0,254}$")


def validate_ip(value: str) -> str:
    """Return the canonical text form of an IP address."""
    try:
        return str(ipaddress.ip_address(value.strip()))
    except (ValueError, AttributeError):
        raise InvalidSubject("malformed IP address", subject=value) from None


def validate_api_key(value: str) -> str:
    if not isinstance(value, str) or not _API_KEY_RE.match(value):
        raise InvalidSubject("malformed API key", subject=_mask(value))
    return value


def validate_endpoint(value: str) -> str:
    if not isinstance(value, str) or not _ENDPOINT_RE.match(value):
        raise InvalidSubject("malformed endpoint", endpoint=value)
    return value


def normalize_subject(value: str, allow_network: bool = False) -> str:
    """Canonicalize a lifecycle subject.

    Accepts ``api_key:<token>``, a bare IP address, or (when
    ``allow_network``) a CIDR network such as ``10.0.0.0/8``.
    """
    if not isinstance(value, str) or not value.strip():
        raise InvalidSubject("empty subject", subject=value)
    value = value.strip()
    if value.startswith(API_KEY_PREFIX):
        return API_KEY_PREFIX + validate_api_key(value[len(API_KEY_PREFIX):])
    if "/" in value:
        if not allow_network:
            raise InvalidSubject("networks are only valid on white/blacklists",
                                 subject=value)
        try:
            net = ipaddress.ip_network(value, strict=False)
        except ValueError:
            raise InvalidSubject("malformed network", subject=value) from None
        if net.num_addresses == 1:
            return str(net.network_address)
        return str(net)
    return validate_ip(value)


def is_network(subject: str) -> bool:
    return "/" in subject


def network_contains(network: str, ip: str) -> bool:
    try:
        return ipaddress.ip_address(ip) in ipaddress.ip_network(network)
    except ValueError:
        return False


def validate_subjects(subjects: Subjects) -> Subjects:
    return Subjects(
        ip=validate_ip(subjects.ip),
        api_key=validate_api_key(subjects.api_key) if subjects.api_key else None,
        endpoint=validate_endpoint(subjects.endpoint) if subjects.endpoint else None,
    )


def identifier_for(subjects: Subjects) -> tuple[str, str]:
    """Return ``(scope, identifier)`` for the highest-priority subject present."""
    if subjects.api_key:
        return "api_key", API_KEY_PREFIX + subjects.api_key
    if subjects.endpoint:
        return "endpoint", f"{subjects.ip}:{subjects.endpoint}"
    return "ip", subjects.ip


def lifecycle_subjects(subjects: Subjects) -> list[str]:
    """Subjects consulted by the lifecycle precedence check, key first."""
    found = []
    if subjects.api_key:
        found.append(API_KEY_PREFIX + subjects.api_key)
    found.append(subjects.ip)
    return found


def _mask(value) -> str:
    if not isinstance(value, str):
        return repr(value)
    return value[:4] + "…" if len(value) > 4 else value
