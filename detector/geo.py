"""Geographic allow/deny gate.

Evaluated ahead of any rate-based check: a request from a blocked country
is denied without consuming rate-limit quota.  If the country can't be
determined the request is allowed; geo data is advisory, never a reason
to lock out unknown traffic.

Country lookup is injectable.  The default resolver answers from the
configured ``country_networks`` table (CIDR → ISO code), which is enough
for pinning known hosting ranges; deployments with a GeoIP database pass
their own callable.
"""

import ipaddress
from typing import Callable, Optional

import structlog

from shield.config import DDoSSettings

logger = structlog.get_logger()

CountryResolver = Callable[[str], Optional[str]]


class NetworkTableResolver:
    """Resolve IP → country from a static CIDR table (most specific wins)."""

    def __init__(self, table: dict[str, str]):
        self._networks = sorted(
            ((ipaddress.ip_network(cidr, strict=False), code.upper())
             for cidr, code in table.items()),
            key=lambda item: item[0].prefixlen,
            reverse=True,
        )

    def __call__(self, ip: str) -> Optional[str]:
        try:
            addr = ipaddress.ip_address(ip)
        except ValueError:
            return None
        for net, code in self._networks:
            if addr.version == net.version and addr in net:
                return code
        return None


class GeoFilter:

    def __init__(self, settings: DDoSSettings, resolver: Optional[CountryResolver] = None):
        self.enabled = settings.geo_filtering_enabled
        self.blocked = {c.upper() for c in settings.blocked_countries}
        self.allowed = {c.upper() for c in settings.allowed_countries}
        self.resolver = resolver or NetworkTableResolver(settings.country_networks)

    def country(self, ip: str) -> Optional[str]:
        return self.resolver(ip)

    def is_blocked(self, ip: str) -> bool:
        if not self.enabled:
            return False
        country = self.resolver(ip)
        if not country:
            return False
        country = country.upper()
        if country in self.blocked:
            logger.info("geo_blocked", ip=ip, country=country, list="blocked_countries")
            return True
        if self.allowed and country not in self.allowed:
            logger.info("geo_blocked", ip=ip, country=country, list="allowed_countries")
            return True
        return False
