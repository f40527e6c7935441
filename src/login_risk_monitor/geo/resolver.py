"""IP geolocation with persisted caching and per-provider rate limiting."""

import logging
import math
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from ipaddress import IPv4Address, IPv6Address, ip_address, ip_network

import aiohttp

from ..core.errors import UpstreamUnavailable
from ..core.events import LocationInfo
from ..core.ratelimit import RateLimiter, SlidingWindowRateLimiter
from ..core.singleflight import SingleFlight
from ..core.store import SecurityStore
from .providers import GeoProvider

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0

NON_ROUTABLE_NETWORKS = [
    ip_network("10.0.0.0/8"),
    ip_network("172.16.0.0/12"),
    ip_network("192.168.0.0/16"),
    ip_network("127.0.0.0/8"),
    ip_network("169.254.0.0/16"),
    ip_network("::1/128"),
    ip_network("fc00::/7"),
    ip_network("fe80::/10"),
]


def parse_ip(value: str) -> IPv4Address | IPv6Address | None:
    """Return the parsed address, or None if it is malformed."""
    try:
        return ip_address(value.strip())
    except (AttributeError, ValueError):
        return None


def is_non_routable(address: IPv4Address | IPv6Address) -> bool:
    """Private (RFC1918 / unique local), loopback or link-local."""
    if isinstance(address, IPv6Address) and address.ipv4_mapped is not None:
        address = address.ipv4_mapped
    return any(
        address.version == network.version and address in network
        for network in NON_ROUTABLE_NETWORKS
    )


def distance_km(
    lat1: float | None,
    lon1: float | None,
    lat2: float | None,
    lon2: float | None,
) -> float | None:
    """Great-circle distance using the haversine formula on a spherical Earth."""
    if lat1 is None or lon1 is None or lat2 is None or lon2 is None:
        return None

    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1))
        * math.cos(math.radians(lat2))
        * math.sin(d_lon / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


class GeoLocationResolver:
    """
    Resolve IP addresses to LocationInfo.

    ``resolve`` never raises: invalid or private addresses, upstream
    failures and an exhausted request budget all degrade to
    ``LocationInfo.unknown()``.
    """

    def __init__(
        self,
        store: SecurityStore,
        providers: dict[str, GeoProvider],
        provider: str = "ipapi",
        cache_ttl: timedelta = timedelta(hours=24),
        cache_retention: timedelta = timedelta(days=30),
        timeout_seconds: float = 5.0,
        rate_limiters: dict[str, RateLimiter] | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ):
        if provider not in providers:
            raise ValueError(f"Unknown geolocation provider: {provider}")

        self.store = store
        self.providers = providers
        self.provider_name = provider
        self.cache_ttl = cache_ttl
        self.cache_retention = cache_retention
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.rate_limiters: dict[str, RateLimiter] = rate_limiters or {
            name: SlidingWindowRateLimiter(p.rate_limit_per_minute, 60.0)
            for name, p in providers.items()
        }
        self._clock = clock
        self._session: aiohttp.ClientSession | None = None
        self._inflight: SingleFlight[LocationInfo] = SingleFlight()

    @property
    def provider(self) -> GeoProvider:
        return self.providers[self.provider_name]

    async def resolve(self, ip: str) -> LocationInfo:
        """Resolve one address, coalescing concurrent lookups for the same IP."""
        address = parse_ip(ip)
        if address is None:
            logger.debug("Not resolving malformed address %r", ip)
            return LocationInfo.unknown()
        if is_non_routable(address):
            logger.debug("Not resolving non-routable address %s", address)
            return LocationInfo.unknown()

        key = str(address)
        try:
            return await self._inflight.do(key, lambda: self._resolve(key))
        except Exception as e:
            logger.error("Geolocation of %s failed: %s", key, e, exc_info=True)
            return LocationInfo.unknown()

    async def _resolve(self, ip: str) -> LocationInfo:
        cached = await self._cached(ip)
        if cached is not None:
            return cached

        try:
            location = await self._fetch(ip)
        except UpstreamUnavailable as e:
            logger.warning("Geolocation unavailable for %s: %s", ip, e)
            return LocationInfo.unknown()

        try:
            await self.store.upsert_cached_geo(ip, location, self._clock())
        except Exception as e:
            logger.error("Failed to cache geolocation for %s: %s", ip, e)

        return location

    async def _cached(self, ip: str) -> LocationInfo | None:
        try:
            entry = await self.store.get_cached_geo(ip)
        except Exception as e:
            logger.error("Failed to read geolocation cache for %s: %s", ip, e)
            return None

        if entry is None:
            return None
        try:
            age = self._clock() - entry.last_updated
        except TypeError as e:
            logger.warning("Ignoring unreadable cache entry for %s: %s", ip, e)
            return None
        if age >= self.cache_ttl:
            logger.debug("Cached geolocation for %s expired", ip)
            return None
        return entry.location

    async def _fetch(self, ip: str) -> LocationInfo:
        """Query the active provider. Raises UpstreamUnavailable on any failure."""
        provider = self.provider
        limiter = self.rate_limiters.get(provider.name)
        if limiter is not None and not await limiter.try_acquire():
            raise UpstreamUnavailable(f"{provider.name} request budget exhausted")

        session = self._get_session()
        try:
            async with session.get(
                provider.request_url(ip),
                headers=provider.request_headers(),
                auth=provider.request_auth(),
                timeout=self.timeout,
            ) as response:
                if response.status < 200 or response.status >= 300:
                    raise UpstreamUnavailable(
                        f"{provider.name} returned HTTP {response.status}"
                    )
                data = await response.json(content_type=None)
        except UpstreamUnavailable:
            raise
        except TimeoutError as e:
            raise UpstreamUnavailable(f"{provider.name} timed out") from e
        except (aiohttp.ClientError, ValueError) as e:
            raise UpstreamUnavailable(f"{provider.name} request failed: {e}") from e

        return provider.normalize(data)

    def _get_session(self) -> aiohttp.ClientSession:
        """Return the shared HTTP session, creating it on first use."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def close(self):
        """Close the HTTP session."""
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def cleanup_cache(self) -> int:
        """Delete cache entries older than the retention period."""
        cutoff = self._clock() - self.cache_retention
        try:
            removed = await self.store.purge_geo_cache(cutoff)
        except Exception as e:
            logger.error("Failed to purge geolocation cache: %s", e)
            return 0
        logger.info("Purged %d expired geolocation cache entries", removed)
        return removed
