"""Geolocation providers and normalisation of their responses."""

import logging
from collections.abc import Callable
from typing import Any, Literal

import aiohttp
from pydantic import BaseModel, SecretStr, ValidationError

from ..core.config import GeolocationConfig
from ..core.errors import UpstreamUnavailable
from ..core.events import LocationInfo, ThreatLevel

logger = logging.getLogger(__name__)


class GeoProvider(BaseModel):
    """Upstream IP geolocation service."""

    name: str
    url: str  # endpoint template, "{ip}" is substituted
    token: SecretStr | None = None
    rate_limit_per_minute: int
    auth: Literal["none", "bearer", "basic"] = "none"

    def request_url(self, ip: str) -> str:
        return self.url.replace("{ip}", ip)

    def request_headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.auth == "bearer" and self.token:
            headers["Authorization"] = f"Bearer {self.token.get_secret_value()}"
        return headers

    def request_auth(self) -> aiohttp.BasicAuth | None:
        if self.auth != "basic" or not self.token:
            return None
        account, _, key = self.token.get_secret_value().partition(":")
        return aiohttp.BasicAuth(account, key)

    def normalize(self, data: Any) -> LocationInfo:
        """Convert a provider payload into the canonical LocationInfo."""
        if not isinstance(data, dict):
            raise UpstreamUnavailable(f"{self.name}: unexpected payload type")
        normalizer = NORMALIZERS.get(self.name)
        if normalizer is None:
            raise UpstreamUnavailable(f"No normaliser for provider {self.name}")
        try:
            return normalizer(data)
        except (AttributeError, KeyError, TypeError, ValueError, ValidationError) as e:
            raise UpstreamUnavailable(f"{self.name}: malformed payload: {e}") from e


def _threat_level(is_proxy: bool, is_vpn: bool, is_tor: bool) -> ThreatLevel:
    if is_tor:
        return "high"
    if is_proxy or is_vpn:
        return "medium"
    return "low"


def _coordinate(value: Any) -> float | None:
    if value is None or value == "":
        return None
    return float(value)


def normalize_ipapi(data: dict[str, Any]) -> LocationInfo:
    """ip-api.com JSON endpoint."""
    if data.get("status") != "success":
        raise UpstreamUnavailable(f"ipapi: {data.get('message', 'lookup failed')}")

    is_proxy = bool(data.get("proxy", False))
    return LocationInfo(
        country=data.get("country"),
        region=data.get("regionName"),
        city=data.get("city"),
        latitude=_coordinate(data.get("lat")),
        longitude=_coordinate(data.get("lon")),
        timezone=data.get("timezone"),
        isp=data.get("isp"),
        is_proxy=is_proxy,
        threat_level=_threat_level(is_proxy, False, False),
    )


def normalize_ipinfo(data: dict[str, Any]) -> LocationInfo:
    """ipinfo.io; privacy flags are only present on paid plans."""
    if "error" in data:
        raise UpstreamUnavailable(f"ipinfo: {data['error']}")
    if data.get("bogon"):
        raise UpstreamUnavailable("ipinfo: bogon address")

    latitude = longitude = None
    if data.get("loc"):
        lat_text, _, lon_text = data["loc"].partition(",")
        latitude, longitude = _coordinate(lat_text), _coordinate(lon_text)

    privacy = data.get("privacy") or {}
    is_proxy = bool(privacy.get("proxy", False))
    is_vpn = bool(privacy.get("vpn", False))
    is_tor = bool(privacy.get("tor", False))
    return LocationInfo(
        country=data.get("country"),
        region=data.get("region"),
        city=data.get("city"),
        latitude=latitude,
        longitude=longitude,
        timezone=data.get("timezone"),
        isp=data.get("org"),
        is_proxy=is_proxy,
        is_vpn=is_vpn,
        is_tor=is_tor,
        threat_level=_threat_level(is_proxy, is_vpn, is_tor),
    )


def _name(record: dict[str, Any] | None) -> str | None:
    if not record:
        return None
    return record.get("names", {}).get("en")


def normalize_maxmind(data: dict[str, Any]) -> LocationInfo:
    """MaxMind GeoIP2 City/Insights web service."""
    if "code" in data and "error" in data:
        raise UpstreamUnavailable(f"maxmind: {data['code']}: {data['error']}")

    location = data.get("location") or {}
    traits = data.get("traits") or {}
    subdivisions = data.get("subdivisions") or []
    is_proxy = bool(
        traits.get("is_public_proxy", False) or traits.get("is_anonymous_proxy", False)
    )
    is_vpn = bool(traits.get("is_anonymous_vpn", False))
    is_tor = bool(traits.get("is_tor_exit_node", False))
    return LocationInfo(
        country=_name(data.get("country")),
        region=_name(subdivisions[0]) if subdivisions else None,
        city=_name(data.get("city")),
        latitude=_coordinate(location.get("latitude")),
        longitude=_coordinate(location.get("longitude")),
        timezone=location.get("time_zone"),
        isp=traits.get("isp") or traits.get("organization"),
        is_proxy=is_proxy,
        is_vpn=is_vpn,
        is_tor=is_tor,
        threat_level=_threat_level(is_proxy, is_vpn, is_tor),
    )


NORMALIZERS: dict[str, Callable[[dict[str, Any]], LocationInfo]] = {
    "ipapi": normalize_ipapi,
    "ipinfo": normalize_ipinfo,
    "maxmind": normalize_maxmind,
}

DEFAULT_PROVIDERS: dict[str, GeoProvider] = {
    "ipapi": GeoProvider(
        name="ipapi",
        url=(
            "http://ip-api.com/json/{ip}"
            "?fields=status,message,country,regionName,city,lat,lon,timezone,isp,proxy"
        ),
        rate_limit_per_minute=45,
    ),
    "ipinfo": GeoProvider(
        name="ipinfo",
        url="https://ipinfo.io/{ip}/json",
        rate_limit_per_minute=1000,
        auth="bearer",
    ),
    "maxmind": GeoProvider(
        name="maxmind",
        url="https://geoip.maxmind.com/geoip/v2.1/city/{ip}",
        rate_limit_per_minute=1000,
        auth="basic",
    ),
}


def build_providers(config: GeolocationConfig) -> dict[str, GeoProvider]:
    """Apply configured overrides to the built-in provider table."""
    providers = {}
    for name, provider in DEFAULT_PROVIDERS.items():
        override = config.providers.get(name)
        if override is None:
            providers[name] = provider
            continue
        updates = {
            key: value
            for key, value in override.model_dump().items()
            if value is not None
        }
        providers[name] = provider.model_copy(update=updates)
    return providers
