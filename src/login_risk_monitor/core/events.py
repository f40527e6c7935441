"""Event and assessment definitions for login risk detection."""

from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

ThreatLevel = Literal["low", "medium", "high"]
DeviceType = Literal["desktop", "mobile", "tablet"]


def ensure_aware(value: datetime) -> datetime:
    """Treat naive timestamps as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class LoginAttempt(BaseModel):
    """Represents a single successful authentication to be assessed."""

    user_id: int
    ip_address: str
    user_agent: str = ""
    session_token_hash: str | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("timestamp")
    @classmethod
    def _aware_timestamp(cls, value: datetime) -> datetime:
        return ensure_aware(value)


class LocationInfo(BaseModel):
    """Canonical geolocation and reputation data for one IP address."""

    model_config = ConfigDict(frozen=True)

    country: str | None = "Unknown"
    region: str | None = "Unknown"
    city: str | None = "Unknown"
    latitude: float | None = None
    longitude: float | None = None
    timezone: str | None = None
    isp: str | None = "Unknown"
    is_proxy: bool = False
    is_vpn: bool = False
    is_tor: bool = False
    threat_level: ThreatLevel = "low"

    @classmethod
    def unknown(cls) -> "LocationInfo":
        """Conservative result used whenever an address cannot be resolved."""
        return cls()

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    @property
    def label(self) -> str:
        return f"{self.city or 'Unknown'}, {self.country or 'Unknown'}"


class DeviceInfo(BaseModel):
    """Device description derived from a user-agent string."""

    model_config = ConfigDict(frozen=True)

    device_type: DeviceType = "desktop"
    browser: str = "Other"
    os: str = "Other"

    @property
    def name(self) -> str:
        return f"{self.browser} on {self.os}"


class Anomaly(BaseModel):
    """One triggered detection check."""

    model_config = ConfigDict(frozen=True)

    type: str
    risk_score: int
    reason: str
    details: dict[str, Any] = {}


class RiskAssessment(BaseModel):
    """Outcome of running every check against one login attempt."""

    model_config = ConfigDict(frozen=True)

    total_risk_score: int
    is_suspicious: bool
    threshold: int
    anomalies: tuple[Anomaly, ...] = ()
    location: LocationInfo
    device: DeviceInfo
    device_fingerprint: str
    assessed_at: datetime

    @computed_field
    @property
    def suspicious_reasons(self) -> list[str]:
        return [anomaly.reason for anomaly in self.anomalies]
