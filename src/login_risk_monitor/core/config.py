"""Configuration handling for the login risk monitor."""

from pathlib import Path
from typing import Any, Literal

import toml
from pydantic import BaseModel, Field, SecretStr


class DetectionConfig(BaseModel):
    """Static defaults for the anomaly detection engine."""

    risk_threshold: int = 50
    trusted_device_max_score: int = 30
    max_concurrent_sessions: int = 5
    recent_location_hours: int = 24


class ProviderOverride(BaseModel):
    """Per-provider overrides for endpoint, credential and quota."""

    url: str | None = None
    token: SecretStr | None = None
    rate_limit_per_minute: int | None = None


class GeolocationConfig(BaseModel):
    """Geolocation resolver configuration."""

    provider: Literal["ipapi", "ipinfo", "maxmind"] = "ipapi"
    providers: dict[str, ProviderOverride] = {}
    cache_ttl_hours: int = 24
    cache_retention_days: int = 30
    timeout_seconds: float = 5.0


class AlertsConfig(BaseModel):
    """Alert creation and notification configuration."""

    notify_administrators: bool = True
    severity_floor: Literal["low", "medium", "high", "critical"] = "medium"
    delivery_interval_seconds: float = 1.0
    console_url: str = "http://localhost:3000/admin/security"
    auto_block_enabled: bool = False
    auto_block_threshold: int = 80


class SmtpConfig(BaseModel):
    """Outbound mail relay used for administrator notifications."""

    enabled: bool = False
    host: str = "localhost"
    port: int = 587
    starttls: bool = True
    username: str | None = None
    password: SecretStr | None = None
    sender: str = "security@localhost"
    timeout_seconds: float = 10.0


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"


class RuleConfig(BaseModel):
    """Raw detection rule row, as a storage backend would hold it."""

    name: str
    type: str
    risk_score: int
    enabled: bool = True
    description: str = ""
    conditions: dict[str, Any] | str = {}


def default_rules() -> list[RuleConfig]:
    """Rule set shipped with a fresh installation."""
    return [
        RuleConfig(
            name="geographic_anomaly",
            type="geographic",
            risk_score=25,
            description="Login far away from a recent login location",
            conditions={"max_distance_km": 500, "time_window_hours": 6},
        ),
        RuleConfig(
            name="ip_reputation",
            type="ip_reputation",
            risk_score=30,
            description="Login from a proxy, VPN, Tor exit or threat-listed address",
        ),
        RuleConfig(
            name="login_frequency",
            type="frequency",
            risk_score=20,
            description="Many login attempts from one address",
            conditions={"max_attempts": 10, "time_window_minutes": 30},
        ),
        RuleConfig(
            name="new_device",
            type="device",
            risk_score=15,
            description="Login from a device not yet trusted",
        ),
        RuleConfig(
            name="time_anomaly",
            type="time",
            risk_score=10,
            description="Login outside the usual hours",
            conditions={"normal_hours": list(range(6, 23))},
        ),
        RuleConfig(
            name="concurrent_sessions",
            type="concurrency",
            risk_score=25,
            description="Too many active sessions",
        ),
    ]


class Config(BaseModel):
    """Main configuration class."""

    detection: DetectionConfig = DetectionConfig()
    geolocation: GeolocationConfig = GeolocationConfig()
    alerts: AlertsConfig = AlertsConfig()
    smtp: SmtpConfig = SmtpConfig()
    logging: LoggingConfig = LoggingConfig()
    rules: list[RuleConfig] = Field(default_factory=default_rules)

    @classmethod
    def load(cls, config_path: Path) -> "Config":
        """Load configuration from TOML file."""
        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_path) as f:
            data = toml.load(f)

        return cls(**data)
