"""Records owned by the storage collaborator."""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, field_validator

from .events import DeviceInfo, LocationInfo, ensure_aware

Severity = Literal["low", "medium", "high", "critical"]

SEVERITY_ORDER: dict[str, int] = {"low": 0, "medium": 1, "high": 2, "critical": 3}


class GeoCacheEntry(BaseModel):
    """Cached geolocation for one IP address."""

    ip_address: str
    location: LocationInfo
    last_updated: datetime

    @field_validator("last_updated")
    @classmethod
    def _aware_last_updated(cls, value: datetime) -> datetime:
        return ensure_aware(value)


class LoginRecord(BaseModel):
    """Persisted login, combining the attempt with its assessment."""

    id: int | None = None
    user_id: int
    session_token_hash: str | None = None
    ip_address: str
    user_agent: str = ""
    location: LocationInfo
    device: DeviceInfo
    device_fingerprint: str
    risk_score: int = 0
    is_suspicious: bool = False
    suspicious_reasons: list[str] = []
    login_time: datetime
    local_hour: int  # hour of day in the resolved timezone (UTC when unknown)
    is_active: bool = True
    logout_time: datetime | None = None

    @field_validator("login_time", "logout_time")
    @classmethod
    def _aware_times(cls, value: datetime | None) -> datetime | None:
        return value if value is None else ensure_aware(value)


class TrustedDevice(BaseModel):
    """A device fingerprint previously seen on a low-risk login."""

    user_id: int
    fingerprint: str
    name: str
    device: DeviceInfo
    ip_address: str
    location: str
    first_seen: datetime
    last_used: datetime
    trusted: bool = True

    @field_validator("first_seen", "last_used")
    @classmethod
    def _aware_times(cls, value: datetime) -> datetime:
        return ensure_aware(value)


class SecurityAlert(BaseModel):
    """Administrative security alert. Open until resolved, never re-opened."""

    id: int | None = None
    user_id: int
    alert_type: str
    severity: Severity
    title: str
    description: str
    data: dict[str, Any] = {}
    created_at: datetime
    is_resolved: bool = False
    resolved_by: int | None = None
    resolved_at: datetime | None = None
    resolution_notes: str | None = None

    @field_validator("created_at", "resolved_at")
    @classmethod
    def _aware_times(cls, value: datetime | None) -> datetime | None:
        return value if value is None else ensure_aware(value)


class Administrator(BaseModel):
    """Notification recipient."""

    id: int
    email: str
    username: str | None = None


class UserInfo(BaseModel):
    """Identity details used when rendering alert notifications."""

    id: int
    username: str
    email: str | None = None
    created_at: datetime | None = None


class AlertStatistic(BaseModel):
    """Alert counts grouped by type and severity."""

    alert_type: str
    severity: Severity
    total_count: int
    unresolved_count: int
    latest_alert: datetime


class LoginStatistics(BaseModel):
    """Aggregate login history of one user over a period."""

    total_logins: int = 0
    unique_ips: int = 0
    unique_countries: int = 0
    suspicious_logins: int = 0
    avg_risk_score: float | None = None
    last_login_time: datetime | None = None
