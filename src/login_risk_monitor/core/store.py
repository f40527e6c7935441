"""Storage collaborator interface and an in-memory implementation."""

import asyncio
import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Protocol

from .events import LocationInfo
from .models import (
    Administrator,
    AlertStatistic,
    GeoCacheEntry,
    LoginRecord,
    LoginStatistics,
    SecurityAlert,
    TrustedDevice,
    UserInfo,
)

logger = logging.getLogger(__name__)

RECENT_LOCATION_LIMIT = 5


class SecurityStore(Protocol):
    """Persistence operations consumed by the detection and alerting services."""

    async def find_recent_locations(
        self, user_id: int, within_hours: int, now: datetime
    ) -> list[LoginRecord]: ...

    async def find_trusted_device(
        self, user_id: int, fingerprint: str
    ) -> TrustedDevice | None: ...

    async def count_trusted_devices(self, user_id: int) -> int: ...

    async def upsert_trusted_device(self, device: TrustedDevice) -> None: ...

    async def list_trusted_devices(self, user_id: int) -> list[TrustedDevice]: ...

    async def revoke_trusted_device(self, user_id: int, fingerprint: str) -> bool: ...

    async def count_recent_attempts_from_ip(
        self, ip_address: str, within_minutes: int, now: datetime
    ) -> int: ...

    async def count_active_sessions(self, user_id: int) -> int: ...

    async def login_hour_histogram(
        self, user_id: int, within_days: int, now: datetime, min_count: int = 3
    ) -> list[tuple[int, int]]: ...

    async def get_cached_geo(self, ip_address: str) -> GeoCacheEntry | None: ...

    async def upsert_cached_geo(
        self, ip_address: str, location: LocationInfo, updated_at: datetime
    ) -> None: ...

    async def purge_geo_cache(self, older_than: datetime) -> int: ...

    async def load_enabled_rules(self) -> list[dict[str, Any]]: ...

    async def insert_login_record(self, record: LoginRecord) -> int: ...

    async def deactivate_sessions(
        self,
        *,
        session_token_hash: str | None = None,
        user_id: int | None = None,
        at: datetime,
    ) -> int: ...

    async def list_login_records(
        self,
        *,
        since: datetime,
        user_id: int | None = None,
        suspicious_only: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> list[LoginRecord]: ...

    async def list_active_sessions(self) -> list[LoginRecord]: ...

    async def login_statistics(
        self, user_id: int, since: datetime
    ) -> LoginStatistics: ...

    async def insert_alert(self, alert: SecurityAlert) -> int: ...

    async def get_alert(self, alert_id: int) -> SecurityAlert | None: ...

    async def resolve_alert(
        self, alert_id: int, resolved_by: int, notes: str | None, at: datetime
    ) -> bool: ...

    async def list_alerts(
        self,
        *,
        user_id: int | None = None,
        severity: str | None = None,
        alert_type: str | None = None,
        resolved: bool | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[SecurityAlert]: ...

    async def alert_statistics(self, since: datetime) -> list[AlertStatistic]: ...

    async def list_active_administrators(self) -> list[Administrator]: ...

    async def get_user(self, user_id: int) -> UserInfo | None: ...

    async def get_setting(self, key: str) -> Any: ...


class MemoryStore:
    """
    Process-local SecurityStore.

    Used by the command line, by tests and by embedders that do not have a
    relational backend. All operations are guarded by a single lock so
    concurrent detections see consistent snapshots.
    """

    def __init__(
        self,
        rules: list[dict[str, Any]] | None = None,
        settings: dict[str, Any] | None = None,
        administrators: list[Administrator] | None = None,
        users: list[UserInfo] | None = None,
    ):
        self.rules: list[dict[str, Any]] = list(rules or [])
        self.settings: dict[str, Any] = dict(settings or {})
        self.administrators: list[Administrator] = list(administrators or [])
        self.users: dict[int, UserInfo] = {user.id: user for user in users or []}
        self.login_records: list[LoginRecord] = []
        self.trusted_devices: dict[tuple[int, str], TrustedDevice] = {}
        self.geo_cache: dict[str, GeoCacheEntry] = {}
        self.alerts: dict[int, SecurityAlert] = {}
        self._next_record_id = 1
        self._next_alert_id = 1
        self._lock = asyncio.Lock()

    # Login history

    async def find_recent_locations(
        self, user_id: int, within_hours: int, now: datetime
    ) -> list[LoginRecord]:
        cutoff = now - timedelta(hours=within_hours)
        async with self._lock:
            records = [
                record
                for record in self.login_records
                if record.user_id == user_id
                and record.location.has_coordinates
                and cutoff <= record.login_time <= now
            ]
        records.sort(key=lambda record: record.login_time, reverse=True)
        return records[:RECENT_LOCATION_LIMIT]

    async def count_recent_attempts_from_ip(
        self, ip_address: str, within_minutes: int, now: datetime
    ) -> int:
        cutoff = now - timedelta(minutes=within_minutes)
        async with self._lock:
            return sum(
                1
                for record in self.login_records
                if record.ip_address == ip_address
                and cutoff <= record.login_time <= now
            )

    async def count_active_sessions(self, user_id: int) -> int:
        async with self._lock:
            return sum(
                1
                for record in self.login_records
                if record.user_id == user_id and record.is_active
            )

    async def login_hour_histogram(
        self, user_id: int, within_days: int, now: datetime, min_count: int = 3
    ) -> list[tuple[int, int]]:
        cutoff = now - timedelta(days=within_days)
        async with self._lock:
            hours = Counter(
                record.local_hour
                for record in self.login_records
                if record.user_id == user_id and cutoff <= record.login_time <= now
            )
        return sorted(
            ((hour, count) for hour, count in hours.items() if count >= min_count),
            key=lambda item: (-item[1], item[0]),
        )

    async def insert_login_record(self, record: LoginRecord) -> int:
        async with self._lock:
            record_id = self._next_record_id
            self._next_record_id += 1
            self.login_records.append(record.model_copy(update={"id": record_id}))
            return record_id

    async def deactivate_sessions(
        self,
        *,
        session_token_hash: str | None = None,
        user_id: int | None = None,
        at: datetime,
    ) -> int:
        if session_token_hash is None and user_id is None:
            raise ValueError("session_token_hash or user_id is required")

        updated = 0
        async with self._lock:
            for index, record in enumerate(self.login_records):
                if not record.is_active:
                    continue
                if session_token_hash is not None:
                    if record.session_token_hash != session_token_hash:
                        continue
                elif record.user_id != user_id:
                    continue
                self.login_records[index] = record.model_copy(
                    update={"is_active": False, "logout_time": at}
                )
                updated += 1
        return updated

    async def list_login_records(
        self,
        *,
        since: datetime,
        user_id: int | None = None,
        suspicious_only: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> list[LoginRecord]:
        async with self._lock:
            records = [
                record
                for record in self.login_records
                if record.login_time >= since
                and (user_id is None or record.user_id == user_id)
                and (not suspicious_only or record.is_suspicious)
            ]
        records.sort(key=lambda record: record.login_time, reverse=True)
        return records[offset : offset + limit]

    async def list_active_sessions(self) -> list[LoginRecord]:
        async with self._lock:
            records = [record for record in self.login_records if record.is_active]
        records.sort(key=lambda record: record.login_time, reverse=True)
        return records

    async def login_statistics(self, user_id: int, since: datetime) -> LoginStatistics:
        async with self._lock:
            records = [
                record
                for record in self.login_records
                if record.user_id == user_id and record.login_time >= since
            ]
        if not records:
            return LoginStatistics()

        return LoginStatistics(
            total_logins=len(records),
            unique_ips=len({record.ip_address for record in records}),
            unique_countries=len(
                {record.location.country for record in records} - {None}
            ),
            suspicious_logins=sum(1 for record in records if record.is_suspicious),
            avg_risk_score=sum(record.risk_score for record in records) / len(records),
            last_login_time=max(record.login_time for record in records),
        )

    # Trusted devices

    async def find_trusted_device(
        self, user_id: int, fingerprint: str
    ) -> TrustedDevice | None:
        async with self._lock:
            device = self.trusted_devices.get((user_id, fingerprint))
        if device is None or not device.trusted:
            return None
        return device

    async def count_trusted_devices(self, user_id: int) -> int:
        async with self._lock:
            return sum(
                1
                for (owner, _), device in self.trusted_devices.items()
                if owner == user_id and device.trusted
            )

    async def upsert_trusted_device(self, device: TrustedDevice) -> None:
        key = (device.user_id, device.fingerprint)
        async with self._lock:
            existing = self.trusted_devices.get(key)
            if existing is not None:
                device = existing.model_copy(
                    update={
                        "last_used": device.last_used,
                        "ip_address": device.ip_address,
                        "location": device.location,
                        "trusted": True,
                    }
                )
            self.trusted_devices[key] = device

    async def list_trusted_devices(self, user_id: int) -> list[TrustedDevice]:
        async with self._lock:
            devices = [
                device
                for (owner, _), device in self.trusted_devices.items()
                if owner == user_id and device.trusted
            ]
        devices.sort(key=lambda device: device.last_used, reverse=True)
        return devices

    async def revoke_trusted_device(self, user_id: int, fingerprint: str) -> bool:
        key = (user_id, fingerprint)
        async with self._lock:
            device = self.trusted_devices.get(key)
            if device is None or not device.trusted:
                return False
            self.trusted_devices[key] = device.model_copy(update={"trusted": False})
            return True

    # Geolocation cache

    async def get_cached_geo(self, ip_address: str) -> GeoCacheEntry | None:
        async with self._lock:
            return self.geo_cache.get(ip_address)

    async def upsert_cached_geo(
        self, ip_address: str, location: LocationInfo, updated_at: datetime
    ) -> None:
        async with self._lock:
            self.geo_cache[ip_address] = GeoCacheEntry(
                ip_address=ip_address, location=location, last_updated=updated_at
            )

    async def purge_geo_cache(self, older_than: datetime) -> int:
        async with self._lock:
            stale = [
                ip
                for ip, entry in self.geo_cache.items()
                if entry.last_updated < older_than
            ]
            for ip in stale:
                del self.geo_cache[ip]
        return len(stale)

    # Rules and settings

    async def load_enabled_rules(self) -> list[dict[str, Any]]:
        return [dict(rule) for rule in self.rules if rule.get("enabled", True)]

    async def get_setting(self, key: str) -> Any:
        return self.settings.get(key)

    # Alerts

    async def insert_alert(self, alert: SecurityAlert) -> int:
        async with self._lock:
            alert_id = self._next_alert_id
            self._next_alert_id += 1
            self.alerts[alert_id] = alert.model_copy(update={"id": alert_id})
            return alert_id

    async def get_alert(self, alert_id: int) -> SecurityAlert | None:
        async with self._lock:
            return self.alerts.get(alert_id)

    async def resolve_alert(
        self, alert_id: int, resolved_by: int, notes: str | None, at: datetime
    ) -> bool:
        async with self._lock:
            alert = self.alerts.get(alert_id)
            if alert is None:
                return False
            self.alerts[alert_id] = alert.model_copy(
                update={
                    "is_resolved": True,
                    "resolved_by": resolved_by,
                    "resolved_at": at,
                    "resolution_notes": notes,
                }
            )
            return True

    async def list_alerts(
        self,
        *,
        user_id: int | None = None,
        severity: str | None = None,
        alert_type: str | None = None,
        resolved: bool | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[SecurityAlert]:
        async with self._lock:
            alerts = [
                alert
                for alert in self.alerts.values()
                if (user_id is None or alert.user_id == user_id)
                and (severity is None or alert.severity == severity)
                and (alert_type is None or alert.alert_type == alert_type)
                and (resolved is None or alert.is_resolved == resolved)
            ]
        alerts.sort(key=lambda alert: (alert.created_at, alert.id), reverse=True)
        return alerts[offset : offset + limit]

    async def alert_statistics(self, since: datetime) -> list[AlertStatistic]:
        groups: dict[tuple[str, str], list[SecurityAlert]] = {}
        async with self._lock:
            for alert in self.alerts.values():
                if alert.created_at >= since:
                    groups.setdefault((alert.alert_type, alert.severity), []).append(
                        alert
                    )

        stats = [
            AlertStatistic(
                alert_type=alert_type,
                severity=severity,
                total_count=len(alerts),
                unresolved_count=sum(1 for alert in alerts if not alert.is_resolved),
                latest_alert=max(alert.created_at for alert in alerts),
            )
            for (alert_type, severity), alerts in groups.items()
        ]
        stats.sort(key=lambda stat: stat.total_count, reverse=True)
        return stats

    # Users

    async def list_active_administrators(self) -> list[Administrator]:
        return list(self.administrators)

    async def get_user(self, user_id: int) -> UserInfo | None:
        return self.users.get(user_id)
