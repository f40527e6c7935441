"""Individual anomaly checks run by the detection engine."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import ClassVar
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel

from ..core.errors import RuleMissing
from ..core.events import Anomaly, DeviceInfo, LocationInfo, LoginAttempt
from ..core.settings import SettingsReader
from ..core.store import SecurityStore
from ..geo.resolver import distance_km
from ..rules.registry import (
    ConcurrencyCondition,
    DeviceCondition,
    FrequencyCondition,
    GeographicCondition,
    IpReputationCondition,
    RiskRuleRegistry,
    TimeCondition,
)

logger = logging.getLogger(__name__)

CONCURRENT_SESSIONS_SCORE = 25


def local_hour(timestamp: datetime, timezone: str | None) -> int | None:
    """Hour of day of ``timestamp`` in ``timezone``, or None if unknown."""
    if not timezone:
        return None
    try:
        return timestamp.astimezone(ZoneInfo(timezone)).hour
    except (ZoneInfoNotFoundError, ValueError):
        logger.debug("Unknown timezone %r", timezone)
        return None


@dataclass(frozen=True)
class DetectionContext:
    """Everything a check may look at for one login attempt."""

    user_id: int
    attempt: LoginAttempt
    location: LocationInfo
    device: DeviceInfo
    fingerprint: str

    @property
    def now(self) -> datetime:
        return self.attempt.timestamp


class Check(ABC):
    """One detection check: returns an Anomaly when it triggers."""

    name: ClassVar[str]

    @abstractmethod
    async def evaluate(self, context: DetectionContext) -> Anomaly | None: ...


class RuleCheck(Check):
    """Check driven by a named rule; a missing rule disables the check."""

    rule_name: ClassVar[str]
    condition_type: ClassVar[type[BaseModel]]

    def __init__(self, registry: RiskRuleRegistry):
        self.registry = registry

    async def evaluate(self, context: DetectionContext) -> Anomaly | None:
        try:
            rule, condition = self.registry.require(
                self.rule_name, self.condition_type
            )
        except RuleMissing:
            logger.debug("Check %s disabled: no rule %s", self.name, self.rule_name)
            return None
        return await self.evaluate_rule(context, rule.risk_score, condition)

    @abstractmethod
    async def evaluate_rule(
        self, context: DetectionContext, score: int, condition
    ) -> Anomaly | None: ...


class GeographicCheck(RuleCheck):
    """Impossible-travel check against the user's recent login locations."""

    name = "geographic_anomaly"
    rule_name = "geographic_anomaly"
    condition_type = GeographicCondition

    def __init__(
        self, registry: RiskRuleRegistry, store: SecurityStore, within_hours: int = 24
    ):
        super().__init__(registry)
        self.store = store
        self.within_hours = within_hours

    async def evaluate_rule(
        self, context: DetectionContext, score: int, condition: GeographicCondition
    ) -> Anomaly | None:
        current = context.location
        if not current.has_coordinates:
            return None

        recent = await self.store.find_recent_locations(
            context.user_id, self.within_hours, context.now
        )
        for prior in recent:
            distance = distance_km(
                current.latitude,
                current.longitude,
                prior.location.latitude,
                prior.location.longitude,
            )
            if distance is None:
                continue
            elapsed_hours = (context.now - prior.login_time).total_seconds() / 3600
            if (
                distance > condition.max_distance_km
                and elapsed_hours < condition.time_window_hours
            ):
                return Anomaly(
                    type=self.name,
                    risk_score=score,
                    reason=(
                        f"Moved from {prior.location.city} ({prior.location.country}) "
                        f"to {current.city} ({current.country}), "
                        f"{distance:.0f} km in {elapsed_hours:.1f} hours"
                    ),
                    details={
                        "distance_km": round(distance, 1),
                        "elapsed_hours": round(elapsed_hours, 2),
                        "previous_location": prior.location.label,
                        "current_location": current.label,
                    },
                )
        return None


class IpReputationCheck(RuleCheck):
    """Proxy, VPN and Tor flags and the provider's threat level."""

    name = "ip_reputation"
    rule_name = "ip_reputation"
    condition_type = IpReputationCondition

    async def evaluate_rule(
        self, context: DetectionContext, score: int, condition: IpReputationCondition
    ) -> Anomaly | None:
        location = context.location
        factors: list[tuple[str, int]] = []

        if location.is_proxy:
            factors.append(("proxy server", condition.proxy_score))
        if location.is_vpn:
            factors.append(("VPN", condition.vpn_score))
        if location.is_tor:
            factors.append(("Tor network", condition.tor_score))
        if location.threat_level == "high":
            factors.append(("high-threat address", condition.high_threat_score))
        elif location.threat_level == "medium":
            factors.append(("medium-threat address", condition.medium_threat_score))

        if not factors:
            return None

        names = [name for name, _ in factors]
        return Anomaly(
            type=self.name,
            risk_score=min(sum(points for _, points in factors), score),
            reason=f"Login from a suspicious address: {', '.join(names)}",
            details={
                "suspicious_factors": names,
                "threat_level": location.threat_level,
            },
        )


class FrequencyCheck(RuleCheck):
    """Burst of logins from one address."""

    name = "login_frequency"
    rule_name = "login_frequency"
    condition_type = FrequencyCondition

    def __init__(self, registry: RiskRuleRegistry, store: SecurityStore):
        super().__init__(registry)
        self.store = store

    async def evaluate_rule(
        self, context: DetectionContext, score: int, condition: FrequencyCondition
    ) -> Anomaly | None:
        ip = context.attempt.ip_address
        attempts = await self.store.count_recent_attempts_from_ip(
            ip, condition.time_window_minutes, context.now
        )
        if attempts < condition.max_attempts:
            return None

        return Anomaly(
            type=self.name,
            risk_score=score,
            reason=(
                f"{attempts} login attempts from {ip} "
                f"within {condition.time_window_minutes} minutes"
            ),
            details={
                "attempt_count": attempts,
                "time_window_minutes": condition.time_window_minutes,
                "ip_address": ip,
            },
        )


class NewDeviceCheck(RuleCheck):
    """Device not yet trusted by a user who already trusts some device."""

    name = "new_device"
    rule_name = "new_device"
    condition_type = DeviceCondition

    def __init__(self, registry: RiskRuleRegistry, store: SecurityStore):
        super().__init__(registry)
        self.store = store

    async def evaluate_rule(
        self, context: DetectionContext, score: int, condition: DeviceCondition
    ) -> Anomaly | None:
        known = await self.store.find_trusted_device(
            context.user_id, context.fingerprint
        )
        if known is not None:
            return None

        # the very first device is never flagged
        if await self.store.count_trusted_devices(context.user_id) == 0:
            return None

        device = context.device
        return Anomaly(
            type=self.name,
            risk_score=score,
            reason=(
                f"Login from a new device: {device.device_type} - "
                f"{device.browser} on {device.os}"
            ),
            details={
                "device_fingerprint": context.fingerprint,
                "device": device.model_dump(),
            },
        )


class TimeOfDayCheck(RuleCheck):
    """Login hour outside the user's habitual hours (or the global normal hours)."""

    name = "time_anomaly"
    rule_name = "time_anomaly"
    condition_type = TimeCondition

    def __init__(self, registry: RiskRuleRegistry, store: SecurityStore):
        super().__init__(registry)
        self.store = store

    async def evaluate_rule(
        self, context: DetectionContext, score: int, condition: TimeCondition
    ) -> Anomaly | None:
        timezone = context.location.timezone
        hour = local_hour(context.now, timezone)
        if hour is None:
            return None

        histogram = await self.store.login_hour_histogram(
            context.user_id,
            condition.history_days,
            context.now,
            condition.min_logins_per_hour,
        )
        if histogram:
            usual_hours = sorted(h for h, _ in histogram)
            if hour in usual_hours:
                return None
            return Anomaly(
                type=self.name,
                risk_score=score,
                reason=(
                    f"Login at unusual time {hour:02d}:00 (user usually logs in at "
                    f"{', '.join(str(h) for h in usual_hours)})"
                ),
                details={
                    "current_hour": hour,
                    "user_normal_hours": usual_hours,
                    "timezone": timezone,
                },
            )

        if hour in condition.normal_hours:
            return None
        normal_hours = sorted(condition.normal_hours)
        return Anomaly(
            type=self.name,
            risk_score=score,
            reason=(
                f"Login at unusual time {hour:02d}:00 (normal hours are "
                f"{', '.join(str(h) for h in normal_hours)})"
            ),
            details={
                "current_hour": hour,
                "normal_hours": normal_hours,
                "timezone": timezone,
            },
        )


class ConcurrentSessionsCheck(Check):
    """Too many active sessions for the user. Runs with or without a rule."""

    name = "concurrent_sessions"
    rule_name = "concurrent_sessions"

    def __init__(
        self,
        registry: RiskRuleRegistry,
        store: SecurityStore,
        settings: SettingsReader,
        default_max_sessions: int = 5,
    ):
        self.registry = registry
        self.store = store
        self.settings = settings
        self.default_max_sessions = default_max_sessions

    async def _max_sessions(self) -> int:
        rule = self.registry.get(self.rule_name)
        if (
            rule is not None
            and isinstance(rule.condition, ConcurrencyCondition)
            and rule.condition.max_sessions is not None
        ):
            return rule.condition.max_sessions
        return await self.settings.get_int(
            "max_concurrent_sessions", self.default_max_sessions
        )

    async def evaluate(self, context: DetectionContext) -> Anomaly | None:
        max_sessions = await self._max_sessions()
        sessions = await self.store.count_active_sessions(context.user_id)
        if sessions < max_sessions:
            return None

        return Anomaly(
            type=self.name,
            risk_score=CONCURRENT_SESSIONS_SCORE,
            reason=(
                f"Too many concurrent sessions: {sessions} active "
                f"(maximum {max_sessions})"
            ),
            details={"session_count": sessions, "max_sessions": max_sessions},
        )
