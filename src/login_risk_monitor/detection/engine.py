"""Anomaly detection engine: scores one login attempt."""

import logging
from datetime import UTC

from ..core.events import LoginAttempt, RiskAssessment
from ..core.models import LoginRecord, TrustedDevice
from ..core.settings import SettingsReader
from ..core.store import SecurityStore
from ..geo.resolver import GeoLocationResolver
from ..rules.registry import RiskRuleRegistry
from .checks import (
    Check,
    ConcurrentSessionsCheck,
    DetectionContext,
    FrequencyCheck,
    GeographicCheck,
    IpReputationCheck,
    NewDeviceCheck,
    TimeOfDayCheck,
    local_hour,
)
from .device import device_fingerprint, parse_device

logger = logging.getLogger(__name__)


def default_checks(
    registry: RiskRuleRegistry,
    store: SecurityStore,
    settings: SettingsReader,
    max_concurrent_sessions: int = 5,
    recent_location_hours: int = 24,
) -> list[Check]:
    """The standard check pipeline, in evaluation order."""
    return [
        GeographicCheck(registry, store, recent_location_hours),
        IpReputationCheck(registry),
        FrequencyCheck(registry, store),
        NewDeviceCheck(registry, store),
        TimeOfDayCheck(registry, store),
        ConcurrentSessionsCheck(registry, store, settings, max_concurrent_sessions),
    ]


class AnomalyDetectionEngine:
    """
    Run every check against a login attempt and aggregate the result.

    Each check is fail-soft: an error inside one check is logged and that
    check counts as not anomalous. Persisting the login record and the
    trusted device is best effort, the assessment is returned regardless.
    """

    def __init__(
        self,
        store: SecurityStore,
        resolver: GeoLocationResolver,
        checks: list[Check],
        settings: SettingsReader,
        risk_threshold: int = 50,
        trusted_device_max_score: int = 30,
    ):
        self.store = store
        self.resolver = resolver
        self.checks = checks
        self.settings = settings
        self.risk_threshold = risk_threshold
        self.trusted_device_max_score = trusted_device_max_score

    async def detect(self, user_id: int, attempt: LoginAttempt) -> RiskAssessment:
        """
        Assess one login attempt.

        Args:
            user_id: The authenticated user
            attempt: Source address, user agent, session and timestamp

        Returns:
            RiskAssessment with the triggered anomalies in check order

        Raises:
            ValueError: if the attempt belongs to a different user
        """
        if attempt.user_id != user_id:
            raise ValueError(
                f"Login attempt for user {attempt.user_id} assessed as user {user_id}"
            )

        location = await self.resolver.resolve(attempt.ip_address)
        device = parse_device(attempt.user_agent)
        fingerprint = device_fingerprint(device, attempt.ip_address)
        context = DetectionContext(
            user_id=user_id,
            attempt=attempt,
            location=location,
            device=device,
            fingerprint=fingerprint,
        )

        anomalies = []
        for check in self.checks:
            try:
                anomaly = await check.evaluate(context)
            except Exception as e:
                logger.error(
                    "Check %s failed for user %s: %s",
                    check.name,
                    user_id,
                    e,
                    exc_info=True,
                )
                continue
            if anomaly is not None:
                anomalies.append(anomaly)

        total = sum(anomaly.risk_score for anomaly in anomalies)
        threshold = await self.settings.get_int("risk_threshold", self.risk_threshold)
        assessment = RiskAssessment(
            total_risk_score=total,
            is_suspicious=total >= threshold,
            threshold=threshold,
            anomalies=tuple(anomalies),
            location=location,
            device=device,
            device_fingerprint=fingerprint,
            assessed_at=attempt.timestamp,
        )

        if assessment.is_suspicious:
            logger.warning(
                "Suspicious login for user %s from %s (risk score %d): %s",
                user_id,
                attempt.ip_address,
                total,
                "; ".join(assessment.suspicious_reasons),
            )
        else:
            logger.info(
                "Login for user %s from %s scored %d",
                user_id,
                attempt.ip_address,
                total,
            )

        await self._record_login(user_id, attempt, assessment)
        if total < self.trusted_device_max_score:
            await self._trust_device(user_id, attempt, assessment)

        return assessment

    async def _record_login(
        self, user_id: int, attempt: LoginAttempt, assessment: RiskAssessment
    ):
        hour = local_hour(attempt.timestamp, assessment.location.timezone)
        if hour is None:
            hour = attempt.timestamp.astimezone(UTC).hour
        record = LoginRecord(
            user_id=user_id,
            session_token_hash=attempt.session_token_hash,
            ip_address=attempt.ip_address,
            user_agent=attempt.user_agent,
            location=assessment.location,
            device=assessment.device,
            device_fingerprint=assessment.device_fingerprint,
            risk_score=assessment.total_risk_score,
            is_suspicious=assessment.is_suspicious,
            suspicious_reasons=assessment.suspicious_reasons,
            login_time=attempt.timestamp,
            local_hour=hour,
        )
        try:
            await self.store.insert_login_record(record)
        except Exception as e:
            logger.error("Failed to record login for user %s: %s", user_id, e)

    async def _trust_device(
        self, user_id: int, attempt: LoginAttempt, assessment: RiskAssessment
    ):
        device = TrustedDevice(
            user_id=user_id,
            fingerprint=assessment.device_fingerprint,
            name=assessment.device.name,
            device=assessment.device,
            ip_address=attempt.ip_address,
            location=assessment.location.label,
            first_seen=attempt.timestamp,
            last_used=attempt.timestamp,
        )
        try:
            await self.store.upsert_trusted_device(device)
        except Exception as e:
            logger.error("Failed to trust device for user %s: %s", user_id, e)
