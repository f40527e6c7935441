"""Login security service: wires detection, alerting and session management."""

import logging
from datetime import UTC, datetime, timedelta

from pydantic import BaseModel

from .alerts.dispatcher import AlertNotificationDispatcher
from .alerts.transport import LogTransport, MailTransport, SmtpTransport
from .core.config import Config
from .core.errors import (
    AlertAlreadyResolved,
    AlertNotFound,
    PersistenceFailure,
    UserNotFound,
)
from .core.events import LoginAttempt, RiskAssessment
from .core.models import (
    AlertStatistic,
    LoginRecord,
    LoginStatistics,
    SecurityAlert,
    TrustedDevice,
    UserInfo,
)
from .core.settings import SettingsReader
from .core.store import SecurityStore
from .detection.engine import AnomalyDetectionEngine, default_checks
from .geo.providers import build_providers
from .geo.resolver import GeoLocationResolver
from .rules.registry import RiskRuleRegistry

logger = logging.getLogger(__name__)

RECENT_ALERT_LIMIT = 10


class LoginDecision(BaseModel):
    """Outcome of a login as seen by the authentication handler."""

    assessment: RiskAssessment | None = None
    alert_id: int | None = None
    blocked: bool = False


class UserSecurityOverview(BaseModel):
    """Per-user summary shown in the security console."""

    user: UserInfo
    login_stats: LoginStatistics
    active_sessions: int
    trusted_devices: int
    recent_alerts: list[SecurityAlert]


class LoginSecurityService:
    """
    Entry point for authentication handlers and the security console.

    ``handle_login`` never raises: detection and alerting enrich an
    otherwise successful authentication and must not fail it. Whether a
    high-risk login is blocked is decided here from the assessment score,
    the engine only scores.
    """

    def __init__(
        self,
        config: Config,
        store: SecurityStore,
        settings: SettingsReader,
        resolver: GeoLocationResolver,
        registry: RiskRuleRegistry,
        engine: AnomalyDetectionEngine,
        dispatcher: AlertNotificationDispatcher,
    ):
        self.config = config
        self.store = store
        self.settings = settings
        self.resolver = resolver
        self.registry = registry
        self.engine = engine
        self.dispatcher = dispatcher

    async def start(self):
        """Load rules and start the notification worker."""
        await self.registry.load()
        self.dispatcher.start()

    async def close(self):
        await self.dispatcher.close()
        await self.resolver.close()

    async def handle_login(self, user_id: int, attempt: LoginAttempt) -> LoginDecision:
        try:
            assessment = await self.engine.detect(user_id, attempt)
        except Exception as e:
            logger.error("Login detection failed for user %s: %s", user_id, e)
            return LoginDecision()

        alert_id = None
        try:
            alert_id = await self.dispatcher.raise_if_suspicious(user_id, assessment)
        except PersistenceFailure as e:
            logger.error("Alert for user %s not raised: %s", user_id, e)

        blocked = await self.should_block(assessment)
        if blocked:
            logger.warning(
                "Blocking login for user %s from %s (risk score %d)",
                user_id,
                attempt.ip_address,
                assessment.total_risk_score,
            )
            if attempt.session_token_hash is not None:
                try:
                    await self.logout(attempt.session_token_hash)
                except Exception as e:
                    logger.error("Failed to end blocked session: %s", e)

        return LoginDecision(assessment=assessment, alert_id=alert_id, blocked=blocked)

    async def should_block(self, assessment: RiskAssessment) -> bool:
        enabled = await self.settings.get_bool(
            "auto_block_high_risk", self.config.alerts.auto_block_enabled
        )
        if not enabled:
            return False
        threshold = await self.settings.get_int(
            "auto_block_threshold", self.config.alerts.auto_block_threshold
        )
        return assessment.total_risk_score >= threshold

    async def detect(self, user_id: int, attempt: LoginAttempt) -> RiskAssessment:
        return await self.engine.detect(user_id, attempt)

    async def raise_if_suspicious(
        self, user_id: int, assessment: RiskAssessment
    ) -> int | None:
        return await self.dispatcher.raise_if_suspicious(user_id, assessment)

    async def resolve_alert(
        self, alert_id: int, resolved_by: int, notes: str | None = None
    ) -> SecurityAlert:
        """
        Resolve an open alert.

        Raises:
            AlertNotFound: if there is no such alert
            AlertAlreadyResolved: if the alert was resolved before
        """
        alert = await self.store.get_alert(alert_id)
        if alert is None:
            raise AlertNotFound(f"Alert {alert_id} not found")
        if alert.is_resolved:
            raise AlertAlreadyResolved(f"Alert {alert_id} is already resolved")

        await self.dispatcher.resolve(alert_id, resolved_by, notes)
        resolved = await self.store.get_alert(alert_id)
        return resolved or alert

    # Sessions

    async def logout(self, session_token_hash: str) -> bool:
        """Mark the session inactive. Returns False if it was not active."""
        ended = await self.store.deactivate_sessions(
            session_token_hash=session_token_hash, at=datetime.now(UTC)
        )
        return ended > 0

    async def terminate_sessions(
        self, user_id: int, session_token_hash: str | None = None
    ) -> int:
        """End one session of a user, or all of them when no token is given."""
        now = datetime.now(UTC)
        if session_token_hash is not None:
            records = await self.store.list_active_sessions()
            if not any(
                r.user_id == user_id and r.session_token_hash == session_token_hash
                for r in records
            ):
                return 0
            ended = await self.store.deactivate_sessions(
                session_token_hash=session_token_hash, at=now
            )
        else:
            ended = await self.store.deactivate_sessions(user_id=user_id, at=now)

        logger.info("Terminated %d sessions for user %s", ended, user_id)
        return ended

    async def active_sessions(self) -> list[LoginRecord]:
        return await self.store.list_active_sessions()

    # Trusted devices

    async def trusted_devices(self, user_id: int) -> list[TrustedDevice]:
        return await self.store.list_trusted_devices(user_id)

    async def revoke_trusted_device(self, user_id: int, fingerprint: str) -> bool:
        revoked = await self.store.revoke_trusted_device(user_id, fingerprint)
        if revoked:
            logger.info("Revoked trusted device %s of user %s", fingerprint, user_id)
        return revoked

    # Console queries

    async def list_alerts(
        self,
        severity: str | None = None,
        alert_type: str | None = None,
        resolved: bool | None = None,
        limit: int = 20,
        offset: int = 0,
        user_id: int | None = None,
    ) -> list[SecurityAlert]:
        return await self.store.list_alerts(
            user_id=user_id,
            severity=severity,
            alert_type=alert_type,
            resolved=resolved,
            limit=limit,
            offset=offset,
        )

    async def alert_statistics(self, days: int = 7) -> list[AlertStatistic]:
        since = datetime.now(UTC) - timedelta(days=days)
        return await self.store.alert_statistics(since)

    async def login_records(
        self,
        user_id: int | None = None,
        suspicious_only: bool = False,
        days: int = 7,
        limit: int = 50,
        offset: int = 0,
    ) -> list[LoginRecord]:
        since = datetime.now(UTC) - timedelta(days=days)
        return await self.store.list_login_records(
            since=since,
            user_id=user_id,
            suspicious_only=suspicious_only,
            limit=limit,
            offset=offset,
        )

    async def user_security_overview(
        self, user_id: int, days: int = 30
    ) -> UserSecurityOverview:
        """
        Summarise the security state of one user over the last ``days`` days.

        Raises:
            UserNotFound: if the user does not exist
        """
        user = await self.store.get_user(user_id)
        if user is None:
            raise UserNotFound(f"User {user_id} not found")

        since = datetime.now(UTC) - timedelta(days=days)
        return UserSecurityOverview(
            user=user,
            login_stats=await self.store.login_statistics(user_id, since),
            active_sessions=await self.store.count_active_sessions(user_id),
            trusted_devices=await self.store.count_trusted_devices(user_id),
            recent_alerts=await self.store.list_alerts(
                user_id=user_id, limit=RECENT_ALERT_LIMIT
            ),
        )


def build_transport(config: Config) -> MailTransport:
    if config.smtp.enabled:
        return SmtpTransport(config.smtp)
    return LogTransport()


def build_service(
    config: Config,
    store: SecurityStore,
    transport: MailTransport | None = None,
) -> LoginSecurityService:
    """Create a service with all components wired from configuration."""
    settings = SettingsReader(store)
    geo = config.geolocation
    resolver = GeoLocationResolver(
        store,
        build_providers(geo),
        provider=geo.provider,
        cache_ttl=timedelta(hours=geo.cache_ttl_hours),
        cache_retention=timedelta(days=geo.cache_retention_days),
        timeout_seconds=geo.timeout_seconds,
    )
    registry = RiskRuleRegistry(store)
    detection = config.detection
    engine = AnomalyDetectionEngine(
        store,
        resolver,
        default_checks(
            registry,
            store,
            settings,
            detection.max_concurrent_sessions,
            detection.recent_location_hours,
        ),
        settings,
        risk_threshold=detection.risk_threshold,
        trusted_device_max_score=detection.trusted_device_max_score,
    )
    dispatcher = AlertNotificationDispatcher(
        store, settings, transport or build_transport(config), config.alerts
    )
    return LoginSecurityService(
        config, store, settings, resolver, registry, engine, dispatcher
    )
