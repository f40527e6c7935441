"""Alert creation and throttled administrator notification."""

import asyncio
import logging
import time
from collections.abc import Callable
from datetime import UTC, datetime

from pydantic import BaseModel

from ..core.config import AlertsConfig
from ..core.errors import ConfigurationError, DeliveryFailure, PersistenceFailure
from ..core.events import RiskAssessment
from ..core.models import SEVERITY_ORDER, SecurityAlert, Severity
from ..core.settings import SettingsReader
from ..core.store import SecurityStore
from .templates import DEFAULT_TEMPLATE, AlertTemplate, parse_template, render_alert
from .transport import MailTransport, OutboundMessage

logger = logging.getLogger(__name__)


def severity_for_score(score: int) -> Severity:
    """Map a risk score to its severity band."""
    if score >= 80:
        return "critical"
    if score >= 60:
        return "high"
    if score >= 40:
        return "medium"
    return "low"


class _QueuedAlert(BaseModel):
    alert_id: int
    alert: SecurityAlert


class AlertNotificationDispatcher:
    """
    Persist security alerts and notify administrators.

    Notifications go through a single worker that drains the queue in
    enqueue order, one send at a time, keeping at least
    ``delivery_interval_seconds`` between consecutive sends so the mail
    relay is never burst. Delivery is fire-and-forget: failed sends are
    logged and not retried, and items still queued at ``close`` are dropped.
    """

    def __init__(
        self,
        store: SecurityStore,
        settings: SettingsReader,
        transport: MailTransport,
        config: AlertsConfig | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ):
        self.store = store
        self.settings = settings
        self.transport = transport
        self.config = config or AlertsConfig()
        self._clock = clock
        self._queue: asyncio.Queue[_QueuedAlert] = asyncio.Queue()
        self._worker: asyncio.Task | None = None
        self._last_send: float | None = None

    async def raise_alert(self, user_id: int, assessment: RiskAssessment) -> int:
        """
        Persist a login-anomaly alert and enqueue notification if eligible.

        Raises:
            PersistenceFailure: if the alert could not be stored
        """
        score = assessment.total_risk_score
        now = self._clock()
        alert = SecurityAlert(
            user_id=user_id,
            alert_type="login_anomaly",
            severity=severity_for_score(score),
            title=f"Login anomaly detected (risk score: {score})",
            description="Login behaviour shows the following anomalies:\n"
            + "\n".join(assessment.suspicious_reasons),
            data={
                "risk_score": score,
                "anomalies": [
                    anomaly.model_dump(mode="json") for anomaly in assessment.anomalies
                ],
                "location": assessment.location.model_dump(mode="json"),
                "device": assessment.device.model_dump(mode="json"),
                "timestamp": assessment.assessed_at.isoformat(),
            },
            created_at=now,
        )

        try:
            alert_id = await self.store.insert_alert(alert)
        except Exception as e:
            logger.error("Failed to store alert for user %s: %s", user_id, e)
            raise PersistenceFailure(f"Could not store alert: {e}") from e

        logger.info(
            "Created %s alert %s for user %s: %s",
            alert.severity,
            alert_id,
            user_id,
            alert.title,
        )

        if await self.should_notify(alert.severity):
            self._enqueue(_QueuedAlert(alert_id=alert_id, alert=alert))

        return alert_id

    async def raise_if_suspicious(
        self, user_id: int, assessment: RiskAssessment
    ) -> int | None:
        if not assessment.is_suspicious:
            return None
        return await self.raise_alert(user_id, assessment)

    async def resolve(self, alert_id: int, resolved_by: int, notes: str | None) -> bool:
        """
        Mark an alert resolved.

        Callers must reject already-resolved alerts before calling this.
        """
        try:
            resolved = await self.store.resolve_alert(
                alert_id, resolved_by, notes, self._clock()
            )
        except Exception as e:
            logger.error("Failed to resolve alert %s: %s", alert_id, e)
            raise PersistenceFailure(f"Could not resolve alert {alert_id}: {e}") from e

        if resolved:
            logger.info("Alert %s resolved by %s", alert_id, resolved_by)
        return resolved

    async def should_notify(self, severity: Severity) -> bool:
        """Administrators flag is on and severity meets the floor."""
        enabled = await self.settings.get_bool(
            "alert_administrators", self.config.notify_administrators
        )
        if not enabled:
            return False

        floor = await self.settings.get_str(
            "notification_severity_level", self.config.severity_floor
        )
        if floor not in SEVERITY_ORDER:
            logger.warning("Unknown notification severity floor %r", floor)
            floor = self.config.severity_floor
        return SEVERITY_ORDER[severity] >= SEVERITY_ORDER[floor]

    # Delivery queue

    def start(self):
        """Start the delivery worker if it is not running."""
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run())

    def _enqueue(self, item: _QueuedAlert):
        self._queue.put_nowait(item)
        logger.debug("Queued alert %s (%d pending)", item.alert_id, self.pending)
        self.start()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def join(self):
        """Wait until every queued alert has been delivered."""
        await self._queue.join()

    async def close(self):
        """Stop the worker. Alerts still queued are dropped."""
        dropped = 0
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()
            dropped += 1
        if dropped:
            logger.warning("Dropping %d undelivered alert notifications", dropped)

        if self._worker is not None:
            self._worker.cancel()
            await asyncio.gather(self._worker, return_exceptions=True)
            self._worker = None

    async def _run(self):
        while True:
            item = await self._queue.get()
            try:
                await self._deliver(item)
            except Exception as e:
                logger.error(
                    "Delivery of alert %s failed: %s", item.alert_id, e, exc_info=True
                )
            finally:
                self._queue.task_done()

    async def _load_template(self) -> tuple[AlertTemplate, bool]:
        """Return the template and whether to render HTML."""
        raw = await self.settings.get("alert_email_template")
        if raw is None:
            return DEFAULT_TEMPLATE, True
        try:
            return parse_template(raw), True
        except ConfigurationError as e:
            logger.error("Using default plain-text alert template: %s", e)
            return DEFAULT_TEMPLATE, False

    async def _deliver(self, item: _QueuedAlert):
        administrators = await self.store.list_active_administrators()
        if not administrators:
            logger.warning("No administrators to notify about alert %s", item.alert_id)
            return

        user = await self.store.get_user(item.alert.user_id)
        template, include_html = await self._load_template()
        rendered = render_alert(
            template, item.alert, user, self.config.console_url, include_html
        )

        delivered = 0
        for admin in administrators:
            message = OutboundMessage(
                to=admin.email,
                subject=rendered.subject,
                text=rendered.text,
                html=rendered.html,
            )
            try:
                await self._send_spaced(message)
                delivered += 1
            except DeliveryFailure as e:
                logger.error("Alert %s not delivered: %s", item.alert_id, e)
            except Exception as e:
                logger.error(
                    "Alert %s not delivered to %s: %s", item.alert_id, admin.email, e
                )

        logger.info(
            "Alert %s delivered to %d of %d administrators",
            item.alert_id,
            delivered,
            len(administrators),
        )

    async def _send_spaced(self, message: OutboundMessage):
        interval = self.config.delivery_interval_seconds
        if self._last_send is not None:
            # the event loop may wake a timer slightly early
            while (wait := self._last_send + interval - time.monotonic()) > 0:
                await asyncio.sleep(wait)
        try:
            await self.transport.send(message)
        finally:
            self._last_send = time.monotonic()
