"""Tests for alert dispatcher."""

import asyncio
import logging
import time
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from login_risk_monitor.alerts.dispatcher import (
    AlertNotificationDispatcher,
    severity_for_score,
)
from login_risk_monitor.core.config import AlertsConfig
from login_risk_monitor.core.errors import DeliveryFailure, PersistenceFailure
from login_risk_monitor.core.events import (
    Anomaly,
    DeviceInfo,
    LocationInfo,
    RiskAssessment,
)
from login_risk_monitor.core.models import Administrator, UserInfo
from login_risk_monitor.core.settings import SettingsReader
from login_risk_monitor.core.store import MemoryStore

NOW = datetime(2024, 3, 12, 12, 0, tzinfo=UTC)
INTERVAL = 0.05

ADMINS = [
    Administrator(id=1, email="alice@example.com", username="alice"),
    Administrator(id=2, email="bob@example.com", username="bob"),
    Administrator(id=3, email="carol@example.com", username="carol"),
]


class RecordingTransport:
    """Records every send; fails for the given recipients."""

    def __init__(self, fail_for=()):
        self.fail_for = set(fail_for)
        self.attempts = []
        self.sent = []

    async def send(self, message):
        self.attempts.append((time.monotonic(), message.to))
        if message.to in self.fail_for:
            raise DeliveryFailure(f"relay refused {message.to}")
        self.sent.append(message)


def make_assessment(score: int) -> RiskAssessment:
    return RiskAssessment(
        total_risk_score=score,
        is_suspicious=score >= 50,
        threshold=50,
        anomalies=(
            Anomaly(
                type="geographic_anomaly",
                risk_score=score,
                reason="Moved from Berlin (Germany) to Budapest (Hungary)",
            ),
        ),
        location=LocationInfo(city="Budapest", country="Hungary"),
        device=DeviceInfo(browser="Chrome 120", os="Windows 10"),
        device_fingerprint="abc123",
        assessed_at=NOW,
    )


@pytest.fixture
def store():
    return MemoryStore(
        administrators=list(ADMINS),
        users=[UserInfo(id=7, username="mallory", email="mallory@example.com")],
    )


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
async def dispatcher(store, transport):
    dispatcher = AlertNotificationDispatcher(
        store,
        SettingsReader(store),
        transport,
        AlertsConfig(delivery_interval_seconds=INTERVAL),
        clock=lambda: NOW,
    )
    yield dispatcher
    await dispatcher.close()


@pytest.mark.parametrize(
    ("score", "severity"),
    [
        (0, "low"),
        (39, "low"),
        (40, "medium"),
        (59, "medium"),
        (60, "high"),
        (79, "high"),
        (80, "critical"),
        (150, "critical"),
    ],
)
def test_severity_bands(score, severity):
    assert severity_for_score(score) == severity


async def test_raise_alert_persists_alert(dispatcher, store):
    alert_id = await dispatcher.raise_alert(7, make_assessment(65))
    await dispatcher.join()

    alert = store.alerts[alert_id]
    assert alert.user_id == 7
    assert alert.alert_type == "login_anomaly"
    assert alert.severity == "high"
    assert alert.title == "Login anomaly detected (risk score: 65)"
    assert "Moved from Berlin" in alert.description
    assert alert.data["risk_score"] == 65
    assert alert.data["anomalies"][0]["type"] == "geographic_anomaly"
    assert alert.data["location"]["city"] == "Budapest"
    assert alert.data["device"]["browser"] == "Chrome 120"
    assert alert.created_at == NOW
    assert alert.is_resolved is False


async def test_alert_data_carries_login_time(dispatcher, store):
    login_time = NOW - timedelta(minutes=3)
    assessment = make_assessment(65).model_copy(update={"assessed_at": login_time})

    alert_id = await dispatcher.raise_alert(7, assessment)

    alert = store.alerts[alert_id]
    assert alert.data["timestamp"] == login_time.isoformat()
    assert alert.created_at == NOW


async def test_raise_if_suspicious_skips_low_scores(dispatcher, store):
    assert await dispatcher.raise_if_suspicious(7, make_assessment(45)) is None
    assert store.alerts == {}

    assert await dispatcher.raise_if_suspicious(7, make_assessment(50)) == 1


async def test_insert_failure_raises_persistence_failure(dispatcher, store):
    store.insert_alert = AsyncMock(side_effect=RuntimeError("db down"))

    with pytest.raises(PersistenceFailure):
        await dispatcher.raise_alert(7, make_assessment(90))
    assert dispatcher.pending == 0


async def test_one_send_per_administrator_spaced(dispatcher, transport):
    """Test that N administrators get N sends, at least one interval apart."""
    await dispatcher.raise_alert(7, make_assessment(85))
    await dispatcher.join()

    assert [to for _, to in transport.attempts] == [a.email for a in ADMINS]
    times = [at for at, _ in transport.attempts]
    assert all(b - a >= INTERVAL for a, b in zip(times, times[1:]))


async def test_deliveries_follow_enqueue_order(dispatcher, transport, store):
    store.administrators = ADMINS[:1]

    first = await dispatcher.raise_alert(7, make_assessment(85))
    second = await dispatcher.raise_alert(7, make_assessment(60))
    third = await dispatcher.raise_alert(7, make_assessment(45))
    await dispatcher.join()

    texts = [message.text for message in transport.sent]
    assert len(texts) == 3
    assert "CRITICAL" in texts[0]
    assert "HIGH" in texts[1]
    assert "MEDIUM" in texts[2]
    assert [first, second, third] == [1, 2, 3]
    times = [at for at, _ in transport.attempts]
    assert all(b - a >= INTERVAL for a, b in zip(times, times[1:]))


async def test_failed_recipient_does_not_abort_batch(store, caplog):
    """Test that a failure for recipient 2 of 3 still reaches recipient 3."""
    transport = RecordingTransport(fail_for={"bob@example.com"})
    dispatcher = AlertNotificationDispatcher(
        store,
        SettingsReader(store),
        transport,
        AlertsConfig(delivery_interval_seconds=INTERVAL),
    )

    with caplog.at_level(logging.ERROR):
        await dispatcher.raise_alert(7, make_assessment(85))
        await dispatcher.join()
    await dispatcher.close()

    assert [to for _, to in transport.attempts] == [a.email for a in ADMINS]
    assert [m.to for m in transport.sent] == ["alice@example.com", "carol@example.com"]
    assert any("relay refused bob@example.com" in r.message for r in caplog.records)


async def test_no_notification_below_severity_floor(dispatcher, transport, store):
    alert_id = await dispatcher.raise_alert(7, make_assessment(30))
    await dispatcher.join()

    assert store.alerts[alert_id].severity == "low"
    assert transport.attempts == []


async def test_severity_floor_setting(dispatcher, transport, store):
    store.settings["notification_severity_level"] = "critical"

    await dispatcher.raise_alert(7, make_assessment(70))
    await dispatcher.join()
    assert transport.attempts == []

    store.settings["notification_severity_level"] = "low"
    store.administrators = ADMINS[:1]
    await dispatcher.raise_alert(7, make_assessment(10))
    await dispatcher.join()
    assert len(transport.sent) == 1


@pytest.mark.parametrize("flag", [False, "false", "0", "off"])
async def test_administrator_notifications_disabled(dispatcher, transport, store, flag):
    """Test that the administrators flag, also as text, gates notification."""
    store.settings["alert_administrators"] = flag

    alert_id = await dispatcher.raise_alert(7, make_assessment(95))
    await dispatcher.join()

    assert alert_id in store.alerts
    assert dispatcher.pending == 0
    assert transport.attempts == []


async def test_no_administrators(dispatcher, transport, store, caplog):
    store.administrators = []

    with caplog.at_level(logging.WARNING):
        await dispatcher.raise_alert(7, make_assessment(95))
        await dispatcher.join()

    assert transport.attempts == []
    assert any("No administrators" in r.message for r in caplog.records)


async def test_rendered_message(dispatcher, transport, store):
    store.administrators = ADMINS[:1]

    await dispatcher.raise_alert(7, make_assessment(85))
    await dispatcher.join()

    [message] = transport.sent
    assert message.to == "alice@example.com"
    assert message.subject == "Security alert: Login anomaly"
    assert "Suspicious login activity detected for user mallory." in message.text
    assert "mallory@example.com" in message.text
    assert message.html is not None
    assert "<html>" in message.html


async def test_custom_template(dispatcher, transport, store):
    store.administrators = ADMINS[:1]
    store.settings["alert_email_template"] = (
        '{"subject": "[{severity}] {title}", "body": "User {username}: {unknown}"}'
    )

    await dispatcher.raise_alert(7, make_assessment(85))
    await dispatcher.join()

    [message] = transport.sent
    assert message.subject == "[critical] Login anomaly detected (risk score: 85)"
    assert "User mallory: {unknown}" in message.text
    assert message.html is not None


async def test_malformed_template_sends_plain_text(dispatcher, transport, store):
    """Test that a malformed template falls back to the default, text only."""
    store.administrators = ADMINS[:1]
    store.settings["alert_email_template"] = '{"subject": "missing body"'

    await dispatcher.raise_alert(7, make_assessment(85))
    await dispatcher.join()

    [message] = transport.sent
    assert message.subject == "Security alert: Login anomaly"
    assert message.html is None


async def test_close_drops_undelivered_items(store, caplog):
    """Test that shutdown drops queued notifications and logs how many."""
    started = asyncio.Event()
    release = asyncio.Event()

    class BlockingTransport:
        def __init__(self):
            self.sent = []

        async def send(self, message):
            started.set()
            await release.wait()
            self.sent.append(message)

    store.administrators = ADMINS[:1]
    transport = BlockingTransport()
    dispatcher = AlertNotificationDispatcher(
        store,
        SettingsReader(store),
        transport,
        AlertsConfig(delivery_interval_seconds=INTERVAL),
    )

    for _ in range(3):
        await dispatcher.raise_alert(7, make_assessment(85))
    await started.wait()

    with caplog.at_level(logging.WARNING):
        await dispatcher.close()

    assert dispatcher.pending == 0
    assert transport.sent == []
    assert any(
        "Dropping 2 undelivered alert notifications" in r.message
        for r in caplog.records
    )


async def test_resolve_records_resolution(dispatcher, store):
    alert_id = await dispatcher.raise_alert(7, make_assessment(85))

    assert await dispatcher.resolve(alert_id, 1, "false positive") is True

    alert = store.alerts[alert_id]
    assert alert.is_resolved is True
    assert alert.resolved_by == 1
    assert alert.resolved_at == NOW
    assert alert.resolution_notes == "false positive"


async def test_resolve_store_failure(dispatcher, store):
    store.resolve_alert = AsyncMock(side_effect=RuntimeError("db down"))

    with pytest.raises(PersistenceFailure):
        await dispatcher.resolve(1, 1, None)


def test_default_delivery_interval():
    assert AlertsConfig().delivery_interval_seconds == 1.0
