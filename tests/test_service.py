"""Tests for the login security service."""

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest

from login_risk_monitor.alerts.dispatcher import severity_for_score
from login_risk_monitor.alerts.transport import LogTransport, SmtpTransport
from login_risk_monitor.core.config import (
    AlertsConfig,
    Config,
    SmtpConfig,
    default_rules,
)
from login_risk_monitor.core.errors import (
    AlertAlreadyResolved,
    AlertNotFound,
    UserNotFound,
)
from login_risk_monitor.core.events import LocationInfo, LoginAttempt
from login_risk_monitor.core.models import Administrator, UserInfo
from login_risk_monitor.core.store import MemoryStore
from login_risk_monitor.service import build_service, build_transport

CHROME_WINDOWS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

LOCATIONS = {
    "8.8.8.8": LocationInfo(
        country="Germany",
        city="Berlin",
        latitude=52.52,
        longitude=13.405,
        timezone="Europe/Berlin",
    ),
    "1.1.1.1": LocationInfo(
        country="Hungary",
        city="Budapest",
        latitude=47.4979,
        longitude=19.0402,
        timezone="Europe/Budapest",
        is_proxy=True,
        threat_level="medium",
    ),
}


class RecordingTransport:
    def __init__(self):
        self.sent = []

    async def send(self, message):
        self.sent.append(message)


@pytest.fixture
def store():
    # time of day depends on the wall clock here, so that rule is left out
    return MemoryStore(
        rules=[r.model_dump() for r in default_rules() if r.name != "time_anomaly"],
        administrators=[
            Administrator(id=1, email="alice@example.com"),
            Administrator(id=2, email="bob@example.com"),
        ],
        users=[UserInfo(id=7, username="mallory", email="mallory@example.com")],
    )


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
async def service(store, transport):
    config = Config(alerts=AlertsConfig(delivery_interval_seconds=0.01))
    service = build_service(config, store, transport)
    fetch = AsyncMock(side_effect=lambda ip: LOCATIONS.get(ip, LocationInfo()))
    with patch.object(service.resolver, "_fetch", new=fetch):
        await service.start()
        yield service
        await service.close()


def attempt(ip="8.8.8.8", ago=timedelta(0), token=None, user_id=7):
    return LoginAttempt(
        user_id=user_id,
        ip_address=ip,
        user_agent=CHROME_WINDOWS,
        session_token_hash=token,
        timestamp=datetime.now(UTC) - ago,
    )


async def test_ordinary_login(service, store):
    decision = await service.handle_login(7, attempt(token="s1"))

    assert decision.assessment.total_risk_score == 0
    assert decision.alert_id is None
    assert decision.blocked is False
    assert len(await service.active_sessions()) == 1
    assert len(await service.trusted_devices(7)) == 1


async def test_impossible_travel_raises_alert(service, store, transport):
    """Test a login 690 km away two hours after the previous one."""
    await service.handle_login(7, attempt(ago=timedelta(hours=2)))
    decision = await service.handle_login(7, attempt(ip="1.1.1.1"))
    await service.dispatcher.join()

    assessment = decision.assessment
    types = [anomaly.type for anomaly in assessment.anomalies]
    assert types == ["geographic_anomaly", "ip_reputation", "new_device"]
    assert "Berlin" in assessment.anomalies[0].reason
    assert "Budapest" in assessment.anomalies[0].reason
    assert assessment.total_risk_score == 25 + 30 + 15
    assert assessment.is_suspicious is True

    alert = store.alerts[decision.alert_id]
    assert alert.severity == severity_for_score(70) == "high"
    assert [m.to for m in transport.sent] == ["alice@example.com", "bob@example.com"]
    assert decision.blocked is False


async def test_auto_block_is_decided_by_service(service, store):
    store.settings["auto_block_high_risk"] = "true"
    store.settings["auto_block_threshold"] = "60"

    await service.handle_login(7, attempt(ago=timedelta(hours=2), token="s1"))
    decision = await service.handle_login(7, attempt(ip="1.1.1.1", token="s2"))

    assert decision.blocked is True
    assert "blocked" not in decision.assessment.model_dump()
    active = [r.session_token_hash for r in await service.active_sessions()]
    assert active == ["s1"]


async def test_auto_block_below_threshold(service, store):
    store.settings["auto_block_high_risk"] = True

    await service.handle_login(7, attempt(ago=timedelta(hours=2)))
    decision = await service.handle_login(7, attempt(ip="1.1.1.1"))

    assert decision.assessment.total_risk_score == 70
    assert decision.blocked is False


async def test_handle_login_never_raises(service, caplog):
    service.engine.detect = AsyncMock(side_effect=RuntimeError("boom"))

    decision = await service.handle_login(7, attempt())

    assert decision.assessment is None
    assert decision.blocked is False
    assert any("Login detection failed" in r.message for r in caplog.records)


async def test_cancelled_login_does_not_fail_concurrent_login(service):
    """Test that cancelling one login mid-lookup leaves another one intact."""
    release = asyncio.Event()

    async def slow_fetch(ip):
        await release.wait()
        return LOCATIONS[ip]

    with patch.object(service.resolver, "_fetch", new=slow_fetch):
        first = asyncio.create_task(service.handle_login(1, attempt(user_id=1)))
        await asyncio.sleep(0.01)
        second = asyncio.create_task(service.handle_login(2, attempt(user_id=2)))
        await asyncio.sleep(0.01)

        first.cancel()
        with pytest.raises(asyncio.CancelledError):
            await first

        release.set()
        decision = await second

    assert decision.assessment is not None
    assert decision.assessment.location.city == "Berlin"


async def test_alert_storage_failure_does_not_fail_login(service, store):
    store.insert_alert = AsyncMock(side_effect=RuntimeError("db down"))

    await service.handle_login(7, attempt(ago=timedelta(hours=2)))
    decision = await service.handle_login(7, attempt(ip="1.1.1.1"))

    assert decision.assessment.is_suspicious is True
    assert decision.alert_id is None


async def test_resolve_alert_twice_is_rejected(service, store):
    """Test that a resolved alert stays as first resolved."""
    await service.handle_login(7, attempt(ago=timedelta(hours=2)))
    decision = await service.handle_login(7, attempt(ip="1.1.1.1"))

    resolved = await service.resolve_alert(decision.alert_id, 1, "travelling")
    assert resolved.is_resolved is True
    assert resolved.resolved_by == 1

    with pytest.raises(AlertAlreadyResolved):
        await service.resolve_alert(decision.alert_id, 2, "again")

    alert = store.alerts[decision.alert_id]
    assert alert.resolved_by == 1
    assert alert.resolved_at == resolved.resolved_at
    assert alert.resolution_notes == "travelling"


async def test_resolve_unknown_alert(service):
    with pytest.raises(AlertNotFound):
        await service.resolve_alert(404, 1)


async def test_logout_and_terminate(service):
    await service.handle_login(7, attempt(token="a", ago=timedelta(minutes=3)))
    await service.handle_login(7, attempt(token="b", ago=timedelta(minutes=2)))
    await service.handle_login(7, attempt(token="c", ago=timedelta(minutes=1)))

    assert await service.logout("a") is True
    assert await service.logout("a") is False
    assert await service.terminate_sessions(8, "b") == 0
    assert await service.terminate_sessions(7, "b") == 1
    assert await service.terminate_sessions(7) == 1
    assert await service.active_sessions() == []


async def test_revoke_trusted_device(service):
    await service.handle_login(7, attempt())
    [device] = await service.trusted_devices(7)

    assert await service.revoke_trusted_device(7, device.fingerprint) is True
    assert await service.trusted_devices(7) == []
    assert await service.revoke_trusted_device(7, device.fingerprint) is False


async def test_console_queries(service):
    await service.handle_login(7, attempt(ago=timedelta(hours=2)))
    await service.handle_login(7, attempt(ip="1.1.1.1"))

    records = await service.login_records(user_id=7)
    assert [r.ip_address for r in records] == ["1.1.1.1", "8.8.8.8"]
    suspicious = await service.login_records(suspicious_only=True)
    assert [r.ip_address for r in suspicious] == ["1.1.1.1"]

    alerts = await service.list_alerts(severity="high", resolved=False)
    assert len(alerts) == 1
    [stat] = await service.alert_statistics(days=1)
    assert (stat.alert_type, stat.severity, stat.total_count) == (
        "login_anomaly",
        "high",
        1,
    )


def test_build_transport():
    assert isinstance(build_transport(Config()), LogTransport)
    assert isinstance(
        build_transport(Config(smtp=SmtpConfig(enabled=True))), SmtpTransport
    )


async def test_user_security_overview(service, store):
    await service.handle_login(7, attempt(ago=timedelta(hours=2), token="s1"))
    await service.handle_login(7, attempt(ip="1.1.1.1", token="s2"))
    await service.handle_login(8, attempt(user_id=8))
    await service.logout("s1")

    overview = await service.user_security_overview(7)

    assert overview.user.username == "mallory"
    stats = overview.login_stats
    assert stats.total_logins == 2
    assert stats.unique_ips == 2
    assert stats.unique_countries == 2
    assert stats.suspicious_logins == 1
    assert stats.avg_risk_score == 35
    assert stats.last_login_time is not None
    assert overview.active_sessions == 1
    assert overview.trusted_devices == 1
    assert [a.severity for a in overview.recent_alerts] == ["high"]


async def test_user_security_overview_unknown_user(service):
    with pytest.raises(UserNotFound):
        await service.user_security_overview(404)
