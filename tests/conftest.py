"""Shared fixtures for login risk monitor tests."""

from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from login_risk_monitor.core.config import default_rules
from login_risk_monitor.core.events import LocationInfo
from login_risk_monitor.core.store import MemoryStore

BERLIN = LocationInfo(
    country="Germany",
    region="Berlin",
    city="Berlin",
    latitude=52.52,
    longitude=13.405,
    timezone="Europe/Berlin",
    isp="Example Telecom",
)


@pytest.fixture
def berlin():
    return BERLIN


@pytest.fixture
def now():
    return datetime(2024, 3, 12, 12, 0, tzinfo=UTC)


@pytest.fixture
def store():
    """In-memory store seeded with the default rule set."""
    return MemoryStore(rules=[rule.model_dump() for rule in default_rules()])


@pytest.fixture
def resolver():
    """Resolver stand-in that returns a configurable location per IP."""
    locations: dict[str, LocationInfo] = {}
    fake = MagicMock()
    fake.locations = locations
    fake.resolve = AsyncMock(
        side_effect=lambda ip: locations.get(ip, LocationInfo.unknown())
    )
    fake.close = AsyncMock()
    return fake
