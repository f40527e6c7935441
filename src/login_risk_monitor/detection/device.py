"""User-agent parsing and device fingerprints."""

import hashlib

from user_agents import parse

from ..core.events import DeviceInfo


def _describe(family: str | None, version: str | None) -> str:
    return " ".join(part for part in (family or "Other", version or "") if part)


def parse_device(user_agent: str) -> DeviceInfo:
    """Derive a DeviceInfo from a raw user-agent string."""
    ua = parse(user_agent or "")

    if ua.is_tablet:
        device_type = "tablet"
    elif ua.is_mobile:
        device_type = "mobile"
    else:
        device_type = "desktop"

    return DeviceInfo(
        device_type=device_type,
        browser=_describe(ua.browser.family, ua.browser.version_string),
        os=_describe(ua.os.family, ua.os.version_string),
    )


def device_fingerprint(device: DeviceInfo, ip_address: str) -> str:
    """Stable fingerprint of a device as seen from one address."""
    raw = f"{device.device_type}-{device.browser}-{device.os}-{ip_address}"
    return hashlib.sha256(raw.encode()).hexdigest()
