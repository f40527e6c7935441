"""Alert notification templates."""

import html
import json
import logging
import re
from typing import Any

from pydantic import BaseModel, ValidationError

from ..core.errors import ConfigurationError
from ..core.models import SecurityAlert, UserInfo

logger = logging.getLogger(__name__)

PLACEHOLDER = re.compile(r"\{(\w+)\}")

ALERT_TYPE_NAMES = {
    "login_anomaly": "Login anomaly",
    "multiple_locations": "Logins from multiple locations",
    "suspicious_ip": "Suspicious IP address",
    "brute_force": "Brute-force attempt",
    "new_device": "New device login",
    "time_anomaly": "Login at unusual time",
    "concurrent_sessions": "Too many concurrent sessions",
    "geographic_anomaly": "Geographic anomaly",
    "ip_reputation": "IP reputation",
    "login_frequency": "Login frequency",
}

SEVERITY_COLORS = {
    "low": "#28a745",
    "medium": "#ffc107",
    "high": "#fd7e14",
    "critical": "#dc3545",
}


class AlertTemplate(BaseModel):
    """Subject and body with ``{placeholder}`` substitution."""

    subject: str
    body: str


DEFAULT_TEMPLATE = AlertTemplate(
    subject="Security alert: {alert_type}",
    body="Suspicious login activity detected for user {username}.",
)


class RenderedAlert(BaseModel):
    subject: str
    text: str
    html: str | None = None


def parse_template(raw: Any) -> AlertTemplate:
    """
    Validate a stored template (JSON text or mapping).

    Raises:
        ConfigurationError: if the template is malformed
    """
    if isinstance(raw, AlertTemplate):
        return raw
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Alert template is not valid JSON: {e}") from e
    try:
        return AlertTemplate.model_validate(raw)
    except ValidationError as e:
        raise ConfigurationError(f"Alert template is malformed: {e}") from e


def substitute(text: str, variables: dict[str, str]) -> str:
    """Replace known ``{name}`` placeholders, leaving unknown ones untouched."""
    return PLACEHOLDER.sub(
        lambda match: variables.get(match.group(1), match.group(0)), text
    )


def template_variables(alert: SecurityAlert, user: UserInfo | None) -> dict[str, str]:
    return {
        "alert_type": ALERT_TYPE_NAMES.get(alert.alert_type, alert.alert_type),
        "username": user.username if user else "Unknown",
        "user_email": (user.email if user else None) or "Unknown",
        "severity": alert.severity,
        "title": alert.title,
        "description": alert.description,
        "timestamp": alert.created_at.strftime("%Y-%m-%d %H:%M:%S %Z").strip(),
        "alert_data": json.dumps(alert.data, indent=2, default=str),
    }


def render_alert(
    template: AlertTemplate,
    alert: SecurityAlert,
    user: UserInfo | None,
    console_url: str,
    include_html: bool = True,
) -> RenderedAlert:
    """Render the plain-text and (optionally) HTML notification for an alert."""
    variables = template_variables(alert, user)
    subject = substitute(template.subject, variables)
    body = substitute(template.body, variables)

    text = _render_text(body, alert, user, variables, console_url)
    markup = (
        _render_html(subject, body, alert, user, variables, console_url)
        if include_html
        else None
    )
    return RenderedAlert(subject=subject, text=text, html=markup)


def _registered(user: UserInfo | None) -> str:
    if user is None or user.created_at is None:
        return "Unknown"
    return user.created_at.strftime("%Y-%m-%d %H:%M:%S")


def _render_text(
    body: str,
    alert: SecurityAlert,
    user: UserInfo | None,
    variables: dict[str, str],
    console_url: str,
) -> str:
    lines = [
        "SECURITY ALERT",
        "",
        f"Alert type: {variables['alert_type']}",
        f"Severity: {alert.severity.upper()}",
        f"Time: {variables['timestamp']}",
        "",
        body,
        "",
        alert.title,
        alert.description,
        "",
        "User:",
        f"- Username: {variables['username']}",
        f"- Email: {variables['user_email']}",
        f"- Registered: {_registered(user)}",
    ]
    if alert.data:
        lines += ["", "Details:", variables["alert_data"]]
    lines += [
        "",
        f"Review this alert in the security console: {console_url}",
        "",
        "---",
        "This message was sent automatically by the login security monitor.",
    ]
    return "\n".join(lines)


def _render_html(
    subject: str,
    body: str,
    alert: SecurityAlert,
    user: UserInfo | None,
    variables: dict[str, str],
    console_url: str,
) -> str:
    e = html.escape
    color = SEVERITY_COLORS.get(alert.severity, "#6c757d")
    description = "<br>".join(e(line) for line in alert.description.splitlines())
    details = ""
    if alert.data:
        details = (
            '<div class="details"><h4>Details</h4>'
            f"<pre>{e(variables['alert_data'])}</pre></div>"
        )

    return f"""<!DOCTYPE html>
<html>
<head>
<meta charset="utf-8">
<title>{e(subject)}</title>
<style>
body {{ font-family: Arial, sans-serif; line-height: 1.6; color: #333; }}
.container {{ max-width: 600px; margin: 0 auto; padding: 20px; }}
.header {{ background: #f8f9fa; padding: 20px; border-left: 4px solid {color}; }}
.severity {{ color: {color}; font-weight: bold; text-transform: uppercase; }}
.details {{ background: #f8f9fa; padding: 15px; margin: 15px 0; }}
.footer {{ margin-top: 30px; font-size: 12px; color: #666; }}
</style>
</head>
<body>
<div class="container">
<div class="header">
<h2>Security alert</h2>
<p><strong>Alert type:</strong> {e(variables['alert_type'])}</p>
<p><strong>Severity:</strong> <span class="severity">{e(alert.severity)}</span></p>
<p><strong>Time:</strong> {e(variables['timestamp'])}</p>
</div>
<p>{e(body)}</p>
<h3>{e(alert.title)}</h3>
<p>{description}</p>
<div class="details">
<h4>User</h4>
<p><strong>Username:</strong> {e(variables['username'])}</p>
<p><strong>Email:</strong> {e(variables['user_email'])}</p>
<p><strong>Registered:</strong> {e(_registered(user))}</p>
</div>
{details}
<p><a href="{e(console_url, quote=True)}">Open the security console</a></p>
<div class="footer">
<p>This message was sent automatically by the login security monitor.</p>
</div>
</div>
</body>
</html>
"""
