"""Error taxonomy for login risk detection and alerting."""


class RiskMonitorError(Exception):
    """Base class for all login risk monitor errors."""


class UpstreamUnavailable(RiskMonitorError):
    """Geolocation provider could not produce a usable answer."""


class RuleMissing(RiskMonitorError):
    """A named detection rule is not loaded (or has an unexpected type)."""

    def __init__(self, name: str):
        super().__init__(f"Risk rule not loaded: {name}")
        self.name = name


class PersistenceFailure(RiskMonitorError):
    """Storage collaborator failed while recording a login, alert or cache entry."""


class DeliveryFailure(RiskMonitorError):
    """A single notification could not be handed to the mail transport."""


class ConfigurationError(RiskMonitorError):
    """A rule condition or alert template is malformed."""


class AlertNotFound(RiskMonitorError):
    """No alert exists with the given id."""


class AlertAlreadyResolved(RiskMonitorError):
    """The alert has already reached its terminal resolved state."""


class UserNotFound(RiskMonitorError):
    """No user exists with the given id."""
