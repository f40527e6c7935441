"""Detection rules and the in-memory registry that serves them."""

import json
import logging
from typing import Annotated, Any, Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from ..core.errors import ConfigurationError, RuleMissing
from ..core.store import SecurityStore

logger = logging.getLogger(__name__)

Hour = Annotated[int, Field(ge=0, le=23)]


class GeographicCondition(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    type: Literal["geographic"] = "geographic"
    max_distance_km: float = Field(gt=0)
    time_window_hours: float = Field(gt=0)


class IpReputationCondition(BaseModel):
    """Per-factor contributions; the total is capped at the rule score."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    type: Literal["ip_reputation"] = "ip_reputation"
    proxy_score: int = 20
    vpn_score: int = 15
    tor_score: int = 30
    high_threat_score: int = 25
    medium_threat_score: int = 15


class FrequencyCondition(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    type: Literal["frequency"] = "frequency"
    max_attempts: int = Field(gt=0)
    time_window_minutes: int = Field(gt=0)


class DeviceCondition(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    type: Literal["device"] = "device"


class TimeCondition(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    type: Literal["time"] = "time"
    normal_hours: frozenset[Hour] = frozenset(range(6, 23))
    min_logins_per_hour: int = Field(default=3, gt=0)
    history_days: int = Field(default=30, gt=0)


class ConcurrencyCondition(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    type: Literal["concurrency"] = "concurrency"
    max_sessions: int | None = Field(default=None, gt=0)


RuleCondition = Annotated[
    GeographicCondition
    | IpReputationCondition
    | FrequencyCondition
    | DeviceCondition
    | TimeCondition
    | ConcurrencyCondition,
    Field(discriminator="type"),
]

_condition_adapter: TypeAdapter[RuleCondition] = TypeAdapter(RuleCondition)

C = TypeVar("C", bound=BaseModel)


class RiskRule(BaseModel):
    """An enabled detection rule with its validated condition."""

    model_config = ConfigDict(frozen=True)

    name: str
    type: str
    enabled: bool = True
    risk_score: int = Field(ge=0)
    description: str = ""
    condition: RuleCondition


def parse_rule(row: dict[str, Any]) -> RiskRule:
    """
    Validate one raw rule row into a RiskRule.

    Args:
        row: Mapping with name, type, risk_score, enabled, description and
            conditions (JSON text or a mapping)

    Raises:
        ConfigurationError: if the row or its condition payload is malformed
    """
    name = row.get("name") or row.get("rule_name")
    rule_type = row.get("type") or row.get("rule_type")
    if not name or not rule_type:
        raise ConfigurationError(f"Rule row without name or type: {row!r}")

    conditions = row.get("conditions") or {}
    if isinstance(conditions, str):
        try:
            conditions = json.loads(conditions)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Rule {name}: invalid condition JSON: {e}") from e
    if not isinstance(conditions, dict):
        raise ConfigurationError(f"Rule {name}: condition must be an object")

    try:
        condition = _condition_adapter.validate_python(
            {**conditions, "type": rule_type}
        )
        return RiskRule(
            name=name,
            type=rule_type,
            enabled=row.get("enabled", row.get("is_enabled", True)),
            risk_score=row.get("risk_score", 0),
            description=row.get("description") or "",
            condition=condition,
        )
    except ValidationError as e:
        raise ConfigurationError(f"Rule {name}: {e}") from e


class RiskRuleRegistry:
    """
    Serve enabled rules keyed by name.

    Rules are immutable once loaded; ``load`` swaps in a complete new map,
    so a detection pass never observes a half-loaded rule set.
    """

    def __init__(self, store: SecurityStore):
        self.store = store
        self._rules: dict[str, RiskRule] = {}

    async def load(self) -> None:
        """Reload all enabled rules. Malformed rows are logged and skipped."""
        try:
            rows = await self.store.load_enabled_rules()
        except Exception as e:
            logger.error("Failed to load risk rules, keeping %d: %s", len(self), e)
            return

        rules: dict[str, RiskRule] = {}
        for row in rows:
            try:
                rule = parse_rule(row)
            except ConfigurationError as e:
                logger.error("Disabling malformed risk rule: %s", e)
                continue
            if not rule.enabled:
                continue
            rules[rule.name] = rule

        self._rules = rules
        logger.info("Loaded %d risk rules", len(rules))

    def get(self, name: str) -> RiskRule | None:
        return self._rules.get(name)

    def require(self, name: str, condition_type: type[C]) -> tuple[RiskRule, C]:
        """Return a rule and its condition, or raise RuleMissing."""
        rule = self._rules.get(name)
        if rule is None:
            raise RuleMissing(name)
        if not isinstance(rule.condition, condition_type):
            logger.warning(
                "Rule %s has type %s, expected %s",
                name,
                rule.type,
                condition_type.__name__,
            )
            raise RuleMissing(name)
        return rule, rule.condition

    @property
    def rules(self) -> list[RiskRule]:
        return list(self._rules.values())

    def __len__(self) -> int:
        return len(self._rules)
