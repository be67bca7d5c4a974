"""Rule engine evaluating telemetry samples against automation rules."""

from __future__ import annotations

import contextlib
import dataclasses
import logging
import operator
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, Mapping, Optional

from .constants import RULE_OPERATORS, SENSOR_CHANNELS
from .core.errors import (
    EdgeError,
    InvalidIdentifier,
    NotFound,
    PersistenceFailure,
    RuleValidationError,
)
from .core.models import Rule, TelemetrySample, utcnow
from .core.protocols import RuleStore

LOGGER = logging.getLogger(__name__)

RULE_ID_PATTERN = re.compile(r"^[0-9a-f]{24}$")

COMPARATORS: Dict[str, Callable[[int, int], bool]] = {
    ">": operator.gt,
    "<": operator.lt,
    ">=": operator.ge,
    "<=": operator.le,
    "==": operator.eq,
}

UPDATABLE_FIELDS = (
    "name",
    "sensor",
    "operator",
    "threshold",
    "action",
    "enabled",
    "description",
)

DEFAULT_RULES: tuple[Dict[str, Any], ...] = (
    {
        "name": "Gas Danger Alert",
        "sensor": "gas",
        "operator": ">",
        "threshold": 700,
        "action": "buzzer_on",
        "description": "Trigger buzzer when gas level exceeds danger threshold",
    },
    {
        "name": "Rain Detection - Close Window",
        "sensor": "water",
        "operator": ">",
        "threshold": 800,
        "action": "window_close",
        "description": "Automatically close window when rain is detected",
    },
    {
        "name": "Low Soil Moisture Alert",
        "sensor": "soil",
        "operator": ">",
        "threshold": 50,
        "action": "buzzer_on",
        "description": "Alert when soil moisture is too low",
    },
    {
        "name": "Auto Light - Low Light Detection",
        "sensor": "light",
        "operator": "<",
        "threshold": 300,
        "action": "white_light_on",
        "description": "Automatically turn on LED when light level is low",
    },
)


@dataclass(slots=True)
class Evaluation:
    """Alerts raised by one sample and the actions they trigger.

    ``actions`` holds one entry per matching rule, so two rules sharing an
    action produce that action twice.
    """

    alerts: list[str] = field(default_factory=list)
    actions: list[str] = field(default_factory=list)

    @property
    def triggered(self) -> bool:
        return bool(self.alerts)


def action_to_command(action: str) -> str:
    """Map a rule action identifier to the device command token."""
    return action.strip().upper()


def format_alert(rule: Rule, value: int) -> str:
    return (
        f"{rule.name}: {rule.sensor} {rule.operator} {rule.threshold} "
        f"(current: {value})"
    )


def build_rule(payload: Mapping[str, Any]) -> Rule:
    """Build a new rule from an inbound payload, validating every field."""

    missing = [
        name
        for name in ("name", "sensor", "operator", "threshold", "action")
        if payload.get(name) in (None, "")
    ]
    if missing:
        raise RuleValidationError(f"Missing required field(s): {', '.join(missing)}")

    changes = validate_changes(payload)
    return Rule(
        name=changes["name"],
        sensor=changes["sensor"],
        operator=changes["operator"],
        threshold=changes["threshold"],
        action=changes["action"],
        enabled=changes.get("enabled", False),
        description=changes.get("description", ""),
    )


def validate_changes(changes: Mapping[str, Any]) -> Dict[str, Any]:
    """Return the known, validated fields from a partial rule patch.

    Unknown keys are dropped.
    """

    result: Dict[str, Any] = {}
    for name in UPDATABLE_FIELDS:
        if name not in changes:
            continue
        value = changes[name]

        if name == "sensor":
            if value not in SENSOR_CHANNELS:
                raise RuleValidationError(
                    f"sensor must be one of {', '.join(SENSOR_CHANNELS)}"
                )
        elif name == "operator":
            if value not in RULE_OPERATORS:
                raise RuleValidationError(
                    f"operator must be one of {' '.join(RULE_OPERATORS)}"
                )
        elif name == "threshold":
            value = _coerce_threshold(value)
        elif name == "enabled":
            if not isinstance(value, bool):
                raise RuleValidationError("enabled must be a boolean")
        elif not isinstance(value, str):
            raise RuleValidationError(f"{name} must be a string")
        elif name in ("name", "action") and not value.strip():
            raise RuleValidationError(f"{name} cannot be empty")

        result[name] = value
    return result


def _coerce_threshold(value: Any) -> int:
    if isinstance(value, bool):
        raise RuleValidationError("threshold must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    raise RuleValidationError("threshold must be an integer")


def validate_rule_id(rule_id: str) -> str:
    if not isinstance(rule_id, str) or not RULE_ID_PATTERN.match(rule_id):
        raise InvalidIdentifier(f"invalid rule ID: {rule_id!r}")
    return rule_id


@contextlib.contextmanager
def _store_errors(action: str) -> Iterator[None]:
    try:
        yield
    except EdgeError:
        raise
    except Exception as exc:
        raise PersistenceFailure(f"failed to {action}: {exc}") from exc


class RuleEngine:
    """Evaluates samples against the rule set held by a :class:`RuleStore`.

    Rules are cached after the first load; every mutation made through the
    engine drops the cache so the next evaluation sees the change. Callers
    that change the store directly must call :meth:`invalidate`.
    """

    def __init__(self, store: RuleStore) -> None:
        self._store = store
        self._cache: Optional[list[Rule]] = None
        self._generation = 0

    def invalidate(self) -> None:
        self._cache = None
        self._generation += 1

    async def evaluate(self, sample: TelemetrySample) -> Evaluation:
        """Evaluate every enabled rule in creation order."""

        result = Evaluation()
        try:
            rules = await self._load_rules()
        except Exception as exc:
            LOGGER.error("Error getting rules for evaluation: %s", exc)
            return result

        for rule in rules:
            if not rule.enabled:
                continue

            value = sample.channel(rule.sensor)
            if value is None:
                continue

            compare = COMPARATORS.get(rule.operator)
            if compare is None or not compare(value, rule.threshold):
                continue

            result.alerts.append(format_alert(rule, value))
            result.actions.append(rule.action)
            LOGGER.info(
                "Rule triggered: %s - %s %d %s %d",
                rule.name,
                rule.sensor,
                value,
                rule.operator,
                rule.threshold,
            )

        return result

    async def list_rules(self) -> list[Rule]:
        with _store_errors("get rules"):
            return await self._store.list_rules()

    async def create(self, rule: Rule) -> Rule:
        now = utcnow()
        rule = dataclasses.replace(rule, id=None, created_at=now, updated_at=now)
        with _store_errors("create rule"):
            created = await self._store.upsert_rule(rule)
        self.invalidate()
        LOGGER.info("Created rule %s (%s)", created.id, created.name)
        return created

    async def update(self, rule_id: str, changes: Mapping[str, Any]) -> Rule:
        """Apply a partial patch and refresh ``updated_at``.

        Raises:
            InvalidIdentifier: ``rule_id`` is malformed.
            NotFound: no rule has ``rule_id``.
            RuleValidationError: a patched field is invalid.
        """

        validate_rule_id(rule_id)
        patch = validate_changes(changes)

        with _store_errors("update rule"):
            existing = await self._store.get_rule(rule_id)
            if existing is None:
                raise NotFound(f"rule {rule_id} not found")
            updated = dataclasses.replace(existing, **patch, updated_at=utcnow())
            stored = await self._store.upsert_rule(updated)

        self.invalidate()
        return stored

    async def delete(self, rule_id: str) -> None:
        validate_rule_id(rule_id)
        with _store_errors("delete rule"):
            removed = await self._store.delete_rule(rule_id)
        if not removed:
            raise NotFound(f"rule {rule_id} not found")
        self.invalidate()
        LOGGER.info("Deleted rule %s", rule_id)

    async def bootstrap_defaults(self) -> int:
        """Seed the default rules when the store holds none.

        The count check and the inserts are not atomic; concurrent first boots
        may both seed.
        """

        with _store_errors("check rule count"):
            count = await self._store.count_rules()
        if count > 0:
            return 0

        for template in DEFAULT_RULES:
            rule = Rule(enabled=True, **template)
            try:
                await self.create(rule)
            except PersistenceFailure as exc:
                raise PersistenceFailure(
                    f"failed to create default rule {rule.name}: {exc}"
                ) from exc

        LOGGER.info("Default rules initialized")
        return len(DEFAULT_RULES)

    async def _load_rules(self) -> list[Rule]:
        if self._cache is not None:
            return self._cache

        generation = self._generation
        rules = await self._store.list_rules()
        # A mutation that landed while loading makes this result stale.
        if generation == self._generation:
            self._cache = rules
        return rules
