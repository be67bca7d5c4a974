"""Tests for the rule engine."""

import dataclasses
from typing import Optional

import pytest

from smarthome_edge.adapters.memory_store import MemoryStore
from smarthome_edge.core.errors import (
    InvalidIdentifier,
    NotFound,
    PersistenceFailure,
    RuleValidationError,
)
from smarthome_edge.core.models import Rule, TelemetrySample
from smarthome_edge.rules import (
    DEFAULT_RULES,
    RuleEngine,
    action_to_command,
    build_rule,
    validate_changes,
)


def make_rule(**overrides) -> Rule:
    values = dict(
        name="Gas Danger Alert",
        sensor="gas",
        operator=">",
        threshold=700,
        action="buzzer_on",
        enabled=True,
    )
    values.update(overrides)
    return Rule(**values)


class CountingStore(MemoryStore):
    def __init__(self) -> None:
        super().__init__()
        self.list_calls = 0
        self.fail_list: Optional[Exception] = None

    async def list_rules(self) -> list[Rule]:
        self.list_calls += 1
        if self.fail_list is not None:
            raise self.fail_list
        return await super().list_rules()


@pytest.mark.asyncio
async def test_gas_above_threshold_raises_alert_and_action() -> None:
    engine = RuleEngine(MemoryStore())
    await engine.create(make_rule())

    result = await engine.evaluate(TelemetrySample(gas=750, light=500))

    assert result.triggered
    assert result.alerts == ["Gas Danger Alert: gas > 700 (current: 750)"]
    assert result.actions == ["buzzer_on"]


@pytest.mark.asyncio
async def test_threshold_boundary_is_exclusive_for_greater_than() -> None:
    engine = RuleEngine(MemoryStore())
    await engine.create(make_rule())

    result = await engine.evaluate(TelemetrySample(gas=700, light=1))

    assert not result.triggered
    assert result.actions == []


@pytest.mark.asyncio
async def test_disabled_rule_never_fires() -> None:
    engine = RuleEngine(MemoryStore())
    await engine.create(make_rule(enabled=False))

    result = await engine.evaluate(TelemetrySample(gas=1000))

    assert result.alerts == []
    assert result.actions == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "operator, threshold, value, fires",
    [
        ("<", 300, 299, True),
        ("<", 300, 300, False),
        (">=", 50, 50, True),
        ("<=", 50, 51, False),
        ("==", 42, 42, True),
    ],
)
async def test_operators(operator: str, threshold: int, value: int, fires: bool) -> None:
    engine = RuleEngine(MemoryStore())
    await engine.create(make_rule(sensor="light", operator=operator, threshold=threshold))

    result = await engine.evaluate(TelemetrySample(gas=1, light=value))

    assert result.triggered is fires


@pytest.mark.asyncio
async def test_duplicate_actions_are_kept_in_rule_order() -> None:
    engine = RuleEngine(MemoryStore())
    await engine.create(make_rule(name="first"))
    await engine.create(make_rule(name="second", sensor="soil", threshold=50))

    result = await engine.evaluate(TelemetrySample(gas=800, soil=60))

    assert result.actions == ["buzzer_on", "buzzer_on"]
    assert [alert.split(":")[0] for alert in result.alerts] == ["first", "second"]


@pytest.mark.asyncio
async def test_evaluate_uses_cache_until_mutation() -> None:
    store = CountingStore()
    engine = RuleEngine(store)
    await engine.create(make_rule())

    await engine.evaluate(TelemetrySample(gas=1))
    await engine.evaluate(TelemetrySample(gas=1))
    assert store.list_calls == 1

    created = await engine.create(make_rule(name="light", sensor="light", operator="<", threshold=10))
    result = await engine.evaluate(TelemetrySample(gas=1, light=5))

    assert store.list_calls == 2
    assert result.actions == ["buzzer_on"]
    assert created.id is not None


@pytest.mark.asyncio
async def test_update_invalidates_cache() -> None:
    engine = RuleEngine(MemoryStore())
    rule = await engine.create(make_rule())
    assert (await engine.evaluate(TelemetrySample(gas=750))).triggered

    updated = await engine.update(rule.id, {"enabled": False})

    assert updated.enabled is False
    assert updated.updated_at >= rule.updated_at
    assert not (await engine.evaluate(TelemetrySample(gas=750))).triggered


@pytest.mark.asyncio
async def test_store_failure_during_evaluation_yields_no_alerts() -> None:
    store = CountingStore()
    store.fail_list = RuntimeError("database offline")
    engine = RuleEngine(store)

    result = await engine.evaluate(TelemetrySample(gas=900))

    assert result.alerts == []
    assert result.actions == []


@pytest.mark.asyncio
async def test_list_rules_wraps_store_failures() -> None:
    store = CountingStore()
    store.fail_list = RuntimeError("database offline")
    engine = RuleEngine(store)

    with pytest.raises(PersistenceFailure):
        await engine.list_rules()


@pytest.mark.asyncio
async def test_bootstrap_seeds_defaults_only_when_empty() -> None:
    store = MemoryStore()
    engine = RuleEngine(store)

    assert await engine.bootstrap_defaults() == 4
    rules = await engine.list_rules()
    assert [rule.name for rule in rules] == [template["name"] for template in DEFAULT_RULES]
    assert all(rule.enabled for rule in rules)

    assert await engine.bootstrap_defaults() == 0
    assert await store.count_rules() == 4


@pytest.mark.asyncio
async def test_bootstrap_skips_store_with_user_rules() -> None:
    engine = RuleEngine(MemoryStore())
    await engine.create(make_rule(name="custom"))

    assert await engine.bootstrap_defaults() == 0
    assert [rule.name for rule in await engine.list_rules()] == ["custom"]


@pytest.mark.asyncio
async def test_update_and_delete_report_missing_rules() -> None:
    engine = RuleEngine(MemoryStore())
    missing = "0123456789abcdef01234567"

    with pytest.raises(NotFound):
        await engine.update(missing, {"threshold": 5})
    with pytest.raises(NotFound):
        await engine.delete(missing)


@pytest.mark.asyncio
@pytest.mark.parametrize("rule_id", ["", "xyz", "0123456789ABCDEF01234567", "0" * 25])
async def test_malformed_identifiers_are_rejected(rule_id: str) -> None:
    engine = RuleEngine(MemoryStore())

    with pytest.raises(InvalidIdentifier):
        await engine.update(rule_id, {"threshold": 5})
    with pytest.raises(InvalidIdentifier):
        await engine.delete(rule_id)


@pytest.mark.asyncio
async def test_delete_removes_rule() -> None:
    engine = RuleEngine(MemoryStore())
    rule = await engine.create(make_rule())

    await engine.delete(rule.id)

    assert await engine.list_rules() == []
    assert not (await engine.evaluate(TelemetrySample(gas=900))).triggered


def test_build_rule_requires_fields() -> None:
    with pytest.raises(RuleValidationError) as excinfo:
        build_rule({"name": "x", "sensor": "gas"})

    assert "operator" in str(excinfo.value)
    assert "threshold" in str(excinfo.value)


def test_build_rule_defaults_to_disabled() -> None:
    rule = build_rule(
        {"name": "x", "sensor": "gas", "operator": ">", "threshold": 1, "action": "fan_on"}
    )

    assert rule.enabled is False
    assert rule.description == ""


@pytest.mark.parametrize(
    "changes",
    [
        {"sensor": "temperature"},
        {"operator": "!="},
        {"threshold": "high"},
        {"threshold": 1.5},
        {"enabled": "yes"},
        {"name": "  "},
    ],
)
def test_validate_changes_rejects_bad_values(changes) -> None:
    with pytest.raises(RuleValidationError):
        validate_changes(changes)


def test_validate_changes_drops_unknown_fields() -> None:
    assert validate_changes({"threshold": 3.0, "id": "abc", "createdAt": "x"}) == {
        "threshold": 3
    }


def test_action_to_command() -> None:
    assert action_to_command("buzzer_on") == "BUZZER_ON"
    assert action_to_command(" window_close ") == "WINDOW_CLOSE"


@pytest.mark.asyncio
async def test_create_ignores_caller_supplied_identity() -> None:
    engine = RuleEngine(MemoryStore())
    rule = dataclasses.replace(make_rule(), id="ffffffffffffffffffffffff")

    created = await engine.create(rule)

    assert created.id != "ffffffffffffffffffffffff"
    assert len(created.id) == 24
