"""In-memory persistence store.

Implements the subset of a document store that the rest of the package
issues: bulk insert, filtered/sorted/paged find, a small aggregation
pipeline (``$match``, ``$group``, ``$sort``, ``$limit``) and rule CRUD.
Data lives only as long as the process; tests use it as the store double.
"""

from __future__ import annotations

import dataclasses
import logging
import secrets
from typing import Any, Dict, Iterable, Mapping, Optional, Sequence, Tuple

from ..core.models import Rule, SensorRecord

LOGGER = logging.getLogger(__name__)

_MISSING = object()


def new_object_id() -> str:
    """Return a 24-character hex identifier."""
    return secrets.token_hex(12)


class MemoryStore:
    """Process-local implementation of :class:`~smarthome_edge.core.PersistenceStore`."""

    def __init__(self) -> None:
        self._records: list[Dict[str, Any]] = []
        self._rules: Dict[str, Rule] = {}

    def describe(self) -> str:
        return "in-memory (not persisted)"

    async def initialize(self) -> None:
        return None

    async def ping(self) -> None:
        return None

    async def close(self) -> None:
        return None

    # ------------------------------------------------------------------
    # Sensor records
    # ------------------------------------------------------------------
    async def insert_many(self, records: Sequence[SensorRecord]) -> None:
        documents = []
        for record in records:
            document = record.to_document()
            document["_id"] = new_object_id()
            documents.append(document)
        self._records.extend(documents)

    async def find(
        self,
        query: Mapping[str, Any],
        *,
        sort: Optional[Sequence[Tuple[str, int]]] = None,
        limit: int = 0,
        skip: int = 0,
    ) -> Tuple[list[SensorRecord], int]:
        matched = [doc for doc in self._records if matches(doc, query)]
        total = len(matched)

        for key, direction in reversed(list(sort or ())):
            matched.sort(key=lambda doc: _sort_key(doc.get(key)), reverse=direction < 0)

        start = max(0, skip)
        end = start + limit if limit > 0 else None
        page = matched[start:end]
        return [SensorRecord.from_document(doc) for doc in page], total

    async def aggregate(
        self, pipeline: Sequence[Mapping[str, Any]]
    ) -> list[dict[str, Any]]:
        documents: list[Dict[str, Any]] = [dict(doc) for doc in self._records]

        for stage in pipeline:
            if len(stage) != 1:
                raise ValueError(f"Pipeline stage must have exactly one operator: {stage!r}")
            (operator, spec), = stage.items()

            if operator == "$match":
                documents = [doc for doc in documents if matches(doc, spec)]
            elif operator == "$group":
                documents = _group(documents, spec)
            elif operator == "$sort":
                for key, direction in reversed(list(spec.items())):
                    documents.sort(
                        key=lambda doc: _sort_key(doc.get(key)), reverse=direction < 0
                    )
            elif operator == "$limit":
                documents = documents[: int(spec)]
            else:
                raise ValueError(f"Unsupported pipeline stage {operator}")

        return documents

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------
    async def list_rules(self) -> list[Rule]:
        rules = sorted(self._rules.values(), key=lambda rule: rule.created_at)
        return [dataclasses.replace(rule) for rule in rules]

    async def get_rule(self, rule_id: str) -> Optional[Rule]:
        rule = self._rules.get(rule_id)
        return dataclasses.replace(rule) if rule is not None else None

    async def upsert_rule(self, rule: Rule) -> Rule:
        if rule.id is None:
            rule = dataclasses.replace(rule, id=new_object_id())
        assert rule.id is not None
        self._rules[rule.id] = dataclasses.replace(rule)
        return dataclasses.replace(rule)

    async def delete_rule(self, rule_id: str) -> bool:
        return self._rules.pop(rule_id, None) is not None

    async def count_rules(self) -> int:
        return len(self._rules)


def matches(document: Mapping[str, Any], query: Mapping[str, Any]) -> bool:
    """Evaluate a document-store style filter against one document."""

    for key, condition in query.items():
        value = document.get(key, _MISSING)
        if _is_operator_map(condition):
            if not _apply_operators(value, condition):
                return False
        elif value is _MISSING or value != condition:
            return False
    return True


def _is_operator_map(condition: Any) -> bool:
    return (
        isinstance(condition, Mapping)
        and bool(condition)
        and all(str(key).startswith("$") for key in condition)
    )


def _apply_operators(value: Any, operators: Mapping[str, Any]) -> bool:
    for operator, operand in operators.items():
        if operator == "$exists":
            if (value is not _MISSING) != bool(operand):
                return False
        elif operator == "$not":
            if _apply_operators(value, operand):
                return False
        elif operator == "$size":
            if not isinstance(value, (list, tuple)) or len(value) != operand:
                return False
        elif operator == "$ne":
            if value is not _MISSING and value == operand:
                return False
        elif operator in ("$gt", "$gte", "$lt", "$lte"):
            if value is _MISSING or value is None:
                return False
            if operator == "$gt" and not value > operand:
                return False
            if operator == "$gte" and not value >= operand:
                return False
            if operator == "$lt" and not value < operand:
                return False
            if operator == "$lte" and not value <= operand:
                return False
        else:
            raise ValueError(f"Unsupported query operator {operator}")
    return True


def _resolve(document: Mapping[str, Any], expression: Any) -> Any:
    if isinstance(expression, str) and expression.startswith("$"):
        return document.get(expression[1:])
    if isinstance(expression, Mapping) and "$dateToString" in expression:
        spec = expression["$dateToString"]
        date = _resolve(document, spec["date"])
        if date is None:
            return None
        return date.strftime(spec["format"])
    return expression


def _group(
    documents: Iterable[Mapping[str, Any]], spec: Mapping[str, Any]
) -> list[Dict[str, Any]]:
    id_expression = spec.get("_id")
    accumulators = {key: value for key, value in spec.items() if key != "_id"}

    groups: Dict[Any, list[Mapping[str, Any]]] = {}
    for document in documents:
        groups.setdefault(_resolve(document, id_expression), []).append(document)

    results = []
    for group_id, members in groups.items():
        output: Dict[str, Any] = {"_id": group_id}
        for name, accumulator in accumulators.items():
            (operator, expression), = accumulator.items()
            values = [_resolve(member, expression) for member in members]
            numbers = [value for value in values if value is not None]

            if operator == "$sum":
                output[name] = sum(numbers)
            elif operator == "$avg":
                output[name] = sum(numbers) / len(numbers) if numbers else None
            elif operator == "$min":
                output[name] = min(numbers) if numbers else None
            elif operator == "$max":
                output[name] = max(numbers) if numbers else None
            else:
                raise ValueError(f"Unsupported accumulator {operator}")
        results.append(output)

    return results


def _sort_key(value: Any) -> Tuple[int, Any]:
    # None sorts before everything else, as in a document store.
    return (0, 0) if value is None else (1, value)
