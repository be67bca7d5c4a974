"""SQL persistence store built on SQLAlchemy Core.

Sensor records and rules live in two tables. The document-store filters and
pipelines issued by :mod:`smarthome_edge.analytics` are compiled to SQL for
the fields those tables hold. Calls run on a worker thread so the event loop
never waits on the database driver.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    and_,
    create_engine,
    false,
    func,
    not_,
    select,
    text,
    true,
)
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.sql.elements import ColumnElement

from ..constants import HOUR_BUCKET_FORMAT
from ..core.models import Rule, SensorRecord
from .memory_store import new_object_id

LOGGER = logging.getLogger(__name__)

metadata = MetaData()

sensor_data = Table(
    "sensor_data",
    metadata,
    Column("id", String(24), primary_key=True),
    Column("timestamp", DateTime(timezone=True), nullable=False, index=True),
    Column("hour_bucket", String(16), nullable=False, index=True),
    Column("light", Integer, nullable=False),
    Column("gas", Integer, nullable=False),
    Column("soil", Integer, nullable=False),
    Column("water", Integer, nullable=False),
    Column("infrared", Integer, nullable=False),
    Column("alerts", JSON, nullable=False),
    Column("alert_count", Integer, nullable=False),
)

rules = Table(
    "rules",
    metadata,
    Column("id", String(24), primary_key=True),
    Column("name", String(200), nullable=False),
    Column("sensor", String(16), nullable=False),
    Column("operator", String(2), nullable=False),
    Column("threshold", Integer, nullable=False),
    Column("action", String(64), nullable=False),
    Column("enabled", Boolean, nullable=False),
    Column("description", Text, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False, index=True),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

SCALAR_FIELDS = ("timestamp", "light", "gas", "soil", "water", "infrared")
ROW_COUNT_LABEL = "__rows"


class SqlStore:
    """:class:`~smarthome_edge.core.PersistenceStore` backed by a SQL database."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    @classmethod
    def from_uri(cls, uri: str) -> "SqlStore":
        """Create a store for a SQLAlchemy database URL.

        A ``~`` at the start of a sqlite file path is expanded.
        """

        url = make_url(uri)
        if url.get_backend_name() == "sqlite" and url.database:
            if url.database.startswith("~"):
                url = url.set(database=str(Path(url.database).expanduser()))

        engine = create_engine(url, pool_pre_ping=True, future=True)
        return cls(engine)

    def describe(self) -> str:
        return self._engine.url.render_as_string(hide_password=True)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def initialize(self) -> None:
        """Create missing tables (and the sqlite file's directory)."""
        await asyncio.to_thread(self._initialize)

    async def ping(self) -> None:
        await asyncio.to_thread(self._ping)

    async def close(self) -> None:
        await asyncio.to_thread(self._engine.dispose)

    def _initialize(self) -> None:
        url = self._engine.url
        if url.get_backend_name() == "sqlite" and url.database not in (None, "", ":memory:"):
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)
        metadata.create_all(self._engine)
        LOGGER.info("Persistence store ready at %s", self.describe())

    def _ping(self) -> None:
        with self._engine.connect() as conn:
            conn.execute(text("SELECT 1"))

    # ------------------------------------------------------------------
    # Sensor records
    # ------------------------------------------------------------------
    async def insert_many(self, records: Sequence[SensorRecord]) -> None:
        if not records:
            return
        await asyncio.to_thread(self._insert_many, list(records))

    async def find(
        self,
        query: Mapping[str, Any],
        *,
        sort: Optional[Sequence[Tuple[str, int]]] = None,
        limit: int = 0,
        skip: int = 0,
    ) -> Tuple[list[SensorRecord], int]:
        return await asyncio.to_thread(self._find, query, sort, limit, skip)

    async def aggregate(
        self, pipeline: Sequence[Mapping[str, Any]]
    ) -> list[dict[str, Any]]:
        return await asyncio.to_thread(self._aggregate, pipeline)

    def _insert_many(self, records: list[SensorRecord]) -> None:
        rows = []
        for record in records:
            timestamp = _utc(record.timestamp)
            rows.append(
                {
                    "id": new_object_id(),
                    "timestamp": timestamp,
                    "hour_bucket": timestamp.strftime(HOUR_BUCKET_FORMAT),
                    "light": record.light,
                    "gas": record.gas,
                    "soil": record.soil,
                    "water": record.water,
                    "infrared": record.infrared,
                    "alerts": list(record.alerts),
                    "alert_count": len(record.alerts),
                }
            )
        # One transaction: the batch is stored whole or not at all.
        with self._engine.begin() as conn:
            conn.execute(sensor_data.insert(), rows)

    def _find(
        self,
        query: Mapping[str, Any],
        sort: Optional[Sequence[Tuple[str, int]]],
        limit: int,
        skip: int,
    ) -> Tuple[list[SensorRecord], int]:
        where = compile_filter(query)

        statement = _filtered(select(sensor_data), where)
        for key, direction in sort or ():
            column = _scalar_column(key)
            statement = statement.order_by(column.desc() if direction < 0 else column.asc())
        if skip > 0:
            statement = statement.offset(skip)
        if limit > 0:
            statement = statement.limit(limit)

        with self._engine.connect() as conn:
            total = conn.execute(
                _filtered(select(func.count()).select_from(sensor_data), where)
            ).scalar_one()
            rows = conn.execute(statement).all()

        return [_record_from_row(row._mapping) for row in rows], int(total)

    def _aggregate(self, pipeline: Sequence[Mapping[str, Any]]) -> list[dict[str, Any]]:
        where: list[ColumnElement[bool]] = []
        group: Optional[Mapping[str, Any]] = None
        order: Mapping[str, int] = {}
        limit: Optional[int] = None

        for stage in pipeline:
            if len(stage) != 1:
                raise ValueError(f"Pipeline stage must have exactly one operator: {stage!r}")
            (operator, spec), = stage.items()

            if operator == "$match":
                if group is not None:
                    raise ValueError("$match after $group is not supported")
                where.extend(compile_filter(spec))
            elif operator == "$group":
                group = spec
            elif operator == "$sort":
                order = spec
            elif operator == "$limit":
                limit = int(spec)
            else:
                raise ValueError(f"Unsupported pipeline stage {operator}")

        if group is None:
            raise ValueError("Pipeline requires a $group stage")

        key = _group_key(group.get("_id"))
        columns: Dict[str, ColumnElement[Any]] = {}
        if key is not None:
            columns["_id"] = key
        for name, accumulator in group.items():
            if name != "_id":
                columns[name] = _accumulator(accumulator)

        labels = [expression.label(name) for name, expression in columns.items()]
        labels.append(func.count().label(ROW_COUNT_LABEL))
        statement = _filtered(select(*labels).select_from(sensor_data), where)
        if key is not None:
            statement = statement.group_by(key)

        for name, direction in order.items():
            expression = columns.get(name)
            if expression is None:
                raise ValueError(f"Cannot sort on unknown field {name}")
            statement = statement.order_by(
                expression.desc() if direction < 0 else expression.asc()
            )
        if limit is not None:
            statement = statement.limit(limit)

        with self._engine.connect() as conn:
            rows = conn.execute(statement).all()

        results = []
        for row in rows:
            document = dict(row._mapping)
            # An ungrouped aggregate over no rows still yields one row.
            if document.pop(ROW_COUNT_LABEL) == 0:
                continue
            document.setdefault("_id", None)
            results.append(document)
        return results

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------
    async def list_rules(self) -> list[Rule]:
        return await asyncio.to_thread(self._list_rules)

    async def get_rule(self, rule_id: str) -> Optional[Rule]:
        return await asyncio.to_thread(self._get_rule, rule_id)

    async def upsert_rule(self, rule: Rule) -> Rule:
        return await asyncio.to_thread(self._upsert_rule, rule)

    async def delete_rule(self, rule_id: str) -> bool:
        return await asyncio.to_thread(self._delete_rule, rule_id)

    async def count_rules(self) -> int:
        return await asyncio.to_thread(self._count_rules)

    def _list_rules(self) -> list[Rule]:
        statement = select(rules).order_by(rules.c.created_at, rules.c.id)
        with self._engine.connect() as conn:
            return [_rule_from_row(row._mapping) for row in conn.execute(statement)]

    def _get_rule(self, rule_id: str) -> Optional[Rule]:
        with self._engine.connect() as conn:
            row = conn.execute(select(rules).where(rules.c.id == rule_id)).first()
        return _rule_from_row(row._mapping) if row is not None else None

    def _upsert_rule(self, rule: Rule) -> Rule:
        rule_id = rule.id or new_object_id()
        values = {
            "name": rule.name,
            "sensor": rule.sensor,
            "operator": rule.operator,
            "threshold": rule.threshold,
            "action": rule.action,
            "enabled": rule.enabled,
            "description": rule.description,
            "created_at": _utc(rule.created_at),
            "updated_at": _utc(rule.updated_at),
        }
        with self._engine.begin() as conn:
            result = conn.execute(
                rules.update().where(rules.c.id == rule_id).values(**values)
            )
            if result.rowcount == 0:
                conn.execute(rules.insert().values(id=rule_id, **values))
            row = conn.execute(select(rules).where(rules.c.id == rule_id)).one()
        return _rule_from_row(row._mapping)

    def _delete_rule(self, rule_id: str) -> bool:
        with self._engine.begin() as conn:
            result = conn.execute(rules.delete().where(rules.c.id == rule_id))
        return result.rowcount > 0

    def _count_rules(self) -> int:
        with self._engine.connect() as conn:
            return int(
                conn.execute(select(func.count()).select_from(rules)).scalar_one()
            )


def _filtered(statement: Any, clauses: Sequence[ColumnElement[bool]]) -> Any:
    return statement.where(*clauses) if clauses else statement


def compile_filter(query: Mapping[str, Any]) -> list[ColumnElement[bool]]:
    """Translate a document-store filter into SQL where-clauses."""

    clauses: list[ColumnElement[bool]] = []
    for key, condition in query.items():
        if key == "alerts":
            clauses.append(_alerts_clause(condition))
            continue

        column = _scalar_column(key)
        if _is_operator_map(condition):
            clauses.extend(_comparisons(column, key, condition))
        else:
            clauses.append(column == _bind(key, condition))
    return clauses


def _comparisons(
    column: ColumnElement[Any], key: str, operators: Mapping[str, Any]
) -> list[ColumnElement[bool]]:
    clauses: list[ColumnElement[bool]] = []
    for operator, operand in operators.items():
        if operator == "$gt":
            clauses.append(column > _bind(key, operand))
        elif operator == "$gte":
            clauses.append(column >= _bind(key, operand))
        elif operator == "$lt":
            clauses.append(column < _bind(key, operand))
        elif operator == "$lte":
            clauses.append(column <= _bind(key, operand))
        elif operator == "$ne":
            clauses.append(column != _bind(key, operand))
        elif operator == "$exists":
            # Scalar columns are NOT NULL.
            clauses.append(true() if operand else false())
        elif operator == "$not":
            clauses.append(not_(and_(*_comparisons(column, key, operand))))
        else:
            raise ValueError(f"Unsupported query operator {operator} on {key}")
    return clauses


def _alerts_clause(condition: Any) -> ColumnElement[bool]:
    # Records without alerts carry no alerts field in document form.
    count = sensor_data.c.alert_count
    if not _is_operator_map(condition):
        raise ValueError("alerts filter must use query operators")

    clauses: list[ColumnElement[bool]] = []
    for operator, operand in condition.items():
        if operator == "$exists":
            clauses.append(count > 0 if operand else count == 0)
        elif operator == "$size":
            clauses.append(count == int(operand) if operand else false())
        elif operator == "$not":
            clauses.append(not_(_alerts_clause(operand)))
        else:
            raise ValueError(f"Unsupported query operator {operator} on alerts")
    return and_(*clauses)


def _group_key(expression: Any) -> Optional[ColumnElement[Any]]:
    if expression is None:
        return None
    if isinstance(expression, Mapping) and "$dateToString" in expression:
        spec = expression["$dateToString"]
        if spec.get("date") != "$timestamp" or spec.get("format") != HOUR_BUCKET_FORMAT:
            raise ValueError(f"Unsupported $dateToString grouping: {spec!r}")
        return sensor_data.c.hour_bucket
    if isinstance(expression, str) and expression.startswith("$"):
        return _scalar_column(expression[1:])
    raise ValueError(f"Unsupported group key {expression!r}")


def _accumulator(accumulator: Mapping[str, Any]) -> ColumnElement[Any]:
    if len(accumulator) != 1:
        raise ValueError(f"Accumulator must have exactly one operator: {accumulator!r}")
    (operator, expression), = accumulator.items()

    if operator == "$sum" and not isinstance(expression, str):
        return func.count() * int(expression)
    if not isinstance(expression, str) or not expression.startswith("$"):
        raise ValueError(f"Unsupported accumulator operand {expression!r}")

    column = _scalar_column(expression[1:])
    if operator == "$sum":
        return func.coalesce(func.sum(column), 0)
    if operator == "$avg":
        return func.avg(column)
    if operator == "$min":
        return func.min(column)
    if operator == "$max":
        return func.max(column)
    raise ValueError(f"Unsupported accumulator {operator}")


def _scalar_column(key: str) -> ColumnElement[Any]:
    if key not in SCALAR_FIELDS:
        raise ValueError(f"Unsupported field {key}")
    return sensor_data.c[key]


def _is_operator_map(condition: Any) -> bool:
    return (
        isinstance(condition, Mapping)
        and bool(condition)
        and all(str(key).startswith("$") for key in condition)
    )


def _bind(key: str, value: Any) -> Any:
    if key == "timestamp" and isinstance(value, datetime):
        return _utc(value)
    return value


def _utc(value: datetime) -> datetime:
    """Normalise to aware UTC; naive values are taken to be UTC already."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _record_from_row(row: Mapping[str, Any]) -> SensorRecord:
    return SensorRecord(
        gas=row["gas"],
        light=row["light"],
        soil=row["soil"],
        water=row["water"],
        infrared=row["infrared"],
        timestamp=_utc(row["timestamp"]),
        alerts=tuple(row["alerts"] or ()),
        id=row["id"],
    )


def _rule_from_row(row: Mapping[str, Any]) -> Rule:
    return Rule(
        id=row["id"],
        name=row["name"],
        sensor=row["sensor"],
        operator=row["operator"],
        threshold=row["threshold"],
        action=row["action"],
        enabled=bool(row["enabled"]),
        description=row["description"] or "",
        created_at=_utc(row["created_at"]),
        updated_at=_utc(row["updated_at"]),
    )
