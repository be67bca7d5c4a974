"""Protocol definitions for the serial stream and persistence collaborators."""

from __future__ import annotations

from typing import (
    Any,
    Awaitable,
    Callable,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    Tuple,
)

from .models import Rule, SensorRecord


class SerialStream(Protocol):
    """Bidirectional, newline-delimited byte stream to the device."""

    async def readline(self) -> bytes:
        """Return the next line including its terminator, or b"" at EOF."""
        ...

    def write(self, data: bytes) -> None:
        ...

    async def drain(self) -> None:
        ...

    def close(self) -> None:
        ...

    async def wait_closed(self) -> None:
        ...


StreamOpener = Callable[[str, int], Awaitable[SerialStream]]


class TelemetryStore(Protocol):
    """Contract for the sensor record collection.

    Filters and pipelines use the document-store dialect produced by
    :mod:`smarthome_edge.analytics`.
    """

    async def insert_many(self, records: Sequence[SensorRecord]) -> None:
        """Persist all records or none of them."""
        ...

    async def find(
        self,
        query: Mapping[str, Any],
        *,
        sort: Optional[Sequence[Tuple[str, int]]] = None,
        limit: int = 0,
        skip: int = 0,
    ) -> Tuple[list[SensorRecord], int]:
        """Return one page of matching records and the total match count."""
        ...

    async def aggregate(
        self, pipeline: Sequence[Mapping[str, Any]]
    ) -> list[dict[str, Any]]:
        ...


class RuleStore(Protocol):
    async def list_rules(self) -> list[Rule]:
        """Return every rule in creation order."""
        ...

    async def get_rule(self, rule_id: str) -> Optional[Rule]:
        ...

    async def upsert_rule(self, rule: Rule) -> Rule:
        """Insert a rule (assigning an id when missing) or replace it."""
        ...

    async def delete_rule(self, rule_id: str) -> bool:
        """Remove a rule, returning False when it did not exist."""
        ...

    async def count_rules(self) -> int:
        ...


class PersistenceStore(TelemetryStore, RuleStore, Protocol):
    """Combined store used by the application."""

    def describe(self) -> str:
        """Human-readable location for logs and health details."""
        ...

    async def initialize(self) -> None:
        """Prepare the backing storage (schema, directories)."""
        ...

    async def ping(self) -> None:
        """Round-trip to the backend; raises when it is unreachable."""
        ...

    async def close(self) -> None:
        ...
