"""Telemetry buffering between the read loop and the persistence store."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Awaitable, Callable, Optional

from .constants import (
    DEFAULT_BUFFER_HIGH_WATER,
    DEFAULT_BUFFER_LOW_WATER,
    DEFAULT_FLUSH_INTERVAL_SECONDS,
)
from .core.models import SensorRecord
from .core.protocols import TelemetryStore

LOGGER = logging.getLogger(__name__)

FlushListener = Callable[[bool, Optional[str]], Awaitable[None]]


class TelemetryBuffer:
    """Append-only record buffer with high/low-water eviction.

    When an append pushes the length past ``high_water`` only the most recent
    ``low_water`` records are kept. Evicted records are lost.
    """

    def __init__(
        self,
        *,
        high_water: int = DEFAULT_BUFFER_HIGH_WATER,
        low_water: int = DEFAULT_BUFFER_LOW_WATER,
    ) -> None:
        if low_water < 0 or high_water <= 0 or low_water >= high_water:
            raise ValueError("buffer marks must satisfy 0 <= low_water < high_water")
        self._high_water = high_water
        self._low_water = low_water
        self._records: list[SensorRecord] = []
        self._evicted = 0

    def __len__(self) -> int:
        return len(self._records)

    @property
    def high_water(self) -> int:
        return self._high_water

    @property
    def low_water(self) -> int:
        return self._low_water

    @property
    def evicted_count(self) -> int:
        """Total records dropped by eviction since creation."""
        return self._evicted

    def snapshot(self) -> list[SensorRecord]:
        return list(self._records)

    def append(self, record: SensorRecord) -> None:
        self._records.append(record)
        if len(self._records) > self._high_water:
            dropped = len(self._records) - self._low_water
            self._records = self._records[-self._low_water :] if self._low_water else []
            self._evicted += dropped
            LOGGER.warning(
                "Telemetry buffer exceeded %d records; dropped %d oldest",
                self._high_water,
                dropped,
            )

    def swap(self) -> list[SensorRecord]:
        """Take the entire contents, leaving the buffer empty."""
        records, self._records = self._records, []
        return records

    def restore(self, batch: list[SensorRecord]) -> None:
        """Put a failed batch back ahead of records that arrived since."""
        if batch:
            self._records = batch + self._records


class BufferFlusher:
    """Periodically drains a :class:`TelemetryBuffer` into the store."""

    def __init__(
        self,
        buffer: TelemetryBuffer,
        store: TelemetryStore,
        *,
        interval: float = DEFAULT_FLUSH_INTERVAL_SECONDS,
        listener: Optional[FlushListener] = None,
    ) -> None:
        self._buffer = buffer
        self._store = store
        self._interval = max(0.01, interval)
        self._listener = listener
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task[None]] = None
        self._flush_lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            LOGGER.warning("Flusher already running")
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Stop the periodic task, letting an in-flight flush finish."""

        self._stop_event.set()
        task = self._task
        if task is None:
            return
        with contextlib.suppress(asyncio.CancelledError):
            await task
        self._task = None

    async def flush(self) -> int:
        """Persist everything currently buffered in one bulk call.

        Returns the number of records saved. On failure the batch is restored
        and 0 is returned; the error is logged, never raised.
        """

        async with self._flush_lock:
            batch = self._buffer.swap()
            if not batch:
                return 0

            try:
                await self._store.insert_many(batch)
            except asyncio.CancelledError:
                self._buffer.restore(batch)
                raise
            except Exception as exc:
                self._buffer.restore(batch)
                LOGGER.error(
                    "Error saving sensor data (%d records re-queued): %s",
                    len(batch),
                    exc,
                )
                await self._notify(False, str(exc))
                return 0

            LOGGER.debug("Saved %d sensor records", len(batch))
            await self._notify(True, None)
            return len(batch)

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
                break
            except asyncio.TimeoutError:
                pass

            await self.flush()

    async def _notify(self, healthy: bool, detail: Optional[str]) -> None:
        if self._listener is None:
            return
        try:
            await self._listener(healthy, detail)
        except Exception:  # pragma: no cover
            LOGGER.debug("Flush listener failed", exc_info=True)
