"""Serial link supervision: connection lifecycle and the inbound read loop."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, Optional

from .actuators import ActuatorShadow
from .adapters.serial_port import open_serial_stream
from .buffer import BufferFlusher, TelemetryBuffer
from .codec import Ack, ActuatorEcho, Telemetry, decode_line
from .commands import TRAFFIC_LOGGER, ChannelState, CommandChannel
from .constants import (
    DEFAULT_BAUD_RATE,
    DEFAULT_COMMAND_DELAY_SECONDS,
    DEFAULT_FLUSH_INTERVAL_SECONDS,
    DEFAULT_SETTLE_SECONDS,
)
from .core.errors import (
    AlreadyConnected,
    NotConnected,
    TransportFailure,
)
from .core.models import ActuatorState, SensorRecord, TelemetrySample, utcnow
from .core.protocols import SerialStream, StreamOpener, TelemetryStore
from .health import HealthReporter
from .rules import RuleEngine, action_to_command

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class LinkSession:
    """State that exists from a successful open until disconnect."""

    port: str
    baud_rate: int
    stream: SerialStream
    flusher: BufferFlusher
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)
    reader_task: Optional[asyncio.Task[None]] = None
    connected_at: datetime = field(default_factory=utcnow)

    @property
    def reader_active(self) -> bool:
        return self.reader_task is not None and not self.reader_task.done()


class LinkSupervisor:
    """Owns the device link and routes every inbound line.

    Telemetry is rule-evaluated and buffered, ACKs release the command
    channel, and echoes update the actuator shadow. One ``asyncio.Lock``
    guards connect/disconnect and every stream write; the read loop is
    cancelled and awaited before the stream is closed.
    """

    def __init__(
        self,
        *,
        rule_engine: RuleEngine,
        store: TelemetryStore,
        opener: Optional[StreamOpener] = None,
        buffer: Optional[TelemetryBuffer] = None,
        shadow: Optional[ActuatorShadow] = None,
        health: Optional[HealthReporter] = None,
        settle_seconds: float = DEFAULT_SETTLE_SECONDS,
        flush_interval: float = DEFAULT_FLUSH_INTERVAL_SECONDS,
        command_delay: float = DEFAULT_COMMAND_DELAY_SECONDS,
    ) -> None:
        self._rules = rule_engine
        self._store = store
        self._opener: StreamOpener = opener or open_serial_stream
        self._buffer = buffer if buffer is not None else TelemetryBuffer()
        self._shadow = shadow if shadow is not None else ActuatorShadow()
        self._health = health
        self._settle_seconds = max(0.0, settle_seconds)
        self._flush_interval = flush_interval

        self._lock = asyncio.Lock()
        self._channel = CommandChannel(lock=self._lock, command_delay=command_delay)
        self._session: Optional[LinkSession] = None
        self._current: Optional[TelemetrySample] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    @property
    def is_connected(self) -> bool:
        return self._session is not None

    @property
    def channel(self) -> CommandChannel:
        return self._channel

    @property
    def buffer(self) -> TelemetryBuffer:
        return self._buffer

    async def connect(self, port: str, baud_rate: int = DEFAULT_BAUD_RATE) -> None:
        """Open ``port`` and start the read loop and flush timer.

        Raises:
            AlreadyConnected: a link is already open.
            TransportFailure: the stream could not be opened.
        """

        async with self._lock:
            if self._session is not None:
                raise AlreadyConnected(
                    f"already connected to a port ({self._session.port})"
                )

            try:
                stream = await self._opener(port, baud_rate)
            except TransportFailure as exc:
                await self._report("serial", False, str(exc))
                raise
            except Exception as exc:
                await self._report("serial", False, str(exc))
                raise TransportFailure(f"failed to open port {port}: {exc}") from exc

            # The board resets when the port opens; give its boot sequence time.
            try:
                if self._settle_seconds > 0:
                    await asyncio.sleep(self._settle_seconds)
            except BaseException:
                await _close_stream(stream)
                raise

            session = LinkSession(
                port=port,
                baud_rate=baud_rate,
                stream=stream,
                flusher=BufferFlusher(
                    self._buffer,
                    self._store,
                    interval=self._flush_interval,
                    listener=self._on_flush,
                ),
            )
            self._channel.attach(stream)
            session.reader_task = asyncio.create_task(self._read_loop(session))
            session.flusher.start()
            self._session = session

        LOGGER.info("Connected to device on %s at %d baud", port, baud_rate)
        await self._report("serial", True, f"connected to {port}")

    async def disconnect(self) -> None:
        """Stop the loops, flush buffered telemetry and close the stream.

        Calling this while disconnected does nothing.
        """

        async with self._lock:
            session = self._session
            if session is None:
                return

            session.stop_event.set()
            task = session.reader_task
            if task is not None:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

            await session.flusher.stop()
            await self._channel.detach()
            await session.flusher.flush()

            await _close_stream(session.stream)
            self._session = None

        LOGGER.info("Disconnected from device on %s", session.port)
        await self._report("serial", False, "disconnected")

    # ------------------------------------------------------------------
    # Boundary queries and commands
    # ------------------------------------------------------------------
    def status(self) -> Dict[str, Any]:
        session = self._session
        payload: Dict[str, Any] = {
            "connected": session is not None,
            "port": session.port if session else None,
            "baudRate": session.baud_rate if session else None,
            "ready": self._channel.state is ChannelState.READY,
            "pendingCommands": self._channel.pending_count,
            "bufferedRecords": len(self._buffer),
            "evictedRecords": self._buffer.evicted_count,
            "readerActive": session.reader_active if session else False,
        }
        if session is not None:
            payload["connectedAt"] = session.connected_at.isoformat(timespec="seconds")
        return payload

    def current_sample(self) -> Optional[TelemetrySample]:
        """Latest telemetry sample, or None before the first one arrives."""
        self._require_connection()
        return self._current

    def actuator_states(self) -> ActuatorState:
        self._require_connection()
        return self._shadow.get()

    def sync_actuator(self, field_name: str, value: Any) -> bool:
        """Record an actuator state reported by the frontend."""
        self._require_connection()
        return self._shadow.apply_sync(field_name, value)

    async def send_command(self, command: str) -> bool:
        """Send a raw command; returns False when it was queued."""
        return await self._channel.send(command)

    async def flush(self) -> int:
        """Persist buffered telemetry now, whether or not a link is open."""
        session = self._session
        if session is not None:
            return await session.flusher.flush()
        return await BufferFlusher(self._buffer, self._store).flush()

    # ------------------------------------------------------------------
    # Inbound routing
    # ------------------------------------------------------------------
    async def handle_line(self, line: str) -> None:
        """Decode one inbound line and route it."""

        decoded = decode_line(line)

        if isinstance(decoded, Ack):
            next_command = self._channel.acknowledge()
            if next_command is not None:
                LOGGER.debug("ACK received; sending queued %s", next_command)
            return

        if isinstance(decoded, Telemetry):
            await self._handle_sample(decoded.sample)
            return

        if isinstance(decoded, ActuatorEcho):
            self._shadow.apply_echo(decoded.text)
            return

        LOGGER.debug("Ignoring %s line: %s", decoded.reason, decoded.text)

    async def _handle_sample(self, sample: TelemetrySample) -> None:
        self._current = sample
        evaluation = await self._rules.evaluate(sample)
        self._buffer.append(SensorRecord.from_sample(sample, evaluation.alerts))
        if evaluation.actions:
            await self._execute_actions(evaluation.actions)

    async def _execute_actions(self, actions: Iterable[str]) -> None:
        for action in actions:
            command = action_to_command(action)
            try:
                await self._channel.send(command)
            except (NotConnected, TransportFailure, ValueError) as exc:
                LOGGER.warning("Failed to execute action %s: %s", action, exc)

    async def _read_loop(self, session: LinkSession) -> None:
        stream = session.stream
        while not session.stop_event.is_set():
            try:
                raw = await stream.readline()
            except asyncio.CancelledError:
                raise
            except ValueError as exc:
                # Over-long line; the reader discards it.
                LOGGER.warning("Discarding unreadable line from %s: %s", session.port, exc)
                continue
            except Exception as exc:
                LOGGER.error("Serial read error on %s: %s", session.port, exc)
                await self._report("serial", False, f"read error: {exc}")
                return

            if not raw:
                LOGGER.warning("Serial stream on %s closed by device", session.port)
                await self._report("serial", False, "stream closed")
                return

            line = raw.decode("utf-8", errors="replace").strip()
            if not line:
                continue

            TRAFFIC_LOGGER.info("<- %s", line)
            try:
                await self.handle_line(line)
            except asyncio.CancelledError:
                raise
            except Exception:
                LOGGER.exception("Failed to handle line %r", line)

    def _require_connection(self) -> None:
        if self._session is None:
            raise NotConnected("Arduino not connected")

    async def _on_flush(self, healthy: bool, detail: Optional[str]) -> None:
        await self._report("persistence", healthy, detail)

    async def _report(self, name: str, healthy: bool, detail: Optional[str]) -> None:
        if self._health is not None:
            await self._health.update(name, healthy, detail)


async def _close_stream(stream: SerialStream) -> None:
    try:
        stream.close()
        await stream.wait_closed()
    except Exception as exc:
        LOGGER.debug("Error closing serial stream: %s", exc)
