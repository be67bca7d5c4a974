"""Outbound command channel enforcing one command in flight."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import deque
from enum import Enum
from typing import Deque, Optional, Set

from .codec import encode_command
from .constants import DEFAULT_COMMAND_DELAY_SECONDS
from .core.errors import NotConnected, TransportFailure
from .core.protocols import SerialStream

LOGGER = logging.getLogger(__name__)
TRAFFIC_LOGGER = logging.getLogger("smarthome_edge.traffic")


class ChannelState(str, Enum):
    READY = "ready"
    """No command is awaiting an ACK; the next send goes out immediately."""

    BUSY = "busy"
    """A command is in flight; further sends are queued."""


class CommandChannel:
    """Send/ACK/queue discipline for the device's half-duplex link.

    ``READY --send--> BUSY`` writes immediately. ``BUSY --send-->`` appends to
    the FIFO. ``BUSY --ACK-->`` returns to ``READY`` when the FIFO is empty,
    otherwise the head is transmitted after ``command_delay`` seconds and the
    channel stays ``BUSY``.

    There is no ACK timeout: a command the device never acknowledges keeps the
    channel ``BUSY`` until the next ACK or until :meth:`detach`.
    """

    def __init__(
        self,
        *,
        lock: Optional[asyncio.Lock] = None,
        command_delay: float = DEFAULT_COMMAND_DELAY_SECONDS,
    ) -> None:
        self._lock = lock or asyncio.Lock()
        self._command_delay = max(0.0, command_delay)
        self._stream: Optional[SerialStream] = None
        self._state = ChannelState.READY
        self._queue: Deque[str] = deque()
        self._scheduled: Set[asyncio.Task[None]] = set()

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def is_attached(self) -> bool:
        return self._stream is not None

    @property
    def pending_count(self) -> int:
        return len(self._queue)

    def pending(self) -> list[str]:
        return list(self._queue)

    def attach(self, stream: SerialStream) -> None:
        """Bind the channel to a freshly opened stream in the ``READY`` state."""
        self._stream = stream
        self._state = ChannelState.READY
        self._queue.clear()

    async def detach(self) -> int:
        """Unbind the stream, dropping queued commands.

        Returns the number of commands that were discarded.
        """

        dropped = len(self._queue)
        self._stream = None
        self._queue.clear()
        self._state = ChannelState.READY

        tasks = list(self._scheduled)
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._scheduled.clear()

        if dropped:
            LOGGER.warning("Discarded %d queued command(s) on detach", dropped)
        return dropped

    async def send(self, command: str) -> bool:
        """Transmit ``command`` now or queue it behind the in-flight one.

        Returns True when the command was written, False when it was queued.

        Raises:
            NotConnected: the channel has no stream.
            TransportFailure: writing to the stream failed.
            ValueError: the command is not a single-line ASCII token.
        """

        payload = encode_command(command)
        token = command.strip()

        async with self._lock:
            stream = self._stream
            if stream is None:
                raise NotConnected("not connected to device")

            if self._state is ChannelState.BUSY:
                self._queue.append(token)
                LOGGER.info("Queued: %s (%d pending)", token, len(self._queue))
                return False

            await self._write(stream, payload, token)
            self._state = ChannelState.BUSY
            return True

    def acknowledge(self) -> Optional[str]:
        """Handle an ACK line from the device.

        Returns the command scheduled for transmission, if any.
        """

        if self._stream is None:
            return None
        return self._advance()

    def _advance(self) -> Optional[str]:
        if not self._queue:
            self._state = ChannelState.READY
            return None

        next_command = self._queue.popleft()
        self._state = ChannelState.BUSY
        task = asyncio.create_task(self._transmit_later(next_command))
        self._scheduled.add(task)
        task.add_done_callback(self._scheduled.discard)
        return next_command

    async def _transmit_later(self, command: str) -> None:
        await asyncio.sleep(self._command_delay)

        async with self._lock:
            stream = self._stream
            if stream is None:
                return
            try:
                await self._write(stream, encode_command(command), command)
            except TransportFailure as exc:
                LOGGER.error("Failed to send queued command %s: %s", command, exc)
                # Nothing is in flight now, so no ACK will arrive for it.
                self._advance()

    async def _write(self, stream: SerialStream, payload: bytes, token: str) -> None:
        try:
            stream.write(payload)
            await stream.drain()
        except (OSError, ConnectionError, RuntimeError) as exc:
            raise TransportFailure(f"failed to send command: {exc}") from exc
        TRAFFIC_LOGGER.info("-> %s", token)
