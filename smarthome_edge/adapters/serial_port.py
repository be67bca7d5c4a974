"""Serial port adapter built on pyserial-asyncio.

The device speaks newline-terminated ASCII over an 8N1 link.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import serial
import serial_asyncio
from serial.tools import list_ports

from ..core.errors import TransportFailure

LOGGER = logging.getLogger(__name__)


class SerialConnection:
    """Stream pair wrapper satisfying :class:`~smarthome_edge.core.SerialStream`."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: Any,
        *,
        port: str = "",
    ) -> None:
        self.port = port
        self._reader = reader
        self._writer = writer

    async def readline(self) -> bytes:
        return await self._reader.readline()

    def write(self, data: bytes) -> None:
        self._writer.write(data)

    async def drain(self) -> None:
        await self._writer.drain()

    def close(self) -> None:
        self._writer.close()

    async def wait_closed(self) -> None:
        await self._writer.wait_closed()


async def open_serial_stream(port: str, baud_rate: int) -> SerialConnection:
    """Open ``port`` at ``baud_rate`` (8N1) and return the stream wrapper.

    Raises:
        TransportFailure: the port could not be opened.
    """

    try:
        reader, writer = await serial_asyncio.open_serial_connection(
            url=port,
            baudrate=baud_rate,
        )
    except (serial.SerialException, OSError, ValueError) as exc:
        raise TransportFailure(f"failed to open port {port}: {exc}") from exc

    LOGGER.debug("Opened serial port %s at %d baud", port, baud_rate)
    return SerialConnection(reader, writer, port=port)


def list_serial_ports() -> list[str]:
    """Device names of the serial ports present on this host."""

    try:
        ports = list_ports.comports()
    except OSError as exc:
        raise TransportFailure(f"failed to list serial ports: {exc}") from exc
    return sorted(port.device for port in ports)
