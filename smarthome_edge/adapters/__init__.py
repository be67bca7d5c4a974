"""Adapter modules for external integrations."""

from .memory_store import MemoryStore
from .serial_port import SerialConnection, list_serial_ports, open_serial_stream
from .sql_store import SqlStore

__all__ = [
    "MemoryStore",
    "SerialConnection",
    "SqlStore",
    "list_serial_ports",
    "open_serial_stream",
]
