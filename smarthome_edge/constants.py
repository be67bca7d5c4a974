"""Constants used across the smarthome-edge package."""

from __future__ import annotations

from pathlib import Path

APP_NAME = "smarthome-edge"
DEFAULT_CONFIG_FILENAME = f"{APP_NAME}.cfg"
DEFAULT_CONFIG_PATH = Path.home() / ".config" / APP_NAME / DEFAULT_CONFIG_FILENAME

DEFAULT_LOG_PATH = Path.home() / ".local" / "state" / APP_NAME / f"{APP_NAME}.log"

DEFAULT_DATABASE_PATH = Path.home() / ".local" / "share" / APP_NAME / f"{APP_NAME}.db"
DEFAULT_PERSISTENCE_URI = f"sqlite:///{DEFAULT_DATABASE_PATH}"

DEFAULT_BAUD_RATE = 9600
DEFAULT_SETTLE_SECONDS = 2.0
DEFAULT_COMMAND_DELAY_SECONDS = 0.1

DEFAULT_FLUSH_INTERVAL_SECONDS = 2.0
DEFAULT_BUFFER_HIGH_WATER = 100
DEFAULT_BUFFER_LOW_WATER = 50

DEFAULT_HTTP_HOST = "0.0.0.0"
DEFAULT_HTTP_PORT = 3000

# Channels that may be referenced by rules and analytics queries.
SENSOR_CHANNELS = ("light", "gas", "soil", "water")
RULE_OPERATORS = (">", "<", ">=", "<=", "==")

# Trend bucket label; a strftime format that document stores also accept.
HOUR_BUCKET_FORMAT = "%Y-%m-%d %H:00"

ACK_LINE = "ACK"
