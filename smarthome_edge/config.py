"""Configuration loader for smarthome-edge."""

from __future__ import annotations

from configparser import ConfigParser
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from . import constants


@dataclass(slots=True)
class SerialConfig:
    port: Optional[str] = None
    baud_rate: int = constants.DEFAULT_BAUD_RATE
    auto_connect: bool = False
    settle_seconds: float = constants.DEFAULT_SETTLE_SECONDS
    command_delay_seconds: float = constants.DEFAULT_COMMAND_DELAY_SECONDS


@dataclass(slots=True)
class BufferConfig:
    flush_interval_seconds: float = constants.DEFAULT_FLUSH_INTERVAL_SECONDS
    high_water: int = constants.DEFAULT_BUFFER_HIGH_WATER
    low_water: int = constants.DEFAULT_BUFFER_LOW_WATER


@dataclass(slots=True)
class HttpConfig:
    enabled: bool = True
    host: str = constants.DEFAULT_HTTP_HOST
    port: int = constants.DEFAULT_HTTP_PORT


@dataclass(slots=True)
class PersistenceConfig:
    uri: Optional[str] = constants.DEFAULT_PERSISTENCE_URI


@dataclass(slots=True)
class RulesConfig:
    seed_defaults: bool = True


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    path: Optional[Path] = constants.DEFAULT_LOG_PATH
    log_serial: bool = False


@dataclass(slots=True)
class EdgeConfig:
    serial: SerialConfig
    buffer: BufferConfig
    http: HttpConfig
    rules: RulesConfig
    persistence: PersistenceConfig
    logging: LoggingConfig
    raw: ConfigParser
    path: Path


def load_config(path: Optional[Path] = None) -> EdgeConfig:
    """Load configuration from disk, applying defaults where necessary."""

    config_path = path or constants.DEFAULT_CONFIG_PATH
    parser = ConfigParser()
    parser.read_dict(
        {
            "serial": {
                "baud_rate": str(constants.DEFAULT_BAUD_RATE),
                "auto_connect": "false",
                "settle_seconds": str(constants.DEFAULT_SETTLE_SECONDS),
                "command_delay_seconds": str(constants.DEFAULT_COMMAND_DELAY_SECONDS),
            },
            "buffer": {
                "flush_interval_seconds": str(
                    constants.DEFAULT_FLUSH_INTERVAL_SECONDS
                ),
                "high_water": str(constants.DEFAULT_BUFFER_HIGH_WATER),
                "low_water": str(constants.DEFAULT_BUFFER_LOW_WATER),
            },
            "http": {
                "enabled": "true",
                "host": constants.DEFAULT_HTTP_HOST,
                "port": str(constants.DEFAULT_HTTP_PORT),
            },
            "rules": {
                "seed_defaults": "true",
            },
            "persistence": {
                "uri": constants.DEFAULT_PERSISTENCE_URI,
            },
            "logging": {
                "level": "INFO",
                "path": str(constants.DEFAULT_LOG_PATH),
                "log_serial": "false",
            },
        }
    )

    if config_path.exists():
        parser.read(config_path)

    port_value = parser.get("serial", "port", fallback="").strip()
    serial = SerialConfig(
        port=port_value or None,
        baud_rate=max(
            1,
            parser.getint(
                "serial", "baud_rate", fallback=constants.DEFAULT_BAUD_RATE
            ),
        ),
        auto_connect=parser.getboolean("serial", "auto_connect", fallback=False),
        settle_seconds=max(
            0.0,
            parser.getfloat(
                "serial", "settle_seconds", fallback=constants.DEFAULT_SETTLE_SECONDS
            ),
        ),
        command_delay_seconds=max(
            0.0,
            parser.getfloat(
                "serial",
                "command_delay_seconds",
                fallback=constants.DEFAULT_COMMAND_DELAY_SECONDS,
            ),
        ),
    )

    high_water = max(
        1,
        parser.getint(
            "buffer", "high_water", fallback=constants.DEFAULT_BUFFER_HIGH_WATER
        ),
    )
    low_water = max(
        0,
        parser.getint(
            "buffer", "low_water", fallback=constants.DEFAULT_BUFFER_LOW_WATER
        ),
    )
    if low_water >= high_water:
        low_water = high_water // 2

    buffer = BufferConfig(
        flush_interval_seconds=max(
            0.1,
            parser.getfloat(
                "buffer",
                "flush_interval_seconds",
                fallback=constants.DEFAULT_FLUSH_INTERVAL_SECONDS,
            ),
        ),
        high_water=high_water,
        low_water=low_water,
    )

    http = HttpConfig(
        enabled=parser.getboolean("http", "enabled", fallback=True),
        host=parser.get("http", "host", fallback=constants.DEFAULT_HTTP_HOST),
        port=min(
            65535,
            max(0, parser.getint("http", "port", fallback=constants.DEFAULT_HTTP_PORT)),
        ),
    )

    rules = RulesConfig(
        seed_defaults=parser.getboolean("rules", "seed_defaults", fallback=True),
    )

    uri_value = parser.get("persistence", "uri", fallback="").strip()
    persistence = PersistenceConfig(uri=uri_value or None)

    path_value = parser.get("logging", "path", fallback="").strip()
    logging_config = LoggingConfig(
        level=parser.get("logging", "level", fallback="INFO"),
        path=Path(path_value).expanduser() if path_value else None,
        log_serial=parser.getboolean("logging", "log_serial", fallback=False),
    )

    return EdgeConfig(
        serial=serial,
        buffer=buffer,
        http=http,
        rules=rules,
        persistence=persistence,
        logging=logging_config,
        raw=parser,
        path=config_path,
    )


def save_config(config: EdgeConfig) -> None:
    """Persist the current configuration to disk."""

    config_path = config.path
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as stream:
        config.raw.write(stream)
