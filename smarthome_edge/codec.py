"""Line codec for the device serial protocol.

Inbound lines are one of:

- ``ACK``: the device finished the previous command and is ready for the next.
- Telemetry: comma-separated ``KEY:VALUE`` pairs, e.g.
  ``GAS:123,LIGHT:456,SOIL:789,WATER:101,INFRAR:1,BTN1:0,BTN2:1``.
- Actuator echo: free text such as ``White light ON`` or ``Door angle: 90``.

Outbound commands are bare tokens terminated by a single newline.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Union

from .constants import ACK_LINE
from .core.models import TelemetrySample, utcnow

LOGGER = logging.getLogger(__name__)

GAS_KEY = "gas:"

# Optional sign followed by ASCII digits.
INTEGER_VALUE = re.compile(r"[+-]?[0-9]+")

# Wire key -> TelemetrySample field. The firmware spells infrared "INFRAR".
TELEMETRY_KEYS: Dict[str, str] = {
    "gas": "gas",
    "light": "light",
    "soil": "soil",
    "water": "water",
    "infrar": "infrared",
    "infrared": "infrared",
    "btn1": "btn1",
    "btn2": "btn2",
}


@dataclass(slots=True, frozen=True)
class Ack:
    pass


@dataclass(slots=True, frozen=True)
class Telemetry:
    sample: TelemetrySample


@dataclass(slots=True, frozen=True)
class ActuatorEcho:
    text: str


@dataclass(slots=True, frozen=True)
class Unrecognized:
    text: str
    reason: str = "unknown"


DecodedLine = Union[Ack, Telemetry, ActuatorEcho, Unrecognized]


@dataclass(slots=True, frozen=True)
class EchoUpdate:
    field: str
    value: Any


@dataclass(slots=True, frozen=True)
class EchoPattern:
    pattern: re.Pattern[str]
    field: str
    transform: Callable[[re.Match[str]], Any]


def _const(value: Any) -> Callable[[re.Match[str]], Any]:
    return lambda _match: value


def _digits(match: re.Match[str]) -> int:
    return int(match.group(1))


def _entry(pattern: str, field: str, transform: Callable[[re.Match[str]], Any]) -> EchoPattern:
    return EchoPattern(re.compile(pattern, re.IGNORECASE), field, transform)


# Order matters: the first matching entry wins.
ECHO_PATTERNS: tuple[EchoPattern, ...] = (
    _entry(r"white light on", "white_light", _const(True)),
    _entry(r"white light off", "white_light", _const(False)),
    _entry(r"yellow light on", "yellow_light", _const(True)),
    _entry(r"yellow light off", "yellow_light", _const(False)),
    _entry(r"fan speed\D*?(\d+)", "fan_speed", _digits),
    _entry(r"fan on", "fan", _const(True)),
    _entry(r"fan off", "fan", _const(False)),
    _entry(r"relay on", "relay", _const(True)),
    _entry(r"relay off", "relay", _const(False)),
    _entry(r"buzzer on", "buzzer", _const(True)),
    _entry(r"buzzer off", "buzzer", _const(False)),
    _entry(r"door.*?(\d+)", "door_angle", _digits),
    _entry(r"window.*?(\d+)", "window_angle", _digits),
    _entry(r"door opened", "door_angle", _const(180)),
    _entry(r"door closed", "door_angle", _const(0)),
    _entry(r"window opened", "window_angle", _const(180)),
    _entry(r"window closed", "window_angle", _const(0)),
)


def decode_line(line: str, *, now: Optional[datetime] = None) -> DecodedLine:
    """Classify a single inbound line.

    Args:
        line: Raw line text; surrounding whitespace is ignored.
        now: Capture timestamp for telemetry samples (defaults to current UTC).
    """

    text = line.strip()
    if not text:
        return Unrecognized(text, reason="empty")

    if text == ACK_LINE:
        return Ack()

    if GAS_KEY in text.lower():
        sample = decode_telemetry(text, now=now)
        if sample.is_noise:
            return Unrecognized(text, reason="noise")
        return Telemetry(sample)

    if parse_echo(text) is not None:
        return ActuatorEcho(text)

    return Unrecognized(text)


def decode_telemetry(text: str, *, now: Optional[datetime] = None) -> TelemetrySample:
    """Parse ``KEY:VALUE`` pairs into a sample.

    Unknown keys are ignored and pairs with malformed values are skipped
    without rejecting the rest of the line.
    """

    values: Dict[str, int] = {}
    for part in text.split(","):
        key_value = part.split(":")
        if len(key_value) != 2:
            continue

        key = key_value[0].strip().lower()
        field = TELEMETRY_KEYS.get(key)
        if field is None:
            continue

        raw_value = key_value[1].strip()
        if INTEGER_VALUE.fullmatch(raw_value) is None:
            LOGGER.debug("Skipping malformed telemetry pair %r", part)
            continue
        values[field] = int(raw_value)

    return TelemetrySample(timestamp=now or utcnow(), **values)


def encode_telemetry(sample: TelemetrySample) -> str:
    """Render a sample as the canonical telemetry line the firmware emits."""

    return (
        f"GAS:{sample.gas},LIGHT:{sample.light},SOIL:{sample.soil},"
        f"WATER:{sample.water},INFRAR:{sample.infrared},"
        f"BTN1:{sample.btn1},BTN2:{sample.btn2}"
    )


def parse_echo(text: str) -> Optional[EchoUpdate]:
    """Return the actuator field update described by an echo line, if any."""

    for entry in ECHO_PATTERNS:
        match = entry.pattern.search(text)
        if match is None:
            continue
        return EchoUpdate(entry.field, entry.transform(match))
    return None


def encode_command(command: str) -> bytes:
    """Encode a command token for transmission."""

    token = command.strip()
    if not token:
        raise ValueError("Command cannot be empty")
    if "\n" in token or "\r" in token:
        raise ValueError("Command cannot contain line breaks")
    if not token.isascii():
        raise ValueError("Command must be ASCII text")
    return (token + "\n").encode("ascii")
