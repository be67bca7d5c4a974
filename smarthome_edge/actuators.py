"""In-memory shadow of the device's actuator state."""

from __future__ import annotations

import dataclasses
import logging
from typing import Any, Optional

from .codec import EchoUpdate, parse_echo
from .core.models import ActuatorState

LOGGER = logging.getLogger(__name__)

BOOL_FIELDS = frozenset({"white_light", "yellow_light", "relay", "fan", "buzzer"})
INT_FIELDS = frozenset({"door_angle", "window_angle", "fan_speed"})

_TRUE_STRINGS = frozenset({"true", "on", "1", "yes"})
_FALSE_STRINGS = frozenset({"false", "off", "0", "no"})


class ActuatorShadow:
    """Last-known actuator state for the single device link.

    Every method is synchronous and never awaits, so updates are atomic with
    respect to other coroutines on the event loop.
    """

    def __init__(self) -> None:
        self._state = ActuatorState()

    def get(self) -> ActuatorState:
        """Return a snapshot copy of the current state."""
        return dataclasses.replace(self._state)

    def reset(self) -> None:
        self._state = ActuatorState()

    def apply_echo(self, text: str) -> Optional[EchoUpdate]:
        """Update the single field addressed by an echo line.

        Returns the applied update, or None when the text matched nothing.
        """

        update = parse_echo(text)
        if update is None:
            return None

        setattr(self._state, update.field, update.value)
        LOGGER.debug("Actuator %s -> %r (echo)", update.field, update.value)
        return update

    def apply_sync(self, field: str, value: Any) -> bool:
        """Force a field to an externally reported value.

        Unknown fields and values that cannot be coerced are ignored.
        """

        if field in BOOL_FIELDS:
            coerced = _coerce_bool(value)
        elif field in INT_FIELDS:
            coerced = _coerce_int(value)
        else:
            LOGGER.debug("Ignoring sync for unknown actuator %r", field)
            return False

        if coerced is None:
            LOGGER.debug("Ignoring sync for %s with value %r", field, value)
            return False

        setattr(self._state, field, coerced)
        return True


def _coerce_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in _TRUE_STRINGS:
            return True
        if normalized in _FALSE_STRINGS:
            return False
    return None


def _coerce_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    try:
        if isinstance(value, (int, float)):
            return int(value)
        if isinstance(value, str):
            return int(float(value.strip()))
    except (ValueError, OverflowError):
        return None
    return None
