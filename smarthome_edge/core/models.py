"""Domain models for telemetry, actuators and rules."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Tuple

PRIMARY_CHANNELS = ("gas", "light", "soil", "water")


def utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def _isoformat(value: datetime) -> str:
    return value.isoformat(timespec="milliseconds")


@dataclass(slots=True, frozen=True)
class TelemetrySample:
    """One decoded sensor reading from the device."""

    gas: int = 0
    light: int = 0
    soil: int = 0
    water: int = 0
    infrared: int = 0
    btn1: int = 0
    btn2: int = 0
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def is_noise(self) -> bool:
        """True when every primary channel reads zero."""
        return not any(getattr(self, name) for name in PRIMARY_CHANNELS)

    def channel(self, name: str) -> Optional[int]:
        """Return the value of a primary channel, or None for unknown names."""
        if name not in PRIMARY_CHANNELS:
            return None
        return getattr(self, name)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "gas": self.gas,
            "light": self.light,
            "soil": self.soil,
            "water": self.water,
            "infrar": self.infrared,
            "btn1": self.btn1,
            "btn2": self.btn2,
            "timestamp": _isoformat(self.timestamp),
        }


@dataclass(slots=True)
class ActuatorState:
    white_light: bool = False
    yellow_light: bool = False
    relay: bool = False
    door_angle: int = 0
    window_angle: int = 0
    fan: bool = False
    fan_speed: int = 0
    buzzer: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class Rule:
    """Automation rule evaluated against every telemetry sample."""

    name: str
    sensor: str
    operator: str
    threshold: int
    action: str
    enabled: bool = True
    description: str = ""
    id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "sensor": self.sensor,
            "operator": self.operator,
            "threshold": self.threshold,
            "action": self.action,
            "enabled": self.enabled,
            "createdAt": _isoformat(self.created_at),
            "updatedAt": _isoformat(self.updated_at),
        }
        if self.description:
            payload["description"] = self.description
        return payload


@dataclass(slots=True, frozen=True)
class SensorRecord:
    """Persisted form of a telemetry sample plus the alerts it raised."""

    gas: int
    light: int
    soil: int
    water: int
    infrared: int
    timestamp: datetime
    alerts: Tuple[str, ...] = ()
    id: Optional[str] = None

    @classmethod
    def from_sample(
        cls, sample: TelemetrySample, alerts: Tuple[str, ...] | list[str] = ()
    ) -> "SensorRecord":
        return cls(
            gas=sample.gas,
            light=sample.light,
            soil=sample.soil,
            water=sample.water,
            infrared=sample.infrared,
            timestamp=sample.timestamp,
            alerts=tuple(alerts),
        )

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "SensorRecord":
        return cls(
            gas=int(document.get("gas", 0)),
            light=int(document.get("light", 0)),
            soil=int(document.get("soil", 0)),
            water=int(document.get("water", 0)),
            infrared=int(document.get("infrared", 0)),
            timestamp=document["timestamp"],
            alerts=tuple(document.get("alerts") or ()),
            id=document.get("_id"),
        )

    def to_document(self) -> Dict[str, Any]:
        document: Dict[str, Any] = {
            "light": self.light,
            "gas": self.gas,
            "soil": self.soil,
            "water": self.water,
            "infrared": self.infrared,
            "timestamp": self.timestamp,
        }
        if self.alerts:
            document["alerts"] = list(self.alerts)
        if self.id is not None:
            document["_id"] = self.id
        return document

    def as_dict(self) -> Dict[str, Any]:
        payload = self.to_document()
        payload.pop("_id", None)
        payload["id"] = self.id
        payload["timestamp"] = _isoformat(self.timestamp)
        return payload


@dataclass(slots=True)
class Statistics:
    """Aggregated min/mean/max values over a trailing window.

    ``values`` is keyed ``<channel>_mean``, ``<channel>_min`` and
    ``<channel>_max`` for every channel that had data.
    """

    count: int = 0
    values: Dict[str, float] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = dict(self.values)
        payload["count"] = self.count
        return payload


@dataclass(slots=True, frozen=True)
class TrendPoint:
    hour: str
    light: float
    gas: float
    soil: float
    water: float
    count: int

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)
