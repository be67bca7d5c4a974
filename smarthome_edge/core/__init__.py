"""Core primitives for smarthome-edge."""

from .errors import (
    AlreadyConnected,
    EdgeError,
    InvalidIdentifier,
    InvalidSensor,
    NotConnected,
    NotFound,
    PersistenceFailure,
    RuleValidationError,
    TransportFailure,
)
from .models import (
    PRIMARY_CHANNELS,
    ActuatorState,
    Rule,
    SensorRecord,
    Statistics,
    TelemetrySample,
    TrendPoint,
    utcnow,
)
from .protocols import (
    PersistenceStore,
    RuleStore,
    SerialStream,
    StreamOpener,
    TelemetryStore,
)

__all__ = [
    "PRIMARY_CHANNELS",
    "ActuatorState",
    "AlreadyConnected",
    "EdgeError",
    "InvalidIdentifier",
    "InvalidSensor",
    "NotConnected",
    "NotFound",
    "PersistenceFailure",
    "PersistenceStore",
    "Rule",
    "RuleStore",
    "RuleValidationError",
    "SensorRecord",
    "SerialStream",
    "Statistics",
    "StreamOpener",
    "TelemetrySample",
    "TelemetryStore",
    "TransportFailure",
    "TrendPoint",
    "utcnow",
]
