"""Domain-specific errors for smarthome-edge."""


class EdgeError(Exception):
    """Base error for smarthome-edge."""


class NotConnected(EdgeError):
    """Raised when a command or query needs an open device link."""


class AlreadyConnected(EdgeError):
    """Raised on a connect attempt while a link is already open."""


class InvalidIdentifier(EdgeError):
    """Raised when a rule identifier is malformed."""


class NotFound(EdgeError):
    """Raised when a rule identifier does not exist in the store."""


class TransportFailure(EdgeError):
    """Raised when opening, writing or reading the serial stream fails."""


class PersistenceFailure(EdgeError):
    """Raised when a persistence store call fails."""


class RuleValidationError(EdgeError):
    """Raised when a rule payload does not describe a valid rule."""


class InvalidSensor(EdgeError):
    """Raised when a sensor channel name is outside the supported set."""
