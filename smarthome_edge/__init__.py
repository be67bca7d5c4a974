"""Serial gateway, rule engine and HTTP API for a smart-home sensor board."""

__version__ = "0.1.0"
