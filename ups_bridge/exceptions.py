"""Exception hierarchy for the UPS bridge."""

from __future__ import annotations


class BridgeError(Exception):
    """Base exception for all ups_bridge errors."""


class ConfigError(BridgeError):
    """Invalid or missing configuration."""


class ConnectivityError(BridgeError):
    """An external system (bus, store or hardware source) is unreachable."""


class SourceConnectionError(ConnectivityError):
    """The NUT server could not be queried."""


class ValidationError(BridgeError):
    """A sample is missing fields required for persistence."""

    def __init__(self, message: str, *, missing: list[str] | None = None) -> None:
        self.missing = list(missing or [])
        super().__init__(message)


class ParseError(BridgeError):
    """A field's text value could not be converted to its typed form."""

    def __init__(self, field: str, value: str) -> None:
        self.field = field
        self.value = value
        super().__init__(f"Cannot parse {field!r} value {value!r}")


class ResolutionError(BridgeError):
    """A storage identifier has no numeric key in the store."""
