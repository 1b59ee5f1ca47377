"""Error taxonomy for collection, protocol and persistence failures."""

from __future__ import annotations


class CollectorError(Exception):
    """Base class for all meter collector errors."""


class DeviceConnectionError(CollectorError, ConnectionError):
    """Device unreachable after bounded connection retries."""

    def __init__(self, device_key: str, message: str, attempts: int = 0) -> None:
        super().__init__(f"{device_key}: {message}")
        self.device_key = device_key
        self.attempts = attempts


class ProtocolTimeoutError(CollectorError, TimeoutError):
    """A protocol operation exceeded its configured timeout."""

    def __init__(self, operation: str, timeout_ms: int, device_key: str = "") -> None:
        super().__init__(
            f"{operation} read timed out after {timeout_ms}ms"
            + (f" ({device_key})" if device_key else "")
        )
        self.operation = operation
        self.timeout_ms = timeout_ms
        self.device_key = device_key


class ProtocolReadError(CollectorError):
    """Device answered with an exception response or the link broke mid-request."""

    def __init__(self, operation: str, message: str, device_key: str = "") -> None:
        super().__init__(f"{operation} read failed: {message}" + (f" ({device_key})" if device_key else ""))
        self.operation = operation
        self.device_key = device_key


class ProtocolDecodeError(CollectorError):
    """Register payload could not be decoded into a value."""

    def __init__(self, address: int, message: str) -> None:
        super().__init__(f"register {address}: {message}")
        self.address = address


class ConfigurationError(CollectorError):
    """Invalid or missing configuration value (non-fatal, falls back to default)."""

    def __init__(self, setting: str, value: object, message: str) -> None:
        super().__init__(f"{setting}={value!r}: {message}")
        self.setting = setting
        self.value = value


class PersistenceError(CollectorError):
    """Storage collaborator failed to persist a batch."""


class CatalogLoadError(CollectorError):
    """Meter catalog could not be loaded from its backing store."""


class CycleInProgressError(CollectorError):
    """A collection cycle was requested while another one is running."""
