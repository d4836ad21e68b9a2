# bridge/exceptions.py
"""Errors the control surface maps to operator-facing responses."""


class BridgeError(Exception):
    """Base class for bridge errors."""


class ConfigError(BridgeError):
    """Persisted configuration is missing something an operation needs."""


class NoReadyDevicesError(ConfigError):
    """No configured device has an id, key and address, so nothing can start."""


class UnknownDeviceError(BridgeError):
    def __init__(self, device_id: str):
        super().__init__(f"Unknown device: {device_id}")
        self.device_id = device_id


class DeviceRequestError(BridgeError):
    """The device management API could not be reached or answered unexpectedly."""


class RegistryError(BridgeError):
    """Enrollment, deletion or identity push was rejected, or its inputs were incomplete."""

    def __init__(self, message: str, status_code: int = 502):
        super().__init__(message)
        self.status_code = status_code
