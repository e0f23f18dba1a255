"""
Custom Exception Classes for the Relay Controller

Hierarchical exception structure shared by the bus, schedule and API layers.
Every error carries a short ``kind`` so the HTTP layer can map it to a status
code without inspecting messages.
"""

from typing import Any


class RelayControlError(Exception):
    """Base exception for all relay controller errors"""

    kind = "internal"

    def __init__(self, message: str, recoverable: bool = True):
        self.message = message
        self.recoverable = recoverable
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "message": self.message}


class ConfigError(RelayControlError):
    """Configuration-related errors"""

    kind = "config"

    def __init__(self, message: str, recoverable: bool = False):
        super().__init__(f"Config Error: {message}", recoverable)


class DeviceError(RelayControlError):
    """Bus / device communication errors"""

    kind = "device"

    def __init__(
        self,
        message: str,
        slave_id: int | None = None,
        relay: int | None = None,
        recoverable: bool = True,
    ):
        self.slave_id = slave_id
        self.relay = relay
        super().__init__(message, recoverable)

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        if self.slave_id is not None:
            data["slave_id"] = self.slave_id
        if self.relay is not None:
            data["relay"] = self.relay
        return data


class NotConnectedError(DeviceError):
    """Bus unavailable - device offline"""

    kind = "not_connected"


class TransportError(NotConnectedError):
    """Serial link failed mid-transaction; the client must reconnect"""

    kind = "transport"


class BusTimeoutError(DeviceError):
    """Transaction did not complete before its deadline"""

    kind = "bus_timeout"

    def __init__(
        self,
        message: str,
        timeout_s: float | None = None,
        slave_id: int | None = None,
        relay: int | None = None,
    ):
        self.timeout_s = timeout_s
        super().__init__(message, slave_id, relay, recoverable=True)


class BusError(DeviceError):
    """Protocol-level rejection from a device"""

    kind = "bus_error"

    def __init__(
        self,
        message: str,
        slave_id: int | None = None,
        relay: int | None = None,
        function: str | None = None,
    ):
        self.function = function
        super().__init__(message, slave_id, relay, recoverable=True)


class ValidationError(RelayControlError):
    """Bad client input: slave id, relay number, time range, day set"""

    kind = "validation"

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message, recoverable=False)

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        if self.field:
            data["field"] = self.field
        return data


class ScheduleNotFoundError(RelayControlError):
    """No schedule with the requested id"""

    kind = "not_found"

    def __init__(self, schedule_id: str):
        self.schedule_id = schedule_id
        super().__init__(f"No schedule found with id {schedule_id}", recoverable=False)


class StoreError(RelayControlError):
    """Schedule persistence failed; the in-memory change was kept"""

    kind = "store"

    def __init__(self, message: str, path: str | None = None):
        self.path = path
        super().__init__(f"Store Error: {message}", recoverable=True)
