"""
Common Utilities

Shared modules used across the controller:
- config.py - Configuration dataclasses and YAML/env loading
- exceptions.py - Custom exception classes
- logging_setup.py - Structured logging setup
- scheduler.py - Drift-free interval loop
- timezone.py - Timestamp normalization into the controller's zone
"""

from .config import (
    ControllerConfig,
    SerialSettings,
    BusSettings,
    ScheduleSettings,
    ReconcilerSettings,
    ApiSettings,
    LoggingSettings,
    SchedulePolicy,
    Parity,
    load_controller_config,
    load_config_file,
    apply_env_overrides,
)
from .exceptions import (
    RelayControlError,
    ConfigError,
    DeviceError,
    NotConnectedError,
    TransportError,
    BusTimeoutError,
    BusError,
    ValidationError,
    ScheduleNotFoundError,
    StoreError,
)
from .logging_setup import (
    setup_logging,
    configure_logging,
    get_service_logger,
    LogContext,
    log_relay_read,
    log_relay_write,
)

__all__ = [
    # Config
    "ControllerConfig",
    "SerialSettings",
    "BusSettings",
    "ScheduleSettings",
    "ReconcilerSettings",
    "ApiSettings",
    "LoggingSettings",
    "SchedulePolicy",
    "Parity",
    "load_controller_config",
    "load_config_file",
    "apply_env_overrides",
    # Exceptions
    "RelayControlError",
    "ConfigError",
    "DeviceError",
    "NotConnectedError",
    "TransportError",
    "BusTimeoutError",
    "BusError",
    "ValidationError",
    "ScheduleNotFoundError",
    "StoreError",
    # Logging
    "setup_logging",
    "configure_logging",
    "get_service_logger",
    "LogContext",
    "log_relay_read",
    "log_relay_write",
]
