"""
Configuration Dataclasses

Type-safe configuration structures for the relay controller.
Loaded from a YAML file, with environment variables taking precedence.
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

from common.exceptions import ConfigError

MIN_SLAVE_ID = 1
MAX_SLAVE_ID = 247


class SchedulePolicy(str, Enum):
    """How many schedules a relay may carry"""
    SINGLE = "single"      # setting a schedule replaces the relay's existing one
    MULTIPLE = "multiple"  # schedules accumulate and are OR-combined


class Parity(str, Enum):
    """Serial parity, as pymodbus expects it"""
    NONE = "N"
    EVEN = "E"
    ODD = "O"


@dataclass
class SerialSettings:
    """RS-485 serial port settings"""
    port: str = "/dev/ttyUSB0"
    baudrate: int = 9600          # 9600, 19200, 38400, 115200
    parity: Parity = Parity.NONE
    bytesize: int = 8
    stopbits: int = 1


@dataclass
class BusSettings:
    """Bus pacing and recovery"""
    min_interval_ms: int = 100          # between starts of consecutive transactions
    transaction_timeout_s: float = 3.0
    settle_delay_ms: int = 50           # after switching the addressed slave
    reconnect_delay_s: float = 5.0


@dataclass
class ScheduleSettings:
    """Schedule persistence and evaluation"""
    store_path: str = "data/schedules.json"
    timezone: str = "Asia/Bangkok"
    policy: SchedulePolicy = SchedulePolicy.SINGLE


@dataclass
class ReconcilerSettings:
    """Periodic reconciliation"""
    interval_s: float = 60.0
    turn_off_on_shutdown: bool = True
    startup_delay_s: float = 1.0


@dataclass
class ApiSettings:
    """HTTP surface"""
    host: str = "localhost"
    port: int = 4000


@dataclass
class LoggingSettings:
    """Log output"""
    level: str = "INFO"
    format: str = "json"  # json, text


@dataclass
class ControllerConfig:
    """Complete controller configuration"""
    slaves: list[int] = field(default_factory=lambda: list(range(1, 9)))
    default_slave: int = 1
    serial: SerialSettings = field(default_factory=SerialSettings)
    bus: BusSettings = field(default_factory=BusSettings)
    schedule: ScheduleSettings = field(default_factory=ScheduleSettings)
    reconciler: ReconcilerSettings = field(default_factory=ReconcilerSettings)
    api: ApiSettings = field(default_factory=ApiSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)

    @property
    def store_path(self) -> Path:
        return Path(self.schedule.store_path)


def _section(data: dict, name: str) -> dict:
    value = data.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"'{name}' must be a mapping")
    return value


def _parse_slaves(raw: Any) -> list[int]:
    if raw is None:
        return list(range(1, 9))
    if isinstance(raw, int):
        # "slaves: 4" is shorthand for 1..4
        raw = list(range(1, raw + 1))
    if not isinstance(raw, list) or not raw:
        raise ConfigError("'slaves' must be a non-empty list of slave ids")

    slaves = []
    for item in raw:
        slave_id = item.get("id") if isinstance(item, dict) else item
        try:
            slave_id = int(slave_id)
        except (TypeError, ValueError):
            raise ConfigError(f"Invalid slave id: {item!r}")
        if not MIN_SLAVE_ID <= slave_id <= MAX_SLAVE_ID:
            raise ConfigError(f"Slave id {slave_id} outside {MIN_SLAVE_ID}-{MAX_SLAVE_ID}")
        if slave_id in slaves:
            raise ConfigError(f"Duplicate slave id {slave_id}")
        slaves.append(slave_id)
    return slaves


def load_controller_config(data: dict | None) -> ControllerConfig:
    """Load ControllerConfig from dictionary (e.g., from the YAML file)"""
    data = data or {}
    if not isinstance(data, dict):
        raise ConfigError("Configuration root must be a mapping")

    serial_data = _section(data, "serial")
    bus_data = _section(data, "bus")
    schedule_data = _section(data, "schedule")
    reconciler_data = _section(data, "reconciler")
    api_data = _section(data, "api")
    logging_data = _section(data, "logging")

    try:
        serial = SerialSettings(
            port=str(serial_data.get("port", "/dev/ttyUSB0")),
            baudrate=int(serial_data.get("baudrate", 9600)),
            parity=_parse_parity(serial_data.get("parity", "N")),
            bytesize=int(serial_data.get("bytesize", 8)),
            stopbits=int(serial_data.get("stopbits", 1)),
        )
        bus = BusSettings(
            min_interval_ms=int(bus_data.get("min_interval_ms", 100)),
            transaction_timeout_s=float(bus_data.get("transaction_timeout_s", 3.0)),
            settle_delay_ms=int(bus_data.get("settle_delay_ms", 50)),
            reconnect_delay_s=float(bus_data.get("reconnect_delay_s", 5.0)),
        )
        schedule = ScheduleSettings(
            store_path=str(schedule_data.get("store_path", "data/schedules.json")),
            timezone=str(schedule_data.get("timezone", "Asia/Bangkok")),
            policy=SchedulePolicy(schedule_data.get("policy", "single")),
        )
        reconciler = ReconcilerSettings(
            interval_s=float(reconciler_data.get("interval_s", 60.0)),
            turn_off_on_shutdown=bool(reconciler_data.get("turn_off_on_shutdown", True)),
            startup_delay_s=float(reconciler_data.get("startup_delay_s", 1.0)),
        )
        api = ApiSettings(
            host=str(api_data.get("host", "localhost")),
            port=int(api_data.get("port", 4000)),
        )
        logging_settings = LoggingSettings(
            level=str(logging_data.get("level", "INFO")).upper(),
            format=str(logging_data.get("format", "json")).lower(),
        )
        default_slave = int(data.get("default_slave", 1))
    except (TypeError, ValueError) as e:
        raise ConfigError(str(e))

    config = ControllerConfig(
        slaves=_parse_slaves(data.get("slaves")),
        default_slave=default_slave,
        serial=serial,
        bus=bus,
        schedule=schedule,
        reconciler=reconciler,
        api=api,
        logging=logging_settings,
    )
    validate_controller_config(config)
    return config


def _parse_parity(value: Any) -> Parity:
    """Accept N/E/O as well as none/even/odd"""
    text = str(value).strip().lower()
    aliases = {"n": "N", "none": "N", "e": "E", "even": "E", "o": "O", "odd": "O"}
    if text not in aliases:
        raise ConfigError(f"Invalid parity: {value!r}")
    return Parity(aliases[text])


def validate_controller_config(config: ControllerConfig) -> None:
    """Raise ConfigError on values the bus or scheduler cannot work with"""
    errors = []

    if config.default_slave not in config.slaves:
        errors.append(f"default_slave {config.default_slave} is not in slaves")
    if config.serial.baudrate <= 0:
        errors.append("serial.baudrate must be positive")
    if config.serial.bytesize not in (7, 8):
        errors.append("serial.bytesize must be 7 or 8")
    if config.serial.stopbits not in (1, 2):
        errors.append("serial.stopbits must be 1 or 2")
    if config.bus.min_interval_ms < 0:
        errors.append("bus.min_interval_ms cannot be negative")
    if config.bus.transaction_timeout_s <= 0:
        errors.append("bus.transaction_timeout_s must be positive")
    if config.bus.settle_delay_ms < 0:
        errors.append("bus.settle_delay_ms cannot be negative")
    if config.bus.reconnect_delay_s < 0:
        errors.append("bus.reconnect_delay_s cannot be negative")
    if config.reconciler.interval_s <= 0:
        errors.append("reconciler.interval_s must be positive")
    if config.logging.format not in ("json", "text"):
        errors.append("logging.format must be json or text")

    if errors:
        raise ConfigError("; ".join(errors))


# Environment variable -> (section, key, converter)
ENV_OVERRIDES: dict[str, tuple[str | None, str, Any]] = {
    "MODBUS_SERIAL_PORT": ("serial", "port", str),
    "MODBUS_BAUD_RATE": ("serial", "baudrate", int),
    "MODBUS_PARITY": ("serial", "parity", str),
    "MODBUS_DATA_BITS": ("serial", "bytesize", int),
    "MODBUS_STOP_BITS": ("serial", "stopbits", int),
    "MODBUS_DEVICE_ID": (None, "default_slave", int),
    "MODBUS_RECONNECT_DELAY": ("bus", "reconnect_delay_s", lambda ms: int(ms) / 1000),
    "RELAYCTL_TIMEZONE": ("schedule", "timezone", str),
    "HOST": ("api", "host", str),
    "PORT": ("api", "port", int),
    "RELAYCTL_LOG_LEVEL": ("logging", "level", str),
    "RELAYCTL_LOG_FORMAT": ("logging", "format", str),
}


def apply_env_overrides(data: dict, environ: dict[str, str] | None = None) -> dict:
    """
    Return a copy of ``data`` with environment overrides applied.

    Args:
        data: Raw configuration dictionary
        environ: Environment mapping (defaults to os.environ)
    """
    environ = os.environ if environ is None else environ
    merged = {key: (dict(value) if isinstance(value, dict) else value) for key, value in data.items()}

    for env_name, (section, key, convert) in ENV_OVERRIDES.items():
        raw = environ.get(env_name)
        if raw is None or raw == "":
            continue
        try:
            value = convert(raw)
        except (TypeError, ValueError):
            raise ConfigError(f"Invalid value for {env_name}: {raw!r}")
        if section is None:
            merged[key] = value
        else:
            if not isinstance(merged.get(section), dict):
                merged[section] = {}
            merged[section][key] = value

    return merged


def load_config_file(path: str | Path, environ: dict[str, str] | None = None) -> ControllerConfig:
    """
    Load configuration from a YAML file.

    A missing file yields the defaults (plus environment overrides).
    """
    path = Path(path)
    data: dict = {}
    if path.exists():
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Cannot read {path}: {e}")

    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping")

    return load_controller_config(apply_env_overrides(data, environ))
