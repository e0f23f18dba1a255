"""
Bus Layer - Modbus RTU over RS-485

Responsibilities:
- Serialize every bus transaction (one in flight, FIFO, paced)
- Open the serial port and reconnect after transport failures
- Address slaves and read/write relay coils
"""

from .arbiter import BusArbiter
from .device_client import ConnectionState, DeviceClient
from .transport import SerialTransport

__all__ = ["BusArbiter", "ConnectionState", "DeviceClient", "SerialTransport"]
