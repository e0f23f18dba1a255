"""
Serial Transport

Thin async wrapper around pymodbus' RTU serial client. It speaks the coil
functions the relay boards understand and translates pymodbus failures into
the controller's exception hierarchy:

    ConnectionException / OSError  -> TransportError   (link is gone)
    ModbusIOException              -> BusTimeoutError  (no reply)
    error response / ModbusException -> BusError       (device said no)
    ValueError                     -> BusError         (request pymodbus cannot encode)

The transport knows nothing about queuing; every call is expected to run
inside a BusArbiter slot.
"""

from pymodbus.client import AsyncModbusSerialClient
from pymodbus.exceptions import ConnectionException, ModbusException, ModbusIOException

from common.config import SerialSettings
from common.exceptions import BusError, BusTimeoutError, TransportError
from common.logging_setup import get_service_logger

logger = get_service_logger("bus.transport")


class SerialTransport:
    """
    Async Modbus RTU transport for one RS-485 port.

    The addressed slave is sticky: ``set_slave`` selects the unit id used by
    every subsequent request until it is changed again.
    """

    def __init__(self, settings: SerialSettings, timeout: float = 3.0):
        self.settings = settings
        self.timeout = timeout

        self._client: AsyncModbusSerialClient | None = None
        self._slave_id: int | None = None

    @property
    def connected(self) -> bool:
        return self._client is not None and self._client.connected

    @property
    def slave_id(self) -> int | None:
        return self._slave_id

    async def connect(self) -> bool:
        """Open the serial port; returns False instead of raising"""
        if self.connected:
            return True

        s = self.settings
        try:
            self._client = AsyncModbusSerialClient(
                port=s.port,
                baudrate=s.baudrate,
                parity=s.parity.value,
                bytesize=s.bytesize,
                stopbits=s.stopbits,
                timeout=self.timeout,
                retries=0,
            )
            await self._client.connect()
        except (ModbusException, OSError, ValueError) as e:
            logger.error(f"Serial connection error on {s.port}: {e}")
            self._client = None
            return False

        if not self._client.connected:
            logger.warning(f"Failed to open serial port {s.port}")
            self._client = None
            return False

        logger.debug(
            f"Connected to serial port {s.port} "
            f"(baud={s.baudrate}, parity={s.parity.value}, "
            f"bytesize={s.bytesize}, stop={s.stopbits})"
        )
        return True

    def close(self) -> None:
        """Close the serial port"""
        if self._client:
            client, self._client = self._client, None
            client.close()
            logger.debug(f"Disconnected from serial port {self.settings.port}")

    def set_slave(self, slave_id: int) -> None:
        self._slave_id = slave_id

    def _require_client(self) -> AsyncModbusSerialClient:
        if not self.connected:
            raise TransportError(f"Serial port {self.settings.port} is not open", self._slave_id)
        return self._client

    def _translate(self, e: Exception, function: str, relay: int | None = None) -> Exception:
        if isinstance(e, (ConnectionException, OSError)):
            return TransportError(f"Serial link lost during {function}: {e}", self._slave_id, relay)
        if isinstance(e, ModbusIOException):
            return BusTimeoutError(
                f"No response from slave {self._slave_id} to {function}",
                timeout_s=self.timeout,
                slave_id=self._slave_id,
                relay=relay,
            )
        return BusError(f"Modbus exception in {function}: {e}", self._slave_id, relay, function)

    def _check(self, response, function: str, relay: int | None = None):
        if response.isError():
            raise BusError(
                f"Slave {self._slave_id} rejected {function}: {response}",
                self._slave_id,
                relay,
                function,
            )
        return response

    async def read_coils(self, address: int, count: int = 1) -> list[bool]:
        """Read ``count`` coils starting at zero-based ``address``"""
        client = self._require_client()
        try:
            response = await client.read_coils(address, count=count, device_id=self._slave_id)
        except (ModbusException, OSError, ValueError) as e:
            raise self._translate(e, "read_coils", address + 1)

        self._check(response, "read_coils", address + 1)
        # Coil responses are padded to a whole byte
        return [bool(bit) for bit in response.bits[:count]]

    async def write_coil(self, address: int, value: bool) -> None:
        client = self._require_client()
        try:
            response = await client.write_coil(address, bool(value), device_id=self._slave_id)
        except (ModbusException, OSError, ValueError) as e:
            raise self._translate(e, "write_coil", address + 1)
        self._check(response, "write_coil", address + 1)

    async def write_coils(self, address: int, values: list[bool]) -> None:
        client = self._require_client()
        try:
            response = await client.write_coils(
                address, [bool(v) for v in values], device_id=self._slave_id
            )
        except (ModbusException, OSError, ValueError) as e:
            raise self._translate(e, "write_coils")
        self._check(response, "write_coils")

    async def read_holding_registers(self, address: int, count: int = 1) -> list[int]:
        """Used by the maintenance CLI for board configuration registers"""
        client = self._require_client()
        try:
            response = await client.read_holding_registers(
                address, count=count, device_id=self._slave_id
            )
        except (ModbusException, OSError, ValueError) as e:
            raise self._translate(e, "read_holding_registers")
        self._check(response, "read_holding_registers")
        return list(response.registers)

    async def write_registers(self, address: int, values: list[int]) -> None:
        client = self._require_client()
        try:
            response = await client.write_registers(address, values, device_id=self._slave_id)
        except (ModbusException, OSError, ValueError) as e:
            raise self._translate(e, "write_registers")
        self._check(response, "write_registers")
