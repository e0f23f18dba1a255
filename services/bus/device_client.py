"""
Device Client

Relay-level operations over the shared RS-485 bus.

Owns the connection lifecycle (connect, transport-error detection, delayed
reconnect) and turns "set relay 3 on slave 2" into serialized coil
transactions through the BusArbiter. The addressed slave is re-asserted
inside every transaction's own arbiter slot, so concurrent callers targeting
different slaves can never redirect each other's requests.
"""

import asyncio
from enum import Enum
from typing import Awaitable, Callable

from common.exceptions import (
    BusTimeoutError,
    NotConnectedError,
    RelayControlError,
    TransportError,
    ValidationError,
)
from common.logging_setup import get_service_logger, log_relay_read, log_relay_write
from common.relay import MAX_BLOCK_COILS, RelayRef
from services.bus.arbiter import BusArbiter
from services.bus.transport import SerialTransport

logger = get_service_logger("bus.device")


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class DeviceClient:
    """
    Connection-managed relay client.

    Only CONNECTED permits reads and writes; every other state fails fast
    with NotConnectedError while a reconnect is pending in the background.
    """

    def __init__(
        self,
        transport: SerialTransport,
        arbiter: BusArbiter,
        slaves: list[int],
        default_slave: int,
        settle_delay: float = 0.05,
        reconnect_delay: float = 5.0,
    ):
        if default_slave not in slaves:
            raise ValidationError(f"Default slave {default_slave} is not configured", field="default_slave")

        self._transport = transport
        self._arbiter = arbiter
        self._slaves = list(slaves)
        self.default_slave = default_slave
        self.settle_delay = settle_delay
        self.reconnect_delay = reconnect_delay

        self._state = ConnectionState.DISCONNECTED
        self._current_slave: int | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._closed = False

        self._connect_attempts = 0
        self._reconnect_count = 0
        self._transport_errors = 0

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    @property
    def current_slave(self) -> int | None:
        return self._current_slave

    # -- Connection lifecycle ------------------------------------------------

    async def connect(self) -> bool:
        """
        Open the serial link and address the default slave.

        Never raises. On failure the client stays DISCONNECTED and another
        attempt is scheduled after ``reconnect_delay``.
        """
        if self._closed:
            return False
        if self._state != ConnectionState.DISCONNECTED:
            return self.is_connected

        self._state = ConnectionState.CONNECTING
        self._connect_attempts += 1

        try:
            ok = await self._transport.connect()
        except (RelayControlError, OSError) as e:
            logger.error(f"Connect attempt {self._connect_attempts} failed: {e}")
            ok = False

        if self._closed:
            # close() ran while the port was opening
            self._close_transport()
            self._state = ConnectionState.DISCONNECTED
            return False

        if not ok:
            self._state = ConnectionState.DISCONNECTED
            logger.warning(
                f"Bus unavailable, retrying in {self.reconnect_delay}s "
                f"(attempt {self._connect_attempts})"
            )
            self._schedule_reconnect()
            return False

        self._transport.set_slave(self.default_slave)
        self._current_slave = self.default_slave
        self._state = ConnectionState.CONNECTED
        logger.info(
            f"Bus connected, addressing slave {self.default_slave}",
            extra={"attempts": self._connect_attempts},
        )
        self._connect_attempts = 0
        return True

    def _schedule_reconnect(self) -> None:
        if self._closed:
            return
        if self._reconnect_task and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.create_task(self._reconnect_after_delay(), name="bus-reconnect")

    async def _reconnect_after_delay(self) -> None:
        await asyncio.sleep(self.reconnect_delay)
        self._reconnect_count += 1
        logger.info(f"Reconnecting to bus (reconnect #{self._reconnect_count})")
        # connect() is the task's own last step; clear the handle first so a
        # failed attempt can schedule the next one.
        self._reconnect_task = None
        await self.connect()

    def _on_transport_error(self, error: TransportError) -> None:
        """Mark the link down and schedule a reconnect"""
        self._transport_errors += 1
        if self._state == ConnectionState.DISCONNECTED:
            return

        logger.error(f"Bus transport error, disconnecting: {error}")
        self._state = ConnectionState.DISCONNECTED
        self._current_slave = None
        self._close_transport()
        self._schedule_reconnect()

    def _close_transport(self) -> None:
        try:
            self._transport.close()
        except (RelayControlError, OSError) as e:
            logger.warning(f"Error closing transport: {e}")

    async def close(self) -> None:
        """Stop reconnecting and close the link; safe to call twice"""
        if self._closed:
            return
        self._closed = True

        if self._reconnect_task:
            self._reconnect_task.cancel()
            try:
                await self._reconnect_task
            except asyncio.CancelledError:
                pass
            self._reconnect_task = None

        self._close_transport()
        self._state = ConnectionState.DISCONNECTED
        self._current_slave = None
        logger.info("Bus connection closed")

    # -- Validation ------------------------------------------------------------

    def _check_slave(self, slave_id: int) -> None:
        if isinstance(slave_id, bool) or not isinstance(slave_id, int) or slave_id not in self._slaves:
            raise ValidationError(f"Slave {slave_id} is not configured", field="slave_id")

    def check_relay(self, relay: RelayRef) -> None:
        """ValidationError unless ``relay`` is on a configured slave and addressable"""
        self._check_slave(relay.slave_id)
        relay.validate()

    def _require_connected(self, slave_id: int | None = None, relay: int | None = None) -> None:
        if not self.is_connected:
            raise NotConnectedError(f"Bus not connected ({self._state.value})", slave_id, relay)

    # -- Transactions ----------------------------------------------------------

    async def _address(self, slave_id: int) -> None:
        """Point the transport at ``slave_id``; must run inside a bus slot"""
        switching = self._current_slave != slave_id
        self._transport.set_slave(slave_id)
        self._current_slave = slave_id
        if switching and self.settle_delay > 0:
            await asyncio.sleep(self.settle_delay)

    async def _transaction(
        self,
        slave_id: int,
        action: Callable[[], Awaitable],
        label: str,
        relay: int | None = None,
    ):
        self._require_connected(slave_id, relay)

        async def run():
            # State may have changed while this operation was queued
            self._require_connected(slave_id, relay)
            await self._address(slave_id)
            return await action()

        try:
            return await self._arbiter.enqueue(run, label=label)
        except TransportError as e:
            self._on_transport_error(e)
            raise NotConnectedError(f"Bus connection lost: {e.message}", slave_id, relay) from e
        except BusTimeoutError as e:
            if e.slave_id is None:
                e.slave_id, e.relay = slave_id, relay
            raise

    async def select_slave(self, slave_id: int) -> None:
        """Address ``slave_id`` (no-op if it is already addressed)"""
        self._check_slave(slave_id)
        self._require_connected(slave_id)
        if self._current_slave == slave_id:
            return

        async def switch():
            self._require_connected(slave_id)
            await self._address(slave_id)

        try:
            await self._arbiter.enqueue(switch, label=f"select:{slave_id}")
        except TransportError as e:
            self._on_transport_error(e)
            raise NotConnectedError(f"Bus connection lost: {e.message}", slave_id) from e
        logger.debug(f"Addressed slave {slave_id}")

    async def read_relay_state(self, relay: RelayRef) -> bool:
        """Read one relay's coil"""
        self.check_relay(relay)
        try:
            bits = await self._transaction(
                relay.slave_id,
                lambda: self._transport.read_coils(relay.coil, 1),
                label=f"read:{relay.key}",
                relay=relay.relay,
            )
        except RelayControlError:
            log_relay_read(logger, relay.slave_id, relay.relay, None, success=False)
            raise

        state = bool(bits[0])
        log_relay_read(logger, relay.slave_id, relay.relay, state)
        return state

    async def set_relay_state(self, relay: RelayRef, state: bool, source: str = "manual") -> None:
        """Write one relay's coil"""
        self.check_relay(relay)
        state = bool(state)
        try:
            await self._transaction(
                relay.slave_id,
                lambda: self._transport.write_coil(relay.coil, state),
                label=f"write:{relay.key}={int(state)}",
                relay=relay.relay,
            )
        except RelayControlError:
            log_relay_write(logger, relay.slave_id, relay.relay, state, source, success=False)
            raise
        log_relay_write(logger, relay.slave_id, relay.relay, state, source)

    async def set_multiple_relay_states(self, slave_id: int, states: list[bool]) -> None:
        """Write relays 1..len(states) of one slave in a single request"""
        self._check_slave(slave_id)
        if not isinstance(states, list) or not states:
            raise ValidationError("states must be a non-empty list", field="states")
        if len(states) > MAX_BLOCK_COILS:
            raise ValidationError(
                f"states may hold at most {MAX_BLOCK_COILS} relays, got {len(states)}",
                field="states",
            )
        if not all(isinstance(s, bool) for s in states):
            raise ValidationError("states must contain only booleans", field="states")

        await self._transaction(
            slave_id,
            lambda: self._transport.write_coils(0, list(states)),
            label=f"write_block:{slave_id}x{len(states)}",
        )
        logger.info(
            f"Write slave {slave_id} relays 1-{len(states)} = "
            + "".join("1" if s else "0" for s in states),
            extra={"slave_id": slave_id, "states": states},
        )

    async def pulse_relay(self, relay: RelayRef, duration_s: float = 0.5) -> None:
        """Turn a relay ON, hold for ``duration_s``, then OFF"""
        if duration_s <= 0:
            raise ValidationError("Pulse duration must be positive", field="duration_ms")
        await self.set_relay_state(relay, True, source="pulse")
        await asyncio.sleep(duration_s)
        await self.set_relay_state(relay, False, source="pulse")

    # -- Introspection ---------------------------------------------------------

    def get_slaves(self) -> list[int]:
        return list(self._slaves)

    def get_slave(self, slave_id: int) -> dict | None:
        if slave_id not in self._slaves:
            return None
        return {"id": slave_id, "addressed": slave_id == self._current_slave}

    def get_status(self) -> dict:
        """Connection status for the health endpoint"""
        return {
            "state": self._state.value,
            "port": self._transport.settings.port,
            "current_slave": self._current_slave,
            "slaves": self.get_slaves(),
            "connect_attempts": self._connect_attempts,
            "reconnect_count": self._reconnect_count,
            "transport_errors": self._transport_errors,
            "reconnect_pending": self._reconnect_task is not None and not self._reconnect_task.done(),
            "arbiter": self._arbiter.get_stats(),
        }
