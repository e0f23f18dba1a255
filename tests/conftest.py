"""
Shared test fixtures for the relay controller test suite.

Provides:
- FakeTransport: in-memory stand-in for the RS-485 link (coils per slave,
  injectable failures, in-flight tracking)
- A stack factory wiring arbiter, device client, store, evaluator and
  reconciler the same way RelayControllerService does

Async code is driven with asyncio.run() inside plain test functions.

Usage:
    def test_example(make_stack):
        stack = make_stack()

        async def scenario():
            await stack.device.connect()
            ...

        asyncio.run(scenario())
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from zoneinfo import ZoneInfo

import pytest

from common.config import SchedulePolicy, SerialSettings
from common.exceptions import BusTimeoutError, TransportError
from services.bus.arbiter import BusArbiter
from services.bus.device_client import DeviceClient
from services.schedule.evaluator import ScheduleEvaluator
from services.schedule.reconciler import Reconciler
from services.schedule.store import ScheduleStore

BANGKOK = ZoneInfo("Asia/Bangkok")


class FakeTransport:
    """Relay boards simulated in memory; mirrors SerialTransport's interface"""

    def __init__(self, port: str = "/dev/ttyFAKE"):
        self.settings = SerialSettings(port=port)
        self.connected = False
        self.slave_id: int | None = None

        self.coils: dict[tuple[int, int], bool] = {}
        self.writes: list[tuple[int, int, bool]] = []
        self.reads: list[tuple[int, int]] = []

        self.connect_calls = 0
        self.connect_failures = 0
        self.close_calls = 0
        self.errors: list[Exception] = []
        self.offline_slaves: set[int] = set()
        self.op_delay = 0.0

        self.in_flight = 0
        self.max_in_flight = 0

    async def connect(self) -> bool:
        self.connect_calls += 1
        if self.connect_failures > 0:
            self.connect_failures -= 1
            return False
        self.connected = True
        return True

    def close(self) -> None:
        self.close_calls += 1
        self.connected = False

    def set_slave(self, slave_id: int) -> None:
        self.slave_id = slave_id

    async def _begin(self) -> int:
        slave = self.slave_id
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.op_delay:
                await asyncio.sleep(self.op_delay)
            if not self.connected:
                raise TransportError("serial port closed", slave)
            if self.errors:
                raise self.errors.pop(0)
            if slave in self.offline_slaves:
                raise BusTimeoutError(f"No response from slave {slave}", slave_id=slave)
        finally:
            self.in_flight -= 1
        return slave

    async def read_coils(self, address: int, count: int = 1) -> list[bool]:
        slave = await self._begin()
        self.reads.append((slave, address))
        return [self.coils.get((slave, address + i), False) for i in range(count)]

    async def write_coil(self, address: int, value: bool) -> None:
        slave = await self._begin()
        self.writes.append((slave, address, value))
        self.coils[(slave, address)] = value

    async def write_coils(self, address: int, values: list[bool]) -> None:
        slave = await self._begin()
        for i, value in enumerate(values):
            self.writes.append((slave, address + i, value))
            self.coils[(slave, address + i)] = value


@dataclass
class Stack:
    transport: FakeTransport
    arbiter: BusArbiter
    device: DeviceClient
    store: ScheduleStore
    evaluator: ScheduleEvaluator
    reconciler: Reconciler
    clock: "MutableClock"


class MutableClock:
    """Fixed, settable 'now' for the reconciler"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def tz() -> ZoneInfo:
    return BANGKOK


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def store_path(tmp_path: Path) -> Path:
    return tmp_path / "data" / "schedules.json"


@pytest.fixture
def make_stack(store_path: Path):
    """Factory building a fully wired stack over a FakeTransport"""

    def factory(
        transport: FakeTransport | None = None,
        slaves: list[int] | None = None,
        policy: SchedulePolicy = SchedulePolicy.SINGLE,
        now: datetime = datetime(2024, 1, 1, 12, 0, tzinfo=BANGKOK),
        min_interval: float = 0.0,
        timeout: float = 1.0,
        settle_delay: float = 0.0,
        reconnect_delay: float = 0.05,
        turn_off_on_shutdown: bool = True,
    ) -> Stack:
        transport = transport or FakeTransport()
        slaves = slaves or [1, 2, 3]
        clock = MutableClock(now)

        arbiter = BusArbiter(min_interval=min_interval, timeout=timeout)
        device = DeviceClient(
            transport,
            arbiter,
            slaves=slaves,
            default_slave=slaves[0],
            settle_delay=settle_delay,
            reconnect_delay=reconnect_delay,
        )
        store = ScheduleStore(store_path, BANGKOK, policy, slaves=slaves)
        store.init()
        evaluator = ScheduleEvaluator(BANGKOK)
        reconciler = Reconciler(
            device,
            store,
            evaluator,
            interval_s=60,
            turn_off_on_shutdown=turn_off_on_shutdown,
            clock=clock,
        )
        return Stack(transport, arbiter, device, store, evaluator, reconciler, clock)

    return factory
