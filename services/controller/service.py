"""
Relay Controller Service

Builds every component from one ControllerConfig and owns the startup and
shutdown order. Components receive their collaborators explicitly; nothing
is shared through module-level singletons.

Startup:  store -> bus connect -> HTTP API -> reconciler (after a delay)
Shutdown: HTTP API -> reconciler (relays OFF) -> bus close -> arbiter
"""

import asyncio
import signal

from common.config import ControllerConfig
from common.logging_setup import get_service_logger
from common.timezone import get_zone
from services.api.server import ApiServer
from services.bus.arbiter import BusArbiter
from services.bus.device_client import DeviceClient
from services.bus.transport import SerialTransport
from services.schedule.evaluator import ScheduleEvaluator
from services.schedule.reconciler import Reconciler
from services.schedule.store import ScheduleStore

logger = get_service_logger("controller")

SHUTDOWN_DRAIN_SECONDS = 5.0


class RelayControllerService:
    """Owns the bus, schedules, reconciler and HTTP API of one controller"""

    def __init__(
        self,
        config: ControllerConfig,
        transport: SerialTransport | None = None,
        clock=None,
    ):
        self.config = config
        self.tz = get_zone(config.schedule.timezone)

        self.arbiter = BusArbiter(
            min_interval=config.bus.min_interval_ms / 1000,
            timeout=config.bus.transaction_timeout_s,
        )
        self.transport = transport or SerialTransport(
            config.serial, timeout=config.bus.transaction_timeout_s
        )
        self.device = DeviceClient(
            self.transport,
            self.arbiter,
            slaves=config.slaves,
            default_slave=config.default_slave,
            settle_delay=config.bus.settle_delay_ms / 1000,
            reconnect_delay=config.bus.reconnect_delay_s,
        )
        self.store = ScheduleStore(
            config.store_path, self.tz, config.schedule.policy, slaves=config.slaves
        )
        self.evaluator = ScheduleEvaluator(self.tz)
        self.reconciler = Reconciler(
            self.device,
            self.store,
            self.evaluator,
            interval_s=config.reconciler.interval_s,
            turn_off_on_shutdown=config.reconciler.turn_off_on_shutdown,
            clock=clock,
        )
        self.api = ApiServer(self.device, self.reconciler)

        self._reconciler_start: asyncio.Task | None = None
        self._shutdown_event: asyncio.Event | None = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self, serve_http: bool = True) -> None:
        """Bring every component up; returns once the service is serving"""
        logger.info("Starting relay controller")
        self._running = True
        self._shutdown_event = asyncio.Event()

        self.store.init()

        # A failed connect keeps retrying in the background
        if not await self.device.connect():
            logger.warning("Starting without a bus connection")

        if serve_http:
            await self.api.start(self.config.api.host, self.config.api.port)

        self._reconciler_start = asyncio.create_task(
            self._start_reconciler(self.config.reconciler.startup_delay_s),
            name="reconciler-start",
        )

        logger.info(
            f"Relay controller started ({len(self.config.slaves)} slaves, "
            f"{len(self.store)} schedules, timezone {self.config.schedule.timezone})",
            extra={"port": self.config.serial.port, "policy": self.config.schedule.policy.value},
        )

    async def _start_reconciler(self, delay: float) -> None:
        if delay > 0:
            await asyncio.sleep(delay)
        await self.reconciler.start()

    async def run(self) -> None:
        """Start, then block until SIGINT/SIGTERM and shut down cleanly"""
        await self.start()
        self._setup_signal_handlers()
        try:
            await self._shutdown_event.wait()
        finally:
            await self.stop()

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        logger.info("Stopping relay controller")

        await self.api.stop()

        if self._reconciler_start and not self._reconciler_start.done():
            self._reconciler_start.cancel()
            try:
                await self._reconciler_start
            except asyncio.CancelledError:
                pass
        self._reconciler_start = None

        await self.reconciler.stop(timeout=SHUTDOWN_DRAIN_SECONDS)
        await self.device.close()
        await self.arbiter.stop(drain_timeout=SHUTDOWN_DRAIN_SECONDS)

        logger.info("Relay controller stopped")

    def request_shutdown(self) -> None:
        if self._shutdown_event:
            self._shutdown_event.set()

    def _setup_signal_handlers(self) -> None:
        """Setup graceful shutdown signal handlers"""
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._handle_shutdown)
            except NotImplementedError:
                signal.signal(sig, lambda s, f: loop.call_soon_threadsafe(self._handle_shutdown))

    def _handle_shutdown(self) -> None:
        logger.info("Received shutdown signal")
        self.request_shutdown()
