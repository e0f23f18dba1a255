"""
Schedule Reconciler

Drives relays toward their scheduled state. Each pass reads the actual coil,
computes the desired state from the relay's schedules, and writes only when
the two differ, so repeated passes are idempotent on the bus.

Timer operations (set/clear/update) go through here rather than straight to
the store so a new schedule takes effect immediately instead of at the next
tick.
"""

import asyncio
from datetime import datetime
from typing import Any, Callable

from common.exceptions import (
    DeviceError,
    RelayControlError,
    ScheduleNotFoundError,
    StoreError,
)
from common.logging_setup import get_service_logger
from common.relay import RelayRef
from common.scheduler import ScheduledLoop
from common.timezone import now_zoned
from services.bus.device_client import DeviceClient
from services.schedule.evaluator import ScheduleEvaluator
from services.schedule.models import ScheduleEntry
from services.schedule.store import ScheduleStore

logger = get_service_logger("schedule.reconciler")


class Reconciler:
    """
    Periodic schedule enforcement.

    Relays without schedules are left alone, with one exception: when a
    relay's last schedule is removed it is driven OFF on the next pass and
    then forgotten.
    """

    def __init__(
        self,
        device: DeviceClient,
        store: ScheduleStore,
        evaluator: ScheduleEvaluator,
        interval_s: float = 60.0,
        turn_off_on_shutdown: bool = True,
        clock: Callable[[], datetime] | None = None,
    ):
        self.device = device
        self.store = store
        self.evaluator = evaluator
        self.interval_s = interval_s
        self.turn_off_on_shutdown = turn_off_on_shutdown
        self._clock = clock or (lambda: now_zoned(evaluator.tz))

        self._loop: ScheduledLoop | None = None
        self._observed: dict[RelayRef, bool] = {}
        self._locks: dict[RelayRef, asyncio.Lock] = {}

        self._passes = 0
        self._writes = 0
        self._last_result: dict[str, Any] | None = None

    # -- Lifecycle -------------------------------------------------------------

    async def start(self) -> None:
        """Run one pass now, then every ``interval_s`` seconds"""
        if self._loop and self._loop.is_running:
            return
        await self.tick()
        self._loop = ScheduledLoop(self.interval_s, self.tick, name="reconciler")
        await self._loop.start()
        logger.info(f"Reconciler started (interval={self.interval_s}s)")

    async def stop(self, timeout: float | None = None) -> None:
        """
        Stop ticking and, if configured, switch off relays last seen ON.

        A pass already in progress is allowed to finish first.
        """
        if self._loop:
            await self._loop.stop(timeout)
            self._loop = None

        if not self.turn_off_on_shutdown:
            logger.info("Reconciler stopped")
            return

        for relay, state in sorted(self._observed.items()):
            if not state:
                continue
            try:
                await self.device.set_relay_state(relay, False, source="shutdown")
                self._observed[relay] = False
            except RelayControlError as e:
                logger.error(f"Failed to turn off {relay} during shutdown: {e}")

        logger.info("Reconciler stopped")

    # -- Reconciliation ------------------------------------------------------

    def _lock_for(self, relay: RelayRef) -> asyncio.Lock:
        lock = self._locks.get(relay)
        if lock is None:
            lock = self._locks[relay] = asyncio.Lock()
        return lock

    async def tick(self) -> dict[str, Any]:
        """One pass over every scheduled relay (plus newly unscheduled ones)"""
        now = self._clock()
        pending = set(self.store.pending_off())
        relays = sorted(set(self.store.relays()) | pending)
        checked = updated = errors = 0

        for relay in relays:
            try:
                _, written = await self._reconcile(relay, now)
            except RelayControlError as e:
                errors += 1
                logger.warning(f"Reconcile failed for {relay}: {e.message}", extra={"relay_key": relay.key})
                continue
            except Exception as e:
                errors += 1
                logger.error(f"Unexpected error reconciling {relay}: {e}", exc_info=True)
                continue

            checked += 1
            updated += int(written)
            if relay in pending and not self.store.for_relay(relay):
                # Driven OFF; no longer ours to manage
                self._observed.pop(relay, None)
                try:
                    self.store.resolve_pending_off(relay)
                except StoreError as e:
                    logger.warning(f"Could not persist switch-off of {relay}: {e.message}")

        self._passes += 1
        result = {
            "checked": checked,
            "updated": updated,
            "errors": errors,
            "timestamp": now.isoformat(),
        }
        self._last_result = result
        if updated or errors:
            logger.info(f"Reconcile pass: {checked} checked, {updated} updated, {errors} errors", extra=result)
        else:
            logger.debug(f"Reconcile pass: {checked} checked, no changes")
        return result

    async def reconcile_relay(self, relay: RelayRef) -> bool:
        """Bring one relay to its scheduled state; returns the desired state"""
        desired, _ = await self._reconcile(relay, self._clock())
        return desired

    async def _reconcile(self, relay: RelayRef, now: datetime) -> tuple[bool, bool]:
        async with self._lock_for(relay):
            entries = self.store.for_relay(relay)
            desired = self.evaluator.desired_state(entries, now)

            actual = await self.device.read_relay_state(relay)
            self._observed[relay] = actual

            written = False
            if actual != desired:
                await self.device.set_relay_state(relay, desired, source="schedule")
                self._observed[relay] = desired
                self._writes += 1
                written = True

            self._refresh_active(entries, now)
            return desired, written

    def _refresh_active(self, entries: list[ScheduleEntry], now: datetime) -> None:
        for entry in entries:
            try:
                self.store.set_active(entry.id, self.evaluator.is_active(entry, now))
            except StoreError as e:
                logger.warning(f"Could not persist active flag for {entry.id}: {e.message}")

    async def _reconcile_now(self, relay: RelayRef) -> None:
        """Immediate reconciliation after a timer change; bus failures wait for the next tick"""
        try:
            await self.reconcile_relay(relay)
        except DeviceError as e:
            logger.warning(f"Immediate reconcile of {relay} failed, next tick will retry: {e.message}")

    # -- Timer operations ------------------------------------------------------

    async def set_timer(
        self,
        relay: RelayRef,
        start_time: Any,
        end_time: Any,
        recurrence: Any = "once",
        days_of_week: Any = None,
    ) -> ScheduleEntry:
        """Store a schedule for ``relay`` and apply it right away"""
        self.device.check_relay(relay)

        entry = self.store.add_or_update(relay, start_time, end_time, recurrence, days_of_week)
        logger.info(
            f"Timer set for {relay}: {entry.start_time} - {entry.end_time} ({entry.recurrence.value})",
            extra={"schedule_id": entry.id, "days_of_week": entry.days_of_week},
        )

        await self._reconcile_now(relay)
        return entry

    async def clear_timer(self, schedule_id: str) -> bool:
        """
        Remove a schedule. The relay is not touched now; if this was its last
        schedule the next pass switches it OFF. The store persists that
        pending switch-off, so it also happens after a restart.
        """
        entry = self.store.get(schedule_id)
        if entry is None:
            return False

        self.store.delete(schedule_id)

        logger.info(f"Timer cleared for {entry.relay}", extra={"schedule_id": schedule_id})
        return True

    async def update_timer(self, schedule_id: str, fields: dict[str, Any]) -> ScheduleEntry:
        entry = self.store.update(schedule_id, fields)
        if entry is None:
            raise ScheduleNotFoundError(schedule_id)
        await self._reconcile_now(entry.relay)
        return entry

    def get_timers(self, relay: RelayRef) -> list[ScheduleEntry]:
        return self.store.for_relay(relay)

    def get_all_timers(self) -> list[ScheduleEntry]:
        return self.store.all()

    def get_observed_states(self) -> dict[str, bool]:
        return {relay.key: state for relay, state in sorted(self._observed.items())}

    def get_stats(self) -> dict:
        return {
            "running": self._loop is not None and self._loop.is_running,
            "interval_s": self.interval_s,
            "passes": self._passes,
            "writes": self._writes,
            "pending_off": [r.key for r in self.store.pending_off()],
            "last_pass": self._last_result,
            "loop": self._loop.get_stats() if self._loop else None,
        }
