"""
HTTP API

aiohttp application exposing manual relay control and schedule management.
Handlers stay thin: parse the request, call the DeviceClient or Reconciler,
serialize the result. Errors raised below are turned into JSON responses by
a single middleware.
"""

import json
from datetime import datetime, timezone
from typing import Any

from aiohttp import web

from common.exceptions import (
    BusError,
    BusTimeoutError,
    NotConnectedError,
    RelayControlError,
    ScheduleNotFoundError,
    StoreError,
    ValidationError,
)
from common.logging_setup import get_service_logger
from common.relay import RelayRef
from services.bus.device_client import DeviceClient
from services.schedule.models import ScheduleEntry
from services.schedule.reconciler import Reconciler

logger = get_service_logger("api")

DEFAULT_PULSE_MS = 500
MAX_PULSE_MS = 60_000

# Checked in order; subclasses before their bases
ERROR_STATUS: list[tuple[type[RelayControlError], int]] = [
    (ValidationError, 400),
    (ScheduleNotFoundError, 404),
    (BusTimeoutError, 504),
    (BusError, 502),
    (NotConnectedError, 503),
    (StoreError, 500),
]

# Request body keys -> ScheduleStore field names
SCHEDULE_FIELDS = {
    "startTime": "start_time",
    "endTime": "end_time",
    "recurrence": "recurrence",
    "daysOfWeek": "days_of_week",
    "enabled": "enabled",
}


def status_for(error: RelayControlError) -> int:
    for error_type, status in ERROR_STATUS:
        if isinstance(error, error_type):
            return status
    return 500


def error_response(error: RelayControlError) -> web.Response:
    return web.json_response(
        {"error": error.message, "kind": error.kind, "details": error.to_dict()},
        status=status_for(error),
    )


@web.middleware
async def error_middleware(request: web.Request, handler) -> web.StreamResponse:
    """Map controller exceptions to JSON error responses"""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except RelayControlError as e:
        status = status_for(e)
        log = logger.error if status >= 500 else logger.warning
        log(
            f"{request.method} {request.path} -> {status}: {e.message}",
            extra={"kind": e.kind, "status": status},
        )
        return error_response(e)
    except Exception as e:
        logger.error(f"{request.method} {request.path} failed: {e}", exc_info=True)
        return web.json_response(
            {"error": "Internal server error", "kind": "internal", "details": {"message": str(e)}},
            status=500,
        )


def schedule_to_api(entry: ScheduleEntry) -> dict[str, Any]:
    """camelCase view of an entry, matching the request body keys"""
    return {
        "id": entry.id,
        "slaveId": entry.relay.slave_id,
        "relay": entry.relay.relay,
        "startTime": entry.start_time,
        "endTime": entry.end_time,
        "recurrence": entry.recurrence.value,
        "daysOfWeek": list(entry.days_of_week),
        "enabled": entry.enabled,
        "active": entry.active,
        "createdAt": entry.created_at,
        "updatedAt": entry.updated_at,
    }


async def _read_json(request: web.Request) -> dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ValidationError("Request body is not valid JSON", field="body")
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object", field="body")
    return body


class ApiServer:
    """HTTP front end for one controller"""

    def __init__(self, device: DeviceClient, reconciler: Reconciler):
        self.device = device
        self.reconciler = reconciler

        self._runner: web.AppRunner | None = None
        self._start_time = datetime.now(timezone.utc)

    def create_app(self) -> web.Application:
        app = web.Application(middlewares=[error_middleware])
        app.router.add_get("/health", self._health_handler)
        app.router.add_get("/slaves", self._slaves_handler)
        app.router.add_get("/slave/{slave_id}/relay/{relay}", self._get_relay_handler)
        app.router.add_post("/slave/{slave_id}/relay/{relay}", self._set_relay_handler)
        app.router.add_post("/slave/{slave_id}/relays", self._set_relays_handler)
        app.router.add_post("/slave/{slave_id}/relay/{relay}/pulse", self._pulse_handler)
        app.router.add_post("/slave/{slave_id}/relay/{relay}/schedule", self._set_schedule_handler)
        app.router.add_get("/slave/{slave_id}/relay/{relay}/schedules", self._relay_schedules_handler)
        app.router.add_get("/schedules", self._all_schedules_handler)
        app.router.add_patch("/schedule/{schedule_id}", self._update_schedule_handler)
        app.router.add_delete("/schedule/{schedule_id}", self._delete_schedule_handler)
        return app

    async def start(self, host: str, port: int) -> None:
        self._runner = web.AppRunner(self.create_app())
        await self._runner.setup()

        site = web.TCPSite(self._runner, host, port)
        await site.start()

        logger.info(f"API server listening on http://{host}:{port}")

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            logger.info("API server stopped")

    # -- Helpers ---------------------------------------------------------------

    def _slave_id(self, request: web.Request) -> int:
        raw = request.match_info["slave_id"]
        try:
            slave_id = int(raw)
        except ValueError:
            raise ValidationError(f"Invalid slave ID {raw!r}", field="slaveId")
        if self.device.get_slave(slave_id) is None:
            raise ValidationError(f"Invalid slave ID {slave_id}", field="slaveId")
        return slave_id

    def _relay(self, request: web.Request) -> RelayRef:
        slave_id = self._slave_id(request)
        return RelayRef.parse(slave_id, request.match_info["relay"])

    # -- Handlers --------------------------------------------------------------

    async def _health_handler(self, request: web.Request) -> web.Response:
        uptime = (datetime.now(timezone.utc) - self._start_time).total_seconds()
        return web.json_response({
            "status": "healthy" if self.device.is_connected else "degraded",
            "service": "relay-controller",
            "uptime": int(uptime),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "bus": self.device.get_status(),
            "reconciler": self.reconciler.get_stats(),
            "schedules": self.reconciler.store.get_stats(),
            "observed": self.reconciler.get_observed_states(),
        })

    async def _slaves_handler(self, request: web.Request) -> web.Response:
        return web.json_response({"slaves": [{"id": s} for s in self.device.get_slaves()]})

    async def _get_relay_handler(self, request: web.Request) -> web.Response:
        relay = self._relay(request)
        state = await self.device.read_relay_state(relay)
        return web.json_response({"slaveId": relay.slave_id, "relay": relay.relay, "state": state})

    async def _set_relay_handler(self, request: web.Request) -> web.Response:
        relay = self._relay(request)
        body = await _read_json(request)
        state = body.get("state")
        if not isinstance(state, bool):
            raise ValidationError("state must be a boolean", field="state")

        await self.device.set_relay_state(relay, state)
        return web.json_response({"slaveId": relay.slave_id, "relay": relay.relay, "state": state})

    async def _set_relays_handler(self, request: web.Request) -> web.Response:
        slave_id = self._slave_id(request)
        body = await _read_json(request)
        states = body.get("states")

        await self.device.set_multiple_relay_states(slave_id, states)
        return web.json_response({"slaveId": slave_id, "states": states})

    async def _pulse_handler(self, request: web.Request) -> web.Response:
        relay = self._relay(request)
        body = await _read_json(request)
        duration_ms = body.get("duration_ms", DEFAULT_PULSE_MS)
        if isinstance(duration_ms, bool) or not isinstance(duration_ms, (int, float)):
            raise ValidationError("duration_ms must be a number", field="duration_ms")
        if not 0 < duration_ms <= MAX_PULSE_MS:
            raise ValidationError(f"duration_ms must be between 1 and {MAX_PULSE_MS}", field="duration_ms")

        await self.device.pulse_relay(relay, duration_ms / 1000)
        return web.json_response({
            "slaveId": relay.slave_id,
            "relay": relay.relay,
            "duration_ms": duration_ms,
        })

    async def _set_schedule_handler(self, request: web.Request) -> web.Response:
        relay = self._relay(request)
        body = await _read_json(request)

        entry = await self.reconciler.set_timer(
            relay,
            body.get("startTime"),
            body.get("endTime"),
            body.get("recurrence") or "once",
            body.get("daysOfWeek"),
        )
        return web.json_response({**schedule_to_api(entry), "status": "success"})

    async def _relay_schedules_handler(self, request: web.Request) -> web.Response:
        relay = self._relay(request)
        entries = self.reconciler.get_timers(relay)
        return web.json_response({
            "slaveId": relay.slave_id,
            "relay": relay.relay,
            "schedules": [schedule_to_api(e) for e in entries],
        })

    async def _all_schedules_handler(self, request: web.Request) -> web.Response:
        entries = self.reconciler.get_all_timers()
        return web.json_response({"schedules": [schedule_to_api(e) for e in entries]})

    async def _update_schedule_handler(self, request: web.Request) -> web.Response:
        schedule_id = request.match_info["schedule_id"]
        body = await _read_json(request)
        if not body:
            raise ValidationError("No fields to update", field="body")

        # Unknown keys pass through so the store can reject them by name
        fields = {SCHEDULE_FIELDS.get(key, key): value for key, value in body.items()}
        entry = await self.reconciler.update_timer(schedule_id, fields)
        return web.json_response(schedule_to_api(entry))

    async def _delete_schedule_handler(self, request: web.Request) -> web.Response:
        schedule_id = request.match_info["schedule_id"]
        if not await self.reconciler.clear_timer(schedule_id):
            raise ScheduleNotFoundError(schedule_id)
        return web.json_response({"message": "Timer cleared successfully", "id": schedule_id})
