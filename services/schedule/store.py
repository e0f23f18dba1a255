"""
Schedule Store

Owns the schedule collection and its JSON file. Every mutation is written
through synchronously (temp file, fsync, atomic replace) before the call
returns, so a crash never leaves a half-written document behind.

Document layout:

    {"schedules": [...], "pending_off": [{"slave_id": 1, "relay": 3}]}

``pending_off`` lists relays whose last schedule was deleted and which have
not been switched OFF yet, so the switch-off survives a restart. A bare list
of schedules (older files) is still accepted.
"""

import json
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable
from zoneinfo import ZoneInfo

from common.config import SchedulePolicy
from common.exceptions import ScheduleNotFoundError, StoreError, ValidationError
from common.logging_setup import get_service_logger
from common.relay import RelayRef
from common.timezone import now_zoned
from services.schedule.models import (
    MUTABLE_FIELDS,
    ScheduleEntry,
    new_entry,
    normalize_window,
    parse_recurrence,
)

logger = get_service_logger("schedule.store")


class ScheduleStore:
    """
    Persistent schedule collection.

    Under SchedulePolicy.SINGLE a relay carries at most one entry and
    ``add_or_update`` replaces it in place (same id, same created_at).
    Under SchedulePolicy.MULTIPLE every call adds a new entry.
    """

    def __init__(
        self,
        path: str | Path,
        tz: ZoneInfo,
        policy: SchedulePolicy = SchedulePolicy.SINGLE,
        slaves: Iterable[int] | None = None,
    ):
        self.path = Path(path)
        self.tz = tz
        self.policy = policy
        # Entries for slaves outside this set are dropped at load
        self.slaves = frozenset(slaves) if slaves is not None else None
        self._entries: dict[str, ScheduleEntry] = {}
        self._pending_off: set[RelayRef] = set()
        self._save_count = 0
        self._save_errors = 0

    def init(self) -> None:
        """Load the document; missing or unreadable files give an empty store"""
        self._entries.clear()
        self._pending_off.clear()

        if not self.path.exists():
            logger.info(f"No schedule file at {self.path}, starting empty")
            return

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Cannot read schedule file {self.path}, starting empty: {e}")
            return

        if isinstance(raw, list):
            items, pending = raw, []
        elif isinstance(raw, dict) and isinstance(raw.get("schedules"), list):
            items, pending = raw["schedules"], raw.get("pending_off") or []
        else:
            logger.error(f"Schedule file {self.path} has an unknown layout, starting empty")
            return

        skipped = 0
        for item in items:
            try:
                entry = ScheduleEntry.from_dict(item, self.tz)
            except ValidationError as e:
                skipped += 1
                logger.warning(f"Skipping invalid schedule entry: {e.message}", extra={"entry": item})
                continue
            if not self._is_configured(entry.relay):
                skipped += 1
                logger.warning(
                    f"Skipping schedule {entry.id}: slave {entry.relay.slave_id} is not configured",
                    extra={"schedule_id": entry.id},
                )
                continue
            self._entries[entry.id] = entry

        for item in pending if isinstance(pending, list) else []:
            try:
                relay = RelayRef.parse(item.get("slave_id"), item.get("relay"))
            except (AttributeError, ValidationError):
                logger.warning(f"Ignoring invalid pending-off relay {item!r}")
                continue
            if self._is_configured(relay) and not self.for_relay(relay):
                self._pending_off.add(relay)

        logger.info(
            f"Loaded {len(self._entries)} schedules from {self.path}",
            extra={"count": len(self._entries), "skipped": skipped, "pending_off": len(self._pending_off)},
        )

    def _is_configured(self, relay: RelayRef) -> bool:
        return self.slaves is None or relay.slave_id in self.slaves

    # -- Queries ---------------------------------------------------------------

    def get(self, schedule_id: str) -> ScheduleEntry | None:
        return self._entries.get(schedule_id)

    def require(self, schedule_id: str) -> ScheduleEntry:
        entry = self._entries.get(schedule_id)
        if entry is None:
            raise ScheduleNotFoundError(schedule_id)
        return entry

    def for_relay(self, relay: RelayRef) -> list[ScheduleEntry]:
        return [e for e in self._entries.values() if e.relay == relay]

    def all(self) -> list[ScheduleEntry]:
        return list(self._entries.values())

    def relays(self) -> list[RelayRef]:
        """Distinct relays that have at least one entry"""
        return sorted({e.relay for e in self._entries.values()})

    def pending_off(self) -> list[RelayRef]:
        """Relays that lost their last schedule and still have to be switched OFF"""
        return sorted(self._pending_off)

    def __len__(self) -> int:
        return len(self._entries)

    # -- Mutations -------------------------------------------------------------

    def add_or_update(
        self,
        relay: RelayRef,
        start_time: Any,
        end_time: Any,
        recurrence: Any = "once",
        days_of_week: Any = None,
        now: datetime | None = None,
    ) -> ScheduleEntry:
        """Create a schedule for ``relay`` (or replace its schedule under SINGLE)"""
        entry = new_entry(relay, start_time, end_time, recurrence, days_of_week, self.tz, now)
        self._pending_off.discard(relay)

        existing = self.for_relay(relay) if self.policy == SchedulePolicy.SINGLE else []
        if existing:
            kept = existing[0]
            kept.start_time = entry.start_time
            kept.end_time = entry.end_time
            kept.recurrence = entry.recurrence
            kept.days_of_week = entry.days_of_week
            kept.enabled = True
            kept.updated_at = entry.updated_at
            # Stray duplicates can only come from a file written under MULTIPLE
            for extra in existing[1:]:
                del self._entries[extra.id]
            entry = kept
            logger.info(f"Replaced schedule {entry.id} for {relay}", extra={"schedule_id": entry.id})
        else:
            self._entries[entry.id] = entry
            logger.info(f"Added schedule {entry.id} for {relay}", extra={"schedule_id": entry.id})

        self._save()
        return entry

    def update(self, schedule_id: str, fields: dict[str, Any]) -> ScheduleEntry | None:
        """
        Change selected fields of an entry and revalidate the whole window.

        Returns None when the id is unknown.
        """
        entry = self._entries.get(schedule_id)
        if entry is None:
            return None

        unknown = set(fields) - MUTABLE_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update field(s): {', '.join(sorted(unknown))}", field=sorted(unknown)[0])

        enabled = fields.get("enabled", entry.enabled)
        if not isinstance(enabled, bool):
            raise ValidationError("enabled must be a boolean", field="enabled")

        recurrence = parse_recurrence(fields.get("recurrence", entry.recurrence))
        start, end, days = normalize_window(
            recurrence,
            fields.get("start_time", entry.start_time),
            fields.get("end_time", entry.end_time),
            fields.get("days_of_week", entry.days_of_week),
            self.tz,
        )

        entry.recurrence = recurrence
        entry.start_time = start
        entry.end_time = end
        entry.days_of_week = days
        entry.enabled = enabled
        entry.updated_at = now_zoned(self.tz).isoformat()

        logger.info(f"Updated schedule {schedule_id}", extra={"schedule_id": schedule_id, "fields": sorted(fields)})
        self._save()
        return entry

    def set_active(self, schedule_id: str, active: bool) -> bool:
        """
        Refresh the informational ``active`` flag.

        Returns True if the flag changed (and was persisted).
        """
        entry = self._entries.get(schedule_id)
        if entry is None or entry.active == active:
            return False
        entry.active = active
        self._save()
        return True

    def delete(self, schedule_id: str) -> bool:
        """Remove an entry; a relay left without schedules becomes pending-off"""
        entry = self._entries.pop(schedule_id, None)
        if entry is None:
            return False
        if not self.for_relay(entry.relay):
            self._pending_off.add(entry.relay)
        logger.info(f"Deleted schedule {schedule_id} for {entry.relay}", extra={"schedule_id": schedule_id})
        self._save()
        return True

    def resolve_pending_off(self, relay: RelayRef) -> bool:
        """Forget a pending-off relay once it has been switched OFF"""
        if relay not in self._pending_off:
            return False
        self._pending_off.discard(relay)
        self._save()
        return True

    # -- Persistence -----------------------------------------------------------

    def _save(self) -> None:
        """Write the whole collection atomically"""
        data = {
            "schedules": [entry.to_dict() for entry in self._entries.values()],
            "pending_off": [
                {"slave_id": relay.slave_id, "relay": relay.relay} for relay in sorted(self._pending_off)
            ],
        }
        tmp_path = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
            tmp_path = None
        except OSError as e:
            self._save_errors += 1
            logger.error(f"Failed to save schedules to {self.path}: {e}")
            raise StoreError(str(e), path=str(self.path))
        finally:
            if tmp_path is not None:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass

        self._save_count += 1

    def get_stats(self) -> dict:
        return {
            "path": str(self.path),
            "policy": self.policy.value,
            "count": len(self._entries),
            "relays": len(self.relays()),
            "pending_off": len(self._pending_off),
            "saves": self._save_count,
            "save_errors": self._save_errors,
        }
