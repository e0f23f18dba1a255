"""
Schedule Layer - Time-window relay control

Responsibilities:
- Persist schedules (one-off, daily, weekly windows) across restarts
- Decide whether a relay should be ON at a given instant
- Periodically reconcile relays with their schedules
"""

from .evaluator import ScheduleEvaluator
from .models import Recurrence, ScheduleEntry
from .reconciler import Reconciler
from .store import ScheduleStore

__all__ = ["Recurrence", "Reconciler", "ScheduleEntry", "ScheduleEvaluator", "ScheduleStore"]
