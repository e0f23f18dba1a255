"""Reconciler: schedule enforcement and timer operations"""

import asyncio
from datetime import datetime
from zoneinfo import ZoneInfo

import pytest

from common.config import SchedulePolicy
from common.exceptions import ScheduleNotFoundError, ValidationError
from common.relay import RelayRef

BANGKOK = ZoneInfo("Asia/Bangkok")
RELAY = RelayRef(1, 3)


def run(coro):
    return asyncio.run(coro)


def test_end_to_end_schedule_then_clear(make_stack):
    stack = make_stack()

    async def scenario():
        await stack.device.connect()
        entry = await stack.reconciler.set_timer(RELAY, "11:00", "13:00", "daily")
        after_set = list(stack.transport.writes)

        assert await stack.reconciler.clear_timer(entry.id)
        await stack.reconciler.tick()
        after_clear = list(stack.transport.writes)

        await stack.reconciler.tick()
        return after_set, after_clear

    after_set, after_clear = run(scenario())
    assert after_set == [(1, 2, True)]
    assert after_clear == [(1, 2, True), (1, 2, False)]
    # The cleared relay is forgotten once it is off
    assert stack.transport.writes == after_clear
    assert stack.reconciler.get_stats()["pending_off"] == []


def test_repeated_ticks_are_idempotent(make_stack):
    stack = make_stack()

    async def scenario():
        await stack.device.connect()
        stack.store.add_or_update(RELAY, "11:00", "13:00", "daily")
        results = [await stack.reconciler.tick() for _ in range(3)]
        return results

    results = run(scenario())
    assert len(stack.transport.writes) == 1
    assert [r["updated"] for r in results] == [1, 0, 0]
    assert all(r["checked"] == 1 for r in results)


def test_window_end_switches_off(make_stack):
    stack = make_stack()

    async def scenario():
        await stack.device.connect()
        stack.store.add_or_update(RELAY, "11:00", "13:00", "daily")
        await stack.reconciler.tick()
        stack.clock.now = datetime(2024, 1, 1, 13, 1, tzinfo=BANGKOK)
        await stack.reconciler.tick()

    run(scenario())
    assert stack.transport.writes == [(1, 2, True), (1, 2, False)]


def test_manual_override_is_corrected_on_next_tick(make_stack):
    stack = make_stack()

    async def scenario():
        await stack.device.connect()
        await stack.reconciler.set_timer(RELAY, "11:00", "13:00", "daily")
        await stack.device.set_relay_state(RELAY, False)
        await stack.reconciler.tick()

    run(scenario())
    assert stack.transport.coils[(1, 2)] is True


def test_unscheduled_relays_are_left_alone(make_stack):
    stack = make_stack()
    stack.transport.coils[(2, 0)] = True

    async def scenario():
        await stack.device.connect()
        await stack.reconciler.tick()

    run(scenario())
    assert stack.transport.reads == []
    assert stack.transport.writes == []


def test_overlapping_schedules_or_together(make_stack):
    stack = make_stack(policy=SchedulePolicy.MULTIPLE)

    async def scenario():
        await stack.device.connect()
        stack.store.add_or_update(RELAY, "06:00", "08:00", "daily")
        stack.store.add_or_update(RELAY, "11:30", "12:30", "daily")
        await stack.reconciler.tick()

    run(scenario())
    assert stack.transport.writes == [(1, 2, True)]


def test_errors_are_counted_and_other_relays_continue(make_stack):
    stack = make_stack()
    stack.transport.offline_slaves.add(2)

    async def scenario():
        await stack.device.connect()
        stack.store.add_or_update(RelayRef(2, 1), "11:00", "13:00", "daily")
        stack.store.add_or_update(RelayRef(3, 1), "11:00", "13:00", "daily")
        return await stack.reconciler.tick()

    result = run(scenario())
    assert result["errors"] == 1
    assert result["checked"] == 1
    assert result["updated"] == 1
    assert stack.transport.writes == [(3, 0, True)]


def test_active_flag_tracks_evaluation(make_stack):
    stack = make_stack()

    async def scenario():
        await stack.device.connect()
        entry = await stack.reconciler.set_timer(RELAY, "11:00", "13:00", "daily")
        was_active = stack.store.get(entry.id).active
        stack.clock.now = datetime(2024, 1, 1, 14, 0, tzinfo=BANGKOK)
        await stack.reconciler.tick()
        return entry.id, was_active

    entry_id, was_active = run(scenario())
    assert was_active is True
    assert stack.store.get(entry_id).active is False


def test_set_timer_while_disconnected_keeps_schedule(make_stack):
    stack = make_stack()

    async def scenario():
        return await stack.reconciler.set_timer(RELAY, "11:00", "13:00", "daily")

    entry = run(scenario())
    assert stack.store.get(entry.id) is not None
    assert stack.transport.writes == []


def test_set_timer_on_unconfigured_slave(make_stack):
    stack = make_stack(slaves=[1, 2])
    with pytest.raises(ValidationError):
        run(stack.reconciler.set_timer(RelayRef(7, 1), "11:00", "13:00", "daily"))
    assert len(stack.store) == 0


def test_set_timer_on_unaddressable_relay(make_stack):
    stack = make_stack()
    with pytest.raises(ValidationError):
        run(stack.reconciler.set_timer(RelayRef(1, 70000), "11:00", "13:00", "daily"))
    assert len(stack.store) == 0
    assert not stack.store.path.exists()


def test_cleared_relay_is_switched_off_after_restart(make_stack):
    stack = make_stack(turn_off_on_shutdown=False)

    async def before_restart():
        await stack.device.connect()
        entry = await stack.reconciler.set_timer(RELAY, "11:00", "13:00", "daily")
        await stack.reconciler.clear_timer(entry.id)
        await stack.device.close()
        await stack.arbiter.stop()

    run(before_restart())
    assert stack.transport.coils[(1, 2)] is True

    # Same port and file, fresh process state
    restarted = make_stack(transport=stack.transport)
    assert restarted.store.pending_off() == [RELAY]

    async def after_restart():
        await restarted.device.connect()
        first = await restarted.reconciler.tick()
        second = await restarted.reconciler.tick()
        return first, second

    first, second = run(after_restart())
    assert stack.transport.coils[(1, 2)] is False
    assert stack.transport.writes[-1] == (1, 2, False)
    assert (first["updated"], second["checked"]) == (1, 0)
    assert restarted.store.pending_off() == []
    assert make_stack(transport=stack.transport).store.pending_off() == []


def test_pending_off_kept_while_bus_fails(make_stack):
    stack = make_stack()

    async def scenario():
        await stack.device.connect()
        entry = await stack.reconciler.set_timer(RELAY, "11:00", "13:00", "daily")
        await stack.reconciler.clear_timer(entry.id)
        stack.transport.offline_slaves.add(1)
        failed = await stack.reconciler.tick()
        stack.transport.offline_slaves.clear()
        recovered = await stack.reconciler.tick()
        return failed, recovered

    failed, recovered = run(scenario())
    assert failed["errors"] == 1
    assert recovered["updated"] == 1
    assert stack.store.pending_off() == []


def test_update_timer(make_stack):
    stack = make_stack()

    async def scenario():
        await stack.device.connect()
        entry = await stack.reconciler.set_timer(RELAY, "11:00", "13:00", "daily")
        await stack.reconciler.update_timer(entry.id, {"enabled": False})

    run(scenario())
    assert stack.transport.writes == [(1, 2, True), (1, 2, False)]


def test_update_unknown_timer(make_stack):
    stack = make_stack()
    with pytest.raises(ScheduleNotFoundError):
        run(stack.reconciler.update_timer("missing", {"enabled": False}))


def test_clear_unknown_timer(make_stack):
    stack = make_stack()
    assert run(stack.reconciler.clear_timer("missing")) is False


def test_stop_switches_off_relays_seen_on(make_stack):
    stack = make_stack()

    async def scenario():
        await stack.device.connect()
        await stack.reconciler.start()
        await stack.reconciler.set_timer(RelayRef(2, 2), "11:00", "13:00", "daily")
        await stack.reconciler.stop(timeout=1.0)

    run(scenario())
    assert stack.transport.writes == [(2, 1, True), (2, 1, False)]
    assert stack.reconciler.get_observed_states() == {"2_2": False}


def test_stop_leaves_relays_when_disabled(make_stack):
    stack = make_stack(turn_off_on_shutdown=False)

    async def scenario():
        await stack.device.connect()
        await stack.reconciler.set_timer(RelayRef(2, 2), "11:00", "13:00", "daily")
        await stack.reconciler.stop()

    run(scenario())
    assert stack.transport.coils[(2, 1)] is True


def test_stats(make_stack):
    stack = make_stack()

    async def scenario():
        await stack.device.connect()
        await stack.reconciler.set_timer(RELAY, "11:00", "13:00", "daily")
        await stack.reconciler.tick()
        return stack.reconciler.get_stats()

    stats = run(scenario())
    assert stats["passes"] == 1
    assert stats["writes"] == 1
    assert stats["last_pass"]["checked"] == 1
    assert stats["running"] is False
