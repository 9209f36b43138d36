import asyncio
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

from irrigation.hardware import MockValveDriver
from irrigation.notifications import SCHEDULE_FIRED, SCHEDULE_SKIPPED, NotificationHub
from irrigation.schemas import ScheduleCreateRequest, ScheduleUpdateRequest
from irrigation.services import (
    Dispatcher,
    EventService,
    RunTracker,
    ScheduleService,
    SensorFeed,
    ZoneController,
    ZoneRegistry,
)

ZONES = ["zone_1", "zone_2", "zone_3", "zone_4"]
# 2024-01-01 is a Monday.
MONDAY_0559 = datetime(2024, 1, 1, 5, 59, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def build(now=MONDAY_0559):
    clock = FakeClock(now)
    registry = ZoneRegistry.from_ids(ZONES)
    driver = MockValveDriver(ZONES)
    notifier = NotificationHub()
    events = EventService()
    controller = ZoneController(registry, driver, events, notifier=notifier)
    sensors = SensorFeed(clock=clock)
    tracker = RunTracker(events)
    schedules = ScheduleService(registry, clock)
    dispatcher = Dispatcher(
        schedules,
        controller,
        events,
        sensors,
        tracker,
        notifier,
        clock=clock,
        minute_seconds=0.05,
    )
    return SimpleNamespace(
        clock=clock,
        registry=registry,
        driver=driver,
        notifier=notifier,
        events=events,
        controller=controller,
        sensors=sensors,
        tracker=tracker,
        schedules=schedules,
        dispatcher=dispatcher,
    )


def make_schedule(env, **overrides):
    payload = {
        "name": "Morning",
        "time_of_day": "06:00",
        "duration_minutes": 1,
        "days": [0],
        "zones": ["zone_1"],
        "mode": "fixed",
    }
    payload.update(overrides)
    return env.schedules.create_schedule(ScheduleCreateRequest(**payload))


def test_due_schedule_fires_once_and_completes(db):
    async def scenario():
        env = build()
        schedule = make_schedule(env)
        env.dispatcher.refresh()
        assert env.dispatcher.next_due_at() == datetime(2024, 1, 1, 6, 0, tzinfo=timezone.utc)

        assert await env.dispatcher.tick() == []

        env.clock.now = datetime(2024, 1, 1, 6, 0, 30, tzinfo=timezone.utc)
        fired = await env.dispatcher.tick()
        await env.tracker.wait_all(timeout=2)
        # Same instant again: the slot already fired.
        again = await env.dispatcher.tick()
        env.dispatcher.refresh()
        again_after_refresh = await env.dispatcher.tick()
        return env, schedule, fired, again, again_after_refresh

    env, schedule, fired, again, again_after_refresh = asyncio.run(scenario())

    assert len(fired) == 1
    assert again == [] and again_after_refresh == []
    assert env.dispatcher.next_due_at() == datetime(2024, 1, 8, 6, 0, tzinfo=timezone.utc)

    event = env.events.get_event(fired[0].id)
    assert event.status == "completed"
    assert event.schedule_id == schedule.id
    assert event.scheduled_time == datetime(2024, 1, 1, 6, 0, tzinfo=timezone.utc)
    assert event.zone_results["zone_1"].status == "completed"
    assert env.driver.commands.count(("zone_1", True)) == 1
    assert env.registry.get("zone_1").valve_state == "closed"
    assert [m["event_type"] for m in env.notifier.recent()] == [SCHEDULE_FIRED]


def test_failed_condition_skips_without_touching_valves(db):
    async def scenario():
        env = build()
        make_schedule(
            env,
            mode="weather",
            conditions={"min_moisture": 40, "skip_if_raining": True},
        )
        env.sensors.update_reading("zone_1", moisture=35.0, temperature=28.0)
        env.sensors.set_raining(False)
        env.dispatcher.refresh()
        env.clock.now = datetime(2024, 1, 1, 6, 0, tzinfo=timezone.utc)
        fired = await env.dispatcher.tick()
        return env, fired

    env, fired = asyncio.run(scenario())

    event = env.events.get_event(fired[0].id)
    assert event.status == "skipped"
    assert "moisture" in event.reason
    assert env.driver.commands == []
    assert env.events.list_events(actions=["OPEN", "CLOSE"]) == []
    skipped = env.notifier.recent(event_type=SCHEDULE_SKIPPED)
    assert skipped[0]["payload"]["reason"] == event.reason


def test_stale_reading_is_treated_as_unavailable(db):
    async def scenario():
        env = build()
        make_schedule(env, mode="smart", conditions={"max_temperature": 35})
        env.sensors.update_reading(
            "zone_1",
            moisture=50.0,
            temperature=20.0,
            timestamp=MONDAY_0559 - timedelta(hours=2),
        )
        env.dispatcher.refresh()
        env.clock.now = datetime(2024, 1, 1, 6, 0, tzinfo=timezone.utc)
        return env, await env.dispatcher.tick()

    env, fired = asyncio.run(scenario())

    assert env.events.get_event(fired[0].id).reason == "temperature reading unavailable"


def test_errored_zone_fails_event_while_others_complete(db):
    async def scenario():
        env = build()
        make_schedule(env, zones=["zone_1", "zone_2"])
        await env.controller.set_health("zone_2", "error")
        env.dispatcher.refresh()
        env.clock.now = datetime(2024, 1, 1, 6, 0, tzinfo=timezone.utc)
        fired = await env.dispatcher.tick()
        await env.tracker.wait_all(timeout=2)
        return env, fired

    env, fired = asyncio.run(scenario())

    event = env.events.get_event(fired[0].id)
    assert event.status == "failed"
    assert event.reason == "zone_2: zone unavailable"
    assert event.zone_results["zone_1"].status == "completed"
    assert event.zone_results["zone_2"].status == "failed"
    assert event.zone_results["zone_2"].reason == "zone unavailable"
    assert ("zone_1", True) in env.driver.commands
    assert ("zone_2", True) not in env.driver.commands


def test_emergency_stop_fails_running_event(db):
    async def scenario():
        env = build()
        make_schedule(env, duration_minutes=100)
        env.dispatcher.refresh()
        env.clock.now = datetime(2024, 1, 1, 6, 0, tzinfo=timezone.utc)
        fired = await env.dispatcher.tick()
        await env.controller.stop_all()
        await env.tracker.wait_all(timeout=2)
        return env, fired

    env, fired = asyncio.run(scenario())

    event = env.events.get_event(fired[0].id)
    assert event.status == "failed"
    assert event.reason == "zone_1: interrupted by emergency stop"


def test_disabled_schedules_are_not_dispatched(db):
    async def scenario():
        env = build()
        make_schedule(env, enabled=False)
        env.dispatcher.refresh()
        env.clock.now = datetime(2024, 1, 1, 6, 0, tzinfo=timezone.utc)
        return env, await env.dispatcher.tick()

    env, fired = asyncio.run(scenario())

    assert fired == []
    assert env.dispatcher.next_due_at() is None


def test_edit_reschedules_pending_due_time(db):
    async def scenario():
        env = build()
        schedule = make_schedule(env)
        env.dispatcher.refresh()
        payload = schedule.model_dump(
            include={"name", "time_of_day", "duration_minutes", "days", "zones", "mode"}
        )
        payload["time_of_day"] = "07:15"
        env.schedules.update_schedule(schedule.id, ScheduleUpdateRequest(**payload))
        env.dispatcher.refresh()
        return env

    env = asyncio.run(scenario())

    assert env.dispatcher.next_due_at() == datetime(2024, 1, 1, 7, 15, tzinfo=timezone.utc)


def test_run_loop_picks_up_new_schedule_and_run_now(db):
    async def scenario():
        env = build(now=datetime(2024, 1, 1, 6, 0, tzinfo=timezone.utc))
        loop_task = asyncio.create_task(env.dispatcher.run())
        await asyncio.sleep(0.01)
        assert env.dispatcher.running

        # Due right now: the wake-up from the create triggers the dispatch.
        schedule = make_schedule(env)
        for _ in range(100):
            if env.events.list_events(actions=["RUN"]):
                break
            await asyncio.sleep(0.01)

        manual = await env.dispatcher.run_now(schedule.id)

        await env.dispatcher.stop()
        await asyncio.wait_for(loop_task, timeout=2)
        await env.tracker.wait_all(timeout=2)
        return env, schedule, manual

    env, schedule, manual = asyncio.run(scenario())

    runs = env.events.list_events(schedule_id=schedule.id, actions=["RUN"])
    assert len(runs) == 2
    assert manual.id in {run.id for run in runs}
    assert all(run.status == "completed" for run in runs)
    assert not env.dispatcher.running


def test_run_now_bypasses_conditions(db):
    async def scenario():
        env = build()
        schedule = make_schedule(
            env, mode="smart", conditions={"skip_if_raining": True}
        )
        env.sensors.set_raining(True)
        event = await env.dispatcher.run_now(schedule.id)
        await env.tracker.wait_all(timeout=2)
        return env, event

    env, event = asyncio.run(scenario())

    assert env.events.get_event(event.id).status == "completed"


def test_commands_arriving_between_short_sleeps_are_all_answered(db):
    async def scenario():
        # A slot 10 ms away keeps the loop waking up on short timeouts.
        env = build(now=datetime(2024, 1, 1, 6, 0, 59, 990000, tzinfo=timezone.utc))
        make_schedule(env, time_of_day="06:01")
        manual = make_schedule(env, name="Manual", zones=["zone_2"], enabled=False)
        loop_task = asyncio.create_task(env.dispatcher.run())
        await asyncio.sleep(0.01)

        events = []
        for _ in range(5):
            await asyncio.sleep(0.007)
            events.append(
                await asyncio.wait_for(env.dispatcher.run_now(manual.id), timeout=2)
            )

        await env.dispatcher.stop()
        await asyncio.wait_for(loop_task, timeout=2)
        await env.tracker.wait_all(timeout=2)
        return env, manual, events

    env, manual, events = asyncio.run(scenario())

    assert len({event.id for event in events}) == 5
    assert len(env.events.list_events(schedule_id=manual.id, actions=["RUN"])) == 5


def test_run_now_queued_behind_stop_is_rejected(db):
    async def scenario():
        env = build()
        schedule = make_schedule(env)
        loop_task = asyncio.create_task(env.dispatcher.run())
        await asyncio.sleep(0.01)

        await env.dispatcher.stop()
        late = asyncio.create_task(env.dispatcher.run_now(schedule.id))
        await asyncio.wait_for(loop_task, timeout=2)
        try:
            await asyncio.wait_for(late, timeout=2)
        except RuntimeError as exc:
            return env, str(exc)
        return env, None

    env, error = asyncio.run(scenario())

    assert error == "dispatcher stopped"
    assert env.events.list_events(actions=["RUN"]) == []
