import asyncio
from datetime import datetime, timedelta, timezone

from irrigation.hardware import MockValveDriver
from irrigation.schemas import AutoWaterSettings, AutoWaterUpdateRequest
from irrigation.services import (
    AutoWaterMonitor,
    EventService,
    RunTracker,
    SensorFeed,
    ZoneController,
    ZoneRegistry,
)

ZONES = ["zone_1", "zone_2", "zone_3", "zone_4"]
NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def build(enabled=True, threshold=30):
    registry = ZoneRegistry.from_ids(ZONES)
    driver = MockValveDriver(ZONES)
    events = EventService()
    controller = ZoneController(registry, driver, events)
    sensors = SensorFeed(max_age_seconds=900, clock=lambda: NOW)
    tracker = RunTracker(events)
    monitor = AutoWaterMonitor(
        registry,
        controller,
        events,
        tracker,
        sensors,
        lambda: NOW,
        settings=AutoWaterSettings(enabled=enabled, threshold=threshold, duration_minutes=1),
        minute_seconds=0.05,
    )
    return monitor, events, sensors, driver, tracker


def test_dry_zone_is_watered_once(db):
    async def scenario():
        monitor, events, sensors, driver, tracker = build()
        sensors.update_reading("zone_1", moisture=22.0, temperature=30.0)
        created = await monitor.check()
        # Still open: a second check does not start another run.
        again = await monitor.check()
        await tracker.wait_all(timeout=2)
        return created, again, events, driver

    created, again, events, driver = asyncio.run(scenario())

    assert len(created) == 1 and again == []
    event = events.get_event(created[0])
    assert event.mode == "auto"
    assert event.actor == "auto"
    assert event.zones == ["zone_1"]
    assert event.status == "completed"
    assert driver.commands.count(("zone_1", True)) == 1
    opens = events.list_events(zone_id="zone_1", actions=["OPEN"])
    assert opens[0].mode == "auto"


def test_zone_at_or_above_threshold_is_left_alone(db):
    async def scenario():
        monitor, events, sensors, driver, _ = build()
        sensors.update_reading("zone_1", moisture=30.0, temperature=30.0)
        sensors.update_reading("zone_2", moisture=55.0, temperature=30.0)
        return await monitor.check(), events, driver

    created, events, driver = asyncio.run(scenario())

    assert created == []
    assert driver.commands == []
    assert events.list_events(actions=["RUN"]) == []


def test_missing_or_stale_reading_does_not_fire(db):
    async def scenario():
        monitor, events, sensors, driver, _ = build()
        sensors.update_reading(
            "zone_1", moisture=10.0, temperature=30.0, timestamp=NOW - timedelta(hours=1)
        )
        sensors.update_reading("zone_2", moisture=None, temperature=30.0)
        return await monitor.check(), driver

    created, driver = asyncio.run(scenario())

    assert created == []
    assert driver.commands == []


def test_disabled_monitor_and_settings_update(db):
    async def scenario():
        monitor, _, sensors, driver, tracker = build(enabled=False)
        sensors.update_reading("zone_3", moisture=25.0, temperature=30.0)
        while_disabled = await monitor.check()
        updated = monitor.update(AutoWaterUpdateRequest(enabled=True, threshold=20))
        below_new_threshold = await monitor.check()
        monitor.update(AutoWaterUpdateRequest(threshold=40))
        fired = await monitor.check()
        await tracker.wait_all(timeout=2)
        return while_disabled, updated, below_new_threshold, fired, driver

    while_disabled, updated, below_new_threshold, fired, driver = asyncio.run(scenario())

    assert while_disabled == []
    assert updated.enabled and updated.threshold == 20
    assert updated.duration_minutes == 1
    assert below_new_threshold == []
    assert len(fired) == 1
    assert ("zone_3", True) in driver.commands
