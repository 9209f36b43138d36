from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from irrigation.schemas import ScheduleCreateRequest, ScheduleUpdateRequest
from irrigation.services.event_service import EventService
from irrigation.services.schedule_service import ScheduleService
from irrigation.services.zone_registry import ZoneRegistry

ZONES = ["zone_1", "zone_2", "zone_3", "zone_4"]
NOW = datetime(2024, 1, 1, 5, 0, tzinfo=timezone.utc)


def make_service():
    service = ScheduleService(ZoneRegistry.from_ids(ZONES), lambda: NOW)
    calls = []
    service.add_listener(lambda: calls.append(1))
    return service, calls


def request(**overrides):
    payload = {
        "name": "Evening",
        "time_of_day": "17:30",
        "duration_minutes": 20,
        "days": [4, 0, 0],
        "zones": ["zone_1", "zone_3", "zone_1"],
        "mode": "smart",
        "conditions": {"max_temperature": 35, "skip_if_raining": True},
    }
    payload.update(overrides)
    return ScheduleCreateRequest(**payload)


def test_create_normalizes_and_computes_next_execution(db):
    service, calls = make_service()

    schedule = service.create_schedule(request())

    assert schedule.id.startswith("schedule_")
    assert schedule.days == [0, 4]
    assert schedule.days_label == "Mon, Fri"
    assert schedule.zones == ["zone_1", "zone_3"]
    assert schedule.conditions.max_temperature == 35
    assert schedule.next_execution == datetime(2024, 1, 1, 17, 30, tzinfo=timezone.utc)
    assert calls == [1]
    assert service.get_schedule(schedule.id) == schedule


@pytest.mark.parametrize(
    "overrides",
    [
        {"name": "   "},
        {"time_of_day": "25:00"},
        {"time_of_day": "6:00"},
        {"duration_minutes": 0},
        {"days": []},
        {"days": [7]},
        {"zones": []},
        {"conditions": None},
        {"conditions": {"min_moisture": 140}},
    ],
)
def test_invalid_definitions_are_rejected(overrides):
    with pytest.raises(ValidationError):
        request(**overrides)


def test_fixed_mode_drops_conditions():
    payload = request(mode="fixed")
    assert payload.conditions is None


def test_unknown_zone_is_rejected(db):
    service, calls = make_service()

    with pytest.raises(ValueError):
        service.create_schedule(request(zones=["zone_1", "zone_9"]))

    assert service.list_schedules() == []
    assert calls == []


def test_update_toggle_and_enable_all(db):
    service, _ = make_service()
    schedule = service.create_schedule(request())

    payload = request(name="Evening (short)", duration_minutes=5, mode="fixed")
    updated = service.update_schedule(
        schedule.id, ScheduleUpdateRequest(**payload.model_dump())
    )
    assert updated.name == "Evening (short)"
    assert updated.duration_minutes == 5
    assert updated.conditions is None

    assert service.toggle_schedule(schedule.id).enabled is False
    assert service.list_schedules(enabled_only=True) == []
    assert service.toggle_schedule(schedule.id).enabled is True

    service.create_schedule(request(name="Second"))
    assert all(not s.enabled for s in service.set_all_enabled(False))
    assert all(s.enabled for s in service.set_all_enabled(True))


def test_duplicate_copies_definition_with_new_id(db):
    service, _ = make_service()
    original = service.create_schedule(request())

    copy = service.duplicate_schedule(original.id)

    assert copy.id != original.id
    assert copy.name == "Evening (copy)"
    assert copy.days == original.days
    assert copy.zones == original.zones
    assert copy.conditions == original.conditions
    assert len(service.list_schedules()) == 2


def test_delete_removes_pending_events_only(db):
    service, _ = make_service()
    events = EventService()
    schedule = service.create_schedule(request())

    def attempt():
        return events.create_pending(
            schedule_id=schedule.id,
            mode="smart",
            zones=schedule.zones,
            duration_minutes=20,
            scheduled_time=NOW,
        )

    pending = attempt()
    skipped = attempt()
    events.mark_skipped(skipped.id, "skipped because it is raining")

    assert service.delete_schedule(schedule.id) == 1

    with pytest.raises(KeyError):
        service.get_schedule(schedule.id)
    with pytest.raises(KeyError):
        events.get_event(pending.id)
    assert events.get_event(skipped.id).status == "skipped"


def test_unknown_schedule_raises_key_error(db):
    service, _ = make_service()
    for operation in (
        service.get_schedule,
        service.toggle_schedule,
        service.duplicate_schedule,
        service.delete_schedule,
    ):
        with pytest.raises(KeyError):
            operation("schedule_missing")
