from datetime import datetime, timedelta, timezone

import pytest

from irrigation import repositories
from irrigation.services.event_service import EventService, EventTransitionError


def _pending(svc: EventService, zones=("zone_1", "zone_2")):
    return svc.create_pending(
        schedule_id="schedule_a",
        mode="fixed",
        zones=list(zones),
        duration_minutes=10,
        scheduled_time=datetime(2024, 1, 1, 6, 0, tzinfo=timezone.utc),
    )


def test_create_pending_freezes_zone_snapshot(db):
    svc = EventService()
    zones = ["zone_1", "zone_2"]
    event = _pending(svc, zones)
    zones.append("zone_3")

    stored = svc.get_event(event.id)
    assert stored.status == "pending"
    assert stored.action == "RUN"
    assert stored.zones == ["zone_1", "zone_2"]
    assert stored.actor == "schedule_a"


def test_lifecycle_pending_running_completed(db):
    svc = EventService()
    event = _pending(svc)

    running = svc.mark_running(event.id)
    assert running.status == "running"
    assert running.started_at is not None
    assert running.zone_results["zone_1"].status == "running"

    done = svc.finish(
        event.id,
        {
            "zone_1": {"status": "completed", "reason": None},
            "zone_2": {"status": "completed", "reason": None},
        },
    )
    assert done.status == "completed"
    assert done.ended_at is not None
    assert done.reason is None


def test_finish_fails_with_first_failing_zone(db):
    svc = EventService()
    event = _pending(svc)
    svc.mark_running(event.id)

    done = svc.finish(
        event.id,
        {
            "zone_1": {"status": "completed", "reason": None},
            "zone_2": {"status": "failed", "reason": "zone unavailable"},
        },
    )

    assert done.status == "failed"
    assert done.reason == "zone_2: zone unavailable"
    assert done.zone_results["zone_1"].status == "completed"
    assert done.zone_results["zone_2"].reason == "zone unavailable"


def test_skip_records_reason(db):
    svc = EventService()
    event = _pending(svc)

    skipped = svc.mark_skipped(event.id, "skipped because it is raining")

    assert skipped.status == "skipped"
    assert skipped.reason == "skipped because it is raining"
    assert skipped.started_at is None


@pytest.mark.parametrize(
    "path,illegal",
    [
        ([], "completed"),
        ([], "failed"),
        (["running"], "skipped"),
        (["running"], "pending"),
        (["skipped"], "running"),
        (["running", "completed"], "failed"),
        (["running", "failed"], "running"),
    ],
)
def test_illegal_transitions_are_rejected(db, path, illegal):
    svc = EventService()
    event = _pending(svc)
    for status in path:
        svc.transition(event.id, status)

    with pytest.raises(EventTransitionError):
        svc.transition(event.id, illegal)

    assert svc.get_event(event.id).status == (path[-1] if path else "pending")


def test_transition_unknown_event_raises_key_error(db):
    with pytest.raises(KeyError):
        EventService().transition(9999, "running")


def test_recover_interrupted_resolves_unfinished_rows(db):
    svc = EventService()
    pending = _pending(svc)
    running = _pending(svc)
    svc.mark_running(running.id)
    finished = _pending(svc)
    svc.mark_skipped(finished.id, "rain")

    assert svc.recover_interrupted() == 2

    assert svc.get_event(pending.id).status == "skipped"
    assert svc.get_event(running.id).status == "failed"
    assert svc.get_event(running.id).reason == "interrupted by restart"
    assert svc.get_event(finished.id).reason == "rain"


def test_list_events_filters(db):
    svc = EventService()
    first = _pending(svc, ["zone_1"])
    svc.mark_skipped(first.id, "rain")
    second = _pending(svc, ["zone_2"])
    svc.log_actuation(
        action="OPEN", zone_id="zone_2", actor="manual", schedule_id=None, mode="manual"
    )

    by_zone = svc.list_events(zone_id="zone_2")
    assert {event.id for event in by_zone} >= {second.id}
    assert all("zone_2" in event.zones for event in by_zone)

    runs = svc.list_events(actions=["RUN"], statuses=["skipped"])
    assert [event.id for event in runs] == [first.id]

    future = datetime.now(timezone.utc) + timedelta(days=1)
    assert svc.list_events(since=future) == []


def test_repository_compare_and_set(db):
    event_id = _pending(EventService()).id

    assert repositories.update_event(
        event_id, status="running", expected_status="pending"
    )
    assert not repositories.update_event(
        event_id, status="skipped", expected_status="pending"
    )
