"""
Populate the SQLite database with sample schedules and irrigation history.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from random import Random

from irrigation.config import settings
from irrigation.database import init_db
from irrigation import repositories

SAMPLE_SCHEDULES = [
    {
        "schedule_id": "schedule_morning",
        "name": "Morning watering",
        "description": "Front and back garden before sunrise heat",
        "time_of_day": "06:00",
        "duration_minutes": 15,
        "days": [0, 1, 2, 3, 4, 5],
        "zones": ["zone_1", "zone_2"],
        "enabled": True,
        "mode": "fixed",
        "min_moisture": None,
        "max_temperature": None,
        "skip_if_raining": None,
    },
    {
        "schedule_id": "schedule_evening",
        "name": "Evening watering",
        "description": "Skipped on hot or rainy evenings",
        "time_of_day": "17:30",
        "duration_minutes": 20,
        "days": [0, 1, 2, 3, 4],
        "zones": ["zone_1", "zone_3"],
        "enabled": True,
        "mode": "smart",
        "min_moisture": None,
        "max_temperature": 35.0,
        "skip_if_raining": True,
    },
    {
        "schedule_id": "schedule_weekly",
        "name": "Weekly deep soak",
        "description": "All zones, only when the soil is dry",
        "time_of_day": "09:00",
        "duration_minutes": 30,
        "days": [5, 6],
        "zones": ["zone_1", "zone_2", "zone_3", "zone_4"],
        "enabled": True,
        "mode": "weather",
        "min_moisture": 40.0,
        "max_temperature": None,
        "skip_if_raining": True,
    },
    {
        "schedule_id": "schedule_night",
        "name": "Night watering",
        "description": None,
        "time_of_day": "21:00",
        "duration_minutes": 10,
        "days": [1, 3, 5],
        "zones": ["zone_2", "zone_4"],
        "enabled": False,
        "mode": "fixed",
        "min_moisture": None,
        "max_temperature": None,
        "skip_if_raining": None,
    },
]


def seed_schedules() -> None:
    """
    Insert the sample schedules unless a schedule with the same id exists.
    Zones missing from the current configuration are dropped.
    """
    known = set(settings.zone_ids)
    for sample in SAMPLE_SCHEDULES:
        if repositories.get_schedule(sample["schedule_id"]):
            continue
        zones = [zone for zone in sample["zones"] if zone in known]
        if not zones:
            continue
        repositories.insert_schedule(**{**sample, "zones": zones})


def seed_event_log(randomizer: Random) -> None:
    """
    Generate a week of finished RUN events for the enabled sample schedules.
    """
    now = datetime.now(timezone.utc)
    for day_offset in range(7, 0, -1):
        day = now - timedelta(days=day_offset)
        for sample in SAMPLE_SCHEDULES:
            if not sample["enabled"] or day.weekday() not in sample["days"]:
                continue
            hours, minutes = (int(part) for part in sample["time_of_day"].split(":"))
            scheduled = day.replace(hour=hours, minute=minutes, second=0, microsecond=0)
            zones = [zone for zone in sample["zones"] if zone in settings.zone_ids]
            if not zones:
                continue

            # Roughly one in five conditional runs is skipped.
            skipped = sample["mode"] != "fixed" and randomizer.random() < 0.2
            status = "skipped" if skipped else "completed"
            ended = scheduled + timedelta(
                minutes=0 if skipped else sample["duration_minutes"]
            )
            event_id = repositories.record_event(
                schedule_id=sample["schedule_id"],
                mode=sample["mode"],
                actor=sample["schedule_id"],
                action="RUN",
                scheduled_time=scheduled,
                duration_minutes=sample["duration_minutes"],
                zones=zones,
                status=status,
                reason="skipped because it is raining" if skipped else None,
                started_at=None if skipped else scheduled,
                ended_at=ended,
            )
            if not skipped:
                repositories.update_event(
                    event_id,
                    zone_results={
                        zone: {"status": "completed", "reason": None} for zone in zones
                    },
                )


def main() -> None:
    # Deterministic seed so repeated runs produce the same data.
    randomizer = Random(42)
    init_db()

    seed_schedules()
    seed_event_log(randomizer)
    print("Sample data inserted.")


if __name__ == "__main__":
    main()
