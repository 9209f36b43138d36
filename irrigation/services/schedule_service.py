"""
Schedule management: validation, persistence and derived next execution.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict, List
import logging
import uuid

from .. import repositories
from ..schemas import (
    ScheduleConditions,
    ScheduleCreateRequest,
    ScheduleInput,
    ScheduleModel,
    ScheduleUpdateRequest,
)
from .recurrence import describe_days, next_execution
from .zone_registry import ZoneRegistry

logger = logging.getLogger(__name__)


def _new_schedule_id() -> str:
    return f"schedule_{uuid.uuid4().hex[:12]}"


class ScheduleService:
    """
    CRUD over schedules. next_execution is computed from `clock()` on every
    read and never stored. Listeners (the dispatcher) are told about every
    change so they can recompute due times.
    """

    def __init__(self, registry: ZoneRegistry, clock: Callable[[], datetime]) -> None:
        self.registry = registry
        self._clock = clock
        self._listeners: List[Callable[[], None]] = []

    def add_listener(self, listener: Callable[[], None]) -> None:
        self._listeners.append(listener)

    def _changed(self) -> None:
        for listener in self._listeners:
            listener()

    def _to_model(self, row: Dict[str, Any]) -> ScheduleModel:
        conditions = None
        if row.get("Mode") != "fixed":
            conditions = ScheduleConditions(
                min_moisture=row.get("MinMoisture"),
                max_temperature=row.get("MaxTemperature"),
                skip_if_raining=bool(row.get("SkipIfRaining")),
            )
        days = row.get("Days") or []
        return ScheduleModel(
            id=row["Id"],
            name=row["Name"],
            description=row.get("Description"),
            time_of_day=row["TimeOfDay"],
            duration_minutes=row["DurationMinutes"],
            days=days,
            days_label=describe_days(days),
            zones=row.get("Zones") or [],
            enabled=bool(row.get("Enabled")),
            mode=row["Mode"],
            conditions=conditions,
            created_at=row.get("CreatedAt"),
            updated_at=row.get("UpdatedAt"),
            next_execution=next_execution(row["TimeOfDay"], days, self._clock()),
        )

    def _check_zones(self, payload: ScheduleInput) -> None:
        unknown = [zone for zone in payload.zones if zone not in self.registry]
        if unknown:
            raise ValueError(f"Unknown zones: {', '.join(unknown)}")

    @staticmethod
    def _fields(payload: ScheduleInput) -> Dict[str, Any]:
        conditions = payload.conditions
        return {
            "name": payload.name,
            "description": payload.description,
            "time_of_day": payload.time_of_day,
            "duration_minutes": payload.duration_minutes,
            "days": payload.days,
            "zones": payload.zones,
            "enabled": payload.enabled,
            "mode": payload.mode,
            "min_moisture": conditions.min_moisture if conditions else None,
            "max_temperature": conditions.max_temperature if conditions else None,
            "skip_if_raining": conditions.skip_if_raining if conditions else None,
        }

    def list_schedules(self, enabled_only: bool = False) -> List[ScheduleModel]:
        rows = repositories.list_schedules(enabled_only=enabled_only)
        return [self._to_model(row) for row in rows]

    def get_schedule(self, schedule_id: str) -> ScheduleModel:
        row = repositories.get_schedule(schedule_id)
        if not row:
            raise KeyError(f"Schedule {schedule_id} not found")
        return self._to_model(row)

    def create_schedule(self, payload: ScheduleCreateRequest) -> ScheduleModel:
        self._check_zones(payload)
        fields = self._fields(payload)
        row = repositories.insert_schedule(
            schedule_id=_new_schedule_id(),
            name=fields["name"],
            description=fields["description"],
            time_of_day=fields["time_of_day"],
            duration_minutes=fields["duration_minutes"],
            days=fields["days"],
            zones=fields["zones"],
            enabled=fields["enabled"],
            mode=fields["mode"],
            min_moisture=fields["min_moisture"],
            max_temperature=fields["max_temperature"],
            skip_if_raining=fields["skip_if_raining"],
        )
        logger.info(
            "schedules.create id=%s name=%s mode=%s zones=%s",
            row["Id"],
            row["Name"],
            row["Mode"],
            len(row["Zones"]),
        )
        self._changed()
        return self._to_model(row)

    def update_schedule(
        self, schedule_id: str, payload: ScheduleUpdateRequest
    ) -> ScheduleModel:
        if not repositories.get_schedule(schedule_id):
            raise KeyError(f"Schedule {schedule_id} not found")
        self._check_zones(payload)
        repositories.replace_schedule(schedule_id, self._fields(payload))
        logger.info("schedules.update id=%s", schedule_id)
        self._changed()
        return self.get_schedule(schedule_id)

    def set_enabled(self, schedule_id: str, enabled: bool) -> ScheduleModel:
        if not repositories.get_schedule(schedule_id):
            raise KeyError(f"Schedule {schedule_id} not found")
        repositories.set_schedules_enabled(enabled, [schedule_id])
        self._changed()
        return self.get_schedule(schedule_id)

    def toggle_schedule(self, schedule_id: str) -> ScheduleModel:
        current = self.get_schedule(schedule_id)
        return self.set_enabled(schedule_id, not current.enabled)

    def set_all_enabled(self, enabled: bool) -> List[ScheduleModel]:
        count = repositories.set_schedules_enabled(enabled)
        logger.info("schedules.set_all enabled=%s count=%s", enabled, count)
        self._changed()
        return self.list_schedules()

    def duplicate_schedule(self, schedule_id: str) -> ScheduleModel:
        source = self.get_schedule(schedule_id)
        payload = ScheduleCreateRequest(
            name=f"{source.name} (copy)",
            description=source.description,
            time_of_day=source.time_of_day,
            duration_minutes=source.duration_minutes,
            days=source.days,
            zones=source.zones,
            enabled=source.enabled,
            mode=source.mode,
            conditions=source.conditions,
        )
        return self.create_schedule(payload)

    def delete_schedule(self, schedule_id: str) -> int:
        """
        Delete a schedule and the pending events it owns. Finished events stay
        in the log. Returns the number of pending events removed.
        """
        if not repositories.get_schedule(schedule_id):
            raise KeyError(f"Schedule {schedule_id} not found")
        removed = repositories.delete_schedule(schedule_id)
        logger.info("schedules.delete id=%s pending_removed=%s", schedule_id, removed)
        self._changed()
        return removed
