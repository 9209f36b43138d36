"""
Pydantic models for request/response payloads.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
import re

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


ValveState = Literal["open", "closed"]
ZoneHealth = Literal["active", "inactive", "error"]
ScheduleMode = Literal["fixed", "smart", "weather"]
EventMode = Literal["fixed", "smart", "weather", "manual", "auto"]
EventStatus = Literal["pending", "running", "completed", "skipped", "failed"]
EventAction = Literal["RUN", "OPEN", "CLOSE"]

_TIME_OF_DAY = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


class ZoneStatusModel(BaseModel):
    """
    Snapshot of one zone as held by the registry (and mirrored in ZoneStatus).
    """
    model_config = ConfigDict(populate_by_name=True)

    zone_id: str = Field(..., alias="ZoneId")
    display_name: str = Field(..., alias="DisplayName")
    valve_state: ValveState = Field("closed", alias="ValveState")
    health: ZoneHealth = Field("active", alias="Health")
    last_opened_at: Optional[datetime] = Field(None, alias="LastOpenedAt")
    moisture: Optional[float] = Field(None, alias="Moisture")
    temperature: Optional[float] = Field(None, alias="Temperature")
    reading_at: Optional[datetime] = Field(None, alias="ReadingAt")
    updated_at: Optional[datetime] = Field(None, alias="UpdatedAt")


class SystemStatusModel(BaseModel):
    """Pump state plus the zone snapshot, used by the control page."""

    pump_on: bool
    raining: Optional[bool] = None
    zones: List[ZoneStatusModel]


class ScheduleConditions(BaseModel):
    """Execution conditions for smart/weather schedules."""

    min_moisture: Optional[float] = Field(None, ge=0, le=100)
    max_temperature: Optional[float] = None
    skip_if_raining: bool = False


class ScheduleInput(BaseModel):
    """
    Shared body for creating and replacing a schedule. Validation here is what
    keeps configuration errors away from the dispatcher.
    """

    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    time_of_day: str = "06:00"
    duration_minutes: int = Field(..., gt=0)
    days: List[int]
    zones: List[str]
    enabled: bool = True
    mode: ScheduleMode = "fixed"
    conditions: Optional[ScheduleConditions] = None

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("name must not be blank")
        return value

    @field_validator("time_of_day")
    @classmethod
    def _check_time(cls, value: str) -> str:
        if not _TIME_OF_DAY.match(value):
            raise ValueError("time_of_day must be HH:MM (24h)")
        return value

    @field_validator("days")
    @classmethod
    def _check_days(cls, value: List[int]) -> List[int]:
        if not value:
            raise ValueError("at least one day of week is required")
        for day in value:
            if day < 0 or day > 6:
                raise ValueError(f"day {day} outside 0 (Monday) .. 6 (Sunday)")
        return sorted(set(value))

    @field_validator("zones")
    @classmethod
    def _check_zones(cls, value: List[str]) -> List[str]:
        cleaned: List[str] = []
        for zone in value:
            zone = zone.strip()
            if zone and zone not in cleaned:
                cleaned.append(zone)
        if not cleaned:
            raise ValueError("at least one zone is required")
        return cleaned

    @model_validator(mode="after")
    def _check_conditions(self) -> "ScheduleInput":
        if self.mode == "fixed":
            # Fixed schedules ignore conditions entirely.
            self.conditions = None
        elif self.conditions is None:
            raise ValueError(f"conditions are required for {self.mode} schedules")
        return self


class ScheduleCreateRequest(ScheduleInput):
    """Payload used to create a schedule."""


class ScheduleUpdateRequest(ScheduleInput):
    """Payload used to replace a schedule definition."""


class ScheduleModel(BaseModel):
    """
    API representation of a schedule. next_execution is derived on read.
    """

    id: str
    name: str
    description: Optional[str] = None
    time_of_day: str
    duration_minutes: int
    days: List[int]
    days_label: str
    zones: List[str]
    enabled: bool
    mode: ScheduleMode
    conditions: Optional[ScheduleConditions] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    next_execution: Optional[datetime] = None


class ZoneOutcomeModel(BaseModel):
    """Per-zone result inside a RUN event."""

    status: Literal["running", "completed", "failed"]
    reason: Optional[str] = None


class EventLogModel(BaseModel):
    """
    API representation of the EventLog rows (used in the dashboard history).
    """
    model_config = ConfigDict(populate_by_name=True)

    id: int = Field(..., alias="Id")
    created_at: datetime = Field(..., alias="CreatedAt")
    schedule_id: Optional[str] = Field(None, alias="ScheduleId")
    mode: EventMode = Field(..., alias="Mode")
    actor: str = Field(..., alias="Actor")
    action: EventAction = Field(..., alias="Action")
    scheduled_time: datetime = Field(..., alias="ScheduledTime")
    duration_minutes: Optional[float] = Field(None, alias="DurationMinutes")
    zones: List[str] = Field(default_factory=list, alias="Zones")
    zone_results: Dict[str, ZoneOutcomeModel] = Field(
        default_factory=dict, alias="ZoneResults"
    )
    status: EventStatus = Field(..., alias="Status")
    reason: Optional[str] = Field(None, alias="Reason")
    started_at: Optional[datetime] = Field(None, alias="StartedAt")
    ended_at: Optional[datetime] = Field(None, alias="EndedAt")


class ZoneOpenRequest(BaseModel):
    """
    Manual open issued from the control page buttons.
    """
    duration_minutes: int = Field(..., gt=0, le=240)


class QuickWaterRequest(BaseModel):
    """Quick-water button; the configured default applies when no duration is sent."""

    duration_minutes: Optional[int] = Field(None, gt=0, le=240)


class AutoWaterSettings(BaseModel):
    """
    Moisture-triggered watering. When enabled, every zone whose fresh moisture
    reading is below `threshold` is watered for `duration_minutes`.
    """

    enabled: bool = False
    threshold: float = Field(30, ge=20, le=80)
    duration_minutes: int = Field(10, gt=0, le=240)
    check_interval_minutes: float = Field(5, gt=0)


class AutoWaterUpdateRequest(BaseModel):
    enabled: Optional[bool] = None
    threshold: Optional[float] = Field(None, ge=20, le=80)
    duration_minutes: Optional[int] = Field(None, gt=0, le=240)


class ZoneHealthRequest(BaseModel):
    """Health update pushed by the external sensor/health feed."""

    state: ZoneHealth


class ZoneCommandResultModel(BaseModel):
    """Outcome of a single valve command."""

    zone_id: str
    ok: bool
    reason: Optional[str] = None


class ManualControlResponse(BaseModel):
    """Result of a manual request against one zone or all of them."""

    event_id: Optional[int] = None
    results: List[ZoneCommandResultModel]


class SensorReadingPayload(BaseModel):
    """
    Structure used by the sensor collector when reporting zone readings.
    """
    moisture: Optional[float] = Field(None, ge=0, le=100)
    temperature: Optional[float] = None
    timestamp: Optional[datetime] = None


class RainStatusPayload(BaseModel):
    raining: bool
    timestamp: Optional[datetime] = None


class NotificationModel(BaseModel):
    """Sequenced domain event as buffered by the notification hub."""

    event_type: str
    timestamp: str
    sequence_id: int
    payload: Dict[str, Any]
