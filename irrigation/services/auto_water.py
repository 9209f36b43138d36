"""
Moisture-triggered watering that runs next to the schedule dispatcher.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Callable, List, Optional
import logging

from ..schemas import AutoWaterSettings, AutoWaterUpdateRequest
from .event_service import EventService
from .run_tracker import RunTracker
from .sensor_feed import SensorFeed
from .zone_controller import ZoneController
from .zone_registry import ZoneRegistry

logger = logging.getLogger(__name__)

AUTO_ACTOR = "auto"


class AutoWaterMonitor:
    """
    Polls the sensor feed every `check_interval_minutes`. A zone whose fresh
    moisture is below the threshold gets one RUN event with mode "auto",
    opened through the zone controller like any other run. Zones that are
    already open, errored, or have no fresh reading are left alone.
    """

    def __init__(
        self,
        registry: ZoneRegistry,
        controller: ZoneController,
        events: EventService,
        tracker: RunTracker,
        sensors: SensorFeed,
        clock: Callable[[], datetime],
        settings: Optional[AutoWaterSettings] = None,
        minute_seconds: float = 60.0,
    ) -> None:
        self.registry = registry
        self.controller = controller
        self.events = events
        self.tracker = tracker
        self.sensors = sensors
        self.settings = settings or AutoWaterSettings()
        self.minute_seconds = minute_seconds
        self._clock = clock
        self._lock = asyncio.Lock()

    def update(self, payload: AutoWaterUpdateRequest) -> AutoWaterSettings:
        changes = payload.model_dump(exclude_none=True)
        self.settings = self.settings.model_copy(update=changes)
        logger.info(
            "auto_water.settings enabled=%s threshold=%s duration=%sm",
            self.settings.enabled,
            self.settings.threshold,
            self.settings.duration_minutes,
        )
        return self.settings

    def _needs_water(self, zone_id: str) -> bool:
        zone = self.registry.get(zone_id)
        if zone.health == "error" or zone.valve_state == "open":
            return False
        reading = self.sensors.current_reading(zone_id)
        if reading is None or reading.moisture is None:
            logger.debug("auto_water.no_reading zone=%s", zone_id)
            return False
        return reading.moisture < self.settings.threshold

    async def check(self) -> List[int]:
        """Water every dry zone once. Returns the ids of the RUN events created."""
        if not self.settings.enabled:
            return []
        async with self._lock:
            return await self._water_dry_zones()

    async def _water_dry_zones(self) -> List[int]:
        duration = self.settings.duration_minutes
        created: List[int] = []
        for zone_id in self.registry.ids():
            if not self._needs_water(zone_id):
                continue
            event = self.events.create_pending(
                schedule_id=None,
                mode="auto",
                zones=[zone_id],
                duration_minutes=duration,
                scheduled_time=self._clock(),
                actor=AUTO_ACTOR,
            )
            self.events.mark_running(event.id)
            result = await self.controller.open(
                zone_id, duration * self.minute_seconds, actor=AUTO_ACTOR, mode="auto"
            )
            self.tracker.start(event.id, {zone_id: result})
            created.append(event.id)
            logger.info(
                "auto_water.fired zone=%s threshold=%s event=%s ok=%s",
                zone_id,
                self.settings.threshold,
                event.id,
                result.ok,
            )
        return created

    async def run(self) -> None:
        while True:
            try:
                await self.check()
            except Exception as exc:  # log and keep the loop alive
                logger.exception("auto_water.loop_error: %s", exc)
            await asyncio.sleep(self.settings.check_interval_minutes * self.minute_seconds)
