"""
Manual control: operator-driven open/close, quick water, emergency stop,
health overrides and sensor updates.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple
import logging

from ..notifications import EMERGENCY_STOP, NotificationHub
from ..schemas import SystemStatusModel, ZoneStatusModel
from .event_service import EventService
from .run_tracker import RunTracker
from .sensor_feed import SensorFeed
from .zone_controller import ZoneCommandResult, ZoneController
from .zone_registry import ZoneRegistry

logger = logging.getLogger(__name__)

ALL_ZONES = "all"


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # Feeds that send naive timestamps are assumed to report UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ControlService:
    """
    Facade the HTTP layer talks to for anything that is not schedule CRUD.
    Manual opens are recorded as RUN events with mode "manual" so they show up
    in history next to scheduled runs.
    """

    def __init__(
        self,
        registry: ZoneRegistry,
        controller: ZoneController,
        events: EventService,
        tracker: RunTracker,
        sensors: SensorFeed,
        notifier: NotificationHub,
        clock: Callable[[], datetime],
        minute_seconds: float = 60.0,
        quick_water_minutes: float = 5.0,
    ) -> None:
        self.registry = registry
        self.controller = controller
        self.events = events
        self.tracker = tracker
        self.sensors = sensors
        self.notifier = notifier
        self.minute_seconds = minute_seconds
        self.quick_water_minutes = quick_water_minutes
        self._clock = clock

    def _targets(self, target: str) -> List[str]:
        if target == ALL_ZONES:
            return self.registry.ids()
        if target not in self.registry:
            raise KeyError(f"Zone {target} not found")
        return [target]

    def list_zones(self) -> List[ZoneStatusModel]:
        return self.registry.snapshot()

    def get_zone(self, zone_id: str) -> ZoneStatusModel:
        return self.registry.get(zone_id)

    def system_status(self) -> SystemStatusModel:
        return SystemStatusModel(
            pump_on=self.registry.pump_on,
            raining=self.sensors.is_raining(),
            zones=self.registry.snapshot(),
        )

    async def request_open(
        self, target: str, duration_minutes: float, *, actor: str = "manual"
    ) -> Tuple[int, List[ZoneCommandResult]]:
        """
        Open one zone or every zone for `duration_minutes`. Returns the RUN
        event id and the per-zone command results.
        """
        if duration_minutes <= 0:
            raise ValueError("duration_minutes must be positive")
        zone_ids = self._targets(target)
        event = self.events.create_pending(
            schedule_id=None,
            mode="manual",
            zones=zone_ids,
            duration_minutes=duration_minutes,
            scheduled_time=self._clock(),
            actor=actor,
        )
        self.events.mark_running(event.id)

        seconds = duration_minutes * self.minute_seconds
        outcomes = await asyncio.gather(
            *(self.controller.open(zone_id, seconds, actor=actor) for zone_id in zone_ids)
        )
        results: Dict[str, ZoneCommandResult] = dict(zip(zone_ids, outcomes))
        self.tracker.start(event.id, results)
        logger.info(
            "control.open target=%s duration=%sm event=%s ok=%s/%s",
            target,
            duration_minutes,
            event.id,
            sum(1 for result in outcomes if result.ok),
            len(outcomes),
        )
        return event.id, list(outcomes)

    async def request_close(
        self, target: str, *, actor: str = "manual"
    ) -> List[ZoneCommandResult]:
        zone_ids = self._targets(target)
        results = await asyncio.gather(
            *(self.controller.close(zone_id, actor=actor) for zone_id in zone_ids)
        )
        logger.info("control.close target=%s zones=%s", target, len(results))
        return list(results)

    async def quick_water(
        self, duration_minutes: Optional[float] = None, *, actor: str = "manual"
    ) -> Tuple[int, List[ZoneCommandResult]]:
        """Open every zone for the configured quick-water duration."""
        minutes = duration_minutes or self.quick_water_minutes
        return await self.request_open(ALL_ZONES, minutes, actor=actor)

    async def emergency_stop(self, *, actor: str = "manual") -> List[ZoneCommandResult]:
        results = await self.controller.stop_all(actor=actor)
        self.notifier.emit(
            EMERGENCY_STOP,
            {"actor": actor, "zones": [result.zone_id for result in results]},
        )
        return results

    async def reset(self, *, actor: str = "manual") -> List[ZoneStatusModel]:
        """
        Close everything and clear error health so zones accept commands again.
        """
        await self.controller.stop_all(actor=actor)
        for zone in self.registry.snapshot():
            if zone.health == "error":
                await self.controller.set_health(zone.zone_id, "active")
        logger.info("control.reset actor=%s", actor)
        return self.registry.snapshot()

    async def set_health(self, zone_id: str, state: str) -> ZoneStatusModel:
        await self.controller.set_health(zone_id, state)
        return self.registry.get(zone_id)

    def update_reading(
        self,
        zone_id: str,
        *,
        moisture: Optional[float],
        temperature: Optional[float],
        timestamp: Optional[datetime] = None,
    ) -> bool:
        """
        Feed a sensor reading. Unchanged values only refresh freshness and are
        not written to the zone store.
        """
        if zone_id not in self.registry:
            raise KeyError(f"Zone {zone_id} not found")
        stamp = _aware(timestamp) or self._clock()
        changed = self.sensors.update_reading(
            zone_id, moisture=moisture, temperature=temperature, timestamp=stamp
        )
        if changed:
            self.registry.apply_reading(
                zone_id, moisture=moisture, temperature=temperature, at=stamp
            )
        return changed

    def set_raining(self, raining: bool, timestamp: Optional[datetime] = None) -> bool:
        return self.sensors.set_raining(raining, _aware(timestamp) or self._clock())
