"""
Zone registry: live zone state keyed by stable zone id.
"""

from __future__ import annotations

from datetime import datetime
from threading import Lock
from typing import Dict, Iterable, List, Optional
import logging

from .. import repositories
from ..config import settings
from ..schemas import ZoneStatusModel

logger = logging.getLogger(__name__)


class ZoneRegistry:
    """
    Owns the zone records. Readers always receive copies. The apply_* methods
    that touch valve state and health are reserved for the ZoneController;
    apply_reading is the sensor-feed entry point.
    """

    def __init__(self, zones: Iterable[ZoneStatusModel], persist: bool = True) -> None:
        self._zones: Dict[str, ZoneStatusModel] = {
            zone.zone_id: zone.model_copy() for zone in zones
        }
        self._pump_on = False
        self._persist = persist
        self._lock = Lock()

    @classmethod
    def from_store(cls) -> "ZoneRegistry":
        """
        Build the registry from the ZoneStatus table. A valve recorded as open
        is kept open here so the start-up reset closes and logs it.
        """
        return cls(
            ZoneStatusModel.model_validate(row) for row in repositories.list_zone_status()
        )

    @classmethod
    def from_ids(cls, zone_ids: Iterable[str], persist: bool = False) -> "ZoneRegistry":
        return cls(
            (
                ZoneStatusModel(
                    zone_id=zone_id,
                    display_name=settings.zone_name_map.get(zone_id, zone_id),
                )
                for zone_id in zone_ids
            ),
            persist=persist,
        )

    def __contains__(self, zone_id: object) -> bool:
        return zone_id in self._zones

    def ids(self) -> List[str]:
        return list(self._zones)

    def get(self, zone_id: str) -> ZoneStatusModel:
        with self._lock:
            zone = self._zones.get(zone_id)
            if zone is None:
                raise KeyError(f"Zone {zone_id} not found")
            return zone.model_copy()

    def snapshot(self) -> List[ZoneStatusModel]:
        with self._lock:
            return [zone.model_copy() for zone in self._zones.values()]

    def open_zones(self) -> List[str]:
        with self._lock:
            return [
                zone_id
                for zone_id, zone in self._zones.items()
                if zone.valve_state == "open"
            ]

    @property
    def pump_on(self) -> bool:
        return self._pump_on

    def _update(self, zone_id: str, **fields) -> ZoneStatusModel:
        with self._lock:
            zone = self._zones.get(zone_id)
            if zone is None:
                raise KeyError(f"Zone {zone_id} not found")
            updated = zone.model_copy(update=fields)
            self._zones[zone_id] = updated
            return updated.model_copy()

    def apply_valve_state(self, zone_id: str, state: str, at: datetime) -> ZoneStatusModel:
        fields = {"valve_state": state, "updated_at": at}
        if state == "open":
            fields["last_opened_at"] = at
        zone = self._update(zone_id, **fields)
        if self._persist:
            repositories.update_zone_status(
                zone_id,
                valve_state=state,
                last_opened_at=at if state == "open" else None,
                updated_at=at,
            )
        return zone

    def apply_health(self, zone_id: str, health: str, at: datetime) -> ZoneStatusModel:
        zone = self._update(zone_id, health=health, updated_at=at)
        if self._persist:
            repositories.update_zone_status(zone_id, health=health, updated_at=at)
        return zone

    def apply_pump(self, is_on: bool) -> None:
        self._pump_on = is_on

    def apply_reading(
        self,
        zone_id: str,
        *,
        moisture: Optional[float],
        temperature: Optional[float],
        at: datetime,
    ) -> ZoneStatusModel:
        zone = self._update(
            zone_id, moisture=moisture, temperature=temperature, reading_at=at
        )
        if self._persist:
            repositories.update_zone_status(
                zone_id,
                moisture=moisture,
                temperature=temperature,
                reading_at=at,
                updated_at=at,
            )
        return zone
