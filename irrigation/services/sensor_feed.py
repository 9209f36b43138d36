"""
In-process boundary for externally supplied sensor readings and rain status.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Callable, Dict, Iterable, Optional, Tuple
import logging

from .conditions import SensorSnapshot

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SensorReading:
    moisture: Optional[float]
    temperature: Optional[float]
    timestamp: datetime


class SensorFeed:
    """
    Holds the latest reading per zone plus the global rain flag. Readings older
    than `max_age_seconds` are reported as unavailable so the condition gate
    fails safe. Writes that repeat the current values only refresh the
    timestamp and report no change, which lets callers skip persistence.
    """

    def __init__(
        self,
        max_age_seconds: float = 900.0,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.max_age = timedelta(seconds=max_age_seconds)
        self._clock = clock or _utcnow
        self._readings: Dict[str, SensorReading] = {}
        self._rain: Optional[Tuple[bool, datetime]] = None
        self._lock = Lock()

    def _is_fresh(self, timestamp: datetime) -> bool:
        return self._clock() - timestamp <= self.max_age

    def update_reading(
        self,
        zone_id: str,
        *,
        moisture: Optional[float],
        temperature: Optional[float],
        timestamp: Optional[datetime] = None,
    ) -> bool:
        """
        Store a reading. Returns False when the values did not change.
        """
        stamp = timestamp or self._clock()
        with self._lock:
            previous = self._readings.get(zone_id)
            changed = (
                previous is None
                or previous.moisture != moisture
                or previous.temperature != temperature
            )
            self._readings[zone_id] = SensorReading(moisture, temperature, stamp)
        if changed:
            logger.debug(
                "sensors.reading zone=%s moisture=%s temperature=%s",
                zone_id,
                moisture,
                temperature,
            )
        return changed

    def set_raining(self, raining: bool, timestamp: Optional[datetime] = None) -> bool:
        stamp = timestamp or self._clock()
        with self._lock:
            changed = self._rain is None or self._rain[0] != raining
            self._rain = (raining, stamp)
        if changed:
            logger.info("sensors.rain raining=%s", raining)
        return changed

    def current_reading(self, zone_id: str) -> Optional[SensorReading]:
        with self._lock:
            reading = self._readings.get(zone_id)
        if reading is None or not self._is_fresh(reading.timestamp):
            return None
        return reading

    def is_raining(self) -> Optional[bool]:
        with self._lock:
            rain = self._rain
        if rain is None or not self._is_fresh(rain[1]):
            return None
        return rain[0]

    def snapshot(self, zone_ids: Iterable[str]) -> SensorSnapshot:
        """
        Combine the readings of several zones into one snapshot: the driest
        moisture and the hottest temperature. If any zone lacks a fresh value
        the combined value is unavailable.
        """
        moistures = []
        temperatures = []
        moisture_missing = False
        temperature_missing = False
        zone_ids = list(zone_ids)
        for zone_id in zone_ids:
            reading = self.current_reading(zone_id)
            if reading is None or reading.moisture is None:
                moisture_missing = True
            else:
                moistures.append(reading.moisture)
            if reading is None or reading.temperature is None:
                temperature_missing = True
            else:
                temperatures.append(reading.temperature)

        return SensorSnapshot(
            moisture=None if moisture_missing or not moistures else min(moistures),
            temperature=(
                None if temperature_missing or not temperatures else max(temperatures)
            ),
            raining=self.is_raining(),
        )
