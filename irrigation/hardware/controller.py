"""
Hardware abstraction for valve and pump relays.
"""

from __future__ import annotations

import random
import time
from abc import ABC, abstractmethod
from threading import Lock
from typing import Dict, Iterable, List, Mapping, Optional, Set, Tuple


class BaseValveDriver(ABC):
    """
    Base interface implemented by concrete valve drivers. Calls may block on
    real I/O; the zone controller runs them in a worker thread with a timeout.
    """

    @abstractmethod
    def set_valve_state(self, zone_id: str, is_open: bool) -> None:
        """
        Drive the relay/solenoid associated with a zone.
        """

    @abstractmethod
    def get_valve_states(self) -> Mapping[str, bool]:
        """
        Return the current known valve state for each zone.
        """

    @abstractmethod
    def set_pump_state(self, is_on: bool) -> None:
        """
        Switch the master pump feeding every zone.
        """

    def read_moisture(self, zone_id: str) -> Optional[float]:
        """
        Read soil moisture (percent) for a zone. Drivers without probes return None.
        """
        return None

    def read_temperature(self, zone_id: str) -> Optional[float]:
        """
        Read air temperature (Celsius) near a zone. None if unavailable.
        """
        return None


class MockValveDriver(BaseValveDriver):
    """
    In-memory simulation used for development and automated tests.
    Zones listed in `hung_zones` block for `hang_seconds` on every command,
    which is how tests exercise the valve timeout path.
    """

    def __init__(
        self,
        zones: Iterable[str],
        hung_zones: Optional[Iterable[str]] = None,
        hang_seconds: float = 1.0,
    ):
        zones = list(zones)
        # Keep an in-memory dictionary that mirrors the relay states.
        self._states: Dict[str, bool] = {zone: False for zone in zones}
        self._pump_on = False
        self._lock = Lock()
        self.hung_zones: Set[str] = set(hung_zones or ())
        self.hang_seconds = hang_seconds
        # Every command in order, handy for asserting no double-close.
        self.commands: List[Tuple[str, bool]] = []
        self._base_moisture: Dict[str, float] = {
            zone: random.uniform(30.0, 55.0) for zone in zones
        }
        self._base_temperature: Dict[str, float] = {
            zone: random.uniform(26.0, 33.0) for zone in zones
        }

    def set_valve_state(self, zone_id: str, is_open: bool) -> None:
        if zone_id in self.hung_zones:
            # Simulates a valve that never acknowledges the command.
            time.sleep(self.hang_seconds)
            return
        with self._lock:
            self._states[zone_id] = is_open
            self.commands.append((zone_id, is_open))

    def get_valve_states(self) -> Mapping[str, bool]:
        # Return a copy so callers cannot mutate our internal dict.
        with self._lock:
            return dict(self._states)

    def set_pump_state(self, is_on: bool) -> None:
        with self._lock:
            self._pump_on = is_on
            self.commands.append(("pump", is_on))

    @property
    def pump_on(self) -> bool:
        return self._pump_on

    def read_moisture(self, zone_id: str) -> Optional[float]:
        """
        Return simulated soil moisture. Open zones get wetter.
        """
        if zone_id not in self._base_moisture:
            return None
        base = self._base_moisture[zone_id]
        if self._states.get(zone_id, False):
            base = min(base + random.uniform(0.5, 1.5), 95.0)
        else:
            base = max(base - random.uniform(0.0, 0.3), 5.0)
        self._base_moisture[zone_id] = base
        return round(base, 1)

    def read_temperature(self, zone_id: str) -> Optional[float]:
        if zone_id not in self._base_temperature:
            return None
        variation = random.uniform(-0.5, 0.5)
        return round(self._base_temperature[zone_id] + variation, 1)


def create_driver(mode: str, zones: Iterable[str]) -> BaseValveDriver:
    """
    Build the valve driver for `mode`. Only the mock driver ships here; GPIO
    or Modbus drivers subclass BaseValveDriver and register below.
    """
    if mode == "mock":
        return MockValveDriver(zones)
    raise ValueError(f"Unsupported hardware mode: {mode}")
