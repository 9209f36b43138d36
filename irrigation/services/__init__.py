"""
Service layer exports.
"""

from .auto_water import AutoWaterMonitor
from .control_service import ControlService
from .dispatcher import Dispatcher
from .event_service import EventService
from .run_tracker import RunTracker
from .schedule_service import ScheduleService
from .sensor_feed import SensorFeed
from .zone_controller import ZoneController
from .zone_registry import ZoneRegistry

__all__ = [
    "AutoWaterMonitor",
    "ControlService",
    "Dispatcher",
    "EventService",
    "RunTracker",
    "ScheduleService",
    "SensorFeed",
    "ZoneController",
    "ZoneRegistry",
]
