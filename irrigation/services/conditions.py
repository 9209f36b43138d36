"""
Condition gate for smart and weather schedules.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from ..schemas import ScheduleConditions


@dataclass(frozen=True)
class SensorSnapshot:
    """
    Readings the gate decides on. None means the value is unavailable
    (no sensor, or the reading is stale).
    """

    moisture: Optional[float] = None
    temperature: Optional[float] = None
    raining: Optional[bool] = None


@dataclass(frozen=True)
class Decision:
    proceed: bool
    reason: Optional[str] = None


PROCEED = Decision(proceed=True)


def evaluate(
    mode: str,
    conditions: Optional[ScheduleConditions],
    snapshot: SensorSnapshot,
) -> Decision:
    """
    Decide whether a due schedule should water. Clauses are checked in the
    order moisture, temperature, rain and the first failure is reported.
    Missing data for a configured clause counts as a failure.
    """
    if mode == "fixed" or conditions is None:
        return PROCEED

    if conditions.min_moisture is not None:
        if snapshot.moisture is None:
            return Decision(False, "moisture reading unavailable")
        if snapshot.moisture < conditions.min_moisture:
            return Decision(
                False,
                f"moisture {snapshot.moisture:.1f}% below minimum "
                f"{conditions.min_moisture:.1f}%",
            )

    if conditions.max_temperature is not None:
        if snapshot.temperature is None:
            return Decision(False, "temperature reading unavailable")
        if snapshot.temperature > conditions.max_temperature:
            return Decision(
                False,
                f"temperature {snapshot.temperature:.1f}C above maximum "
                f"{conditions.max_temperature:.1f}C",
            )

    if conditions.skip_if_raining:
        if snapshot.raining is None:
            return Decision(False, "rain status unavailable")
        if snapshot.raining:
            return Decision(False, "skipped because it is raining")

    return PROCEED
