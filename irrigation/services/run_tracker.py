"""
Follows running RUN events until every zone they opened has closed.
"""

from __future__ import annotations

import asyncio
from typing import Dict, Optional, Set
import logging

from .event_service import EventService
from .zone_controller import CLOSE_REASONS, EXPIRED, ZoneCommandResult

logger = logging.getLogger(__name__)


class RunTracker:
    """
    One background task per running event. The task waits on the close
    futures handed out by the ZoneController and then completes or fails the
    event. Zones rejected up front are recorded as failed immediately while
    the others keep running.
    """

    def __init__(self, events: EventService) -> None:
        self.events = events
        self._tasks: Set[asyncio.Task] = set()

    @property
    def active(self) -> int:
        return len(self._tasks)

    def start(
        self, event_id: int, results: Dict[str, ZoneCommandResult]
    ) -> asyncio.Task:
        task = asyncio.create_task(self._follow(event_id, results))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _follow(
        self, event_id: int, results: Dict[str, ZoneCommandResult]
    ) -> None:
        outcomes: Dict[str, Dict[str, Optional[str]]] = {}
        for zone_id, result in results.items():
            if result.ok:
                outcomes[zone_id] = {"status": "running", "reason": None}
            else:
                outcomes[zone_id] = {"status": "failed", "reason": result.reason}
        self.events.record_zone_results(event_id, dict(outcomes))

        for zone_id, result in results.items():
            if not result.ok or result.closed is None:
                continue
            cause = await result.closed
            if cause == EXPIRED:
                outcomes[zone_id] = {"status": "completed", "reason": None}
            else:
                outcomes[zone_id] = {
                    "status": "failed",
                    "reason": CLOSE_REASONS.get(cause, cause),
                }

        event = self.events.finish(event_id, outcomes)
        logger.info(
            "run.finished event=%s status=%s reason=%s",
            event_id,
            event.status,
            event.reason or "-",
        )

    async def wait_all(self, timeout: Optional[float] = None) -> None:
        """Wait for every tracked event to settle."""
        if self._tasks:
            await asyncio.wait(set(self._tasks), timeout=timeout)

    async def cancel_all(self) -> None:
        tasks = set(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
