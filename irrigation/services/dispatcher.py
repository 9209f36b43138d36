"""
Execution dispatcher: turns due schedules into zone commands.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple
import logging

from ..notifications import SCHEDULE_FIRED, SCHEDULE_SKIPPED, NotificationHub
from ..schemas import EventLogModel, ScheduleModel
from .conditions import evaluate
from .event_service import EventService
from .recurrence import next_execution
from .run_tracker import RunTracker
from .schedule_service import ScheduleService
from .sensor_feed import SensorFeed
from .zone_controller import ZoneCommandResult, ZoneController

logger = logging.getLogger(__name__)

# Upper bound on a single sleep so clock adjustments are picked up.
MAX_SLEEP_SECONDS = 300.0

# Smallest step past a fired slot; guarantees the same slot is never chosen again.
_AFTER_SLOT = timedelta(microseconds=1)


@dataclass
class _Command:
    kind: str  # "wake" | "run_now" | "stop"
    schedule_id: Optional[str] = None
    reply: Optional["asyncio.Future[EventLogModel]"] = None


class Dispatcher:
    """
    Single control loop. It sleeps until the earliest due time across enabled
    schedules or until a command arrives on its queue, then processes every
    due schedule one after another. Zone commands for one schedule are issued
    concurrently; the ZoneController serialises per zone.
    """

    def __init__(
        self,
        schedules: ScheduleService,
        controller: ZoneController,
        events: EventService,
        sensors: SensorFeed,
        tracker: RunTracker,
        notifier: NotificationHub,
        clock: Callable[[], datetime],
        minute_seconds: float = 60.0,
    ) -> None:
        self.schedules = schedules
        self.controller = controller
        self.events = events
        self.sensors = sensors
        self.tracker = tracker
        self.notifier = notifier
        self.minute_seconds = minute_seconds
        self._clock = clock
        self._queue: Optional["asyncio.Queue[_Command]"] = None
        self._active: Dict[str, ScheduleModel] = {}
        self._next_due: Dict[str, datetime] = {}
        self._signatures: Dict[str, Tuple[str, Tuple[int, ...]]] = {}
        schedules.add_listener(self.wake)

    @property
    def running(self) -> bool:
        return self._queue is not None

    # ------------------------------------------------------------------
    # due-time bookkeeping
    # ------------------------------------------------------------------

    def refresh(self, now: Optional[datetime] = None) -> None:
        """
        Reload enabled schedules from the store. A schedule whose time and days
        did not change keeps its cached due time so a slot that already fired
        is not picked again.
        """
        now = now or self._clock()
        active: Dict[str, ScheduleModel] = {}
        next_due: Dict[str, datetime] = {}
        signatures: Dict[str, Tuple[str, Tuple[int, ...]]] = {}
        for schedule in self.schedules.list_schedules(enabled_only=True):
            signature = (schedule.time_of_day, tuple(schedule.days))
            due = self._next_due.get(schedule.id)
            if due is None or self._signatures.get(schedule.id) != signature:
                due = next_execution(schedule.time_of_day, schedule.days, now)
            if due is None:
                # Empty day set: never dispatched.
                continue
            active[schedule.id] = schedule
            next_due[schedule.id] = due
            signatures[schedule.id] = signature
        self._active = active
        self._next_due = next_due
        self._signatures = signatures
        logger.debug("dispatcher.refresh schedules=%s", len(active))

    def next_due_at(self) -> Optional[datetime]:
        return min(self._next_due.values()) if self._next_due else None

    def _seconds_until_next_due(self) -> Optional[float]:
        due = self.next_due_at()
        if due is None:
            return None
        remaining = (due - self._clock()).total_seconds()
        return min(max(remaining, 0.0), MAX_SLEEP_SECONDS)

    # ------------------------------------------------------------------
    # dispatch
    # ------------------------------------------------------------------

    async def tick(self, now: Optional[datetime] = None) -> List[EventLogModel]:
        """
        Dispatch every schedule whose due time has arrived, earliest first.
        """
        now = now or self._clock()
        due = sorted(
            (when, schedule_id)
            for schedule_id, when in self._next_due.items()
            if when <= now
        )
        fired: List[EventLogModel] = []
        for when, schedule_id in due:
            schedule = self._active.get(schedule_id)
            if schedule is None:
                continue
            try:
                fired.append(await self.dispatch(schedule, when))
            except Exception:
                # One broken schedule must not stall the others.
                logger.exception("dispatch.error schedule=%s", schedule_id)
            following = next_execution(
                schedule.time_of_day, schedule.days, max(now, when) + _AFTER_SLOT
            )
            if following is None:
                self._next_due.pop(schedule_id, None)
            else:
                self._next_due[schedule_id] = following
        return fired

    async def dispatch(
        self,
        schedule: ScheduleModel,
        scheduled_time: datetime,
        *,
        check_conditions: bool = True,
    ) -> EventLogModel:
        """
        Run one execution attempt: pending event, condition gate, then either
        skip or open every zone in the snapshot.
        """
        event = self.events.create_pending(
            schedule_id=schedule.id,
            mode=schedule.mode,
            zones=schedule.zones,
            duration_minutes=schedule.duration_minutes,
            scheduled_time=scheduled_time,
        )

        if check_conditions:
            snapshot = self.sensors.snapshot(event.zones)
            decision = evaluate(schedule.mode, schedule.conditions, snapshot)
            if not decision.proceed:
                event = self.events.mark_skipped(event.id, decision.reason or "skipped")
                logger.info(
                    "dispatch.skipped schedule=%s event=%s reason=%s",
                    schedule.id,
                    event.id,
                    event.reason,
                )
                self.notifier.emit(
                    SCHEDULE_SKIPPED,
                    {
                        "schedule_id": schedule.id,
                        "schedule_name": schedule.name,
                        "event_id": event.id,
                        "reason": event.reason,
                    },
                )
                return event

        # Persist running before any valve moves.
        event = self.events.mark_running(event.id)
        self.notifier.emit(
            SCHEDULE_FIRED,
            {
                "schedule_id": schedule.id,
                "schedule_name": schedule.name,
                "event_id": event.id,
                "zones": event.zones,
                "duration_minutes": schedule.duration_minutes,
            },
        )
        logger.info(
            "dispatch.fired schedule=%s event=%s zones=%s duration=%sm",
            schedule.id,
            event.id,
            ",".join(event.zones),
            schedule.duration_minutes,
        )

        seconds = schedule.duration_minutes * self.minute_seconds
        outcomes = await asyncio.gather(
            *(
                self.controller.open(
                    zone_id,
                    seconds,
                    actor=schedule.id,
                    schedule_id=schedule.id,
                    mode=schedule.mode,
                )
                for zone_id in event.zones
            ),
            return_exceptions=True,
        )
        results: Dict[str, ZoneCommandResult] = {}
        for zone_id, outcome in zip(event.zones, outcomes):
            if isinstance(outcome, KeyError):
                # Zone removed from configuration after the schedule was saved.
                results[zone_id] = ZoneCommandResult(zone_id, False, "unknown zone")
            elif isinstance(outcome, BaseException):
                logger.error("dispatch.open_error zone=%s error=%s", zone_id, outcome)
                results[zone_id] = ZoneCommandResult(zone_id, False, str(outcome))
            else:
                results[zone_id] = outcome
        self.tracker.start(event.id, results)
        return event

    async def run_now(self, schedule_id: str) -> EventLogModel:
        """
        Dispatch a schedule immediately, bypassing its due time and the
        condition gate. Routed through the loop when it is running.
        """
        if self._queue is None:
            return await self._run_now(schedule_id)
        reply: "asyncio.Future[EventLogModel]" = asyncio.get_running_loop().create_future()
        self._queue.put_nowait(_Command("run_now", schedule_id, reply))
        return await reply

    async def _run_now(self, schedule_id: str) -> EventLogModel:
        schedule = self.schedules.get_schedule(schedule_id)
        logger.info("dispatch.run_now schedule=%s", schedule_id)
        return await self.dispatch(schedule, self._clock(), check_conditions=False)

    # ------------------------------------------------------------------
    # loop
    # ------------------------------------------------------------------

    def wake(self) -> None:
        """Ask the loop to reload schedules (edit, enable, disable, delete)."""
        if self._queue is not None:
            self._queue.put_nowait(_Command("wake"))

    async def stop(self) -> None:
        if self._queue is not None:
            self._queue.put_nowait(_Command("stop"))

    async def run(self) -> None:
        self._queue = asyncio.Queue()
        self.refresh()
        logger.info(
            "dispatcher.started schedules=%s next_due=%s",
            len(self._active),
            self.next_due_at(),
        )
        # One get() stays pending across timeouts so no command is lost.
        getter: Optional["asyncio.Task[_Command]"] = None
        try:
            while True:
                timeout = self._seconds_until_next_due()
                if getter is None:
                    getter = asyncio.ensure_future(self._queue.get())
                done, _ = await asyncio.wait({getter}, timeout=timeout)
                command: Optional[_Command] = None
                if getter in done:
                    command = getter.result()
                    getter = None

                if command is not None and command.kind == "stop":
                    break
                try:
                    if command is not None and command.kind == "wake":
                        self.refresh()
                    elif command is not None and command.kind == "run_now":
                        await self._reply_run_now(command)
                    await self.tick()
                except Exception as exc:  # log and keep the loop alive
                    logger.exception("dispatcher.loop_error: %s", exc)
        finally:
            leftover: List[_Command] = []
            if getter is not None:
                if getter.done() and not getter.cancelled():
                    leftover.append(getter.result())
                else:
                    getter.cancel()
            queue, self._queue = self._queue, None
            while not queue.empty():
                leftover.append(queue.get_nowait())
            for pending in leftover:
                if pending.reply is not None and not pending.reply.done():
                    pending.reply.set_exception(RuntimeError("dispatcher stopped"))
            logger.info("dispatcher.stopped")

    async def _reply_run_now(self, command: _Command) -> None:
        reply = command.reply
        try:
            event = await self._run_now(command.schedule_id or "")
        except Exception as exc:
            if reply is not None and not reply.done():
                reply.set_exception(exc)
            return
        if reply is not None and not reply.done():
            reply.set_result(event)
