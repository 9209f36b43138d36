"""
Zone orchestration: the single writer of valve state.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Set, Tuple
import logging

from ..hardware import BaseValveDriver
from ..notifications import ZONE_ERROR, NotificationHub
from .event_service import EventService
from .zone_registry import ZoneRegistry

logger = logging.getLogger(__name__)

ZONE_UNAVAILABLE = "zone unavailable"
IO_TIMEOUT = "communication timeout"
STOP_IN_PROGRESS = "cancelled by emergency stop"

# Why a zone closed; delivered to everyone waiting on the zone's open run.
EXPIRED = "expired"
CLOSED = "closed"
STOPPED = "stopped"
ERRORED = "error"

CLOSE_REASONS = {
    CLOSED: "closed manually",
    STOPPED: "interrupted by emergency stop",
    ERRORED: "zone error",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ZoneCommandResult:
    """
    Outcome of one open/close. Rejections are results, not exceptions.
    `closed` is set for successful opens and resolves with the close cause.
    """

    zone_id: str
    ok: bool
    reason: Optional[str] = None
    closed: Optional["asyncio.Future[str]"] = None


class ZoneController:
    """
    Owns every valve transition. Each zone has its own asyncio lock, at most
    one auto-close timer, and a generation counter so a timer that lost a race
    with a re-open, close or stop never acts. Blocking driver calls run in a
    worker thread bounded by `io_timeout`.
    """

    def __init__(
        self,
        registry: ZoneRegistry,
        driver: BaseValveDriver,
        events: EventService,
        notifier: Optional[NotificationHub] = None,
        io_timeout: float = 5.0,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.registry = registry
        self.driver = driver
        self.events = events
        self.notifier = notifier
        self.io_timeout = io_timeout
        self._clock = clock or _utcnow
        self._locks: Dict[str, asyncio.Lock] = {
            zone_id: asyncio.Lock() for zone_id in registry.ids()
        }
        self._pump_lock = asyncio.Lock()
        self._timers: Dict[str, asyncio.Task] = {}
        self._generation: Dict[str, int] = defaultdict(int)
        self._waiters: Dict[str, List["asyncio.Future[str]"]] = defaultdict(list)
        # (actor, schedule_id, mode) of whoever last opened the zone.
        self._owners: Dict[str, Tuple[str, Optional[str], str]] = {}
        self._stop_epoch = 0
        self._stopping = False
        # Zones whose open timed out; the relay may still have acted late.
        self._unconfirmed: Set[str] = set()

    def _require(self, zone_id: str) -> None:
        if zone_id not in self.registry:
            raise KeyError(f"Zone {zone_id} not found")

    def has_timer(self, zone_id: str) -> bool:
        task = self._timers.get(zone_id)
        return task is not None and not task.done()

    async def open(
        self,
        zone_id: str,
        duration_seconds: float,
        *,
        actor: str = "manual",
        schedule_id: Optional[str] = None,
        mode: str = "manual",
    ) -> ZoneCommandResult:
        """
        Open a zone for `duration_seconds`. Re-opening an open zone replaces its
        auto-close timer. Errored zones are rejected with ZONE_UNAVAILABLE.
        """
        self._require(zone_id)
        if duration_seconds <= 0:
            raise ValueError("duration_seconds must be positive")

        epoch = self._stop_epoch
        if self._stopping:
            return ZoneCommandResult(zone_id, False, STOP_IN_PROGRESS)

        async with self._locks[zone_id]:
            if self._stopping or epoch != self._stop_epoch:
                # A stop ran while this open was queued behind the lock.
                return ZoneCommandResult(zone_id, False, STOP_IN_PROGRESS)

            zone = self.registry.get(zone_id)
            if zone.health == "error":
                logger.warning("zone.open_rejected zone=%s actor=%s", zone_id, actor)
                return ZoneCommandResult(zone_id, False, ZONE_UNAVAILABLE)

            was_open = zone.valve_state == "open"
            self._invalidate_timer(zone_id)

            if not was_open:
                if not await self._drive(zone_id, True):
                    self._unconfirmed.add(zone_id)
                    return ZoneCommandResult(zone_id, False, IO_TIMEOUT)
                self.registry.apply_valve_state(zone_id, "open", self._clock())
                await self._sync_pump()

            self._owners[zone_id] = (actor, schedule_id, mode)
            self.events.log_actuation(
                action="OPEN",
                zone_id=zone_id,
                actor=actor,
                schedule_id=schedule_id,
                mode=mode,
                duration_minutes=round(duration_seconds / 60.0, 3),
                reason="extended" if was_open else None,
            )
            self._arm_timer(zone_id, duration_seconds)

            future: "asyncio.Future[str]" = asyncio.get_running_loop().create_future()
            self._waiters[zone_id].append(future)

        logger.info(
            "zone.open zone=%s actor=%s duration=%.1fs extended=%s",
            zone_id,
            actor,
            duration_seconds,
            was_open,
        )
        return ZoneCommandResult(zone_id, True, None, future)

    async def close(self, zone_id: str, *, actor: str = "manual") -> ZoneCommandResult:
        """
        Close a zone. Closing an already-closed zone is a successful no-op,
        unless an earlier open timed out, in which case the valve is commanded shut.
        """
        self._require(zone_id)
        async with self._locks[zone_id]:
            self._invalidate_timer(zone_id)
            if self.registry.get(zone_id).valve_state == "closed":
                if zone_id in self._unconfirmed:
                    ok = await self._confirm_closed(zone_id)
                    return ZoneCommandResult(zone_id, ok, None if ok else IO_TIMEOUT)
                return ZoneCommandResult(zone_id, True, "already closed")
            ok = await self._close_locked(zone_id, actor=actor, cause=CLOSED)
        return ZoneCommandResult(zone_id, ok, None if ok else IO_TIMEOUT)

    async def stop_all(self, *, actor: str = "manual") -> List[ZoneCommandResult]:
        """
        Close every zone regardless of state. Timers are invalidated before any
        valve is touched, and opens queued behind a zone lock are aborted.
        Every valve gets a close command; only zones recorded open log a CLOSE.
        """
        self._stopping = True
        self._stop_epoch += 1
        results: List[ZoneCommandResult] = []
        try:
            for zone_id in self.registry.ids():
                self._generation[zone_id] += 1
            for zone_id in sorted(self.registry.ids()):
                async with self._locks[zone_id]:
                    self._invalidate_timer(zone_id)
                    if self.registry.get(zone_id).valve_state == "open":
                        ok = await self._close_locked(zone_id, actor=actor, cause=STOPPED)
                    else:
                        ok = await self._confirm_closed(zone_id)
                    results.append(
                        ZoneCommandResult(zone_id, ok, None if ok else IO_TIMEOUT)
                    )
            await self._sync_pump()
        finally:
            self._stopping = False
        logger.warning("zone.stop_all actor=%s zones=%s", actor, len(results))
        return results

    async def set_health(self, zone_id: str, state: str) -> None:
        """
        Apply a health update from the external feed. An open zone that turns
        to error is closed and its runs are reported as errored.
        """
        self._require(zone_id)
        async with self._locks[zone_id]:
            zone = self.registry.get(zone_id)
            if zone.health == state:
                return
            self.registry.apply_health(zone_id, state, self._clock())
            logger.info("zone.health zone=%s from=%s to=%s", zone_id, zone.health, state)
            if state != "error":
                return
            self._emit_zone_error(zone_id, "health feed reported error")
            if zone.valve_state == "open":
                self._invalidate_timer(zone_id)
                owner = self._owners.get(zone_id, ("manual", None, "manual"))
                await self._close_locked(zone_id, actor=owner[0], cause=ERRORED)

    # ------------------------------------------------------------------
    # internals; everything below expects the zone lock to be held
    # ------------------------------------------------------------------

    def _invalidate_timer(self, zone_id: str) -> None:
        self._generation[zone_id] += 1
        task = self._timers.pop(zone_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    def _arm_timer(self, zone_id: str, seconds: float) -> None:
        generation = self._generation[zone_id]
        self._timers[zone_id] = asyncio.create_task(
            self._expire_after(zone_id, seconds, generation)
        )

    async def _expire_after(self, zone_id: str, seconds: float, generation: int) -> None:
        await asyncio.sleep(seconds)
        async with self._locks[zone_id]:
            if self._generation[zone_id] != generation:
                return
            self._timers.pop(zone_id, None)
            owner = self._owners.get(zone_id, ("manual", None, "manual"))
            await self._close_locked(zone_id, actor=owner[0], cause=EXPIRED)

    async def _confirm_closed(self, zone_id: str) -> bool:
        ok = await self._drive(zone_id, False)
        if ok:
            if zone_id in self._unconfirmed:
                logger.warning("zone.late_open_closed zone=%s", zone_id)
            self._unconfirmed.discard(zone_id)
        return ok

    async def _close_locked(self, zone_id: str, *, actor: str, cause: str) -> bool:
        zone = self.registry.get(zone_id)
        ok = await self._drive(zone_id, False)
        if ok:
            self._unconfirmed.discard(zone_id)
        now = self._clock()
        # The valve was commanded shut; a failed command leaves the zone in error.
        self.registry.apply_valve_state(zone_id, "closed", now)
        await self._sync_pump()

        owner_actor, schedule_id, mode = self._owners.pop(
            zone_id, ("manual", None, "manual")
        )
        if cause != EXPIRED:
            schedule_id, mode = None, "manual"
        opened_for = None
        if zone.last_opened_at is not None:
            opened_for = round((now - zone.last_opened_at).total_seconds() / 60.0, 3)
        if ok:
            self.events.log_actuation(
                action="CLOSE",
                zone_id=zone_id,
                actor=actor if cause != EXPIRED else owner_actor,
                schedule_id=schedule_id,
                mode=mode,
                duration_minutes=opened_for,
                reason=cause,
            )
        self._resolve_waiters(zone_id, cause if ok else ERRORED)
        logger.info("zone.close zone=%s actor=%s cause=%s ok=%s", zone_id, actor, cause, ok)
        return ok

    def _resolve_waiters(self, zone_id: str, cause: str) -> None:
        for future in self._waiters.pop(zone_id, []):
            if not future.done():
                future.set_result(cause)

    async def _drive(self, zone_id: str, is_open: bool) -> bool:
        try:
            await asyncio.wait_for(
                asyncio.to_thread(self.driver.set_valve_state, zone_id, is_open),
                timeout=self.io_timeout,
            )
            return True
        except asyncio.TimeoutError:
            logger.error(
                "zone.io_timeout zone=%s open=%s timeout=%.1fs",
                zone_id,
                is_open,
                self.io_timeout,
            )
            detail = IO_TIMEOUT
        except Exception as exc:  # driver fault; keep the engine running
            logger.exception("zone.io_error zone=%s open=%s", zone_id, is_open)
            detail = f"valve error: {exc}"
        self.registry.apply_health(zone_id, "error", self._clock())
        self._emit_zone_error(zone_id, detail)
        return False

    async def _sync_pump(self) -> None:
        async with self._pump_lock:
            wanted = bool(self.registry.open_zones())
            if wanted == self.registry.pump_on:
                return
            try:
                await asyncio.wait_for(
                    asyncio.to_thread(self.driver.set_pump_state, wanted),
                    timeout=self.io_timeout,
                )
            except Exception:
                logger.exception("pump.command_failed on=%s", wanted)
                return
            self.registry.apply_pump(wanted)
            logger.info("pump.state on=%s", wanted)

    def _emit_zone_error(self, zone_id: str, detail: str) -> None:
        if self.notifier is not None:
            self.notifier.emit(ZONE_ERROR, {"zone_id": zone_id, "detail": detail})
