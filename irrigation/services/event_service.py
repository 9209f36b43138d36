"""
Service layer for the execution event log.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence
import logging
import time

from .. import repositories
from ..schemas import EventLogModel

logger = logging.getLogger(__name__)

# Lifecycle edges. Anything absent is illegal, including every edge out of a
# terminal state and every edge back into pending.
_ALLOWED_TRANSITIONS: Dict[str, frozenset] = {
    "pending": frozenset({"running", "skipped"}),
    "running": frozenset({"completed", "failed"}),
}

TERMINAL_STATUSES = frozenset({"completed", "skipped", "failed"})


class EventTransitionError(ValueError):
    """Raised when an event is asked to make an illegal status change."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EventService:
    """
    Thin wrapper around repository helpers so the dispatcher, controller and
    FastAPI endpoints work with strongly-typed Pydantic models and a single
    place enforces the event lifecycle.
    """

    def get_event(self, event_id: int) -> EventLogModel:
        row = repositories.get_event(event_id)
        if not row:
            raise KeyError(f"Event {event_id} not found")
        return EventLogModel.model_validate(row)

    def create_pending(
        self,
        *,
        schedule_id: Optional[str],
        mode: str,
        zones: Sequence[str],
        duration_minutes: float,
        scheduled_time: datetime,
        actor: Optional[str] = None,
    ) -> EventLogModel:
        """
        Record a new execution attempt. The zone list is copied into the row so
        later schedule edits never change what this attempt targeted.
        """
        event_id = repositories.record_event(
            schedule_id=schedule_id,
            mode=mode,
            actor=actor or schedule_id or "manual",
            action="RUN",
            scheduled_time=scheduled_time,
            duration_minutes=duration_minutes,
            zones=list(zones),
            status="pending",
        )
        return self.get_event(event_id)

    def transition(
        self,
        event_id: int,
        new_status: str,
        *,
        reason: Optional[str] = None,
        zone_results: Optional[Dict[str, Dict[str, Optional[str]]]] = None,
    ) -> EventLogModel:
        current = self.get_event(event_id)
        allowed = _ALLOWED_TRANSITIONS.get(current.status, frozenset())
        if new_status not in allowed:
            raise EventTransitionError(
                f"Event {event_id} cannot move from {current.status} to {new_status}"
            )

        now = _utcnow()
        changed = repositories.update_event(
            event_id,
            status=new_status,
            reason=reason,
            zone_results=zone_results,
            started_at=now if new_status == "running" else None,
            ended_at=now if new_status in TERMINAL_STATUSES else None,
            expected_status=current.status,
        )
        if not changed:
            # Someone else moved the row first; re-read and report.
            latest = self.get_event(event_id)
            raise EventTransitionError(
                f"Event {event_id} changed to {latest.status} concurrently"
            )
        logger.info(
            "events.transition id=%s from=%s to=%s reason=%s",
            event_id,
            current.status,
            new_status,
            reason or "-",
        )
        return self.get_event(event_id)

    def mark_running(self, event_id: int) -> EventLogModel:
        event = self.get_event(event_id)
        return self.transition(
            event_id,
            "running",
            zone_results={
                zone: {"status": "running", "reason": None} for zone in event.zones
            },
        )

    def mark_skipped(self, event_id: int, reason: str) -> EventLogModel:
        return self.transition(event_id, "skipped", reason=reason)

    def record_zone_results(
        self, event_id: int, zone_results: Dict[str, Dict[str, Optional[str]]]
    ) -> None:
        """
        Update per-zone progress of a running event without changing its status.
        """
        repositories.update_event(
            event_id, zone_results=zone_results, expected_status="running"
        )

    def finish(
        self, event_id: int, zone_results: Dict[str, Dict[str, Optional[str]]]
    ) -> EventLogModel:
        """
        Close a running event. It completes only when every zone completed;
        otherwise it fails with the first failing zone's reason.
        """
        event = self.get_event(event_id)
        failure: Optional[str] = None
        for zone in event.zones:
            outcome = zone_results.get(zone)
            if outcome is None or outcome.get("status") != "completed":
                detail = (outcome or {}).get("reason") or "did not complete"
                failure = f"{zone}: {detail}"
                break

        if failure is None:
            return self.transition(event_id, "completed", zone_results=zone_results)
        return self.transition(
            event_id, "failed", reason=failure, zone_results=zone_results
        )

    def log_actuation(
        self,
        *,
        action: str,
        zone_id: str,
        actor: str,
        schedule_id: Optional[str],
        mode: str,
        duration_minutes: Optional[float] = None,
        reason: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> int:
        """
        Append an OPEN/CLOSE entry for a single valve.
        """
        stamp = timestamp or _utcnow()
        return repositories.record_event(
            schedule_id=schedule_id,
            mode=mode,
            actor=actor,
            action=action,
            scheduled_time=stamp,
            duration_minutes=duration_minutes,
            zones=[zone_id],
            status="completed",
            reason=reason,
            started_at=stamp,
            ended_at=stamp,
        )

    def recover_interrupted(self) -> int:
        """
        Resolve events a previous process left unfinished: pending ones are
        skipped, running ones failed. Returns how many rows were resolved.
        """
        resolved = 0
        rows = repositories.fetch_events(
            statuses=["pending", "running"], actions=["RUN"], limit=10000
        )
        for row in rows:
            event = EventLogModel.model_validate(row)
            target = "skipped" if event.status == "pending" else "failed"
            try:
                self.transition(event.id, target, reason="interrupted by restart")
                resolved += 1
            except EventTransitionError:
                continue
        if resolved:
            logger.warning("events.recovered count=%s", resolved)
        return resolved

    def list_events(
        self,
        *,
        schedule_id: Optional[str] = None,
        zone_id: Optional[str] = None,
        statuses: Optional[Iterable[str]] = None,
        actions: Optional[Iterable[str]] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 500,
    ) -> List[EventLogModel]:
        """
        Retrieve recent events (optionally filtered) as Pydantic models.
        """
        start_time = time.perf_counter()
        rows = repositories.fetch_events(
            schedule_id=schedule_id,
            zone_id=zone_id,
            statuses=statuses,
            actions=actions,
            since=since,
            until=until,
            limit=limit,
        )
        duration = time.perf_counter() - start_time
        logger.info(
            "events.list schedule=%s zone=%s limit=%s rows=%s duration=%.3fs",
            schedule_id or "*",
            zone_id or "*",
            limit,
            len(rows),
            duration,
        )
        return [EventLogModel.model_validate(row) for row in rows]
