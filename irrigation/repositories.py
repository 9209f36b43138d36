"""
Data access layer for SQLite.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence
import json

from .database import get_connection


def _utc_iso(value: datetime) -> str:
    """Store every instant as UTC so lexical ordering matches time ordering."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _decode_schedule_row(row: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not row:
        return row
    row["Days"] = json.loads(row.get("Days") or "[]")
    row["Zones"] = json.loads(row.get("Zones") or "[]")
    row["Enabled"] = bool(row.get("Enabled"))
    if row.get("SkipIfRaining") is not None:
        row["SkipIfRaining"] = bool(row["SkipIfRaining"])
    return row


def _decode_event_row(row: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not row:
        return row
    row["Zones"] = json.loads(row.get("Zones") or "[]")
    row["ZoneResults"] = json.loads(row.get("ZoneResults") or "{}")
    return row


# ---------------------------------------------------------------------------
# Zones
# ---------------------------------------------------------------------------


def list_zone_status() -> List[Dict[str, Any]]:
    """
    Return the persisted status row for every configured zone.
    """
    with get_connection() as conn:
        rows = conn.execute(
            "SELECT * FROM ZoneStatus ORDER BY ZoneId;"
        ).fetchall()
    return rows


def update_zone_status(
    zone_id: str,
    *,
    valve_state: Optional[str] = None,
    health: Optional[str] = None,
    last_opened_at: Optional[datetime] = None,
    moisture: Optional[float] = None,
    temperature: Optional[float] = None,
    reading_at: Optional[datetime] = None,
    updated_at: Optional[datetime] = None,
) -> None:
    # We build the SQL statement dynamically so that only provided fields are updated.
    assignments: List[str] = []
    params: List[Any] = []

    if valve_state is not None:
        assignments.append("ValveState = ?")
        params.append(valve_state)
    if health is not None:
        assignments.append("Health = ?")
        params.append(health)
    if last_opened_at is not None:
        assignments.append("LastOpenedAt = ?")
        params.append(_utc_iso(last_opened_at))
    if moisture is not None:
        assignments.append("Moisture = ?")
        params.append(moisture)
    if temperature is not None:
        assignments.append("Temperature = ?")
        params.append(temperature)
    if reading_at is not None:
        assignments.append("ReadingAt = ?")
        params.append(_utc_iso(reading_at))

    if not assignments:
        # Nothing to update; exit early instead of sending an empty UPDATE statement.
        return

    assignments.append("UpdatedAt = ?")
    params.append(_utc_iso(updated_at) if updated_at else _utcnow_iso())
    params.append(zone_id)

    with get_connection() as conn:
        conn.execute(
            f"UPDATE ZoneStatus SET {', '.join(assignments)} WHERE ZoneId = ?;",
            params,
        )
        conn.commit()


# ---------------------------------------------------------------------------
# Schedules
# ---------------------------------------------------------------------------


def list_schedules(enabled_only: bool = False) -> List[Dict[str, Any]]:
    """
    Return schedule rows ordered by time of day.
    """
    query = "SELECT * FROM Schedules"
    if enabled_only:
        query += " WHERE Enabled = 1"
    query += " ORDER BY TimeOfDay ASC, CreatedAt ASC;"
    with get_connection() as conn:
        rows = conn.execute(query).fetchall()
    return [_decode_schedule_row(row) for row in rows]


def get_schedule(schedule_id: str) -> Optional[Dict[str, Any]]:
    with get_connection() as conn:
        row = conn.execute(
            "SELECT * FROM Schedules WHERE Id = ?;", (schedule_id,)
        ).fetchone()
    return _decode_schedule_row(row)


def insert_schedule(
    *,
    schedule_id: str,
    name: str,
    description: Optional[str],
    time_of_day: str,
    duration_minutes: int,
    days: Sequence[int],
    zones: Sequence[str],
    enabled: bool,
    mode: str,
    min_moisture: Optional[float],
    max_temperature: Optional[float],
    skip_if_raining: Optional[bool],
    created_at: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Persist a new schedule and return the stored row.
    """
    stamp = _utc_iso(created_at) if created_at else _utcnow_iso()
    with get_connection() as conn:
        conn.execute(
            """
            INSERT INTO Schedules (
                Id,
                Name,
                Description,
                TimeOfDay,
                DurationMinutes,
                Days,
                Zones,
                Enabled,
                Mode,
                MinMoisture,
                MaxTemperature,
                SkipIfRaining,
                CreatedAt,
                UpdatedAt
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (
                schedule_id,
                name,
                description,
                time_of_day,
                duration_minutes,
                json.dumps(sorted(set(days))),
                json.dumps(list(zones)),
                1 if enabled else 0,
                mode,
                min_moisture,
                max_temperature,
                None if skip_if_raining is None else int(skip_if_raining),
                stamp,
                stamp,
            ),
        )
        conn.commit()
    row = get_schedule(schedule_id)
    if not row:
        raise RuntimeError(f"Schedule {schedule_id} missing after insert")
    return row


def replace_schedule(schedule_id: str, fields: Dict[str, Any]) -> None:
    """
    Overwrite the definition columns of an existing schedule.
    """
    with get_connection() as conn:
        conn.execute(
            """
            UPDATE Schedules
            SET Name = ?,
                Description = ?,
                TimeOfDay = ?,
                DurationMinutes = ?,
                Days = ?,
                Zones = ?,
                Enabled = ?,
                Mode = ?,
                MinMoisture = ?,
                MaxTemperature = ?,
                SkipIfRaining = ?,
                UpdatedAt = ?
            WHERE Id = ?;
            """,
            (
                fields["name"],
                fields.get("description"),
                fields["time_of_day"],
                fields["duration_minutes"],
                json.dumps(sorted(set(fields["days"]))),
                json.dumps(list(fields["zones"])),
                1 if fields["enabled"] else 0,
                fields["mode"],
                fields.get("min_moisture"),
                fields.get("max_temperature"),
                None
                if fields.get("skip_if_raining") is None
                else int(fields["skip_if_raining"]),
                _utcnow_iso(),
                schedule_id,
            ),
        )
        conn.commit()


def set_schedules_enabled(
    enabled: bool, schedule_ids: Optional[Iterable[str]] = None
) -> int:
    """
    Flip the Enabled flag for the given schedules (or all of them).
    Returns the number of rows touched.
    """
    params: List[Any] = [1 if enabled else 0, _utcnow_iso()]
    query = "UPDATE Schedules SET Enabled = ?, UpdatedAt = ?"
    if schedule_ids is not None:
        ids = list(schedule_ids)
        if not ids:
            return 0
        query += f" WHERE Id IN ({','.join('?' for _ in ids)})"
        params.extend(ids)
    with get_connection() as conn:
        cursor = conn.execute(query + ";", params)
        conn.commit()
        return cursor.rowcount


def delete_schedule(schedule_id: str) -> int:
    """
    Remove a schedule together with the pending events it owns.
    Returns the number of pending events removed.
    """
    with get_connection() as conn:
        cursor = conn.execute(
            "DELETE FROM EventLog WHERE ScheduleId = ? AND Status = 'pending';",
            (schedule_id,),
        )
        removed = cursor.rowcount
        conn.execute("DELETE FROM Schedules WHERE Id = ?;", (schedule_id,))
        conn.commit()
    return removed


# ---------------------------------------------------------------------------
# Event log
# ---------------------------------------------------------------------------


def record_event(
    *,
    schedule_id: Optional[str],
    mode: str,
    actor: str,
    action: str,
    scheduled_time: datetime,
    duration_minutes: Optional[float],
    zones: Sequence[str],
    status: str,
    reason: Optional[str] = None,
    started_at: Optional[datetime] = None,
    ended_at: Optional[datetime] = None,
) -> int:
    """
    Append a row to EventLog and return its id. Zone lists are stored as JSON
    so the snapshot taken at dispatch time is frozen with the row.
    """
    with get_connection() as conn:
        cursor = conn.execute(
            """
            INSERT INTO EventLog (
                CreatedAt,
                ScheduleId,
                Mode,
                Actor,
                Action,
                ScheduledTime,
                DurationMinutes,
                Zones,
                ZoneResults,
                Status,
                Reason,
                StartedAt,
                EndedAt
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, '{}', ?, ?, ?, ?);
            """,
            (
                _utcnow_iso(),
                schedule_id,
                mode,
                actor,
                action,
                _utc_iso(scheduled_time),
                duration_minutes,
                json.dumps(list(zones)),
                status,
                reason,
                _utc_iso(started_at) if started_at else None,
                _utc_iso(ended_at) if ended_at else None,
            ),
        )
        conn.commit()
        return int(cursor.lastrowid)


def get_event(event_id: int) -> Optional[Dict[str, Any]]:
    with get_connection() as conn:
        row = conn.execute(
            "SELECT * FROM EventLog WHERE Id = ?;", (event_id,)
        ).fetchone()
    return _decode_event_row(row)


def update_event(
    event_id: int,
    *,
    status: Optional[str] = None,
    reason: Optional[str] = None,
    zone_results: Optional[Dict[str, Any]] = None,
    started_at: Optional[datetime] = None,
    ended_at: Optional[datetime] = None,
    expected_status: Optional[str] = None,
) -> bool:
    """
    Apply a status transition. When expected_status is given the update only
    lands if the row is still in that state (compare-and-set); returns whether
    a row was changed.
    """
    assignments: List[str] = []
    params: List[Any] = []

    if status is not None:
        assignments.append("Status = ?")
        params.append(status)
    if reason is not None:
        assignments.append("Reason = ?")
        params.append(reason)
    if zone_results is not None:
        assignments.append("ZoneResults = ?")
        params.append(json.dumps(zone_results))
    if started_at is not None:
        assignments.append("StartedAt = ?")
        params.append(_utc_iso(started_at))
    if ended_at is not None:
        assignments.append("EndedAt = ?")
        params.append(_utc_iso(ended_at))

    if not assignments:
        return False

    query = f"UPDATE EventLog SET {', '.join(assignments)} WHERE Id = ?"
    params.append(event_id)
    if expected_status is not None:
        query += " AND Status = ?"
        params.append(expected_status)

    with get_connection() as conn:
        cursor = conn.execute(query + ";", params)
        conn.commit()
        return cursor.rowcount > 0


def fetch_events(
    *,
    schedule_id: Optional[str] = None,
    zone_id: Optional[str] = None,
    statuses: Optional[Iterable[str]] = None,
    actions: Optional[Iterable[str]] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    limit: int = 500,
) -> List[Dict[str, Any]]:
    """
    Query the event log with optional filters (schedule, zone, status, action,
    time window, max rows). Newest first.
    """
    clauses: List[str] = []
    params: List[Any] = []

    if schedule_id:
        clauses.append("ScheduleId = ?")
        params.append(schedule_id)
    if zone_id:
        # Zones is a JSON array of strings; match the quoted id.
        clauses.append("Zones LIKE ?")
        params.append(f'%{json.dumps(zone_id)}%')
    if statuses:
        status_list = list(statuses)
        clauses.append(f"Status IN ({','.join('?' for _ in status_list)})")
        params.extend(status_list)
    if actions:
        action_list = list(actions)
        clauses.append(f"Action IN ({','.join('?' for _ in action_list)})")
        params.extend(action_list)
    if since:
        clauses.append("ScheduledTime >= ?")
        params.append(_utc_iso(since))
    if until:
        clauses.append("ScheduledTime <= ?")
        params.append(_utc_iso(until))

    # Combine optional filters into a single WHERE clause.
    where_clause = f"WHERE {' AND '.join(clauses)}" if clauses else ""

    query = f"""
        SELECT *
        FROM EventLog
        {where_clause}
        ORDER BY ScheduledTime DESC, Id DESC
        LIMIT ?
    """
    params.append(limit)

    with get_connection() as conn:
        rows = conn.execute(query, params).fetchall()

    return [_decode_event_row(row) for row in rows]
