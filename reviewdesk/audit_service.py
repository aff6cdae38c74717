"""Audit service: append-only activity log for every workflow action.

Assignments, invitation responses, decisions, reviews and status changes are
recorded here. Events are immutable once written.
"""

from __future__ import annotations

import logging
from typing import Any

import aiosqlite

from reviewdesk.database import from_json, to_json
from reviewdesk.models import AuditAction, AuditEvent

logger = logging.getLogger("reviewdesk.audit")


async def log_event(
    db: aiosqlite.Connection,
    action: AuditAction,
    actor_id: str = "",
    target_id: str = "",
    target_type: str = "manuscript",
    details: dict[str, Any] | None = None,
) -> AuditEvent:
    """Write an immutable audit event."""
    event = AuditEvent(
        action=action,
        actor_id=actor_id,
        target_id=target_id,
        target_type=target_type,
        details=details or {},
    )
    await db.execute(
        """
        INSERT INTO audit_events (event_id, action, actor_id, target_id, target_type, details, timestamp)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (
            event.event_id,
            event.action.value,
            event.actor_id,
            event.target_id,
            event.target_type,
            to_json(event.details),
            event.timestamp.isoformat(),
        ),
    )
    await db.commit()
    return event


async def log_event_best_effort(
    db: aiosqlite.Connection,
    action: AuditAction,
    actor_id: str = "",
    target_id: str = "",
    target_type: str = "manuscript",
    details: dict[str, Any] | None = None,
) -> AuditEvent | None:
    """Audit write that follows an already committed change and must not fail it."""
    try:
        return await log_event(db, action, actor_id, target_id, target_type, details)
    except aiosqlite.Error:
        logger.warning("Could not record %s for %s", action.value, target_id, exc_info=True)
        return None


def _row_to_event(row: aiosqlite.Row) -> dict[str, Any]:
    d = dict(row)
    d["details"] = from_json(d.get("details", "{}"))
    return d


async def get_events_for_target(
    db: aiosqlite.Connection,
    target_id: str,
    limit: int = 100,
) -> list[dict[str, Any]]:
    """Activity on one manuscript or user, newest first."""
    async with db.execute(
        """
        SELECT * FROM audit_events
        WHERE target_id = ?
        ORDER BY timestamp DESC
        LIMIT ?
        """,
        (target_id, limit),
    ) as cursor:
        rows = await cursor.fetchall()
    return [_row_to_event(row) for row in rows]


async def get_events_by_actor(
    db: aiosqlite.Connection,
    actor_id: str,
    action: AuditAction | None = None,
    limit: int = 100,
) -> list[dict[str, Any]]:
    """A user's own history, e.g. every review a reviewer has filed."""
    if action:
        query = """
            SELECT * FROM audit_events
            WHERE actor_id = ? AND action = ?
            ORDER BY timestamp DESC LIMIT ?
        """
        params: tuple[Any, ...] = (actor_id, action.value, limit)
    else:
        query = "SELECT * FROM audit_events WHERE actor_id = ? ORDER BY timestamp DESC LIMIT ?"
        params = (actor_id, limit)

    async with db.execute(query, params) as cursor:
        rows = await cursor.fetchall()
    return [_row_to_event(row) for row in rows]
