"""Deadline settings: admin-editable defaults, falling back to configuration."""

from __future__ import annotations

from datetime import datetime, timezone

import aiosqlite

from reviewdesk.audit_service import log_event_best_effort
from reviewdesk.config import settings
from reviewdesk.errors import StorageFailure
from reviewdesk.models import AuditAction, DeadlineSettings

_SETTINGS_ID = "deadlines"


async def get_deadline_settings(db: aiosqlite.Connection) -> DeadlineSettings:
    """Saved settings if an admin stored any, otherwise the configured defaults."""
    try:
        async with db.execute(
            """
            SELECT invitation_days, review_days, re_review_days, revision_days, finalization_days
            FROM deadline_settings WHERE settings_id = ?
            """,
            (_SETTINGS_ID,),
        ) as cursor:
            row = await cursor.fetchone()
    except aiosqlite.Error as exc:
        raise StorageFailure(f"Failed to read deadline settings: {exc}") from exc
    if row is None:
        return settings.deadlines.as_settings()
    return DeadlineSettings(**dict(row))


async def save_deadline_settings(
    db: aiosqlite.Connection,
    payload: DeadlineSettings,
    updated_by: str,
) -> DeadlineSettings:
    now = datetime.now(timezone.utc).isoformat()
    await db.execute(
        """
        INSERT INTO deadline_settings (
            settings_id, invitation_days, review_days, re_review_days,
            revision_days, finalization_days, updated_by, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(settings_id) DO UPDATE SET
            invitation_days = excluded.invitation_days,
            review_days = excluded.review_days,
            re_review_days = excluded.re_review_days,
            revision_days = excluded.revision_days,
            finalization_days = excluded.finalization_days,
            updated_by = excluded.updated_by,
            updated_at = excluded.updated_at
        """,
        (
            _SETTINGS_ID,
            payload.invitation_days,
            payload.review_days,
            payload.re_review_days,
            payload.revision_days,
            payload.finalization_days,
            updated_by,
            now,
        ),
    )
    await db.commit()
    await log_event_best_effort(
        db,
        AuditAction.DEADLINE_SETTINGS_UPDATED,
        actor_id=updated_by,
        target_id=_SETTINGS_ID,
        target_type="settings",
        details=payload.model_dump(),
    )
    return payload
