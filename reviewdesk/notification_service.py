"""Notification service: in-app notifications and the status message table.

``notify`` is fire-and-forget: delivery failures are logged and swallowed so
they never block the workflow write that triggered them.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable

import aiosqlite

from reviewdesk.database import from_json, to_json
from reviewdesk.models import ManuscriptStatus, Notification, NotificationType

logger = logging.getLogger("reviewdesk.notifications")

STATUS_MESSAGES: dict[ManuscriptStatus, str] = {
    ManuscriptStatus.PENDING: "Your manuscript has been submitted and is pending review.",
    ManuscriptStatus.ASSIGNING_PEER_REVIEWER: "Your manuscript is being matched with peer reviewers.",
    ManuscriptStatus.PEER_REVIEWER_ASSIGNED: "Peer reviewers have been invited to review your manuscript.",
    ManuscriptStatus.PEER_REVIEWER_REVIEWING: "Your manuscript is currently under peer review.",
    ManuscriptStatus.BACK_TO_ADMIN: "Peer review is complete and your manuscript is awaiting the editor's decision.",
    ManuscriptStatus.FOR_REVISION_MINOR: "The status of your manuscript has been updated to For Revision (Minor).",
    ManuscriptStatus.FOR_REVISION_MAJOR: "The status of your manuscript has been updated to For Revision (Major).",
    ManuscriptStatus.FOR_PUBLICATION: "Congratulations! Your manuscript has been accepted for publication.",
    ManuscriptStatus.REJECTED: "We regret to inform you that your manuscript has been rejected.",
    ManuscriptStatus.PEER_REVIEWER_REJECTED: "Your manuscript was not recommended by its peer reviewers.",
    ManuscriptStatus.NON_ACCEPTANCE: "Your submission was not accepted for peer review.",
}


def status_message(status: ManuscriptStatus) -> str:
    return STATUS_MESSAGES.get(status, f"The status of your manuscript has been updated to {status.value}.")


async def create_notifications(
    db: aiosqlite.Connection,
    user_ids: Iterable[str],
    type: NotificationType | str,
    title: str,
    message: str,
    metadata: dict[str, Any] | None = None,
) -> list[Notification]:
    """Insert one notification per distinct recipient."""
    kind = type.value if isinstance(type, NotificationType) else type
    created = [
        Notification(user_id=uid, type=kind, title=title, message=message, metadata=metadata or {})
        for uid in dict.fromkeys(u for u in user_ids if u)
    ]
    if not created:
        return []
    await db.executemany(
        """
        INSERT INTO notifications (notification_id, user_id, type, title, message, metadata, is_read, created_at)
        VALUES (?, ?, ?, ?, ?, ?, 0, ?)
        """,
        [
            (n.notification_id, n.user_id, n.type, n.title, n.message, to_json(n.metadata), n.created_at.isoformat())
            for n in created
        ],
    )
    await db.commit()
    return created


async def notify(
    db: aiosqlite.Connection,
    user_ids: Iterable[str],
    type: NotificationType | str,
    title: str,
    message: str,
    metadata: dict[str, Any] | None = None,
) -> None:
    """Best-effort delivery; never raises for storage problems."""
    recipients = list(user_ids)
    try:
        await create_notifications(db, recipients, type, title, message, metadata)
    except aiosqlite.Error:
        logger.warning("Failed to deliver %s notification to %s", type, recipients, exc_info=True)


def _row_to_notification(row: aiosqlite.Row) -> Notification:
    d = dict(row)
    d["metadata"] = from_json(d.get("metadata", "{}"))
    d["is_read"] = bool(d["is_read"])
    return Notification(**d)


async def list_notifications(
    db: aiosqlite.Connection,
    user_id: str,
    unread_only: bool = False,
    limit: int = 50,
) -> list[Notification]:
    query = "SELECT * FROM notifications WHERE user_id = ?"
    params: list[Any] = [user_id]
    if unread_only:
        query += " AND is_read = 0"
    query += " ORDER BY created_at DESC LIMIT ?"
    params.append(limit)
    async with db.execute(query, params) as cursor:
        rows = await cursor.fetchall()
    return [_row_to_notification(row) for row in rows]


async def mark_read(db: aiosqlite.Connection, user_id: str, notification_id: str) -> bool:
    """Mark one of the user's notifications read. False if it is not theirs or does not exist."""
    cursor = await db.execute(
        "UPDATE notifications SET is_read = 1 WHERE notification_id = ? AND user_id = ?",
        (notification_id, user_id),
    )
    changed = cursor.rowcount
    await cursor.close()
    await db.commit()
    return changed > 0
