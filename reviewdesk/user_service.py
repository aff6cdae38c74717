"""User service: researchers, peer reviewers and admins, with their review counters."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Iterable

import aiosqlite

from reviewdesk.audit_service import log_event_best_effort
from reviewdesk.database import from_json, to_json
from reviewdesk.errors import StorageFailure
from reviewdesk.models import AuditAction, User, UserCreate, UserRole

logger = logging.getLogger("reviewdesk.users")

# Counters that may be bumped by workflow side effects.
COUNTER_FIELDS = frozenset({"accepted_manuscripts", "rejected_manuscripts", "reviews_completed"})


def _row_to_user(row: dict[str, Any] | aiosqlite.Row) -> User:
    d = dict(row)
    d["expertise"] = from_json(d.get("expertise", "[]"))
    return User(**d)


async def register_user(db: aiosqlite.Connection, payload: UserCreate) -> User:
    """Create a user record."""
    user = User(**payload.model_dump())
    try:
        await db.execute(
            """
            INSERT INTO users (
                user_id, email, first_name, middle_name, last_name, role, affiliation,
                expertise, accepted_manuscripts, rejected_manuscripts, reviews_completed,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, 0, 0, ?, ?)
            """,
            (
                user.user_id,
                user.email,
                user.first_name,
                user.middle_name,
                user.last_name,
                user.role.value,
                user.affiliation,
                to_json(user.expertise),
                user.created_at.isoformat(),
                user.updated_at.isoformat(),
            ),
        )
        await db.commit()
    except aiosqlite.IntegrityError as exc:
        raise ValueError(f"A user with email {user.email} already exists") from exc

    await log_event_best_effort(
        db,
        AuditAction.USER_REGISTERED,
        actor_id=user.user_id,
        target_id=user.user_id,
        target_type="user",
        details={"role": user.role.value},
    )
    return user


async def get_user(db: aiosqlite.Connection, user_id: str) -> User | None:
    async with db.execute("SELECT * FROM users WHERE user_id = ?", (user_id,)) as cursor:
        row = await cursor.fetchone()
    if row is None:
        return None
    return _row_to_user(row)


async def list_users(
    db: aiosqlite.Connection,
    role: UserRole | None = None,
    limit: int = 100,
) -> list[User]:
    if role:
        query = "SELECT * FROM users WHERE role = ? ORDER BY last_name, first_name LIMIT ?"
        params: tuple[Any, ...] = (role.value, limit)
    else:
        query = "SELECT * FROM users ORDER BY last_name, first_name LIMIT ?"
        params = (limit,)
    async with db.execute(query, params) as cursor:
        rows = await cursor.fetchall()
    return [_row_to_user(row) for row in rows]


async def admin_ids(db: aiosqlite.Connection) -> list[str]:
    """IDs of every admin, the audience for workflow alerts."""
    async with db.execute(
        "SELECT user_id FROM users WHERE role = ?", (UserRole.ADMIN.value,)
    ) as cursor:
        rows = await cursor.fetchall()
    return [row[0] for row in rows]


async def increment_counter(
    db: aiosqlite.Connection,
    user_ids: Iterable[str],
    field: str,
    amount: int = 1,
) -> int:
    """
    Atomically bump a review counter on each user.

    Returns the number of user rows updated.
    """
    if field not in COUNTER_FIELDS:
        raise ValueError(f"Unknown counter: {field}")
    ids = list(dict.fromkeys(user_ids))
    if not ids:
        return 0
    now = datetime.now(timezone.utc).isoformat()
    placeholders = ", ".join("?" for _ in ids)
    try:
        cursor = await db.execute(
            f"UPDATE users SET {field} = {field} + ?, updated_at = ? WHERE user_id IN ({placeholders})",
            (amount, now, *ids),
        )
        changed = cursor.rowcount
        await cursor.close()
        await db.commit()
    except aiosqlite.Error as exc:
        raise StorageFailure(f"Failed to update {field}: {exc}") from exc
    return changed


async def bump_counter_best_effort(
    db: aiosqlite.Connection,
    user_ids: Iterable[str],
    field: str,
) -> None:
    """Counter update that must never undo or block the change that triggered it."""
    ids = list(user_ids)
    try:
        await increment_counter(db, ids, field)
    except StorageFailure:
        logger.warning("Could not increment %s for %s", field, ids, exc_info=True)
