"""Storage layer: SQLite document store for manuscripts plus relational side tables.

Provides:
- async SQLite connection via aiosqlite
- schema creation
- manuscript ID generator (MS-YYYY-NNNNN)
- whole-document reads, compare-and-swap writes and field-path patches
- bounded retry for read-recompute-write loops
"""

from __future__ import annotations

import json
import logging
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

import aiosqlite

from reviewdesk.config import settings
from reviewdesk.errors import ConcurrentModification, NotFound, StorageFailure

logger = logging.getLogger("reviewdesk.database")

T = TypeVar("T")

# Marker for a field-path patch that removes the key instead of setting it.
DELETE_FIELD = object()

# ---------------------------------------------------------------------------
# Manuscript ID Generator
# ---------------------------------------------------------------------------

_MANUSCRIPT_ID_PREFIX = "MS"


def _current_year() -> int:
    return datetime.now(timezone.utc).year


async def generate_manuscript_id(db: aiosqlite.Connection) -> str:
    """Generate the next sequential manuscript ID: MS-YYYY-NNNNN."""
    year = _current_year()
    async with db.execute(
        "SELECT seq FROM id_sequence WHERE year = ?", (year,)
    ) as cursor:
        row = await cursor.fetchone()

    if row is None:
        seq = 1
        await db.execute(
            "INSERT INTO id_sequence (year, seq) VALUES (?, ?)", (year, seq)
        )
    else:
        seq = row[0] + 1
        await db.execute(
            "UPDATE id_sequence SET seq = ? WHERE year = ?", (seq, year)
        )
    await db.commit()
    return f"{_MANUSCRIPT_ID_PREFIX}-{year}-{seq:05d}"


# ---------------------------------------------------------------------------
# SQLite Schema
# ---------------------------------------------------------------------------

SCHEMA_SQL = """
-- Manuscript ID sequence tracker
CREATE TABLE IF NOT EXISTS id_sequence (
    year     INTEGER PRIMARY KEY,
    seq      INTEGER NOT NULL DEFAULT 0
);

-- Researchers, peer reviewers and admins
CREATE TABLE IF NOT EXISTS users (
    user_id              TEXT PRIMARY KEY,
    email                TEXT NOT NULL UNIQUE,
    first_name           TEXT NOT NULL DEFAULT '',
    middle_name          TEXT NOT NULL DEFAULT '',
    last_name            TEXT NOT NULL DEFAULT '',
    role                 TEXT NOT NULL DEFAULT 'Researcher',
    affiliation          TEXT NOT NULL DEFAULT '',
    expertise            TEXT NOT NULL DEFAULT '[]',
    accepted_manuscripts INTEGER NOT NULL DEFAULT 0,
    rejected_manuscripts INTEGER NOT NULL DEFAULT 0,
    reviews_completed    INTEGER NOT NULL DEFAULT 0,
    created_at           TEXT NOT NULL,
    updated_at           TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_users_role ON users(role);

-- Manuscripts: one JSON document per row, revision bumps on every write
CREATE TABLE IF NOT EXISTS manuscripts (
    manuscript_id  TEXT PRIMARY KEY,
    status         TEXT NOT NULL,
    submitter_id   TEXT NOT NULL,
    doc            TEXT NOT NULL,
    revision       INTEGER NOT NULL DEFAULT 1,
    created_at     TEXT NOT NULL,
    updated_at     TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_manuscripts_status ON manuscripts(status);
CREATE INDEX IF NOT EXISTS idx_manuscripts_submitter ON manuscripts(submitter_id);

-- Archive of completed reviews, one per (manuscript, reviewer, version)
CREATE TABLE IF NOT EXISTS completed_reviews (
    manuscript_id   TEXT NOT NULL,
    reviewer_id     TEXT NOT NULL,
    version_number  INTEGER NOT NULL,
    comment         TEXT NOT NULL DEFAULT '',
    review_file     TEXT,
    recommendation  TEXT,
    completed_at    TEXT NOT NULL,
    PRIMARY KEY (manuscript_id, reviewer_id, version_number)
);

CREATE INDEX IF NOT EXISTS idx_completed_reviewer ON completed_reviews(reviewer_id);

-- Notifications delivered to users
CREATE TABLE IF NOT EXISTS notifications (
    notification_id TEXT PRIMARY KEY,
    user_id         TEXT NOT NULL,
    type            TEXT NOT NULL,
    title           TEXT NOT NULL,
    message         TEXT NOT NULL,
    metadata        TEXT NOT NULL DEFAULT '{}',
    is_read         INTEGER NOT NULL DEFAULT 0,
    created_at      TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id, is_read);

-- Activity log (append-only)
CREATE TABLE IF NOT EXISTS audit_events (
    event_id    TEXT PRIMARY KEY,
    action      TEXT NOT NULL,
    actor_id    TEXT NOT NULL DEFAULT '',
    target_id   TEXT NOT NULL DEFAULT '',
    target_type TEXT NOT NULL DEFAULT '',
    details     TEXT NOT NULL DEFAULT '{}',
    timestamp   TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_audit_actor ON audit_events(actor_id);
CREATE INDEX IF NOT EXISTS idx_audit_target ON audit_events(target_id);

-- Admin-editable deadline defaults (single row)
CREATE TABLE IF NOT EXISTS deadline_settings (
    settings_id        TEXT PRIMARY KEY CHECK (settings_id = 'deadlines'),
    invitation_days    INTEGER NOT NULL,
    review_days        INTEGER NOT NULL,
    re_review_days     INTEGER NOT NULL,
    revision_days      INTEGER NOT NULL,
    finalization_days  INTEGER NOT NULL,
    updated_by         TEXT NOT NULL DEFAULT '',
    updated_at         TEXT NOT NULL
);
"""


async def init_schema(db: aiosqlite.Connection) -> None:
    await db.executescript(SCHEMA_SQL)
    await db.commit()


async def get_db() -> aiosqlite.Connection:
    """Open the SQLite database and ensure schema exists."""
    settings.ensure_dirs()
    db = await aiosqlite.connect(str(settings.db_path))
    db.row_factory = aiosqlite.Row
    await db.execute("PRAGMA journal_mode = WAL;")
    await db.execute("PRAGMA synchronous = NORMAL;")
    await db.execute("PRAGMA busy_timeout = 5000;")
    await init_schema(db)
    return db


# ---------------------------------------------------------------------------
# JSON helpers
# ---------------------------------------------------------------------------

def _json_default(obj: Any) -> Any:
    """Custom JSON serialiser that handles Pydantic models and other types."""
    if hasattr(obj, "model_dump"):
        return obj.model_dump(mode="json")
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (set, frozenset)):
        return sorted(obj)
    return str(obj)


def to_json(obj: Any) -> str:
    """Serialise a Python object for storage in a TEXT column."""
    if isinstance(obj, str):
        return obj
    return json.dumps(obj, default=_json_default)


def from_json(text: str | None) -> Any:
    """Deserialise a TEXT column back to a Python object."""
    if text is None:
        return None
    try:
        return json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return text


def _json_path(field_path: str) -> str:
    """Turn ``assigned_reviewers_meta.<id>.deadline`` into a quoted SQLite JSON path."""
    parts = field_path.split(".")
    if not all(parts) or any('"' in p for p in parts):
        raise ValueError(f"Invalid field path: {field_path!r}")
    return "$" + "".join(f'."{p}"' for p in parts)


# ---------------------------------------------------------------------------
# Manuscript documents
# ---------------------------------------------------------------------------

async def get_document(
    db: aiosqlite.Connection,
    manuscript_id: str,
) -> tuple[dict[str, Any], int] | None:
    """Read a manuscript document and its current revision."""
    try:
        async with db.execute(
            "SELECT doc, revision FROM manuscripts WHERE manuscript_id = ?",
            (manuscript_id,),
        ) as cursor:
            row = await cursor.fetchone()
    except aiosqlite.Error as exc:
        raise StorageFailure(f"Failed to read manuscript {manuscript_id}: {exc}") from exc
    if row is None:
        return None
    return from_json(row[0]), row[1]


async def insert_document(
    db: aiosqlite.Connection,
    manuscript_id: str,
    doc: dict[str, Any],
) -> None:
    now = datetime.now(timezone.utc).isoformat()
    try:
        await db.execute(
            """
            INSERT INTO manuscripts (manuscript_id, status, submitter_id, doc, revision, created_at, updated_at)
            VALUES (?, ?, ?, ?, 1, ?, ?)
            """,
            (manuscript_id, doc["status"], doc["submitter_id"], to_json(doc), now, now),
        )
        await db.commit()
    except aiosqlite.Error as exc:
        raise StorageFailure(f"Failed to create manuscript {manuscript_id}: {exc}") from exc


async def patch_document(
    db: aiosqlite.Connection,
    manuscript_id: str,
    fields: dict[str, Any],
    expected_revision: int | None = None,
) -> int:
    """
    Apply field-path updates to one manuscript document in a single statement.

    Keys are dotted paths (``reviewer_decision_meta.<reviewer_id>``); values of
    ``DELETE_FIELD`` remove the key. Sibling map entries are never rewritten.
    When ``expected_revision`` is given the write only lands if nobody else
    wrote in between, otherwise ``ConcurrentModification`` is raised.

    Returns the new revision.
    """
    if not fields:
        raise ValueError("patch_document needs at least one field")

    removals = [_json_path(path) for path, value in fields.items() if value is DELETE_FIELD]
    updates = [(path, value) for path, value in fields.items() if value is not DELETE_FIELD]

    expr = "doc"
    params: list[Any] = []
    if removals:
        expr = f"json_remove({expr}, {', '.join('?' for _ in removals)})"
        params.extend(removals)
    if updates:
        pairs = ", ".join("?, json(?)" for _ in updates)
        expr = f"json_set({expr}, {pairs})"
        for path, value in updates:
            params.extend([_json_path(path), to_json_value(value)])

    now = datetime.now(timezone.utc).isoformat()
    sets = [f"doc = json_set({expr}, '$.\"updated_at\"', ?)", "revision = revision + 1", "updated_at = ?"]
    params.extend([now, now])
    if "status" in fields:
        sets.append("status = ?")
        status = fields["status"]
        params.append(status.value if isinstance(status, Enum) else status)

    where = "manuscript_id = ?"
    params.append(manuscript_id)
    if expected_revision is not None:
        where += " AND revision = ?"
        params.append(expected_revision)

    try:
        cursor = await db.execute(f"UPDATE manuscripts SET {', '.join(sets)} WHERE {where}", params)
        changed = cursor.rowcount
        await cursor.close()
        await db.commit()
    except aiosqlite.Error as exc:
        raise StorageFailure(f"Failed to update manuscript {manuscript_id}: {exc}") from exc

    if changed == 0:
        current = await get_document(db, manuscript_id)
        if current is None:
            raise NotFound(f"Manuscript {manuscript_id} not found", manuscript_id=manuscript_id)
        raise ConcurrentModification(
            f"Manuscript {manuscript_id} changed since revision {expected_revision}",
            manuscript_id=manuscript_id,
            expected_revision=expected_revision,
            current_revision=current[1],
        )
    return (expected_revision + 1) if expected_revision is not None else await _revision_of(db, manuscript_id)


def to_json_value(value: Any) -> str:
    """Serialise a patch value; plain strings are JSON-encoded, not passed through."""
    return json.dumps(value, default=_json_default)


async def _revision_of(db: aiosqlite.Connection, manuscript_id: str) -> int:
    current = await get_document(db, manuscript_id)
    return current[1] if current else 0


async def query_documents(
    db: aiosqlite.Connection,
    status: str | None = None,
    submitter_id: str | None = None,
    reviewer_id: str | None = None,
    limit: int = 50,
    cursor: str | None = None,
) -> list[dict[str, Any]]:
    """
    List manuscript documents, newest ID first.

    ``cursor`` is the last manuscript ID of the previous page.
    ``reviewer_id`` matches anyone who was ever invited to the manuscript.
    """
    clauses: list[str] = []
    params: list[Any] = []
    if status:
        clauses.append("status = ?")
        params.append(status)
    if submitter_id:
        clauses.append(
            "(submitter_id = ? OR EXISTS (SELECT 1 FROM json_each(doc, '$.co_author_ids') WHERE value = ?))"
        )
        params.extend([submitter_id, submitter_id])
    if reviewer_id:
        path = _json_path(f"assigned_reviewers_meta.{reviewer_id}")
        prev = _json_path(f"previous_reviewers_meta.{reviewer_id}")
        orig = _json_path(f"original_assigned_reviewers_meta.{reviewer_id}")
        clauses.append(
            "(json_extract(doc, ?) IS NOT NULL OR json_extract(doc, ?) IS NOT NULL OR json_extract(doc, ?) IS NOT NULL)"
        )
        params.extend([path, prev, orig])
    if cursor:
        clauses.append("manuscript_id < ?")
        params.append(cursor)

    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    params.append(limit)
    try:
        async with db.execute(
            f"SELECT doc FROM manuscripts {where} ORDER BY manuscript_id DESC LIMIT ?",
            params,
        ) as cur:
            rows = await cur.fetchall()
    except aiosqlite.Error as exc:
        raise StorageFailure(f"Failed to query manuscripts: {exc}") from exc
    return [from_json(row[0]) for row in rows]


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------

async def retry_on_conflict(
    operation: Callable[[], Awaitable[T]],
    attempts: int | None = None,
) -> T:
    """Re-run a read-recompute-write operation while its snapshot keeps going stale."""
    max_attempts = attempts or settings.workflow.max_write_attempts
    for attempt in range(1, max_attempts + 1):
        try:
            return await operation()
        except ConcurrentModification as exc:
            if attempt >= max_attempts:
                raise
            logger.warning("Write conflict (attempt %d/%d): %s", attempt, max_attempts, exc.message)
    raise AssertionError("unreachable")
