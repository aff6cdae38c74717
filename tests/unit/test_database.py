"""Unit tests for the SQLite document store."""

import re

import aiosqlite
import pytest

from reviewdesk.database import (
    DELETE_FIELD,
    SCHEMA_SQL,
    generate_manuscript_id,
    get_document,
    insert_document,
    patch_document,
    query_documents,
    retry_on_conflict,
)
from reviewdesk.errors import ConcurrentModification, NotFound


async def _memory_db() -> aiosqlite.Connection:
    db = await aiosqlite.connect(":memory:")
    db.row_factory = aiosqlite.Row
    await db.executescript(SCHEMA_SQL)
    await db.commit()
    return db


def _doc(manuscript_id: str, submitter: str = "author", **extra) -> dict:
    doc = {
        "manuscript_id": manuscript_id,
        "submitter_id": submitter,
        "co_author_ids": [],
        "status": "Peer Reviewer Assigned",
        "assigned_reviewers": ["R1", "R2"],
        "assigned_reviewers_meta": {"R1": {"invitation_status": "pending"}, "R2": {"invitation_status": "pending"}},
        "reviewer_decision_meta": {},
    }
    doc.update(extra)
    return doc


@pytest.mark.asyncio
async def test_manuscript_ids_are_sequential():
    db = await _memory_db()
    try:
        first = await generate_manuscript_id(db)
        second = await generate_manuscript_id(db)
        assert re.fullmatch(r"MS-\d{4}-00001", first)
        assert second.endswith("-00002")
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_field_patch_keeps_sibling_entries():
    db = await _memory_db()
    try:
        await insert_document(db, "MS-1", _doc("MS-1"))
        await patch_document(db, "MS-1", {"reviewer_decision_meta.R1": {"reviewing_decision": "accept"}})
        await patch_document(db, "MS-1", {"reviewer_decision_meta.R2": {"reviewing_decision": "reject"}})

        doc, revision = await get_document(db, "MS-1")
        assert doc["reviewer_decision_meta"] == {
            "R1": {"reviewing_decision": "accept"},
            "R2": {"reviewing_decision": "reject"},
        }
        assert doc["assigned_reviewers_meta"]["R2"] == {"invitation_status": "pending"}
        assert revision == 3
        assert "updated_at" in doc
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_delete_field_removes_only_that_key():
    db = await _memory_db()
    try:
        await insert_document(db, "MS-1", _doc("MS-1"))
        await patch_document(
            db,
            "MS-1",
            {"assigned_reviewers_meta.R1": DELETE_FIELD, "assigned_reviewers": ["R2"]},
        )
        doc, _ = await get_document(db, "MS-1")
        assert list(doc["assigned_reviewers_meta"]) == ["R2"]
        assert doc["assigned_reviewers"] == ["R2"]
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_status_patch_updates_indexed_column():
    db = await _memory_db()
    try:
        await insert_document(db, "MS-1", _doc("MS-1"))
        await patch_document(db, "MS-1", {"status": "Back to Admin"})
        docs = await query_documents(db, status="Back to Admin")
        assert [d["manuscript_id"] for d in docs] == ["MS-1"]
        assert docs[0]["status"] == "Back to Admin"
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_stale_revision_is_rejected():
    db = await _memory_db()
    try:
        await insert_document(db, "MS-1", _doc("MS-1"))
        assert await patch_document(db, "MS-1", {"title": "A"}, expected_revision=1) == 2
        with pytest.raises(ConcurrentModification) as excinfo:
            await patch_document(db, "MS-1", {"title": "B"}, expected_revision=1)
        assert excinfo.value.details["current_revision"] == 2
        doc, _ = await get_document(db, "MS-1")
        assert doc["title"] == "A"
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_patch_of_missing_document_is_not_found():
    db = await _memory_db()
    try:
        with pytest.raises(NotFound):
            await patch_document(db, "MS-404", {"title": "x"}, expected_revision=1)
        assert await get_document(db, "MS-404") is None
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_bad_field_paths_are_refused():
    db = await _memory_db()
    try:
        await insert_document(db, "MS-1", _doc("MS-1"))
        with pytest.raises(ValueError):
            await patch_document(db, "MS-1", {"assigned_reviewers_meta..deadline": None})
        with pytest.raises(ValueError):
            await patch_document(db, "MS-1", {'title"': "x"})
        with pytest.raises(ValueError):
            await patch_document(db, "MS-1", {})
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_query_by_co_author_and_reviewer():
    db = await _memory_db()
    try:
        await insert_document(db, "MS-1", _doc("MS-1", co_author_ids=["coauthor"]))
        await insert_document(db, "MS-2", _doc("MS-2", submitter="other", previous_reviewers_meta={"R9": {}}))

        assert [d["manuscript_id"] for d in await query_documents(db, submitter_id="coauthor")] == ["MS-1"]
        assert [d["manuscript_id"] for d in await query_documents(db, reviewer_id="R1")] == ["MS-2", "MS-1"]
        assert [d["manuscript_id"] for d in await query_documents(db, reviewer_id="R9")] == ["MS-2"]
        assert [d["manuscript_id"] for d in await query_documents(db, cursor="MS-2")] == ["MS-1"]
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_retry_reruns_after_conflict():
    calls = []

    async def flaky():
        calls.append(1)
        if len(calls) == 1:
            raise ConcurrentModification("stale")
        return "done"

    assert await retry_on_conflict(flaky, attempts=3) == "done"
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_retry_gives_up_after_bound():
    calls = []

    async def always_stale():
        calls.append(1)
        raise ConcurrentModification("stale")

    with pytest.raises(ConcurrentModification):
        await retry_on_conflict(always_stale, attempts=2)
    assert len(calls) == 2
