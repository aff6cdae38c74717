"""Workflow tests: reviewer actions, status changes and resubmission against an in-memory store."""

import asyncio
from datetime import datetime, timedelta, timezone

import aiosqlite
import pytest

from reviewdesk import audit_service
from reviewdesk.config import settings
from reviewdesk.database import SCHEMA_SQL, patch_document
from reviewdesk.errors import InvalidTransition, NotFound, PermissionDenied, StorageFailure
from reviewdesk.manuscript_service import (
    create_manuscript,
    get_manuscript,
    recalculate_status,
    resubmit_manuscript,
)
from reviewdesk.models import (
    AnsweredQuestion,
    CurrentUser,
    InvitationStatus,
    ManuscriptIntake,
    ManuscriptStatus,
    NotificationType,
    Recommendation,
    ReviewingDecision,
    ReviewPayload,
    UserCreate,
    UserRole,
)
from reviewdesk.notification_service import list_notifications, mark_read
from reviewdesk.reviewer_service import (
    assign_reviewer,
    back_out,
    get_completed_reviews,
    respond_to_invitation,
    submit_review,
    submit_reviewer_decision,
    unassign_reviewer,
)
from reviewdesk.storage_service import LocalFileStorage
from reviewdesk.transition_service import change_status
from reviewdesk.user_service import get_user, register_user
from reviewdesk.views import get_manuscript_view
from reviewdesk.visibility import visible_submissions

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


async def _memory_db() -> aiosqlite.Connection:
    db = await aiosqlite.connect(":memory:")
    db.row_factory = aiosqlite.Row
    await db.executescript(SCHEMA_SQL)
    await db.commit()
    return db


async def _people(db: aiosqlite.Connection) -> dict[str, CurrentUser]:
    people = {}
    for name, role in (
        ("admin", UserRole.ADMIN),
        ("author", UserRole.RESEARCHER),
        ("r1", UserRole.PEER_REVIEWER),
        ("r2", UserRole.PEER_REVIEWER),
    ):
        user = await register_user(db, UserCreate(email=f"{name}@uni.example", role=role))
        people[name] = user.as_current_user()
    return people


async def _submitted(db: aiosqlite.Connection, people: dict[str, CurrentUser], **intake) -> str:
    result = await create_manuscript(
        db,
        ManuscriptIntake(
            submitter_id=people["author"].user_id,
            answered_questions=[AnsweredQuestion(question="Manuscript Title", answer="Soil Carbon Flux")],
            **intake,
        ),
        accepted_by=people["admin"],
        now=NOW,
    )
    assert result.ok
    return result.value.manuscript_id


async def _under_review(db, people, reviewers=("r1", "r2")) -> str:
    """Manuscript with every named reviewer invited and accepted."""
    manuscript_id = await _submitted(db, people)
    for name in reviewers:
        assert (await assign_reviewer(db, manuscript_id, people[name].user_id, people["admin"], now=NOW)).ok
    for name in reviewers:
        assert (await respond_to_invitation(db, manuscript_id, people[name], accept=True, now=NOW)).ok
    return manuscript_id


def _review(recommendation: Recommendation | None = None) -> ReviewPayload:
    return ReviewPayload(comment="Methods are sound; sampling needs detail.", recommendation=recommendation)


@pytest.mark.asyncio
async def test_intake_creates_manuscript_ready_for_reviewers():
    db = await _memory_db()
    try:
        people = await _people(db)
        manuscript_id = await _submitted(db, people, file_path="uploads/v1.pdf")
        manuscript = await get_manuscript(db, manuscript_id)

        assert manuscript.title == "Soil Carbon Flux"
        assert manuscript.status == ManuscriptStatus.ASSIGNING_PEER_REVIEWER
        assert [h.status for h in manuscript.status_history] == [
            ManuscriptStatus.PENDING,
            ManuscriptStatus.ASSIGNING_PEER_REVIEWER,
        ]
        assert manuscript.submission_history[0].file_path == "uploads/v1.pdf"

        admin_inbox = await list_notifications(db, people["admin"].user_id)
        assert [n.type for n in admin_inbox] == [NotificationType.NEW_SUBMISSION.value]
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_researcher_intake_waits_for_admin_screening():
    db = await _memory_db()
    try:
        people = await _people(db)
        author, admin, r1 = people["author"], people["admin"], people["r1"]
        intake = ManuscriptIntake(submitter_id=author.user_id, title="Tidal Sediment Transport")

        self_accepted = await create_manuscript(db, intake, accepted_by=author, now=NOW)
        assert isinstance(self_accepted.error, PermissionDenied)

        result = await create_manuscript(db, intake, now=NOW)
        manuscript_id = result.value.manuscript_id
        assert result.value.status == ManuscriptStatus.PENDING
        assert [h.status for h in result.value.status_history] == [ManuscriptStatus.PENDING]

        # Nothing moves it out of Pending except an admin.
        early = await assign_reviewer(db, manuscript_id, r1.user_id, admin, now=NOW)
        assert isinstance(early.error, InvalidTransition)
        recalculated = await recalculate_status(db, manuscript_id, now=NOW)
        assert recalculated.value.status == ManuscriptStatus.PENDING
        denied = await change_status(db, manuscript_id, ManuscriptStatus.ASSIGNING_PEER_REVIEWER, author, now=NOW)
        assert isinstance(denied.error, PermissionDenied)

        accepted = await change_status(db, manuscript_id, ManuscriptStatus.ASSIGNING_PEER_REVIEWER, admin, now=NOW)
        assert accepted.value.status == ManuscriptStatus.ASSIGNING_PEER_REVIEWER
        assert (await assign_reviewer(db, manuscript_id, r1.user_id, admin, now=NOW)).ok

        other = await create_manuscript(db, intake, now=NOW)
        screened_out = await change_status(
            db, other.value.manuscript_id, ManuscriptStatus.NON_ACCEPTANCE, admin, now=NOW
        )
        assert screened_out.value.status == ManuscriptStatus.NON_ACCEPTANCE
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_full_review_round_to_publication():
    db = await _memory_db()
    try:
        people = await _people(db)
        admin, r1, r2 = people["admin"], people["r1"], people["r2"]
        manuscript_id = await _submitted(db, people)

        await assign_reviewer(db, manuscript_id, r1.user_id, admin, now=NOW)
        result = await assign_reviewer(db, manuscript_id, r2.user_id, admin, now=NOW)
        assert result.value.status == ManuscriptStatus.PEER_REVIEWER_ASSIGNED

        result = await respond_to_invitation(db, manuscript_id, r1, accept=True, now=NOW)
        assert result.value.status == ManuscriptStatus.PEER_REVIEWER_REVIEWING

        # R2 has not answered yet, so no decision can be taken.
        refused = await change_status(db, manuscript_id, ManuscriptStatus.FOR_REVISION_MAJOR, admin, now=NOW)
        assert isinstance(refused.error, InvalidTransition)
        assert refused.error.details["pending_reviewers"] == [r2.user_id]
        assert (await get_manuscript(db, manuscript_id)).status == ManuscriptStatus.PEER_REVIEWER_REVIEWING

        await respond_to_invitation(db, manuscript_id, r2, accept=True, now=NOW)
        result = await submit_reviewer_decision(db, manuscript_id, r2, "reject", now=NOW)
        assert result.value.reviewer_decision_meta[r2.user_id].reviewing_decision == ReviewingDecision.REJECT
        assert result.value.status == ManuscriptStatus.PEER_REVIEWER_REVIEWING

        result = await submit_review(db, manuscript_id, r1, _review(Recommendation.PUBLICATION), now=NOW)
        assert result.ok
        manuscript = await get_manuscript(db, manuscript_id)
        assert manuscript.status == ManuscriptStatus.BACK_TO_ADMIN
        assert manuscript.finalization_deadline == NOW + timedelta(days=5)

        result = await change_status(db, manuscript_id, ManuscriptStatus.FOR_PUBLICATION, admin, now=NOW)
        assert result.ok
        manuscript = await get_manuscript(db, manuscript_id)
        assert manuscript.status == ManuscriptStatus.FOR_PUBLICATION
        assert manuscript.assigned_reviewers == [r1.user_id]
        assert set(manuscript.original_assigned_reviewers) == {r1.user_id, r2.user_id}
        assert manuscript.final_decision_at == NOW
        assert manuscript.final_decision_by == admin.user_id
        assert manuscript.finalization_deadline is None
        assert manuscript.invitation_deadline is None
        assert (await get_user(db, r1.user_id)).accepted_manuscripts == 1
        assert (await get_user(db, r2.user_id)).accepted_manuscripts == 0

        again = await change_status(db, manuscript_id, ManuscriptStatus.FOR_PUBLICATION, admin, now=NOW)
        assert again.ok
        assert (await get_user(db, r1.user_id)).accepted_manuscripts == 1

        author_view = get_manuscript_view(manuscript, UserRole.RESEARCHER, people["author"].user_id, now=NOW)
        assert [r.reviewer_id for r in author_view.visible_reviewers] == [r1.user_id]
        assert author_view.active_deadline is None
        assert author_view.can_transition_to == []
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_status_change_failures_write_nothing():
    db = await _memory_db()
    try:
        people = await _people(db)
        manuscript_id = await _under_review(db, people, reviewers=("r1",))

        denied = await change_status(db, manuscript_id, ManuscriptStatus.REJECTED, people["author"], now=NOW)
        assert isinstance(denied.error, PermissionDenied)

        missing = await change_status(db, "MS-1999-99999", ManuscriptStatus.REJECTED, people["admin"], now=NOW)
        assert isinstance(missing.error, NotFound)

        early = await change_status(db, manuscript_id, ManuscriptStatus.BACK_TO_ADMIN, people["admin"], now=NOW)
        assert isinstance(early.error, InvalidTransition)

        manuscript = await get_manuscript(db, manuscript_id)
        assert manuscript.status == ManuscriptStatus.PEER_REVIEWER_REVIEWING
        assert manuscript.final_decision_at is None
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_peer_reviewer_rejected_keeps_rejecting_reviewers():
    db = await _memory_db()
    try:
        people = await _people(db)
        r1, r2 = people["r1"], people["r2"]
        manuscript_id = await _under_review(db, people)
        await submit_reviewer_decision(db, manuscript_id, r1, "reject", now=NOW)
        await submit_review(db, manuscript_id, r2, _review(Recommendation.MINOR), now=NOW)

        result = await change_status(
            db, manuscript_id, ManuscriptStatus.PEER_REVIEWER_REJECTED, people["admin"], now=NOW
        )
        assert result.value.assigned_reviewers == [r1.user_id]
        assert (await get_user(db, r1.user_id)).rejected_manuscripts == 1
        assert (await get_user(db, r2.user_id)).rejected_manuscripts == 0
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_minor_revision_and_resubmission_starts_fresh_round():
    db = await _memory_db()
    try:
        people = await _people(db)
        r1 = people["r1"]
        manuscript_id = await _under_review(db, people, reviewers=("r1",))
        await submit_review(db, manuscript_id, r1, _review(Recommendation.MINOR), now=NOW)

        result = await change_status(db, manuscript_id, ManuscriptStatus.FOR_REVISION_MINOR, people["admin"], now=NOW)
        assert result.value.assigned_reviewers == []
        assert result.value.revision_deadline == NOW + timedelta(days=14)

        stranger = CurrentUser(user_id="someone-else", role=UserRole.RESEARCHER)
        denied = await resubmit_manuscript(db, manuscript_id, stranger, now=NOW)
        assert isinstance(denied.error, PermissionDenied)

        later = NOW + timedelta(days=3)
        result = await resubmit_manuscript(
            db, manuscript_id, people["author"], file_path="uploads/v2.pdf", now=later
        )
        assert result.ok
        manuscript = await get_manuscript(db, manuscript_id)
        assert manuscript.version_number == 2
        assert manuscript.status == ManuscriptStatus.ASSIGNING_PEER_REVIEWER
        assert manuscript.previous_reviewers == [r1.user_id]
        assert manuscript.revision_deadline is None
        closed, current = manuscript.submission_history
        assert closed.closed_with_status == ManuscriptStatus.FOR_REVISION_MINOR
        assert [r.reviewer_id for r in closed.reviews] == [r1.user_id]
        assert current.version_number == 2 and current.file_path == "uploads/v2.pdf"

        # The first round's review is released to the author during the new round.
        view = get_manuscript_view(manuscript, UserRole.RESEARCHER, people["author"].user_id, now=later)
        assert [s.manuscript_version_number for s in view.visible_submissions] == [1]

        twice = await resubmit_manuscript(db, manuscript_id, people["author"], now=later)
        assert isinstance(twice.error, InvalidTransition)
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_major_revision_reinvites_accepting_reviewers():
    db = await _memory_db()
    try:
        people = await _people(db)
        r1, r2 = people["r1"], people["r2"]
        manuscript_id = await _under_review(db, people)
        await submit_review(db, manuscript_id, r1, _review(Recommendation.MAJOR), now=NOW)
        await submit_review(db, manuscript_id, r2, _review(Recommendation.MINOR), now=NOW)

        await change_status(db, manuscript_id, ManuscriptStatus.FOR_REVISION_MAJOR, people["admin"], now=NOW)
        result = await resubmit_manuscript(db, manuscript_id, people["author"], now=NOW)
        manuscript = result.value
        assert manuscript.status == ManuscriptStatus.PEER_REVIEWER_ASSIGNED
        assert manuscript.assigned_reviewers == [r1.user_id, r2.user_id]
        meta = manuscript.assigned_reviewers_meta[r1.user_id]
        assert meta.invitation_status == InvitationStatus.PENDING
        assert meta.is_re_review
        assert meta.assigned_versions == [1, 2]
        assert manuscript.reviewer_decision_meta == {}

        later = NOW + timedelta(hours=1)
        result = await respond_to_invitation(db, manuscript_id, r1, accept=True, now=later)
        meta = result.value.assigned_reviewers_meta[r1.user_id]
        assert meta.deadline == later + timedelta(days=2)
        assert not meta.is_re_review
        assert result.value.status == ManuscriptStatus.PEER_REVIEWER_REVIEWING

        inbox = await list_notifications(db, r2.user_id)
        assert NotificationType.REVIEWER_ASSIGNMENT.value in {n.type for n in inbox}
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_major_revision_keeps_first_round_reviews_visible_to_author():
    db = await _memory_db()
    try:
        people = await _people(db)
        author, r1, r2 = people["author"], people["r1"], people["r2"]
        manuscript_id = await _under_review(db, people)
        await submit_review(db, manuscript_id, r1, _review(Recommendation.MAJOR), now=NOW)
        await submit_review(db, manuscript_id, r2, _review(Recommendation.MINOR), now=NOW)
        await change_status(db, manuscript_id, ManuscriptStatus.FOR_REVISION_MAJOR, people["admin"], now=NOW)

        def released_to_author(manuscript):
            submissions = visible_submissions(manuscript, UserRole.RESEARCHER, author.user_id)
            return sorted((s.reviewer_id, s.manuscript_version_number) for s in submissions)

        first_round = sorted([(r1.user_id, 1), (r2.user_id, 1)])
        assert released_to_author(await get_manuscript(db, manuscript_id)) == first_round

        result = await resubmit_manuscript(db, manuscript_id, author, now=NOW)
        manuscript = result.value
        assert manuscript.version_number == 2
        assert manuscript.assigned_reviewers_meta[r1.user_id].invitation_status == InvitationStatus.PENDING
        closed = manuscript.submission_history[0]
        assert closed.assignments[r1.user_id].invitation_status == InvitationStatus.ACCEPTED
        assert released_to_author(manuscript) == first_round
        assert released_to_author(await get_manuscript(db, manuscript_id)) == first_round

        # Turning down the re-review does not withdraw the first-round review.
        await respond_to_invitation(db, manuscript_id, r2, accept=False, now=NOW)
        assert released_to_author(await get_manuscript(db, manuscript_id)) == first_round
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_decline_back_out_and_unassign():
    db = await _memory_db()
    try:
        people = await _people(db)
        admin, r1, r2 = people["admin"], people["r1"], people["r2"]
        manuscript_id = await _submitted(db, people)
        await assign_reviewer(db, manuscript_id, r1.user_id, admin, now=NOW)

        result = await respond_to_invitation(db, manuscript_id, r1, accept=False, now=NOW)
        assert result.value.assigned_reviewers == []
        assert result.value.assigned_reviewers_meta[r1.user_id].invitation_status == InvitationStatus.DECLINED
        assert result.value.status == ManuscriptStatus.ASSIGNING_PEER_REVIEWER

        changed_mind = await respond_to_invitation(db, manuscript_id, r1, accept=True, now=NOW)
        assert isinstance(changed_mind.error, InvalidTransition)

        # Re-inviting a reviewer who declined opens a fresh invitation.
        await assign_reviewer(db, manuscript_id, r1.user_id, admin, now=NOW)
        await assign_reviewer(db, manuscript_id, r2.user_id, admin, now=NOW)
        await respond_to_invitation(db, manuscript_id, r1, accept=True, now=NOW)
        await respond_to_invitation(db, manuscript_id, r2, accept=True, now=NOW)

        result = await back_out(db, manuscript_id, r2, reason="Conflict of interest", now=NOW)
        assert result.value.assigned_reviewers == [r1.user_id]
        assert result.value.reviewer_decision_meta[r2.user_id].reviewing_decision == ReviewingDecision.BACKED_OUT

        result = await submit_review(db, manuscript_id, r1, _review(), now=NOW)
        assert result.value.status == ManuscriptStatus.BACK_TO_ADMIN

        too_late = await back_out(db, manuscript_id, r1, now=NOW)
        assert isinstance(too_late.error, InvalidTransition)
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_unassign_one_and_all():
    db = await _memory_db()
    try:
        people = await _people(db)
        admin, r1, r2 = people["admin"], people["r1"], people["r2"]
        manuscript_id = await _submitted(db, people)
        await assign_reviewer(db, manuscript_id, r1.user_id, admin, now=NOW)
        await assign_reviewer(db, manuscript_id, r2.user_id, admin, now=NOW)
        await respond_to_invitation(db, manuscript_id, r1, accept=True, now=NOW)

        result = await unassign_reviewer(db, manuscript_id, admin, reviewer_id=r1.user_id, now=NOW)
        manuscript = result.value
        assert manuscript.assigned_reviewers == [r2.user_id]
        assert r1.user_id not in manuscript.reviewer_decision_meta
        assert r1.user_id in manuscript.original_assigned_reviewers_meta
        assert manuscript.status == ManuscriptStatus.PEER_REVIEWER_ASSIGNED

        missing = await unassign_reviewer(db, manuscript_id, admin, reviewer_id="nobody", now=NOW)
        assert isinstance(missing.error, NotFound)

        result = await unassign_reviewer(db, manuscript_id, admin, now=NOW)
        assert result.value.assigned_reviewers == []
        assert result.value.status == ManuscriptStatus.ASSIGNING_PEER_REVIEWER
        stored = await get_manuscript(db, manuscript_id)
        assert set(stored.original_assigned_reviewers) == {r1.user_id, r2.user_id}

        denied = await unassign_reviewer(db, manuscript_id, people["author"], now=NOW)
        assert isinstance(denied.error, PermissionDenied)
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_concurrent_decisions_are_both_kept():
    db = await _memory_db()
    try:
        people = await _people(db)
        r1, r2 = people["r1"], people["r2"]
        manuscript_id = await _under_review(db, people)

        first, second = await asyncio.gather(
            submit_reviewer_decision(db, manuscript_id, r1, "publication", now=NOW),
            submit_reviewer_decision(db, manuscript_id, r2, "reject", now=NOW),
        )
        assert first.ok and second.ok

        manuscript = await get_manuscript(db, manuscript_id)
        assert manuscript.reviewer_decision_meta[r1.user_id].recommendation == Recommendation.PUBLICATION
        assert manuscript.reviewer_decision_meta[r2.user_id].reviewing_decision == ReviewingDecision.REJECT
        assert manuscript.status == ManuscriptStatus.PEER_REVIEWER_REVIEWING
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_reviewer_input_is_validated():
    db = await _memory_db()
    try:
        people = await _people(db)
        r1 = people["r1"]
        manuscript_id = await _under_review(db, people, reviewers=("r1",))

        unknown = await submit_reviewer_decision(db, manuscript_id, r1, "maybe", now=NOW)
        assert isinstance(unknown.error, InvalidTransition)

        outsider = await submit_reviewer_decision(db, manuscript_id, people["r2"], "accept", now=NOW)
        assert isinstance(outsider.error, InvalidTransition)

        assert (await submit_review(db, manuscript_id, r1, _review(), now=NOW)).ok
        duplicate = await submit_review(db, manuscript_id, r1, _review(), now=NOW)
        assert isinstance(duplicate.error, InvalidTransition)
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_assignment_checks_reviewer():
    db = await _memory_db()
    try:
        people = await _people(db)
        admin = people["admin"]
        co_reviewer = await register_user(db, UserCreate(email="r3@uni.example", role=UserRole.PEER_REVIEWER))
        manuscript_id = await _submitted(db, people, co_author_ids=[co_reviewer.user_id])

        conflict = await assign_reviewer(db, manuscript_id, co_reviewer.user_id, admin, now=NOW)
        assert isinstance(conflict.error, InvalidTransition)
        assert conflict.error.details["conflict"] == "reviewer_is_author"

        not_reviewer = await assign_reviewer(db, manuscript_id, people["author"].user_id, admin, now=NOW)
        assert isinstance(not_reviewer.error, InvalidTransition)

        missing = await assign_reviewer(db, manuscript_id, "ghost", admin, now=NOW)
        assert isinstance(missing.error, NotFound)

        denied = await assign_reviewer(db, manuscript_id, people["r1"].user_id, people["r2"], now=NOW)
        assert isinstance(denied.error, PermissionDenied)

        first = await assign_reviewer(db, manuscript_id, people["r1"].user_id, admin, now=NOW)
        again = await assign_reviewer(db, manuscript_id, people["r1"].user_id, admin, now=NOW)
        assert again.value.assigned_reviewers == first.value.assigned_reviewers

        inbox = await list_notifications(db, people["r1"].user_id)
        assert len(inbox) == 1
        assert inbox[0].type == NotificationType.REVIEWER_ASSIGNMENT.value
        assert await mark_read(db, people["r1"].user_id, inbox[0].notification_id)
        assert await list_notifications(db, people["r1"].user_id, unread_only=True) == []
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_review_file_is_stored_and_archived(tmp_path, monkeypatch):
    db = await _memory_db()
    try:
        people = await _people(db)
        r1 = people["r1"]
        storage = LocalFileStorage(root=tmp_path)
        manuscript_id = await _under_review(db, people, reviewers=("r1",))

        monkeypatch.setattr(settings.workflow, "max_review_file_bytes", 8)
        oversized = ReviewPayload(comment="See file", review_file_name="r.pdf", review_file_bytes=b"x" * 9)
        too_big = await submit_review(db, manuscript_id, r1, oversized, storage, now=NOW)
        assert isinstance(too_big.error, InvalidTransition)
        assert not any(tmp_path.iterdir())

        payload = ReviewPayload(comment="See file", review_file_name="notes.pdf", review_file_bytes=b"%PDF-1")
        result = await submit_review(db, manuscript_id, r1, payload, storage, now=NOW)
        assert result.ok
        stored = result.value.reviewer_submissions[-1].review_file
        assert (tmp_path / stored).read_bytes() == b"%PDF-1"

        archived = await get_completed_reviews(db, r1.user_id)
        assert [(row["manuscript_id"], row["version_number"]) for row in archived] == [(manuscript_id, 1)]
        assert (await get_user(db, r1.user_id)).reviews_completed == 1
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_recalculate_repairs_drifted_status():
    db = await _memory_db()
    try:
        people = await _people(db)
        manuscript_id = await _under_review(db, people, reviewers=("r1",))
        await patch_document(db, manuscript_id, {"status": ManuscriptStatus.PEER_REVIEWER_ASSIGNED})

        result = await recalculate_status(db, manuscript_id, now=NOW)
        assert result.value.status == ManuscriptStatus.PEER_REVIEWER_REVIEWING
        assert (await get_manuscript(db, manuscript_id)).status == ManuscriptStatus.PEER_REVIEWER_REVIEWING

        missing = await recalculate_status(db, "MS-1999-99999", now=NOW)
        assert isinstance(missing.error, NotFound)
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_storage_errors_around_a_write_come_back_as_results(monkeypatch):
    db = await _memory_db()
    try:
        people = await _people(db)
        admin = people["admin"]
        first = await _submitted(db, people)
        second = await _submitted(db, people)

        async def broken_log(*args, **kwargs):
            raise aiosqlite.OperationalError("disk I/O error")

        # The status change is committed even though its activity entry is lost.
        monkeypatch.setattr(audit_service, "log_event", broken_log)
        result = await change_status(db, first, ManuscriptStatus.NON_ACCEPTANCE, admin, now=NOW)
        assert result.ok
        assert (await get_manuscript(db, first)).status == ManuscriptStatus.NON_ACCEPTANCE
        monkeypatch.undo()

        await db.execute("DROP TABLE deadline_settings")
        await db.commit()
        result = await change_status(db, second, ManuscriptStatus.NON_ACCEPTANCE, admin, now=NOW)
        assert isinstance(result.error, StorageFailure)
        result = await assign_reviewer(db, second, people["r1"].user_id, admin, now=NOW)
        assert isinstance(result.error, StorageFailure)
        assert (await get_manuscript(db, second)).status == ManuscriptStatus.ASSIGNING_PEER_REVIEWER
    finally:
        await db.close()
