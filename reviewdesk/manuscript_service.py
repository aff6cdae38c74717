"""Manuscript service: intake, resubmission, loading and status recomputation."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

import aiosqlite

from reviewdesk.audit_service import log_event_best_effort
from reviewdesk.database import (
    generate_manuscript_id,
    get_document,
    insert_document,
    patch_document,
    query_documents,
    retry_on_conflict,
)
from reviewdesk.deadlines import deadline_from_now
from reviewdesk.errors import InvalidTransition, NotFound, PermissionDenied, Result, WorkflowError
from reviewdesk.models import (
    AuditAction,
    CurrentUser,
    DeadlineSettings,
    InvitationStatus,
    Manuscript,
    ManuscriptIntake,
    ManuscriptStatus,
    NotificationType,
    StatusHistoryEntry,
    SubmissionSnapshot,
    UserRole,
)
from reviewdesk.notification_service import notify, status_message
from reviewdesk.settings_service import get_deadline_settings
from reviewdesk.status_engine import (
    DERIVABLE_STATUSES,
    canonical_submissions,
    compute_manuscript_status,
)
from reviewdesk.user_service import admin_ids

logger = logging.getLogger("reviewdesk.manuscripts")

SYSTEM_ACTOR = "system"

REVISION_STATUSES = frozenset(
    {ManuscriptStatus.FOR_REVISION_MINOR, ManuscriptStatus.FOR_REVISION_MAJOR}
)

# Pending waits for an admin to accept it; reviewer activity starts after that.
REVIEW_OPEN_STATUSES = DERIVABLE_STATUSES - {ManuscriptStatus.PENDING}

_TITLE_QUESTION_PREFIX = "manuscript title"


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

async def load_manuscript(db: aiosqlite.Connection, manuscript_id: str) -> tuple[Manuscript, int]:
    """Fresh snapshot plus its revision, for a compare-and-swap write."""
    found = await get_document(db, manuscript_id)
    if found is None:
        raise NotFound(f"Manuscript {manuscript_id} not found", manuscript_id=manuscript_id)
    doc, revision = found
    return Manuscript.model_validate(doc), revision


async def get_manuscript(db: aiosqlite.Connection, manuscript_id: str) -> Manuscript | None:
    found = await get_document(db, manuscript_id)
    if found is None:
        return None
    return Manuscript.model_validate(found[0])


async def list_manuscripts(
    db: aiosqlite.Connection,
    viewer: CurrentUser,
    status: ManuscriptStatus | None = None,
    limit: int = 50,
    cursor: str | None = None,
) -> list[Manuscript]:
    """Manuscripts the viewer is involved in; admins get everything."""
    filters: dict[str, Any] = {"status": status.value if status else None, "limit": limit, "cursor": cursor}
    if viewer.role == UserRole.PEER_REVIEWER:
        filters["reviewer_id"] = viewer.user_id
    elif viewer.role != UserRole.ADMIN:
        filters["submitter_id"] = viewer.user_id
    docs = await query_documents(db, **filters)
    return [Manuscript.model_validate(doc) for doc in docs]


# ---------------------------------------------------------------------------
# Status recomputation
# ---------------------------------------------------------------------------

def history_entry(
    status: ManuscriptStatus,
    changed_by: str,
    now: datetime,
    note: str = "",
) -> StatusHistoryEntry:
    return StatusHistoryEntry(status=status, note=note, changed_by=changed_by, timestamp=now)


def recompute_fields(
    manuscript: Manuscript,
    deadlines: DeadlineSettings,
    now: datetime,
    changed_by: str = SYSTEM_ACTOR,
) -> dict[str, Any]:
    """
    Field updates that bring ``status`` in line with the reviewer records.

    Only applies while reviewers are active on the manuscript; intake,
    terminal and revision states are left to the admin. Entering Back to
    Admin starts the finalization clock, leaving it stops the clock.
    """
    if manuscript.status not in REVIEW_OPEN_STATUSES:
        return {}
    new_status = compute_manuscript_status(manuscript)
    if new_status == manuscript.status:
        return {}

    fields: dict[str, Any] = {
        "status": new_status,
        "status_history": [
            *manuscript.status_history,
            history_entry(new_status, changed_by, now, "Recomputed from reviewer activity"),
        ],
    }
    if new_status == ManuscriptStatus.BACK_TO_ADMIN:
        fields["finalization_deadline"] = deadline_from_now(deadlines.finalization_days, now)
        fields["revision_deadline"] = None
    elif manuscript.status == ManuscriptStatus.BACK_TO_ADMIN:
        fields["finalization_deadline"] = None
    return fields


async def announce_recomputed_status(
    db: aiosqlite.Connection,
    before: Manuscript,
    after: Manuscript,
) -> None:
    """Tell admins when reviewer activity moved a manuscript to Back to Admin."""
    if before.status == after.status:
        return
    logger.info(
        "Manuscript %s recomputed: %s -> %s", after.manuscript_id, before.status.value, after.status.value
    )
    if after.status == ManuscriptStatus.BACK_TO_ADMIN:
        await notify(
            db,
            await admin_ids(db),
            NotificationType.REVIEW_COMPLETED,
            f"Reviews complete: {after.title}",
            f'All peer reviews for "{after.title}" (v{after.version_number}) are in. A final decision is due.',
            {"manuscript_id": after.manuscript_id, "new_status": after.status.value},
        )


async def recalculate_status(
    db: aiosqlite.Connection,
    manuscript_id: str,
    now: datetime | None = None,
) -> Result[Manuscript]:
    """Re-derive a manuscript's status from a fresh snapshot and persist it if it drifted."""

    async def _attempt() -> tuple[Manuscript, Manuscript]:
        manuscript, revision = await load_manuscript(db, manuscript_id)
        fields = recompute_fields(manuscript, deadlines, now or datetime.now(timezone.utc))
        if not fields:
            return manuscript, manuscript
        await patch_document(db, manuscript_id, fields, expected_revision=revision)
        return manuscript, manuscript.model_copy(update=fields)

    try:
        deadlines = await get_deadline_settings(db)
        before, after = await retry_on_conflict(_attempt)
    except WorkflowError as err:
        return Result.failure(err)
    await announce_recomputed_status(db, before, after)
    return Result.success(after)


# ---------------------------------------------------------------------------
# Intake
# ---------------------------------------------------------------------------

def _title_from_answers(intake: ManuscriptIntake) -> str:
    if intake.title:
        return intake.title.strip()
    for item in intake.answered_questions:
        if item.question.strip().lower().startswith(_TITLE_QUESTION_PREFIX) and item.answer:
            return str(item.answer).strip()
    return "Untitled"


async def create_manuscript(
    db: aiosqlite.Connection,
    intake: ManuscriptIntake,
    accepted_by: CurrentUser | None = None,
    now: datetime | None = None,
) -> Result[Manuscript]:
    """
    Record a form response as a manuscript.

    Without an accepting admin it waits in Pending for screening; an admin
    accepting it at intake sends it straight to reviewer assignment.
    """
    now = now or datetime.now(timezone.utc)
    history = [history_entry(ManuscriptStatus.PENDING, intake.submitter_id, now, "Submitted")]
    try:
        if accepted_by is not None:
            if not accepted_by.is_admin:
                raise PermissionDenied(
                    "Only admins can accept a submission for review", actor_id=accepted_by.user_id
                )
            accepted = history_entry(
                ManuscriptStatus.ASSIGNING_PEER_REVIEWER, accepted_by.user_id, now, "Accepted for review"
            )
            history.append(accepted)
        manuscript_id = await generate_manuscript_id(db)
        manuscript = Manuscript(
            manuscript_id=manuscript_id,
            title=_title_from_answers(intake),
            submitter_id=intake.submitter_id,
            co_author_ids=[a for a in intake.co_author_ids if a != intake.submitter_id],
            form_id=intake.form_id,
            answered_questions=intake.answered_questions,
            status=history[-1].status,
            submission_history=[SubmissionSnapshot(version_number=1, file_path=intake.file_path, submitted_at=now)],
            status_history=history,
            submitted_at=now,
            updated_at=now,
        )
        await insert_document(db, manuscript_id, manuscript.model_dump(mode="json"))
    except WorkflowError as err:
        return Result.failure(err)

    await log_event_best_effort(
        db,
        AuditAction.MANUSCRIPT_CREATED,
        actor_id=intake.submitter_id,
        target_id=manuscript_id,
        details={"title": manuscript.title, "form_id": intake.form_id, "status": manuscript.status.value},
    )
    if manuscript.status == ManuscriptStatus.PENDING:
        admin_message = f'"{manuscript.title}" was submitted and is waiting to be screened.'
    else:
        admin_message = f'"{manuscript.title}" was submitted and needs peer reviewers.'
    await notify(
        db,
        await admin_ids(db),
        NotificationType.NEW_SUBMISSION,
        f"New manuscript: {manuscript.title}",
        admin_message,
        {"manuscript_id": manuscript_id},
    )
    await notify(
        db,
        manuscript.author_ids,
        NotificationType.STATUS_UPDATE,
        f'Status update for manuscript "{manuscript.title}"',
        status_message(ManuscriptStatus.PENDING),
        {"manuscript_id": manuscript_id, "new_status": manuscript.status.value},
    )
    logger.info("Created manuscript %s for %s", manuscript_id, intake.submitter_id)
    return Result.success(manuscript)


# ---------------------------------------------------------------------------
# Resubmission
# ---------------------------------------------------------------------------

def plan_resubmission(
    manuscript: Manuscript,
    deadlines: DeadlineSettings,
    author_id: str,
    now: datetime,
    file_path: str | None = None,
    note: str = "",
) -> dict[str, Any]:
    """
    Top-level field updates for a resubmitted version.

    The closing round's reviews and decisions are archived on its snapshot.
    Reviewers still assigned (kept by a major revision) are re-invited for the
    new version; everyone else moves to ``previous_reviewers``.
    """
    version = manuscript.version_number
    new_version = version + 1

    round_reviews = [
        s for s in canonical_submissions(manuscript.reviewer_submissions) if s.manuscript_version_number == version
    ]
    history = list(manuscript.submission_history)
    closing = {
        "reviews": round_reviews,
        "decisions": dict(manuscript.reviewer_decision_meta),
        "assignments": {
            **manuscript.original_assigned_reviewers_meta,
            **manuscript.assigned_reviewers_meta,
        },
        "closed_with_status": manuscript.status,
    }
    if history and history[-1].version_number == version:
        history[-1] = history[-1].model_copy(update=closing)
    else:
        history.append(SubmissionSnapshot(version_number=version, submitted_at=manuscript.submitted_at, **closing))
    history.append(SubmissionSnapshot(version_number=new_version, file_path=file_path, note=note, submitted_at=now))

    previous = list(
        dict.fromkeys(
            [*manuscript.previous_reviewers, *manuscript.original_assigned_reviewers, *manuscript.assigned_reviewers]
        )
    )
    previous_meta = {
        **manuscript.previous_reviewers_meta,
        **manuscript.original_assigned_reviewers_meta,
        **manuscript.assigned_reviewers_meta,
    }

    invite_deadline = deadline_from_now(deadlines.invitation_days, now)
    reinvited = {
        reviewer_id: manuscript.assigned_reviewers_meta[reviewer_id].model_copy(
            update={
                "assigned_at": now,
                "invitation_status": InvitationStatus.PENDING,
                "responded_at": None,
                "accepted_at": None,
                "declined_at": None,
                "deadline": invite_deadline,
                "assigned_versions": [
                    *manuscript.assigned_reviewers_meta[reviewer_id].assigned_versions,
                    new_version,
                ],
                "is_re_review": True,
            }
        )
        for reviewer_id in manuscript.assigned_reviewers
    }

    fields: dict[str, Any] = {
        "version_number": new_version,
        "submission_history": history,
        "previous_reviewers": previous,
        "previous_reviewers_meta": previous_meta,
        "assigned_reviewers": list(manuscript.assigned_reviewers),
        "assigned_reviewers_meta": reinvited,
        "reviewer_decision_meta": {},
        "original_assigned_reviewers": [],
        "original_assigned_reviewers_meta": {},
        "revision_deadline": None,
        "finalization_deadline": None,
        "invitation_deadline": invite_deadline if reinvited else None,
        "submitted_at": now,
    }
    resubmitted = manuscript.model_copy(update=fields)
    new_status = compute_manuscript_status(resubmitted)
    fields["status"] = new_status
    fields["status_history"] = [
        *manuscript.status_history,
        history_entry(new_status, author_id, now, note or f"Resubmitted as version {new_version}"),
    ]
    return fields


async def resubmit_manuscript(
    db: aiosqlite.Connection,
    manuscript_id: str,
    acting_user: CurrentUser,
    file_path: str | None = None,
    note: str = "",
    now: datetime | None = None,
) -> Result[Manuscript]:
    """Author sends a revised version after a revision request."""
    now = now or datetime.now(timezone.utc)

    async def _attempt() -> tuple[Manuscript, Manuscript]:
        manuscript, revision = await load_manuscript(db, manuscript_id)
        if acting_user.user_id not in manuscript.author_ids:
            raise PermissionDenied("Only the manuscript's authors can resubmit it", manuscript_id=manuscript_id)
        if manuscript.status not in REVISION_STATUSES:
            raise InvalidTransition(
                f"Cannot resubmit from status {manuscript.status.value}",
                manuscript_id=manuscript_id,
                status=manuscript.status.value,
            )
        fields = plan_resubmission(manuscript, deadlines, acting_user.user_id, now, file_path, note)
        await patch_document(db, manuscript_id, fields, expected_revision=revision)
        return manuscript, manuscript.model_copy(update=fields)

    try:
        deadlines = await get_deadline_settings(db)
        before, after = await retry_on_conflict(_attempt)
    except WorkflowError as err:
        return Result.failure(err)

    logger.info("Manuscript %s resubmitted as v%d", manuscript_id, after.version_number)
    await log_event_best_effort(
        db,
        AuditAction.MANUSCRIPT_RESUBMITTED,
        actor_id=acting_user.user_id,
        target_id=manuscript_id,
        details={"version": after.version_number, "from_status": before.status.value},
    )
    metadata = {"manuscript_id": manuscript_id, "version": after.version_number, "is_resubmission": True}
    await notify(
        db,
        [*await admin_ids(db), *after.author_ids],
        NotificationType.RESUBMISSION,
        f"Manuscript Resubmitted: {after.title}",
        f'Manuscript "{after.title}" has been resubmitted for review.',
        metadata,
    )
    if after.assigned_reviewers:
        await notify(
            db,
            after.assigned_reviewers,
            NotificationType.REVIEWER_ASSIGNMENT,
            f"Revised manuscript to re-review: {after.title}",
            f'A revised version of "{after.title}" is ready. Please accept or decline the re-review.',
            metadata,
        )
    return Result.success(after)
