"""Reviewer service: assignment, invitation responses, decisions, reviews and backing out.

Every operation follows the same path: read a fresh snapshot, apply the
single reviewer's change, let the status engine re-derive the status, and
write everything back under the snapshot's revision. Per-reviewer map
entries are written as field paths so sibling reviewers are never rewritten.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

import aiosqlite

from reviewdesk.audit_service import log_event_best_effort
from reviewdesk.config import settings
from reviewdesk.database import DELETE_FIELD, patch_document, retry_on_conflict
from reviewdesk.deadlines import deadline_from_now
from reviewdesk.errors import InvalidTransition, NotFound, PermissionDenied, Result, StorageFailure, WorkflowError
from reviewdesk.manuscript_service import (
    REVIEW_OPEN_STATUSES,
    announce_recomputed_status,
    load_manuscript,
    recompute_fields,
)
from reviewdesk.models import (
    AuditAction,
    CurrentUser,
    DeadlineSettings,
    InvitationStatus,
    Manuscript,
    NotificationType,
    Recommendation,
    ReviewerAssignment,
    ReviewerDecision,
    ReviewingDecision,
    ReviewPayload,
    ReviewSubmission,
    UserRole,
)
from reviewdesk.notification_service import notify
from reviewdesk.settings_service import get_deadline_settings
from reviewdesk.status_engine import completed_reviewers
from reviewdesk.storage_service import LocalFileStorage, default_storage, review_file_path
from reviewdesk.user_service import admin_ids, bump_counter_best_effort, get_user

logger = logging.getLogger("reviewdesk.reviewers")


@dataclass
class ReviewerChange:
    """One reviewer's change: the in-memory state update and the stored field paths."""

    state: dict[str, Any] = field(default_factory=dict)
    patch: dict[str, Any] = field(default_factory=dict)


Mutation = Callable[[Manuscript], "ReviewerChange | None"]


async def _apply(
    db: aiosqlite.Connection,
    manuscript_id: str,
    mutate: Mutation,
    deadlines: DeadlineSettings,
    now: datetime,
) -> tuple[Manuscript, Manuscript]:
    """Read-mutate-recompute-write with retry. ``mutate`` returns None for a no-op."""

    async def _attempt() -> tuple[Manuscript, Manuscript]:
        manuscript, revision = await load_manuscript(db, manuscript_id)
        change = mutate(manuscript)
        if change is None:
            return manuscript, manuscript
        updated = manuscript.model_copy(update=change.state)
        status_fields = recompute_fields(updated, deadlines, now)
        await patch_document(db, manuscript_id, {**change.patch, **status_fields}, expected_revision=revision)
        return manuscript, updated.model_copy(update=status_fields)

    return await retry_on_conflict(_attempt)


def _require_review_active(manuscript: Manuscript) -> None:
    if manuscript.status not in REVIEW_OPEN_STATUSES:
        raise InvalidTransition(
            f"Reviewer changes are closed while the manuscript is {manuscript.status.value}",
            manuscript_id=manuscript.manuscript_id,
            status=manuscript.status.value,
        )


def _require_assigned(manuscript: Manuscript, reviewer_id: str) -> ReviewerAssignment:
    if reviewer_id not in manuscript.assigned_reviewers:
        raise InvalidTransition(
            "Reviewer is not assigned to this manuscript",
            manuscript_id=manuscript.manuscript_id,
            reviewer_id=reviewer_id,
        )
    return manuscript.assigned_reviewers_meta[reviewer_id]


def _require_accepted(manuscript: Manuscript, reviewer_id: str) -> ReviewerAssignment:
    meta = _require_assigned(manuscript, reviewer_id)
    if meta.invitation_status != InvitationStatus.ACCEPTED:
        raise InvalidTransition(
            "Reviewer has not accepted the invitation",
            manuscript_id=manuscript.manuscript_id,
            reviewer_id=reviewer_id,
        )
    return meta


def _without(items: list[str], item: str) -> list[str]:
    return [i for i in items if i != item]


def _without_key(mapping: dict[str, Any], key: str) -> dict[str, Any]:
    return {k: v for k, v in mapping.items() if k != key}


# ---------------------------------------------------------------------------
# Assignment
# ---------------------------------------------------------------------------

async def assign_reviewer(
    db: aiosqlite.Connection,
    manuscript_id: str,
    reviewer_id: str,
    acting_user: CurrentUser,
    now: datetime | None = None,
) -> Result[Manuscript]:
    """Invite a peer reviewer to the current version."""
    now = now or datetime.now(timezone.utc)
    try:
        if not acting_user.is_admin:
            raise PermissionDenied("Only admins can assign reviewers", manuscript_id=manuscript_id)
        reviewer = await get_user(db, reviewer_id)
        if reviewer is None:
            raise NotFound(f"Reviewer {reviewer_id} not found", reviewer_id=reviewer_id)
        if reviewer.role != UserRole.PEER_REVIEWER:
            raise InvalidTransition(f"User {reviewer_id} is not a peer reviewer", reviewer_id=reviewer_id)
        deadlines = await get_deadline_settings(db)

        def _mutate(manuscript: Manuscript) -> ReviewerChange | None:
            _require_review_active(manuscript)
            if reviewer_id in manuscript.author_ids:
                raise InvalidTransition(
                    "Reviewer is an author of this manuscript",
                    manuscript_id=manuscript_id,
                    reviewer_id=reviewer_id,
                    conflict="reviewer_is_author",
                )
            if reviewer_id in manuscript.assigned_reviewers:
                return None
            earlier = manuscript.assigned_reviewers_meta.get(reviewer_id)
            versions = [v for v in (earlier.assigned_versions if earlier else []) if v != manuscript.version_number]
            meta = ReviewerAssignment(
                assigned_at=now,
                assigned_by=acting_user.user_id,
                invitation_status=InvitationStatus.PENDING,
                deadline=deadline_from_now(deadlines.invitation_days, now),
                assigned_versions=[*versions, manuscript.version_number],
            )
            assigned = [*manuscript.assigned_reviewers, reviewer_id]
            change = ReviewerChange(
                state={
                    "assigned_reviewers": assigned,
                    "assigned_reviewers_meta": {**manuscript.assigned_reviewers_meta, reviewer_id: meta},
                    "reviewer_decision_meta": _without_key(manuscript.reviewer_decision_meta, reviewer_id),
                    "invitation_deadline": meta.deadline,
                },
                patch={
                    "assigned_reviewers": assigned,
                    f"assigned_reviewers_meta.{reviewer_id}": meta,
                    "invitation_deadline": meta.deadline,
                },
            )
            if reviewer_id in manuscript.reviewer_decision_meta:
                change.patch[f"reviewer_decision_meta.{reviewer_id}"] = DELETE_FIELD
            return change

        before, after = await _apply(db, manuscript_id, _mutate, deadlines, now)
    except WorkflowError as err:
        return Result.failure(err)

    if reviewer_id in before.assigned_reviewers:
        return Result.success(after)

    await log_event_best_effort(
        db,
        AuditAction.REVIEWER_ASSIGNED,
        actor_id=acting_user.user_id,
        target_id=manuscript_id,
        details={"reviewer_id": reviewer_id, "version": after.version_number},
    )
    await notify(
        db,
        [reviewer_id],
        NotificationType.REVIEWER_ASSIGNMENT,
        f"Invitation to review: {after.title}",
        f'You have been invited to review "{after.title}". Please accept or decline the invitation.',
        {"manuscript_id": manuscript_id, "deadline": after.assigned_reviewers_meta[reviewer_id].deadline},
    )
    await announce_recomputed_status(db, before, after)
    return Result.success(after)


async def unassign_reviewer(
    db: aiosqlite.Connection,
    manuscript_id: str,
    acting_user: CurrentUser,
    reviewer_id: str | None = None,
    now: datetime | None = None,
) -> Result[Manuscript]:
    """Remove one reviewer, or every reviewer when ``reviewer_id`` is None, keeping them on record."""
    now = now or datetime.now(timezone.utc)
    try:
        if not acting_user.is_admin:
            raise PermissionDenied("Only admins can unassign reviewers", manuscript_id=manuscript_id)
        deadlines = await get_deadline_settings(db)

        def _mutate(manuscript: Manuscript) -> ReviewerChange | None:
            _require_review_active(manuscript)
            if reviewer_id is None:
                return _unassign_all(manuscript)
            return _unassign_one(manuscript, reviewer_id)

        before, after = await _apply(db, manuscript_id, _mutate, deadlines, now)
    except WorkflowError as err:
        return Result.failure(err)

    removed = [r for r in before.assigned_reviewers if r not in after.assigned_reviewers]
    if removed:
        await log_event_best_effort(
            db,
            AuditAction.REVIEWER_UNASSIGNED,
            actor_id=acting_user.user_id,
            target_id=manuscript_id,
            details={"reviewer_ids": removed},
        )
    await announce_recomputed_status(db, before, after)
    return Result.success(after)


def _unassign_all(manuscript: Manuscript) -> ReviewerChange | None:
    if not manuscript.assigned_reviewers and not manuscript.assigned_reviewers_meta:
        return None
    original = list(dict.fromkeys([*manuscript.original_assigned_reviewers, *manuscript.assigned_reviewers]))
    original_meta = {**manuscript.original_assigned_reviewers_meta, **manuscript.assigned_reviewers_meta}
    fields = {
        "assigned_reviewers": [],
        "assigned_reviewers_meta": {},
        "reviewer_decision_meta": {},
        "original_assigned_reviewers": original,
        "original_assigned_reviewers_meta": original_meta,
        "invitation_deadline": None,
    }
    return ReviewerChange(state=fields, patch=dict(fields))


def _unassign_one(manuscript: Manuscript, reviewer_id: str) -> ReviewerChange | None:
    meta = manuscript.assigned_reviewers_meta.get(reviewer_id)
    if meta is None:
        raise NotFound(
            f"Reviewer {reviewer_id} is not on manuscript {manuscript.manuscript_id}",
            manuscript_id=manuscript.manuscript_id,
            reviewer_id=reviewer_id,
        )
    assigned = _without(manuscript.assigned_reviewers, reviewer_id)
    original = list(dict.fromkeys([*manuscript.original_assigned_reviewers, reviewer_id]))
    change = ReviewerChange(
        state={
            "assigned_reviewers": assigned,
            "assigned_reviewers_meta": _without_key(manuscript.assigned_reviewers_meta, reviewer_id),
            "reviewer_decision_meta": _without_key(manuscript.reviewer_decision_meta, reviewer_id),
            "original_assigned_reviewers": original,
            "original_assigned_reviewers_meta": {**manuscript.original_assigned_reviewers_meta, reviewer_id: meta},
        },
        patch={
            "assigned_reviewers": assigned,
            f"assigned_reviewers_meta.{reviewer_id}": DELETE_FIELD,
            "original_assigned_reviewers": original,
            f"original_assigned_reviewers_meta.{reviewer_id}": meta,
        },
    )
    if reviewer_id in manuscript.reviewer_decision_meta:
        change.patch[f"reviewer_decision_meta.{reviewer_id}"] = DELETE_FIELD
    return change


# ---------------------------------------------------------------------------
# Invitation response
# ---------------------------------------------------------------------------

async def respond_to_invitation(
    db: aiosqlite.Connection,
    manuscript_id: str,
    acting_user: CurrentUser,
    accept: bool,
    now: datetime | None = None,
) -> Result[Manuscript]:
    """
    Accept or decline a pending invitation.

    Accepting starts the review clock (the shorter re-review clock for a
    revised version) and records an ``accept`` reviewing decision. Declining
    drops the reviewer from the assigned set; their record stays.
    """
    now = now or datetime.now(timezone.utc)
    reviewer_id = acting_user.user_id
    wanted = InvitationStatus.ACCEPTED if accept else InvitationStatus.DECLINED
    try:
        deadlines = await get_deadline_settings(db)

        def _mutate(manuscript: Manuscript) -> ReviewerChange | None:
            _require_review_active(manuscript)
            meta = manuscript.assigned_reviewers_meta.get(reviewer_id)
            if meta is not None and meta.invitation_status == wanted:
                return None
            meta = _require_assigned(manuscript, reviewer_id)
            if meta.invitation_status != InvitationStatus.PENDING:
                raise InvalidTransition(
                    f"Invitation was already {meta.invitation_status.value}",
                    manuscript_id=manuscript_id,
                    reviewer_id=reviewer_id,
                )
            if accept:
                days = deadlines.re_review_days if meta.is_re_review else deadlines.review_days
                new_meta = meta.model_copy(
                    update={
                        "invitation_status": InvitationStatus.ACCEPTED,
                        "responded_at": now,
                        "accepted_at": now,
                        "deadline": deadline_from_now(days, now),
                        "is_re_review": False,
                    }
                )
                decision = ReviewerDecision(reviewing_decision=ReviewingDecision.ACCEPT, decided_at=now)
                return ReviewerChange(
                    state={
                        "assigned_reviewers_meta": {**manuscript.assigned_reviewers_meta, reviewer_id: new_meta},
                        "reviewer_decision_meta": {**manuscript.reviewer_decision_meta, reviewer_id: decision},
                    },
                    patch={
                        f"assigned_reviewers_meta.{reviewer_id}": new_meta,
                        f"reviewer_decision_meta.{reviewer_id}": decision,
                    },
                )

            new_meta = meta.model_copy(
                update={"invitation_status": InvitationStatus.DECLINED, "responded_at": now, "declined_at": now}
            )
            assigned = _without(manuscript.assigned_reviewers, reviewer_id)
            change = ReviewerChange(
                state={
                    "assigned_reviewers": assigned,
                    "assigned_reviewers_meta": {**manuscript.assigned_reviewers_meta, reviewer_id: new_meta},
                    "reviewer_decision_meta": _without_key(manuscript.reviewer_decision_meta, reviewer_id),
                },
                patch={
                    "assigned_reviewers": assigned,
                    f"assigned_reviewers_meta.{reviewer_id}": new_meta,
                },
            )
            if reviewer_id in manuscript.reviewer_decision_meta:
                change.patch[f"reviewer_decision_meta.{reviewer_id}"] = DELETE_FIELD
            return change

        before, after = await _apply(db, manuscript_id, _mutate, deadlines, now)
    except WorkflowError as err:
        return Result.failure(err)

    if before is after:
        return Result.success(after)

    await log_event_best_effort(
        db,
        AuditAction.INVITATION_ACCEPTED if accept else AuditAction.INVITATION_DECLINED,
        actor_id=reviewer_id,
        target_id=manuscript_id,
        details={"version": after.version_number},
    )
    verb = "accepted" if accept else "declined"
    await notify(
        db,
        await admin_ids(db),
        NotificationType.REVIEWER_DECISION,
        f"Reviewer {verb} invitation: {after.title}",
        f'A peer reviewer {verb} the invitation to review "{after.title}".',
        {"manuscript_id": manuscript_id, "reviewer_id": reviewer_id, "accepted": accept},
    )
    await announce_recomputed_status(db, before, after)
    return Result.success(after)


# ---------------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------------

def parse_decision(value: str | ReviewerDecision, now: datetime, comment: str = "") -> ReviewerDecision:
    """Read a decision word from either vocabulary; unknown words are refused."""
    if isinstance(value, ReviewerDecision):
        decision = value
    else:
        decision = ReviewerDecision(decision=value, comment=comment)
    if decision.reviewing_decision is None and decision.recommendation is None:
        raise InvalidTransition(f"Unknown reviewer decision: {value!r}")
    if decision.reviewing_decision == ReviewingDecision.BACKED_OUT:
        raise InvalidTransition("Use back out to withdraw from a review")
    return decision.model_copy(update={"decided_at": decision.decided_at or now})


async def submit_reviewer_decision(
    db: aiosqlite.Connection,
    manuscript_id: str,
    acting_user: CurrentUser,
    decision: str | ReviewerDecision,
    comment: str = "",
    now: datetime | None = None,
) -> Result[Manuscript]:
    """Record the reviewer's accept/reject call or their final recommendation."""
    now = now or datetime.now(timezone.utc)
    reviewer_id = acting_user.user_id
    try:
        incoming = parse_decision(decision, now, comment)
        deadlines = await get_deadline_settings(db)

        def _mutate(manuscript: Manuscript) -> ReviewerChange | None:
            _require_review_active(manuscript)
            _require_accepted(manuscript, reviewer_id)
            current = manuscript.reviewer_decision_meta.get(reviewer_id) or ReviewerDecision()
            update: dict[str, Any] = {"decided_at": incoming.decided_at}
            if incoming.reviewing_decision is not None:
                update["reviewing_decision"] = incoming.reviewing_decision
            if incoming.recommendation is not None:
                update["recommendation"] = incoming.recommendation
            if incoming.comment:
                update["comment"] = incoming.comment
            merged = current.model_copy(update=update)
            return ReviewerChange(
                state={"reviewer_decision_meta": {**manuscript.reviewer_decision_meta, reviewer_id: merged}},
                patch={f"reviewer_decision_meta.{reviewer_id}": merged},
            )

        before, after = await _apply(db, manuscript_id, _mutate, deadlines, now)
    except WorkflowError as err:
        return Result.failure(err)

    stored = after.reviewer_decision_meta[reviewer_id]
    label = (stored.recommendation or stored.reviewing_decision).value
    await log_event_best_effort(
        db,
        AuditAction.DECISION_SUBMITTED,
        actor_id=reviewer_id,
        target_id=manuscript_id,
        details={"decision": label, "version": after.version_number},
    )
    await notify(
        db,
        await admin_ids(db),
        NotificationType.REVIEWER_DECISION,
        f"Reviewer decision on {after.title}",
        f'A peer reviewer submitted "{label}" for "{after.title}".',
        {"manuscript_id": manuscript_id, "reviewer_id": reviewer_id, "decision": label},
    )
    await announce_recomputed_status(db, before, after)
    return Result.success(after)


# ---------------------------------------------------------------------------
# Reviews
# ---------------------------------------------------------------------------

async def submit_review(
    db: aiosqlite.Connection,
    manuscript_id: str,
    acting_user: CurrentUser,
    payload: ReviewPayload,
    storage: LocalFileStorage | None = None,
    now: datetime | None = None,
) -> Result[Manuscript]:
    """File the review for the current version, then let the status catch up."""
    now = now or datetime.now(timezone.utc)
    reviewer_id = acting_user.user_id
    storage = storage or default_storage()
    stored_path: str | None = None
    try:
        if payload.review_file_bytes is not None and len(payload.review_file_bytes) > settings.workflow.max_review_file_bytes:
            raise InvalidTransition(
                "Review file is too large",
                max_bytes=settings.workflow.max_review_file_bytes,
            )
        deadlines = await get_deadline_settings(db)

        def _check(manuscript: Manuscript) -> None:
            _require_review_active(manuscript)
            _require_accepted(manuscript, reviewer_id)
            if reviewer_id in completed_reviewers(manuscript.reviewer_submissions, manuscript.version_number):
                raise InvalidTransition(
                    f"Review for version {manuscript.version_number} was already submitted",
                    manuscript_id=manuscript_id,
                    reviewer_id=reviewer_id,
                )

        snapshot, _ = await load_manuscript(db, manuscript_id)
        _check(snapshot)
        if payload.review_file_bytes is not None:
            stored_path = storage.upload(
                review_file_path(
                    manuscript_id,
                    reviewer_id,
                    snapshot.version_number,
                    payload.review_file_name or "review",
                ),
                payload.review_file_bytes,
            )

        def _mutate(manuscript: Manuscript) -> ReviewerChange | None:
            _check(manuscript)
            submission = ReviewSubmission(
                reviewer_id=reviewer_id,
                manuscript_version_number=manuscript.version_number,
                comment=payload.comment,
                review_file=stored_path,
                review_file_name=payload.review_file_name,
                completed_at=now,
            )
            submissions = [*manuscript.reviewer_submissions, submission]
            state: dict[str, Any] = {"reviewer_submissions": submissions}
            patch: dict[str, Any] = {"reviewer_submissions": submissions}
            if payload.recommendation is not None:
                current = manuscript.reviewer_decision_meta.get(reviewer_id) or ReviewerDecision()
                decision = current.model_copy(
                    update={"recommendation": payload.recommendation, "decided_at": now}
                )
                state["reviewer_decision_meta"] = {**manuscript.reviewer_decision_meta, reviewer_id: decision}
                patch[f"reviewer_decision_meta.{reviewer_id}"] = decision
            return ReviewerChange(state=state, patch=patch)

        before, after = await _apply(db, manuscript_id, _mutate, deadlines, now)
    except WorkflowError as err:
        if stored_path is not None:
            _discard_upload(storage, stored_path)
        return Result.failure(err)

    await _archive_completed_review(db, after, reviewer_id, payload.recommendation, stored_path, now)
    await bump_counter_best_effort(db, [reviewer_id], "reviews_completed")
    await log_event_best_effort(
        db,
        AuditAction.REVIEW_SUBMITTED,
        actor_id=reviewer_id,
        target_id=manuscript_id,
        details={
            "version": after.version_number,
            "recommendation": payload.recommendation.value if payload.recommendation else None,
            "has_file": stored_path is not None,
        },
    )
    await notify(
        db,
        await admin_ids(db),
        NotificationType.REVIEW_COMPLETED,
        f"Review submitted: {after.title}",
        f'A peer reviewer submitted a review for "{after.title}" (v{after.version_number}).',
        {"manuscript_id": manuscript_id, "reviewer_id": reviewer_id},
    )
    await announce_recomputed_status(db, before, after)
    return Result.success(after)


def _discard_upload(storage: LocalFileStorage, path: str) -> None:
    try:
        storage.delete(path)
    except StorageFailure:
        logger.warning("Could not remove orphaned review file %s", path, exc_info=True)


async def _archive_completed_review(
    db: aiosqlite.Connection,
    manuscript: Manuscript,
    reviewer_id: str,
    recommendation: Recommendation | None,
    review_file: str | None,
    now: datetime,
) -> None:
    submission = next(
        s
        for s in reversed(manuscript.reviewer_submissions)
        if s.reviewer_id == reviewer_id and s.manuscript_version_number == manuscript.version_number
    )
    try:
        await db.execute(
            """
            INSERT OR IGNORE INTO completed_reviews (
                manuscript_id, reviewer_id, version_number, comment, review_file, recommendation, completed_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                manuscript.manuscript_id,
                reviewer_id,
                manuscript.version_number,
                submission.comment,
                review_file,
                recommendation.value if recommendation else None,
                now.isoformat(),
            ),
        )
        await db.commit()
    except aiosqlite.Error:
        logger.warning(
            "Could not archive review of %s by %s", manuscript.manuscript_id, reviewer_id, exc_info=True
        )


async def get_completed_reviews(
    db: aiosqlite.Connection,
    reviewer_id: str,
    limit: int = 100,
) -> list[dict[str, Any]]:
    """A reviewer's archived reviews, newest first."""
    async with db.execute(
        "SELECT * FROM completed_reviews WHERE reviewer_id = ? ORDER BY completed_at DESC LIMIT ?",
        (reviewer_id, limit),
    ) as cursor:
        rows = await cursor.fetchall()
    return [dict(row) for row in rows]


# ---------------------------------------------------------------------------
# Back out
# ---------------------------------------------------------------------------

async def back_out(
    db: aiosqlite.Connection,
    manuscript_id: str,
    acting_user: CurrentUser,
    reason: str = "",
    now: datetime | None = None,
) -> Result[Manuscript]:
    """An accepted reviewer withdraws before filing their review."""
    now = now or datetime.now(timezone.utc)
    reviewer_id = acting_user.user_id
    try:
        deadlines = await get_deadline_settings(db)

        def _mutate(manuscript: Manuscript) -> ReviewerChange | None:
            _require_review_active(manuscript)
            _require_accepted(manuscript, reviewer_id)
            if reviewer_id in completed_reviewers(manuscript.reviewer_submissions, manuscript.version_number):
                raise InvalidTransition(
                    "Cannot back out after submitting a review",
                    manuscript_id=manuscript_id,
                    reviewer_id=reviewer_id,
                )
            decision = ReviewerDecision(
                reviewing_decision=ReviewingDecision.BACKED_OUT, comment=reason, decided_at=now
            )
            assigned = _without(manuscript.assigned_reviewers, reviewer_id)
            return ReviewerChange(
                state={
                    "assigned_reviewers": assigned,
                    "reviewer_decision_meta": {**manuscript.reviewer_decision_meta, reviewer_id: decision},
                },
                patch={
                    "assigned_reviewers": assigned,
                    f"reviewer_decision_meta.{reviewer_id}": decision,
                },
            )

        before, after = await _apply(db, manuscript_id, _mutate, deadlines, now)
    except WorkflowError as err:
        return Result.failure(err)

    await log_event_best_effort(
        db,
        AuditAction.REVIEWER_BACKED_OUT,
        actor_id=reviewer_id,
        target_id=manuscript_id,
        details={"reason": reason, "version": after.version_number},
    )
    await notify(
        db,
        await admin_ids(db),
        NotificationType.REVIEWER_BACKED_OUT,
        f"Reviewer backed out: {after.title}",
        f'A peer reviewer withdrew from reviewing "{after.title}".',
        {"manuscript_id": manuscript_id, "reviewer_id": reviewer_id, "reason": reason},
    )
    await announce_recomputed_status(db, before, after)
    return Result.success(after)
