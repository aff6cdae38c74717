"""Status transition orchestrator: admin-driven status changes and their side effects.

``change_status`` validates guards against a fresh snapshot, computes every
reviewer-set and deadline change for the target status in one plan, and
writes the plan as a single compare-and-swap update. Reviewer counters,
notifications and the activity log follow the committed write on a
best-effort basis.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import aiosqlite

from reviewdesk.audit_service import log_event_best_effort
from reviewdesk.database import patch_document, retry_on_conflict
from reviewdesk.deadlines import DEADLINE_HIDDEN_STATUSES, deadline_from_now
from reviewdesk.errors import InvalidTransition, PermissionDenied, Result, WorkflowError
from reviewdesk.manuscript_service import history_entry, load_manuscript
from reviewdesk.models import (
    AuditAction,
    CurrentUser,
    DeadlineSettings,
    InvitationStatus,
    Manuscript,
    ManuscriptStatus,
    NotificationType,
    UserRole,
)
from reviewdesk.notification_service import notify, status_message
from reviewdesk.settings_service import get_deadline_settings
from reviewdesk.status_engine import (
    check_all_reviews_completed,
    filter_accepted_reviewers,
    filter_rejected_reviewers,
    has_pending_invitations,
)
from reviewdesk.user_service import bump_counter_best_effort

logger = logging.getLogger("reviewdesk.transitions")

_DECISIONS = [
    ManuscriptStatus.BACK_TO_ADMIN,
    ManuscriptStatus.FOR_REVISION_MINOR,
    ManuscriptStatus.FOR_REVISION_MAJOR,
    ManuscriptStatus.FOR_PUBLICATION,
    ManuscriptStatus.REJECTED,
    ManuscriptStatus.PEER_REVIEWER_REJECTED,
]

# The decision menu offered to admins from each status.
ADMIN_TRANSITIONS: dict[ManuscriptStatus, list[ManuscriptStatus]] = {
    ManuscriptStatus.PENDING: [ManuscriptStatus.ASSIGNING_PEER_REVIEWER, ManuscriptStatus.NON_ACCEPTANCE],
    ManuscriptStatus.ASSIGNING_PEER_REVIEWER: [ManuscriptStatus.NON_ACCEPTANCE],
    ManuscriptStatus.PEER_REVIEWER_ASSIGNED: [],
    ManuscriptStatus.PEER_REVIEWER_REVIEWING: _DECISIONS,
    ManuscriptStatus.BACK_TO_ADMIN: _DECISIONS[1:],
    ManuscriptStatus.FOR_REVISION_MINOR: [ManuscriptStatus.REJECTED],
    ManuscriptStatus.FOR_REVISION_MAJOR: [ManuscriptStatus.REJECTED],
    ManuscriptStatus.FOR_PUBLICATION: [],
    ManuscriptStatus.REJECTED: [],
    ManuscriptStatus.PEER_REVIEWER_REJECTED: [],
    ManuscriptStatus.NON_ACCEPTANCE: [],
}

_FINAL_DECISIONS = frozenset({ManuscriptStatus.FOR_PUBLICATION, ManuscriptStatus.REJECTED})

_REVIEWER_FACING = frozenset(
    {
        ManuscriptStatus.FOR_REVISION_MINOR,
        ManuscriptStatus.FOR_REVISION_MAJOR,
        ManuscriptStatus.FOR_PUBLICATION,
        ManuscriptStatus.REJECTED,
        ManuscriptStatus.PEER_REVIEWER_REJECTED,
    }
)


@dataclass
class TransitionPlan:
    fields: dict[str, Any] = field(default_factory=dict)
    counter: str | None = None
    counted_reviewers: list[str] = field(default_factory=list)
    notify_reviewers: list[str] = field(default_factory=list)


def allowed_transitions(manuscript: Manuscript, viewer: CurrentUser | None = None) -> list[ManuscriptStatus]:
    """Statuses an admin could move the manuscript to right now."""
    if viewer is not None and viewer.role != UserRole.ADMIN:
        return []
    if has_pending_invitations(manuscript):
        return []
    return [
        target
        for target in ADMIN_TRANSITIONS.get(manuscript.status, [])
        if target != ManuscriptStatus.BACK_TO_ADMIN or check_all_reviews_completed(manuscript)
    ]


def _keep_reviewers(manuscript: Manuscript, keep: list[str]) -> dict[str, Any]:
    """Narrow the assigned set to ``keep`` and archive the full assignment."""
    original = list(dict.fromkeys([*manuscript.original_assigned_reviewers, *manuscript.assigned_reviewers]))
    return {
        "assigned_reviewers": keep,
        "assigned_reviewers_meta": {r: manuscript.assigned_reviewers_meta[r] for r in keep},
        "original_assigned_reviewers": original,
        "original_assigned_reviewers_meta": {
            **manuscript.original_assigned_reviewers_meta,
            **manuscript.assigned_reviewers_meta,
        },
    }


def plan_transition(
    manuscript: Manuscript,
    new_status: ManuscriptStatus,
    changed_by: str,
    deadlines: DeadlineSettings,
    now: datetime,
    note: str | None = None,
) -> TransitionPlan:
    """Every field change the target status implies, computed from one snapshot."""
    assigned = list(manuscript.assigned_reviewers)
    decisions = manuscript.reviewer_decision_meta
    plan = TransitionPlan(
        fields={
            "status": new_status,
            "status_history": [
                *manuscript.status_history,
                history_entry(new_status, changed_by, now, note or ""),
            ],
        }
    )
    if manuscript.status == ManuscriptStatus.BACK_TO_ADMIN:
        plan.fields["finalization_deadline"] = None

    if new_status == ManuscriptStatus.FOR_PUBLICATION:
        accepted = filter_accepted_reviewers(decisions, assigned)
        plan.fields.update(_keep_reviewers(manuscript, accepted))
        plan.counter = "accepted_manuscripts"
        plan.counted_reviewers = accepted
    elif new_status == ManuscriptStatus.PEER_REVIEWER_REJECTED:
        rejected = filter_rejected_reviewers(decisions, assigned)
        plan.fields.update(_keep_reviewers(manuscript, rejected))
        plan.counter = "rejected_manuscripts"
        plan.counted_reviewers = rejected
    elif new_status == ManuscriptStatus.FOR_REVISION_MINOR:
        plan.fields.update(_keep_reviewers(manuscript, []))
        plan.fields["revision_deadline"] = deadline_from_now(deadlines.revision_days, now)
        plan.fields["finalization_deadline"] = None
    elif new_status == ManuscriptStatus.FOR_REVISION_MAJOR:
        plan.fields.update(_keep_reviewers(manuscript, filter_accepted_reviewers(decisions, assigned)))
        plan.fields["revision_deadline"] = deadline_from_now(deadlines.revision_days, now)
        plan.fields["finalization_deadline"] = None
    elif new_status == ManuscriptStatus.BACK_TO_ADMIN:
        plan.fields["finalization_deadline"] = deadline_from_now(deadlines.finalization_days, now)
        plan.fields["revision_deadline"] = None

    if new_status in DEADLINE_HIDDEN_STATUSES:
        plan.fields["revision_deadline"] = None
        plan.fields["finalization_deadline"] = None
    if new_status in _FINAL_DECISIONS:
        plan.fields["invitation_deadline"] = None
        plan.fields["review_deadline"] = None
        plan.fields["final_decision_by"] = changed_by
        plan.fields["final_decision_at"] = now

    if new_status in _REVIEWER_FACING:
        plan.notify_reviewers = assigned
    return plan


def _check_guards(manuscript: Manuscript, new_status: ManuscriptStatus) -> None:
    pending = [
        r
        for r in manuscript.assigned_reviewers
        if manuscript.assigned_reviewers_meta[r].invitation_status == InvitationStatus.PENDING
    ]
    if pending:
        raise InvalidTransition(
            "Reviewer invitations are still pending",
            manuscript_id=manuscript.manuscript_id,
            pending_reviewers=pending,
        )
    if new_status == ManuscriptStatus.BACK_TO_ADMIN and not check_all_reviews_completed(manuscript):
        raise InvalidTransition(
            "Not every active reviewer has submitted a review",
            manuscript_id=manuscript.manuscript_id,
        )


async def change_status(
    db: aiosqlite.Connection,
    manuscript_id: str,
    new_status: ManuscriptStatus,
    acting_user: CurrentUser,
    note: str | None = None,
    now: datetime | None = None,
) -> Result[Manuscript]:
    """
    Move a manuscript to ``new_status`` on an admin's behalf.

    Fails with NotFound, PermissionDenied or InvalidTransition without
    writing anything. Re-applying the status the manuscript already has is
    a successful no-op.
    """
    now = now or datetime.now(timezone.utc)
    try:
        deadlines = await get_deadline_settings(db)

        async def _attempt() -> tuple[Manuscript, Manuscript, TransitionPlan | None]:
            manuscript, revision = await load_manuscript(db, manuscript_id)
            if not acting_user.is_admin:
                raise PermissionDenied(
                    "Only admins can change a manuscript's status",
                    manuscript_id=manuscript_id,
                    actor_id=acting_user.user_id,
                )
            if manuscript.status == new_status:
                return manuscript, manuscript, None
            _check_guards(manuscript, new_status)
            plan = plan_transition(manuscript, new_status, acting_user.user_id, deadlines, now, note)
            await patch_document(db, manuscript_id, plan.fields, expected_revision=revision)
            return manuscript, manuscript.model_copy(update=plan.fields), plan

        before, after, plan = await retry_on_conflict(_attempt)
    except WorkflowError as err:
        logger.info("Status change of %s to %s refused: %s", manuscript_id, new_status.value, err.message)
        return Result.failure(err)

    if plan is None:
        return Result.success(after)

    logger.info(
        "Manuscript %s: %s -> %s by %s",
        manuscript_id,
        before.status.value,
        new_status.value,
        acting_user.user_id,
    )
    if plan.counter and plan.counted_reviewers:
        await bump_counter_best_effort(db, plan.counted_reviewers, plan.counter)

    metadata = {
        "manuscript_id": manuscript_id,
        "old_status": before.status.value,
        "new_status": new_status.value,
    }
    await notify(
        db,
        after.author_ids,
        NotificationType.STATUS_UPDATE,
        f'Status update for manuscript "{after.title}"',
        status_message(new_status),
        metadata,
    )
    if plan.notify_reviewers:
        await notify(
            db,
            plan.notify_reviewers,
            NotificationType.STATUS_UPDATE,
            f'Manuscript "{after.title}" decided',
            f'The manuscript "{after.title}" you reviewed is now {new_status.value}.',
            metadata,
        )
    await log_event_best_effort(
        db,
        AuditAction.STATUS_CHANGED,
        actor_id=acting_user.user_id,
        target_id=manuscript_id,
        details={**metadata, "note": note or ""},
    )
    return Result.success(after)
