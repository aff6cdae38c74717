"""The manuscript read model: visibility, deadlines and the admin decision menu in one place."""

from __future__ import annotations

from datetime import datetime, timezone

from reviewdesk.deadlines import deadline_urgency, remaining_days, resolve_active_deadline
from reviewdesk.models import (
    CurrentUser,
    InvitationStatus,
    Manuscript,
    ManuscriptView,
    ReviewerSummary,
    UserRole,
)
from reviewdesk.status_engine import has_reviewer_rejection
from reviewdesk.transition_service import allowed_transitions
from reviewdesk.visibility import (
    reviewer_decision,
    reviewer_meta,
    visible_reviewer_ids,
    visible_submissions,
)


def _summary(manuscript: Manuscript, reviewer_id: str, viewer_role: UserRole) -> ReviewerSummary:
    meta = reviewer_meta(manuscript, reviewer_id)
    summary = ReviewerSummary(
        reviewer_id=reviewer_id,
        invitation_status=meta.invitation_status if meta else None,
        assigned_at=meta.assigned_at if meta else None,
        deadline=meta.deadline if meta else None,
        assigned_versions=list(meta.assigned_versions) if meta else [],
        is_current=reviewer_id in manuscript.assigned_reviewers,
    )
    # Authors learn who reviewed, never how each reviewer voted.
    if viewer_role == UserRole.RESEARCHER:
        return summary.model_copy(update={"deadline": None})
    decision = reviewer_decision(manuscript, reviewer_id)
    if decision is None:
        return summary
    return summary.model_copy(
        update={"reviewing_decision": decision.reviewing_decision, "recommendation": decision.recommendation}
    )


def _own_deadline_urgency(
    manuscript: Manuscript,
    viewer_role: UserRole,
    viewer_id: str,
    deadline: datetime | None,
    now: datetime,
) -> str | None:
    """Badge colour for a reviewer looking at their own clock."""
    if viewer_role != UserRole.PEER_REVIEWER or deadline is None:
        return None
    meta = manuscript.assigned_reviewers_meta.get(viewer_id)
    if meta is None or meta.deadline != deadline:
        return None
    start = meta.accepted_at or meta.assigned_at
    return deadline_urgency(start, deadline, now).value


def get_manuscript_view(
    manuscript: Manuscript,
    viewer_role: UserRole,
    viewer_id: str,
    now: datetime | None = None,
) -> ManuscriptView:
    """Everything the UI renders for one viewer of one manuscript."""
    now = now or datetime.now(timezone.utc)
    deadline = resolve_active_deadline(manuscript, viewer_role, viewer_id)
    viewer = CurrentUser(user_id=viewer_id, role=viewer_role)
    reviewers = [_summary(manuscript, r, viewer_role) for r in visible_reviewer_ids(manuscript, viewer_role, viewer_id)]
    return ManuscriptView(
        manuscript_id=manuscript.manuscript_id,
        title=manuscript.title,
        status=manuscript.status,
        version_number=manuscript.version_number,
        visible_reviewers=reviewers,
        visible_submissions=visible_submissions(manuscript, viewer_role, viewer_id),
        active_deadline=deadline,
        days_remaining=remaining_days(deadline, now) if deadline else None,
        deadline_urgency=_own_deadline_urgency(manuscript, viewer_role, viewer_id, deadline, now),
        can_transition_to=allowed_transitions(manuscript, viewer),
        has_reviewer_rejection=viewer_role == UserRole.ADMIN and has_reviewer_rejection(manuscript),
    )


def pending_invitations(manuscripts: list[Manuscript], reviewer_id: str) -> list[Manuscript]:
    """Manuscripts waiting on this reviewer's answer."""
    return [
        m
        for m in manuscripts
        if reviewer_id in m.assigned_reviewers
        and m.assigned_reviewers_meta[reviewer_id].invitation_status == InvitationStatus.PENDING
    ]
