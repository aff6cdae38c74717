"""Reviewer visibility filter: who may see which reviewer, decision and review.

Admins see every reviewer ever assigned. Peer reviewers only ever see
themselves. Authors only see reviewers whose feedback for a round has been
released, and never a reviewer whose input contradicts the final outcome.
"""

from __future__ import annotations

from typing import Any

from reviewdesk.models import (
    InvitationStatus,
    Manuscript,
    ManuscriptStatus,
    ReviewerAssignment,
    ReviewSubmission,
    UserRole,
)
from reviewdesk.status_engine import DecisionOutcome, canonical_submissions, decision_outcome

# Feedback for the current version reaches authors only once one of these is set.
# Every other status counts as review-active for authors.
FEEDBACK_RELEASED_STATUSES = frozenset(
    {
        ManuscriptStatus.FOR_REVISION_MINOR,
        ManuscriptStatus.FOR_REVISION_MAJOR,
        ManuscriptStatus.FOR_PUBLICATION,
        ManuscriptStatus.REJECTED,
        ManuscriptStatus.PEER_REVIEWER_REJECTED,
    }
)

# Final outcome -> the only reviewer outcome allowed to be shown next to it.
_CONSISTENT_OUTCOME = {
    ManuscriptStatus.FOR_PUBLICATION: DecisionOutcome.ACCEPTED,
    ManuscriptStatus.REJECTED: DecisionOutcome.REJECTED,
    ManuscriptStatus.PEER_REVIEWER_REJECTED: DecisionOutcome.REJECTED,
}


def is_review_active(status: ManuscriptStatus) -> bool:
    return status not in FEEDBACK_RELEASED_STATUSES


def all_reviewer_ids(manuscript: Manuscript) -> list[str]:
    """Every reviewer ever attached to the manuscript, first-seen order."""
    seen: dict[str, None] = {}
    for group in (
        manuscript.assigned_reviewers,
        manuscript.assigned_reviewers_meta,
        manuscript.original_assigned_reviewers,
        manuscript.original_assigned_reviewers_meta,
        manuscript.previous_reviewers,
        manuscript.previous_reviewers_meta,
        manuscript.reviewer_decision_meta,
        [s.reviewer_id for s in manuscript.reviewer_submissions],
    ):
        for reviewer_id in group:
            seen.setdefault(reviewer_id, None)
    return list(seen)


def reviewer_meta(manuscript: Manuscript, reviewer_id: str) -> ReviewerAssignment | None:
    """Most current assignment record for a reviewer, falling back to archived ones."""
    for source in (
        manuscript.assigned_reviewers_meta,
        manuscript.original_assigned_reviewers_meta,
        manuscript.previous_reviewers_meta,
    ):
        if reviewer_id in source:
            return source[reviewer_id]
    return None


def round_meta(manuscript: Manuscript, reviewer_id: str, version: int) -> ReviewerAssignment | None:
    """The reviewer's invitation record for one round of review."""
    if version == manuscript.version_number:
        return reviewer_meta(manuscript, reviewer_id)
    for snapshot in manuscript.submission_history:
        if snapshot.version_number == version and reviewer_id in snapshot.assignments:
            return snapshot.assignments[reviewer_id]
    return manuscript.previous_reviewers_meta.get(reviewer_id) or reviewer_meta(manuscript, reviewer_id)


def reviewer_decision(manuscript: Manuscript, reviewer_id: str) -> Any:
    """Current-round decision, else the one archived with the latest closed round."""
    if reviewer_id in manuscript.reviewer_decision_meta:
        return manuscript.reviewer_decision_meta[reviewer_id]
    for snapshot in reversed(manuscript.submission_history):
        if reviewer_id in snapshot.decisions:
            return snapshot.decisions[reviewer_id]
    return None


def _submitted_for(manuscript: Manuscript, reviewer_id: str, version: int) -> bool:
    return any(
        s.reviewer_id == reviewer_id and s.manuscript_version_number == version
        for s in canonical_submissions(manuscript.reviewer_submissions)
    )


def _contradicts_outcome(status: ManuscriptStatus, decision: Any) -> bool:
    """True when the reviewer's outcome is decided and disagrees with the final status."""
    expected = _CONSISTENT_OUTCOME.get(status)
    if expected is None:
        return False
    outcome = decision_outcome(decision)
    if outcome not in (DecisionOutcome.ACCEPTED, DecisionOutcome.REJECTED):
        return False
    return outcome != expected


def is_reviewer_visible(
    reviewer_id: str,
    meta: ReviewerAssignment | None,
    decision: Any,
    viewer_role: UserRole,
    viewer_id: str,
    manuscript: Manuscript,
    current_version: int | None = None,
) -> bool:
    """Decide whether ``viewer_id`` (acting as ``viewer_role``) may see ``reviewer_id``."""
    version = current_version or manuscript.version_number
    status = manuscript.status

    if viewer_role == UserRole.ADMIN:
        return True

    if viewer_role == UserRole.PEER_REVIEWER:
        if reviewer_id != viewer_id:
            return False
        if status in _CONSISTENT_OUTCOME and decision_outcome(decision) in (
            DecisionOutcome.ACCEPTED,
            DecisionOutcome.REJECTED,
        ):
            return not _contradicts_outcome(status, decision)
        if reviewer_id in manuscript.assigned_reviewers and meta is not None:
            if not meta.assigned_versions or version in meta.assigned_versions:
                return True
        return _submitted_for(manuscript, reviewer_id, version)

    # Researchers (authors and co-authors). Each round is judged by the
    # invitation the reviewer held in that round, not by a later re-invite.
    if _contradicts_outcome(status, decision):
        return False
    released = list(range(1, version))
    if not is_review_active(status):
        released.append(version)
    for round_version in released:
        record = meta if round_version == version else round_meta(manuscript, reviewer_id, round_version)
        if (
            record is not None
            and record.invitation_status == InvitationStatus.ACCEPTED
            and _submitted_for(manuscript, reviewer_id, round_version)
        ):
            return True
    return False


def visible_reviewer_ids(manuscript: Manuscript, viewer_role: UserRole, viewer_id: str) -> list[str]:
    return [
        reviewer_id
        for reviewer_id in all_reviewer_ids(manuscript)
        if is_reviewer_visible(
            reviewer_id,
            reviewer_meta(manuscript, reviewer_id),
            reviewer_decision(manuscript, reviewer_id),
            viewer_role,
            viewer_id,
            manuscript,
        )
    ]


def visible_submissions(
    manuscript: Manuscript,
    viewer_role: UserRole,
    viewer_id: str,
) -> list[ReviewSubmission]:
    """Canonical review submissions the viewer may read."""
    submissions = canonical_submissions(manuscript.reviewer_submissions)
    if viewer_role == UserRole.ADMIN:
        return submissions
    if viewer_role == UserRole.PEER_REVIEWER:
        return [s for s in submissions if s.reviewer_id == viewer_id]

    allowed = set(visible_reviewer_ids(manuscript, viewer_role, viewer_id))
    latest_released = not is_review_active(manuscript.status)
    return [
        s
        for s in submissions
        if s.reviewer_id in allowed
        and (
            s.manuscript_version_number < manuscript.version_number
            or (latest_released and s.manuscript_version_number == manuscript.version_number)
        )
    ]


def can_view_manuscript(manuscript: Manuscript, viewer_role: UserRole, viewer_id: str) -> bool:
    if viewer_role == UserRole.ADMIN:
        return True
    if viewer_id in manuscript.author_ids:
        return True
    if viewer_role == UserRole.PEER_REVIEWER:
        return viewer_id in all_reviewer_ids(manuscript)
    return False
