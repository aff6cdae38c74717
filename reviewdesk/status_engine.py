"""Status computation engine: derives a manuscript's canonical status from its reviewer records.

Everything here is pure and synchronous: no I/O, no clock, no exceptions for
malformed decision values (they count as pending). Every write path that
touches reviewer state calls through ``compute_status``.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Iterable, Mapping, Sequence

from reviewdesk.models import (
    InvitationStatus,
    Manuscript,
    ManuscriptStatus,
    Recommendation,
    ReviewerDecision,
    ReviewingDecision,
    ReviewSubmission,
    SubmissionStatus,
)


class DecisionOutcome(str, Enum):
    """Collapsed reading of a reviewer's decision across both vocabularies."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    BACKED_OUT = "backed_out"


# Statuses the engine owns. Anything else is an administrative or terminal state.
DERIVABLE_STATUSES = frozenset(
    {
        ManuscriptStatus.PENDING,
        ManuscriptStatus.ASSIGNING_PEER_REVIEWER,
        ManuscriptStatus.PEER_REVIEWER_ASSIGNED,
        ManuscriptStatus.PEER_REVIEWER_REVIEWING,
        ManuscriptStatus.BACK_TO_ADMIN,
    }
)

_ACCEPTING_RECOMMENDATIONS = {
    Recommendation.MINOR,
    Recommendation.MAJOR,
    Recommendation.PUBLICATION,
}


def _as_decision(value: Any) -> ReviewerDecision | None:
    """Best-effort coercion of whatever is stored for a reviewer into a ReviewerDecision."""
    if value is None or isinstance(value, ReviewerDecision):
        return value
    if isinstance(value, str):
        # A bare vocabulary word, as older records store it.
        return ReviewerDecision(decision=value)
    if isinstance(value, Mapping):
        try:
            return ReviewerDecision.model_validate(dict(value))
        except ValueError:
            return None
    return None


def decision_outcome(value: Any) -> DecisionOutcome:
    """
    Map a stored decision to an outcome.

    A filed recommendation outranks the reviewing-stage decision: a reviewer
    who accepted the invitation to review and then recommended rejection
    counts as rejecting.
    """
    decision = _as_decision(value)
    if decision is None:
        return DecisionOutcome.PENDING
    if decision.recommendation in _ACCEPTING_RECOMMENDATIONS:
        return DecisionOutcome.ACCEPTED
    if decision.recommendation == Recommendation.REJECT:
        return DecisionOutcome.REJECTED
    if decision.reviewing_decision == ReviewingDecision.ACCEPT:
        return DecisionOutcome.ACCEPTED
    if decision.reviewing_decision == ReviewingDecision.REJECT:
        return DecisionOutcome.REJECTED
    if decision.reviewing_decision == ReviewingDecision.BACKED_OUT:
        return DecisionOutcome.BACKED_OUT
    return DecisionOutcome.PENDING


def filter_accepted_reviewers(decisions: Mapping[str, Any], reviewers: Iterable[str]) -> list[str]:
    """Reviewers whose decision is in the accepting family, in input order."""
    return [r for r in reviewers if decision_outcome(decisions.get(r)) == DecisionOutcome.ACCEPTED]


def filter_rejected_reviewers(decisions: Mapping[str, Any], reviewers: Iterable[str]) -> list[str]:
    """Reviewers whose decision is a rejection, in input order."""
    return [r for r in reviewers if decision_outcome(decisions.get(r)) == DecisionOutcome.REJECTED]


def _is_completed(submission: Any) -> bool:
    status = getattr(submission, "status", None)
    if status is None and isinstance(submission, Mapping):
        status = submission.get("status")
    return status in (SubmissionStatus.COMPLETED, SubmissionStatus.COMPLETED.value)


def _field(submission: Any, name: str) -> Any:
    if isinstance(submission, Mapping):
        return submission.get(name)
    return getattr(submission, name, None)


def completed_reviewers(submissions: Sequence[Any], version: int | None = None) -> set[str]:
    """IDs of reviewers holding a Completed submission (for ``version`` when given)."""
    done: set[str] = set()
    for sub in submissions:
        if not _is_completed(sub):
            continue
        if version is not None and _field(sub, "manuscript_version_number") != version:
            continue
        reviewer_id = _field(sub, "reviewer_id")
        if reviewer_id:
            done.add(reviewer_id)
    return done


def canonical_submissions(submissions: Sequence[ReviewSubmission]) -> list[ReviewSubmission]:
    """One Completed submission per (reviewer, version); the latest one wins."""
    latest: dict[tuple[str, int], ReviewSubmission] = {}
    for sub in submissions:
        if sub.status != SubmissionStatus.COMPLETED:
            continue
        key = (sub.reviewer_id, sub.manuscript_version_number)
        held = latest.get(key)
        if held is None or sub.completed_at >= held.completed_at:
            latest[key] = sub
    return sorted(latest.values(), key=lambda s: (s.manuscript_version_number, s.completed_at))


def compute_status(
    decisions: Mapping[str, Any],
    assigned_reviewers: Iterable[str],
    submissions: Sequence[Any],
    original_reviewers: Iterable[str] = (),
    version: int | None = None,
) -> ManuscriptStatus:
    """
    Derive the canonical status from reviewer decisions and submissions.

    Rules, in order:
    - nobody assigned -> Assigning Peer Reviewer
    - every reviewer decided and every accepting current reviewer has a
      Completed submission -> Back to Admin; decided but still writing ->
      Peer Reviewer Reviewing
    - some reviewer accepted or rejected -> Peer Reviewer Reviewing
    - otherwise -> Peer Reviewer Assigned

    Original reviewers only take part in the "all decided" check while they
    still carry a decision entry. Rejecting and backed-out reviewers are not
    expected to file a review.
    """
    assigned = list(dict.fromkeys(assigned_reviewers))
    if not assigned:
        return ManuscriptStatus.ASSIGNING_PEER_REVIEWER

    reviewers = list(assigned)
    for reviewer_id in original_reviewers:
        if reviewer_id in decisions and reviewer_id not in reviewers:
            reviewers.append(reviewer_id)

    outcomes = {r: decision_outcome(decisions.get(r)) for r in reviewers}

    if all(o != DecisionOutcome.PENDING for o in outcomes.values()):
        done = completed_reviewers(submissions, version)
        expected = [r for r in assigned if outcomes[r] == DecisionOutcome.ACCEPTED]
        if all(r in done for r in expected):
            return ManuscriptStatus.BACK_TO_ADMIN
        return ManuscriptStatus.PEER_REVIEWER_REVIEWING

    if any(o in (DecisionOutcome.ACCEPTED, DecisionOutcome.REJECTED) for o in outcomes.values()):
        return ManuscriptStatus.PEER_REVIEWER_REVIEWING

    return ManuscriptStatus.PEER_REVIEWER_ASSIGNED


def compute_manuscript_status(manuscript: Manuscript) -> ManuscriptStatus:
    """``compute_status`` over a manuscript snapshot, scoped to its current version."""
    return compute_status(
        manuscript.reviewer_decision_meta,
        manuscript.assigned_reviewers,
        manuscript.reviewer_submissions,
        original_reviewers=manuscript.original_assigned_reviewers,
        version=manuscript.version_number,
    )


def check_all_reviews_completed(manuscript: Manuscript) -> bool:
    """True when every active assigned reviewer filed a Completed review for the current version."""
    if not manuscript.assigned_reviewers:
        return False
    done = completed_reviewers(manuscript.reviewer_submissions, manuscript.version_number)
    for reviewer_id in manuscript.assigned_reviewers:
        meta = manuscript.assigned_reviewers_meta.get(reviewer_id)
        if meta is not None and meta.invitation_status == InvitationStatus.DECLINED:
            continue
        outcome = decision_outcome(manuscript.reviewer_decision_meta.get(reviewer_id))
        if outcome in (DecisionOutcome.REJECTED, DecisionOutcome.BACKED_OUT):
            continue
        if reviewer_id not in done:
            return False
    return True


def has_reviewer_rejection(manuscript: Manuscript) -> bool:
    reviewers = {*manuscript.assigned_reviewers, *manuscript.reviewer_decision_meta}
    return bool(filter_rejected_reviewers(manuscript.reviewer_decision_meta, sorted(reviewers)))


def has_pending_invitations(manuscript: Manuscript) -> bool:
    return any(
        manuscript.assigned_reviewers_meta[r].invitation_status == InvitationStatus.PENDING
        for r in manuscript.assigned_reviewers
    )
