"""Deadline resolver: the single active deadline a viewer should see, plus deadline arithmetic."""

from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from enum import Enum

from reviewdesk.models import InvitationStatus, Manuscript, ManuscriptStatus, UserRole
from reviewdesk.status_engine import completed_reviewers

# No deadline badge once the outcome is settled.
DEADLINE_HIDDEN_STATUSES = frozenset(
    {
        ManuscriptStatus.FOR_PUBLICATION,
        ManuscriptStatus.REJECTED,
        ManuscriptStatus.PEER_REVIEWER_REJECTED,
        ManuscriptStatus.NON_ACCEPTANCE,
    }
)

_REVISION_STATUSES = frozenset(
    {ManuscriptStatus.FOR_REVISION_MINOR, ManuscriptStatus.FOR_REVISION_MAJOR}
)

_MIN_DATETIME = datetime.min.replace(tzinfo=timezone.utc)


class DeadlineUrgency(str, Enum):
    PLENTY = "plenty"
    MIDWAY = "midway"
    URGENT = "urgent"
    OVERDUE = "overdue"


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _latest_open_reviewer_deadline(manuscript: Manuscript) -> datetime | None:
    """Deadline of the most recently invited reviewer still owing work on this version."""
    done = completed_reviewers(manuscript.reviewer_submissions, manuscript.version_number)
    candidates: list[tuple[datetime, datetime]] = []
    for reviewer_id in manuscript.assigned_reviewers:
        meta = manuscript.assigned_reviewers_meta.get(reviewer_id)
        if meta is None or meta.deadline is None:
            continue
        if meta.invitation_status == InvitationStatus.DECLINED:
            continue
        if meta.assigned_versions and manuscript.version_number not in meta.assigned_versions:
            continue
        if reviewer_id in done:
            continue
        invited = _aware(meta.assigned_at) if meta.assigned_at else _MIN_DATETIME
        candidates.append((invited, _aware(meta.deadline)))
    if not candidates:
        return None
    return max(candidates)[1]


def resolve_active_deadline(
    manuscript: Manuscript,
    viewer_role: UserRole,
    viewer_id: str,
) -> datetime | None:
    """
    First matching rule wins:

    1. Back to Admin -> finalization deadline
    2. For Revision (Minor/Major) -> revision deadline
    3. Peer reviewer -> their own assignment deadline
    4. Admin / researcher -> latest-invited open reviewer deadline
    5. invitation or review deadline on the manuscript
    """
    status = manuscript.status
    if status in DEADLINE_HIDDEN_STATUSES:
        return None
    if status == ManuscriptStatus.BACK_TO_ADMIN:
        return manuscript.finalization_deadline
    if status in _REVISION_STATUSES:
        return manuscript.revision_deadline

    if viewer_role == UserRole.PEER_REVIEWER:
        meta = manuscript.assigned_reviewers_meta.get(viewer_id)
        if meta is not None and meta.deadline is not None:
            return meta.deadline
    else:
        latest = _latest_open_reviewer_deadline(manuscript)
        if latest is not None:
            return latest

    return manuscript.invitation_deadline or manuscript.review_deadline


def deadline_from_now(days: int, now: datetime | None = None) -> datetime:
    return (now or datetime.now(timezone.utc)) + timedelta(days=days)


def remaining_days(end: datetime, now: datetime | None = None) -> int:
    """Whole days left, rounded up; negative once overdue."""
    seconds = (_aware(end) - _aware(now or datetime.now(timezone.utc))).total_seconds()
    return math.ceil(seconds / 86_400)


def deadline_urgency(start: datetime, end: datetime, now: datetime | None = None) -> DeadlineUrgency:
    """Bucket the share of the deadline window that is left."""
    now = _aware(now or datetime.now(timezone.utc))
    start, end = _aware(start), _aware(end)
    if now >= end:
        return DeadlineUrgency.OVERDUE
    total = (end - start).total_seconds()
    if total <= 0:
        return DeadlineUrgency.URGENT
    left = (end - now).total_seconds() / total
    if left >= 0.5:
        return DeadlineUrgency.PLENTY
    if left >= 0.25:
        return DeadlineUrgency.MIDWAY
    return DeadlineUrgency.URGENT
