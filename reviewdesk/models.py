"""Domain models for ReviewDesk.

Every entity in the system is defined here as a Pydantic v2 model.
These models are shared across services, storage, MCP tools, and the REST API.
A manuscript is stored as one JSON document; reviewer state lives in maps keyed
by reviewer ID so that single-reviewer updates can be written as field paths.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class ManuscriptStatus(str, Enum):
    """Workflow states of a manuscript."""

    PENDING = "Pending"
    ASSIGNING_PEER_REVIEWER = "Assigning Peer Reviewer"
    PEER_REVIEWER_ASSIGNED = "Peer Reviewer Assigned"
    PEER_REVIEWER_REVIEWING = "Peer Reviewer Reviewing"
    BACK_TO_ADMIN = "Back to Admin"
    FOR_REVISION_MINOR = "For Revision (Minor)"
    FOR_REVISION_MAJOR = "For Revision (Major)"
    FOR_PUBLICATION = "For Publication"
    REJECTED = "Rejected"
    PEER_REVIEWER_REJECTED = "Peer Reviewer Rejected"
    NON_ACCEPTANCE = "Non-Acceptance"


class UserRole(str, Enum):
    ADMIN = "Admin"
    PEER_REVIEWER = "Peer Reviewer"
    RESEARCHER = "Researcher"


class InvitationStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"


class ReviewingDecision(str, Enum):
    """Decision made while the reviewer is working on the manuscript."""

    ACCEPT = "accept"
    REJECT = "reject"
    BACKED_OUT = "backedOut"


class Recommendation(str, Enum):
    """Final recommendation filed together with a review."""

    MINOR = "minor"
    MAJOR = "major"
    PUBLICATION = "publication"
    REJECT = "reject"


class SubmissionStatus(str, Enum):
    COMPLETED = "Completed"


class AuditAction(str, Enum):
    """Actions tracked in the append-only activity log."""

    USER_REGISTERED = "user_registered"
    MANUSCRIPT_CREATED = "manuscript_created"
    MANUSCRIPT_RESUBMITTED = "manuscript_resubmitted"
    REVIEWER_ASSIGNED = "reviewer_assigned"
    REVIEWER_UNASSIGNED = "reviewer_unassigned"
    INVITATION_ACCEPTED = "invitation_accepted"
    INVITATION_DECLINED = "invitation_declined"
    DECISION_SUBMITTED = "decision_submitted"
    REVIEW_SUBMITTED = "review_submitted"
    REVIEWER_BACKED_OUT = "reviewer_backed_out"
    STATUS_CHANGED = "status_changed"
    DEADLINE_SETTINGS_UPDATED = "deadline_settings_updated"


class NotificationType(str, Enum):
    STATUS_UPDATE = "Manuscript Status Update"
    RESUBMISSION = "Manuscript Resubmission"
    NEW_SUBMISSION = "New Manuscript Submission"
    REVIEWER_ASSIGNMENT = "Peer Reviewer Assignment"
    REVIEWER_DECISION = "Peer Reviewer Decision"
    REVIEW_COMPLETED = "Review Completed"
    REVIEWER_BACKED_OUT = "Peer Reviewer Backed Out"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _now() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid.uuid4())


def _enum_or_none(enum_cls: type[Enum], value: Any) -> Any:
    """Coerce unknown decision values to None so the state machine stays total."""
    if value is None or isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

class CurrentUser(BaseModel):
    """The acting user, as resolved by the auth layer."""

    user_id: str
    role: UserRole
    email: str = ""

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


class User(BaseModel):
    """A researcher, peer reviewer, or admin with running review counters."""

    user_id: str = Field(default_factory=_uuid)
    email: str
    first_name: str = ""
    middle_name: str = ""
    last_name: str = ""
    role: UserRole = UserRole.RESEARCHER
    affiliation: str = ""
    expertise: list[str] = Field(default_factory=list)
    accepted_manuscripts: int = 0
    rejected_manuscripts: int = 0
    reviews_completed: int = 0
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    @property
    def display_name(self) -> str:
        middle = f"{self.middle_name[0]}. " if self.middle_name else ""
        return f"{self.first_name} {middle}{self.last_name}".strip()

    def as_current_user(self) -> CurrentUser:
        return CurrentUser(user_id=self.user_id, role=self.role, email=self.email)


class UserCreate(BaseModel):
    """Payload for registering a user."""

    email: str = Field(min_length=3, max_length=320)
    first_name: str = ""
    middle_name: str = ""
    last_name: str = ""
    role: UserRole = UserRole.RESEARCHER
    affiliation: str = ""
    expertise: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Reviewer records
# ---------------------------------------------------------------------------

class ReviewerAssignment(BaseModel):
    """Invitation and deadline state of one reviewer on one manuscript."""

    assigned_at: datetime = Field(default_factory=_now)
    assigned_by: str = ""
    invitation_status: InvitationStatus = InvitationStatus.PENDING
    responded_at: datetime | None = None
    accepted_at: datetime | None = None
    declined_at: datetime | None = None
    deadline: datetime | None = None
    assigned_versions: list[int] = Field(default_factory=list)
    is_re_review: bool = False

    @field_validator("invitation_status", mode="before")
    @classmethod
    def _coerce_invitation(cls, value: Any) -> Any:
        return _enum_or_none(InvitationStatus, value) or InvitationStatus.PENDING

    @model_validator(mode="after")
    def _check_response_timestamps(self) -> ReviewerAssignment:
        if self.invitation_status == InvitationStatus.ACCEPTED and self.accepted_at is None:
            self.accepted_at = self.responded_at or self.assigned_at
        if self.invitation_status == InvitationStatus.DECLINED and self.declined_at is None:
            self.declined_at = self.responded_at or self.assigned_at
        return self


class ReviewerDecision(BaseModel):
    """A reviewer's judgment, split by stage.

    ``reviewing_decision`` is set while reviewing (accept / reject / backedOut);
    ``recommendation`` is the final call filed with the review
    (minor / major / publication / reject). Records written with the single
    legacy ``decision`` key are split into the right field on load.
    """

    reviewing_decision: ReviewingDecision | None = None
    recommendation: Recommendation | None = None
    comment: str = ""
    decided_at: datetime | None = None

    @model_validator(mode="before")
    @classmethod
    def _split_legacy_decision(cls, data: Any) -> Any:
        if not isinstance(data, dict) or "decision" not in data:
            return data
        data = dict(data)
        legacy = data.pop("decision")
        if _enum_or_none(ReviewingDecision, legacy) is not None:
            data.setdefault("reviewing_decision", legacy)
        elif _enum_or_none(Recommendation, legacy) is not None:
            data.setdefault("recommendation", legacy)
        return data

    @field_validator("reviewing_decision", mode="before")
    @classmethod
    def _coerce_reviewing(cls, value: Any) -> Any:
        return _enum_or_none(ReviewingDecision, value)

    @field_validator("recommendation", mode="before")
    @classmethod
    def _coerce_recommendation(cls, value: Any) -> Any:
        return _enum_or_none(Recommendation, value)


class ReviewSubmission(BaseModel):
    """A completed review for one manuscript version."""

    reviewer_id: str
    manuscript_version_number: int = 1
    comment: str = ""
    review_file: str | None = None
    review_file_name: str | None = None
    status: SubmissionStatus = SubmissionStatus.COMPLETED
    completed_at: datetime = Field(default_factory=_now)


class ReviewPayload(BaseModel):
    """What a reviewer sends when filing a review."""

    comment: str = Field(min_length=1, max_length=40_000)
    recommendation: Recommendation | None = None
    review_file_name: str | None = None
    review_file_bytes: bytes | None = None


# ---------------------------------------------------------------------------
# Manuscript
# ---------------------------------------------------------------------------

class AnsweredQuestion(BaseModel):
    """One answered field of the submission form."""

    question: str
    answer: Any = None
    type: str = "text"


class StatusHistoryEntry(BaseModel):
    status: ManuscriptStatus
    note: str = ""
    changed_by: str = ""
    timestamp: datetime = Field(default_factory=_now)


class SubmissionSnapshot(BaseModel):
    """One version of the manuscript as submitted, plus the reviews it received."""

    version_number: int
    file_path: str | None = None
    note: str = ""
    submitted_at: datetime = Field(default_factory=_now)
    reviews: list[ReviewSubmission] = Field(default_factory=list)
    decisions: dict[str, ReviewerDecision] = Field(default_factory=dict)
    assignments: dict[str, ReviewerAssignment] = Field(default_factory=dict)  # invitations as the round closed
    closed_with_status: ManuscriptStatus | None = None


class Manuscript(BaseModel):
    """A submitted manuscript and all of its reviewer state."""

    manuscript_id: str = ""  # MS-YYYY-NNNNN, assigned on intake
    title: str = "Untitled"
    submitter_id: str
    co_author_ids: list[str] = Field(default_factory=list)
    form_id: str | None = None
    answered_questions: list[AnsweredQuestion] = Field(default_factory=list)
    status: ManuscriptStatus = ManuscriptStatus.PENDING
    version_number: int = Field(default=1, ge=1)

    assigned_reviewers: list[str] = Field(default_factory=list)
    assigned_reviewers_meta: dict[str, ReviewerAssignment] = Field(default_factory=dict)
    reviewer_decision_meta: dict[str, ReviewerDecision] = Field(default_factory=dict)
    original_assigned_reviewers: list[str] = Field(default_factory=list)
    original_assigned_reviewers_meta: dict[str, ReviewerAssignment] = Field(default_factory=dict)
    previous_reviewers: list[str] = Field(default_factory=list)
    previous_reviewers_meta: dict[str, ReviewerAssignment] = Field(default_factory=dict)

    reviewer_submissions: list[ReviewSubmission] = Field(default_factory=list)
    submission_history: list[SubmissionSnapshot] = Field(default_factory=list)
    status_history: list[StatusHistoryEntry] = Field(default_factory=list)

    invitation_deadline: datetime | None = None
    review_deadline: datetime | None = None
    revision_deadline: datetime | None = None
    finalization_deadline: datetime | None = None

    final_decision_by: str | None = None
    final_decision_at: datetime | None = None

    submitted_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    @model_validator(mode="after")
    def _assigned_have_meta(self) -> Manuscript:
        missing = [r for r in self.assigned_reviewers if r not in self.assigned_reviewers_meta]
        if missing:
            raise ValueError(f"assigned reviewers without assignment metadata: {missing}")
        return self

    @property
    def author_ids(self) -> list[str]:
        return [self.submitter_id, *[a for a in self.co_author_ids if a != self.submitter_id]]


class ManuscriptIntake(BaseModel):
    """Payload for turning an accepted form response into a manuscript."""

    submitter_id: str
    co_author_ids: list[str] = Field(default_factory=list)
    form_id: str | None = None
    title: str | None = None
    answered_questions: list[AnsweredQuestion] = Field(default_factory=list)
    file_path: str | None = None


# ---------------------------------------------------------------------------
# Settings / notifications / audit
# ---------------------------------------------------------------------------

class DeadlineSettings(BaseModel):
    """Default deadline lengths, in days, editable by admins."""

    invitation_days: int = Field(default=7, ge=1)
    review_days: int = Field(default=30, ge=1)
    re_review_days: int = Field(default=2, ge=1)
    revision_days: int = Field(default=14, ge=1)
    finalization_days: int = Field(default=5, ge=1)


class Notification(BaseModel):
    notification_id: str = Field(default_factory=_uuid)
    user_id: str
    type: str
    title: str
    message: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    is_read: bool = False
    created_at: datetime = Field(default_factory=_now)


class AuditEvent(BaseModel):
    """Append-only event for the activity log."""

    event_id: str = Field(default_factory=_uuid)
    action: AuditAction
    actor_id: str = ""
    target_id: str = ""
    target_type: str = ""
    details: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_now)


# ---------------------------------------------------------------------------
# Read model
# ---------------------------------------------------------------------------

class ReviewerSummary(BaseModel):
    """What a viewer is allowed to know about one reviewer."""

    reviewer_id: str
    invitation_status: InvitationStatus | None = None
    reviewing_decision: ReviewingDecision | None = None
    recommendation: Recommendation | None = None
    assigned_at: datetime | None = None
    deadline: datetime | None = None
    assigned_versions: list[int] = Field(default_factory=list)
    is_current: bool = False


class ManuscriptView(BaseModel):
    """The single read model the UI renders from."""

    manuscript_id: str
    title: str
    status: ManuscriptStatus
    version_number: int
    visible_reviewers: list[ReviewerSummary] = Field(default_factory=list)
    visible_submissions: list[ReviewSubmission] = Field(default_factory=list)
    active_deadline: datetime | None = None
    days_remaining: int | None = None
    deadline_urgency: str | None = None  # plenty | midway | urgent | overdue
    can_transition_to: list[ManuscriptStatus] = Field(default_factory=list)
    has_reviewer_rejection: bool = False
