"""REST API: FastAPI endpoints over the review workflow."""

from __future__ import annotations

import base64
import binascii
from typing import Any

from fastapi import Depends, FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from reviewdesk.audit_service import get_events_by_actor, get_events_for_target
from reviewdesk.auth import get_current_user, require_admin, resolve_user_id
from reviewdesk.config import settings
from reviewdesk.database import get_db
from reviewdesk.errors import Result
from reviewdesk.manuscript_service import (
    create_manuscript,
    get_manuscript,
    list_manuscripts,
    recalculate_status,
    resubmit_manuscript,
)
from reviewdesk.middleware import RateLimitMiddleware, RequestLoggingMiddleware, RequestSizeLimitMiddleware
from reviewdesk.models import (
    AnsweredQuestion,
    AuditAction,
    CurrentUser,
    DeadlineSettings,
    ManuscriptIntake,
    ManuscriptStatus,
    Recommendation,
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
from reviewdesk.settings_service import get_deadline_settings, save_deadline_settings
from reviewdesk.storage_service import default_storage
from reviewdesk.transition_service import change_status
from reviewdesk.user_service import admin_ids, get_user, list_users, register_user
from reviewdesk.views import get_manuscript_view, pending_invitations
from reviewdesk.visibility import can_view_manuscript, visible_submissions

app = FastAPI(
    title="ReviewDesk",
    description="Manuscript submission and peer-review tracking",
    version="0.1.0",
)

app.add_middleware(RequestSizeLimitMiddleware, max_bytes=settings.server.max_request_bytes)

if settings.rate_limit.enabled:
    app.add_middleware(
        RateLimitMiddleware,
        requests_per_minute=settings.rate_limit.requests_per_minute,
    )

if settings.server.cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.server.cors_origins,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )

app.add_middleware(RequestLoggingMiddleware)

_ERROR_STATUS = {
    "not_found": 404,
    "invalid_transition": 409,
    "permission_denied": 403,
    "storage_failure": 503,
    "concurrent_modification": 409,
}


def _clamp_limit(limit: int, default: int = 50, max_value: int = 200) -> int:
    if limit <= 0:
        return default
    return min(limit, max_value)


def _unwrap(result: Result, viewer: CurrentUser) -> dict[str, Any]:
    """Raise the mapped HTTP error, or render the resulting manuscript for the caller."""
    if result.error is not None:
        raise HTTPException(_ERROR_STATUS.get(result.error.code, 400), result.error.to_dict())
    view = get_manuscript_view(result.value, viewer.role, viewer.user_id)
    return view.model_dump(mode="json")


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class UserRegisterRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320)
    first_name: str = Field(default="", max_length=120)
    middle_name: str = Field(default="", max_length=120)
    last_name: str = Field(default="", max_length=120)
    role: UserRole = UserRole.RESEARCHER
    affiliation: str = Field(default="", max_length=200)
    expertise: list[str] = Field(default_factory=list, max_length=50)


class ManuscriptCreateRequest(BaseModel):
    title: str | None = Field(default=None, max_length=500)
    co_author_ids: list[str] = Field(default_factory=list, max_length=50)
    form_id: str | None = None
    answered_questions: list[AnsweredQuestion] = Field(default_factory=list)
    file_path: str | None = None
    submitter_id: str | None = None  # admins may accept a response on a researcher's behalf


class AssignRequest(BaseModel):
    reviewer_id: str


class InvitationRequest(BaseModel):
    accept: bool


class DecisionRequest(BaseModel):
    decision: str = Field(min_length=1, max_length=40)
    comment: str = Field(default="", max_length=20_000)


class ReviewRequest(BaseModel):
    comment: str = Field(min_length=1, max_length=40_000)
    recommendation: Recommendation | None = None
    review_file_name: str | None = Field(default=None, max_length=255)
    review_file_base64: str | None = None


class BackOutRequest(BaseModel):
    reason: str = Field(default="", max_length=4_000)


class StatusChangeRequest(BaseModel):
    status: ManuscriptStatus
    note: str | None = Field(default=None, max_length=4_000)


class ResubmitRequest(BaseModel):
    file_path: str | None = None
    note: str = Field(default="", max_length=4_000)


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

@app.get("/health", tags=["meta"])
async def health():
    return {"status": "ok", "environment": settings.environment}


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

@app.post("/api/users", tags=["users"])
async def api_register_user(
    req: UserRegisterRequest,
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
    x_actor_id: str | None = Header(default=None, alias="X-Actor-Id"),
):
    db = await get_db()
    try:
        # Researchers sign themselves up; other roles need an admin, except the very first admin.
        if req.role != UserRole.RESEARCHER and await admin_ids(db):
            caller = await get_user(db, resolve_user_id(x_api_key, x_actor_id))
            if caller is None or caller.role != UserRole.ADMIN:
                raise HTTPException(403, "Only admins can create admins and peer reviewers")
        try:
            user = await register_user(db, UserCreate(**req.model_dump()))
        except ValueError as exc:
            raise HTTPException(409, str(exc)) from exc
        return user.model_dump(mode="json")
    finally:
        await db.close()


@app.get("/api/users/{user_id}", tags=["users"])
async def api_get_user(user_id: str, viewer: CurrentUser = Depends(get_current_user)):
    if not viewer.is_admin and viewer.user_id != user_id:
        raise HTTPException(403, "Not permitted")
    db = await get_db()
    try:
        user = await get_user(db, user_id)
        if user is None:
            raise HTTPException(404, "User not found")
        return user.model_dump(mode="json")
    finally:
        await db.close()


@app.get("/api/users/{user_id}/activity", tags=["users"])
async def api_user_activity(
    user_id: str,
    action: AuditAction | None = None,
    limit: int = 100,
    viewer: CurrentUser = Depends(get_current_user),
):
    """A user's own activity, e.g. every review a reviewer has filed."""
    if not viewer.is_admin and viewer.user_id != user_id:
        raise HTTPException(403, "Not permitted")
    db = await get_db()
    try:
        return await get_events_by_actor(db, user_id, action=action, limit=_clamp_limit(limit, 100, 500))
    finally:
        await db.close()


@app.get("/api/reviewers", tags=["users"])
async def api_list_reviewers(limit: int = 100, _: CurrentUser = Depends(require_admin)):
    db = await get_db()
    try:
        users = await list_users(db, role=UserRole.PEER_REVIEWER, limit=_clamp_limit(limit, 100, 500))
        return [u.model_dump(mode="json") for u in users]
    finally:
        await db.close()


@app.get("/api/reviewers/{reviewer_id}/completed-reviews", tags=["users"])
async def api_completed_reviews(reviewer_id: str, viewer: CurrentUser = Depends(get_current_user)):
    if not viewer.is_admin and viewer.user_id != reviewer_id:
        raise HTTPException(403, "Not permitted")
    db = await get_db()
    try:
        return await get_completed_reviews(db, reviewer_id)
    finally:
        await db.close()


# ---------------------------------------------------------------------------
# Manuscripts
# ---------------------------------------------------------------------------

@app.post("/api/manuscripts", tags=["manuscripts"])
async def api_create_manuscript(req: ManuscriptCreateRequest, viewer: CurrentUser = Depends(get_current_user)):
    submitter = viewer.user_id
    if req.submitter_id and req.submitter_id != viewer.user_id:
        if not viewer.is_admin:
            raise HTTPException(403, "Only admins can submit on someone else's behalf")
        submitter = req.submitter_id
    intake = ManuscriptIntake(
        submitter_id=submitter,
        co_author_ids=req.co_author_ids,
        form_id=req.form_id,
        title=req.title,
        answered_questions=req.answered_questions,
        file_path=req.file_path,
    )
    db = await get_db()
    try:
        result = await create_manuscript(db, intake, accepted_by=viewer if viewer.is_admin else None)
        return _unwrap(result, viewer)
    finally:
        await db.close()


@app.get("/api/manuscripts", tags=["manuscripts"])
async def api_list_manuscripts(
    status: ManuscriptStatus | None = None,
    limit: int = 50,
    cursor: str | None = None,
    viewer: CurrentUser = Depends(get_current_user),
):
    db = await get_db()
    try:
        manuscripts = await list_manuscripts(db, viewer, status=status, limit=_clamp_limit(limit), cursor=cursor)
        views = [get_manuscript_view(m, viewer.role, viewer.user_id).model_dump(mode="json") for m in manuscripts]
        next_cursor = manuscripts[-1].manuscript_id if len(manuscripts) == _clamp_limit(limit) else None
        return {"items": views, "next_cursor": next_cursor}
    finally:
        await db.close()


@app.get("/api/manuscripts/{manuscript_id}", tags=["manuscripts"])
async def api_get_manuscript(manuscript_id: str, viewer: CurrentUser = Depends(get_current_user)):
    db = await get_db()
    try:
        manuscript = await get_manuscript(db, manuscript_id)
        if manuscript is None or not can_view_manuscript(manuscript, viewer.role, viewer.user_id):
            raise HTTPException(404, "Manuscript not found")
        return get_manuscript_view(manuscript, viewer.role, viewer.user_id).model_dump(mode="json")
    finally:
        await db.close()


@app.get("/api/manuscripts/{manuscript_id}/reviews", tags=["manuscripts"])
async def api_manuscript_reviews(manuscript_id: str, viewer: CurrentUser = Depends(get_current_user)):
    """Reviews the caller may read, with download links for attached files."""
    db = await get_db()
    try:
        manuscript = await get_manuscript(db, manuscript_id)
    finally:
        await db.close()
    if manuscript is None or not can_view_manuscript(manuscript, viewer.role, viewer.user_id):
        raise HTTPException(404, "Manuscript not found")
    storage = default_storage()
    items = []
    for submission in visible_submissions(manuscript, viewer.role, viewer.user_id):
        item = submission.model_dump(mode="json")
        item["review_file_url"] = storage.get_url(submission.review_file) if submission.review_file else None
        items.append(item)
    return items


@app.get("/api/manuscripts/{manuscript_id}/activity", tags=["manuscripts"])
async def api_manuscript_activity(manuscript_id: str, _: CurrentUser = Depends(require_admin)):
    db = await get_db()
    try:
        return await get_events_for_target(db, manuscript_id)
    finally:
        await db.close()


@app.post("/api/manuscripts/{manuscript_id}/status", tags=["workflow"])
async def api_change_status(
    manuscript_id: str,
    req: StatusChangeRequest,
    viewer: CurrentUser = Depends(get_current_user),
):
    db = await get_db()
    try:
        result = await change_status(db, manuscript_id, req.status, viewer, note=req.note)
        return _unwrap(result, viewer)
    finally:
        await db.close()


@app.post("/api/manuscripts/{manuscript_id}/recalculate", tags=["workflow"])
async def api_recalculate(manuscript_id: str, viewer: CurrentUser = Depends(require_admin)):
    db = await get_db()
    try:
        return _unwrap(await recalculate_status(db, manuscript_id), viewer)
    finally:
        await db.close()


@app.post("/api/manuscripts/{manuscript_id}/resubmit", tags=["workflow"])
async def api_resubmit(
    manuscript_id: str,
    req: ResubmitRequest,
    viewer: CurrentUser = Depends(get_current_user),
):
    db = await get_db()
    try:
        result = await resubmit_manuscript(db, manuscript_id, viewer, file_path=req.file_path, note=req.note)
        return _unwrap(result, viewer)
    finally:
        await db.close()


# ---------------------------------------------------------------------------
# Reviewers
# ---------------------------------------------------------------------------

@app.post("/api/manuscripts/{manuscript_id}/reviewers", tags=["reviewers"])
async def api_assign_reviewer(
    manuscript_id: str,
    req: AssignRequest,
    viewer: CurrentUser = Depends(get_current_user),
):
    db = await get_db()
    try:
        return _unwrap(await assign_reviewer(db, manuscript_id, req.reviewer_id, viewer), viewer)
    finally:
        await db.close()


@app.delete("/api/manuscripts/{manuscript_id}/reviewers", tags=["reviewers"])
async def api_unassign_all(manuscript_id: str, viewer: CurrentUser = Depends(get_current_user)):
    db = await get_db()
    try:
        return _unwrap(await unassign_reviewer(db, manuscript_id, viewer), viewer)
    finally:
        await db.close()


@app.delete("/api/manuscripts/{manuscript_id}/reviewers/{reviewer_id}", tags=["reviewers"])
async def api_unassign_reviewer(
    manuscript_id: str,
    reviewer_id: str,
    viewer: CurrentUser = Depends(get_current_user),
):
    db = await get_db()
    try:
        return _unwrap(await unassign_reviewer(db, manuscript_id, viewer, reviewer_id=reviewer_id), viewer)
    finally:
        await db.close()


@app.get("/api/invitations", tags=["reviewers"])
async def api_pending_invitations(viewer: CurrentUser = Depends(get_current_user)):
    """Manuscripts waiting on the calling reviewer's answer."""
    if viewer.role != UserRole.PEER_REVIEWER:
        return []
    db = await get_db()
    try:
        manuscripts = await list_manuscripts(db, viewer, limit=200)
    finally:
        await db.close()
    return [
        get_manuscript_view(m, viewer.role, viewer.user_id).model_dump(mode="json")
        for m in pending_invitations(manuscripts, viewer.user_id)
    ]


@app.post("/api/manuscripts/{manuscript_id}/invitation", tags=["reviewers"])
async def api_respond_invitation(
    manuscript_id: str,
    req: InvitationRequest,
    viewer: CurrentUser = Depends(get_current_user),
):
    db = await get_db()
    try:
        return _unwrap(await respond_to_invitation(db, manuscript_id, viewer, req.accept), viewer)
    finally:
        await db.close()


@app.post("/api/manuscripts/{manuscript_id}/decision", tags=["reviewers"])
async def api_submit_decision(
    manuscript_id: str,
    req: DecisionRequest,
    viewer: CurrentUser = Depends(get_current_user),
):
    db = await get_db()
    try:
        result = await submit_reviewer_decision(db, manuscript_id, viewer, req.decision, comment=req.comment)
        return _unwrap(result, viewer)
    finally:
        await db.close()


@app.post("/api/manuscripts/{manuscript_id}/reviews", tags=["reviewers"])
async def api_submit_review(
    manuscript_id: str,
    req: ReviewRequest,
    viewer: CurrentUser = Depends(get_current_user),
):
    file_bytes = None
    if req.review_file_base64:
        try:
            file_bytes = base64.b64decode(req.review_file_base64, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise HTTPException(400, "review_file_base64 is not valid base64") from exc
    payload = ReviewPayload(
        comment=req.comment,
        recommendation=req.recommendation,
        review_file_name=req.review_file_name,
        review_file_bytes=file_bytes,
    )
    db = await get_db()
    try:
        return _unwrap(await submit_review(db, manuscript_id, viewer, payload), viewer)
    finally:
        await db.close()


@app.post("/api/manuscripts/{manuscript_id}/back-out", tags=["reviewers"])
async def api_back_out(
    manuscript_id: str,
    req: BackOutRequest,
    viewer: CurrentUser = Depends(get_current_user),
):
    db = await get_db()
    try:
        return _unwrap(await back_out(db, manuscript_id, viewer, reason=req.reason), viewer)
    finally:
        await db.close()


# ---------------------------------------------------------------------------
# Settings & notifications
# ---------------------------------------------------------------------------

@app.get("/api/deadline-settings", tags=["settings"])
async def api_get_deadline_settings(_: CurrentUser = Depends(get_current_user)):
    db = await get_db()
    try:
        return (await get_deadline_settings(db)).model_dump()
    finally:
        await db.close()


@app.put("/api/deadline-settings", tags=["settings"])
async def api_save_deadline_settings(req: DeadlineSettings, viewer: CurrentUser = Depends(require_admin)):
    db = await get_db()
    try:
        return (await save_deadline_settings(db, req, viewer.user_id)).model_dump()
    finally:
        await db.close()


@app.get("/api/notifications", tags=["notifications"])
async def api_list_notifications(
    unread_only: bool = False,
    limit: int = 50,
    viewer: CurrentUser = Depends(get_current_user),
):
    db = await get_db()
    try:
        items = await list_notifications(db, viewer.user_id, unread_only=unread_only, limit=_clamp_limit(limit))
        return [n.model_dump(mode="json") for n in items]
    finally:
        await db.close()


@app.post("/api/notifications/{notification_id}/read", tags=["notifications"])
async def api_mark_notification_read(notification_id: str, viewer: CurrentUser = Depends(get_current_user)):
    db = await get_db()
    try:
        if not await mark_read(db, viewer.user_id, notification_id):
            raise HTTPException(404, "Notification not found")
        return {"notification_id": notification_id, "is_read": True}
    finally:
        await db.close()
