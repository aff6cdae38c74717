"""MCP server: the review workflow as tools for MCP-capable assistants.

Every tool takes the acting user's ID; their role is looked up, never trusted
from the caller. Results are JSON strings: the caller's view of the
manuscript on success, an ``error`` object otherwise.
"""

from __future__ import annotations

import json
from typing import Any

import aiosqlite
from fastmcp import FastMCP

from reviewdesk.database import get_db
from reviewdesk.errors import Result
from reviewdesk.manuscript_service import create_manuscript, get_manuscript, list_manuscripts, resubmit_manuscript
from reviewdesk.models import (
    CurrentUser,
    ManuscriptIntake,
    ManuscriptStatus,
    Recommendation,
    ReviewPayload,
    UserRole,
)
from reviewdesk.notification_service import list_notifications
from reviewdesk.reviewer_service import (
    assign_reviewer,
    back_out,
    respond_to_invitation,
    submit_review,
    submit_reviewer_decision,
    unassign_reviewer,
)
from reviewdesk.transition_service import change_status
from reviewdesk.user_service import get_user
from reviewdesk.views import get_manuscript_view, pending_invitations
from reviewdesk.visibility import can_view_manuscript

mcp = FastMCP(
    "ReviewDesk",
    instructions=(
        "Manuscript peer-review tracking. Admins assign reviewers and decide outcomes; "
        "peer reviewers answer invitations and file reviews; researchers submit and resubmit. "
        "Pass your user ID as actor_id on every call."
    ),
)


def _dump(payload: Any) -> str:
    return json.dumps(payload, default=str, indent=2)


async def _actor(db: aiosqlite.Connection, actor_id: str) -> CurrentUser | None:
    user = await get_user(db, actor_id)
    return user.as_current_user() if user else None


def _render(result: Result, actor: CurrentUser) -> str:
    if result.error is not None:
        return _dump(result.error.to_dict())
    return _dump(get_manuscript_view(result.value, actor.role, actor.user_id).model_dump(mode="json"))


_UNKNOWN_ACTOR = _dump({"error": "unknown_actor", "message": "No user with that actor_id"})


# ---- Read tools ----

@mcp.tool()
async def view_manuscript(actor_id: str, manuscript_id: str) -> str:
    """Show a manuscript as the acting user may see it: status, reviewers, reviews, active deadline."""
    db = await get_db()
    try:
        actor = await _actor(db, actor_id)
        if actor is None:
            return _UNKNOWN_ACTOR
        manuscript = await get_manuscript(db, manuscript_id)
        if manuscript is None or not can_view_manuscript(manuscript, actor.role, actor.user_id):
            return _dump({"error": "not_found", "message": "Manuscript not found"})
        return _dump(get_manuscript_view(manuscript, actor.role, actor.user_id).model_dump(mode="json"))
    finally:
        await db.close()


@mcp.tool()
async def list_my_manuscripts(actor_id: str, status: str | None = None, limit: int = 20) -> str:
    """List manuscripts the acting user submitted, reviews, or (for admins) all of them."""
    db = await get_db()
    try:
        actor = await _actor(db, actor_id)
        if actor is None:
            return _UNKNOWN_ACTOR
        try:
            wanted = ManuscriptStatus(status) if status else None
        except ValueError:
            return _dump({"error": "invalid_status", "message": f"Unknown status: {status}"})
        manuscripts = await list_manuscripts(db, actor, status=wanted, limit=max(1, min(limit, 100)))
        return _dump([get_manuscript_view(m, actor.role, actor.user_id).model_dump(mode="json") for m in manuscripts])
    finally:
        await db.close()


@mcp.tool()
async def my_invitations(actor_id: str) -> str:
    """Review invitations the acting reviewer has not answered yet."""
    db = await get_db()
    try:
        actor = await _actor(db, actor_id)
        if actor is None:
            return _UNKNOWN_ACTOR
        if actor.role != UserRole.PEER_REVIEWER:
            return _dump([])
        manuscripts = await list_manuscripts(db, actor, limit=200)
        return _dump(
            [
                get_manuscript_view(m, actor.role, actor.user_id).model_dump(mode="json")
                for m in pending_invitations(manuscripts, actor.user_id)
            ]
        )
    finally:
        await db.close()


@mcp.tool()
async def my_notifications(actor_id: str, unread_only: bool = True) -> str:
    """Recent notifications for the acting user."""
    db = await get_db()
    try:
        items = await list_notifications(db, actor_id, unread_only=unread_only)
        return _dump([n.model_dump(mode="json") for n in items])
    finally:
        await db.close()


# ---- Researcher tools ----

@mcp.tool()
async def submit_manuscript(
    actor_id: str,
    title: str,
    co_author_ids: list[str] | None = None,
    file_path: str | None = None,
) -> str:
    """Submit a new manuscript; it waits in Pending until an admin accepts it for review."""
    db = await get_db()
    try:
        actor = await _actor(db, actor_id)
        if actor is None:
            return _UNKNOWN_ACTOR
        intake = ManuscriptIntake(
            submitter_id=actor.user_id,
            co_author_ids=co_author_ids or [],
            title=title,
            file_path=file_path,
        )
        accepted_by = actor if actor.is_admin else None
        return _render(await create_manuscript(db, intake, accepted_by=accepted_by), actor)
    finally:
        await db.close()


@mcp.tool()
async def resubmit_manuscript_tool(
    actor_id: str,
    manuscript_id: str,
    file_path: str | None = None,
    note: str = "",
) -> str:
    """Send a revised version after a For Revision decision."""
    db = await get_db()
    try:
        actor = await _actor(db, actor_id)
        if actor is None:
            return _UNKNOWN_ACTOR
        return _render(await resubmit_manuscript(db, manuscript_id, actor, file_path=file_path, note=note), actor)
    finally:
        await db.close()


# ---- Admin tools ----

@mcp.tool()
async def assign_reviewer_tool(actor_id: str, manuscript_id: str, reviewer_id: str) -> str:
    """Invite a peer reviewer to the manuscript's current version (admins only)."""
    db = await get_db()
    try:
        actor = await _actor(db, actor_id)
        if actor is None:
            return _UNKNOWN_ACTOR
        return _render(await assign_reviewer(db, manuscript_id, reviewer_id, actor), actor)
    finally:
        await db.close()


@mcp.tool()
async def unassign_reviewer_tool(actor_id: str, manuscript_id: str, reviewer_id: str | None = None) -> str:
    """Remove one reviewer, or all of them when reviewer_id is omitted (admins only)."""
    db = await get_db()
    try:
        actor = await _actor(db, actor_id)
        if actor is None:
            return _UNKNOWN_ACTOR
        return _render(await unassign_reviewer(db, manuscript_id, actor, reviewer_id=reviewer_id), actor)
    finally:
        await db.close()


@mcp.tool()
async def change_status_tool(actor_id: str, manuscript_id: str, status: str, note: str | None = None) -> str:
    """Move a manuscript to a new status, e.g. "For Publication" or "For Revision (Major)" (admins only)."""
    db = await get_db()
    try:
        actor = await _actor(db, actor_id)
        if actor is None:
            return _UNKNOWN_ACTOR
        try:
            target = ManuscriptStatus(status)
        except ValueError:
            return _dump({"error": "invalid_transition", "message": f"Unknown status: {status}"})
        return _render(await change_status(db, manuscript_id, target, actor, note=note), actor)
    finally:
        await db.close()


# ---- Peer reviewer tools ----

@mcp.tool()
async def respond_to_invitation_tool(actor_id: str, manuscript_id: str, accept: bool) -> str:
    """Accept or decline an invitation to review."""
    db = await get_db()
    try:
        actor = await _actor(db, actor_id)
        if actor is None:
            return _UNKNOWN_ACTOR
        return _render(await respond_to_invitation(db, manuscript_id, actor, accept), actor)
    finally:
        await db.close()


@mcp.tool()
async def submit_decision_tool(actor_id: str, manuscript_id: str, decision: str, comment: str = "") -> str:
    """Record a decision: accept / reject, or a recommendation minor / major / publication / reject."""
    db = await get_db()
    try:
        actor = await _actor(db, actor_id)
        if actor is None:
            return _UNKNOWN_ACTOR
        return _render(await submit_reviewer_decision(db, manuscript_id, actor, decision, comment=comment), actor)
    finally:
        await db.close()


@mcp.tool()
async def submit_review_tool(
    actor_id: str,
    manuscript_id: str,
    comment: str,
    recommendation: str | None = None,
) -> str:
    """File the review for the manuscript's current version."""
    db = await get_db()
    try:
        actor = await _actor(db, actor_id)
        if actor is None:
            return _UNKNOWN_ACTOR
        try:
            rec = Recommendation(recommendation) if recommendation else None
        except ValueError:
            return _dump({"error": "invalid_transition", "message": f"Unknown recommendation: {recommendation}"})
        payload = ReviewPayload(comment=comment, recommendation=rec)
        return _render(await submit_review(db, manuscript_id, actor, payload), actor)
    finally:
        await db.close()


@mcp.tool()
async def back_out_tool(actor_id: str, manuscript_id: str, reason: str = "") -> str:
    """Withdraw from a review you accepted but have not filed yet."""
    db = await get_db()
    try:
        actor = await _actor(db, actor_id)
        if actor is None:
            return _UNKNOWN_ACTOR
        return _render(await back_out(db, manuscript_id, actor, reason=reason), actor)
    finally:
        await db.close()
