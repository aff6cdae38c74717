"""Authentication helpers for REST API endpoints.

An API key maps to a user ID; the user's role always comes from the users
table, so a key can never grant more than its owner has. With keys not
required (development), the ``X-Actor-Id`` header is trusted instead.
"""

from __future__ import annotations

import json
from functools import lru_cache

from fastapi import Depends, Header, HTTPException, status
from pydantic import BaseModel, Field, ValidationError

from reviewdesk.config import settings
from reviewdesk.database import get_db
from reviewdesk.models import CurrentUser
from reviewdesk.user_service import get_user


class ApiKeyRecord(BaseModel):
    """Configuration record for one API key."""

    key: str = Field(min_length=8)
    user_id: str = Field(min_length=1)
    key_id: str = ""


def _normalize_records(raw: object) -> list[ApiKeyRecord]:
    records: list[ApiKeyRecord] = []

    if isinstance(raw, list):
        items = [item for item in raw if isinstance(item, dict)]
    elif isinstance(raw, dict):
        # Dict form: {"<api-key>": {"user_id": "..."}}
        items = [{"key": key, **meta} for key, meta in raw.items() if isinstance(meta, dict)]
    else:
        items = []

    for item in items:
        try:
            record = ApiKeyRecord(**item)
        except ValidationError:
            continue
        if not record.key_id:
            record.key_id = f"user:{record.user_id}"
        records.append(record)
    return records


@lru_cache(maxsize=1)
def _key_index() -> dict[str, ApiKeyRecord]:
    raw = settings.security.api_keys_json.strip()
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return {rec.key: rec for rec in _normalize_records(parsed)}


def reload_api_key_cache() -> None:
    """Clear cached API keys (useful in tests or runtime key rotation hooks)."""
    _key_index.cache_clear()


def resolve_user_id(x_api_key: str | None, x_actor_id: str | None) -> str:
    key_map = _key_index()
    if x_api_key:
        record = key_map.get(x_api_key)
        if record is not None:
            return record.user_id
        if settings.security.require_api_key:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")

    if settings.security.require_api_key:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing API key")

    actor = (x_actor_id or "").strip()
    if not actor:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-Actor-Id header is required when API keys are disabled",
        )
    return actor


async def get_current_user(
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
    x_actor_id: str | None = Header(default=None, alias="X-Actor-Id"),
) -> CurrentUser:
    """Resolve the acting user and their role for this request."""
    user_id = resolve_user_id(x_api_key, x_actor_id)
    db = await get_db()
    try:
        user = await get_user(db, user_id)
    finally:
        await db.close()
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unknown user")
    return user.as_current_user()


async def require_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"error": "permission_denied", "user_id": user.user_id, "role": user.role.value},
        )
    return user
