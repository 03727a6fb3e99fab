"""Pydantic schemas for broadcasts and join requests.

Separate schemas for create/update/read keep the API contract explicit:
- BroadcastCreate: what you POST to publish a broadcast
- BroadcastUpdate: what you PATCH (all optional, only supplied fields change)
- BroadcastRead: what the API (and the active-listing cache) returns
- JoinDecision: the creator's accept/reject verdict
"""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, TypeAdapter


# ─── Join requests ───────────────────────────────────────


class JoinRequestRead(BaseModel):
    user_id: uuid.UUID
    status: str
    created_at: datetime
    decided_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class JoinDecision(BaseModel):
    """Creator accepts or rejects a pending request."""
    status: str = Field(..., pattern=r"^(accepted|rejected)$")


class JoinAck(BaseModel):
    message: str
    join_request: JoinRequestRead


# ─── Broadcasts ──────────────────────────────────────────


class BroadcastCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field(..., min_length=1)
    expires_at: datetime = Field(..., description="Must be in the future")


class BroadcastUpdate(BaseModel):
    """Partial update — only non-None fields are applied."""
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = Field(None, min_length=1)
    expires_at: Optional[datetime] = None


class BroadcastRead(BaseModel):
    id: uuid.UUID
    title: str
    description: str
    creator_id: uuid.UUID
    created_at: datetime
    expires_at: datetime
    status: str
    join_requests: list[JoinRequestRead] = Field(default_factory=list)

    model_config = {"from_attributes": True}


class BroadcastPage(BaseModel):
    """One page of search results plus the total match count."""
    items: list[BroadcastRead]
    total: int
    page: int
    limit: int


# Serialises the cached active listing to/from JSON
BroadcastListAdapter = TypeAdapter(list[BroadcastRead])
