"""Broadcasts API — publish, browse, join, decide.

Routes:
- POST   /broadcasts                          → publish (auth)
- GET    /broadcasts/active                   → open broadcasts (cached)
- GET    /broadcasts/search                   → filtered + paginated search
- GET    /broadcasts/:id                      → one broadcast (never cached)
- PATCH  /broadcasts/:id                      → update fields (creator)
- DELETE /broadcasts/:id                      → delete (creator)
- POST   /broadcasts/:id/join                 → ask to join (auth)
- PUT    /broadcasts/:id/requests/:user_id    → accept / reject (creator)

Handlers only translate HTTP into service calls; every rule lives in
BroadcastService. Fixed paths are declared before /broadcasts/{id}.
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from spontaneous.auth.dependencies import (
    CurrentUser,
    get_current_user,
    get_current_user_optional,
)
from spontaneous.cache.active_listing import ActiveListingCache
from spontaneous.cache.connection import get_redis_optional
from spontaneous.config import settings
from spontaneous.db.engine import get_db
from spontaneous.queue.notifications import NotificationQueue
from spontaneous.schemas.broadcast import (
    BroadcastCreate,
    BroadcastPage,
    BroadcastRead,
    BroadcastUpdate,
    JoinAck,
    JoinDecision,
)
from spontaneous.services.broadcast_service import (
    AlreadyDecidedError,
    AlreadyRequestedError,
    BroadcastError,
    BroadcastExpiredError,
    BroadcastNotFoundError,
    BroadcastService,
    ForbiddenError,
    InvalidInputError,
    JoinRequestNotFoundError,
    StoreTimeoutError,
    UnauthenticatedError,
)

router = APIRouter(prefix="/broadcasts")

_STATUS_CODES: list[tuple[type[BroadcastError], int]] = [
    (InvalidInputError, 400),
    (BroadcastExpiredError, 400),
    (UnauthenticatedError, 401),
    (ForbiddenError, 403),
    (BroadcastNotFoundError, 404),
    (JoinRequestNotFoundError, 404),
    (AlreadyRequestedError, 409),
    (AlreadyDecidedError, 409),
    (StoreTimeoutError, 504),
]


def _http_error(e: BroadcastError) -> HTTPException:
    for error_type, status_code in _STATUS_CODES:
        if isinstance(e, error_type):
            return HTTPException(status_code=status_code, detail=str(e))
    return HTTPException(status_code=500, detail="Internal Server Error")


def _get_service(db: AsyncSession = Depends(get_db)) -> BroadcastService:
    redis = get_redis_optional()
    return BroadcastService(
        db=db,
        cache=ActiveListingCache(redis),
        queue=NotificationQueue(redis) if redis is not None else None,
    )


# ─── Create ─────────────────────────────────────────────


@router.post("", response_model=BroadcastRead, status_code=201)
async def create_broadcast(
    body: BroadcastCreate,
    user: CurrentUser = Depends(get_current_user),
    svc: BroadcastService = Depends(_get_service),
):
    """Publish a broadcast. expires_at must be in the future."""
    try:
        return await svc.create(
            user.user_id,
            title=body.title,
            description=body.description,
            expires_at=body.expires_at,
        )
    except BroadcastError as e:
        raise _http_error(e)


# ─── Public reads ───────────────────────────────────────


@router.get("/active", response_model=list[BroadcastRead])
async def list_active_broadcasts(svc: BroadcastService = Depends(_get_service)):
    """Broadcasts that are still open. May lag writes by the cache TTL."""
    try:
        return await svc.list_active()
    except BroadcastError as e:
        raise _http_error(e)


@router.get("/search", response_model=BroadcastPage)
async def search_broadcasts(
    keyword: Optional[str] = Query(None, description="Substring of title or description"),
    status: Optional[str] = Query(None, pattern=r"^(active|expired)$"),
    start_date: Optional[datetime] = Query(None, description="Created at or after"),
    end_date: Optional[datetime] = Query(None, description="Created at or before"),
    page: int = Query(1, ge=1),
    limit: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size),
    svc: BroadcastService = Depends(_get_service),
):
    """Search all broadcasts, newest first."""
    try:
        items, total = await svc.search(
            keyword=keyword,
            status=status,
            created_from=start_date,
            created_to=end_date,
            page=page,
            page_size=limit,
        )
    except BroadcastError as e:
        raise _http_error(e)
    return BroadcastPage(items=items, total=total, page=page, limit=limit)


@router.get("/{broadcast_id}", response_model=BroadcastRead)
async def get_broadcast(
    broadcast_id: str,
    svc: BroadcastService = Depends(_get_service),
):
    try:
        return await svc.get(broadcast_id)
    except BroadcastError as e:
        raise _http_error(e)


# ─── Creator-only writes ────────────────────────────────


@router.patch("/{broadcast_id}", response_model=BroadcastRead)
async def update_broadcast(
    broadcast_id: str,
    body: BroadcastUpdate,
    user: CurrentUser = Depends(get_current_user),
    svc: BroadcastService = Depends(_get_service),
):
    """Update title, description or expires_at (only the supplied ones)."""
    try:
        return await svc.update(
            user.user_id,
            broadcast_id,
            title=body.title,
            description=body.description,
            expires_at=body.expires_at,
        )
    except BroadcastError as e:
        raise _http_error(e)


@router.delete("/{broadcast_id}")
async def delete_broadcast(
    broadcast_id: str,
    user: CurrentUser = Depends(get_current_user),
    svc: BroadcastService = Depends(_get_service),
):
    try:
        await svc.delete(user.user_id, broadcast_id)
    except BroadcastError as e:
        raise _http_error(e)
    return {"deleted": True}


# ─── Join requests ──────────────────────────────────────


@router.post("/{broadcast_id}/join", response_model=JoinAck, status_code=201)
async def join_broadcast(
    broadcast_id: str,
    user: Optional[CurrentUser] = Depends(get_current_user_optional),
    svc: BroadcastService = Depends(_get_service),
):
    """Ask to join. The creator is notified asynchronously."""
    try:
        jr = await svc.request_join(user.user_id if user else None, broadcast_id)
    except BroadcastError as e:
        raise _http_error(e)
    return JoinAck(message="Join request sent successfully", join_request=jr)


@router.put("/{broadcast_id}/requests/{user_id}", response_model=JoinAck)
async def decide_join_request(
    broadcast_id: str,
    user_id: str,
    body: JoinDecision,
    user: CurrentUser = Depends(get_current_user),
    svc: BroadcastService = Depends(_get_service),
):
    """Creator accepts or rejects a join request."""
    try:
        jr = await svc.decide_join_request(
            user.user_id, broadcast_id, user_id, body.status
        )
    except BroadcastError as e:
        raise _http_error(e)
    return JoinAck(message=f"Join request {body.status}", join_request=jr)
