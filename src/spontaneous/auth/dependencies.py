"""FastAPI auth dependencies.

These are used as Depends() in route handlers to extract the caller's
identity from the Authorization: Bearer <jwt> header. Routes pass the
resulting user id into the service layer explicitly.
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException

from spontaneous.auth.jwt import TokenError, verify_token


@dataclass(frozen=True)
class CurrentUser:
    """The authenticated user making the request."""

    user_id: str
    username: Optional[str] = None
    email: Optional[str] = None


async def get_current_user_optional(
    authorization: Optional[str] = Header(None),
) -> Optional[CurrentUser]:
    """Resolve the caller if a token was sent (None for anonymous calls).

    A token that is present but invalid is still rejected with 401 —
    sending a bad token is never the same as sending none.
    """
    if not authorization:
        return None
    if not authorization.startswith("Bearer "):
        raise HTTPException(
            status_code=401,
            detail="Expected a Bearer token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        payload = verify_token(authorization[7:])
    except TokenError as e:
        raise HTTPException(
            status_code=401,
            detail=str(e),
            headers={"WWW-Authenticate": "Bearer"},
        )
    return CurrentUser(
        user_id=payload["sub"],
        username=payload.get("username"),
        email=payload.get("email"),
    )


async def get_current_user(
    identity: Optional[CurrentUser] = Depends(get_current_user_optional),
) -> CurrentUser:
    """Require an authenticated caller (401 otherwise)."""
    if not identity:
        raise HTTPException(
            status_code=401,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return identity
