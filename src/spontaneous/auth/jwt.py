"""JWT access tokens.

Stateless authentication: the token carries the user id (sub) plus the
username and email for display. Tokens are short-lived (60 min default);
there is no refresh flow, clients log in again.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from spontaneous.config import settings


class TokenError(Exception):
    """Raised when token verification fails."""


def create_access_token(
    user_id: str,
    *,
    username: Optional[str] = None,
    email: Optional[str] = None,
    expires_minutes: Optional[int] = None,
) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "type": "access",
        "iat": now,
        "exp": now + timedelta(
            minutes=expires_minutes or settings.access_token_expire_minutes
        ),
    }
    if username:
        payload["username"] = username
    if email:
        payload["email"] = email
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def verify_token(token: str) -> dict:
    """Verify and decode a JWT token.

    Returns the payload dict on success.
    Raises TokenError on failure.
    """
    try:
        payload = jwt.decode(
            token, settings.jwt_secret, algorithms=[settings.jwt_algorithm]
        )
    except jwt.ExpiredSignatureError:
        raise TokenError("Token has expired")
    except jwt.InvalidTokenError as e:
        raise TokenError(f"Invalid token: {e}")

    if payload.get("type") != "access" or not payload.get("sub"):
        raise TokenError("Not an access token")
    return payload
