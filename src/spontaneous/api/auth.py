"""Accounts — sign up, sign in, who am I.

Routes:
- POST /auth/register → new account + access token (201, 409 on a taken email)
- POST /auth/login    → access token for email/password (401 otherwise)
- GET  /auth/me       → the account behind the bearer token

Tokens carry the account id as `sub`; the broadcasts API uses it as the
caller id for every creator/requester check.
"""

import uuid
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from spontaneous.auth.dependencies import CurrentUser, get_current_user
from spontaneous.auth.jwt import create_access_token
from spontaneous.auth.password import hash_password, verify_password
from spontaneous.db.engine import get_db
from spontaneous.db.models import User

router = APIRouter(prefix="/auth")

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class Credentials(BaseModel):
    email: str
    password: str


class RegisterRequest(Credentials):
    username: str = Field(min_length=1, max_length=100)
    email: str = Field(pattern=EMAIL_PATTERN)
    password: str = Field(min_length=8)


class UserRead(BaseModel):
    id: uuid.UUID
    username: str
    email: str
    created_at: datetime

    model_config = {"from_attributes": True}


class AuthResponse(BaseModel):
    user: UserRead
    access_token: str
    token_type: str = "bearer"


def _signed_in(user: User) -> AuthResponse:
    token = create_access_token(
        str(user.id), username=user.username, email=user.email
    )
    return AuthResponse(user=UserRead.model_validate(user), access_token=token)


async def _user_by_email(db: AsyncSession, email: str):
    return await db.scalar(select(User).where(User.email == email))


@router.post("/register", response_model=AuthResponse, status_code=201)
async def register(body: RegisterRequest, db: AsyncSession = Depends(get_db)):
    """Open an account; the response already contains a usable token."""
    if await _user_by_email(db, body.email) is not None:
        raise HTTPException(status_code=409, detail="Email already registered")

    user = User(
        username=body.username,
        email=body.email,
        password_hash=hash_password(body.password),
    )
    db.add(user)
    try:
        await db.commit()
    except IntegrityError:
        # Lost a race with another signup for the same email
        await db.rollback()
        raise HTTPException(status_code=409, detail="Email already registered")
    return _signed_in(user)


@router.post("/login", response_model=AuthResponse)
async def login(body: Credentials, db: AsyncSession = Depends(get_db)):
    user = await _user_by_email(db, body.email)
    if user is None or not verify_password(body.password, user.password_hash):
        raise HTTPException(status_code=401, detail="Wrong email or password")
    return _signed_in(user)


@router.get("/me", response_model=UserRead)
async def me(
    caller: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        user = await db.get(User, uuid.UUID(caller.user_id))
    except ValueError:
        user = None
    if user is None:
        raise HTTPException(status_code=404, detail="Account no longer exists")
    return user
