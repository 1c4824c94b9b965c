"""
Authentication router for signup, login, and account profile retrieval.
"""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.accounts import authenticate, create_account, deactivate_account, serialize_account
from services.clock import Clock, get_clock
from services.credits import load_account
from services.session_token import create_access_token

router = APIRouter()


class SignupRequest(BaseModel):
    email: str
    password: str
    name: Optional[str] = None


class LoginRequest(BaseModel):
    email: str
    password: str = Field(min_length=1)


class AccountPayload(BaseModel):
    id: str
    email: str
    name: Optional[str] = None
    credits: str
    is_active: bool


class TokenResponse(BaseModel):
    token: str
    expires_at: int
    user: AccountPayload


@router.post("/signup", response_model=TokenResponse, status_code=201)
async def signup(
    request: SignupRequest,
    _rate_limit: None = Depends(rate_limit("auth_signup", limit=10, window_seconds=3600)),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """Create an account with the starting credit bonus and return an access token."""
    account = await create_account(request.email, request.password, db, name=request.name, at_time=clock())
    issued = create_access_token(account.id, account.email)
    return TokenResponse(token=issued["token"], expires_at=issued["expires_at"], user=AccountPayload(**serialize_account(account)))


@router.post("/login", response_model=TokenResponse)
async def login(
    request: LoginRequest,
    _rate_limit: None = Depends(rate_limit("auth_login", limit=30, window_seconds=900)),
    db: AsyncSession = Depends(get_db),
):
    account = await authenticate(request.email, request.password, db)
    issued = create_access_token(account.id, account.email)
    return TokenResponse(token=issued["token"], expires_at=issued["expires_at"], user=AccountPayload(**serialize_account(account)))


@router.get("/me", response_model=AccountPayload)
async def get_current_account(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Get the current account profile and credit balance."""
    account = await load_account(auth.account_id, db)
    return AccountPayload(**serialize_account(account))


@router.post("/deactivate", response_model=AccountPayload)
async def deactivate(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """Soft-deactivate the calling account. History is retained."""
    account = await deactivate_account(auth.account_id, db, at_time=clock())
    return AccountPayload(**serialize_account(account))


@router.post("/logout")
async def logout(_auth: AuthContext = Depends(get_auth_context)):
    """Frontend-managed logout acknowledgment endpoint."""
    return {"message": "Logged out successfully"}
