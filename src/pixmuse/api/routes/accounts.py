"""Account endpoints."""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from pixmuse.api.dependencies import get_current_account
from pixmuse.models.account import Account

router = APIRouter(prefix="/api/accounts", tags=["accounts"])


class AccountResponse(BaseModel):
    id: UUID
    email: str
    balance: int
    created_at: datetime


@router.get("/me", response_model=AccountResponse)
async def get_me(account: Account = Depends(get_current_account)) -> AccountResponse:
    """Current account with its credit balance."""
    return AccountResponse(
        id=account.id,
        email=account.email,
        balance=account.balance,
        created_at=account.created_at,
    )
