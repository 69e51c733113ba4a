"""Account API endpoints — connected accounts, their folders, stats and credentials."""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from mailmirror.database import get_db
from mailmirror.models.account import Account
from mailmirror.models.folder import MailFolder
from mailmirror.services.message_sync import get_sync_stats
from mailmirror.services.token_service import TokenData, token_manager

router = APIRouter(prefix="/api/accounts", tags=["accounts"])


class AccountSummary(BaseModel):
    id: str
    email: str
    display_name: Optional[str]
    status: str
    status_message: Optional[str]
    messages_synced: int
    last_full_sync_at: Optional[datetime]

    class Config:
        from_attributes = True


class FolderSummary(BaseModel):
    id: int
    graph_id: str
    parent_graph_id: Optional[str]
    display_name: str
    folder_type: str
    unread_count: int
    total_count: int
    is_hidden: bool
    is_primary: bool
    last_synced_at: Optional[datetime]

    class Config:
        from_attributes = True


class SyncStatsResponse(BaseModel):
    account_id: str
    total_messages: int
    unread_messages: int
    last_sync_at: Optional[datetime]


class TokenPayload(BaseModel):
    access_token: str
    refresh_token: str
    expires_at: datetime
    scopes: list[str] = []


async def _require_account(db: AsyncSession, account_id: str) -> Account:
    account = await db.get(Account, account_id)
    if account is None:
        raise HTTPException(status_code=404, detail=f"Account not found: {account_id}")
    return account


@router.get("/", response_model=list[AccountSummary])
async def list_accounts(db: AsyncSession = Depends(get_db)):
    result = await db.execute(select(Account).order_by(Account.created_at))
    return [
        AccountSummary(
            id=a.id,
            email=a.email,
            display_name=a.display_name,
            status=a.status.value,
            status_message=a.status_message,
            messages_synced=a.messages_synced or 0,
            last_full_sync_at=a.last_full_sync_at,
        )
        for a in result.scalars().all()
    ]


@router.get("/{account_id}/folders", response_model=list[FolderSummary])
async def list_folders(account_id: str, db: AsyncSession = Depends(get_db)):
    """Mirrored folder tree as a flat list."""
    await _require_account(db, account_id)
    result = await db.execute(
        select(MailFolder).where(MailFolder.account_id == account_id).order_by(MailFolder.display_name)
    )
    return [FolderSummary.model_validate(f) for f in result.scalars().all()]


@router.get("/{account_id}/stats", response_model=SyncStatsResponse)
async def get_account_stats(account_id: str, db: AsyncSession = Depends(get_db)):
    """Message totals and the last completed message sync."""
    await _require_account(db, account_id)
    stats = await get_sync_stats(account_id)
    return SyncStatsResponse(
        account_id=account_id,
        total_messages=stats.total_messages,
        unread_messages=stats.unread_messages,
        last_sync_at=stats.last_sync_at,
    )


@router.put("/{account_id}/tokens")
async def store_account_tokens(account_id: str, payload: TokenPayload, db: AsyncSession = Depends(get_db)):
    """Store credentials from a completed sign-in; clears a needs_reauth state."""
    await _require_account(db, account_id)
    await token_manager.store_tokens(
        account_id,
        TokenData(
            access_token=payload.access_token,
            refresh_token=payload.refresh_token,
            expires_at=payload.expires_at,
            scopes=payload.scopes,
        ),
    )
    return {"status": "stored"}


@router.delete("/{account_id}/tokens")
async def revoke_account_tokens(account_id: str, db: AsyncSession = Depends(get_db)):
    await _require_account(db, account_id)
    await token_manager.revoke_tokens(account_id)
    return {"status": "revoked"}
