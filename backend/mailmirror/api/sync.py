"""Sync control and status API endpoints."""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from mailmirror.database import async_session
from mailmirror.errors import AccountNotFoundError
from mailmirror.models.account import Account, AccountStatus
from mailmirror.models.folder import MailFolder
from mailmirror.services.folder_sync import FolderSyncService
from mailmirror.services.graph_client import create_graph_client
from mailmirror.services.message_sync import MessageDeltaSyncService
from mailmirror.services.sync_orchestrator import SyncOrchestrator

router = APIRouter(prefix="/api/sync", tags=["sync"])


class FolderSyncResponse(BaseModel):
    synced: int
    created: int
    updated: int
    deleted: int
    errors: list[str] = []


class MessageSyncResponse(BaseModel):
    synced: int
    created: int
    updated: int
    deleted: int
    errors: list[str] = []


class FullSyncResponse(BaseModel):
    account_id: str
    account_email: str
    overall_status: str
    started_at: datetime
    completed_at: Optional[datetime]
    duration_ms: int
    folders: FolderSyncResponse
    total_folders: int
    total_messages: int
    errors: list[str] = []


class AccountSyncStatus(BaseModel):
    account_id: str
    email: str
    status: str
    status_message: Optional[str]
    error_count: int
    messages_synced: int
    initial_sync_complete: bool
    last_full_sync_at: Optional[datetime]


async def _load_account(account_id: str) -> Account:
    async with async_session() as db:
        account = await db.get(Account, account_id)
    if account is None:
        raise HTTPException(status_code=404, detail=f"Account not found: {account_id}")
    return account


def _ensure_syncable(account: Account):
    if account.status == AccountStatus.NEEDS_REAUTH:
        raise HTTPException(
            status_code=409,
            detail=account.status_message or "Account needs re-authentication",
        )


@router.post("/{account_id}", response_model=FullSyncResponse)
async def run_full_sync(account_id: str):
    """Sync the folder tree and then every folder's messages."""
    account = await _load_account(account_id)
    _ensure_syncable(account)

    async with create_graph_client(account_id) as graph:
        try:
            result = await SyncOrchestrator(graph, account_id).perform_full_sync()
        except AccountNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))

    return FullSyncResponse(
        account_id=result.account_id,
        account_email=result.account_email,
        overall_status=result.overall_status.value,
        started_at=result.started_at,
        completed_at=result.completed_at,
        duration_ms=result.duration_ms,
        folders=FolderSyncResponse(**vars(result.folder_sync)),
        total_folders=result.message_sync.total_folders,
        total_messages=result.message_sync.total_messages,
        errors=result.errors,
    )


@router.post("/{account_id}/folders", response_model=FolderSyncResponse)
async def run_folder_sync(account_id: str):
    """Reconcile the folder tree only."""
    account = await _load_account(account_id)
    _ensure_syncable(account)

    async with create_graph_client(account_id) as graph:
        result = await FolderSyncService(graph, account_id).sync_folders()
    return FolderSyncResponse(**vars(result))


@router.post("/{account_id}/messages", response_model=MessageSyncResponse)
async def run_message_sync(account_id: str, folder_id: Optional[int] = None):
    """Delta-sync one folder's messages, or the whole mailbox without ``folder_id``."""
    account = await _load_account(account_id)
    _ensure_syncable(account)

    if folder_id is not None:
        async with async_session() as db:
            folder = await db.get(MailFolder, folder_id)
        if folder is None or folder.account_id != account_id:
            raise HTTPException(status_code=404, detail=f"Folder {folder_id} not found")

    async with create_graph_client(account_id) as graph:
        result = await MessageDeltaSyncService(graph, account_id, folder_id).sync_messages()

    return MessageSyncResponse(
        synced=result.synced,
        created=result.created,
        updated=result.updated,
        deleted=result.deleted,
        errors=result.errors,
    )


@router.get("/{account_id}/status", response_model=AccountSyncStatus)
async def get_account_sync_status(account_id: str):
    """Current health and sync bookkeeping for one account."""
    account = await _load_account(account_id)
    return AccountSyncStatus(
        account_id=account.id,
        email=account.email,
        status=account.status.value,
        status_message=account.status_message,
        error_count=account.error_count or 0,
        messages_synced=account.messages_synced or 0,
        initial_sync_complete=bool(account.initial_sync_complete),
        last_full_sync_at=account.last_full_sync_at,
    )

