"""Sync orchestrator — folders first, then message deltas for every folder.

Folder reconciliation must finish before any message sync starts, since
message rows are mapped to local folders through the freshly written folder
table. Message sync then runs over all folders, smallest first, in fixed-size
concurrent batches. The orchestrator is the only place that turns run
outcomes into the account's visible status.
"""

import asyncio
import enum
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy import select

from mailmirror.config import settings
from mailmirror.database import async_session
from mailmirror.errors import AccountNotFoundError
from mailmirror.models.account import Account, AccountStatus, utcnow
from mailmirror.models.folder import MailFolder
from mailmirror.services.folder_sync import FolderSyncResult, FolderSyncService
from mailmirror.services.message_sync import (
    DeltaSyncResult,
    MessageDeltaSyncService,
    SyncStats,
    get_sync_stats,
)

logger = logging.getLogger(__name__)

# One full sync per account at a time; later callers join the running one.
_running_syncs: dict[str, asyncio.Task] = {}


class OverallStatus(str, enum.Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


@dataclass
class FolderMessageResult:
    folder_id: int
    folder_graph_id: str
    folder_name: str
    synced: int = 0
    created: int = 0
    updated: int = 0
    deleted: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class MessageSyncSummary:
    total_folders: int = 0
    total_messages: int = 0
    created: int = 0
    updated: int = 0
    deleted: int = 0
    errors: list[str] = field(default_factory=list)
    folder_results: list[FolderMessageResult] = field(default_factory=list)


@dataclass
class SyncResult:
    account_id: str
    account_email: str = ""
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    duration_ms: int = 0
    folder_sync: FolderSyncResult = field(default_factory=FolderSyncResult)
    message_sync: MessageSyncSummary = field(default_factory=MessageSyncSummary)
    overall_status: OverallStatus = OverallStatus.SUCCESS
    errors: list[str] = field(default_factory=list)

    def mark_partial(self) -> None:
        if self.overall_status == OverallStatus.SUCCESS:
            self.overall_status = OverallStatus.PARTIAL


class SyncOrchestrator:
    """Runs full syncs for one account."""

    def __init__(self, graph, account_id: str, session_factory=async_session, batch_size: Optional[int] = None):
        self.graph = graph
        self.account_id = account_id
        self._session_factory = session_factory
        self.batch_size = max(1, batch_size or settings.folder_sync_batch_size)

    async def perform_full_sync(self) -> SyncResult:
        """Sync folders, then messages for every folder, then record the outcome.

        Raises AccountNotFoundError for an unknown account; every other
        failure is reported in the returned result. If a full sync for the
        account is already running, the caller waits for it and gets its result.
        """
        task = _running_syncs.get(self.account_id)
        if task is None:
            task = asyncio.ensure_future(self._perform_full_sync())
            _running_syncs[self.account_id] = task

            def _release(done: asyncio.Task, key=self.account_id):
                if _running_syncs.get(key) is done:
                    del _running_syncs[key]

            task.add_done_callback(_release)
        else:
            logger.info(f"[Sync Orchestrator] Sync already in progress for {self.account_id}, joining it")

        return await asyncio.shield(task)

    async def _perform_full_sync(self) -> SyncResult:
        started = time.monotonic()
        result = SyncResult(account_id=self.account_id)

        async with self._session_factory() as db:
            account = await db.get(Account, self.account_id)
            if account is None:
                raise AccountNotFoundError(self.account_id)
            result.account_email = account.email

            if account.status == AccountStatus.NEEDS_REAUTH:
                logger.warning(f"[Sync Orchestrator] {account.email} needs re-authentication, skipping sync")
                result.errors.append("Account needs re-authentication; sync skipped")
                result.overall_status = OverallStatus.FAILED
                return self._finish(result, started)

            account.transition_to(AccountStatus.SYNCING)
            await db.commit()

        try:
            await self._run(result)
        except Exception as e:
            logger.exception(f"[Sync Orchestrator] Sync for {result.account_email} failed")
            result.errors.append(f"Sync orchestration failed: {e}")
            result.overall_status = OverallStatus.FAILED

        await self._record_outcome(result)
        self._finish(result, started)

        logger.info(
            f"[Sync Orchestrator] Full sync completed in {result.duration_ms / 1000:.2f}s, "
            f"status: {result.overall_status.value}, folders: {result.folder_sync.synced}, "
            f"messages: {result.message_sync.total_messages}"
        )
        return result

    async def perform_quick_sync(self) -> SyncResult:
        # Delta tokens already make a full sync incremental.
        return await self.perform_full_sync()

    async def sync_folder(self, folder_id: int) -> DeltaSyncResult:
        """Sync a single folder's messages."""
        service = MessageDeltaSyncService(self.graph, self.account_id, folder_id, self._session_factory)
        return await service.sync_messages()

    async def get_sync_stats(self) -> SyncStats:
        return await get_sync_stats(self.account_id, self._session_factory)

    async def _run(self, result: SyncResult) -> None:
        # Step 1: Sync folders first (must be done before messages)
        logger.info(f"[Sync Orchestrator] Step 1: Syncing folders for {result.account_email}...")
        folder_result = await FolderSyncService(self.graph, self.account_id, self._session_factory).sync_folders()
        result.folder_sync = folder_result
        if folder_result.errors:
            result.errors.extend(folder_result.errors)
            result.mark_partial()

        # Step 2: Smallest folders first
        folders = await self._list_folders()
        if not folders:
            result.errors.append("No folders found to sync messages from")
            result.overall_status = OverallStatus.FAILED
            return

        logger.info(f"[Sync Orchestrator] Step 2: Syncing messages for {len(folders)} folders...")
        result.message_sync.total_folders = len(folders)

        # Step 3: Bounded fan-out, one batch at a time
        for start in range(0, len(folders), self.batch_size):
            batch = folders[start:start + self.batch_size]
            folder_results = await asyncio.gather(*(self._sync_folder_messages(f) for f in batch))
            for folder_result in folder_results:
                self._merge(result, folder_result)

        logger.info(
            f"[Sync Orchestrator] Message sync complete: {result.message_sync.total_messages} messages "
            f"across {len(folders)} folders"
        )

    async def _list_folders(self) -> list[tuple[int, str, str, int]]:
        async with self._session_factory() as db:
            rows = await db.execute(
                select(MailFolder.id, MailFolder.graph_id, MailFolder.display_name, MailFolder.total_count)
                .where(MailFolder.account_id == self.account_id)
                .order_by(MailFolder.total_count.asc(), MailFolder.id.asc())
            )
            return [tuple(row) for row in rows.all()]

    async def _sync_folder_messages(self, folder: tuple[int, str, str, int]) -> FolderMessageResult:
        folder_id, graph_id, name, total_count = folder
        outcome = FolderMessageResult(folder_id=folder_id, folder_graph_id=graph_id, folder_name=name)
        logger.debug(f"[Sync Orchestrator] Syncing messages for folder: {name} ({total_count} messages)...")

        try:
            synced = await self.sync_folder(folder_id)
        except Exception as e:
            outcome.errors.append(f"Failed to sync messages for folder {name}: {e}")
            return outcome

        outcome.synced = synced.synced
        outcome.created = synced.created
        outcome.updated = synced.updated
        outcome.deleted = synced.deleted
        outcome.errors = [f"Folder {name}: {error}" for error in synced.errors]
        return outcome

    @staticmethod
    def _merge(result: SyncResult, folder_result: FolderMessageResult) -> None:
        summary = result.message_sync
        summary.folder_results.append(folder_result)
        summary.total_messages += folder_result.synced
        summary.created += folder_result.created
        summary.updated += folder_result.updated
        summary.deleted += folder_result.deleted
        if folder_result.errors:
            summary.errors.extend(folder_result.errors)
            result.errors.extend(folder_result.errors)
            result.mark_partial()

    async def _record_outcome(self, result: SyncResult) -> None:
        """Write the run's outcome onto the account row."""
        now = utcnow()
        async with self._session_factory() as db:
            account = await db.get(Account, self.account_id)
            if account is None:
                return

            account.last_full_sync_at = now
            account.messages_synced = result.message_sync.total_messages
            if result.overall_status != OverallStatus.FAILED:
                account.initial_sync_complete = True

            if account.status == AccountStatus.NEEDS_REAUTH:
                # Escalated by the token manager mid-run; only re-auth clears it.
                logger.warning(f"[Sync Orchestrator] {account.email} now needs re-authentication")
                await db.commit()
                return

            if account.status != AccountStatus.SYNCING:
                # Another writer settled the status while this run was in flight.
                account.transition_to(AccountStatus.SYNCING)

            if result.overall_status == OverallStatus.SUCCESS:
                account.transition_to(AccountStatus.ACTIVE)
                account.status_message = None
                account.error_count = 0
            else:
                account.transition_to(AccountStatus.ERROR)
                account.status_message = "; ".join(result.errors) if result.errors else None
                account.error_count = (account.error_count or 0) + 1
                account.last_error_at = now

            await db.commit()

    @staticmethod
    def _finish(result: SyncResult, started: float) -> SyncResult:
        result.completed_at = utcnow()
        result.duration_ms = int((time.monotonic() - started) * 1000)
        return result
