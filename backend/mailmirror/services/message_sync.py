"""Message delta sync service — incremental message mirroring via Graph delta queries.

One invocation walks a delta feed for one scope (a folder or the whole
mailbox) page by page, strictly in continuation order. Each page is applied
with one bulk delete for removals and, per sub-batch of upserts, one
existence query, one bulk insert and one bulk update. The new delta link is
stored only after the final page; a run that fails part way leaves the
previous cursor in place, so the next run replays from the last good point.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy import select, func, delete, insert, update, or_
from sqlalchemy.exc import SQLAlchemyError

from mailmirror.config import settings
from mailmirror.database import async_session, dialect_insert
from mailmirror.errors import (
    DeltaTokenExpiredError,
    FolderMappingError,
    FolderNotFoundError,
    GraphAPIError,
    MailMirrorError,
)
from mailmirror.models.account import as_utc, utcnow
from mailmirror.models.folder import MailFolder
from mailmirror.models.message import Message
from mailmirror.models.sync_state import SyncState, SyncStatus, SyncScope, MESSAGES_RESOURCE
from mailmirror.services.message_mapper import map_graph_message

logger = logging.getLogger(__name__)


@dataclass
class DeltaSyncResult:
    synced: int = 0
    created: int = 0
    updated: int = 0
    deleted: int = 0
    delta_token: Optional[str] = None
    errors: list[str] = field(default_factory=list)


@dataclass
class SyncStats:
    total_messages: int
    unread_messages: int
    last_sync_at: Optional[datetime]


class MessageDeltaSyncService:
    """Delta sync for one account, scoped to a local folder id or the whole mailbox."""

    def __init__(
        self,
        graph,
        account_id: str,
        folder_id: Optional[int] = None,
        session_factory=async_session,
        batch_size: Optional[int] = None,
        max_pages: Optional[int] = None,
    ):
        self.graph = graph
        self.account_id = account_id
        self.folder_id = folder_id
        self._session_factory = session_factory
        self.batch_size = max(1, batch_size or settings.message_batch_size)
        self.max_pages = max(1, max_pages or settings.graph_max_delta_pages)

    async def sync_messages(self) -> DeltaSyncResult:
        """Run the delta feed to completion; never raises, errors are collected."""
        result = DeltaSyncResult()

        try:
            folder_map = await self._load_folder_map()
            scope = self._resolve_scope(folder_map)
            stored_token = await self._get_delta_token(scope)
        except (MailMirrorError, SQLAlchemyError) as e:
            result.errors.append(f"Message delta sync failed: {e}")
            logger.error(f"Message delta sync for {self.account_id} could not start: {e}")
            return result

        if stored_token:
            logger.info(f"Using delta token for incremental sync ({scope})")
        else:
            logger.info(f"Starting initial sync for {scope}")
        await self._set_cursor_status(scope, SyncStatus.SYNCING)

        try:
            try:
                new_token = await self._consume_delta(scope, stored_token, folder_map, result)
            except DeltaTokenExpiredError:
                if not stored_token:
                    raise
                logger.warning(f"Delta token for {scope} was rejected as expired, restarting with a full pull")
                new_token = await self._consume_delta(scope, None, folder_map, result)
        except (MailMirrorError, SQLAlchemyError) as e:
            result.errors.append(f"Delta query failed: {e}")
            logger.error(f"Delta sync for {scope} stopped, cursor left unchanged: {e}")
            await self._set_cursor_status(scope, SyncStatus.FAILED)
            return result

        await self._save_delta_token(scope, new_token)
        result.delta_token = new_token
        logger.info(
            f"Delta sync for {scope}: {result.created} created, {result.updated} updated, "
            f"{result.deleted} deleted, {len(result.errors)} errors"
        )
        return result

    async def _load_folder_map(self) -> dict[str, int]:
        """Folder graph id -> local id for the account, loaded once per run."""
        async with self._session_factory() as db:
            rows = await db.execute(
                select(MailFolder.graph_id, MailFolder.id).where(MailFolder.account_id == self.account_id)
            )
            return {graph_id: local_id for graph_id, local_id in rows.all()}

    def _resolve_scope(self, folder_map: dict[str, int]) -> SyncScope:
        if self.folder_id is None:
            return SyncScope.mailbox()
        for graph_id, local_id in folder_map.items():
            if local_id == self.folder_id:
                return SyncScope.folder(graph_id)
        raise FolderNotFoundError(self.account_id, self.folder_id)

    async def _get_delta_token(self, scope: SyncScope) -> Optional[str]:
        async with self._session_factory() as db:
            row = await db.execute(
                select(SyncState.delta_token).where(
                    SyncState.account_id == self.account_id,
                    SyncState.resource_type == scope.key,
                )
            )
            return row.scalar_one_or_none()

    async def _consume_delta(
        self,
        scope: SyncScope,
        start_link: Optional[str],
        folder_map: dict[str, int],
        result: DeltaSyncResult,
    ) -> str:
        """Walk pages in order until Graph hands back a delta link, which is returned."""
        link = start_link
        seen_links = set()
        pages = 0

        while True:
            if link:
                if link in seen_links:
                    raise GraphAPIError("Delta pagination cycle detected")
                seen_links.add(link)
            pages += 1
            if pages > self.max_pages:
                raise GraphAPIError(f"Delta pagination exceeded {self.max_pages} pages")

            page = await self.graph.get_messages_delta_page(folder_graph_id=scope.folder_graph_id, link=link)
            items = page.get("value") or []
            if not isinstance(items, list):
                raise GraphAPIError("Malformed delta payload: expected list in 'value'")
            logger.debug(f"Fetched {len(items)} messages from delta query ({scope}, page {pages})")

            await self._apply_page(items, folder_map, result)

            next_link = page.get("@odata.nextLink")
            delta_link = page.get("@odata.deltaLink")
            if next_link:
                if not isinstance(next_link, str):
                    raise GraphAPIError("Malformed delta payload: '@odata.nextLink' must be a string")
                link = next_link
                continue
            if delta_link:
                if not isinstance(delta_link, str):
                    raise GraphAPIError("Malformed delta payload: '@odata.deltaLink' must be a string")
                return delta_link
            raise GraphAPIError("Malformed delta payload: neither nextLink nor deltaLink present")

    async def _apply_page(self, items: list, folder_map: dict[str, int], result: DeltaSyncResult) -> None:
        removed_ids: list[str] = []
        upserts: dict[str, dict] = {}
        for item in items:
            if not isinstance(item, dict) or not item.get("id"):
                continue
            if "@removed" in item:
                removed_ids.append(item["id"])
            else:
                # A message can appear twice in one page; the later state wins.
                upserts[item["id"]] = item

        async with self._session_factory() as db:
            for start in range(0, len(removed_ids), self.batch_size):
                chunk = removed_ids[start:start + self.batch_size]
                deleted = await db.execute(
                    delete(Message)
                    .where(Message.account_id == self.account_id, Message.graph_id.in_(chunk))
                    .execution_options(synchronize_session=False)
                )
                result.deleted += deleted.rowcount or 0

            records = list(upserts.values())
            for start in range(0, len(records), self.batch_size):
                await self._upsert_batch(db, records[start:start + self.batch_size], folder_map, result)

            await db.commit()

        result.synced = result.created + result.updated + result.deleted

    async def _upsert_batch(self, db, batch: list[dict], folder_map: dict[str, int], result: DeltaSyncResult) -> None:
        rows = []
        for item in batch:
            try:
                rows.append(map_graph_message(item, self.account_id, folder_map))
            except FolderMappingError as e:
                result.errors.append(f"Failed to process message {e.message_graph_id}: {e}")
                logger.warning(str(e))
        if not rows:
            return

        existing = await db.execute(
            select(Message.graph_id, Message.id).where(
                Message.account_id == self.account_id,
                Message.graph_id.in_([row["graph_id"] for row in rows]),
            )
        )
        existing_ids = {graph_id: local_id for graph_id, local_id in existing.all()}

        now = utcnow()
        inserts, updates = [], []
        for row in rows:
            local_id = existing_ids.get(row["graph_id"])
            if local_id is None:
                inserts.append({**row, "created_at": now, "updated_at": now})
            else:
                updates.append({**row, "id": local_id, "updated_at": now})

        if inserts:
            await db.execute(insert(Message), inserts)
            result.created += len(inserts)
        if updates:
            await db.execute(update(Message), updates)
            result.updated += len(updates)

    async def _save_delta_token(self, scope: SyncScope, delta_token: str) -> None:
        """Replace the scope's cursor in one statement."""
        now = utcnow()
        async with self._session_factory() as db:
            stmt = dialect_insert(db, SyncState).values(
                account_id=self.account_id,
                resource_type=scope.key,
                delta_token=delta_token,
                last_sync_at=now,
                sync_status=SyncStatus.COMPLETED,
                updated_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["account_id", "resource_type"],
                set_={
                    "delta_token": delta_token,
                    "last_sync_at": now,
                    "sync_status": SyncStatus.COMPLETED,
                    "updated_at": now,
                },
            )
            await db.execute(stmt)
            await db.commit()

    async def _set_cursor_status(self, scope: SyncScope, status: SyncStatus) -> None:
        """Flag an existing cursor row; the token itself is left alone."""
        try:
            async with self._session_factory() as db:
                await db.execute(
                    update(SyncState)
                    .where(SyncState.account_id == self.account_id, SyncState.resource_type == scope.key)
                    .values(sync_status=status, updated_at=utcnow())
                )
                await db.commit()
        except SQLAlchemyError as e:
            logger.warning(f"Could not mark {scope} as {status.value}: {e}")


async def get_sync_stats(account_id: str, session_factory=async_session) -> SyncStats:
    """Message totals plus the most recent completed message cursor."""
    async with session_factory() as db:
        total = (await db.execute(
            select(func.count(Message.id)).where(Message.account_id == account_id)
        )).scalar() or 0
        unread = (await db.execute(
            select(func.count(Message.id)).where(Message.account_id == account_id, Message.is_read.is_(False))
        )).scalar() or 0
        last_sync_at = (await db.execute(
            select(func.max(SyncState.last_sync_at)).where(
                SyncState.account_id == account_id,
                SyncState.sync_status == SyncStatus.COMPLETED,
                or_(
                    SyncState.resource_type == MESSAGES_RESOURCE,
                    SyncState.resource_type.like(f"{MESSAGES_RESOURCE}:%"),
                ),
            )
        )).scalar()

    return SyncStats(total_messages=total, unread_messages=unread, last_sync_at=as_utc(last_sync_at))
