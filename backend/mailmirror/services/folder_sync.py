"""Folder sync service — mirrors the remote folder tree into account_folders.

Every run is a full reconciliation: the whole tree is fetched, compared with
the local rows, and local rows are created, updated or deleted to match.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from sqlalchemy import select, delete
from sqlalchemy.exc import SQLAlchemyError

from mailmirror.database import async_session, dialect_insert
from mailmirror.errors import MailMirrorError
from mailmirror.models.account import utcnow
from mailmirror.models.folder import MailFolder, folder_type_for
from mailmirror.models.sync_state import SyncState, SyncStatus, SyncScope

logger = logging.getLogger(__name__)

# Fields whose change warrants a write; anything else is refreshed only alongside them.
TRACKED_FIELDS = ("display_name", "parent_graph_id", "unread_count", "total_count", "is_hidden")


@dataclass
class FolderSyncResult:
    synced: int = 0
    created: int = 0
    updated: int = 0
    deleted: int = 0
    errors: list[str] = field(default_factory=list)


def folder_values(remote: dict) -> dict:
    """Column values for a Graph mailFolder resource."""
    display_name = remote.get("displayName") or ""
    return {
        "display_name": display_name,
        "folder_type": folder_type_for(display_name),
        "parent_graph_id": remote.get("parentFolderId") or None,
        "child_folder_count": int(remote.get("childFolderCount") or 0),
        "unread_count": int(remote.get("unreadItemCount") or 0),
        "total_count": int(remote.get("totalItemCount") or 0),
        "is_hidden": bool(remote.get("isHidden")),
    }


class FolderSyncService:
    """Reconciles one account's folders against Graph."""

    def __init__(self, graph, account_id: str, session_factory=async_session):
        self.graph = graph
        self.account_id = account_id
        self._session_factory = session_factory

    async def sync_folders(self) -> FolderSyncResult:
        """Sync all folders for the account; never raises, errors are collected."""
        result = FolderSyncResult()

        try:
            remote_folders, failed_parents = await self.fetch_all_folders(result.errors)
        except MailMirrorError as e:
            result.errors.append(f"Failed to fetch folders from Graph API: {e}")
            logger.error(f"Folder sync for {self.account_id} aborted: {e}")
            return result

        try:
            await self._reconcile(remote_folders, failed_parents, result)
        except SQLAlchemyError as e:
            result.errors.append(f"Folder sync failed: {e}")
            logger.error(f"Folder reconciliation for {self.account_id} failed: {e}")
            return result

        logger.info(
            f"Folder sync for {self.account_id}: {result.synced} folders "
            f"({result.created} created, {result.updated} updated, {result.deleted} deleted, "
            f"{len(result.errors)} errors)"
        )
        return result

    async def fetch_all_folders(self, errors: list[str]) -> tuple[list[dict], set[str]]:
        """Fetch the complete tree, depth first, as a flat list.

        A failure listing the top level raises. A failure listing one folder's
        children is recorded in ``errors`` and only that subtree is missing;
        the ids of such folders are returned so their descendants are not
        tombstoned.
        """
        top_level = await self.graph.list_mail_folders()

        collected: list[dict] = []
        visited: set[str] = set()
        failed_parents: set[str] = set()
        for folder in top_level:
            await self._collect(folder, collected, visited, failed_parents, errors)
        return collected, failed_parents

    async def _collect(self, folder: dict, collected, visited, failed_parents, errors) -> None:
        folder_id = folder.get("id")
        if not folder_id:
            return
        if folder_id in visited:
            logger.warning(f"Folder {folder_id} seen twice while walking the tree, skipping")
            return
        visited.add(folder_id)
        collected.append(folder)

        if int(folder.get("childFolderCount") or 0) <= 0:
            return

        try:
            children = await self.graph.list_child_folders(folder_id)
        except MailMirrorError as e:
            failed_parents.add(folder_id)
            errors.append(f"Failed to fetch child folders for {folder.get('displayName') or folder_id}: {e}")
            logger.warning(f"Child folder fetch failed for {folder_id}: {e}")
            return

        for child in children:
            await self._collect(child, collected, visited, failed_parents, errors)

    async def _reconcile(self, remote_folders: list[dict], failed_parents: set[str], result: FolderSyncResult):
        now = utcnow()

        async with self._session_factory() as db:
            rows = await db.execute(select(MailFolder).where(MailFolder.account_id == self.account_id))
            existing = {f.graph_id: f for f in rows.scalars().all()}
            remote_ids = set()

            for remote in remote_folders:
                graph_id = remote["id"]
                remote_ids.add(graph_id)
                values = folder_values(remote)
                local = existing.get(graph_id)

                if local is None:
                    # A run reconciling the same account at the same time may have inserted it.
                    stmt = dialect_insert(db, MailFolder).values(
                        account_id=self.account_id,
                        graph_id=graph_id,
                        last_synced_at=now,
                        created_at=now,
                        updated_at=now,
                        **values,
                    )
                    stmt = stmt.on_conflict_do_update(
                        index_elements=["account_id", "graph_id"],
                        set_={**values, "last_synced_at": now, "updated_at": now},
                    )
                    await db.execute(stmt)
                    result.created += 1
                elif self._needs_update(local, values):
                    for key, value in values.items():
                        setattr(local, key, value)
                    local.last_synced_at = now
                    result.updated += 1
                result.synced += 1

            # Delete folders that no longer exist in Graph
            for graph_id, local in existing.items():
                if graph_id in remote_ids:
                    continue
                if self._under_failed_subtree(local, existing, failed_parents):
                    logger.warning(f"Keeping folder {local.display_name}: its parent listing failed this run")
                    continue
                await db.delete(local)
                await db.execute(delete(SyncState).where(
                    SyncState.account_id == self.account_id,
                    SyncState.resource_type == SyncScope.folder(graph_id).key,
                ))
                result.deleted += 1

            await db.flush()
            await self._mark_primary_folders(db)
            await self._touch_sync_marker(db, now)
            await db.commit()

    @staticmethod
    def _needs_update(local: MailFolder, values: dict) -> bool:
        return any(getattr(local, name) != values[name] for name in TRACKED_FIELDS)

    @staticmethod
    def _under_failed_subtree(local: MailFolder, existing: dict, failed_parents: set[str]) -> bool:
        if not failed_parents:
            return False
        seen = set()
        parent_id = local.parent_graph_id
        while parent_id and parent_id not in seen:
            if parent_id in failed_parents:
                return True
            seen.add(parent_id)
            parent = existing.get(parent_id)
            parent_id = parent.parent_graph_id if parent is not None else None
        return False

    async def _mark_primary_folders(self, db) -> None:
        """Per well-known folder type, flag the visible folder holding the most mail.

        Hidden folders are never primary; custom folders each stand alone.
        """
        rows = await db.execute(select(MailFolder).where(MailFolder.account_id == self.account_id))
        folders = rows.scalars().all()
        by_type: dict[str, list[MailFolder]] = {}
        primary: dict[int, bool] = {}

        for folder in folders:
            if folder.is_hidden:
                primary[folder.id] = False
            elif folder.folder_type == "custom":
                primary[folder.id] = True
            else:
                by_type.setdefault(folder.folder_type, []).append(folder)

        for candidates in by_type.values():
            # Lower id means mirrored earlier; it wins ties.
            ranked = sorted(candidates, key=lambda f: (-(f.total_count or 0), -(f.unread_count or 0), f.id))
            for position, folder in enumerate(ranked):
                primary[folder.id] = position == 0

        for folder in folders:
            if folder.is_primary != primary[folder.id]:
                folder.is_primary = primary[folder.id]

    async def _touch_sync_marker(self, db, now: datetime) -> None:
        """Folders have no delta token; the marker only records the last completed run."""
        scope = SyncScope.folders()
        stmt = dialect_insert(db, SyncState).values(
            account_id=self.account_id,
            resource_type=scope.key,
            delta_token=None,
            last_sync_at=now,
            sync_status=SyncStatus.COMPLETED,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["account_id", "resource_type"],
            set_={"last_sync_at": now, "sync_status": SyncStatus.COMPLETED, "updated_at": now},
        )
        await db.execute(stmt)
