"""Sync state tracking — knows where we left off per account and scope."""

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import String, Text, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from mailmirror.database import Base
from mailmirror.models.account import enum_column, utcnow


class SyncStatus(str, enum.Enum):
    PENDING = "pending"
    SYNCING = "syncing"
    COMPLETED = "completed"
    FAILED = "failed"


FOLDERS_RESOURCE = "folders"
MESSAGES_RESOURCE = "messages"


@dataclass(frozen=True)
class SyncScope:
    """What a cursor row covers: the folder tree, the whole mailbox, or one folder.

    ``key`` is the persisted ``resource_type`` value.
    """

    kind: str
    folder_graph_id: Optional[str] = None

    @classmethod
    def folders(cls) -> "SyncScope":
        return cls(FOLDERS_RESOURCE)

    @classmethod
    def mailbox(cls) -> "SyncScope":
        return cls(MESSAGES_RESOURCE)

    @classmethod
    def folder(cls, folder_graph_id: str) -> "SyncScope":
        if not folder_graph_id:
            raise ValueError("folder scope needs a folder graph id")
        return cls(MESSAGES_RESOURCE, folder_graph_id)

    @classmethod
    def from_key(cls, key: str) -> "SyncScope":
        if key == FOLDERS_RESOURCE:
            return cls.folders()
        if key == MESSAGES_RESOURCE:
            return cls.mailbox()
        prefix = f"{MESSAGES_RESOURCE}:"
        if key.startswith(prefix):
            return cls.folder(key[len(prefix):])
        raise ValueError(f"Unknown sync scope key: {key}")

    @property
    def is_message_scope(self) -> bool:
        return self.kind == MESSAGES_RESOURCE

    @property
    def key(self) -> str:
        if self.folder_graph_id:
            return f"{MESSAGES_RESOURCE}:{self.folder_graph_id}"
        return self.kind

    def __str__(self):
        return self.key


class SyncState(Base):
    __tablename__ = "sync_state"
    __table_args__ = (UniqueConstraint("account_id", "resource_type", name="uq_sync_state_scope"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    account_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("connected_accounts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    resource_type: Mapped[str] = mapped_column(String(600), nullable=False)
    delta_token: Mapped[Optional[str]] = mapped_column(Text)
    last_sync_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    sync_status: Mapped[SyncStatus] = mapped_column(
        enum_column(SyncStatus), default=SyncStatus.PENDING, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    @property
    def scope(self) -> SyncScope:
        return SyncScope.from_key(self.resource_type)

    def __repr__(self):
        return f"<SyncState {self.account_id}/{self.resource_type}: {self.sync_status}>"
