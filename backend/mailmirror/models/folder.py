"""Mail folder model — local mirror of the remote folder tree."""

from datetime import datetime
from typing import Optional

from sqlalchemy import String, Integer, Boolean, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from mailmirror.database import Base
from mailmirror.models.account import utcnow

WELL_KNOWN_FOLDER_TYPES = {
    "inbox": "inbox",
    "drafts": "drafts",
    "sent items": "sentitems",
    "sent": "sentitems",
    "deleted items": "deleteditems",
    "trash": "deleteditems",
    "archive": "archive",
    "junk email": "junkemail",
    "spam": "junkemail",
    "outbox": "outbox",
}


def folder_type_for(display_name: Optional[str]) -> str:
    """Map a well-known display name to its folder type; anything else is custom."""
    return WELL_KNOWN_FOLDER_TYPES.get((display_name or "").strip().lower(), "custom")


class MailFolder(Base):
    __tablename__ = "account_folders"
    __table_args__ = (UniqueConstraint("account_id", "graph_id", name="uq_account_folders_graph_id"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    account_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("connected_accounts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    graph_id: Mapped[str] = mapped_column(String(512), nullable=False)
    parent_graph_id: Mapped[Optional[str]] = mapped_column(String(512), index=True)

    display_name: Mapped[str] = mapped_column(String(256), nullable=False)
    folder_type: Mapped[str] = mapped_column(String(32), default="custom", index=True)
    child_folder_count: Mapped[int] = mapped_column(Integer, default=0)
    unread_count: Mapped[int] = mapped_column(Integer, default=0)
    total_count: Mapped[int] = mapped_column(Integer, default=0)
    is_hidden: Mapped[bool] = mapped_column(Boolean, default=False)
    is_primary: Mapped[bool] = mapped_column(Boolean, default=False)

    last_synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    messages: Mapped[list["Message"]] = relationship(
        back_populates="folder", cascade="all, delete-orphan", passive_deletes=True
    )

    def __repr__(self):
        return f"<MailFolder {self.id}: {self.display_name} ({self.graph_id})>"
