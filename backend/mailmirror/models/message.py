"""Message model — core storage for mirrored mail items."""

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    String, Text, Boolean, DateTime, JSON, LargeBinary, ForeignKey, UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from mailmirror.database import Base
from mailmirror.models.account import utcnow


class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (UniqueConstraint("account_id", "graph_id", name="uq_messages_graph_id"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    account_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("connected_accounts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    folder_id: Mapped[int] = mapped_column(
        ForeignKey("account_folders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    graph_id: Mapped[str] = mapped_column(String(512), nullable=False)

    # Threading
    conversation_id: Mapped[Optional[str]] = mapped_column(String(512), index=True)
    internet_message_id: Mapped[Optional[str]] = mapped_column(String(998))
    conversation_index: Mapped[Optional[bytes]] = mapped_column(LargeBinary)

    # Content
    subject: Mapped[Optional[str]] = mapped_column(Text)
    preview: Mapped[Optional[str]] = mapped_column(Text)
    body_html: Mapped[Optional[str]] = mapped_column(Text)
    body_text: Mapped[Optional[str]] = mapped_column(Text)
    body_content_type: Mapped[str] = mapped_column(String(16), default="text")

    # Addresses: lists of {"name", "address"} in the order Graph returned them
    from_name: Mapped[Optional[str]] = mapped_column(String(256))
    from_address: Mapped[Optional[str]] = mapped_column(String(320), index=True)
    to_recipients: Mapped[Optional[list]] = mapped_column(JSON)
    cc_recipients: Mapped[Optional[list]] = mapped_column(JSON)
    bcc_recipients: Mapped[Optional[list]] = mapped_column(JSON)
    reply_to: Mapped[Optional[list]] = mapped_column(JSON)

    # Metadata
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    received_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), index=True)
    has_attachments: Mapped[bool] = mapped_column(Boolean, default=False)
    importance: Mapped[str] = mapped_column(String(16), default="normal")
    is_read: Mapped[bool] = mapped_column(Boolean, default=False)
    is_draft: Mapped[bool] = mapped_column(Boolean, default=False)
    is_flagged: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    folder: Mapped["MailFolder"] = relationship(back_populates="messages")

    def __repr__(self):
        return f"<Message {self.id}: {self.subject[:50] if self.subject else '(no subject)'}>"
