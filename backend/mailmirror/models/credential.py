"""Account token model — OAuth credentials for a connected account."""

from datetime import datetime
from typing import Optional

from sqlalchemy import String, Text, Integer, DateTime, JSON, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column

from mailmirror.database import Base
from mailmirror.models.account import utcnow


class AccountToken(Base):
    __tablename__ = "account_tokens"

    id: Mapped[int] = mapped_column(primary_key=True)
    account_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("connected_accounts.id", ondelete="CASCADE"), unique=True, nullable=False
    )

    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token: Mapped[str] = mapped_column(Text, nullable=False)
    token_type: Mapped[str] = mapped_column(String(32), default="Bearer")
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    scopes: Mapped[list] = mapped_column(JSON, default=list)

    # Refresh health
    last_refreshed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=utcnow)
    refresh_failure_count: Mapped[int] = mapped_column(Integer, default=0)
    last_refresh_error: Mapped[Optional[str]] = mapped_column(Text)

    def __repr__(self):
        return f"<AccountToken {self.account_id}: expires={self.expires_at}, failures={self.refresh_failure_count}>"
