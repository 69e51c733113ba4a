"""Connected account model — one remote mailbox and its health state."""

import enum
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import String, Text, Integer, Boolean, DateTime, Enum
from sqlalchemy.orm import Mapped, mapped_column

from mailmirror.database import Base
from mailmirror.errors import InvalidStatusTransition


class AccountStatus(str, enum.Enum):
    ACTIVE = "active"
    SYNCING = "syncing"
    NEEDS_REAUTH = "needs_reauth"
    ERROR = "error"

    def can_transition_to(self, target: "AccountStatus") -> bool:
        return target == self or target in _ACCOUNT_TRANSITIONS[self]


# needs_reauth -> active is only reached through a fresh interactive sign-in.
_ACCOUNT_TRANSITIONS = {
    AccountStatus.ACTIVE: {AccountStatus.SYNCING, AccountStatus.NEEDS_REAUTH, AccountStatus.ERROR},
    AccountStatus.SYNCING: {AccountStatus.ACTIVE, AccountStatus.ERROR, AccountStatus.NEEDS_REAUTH},
    AccountStatus.ERROR: {AccountStatus.SYNCING, AccountStatus.NEEDS_REAUTH},
    AccountStatus.NEEDS_REAUTH: {AccountStatus.ACTIVE},
}


def enum_column(enum_cls):
    """Store an enum by value in a plain string column."""
    return Enum(
        enum_cls,
        native_enum=False,
        length=32,
        validate_strings=True,
        values_callable=lambda members: [m.value for m in members],
    )


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything we store is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Account(Base):
    __tablename__ = "connected_accounts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    display_name: Mapped[Optional[str]] = mapped_column(String(256))

    # Health
    status: Mapped[AccountStatus] = mapped_column(
        enum_column(AccountStatus), default=AccountStatus.ACTIVE, nullable=False
    )
    status_message: Mapped[Optional[str]] = mapped_column(Text)
    error_count: Mapped[int] = mapped_column(Integer, default=0)
    last_error_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Sync bookkeeping
    messages_synced: Mapped[int] = mapped_column(Integer, default=0)
    initial_sync_complete: Mapped[bool] = mapped_column(Boolean, default=False)
    last_full_sync_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    def transition_to(self, target: AccountStatus) -> None:
        current = self.status or AccountStatus.ACTIVE
        if not current.can_transition_to(target):
            raise InvalidStatusTransition(current.value, target.value)
        self.status = target

    def __repr__(self):
        return f"<Account {self.id}: {self.email} ({self.status})>"
