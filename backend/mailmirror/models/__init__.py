from mailmirror.models.account import Account, AccountStatus
from mailmirror.models.credential import AccountToken
from mailmirror.models.folder import MailFolder
from mailmirror.models.message import Message
from mailmirror.models.sync_state import SyncState, SyncStatus, SyncScope

__all__ = [
    "Account",
    "AccountStatus",
    "AccountToken",
    "MailFolder",
    "Message",
    "SyncState",
    "SyncStatus",
    "SyncScope",
]
