"""Exception types raised across the sync engine."""

from typing import Optional

TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


class MailMirrorError(Exception):
    """Base class for all engine errors."""


class GraphAPIError(MailMirrorError):
    """A Microsoft Graph call failed.

    ``status_code`` is None for transport failures (timeouts, resets), which
    are always treated as transient.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after
        self.code = code

    @property
    def is_rate_limited(self) -> bool:
        return self.status_code == 429

    @property
    def is_transient(self) -> bool:
        return self.status_code is None or self.status_code in TRANSIENT_STATUS_CODES


class DeltaTokenExpiredError(GraphAPIError):
    """The stored delta link is no longer accepted (HTTP 410)."""


class TokenError(MailMirrorError):
    """Base class for credential problems."""

    def __init__(self, message: str, account_id: Optional[str] = None):
        super().__init__(message)
        self.account_id = account_id


class NoCredentialsError(TokenError):
    pass


class TokenRefreshError(TokenError):
    """A refresh failed but the account is still below the reauth threshold."""

    retryable = True

    def __init__(self, message: str, account_id: Optional[str] = None, failure_count: int = 0):
        super().__init__(message, account_id)
        self.failure_count = failure_count


class ReauthRequiredError(TokenError):
    """The account must be re-authenticated interactively."""

    retryable = False


class FolderMappingError(MailMirrorError):
    """A message references a parent folder that is not mirrored locally."""

    def __init__(self, message_graph_id: str, parent_folder_id: Optional[str]):
        super().__init__(
            f"Folder not found for graph_id: {parent_folder_id} (message {message_graph_id})"
        )
        self.message_graph_id = message_graph_id
        self.parent_folder_id = parent_folder_id


class AccountNotFoundError(MailMirrorError):
    def __init__(self, account_id: str):
        super().__init__(f"Account not found: {account_id}")
        self.account_id = account_id


class FolderNotFoundError(MailMirrorError):
    def __init__(self, account_id: str, folder_id):
        super().__init__(f"Folder {folder_id} not found for account {account_id}")
        self.account_id = account_id
        self.folder_id = folder_id


class InvalidStatusTransition(MailMirrorError):
    def __init__(self, current, target):
        super().__init__(f"Illegal account status transition: {current} -> {target}")
        self.current = current
        self.target = target
