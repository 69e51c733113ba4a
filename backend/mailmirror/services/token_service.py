"""Token service — stores OAuth credentials and hands out valid access tokens.

Refreshes are single-flight per account: while one refresh for an account is
running, every other caller for that account awaits the same task instead of
spending the refresh token a second time. Repeated refresh failures escalate
the account to ``needs_reauth``, after which no silent refresh is attempted.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional, Protocol

import msal
from sqlalchemy import select, delete

from mailmirror.config import settings
from mailmirror.database import async_session, dialect_insert
from mailmirror.errors import (
    NoCredentialsError,
    ReauthRequiredError,
    TokenError,
    TokenRefreshError,
)
from mailmirror.models.account import Account, AccountStatus, as_utc, utcnow
from mailmirror.models.credential import AccountToken

logger = logging.getLogger(__name__)

REAUTH_MESSAGE = "Token refresh failed. Please reconnect your account."


@dataclass
class TokenData:
    access_token: str
    refresh_token: str
    expires_at: datetime
    scopes: list[str] = field(default_factory=list)


class TokenProvider(Protocol):
    async def refresh(self, refresh_token: str, scopes: list[str]) -> TokenData:
        ...


class MsalTokenProvider:
    """Refresh-token exchange against Azure AD through MSAL."""

    # MSAL adds these itself and rejects them when passed explicitly.
    RESERVED_SCOPES = frozenset({"openid", "profile", "offline_access"})

    def __init__(
        self,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        authority: Optional[str] = None,
    ):
        self.client_id = client_id or settings.azure_client_id
        self.client_secret = client_secret or settings.azure_client_secret
        self.authority = authority or settings.azure_authority
        self._app = None
        self._app_lock = threading.Lock()

    def _get_app(self):
        # Constructing the app performs authority discovery over the network.
        with self._app_lock:
            if self._app is None:
                self._app = msal.ConfidentialClientApplication(
                    self.client_id,
                    client_credential=self.client_secret,
                    authority=self.authority,
                )
            return self._app

    def _exchange(self, refresh_token: str, scopes: list[str]) -> dict:
        usable = [s for s in scopes if s.lower() not in self.RESERVED_SCOPES]
        return self._get_app().acquire_token_by_refresh_token(refresh_token, scopes=usable)

    async def refresh(self, refresh_token: str, scopes: list[str]) -> TokenData:
        result = await asyncio.to_thread(self._exchange, refresh_token, list(scopes or []))

        if not result or "access_token" not in result:
            result = result or {}
            description = result.get("error_description") or result.get("error") or "no access token returned"
            raise TokenError(f"Token refresh failed: {description}")

        expires_in = result.get("expires_in") or settings.token_default_lifetime_seconds
        return TokenData(
            access_token=result["access_token"],
            # Azure may or may not rotate the refresh token
            refresh_token=result.get("refresh_token") or refresh_token,
            expires_at=utcnow() + timedelta(seconds=int(expires_in)),
            scopes=list(scopes or []),
        )


class TokenManager:
    """Per-account access tokens with refresh, single-flight and escalation."""

    def __init__(
        self,
        session_factory=async_session,
        provider: Optional[TokenProvider] = None,
        refresh_margin: Optional[timedelta] = None,
        failure_threshold: Optional[int] = None,
    ):
        self._session_factory = session_factory
        self._provider = provider
        self.refresh_margin = refresh_margin or timedelta(minutes=settings.token_refresh_margin_minutes)
        self.failure_threshold = failure_threshold or settings.token_refresh_failure_threshold
        self._inflight: dict[str, asyncio.Task] = {}

    @property
    def provider(self) -> TokenProvider:
        if self._provider is None:
            self._provider = MsalTokenProvider()
        return self._provider

    def _is_fresh(self, token: AccountToken) -> bool:
        return as_utc(token.expires_at) - utcnow() > self.refresh_margin

    async def store_tokens(self, account_id: str, tokens: TokenData) -> None:
        """Upsert the credential row and clear any refresh-failure history.

        Storing tokens is also how an interactive re-authentication lands, so
        an account parked in ``needs_reauth`` comes back to ``active``.
        """
        now = utcnow()
        values = {
            "account_id": account_id,
            "access_token": tokens.access_token,
            "refresh_token": tokens.refresh_token,
            "token_type": "Bearer",
            "expires_at": tokens.expires_at,
            "scopes": list(tokens.scopes),
            "last_refreshed_at": now,
            "refresh_failure_count": 0,
            "last_refresh_error": None,
        }
        async with self._session_factory() as db:
            stmt = dialect_insert(db, AccountToken).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=["account_id"],
                set_={k: v for k, v in values.items() if k != "account_id"},
            )
            await db.execute(stmt)

            account = await db.get(Account, account_id)
            if account is not None and account.status == AccountStatus.NEEDS_REAUTH:
                account.transition_to(AccountStatus.ACTIVE)
                account.status_message = None
                account.error_count = 0
                logger.info(f"Account {account_id} re-authenticated, status restored to active")

            await db.commit()

    async def get_access_token(self, account_id: str) -> str:
        """Return a token valid for at least the refresh margin, refreshing if needed."""
        async with self._session_factory() as db:
            token = await self._load_token(db, account_id)
            account = await db.get(Account, account_id)

        if account is not None and account.status == AccountStatus.NEEDS_REAUTH:
            raise ReauthRequiredError(account.status_message or REAUTH_MESSAGE, account_id)

        if self._is_fresh(token):
            return token.access_token

        minutes_left = (as_utc(token.expires_at) - utcnow()).total_seconds() / 60
        logger.info(f"Token for account {account_id} expiring in {minutes_left:.1f} minutes, refreshing...")
        return await self.refresh_token(account_id, force=False)

    async def refresh_token(self, account_id: str, force: bool = True) -> str:
        """Refresh now, joining an in-flight refresh for the same account if any.

        With force=False a token that turns out to be fresh once reloaded
        (another caller refreshed it meanwhile) is returned without an exchange.
        """
        task = self._inflight.get(account_id)
        if task is None:
            task = asyncio.ensure_future(self._do_refresh(account_id, force))
            self._inflight[account_id] = task

            def _release(done: asyncio.Task, key=account_id):
                if self._inflight.get(key) is done:
                    del self._inflight[key]

            task.add_done_callback(_release)
        else:
            logger.debug(f"Token refresh already in progress for {account_id}, waiting...")

        # A cancelled waiter must not cancel the refresh the others are awaiting.
        return await asyncio.shield(task)

    async def _do_refresh(self, account_id: str, force: bool = True) -> str:
        async with self._session_factory() as db:
            token = await self._load_token(db, account_id)
            account = await db.get(Account, account_id)

        if account is not None and account.status == AccountStatus.NEEDS_REAUTH:
            raise ReauthRequiredError(account.status_message or REAUTH_MESSAGE, account_id)

        if not force and self._is_fresh(token):
            return token.access_token

        try:
            logger.info(f"Refreshing token for account {account_id}...")
            refreshed = await self.provider.refresh(token.refresh_token, list(token.scopes or []))
        except Exception as e:
            logger.error(f"Token refresh failed for {account_id}: {e}")
            failure_count = await self.record_refresh_failure(account_id, str(e))
            if failure_count >= self.failure_threshold:
                raise ReauthRequiredError(REAUTH_MESSAGE, account_id) from e
            raise TokenRefreshError(
                f"Token refresh failed ({failure_count}/{self.failure_threshold}): {e}",
                account_id,
                failure_count,
            ) from e

        if not refreshed.scopes:
            refreshed.scopes = list(token.scopes or [])
        await self.store_tokens(account_id, refreshed)
        logger.info(f"Token refreshed for {account_id}, expires at {refreshed.expires_at.isoformat()}")
        return refreshed.access_token

    async def record_refresh_failure(self, account_id: str, error_message: str) -> int:
        """Count a failed refresh; at the threshold the account needs re-auth."""
        async with self._session_factory() as db:
            token = await self._load_token(db, account_id)
            token.refresh_failure_count = (token.refresh_failure_count or 0) + 1
            token.last_refresh_error = error_message
            failure_count = token.refresh_failure_count

            if failure_count >= self.failure_threshold:
                account = await db.get(Account, account_id)
                if account is not None:
                    logger.error(
                        f"Account {account_id} has failed {failure_count} times, marking as needs_reauth"
                    )
                    account.transition_to(AccountStatus.NEEDS_REAUTH)
                    account.status_message = REAUTH_MESSAGE
                    account.error_count = failure_count
                    account.last_error_at = utcnow()

            await db.commit()
        return failure_count

    async def refresh_expiring_tokens(self) -> dict:
        """Refresh every credential inside the margin (scheduled job)."""
        result = {"checked": 0, "refreshed": 0, "failed": 0, "errors": []}
        cutoff = utcnow() + self.refresh_margin

        async with self._session_factory() as db:
            rows = await db.execute(
                select(AccountToken.account_id)
                .join(Account, Account.id == AccountToken.account_id)
                .where(
                    AccountToken.expires_at <= cutoff,
                    Account.status != AccountStatus.NEEDS_REAUTH,
                )
            )
            account_ids = [row[0] for row in rows.all()]

        for account_id in account_ids:
            result["checked"] += 1
            try:
                await self.refresh_token(account_id, force=False)
                result["refreshed"] += 1
            except TokenError as e:
                result["failed"] += 1
                result["errors"].append(f"{account_id}: {e}")

        if account_ids:
            logger.info(f"Token refresh job: {result['refreshed']} refreshed, {result['failed']} failed")
        return result

    async def revoke_tokens(self, account_id: str) -> None:
        """Drop the stored credential (on disconnect)."""
        async with self._session_factory() as db:
            await db.execute(delete(AccountToken).where(AccountToken.account_id == account_id))
            await db.commit()
        logger.info(f"Tokens revoked for account {account_id}")

    async def get_stored_token(self, account_id: str) -> Optional[AccountToken]:
        async with self._session_factory() as db:
            result = await db.execute(select(AccountToken).where(AccountToken.account_id == account_id))
            return result.scalar_one_or_none()

    @staticmethod
    async def _load_token(db, account_id: str) -> AccountToken:
        result = await db.execute(select(AccountToken).where(AccountToken.account_id == account_id))
        token = result.scalar_one_or_none()
        if token is None:
            raise NoCredentialsError("No tokens found for account", account_id)
        return token


# Singleton instance
token_manager = TokenManager()
