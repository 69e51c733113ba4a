"""Microsoft Graph gateway — authenticated, retrying calls for one account."""

import asyncio
import logging
import time
from datetime import timezone
from email.utils import parsedate_to_datetime
from typing import Optional

import httpx

from mailmirror.config import settings
from mailmirror.errors import DeltaTokenExpiredError, GraphAPIError
from mailmirror.services.token_service import token_manager as default_token_manager

logger = logging.getLogger(__name__)

FOLDER_SELECT = "id,displayName,parentFolderId,childFolderCount,unreadItemCount,totalItemCount,isHidden"

MESSAGE_SELECT = (
    "id,conversationId,subject,bodyPreview,body,from,toRecipients,ccRecipients,"
    "bccRecipients,replyTo,sentDateTime,receivedDateTime,hasAttachments,importance,"
    "isRead,isDraft,flag,parentFolderId,internetMessageId,conversationIndex"
)


class GraphClient:
    """Graph API client bound to one connected account.

    Every call goes through ``request``: bearer token from the token manager,
    one forced refresh on 401, authoritative ``Retry-After`` sleeps on 429,
    exponential backoff on other transient failures, and immediate
    propagation of anything else.
    """

    def __init__(
        self,
        account_id: str,
        token_manager=None,
        http_client: Optional[httpx.AsyncClient] = None,
        base_url: Optional[str] = None,
        max_attempts: Optional[int] = None,
        backoff_base: Optional[float] = None,
        backoff_max: Optional[float] = None,
        sleep=asyncio.sleep,
    ):
        self.account_id = account_id
        self.token_manager = token_manager or default_token_manager
        self.base_url = (base_url or settings.graph_base_url).rstrip("/")
        self.max_attempts = max(1, int(max_attempts or settings.graph_max_attempts))
        self.backoff_base = settings.graph_backoff_base_seconds if backoff_base is None else backoff_base
        self.backoff_max = settings.graph_backoff_max_seconds if backoff_max is None else backoff_max
        self._sleep = sleep
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=settings.graph_timeout_seconds)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def close(self):
        if self._owns_client:
            await self._client.aclose()

    def _url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    async def _headers(self, extra: Optional[dict] = None) -> dict:
        token = await self.token_manager.get_access_token(self.account_id)
        headers = {"Authorization": f"Bearer {token}", "Accept": "application/json"}
        if extra:
            headers.update(extra)
        return headers

    @staticmethod
    def _retry_after_to_seconds(raw_value) -> Optional[float]:
        text = str(raw_value or "").strip()
        if not text:
            return None
        try:
            return max(0.0, float(text))
        except ValueError:
            try:
                parsed = parsedate_to_datetime(text)
            except (TypeError, ValueError, OverflowError):
                return None
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return max(0.0, parsed.timestamp() - time.time())

    def _backoff_delay(self, step: int) -> float:
        return min(self.backoff_max, self.backoff_base * (2 ** step))

    @staticmethod
    def _json_or_error(response: httpx.Response, url: str) -> dict:
        if not response.content:
            return {}
        try:
            payload = response.json()
        except ValueError as exc:
            raise GraphAPIError(f"Invalid JSON response from Graph endpoint: {url}", response.status_code) from exc
        if not isinstance(payload, dict):
            raise GraphAPIError(f"Unexpected JSON shape from Graph endpoint: {url}", response.status_code)
        return payload

    def _error_from_response(self, response: httpx.Response, url: str) -> GraphAPIError:
        code = None
        message = response.reason_phrase or "Graph request failed"
        try:
            body = response.json()
            if isinstance(body, dict) and isinstance(body.get("error"), dict):
                code = body["error"].get("code")
                message = body["error"].get("message") or message
        except ValueError:
            pass

        text = f"Graph {response.status_code} on {url}: {message}"
        retry_after = self._retry_after_to_seconds(response.headers.get("Retry-After"))
        if response.status_code == 410:
            return DeltaTokenExpiredError(text, 410, retry_after, code)
        return GraphAPIError(text, response.status_code, retry_after, code)

    async def request(
        self,
        method: str,
        path: str,
        params: Optional[dict] = None,
        headers: Optional[dict] = None,
        json: Optional[dict] = None,
    ) -> dict:
        url = self._url(path)
        auth_retried = False
        attempt = 0
        backoff_step = 0

        while True:
            attempt += 1
            try:
                response = await self._client.request(
                    method,
                    url,
                    params=params,
                    json=json,
                    headers=await self._headers(headers),
                )
            except httpx.TransportError as e:
                error = GraphAPIError(f"Graph transport failure on {url}: {e!r}")
            else:
                if response.status_code == 401 and not auth_retried:
                    # Stale token (revoked or clock skew); refresh once, not counted.
                    auth_retried = True
                    attempt -= 1
                    await self.token_manager.refresh_token(self.account_id)
                    continue
                if response.is_success:
                    return self._json_or_error(response, url)
                error = self._error_from_response(response, url)

            if not error.is_transient or attempt >= self.max_attempts:
                raise error

            if error.is_rate_limited and error.retry_after is not None:
                delay = error.retry_after
            else:
                delay = self._backoff_delay(backoff_step)
                backoff_step += 1

            logger.warning(
                f"Graph {method} {url} failed ({error.status_code or 'transport'}), "
                f"retrying in {delay:.1f}s (attempt {attempt}/{self.max_attempts})"
            )
            await self._sleep(delay)

    async def get(self, path: str, params: Optional[dict] = None, headers: Optional[dict] = None) -> dict:
        return await self.request("GET", path, params=params, headers=headers)

    async def _get_all_pages(self, path: str, params: Optional[dict] = None) -> list[dict]:
        items = []
        seen_links = set()
        url, page_params = path, params
        while url:
            data = await self.get(url, params=page_params)
            value = data.get("value") or []
            if not isinstance(value, list):
                raise GraphAPIError(f"Malformed list payload from {url}: expected list in 'value'")
            items.extend(v for v in value if isinstance(v, dict))

            url = data.get("@odata.nextLink")
            page_params = None
            if url in seen_links:
                raise GraphAPIError(f"Pagination cycle detected at {url}")
            if url:
                seen_links.add(url)
        return items

    def _folder_params(self) -> dict:
        return {
            "$select": FOLDER_SELECT,
            "$top": str(settings.folder_page_size),
            "includeHiddenFolders": "true",
        }

    async def list_mail_folders(self) -> list[dict]:
        """Top-level mail folders."""
        return await self._get_all_pages("/me/mailFolders", self._folder_params())

    async def list_child_folders(self, parent_folder_id: str) -> list[dict]:
        return await self._get_all_pages(f"/me/mailFolders/{parent_folder_id}/childFolders", self._folder_params())

    async def get_folder(self, folder_id: str) -> Optional[dict]:
        try:
            return await self.get(f"/me/mailFolders/{folder_id}", params={"$select": FOLDER_SELECT})
        except GraphAPIError as e:
            if e.status_code == 404:
                return None
            raise

    async def get_messages_delta_page(
        self,
        folder_graph_id: Optional[str] = None,
        link: Optional[str] = None,
    ) -> dict:
        """One page of a message delta query.

        With ``link`` (a nextLink or stored deltaLink) the URL is replayed
        verbatim; otherwise a fresh delta query is started for the folder or
        the whole mailbox.
        """
        headers = {"Prefer": f"odata.maxpagesize={settings.delta_page_size}"}
        if link:
            return await self.get(link, headers=headers)

        path = f"/me/mailFolders/{folder_graph_id}/messages/delta" if folder_graph_id else "/me/messages/delta"
        return await self.get(path, params={"$select": MESSAGE_SELECT}, headers=headers)


def create_graph_client(account_id: str, **kwargs) -> GraphClient:
    return GraphClient(account_id, **kwargs)
