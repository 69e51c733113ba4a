import httpx
import pytest

from fakes import StaticTokenManager
from mailmirror.errors import DeltaTokenExpiredError, GraphAPIError
from mailmirror.services.graph_client import GraphClient

BASE = "https://graph.test/v1.0"


class RecordedSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def make_client(handler, tokens=None, sleep=None, max_attempts=3):
    transport = httpx.MockTransport(handler)
    return GraphClient(
        "acct-1",
        token_manager=tokens or StaticTokenManager(),
        http_client=httpx.AsyncClient(transport=transport),
        base_url=BASE,
        max_attempts=max_attempts,
        backoff_base=1.0,
        backoff_max=30.0,
        sleep=sleep or RecordedSleep(),
    )


def scripted(responses):
    """Handler returning the given responses in order, recording requests."""
    seen = []

    def handler(request: httpx.Request):
        seen.append(request)
        return responses[len(seen) - 1]

    handler.seen = seen
    return handler


@pytest.mark.asyncio
async def test_rate_limit_sleeps_for_retry_after_exactly():
    handler = scripted([
        httpx.Response(429, headers={"Retry-After": "7"}, json={"error": {"code": "TooManyRequests"}}),
        httpx.Response(200, json={"value": []}),
    ])
    sleep = RecordedSleep()
    client = make_client(handler, sleep=sleep)

    assert await client.get("/me/mailFolders") == {"value": []}
    assert sleep.delays == [7.0]


@pytest.mark.asyncio
async def test_rate_limit_does_not_advance_backoff():
    handler = scripted([
        httpx.Response(429, headers={"Retry-After": "3"}),
        httpx.Response(503),
        httpx.Response(200, json={"ok": True}),
    ])
    sleep = RecordedSleep()
    client = make_client(handler, sleep=sleep)

    assert await client.get("/me") == {"ok": True}
    assert sleep.delays == [3.0, 1.0]


@pytest.mark.asyncio
async def test_transient_errors_back_off_exponentially_then_raise():
    handler = scripted([httpx.Response(503), httpx.Response(502), httpx.Response(500), httpx.Response(504)])
    sleep = RecordedSleep()
    client = make_client(handler, sleep=sleep, max_attempts=4)

    with pytest.raises(GraphAPIError) as excinfo:
        await client.get("/me")

    assert excinfo.value.status_code == 504
    assert sleep.delays == [1.0, 2.0, 4.0]
    assert len(handler.seen) == 4


@pytest.mark.asyncio
async def test_backoff_is_capped():
    client = make_client(scripted([]))
    assert client._backoff_delay(10) == 30.0


@pytest.mark.asyncio
async def test_permanent_error_is_not_retried():
    handler = scripted([
        httpx.Response(404, json={"error": {"code": "ErrorItemNotFound", "message": "Not found"}}),
    ])
    sleep = RecordedSleep()
    client = make_client(handler, sleep=sleep)

    with pytest.raises(GraphAPIError) as excinfo:
        await client.get("/me/mailFolders/missing")

    assert excinfo.value.status_code == 404
    assert excinfo.value.code == "ErrorItemNotFound"
    assert not excinfo.value.is_transient
    assert sleep.delays == []
    assert len(handler.seen) == 1


@pytest.mark.asyncio
async def test_unauthorized_forces_one_refresh():
    handler = scripted([httpx.Response(401), httpx.Response(200, json={"id": "me"})])
    tokens = StaticTokenManager()
    client = make_client(handler, tokens=tokens)

    assert await client.get("/me") == {"id": "me"}
    assert tokens.refreshes == 1
    assert handler.seen[0].headers["Authorization"] == "Bearer token-0"
    assert handler.seen[1].headers["Authorization"] == "Bearer token-1"


@pytest.mark.asyncio
async def test_second_unauthorized_propagates():
    handler = scripted([httpx.Response(401), httpx.Response(401)])
    tokens = StaticTokenManager()
    client = make_client(handler, tokens=tokens)

    with pytest.raises(GraphAPIError) as excinfo:
        await client.get("/me")
    assert excinfo.value.status_code == 401
    assert tokens.refreshes == 1


@pytest.mark.asyncio
async def test_gone_raises_delta_token_expired():
    handler = scripted([httpx.Response(410, json={"error": {"code": "SyncStateNotFound"}})])
    client = make_client(handler)

    with pytest.raises(DeltaTokenExpiredError):
        await client.get_messages_delta_page(link=f"{BASE}/me/messages/delta?$deltatoken=old")


@pytest.mark.asyncio
async def test_malformed_json_is_a_permanent_error():
    handler = scripted([httpx.Response(200, content=b"<html>oops</html>")])
    sleep = RecordedSleep()
    client = make_client(handler, sleep=sleep)

    with pytest.raises(GraphAPIError, match="Invalid JSON"):
        await client.get("/me")
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_transport_failure_is_retried():
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) == 1:
            raise httpx.ConnectError("connection reset", request=request)
        return httpx.Response(200, json={"ok": True})

    sleep = RecordedSleep()
    client = make_client(handler, sleep=sleep)

    assert await client.get("/me") == {"ok": True}
    assert sleep.delays == [1.0]


@pytest.mark.asyncio
async def test_folder_listing_follows_next_link():
    next_link = f"{BASE}/me/mailFolders?$skip=1"
    handler = scripted([
        httpx.Response(200, json={"value": [{"id": "A"}], "@odata.nextLink": next_link}),
        httpx.Response(200, json={"value": [{"id": "B"}]}),
    ])
    client = make_client(handler)

    folders = await client.list_mail_folders()

    assert [f["id"] for f in folders] == ["A", "B"]
    assert handler.seen[0].url.params["includeHiddenFolders"] == "true"
    assert str(handler.seen[1].url) == next_link


@pytest.mark.asyncio
async def test_delta_page_replays_link_verbatim_and_bounds_page_size():
    link = f"{BASE}/me/mailFolders/inbox/messages/delta?$deltatoken=abc%3D%3D"
    handler = scripted([httpx.Response(200, json={"value": [], "@odata.deltaLink": link})])
    client = make_client(handler)

    await client.get_messages_delta_page(folder_graph_id="inbox", link=link)

    request = handler.seen[0]
    assert str(request.url) == link
    assert request.headers["Prefer"].startswith("odata.maxpagesize=")


@pytest.mark.asyncio
async def test_fresh_delta_query_selects_fields():
    handler = scripted([httpx.Response(200, json={"value": []})])
    client = make_client(handler)

    await client.get_messages_delta_page(folder_graph_id="inbox")

    request = handler.seen[0]
    assert request.url.path == "/v1.0/me/mailFolders/inbox/messages/delta"
    selected = request.url.params["$select"].split(",")
    assert {"parentFolderId", "internetMessageId", "conversationIndex", "flag"} <= set(selected)


@pytest.mark.asyncio
async def test_get_folder_returns_none_when_missing():
    handler = scripted([httpx.Response(404)])
    client = make_client(handler)

    assert await client.get_folder("gone") is None
