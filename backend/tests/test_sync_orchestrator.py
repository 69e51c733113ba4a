import asyncio

import pytest

from fakes import FakeGraph, delta_page, graph_folder, graph_message
from mailmirror.errors import AccountNotFoundError, GraphAPIError
from mailmirror.models.account import AccountStatus
from mailmirror.services.sync_orchestrator import OverallStatus, SyncOrchestrator, SyncResult


def numbered_folder_graph(failing_index=None, count=12, delay=0.0):
    """Folders f1..fN with totals 1..N, so sorted order equals the index."""
    folders = [graph_folder(f"f{i}", f"Folder {i}", total=i) for i in range(1, count + 1)]
    graph = FakeGraph(top_level=folders, delay=delay)
    for i in range(1, count + 1):
        if i == failing_index:
            graph.delta_pages[("initial", f"f{i}")] = GraphAPIError(f"Graph 403 on folder f{i}", 403)
            graph.delta_pages[f"delta-f{i}"] = GraphAPIError(f"Graph 403 on folder f{i}", 403)
        else:
            graph.delta_pages[("initial", f"f{i}")] = delta_page(
                [graph_message(f"f{i}-m{n}", f"f{i}") for n in range(2)], delta_link=f"delta-f{i}"
            )
            # Later runs replay the stored link and find nothing new.
            graph.delta_pages[f"delta-f{i}"] = delta_page([], delta_link=f"delta-f{i}")
    return graph


@pytest.mark.asyncio
async def test_full_sync_success_marks_account_active(session_factory, account_id, load_account):
    graph = numbered_folder_graph()

    result = await SyncOrchestrator(graph, account_id, session_factory).perform_full_sync()

    assert result.overall_status == OverallStatus.SUCCESS
    assert result.errors == []
    assert result.folder_sync.created == 12
    assert result.message_sync.total_folders == 12
    assert result.message_sync.total_messages == 24
    assert result.message_sync.created == 24
    assert result.account_email == "user@example.com"
    assert result.completed_at >= result.started_at

    account = await load_account(account_id)
    assert account.status == AccountStatus.ACTIVE
    assert account.status_message is None
    assert account.messages_synced == 24
    assert account.initial_sync_complete is True
    assert account.last_full_sync_at is not None
    assert account.error_count == 0


@pytest.mark.asyncio
async def test_one_failing_folder_makes_sync_partial(session_factory, account_id, load_account):
    graph = numbered_folder_graph(failing_index=7)

    result = await SyncOrchestrator(graph, account_id, session_factory).perform_full_sync()

    assert result.overall_status == OverallStatus.PARTIAL
    assert len(result.message_sync.errors) == 1
    assert "Folder 7" in result.message_sync.errors[0]
    assert result.message_sync.total_messages == 22
    ok_results = [r for r in result.message_sync.folder_results if not r.errors]
    assert len(ok_results) == 11
    assert all(r.synced == 2 for r in ok_results)

    account = await load_account(account_id)
    assert account.status == AccountStatus.ERROR
    assert "Folder 7" in account.status_message
    assert account.error_count == 1
    assert account.messages_synced == 22


@pytest.mark.asyncio
async def test_folders_are_synced_smallest_first_in_batches(session_factory, account_id):
    folders = [graph_folder(f"f{i}", f"Folder {i}", total=total) for i, total in enumerate([30, 10, 20])]
    graph = FakeGraph(top_level=folders)
    for i in range(3):
        graph.delta_pages[("initial", f"f{i}")] = delta_page([], delta_link=f"d{i}")

    await SyncOrchestrator(graph, account_id, session_factory, batch_size=1).perform_full_sync()

    assert [call[0] for call in graph.delta_calls] == ["f1", "f2", "f0"]


@pytest.mark.asyncio
async def test_zero_folders_fails(session_factory, account_id, load_account):
    result = await SyncOrchestrator(FakeGraph(), account_id, session_factory).perform_full_sync()

    assert result.overall_status == OverallStatus.FAILED
    assert "No folders found to sync messages from" in result.errors

    account = await load_account(account_id)
    assert account.status == AccountStatus.ERROR
    assert account.initial_sync_complete is False


@pytest.mark.asyncio
async def test_folder_sync_error_downgrades_but_messages_still_sync(session_factory, account_id):
    graph = FakeGraph(
        top_level=[graph_folder("inbox", "Inbox", children=1, total=1)],
        children={"inbox": GraphAPIError("Graph 403 on childFolders", 403)},
    )
    graph.delta_pages[("initial", "inbox")] = delta_page([graph_message("m1", "inbox")], delta_link="d1")

    result = await SyncOrchestrator(graph, account_id, session_factory).perform_full_sync()

    assert result.overall_status == OverallStatus.PARTIAL
    assert result.message_sync.total_messages == 1


@pytest.mark.asyncio
async def test_error_state_recovers_on_next_successful_run(session_factory, account_id, load_account):
    await SyncOrchestrator(numbered_folder_graph(failing_index=3), account_id, session_factory).perform_full_sync()
    assert (await load_account(account_id)).status == AccountStatus.ERROR

    graph = numbered_folder_graph()
    result = await SyncOrchestrator(graph, account_id, session_factory).perform_full_sync()

    assert result.overall_status == OverallStatus.SUCCESS
    account = await load_account(account_id)
    assert account.status == AccountStatus.ACTIVE
    assert account.error_count == 0


@pytest.mark.asyncio
async def test_needs_reauth_account_is_not_synced(session_factory, account_id, set_status, load_account):
    await set_status(account_id, AccountStatus.NEEDS_REAUTH, "Please reconnect")
    graph = numbered_folder_graph()

    result = await SyncOrchestrator(graph, account_id, session_factory).perform_full_sync()

    assert result.overall_status == OverallStatus.FAILED
    assert graph.delta_calls == []
    account = await load_account(account_id)
    assert account.status == AccountStatus.NEEDS_REAUTH
    assert account.status_message == "Please reconnect"


@pytest.mark.asyncio
async def test_unknown_account_raises(session_factory, db_engine):
    with pytest.raises(AccountNotFoundError):
        await SyncOrchestrator(FakeGraph(), "missing", session_factory).perform_full_sync()


@pytest.mark.asyncio
async def test_sync_folder_and_stats(session_factory, account_id):
    graph = numbered_folder_graph()
    orchestrator = SyncOrchestrator(graph, account_id, session_factory)
    await orchestrator.perform_quick_sync()

    stats = await orchestrator.get_sync_stats()

    assert stats.total_messages == 24
    assert stats.unread_messages == 24
    assert stats.last_sync_at is not None


@pytest.mark.asyncio
async def test_message_sync_runs_at_most_ten_folders_at_once(session_factory, account_id):
    graph = numbered_folder_graph(count=23, delay=0.5)

    result = await SyncOrchestrator(graph, account_id, session_factory).perform_full_sync()

    assert result.overall_status == OverallStatus.SUCCESS
    assert result.message_sync.total_folders == 23
    assert graph.peak_in_flight == 10

    batches = [[f"f{i}" for i in range(start, min(start + 10, 24))] for start in (1, 11, 21)]
    assert [len(batch) for batch in batches] == [10, 10, 3]
    position = {event: index for index, event in enumerate(graph.events)}
    for previous, current in zip(batches, batches[1:]):
        last_end = max(position[("end", folder)] for folder in previous)
        first_start = min(position[("start", folder)] for folder in current)
        assert last_end < first_start


@pytest.mark.asyncio
async def test_concurrent_full_syncs_share_one_run(session_factory, account_id, load_account):
    slow_ok = numbered_folder_graph(delay=0.05)
    fast_partial = numbered_folder_graph(failing_index=3)

    first, second = await asyncio.gather(
        SyncOrchestrator(slow_ok, account_id, session_factory).perform_full_sync(),
        SyncOrchestrator(fast_partial, account_id, session_factory).perform_full_sync(),
    )

    assert first is second
    assert first.overall_status == OverallStatus.SUCCESS
    assert fast_partial.delta_calls == []
    account = await load_account(account_id)
    assert account.status == AccountStatus.ACTIVE
    assert account.error_count == 0

    # The account is free again once the shared run has finished.
    again = await SyncOrchestrator(fast_partial, account_id, session_factory).perform_full_sync()
    assert again is not first
    assert again.overall_status == OverallStatus.PARTIAL


@pytest.mark.asyncio
async def test_outcome_is_written_when_status_changed_mid_run(session_factory, account_id, set_status, load_account):
    await set_status(account_id, AccountStatus.ERROR, "Folder 3: Graph 403")
    orchestrator = SyncOrchestrator(FakeGraph(), account_id, session_factory)

    await orchestrator._record_outcome(SyncResult(account_id=account_id))

    account = await load_account(account_id)
    assert account.status == AccountStatus.ACTIVE
    assert account.status_message is None
