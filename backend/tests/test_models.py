import pytest
from sqlalchemy import text

from mailmirror.errors import FolderMappingError, InvalidStatusTransition
from mailmirror.models.account import Account, AccountStatus
from mailmirror.models.folder import folder_type_for
from mailmirror.models.sync_state import SyncScope
from mailmirror.services.message_mapper import map_graph_message, parse_recipients


@pytest.mark.parametrize(
    "current, target",
    [
        (AccountStatus.ACTIVE, AccountStatus.SYNCING),
        (AccountStatus.SYNCING, AccountStatus.ACTIVE),
        (AccountStatus.SYNCING, AccountStatus.ERROR),
        (AccountStatus.ERROR, AccountStatus.SYNCING),
        (AccountStatus.ERROR, AccountStatus.NEEDS_REAUTH),
        (AccountStatus.ACTIVE, AccountStatus.NEEDS_REAUTH),
        (AccountStatus.NEEDS_REAUTH, AccountStatus.ACTIVE),
        (AccountStatus.ACTIVE, AccountStatus.ACTIVE),
    ],
)
def test_legal_transitions(current, target):
    account = Account(email="user@example.com", status=current)
    account.transition_to(target)
    assert account.status == target


@pytest.mark.parametrize(
    "current, target",
    [
        (AccountStatus.NEEDS_REAUTH, AccountStatus.SYNCING),
        (AccountStatus.NEEDS_REAUTH, AccountStatus.ERROR),
        (AccountStatus.ERROR, AccountStatus.ACTIVE),
    ],
)
def test_illegal_transitions(current, target):
    account = Account(email="user@example.com", status=current)
    with pytest.raises(InvalidStatusTransition):
        account.transition_to(target)
    assert account.status == current


def test_sync_scope_keys():
    assert SyncScope.folders().key == "folders"
    assert SyncScope.mailbox().key == "messages"
    assert SyncScope.folder("AAMk=").key == "messages:AAMk="
    assert SyncScope.from_key("messages:AAMk=") == SyncScope.folder("AAMk=")
    assert SyncScope.from_key("messages") == SyncScope.mailbox()
    assert not SyncScope.folders().is_message_scope
    with pytest.raises(ValueError):
        SyncScope.folder("")
    with pytest.raises(ValueError):
        SyncScope.from_key("contacts")


def test_folder_types():
    assert folder_type_for("Inbox") == "inbox"
    assert folder_type_for(" Deleted Items ") == "deleteditems"
    assert folder_type_for("Receipts") == "custom"


def test_recipients_keep_order():
    recipients = [
        {"emailAddress": {"name": "B", "address": "b@example.com"}},
        {"emailAddress": {"address": "a@example.com"}},
    ]
    assert parse_recipients(recipients) == [
        {"name": "B", "address": "b@example.com"},
        {"name": None, "address": "a@example.com"},
    ]
    assert parse_recipients(None) is None


def test_mapping_without_folder_raises():
    with pytest.raises(FolderMappingError) as excinfo:
        map_graph_message({"id": "m1", "parentFolderId": "elsewhere"}, "acct", {"inbox": 1})
    assert excinfo.value.parent_folder_id == "elsewhere"


def test_mapping_defaults():
    row = map_graph_message(
        {
            "id": "m1",
            "parentFolderId": "inbox",
            "body": {"contentType": "text", "content": "plain body"},
            "flag": {"flagStatus": "flagged"},
            "conversationIndex": "AQHZ",
        },
        "acct",
        {"inbox": 1},
    )
    assert row["folder_id"] == 1
    assert row["subject"] == "(No Subject)"
    assert row["body_text"] == "plain body"
    assert row["body_html"] is None
    assert row["is_flagged"] is True
    assert row["importance"] == "normal"
    assert row["conversation_index"] == b"\x01\x01\xd9"


@pytest.mark.asyncio
async def test_sqlite_engine_enforces_foreign_keys_and_wal(db_engine):
    async with db_engine.connect() as conn:
        assert (await conn.execute(text("PRAGMA foreign_keys"))).scalar() == 1
        assert (await conn.execute(text("PRAGMA journal_mode"))).scalar() == "wal"
        assert (await conn.execute(text("PRAGMA busy_timeout"))).scalar() == 30000
