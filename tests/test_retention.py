"""Summary: Tests for the read-message retention sweep."""

from __future__ import annotations

from datetime import timedelta

from conftest import add_message, add_workspace
from dmfocus.config import AppConfig
from dmfocus.models import SKIPPED_RESULT, format_timestamp, utc_now
from dmfocus.services import RetentionService
from dmfocus.storage.sqlite_store import SqliteStore


def test_cleanup_deletes_only_old_read_messages(store: SqliteStore, config: AppConfig) -> None:
    """Summary: Verify only read messages past the retention window are removed.

    Importance: Unread messages are never deleted, however old.
    Alternatives: Delete by age alone.
    """

    _, workspace_id = add_workspace(store)
    now = utc_now()
    old_read = add_message(store, workspace_id, "mensagem lida antiga", now - timedelta(days=31))
    old_unread = add_message(store, workspace_id, "mensagem não lida antiga", now - timedelta(days=45))
    recent_read = add_message(store, workspace_id, "mensagem lida recente", now - timedelta(days=29))
    store.upsert_classification(old_read, SKIPPED_RESULT, format_timestamp(now))
    store.mark_message_read(old_read)
    store.mark_message_read(recent_read)

    report = RetentionService(store, config).cleanup_read_messages(now=now)
    assert report.to_dict() == {
        "deleted": 1,
        "message": "Cleaned up 1 read messages older than 30 days",
    }
    assert store.get_message(old_read) is None
    assert store.get_classification(old_read) is None
    assert store.get_message(old_unread) is not None
    assert store.get_message(recent_read) is not None


def test_cleanup_with_nothing_to_delete(store: SqliteStore, config: AppConfig) -> None:
    report = RetentionService(store, config).cleanup_read_messages()
    assert report.to_dict() == {"deleted": 0, "message": "No messages to clean up"}
