"""Summary: Tests for the SQLite storage layer.

Importance: Claims, upserts, and lifecycle transitions are the only concurrency control the service has.
Alternatives: Rely on service-level tests only.
"""

from __future__ import annotations

import sqlite3
from datetime import timedelta
from pathlib import Path

from conftest import add_message, add_workspace
from dmfocus.models import (
    SKIPPED_RESULT,
    STATUS_PENDING,
    STATUS_PROCESSING,
    ClassificationResult,
    format_timestamp,
    utc_now,
)
from dmfocus.storage.sqlite_store import SqliteStore


def test_initialize_is_idempotent_and_adds_claim_column(tmp_path: Path) -> None:
    """Summary: Verify the schema bootstrap can run repeatedly.

    Importance: Every process start calls initialize().
    Alternatives: Run migrations with a dedicated tool.
    """

    store = SqliteStore(str(tmp_path / "store.db"))
    store.initialize()
    store.initialize()
    connection = sqlite3.connect(tmp_path / "store.db")
    try:
        columns = {row[1] for row in connection.execute("PRAGMA table_info(messages)")}
    finally:
        connection.close()
    assert "claimed_at" in columns


def test_message_roundtrip_defaults_to_pending(store: SqliteStore) -> None:
    _, workspace_id = add_workspace(store)
    message_id = add_message(store, workspace_id, "Olá!", utc_now())
    message = store.get_message(message_id)
    assert message is not None
    assert message.classification_status == STATUS_PENDING
    assert message.is_read is False
    assert message.claimed_at is None


def test_classification_upsert_keeps_one_row(store: SqliteStore) -> None:
    """Summary: Ensure a message never has more than one classification.

    Importance: Concurrent runs may both classify the same message.
    Alternatives: Append rows and read the latest.
    """

    _, workspace_id = add_workspace(store)
    message_id = add_message(store, workspace_id, "Quero uma publi", utc_now())
    now = format_timestamp(utc_now())
    store.upsert_classification(message_id, SKIPPED_RESULT, now)
    store.upsert_classification(
        message_id, ClassificationResult("partnership", "respond_now", "Vamos!", 0.85), now
    )
    items = store.list_workspace_messages(workspace_id, 10)
    assert len(items) == 1
    assert items[0].classification.intent == "partnership"
    assert items[0].classification.confidence == 0.85


def test_claim_only_succeeds_once(store: SqliteStore) -> None:
    _, workspace_id = add_workspace(store)
    first = add_message(store, workspace_id, "mensagem um aqui", utc_now())
    second = add_message(store, workspace_id, "mensagem dois aqui", utc_now())
    now = format_timestamp(utc_now())
    assert store.claim_messages([first, second], now) == [first, second]
    assert store.claim_messages([first, second], now) == []
    assert store.get_message(first).classification_status == STATUS_PROCESSING


def test_reclaim_only_touches_stale_claims(store: SqliteStore) -> None:
    _, workspace_id = add_workspace(store)
    stale = add_message(store, workspace_id, "mensagem antiga", utc_now())
    fresh = add_message(store, workspace_id, "mensagem nova", utc_now())
    now = utc_now()
    store.claim_messages([stale], format_timestamp(now - timedelta(minutes=30)))
    store.claim_messages([fresh], format_timestamp(now))
    reclaimed = store.reclaim_stale_claims(format_timestamp(now - timedelta(minutes=15)))
    assert reclaimed == 1
    assert store.get_message(stale).classification_status == STATUS_PENDING
    assert store.get_message(fresh).classification_status == STATUS_PROCESSING


def test_mark_read_is_scoped_to_workspace(store: SqliteStore) -> None:
    _, workspace_id = add_workspace(store)
    _, other_workspace = add_workspace(store, email="other@example.com", page_id="page-2")
    message_id = add_message(store, workspace_id, "Oi, tudo certo?", utc_now())
    assert store.mark_message_read(message_id, other_workspace) is False
    assert store.mark_message_read(message_id, workspace_id) is True
    assert store.get_message(message_id).is_read is True


def test_subscription_transitions_are_guarded_by_status(store: SqliteStore) -> None:
    """Summary: Ensure lifecycle updates only apply from the expected prior status.

    Importance: Keeps the state machine monotonic under concurrent sweeps.
    Alternatives: Check status in application code only.
    """

    user_id, _ = add_workspace(store)
    now = format_timestamp(utc_now())
    store.activate_subscription(user_id, now, "pay-1", now)
    subscription = store.get_subscription(user_id)
    assert store.move_to_blocked(subscription.id, now) is False
    assert store.move_to_grace_period(subscription.id, now, now) is True
    assert store.move_to_grace_period(subscription.id, now, now) is False
    assert store.move_to_blocked(subscription.id, now) is True
    assert store.mark_for_deletion(subscription.id, now) is True
    assert store.get_subscription(user_id).status == "pending_deletion"


def test_activation_clears_lifecycle_fields(store: SqliteStore) -> None:
    user_id, _ = add_workspace(store)
    now = format_timestamp(utc_now())
    store.activate_subscription(user_id, now, "pay-1", now)
    subscription = store.get_subscription(user_id)
    store.move_to_grace_period(subscription.id, now, now)
    store.move_to_blocked(subscription.id, now)
    store.activate_subscription(user_id, now, "pay-2", now)
    refreshed = store.get_subscription(user_id)
    assert refreshed.status == "active"
    assert refreshed.grace_period_until is None
    assert refreshed.blocked_at is None
    assert refreshed.payment_id == "pay-2"


def test_delete_by_ids_handles_large_sets(store: SqliteStore) -> None:
    _, workspace_id = add_workspace(store)
    ids = [add_message(store, workspace_id, f"mensagem número {index}", utc_now()) for index in range(620)]
    assert store.delete_messages(ids) == 620
    assert store.list_message_ids_for_workspace(workspace_id) == []
