"""Summary: SQLite storage implementation for DM Focus.

Importance: Provides the persistence layer for messages, classifications, and subscription lifecycle.
Alternatives: Use an ORM or a hosted Postgres database.
"""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator

from dmfocus.models import (
    STATUS_PENDING,
    STATUS_PROCESSING,
    SUBSCRIPTION_ACTIVE,
    SUBSCRIPTION_BLOCKED,
    SUBSCRIPTION_GRACE,
    SUBSCRIPTION_PENDING_DELETION,
    AiRequest,
    AiResponse,
    ClassificationResult,
    InboundMessage,
    User,
    format_timestamp,
)


MESSAGE_FIELDS = (
    "id",
    "workspace_id",
    "provider_message_id",
    "sender_provider_id",
    "sender_name",
    "sender_username",
    "sender_avatar_url",
    "sender_followers_count",
    "conversation_id",
    "content",
    "received_at",
    "is_read",
    "classification_status",
    "claimed_at",
)
MESSAGE_COLUMNS = ", ".join(MESSAGE_FIELDS)
SUBSCRIPTION_COLUMNS = (
    "id, user_id, status, plan, expires_at, grace_period_until, blocked_at, "
    "marked_for_deletion_at, payment_id, updated_at"
)
PROFILE_COLUMNS = (
    "id, user_id, display_name, provider_user_id, provider_username, access_token, token_encrypted"
)
# Stays below SQLite's default bound-parameter limit.
ID_CHUNK_SIZE = 500


@dataclass(frozen=True)
class StoredUser:
    """Summary: User record with database identifier.

    Importance: Owns profiles, workspaces, subscriptions, and bearer tokens.
    Alternatives: Keep identities only in an external auth service.
    """

    id: int
    display_name: str
    email: str


@dataclass(frozen=True)
class StoredProfile:
    """Summary: Profile record holding the Instagram connection.

    Importance: Carries the (possibly encrypted) access token used for Graph API calls.
    Alternatives: Store tokens in a separate credentials table.
    """

    id: int
    user_id: int
    display_name: str | None
    provider_user_id: str | None
    provider_username: str | None
    access_token: str | None
    token_encrypted: bool


@dataclass(frozen=True)
class StoredWorkspace:
    """Summary: Workspace record bound to one Instagram account.

    Importance: Resolves webhook entries to their owning user.
    Alternatives: Key messages directly by Instagram page ID.
    """

    id: int
    owner_id: int
    name: str
    provider_page_id: str | None


@dataclass(frozen=True)
class StoredMessage:
    """Summary: Message record with database identifier and classification state.

    Importance: Links messages to classifications and tracks the batch claim.
    Alternatives: Use provider_message_id as the only identifier.
    """

    id: int
    workspace_id: int
    provider_message_id: str | None
    sender_provider_id: str
    sender_name: str | None
    sender_username: str | None
    sender_avatar_url: str | None
    sender_followers_count: int | None
    conversation_id: str | None
    content: str
    received_at: str
    is_read: bool
    classification_status: str
    claimed_at: str | None


@dataclass(frozen=True)
class StoredClassification:
    """Summary: Classification record keyed by message.

    Importance: Holds the triage decision shown on the dashboard.
    Alternatives: Store classification columns on the message row.
    """

    message_id: int
    intent: str
    priority: str
    suggested_reply: str | None
    confidence: float | None
    classified_at: str


@dataclass(frozen=True)
class StoredInboxItem:
    """Summary: Message joined with its optional classification.

    Importance: Feeds the dashboard listing in one query.
    Alternatives: Fetch classifications per message.
    """

    message: StoredMessage
    classification: StoredClassification | None


@dataclass(frozen=True)
class StoredSubscription:
    """Summary: Subscription record with lifecycle timestamps.

    Importance: Drives UI gating and the lifecycle sweep.
    Alternatives: Derive status from payment history on every request.
    """

    id: int
    user_id: int
    status: str
    plan: str
    expires_at: str
    grace_period_until: str | None
    blocked_at: str | None
    marked_for_deletion_at: str | None
    payment_id: str | None
    updated_at: str


@dataclass(frozen=True)
class StoredAiRequest:
    """Summary: AI request record with database identifier.

    Importance: Lets audits list which prompts were sent and why.
    Alternatives: Keep audit data only in logs.
    """

    id: int
    provider: str
    model: str
    prompt: str
    purpose: str
    timestamp: str


class SqliteStore:
    """Summary: SQLite-backed storage for DM Focus.

    Importance: Every write is a single-row or id-set update so partial failures stay recoverable.
    Alternatives: Use Postgres and SQLAlchemy with database-level cascades.
    """

    def __init__(self, db_path: str) -> None:
        """Summary: Initialize the storage with a database path.

        Importance: Tests point each case at its own temporary file.
        Alternatives: Use an in-memory database everywhere.
        """

        self._db_path = Path(db_path)

    def initialize(self) -> None:
        """Summary: Create tables if they do not exist.

        Importance: Ensures the database is ready for webhooks, batches, and sweeps.
        Alternatives: Require a separate init step before the first webhook.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    display_name TEXT NOT NULL,
                    email TEXT NOT NULL UNIQUE
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS api_keys (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    token_hash TEXT NOT NULL UNIQUE,
                    label TEXT,
                    created_at TEXT NOT NULL
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS profiles (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL UNIQUE,
                    display_name TEXT,
                    provider_user_id TEXT,
                    provider_username TEXT,
                    access_token TEXT,
                    token_encrypted INTEGER NOT NULL DEFAULT 0
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS workspaces (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    owner_id INTEGER NOT NULL UNIQUE,
                    name TEXT NOT NULL,
                    provider_page_id TEXT
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS messages (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    workspace_id INTEGER NOT NULL,
                    provider_message_id TEXT,
                    sender_provider_id TEXT NOT NULL,
                    sender_name TEXT,
                    sender_username TEXT,
                    sender_avatar_url TEXT,
                    sender_followers_count INTEGER,
                    conversation_id TEXT,
                    content TEXT NOT NULL,
                    received_at TEXT NOT NULL,
                    is_read INTEGER NOT NULL DEFAULT 0,
                    classification_status TEXT NOT NULL DEFAULT 'pending'
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS classifications (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    message_id INTEGER NOT NULL UNIQUE,
                    intent TEXT NOT NULL,
                    priority TEXT NOT NULL,
                    suggested_reply TEXT,
                    confidence REAL,
                    classified_at TEXT NOT NULL
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS subscriptions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL UNIQUE,
                    status TEXT NOT NULL,
                    plan TEXT NOT NULL DEFAULT 'monthly',
                    expires_at TEXT NOT NULL,
                    grace_period_until TEXT,
                    blocked_at TEXT,
                    marked_for_deletion_at TEXT,
                    payment_id TEXT,
                    updated_at TEXT NOT NULL
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS ai_requests (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    provider TEXT NOT NULL,
                    model TEXT NOT NULL,
                    prompt TEXT NOT NULL,
                    purpose TEXT NOT NULL,
                    timestamp TEXT NOT NULL
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS ai_responses (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    request_id INTEGER NOT NULL,
                    response_text TEXT NOT NULL,
                    latency_ms INTEGER NOT NULL,
                    token_estimate INTEGER NOT NULL
                )
                """
            )
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_messages_status_received "
                "ON messages (classification_status, received_at)"
            )
            connection.commit()
        self._ensure_column("messages", "claimed_at", "TEXT")

    # Users and bearer tokens

    def ensure_user(self, user: User) -> int:
        """Summary: Ensure a user exists and return their ID.

        Importance: Anchors the rows the lifecycle sweep later deletes.
        Alternatives: Omit user records and key everything by email.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                "INSERT OR IGNORE INTO users (display_name, email) VALUES (?, ?)",
                (user.display_name, user.email),
            )
            if cursor.rowcount:
                user_id = cursor.lastrowid
            else:
                cursor.execute("SELECT id FROM users WHERE email = ?", (user.email,))
                row = cursor.fetchone()
                user_id = int(row[0]) if row else 0
            connection.commit()
        return int(user_id)

    def get_user(self, user_id: int) -> StoredUser | None:
        """Summary: Fetch a user by ID."""

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute("SELECT id, display_name, email FROM users WHERE id = ?", (user_id,))
            row = cursor.fetchone()
        return StoredUser(*row) if row else None

    def get_user_by_email(self, email: str) -> StoredUser | None:
        """Summary: Fetch a user by email.

        Importance: Lets the CLI resolve users when issuing tokens.
        Alternatives: Require numeric user IDs everywhere.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute("SELECT id, display_name, email FROM users WHERE email = ?", (email,))
            row = cursor.fetchone()
        return StoredUser(*row) if row else None

    def create_api_key(
        self, user_id: int, token_hash: str, label: str | None, created_at: str
    ) -> int:
        """Summary: Persist a hashed bearer token for a user."""

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                "INSERT INTO api_keys (user_id, token_hash, label, created_at) VALUES (?, ?, ?, ?)",
                (user_id, token_hash, label, created_at),
            )
            key_id = cursor.lastrowid
            connection.commit()
        return int(key_id)

    def get_user_id_by_api_key(self, token_hash: str) -> int | None:
        """Summary: Resolve the owner of a hashed bearer token."""

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute("SELECT user_id FROM api_keys WHERE token_hash = ?", (token_hash,))
            row = cursor.fetchone()
        return int(row[0]) if row else None

    # Profiles

    def ensure_profile(self, user_id: int, display_name: str | None = None) -> int:
        """Summary: Ensure a profile row exists for a user.

        Importance: OAuth connection and token migration both expect one profile per user.
        Alternatives: Create profiles lazily inside each caller.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                "INSERT OR IGNORE INTO profiles (user_id, display_name) VALUES (?, ?)",
                (user_id, display_name),
            )
            cursor.execute("SELECT id FROM profiles WHERE user_id = ?", (user_id,))
            row = cursor.fetchone()
            connection.commit()
        return int(row[0])

    def get_profile(self, user_id: int) -> StoredProfile | None:
        """Summary: Fetch the profile for a user."""

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                f"SELECT {PROFILE_COLUMNS} FROM profiles WHERE user_id = ?",
                (user_id,),
            )
            row = cursor.fetchone()
        return _profile_from_row(row) if row else None

    def update_profile_connection(
        self,
        user_id: int,
        provider_user_id: str,
        provider_username: str,
        access_token: str,
        token_encrypted: bool,
    ) -> None:
        """Summary: Store the Instagram identity and token on a profile.

        Importance: Completes the OAuth connection for later webhook enrichment and replies.
        Alternatives: Keep provider identity on the workspace only.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                UPDATE profiles
                SET provider_user_id = ?, provider_username = ?, access_token = ?, token_encrypted = ?
                WHERE user_id = ?
                """,
                (provider_user_id, provider_username, access_token, int(token_encrypted), user_id),
            )
            connection.commit()

    def list_profiles_with_plaintext_tokens(self) -> list[StoredProfile]:
        """Summary: List profiles holding a token not yet flagged as encrypted.

        Importance: Feeds the one-time token encryption migration.
        Alternatives: Encrypt tokens lazily on next read.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                f"""
                SELECT {PROFILE_COLUMNS} FROM profiles
                WHERE access_token IS NOT NULL AND token_encrypted = 0
                ORDER BY id
                """
            )
            rows = cursor.fetchall()
        return [_profile_from_row(row) for row in rows]

    def update_profile_token(self, profile_id: int, access_token: str, token_encrypted: bool) -> None:
        """Summary: Replace a profile's stored token and encryption flag."""

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                "UPDATE profiles SET access_token = ?, token_encrypted = ? WHERE id = ?",
                (access_token, int(token_encrypted), profile_id),
            )
            connection.commit()

    def delete_profile(self, user_id: int) -> int:
        """Summary: Delete a user's profile and return the number of rows removed."""

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute("DELETE FROM profiles WHERE user_id = ?", (user_id,))
            deleted = cursor.rowcount
            connection.commit()
        return deleted

    # Workspaces

    def upsert_workspace(self, owner_id: int, name: str, provider_page_id: str) -> int:
        """Summary: Create or update the single workspace owned by a user.

        Importance: Keeps one Instagram identity per owner across reconnects.
        Alternatives: Create a new workspace on every connection.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                INSERT INTO workspaces (owner_id, name, provider_page_id) VALUES (?, ?, ?)
                ON CONFLICT(owner_id) DO UPDATE SET
                    name = excluded.name,
                    provider_page_id = excluded.provider_page_id
                """,
                (owner_id, name, provider_page_id),
            )
            cursor.execute("SELECT id FROM workspaces WHERE owner_id = ?", (owner_id,))
            row = cursor.fetchone()
            connection.commit()
        return int(row[0])

    def get_workspace_by_page_id(self, provider_page_id: str) -> StoredWorkspace | None:
        """Summary: Resolve a workspace from an Instagram page ID."""

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                "SELECT id, owner_id, name, provider_page_id FROM workspaces WHERE provider_page_id = ?",
                (provider_page_id,),
            )
            row = cursor.fetchone()
        return StoredWorkspace(*row) if row else None

    def list_workspaces_for_owner(self, owner_id: int) -> list[StoredWorkspace]:
        """Summary: List workspaces owned by a user."""

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                "SELECT id, owner_id, name, provider_page_id FROM workspaces WHERE owner_id = ?",
                (owner_id,),
            )
            rows = cursor.fetchall()
        return [StoredWorkspace(*row) for row in rows]

    def delete_workspace(self, workspace_id: int) -> int:
        """Summary: Delete a workspace row."""

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute("DELETE FROM workspaces WHERE id = ?", (workspace_id,))
            deleted = cursor.rowcount
            connection.commit()
        return deleted

    # Messages

    def save_message(self, message: InboundMessage) -> int:
        """Summary: Persist an inbound message as pending classification.

        Importance: Webhook intake must store messages before any classification work.
        Alternatives: Classify synchronously before inserting.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                INSERT INTO messages (
                    workspace_id, provider_message_id, sender_provider_id, sender_name,
                    sender_username, sender_avatar_url, sender_followers_count,
                    conversation_id, content, received_at, is_read, classification_status
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?)
                """,
                (
                    message.workspace_id,
                    message.provider_message_id,
                    message.sender_provider_id,
                    message.sender_name,
                    message.sender_username,
                    message.sender_avatar_url,
                    message.sender_followers_count,
                    message.conversation_id,
                    message.content,
                    format_timestamp(message.received_at),
                    STATUS_PENDING,
                ),
            )
            message_id = cursor.lastrowid
            connection.commit()
        return int(message_id)

    def get_message(self, message_id: int) -> StoredMessage | None:
        """Summary: Retrieve a single message by ID."""

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(f"SELECT {MESSAGE_COLUMNS} FROM messages WHERE id = ?", (message_id,))
            row = cursor.fetchone()
        return _message_from_row(row) if row else None

    def list_workspace_messages(self, workspace_id: int, limit: int) -> list[StoredInboxItem]:
        """Summary: List a workspace's messages with classifications, newest first.

        Importance: Supplies the dashboard without one query per message.
        Alternatives: Let the UI join classifications client-side.
        """

        message_columns = ", ".join(f"m.{field}" for field in MESSAGE_FIELDS)
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                f"""
                SELECT {message_columns}, c.message_id, c.intent, c.priority,
                       c.suggested_reply, c.confidence, c.classified_at
                FROM messages m
                LEFT JOIN classifications c ON c.message_id = m.id
                WHERE m.workspace_id = ?
                ORDER BY m.received_at DESC
                LIMIT ?
                """,
                (workspace_id, limit),
            )
            rows = cursor.fetchall()
        items: list[StoredInboxItem] = []
        size = len(MESSAGE_FIELDS)
        for row in rows:
            classification = (
                StoredClassification(*row[size:]) if row[size] is not None else None
            )
            items.append(StoredInboxItem(_message_from_row(row[:size]), classification))
        return items

    def mark_message_read(self, message_id: int, workspace_id: int | None = None) -> bool:
        """Summary: Mark a message as read, optionally scoped to a workspace.

        Importance: Read messages become eligible for retention cleanup.
        Alternatives: Track read state per device in the client.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            if workspace_id is None:
                cursor.execute("UPDATE messages SET is_read = 1 WHERE id = ?", (message_id,))
            else:
                cursor.execute(
                    "UPDATE messages SET is_read = 1 WHERE id = ? AND workspace_id = ?",
                    (message_id, workspace_id),
                )
            updated = cursor.rowcount
            connection.commit()
        return updated > 0

    def workspace_message_counts(self, workspace_id: int) -> dict[str, int]:
        """Summary: Count messages by read state, priority, and intent for a workspace.

        Importance: Powers the dashboard header without loading every message.
        Alternatives: Count in the client after listing messages.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                SELECT
                    COUNT(m.id),
                    COALESCE(SUM(CASE WHEN m.is_read = 0 THEN 1 ELSE 0 END), 0),
                    COALESCE(SUM(CASE WHEN c.priority = 'respond_now' THEN 1 ELSE 0 END), 0),
                    COALESCE(SUM(CASE WHEN c.intent = 'partnership' THEN 1 ELSE 0 END), 0),
                    COALESCE(SUM(CASE WHEN m.classification_status IN ('pending', 'processing')
                        THEN 1 ELSE 0 END), 0)
                FROM messages m
                LEFT JOIN classifications c ON c.message_id = m.id
                WHERE m.workspace_id = ?
                """,
                (workspace_id,),
            )
            row = cursor.fetchone()
        return {
            "total": int(row[0]),
            "unread": int(row[1]),
            "respond_now": int(row[2]),
            "partnerships": int(row[3]),
            "pending_classification": int(row[4]),
        }

    def list_message_ids_for_workspace(self, workspace_id: int) -> list[int]:
        """Summary: List all message IDs in a workspace."""

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute("SELECT id FROM messages WHERE workspace_id = ?", (workspace_id,))
            rows = cursor.fetchall()
        return [int(row[0]) for row in rows]

    def list_read_message_ids_before(self, cutoff: str) -> list[int]:
        """Summary: List read messages received before a cutoff timestamp.

        Importance: Selects the retention sweep's deletion set.
        Alternatives: Delete directly with a single statement.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                "SELECT id FROM messages WHERE is_read = 1 AND received_at < ? ORDER BY id",
                (cutoff,),
            )
            rows = cursor.fetchall()
        return [int(row[0]) for row in rows]

    def delete_messages(self, message_ids: Iterable[int]) -> int:
        """Summary: Delete messages by ID and return the number removed."""

        return self._delete_by_ids("messages", "id", message_ids)

    # Classification claims

    def list_pending_messages(self, received_before: str, limit: int) -> list[StoredMessage]:
        """Summary: List pending messages received at or before a cutoff, oldest first.

        Importance: Defines the batch window so bursts settle before classification.
        Alternatives: Sleep inside the batch job until the window closes.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                f"""
                SELECT {MESSAGE_COLUMNS} FROM messages
                WHERE classification_status = ? AND received_at <= ?
                ORDER BY received_at ASC, id ASC
                LIMIT ?
                """,
                (STATUS_PENDING, received_before, limit),
            )
            rows = cursor.fetchall()
        return [_message_from_row(row) for row in rows]

    def claim_messages(self, message_ids: Iterable[int], claimed_at: str) -> list[int]:
        """Summary: Move pending messages to processing and return the IDs actually claimed.

        Importance: A row only changes while still pending, so a concurrent batch cannot claim it twice.
        Alternatives: Use SELECT ... FOR UPDATE on a server database.
        """

        claimed: list[int] = []
        with self._connection() as connection:
            cursor = connection.cursor()
            for message_id in message_ids:
                cursor.execute(
                    """
                    UPDATE messages SET classification_status = ?, claimed_at = ?
                    WHERE id = ? AND classification_status = ?
                    """,
                    (STATUS_PROCESSING, claimed_at, message_id, STATUS_PENDING),
                )
                if cursor.rowcount:
                    claimed.append(message_id)
            connection.commit()
        return claimed

    def release_claim(self, message_id: int) -> bool:
        """Summary: Return a processing message to pending so a later run retries it."""

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                UPDATE messages SET classification_status = ?, claimed_at = NULL
                WHERE id = ? AND classification_status = ?
                """,
                (STATUS_PENDING, message_id, STATUS_PROCESSING),
            )
            updated = cursor.rowcount
            connection.commit()
        return updated > 0

    def reclaim_stale_claims(self, claimed_before: str) -> int:
        """Summary: Reset processing rows whose claim is older than a cutoff back to pending.

        Importance: Recovers messages orphaned by a batch run that crashed mid-way.
        Alternatives: Require an operator to reset stuck rows by hand.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                UPDATE messages SET classification_status = ?, claimed_at = NULL
                WHERE classification_status = ?
                  AND (claimed_at IS NULL OR claimed_at < ?)
                """,
                (STATUS_PENDING, STATUS_PROCESSING, claimed_before),
            )
            updated = cursor.rowcount
            connection.commit()
        return updated

    def set_classification_status(self, message_id: int, status: str) -> None:
        """Summary: Record a message's final classification status and drop its claim."""

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                "UPDATE messages SET classification_status = ?, claimed_at = NULL WHERE id = ?",
                (status, message_id),
            )
            connection.commit()

    # Classifications

    def upsert_classification(
        self, message_id: int, result: ClassificationResult, classified_at: str
    ) -> None:
        """Summary: Insert or replace the classification for a message.

        Importance: Keeps at most one classification per message even when two runs race.
        Alternatives: Append classifications and read the latest.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                INSERT INTO classifications (
                    message_id, intent, priority, suggested_reply, confidence, classified_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(message_id) DO UPDATE SET
                    intent = excluded.intent,
                    priority = excluded.priority,
                    suggested_reply = excluded.suggested_reply,
                    confidence = excluded.confidence,
                    classified_at = excluded.classified_at
                """,
                (
                    message_id,
                    result.intent,
                    result.priority,
                    result.suggested_reply,
                    result.confidence,
                    classified_at,
                ),
            )
            connection.commit()

    def get_classification(self, message_id: int) -> StoredClassification | None:
        """Summary: Fetch the classification for a message."""

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                SELECT message_id, intent, priority, suggested_reply, confidence, classified_at
                FROM classifications WHERE message_id = ?
                """,
                (message_id,),
            )
            row = cursor.fetchone()
        return StoredClassification(*row) if row else None

    def delete_classifications(self, message_ids: Iterable[int]) -> int:
        """Summary: Delete classifications for a set of messages."""

        return self._delete_by_ids("classifications", "message_id", message_ids)

    # Subscriptions

    def get_subscription(self, user_id: int) -> StoredSubscription | None:
        """Summary: Fetch a user's subscription."""

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                f"SELECT {SUBSCRIPTION_COLUMNS} FROM subscriptions WHERE user_id = ?",
                (user_id,),
            )
            row = cursor.fetchone()
        return StoredSubscription(*row) if row else None

    def activate_subscription(
        self, user_id: int, expires_at: str, payment_id: str | None, updated_at: str
    ) -> None:
        """Summary: Create or reset a subscription to active with a fresh expiry.

        Importance: The payment path is the only way back to active, so lifecycle fields are cleared.
        Alternatives: Insert a new subscription row per payment.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                INSERT INTO subscriptions (user_id, status, expires_at, payment_id, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    status = excluded.status,
                    expires_at = excluded.expires_at,
                    payment_id = excluded.payment_id,
                    updated_at = excluded.updated_at,
                    grace_period_until = NULL,
                    blocked_at = NULL,
                    marked_for_deletion_at = NULL
                """,
                (user_id, SUBSCRIPTION_ACTIVE, expires_at, payment_id, updated_at),
            )
            connection.commit()

    def list_expired_active_subscriptions(self, now: str) -> list[StoredSubscription]:
        """Summary: List active subscriptions whose expiry has passed."""

        return self._select_subscriptions(
            "status = ? AND expires_at < ?", (SUBSCRIPTION_ACTIVE, now)
        )

    def list_expired_grace_subscriptions(self, now: str) -> list[StoredSubscription]:
        """Summary: List grace-period subscriptions whose grace window has passed."""

        return self._select_subscriptions(
            "status = ? AND grace_period_until < ?", (SUBSCRIPTION_GRACE, now)
        )

    def list_blocked_subscriptions_before(self, cutoff: str) -> list[StoredSubscription]:
        """Summary: List blocked subscriptions blocked before a cutoff and not yet marked."""

        return self._select_subscriptions(
            "status = ? AND blocked_at < ? AND marked_for_deletion_at IS NULL",
            (SUBSCRIPTION_BLOCKED, cutoff),
        )

    def list_pending_deletion_subscriptions(self) -> list[StoredSubscription]:
        """Summary: List subscriptions awaiting account deletion."""

        return self._select_subscriptions("status = ?", (SUBSCRIPTION_PENDING_DELETION,))

    def move_to_grace_period(self, subscription_id: int, grace_period_until: str, now: str) -> bool:
        """Summary: Transition an active subscription to grace_period."""

        return self._transition(
            subscription_id,
            SUBSCRIPTION_ACTIVE,
            SUBSCRIPTION_GRACE,
            "grace_period_until",
            grace_period_until,
            now,
        )

    def move_to_blocked(self, subscription_id: int, now: str) -> bool:
        """Summary: Transition a grace_period subscription to blocked."""

        return self._transition(
            subscription_id, SUBSCRIPTION_GRACE, SUBSCRIPTION_BLOCKED, "blocked_at", now, now
        )

    def mark_for_deletion(self, subscription_id: int, now: str) -> bool:
        """Summary: Transition a blocked subscription to pending_deletion."""

        return self._transition(
            subscription_id,
            SUBSCRIPTION_BLOCKED,
            SUBSCRIPTION_PENDING_DELETION,
            "marked_for_deletion_at",
            now,
            now,
        )

    def delete_subscription(self, subscription_id: int) -> int:
        """Summary: Delete a subscription row."""

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute("DELETE FROM subscriptions WHERE id = ?", (subscription_id,))
            deleted = cursor.rowcount
            connection.commit()
        return deleted

    # AI audit

    def log_ai_request(self, request: AiRequest) -> int:
        """Summary: Record a classification prompt before it is sent.

        Importance: Keeps a per-model trail of what each DM cost.
        Alternatives: Only count calls in metrics.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                INSERT INTO ai_requests (provider, model, prompt, purpose, timestamp)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    request.provider,
                    request.model,
                    request.prompt,
                    request.purpose,
                    format_timestamp(request.timestamp),
                ),
            )
            request_id = cursor.lastrowid
            connection.commit()
        return int(request_id)

    def log_ai_response(self, response: AiResponse) -> int:
        """Summary: Persist an AI response for auditing.

        Importance: Records raw model output so rejected classifications can be inspected later.
        Alternatives: Log responses at debug level only.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                INSERT INTO ai_responses (request_id, response_text, latency_ms, token_estimate)
                VALUES (?, ?, ?, ?)
                """,
                (
                    response.request_id,
                    response.response_text,
                    response.latency_ms,
                    response.token_estimate,
                ),
            )
            response_id = cursor.lastrowid
            connection.commit()
        return int(response_id)

    def list_ai_requests(self, limit: int) -> list[StoredAiRequest]:
        """Summary: List recent AI requests."""

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                SELECT id, provider, model, prompt, purpose, timestamp
                FROM ai_requests ORDER BY id DESC LIMIT ?
                """,
                (limit,),
            )
            rows = cursor.fetchall()
        return [StoredAiRequest(*row) for row in rows]

    # Internals

    def _select_subscriptions(
        self, where: str, params: tuple[str, ...]
    ) -> list[StoredSubscription]:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                f"SELECT {SUBSCRIPTION_COLUMNS} FROM subscriptions WHERE {where} ORDER BY id",
                params,
            )
            rows = cursor.fetchall()
        return [StoredSubscription(*row) for row in rows]

    def _transition(
        self,
        subscription_id: int,
        from_status: str,
        to_status: str,
        stamp_column: str,
        stamp_value: str,
        now: str,
    ) -> bool:
        """Summary: Move a subscription between two statuses and stamp the transition.

        Importance: The status guard keeps the state machine monotonic under concurrent sweeps.
        Alternatives: Update by ID only and trust the caller's read.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                f"""
                UPDATE subscriptions SET status = ?, {stamp_column} = ?, updated_at = ?
                WHERE id = ? AND status = ?
                """,
                (to_status, stamp_value, now, subscription_id, from_status),
            )
            updated = cursor.rowcount
            connection.commit()
        return updated > 0

    def _delete_by_ids(self, table: str, column: str, ids: Iterable[int]) -> int:
        id_list = list(ids)
        deleted = 0
        with self._connection() as connection:
            cursor = connection.cursor()
            for start in range(0, len(id_list), ID_CHUNK_SIZE):
                chunk = id_list[start : start + ID_CHUNK_SIZE]
                placeholders = ", ".join("?" for _ in chunk)
                cursor.execute(f"DELETE FROM {table} WHERE {column} IN ({placeholders})", chunk)
                deleted += cursor.rowcount
            connection.commit()
        return deleted

    def _ensure_column(self, table: str, column: str, column_type: str) -> None:
        """Summary: Ensure a column exists in a table.

        Importance: Upgrades databases created before the claim lease column existed.
        Alternatives: Ship numbered SQL migration files.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(f"PRAGMA table_info({table})")
            columns = {row[1] for row in cursor.fetchall()}
            if column in columns:
                return
            cursor.execute(f"ALTER TABLE {table} ADD COLUMN {column} {column_type}")
            connection.commit()

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        """Summary: Open a short-lived connection for one operation.

        Importance: Request threads and cron jobs never share a handle.
        Alternatives: Pool connections per thread.
        """

        connection = sqlite3.connect(self._db_path)
        try:
            yield connection
        finally:
            connection.close()


def _message_from_row(row: tuple) -> StoredMessage:
    values = list(row)
    values[11] = bool(values[11])
    return StoredMessage(*values)


def _profile_from_row(row: tuple) -> StoredProfile:
    values = list(row)
    values[6] = bool(values[6])
    return StoredProfile(*values)
