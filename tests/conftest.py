"""Summary: Shared fixtures for DM Focus tests.

Importance: Gives every test isolated storage and a fully populated config.
Alternatives: Load AppConfig from environment variables.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any

import pytest

from dmfocus.ai import AiProvider
from dmfocus.config import AppConfig
from dmfocus.models import InboundMessage, User
from dmfocus.storage.sqlite_store import SqliteStore


TEST_KEY = "11" * 32


def build_config(db_path: str, **overrides: Any) -> AppConfig:
    """Summary: Build an AppConfig for tests.

    Importance: Ensures tests use isolated storage and fake secrets.
    Alternatives: Read a test-specific defaults file.
    """

    config = AppConfig(
        db_path=db_path,
        ai_provider="mock",
        openai_api_key=None,
        openai_model="gpt-4o-mini",
        ollama_url="http://localhost:11434",
        ollama_model="llama3",
        api_host="127.0.0.1",
        api_port=8000,
        api_key="",
        token_secret="test-secret",
        encryption_key=TEST_KEY,
        instagram_app_id="app-id",
        instagram_app_secret="app-secret",
        instagram_verify_token="verify-me",
        instagram_graph_base_url="https://graph.instagram.test/v24.0",
        instagram_oauth_base_url="https://api.instagram.test",
        mercadopago_access_token="mp-token",
        mercadopago_api_base_url="https://api.mercadopago.test",
        public_base_url="https://api.dmfocus.test",
        app_url="https://app.dmfocus.test",
        batch_window_minutes=4,
        batch_size=50,
        claim_timeout_minutes=15,
        grace_period_days=7,
        deletion_after_days=30,
        retention_days=30,
        subscription_period_days=30,
        http_timeout_seconds=5,
        enrich_sender_profiles=False,
        reply_language="Portuguese",
    )
    return replace(config, **overrides)


class CountingProvider(AiProvider):
    """Summary: AI provider stub that records calls and returns a fixed answer."""

    name = "stub"

    def __init__(self, response: str | None = None, error: Exception | None = None) -> None:
        self.response = response or (
            '{"intent": "question", "priority": "can_wait", "suggested_reply": "Oi! Já respondo."}'
        )
        self.error = error
        self.prompts: list[str] = []

    def generate_json(self, system_prompt: str, prompt: str, purpose: str) -> tuple[str, int]:
        self.prompts.append(prompt)
        if self.error:
            raise self.error
        return self.response, 3


@pytest.fixture
def config(tmp_path: Path) -> AppConfig:
    return build_config(str(tmp_path / "test.db"))


@pytest.fixture
def store(config: AppConfig) -> SqliteStore:
    sqlite_store = SqliteStore(config.db_path)
    sqlite_store.initialize()
    return sqlite_store


def add_workspace(store: SqliteStore, email: str = "creator@example.com", page_id: str = "page-1") -> tuple[int, int]:
    """Summary: Create a user with a connected workspace and return (user_id, workspace_id)."""

    user_id = store.ensure_user(User(display_name="Creator", email=email))
    store.ensure_profile(user_id)
    workspace_id = store.upsert_workspace(user_id, "@creator", page_id)
    return user_id, workspace_id


def add_message(
    store: SqliteStore,
    workspace_id: int,
    content: str,
    received_at: datetime,
    sender: str = "sender-1",
    conversation_id: str | None = None,
) -> int:
    """Summary: Insert a pending message."""

    return store.save_message(
        InboundMessage(
            workspace_id=workspace_id,
            provider_message_id=None,
            sender_provider_id=sender,
            content=content,
            received_at=received_at,
            conversation_id=conversation_id,
        )
    )
