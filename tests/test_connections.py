"""Summary: Tests for OAuth state, account connection, replies, and dashboard reads.

Importance: These flows decide which workspace a webhook lands in and whose token sends replies.
Alternatives: Exercise them only through the HTTP API.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import pytest

from conftest import TEST_KEY, add_message, add_workspace
from dmfocus.config import AppConfig
from dmfocus.errors import NotFoundError
from dmfocus.instagram import InstagramAccount, InstagramClient
from dmfocus.models import ClassificationResult, User, format_timestamp, utc_now
from dmfocus.oauth import OAuthTokenResult, create_state_token, verify_state_token
from dmfocus.services import ConnectionService, MessageService, ReplyService, TokenService
from dmfocus.storage.sqlite_store import SqliteStore
from dmfocus.token_codec import TokenCodec


class FakeInstagram(InstagramClient):
    account_type = "MEDIA_CREATOR"

    def fetch_account(self, access_token: str) -> InstagramAccount:
        assert access_token == "IGQ-fresh"
        return InstagramAccount(id="ig-777", username="ana.cria", account_type=self.account_type, name="Ana")

    def send_message(self, account_id: str, recipient_id: str, text: str, access_token: str) -> str | None:
        self.sent.append((account_id, recipient_id, text, access_token))
        return "mid.reply"


class PersonalInstagram(FakeInstagram):
    account_type = "PERSONAL"


def _tokens(store: SqliteStore) -> TokenService:
    return TokenService(store=store, codec=TokenCodec(TEST_KEY))


def _instagram(cls=FakeInstagram) -> FakeInstagram:
    client = cls("https://graph.instagram.test")
    object.__setattr__(client, "sent", [])
    return client


def test_state_token_signature_owner_and_age() -> None:
    """Summary: Verify state tokens reject tampering, other users, and stale callbacks.

    Importance: Prevents a callback from attaching an account to the wrong user.
    Alternatives: Store state in a server-side table.
    """

    issued = utc_now()
    state = create_state_token("secret", 7, issued)
    assert verify_state_token("secret", state, 7, issued + timedelta(minutes=5))
    assert not verify_state_token("secret", state, 8, issued)
    assert not verify_state_token("other", state, 7, issued)
    assert not verify_state_token("secret", state, 7, issued + timedelta(minutes=11))
    assert not verify_state_token("secret", state + "0", 7, issued)
    assert not verify_state_token("secret", "garbage", 7, issued)


def test_authorization_url_carries_scopes_and_state(store: SqliteStore, config: AppConfig) -> None:
    service = ConnectionService(store, config, _tokens(store), _instagram())
    url, state = service.authorization_url(1, "https://app.test/callback")
    parsed = urlparse(url)
    query = parse_qs(parsed.query)
    assert parsed.netloc == "api.instagram.test"
    assert parsed.path == "/oauth/authorize"
    assert query["client_id"] == ["app-id"]
    assert query["state"] == [state]
    assert "instagram_business_manage_messages" in query["scope"][0]


def test_token_result_unwraps_data_list() -> None:
    result = OAuthTokenResult.from_response({"data": [{"access_token": "IGQ", "user_id": 123}]})
    assert result.access_token == "IGQ"
    assert result.user_id == "123"


def test_connect_stores_encrypted_token_and_workspace(
    store: SqliteStore, config: AppConfig, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(
        "dmfocus.services.exchange_instagram_code",
        lambda config, code, redirect_uri: OAuthTokenResult("IGQ-fresh", "ig-777", {}),
    )
    user_id = store.ensure_user(User(display_name="Ana", email="ana@example.com"))
    now = utc_now()
    service = ConnectionService(store, config, _tokens(store), _instagram())
    state = create_state_token(config.token_secret, user_id, now)
    result = service.connect_instagram(user_id, "code-1", "https://app.test/callback", state, now=now)
    profile = store.get_profile(user_id)
    workspace = store.get_workspace_by_page_id("ig-777")
    assert result["username"] == "ana.cria"
    assert workspace.id == result["workspace_id"]
    assert workspace.name == "@ana.cria"
    assert profile.token_encrypted is True
    assert profile.access_token != "IGQ-fresh"
    assert _tokens(store).read_access_token(profile) == "IGQ-fresh"


def test_connect_rejects_bad_state_and_personal_accounts(
    store: SqliteStore, config: AppConfig, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(
        "dmfocus.services.exchange_instagram_code",
        lambda config, code, redirect_uri: OAuthTokenResult("IGQ-fresh", "ig-777", {}),
    )
    user_id = store.ensure_user(User(display_name="Ana", email="ana@example.com"))
    now = utc_now()
    with pytest.raises(ValueError):
        ConnectionService(store, config, _tokens(store), _instagram()).connect_instagram(
            user_id, "code", "https://app.test/callback", "forged", now=now
        )
    state = create_state_token(config.token_secret, user_id, now)
    with pytest.raises(ValueError):
        ConnectionService(store, config, _tokens(store), _instagram(PersonalInstagram)).connect_instagram(
            user_id, "code", "https://app.test/callback", state, now=now
        )
    assert store.get_workspace_by_page_id("ig-777") is None


def test_send_reply_uses_decrypted_token_and_marks_read(store: SqliteStore, config: AppConfig) -> None:
    """Summary: Verify replies go out through the caller's account and mark the message read.

    Importance: A user must never send with another user's token.
    Alternatives: Keep one shared page token for all users.
    """

    user_id, workspace_id = add_workspace(store)
    store.update_profile_connection(user_id, "ig-1", "creator", TokenCodec(TEST_KEY).encrypt("IGQ-mine"), True)
    message_id = add_message(store, workspace_id, "Quando sai o próximo vídeo?", utc_now())
    instagram = _instagram()
    result = ReplyService(store, _tokens(store), instagram).send_reply(user_id, "sender-1", "Semana que vem!", message_id)
    assert result == {"success": True, "messageId": "mid.reply"}
    assert instagram.sent == [("ig-1", "sender-1", "Semana que vem!", "IGQ-mine")]
    assert store.get_message(message_id).is_read is True


def test_send_reply_requires_connection_and_input(store: SqliteStore) -> None:
    user_id, _ = add_workspace(store)
    service = ReplyService(store, _tokens(store), _instagram())
    with pytest.raises(ValueError):
        service.send_reply(user_id, "", "Oi")
    with pytest.raises(NotFoundError, match="not connected"):
        service.send_reply(user_id, "sender-1", "Oi")


def test_message_reads_are_scoped_to_owner(store: SqliteStore) -> None:
    owner, workspace_id = add_workspace(store)
    stranger, _ = add_workspace(store, email="stranger@example.com", page_id="page-2")
    now = utc_now()
    first = add_message(store, workspace_id, "Quero fechar uma parceria", now)
    add_message(store, workspace_id, "mensagem ainda pendente", now)
    store.upsert_classification(
        first, ClassificationResult("partnership", "respond_now", "Vamos!", 0.85), format_timestamp(now)
    )
    store.set_classification_status(first, "classified")
    messages = MessageService(store)
    assert len(messages.list_messages(owner)) == 2
    assert messages.list_messages(stranger) == []
    with pytest.raises(NotFoundError):
        messages.mark_read(stranger, first)
    messages.mark_read(owner, first)
    assert messages.stats(owner) == {
        "total": 2,
        "unread": 1,
        "respond_now": 1,
        "partnerships": 1,
        "pending_classification": 1,
    }


def test_oauth_requires_token_secret(store: SqliteStore, config: AppConfig) -> None:
    """Summary: Ensure OAuth state is never signed or checked with an empty secret.

    Importance: An empty HMAC key would let anyone forge a callback for another user.
    Alternatives: Generate a random secret at startup.
    """

    unsigned = replace(config, token_secret="")
    user_id = store.ensure_user(User(display_name="Ana", email="ana@example.com"))
    service = ConnectionService(store, unsigned, _tokens(store), _instagram())
    with pytest.raises(ValueError, match="TOKEN_SECRET"):
        service.authorization_url(user_id, "https://app.test/callback")
    forged = create_state_token("", user_id, utc_now())
    with pytest.raises(ValueError, match="TOKEN_SECRET"):
        service.connect_instagram(user_id, "code", "https://app.test/callback", forged)
    assert store.get_workspace_by_page_id("ig-777") is None
