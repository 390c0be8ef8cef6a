"""Summary: Tests for webhook verification and intake.

Importance: Intake must accept every real DM exactly once and never fail on noise.
Alternatives: Test only through the HTTP endpoint.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone

from conftest import TEST_KEY, add_workspace
from dmfocus.config import AppConfig
from dmfocus.dispatch import InlineDispatcher, RecordingDispatcher
from dmfocus.errors import ProviderError
from dmfocus.instagram import InstagramClient
from dmfocus.models import STATUS_PENDING, SenderProfile
from dmfocus.services import TokenService, WebhookService, collect_events, event_timestamp
from dmfocus.storage.sqlite_store import SqliteStore
from dmfocus.token_codec import TokenCodec


class FailingInstagram(InstagramClient):
    def fetch_sender_profile(self, sender_id: str, access_token: str) -> SenderProfile:
        raise ProviderError("Instagram profile lookup failed with HTTP 500")


class FakeInstagram(InstagramClient):
    def fetch_sender_profile(self, sender_id: str, access_token: str) -> SenderProfile:
        assert access_token == "IGQ-live-token"
        return SenderProfile(name="Marca X", username="marcax", followers_count=120000)


def _service(store: SqliteStore, config: AppConfig, instagram: InstagramClient | None = None) -> WebhookService:
    return WebhookService(
        store=store,
        config=config,
        instagram=instagram or InstagramClient(config.instagram_graph_base_url),
        tokens=TokenService(store=store, codec=TokenCodec(TEST_KEY)),
    )


def _event(mid: str, text: str | None = "Olá, tudo bem com você?", sender: str = "sender-1") -> dict:
    message: dict = {"mid": mid}
    if text is not None:
        message["text"] = text
    return {"sender": {"id": sender}, "recipient": {"id": "page-1"}, "timestamp": 1_700_000_000_000, "message": message}


def test_verify_subscription_handshake(store: SqliteStore, config: AppConfig) -> None:
    """Summary: Verify the challenge is echoed only for a matching token.

    Importance: Instagram will not deliver events until the handshake succeeds.
    Alternatives: Skip verification in development.
    """

    service = _service(store, config)
    assert service.verify_subscription("subscribe", "verify-me", "12345") == "12345"
    assert service.verify_subscription("subscribe", "wrong", "12345") is None
    assert service.verify_subscription("unsubscribe", "verify-me", "12345") is None
    assert service.verify_subscription("subscribe", None, "12345") is None
    unconfigured = _service(store, replace(config, instagram_verify_token=""))
    assert unconfigured.verify_subscription("subscribe", "", "12345") is None


def test_delivery_stores_pending_messages_and_dispatches(store: SqliteStore, config: AppConfig) -> None:
    _, workspace_id = add_workspace(store)
    dispatcher = RecordingDispatcher()
    payload = {"object": "instagram", "entry": [{"id": "page-1", "messaging": [_event("m1"), _event("m2", None)]}]}
    report = _service(store, config).handle_delivery(payload, dispatcher)
    assert dispatcher.message_ids == report.inserted
    assert len(report.inserted) == 2
    first = store.get_message(report.inserted[0])
    media = store.get_message(report.inserted[1])
    assert first.workspace_id == workspace_id
    assert first.classification_status == STATUS_PENDING
    assert first.received_at.startswith("2023-11-14T22:13:20")
    assert media.content == "[Mídia]"


def test_delivery_skips_unknown_pages_echoes_and_malformed_events(store: SqliteStore, config: AppConfig) -> None:
    add_workspace(store)
    echo = _event("m-echo", sender="page-1")
    flagged_echo = _event("m-flag")
    flagged_echo["message"]["is_echo"] = True
    payload = {
        "object": "instagram",
        "entry": [
            {"id": "page-unknown", "messaging": [_event("m1")]},
            {"id": "page-1", "messaging": [echo, flagged_echo, {"read": {"mid": "m0"}}, {"message": {"text": "sem remetente"}}]},
        ],
    }
    report = _service(store, config).handle_delivery(payload, RecordingDispatcher())
    assert report.inserted == []
    assert report.skipped_entries == 1
    assert report.skipped_events == 4


def test_delivery_ignores_other_objects(store: SqliteStore, config: AppConfig) -> None:
    add_workspace(store)
    report = _service(store, config).handle_delivery({"object": "page", "entry": [{"id": "page-1", "messaging": [_event("m1")]}]}, RecordingDispatcher())
    assert report.inserted == []


def test_messaging_and_changes_are_unioned_without_duplicates(store: SqliteStore, config: AppConfig) -> None:
    """Summary: Ensure the same mid delivered in both shapes is stored once.

    Importance: Instagram may send a message in the messaging list and in changes.
    Alternatives: Read only one of the two shapes.
    """

    add_workspace(store)
    entry = {
        "id": "page-1",
        "messaging": [_event("m1")],
        "changes": [
            {"field": "messages", "value": {"messages": [_event("m1"), _event("m3", "Segunda mensagem aqui")]}},
            {"field": "messages", "value": _event("m4", "Terceira mensagem aqui")},
        ],
    }
    assert len(collect_events(entry)) == 4
    report = _service(store, config).handle_delivery({"object": "instagram", "entry": [entry]}, RecordingDispatcher())
    assert len(report.inserted) == 3


def test_enrichment_failure_still_inserts(store: SqliteStore, config: AppConfig) -> None:
    user_id, _ = add_workspace(store)
    store.update_profile_connection(user_id, "page-1", "creator", TokenCodec(TEST_KEY).encrypt("IGQ-live-token"), True)
    enriched_config = replace(config, enrich_sender_profiles=True)
    report = _service(store, enriched_config, FailingInstagram("https://graph.instagram.test")).handle_delivery(
        {"object": "instagram", "entry": [{"id": "page-1", "messaging": [_event("m1")]}]}, RecordingDispatcher()
    )
    message = store.get_message(report.inserted[0])
    assert message.sender_name is None
    assert message.sender_followers_count is None


def test_enrichment_uses_decrypted_token(store: SqliteStore, config: AppConfig) -> None:
    user_id, _ = add_workspace(store)
    store.update_profile_connection(user_id, "page-1", "creator", TokenCodec(TEST_KEY).encrypt("IGQ-live-token"), True)
    enriched_config = replace(config, enrich_sender_profiles=True)
    report = _service(store, enriched_config, FakeInstagram("https://graph.instagram.test")).handle_delivery(
        {"object": "instagram", "entry": [{"id": "page-1", "messaging": [_event("m1")]}]}, RecordingDispatcher()
    )
    message = store.get_message(report.inserted[0])
    assert message.sender_username == "marcax"
    assert message.sender_followers_count == 120000


def test_inline_dispatch_failure_leaves_message_pending(store: SqliteStore, config: AppConfig) -> None:
    add_workspace(store)

    def broken_classify(message_id: int) -> None:
        raise ProviderError("LLM down")

    report = _service(store, config).handle_delivery(
        {"object": "instagram", "entry": [{"id": "page-1", "messaging": [_event("m1")]}]},
        InlineDispatcher(broken_classify),
    )
    assert store.get_message(report.inserted[0]).classification_status == STATUS_PENDING


def test_event_timestamp_accepts_seconds_and_milliseconds() -> None:
    expected = datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)
    assert event_timestamp(1_700_000_000_000) == expected
    assert event_timestamp(1_700_000_000) == expected
    assert event_timestamp("1700000000") == expected
    assert event_timestamp(None).tzinfo is not None


def test_delivery_skips_non_object_entries_and_events(store: SqliteStore, config: AppConfig) -> None:
    """Summary: Ensure stray non-object items are skipped while valid siblings are stored.

    Importance: One malformed item must not drop the rest of the delivery and trigger a redelivery.
    Alternatives: Reject the whole delivery as malformed.
    """

    add_workspace(store)
    odd_mid = _event(["m9"], "Mensagem com identificador estranho")
    payload = {
        "object": "instagram",
        "entry": [
            "garbage",
            42,
            {
                "id": "page-1",
                "messaging": ["noise", None, _event("m1"), odd_mid],
                "changes": ["x", {"field": "messages", "value": {"messages": "not-a-list"}}],
            },
        ],
    }
    dispatcher = RecordingDispatcher()
    report = _service(store, config).handle_delivery(payload, dispatcher)
    assert len(report.inserted) == 2
    assert dispatcher.message_ids == report.inserted
    assert report.skipped_entries == 2
    assert report.skipped_events == 2
    assert store.get_message(report.inserted[0]).provider_message_id == "m1"
    assert store.get_message(report.inserted[1]).provider_message_id is None


def test_delivery_tolerates_non_list_containers(store: SqliteStore, config: AppConfig) -> None:
    add_workspace(store)
    service = _service(store, config)
    assert service.handle_delivery({"object": "instagram", "entry": "page-1"}, RecordingDispatcher()).inserted == []
    report = service.handle_delivery(
        {"object": "instagram", "entry": [{"id": "page-1", "messaging": {"sender": "x"}, "changes": 7}]},
        RecordingDispatcher(),
    )
    assert report.inserted == []
    assert report.skipped_events == 0


def test_event_timestamp_out_of_range_falls_back_to_now() -> None:
    assert event_timestamp(10**30).tzinfo is not None
