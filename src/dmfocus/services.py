"""Summary: Core application services for DM Focus.

Importance: Orchestrates webhook intake, classification, subscription lifecycle, and retention.
Alternatives: Build a full service layer with a dependency injection framework.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import hashlib
import hmac
import logging
import math
import secrets
import sqlite3
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping

from dmfocus.classifier import (
    SKIP_DUPLICATE,
    LlmClassifier,
    SkipDecision,
    normalize_content,
    should_skip_classification,
)
from dmfocus.config import AppConfig
from dmfocus.dispatch import ClassificationDispatcher
from dmfocus.errors import CryptoError, NotFoundError, ProviderError
from dmfocus.instagram import InstagramClient
from dmfocus.models import (
    SKIPPED_RESULT,
    STATUS_CLASSIFIED,
    STATUS_SKIPPED,
    SUBSCRIPTION_BLOCKED,
    SUBSCRIPTION_GRACE,
    SUBSCRIPTION_NONE,
    SUBSCRIPTION_PENDING_DELETION,
    ClassificationResult,
    InboundMessage,
    SenderProfile,
    User,
    format_timestamp,
    parse_timestamp,
    utc_now,
)
from dmfocus.oauth import (
    build_instagram_auth_url,
    create_state_token,
    exchange_instagram_code,
    verify_state_token,
)
from dmfocus.payments import (
    STATUS_APPROVED,
    CheckoutPreference,
    MercadoPagoClient,
    build_preference,
    extract_payment_id,
)
from dmfocus.storage.sqlite_store import (
    SqliteStore,
    StoredInboxItem,
    StoredMessage,
    StoredProfile,
    StoredSubscription,
    StoredUser,
)
from dmfocus.token_codec import TokenCodec


logger = logging.getLogger(__name__)

INSTAGRAM_OBJECT = "instagram"
MEDIA_PLACEHOLDER = "[Mídia]"


@dataclass(frozen=True)
class UserService:
    """Summary: Manages user records.

    Importance: Provides user creation and lookup for bearer-token auth.
    Alternatives: Use an external identity provider.
    """

    store: SqliteStore

    def create_user(self, display_name: str, email: str) -> int:
        """Summary: Create or ensure a user exists."""

        return self.store.ensure_user(User(display_name=display_name, email=email))

    def get_user_by_email(self, email: str) -> StoredUser | None:
        """Summary: Fetch a user by email."""

        return self.store.get_user_by_email(email)


@dataclass(frozen=True)
class ApiKeyService:
    """Summary: Issues and verifies bearer tokens for users.

    Importance: Resolves the caller identity for dashboard and send-reply calls.
    Alternatives: Use OAuth or an external auth service.
    """

    store: SqliteStore
    token_secret: str

    def create_api_key(self, user_id: int, label: str | None = None) -> tuple[int, str]:
        """Summary: Create a new bearer token for a user.

        Importance: Returns a one-time plaintext token for client storage.
        Alternatives: Store raw tokens in the database.
        """

        raw_token = secrets.token_urlsafe(32)
        key_id = self.store.create_api_key(
            user_id=user_id,
            token_hash=self._hash_token(raw_token),
            label=label,
            created_at=format_timestamp(utc_now()),
        )
        return key_id, raw_token

    def resolve_user_id(self, token: str) -> int | None:
        """Summary: Resolve a user ID from a bearer token."""

        return self.store.get_user_id_by_api_key(self._hash_token(token))

    def _hash_token(self, token: str) -> str:
        """Summary: Hash a bearer token with a secret salt.

        Importance: Avoids storing raw tokens in the database.
        Alternatives: Use an HSM or external secrets manager.
        """

        salt = self.token_secret or "dmfocus"
        return hashlib.sha256(f"{salt}:{token}".encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class TokenMigrationReport:
    """Summary: Outcome of the plaintext token migration."""

    migrated: int
    total: int
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        message = "Migration complete" if self.total else "No unencrypted tokens found"
        return {
            "success": True,
            "message": message,
            "migrated": self.migrated,
            "total": self.total,
            "errors": self.errors,
        }


@dataclass(frozen=True)
class TokenService:
    """Summary: Encrypts, reads, and migrates Instagram access tokens.

    Importance: Tokens are only ever written encrypted; legacy plaintext stays readable until migrated.
    Alternatives: Use a secrets manager or encrypted database.
    """

    store: SqliteStore
    codec: TokenCodec

    def encrypt(self, access_token: str) -> str:
        """Summary: Encrypt a token for storage."""

        return self.codec.encrypt(access_token)

    def read_access_token(self, profile: StoredProfile) -> str:
        """Summary: Return the usable access token for a profile.

        Importance: Decrypts only when the profile is flagged as encrypted.
        Alternatives: Try decryption and fall back to plaintext on failure.
        """

        if not profile.access_token:
            raise NotFoundError(f"Profile {profile.id} has no access token")
        if profile.token_encrypted:
            return self.codec.decrypt(profile.access_token)
        return profile.access_token

    def migrate_plaintext_tokens(self) -> TokenMigrationReport:
        """Summary: Encrypt every stored token not yet flagged as encrypted.

        Importance: A failure on one profile is recorded and the run continues.
        Alternatives: Abort the migration on the first error.
        """

        profiles = self.store.list_profiles_with_plaintext_tokens()
        migrated = 0
        errors: list[str] = []
        for profile in profiles:
            try:
                encrypted = self.codec.encrypt(profile.access_token or "")
                self.store.update_profile_token(profile.id, encrypted, True)
            except (CryptoError, sqlite3.Error) as exc:
                logger.warning("Token migration failed for profile %s: %s", profile.id, exc)
                errors.append(f"Profile {profile.id}: {exc}")
                continue
            migrated += 1
        logger.info("Token migration: %s of %s profiles encrypted.", migrated, len(profiles))
        return TokenMigrationReport(migrated=migrated, total=len(profiles), errors=errors)


@dataclass(frozen=True)
class WebhookReport:
    """Summary: Counts for one webhook delivery."""

    inserted: list[int] = field(default_factory=list)
    skipped_entries: int = 0
    skipped_events: int = 0


@dataclass(frozen=True)
class WebhookService:
    """Summary: Verifies and ingests Instagram webhook deliveries.

    Importance: Stores inbound DMs as pending and hands them to the classifier without blocking the ack.
    Alternatives: Poll the conversations API on a schedule.
    """

    store: SqliteStore
    config: AppConfig
    instagram: InstagramClient
    tokens: TokenService

    def verify_subscription(self, mode: str | None, token: str | None, challenge: str | None) -> str | None:
        """Summary: Answer the webhook verification handshake.

        Importance: Returns the challenge only when the presented token matches the configured one.
        Alternatives: Verify payload signatures only.
        """

        expected = self.config.instagram_verify_token
        if mode != "subscribe" or not expected or token is None:
            return None
        if not hmac.compare_digest(token, expected):
            return None
        return challenge or ""

    def handle_delivery(
        self, payload: Mapping[str, Any], dispatcher: ClassificationDispatcher
    ) -> WebhookReport:
        """Summary: Ingest every message event in a delivery.

        Importance: Unknown pages, echoes, and malformed events are skipped, never errors.
        Alternatives: Reject the whole delivery on the first bad entry.
        """

        if payload.get("object") != INSTAGRAM_OBJECT:
            logger.info("Ignoring webhook for object %r", payload.get("object"))
            return WebhookReport()
        inserted: list[int] = []
        skipped_entries = 0
        skipped_events = 0
        for entry in _as_list(payload.get("entry")):
            if not isinstance(entry, dict):
                skipped_entries += 1
                continue
            page_id = str(entry.get("id") or "")
            workspace = self.store.get_workspace_by_page_id(page_id) if page_id else None
            if not workspace:
                logger.warning("No workspace found for page %s", page_id)
                skipped_entries += 1
                continue
            seen_mids: set[str] = set()
            for event in collect_events(entry):
                if not isinstance(event, dict):
                    skipped_events += 1
                    continue
                sender_id = _sender_id(event)
                message = event.get("message")
                if not isinstance(message, dict) or not sender_id:
                    skipped_events += 1
                    continue
                if sender_id == page_id or message.get("is_echo"):
                    skipped_events += 1
                    continue
                mid = message.get("mid") if isinstance(message.get("mid"), str) else None
                text = message.get("text") if isinstance(message.get("text"), str) else None
                if mid and mid in seen_mids:
                    continue
                if mid:
                    seen_mids.add(mid)
                profile = self._sender_profile(workspace.owner_id, sender_id)
                message_id = self.store.save_message(
                    InboundMessage(
                        workspace_id=workspace.id,
                        provider_message_id=mid,
                        sender_provider_id=sender_id,
                        content=text or MEDIA_PLACEHOLDER,
                        received_at=event_timestamp(event.get("timestamp")),
                        sender_name=profile.name,
                        sender_username=profile.username,
                        sender_avatar_url=profile.avatar_url,
                        sender_followers_count=profile.followers_count,
                        conversation_id=_conversation_id(event),
                    )
                )
                inserted.append(message_id)
                dispatcher.dispatch(message_id)
        logger.info("Webhook stored %s messages", len(inserted))
        return WebhookReport(
            inserted=inserted,
            skipped_entries=skipped_entries,
            skipped_events=skipped_events,
        )

    def _sender_profile(self, owner_id: int, sender_id: str) -> SenderProfile:
        """Summary: Look up sender display details, degrading to empty fields.

        Importance: Enrichment failures must never block message insertion.
        Alternatives: Enrich asynchronously after insert.
        """

        if not self.config.enrich_sender_profiles:
            return SenderProfile()
        profile = self.store.get_profile(owner_id)
        if not profile or not profile.access_token:
            return SenderProfile()
        try:
            access_token = self.tokens.read_access_token(profile)
            return self.instagram.fetch_sender_profile(sender_id, access_token)
        except (ProviderError, CryptoError) as exc:
            logger.warning("Sender enrichment failed for %s: %s", sender_id, exc)
            return SenderProfile()


def collect_events(entry: Mapping[str, Any]) -> list[Any]:
    """Summary: Union the direct messaging list and the nested changes list of an entry.

    Importance: Instagram may deliver the same message event in either shape.
    Alternatives: Subscribe to only one webhook field.
    """

    events = list(_as_list(entry.get("messaging")))
    for change in _as_list(entry.get("changes")):
        value = change.get("value") if isinstance(change, dict) else None
        if not isinstance(value, dict):
            continue
        events.extend(_as_list(value.get("messages")))
        if "sender" in value and "message" in value:
            events.append(value)
    return events


def event_timestamp(raw: Any) -> datetime:
    """Summary: Convert an event timestamp (epoch milliseconds or seconds) to UTC.

    Importance: Batch windows and retention compare against this value.
    Alternatives: Use the ingestion time for every message.
    """

    if isinstance(raw, str) and raw.isdigit():
        raw = int(raw)
    if not isinstance(raw, (int, float)) or isinstance(raw, bool) or raw <= 0:
        return utc_now()
    seconds = raw / 1000 if raw > 10_000_000_000 else raw
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return utc_now()


def _as_list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def _sender_id(event: Mapping[str, Any]) -> str | None:
    sender = event.get("sender") or event.get("from")
    if isinstance(sender, dict) and sender.get("id"):
        return str(sender["id"])
    return None


def _conversation_id(event: Mapping[str, Any]) -> str | None:
    conversation = event.get("conversation")
    if isinstance(conversation, dict) and conversation.get("id"):
        return str(conversation["id"])
    return None


@dataclass(frozen=True)
class BatchReport:
    """Summary: Outcome of one batch classification run."""

    processed: int
    skipped: int
    failed: int
    reclaimed: int
    results: list[dict[str, Any]]

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "skipped": self.skipped,
            "failed": self.failed,
            "reclaimed": self.reclaimed,
            "results": self.results,
        }


@dataclass(frozen=True)
class ClassificationService:
    """Summary: Classifies messages one at a time or in windowed batches.

    Importance: Both paths share the skip heuristic and the validated LLM contract.
    Alternatives: Only classify in batch mode.
    """

    store: SqliteStore
    classifier: LlmClassifier
    config: AppConfig

    def classify_message(self, message_id: int) -> ClassificationResult:
        """Summary: Classify one stored message.

        Importance: On LLM failure the message stays pending and the error propagates to the caller.
        Alternatives: Mark failed messages with an error status.
        """

        message = self.store.get_message(message_id)
        if not message:
            raise NotFoundError(f"Message {message_id} not found")
        decision = should_skip_classification(message.content)
        if decision.skip:
            self._store_skipped(message, decision)
            return SKIPPED_RESULT
        result = self.classifier.classify(message)
        self._store_classified(message, result)
        return result

    def classify_pending_batch(self, now: datetime | None = None) -> BatchReport:
        """Summary: Classify pending messages older than the batch window, grouped by conversation.

        Importance: Collapses rapid-fire bursts and caps LLM spend per run.
        Alternatives: Classify every message as soon as it arrives.
        """

        now = now or utc_now()
        stale_before = now - timedelta(minutes=self.config.claim_timeout_minutes)
        reclaimed = self.store.reclaim_stale_claims(format_timestamp(stale_before))
        if reclaimed:
            logger.warning("Reclaimed %s stale processing messages", reclaimed)
        cutoff = now - timedelta(minutes=self.config.batch_window_minutes)
        pending = self.store.list_pending_messages(format_timestamp(cutoff), self.config.batch_size)
        processed = 0
        skipped = 0
        failed = 0
        results: list[dict[str, Any]] = []
        for group in group_by_conversation(pending).values():
            claimed = set(
                self.store.claim_messages([message.id for message in group], format_timestamp(now))
            )
            seen: set[str] = set()
            for message in group:
                if message.id not in claimed:
                    continue
                normalized = normalize_content(message.content)
                decision = should_skip_classification(message.content)
                if not decision.skip and normalized in seen:
                    decision = SkipDecision(True, SKIP_DUPLICATE)
                seen.add(normalized)
                if decision.skip:
                    self._store_skipped(message, decision)
                    skipped += 1
                    continue
                try:
                    result = self.classifier.classify(message)
                except ProviderError as exc:
                    logger.warning("Batch classification failed for message %s: %s", message.id, exc)
                    self.store.release_claim(message.id)
                    failed += 1
                    continue
                self._store_classified(message, result)
                processed += 1
                results.append({"id": message.id, **result.to_dict()})
        logger.info(
            "Batch complete: %s classified, %s skipped, %s failed, %s reclaimed",
            processed,
            skipped,
            failed,
            reclaimed,
        )
        return BatchReport(
            processed=processed,
            skipped=skipped,
            failed=failed,
            reclaimed=reclaimed,
            results=results,
        )

    def _store_skipped(self, message: StoredMessage, decision: SkipDecision) -> None:
        self.store.upsert_classification(message.id, SKIPPED_RESULT, format_timestamp(utc_now()))
        self.store.set_classification_status(message.id, STATUS_SKIPPED)
        logger.info("Message %s skipped (%s)", message.id, decision.reason)

    def _store_classified(self, message: StoredMessage, result: ClassificationResult) -> None:
        self.store.upsert_classification(message.id, result, format_timestamp(utc_now()))
        self.store.set_classification_status(message.id, STATUS_CLASSIFIED)


def group_by_conversation(messages: list[StoredMessage]) -> dict[str, list[StoredMessage]]:
    """Summary: Group messages by conversation, falling back to the sender ID."""

    groups: dict[str, list[StoredMessage]] = {}
    for message in messages:
        key = message.conversation_id or message.sender_provider_id
        groups.setdefault(key, []).append(message)
    return groups


@dataclass(frozen=True)
class SweepReport:
    """Summary: Counts for one subscription lifecycle sweep."""

    updated_to_grace: int
    updated_to_blocked: int
    marked_for_deletion: int
    deleted_accounts: int
    timestamp: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "updatedToGrace": self.updated_to_grace,
            "updatedToBlocked": self.updated_to_blocked,
            "markedForDeletion": self.marked_for_deletion,
            "deletedAccounts": self.deleted_accounts,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class SubscriptionState:
    """Summary: Subscription gating state for the dashboard."""

    status: str
    expires_at: str | None
    days_remaining: int | None
    grace_days_remaining: int | None
    is_read_only: bool
    is_blocked: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "expires_at": self.expires_at,
            "days_remaining": self.days_remaining,
            "grace_days_remaining": self.grace_days_remaining,
            "is_read_only": self.is_read_only,
            "is_blocked": self.is_blocked,
        }


@dataclass(frozen=True)
class SubscriptionService:
    """Summary: Advances subscriptions through active, grace, blocked, and deletion.

    Importance: The sweep is the only writer of lifecycle fields, and each phase is its own query.
    Alternatives: Evaluate status lazily on each login.
    """

    store: SqliteStore
    config: AppConfig

    def sweep(self, now: datetime | None = None) -> SweepReport:
        """Summary: Run all four lifecycle phases once.

        Importance: A subscription advances at most one step per sweep, except that a newly marked account is deleted at once.
        Alternatives: Run each phase on its own schedule.
        """

        now = now or utc_now()
        now_text = format_timestamp(now)
        advanced: set[int] = set()

        updated_to_grace = 0
        for subscription in self._phase("grace", self.store.list_expired_active_subscriptions, now_text):
            until = parse_timestamp(subscription.expires_at) + timedelta(days=self.config.grace_period_days)
            if self.store.move_to_grace_period(subscription.id, format_timestamp(until), now_text):
                advanced.add(subscription.id)
                updated_to_grace += 1

        updated_to_blocked = 0
        for subscription in self._phase("blocked", self.store.list_expired_grace_subscriptions, now_text):
            if subscription.id in advanced:
                continue
            if self.store.move_to_blocked(subscription.id, now_text):
                advanced.add(subscription.id)
                updated_to_blocked += 1

        marked_for_deletion = 0
        deletion_cutoff = format_timestamp(now - timedelta(days=self.config.deletion_after_days))
        for subscription in self._phase(
            "pending_deletion", self.store.list_blocked_subscriptions_before, deletion_cutoff
        ):
            if subscription.id in advanced:
                continue
            if self.store.mark_for_deletion(subscription.id, now_text):
                marked_for_deletion += 1

        deleted_accounts = 0
        for subscription in self._phase("deletion", self._list_pending_deletion, now_text):
            try:
                self.delete_account_data(subscription.user_id)
                self.store.delete_subscription(subscription.id)
            except sqlite3.Error:
                logger.exception("Account deletion failed for user %s", subscription.user_id)
                continue
            deleted_accounts += 1

        report = SweepReport(
            updated_to_grace=updated_to_grace,
            updated_to_blocked=updated_to_blocked,
            marked_for_deletion=marked_for_deletion,
            deleted_accounts=deleted_accounts,
            timestamp=now_text,
        )
        logger.info("Subscription sweep: %s", report.to_dict())
        return report

    def delete_account_data(self, user_id: int) -> None:
        """Summary: Delete a user's workspaces, messages, classifications, and profile.

        Importance: Deletion order is classifications, messages, workspace, then profile.
        Alternatives: Rely on database-level cascades.
        """

        for workspace in self.store.list_workspaces_for_owner(user_id):
            message_ids = self.store.list_message_ids_for_workspace(workspace.id)
            self.store.delete_classifications(message_ids)
            self.store.delete_messages(message_ids)
            self.store.delete_workspace(workspace.id)
            logger.info("Deleted workspace %s with %s messages", workspace.id, len(message_ids))
        self.store.delete_profile(user_id)

    def get_state(self, user_id: int, now: datetime | None = None) -> SubscriptionState:
        """Summary: Summarize a user's subscription for UI gating.

        Importance: Grace period is read-only and blocked or pending deletion is locked out.
        Alternatives: Let the client interpret raw subscription rows.
        """

        now = now or utc_now()
        subscription = self.store.get_subscription(user_id)
        if not subscription:
            return SubscriptionState(SUBSCRIPTION_NONE, None, None, None, False, False)
        grace_days = None
        if subscription.status == SUBSCRIPTION_GRACE and subscription.grace_period_until:
            grace_days = _days_until(parse_timestamp(subscription.grace_period_until), now)
        return SubscriptionState(
            status=subscription.status,
            expires_at=subscription.expires_at,
            days_remaining=_days_until(parse_timestamp(subscription.expires_at), now),
            grace_days_remaining=grace_days,
            is_read_only=subscription.status == SUBSCRIPTION_GRACE,
            is_blocked=subscription.status in (SUBSCRIPTION_BLOCKED, SUBSCRIPTION_PENDING_DELETION),
        )

    def _list_pending_deletion(self, _: str) -> list[StoredSubscription]:
        return self.store.list_pending_deletion_subscriptions()

    def _phase(
        self, name: str, query: Callable[[str], list[StoredSubscription]], argument: str
    ) -> list[StoredSubscription]:
        """Summary: Run one phase query, yielding nothing if storage fails.

        Importance: A failing phase never aborts the other phases.
        Alternatives: Abort the sweep on the first error.
        """

        try:
            return query(argument)
        except sqlite3.Error:
            logger.exception("Subscription sweep phase %s failed", name)
            return []


def _days_until(target: datetime, now: datetime) -> int:
    return max(0, math.ceil((target - now).total_seconds() / 86400))


@dataclass(frozen=True)
class PaymentService:
    """Summary: Starts checkouts and reactivates subscriptions from approved payments.

    Importance: Notifications are the only path that moves a subscription back to active.
    Alternatives: Poll the payments API for each user.
    """

    store: SqliteStore
    config: AppConfig
    client: MercadoPagoClient

    def create_checkout(
        self,
        user_id: int,
        plan_type: str,
        origin: str | None = None,
        now: datetime | None = None,
    ) -> CheckoutPreference:
        """Summary: Create a hosted checkout whose payment reactivates this user.

        Importance: Sets the external_reference that handle_notification resolves back to the user.
        Alternatives: Ask users to pay through a static payment link.
        """

        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("User not found")
        if not user.email:
            raise ValueError("User email is required for checkout")
        preference = build_preference(
            user_id=user.id,
            email=user.email,
            plan_type=plan_type,
            back_url_base=origin or self.config.app_url,
            notification_url=f"{self.config.public_base_url.rstrip('/')}/payments/webhook",
            now=now or utc_now(),
        )
        checkout = self.client.create_preference(preference)
        logger.info("Checkout %s created for user %s (%s)", checkout.id, user.id, plan_type)
        return checkout

    def handle_notification(
        self,
        query: Mapping[str, str],
        body: Mapping[str, Any] | None,
        now: datetime | None = None,
    ) -> bool:
        """Summary: Process a payment notification and report whether a subscription was activated.

        Importance: Lookup failures are logged so the caller can still acknowledge.
        Alternatives: Return 500 and let Mercado Pago retry.
        """

        payment_id = extract_payment_id(query, body)
        if not payment_id:
            return False
        try:
            payment = self.client.fetch_payment(payment_id)
        except ProviderError as exc:
            logger.warning("Payment lookup failed for %s: %s", payment_id, exc)
            return False
        if payment.status != STATUS_APPROVED or not payment.external_reference:
            logger.info("Payment %s not approved (%s)", payment.id, payment.status)
            return False
        if not payment.external_reference.isdigit():
            logger.warning("Payment %s has unknown reference %r", payment.id, payment.external_reference)
            return False
        user_id = int(payment.external_reference)
        if not self.store.get_user(user_id):
            logger.warning("Payment %s references missing user %s", payment.id, user_id)
            return False
        now = now or utc_now()
        expires_at = now + timedelta(days=self.config.subscription_period_days)
        self.store.activate_subscription(
            user_id, format_timestamp(expires_at), payment.id, format_timestamp(now)
        )
        logger.info("Subscription activated for user %s until %s", user_id, expires_at.date())
        return True


@dataclass(frozen=True)
class RetentionReport:
    """Summary: Outcome of a retention sweep."""

    deleted: int
    retention_days: int

    def to_dict(self) -> dict[str, Any]:
        if not self.deleted:
            return {"deleted": 0, "message": "No messages to clean up"}
        return {
            "deleted": self.deleted,
            "message": f"Cleaned up {self.deleted} read messages older than {self.retention_days} days",
        }


@dataclass(frozen=True)
class RetentionService:
    """Summary: Deletes old read messages and their classifications.

    Importance: Keeps stored DMs bounded.
    Alternatives: Archive messages to cold storage.
    """

    store: SqliteStore
    config: AppConfig

    def cleanup_read_messages(self, now: datetime | None = None) -> RetentionReport:
        """Summary: Delete read messages received before the retention cutoff."""

        now = now or utc_now()
        cutoff = now - timedelta(days=self.config.retention_days)
        message_ids = self.store.list_read_message_ids_before(format_timestamp(cutoff))
        if not message_ids:
            return RetentionReport(deleted=0, retention_days=self.config.retention_days)
        self.store.delete_classifications(message_ids)
        deleted = self.store.delete_messages(message_ids)
        logger.info("Retention sweep deleted %s messages", deleted)
        return RetentionReport(deleted=deleted, retention_days=self.config.retention_days)


@dataclass(frozen=True)
class MessageService:
    """Summary: Dashboard reads and read-state updates scoped to a user.

    Importance: A user only ever sees or mutates messages in their own workspace.
    Alternatives: Row-level security in the database.
    """

    store: SqliteStore

    def list_messages(self, user_id: int, limit: int = 50) -> list[StoredInboxItem]:
        """Summary: List a user's messages with classifications, newest first."""

        items: list[StoredInboxItem] = []
        for workspace in self.store.list_workspaces_for_owner(user_id):
            items.extend(self.store.list_workspace_messages(workspace.id, limit))
        items.sort(key=lambda item: item.message.received_at, reverse=True)
        return items[:limit]

    def mark_read(self, user_id: int, message_id: int) -> None:
        """Summary: Mark one of the user's messages as read."""

        for workspace in self.store.list_workspaces_for_owner(user_id):
            if self.store.mark_message_read(message_id, workspace.id):
                return
        raise NotFoundError(f"Message {message_id} not found")

    def stats(self, user_id: int) -> dict[str, int]:
        """Summary: Dashboard counters across the user's workspaces."""

        totals = {
            "total": 0,
            "unread": 0,
            "respond_now": 0,
            "partnerships": 0,
            "pending_classification": 0,
        }
        for workspace in self.store.list_workspaces_for_owner(user_id):
            for key, value in self.store.workspace_message_counts(workspace.id).items():
                totals[key] += value
        return totals


@dataclass(frozen=True)
class ReplyService:
    """Summary: Sends a DM reply through the caller's connected account.

    Importance: Marks the answered message read once Instagram accepts the reply.
    Alternatives: Open the Instagram app for replies.
    """

    store: SqliteStore
    tokens: TokenService
    instagram: InstagramClient

    def send_reply(
        self, user_id: int, recipient_id: str, text: str, message_id: int | None = None
    ) -> dict[str, Any]:
        """Summary: Send a reply and return the provider message ID."""

        if not recipient_id or not text.strip():
            raise ValueError("recipientId and message are required")
        profile = self.store.get_profile(user_id)
        if not profile or not profile.access_token or not profile.provider_user_id:
            raise NotFoundError("Instagram account not connected")
        access_token = self.tokens.read_access_token(profile)
        provider_message_id = self.instagram.send_message(
            profile.provider_user_id, recipient_id, text, access_token
        )
        if message_id is not None:
            try:
                MessageService(self.store).mark_read(user_id, message_id)
            except NotFoundError:
                logger.warning("Reply sent but message %s was not found to mark read", message_id)
        logger.info("Reply sent for user %s", user_id)
        return {"success": True, "messageId": provider_message_id}


@dataclass(frozen=True)
class ConnectionService:
    """Summary: Connects a user's Instagram professional account.

    Importance: Creates the workspace that routes webhook entries to the user.
    Alternatives: Ask users to paste a long-lived token.
    """

    store: SqliteStore
    config: AppConfig
    tokens: TokenService
    instagram: InstagramClient

    def authorization_url(
        self, user_id: int, redirect_uri: str, now: datetime | None = None
    ) -> tuple[str, str]:
        """Summary: Build the authorization URL and its signed state."""

        state = create_state_token(self._state_secret(), user_id, now or utc_now())
        return build_instagram_auth_url(self.config, redirect_uri, state), state

    def connect_instagram(
        self,
        user_id: int,
        code: str,
        redirect_uri: str,
        state: str,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """Summary: Exchange the code, verify the account, and store the encrypted token.

        Importance: Only business and creator accounts can receive messaging webhooks.
        Alternatives: Accept any account and fail later on webhook setup.
        """

        if not verify_state_token(self._state_secret(), state, user_id, now or utc_now()):
            raise ValueError("Invalid or expired OAuth state")
        token = exchange_instagram_code(self.config, code, redirect_uri)
        account = self.instagram.fetch_account(token.access_token)
        if not account.is_professional:
            raise ValueError("Instagram account must be a Business or Creator account")
        encrypted = self.tokens.encrypt(token.access_token)
        self.store.ensure_profile(user_id)
        self.store.update_profile_connection(
            user_id, account.id, account.username, encrypted, True
        )
        workspace_id = self.store.upsert_workspace(user_id, f"@{account.username}", account.id)
        logger.info("Connected Instagram account %s for user %s", account.id, user_id)
        return {
            "workspace_id": workspace_id,
            "account_id": account.id,
            "username": account.username,
        }

    def _state_secret(self) -> str:
        if not self.config.token_secret:
            raise ValueError("DMFOCUS_TOKEN_SECRET is required to sign OAuth state")
        return self.config.token_secret
