"""Summary: Domain model dataclasses and vocabularies for DM Focus.

Importance: Defines the core entities shared across services and storage.
Alternatives: Use Pydantic models or ORM classes directly.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Literal


Intent = Literal["partnership", "fan", "question", "hate", "spam"]
Priority = Literal["respond_now", "can_wait", "ignore"]

STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_CLASSIFIED = "classified"
STATUS_SKIPPED = "skipped"

SUBSCRIPTION_NONE = "none"
SUBSCRIPTION_ACTIVE = "active"
SUBSCRIPTION_GRACE = "grace_period"
SUBSCRIPTION_BLOCKED = "blocked"
SUBSCRIPTION_PENDING_DELETION = "pending_deletion"

LLM_CONFIDENCE = 0.85
SKIP_CONFIDENCE = 1.0


@dataclass(frozen=True)
class User:
    """Summary: Represents an account owner.

    Importance: Anchors profiles, workspaces, and subscriptions to one identity.
    Alternatives: Delegate identity entirely to an external auth service.
    """

    display_name: str
    email: str


@dataclass(frozen=True)
class InboundMessage:
    """Summary: Represents a direct message received through the webhook.

    Importance: Core unit for ingestion, classification, and triage.
    Alternatives: Store the raw webhook payload and parse lazily.
    """

    workspace_id: int
    provider_message_id: str | None
    sender_provider_id: str
    content: str
    received_at: datetime
    sender_name: str | None = None
    sender_username: str | None = None
    sender_avatar_url: str | None = None
    sender_followers_count: int | None = None
    conversation_id: str | None = None


@dataclass(frozen=True)
class SenderProfile:
    """Summary: Display details for a message sender.

    Importance: Gives the classifier follower counts and the dashboard names and avatars.
    Alternatives: Show raw sender IDs only.
    """

    name: str | None = None
    username: str | None = None
    avatar_url: str | None = None
    followers_count: int | None = None


@dataclass(frozen=True)
class ClassificationResult:
    """Summary: Structured triage decision for a message.

    Importance: Drives dashboard ordering and reply suggestions.
    Alternatives: Store free-form LLM output and parse in the UI.
    """

    intent: Intent
    priority: Priority
    suggested_reply: str | None
    confidence: float

    def to_dict(self) -> dict[str, str | None]:
        """Summary: Render the public fields of the classification."""

        return {
            "intent": self.intent,
            "priority": self.priority,
            "suggested_reply": self.suggested_reply,
        }


SKIPPED_RESULT = ClassificationResult(
    intent="fan", priority="ignore", suggested_reply=None, confidence=SKIP_CONFIDENCE
)


@dataclass(frozen=True)
class AiRequest:
    """Summary: Records an AI request for audit and traceability.

    Importance: Provides visibility into prompts and provider usage.
    Alternatives: Log requests only in observability logs.
    """

    provider: str
    model: str
    prompt: str
    purpose: str
    timestamp: datetime


@dataclass(frozen=True)
class AiResponse:
    """Summary: Records an AI response paired to a request.

    Importance: Enables audit trails and future tuning based on outputs.
    Alternatives: Store only final outputs in the classification records.
    """

    request_id: int
    response_text: str
    latency_ms: int
    token_estimate: int


def utc_now() -> datetime:
    """Summary: Return the current time as an aware UTC datetime."""

    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Summary: Serialize a datetime as a sortable UTC ISO-8601 string.

    Importance: Lexical comparison in SQL must match chronological order.
    Alternatives: Store epoch integers instead of strings.
    """

    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(value: str) -> datetime:
    """Summary: Parse a stored timestamp back into an aware UTC datetime."""

    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
