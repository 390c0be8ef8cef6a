"""Summary: Message triage heuristics and the LLM-backed classifier.

Importance: Decides which messages are worth an LLM call and turns model output into a validated result.
Alternatives: Send every message to the LLM and accept the cost.
"""

from __future__ import annotations

import logging
import re
import unicodedata
from dataclasses import dataclass
from pydantic import BaseModel, ConfigDict, ValidationError

from dmfocus.ai import AiProvider, estimate_tokens
from dmfocus.errors import InvalidClassificationError
from dmfocus.models import (
    LLM_CONFIDENCE,
    AiRequest,
    AiResponse,
    ClassificationResult,
    Intent,
    Priority,
    utc_now,
)
from dmfocus.storage.sqlite_store import SqliteStore, StoredMessage


logger = logging.getLogger(__name__)

SKIP_EMOJI_ONLY = "emoji_only"
SKIP_TOO_SHORT = "too_short"
SKIP_COMMON_RESPONSE = "common_response"
SKIP_DUPLICATE = "duplicate"

MIN_WORDS = 3
MIN_LENGTH = 15

COMMON_RESPONSE_PATTERN = re.compile(
    r"^(ok|sim|não|nao|obrigado|obrigada|valeu|vlw|tmj|top|show|boa|blz|legal|massa|dahora"
    r"|brigado|brigada|k{2,}|(?:ha){2,}h?|(?:rs)+|❤️|👍|🙏|😊|🔥|💯)$",
    re.IGNORECASE,
)

# Joiners and selectors that only appear inside emoji sequences.
EMOJI_COMPONENTS = {"\u200d", "\ufe0e", "\ufe0f", "\u20e3"}
SKIN_TONE_RANGE = range(0x1F3FB, 0x1F400)
TAG_RANGE = range(0xE0020, 0xE0080)

CLASSIFY_PURPOSE = "classify_message"


@dataclass(frozen=True)
class SkipDecision:
    """Summary: Outcome of the deterministic skip heuristic.

    Importance: Carries the reason so batch reports and logs explain each skip.
    Alternatives: Return a bare boolean.
    """

    skip: bool
    reason: str | None = None


NO_SKIP = SkipDecision(skip=False)


class ClassificationPayload(BaseModel):
    """Summary: Strict schema for the LLM's JSON answer.

    Importance: Rejects unknown intents or priorities before anything is persisted.
    Alternatives: Read keys from a dict and trust the model.
    """

    model_config = ConfigDict(extra="ignore")

    intent: Intent
    priority: Priority
    suggested_reply: str | None = None


def normalize_content(content: str) -> str:
    """Summary: Normalize content for duplicate detection within a burst."""

    return content.strip().lower()


def is_emoji_only(text: str) -> bool:
    """Summary: Check whether every non-whitespace character belongs to an emoji sequence.

    Importance: Reaction-style messages never need a classification call.
    Alternatives: Depend on a third-party emoji database.
    """

    seen_symbol = False
    for char in text:
        if char.isspace():
            continue
        codepoint = ord(char)
        if char in EMOJI_COMPONENTS or codepoint in SKIN_TONE_RANGE or codepoint in TAG_RANGE:
            continue
        if unicodedata.category(char) != "So":
            return False
        seen_symbol = True
    return seen_symbol


def should_skip_classification(content: str) -> SkipDecision:
    """Summary: Apply the emoji, length, and common-response heuristics to a message.

    Importance: Short acknowledgments are classified for free as fan/ignore.
    Alternatives: Use a small local model to pre-filter messages.
    """

    trimmed = content.strip()
    if is_emoji_only(trimmed):
        return SkipDecision(True, SKIP_EMOJI_ONLY)
    word_count = len(trimmed.split())
    if word_count < MIN_WORDS and len(trimmed) < MIN_LENGTH:
        return SkipDecision(True, SKIP_TOO_SHORT)
    if COMMON_RESPONSE_PATTERN.match(trimmed):
        return SkipDecision(True, SKIP_COMMON_RESPONSE)
    return NO_SKIP


def build_system_prompt(message: StoredMessage, reply_language: str) -> str:
    """Summary: Build the classification instructions with sender context.

    Importance: Follower count and sender name shift partnership priority.
    Alternatives: Send only the message text.
    """

    followers = (
        str(message.sender_followers_count)
        if message.sender_followers_count is not None
        else "unknown"
    )
    sender = message.sender_name or message.sender_username or "unknown"
    return (
        "You classify Instagram direct messages sent to a content creator.\n\n"
        "Classify the message into:\n"
        '- intent: "partnership" (sponsorship or collaboration offer), "fan" (praise or '
        'support), "question" (question about the content), "hate" (hate or hostile '
        'criticism), "spam" (spam or sales)\n'
        '- priority: "respond_now" (urgent: partnerships and important questions), '
        '"can_wait" (fans), "ignore" (spam and hate)\n'
        f"- suggested_reply: a short reply suggestion in {reply_language}, or null for "
        "spam and hate\n\n"
        "Consider:\n"
        f"- Sender follower count: {followers}\n"
        f"- Sender name: {sender}\n\n"
        'Answer ONLY with a JSON object with the keys "intent", "priority" and '
        '"suggested_reply".'
    )


def build_user_prompt(content: str) -> str:
    """Summary: Wrap the message content for the user turn."""

    return f'Message: "{content.strip()}"'


def parse_classification(text: str) -> ClassificationResult:
    """Summary: Validate LLM JSON output into a classification result.

    Importance: Invalid output becomes a retryable error instead of a corrupt row.
    Alternatives: Coerce unknown values to a default classification.
    """

    try:
        payload = ClassificationPayload.model_validate_json(text)
    except ValidationError as exc:
        raise InvalidClassificationError(f"LLM returned an invalid classification: {exc}") from exc
    reply = payload.suggested_reply.strip() if payload.suggested_reply else None
    return ClassificationResult(
        intent=payload.intent,
        priority=payload.priority,
        suggested_reply=reply or None,
        confidence=LLM_CONFIDENCE,
    )


@dataclass(frozen=True)
class LlmClassifier:
    """Summary: Classifies a stored message through the configured AI provider.

    Importance: Shared by the single-message and batch paths so both audit and validate alike.
    Alternatives: Inline provider calls in each service.
    """

    store: SqliteStore
    provider: AiProvider
    model_name: str
    reply_language: str

    def classify(self, message: StoredMessage) -> ClassificationResult:
        """Summary: Call the LLM for one message and return the validated result.

        Importance: Every call is recorded in the AI audit tables.
        Alternatives: Skip auditing for classification calls.
        """

        system_prompt = build_system_prompt(message, self.reply_language)
        prompt = build_user_prompt(message.content)
        request_id = self.store.log_ai_request(
            AiRequest(
                provider=self.provider.name,
                model=self.model_name,
                prompt=f"{system_prompt}\n\n{prompt}",
                purpose=CLASSIFY_PURPOSE,
                timestamp=utc_now(),
            )
        )
        response_text, latency_ms = self.provider.generate_json(
            system_prompt, prompt, CLASSIFY_PURPOSE
        )
        self.store.log_ai_response(
            AiResponse(
                request_id=request_id,
                response_text=response_text,
                latency_ms=latency_ms,
                token_estimate=estimate_tokens(response_text),
            )
        )
        result = parse_classification(response_text)
        logger.info(
            "Message %s classified as %s/%s in %sms",
            message.id,
            result.intent,
            result.priority,
            latency_ms,
        )
        return result
