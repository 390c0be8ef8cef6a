"""Summary: LLM providers that answer classification prompts with a JSON object.

Importance: The classifier only depends on the AiProvider contract, so OpenAI, Ollama, and the offline mock are swappable by config.
Alternatives: Call the OpenAI SDK directly from the classifier.
"""

from __future__ import annotations

import json
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass

from dmfocus.config import AppConfig
from dmfocus.errors import ProviderError
from dmfocus.httpclient import post_json


OPENAI_CHAT_URL = "https://api.openai.com/v1/chat/completions"
CLASSIFY_TEMPERATURE = 0.3
CLASSIFY_MAX_TOKENS = 300

PARTNERSHIP_WORDS = re.compile(r"parceria|publi|collab|proposta|partnership|patroc")
SPAM_WORDS = re.compile(r"promo|ganhe|compre|http|seguidores grátis")
HATE_WORDS = re.compile(r"odeio|lixo|ridícul|horrível")


class AiProvider(ABC):
    """Summary: A model endpoint that turns a system prompt and a message into JSON text.

    Importance: Returns raw text plus latency so validation and auditing stay in the classifier.
    Alternatives: Return parsed dicts and validate per provider.
    """

    name: str = "abstract"

    @abstractmethod
    def generate_json(self, system_prompt: str, prompt: str, purpose: str) -> tuple[str, int]:
        """Summary: Return (json_text, latency_ms) for one prompt.

        Importance: Any transport or upstream failure must surface as ProviderError.
        Alternatives: Return None on failure.
        """


class MockAiProvider(AiProvider):
    """Summary: Keyword-rule classifier that speaks the same JSON contract as a real model.

    Importance: Lets the webhook-to-dashboard flow run locally without an API key.
    Alternatives: Require Ollama for local development.
    """

    name = "mock"

    def generate_json(self, system_prompt: str, prompt: str, purpose: str) -> tuple[str, int]:
        started = time.time()
        text = prompt.rsplit("Message:", 1)[-1].lower()
        if PARTNERSHIP_WORDS.search(text):
            intent, priority = "partnership", "respond_now"
        elif SPAM_WORDS.search(text):
            intent, priority = "spam", "ignore"
        elif HATE_WORDS.search(text):
            intent, priority = "hate", "ignore"
        elif "?" in text:
            intent, priority = "question", "can_wait"
        else:
            intent, priority = "fan", "can_wait"
        reply = None if priority == "ignore" else "Obrigado pela mensagem! Respondo em breve."
        answer = json.dumps(
            {"intent": intent, "priority": priority, "suggested_reply": reply},
            ensure_ascii=False,
        )
        return answer, int((time.time() - started) * 1000)


class OllamaProvider(AiProvider):
    """Summary: Classifies with a model served by a local Ollama instance.

    Importance: Keeps DM content on the creator's own hardware when required.
    Alternatives: Run llama.cpp in-process.
    """

    name = "ollama"

    def __init__(self, base_url: str, model: str, timeout: int = 60) -> None:
        self._endpoint = f"{base_url.rstrip('/')}/api/generate"
        self._model = model
        self._timeout = timeout

    def generate_json(self, system_prompt: str, prompt: str, purpose: str) -> tuple[str, int]:
        """Summary: Call /api/generate with format=json and no streaming."""

        started = time.time()
        body = post_json(
            self._endpoint,
            {
                "model": self._model,
                "system": system_prompt,
                "prompt": prompt,
                "stream": False,
                "format": "json",
                "options": {"temperature": CLASSIFY_TEMPERATURE},
            },
            timeout=self._timeout,
            service=f"Ollama {purpose}",
        )
        return str(body.get("response") or ""), int((time.time() - started) * 1000)


class OpenAiProvider(AiProvider):
    """Summary: Classifies with OpenAI chat completions in JSON object mode.

    Importance: Production default; low temperature and a token cap keep answers short and stable.
    Alternatives: Use function calling with a tool schema.
    """

    name = "openai"

    def __init__(self, api_key: str, model: str, timeout: int = 60) -> None:
        self._api_key = api_key
        self._model = model
        self._timeout = timeout

    def generate_json(self, system_prompt: str, prompt: str, purpose: str) -> tuple[str, int]:
        started = time.time()
        body = post_json(
            OPENAI_CHAT_URL,
            {
                "model": self._model,
                "messages": [
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": prompt},
                ],
                "response_format": {"type": "json_object"},
                "temperature": CLASSIFY_TEMPERATURE,
                "max_tokens": CLASSIFY_MAX_TOKENS,
            },
            headers={"Authorization": f"Bearer {self._api_key}"},
            timeout=self._timeout,
            service=f"OpenAI {purpose}",
        )
        latency_ms = int((time.time() - started) * 1000)
        try:
            content = body["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ProviderError("OpenAI response missing message content") from exc
        return content or "", latency_ms


@dataclass(frozen=True)
class AiProviderFactory:
    """Summary: Picks the provider named by the ai_provider setting.

    Importance: A misconfigured OpenAI setup fails at startup rather than on the first DM.
    Alternatives: Resolve the provider lazily per call.
    """

    config: AppConfig

    def build(self) -> AiProvider:
        timeout = self.config.http_timeout_seconds
        if self.config.ai_provider == "openai":
            if not self.config.openai_api_key:
                raise ValueError("OPENAI_API_KEY is required when ai_provider is openai")
            return OpenAiProvider(self.config.openai_api_key, self.config.openai_model, timeout)
        if self.config.ai_provider == "ollama":
            return OllamaProvider(self.config.ollama_url, self.config.ollama_model, timeout)
        return MockAiProvider()


def estimate_tokens(text: str) -> int:
    """Summary: Rough token count (four characters per token) for the audit table."""

    return max(1, len(text) // 4)
