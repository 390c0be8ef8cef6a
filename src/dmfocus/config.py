"""Summary: Application configuration for DM Focus.

Importance: Centralizes environment, .env, and config defaults so secrets are injected, never read ad hoc.
Alternatives: Use a dedicated settings library like Pydantic Settings.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from dataclasses import dataclass


@dataclass(frozen=True)
class AppConfig:
    """Summary: Secrets and lifecycle timings shared by every service.

    Importance: Injected at construction so tests can swap keys and windows without touching the environment.
    Alternatives: Read os.environ inside each service.
    """

    db_path: str
    ai_provider: str
    openai_api_key: str | None
    openai_model: str
    ollama_url: str
    ollama_model: str
    api_host: str
    api_port: int
    api_key: str
    token_secret: str
    encryption_key: str
    instagram_app_id: str
    instagram_app_secret: str
    instagram_verify_token: str
    instagram_graph_base_url: str
    instagram_oauth_base_url: str
    mercadopago_access_token: str
    mercadopago_api_base_url: str
    public_base_url: str
    app_url: str
    batch_window_minutes: int
    batch_size: int
    claim_timeout_minutes: int
    grace_period_days: int
    deletion_after_days: int
    retention_days: int
    subscription_period_days: int
    http_timeout_seconds: int
    enrich_sender_profiles: bool
    reply_language: str

    @property
    def model_name(self) -> str:
        """Summary: Resolve the model name for the configured AI provider.

        Importance: Keeps AI audit records tagged with the model actually used.
        Alternatives: Store the model name separately per provider.
        """

        if self.ai_provider == "openai":
            return self.openai_model
        if self.ai_provider == "ollama":
            return self.ollama_model
        return "mock"

    @staticmethod
    def from_env() -> "AppConfig":
        """Summary: Layer the process environment over .env over config/defaults.json.

        Importance: Every key has a default on disk, so a fresh checkout boots with the mock provider.
        Alternatives: Fail fast on any unset variable.
        """

        defaults = load_defaults(defaults_path())
        load_dotenv(Path(".env"))
        return AppConfig(
            db_path=os.getenv("DMFOCUS_DB_PATH", defaults["db_path"]),
            ai_provider=os.getenv("DMFOCUS_AI_PROVIDER", defaults["ai_provider"]),
            openai_api_key=os.getenv("OPENAI_API_KEY") or defaults["openai_api_key"] or None,
            openai_model=os.getenv("OPENAI_MODEL", defaults["openai_model"]),
            ollama_url=os.getenv("OLLAMA_URL", defaults["ollama_url"]),
            ollama_model=os.getenv("OLLAMA_MODEL", defaults["ollama_model"]),
            api_host=os.getenv("DMFOCUS_API_HOST", defaults["api_host"]),
            api_port=int(os.getenv("DMFOCUS_API_PORT", defaults["api_port"])),
            api_key=os.getenv("DMFOCUS_API_KEY", defaults["api_key"]),
            token_secret=os.getenv("DMFOCUS_TOKEN_SECRET", defaults["token_secret"]),
            encryption_key=os.getenv("ENCRYPTION_KEY", defaults["encryption_key"]),
            instagram_app_id=os.getenv("INSTAGRAM_APP_ID", defaults["instagram_app_id"]),
            instagram_app_secret=os.getenv(
                "INSTAGRAM_APP_SECRET", defaults["instagram_app_secret"]
            ),
            instagram_verify_token=os.getenv(
                "IG_VERIFY_TOKEN", defaults["instagram_verify_token"]
            ),
            instagram_graph_base_url=os.getenv(
                "INSTAGRAM_GRAPH_BASE_URL", defaults["instagram_graph_base_url"]
            ),
            instagram_oauth_base_url=os.getenv(
                "INSTAGRAM_OAUTH_BASE_URL", defaults["instagram_oauth_base_url"]
            ),
            mercadopago_access_token=os.getenv(
                "MERCADOPAGO_ACCESS_TOKEN", defaults["mercadopago_access_token"]
            ),
            mercadopago_api_base_url=os.getenv(
                "MERCADOPAGO_API_BASE_URL", defaults["mercadopago_api_base_url"]
            ),
            public_base_url=os.getenv("DMFOCUS_PUBLIC_BASE_URL", defaults["public_base_url"]),
            app_url=os.getenv("DMFOCUS_APP_URL", defaults["app_url"]),
            batch_window_minutes=int(
                os.getenv("DMFOCUS_BATCH_WINDOW_MINUTES", defaults["batch_window_minutes"])
            ),
            batch_size=int(os.getenv("DMFOCUS_BATCH_SIZE", defaults["batch_size"])),
            claim_timeout_minutes=int(
                os.getenv("DMFOCUS_CLAIM_TIMEOUT_MINUTES", defaults["claim_timeout_minutes"])
            ),
            grace_period_days=int(
                os.getenv("DMFOCUS_GRACE_PERIOD_DAYS", defaults["grace_period_days"])
            ),
            deletion_after_days=int(
                os.getenv("DMFOCUS_DELETION_AFTER_DAYS", defaults["deletion_after_days"])
            ),
            retention_days=int(os.getenv("DMFOCUS_RETENTION_DAYS", defaults["retention_days"])),
            subscription_period_days=int(
                os.getenv(
                    "DMFOCUS_SUBSCRIPTION_PERIOD_DAYS", defaults["subscription_period_days"]
                )
            ),
            http_timeout_seconds=int(
                os.getenv("DMFOCUS_HTTP_TIMEOUT_SECONDS", defaults["http_timeout_seconds"])
            ),
            enrich_sender_profiles=parse_bool(
                os.getenv("DMFOCUS_ENRICH_SENDER_PROFILES", defaults["enrich_sender_profiles"])
            ),
            reply_language=os.getenv("DMFOCUS_REPLY_LANGUAGE", defaults["reply_language"]),
        )


def defaults_path() -> Path:
    """Summary: Locate config/defaults.json, preferring the working directory.

    Importance: Lets the app start from any directory inside a source checkout.
    Alternatives: Require an explicit path argument.
    """

    local = Path("config") / "defaults.json"
    if local.exists():
        return local
    return Path(__file__).resolve().parents[2] / "config" / "defaults.json"


def load_defaults(path: Path) -> dict[str, str]:
    """Summary: Read the defaults file as a flat string map."""

    if not path.is_file():
        raise FileNotFoundError(f"Missing config defaults: {path}")
    with path.open(encoding="utf-8") as handle:
        return {key: str(value) for key, value in json.load(handle).items()}


def load_dotenv(path: Path) -> None:
    """Summary: Copy KEY=VALUE lines from a .env file into unset environment variables.

    Importance: Real environment variables always win, so deployed secrets are never shadowed.
    Alternatives: Use python-dotenv.
    """

    if not path.is_file():
        return
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if line.startswith("export "):
            line = line[len("export ") :].lstrip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = (part.strip() for part in line.split("=", 1))
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
            value = value[1:-1]
        os.environ.setdefault(key, value)


def parse_bool(value: str) -> bool:
    """Summary: Interpret a config string as a boolean flag."""

    return value.strip().lower() in {"1", "true", "yes", "on"}
