"""Summary: Application factory wiring core services.

Importance: Centralizes dependency creation for the CLI and API layers.
Alternatives: Instantiate services manually in each entrypoint.
"""

from __future__ import annotations

from dataclasses import dataclass

from dmfocus.ai import AiProvider, AiProviderFactory
from dmfocus.classifier import LlmClassifier
from dmfocus.config import AppConfig
from dmfocus.instagram import InstagramClient
from dmfocus.payments import MercadoPagoClient
from dmfocus.services import (
    ApiKeyService,
    ClassificationService,
    ConnectionService,
    MessageService,
    PaymentService,
    ReplyService,
    RetentionService,
    SubscriptionService,
    TokenService,
    UserService,
    WebhookService,
)
from dmfocus.storage.sqlite_store import SqliteStore
from dmfocus.token_codec import TokenCodec


@dataclass(frozen=True)
class AppContext:
    """Summary: Shared application context for building services.

    Importance: Reuses storage, the AI provider, and HTTP clients across requests.
    Alternatives: Rebuild dependencies for every request.
    """

    store: SqliteStore
    ai_provider: AiProvider
    config: AppConfig

    def services(self) -> "AppServices":
        """Summary: Build the service bundle from shared context.

        Importance: Every service receives the same injected configuration.
        Alternatives: Use a dependency injection container.
        """

        instagram = InstagramClient(
            base_url=self.config.instagram_graph_base_url,
            timeout=self.config.http_timeout_seconds,
        )
        tokens = TokenService(store=self.store, codec=TokenCodec(self.config.encryption_key))
        classifier = LlmClassifier(
            store=self.store,
            provider=self.ai_provider,
            model_name=self.config.model_name,
            reply_language=self.config.reply_language,
        )
        payments = MercadoPagoClient(
            access_token=self.config.mercadopago_access_token,
            base_url=self.config.mercadopago_api_base_url,
            timeout=self.config.http_timeout_seconds,
        )
        return AppServices(
            users=UserService(store=self.store),
            api_keys=ApiKeyService(store=self.store, token_secret=self.config.token_secret),
            tokens=tokens,
            webhooks=WebhookService(
                store=self.store, config=self.config, instagram=instagram, tokens=tokens
            ),
            classification=ClassificationService(
                store=self.store, classifier=classifier, config=self.config
            ),
            subscriptions=SubscriptionService(store=self.store, config=self.config),
            payments=PaymentService(store=self.store, config=self.config, client=payments),
            retention=RetentionService(store=self.store, config=self.config),
            messages=MessageService(store=self.store),
            replies=ReplyService(store=self.store, tokens=tokens, instagram=instagram),
            connections=ConnectionService(
                store=self.store, config=self.config, tokens=tokens, instagram=instagram
            ),
            store=self.store,
        )


@dataclass(frozen=True)
class AppServices:
    """Summary: Bundle of core services for DM Focus.

    Importance: Simplifies passing dependencies to the API and CLI layers.
    Alternatives: Use a dependency injection container.
    """

    users: UserService
    api_keys: ApiKeyService
    tokens: TokenService
    webhooks: WebhookService
    classification: ClassificationService
    subscriptions: SubscriptionService
    payments: PaymentService
    retention: RetentionService
    messages: MessageService
    replies: ReplyService
    connections: ConnectionService
    store: SqliteStore


def build_context(config: AppConfig) -> AppContext:
    """Summary: Build shared context for services.

    Importance: Initializes the schema once per process.
    Alternatives: Construct dependencies separately per request.
    """

    store = SqliteStore(config.db_path)
    store.initialize()
    ai_provider = AiProviderFactory(config).build()
    return AppContext(store=store, ai_provider=ai_provider, config=config)


def build_services(config: AppConfig) -> AppServices:
    """Summary: Build core services from configuration."""

    return build_context(config).services()
