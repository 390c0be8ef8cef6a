"""Summary: FastAPI application for DM Focus.

Importance: Exposes the webhook, scheduled triggers, and dashboard endpoints over HTTP.
Alternatives: Use serverless functions per endpoint or a different web framework.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Any

from fastapi import BackgroundTasks, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, ConfigDict, Field

from dmfocus.app import build_services
from dmfocus.config import AppConfig
from dmfocus.dispatch import BackgroundTaskDispatcher
from dmfocus.errors import CryptoError, NotFoundError, ProviderError


logger = logging.getLogger(__name__)


class ClassifyRequest(BaseModel):
    """Summary: Request payload for single-message classification.

    Importance: Accepts the camelCase key used by the webhook trigger.
    Alternatives: Pass the message ID in the path.
    """

    model_config = ConfigDict(populate_by_name=True)

    message_id: int = Field(alias="messageId")


class SendReplyRequest(BaseModel):
    """Summary: Request payload for sending a DM reply.

    Importance: Keeps reply inputs explicit for dashboard clients.
    Alternatives: Use form parameters.
    """

    model_config = ConfigDict(populate_by_name=True)

    recipient_id: str = Field(alias="recipientId")
    message: str
    message_id: int | None = Field(default=None, alias="messageId")


class OAuthExchangeRequest(BaseModel):
    """Summary: Request payload for completing the Instagram OAuth flow."""

    code: str
    redirect_uri: str
    state: str


class CheckoutRequest(BaseModel):
    """Summary: Request payload for starting a subscription checkout."""

    plan_type: str = "monthly"


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def create_app(config: AppConfig) -> FastAPI:
    """Summary: Create a FastAPI app wired to DM Focus services.

    Importance: Ensures the API layer shares the same configuration and storage.
    Alternatives: Instantiate services globally outside the factory.
    """

    if not logging.getLogger().handlers:
        logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    app = FastAPI(title="DM Focus API", version="0.1.0")
    services = build_services(config)

    @app.exception_handler(HTTPException)
    def handle_http_error(request: Request, exc: HTTPException) -> JSONResponse:
        return _error(exc.status_code, str(exc.detail))

    @app.exception_handler(ValueError)
    def handle_bad_request(request: Request, exc: ValueError) -> JSONResponse:
        return _error(400, str(exc))

    @app.exception_handler(NotFoundError)
    def handle_not_found(request: Request, exc: NotFoundError) -> JSONResponse:
        return _error(404, str(exc))

    @app.exception_handler(CryptoError)
    def handle_crypto_error(request: Request, exc: CryptoError) -> JSONResponse:
        logger.error("Token crypto failure: %s", exc)
        return _error(500, "Token decryption failed")

    @app.exception_handler(ProviderError)
    def handle_provider_error(request: Request, exc: ProviderError) -> JSONResponse:
        logger.warning("Upstream failure: %s", exc)
        return _error(502, str(exc))

    def require_api_key(x_api_key: str | None = Header(default=None)) -> None:
        """Summary: Enforce the service key on scheduled trigger endpoints.

        Importance: Keeps sweeps and batch runs callable only by the scheduler.
        Alternatives: Restrict trigger endpoints by network policy.
        """

        if not config.api_key:
            return
        if x_api_key != config.api_key:
            raise HTTPException(status_code=401, detail="Invalid API key")

    def require_user(authorization: str | None = Header(default=None)) -> int:
        """Summary: Resolve the calling user from a bearer token.

        Importance: Scopes dashboard data and replies to their owner.
        Alternatives: Use session cookies.
        """

        if not authorization or not authorization.startswith("Bearer "):
            raise HTTPException(status_code=401, detail="Unauthorized")
        user_id = services.api_keys.resolve_user_id(authorization[len("Bearer ") :].strip())
        if user_id is None:
            raise HTTPException(status_code=401, detail="Invalid token")
        return user_id

    @app.get("/health")
    def health() -> dict[str, str]:
        """Summary: Health check endpoint."""

        return {"status": "ok"}

    @app.get("/webhooks/instagram")
    def verify_webhook(
        mode: str | None = Query(default=None, alias="hub.mode"),
        token: str | None = Query(default=None, alias="hub.verify_token"),
        challenge: str | None = Query(default=None, alias="hub.challenge"),
    ) -> PlainTextResponse:
        """Summary: Answer Instagram's webhook verification handshake.

        Importance: Instagram only delivers events after the challenge is echoed.
        Alternatives: Verify the subscription manually in the Meta dashboard.
        """

        answer = services.webhooks.verify_subscription(mode, token, challenge)
        if answer is None:
            logger.warning("Webhook verification failed")
            return PlainTextResponse("Forbidden", status_code=403)
        return PlainTextResponse(answer)

    @app.post("/webhooks/instagram")
    async def receive_webhook(request: Request, background_tasks: BackgroundTasks) -> Any:
        """Summary: Ingest an Instagram webhook delivery.

        Importance: Acknowledges with 200 before classification runs so Instagram does not redeliver.
        Alternatives: Process events synchronously before responding.
        """

        try:
            payload = await request.json()
            if not isinstance(payload, dict):
                raise ValueError("Webhook body must be a JSON object")
            dispatcher = BackgroundTaskDispatcher(
                background_tasks, services.classification.classify_message
            )
            await run_in_threadpool(services.webhooks.handle_delivery, payload, dispatcher)
        except (ValueError, sqlite3.Error) as exc:
            logger.exception("Webhook processing error")
            return _error(500, str(exc))
        return {"received": True}

    @app.post("/classify", dependencies=[Depends(require_api_key)])
    def classify(request: ClassifyRequest) -> Any:
        """Summary: Classify one message by ID.

        Importance: Lets the scheduler or an operator retry a single message.
        Alternatives: Wait for the next batch run.
        """

        try:
            result = services.classification.classify_message(request.message_id)
        except ProviderError as exc:
            logger.warning("Classification failed for message %s: %s", request.message_id, exc)
            return _error(500, "AI classification failed")
        return result.to_dict()

    @app.post("/classify/batch", dependencies=[Depends(require_api_key)])
    def classify_batch() -> dict[str, Any]:
        """Summary: Run one windowed batch classification."""

        return services.classification.classify_pending_batch().to_dict()

    @app.post("/subscriptions/sweep", dependencies=[Depends(require_api_key)])
    def sweep_subscriptions() -> dict[str, Any]:
        """Summary: Run the subscription lifecycle sweep."""

        return services.subscriptions.sweep().to_dict()

    @app.post("/messages/cleanup", dependencies=[Depends(require_api_key)])
    def cleanup_messages() -> dict[str, Any]:
        """Summary: Delete read messages past the retention window."""

        return services.retention.cleanup_read_messages().to_dict()

    @app.post("/tokens/migrate", dependencies=[Depends(require_api_key)])
    def migrate_tokens() -> dict[str, Any]:
        """Summary: Encrypt any access tokens still stored in plaintext."""

        return services.tokens.migrate_plaintext_tokens().to_dict()

    @app.post("/payments/webhook")
    async def payment_webhook(request: Request) -> PlainTextResponse:
        """Summary: Receive Mercado Pago notifications.

        Importance: Always acknowledges so Mercado Pago stops retrying.
        Alternatives: Return errors and rely on provider retries.
        """

        try:
            body = await request.json()
        except ValueError:
            body = None
        if not isinstance(body, dict):
            body = None
        query = dict(request.query_params)
        try:
            await run_in_threadpool(services.payments.handle_notification, query, body)
        except (ValueError, sqlite3.Error):
            logger.exception("Payment webhook error")
        return PlainTextResponse("OK")

    @app.post("/payments/checkout")
    def create_checkout(
        request: CheckoutRequest,
        origin: str | None = Header(default=None),
        user_id: int = Depends(require_user),
    ) -> dict[str, Any]:
        """Summary: Create a Mercado Pago checkout for the caller.

        Importance: Back URLs follow the calling dashboard's origin when present.
        Alternatives: Always redirect to the configured app URL.
        """

        return services.payments.create_checkout(user_id, request.plan_type, origin).to_dict()

    @app.get("/oauth/instagram")
    def instagram_auth_url(
        redirect_uri: str, user_id: int = Depends(require_user)
    ) -> dict[str, str]:
        """Summary: Start the Instagram OAuth flow."""

        url, state = services.connections.authorization_url(user_id, redirect_uri)
        return {"url": url, "state": state}

    @app.post("/oauth/instagram/exchange")
    def instagram_exchange(
        request: OAuthExchangeRequest, user_id: int = Depends(require_user)
    ) -> dict[str, Any]:
        """Summary: Complete the Instagram OAuth flow and create the workspace."""

        return services.connections.connect_instagram(
            user_id, request.code, request.redirect_uri, request.state
        )

    @app.get("/messages")
    def list_messages(limit: int = 50, user_id: int = Depends(require_user)) -> list[dict[str, Any]]:
        """Summary: List the caller's messages with classifications.

        Importance: Provides data for the triage dashboard.
        Alternatives: Return only message IDs with separate detail endpoints.
        """

        items = []
        for item in services.messages.list_messages(user_id, limit):
            message = item.message
            classification = item.classification
            items.append(
                {
                    "id": message.id,
                    "sender_provider_id": message.sender_provider_id,
                    "sender_name": message.sender_name,
                    "sender_username": message.sender_username,
                    "sender_avatar_url": message.sender_avatar_url,
                    "sender_followers_count": message.sender_followers_count,
                    "content": message.content,
                    "received_at": message.received_at,
                    "is_read": message.is_read,
                    "classification_status": message.classification_status,
                    "classification": {
                        "intent": classification.intent,
                        "priority": classification.priority,
                        "suggested_reply": classification.suggested_reply,
                        "confidence": classification.confidence,
                    }
                    if classification
                    else None,
                }
            )
        return items

    @app.post("/messages/{message_id}/read")
    def mark_read(message_id: int, user_id: int = Depends(require_user)) -> dict[str, str]:
        """Summary: Mark one of the caller's messages as read."""

        services.messages.mark_read(user_id, message_id)
        return {"status": "ok"}

    @app.post("/messages/send")
    def send_reply(request: SendReplyRequest, user_id: int = Depends(require_user)) -> dict[str, Any]:
        """Summary: Send a DM reply from the caller's connected account."""

        return services.replies.send_reply(
            user_id, request.recipient_id, request.message, request.message_id
        )

    @app.get("/subscription")
    def subscription_state(user_id: int = Depends(require_user)) -> dict[str, Any]:
        """Summary: Return the caller's subscription gating state."""

        return services.subscriptions.get_state(user_id).to_dict()

    @app.get("/stats")
    def stats(user_id: int = Depends(require_user)) -> dict[str, int]:
        """Summary: Return dashboard counters for the caller."""

        return services.messages.stats(user_id)

    return app


app = create_app(AppConfig.from_env())
