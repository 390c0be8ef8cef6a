"""Summary: Mercado Pago checkout preferences, payment lookups, and notification parsing.

Importance: Starts paid subscriptions and turns payment notifications into reactivations.
Alternatives: Use the Mercado Pago SDK.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Mapping

from dmfocus.errors import ProviderError
from dmfocus.httpclient import get_json, post_json


PAYMENT_TOPIC = "payment"
STATUS_APPROVED = "approved"
CURRENCY = "BRL"
MAX_INSTALLMENTS = 12
PREFERENCE_LIFETIME = timedelta(hours=24)
STATEMENT_DESCRIPTOR = "DMFOCUS"


@dataclass(frozen=True)
class CheckoutPlan:
    """Summary: Price and labels for one subscription plan."""

    amount: int
    title: str
    description: str


PLANS = {
    "monthly": CheckoutPlan(49, "DM Focus Pro - Mensal", "Assinatura mensal do DM Focus Pro"),
    "yearly": CheckoutPlan(
        470, "DM Focus Pro - Anual", "Assinatura anual do DM Focus Pro (economize 20%)"
    ),
}
DEFAULT_PLAN = "monthly"


@dataclass(frozen=True)
class CheckoutPreference:
    """Summary: The hosted checkout created for a user."""

    id: str
    init_point: str | None
    sandbox_init_point: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "preference_id": self.id,
            "init_point": self.init_point,
            "sandbox_init_point": self.sandbox_init_point,
        }


@dataclass(frozen=True)
class Payment:
    """Summary: The payment fields the subscription logic needs."""

    id: str
    status: str
    external_reference: str | None


def build_preference(
    user_id: int,
    email: str,
    plan_type: str,
    back_url_base: str,
    notification_url: str,
    now: datetime,
) -> dict[str, Any]:
    """Summary: Build a Checkout Pro preference body for one plan.

    Importance: external_reference carries the user ID back in the payment notification.
    Alternatives: Map payments to users by payer email.
    """

    if plan_type not in PLANS:
        plan_type = DEFAULT_PLAN
    plan = PLANS[plan_type]
    base = back_url_base.rstrip("/")
    return {
        "items": [
            {
                "id": f"dmfocus_{plan_type}",
                "title": plan.title,
                "description": plan.description,
                "quantity": 1,
                "currency_id": CURRENCY,
                "unit_price": plan.amount,
            }
        ],
        "payer": {"email": email},
        "back_urls": {
            "success": f"{base}/checkout/success",
            "failure": f"{base}/checkout/failure",
            "pending": f"{base}/checkout/pending",
        },
        "auto_return": "approved",
        "external_reference": str(user_id),
        "notification_url": notification_url,
        "payment_methods": {
            "excluded_payment_types": [],
            "excluded_payment_methods": [],
            "installments": MAX_INSTALLMENTS,
        },
        "statement_descriptor": STATEMENT_DESCRIPTOR,
        "expires": True,
        "expiration_date_from": now.isoformat(timespec="milliseconds"),
        "expiration_date_to": (now + PREFERENCE_LIFETIME).isoformat(timespec="milliseconds"),
    }


def extract_payment_id(
    query: Mapping[str, str], body: Mapping[str, Any] | None
) -> str | None:
    """Summary: Pull the payment ID out of a notification.

    Importance: Mercado Pago sends IPN notifications in the query string and webhooks in the body.
    Alternatives: Register only one notification style.
    """

    body = body or {}
    topic = query.get("topic") or query.get("type") or body.get("type") or body.get("topic")
    if topic != PAYMENT_TOPIC:
        return None
    data = body.get("data") if isinstance(body.get("data"), dict) else {}
    payment_id = query.get("id") or query.get("data.id") or data.get("id") or body.get("id")
    return str(payment_id) if payment_id else None


@dataclass(frozen=True)
class MercadoPagoClient:
    """Summary: Client for the Mercado Pago checkout and payments APIs."""

    access_token: str
    base_url: str
    timeout: int = 20

    def create_preference(self, preference: dict[str, Any]) -> CheckoutPreference:
        """Summary: Create a Checkout Pro preference.

        Importance: The returned init point is where the user pays with PIX or card.
        Alternatives: Build a transparent checkout with card tokenization.
        """

        payload = post_json(
            f"{self.base_url.rstrip('/')}/checkout/preferences",
            preference,
            headers=self._headers(),
            timeout=self.timeout,
            service="Mercado Pago checkout",
        )
        if not payload.get("id"):
            raise ProviderError("Mercado Pago checkout response missing preference id")
        return CheckoutPreference(
            id=str(payload["id"]),
            init_point=payload.get("init_point"),
            sandbox_init_point=payload.get("sandbox_init_point"),
        )

    def fetch_payment(self, payment_id: str) -> Payment:
        """Summary: Fetch a payment by ID.

        Importance: Notifications carry only an ID, so status must come from the API.
        Alternatives: Trust the status field in the notification body.
        """

        payload = get_json(
            f"{self.base_url.rstrip('/')}/v1/payments/{payment_id}",
            headers=self._headers(),
            timeout=self.timeout,
            service="Mercado Pago payment lookup",
        )
        reference = payload.get("external_reference")
        return Payment(
            id=str(payload.get("id", payment_id)),
            status=str(payload.get("status") or ""),
            external_reference=str(reference) if reference else None,
        )

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token}"}
