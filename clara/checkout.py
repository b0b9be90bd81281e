"""
Checkout: order creation plus a Stripe subscription checkout session.

`create_checkout_session` backs the POST /clara-checkout endpoint. The
create_checkout tool reaches it through a CheckoutClient: over HTTP when
CHECKOUT_URL points at a separately deployed endpoint, in-process otherwise.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Sequence

import httpx
import stripe

from .config import get_settings
from .storage import catalog_store

logger = logging.getLogger("clara-chat")


class CheckoutError(RuntimeError):
    """Raised when an order or its payment session cannot be created."""


def create_checkout_session(
    *,
    plan_id: str,
    devices: Sequence[str],
    customer_email: str,
    customer_name: str,
    session_id: Optional[str] = None,
    conversation_id: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Create a pending order and, when Stripe is configured, a checkout session.

    Not idempotent: every call creates a new order.
    """
    settings = get_settings()

    plan = catalog_store.get_plan(plan_id)
    if plan is None:
        raise CheckoutError(f"Pricing plan not found: {plan_id}")

    device_ids = [str(d) for d in devices or []]
    total_monthly = plan["monthly_price"] + sum(p["monthly_price"] for p in catalog_store.get_products(device_ids))
    total_monthly = round(total_monthly, 2)

    order_id = catalog_store.create_order(
        plan_id=plan_id,
        devices=device_ids,
        total_monthly=total_monthly,
        customer_email=customer_email,
        customer_name=customer_name,
        session_id=session_id,
        conversation_id=conversation_id,
    )

    if not settings.stripe_secret_key:
        logger.info("order created without payment link order_id=%s (stripe not configured)", order_id)
        return {
            "success": True,
            "orderId": order_id,
            "message": "Order created. Stripe not configured - payment processing unavailable.",
            "requiresManualSetup": True,
        }

    product_name = (plan.get("translation") or {}).get("name") or plan["slug"]
    try:
        session = stripe.checkout.Session.create(
            api_key=settings.stripe_secret_key,
            mode="subscription",
            success_url=f"{settings.site_url}/payment-success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{settings.site_url}/payment-cancelled",
            customer_email=customer_email,
            line_items=[
                {
                    "price_data": {
                        "currency": "eur",
                        "product_data": {"name": product_name},
                        "recurring": {"interval": "month"},
                        "unit_amount": int(round(total_monthly * 100)),
                    },
                    "quantity": 1,
                }
            ],
            metadata={"order_id": order_id},
        )
    except stripe.StripeError as exc:
        logger.error("Stripe error for order_id=%s: %s", order_id, exc)
        raise CheckoutError(f"Stripe error: {exc.user_message or str(exc)}") from exc

    catalog_store.attach_stripe_session(order_id, session.id)
    return {"success": True, "checkoutUrl": session.url, "orderId": order_id}


class CheckoutClient:
    """Creates checkout sessions on behalf of the create_checkout tool."""

    def create(self, payload: Dict[str, Any]) -> Dict[str, Any]:  # pragma: no cover - interface only
        raise NotImplementedError


class LocalCheckoutClient(CheckoutClient):
    def create(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            return create_checkout_session(
                plan_id=payload["planId"],
                devices=payload.get("devices") or [],
                customer_email=payload["customerEmail"],
                customer_name=payload["customerName"],
                session_id=payload.get("sessionId"),
                conversation_id=payload.get("conversationId"),
            )
        except CheckoutError as exc:
            return {"error": str(exc)}


class HttpCheckoutClient(CheckoutClient):
    """POSTs to a separately deployed checkout endpoint and returns its JSON body."""

    def __init__(self, url: str, *, timeout: float = 30.0, client: Optional[httpx.Client] = None) -> None:
        self.url = url
        self.timeout = timeout
        self._client = client

    def create(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            if self._client is not None:
                resp = self._client.post(self.url, json=payload, timeout=self.timeout)
            else:
                resp = httpx.post(self.url, json=payload, timeout=self.timeout)
        except httpx.HTTPError as exc:
            raise CheckoutError(f"Checkout service unreachable: {exc}") from exc
        try:
            body = resp.json()
        except ValueError as exc:
            raise CheckoutError(f"Checkout service returned invalid JSON (status {resp.status_code})") from exc
        if not isinstance(body, dict):
            raise CheckoutError("Checkout service returned a non-object body")
        return body


def build_checkout_client() -> CheckoutClient:
    settings = get_settings()
    if settings.checkout_url:
        return HttpCheckoutClient(settings.checkout_url, timeout=settings.checkout_timeout_seconds)
    return LocalCheckoutClient()
