"""Stripe checkout and webhook verification."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

import stripe

from config import require_stripe_secret_key, settings
from services.errors import InvalidPurchaseEventError, InvalidSignatureError, UpstreamFailureError

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"

CREDIT_PLANS: Dict[str, Dict[str, Any]] = {
    "free": {
        "name": "Free",
        "price": 0,
        "credits": 20,
        "inclusions": ["20 Free Credits", "Basic Access to Services"],
    },
    "pro": {
        "name": "Pro Package",
        "price": 40,
        "credits": 120,
        "inclusions": ["120 Credits", "Full Access to Services", "Priority Customer Support"],
    },
    "premium": {
        "name": "Premium Package",
        "price": 199,
        "credits": 2000,
        "inclusions": ["2000 Credits", "Full Access to Services", "Priority Updates"],
    },
}


def list_plans() -> List[Dict[str, Any]]:
    return [{"id": key, **plan} for key, plan in CREDIT_PLANS.items()]


def get_plan(plan_id: str) -> Dict[str, Any]:
    plan = CREDIT_PLANS.get(str(plan_id or "").strip().lower())
    if plan is None:
        raise ValueError(f"Unknown plan: {plan_id}")
    return plan


async def create_checkout_session(*, plan_id: str, buyer_id: str) -> Dict[str, str]:
    """Create a hosted Stripe Checkout session for a paid credit plan."""
    plan = get_plan(plan_id)
    if int(plan["price"]) <= 0:
        raise ValueError("The free plan does not require checkout.")

    api_key = require_stripe_secret_key()
    base_url = settings.APP_BASE_URL.rstrip("/")

    try:
        session = await asyncio.to_thread(
            stripe.checkout.Session.create,
            api_key=api_key,
            line_items=[
                {
                    "price_data": {
                        "currency": settings.STRIPE_CURRENCY,
                        "unit_amount": int(plan["price"]) * 100,
                        "product_data": {"name": plan["name"]},
                    },
                    "quantity": 1,
                }
            ],
            metadata={
                "plan": plan["name"],
                "credits": str(plan["credits"]),
                "buyerId": buyer_id,
            },
            mode="payment",
            success_url=f"{base_url}/profile",
            cancel_url=f"{base_url}/",
        )
    except stripe.StripeError as exc:
        logger.error("stripe_checkout_failed buyer=%s plan=%s error=%s", buyer_id, plan_id, exc)
        raise UpstreamFailureError("Payment session creation failed.", context={"provider": "stripe"}) from exc

    logger.info("stripe_checkout_created buyer=%s plan=%s session=%s", buyer_id, plan_id, session.id)
    return {"session_id": session.id, "checkout_url": session.url}


def verify_webhook_event(payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
    """Verify the Stripe signature over the raw body, then parse it."""
    secret = (settings.STRIPE_WEBHOOK_SECRET or "").strip()
    if not secret:
        raise InvalidSignatureError("Stripe webhook secret is not configured.")
    if not signature:
        raise InvalidSignatureError("Missing stripe-signature header.")

    try:
        body = payload.decode("utf-8")
        stripe.WebhookSignature.verify_header(
            body,
            signature,
            secret,
            tolerance=int(settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS),
        )
    except (UnicodeDecodeError, stripe.SignatureVerificationError) as exc:
        logger.warning("stripe_webhook_rejected reason=%s", exc)
        raise InvalidSignatureError("Invalid webhook signature.") from exc

    try:
        event = json.loads(body)
    except ValueError as exc:
        raise InvalidPurchaseEventError("Webhook body is not valid JSON.") from exc
    if not isinstance(event, dict):
        raise InvalidPurchaseEventError("Webhook body is not an event object.")
    return event
