"""
Card payments through Stripe Checkout.

The service never sees card data. For a card order it creates a hosted
checkout session and sends the buyer to its URL; Stripe later calls the
webhook with a signed `checkout.session.completed` event, which marks the
order paid and notifies the sellers.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import stripe
from sqlalchemy.orm import Session

from marketplace.core.config import get_config
from marketplace.database import transaction
from marketplace.errors import NotFoundError, PaymentError, SignatureVerificationError
from marketplace.models import Order
from marketplace.notifications import dispatch_seller_notifications
from marketplace.orders import CANCELLED, PAID, STATUS_RANK, advance_status
from marketplace.realtime import ChangeFeed
from marketplace.utils.logger import get_logger, log_event

logger = get_logger("payments")

CHECKOUT_COMPLETED = "checkout.session.completed"


@dataclass
class PaymentSession:
    id: str
    url: str


class StripeGateway:
    """Opens Stripe Checkout sessions with the configured secret key."""

    def __init__(self, secret_key: str, api_base: Optional[str] = None) -> None:
        self.secret_key = secret_key
        if api_base:
            stripe.api_base = api_base

    def create_checkout_session(
        self,
        amount_cents: int,
        currency: str,
        reference: str,
        success_url: str,
        cancel_url: str,
        description: str = "Marketplace order",
    ) -> PaymentSession:
        if not self.secret_key:
            raise PaymentError("Payment processor is not configured")
        log_event(logger, "payments", "create_checkout_session",
                  reference=reference, amount_cents=amount_cents, currency=currency)
        try:
            session = stripe.checkout.Session.create(
                api_key=self.secret_key,
                idempotency_key=reference,
                mode="payment",
                success_url=success_url,
                cancel_url=cancel_url,
                client_reference_id=reference,
                metadata={"order_id": reference},
                line_items=[{
                    "quantity": 1,
                    "price_data": {
                        "currency": currency,
                        "unit_amount": amount_cents,
                        "product_data": {"name": description},
                    },
                }],
            )
        except stripe.StripeError as e:
            log_event(logger, "payments", "create_checkout_session", level=logging.ERROR,
                      reference=reference, result="error", status=e.http_status, error=e.user_message or str(e))
            raise PaymentError("Payment processor rejected the request", details={"status": e.http_status}) from e

        if not session.id or not session.url:
            raise PaymentError("Payment processor returned an incomplete session")
        log_event(logger, "payments", "create_checkout_session",
                  reference=reference, result="success", session_id=session.id)
        return PaymentSession(id=session.id, url=session.url)


_gateway: Optional[StripeGateway] = None


def get_payment_gateway() -> StripeGateway:
    """FastAPI dependency returning the process-wide gateway."""
    global _gateway
    if _gateway is None:
        config = get_config()
        _gateway = StripeGateway(config.stripe_secret_key, config.stripe_api_base)
    return _gateway


def verify_webhook_signature(
    payload: bytes,
    signature_header: Optional[str],
    secret: str,
    tolerance: Optional[int] = None,
) -> Dict[str, Any]:
    """Check the Stripe-Signature header and return the decoded event."""
    if not secret:
        raise SignatureVerificationError("Webhook secret is not configured")
    if not signature_header:
        raise SignatureVerificationError("Missing signature header")
    tolerance = get_config().webhook_tolerance_seconds if tolerance is None else tolerance
    try:
        return stripe.Webhook.construct_event(payload, signature_header, secret, tolerance=tolerance)
    except stripe.SignatureVerificationError as e:
        raise SignatureVerificationError(str(e)) from e
    except ValueError as e:
        raise SignatureVerificationError("Payload is not valid JSON") from e


def handle_webhook(
    db: Session,
    payload: bytes,
    signature_header: Optional[str],
    secret: str,
    feed: Optional[ChangeFeed] = None,
) -> str:
    """
    Verify and apply one webhook event. Returns the event type.

    Raises SignatureVerificationError for a bad signature and NotFoundError when
    no order matches the session; neither changes any state.
    """
    event = verify_webhook_signature(payload, signature_header, secret)
    event_type = event["type"]
    log_event(logger, "payments", "handle_webhook", event_type=event_type, event_id=event.get("id"))

    if event_type != CHECKOUT_COMPLETED:
        log_event(logger, "payments", "handle_webhook", event_type=event_type, result="ignored")
        return event_type

    session = event["data"]["object"]
    session_id = session.get("id")
    order = db.query(Order).filter(Order.stripe_session_id == session_id).first() if session_id else None
    if order is None:
        log_event(logger, "payments", "handle_webhook", level=logging.ERROR,
                  session_id=session_id, result="error", error="order_not_found")
        raise NotFoundError(f"No order for checkout session {session_id}")

    if order.status == CANCELLED:
        # Refunds are handled in the Stripe dashboard
        log_event(logger, "payments", "handle_webhook", level=logging.WARNING,
                  order_id=order.id, result="ignored", reason="cancelled")
        return event_type
    if STATUS_RANK.get(order.status, -1) >= STATUS_RANK[PAID]:
        log_event(logger, "payments", "handle_webhook", order_id=order.id, result="already_paid")
    else:
        with transaction(db):
            advance_status(order, PAID)
        log_event(logger, "payments", "handle_webhook", order_id=order.id, result="paid")

    try:
        dispatch_seller_notifications(db, order.id, feed)
    except Exception as e:
        log_event(logger, "payments", "handle_webhook", level=logging.ERROR,
                  order_id=order.id, dispatch="failed", error=e)
    return event_type
