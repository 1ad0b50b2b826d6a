"""
Tests for the Stripe gateway and the payment webhook.

Tests verify:
- Stripe-Signature headers are checked (secret, timestamp tolerance)
- checkout.session.completed marks the order paid and notifies sellers once
- failures leave the order untouched
- Stripe SDK errors surface as PaymentError
"""

import json
import time

import pytest
import stripe

from conftest import STRIPE_SESSION_ID, STRIPE_SESSION_URL, WEBHOOK_SECRET, make_order, make_product, sign_payload
from marketplace.errors import NotFoundError, PaymentError, SignatureVerificationError
from marketplace.models import Order, SellerNotification
from marketplace.payments import StripeGateway, handle_webhook, verify_webhook_signature


def _event(session_id=STRIPE_SESSION_ID, event_type="checkout.session.completed"):
    return json.dumps({
        "id": "evt_1",
        "type": event_type,
        "data": {"object": {"id": session_id, "object": "checkout.session"}},
    }).encode()


@pytest.fixture
def card_order(db, buyer, seller):
    lamp = make_product(db, seller.user_id, name="Lamp", price="10.00")
    order = make_order(db, buyer.user_id, [(lamp, 2)])
    order.payment_method = "card"
    order.stripe_session_id = STRIPE_SESSION_ID
    db.commit()
    return order


#
# Signatures
#

def test_valid_signature_returns_event():
    payload = _event()
    event = verify_webhook_signature(payload, sign_payload(payload, WEBHOOK_SECRET), WEBHOOK_SECRET)
    assert event["type"] == "checkout.session.completed"


def test_wrong_secret_rejected():
    payload = _event()
    with pytest.raises(SignatureVerificationError):
        verify_webhook_signature(payload, sign_payload(payload, "whsec_other"), WEBHOOK_SECRET)


def test_tampered_payload_rejected():
    header = sign_payload(_event(), WEBHOOK_SECRET)
    with pytest.raises(SignatureVerificationError):
        verify_webhook_signature(_event(session_id="cs_other"), header, WEBHOOK_SECRET)


def test_stale_timestamp_rejected():
    payload = _event()
    header = sign_payload(payload, WEBHOOK_SECRET, timestamp=int(time.time()) - 301)
    with pytest.raises(SignatureVerificationError):
        verify_webhook_signature(payload, header, WEBHOOK_SECRET)


@pytest.mark.parametrize("header", [None, "", "t=abc,v1=00", "v1=deadbeef", "t=1700000000"])
def test_malformed_header_rejected(header):
    with pytest.raises(SignatureVerificationError):
        verify_webhook_signature(_event(), header, WEBHOOK_SECRET)


#
# Webhook handling
#

def test_completed_session_marks_paid_and_notifies(db, feed, card_order, seller):
    payload = _event()
    handle_webhook(db, payload, sign_payload(payload, WEBHOOK_SECRET), WEBHOOK_SECRET, feed)

    db.expire_all()
    assert db.get(Order, card_order.id).status == "paid"
    assert db.query(SellerNotification).filter_by(seller_id=seller.user_id).count() == 1


def test_redelivery_is_noop(db, card_order):
    payload = _event()
    for _ in range(2):
        handle_webhook(db, payload, sign_payload(payload, WEBHOOK_SECRET), WEBHOOK_SECRET)

    db.expire_all()
    assert db.get(Order, card_order.id).status == "paid"
    assert db.query(SellerNotification).count() == 1


def test_cancelled_order_is_left_alone(db, card_order):
    card_order.status = "cancelled"
    db.commit()
    payload = _event()

    handle_webhook(db, payload, sign_payload(payload, WEBHOOK_SECRET), WEBHOOK_SECRET)

    db.expire_all()
    assert db.get(Order, card_order.id).status == "cancelled"
    assert db.query(SellerNotification).count() == 0


def test_unknown_session_changes_nothing(db, card_order):
    payload = _event(session_id="cs_unknown")
    with pytest.raises(NotFoundError):
        handle_webhook(db, payload, sign_payload(payload, WEBHOOK_SECRET), WEBHOOK_SECRET)

    db.expire_all()
    assert db.get(Order, card_order.id).status == "pending"
    assert db.query(SellerNotification).count() == 0


def test_other_events_acknowledged(db, card_order):
    payload = _event(event_type="payment_intent.created")
    assert handle_webhook(db, payload, sign_payload(payload, WEBHOOK_SECRET), WEBHOOK_SECRET) == "payment_intent.created"
    db.expire_all()
    assert db.get(Order, card_order.id).status == "pending"


def test_bad_signature_changes_nothing(db, card_order):
    with pytest.raises(SignatureVerificationError):
        handle_webhook(db, _event(), "t=1,v1=bad", WEBHOOK_SECRET)
    db.expire_all()
    assert db.get(Order, card_order.id).status == "pending"


#
# HTTP
#

def _post_webhook(client, payload, header):
    return client.post(
        "/functions/webhook-stripe",
        content=payload,
        headers={"stripe-signature": header, "content-type": "application/json"},
    )


def test_webhook_endpoint_success(client, db, card_order):
    payload = _event()
    resp = _post_webhook(client, payload, sign_payload(payload, WEBHOOK_SECRET))
    assert resp.status_code == 200
    assert resp.text == "Webhook handled successfully"
    db.expire_all()
    assert db.get(Order, card_order.id).status == "paid"


def test_webhook_endpoint_bad_signature(client, card_order):
    resp = _post_webhook(client, _event(), "t=1,v1=bad")
    assert resp.status_code == 400
    assert resp.text == "Webhook signature verification failed"


def test_webhook_endpoint_unknown_order(client, card_order):
    payload = _event(session_id="cs_unknown")
    resp = _post_webhook(client, payload, sign_payload(payload, WEBHOOK_SECRET))
    assert resp.status_code == 500
    assert resp.text == "Webhook error"


#
# Stripe gateway
#

def test_gateway_creates_session(stripe_stub):
    session = StripeGateway("sk_test").create_checkout_session(1250, "usd", "order-1", "https://ok", "https://cancel")

    assert (session.id, session.url) == (STRIPE_SESSION_ID, STRIPE_SESSION_URL)
    (params,) = stripe_stub.calls
    assert params["api_key"] == "sk_test"
    assert params["client_reference_id"] == "order-1"
    assert params["line_items"][0]["price_data"]["unit_amount"] == 1250


@pytest.mark.parametrize("error", [
    stripe.APIConnectionError("connection refused"),
    stripe.InvalidRequestError("Invalid currency", "currency", http_status=400),
])
def test_gateway_errors_are_payment_errors(stripe_stub, error):
    stripe_stub.error = error
    with pytest.raises(PaymentError):
        StripeGateway("sk_test").create_checkout_session(1000, "usd", "ref", "https://ok", "https://cancel")


def test_gateway_requires_secret_key(stripe_stub):
    with pytest.raises(PaymentError):
        StripeGateway("").create_checkout_session(1000, "usd", "ref", "https://ok", "https://cancel")
    assert stripe_stub.calls == []
