"""
Integration tests for the HTTP API.

Tests verify:
- Schema strictness (Pydantic extra="forbid")
- Error envelope for service errors
- Function endpoints (notify-sellers, CORS preflight)
- Websocket channels
- End-to-end flow: add to cart -> update quantity -> checkout -> seller notified
"""

import pytest
from starlette.websockets import WebSocketDisconnect

from conftest import STRIPE_SESSION_URL, make_order, make_product
from marketplace import chat
from marketplace.models import Order, OrderItem, SellerNotification


def _as(user):
    return {"X-User-Id": user.user_id}


def test_root(client):
    resp = client.get("/")
    assert resp.status_code == 200
    assert resp.json()["status"] == "operational"


def test_health(client):
    assert client.get("/health").json()["database"] == "healthy"


#
# Schema strictness and envelopes
#

def test_extra_fields_rejected(client, buyer, seller, db):
    product = make_product(db, seller.user_id)
    resp = client.post("/cart/items", json={"product_id": product.id, "quantity": 5}, headers=_as(buyer))
    assert resp.status_code == 422


def test_cart_requires_sign_in(client, seller, db):
    product = make_product(db, seller.user_id)
    resp = client.post("/cart/items", json={"product_id": product.id})
    assert resp.status_code == 401
    body = resp.json()
    assert body["status"] == "UNAUTHORIZED"
    assert body["error"]["code"] == "AUTHENTICATION_REQUIRED"


def test_unknown_product_is_not_found(client, buyer):
    resp = client.post("/cart/items", json={"product_id": "missing"}, headers=_as(buyer))
    assert resp.status_code == 404
    assert resp.json()["status"] == "NOT_FOUND"


def test_comment_rating_validated(client, buyer, seller, db):
    product = make_product(db, seller.user_id)
    resp = client.post(f"/products/{product.id}/comments", json={"content": "wow", "rating": 6}, headers=_as(buyer))
    assert resp.status_code == 422


def test_profile_and_product_routes(client):
    seller_headers = {"X-User-Id": "s-http"}
    assert client.post("/profiles", json={"full_name": "Sid", "role": "seller"}, headers=seller_headers).status_code == 201
    assert client.get("/profiles/me", headers=seller_headers).json()["role"] == "seller"

    resp = client.post("/products", json={"name": "Kettle", "price": "24.50", "stock_quantity": 4}, headers=seller_headers)
    assert resp.status_code == 201
    product = resp.json()
    assert product["price"] == 24.5

    listed = client.get("/products", params={"q": "kett"}).json()
    assert [p["id"] for p in listed] == [product["id"]]

    buyer_headers = {"X-User-Id": "b-http"}
    client.post("/profiles", json={}, headers=buyer_headers)
    resp = client.patch(f"/products/{product['id']}", json={"price": "1.00"}, headers=buyer_headers)
    assert resp.status_code == 403
    assert resp.json()["status"] == "FORBIDDEN"


def test_out_of_stock_checkout(client, buyer, seller, db):
    product = make_product(db, seller.user_id, stock=1)
    client.post("/cart/items", json={"product_id": product.id}, headers=_as(buyer))
    client.patch(f"/cart/items/{product.id}", json={"quantity": 2}, headers=_as(buyer))

    resp = client.post("/checkout", json={"shipping_address": "1 Road"}, headers=_as(buyer))

    assert resp.status_code == 409
    body = resp.json()
    assert body["status"] == "OUT_OF_STOCK"
    assert body["error"]["details"] == {"sold_out": [product.id]}


def test_card_checkout_returns_payment_url(client, buyer, seller, db):
    product = make_product(db, seller.user_id)
    client.post("/cart/items", json={"product_id": product.id}, headers=_as(buyer))

    resp = client.post("/checkout", json={"shipping_address": "1 Road", "payment_method": "card"}, headers=_as(buyer))

    assert resp.status_code == 200
    body = resp.json()
    assert body["payment_url"] == STRIPE_SESSION_URL
    assert body["order"]["payment_method"] == "card"
    assert body["notifications_sent"] == 0


def test_seller_routes_require_seller(client, buyer):
    resp = client.get("/seller/analytics", headers=_as(buyer))
    assert resp.status_code == 403


def test_seller_analytics_route(client, seller, buyer, db):
    product = make_product(db, seller.user_id, price="5.00")
    make_order(db, buyer.user_id, [(product, 2)])

    resp = client.get("/seller/analytics", params={"time_range": "7d"}, headers=_as(seller))

    assert resp.status_code == 200
    body = resp.json()
    assert body["total_revenue"] == 10.0
    assert len(body["revenue_by_day"]) == 7

    assert client.get("/seller/analytics", params={"time_range": "1y"}, headers=_as(seller)).status_code == 400


def test_order_status_route_only_accepts_caller_statuses(client, buyer, seller, db):
    product = make_product(db, seller.user_id)
    order = make_order(db, buyer.user_id, [(product, 1)])

    resp = client.post(f"/orders/{order.id}/status", json={"status": "paid"}, headers=_as(seller))
    assert resp.status_code == 422

    resp = client.post(f"/orders/{order.id}/status", json={"status": "cancelled"}, headers=_as(buyer))
    assert resp.status_code == 200
    assert resp.json()["status"] == "cancelled"


def test_message_routes(client, buyer, seller):
    resp = client.post("/messages", json={"receiver_id": seller.user_id, "content": "Hi"}, headers=_as(buyer))
    assert resp.status_code == 201
    message_id = resp.json()["id"]

    assert client.post(f"/messages/{message_id}/read", headers=_as(buyer)).status_code == 403
    assert client.post(f"/messages/{message_id}/read", headers=_as(seller)).json()["read"] is True

    conversations = client.get("/messages/conversations", headers=_as(seller)).json()
    assert conversations[0]["user_id"] == buyer.user_id


#
# Function endpoints
#

def test_notify_sellers(client, buyer, seller, db):
    product = make_product(db, seller.user_id)
    order = make_order(db, buyer.user_id, [(product, 1)])

    resp = client.post("/functions/notify-sellers", json={"order_id": order.id})
    assert resp.status_code == 200
    assert resp.json() == {"success": True, "notifications_sent": 1}
    assert resp.headers["access-control-allow-origin"] == "*"

    again = client.post("/functions/notify-sellers", json={"order_id": order.id})
    assert again.json() == {"success": True, "notifications_sent": 0}


def test_notify_sellers_missing_order_id(client):
    resp = client.post("/functions/notify-sellers", json={})
    assert resp.status_code == 400
    assert resp.json() == {"error": "Order ID is required"}


def test_notify_sellers_unknown_order(client):
    resp = client.post("/functions/notify-sellers", json={"order_id": "missing"})
    assert resp.status_code == 500
    assert "error" in resp.json()


def test_notify_sellers_preflight(client):
    resp = client.options("/functions/notify-sellers")
    assert resp.status_code == 200
    assert resp.headers["access-control-allow-origin"] == "*"
    assert resp.headers["access-control-allow-headers"] == "authorization, x-client-info, apikey, content-type"


#
# Websockets
#

def test_message_socket_history_and_send(client, buyer, seller):
    client.post("/messages", json={"receiver_id": buyer.user_id, "content": "Hello buyer"}, headers=_as(seller))

    with client.websocket_connect(f"/realtime/messages/{seller.user_id}", headers=_as(buyer)) as ws:
        history = ws.receive_json()
        assert history["type"] == "history"
        assert [m["content"] for m in history["messages"]] == ["Hello buyer"]

        ws.send_json({"content": "Hello seller"})
        frame = ws.receive_json()
        assert frame["type"] == "insert"
        assert frame["message"]["content"] == "Hello seller"
        assert frame["message"]["sender_id"] == buyer.user_id


def test_message_socket_sends_message_arriving_during_open_once(client, buyer, seller, feed, monkeypatch):
    load_history = chat.load_history

    def load_after_live_send(db, *args, **kwargs):
        chat.send_message(db, seller.user_id, buyer.user_id, "mid-open", feed=feed)
        return load_history(db, *args, **kwargs)

    monkeypatch.setattr(chat, "load_history", load_after_live_send)

    with client.websocket_connect(f"/realtime/messages/{seller.user_id}", headers=_as(buyer)) as ws:
        history = ws.receive_json()
        assert [m["content"] for m in history["messages"]] == ["mid-open"]

        ws.send_json({"content": "next"})
        frame = ws.receive_json()
        assert frame["type"] == "insert"
        assert frame["message"]["content"] == "next"


def test_message_socket_reports_invalid_message(client, buyer, seller):
    with client.websocket_connect(f"/realtime/messages/{seller.user_id}", headers=_as(buyer)) as ws:
        ws.receive_json()
        ws.send_json({"content": "   "})
        frame = ws.receive_json()
        assert frame["type"] == "error"
        assert frame["error"]["code"] == "VALIDATION_FAILED"


def test_message_socket_requires_user(client, seller):
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect(f"/realtime/messages/{seller.user_id}") as ws:
            ws.receive_json()


def test_notification_socket_requires_seller(client, buyer):
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/realtime/notifications", headers=_as(buyer)) as ws:
            ws.receive_json()


#
# End-to-end
#

def test_end_to_end_purchase(client, buyer, seller, db):
    product = make_product(db, seller.user_id, name="Teapot", price="10.00", stock=10)
    headers = _as(buyer)

    cart = client.post("/cart/items", json={"product_id": product.id}, headers=headers).json()
    assert cart["total"] == 10.0
    assert cart["count"] == 1

    cart = client.patch(f"/cart/items/{product.id}", json={"quantity": 3}, headers=headers).json()
    assert cart["total"] == 30.0

    resp = client.post("/checkout", json={"shipping_address": "123 Main St"}, headers=headers)
    assert resp.status_code == 200
    body = resp.json()
    assert body["order"]["total_amount"] == 30.0
    assert body["order"]["shipping_address"] == "123 Main St"
    assert body["notifications_sent"] == 1

    assert client.get("/cart", headers=headers).json() == {"items": [], "count": 0, "total": 0.0}

    db.expire_all()
    order = db.query(Order).one()
    (item,) = db.query(OrderItem).filter_by(order_id=order.id).all()
    assert (item.product_id, item.quantity, float(item.price)) == (product.id, 3, 10.0)
    notifications = db.query(SellerNotification).all()
    assert [n.seller_id for n in notifications] == [seller.user_id]

    inbox = client.get("/seller/notifications", headers=_as(seller)).json()
    assert inbox["unread_count"] == 1

    history = client.get("/orders", headers=headers).json()
    assert [o["id"] for o in history] == [order.id]
