"""
Marketplace Backend - Main FastAPI Application

REST endpoints for profiles, catalog, cart, checkout, orders, seller tools and
chat; websocket channels for live chat and seller notifications; and the two
function endpoints (seller notification fan-out, Stripe webhook).

The caller's identity arrives in the X-User-Id header, set by the upstream
identity provider.
"""

import asyncio
import logging
import os
import time as _time
import traceback
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import Depends, FastAPI, Header, Query, Request, WebSocket, WebSocketDisconnect, status
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from sqlalchemy import text
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request as StarletteRequest
from starlette.responses import Response as StarletteResponse

from marketplace import __version__, accounts, analytics, catalog, chat, checkout, notifications, orders
from marketplace.cart import CartService
from marketplace.core.config import get_config
from marketplace.database import get_db, init_db
from marketplace.errors import AuthenticationRequired, MarketplaceError, SignatureVerificationError, ValidationError
from marketplace.payments import StripeGateway, get_payment_gateway, handle_webhook
from marketplace.realtime import SELLER_NOTIFICATIONS, ChangeFeed, get_change_feed
from marketplace.schemas import (
    AddToCartRequest,
    CartLineOut,
    CartOut,
    CheckoutRequest,
    CheckoutResponse,
    CommentOut,
    ConversationOut,
    CreateCommentRequest,
    CreateProductRequest,
    CreateProfileRequest,
    ErrorDetail,
    ErrorResponse,
    LifetimeAnalyticsOut,
    MessageOut,
    NotificationListOut,
    NotificationOut,
    NotifySellersRequest,
    OrderOut,
    ProductOut,
    ProfileOut,
    SellerAnalyticsOut,
    SellerDashboardOut,
    SendMessageRequest,
    UpdateCartItemRequest,
    UpdateCommentRequest,
    UpdateOrderStatusRequest,
    UpdateProductRequest,
    UpdateProfileRequest,
)
from marketplace.utils.logger import get_logger, log_event

logger = get_logger("main")

FUNCTION_CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Create tables that do not exist yet. In production the schema is migrated
    ahead of deploys and this is a no-op.
    """
    try:
        init_db()
    except Exception as _e:
        logger.warning("Could not run create_all: %s. Tables should already exist.", _e)
    yield


# Initialize FastAPI application
app = FastAPI(
    title="Marketplace Backend",
    description="Multi-vendor marketplace: catalog, cart, checkout, seller tools and chat",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_config().cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class LatencyLoggingMiddleware(BaseHTTPMiddleware):
    """Logs every non-OPTIONS request with method, path, status and duration."""

    async def dispatch(self, request: StarletteRequest, call_next) -> StarletteResponse:
        if request.method == "OPTIONS":
            return await call_next(request)
        t0 = _time.perf_counter()
        response = await call_next(request)
        duration_ms = round((_time.perf_counter() - t0) * 1000, 1)
        logger.info("[LATENCY] %s %s -> %d  %.1fms", request.method, request.url.path, response.status_code, duration_ms)
        return response


app.add_middleware(LatencyLoggingMiddleware)


@app.exception_handler(MarketplaceError)
async def marketplace_error_handler(request: Request, exc: MarketplaceError):
    """Render service errors into the standard envelope."""
    body = ErrorResponse(
        status=exc.status,
        error=ErrorDetail(code=exc.code, message=exc.message, details=exc.details),
    )
    return JSONResponse(status_code=exc.http_status, content=body.model_dump(mode="json"))


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Log unhandled exceptions and return 500."""
    err_msg = str(exc)
    logger.error("Unhandled exception: %s\n%s", err_msg, traceback.format_exc())
    is_dev = os.getenv("ENV", "development").lower() in ("development", "dev", "")
    detail = err_msg if is_dev else "Internal server error"
    return JSONResponse(
        status_code=500,
        content={"detail": detail, "type": type(exc).__name__},
    )


#
# Dependencies
#

def get_current_user_id(x_user_id: Optional[str] = Header(None)) -> Optional[str]:
    """The signed-in user id, or None for anonymous callers."""
    return x_user_id or None


def require_user_id(user_id: Optional[str] = Depends(get_current_user_id)) -> str:
    if not user_id:
        raise AuthenticationRequired("Sign in required")
    return user_id


def require_seller_id(
    user_id: Optional[str] = Depends(get_current_user_id),
    db: Session = Depends(get_db),
) -> str:
    return accounts.require_seller(db, user_id).user_id


def get_cart_service(
    user_id: Optional[str] = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """One CartService per request, loaded on entry and closed afterwards."""
    with CartService(db, user_id) as cart:
        yield cart


def _cart_out(cart: CartService) -> CartOut:
    lines = [
        CartLineOut(
            id=item.id,
            product_id=item.product_id,
            quantity=item.quantity,
            product=ProductOut.model_validate(item.product),
            line_total=float(item.product.price * item.quantity),
        )
        for item in cart.items
        if item.product is not None
    ]
    return CartOut(items=lines, count=cart.count(), total=float(cart.total()))


def _products_out(products) -> List[ProductOut]:
    return [ProductOut.model_validate(p) for p in products]


#
# Health Check Endpoints
#

@app.get("/")
def root():
    return {
        "service": "Marketplace Backend",
        "version": __version__,
        "status": "operational",
    }


@app.get("/health")
def health_check(db: Session = Depends(get_db)):
    """Health check including database connectivity."""
    health_status = {"service": "healthy", "database": "unknown"}
    try:
        db.execute(text("SELECT 1"))
        health_status["database"] = "healthy"
    except Exception as e:
        logger.warning("Health check: database unreachable: %s", e)
        health_status["database"] = "unhealthy"
    return health_status


#
# Profiles
#

@app.post("/profiles", response_model=ProfileOut, status_code=201)
def create_profile(
    request: CreateProfileRequest,
    user_id: Optional[str] = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return accounts.create_profile(db, user_id, request.full_name, request.email, request.role)


@app.get("/profiles/me", response_model=ProfileOut)
def get_my_profile(user_id: str = Depends(require_user_id), db: Session = Depends(get_db)):
    return accounts.get_profile(db, user_id)


@app.patch("/profiles/me", response_model=ProfileOut)
def update_my_profile(
    request: UpdateProfileRequest,
    user_id: str = Depends(require_user_id),
    db: Session = Depends(get_db),
):
    return accounts.update_profile(db, user_id, request.full_name, request.email)


@app.get("/profiles/{profile_user_id}", response_model=ProfileOut)
def get_profile(profile_user_id: str, db: Session = Depends(get_db)):
    return accounts.get_profile(db, profile_user_id)


#
# Catalog
#

@app.get("/products", response_model=List[ProductOut])
def list_products(
    category: Optional[str] = None,
    q: Optional[str] = None,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
):
    return _products_out(catalog.list_products(db, category=category, search=q, limit=limit, offset=offset))


@app.get("/products/{product_id}", response_model=ProductOut)
def get_product(product_id: str, db: Session = Depends(get_db)):
    return ProductOut.model_validate(catalog.get_product(db, product_id))


@app.post("/products", response_model=ProductOut, status_code=201)
def create_product(
    request: CreateProductRequest,
    user_id: Optional[str] = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    product = catalog.create_product(
        db, user_id,
        name=request.name,
        price=request.price,
        stock_quantity=request.stock_quantity,
        description=request.description,
        category=request.category,
        image_url=request.image_url,
    )
    return ProductOut.model_validate(product)


@app.patch("/products/{product_id}", response_model=ProductOut)
def update_product(
    product_id: str,
    request: UpdateProductRequest,
    user_id: str = Depends(require_user_id),
    db: Session = Depends(get_db),
):
    product = catalog.update_product(db, user_id, product_id, **request.model_dump(exclude_none=True))
    return ProductOut.model_validate(product)


@app.delete("/products/{product_id}", status_code=204)
def delete_product(product_id: str, user_id: str = Depends(require_user_id), db: Session = Depends(get_db)):
    catalog.delete_product(db, user_id, product_id)
    return Response(status_code=204)


@app.get("/products/{product_id}/comments", response_model=List[CommentOut])
def list_comments(product_id: str, db: Session = Depends(get_db)):
    return [catalog.comment_to_dict(c) for c in catalog.list_comments(db, product_id)]


@app.post("/products/{product_id}/comments", response_model=CommentOut, status_code=201)
def create_comment(
    product_id: str,
    request: CreateCommentRequest,
    user_id: str = Depends(require_user_id),
    db: Session = Depends(get_db),
):
    comment = catalog.create_comment(db, user_id, product_id, request.content, request.rating)
    return catalog.comment_to_dict(comment)


@app.patch("/comments/{comment_id}", response_model=CommentOut)
def update_comment(
    comment_id: str,
    request: UpdateCommentRequest,
    user_id: str = Depends(require_user_id),
    db: Session = Depends(get_db),
):
    comment = catalog.update_comment(db, user_id, comment_id, request.content, request.rating)
    return catalog.comment_to_dict(comment)


@app.delete("/comments/{comment_id}", status_code=204)
def delete_comment(comment_id: str, user_id: str = Depends(require_user_id), db: Session = Depends(get_db)):
    catalog.delete_comment(db, user_id, comment_id)
    return Response(status_code=204)


#
# Cart
#

@app.get("/cart", response_model=CartOut)
def get_cart(cart: CartService = Depends(get_cart_service)):
    return _cart_out(cart)


@app.post("/cart/items", response_model=CartOut)
def add_to_cart(request: AddToCartRequest, cart: CartService = Depends(get_cart_service)):
    cart.add_item(request.product_id)
    return _cart_out(cart)


@app.patch("/cart/items/{product_id}", response_model=CartOut)
def update_cart_item(product_id: str, request: UpdateCartItemRequest, cart: CartService = Depends(get_cart_service)):
    cart.update_quantity(product_id, request.quantity)
    return _cart_out(cart)


@app.delete("/cart/items/{product_id}", response_model=CartOut)
def remove_cart_item(product_id: str, cart: CartService = Depends(get_cart_service)):
    cart.remove_item(product_id)
    return _cart_out(cart)


@app.delete("/cart", response_model=CartOut)
def clear_cart(cart: CartService = Depends(get_cart_service)):
    cart.clear()
    return _cart_out(cart)


#
# Checkout & orders
#

@app.post("/checkout", response_model=CheckoutResponse)
def place_order(
    request: CheckoutRequest,
    cart: CartService = Depends(get_cart_service),
    db: Session = Depends(get_db),
    feed: ChangeFeed = Depends(get_change_feed),
    gateway: StripeGateway = Depends(get_payment_gateway),
):
    if request.payment_method == "card":
        result = checkout.place_card_order(db, cart, request.shipping_address, gateway)
    else:
        result = checkout.place_cash_order(db, cart, request.shipping_address, feed)
    return CheckoutResponse(
        order=OrderOut(**orders.order_to_dict(result.order)),
        notifications_sent=result.notifications_sent,
        payment_url=result.payment_url,
    )


@app.get("/orders", response_model=List[OrderOut])
def list_my_orders(user_id: str = Depends(require_user_id), db: Session = Depends(get_db)):
    return [orders.order_to_dict(o) for o in orders.list_orders_for_buyer(db, user_id)]


@app.get("/orders/{order_id}", response_model=OrderOut)
def get_order(order_id: str, user_id: str = Depends(require_user_id), db: Session = Depends(get_db)):
    return orders.order_to_dict(orders.get_order(db, order_id, user_id))


@app.post("/orders/{order_id}/assign-driver", response_model=OrderOut)
def assign_driver(order_id: str, seller_id: str = Depends(require_seller_id), db: Session = Depends(get_db)):
    return orders.order_to_dict(orders.assign_driver(db, order_id, seller_id))


@app.post("/orders/{order_id}/status", response_model=OrderOut)
def update_order_status(
    order_id: str,
    request: UpdateOrderStatusRequest,
    user_id: str = Depends(require_user_id),
    db: Session = Depends(get_db),
):
    return orders.order_to_dict(orders.update_status(db, order_id, request.status, user_id))


#
# Seller tools
#

@app.get("/seller/products", response_model=List[ProductOut])
def list_my_products(seller_id: str = Depends(require_seller_id), db: Session = Depends(get_db)):
    return _products_out(catalog.list_seller_products(db, seller_id))


@app.get("/seller/orders", response_model=List[OrderOut])
def list_seller_orders(seller_id: str = Depends(require_seller_id), db: Session = Depends(get_db)):
    return [orders.order_to_dict(o) for o in orders.list_orders_for_seller(db, seller_id)]


@app.get("/seller/notifications", response_model=NotificationListOut)
def list_my_notifications(seller_id: str = Depends(require_seller_id), db: Session = Depends(get_db)):
    rows, unread = notifications.list_notifications(db, seller_id)
    return NotificationListOut(
        notifications=[NotificationOut.model_validate(n) for n in rows],
        unread_count=unread,
    )


@app.post("/seller/notifications/{notification_id}/read", response_model=NotificationOut)
def read_notification(notification_id: str, seller_id: str = Depends(require_seller_id), db: Session = Depends(get_db)):
    return NotificationOut.model_validate(notifications.mark_notification_read(db, notification_id, seller_id))


@app.get("/seller/analytics", response_model=SellerAnalyticsOut)
def seller_analytics(
    time_range: str = Query("30d"),
    seller_id: str = Depends(require_seller_id),
    db: Session = Depends(get_db),
):
    return analytics.get_seller_analytics(db, seller_id, time_range)


@app.get("/seller/analytics/lifetime", response_model=LifetimeAnalyticsOut)
def seller_lifetime_analytics(seller_id: str = Depends(require_seller_id), db: Session = Depends(get_db)):
    return analytics.get_lifetime_analytics(db, seller_id)


@app.get("/seller/dashboard", response_model=SellerDashboardOut)
def seller_dashboard(seller_id: str = Depends(require_seller_id), db: Session = Depends(get_db)):
    summary = analytics.seller_dashboard(db, seller_id)
    return SellerDashboardOut(
        products=_products_out(summary["products"]),
        total_revenue=summary["total_revenue"],
        total_orders=summary["total_orders"],
        low_stock_products=_products_out(summary["low_stock_products"]),
    )


#
# Messages
#

@app.get("/messages/conversations", response_model=List[ConversationOut])
def list_conversations(user_id: str = Depends(require_user_id), db: Session = Depends(get_db)):
    return chat.list_conversations(db, user_id)


@app.get("/messages/{partner_id}", response_model=List[MessageOut])
def get_conversation(
    partner_id: str,
    product_id: Optional[str] = None,
    user_id: str = Depends(require_user_id),
    db: Session = Depends(get_db),
):
    history = chat.load_history(db, user_id, partner_id, product_id)
    chat.mark_conversation_read(db, user_id, partner_id)
    return [chat.message_to_dict(m) for m in history]


@app.post("/messages", response_model=MessageOut, status_code=201)
def send_message(
    request: SendMessageRequest,
    user_id: str = Depends(require_user_id),
    db: Session = Depends(get_db),
    feed: ChangeFeed = Depends(get_change_feed),
):
    message = chat.send_message(
        db, user_id, request.receiver_id, request.content,
        product_id=request.product_id, order_id=request.order_id, feed=feed,
    )
    return chat.message_to_dict(message)


@app.post("/messages/{message_id}/read", response_model=MessageOut)
def read_message(message_id: str, user_id: str = Depends(require_user_id), db: Session = Depends(get_db)):
    return chat.message_to_dict(chat.mark_read(db, message_id, user_id))


#
# Function endpoints
#

@app.options("/functions/notify-sellers")
def notify_sellers_preflight():
    return Response(status_code=200, headers=FUNCTION_CORS_HEADERS)


@app.post("/functions/notify-sellers")
def notify_sellers(
    request: NotifySellersRequest,
    db: Session = Depends(get_db),
    feed: ChangeFeed = Depends(get_change_feed),
):
    """Create one notification per seller in the order. Safe to call again."""
    try:
        sent = notifications.dispatch_seller_notifications(db, request.order_id, feed)
    except ValidationError as e:
        return JSONResponse(status_code=400, content={"error": e.message}, headers=FUNCTION_CORS_HEADERS)
    except Exception as e:
        log_event(logger, "functions", "notify_sellers", level=logging.ERROR, order_id=request.order_id, result="error", error=e)
        return JSONResponse(status_code=500, content={"error": str(e)}, headers=FUNCTION_CORS_HEADERS)
    return JSONResponse(
        status_code=200,
        content={"success": True, "notifications_sent": sent},
        headers=FUNCTION_CORS_HEADERS,
    )


@app.post("/functions/webhook-stripe")
async def webhook_stripe(
    request: Request,
    db: Session = Depends(get_db),
    feed: ChangeFeed = Depends(get_change_feed),
):
    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    secret = get_config().stripe_webhook_secret
    try:
        await run_in_threadpool(handle_webhook, db, payload, signature, secret, feed)
    except SignatureVerificationError as e:
        log_event(logger, "functions", "webhook_stripe", level=logging.WARNING, result="rejected", error=e)
        return PlainTextResponse("Webhook signature verification failed", status_code=400)
    except Exception as e:
        log_event(logger, "functions", "webhook_stripe", level=logging.ERROR, result="error", error=e)
        return PlainTextResponse("Webhook error", status_code=500)
    return PlainTextResponse("Webhook handled successfully", status_code=200)


#
# Realtime
#

def _threadsafe_put(loop: asyncio.AbstractEventLoop, queue: "asyncio.Queue[Dict[str, Any]]"):
    """Callback that hands feed rows from any thread to the websocket's event loop."""
    def put(row: Dict[str, Any]) -> None:
        loop.call_soon_threadsafe(queue.put_nowait, row)
    return put


async def _forward(websocket: WebSocket, queue: "asyncio.Queue[Dict[str, Any]]", key: str) -> None:
    while True:
        row = await queue.get()
        await websocket.send_json({"type": "insert", key: jsonable_encoder(row)})


@app.websocket("/realtime/messages/{partner_id}")
async def messages_socket(
    websocket: WebSocket,
    partner_id: str,
    product_id: Optional[str] = None,
    db: Session = Depends(get_db),
    feed: ChangeFeed = Depends(get_change_feed),
):
    user_id = websocket.headers.get("x-user-id")
    if not user_id:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    await websocket.accept()

    queue: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue()
    conversation = chat.Conversation(
        db, feed, user_id, partner_id, product_id,
        on_message=_threadsafe_put(asyncio.get_running_loop(), queue),
    )
    history = await run_in_threadpool(conversation.open)
    await websocket.send_json({"type": "history", "messages": jsonable_encoder(history)})
    forwarder = asyncio.create_task(_forward(websocket, queue, "message"))
    try:
        while True:
            frame = await websocket.receive_json()
            try:
                await run_in_threadpool(conversation.send, frame.get("content", ""))
            except MarketplaceError as e:
                await websocket.send_json({"type": "error", "error": {"code": e.code, "message": e.message}})
    except WebSocketDisconnect:
        log_event(logger, "realtime", "messages_socket", user_id=user_id, partner_id=partner_id, result="disconnected")
    finally:
        forwarder.cancel()
        conversation.close()


@app.websocket("/realtime/notifications")
async def notifications_socket(
    websocket: WebSocket,
    db: Session = Depends(get_db),
    feed: ChangeFeed = Depends(get_change_feed),
):
    user_id = websocket.headers.get("x-user-id")
    profile = await run_in_threadpool(accounts.find_profile, db, user_id) if user_id else None
    if profile is None or not profile.is_seller:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    await websocket.accept()

    queue: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue()
    subscription = feed.subscribe(
        SELLER_NOTIFICATIONS,
        lambda row: row.get("seller_id") == user_id,
        _threadsafe_put(asyncio.get_running_loop(), queue),
    )
    forwarder = asyncio.create_task(_forward(websocket, queue, "notification"))
    try:
        while True:
            # Client frames are ignored; receiving detects the disconnect.
            await websocket.receive_text()
    except WebSocketDisconnect:
        log_event(logger, "realtime", "notifications_socket", user_id=user_id, result="disconnected")
    finally:
        forwarder.cancel()
        feed.unsubscribe(subscription)


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8001")))
