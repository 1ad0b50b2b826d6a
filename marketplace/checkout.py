"""
Checkout: turn the signed-in user's cart into an order.

Cash orders are written in one transaction (order, items with the price
snapshot, stock decrement, seller analytics, cart clear) and the sellers are
notified right after the commit. Card orders lock and price the products,
open a Stripe Checkout session for that exact total and write the order in the
same transaction; seller notification waits for the payment webhook.
"""

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from marketplace.analytics import record_order_item_sale
from marketplace.cart import CartService
from marketplace.core.config import get_config
from marketplace.database import transaction
from marketplace.errors import AuthenticationRequired, OutOfStockError, ValidationError
from marketplace.models import PAYMENT_CARD, PAYMENT_CASH, CartItem, Order, OrderItem, Product, new_id
from marketplace.notifications import dispatch_seller_notifications
from marketplace.orders import PENDING
from marketplace.payments import StripeGateway
from marketplace.realtime import ChangeFeed
from marketplace.utils.logger import get_logger, log_event

logger = get_logger("checkout")


@dataclass
class CheckoutResult:
    order: Order
    notifications_sent: int = 0
    payment_url: Optional[str] = None


def _validate(cart: CartService, shipping_address: Optional[str]) -> str:
    if not cart.user_id:
        raise AuthenticationRequired("Sign in to check out")
    address = (shipping_address or "").strip()
    if not address:
        raise ValidationError("Shipping address is required")
    cart.load()
    if not cart.items:
        raise ValidationError("Cart is empty")
    return address


def _lock_products(db: Session, lines: List[CartItem]) -> Dict[str, Product]:
    ids = [line.product_id for line in lines]
    # FOR UPDATE on Postgres; SQLite serializes writers anyway
    products = db.query(Product).filter(Product.id.in_(ids)).with_for_update().all()
    return {p.id: p for p in products}


def check_stock(products: Dict[str, Product], lines: List[CartItem]) -> None:
    sold_out = [
        line.product_id
        for line in lines
        if line.product_id not in products or products[line.product_id].stock_quantity < line.quantity
    ]
    if sold_out:
        log_event(logger, "checkout", "check_stock", level=logging.WARNING,
                  result="out_of_stock", product_ids=",".join(sold_out))
        raise OutOfStockError(sold_out)


def order_total(products: Dict[str, Product], lines: List[CartItem]) -> Decimal:
    return sum((Decimal(products[line.product_id].price) * line.quantity for line in lines), Decimal("0"))


def cents(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _lock_and_price(db: Session, lines: List[CartItem]):
    products = _lock_products(db, lines)
    check_stock(products, lines)
    return products, order_total(products, lines)


def _write_order(
    db: Session,
    user_id: str,
    lines: List[CartItem],
    products: Dict[str, Product],
    total: Decimal,
    shipping_address: str,
    payment_method: str,
    order_id: Optional[str] = None,
    stripe_session_id: Optional[str] = None,
) -> Order:
    """Write the order and everything that goes with it. Caller owns the transaction and the locks."""
    order = Order(
        id=order_id or new_id(),
        user_id=user_id,
        total_amount=total,
        status=PENDING,
        shipping_address=shipping_address,
        payment_method=payment_method,
        stripe_session_id=stripe_session_id,
        driver_assigned=False,
    )
    db.add(order)
    db.flush()

    for line in lines:
        product = products[line.product_id]
        item = OrderItem(
            order_id=order.id,
            product_id=product.id,
            quantity=line.quantity,
            price=Decimal(product.price),
        )
        item.product = product
        db.add(item)
        product.stock_quantity = product.stock_quantity - line.quantity
        db.flush()
        record_order_item_sale(db, item)

    db.query(CartItem).filter(CartItem.user_id == user_id).delete(synchronize_session=False)
    return order


def place_cash_order(
    db: Session,
    cart: CartService,
    shipping_address: Optional[str],
    feed: Optional[ChangeFeed] = None,
) -> CheckoutResult:
    address = _validate(cart, shipping_address)
    user_id = cart.user_id
    lines = list(cart.items)
    log_event(logger, "checkout", "place_cash_order", user_id=user_id, lines=len(lines))

    with transaction(db):
        products, total = _lock_and_price(db, lines)
        order = _write_order(db, user_id, lines, products, total, address, PAYMENT_CASH)
    order_id = order.id
    log_event(logger, "checkout", "place_cash_order", user_id=user_id, order_id=order_id, result="success")

    try:
        sent = dispatch_seller_notifications(db, order_id, feed)
    except Exception as e:
        # The order stands; notify-sellers can be re-run for it.
        log_event(logger, "checkout", "place_cash_order", level=logging.ERROR,
                  order_id=order_id, dispatch="failed", error=e)
        sent = 0

    cart.load()
    db.refresh(order)
    return CheckoutResult(order=order, notifications_sent=sent)


def place_card_order(
    db: Session,
    cart: CartService,
    shipping_address: Optional[str],
    gateway: StripeGateway,
) -> CheckoutResult:
    """
    Open a checkout session for the locked order total, then write the pending
    order with the session id. Stock or gateway failures leave the cart, stock
    and orders untouched, and no session is opened for an order that cannot be
    written.
    """
    address = _validate(cart, shipping_address)
    user_id = cart.user_id
    lines = list(cart.items)
    config = get_config()
    order_id = new_id()

    with transaction(db):
        products, total = _lock_and_price(db, lines)
        session = gateway.create_checkout_session(
            amount_cents=cents(total),
            currency=config.currency,
            reference=order_id,
            success_url=config.payment_success_url,
            cancel_url=config.payment_cancel_url,
        )
        order = _write_order(
            db, user_id, lines, products, total, address, PAYMENT_CARD,
            order_id=order_id, stripe_session_id=session.id,
        )
    log_event(logger, "checkout", "place_card_order",
              user_id=user_id, order_id=order_id, session_id=session.id, result="success")

    cart.load()
    db.refresh(order)
    return CheckoutResult(order=order, notifications_sent=0, payment_url=session.url)
