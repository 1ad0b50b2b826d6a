"""
Seller notification dispatch.

After an order is placed (cash) or paid (card), every seller with a product in
the order gets one notification listing only their own products. Dispatch runs
with service privileges and is idempotent: a seller who already holds a
notification for the order is skipped, so re-running it is safe.
"""

import logging
from collections import OrderedDict
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session, selectinload

from marketplace.database import transaction
from marketplace.errors import AuthorizationError, NotFoundError, ValidationError
from marketplace.models import Order, OrderItem, SellerNotification
from marketplace.realtime import SELLER_NOTIFICATIONS, ChangeFeed
from marketplace.utils.logger import get_logger, log_event

logger = get_logger("notifications")


def format_money(amount) -> str:
    return f"{Decimal(amount).quantize(Decimal('0.01'))}"


def compose_message(order: Order, items: List[OrderItem]) -> str:
    products = ", ".join(
        f"{item.product.name if item.product else 'Unknown product'} (Qty: {item.quantity})"
        for item in items
    )
    return (
        f"New order received! Order #{order.id[:8]} - Products: {products}. "
        f"Total: ${format_money(order.total_amount)}. "
        f"Address: {order.shipping_address}. "
        "Please assign a driver for delivery."
    )


def notification_to_dict(notification: SellerNotification) -> Dict[str, Any]:
    return {
        "id": notification.id,
        "seller_id": notification.seller_id,
        "order_id": notification.order_id,
        "message": notification.message,
        "read": notification.read,
        "created_at": notification.created_at,
    }


def group_items_by_seller(items: List[OrderItem]) -> "OrderedDict[str, List[OrderItem]]":
    """Group order items by their product's seller, in first-seen order."""
    groups: "OrderedDict[str, List[OrderItem]]" = OrderedDict()
    for item in items:
        if item.product is None:
            log_event(logger, "notifications", "group_items", level=logging.WARNING,
                      order_id=item.order_id, product_id=item.product_id, result="skipped", reason="missing_product")
            continue
        groups.setdefault(item.product.seller_id, []).append(item)
    return groups


def dispatch_seller_notifications(db: Session, order_id: Optional[str], feed: Optional[ChangeFeed] = None) -> int:
    """
    Create one notification per seller in the order. Returns the number of
    notifications created by this call (0 on a re-run).
    """
    if not order_id:
        raise ValidationError("Order ID is required")
    log_event(logger, "notifications", "dispatch", order_id=order_id)

    order = (
        db.query(Order)
        .options(selectinload(Order.items).joinedload(OrderItem.product))
        .filter(Order.id == order_id)
        .first()
    )
    if order is None:
        log_event(logger, "notifications", "dispatch", level=logging.ERROR, order_id=order_id, result="error", error="order_not_found")
        raise NotFoundError(f"Order not found: {order_id}")

    groups = group_items_by_seller(order.items)
    already_notified = {
        seller_id
        for (seller_id,) in db.query(SellerNotification.seller_id)
        .filter(SellerNotification.order_id == order_id)
        .all()
    }

    created: List[SellerNotification] = []
    with transaction(db):
        for seller_id, items in groups.items():
            if seller_id in already_notified:
                continue
            notification = SellerNotification(
                seller_id=seller_id,
                order_id=order.id,
                message=compose_message(order, items),
                read=False,
            )
            db.add(notification)
            created.append(notification)

    if feed is not None:
        for notification in created:
            feed.publish(SELLER_NOTIFICATIONS, notification_to_dict(notification))

    log_event(logger, "notifications", "dispatch", order_id=order_id, result="success",
              sellers=len(groups), created=len(created), skipped=len(groups) - len(created))
    return len(created)


def list_notifications(db: Session, seller_id: str, limit: int = 50) -> Tuple[List[SellerNotification], int]:
    """The seller's notifications newest first, plus their unread count."""
    notifications = (
        db.query(SellerNotification)
        .filter(SellerNotification.seller_id == seller_id)
        .order_by(SellerNotification.created_at.desc(), SellerNotification.id)
        .limit(limit)
        .all()
    )
    unread = (
        db.query(SellerNotification)
        .filter(SellerNotification.seller_id == seller_id, SellerNotification.read.is_(False))
        .count()
    )
    return notifications, unread


def mark_notification_read(db: Session, notification_id: str, seller_id: str) -> SellerNotification:
    notification = db.get(SellerNotification, notification_id)
    if notification is None:
        raise NotFoundError(f"Notification not found: {notification_id}")
    if notification.seller_id != seller_id:
        log_event(logger, "notifications", "mark_read", level=logging.WARNING,
                  notification_id=notification_id, user_id=seller_id, result="denied")
        raise AuthorizationError("Only the notified seller may mark this notification read")
    with transaction(db):
        notification.read = True
    db.refresh(notification)
    return notification

