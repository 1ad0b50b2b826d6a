"""
Orders after checkout: buyer history, visibility, status and driver assignment.

Status only moves forward:
  pending -> paid -> driver_assigned -> delivered
  pending | paid -> cancelled
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session, selectinload

from marketplace.accounts import require_user
from marketplace.core.config import get_config
from marketplace.database import transaction
from marketplace.errors import AuthorizationError, InvalidTransition, NotFoundError
from marketplace.models import PAYMENT_CARD, Order, OrderItem, Product
from marketplace.utils.logger import get_logger, log_event

logger = get_logger("orders")

PENDING = "pending"
PAID = "paid"
DRIVER_ASSIGNED = "driver_assigned"
DELIVERED = "delivered"
CANCELLED = "cancelled"

STATUS_RANK = {
    PENDING: 0,
    PAID: 1,
    DRIVER_ASSIGNED: 2,
    DELIVERED: 3,
}
# Statuses an order may be cancelled from
CANCELLABLE = {PENDING, PAID}
# Statuses callers may request through update_status
CALLER_TARGETS = {DELIVERED, CANCELLED}


def can_transition(current: str, target: str) -> bool:
    if current == CANCELLED or current == DELIVERED:
        return False
    if target == CANCELLED:
        return current in CANCELLABLE
    if current not in STATUS_RANK or target not in STATUS_RANK:
        return False
    return STATUS_RANK[target] > STATUS_RANK[current]


def advance_status(order: Order, target: str) -> Order:
    """Move the order to `target`. Caller commits. Raises InvalidTransition on any backward move."""
    if not can_transition(order.status, target):
        log_event(logger, "orders", "advance_status", level=logging.WARNING,
                  order_id=order.id, from_status=order.status, to_status=target, result="rejected")
        raise InvalidTransition(
            f"Cannot move order from {order.status} to {target}",
            details={"from": order.status, "to": target},
        )
    order.status = target
    return order


def _with_items(query):
    return query.options(selectinload(Order.items).joinedload(OrderItem.product))


def order_to_dict(order: Order) -> Dict[str, Any]:
    return {
        "id": order.id,
        "user_id": order.user_id,
        "total_amount": float(order.total_amount),
        "status": order.status,
        "shipping_address": order.shipping_address,
        "payment_method": order.payment_method,
        "driver_assigned": order.driver_assigned,
        "driver_notes": order.driver_notes,
        "estimated_delivery": order.estimated_delivery,
        "created_at": order.created_at,
        "items": [
            {
                "id": item.id,
                "product_id": item.product_id,
                "product_name": item.product.name if item.product else None,
                "quantity": item.quantity,
                "price": float(item.price),
            }
            for item in order.items
        ],
    }


def list_orders_for_buyer(db: Session, user_id: Optional[str]) -> List[Order]:
    user_id = require_user(user_id)
    return (
        _with_items(db.query(Order))
        .filter(Order.user_id == user_id)
        .order_by(Order.created_at.desc(), Order.id)
        .all()
    )


def list_orders_for_seller(db: Session, seller_id: str) -> List[Order]:
    """Orders containing at least one of the seller's products, newest first."""
    return (
        _with_items(db.query(Order))
        .join(OrderItem, OrderItem.order_id == Order.id)
        .join(Product, Product.id == OrderItem.product_id)
        .filter(Product.seller_id == seller_id)
        .distinct()
        .order_by(Order.created_at.desc(), Order.id)
        .all()
    )


def _seller_has_product_in(order: Order, user_id: str) -> bool:
    return any(item.product is not None and item.product.seller_id == user_id for item in order.items)


def get_order(db: Session, order_id: str, user_id: Optional[str]) -> Order:
    """The order if the caller is its buyer or sells a product in it."""
    user_id = require_user(user_id)
    order = _with_items(db.query(Order)).filter(Order.id == order_id).first()
    if order is None:
        raise NotFoundError(f"Order not found: {order_id}")
    if order.user_id != user_id and not _seller_has_product_in(order, user_id):
        raise AuthorizationError("Not allowed to view this order")
    return order


def assign_driver(db: Session, order_id: str, seller_id: Optional[str], now: Optional[datetime] = None) -> Order:
    seller_id = require_user(seller_id)
    now = now or datetime.now(timezone.utc)
    order = _with_items(db.query(Order)).filter(Order.id == order_id).first()
    if order is None:
        raise NotFoundError(f"Order not found: {order_id}")
    if not _seller_has_product_in(order, seller_id):
        log_event(logger, "orders", "assign_driver", order_id=order_id, seller_id=seller_id, result="denied")
        raise AuthorizationError("Only a seller in this order may assign a driver")
    if order.payment_method == PAYMENT_CARD and order.status == PENDING:
        log_event(logger, "orders", "assign_driver", order_id=order_id, seller_id=seller_id, result="awaiting_payment")
        raise InvalidTransition("Card order is awaiting payment", details={"from": order.status, "to": DRIVER_ASSIGNED})

    with transaction(db):
        advance_status(order, DRIVER_ASSIGNED)
        order.driver_assigned = True
        order.driver_notes = f"Driver assigned by seller on {now.strftime('%Y-%m-%d %H:%M:%S %Z').strip()}"
        order.estimated_delivery = now + timedelta(hours=get_config().driver_eta_hours)
    db.refresh(order)
    log_event(logger, "orders", "assign_driver", order_id=order_id, seller_id=seller_id, result="success")
    return order


def update_status(db: Session, order_id: str, target: str, user_id: Optional[str]) -> Order:
    """
    Caller-driven status change: cancel, or mark a dispatched order delivered.

    `paid` is only set by the payment webhook and `driver_assigned` only by
    assign_driver. The buyer may only cancel; a seller with a product in the
    order may cancel it or mark it delivered.
    """
    order = get_order(db, order_id, user_id)
    if target not in CALLER_TARGETS:
        log_event(logger, "orders", "update_status", order_id=order_id, user_id=user_id, status=target, result="rejected")
        raise InvalidTransition(
            f"Status {target} cannot be set directly",
            details={"from": order.status, "to": target},
        )
    if order.user_id == user_id and not _seller_has_product_in(order, user_id) and target != CANCELLED:
        raise AuthorizationError("Buyers may only cancel their orders")
    if target == DELIVERED and order.status != DRIVER_ASSIGNED:
        raise InvalidTransition(
            "Only an order with a driver can be delivered",
            details={"from": order.status, "to": target},
        )
    with transaction(db):
        advance_status(order, target)
    db.refresh(order)
    log_event(logger, "orders", "update_status", order_id=order_id, user_id=user_id, status=target, result="success")
    return order
