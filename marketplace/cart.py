"""
Cart for a signed-in user.

CartService is created per signed-in session (one per request in the API) and
closed on sign-out. Every mutation writes to the store and then reloads the
full cart, so `items` always mirrors what is stored.

Table: cart_items (id, user_id, product_id, quantity >= 1, UNIQUE(user_id, product_id))
"""

import logging
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.orm import Session

from marketplace.database import transaction
from marketplace.errors import AuthenticationRequired, NotFoundError
from marketplace.models import CartItem, Product
from marketplace.utils.logger import get_logger, log_event

logger = get_logger("cart")


class CartService:
    """
    Cart operations for one user. All mutations require a user id.
    """

    def __init__(self, db: Session, user_id: Optional[str]) -> None:
        self.db = db
        self.user_id = user_id
        self.items: List[CartItem] = []
        self.loading = False

    def __enter__(self) -> "CartService":
        self.load()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _require_user(self, method: str) -> str:
        if not self.user_id:
            log_event(logger, "cart", method, level=logging.WARNING, result="error", error="not_signed_in")
            raise AuthenticationRequired("Sign in to use the cart")
        return self.user_id

    def load(self) -> List[CartItem]:
        """Reload the cart from the store. A signed-out cart is empty."""
        if not self.user_id:
            self.items = []
            return self.items
        self.loading = True
        try:
            self.db.expire_all()
            self.items = (
                self.db.query(CartItem)
                .filter(CartItem.user_id == self.user_id)
                .order_by(CartItem.created_at, CartItem.id)
                .all()
            )
        finally:
            self.loading = False
        log_event(logger, "cart", "load", user_id=self.user_id, result="success", row_count=len(self.items))
        return self.items

    def _find(self, product_id: str) -> Optional[CartItem]:
        return (
            self.db.query(CartItem)
            .filter(CartItem.user_id == self.user_id, CartItem.product_id == product_id)
            .first()
        )

    def add_item(self, product_id: str) -> List[CartItem]:
        """Add one unit: bump an existing line, or insert a new line with quantity 1."""
        user_id = self._require_user("add_item")
        log_event(logger, "cart", "add_item", user_id=user_id, product_id=product_id)
        if self.db.get(Product, product_id) is None:
            log_event(logger, "cart", "add_item", level=logging.WARNING, user_id=user_id, product_id=product_id, result="error", error="not_found")
            raise NotFoundError(f"Product not found: {product_id}")

        with transaction(self.db):
            existing = self._find(product_id)
            if existing is not None:
                existing.quantity = existing.quantity + 1
            else:
                self.db.add(CartItem(user_id=user_id, product_id=product_id, quantity=1))
        log_event(logger, "cart", "add_item", user_id=user_id, product_id=product_id, result="success")
        return self.load()

    def update_quantity(self, product_id: str, quantity: int) -> List[CartItem]:
        """Set the stored quantity. quantity <= 0 removes the line."""
        user_id = self._require_user("update_quantity")
        if quantity <= 0:
            return self.remove_item(product_id)

        with transaction(self.db):
            existing = self._find(product_id)
            if existing is not None:
                existing.quantity = quantity
        if existing is None:
            log_event(logger, "cart", "update_quantity", user_id=user_id, product_id=product_id, result="noop", reason="no_line")
        else:
            log_event(logger, "cart", "update_quantity", user_id=user_id, product_id=product_id, quantity=quantity, result="success")
        return self.load()

    def remove_item(self, product_id: str) -> List[CartItem]:
        user_id = self._require_user("remove_item")
        with transaction(self.db):
            deleted = (
                self.db.query(CartItem)
                .filter(CartItem.user_id == user_id, CartItem.product_id == product_id)
                .delete(synchronize_session=False)
            )
        log_event(logger, "cart", "remove_item", user_id=user_id, product_id=product_id, result="success", deleted=deleted)
        return self.load()

    def clear(self) -> List[CartItem]:
        user_id = self._require_user("clear")
        with transaction(self.db):
            deleted = self.db.query(CartItem).filter(CartItem.user_id == user_id).delete(synchronize_session=False)
        log_event(logger, "cart", "clear", user_id=user_id, result="success", deleted=deleted)
        return self.load()

    def total(self) -> Decimal:
        """Sum of quantity x current product price."""
        return sum(
            (Decimal(item.product.price) * item.quantity for item in self.items if item.product is not None),
            Decimal("0"),
        )

    def count(self) -> int:
        return sum(item.quantity for item in self.items)

    def close(self) -> None:
        """Drop local state on sign-out. Stored rows stay for the next session."""
        self.items = []
        self.user_id = None

