"""
SQLAlchemy database models.
These are the authoritative source of truth for all marketplace data.

The constraints that the hosted store used to enforce (price/stock bounds,
rating range, one cart line per product, one analytics row per seller) live
here as CHECK / UNIQUE constraints so the database still rejects bad writes
that slip past request validation.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from marketplace.database import Base

ROLE_BUYER = "buyer"
ROLE_SELLER = "seller"

PAYMENT_CASH = "cash"
PAYMENT_CARD = "card"


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Profile(Base):
    """One profile per identity-provider account. Role is fixed once assigned."""
    __tablename__ = "profiles"
    __table_args__ = (
        CheckConstraint("role IN ('buyer', 'seller')", name="ck_profiles_role"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), nullable=False, unique=True, index=True)
    full_name = Column(Text, nullable=True)
    email = Column(Text, nullable=True)
    role = Column(String(16), nullable=False, default=ROLE_BUYER)

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False)

    @property
    def is_seller(self) -> bool:
        return self.role == ROLE_SELLER


class Product(Base):
    """Product catalog. Readable by everyone, written only by the owning seller."""
    __tablename__ = "products"
    __table_args__ = (
        CheckConstraint("price >= 0", name="ck_products_price_non_negative"),
        CheckConstraint("stock_quantity >= 0", name="ck_products_stock_non_negative"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    seller_id = Column(String(36), ForeignKey("profiles.user_id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(Text, nullable=False, index=True)
    description = Column(Text, nullable=True)
    price = Column(Numeric(10, 2), nullable=False)
    stock_quantity = Column(Integer, nullable=False, default=0)
    image_url = Column(Text, nullable=True)
    category = Column(String(100), nullable=True, index=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False)

    seller = relationship("Profile", primaryjoin="Product.seller_id == Profile.user_id", viewonly=True)


class CartItem(Base):
    """A pending purchase selection. One line per (user, product)."""
    __tablename__ = "cart_items"
    __table_args__ = (
        UniqueConstraint("user_id", "product_id", name="uq_cart_items_user_product"),
        CheckConstraint("quantity >= 1", name="ck_cart_items_quantity_positive"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), nullable=False, index=True)
    product_id = Column(String(36), ForeignKey("products.id", ondelete="CASCADE"), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False)

    product = relationship("Product", lazy="joined")


class Order(Base):
    """
    A placed order. Immutable after creation except for the status and
    driver/delivery fields.
    """
    __tablename__ = "orders"
    __table_args__ = (
        CheckConstraint("total_amount >= 0", name="ck_orders_total_non_negative"),
        CheckConstraint("payment_method IN ('card', 'cash')", name="ck_orders_payment_method"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), nullable=False, index=True)
    total_amount = Column(Numeric(10, 2), nullable=False)
    status = Column(String(32), nullable=False, default="pending")
    shipping_address = Column(Text, nullable=True)
    payment_method = Column(String(8), nullable=False, default=PAYMENT_CASH)
    stripe_session_id = Column(String(255), nullable=True, index=True)
    driver_assigned = Column(Boolean, nullable=False, default=False)
    driver_notes = Column(Text, nullable=True)
    estimated_delivery = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False)

    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan", order_by="OrderItem.created_at")


class OrderItem(Base):
    """Line item of an order. `price` is the product price at order time."""
    __tablename__ = "order_items"
    __table_args__ = (
        CheckConstraint("quantity >= 1", name="ck_order_items_quantity_positive"),
        CheckConstraint("price >= 0", name="ck_order_items_price_non_negative"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    order_id = Column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(String(36), ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)
    quantity = Column(Integer, nullable=False)
    price = Column(Numeric(10, 2), nullable=False)

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

    order = relationship("Order", back_populates="items")
    product = relationship("Product", lazy="joined")

    @property
    def line_total(self):
        return self.price * self.quantity


class Message(Base):
    """Chat message between two profiles, optionally about a product or order."""
    __tablename__ = "messages"
    __table_args__ = (
        CheckConstraint("length(trim(content)) > 0", name="ck_messages_content_not_blank"),
        Index("idx_messages_pair", "sender_id", "receiver_id"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    sender_id = Column(String(36), nullable=False, index=True)
    receiver_id = Column(String(36), nullable=False, index=True)
    product_id = Column(String(36), ForeignKey("products.id", ondelete="CASCADE"), nullable=True, index=True)
    order_id = Column(String(36), ForeignKey("orders.id", ondelete="SET NULL"), nullable=True)
    content = Column(Text, nullable=False)
    read = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False)


class Comment(Base):
    """Product review. Rating is bounded to 1..5 by the store itself."""
    __tablename__ = "comments"
    __table_args__ = (
        CheckConstraint("rating >= 1 AND rating <= 5", name="ck_comments_rating_range"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    product_id = Column(String(36), ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(36), nullable=False, index=True)
    content = Column(Text, nullable=False)
    rating = Column(Integer, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False)

    author = relationship("Profile", primaryjoin="foreign(Comment.user_id) == Profile.user_id", viewonly=True, lazy="joined")


class SellerNotification(Base):
    """
    Order notification for one seller. Written only by the dispatch flow;
    at most one per (seller, order).
    """
    __tablename__ = "seller_notifications"
    __table_args__ = (
        UniqueConstraint("seller_id", "order_id", name="uq_seller_notifications_seller_order"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    seller_id = Column(String(36), nullable=False, index=True)
    order_id = Column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=True)
    message = Column(Text, nullable=False)
    read = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False)


class SellerAnalytics(Base):
    """Lifetime revenue/order counters, maintained by analytics.record_order_item_sale."""
    __tablename__ = "seller_analytics"

    id = Column(String(36), primary_key=True, default=new_id)
    seller_id = Column(String(36), nullable=False, unique=True)
    total_revenue = Column(Numeric(12, 2), nullable=False, default=0)
    total_orders = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False)
