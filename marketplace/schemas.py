"""
Pydantic v2 schemas for strict request/response validation.

All request schemas use extra="forbid" to reject unknown fields.
Error responses follow the standard envelope (status + error detail).
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


#
# Enums for Response Status
#

class ResponseStatus(str, Enum):
    """
    Standard response status codes for all marketplace endpoints.
    """
    OK = "OK"
    INVALID = "INVALID"
    OUT_OF_STOCK = "OUT_OF_STOCK"
    NOT_FOUND = "NOT_FOUND"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    ERROR = "ERROR"


class ErrorDetail(BaseModel):
    """Structured error information returned with every non-OK response."""
    code: str = Field(..., description="Machine-readable error code")
    message: str = Field(..., description="Human-readable explanation")
    details: Optional[Dict[str, Any]] = Field(None, description="Additional structured data (e.g. sold-out product ids)")


class ErrorResponse(BaseModel):
    status: ResponseStatus
    error: ErrorDetail


def _not_blank(value: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError("must not be blank")
    return value


#
# Profiles
#

class CreateProfileRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")
    full_name: Optional[str] = None
    email: Optional[str] = None
    role: Literal["buyer", "seller"] = "buyer"


class UpdateProfileRequest(BaseModel):
    """Role is deliberately absent: it cannot change after assignment."""
    model_config = ConfigDict(extra="forbid")
    full_name: Optional[str] = None
    email: Optional[str] = None


class ProfileOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    user_id: str
    full_name: Optional[str] = None
    email: Optional[str] = None
    role: str


#
# Products & comments
#

class CreateProductRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    price: Decimal = Field(..., ge=0, max_digits=10, decimal_places=2)
    stock_quantity: int = Field(0, ge=0)
    category: Optional[str] = None
    image_url: Optional[str] = None

    _name_not_blank = field_validator("name")(_not_blank)


class UpdateProductRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    price: Optional[Decimal] = Field(None, ge=0, max_digits=10, decimal_places=2)
    stock_quantity: Optional[int] = Field(None, ge=0)
    category: Optional[str] = None
    image_url: Optional[str] = None


class ProductOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: str
    seller_id: str
    name: str
    description: Optional[str] = None
    price: float
    stock_quantity: int
    category: Optional[str] = None
    image_url: Optional[str] = None
    created_at: datetime


class CreateCommentRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")
    content: str = Field(..., min_length=1)
    rating: int = Field(5, ge=1, le=5)

    _content_not_blank = field_validator("content")(_not_blank)


class UpdateCommentRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")
    content: Optional[str] = Field(None, min_length=1)
    rating: Optional[int] = Field(None, ge=1, le=5)


class CommentOut(BaseModel):
    id: str
    product_id: str
    user_id: str
    author_name: Optional[str] = None
    content: str
    rating: Optional[int] = None
    created_at: datetime


#
# Cart
#

class AddToCartRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")
    product_id: str


class UpdateCartItemRequest(BaseModel):
    """quantity <= 0 removes the line."""
    model_config = ConfigDict(extra="forbid")
    quantity: int


class CartLineOut(BaseModel):
    id: str
    product_id: str
    quantity: int
    product: ProductOut
    line_total: float


class CartOut(BaseModel):
    items: List[CartLineOut]
    count: int
    total: float


#
# Checkout & orders
#

class CheckoutRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")
    shipping_address: str = Field(..., min_length=1)
    payment_method: Literal["cash", "card"] = "cash"

    _address_not_blank = field_validator("shipping_address")(_not_blank)


class OrderItemOut(BaseModel):
    id: str
    product_id: str
    product_name: Optional[str] = None
    quantity: int
    price: float


class OrderOut(BaseModel):
    id: str
    user_id: str
    total_amount: float
    status: str
    shipping_address: Optional[str] = None
    payment_method: str
    driver_assigned: bool
    driver_notes: Optional[str] = None
    estimated_delivery: Optional[datetime] = None
    created_at: datetime
    items: List[OrderItemOut] = Field(default_factory=list)


class UpdateOrderStatusRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")
    status: Literal["delivered", "cancelled"]


class CheckoutResponse(BaseModel):
    status: ResponseStatus = ResponseStatus.OK
    order: OrderOut
    notifications_sent: int = 0
    payment_url: Optional[str] = Field(None, description="Stripe Checkout URL for card payments")


#
# Notifications
#

class NotifySellersRequest(BaseModel):
    order_id: Optional[str] = None


class NotificationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: str
    seller_id: str
    order_id: Optional[str] = None
    message: str
    read: bool
    created_at: datetime


class NotificationListOut(BaseModel):
    notifications: List[NotificationOut]
    unread_count: int


#
# Messages
#

class SendMessageRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")
    receiver_id: str
    content: str = Field(..., min_length=1, max_length=2000)
    product_id: Optional[str] = None
    order_id: Optional[str] = None

    _content_not_blank = field_validator("content")(_not_blank)


class MessageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: str
    sender_id: str
    receiver_id: str
    content: str
    product_id: Optional[str] = None
    order_id: Optional[str] = None
    read: bool
    created_at: datetime


class ConversationOut(BaseModel):
    user_id: str
    user_name: str
    user_role: Optional[str] = None
    last_message: str
    last_message_time: datetime
    unread_count: int
    product_id: Optional[str] = None


#
# Analytics
#

class DailyPoint(BaseModel):
    date: str
    label: str
    revenue: float
    orders: int


class ProductPerformance(BaseModel):
    product_id: str
    name: str
    revenue: float
    orders: int
    stock: int


class CategorySlice(BaseModel):
    name: str
    value: float
    count: int


class SellerAnalyticsOut(BaseModel):
    time_range: str
    total_revenue: float
    total_orders: int
    total_products: int
    avg_order_value: float
    revenue_growth: float
    order_growth: float
    revenue_by_day: List[DailyPoint]
    product_performance: List[ProductPerformance]
    category_distribution: List[CategorySlice]


class LifetimeAnalyticsOut(BaseModel):
    seller_id: str
    total_revenue: float
    total_orders: int


class SellerDashboardOut(BaseModel):
    products: List[ProductOut]
    total_revenue: float
    total_orders: int
    low_stock_products: List[ProductOut]
