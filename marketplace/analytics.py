"""
Seller analytics.

Two views of a seller's sales:

* Windowed analytics (7d / 30d / 90d) computed on demand from order items,
  with growth against the window just before it. The arithmetic lives in the
  pure `compute_seller_analytics` so it can be checked without a database.
* Lifetime counters in seller_analytics, bumped by `record_order_item_sale`
  inside the checkout transaction for every order item.
"""

from collections import OrderedDict
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy.orm import Session

from marketplace.core.config import get_config
from marketplace.errors import ValidationError
from marketplace.models import Order, OrderItem, Product, SellerAnalytics
from marketplace.utils.logger import get_logger, log_event

logger = get_logger("analytics")

TIME_RANGES = {"7d": 7, "30d": 30, "90d": 90}
TOP_PRODUCTS = 10
UNCATEGORIZED = "Uncategorized"


@dataclass
class SaleRow:
    """One order item of the seller's, flattened with its order's timestamp."""
    order_id: str
    product_id: str
    quantity: int
    price: Decimal
    created_at: datetime

    @property
    def revenue(self) -> Decimal:
        return Decimal(self.price) * self.quantity


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def window_bounds(time_range: str, now: datetime):
    """
    Return (start, end, prior_start) for the last N calendar days including
    today. The prior window is [prior_start, start).
    """
    if time_range not in TIME_RANGES:
        raise ValidationError(f"Unknown time range: {time_range}", details={"allowed": sorted(TIME_RANGES)})
    days = TIME_RANGES[time_range]
    today = _as_utc(now).date()
    start = datetime.combine(today - timedelta(days=days - 1), time.min, tzinfo=timezone.utc)
    end = datetime.combine(today + timedelta(days=1), time.min, tzinfo=timezone.utc)
    prior_start = start - timedelta(days=days)
    return start, end, prior_start


def _growth(current: Decimal, prior: Decimal) -> float:
    if not prior:
        return 0.0
    return round(float((Decimal(current) - Decimal(prior)) / Decimal(prior) * 100), 2)


def _empty_series(start: date, days: int) -> "OrderedDict[date, Dict[str, Any]]":
    series = OrderedDict()
    for offset in range(days):
        day = start + timedelta(days=offset)
        series[day] = {"revenue": Decimal("0"), "order_ids": set()}
    return series


def compute_seller_analytics(
    products: Sequence[Any],
    sales: Iterable[SaleRow],
    prior_sales: Iterable[SaleRow],
    time_range: str,
    now: datetime,
) -> Dict[str, Any]:
    """
    Aggregate one window of sales. `products` are the seller's products (any
    object with id, name, category, stock_quantity); `sales` fall inside the
    window and `prior_sales` inside the window before it.
    """
    start, _, _ = window_bounds(time_range, now)
    days = TIME_RANGES[time_range]
    sales = list(sales)
    prior_sales = list(prior_sales)

    total_revenue = sum((s.revenue for s in sales), Decimal("0"))
    order_ids = {s.order_id for s in sales}
    prior_revenue = sum((s.revenue for s in prior_sales), Decimal("0"))
    prior_order_count = len({s.order_id for s in prior_sales})

    avg_order_value = total_revenue / len(order_ids) if order_ids else Decimal("0")

    series = _empty_series(start.date(), days)
    for sale in sales:
        bucket = series.get(_as_utc(sale.created_at).date())
        if bucket is None:
            continue
        bucket["revenue"] += sale.revenue
        bucket["order_ids"].add(sale.order_id)

    per_product: Dict[str, Dict[str, Any]] = {
        p.id: {"revenue": Decimal("0"), "orders": 0} for p in products
    }
    for sale in sales:
        stats = per_product.get(sale.product_id)
        if stats is None:
            continue
        stats["revenue"] += sale.revenue
        stats["orders"] += 1

    performance = [
        {
            "product_id": p.id,
            "name": p.name,
            "revenue": float(per_product[p.id]["revenue"]),
            "orders": per_product[p.id]["orders"],
            "stock": p.stock_quantity,
        }
        for p in products
    ]
    performance.sort(key=lambda row: (-row["revenue"], row["name"]))

    categories: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()
    for p in products:
        slot = categories.setdefault(p.category or UNCATEGORIZED, {"value": Decimal("0"), "count": 0})
        slot["value"] += per_product[p.id]["revenue"]
        slot["count"] += 1
    distribution = [
        {"name": name, "value": float(slot["value"]), "count": slot["count"]}
        for name, slot in categories.items()
    ]
    distribution.sort(key=lambda row: (-row["value"], row["name"]))

    return {
        "time_range": time_range,
        "total_revenue": float(total_revenue),
        "total_orders": len(order_ids),
        "total_products": len(products),
        "avg_order_value": round(float(avg_order_value), 2),
        "revenue_growth": _growth(total_revenue, prior_revenue),
        "order_growth": _growth(Decimal(len(order_ids)), Decimal(prior_order_count)),
        "revenue_by_day": [
            {
                "date": day.isoformat(),
                "label": day.strftime("%b %d"),
                "revenue": float(bucket["revenue"]),
                "orders": len(bucket["order_ids"]),
            }
            for day, bucket in series.items()
        ],
        "product_performance": performance[:TOP_PRODUCTS],
        "category_distribution": distribution,
    }


def empty_analytics(time_range: str) -> Dict[str, Any]:
    return {
        "time_range": time_range,
        "total_revenue": 0.0,
        "total_orders": 0,
        "total_products": 0,
        "avg_order_value": 0.0,
        "revenue_growth": 0.0,
        "order_growth": 0.0,
        "revenue_by_day": [],
        "product_performance": [],
        "category_distribution": [],
    }


def _load_sales(db: Session, product_ids: List[str], since: datetime, until: datetime) -> List[SaleRow]:
    rows = (
        db.query(OrderItem.order_id, OrderItem.product_id, OrderItem.quantity, OrderItem.price, Order.created_at)
        .join(Order, Order.id == OrderItem.order_id)
        .filter(OrderItem.product_id.in_(product_ids))
        .filter(Order.created_at >= since, Order.created_at < until)
        .all()
    )
    return [
        SaleRow(order_id=r[0], product_id=r[1], quantity=r[2], price=Decimal(r[3]), created_at=_as_utc(r[4]))
        for r in rows
    ]


def get_seller_analytics(
    db: Session,
    seller_id: str,
    time_range: str = "30d",
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    start, end, prior_start = window_bounds(time_range, now)

    products = db.query(Product).filter(Product.seller_id == seller_id).order_by(Product.name).all()
    if not products:
        log_event(logger, "analytics", "get_seller_analytics", seller_id=seller_id, time_range=time_range, result="no_products")
        return empty_analytics(time_range)

    product_ids = [p.id for p in products]
    sales = _load_sales(db, product_ids, start, end)
    prior_sales = _load_sales(db, product_ids, prior_start, start)
    result = compute_seller_analytics(products, sales, prior_sales, time_range, now)
    log_event(
        logger, "analytics", "get_seller_analytics",
        seller_id=seller_id, time_range=time_range, orders=result["total_orders"], result="success",
    )
    return result


def record_order_item_sale(db: Session, item: OrderItem) -> SellerAnalytics:
    """
    Bump the lifetime counters of the item's seller. Runs inside the caller's
    transaction; nothing is committed here.
    """
    product = item.product or db.get(Product, item.product_id)
    if product is None:
        raise ValidationError(f"Order item references unknown product: {item.product_id}")

    row = db.query(SellerAnalytics).filter(SellerAnalytics.seller_id == product.seller_id).first()
    amount = Decimal(item.price) * item.quantity
    if row is None:
        row = SellerAnalytics(seller_id=product.seller_id, total_revenue=amount, total_orders=1)
        db.add(row)
    else:
        row.total_revenue = Decimal(row.total_revenue) + amount
        row.total_orders = row.total_orders + 1
    # Later items of the same checkout must see this row.
    db.flush()
    return row


def get_lifetime_analytics(db: Session, seller_id: str) -> Dict[str, Any]:
    row = db.query(SellerAnalytics).filter(SellerAnalytics.seller_id == seller_id).first()
    if row is None:
        return {"seller_id": seller_id, "total_revenue": 0.0, "total_orders": 0}
    return {
        "seller_id": seller_id,
        "total_revenue": float(row.total_revenue),
        "total_orders": row.total_orders,
    }


def seller_dashboard(db: Session, seller_id: str, low_stock_threshold: Optional[int] = None) -> Dict[str, Any]:
    """Products, all-time revenue and line-item count, and low-stock products."""
    threshold = get_config().low_stock_threshold if low_stock_threshold is None else low_stock_threshold
    products = (
        db.query(Product)
        .filter(Product.seller_id == seller_id)
        .order_by(Product.created_at.desc(), Product.id)
        .all()
    )
    product_ids = [p.id for p in products]
    items = db.query(OrderItem).filter(OrderItem.product_id.in_(product_ids)).all() if product_ids else []
    revenue = sum((Decimal(i.price) * i.quantity for i in items), Decimal("0"))
    return {
        "products": products,
        "total_revenue": float(revenue),
        "total_orders": len(items),
        "low_stock_products": [p for p in products if p.stock_quantity < threshold],
    }
