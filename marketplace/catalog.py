"""
Product catalog and product reviews.

Products are readable by everyone. Only sellers create them, and only the
owning seller may change or delete one. Comments belong to their author.
"""

from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from marketplace.accounts import display_name, require_seller, require_user
from marketplace.database import transaction
from marketplace.errors import AuthorizationError, NotFoundError, ValidationError
from marketplace.models import Comment, Product
from marketplace.utils.logger import get_logger, log_event

logger = get_logger("catalog")

PRODUCT_FIELDS = ("name", "description", "price", "stock_quantity", "category", "image_url")


def list_products(
    db: Session,
    category: Optional[str] = None,
    search: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
) -> List[Product]:
    query = db.query(Product)
    if category:
        query = query.filter(Product.category == category)
    if search:
        query = query.filter(Product.name.ilike(f"%{search}%"))
    return query.order_by(Product.name, Product.id).offset(offset).limit(limit).all()


def list_seller_products(db: Session, seller_id: str) -> List[Product]:
    """The seller's own products, newest first."""
    return (
        db.query(Product)
        .filter(Product.seller_id == seller_id)
        .order_by(Product.created_at.desc(), Product.id)
        .all()
    )


def get_product(db: Session, product_id: str) -> Product:
    product = db.get(Product, product_id)
    if product is None:
        raise NotFoundError(f"Product not found: {product_id}")
    return product


def _validate_product_values(values: Dict[str, Any]) -> None:
    if "name" in values and not (values["name"] or "").strip():
        raise ValidationError("Product name is required")
    if values.get("price") is not None and Decimal(str(values["price"])) < 0:
        raise ValidationError("Price must be non-negative")
    if values.get("stock_quantity") is not None and int(values["stock_quantity"]) < 0:
        raise ValidationError("Stock quantity must be non-negative")


def create_product(
    db: Session,
    user_id: Optional[str],
    name: str,
    price,
    stock_quantity: int = 0,
    description: Optional[str] = None,
    category: Optional[str] = None,
    image_url: Optional[str] = None,
) -> Product:
    seller = require_seller(db, user_id)
    if price is None:
        raise ValidationError("Price is required")
    _validate_product_values({"name": name, "price": price, "stock_quantity": stock_quantity})

    product = Product(
        seller_id=seller.user_id,
        name=name.strip(),
        description=description,
        price=Decimal(str(price)),
        stock_quantity=stock_quantity,
        category=category,
        image_url=image_url,
    )
    with transaction(db):
        db.add(product)
    db.refresh(product)
    log_event(logger, "catalog", "create_product", seller_id=seller.user_id, product_id=product.id, result="success")
    return product


def _owned_product(db: Session, user_id: Optional[str], product_id: str) -> Product:
    user_id = require_user(user_id)
    product = get_product(db, product_id)
    if product.seller_id != user_id:
        log_event(logger, "catalog", "owned_product", user_id=user_id, product_id=product_id, result="denied")
        raise AuthorizationError("Only the owning seller may modify this product")
    return product


def update_product(db: Session, user_id: Optional[str], product_id: str, **changes: Any) -> Product:
    product = _owned_product(db, user_id, product_id)
    values = {k: v for k, v in changes.items() if k in PRODUCT_FIELDS and v is not None}
    _validate_product_values(values)
    with transaction(db):
        for key, value in values.items():
            if key == "price":
                value = Decimal(str(value))
            setattr(product, key, value)
    db.refresh(product)
    log_event(logger, "catalog", "update_product", product_id=product_id, fields=",".join(sorted(values)), result="success")
    return product


def delete_product(db: Session, user_id: Optional[str], product_id: str) -> None:
    product = _owned_product(db, user_id, product_id)
    with transaction(db):
        db.delete(product)
    log_event(logger, "catalog", "delete_product", product_id=product_id, result="success")


#
# Comments
#

def comment_to_dict(comment: Comment) -> Dict[str, Any]:
    return {
        "id": comment.id,
        "product_id": comment.product_id,
        "user_id": comment.user_id,
        "author_name": display_name(comment.author),
        "content": comment.content,
        "rating": comment.rating,
        "created_at": comment.created_at,
    }


def list_comments(db: Session, product_id: str) -> List[Comment]:
    """Comments on a product, newest first. The author profile is joined eagerly."""
    return (
        db.query(Comment)
        .filter(Comment.product_id == product_id)
        .order_by(Comment.created_at.desc(), Comment.id)
        .all()
    )


def create_comment(
    db: Session,
    user_id: Optional[str],
    product_id: str,
    content: str,
    rating: Optional[int] = 5,
) -> Comment:
    """
    The rating range is left to the store's CHECK constraint, so an out-of-range
    value comes back as ConstraintViolation with nothing written.
    """
    user_id = require_user(user_id)
    if not (content or "").strip():
        raise ValidationError("Comment content is required")
    get_product(db, product_id)

    comment = Comment(
        product_id=product_id,
        user_id=user_id,
        content=content.strip(),
        rating=5 if rating is None else rating,
    )
    with transaction(db):
        db.add(comment)
    db.refresh(comment)
    log_event(logger, "catalog", "create_comment", product_id=product_id, user_id=user_id, rating=comment.rating, result="success")
    return comment


def _own_comment(db: Session, user_id: Optional[str], comment_id: str) -> Comment:
    user_id = require_user(user_id)
    comment = db.get(Comment, comment_id)
    if comment is None:
        raise NotFoundError(f"Comment not found: {comment_id}")
    if comment.user_id != user_id:
        raise AuthorizationError("Only the author may modify this comment")
    return comment


def update_comment(
    db: Session,
    user_id: Optional[str],
    comment_id: str,
    content: Optional[str] = None,
    rating: Optional[int] = None,
) -> Comment:
    comment = _own_comment(db, user_id, comment_id)
    if content is not None and not content.strip():
        raise ValidationError("Comment content is required")
    with transaction(db):
        if content is not None:
            comment.content = content.strip()
        if rating is not None:
            comment.rating = rating
    db.refresh(comment)
    log_event(logger, "catalog", "update_comment", comment_id=comment_id, result="success")
    return comment


def delete_comment(db: Session, user_id: Optional[str], comment_id: str) -> None:
    comment = _own_comment(db, user_id, comment_id)
    with transaction(db):
        db.delete(comment)
    log_event(logger, "catalog", "delete_comment", comment_id=comment_id, result="success")
