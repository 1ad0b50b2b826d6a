"""
Profiles and role checks.

Identity itself is owned upstream; a profile is the marketplace's view of an
authenticated account. Role is chosen once at creation and never changes.
"""

from typing import Optional

from sqlalchemy.orm import Session

from marketplace.database import transaction
from marketplace.errors import AuthenticationRequired, AuthorizationError, NotFoundError, ValidationError
from marketplace.models import ROLE_BUYER, ROLE_SELLER, Profile
from marketplace.utils.logger import get_logger, log_event

logger = get_logger("accounts")

VALID_ROLES = (ROLE_BUYER, ROLE_SELLER)


def require_user(user_id: Optional[str]) -> str:
    if not user_id:
        raise AuthenticationRequired("Sign in required")
    return user_id


def find_profile(db: Session, user_id: str) -> Optional[Profile]:
    return db.query(Profile).filter(Profile.user_id == user_id).first()


def get_profile(db: Session, user_id: str) -> Profile:
    profile = find_profile(db, user_id)
    if profile is None:
        raise NotFoundError(f"Profile not found: {user_id}")
    return profile


def create_profile(
    db: Session,
    user_id: Optional[str],
    full_name: Optional[str] = None,
    email: Optional[str] = None,
    role: str = ROLE_BUYER,
) -> Profile:
    user_id = require_user(user_id)
    if role not in VALID_ROLES:
        raise ValidationError(f"Unknown role: {role}")
    if find_profile(db, user_id) is not None:
        raise ValidationError("Profile already exists")

    profile = Profile(user_id=user_id, full_name=full_name, email=email, role=role)
    with transaction(db):
        db.add(profile)
    db.refresh(profile)
    log_event(logger, "accounts", "create_profile", user_id=user_id, role=role, result="success")
    return profile


def update_profile(
    db: Session,
    user_id: Optional[str],
    full_name: Optional[str] = None,
    email: Optional[str] = None,
) -> Profile:
    """Update name/email of the caller's own profile."""
    profile = get_profile(db, require_user(user_id))
    with transaction(db):
        if full_name is not None:
            profile.full_name = full_name
        if email is not None:
            profile.email = email
    db.refresh(profile)
    log_event(logger, "accounts", "update_profile", user_id=user_id, result="success")
    return profile


def require_seller(db: Session, user_id: Optional[str]) -> Profile:
    """Return the caller's profile if it has the seller role."""
    profile = find_profile(db, require_user(user_id))
    if profile is None or not profile.is_seller:
        log_event(logger, "accounts", "require_seller", user_id=user_id, result="denied")
        raise AuthorizationError("Seller role required")
    return profile


def display_name(profile: Optional[Profile]) -> str:
    if profile is None:
        return "Unknown User"
    return profile.full_name or profile.email or "Unknown User"
