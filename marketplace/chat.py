"""
Buyer/seller chat.

Messages are plain rows; live delivery goes through the change feed. A
Conversation keeps the in-memory view of one pair: history on open, then live
inserts filtered on the server side by participant pair, deduplicated by id and
ordered by (created_at, id).
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from marketplace.accounts import display_name, find_profile, require_user
from marketplace.database import transaction
from marketplace.errors import AuthorizationError, NotFoundError, ValidationError
from marketplace.models import Message, Profile
from marketplace.realtime import MESSAGES, ChangeFeed, Subscription
from marketplace.utils.logger import get_logger, log_event

logger = get_logger("chat")

MAX_MESSAGE_LENGTH = 2000


def message_to_dict(message: Message) -> Dict[str, Any]:
    return {
        "id": message.id,
        "sender_id": message.sender_id,
        "receiver_id": message.receiver_id,
        "content": message.content,
        "product_id": message.product_id,
        "order_id": message.order_id,
        "read": message.read,
        "created_at": message.created_at,
    }


def _pair_filter(user_id: str, partner_id: str):
    return or_(
        and_(Message.sender_id == user_id, Message.receiver_id == partner_id),
        and_(Message.sender_id == partner_id, Message.receiver_id == user_id),
    )


def pair_predicate(user_id: str, partner_id: str) -> Callable[[Dict[str, Any]], bool]:
    """Accept only messages exchanged between the two participants."""
    pair = {user_id, partner_id}

    def accept(row: Dict[str, Any]) -> bool:
        return {row.get("sender_id"), row.get("receiver_id")} == pair and row.get("sender_id") != row.get("receiver_id")

    return accept


def send_message(
    db: Session,
    sender_id: Optional[str],
    receiver_id: str,
    content: str,
    product_id: Optional[str] = None,
    order_id: Optional[str] = None,
    feed: Optional[ChangeFeed] = None,
) -> Message:
    """Write one message and publish it. No retry on failure."""
    sender_id = require_user(sender_id)
    content = (content or "").strip()
    if not content:
        raise ValidationError("Message content is required")
    if len(content) > MAX_MESSAGE_LENGTH:
        raise ValidationError(f"Message is longer than {MAX_MESSAGE_LENGTH} characters")
    if receiver_id == sender_id:
        raise ValidationError("Cannot send a message to yourself")
    if find_profile(db, receiver_id) is None:
        raise NotFoundError(f"Receiver not found: {receiver_id}")

    message = Message(
        sender_id=sender_id,
        receiver_id=receiver_id,
        content=content,
        product_id=product_id,
        order_id=order_id,
        read=False,
    )
    with transaction(db):
        db.add(message)
    db.refresh(message)
    log_event(logger, "chat", "send_message", sender_id=sender_id, receiver_id=receiver_id, message_id=message.id, result="success")

    if feed is not None:
        feed.publish(MESSAGES, message_to_dict(message))
    return message


def load_history(db: Session, user_id: Optional[str], partner_id: str, product_id: Optional[str] = None) -> List[Message]:
    """Messages between the pair, oldest first. `product_id` narrows to one product's thread."""
    user_id = require_user(user_id)
    query = db.query(Message).filter(_pair_filter(user_id, partner_id))
    if product_id:
        query = query.filter(Message.product_id == product_id)
    return query.order_by(Message.created_at, Message.id).all()


def mark_read(db: Session, message_id: str, user_id: Optional[str]) -> Message:
    user_id = require_user(user_id)
    message = db.get(Message, message_id)
    if message is None:
        raise NotFoundError(f"Message not found: {message_id}")
    if message.receiver_id != user_id:
        log_event(logger, "chat", "mark_read", level=logging.WARNING, message_id=message_id, user_id=user_id, result="denied")
        raise AuthorizationError("Only the receiver may mark a message read")
    if not message.read:
        with transaction(db):
            message.read = True
        db.refresh(message)
    return message


def mark_conversation_read(db: Session, user_id: Optional[str], partner_id: str) -> int:
    """Mark every unread message from `partner_id` to the user. Returns how many changed."""
    user_id = require_user(user_id)
    with transaction(db):
        updated = (
            db.query(Message)
            .filter(Message.sender_id == partner_id, Message.receiver_id == user_id, Message.read.is_(False))
            .update({Message.read: True}, synchronize_session=False)
        )
    log_event(logger, "chat", "mark_conversation_read", user_id=user_id, partner_id=partner_id, updated=updated)
    return updated


def list_conversations(db: Session, user_id: Optional[str]) -> List[Dict[str, Any]]:
    """One summary per chat partner, most recent conversation first."""
    user_id = require_user(user_id)
    messages = (
        db.query(Message)
        .filter(or_(Message.sender_id == user_id, Message.receiver_id == user_id))
        .order_by(Message.created_at.desc(), Message.id.desc())
        .all()
    )

    summaries: Dict[str, Dict[str, Any]] = {}
    for message in messages:
        partner_id = message.receiver_id if message.sender_id == user_id else message.sender_id
        summary = summaries.get(partner_id)
        if summary is None:
            summary = summaries[partner_id] = {
                "user_id": partner_id,
                "last_message": message.content,
                "last_message_time": message.created_at,
                "unread_count": 0,
                "product_id": message.product_id,
            }
        if message.receiver_id == user_id and not message.read:
            summary["unread_count"] += 1

    if summaries:
        profiles = {
            p.user_id: p
            for p in db.query(Profile).filter(Profile.user_id.in_(list(summaries))).all()
        }
        for partner_id, summary in summaries.items():
            profile = profiles.get(partner_id)
            summary["user_name"] = display_name(profile)
            summary["user_role"] = profile.role if profile else None
    return list(summaries.values())


def _sort_key(row: Dict[str, Any]):
    created = row["created_at"]
    if isinstance(created, datetime) and created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)
    return created, row["id"]


class Conversation:
    """
    Live view of the chat between `user_id` and `partner_id`.

    `messages` holds plain dicts (see message_to_dict). `on_message` is called
    with every live message that was not already in the list.
    """

    def __init__(
        self,
        db: Session,
        feed: ChangeFeed,
        user_id: str,
        partner_id: str,
        product_id: Optional[str] = None,
        on_message: Optional[Callable[[Dict[str, Any]], None]] = None,
    ) -> None:
        self.db = db
        self.feed = feed
        self.user_id = user_id
        self.partner_id = partner_id
        self.product_id = product_id
        self.on_message = on_message
        self.messages: List[Dict[str, Any]] = []
        self._ids = set()
        self._lock = threading.Lock()
        self._opened = False
        self._subscription: Optional[Subscription] = None

    @property
    def is_open(self) -> bool:
        return self._subscription is not None

    def open(self) -> List[Dict[str, Any]]:
        """
        Subscribe, load history and mark the partner's messages read.

        Returns the snapshot. Live messages that arrive while opening are part
        of it and are not passed to `on_message`.
        """
        # Subscribe first so nothing sent while history loads is lost; dedup absorbs overlap.
        self._subscription = self.feed.subscribe(
            MESSAGES, pair_predicate(self.user_id, self.partner_id), self._receive
        )
        history = load_history(self.db, self.user_id, self.partner_id, self.product_id)
        with self._lock:
            for message in history:
                self._merge(message_to_dict(message))
            self._opened = True
            snapshot = list(self.messages)
        mark_conversation_read(self.db, self.user_id, self.partner_id)
        log_event(logger, "chat", "open", user_id=self.user_id, partner_id=self.partner_id, history=len(history))
        return snapshot

    def _merge(self, row: Dict[str, Any]) -> bool:
        if row["id"] in self._ids:
            return False
        self._ids.add(row["id"])
        self.messages.append(row)
        self.messages.sort(key=_sort_key)
        return True

    def _receive(self, row: Dict[str, Any]) -> None:
        if self.product_id and row.get("product_id") not in (None, self.product_id):
            return
        with self._lock:
            forward = self._merge(dict(row)) and self._opened
        if forward and self.on_message is not None:
            self.on_message(row)

    def send(self, content: str, order_id: Optional[str] = None) -> Message:
        return send_message(
            self.db, self.user_id, self.partner_id, content,
            product_id=self.product_id, order_id=order_id, feed=self.feed,
        )

    def close(self) -> None:
        if self._subscription is not None:
            self.feed.unsubscribe(self._subscription)
            self._subscription = None
        self._opened = False
