import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.orm import Session

from clickwork.models.marketplace import Message, User
from clickwork.services.change_feed import INSERT, change_feed
from clickwork.services.errors import NotFound, ValidationError
from clickwork.services.record_store import RecordStore, parse_id

logger = logging.getLogger(__name__)

MESSAGES_TABLE = "messages"
MAX_MESSAGE_LENGTH = 5000


@dataclass
class Conversation:
    partner_id: str
    first_name: str
    last_name: str
    last_message: str
    last_message_at: datetime
    unread_count: int


def send_message(db: Session, *, sender_id: Any, receiver_id: Any, content: str) -> Message:
    store = RecordStore(db)
    body = (content or "").strip()
    if not body:
        raise ValidationError("Message cannot be empty")
    if len(body) > MAX_MESSAGE_LENGTH:
        raise ValidationError(f"Message exceeds {MAX_MESSAGE_LENGTH} characters")

    sender_key = parse_id(sender_id, "Sender")
    receiver_key = parse_id(receiver_id, "Recipient")
    if sender_key == receiver_key:
        raise ValidationError("Cannot send a message to yourself")
    if store.find_by_id(User, receiver_key) is None:
        raise NotFound("Recipient not found")

    message = store.insert(Message, sender_id=sender_key, receiver_id=receiver_key, content=body, read=False)
    db.commit()
    db.refresh(message)

    change_feed.publish(
        MESSAGES_TABLE,
        INSERT,
        {"id": str(message.id), "sender_id": str(sender_key), "receiver_id": str(receiver_key)},
    )
    return message


def _between(user_key, partner_key):
    return or_(
        and_(Message.sender_id == user_key, Message.receiver_id == partner_key),
        and_(Message.sender_id == partner_key, Message.receiver_id == user_key),
    )


def list_conversations(db: Session, user_id: Any) -> list[Conversation]:
    """Group the user's messages by counterpart, newest conversation first."""
    user_key = parse_id(user_id, "User")
    messages = (
        db.execute(
            select(Message)
            .where(or_(Message.sender_id == user_key, Message.receiver_id == user_key))
            .order_by(Message.created_at.desc())
        )
        .scalars()
        .all()
    )

    grouped: dict[Any, Conversation] = {}
    for message in messages:
        partner_key = message.receiver_id if message.sender_id == user_key else message.sender_id
        conversation = grouped.get(partner_key)
        if conversation is None:
            conversation = Conversation(
                partner_id=str(partner_key),
                first_name="Unknown",
                last_name="User",
                last_message=message.content,
                last_message_at=message.created_at,
                unread_count=0,
            )
            grouped[partner_key] = conversation
        if message.receiver_id == user_key and not message.read:
            conversation.unread_count += 1

    if grouped:
        partners = db.execute(select(User).where(User.id.in_(list(grouped)))).scalars().all()
        for partner in partners:
            conversation = grouped[partner.id]
            conversation.first_name = partner.first_name or "Unknown"
            conversation.last_name = partner.last_name or "User"

    return sorted(grouped.values(), key=lambda c: c.last_message_at, reverse=True)


def get_thread(db: Session, *, user_id: Any, partner_id: Any, mark_read: bool = True) -> list[Message]:
    user_key = parse_id(user_id, "User")
    partner_key = parse_id(partner_id, "User")
    messages = list(
        db.execute(select(Message).where(_between(user_key, partner_key)).order_by(Message.created_at.asc()))
        .scalars()
        .all()
    )
    if mark_read:
        result = db.execute(
            update(Message)
            .where(
                Message.sender_id == partner_key,
                Message.receiver_id == user_key,
                Message.read.is_(False),
            )
            .values(read=True)
            .execution_options(synchronize_session="fetch")
        )
        db.commit()
        if result.rowcount:
            logger.debug("Marked %s messages read user=%s partner=%s", result.rowcount, user_key, partner_key)
    return messages


def unread_count(db: Session, user_id: Any) -> int:
    user_key = parse_id(user_id, "User")
    return int(
        db.execute(
            select(func.count(Message.id)).where(Message.receiver_id == user_key, Message.read.is_(False))
        ).scalar_one()
    )
