"""
Chats between a restaurant and an NGO, and unread tracking.

Each side keeps its own read watermark (`lastReadByRestaurant`,
`lastReadByNGO`). A message is unread for a user when someone else sent it
after that user's watermark, or when the user has no watermark yet.
"""
import logging
from datetime import datetime, timedelta
from typing import Iterable, Optional

from pymongo import ReturnDocument

from database import find_by_id, utcnow
from errors import InvalidStateError, NotFoundError, PermissionDeniedError, ValidationError
from schemas import ROLE_RESTAURANT, Chat, ChatMessage
from security import Session

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 1000
MAX_SEND_ATTEMPTS = 5
ONE_MILLISECOND = timedelta(milliseconds=1)
WATERMARK_FIELDS = ("lastReadByRestaurant", "lastReadByNGO")


def watermark_field(role: str) -> str:
    return "lastReadByRestaurant" if role == ROLE_RESTAURANT else "lastReadByNGO"


def unread_count(chat: dict, user_id, role: str) -> int:
    watermark = chat.get(watermark_field(role))
    count = 0
    for msg in chat.get("messages") or []:
        if str(msg.get("sender")) == str(user_id):
            continue
        if watermark is None or msg["timestamp"] > watermark:
            count += 1
    return count


def total_unread(chat_list: Iterable[dict], user_id, role: str) -> int:
    return sum(unread_count(chat, user_id, role) for chat in chat_list)


def last_activity(chat: dict) -> datetime:
    messages = chat.get("messages") or []
    if messages:
        return messages[-1]["timestamp"]
    return chat.get("createdAt") or datetime.min


def ensure_chat(db, restaurant_id, ngo_id, donation_id=None, now: Optional[datetime] = None) -> dict:
    """Return the chat for this restaurant/NGO pair, creating it if needed."""
    now = now or utcnow()
    fresh = Chat(restaurant=restaurant_id, ngo=ngo_id, donation=donation_id, createdAt=now, updatedAt=now)
    on_insert = fresh.model_dump(exclude={"restaurant", "ngo"}, exclude_none=True)
    return db["chat"].find_one_and_update(
        {"restaurant": restaurant_id, "ngo": ngo_id},
        {"$setOnInsert": on_insert},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )


def chats_for(db, session: Session) -> list:
    side = "restaurant" if session.is_restaurant else "ngo"
    found = list(db["chat"].find({side: session.user_id}))
    found.sort(key=last_activity, reverse=True)
    return found


def load_chat(db, session: Session, chat_id) -> dict:
    chat = find_by_id(db, "chat", chat_id)
    if not chat:
        raise NotFoundError("Chat not found")
    if session.user_id not in (chat.get("restaurant"), chat.get("ngo")):
        raise PermissionDeniedError("You are not part of this conversation")
    return chat


def _next_timestamp(chat: dict, now: datetime) -> datetime:
    """Stamp for a new message: not before the last message, and strictly
    after both read watermarks so it shows up as unread."""
    candidates = [now]
    messages = chat.get("messages") or []
    if messages:
        candidates.append(messages[-1]["timestamp"])
    for field in WATERMARK_FIELDS:
        if chat.get(field) is not None:
            candidates.append(chat[field] + ONE_MILLISECOND)
    return max(candidates)


def send_message(db, session: Session, chat_id, text: Optional[str], now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    body = (text or "").strip()
    if not body:
        raise ValidationError("Message cannot be empty", {"message": "Message cannot be empty"})
    if len(body) > MAX_MESSAGE_LENGTH:
        raise ValidationError("Message is too long", {"message": "Message must be at most %d characters" % MAX_MESSAGE_LENGTH})

    for _ in range(MAX_SEND_ATTEMPTS):
        chat = load_chat(db, session, chat_id)
        msg = ChatMessage(sender=session.user_id, message=body, timestamp=_next_timestamp(chat, now))
        # The push only lands on the snapshot the stamp was computed from.
        query = {"_id": chat["_id"], "messages": {"$size": len(chat.get("messages") or [])}}
        for field in WATERMARK_FIELDS:
            query[field] = chat.get(field)
        updated = db["chat"].find_one_and_update(
            query,
            {"$push": {"messages": msg.model_dump()}, "$set": {"updatedAt": now}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is not None:
            logger.debug("Message appended to chat %s by %s", chat["_id"], session.user_id)
            return updated
        logger.debug("Chat %s changed while sending, retrying", chat["_id"])
    raise InvalidStateError("The conversation is busy, please try again")


def mark_read(db, session: Session, chat_id, now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    chat = load_chat(db, session, chat_id)
    field = watermark_field(session.role)
    messages = chat.get("messages") or []
    stamp = max(now, messages[-1]["timestamp"]) if messages else now
    # Only ever moves the watermark forward.
    updated = db["chat"].find_one_and_update(
        {"_id": chat["_id"], "$or": [{field: None}, {field: {"$lt": stamp}}]},
        {"$set": {field: stamp}},
        return_document=ReturnDocument.AFTER,
    )
    return updated or chat
