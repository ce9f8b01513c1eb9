import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pymongo.errors import DuplicateKeyError

from database import as_utc, db, create_document, get_document, get_documents, utcnow
from errors import Forbidden, NotFound, ValidationFailed
from schemas import ChatThread, Message

logger = logging.getLogger(__name__)


def _unread_field(thread: Dict[str, Any], user_id: str) -> str:
    return "unread_count_user1" if thread["participant_ids"].index(user_id) == 0 else "unread_count_user2"


def _participant_thread(user_id: str, thread_id: str) -> Dict[str, Any]:
    thread = get_document("chatthread", thread_id)
    if not thread:
        raise NotFound("Thread not found")
    if user_id not in thread["participant_ids"]:
        raise Forbidden("You are not part of this conversation")
    return thread


def _pair_key(a: str, b: str) -> str:
    return "|".join(sorted([a, b]))


def open_thread(user_id: str, other_user_id: str) -> Dict[str, Any]:
    """Find the two-party thread between user_id and other_user_id, creating it if needed."""
    if user_id == other_user_id:
        raise ValidationFailed("You cannot message yourself")
    if not db["user"].find_one({"email": other_user_id}):
        raise NotFound("User not found")
    existing = db["chatthread"].find_one({"participant_ids": {"$all": [user_id, other_user_id]}})
    if existing:
        return existing
    thread = ChatThread(participant_ids=[user_id, other_user_id], pair_key=_pair_key(user_id, other_user_id))
    try:
        tid = create_document("chatthread", thread)
    except DuplicateKeyError:
        # opened concurrently from the other side
        return db["chatthread"].find_one({"pair_key": thread.pair_key})
    logger.info("chat thread %s opened between %s and %s", tid, user_id, other_user_id)
    return db["chatthread"].find_one({"_id": ObjectId(tid)})


def list_threads(user_id: str) -> List[Dict[str, Any]]:
    threads = get_documents("chatthread", {"participant_ids": user_id})
    threads.sort(key=lambda t: t.get("last_message_at") or t.get("created_at") or datetime.min, reverse=True)
    for t in threads:
        t["unread_count"] = t.get(_unread_field(t, user_id), 0)
        t["other_user_id"] = next(p for p in t["participant_ids"] if p != user_id)
    return threads


def send_message(user_id: str, thread_id: str, content: str) -> str:
    thread = _participant_thread(user_id, thread_id)
    content = (content or "").strip()
    if not content:
        raise ValidationFailed("Message cannot be empty")
    mid = create_document("message", Message(thread_id=thread_id, sender_id=user_id, content=content))
    other = next(p for p in thread["participant_ids"] if p != user_id)
    db["chatthread"].update_one(
        {"_id": thread["_id"]},
        {
            "$set": {
                "last_message": content,
                "last_message_at": utcnow(),
                "last_message_sender_id": user_id,
                "updated_at": utcnow(),
            },
            "$inc": {_unread_field(thread, other): 1},
        },
    )
    return mid


def list_messages(user_id: str, thread_id: str, since: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Messages oldest first. Pass `since` to poll only for newer ones."""
    _participant_thread(user_id, thread_id)
    query: Dict[str, Any] = {"thread_id": thread_id}
    if since is not None:
        query["created_at"] = {"$gt": as_utc(since)}
    return get_documents("message", query, sort=[("created_at", 1)])


def mark_read(user_id: str, thread_id: str) -> None:
    thread = _participant_thread(user_id, thread_id)
    db["chatthread"].update_one({"_id": thread["_id"]}, {"$set": {_unread_field(thread, user_id): 0}})
    db["message"].update_many(
        {"thread_id": thread_id, "sender_id": {"$ne": user_id}, "is_read": False},
        {"$set": {"is_read": True}},
    )


def unread_total(user_id: str) -> int:
    return sum(t["unread_count"] for t in list_threads(user_id))
