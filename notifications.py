import logging
from typing import Any, Dict, List, Optional

from bson import ObjectId

from database import db, create_document, get_documents, utcnow
from errors import NotFound
from schemas import Notification

logger = logging.getLogger(__name__)


def notify(user_id: str, type: str, title: str, message: str, link: Optional[str] = None,
           related_user_id: Optional[str] = None, related_session_id: Optional[str] = None) -> str:
    n = Notification(
        user_id=user_id,
        type=type,
        title=title,
        message=message,
        link=link,
        related_user_id=related_user_id,
        related_session_id=related_session_id,
    )
    nid = create_document("notification", n)
    logger.debug("notification %s (%s) -> %s", nid, type, user_id)
    return nid


def list_for(user_id: str, unread_only: bool = False, limit: int = 100) -> List[Dict[str, Any]]:
    query: Dict[str, Any] = {"user_id": user_id}
    if unread_only:
        query["is_read"] = False
    return get_documents("notification", query, limit=limit, sort=[("created_at", -1)])


def unread_count(user_id: str) -> int:
    return db["notification"].count_documents({"user_id": user_id, "is_read": False})


def mark_read(user_id: str, notification_id: str) -> None:
    try:
        _id = ObjectId(notification_id)
    except Exception:
        raise NotFound("Notification not found")
    result = db["notification"].update_one(
        {"_id": _id, "user_id": user_id},
        {"$set": {"is_read": True, "updated_at": utcnow()}},
    )
    if result.matched_count == 0:
        raise NotFound("Notification not found")


def mark_all_read(user_id: str) -> int:
    result = db["notification"].update_many(
        {"user_id": user_id, "is_read": False},
        {"$set": {"is_read": True, "updated_at": utcnow()}},
    )
    return result.modified_count
