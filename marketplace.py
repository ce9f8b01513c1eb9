"""
Skill listings: marketplace browsing plus owner-side listing management.

The browse helpers (`filter_listings`, `sort_listings`, `browse`) are pure
functions over already-fetched listing dicts.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from bson import ObjectId

from config import DEFAULT_MAX_CREDITS
from database import db, create_document, get_document, get_documents, update_document, utcnow
from errors import Forbidden, InvalidTransition, NotFound
from schemas import CourseContent, SkillListing

logger = logging.getLogger(__name__)

CATEGORIES = ["technology", "languages", "music", "art", "business",
              "fitness", "cooking", "crafts", "academics", "other"]
LEVELS = ["beginner", "intermediate", "advanced", "expert"]
SORTS = ["newest", "popular", "rating", "credits_low", "credits_high"]

ACTIVE_SESSION_STATUSES = ["scheduled", "in_progress"]


def _matches_search(listing: Dict[str, Any], query: str) -> bool:
    if query in (listing.get("title") or "").lower():
        return True
    if query in (listing.get("description") or "").lower():
        return True
    return any(query in (tag or "").lower() for tag in listing.get("tags") or [])


def filter_listings(listings: Iterable[Dict[str, Any]], search: str = "",
                    categories: Iterable[str] = (), levels: Iterable[str] = (),
                    max_credits: Optional[int] = DEFAULT_MAX_CREDITS,
                    free_only: bool = False) -> List[Dict[str, Any]]:
    result = list(listings)
    query = (search or "").strip().lower()
    if query:
        result = [l for l in result if _matches_search(l, query)]
    categories = set(categories or ())
    if categories:
        result = [l for l in result if l.get("category") in categories]
    levels = set(levels or ())
    if levels:
        result = [l for l in result if l.get("level") in levels]
    if max_credits is not None:
        result = [l for l in result if l.get("credits_per_hour", 0) <= max_credits]
    if free_only:
        result = [l for l in result if l.get("credits_per_hour", 0) == 0]
    return result


def sort_listings(listings: List[Dict[str, Any]], sort_by: str = "newest") -> List[Dict[str, Any]]:
    if sort_by == "newest":
        return sorted(listings, key=lambda l: l.get("created_at") or datetime.min, reverse=True)
    if sort_by == "popular":
        return sorted(listings, key=lambda l: l.get("total_sessions") or 0, reverse=True)
    if sort_by == "rating":
        return sorted(listings, key=lambda l: l.get("average_rating") or 0, reverse=True)
    if sort_by == "credits_low":
        return sorted(listings, key=lambda l: l.get("credits_per_hour", 0))
    if sort_by == "credits_high":
        return sorted(listings, key=lambda l: l.get("credits_per_hour", 0), reverse=True)
    return list(listings)


def active_filter_count(categories: Iterable[str] = (), levels: Iterable[str] = (),
                        max_credits: Optional[int] = DEFAULT_MAX_CREDITS,
                        free_only: bool = False) -> int:
    count = len(set(categories or ())) + len(set(levels or ()))
    if max_credits is not None and max_credits < DEFAULT_MAX_CREDITS:
        count += 1
    if free_only:
        count += 1
    return count


def browse(search: str = "", categories: Iterable[str] = (), levels: Iterable[str] = (),
           max_credits: Optional[int] = DEFAULT_MAX_CREDITS, free_only: bool = False,
           sort_by: str = "newest") -> List[Dict[str, Any]]:
    """Active listings matching the filters, with a teacher summary attached."""
    listings = get_documents("skilllisting", {"is_active": True, "is_deleted": {"$ne": True}})
    listings = sort_listings(
        filter_listings(listings, search, categories, levels, max_credits, free_only), sort_by)
    owners = {l["user_id"] for l in listings}
    profiles = {p["user_id"]: p for p in db["profile"].find({"user_id": {"$in": list(owners)}})}
    for l in listings:
        p = profiles.get(l["user_id"]) or {}
        l["teacher"] = {
            "username": p.get("username") or l["user_id"].split("@")[0],
            "avatar_url": p.get("avatar_url"),
            "average_rating": p.get("average_rating", 0),
        }
    return listings


# --- Listing management ---

def get_listing(listing_id: str, include_deleted: bool = False) -> Dict[str, Any]:
    listing = get_document("skilllisting", listing_id)
    if not listing or (listing.get("is_deleted") and not include_deleted):
        raise NotFound("Listing not found")
    return listing


def _owned_listing(user_id: str, listing_id: str) -> Dict[str, Any]:
    listing = get_listing(listing_id)
    if listing["user_id"] != user_id:
        raise Forbidden("Only the listing owner can do this")
    return listing


def create_listing(user_id: str, data: Dict[str, Any]) -> str:
    listing = SkillListing(user_id=user_id, **data)
    lid = create_document("skilllisting", listing)
    logger.info("listing %s created by %s", lid, user_id)
    return lid


def update_listing(user_id: str, listing_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
    listing = _owned_listing(user_id, listing_id)
    merged = {k: v for k, v in listing.items() if k in SkillListing.model_fields}
    merged.update(changes)
    validated = SkillListing(**merged).model_dump(include=set(changes))
    if validated:
        update_document("skilllisting", {"_id": listing["_id"]}, validated)
    return get_listing(listing_id)


def toggle_active(user_id: str, listing_id: str) -> bool:
    listing = _owned_listing(user_id, listing_id)
    new_state = not listing.get("is_active", True)
    update_document("skilllisting", {"_id": listing["_id"]}, {"is_active": new_state})
    return new_state


def active_session_count(listing_id: str) -> int:
    return db["session"].count_documents(
        {"skill_listing_id": listing_id, "status": {"$in": ACTIVE_SESSION_STATUSES}})


def delete_listing(user_id: str, listing_id: str) -> None:
    """Soft delete; refused while the listing has scheduled or running sessions."""
    listing = _owned_listing(user_id, listing_id)
    if active_session_count(listing_id) > 0:
        raise InvalidTransition("Listing has active sessions and cannot be deleted")
    update_document("skilllisting", {"_id": listing["_id"]},
                    {"is_deleted": True, "deleted_at": utcnow(), "is_active": False})
    logger.info("listing %s deleted by %s", listing_id, user_id)


def my_listings(user_id: str) -> List[Dict[str, Any]]:
    listings = get_documents("skilllisting", {"user_id": user_id, "is_deleted": {"$ne": True}},
                             sort=[("created_at", -1)])
    for l in listings:
        lid = str(l["_id"])
        l["active_sessions"] = active_session_count(lid)
        l["content_count"] = db["coursecontent"].count_documents({"skill_listing_id": lid})
    return listings


# --- Course content ---

def has_content_access(user_id: Optional[str], listing: Dict[str, Any]) -> bool:
    if not user_id:
        return False
    if listing["user_id"] == user_id:
        return True
    return db["session"].count_documents(
        {"learner_id": user_id, "skill_listing_id": str(listing["_id"])}) > 0


def add_content(user_id: str, listing_id: str, data: Dict[str, Any]) -> str:
    _owned_listing(user_id, listing_id)
    return create_document("coursecontent", CourseContent(skill_listing_id=listing_id, **data))


def list_content(user_id: str, listing_id: str) -> List[Dict[str, Any]]:
    listing = get_listing(listing_id)
    if not has_content_access(user_id, listing):
        raise Forbidden("Book a session to unlock course content")
    return get_documents("coursecontent", {"skill_listing_id": listing_id}, sort=[("created_at", 1)])


def delete_content(user_id: str, content_id: str) -> None:
    content = get_document("coursecontent", content_id)
    if not content:
        raise NotFound("Content not found")
    _owned_listing(user_id, content["skill_listing_id"])
    db["coursecontent"].delete_one({"_id": ObjectId(content_id)})


def listing_detail(user_id: Optional[str], listing_id: str) -> Dict[str, Any]:
    listing = get_listing(listing_id)
    teacher = db["profile"].find_one({"user_id": listing["user_id"]})
    reviews = get_documents("review", {"skill_listing_id": listing_id}, sort=[("created_at", -1)])
    access = has_content_access(user_id, listing)
    contents = get_documents("coursecontent", {"skill_listing_id": listing_id}) if access else []
    return {
        "listing": listing,
        "teacher": teacher,
        "reviews": reviews,
        "is_own_listing": user_id == listing["user_id"],
        "has_content_access": access,
        "course_contents": contents,
        "content_count": db["coursecontent"].count_documents({"skill_listing_id": listing_id}),
    }
