"""
Session requests, the session lifecycle and reviews.

Every status change is a conditional update on the current status, so two
callers racing on the same request or session cannot both win. Only the
winner of a transition runs its side effects (holding, settling or refunding
credits), and those side effects are idempotent in the ledger, which lets
`settle_pending` safely repeat them after a partial failure.
"""
import logging
import secrets
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

import ledger
from database import as_utc, db, create_document, get_document, get_documents, utcnow
from errors import (DuplicateAction, Forbidden, InsufficientCredits, InvalidTransition,
                    NotFound, SkillSwapError, ValidationFailed)
from marketplace import get_listing
from notifications import notify
from schemas import Review, Session, SessionRequest

logger = logging.getLogger(__name__)

OPEN_SESSION_STATUSES = ["scheduled", "in_progress"]


def _transition(collection: str, doc_id: ObjectId, from_statuses: Iterable[str], to_status: str,
                extra: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
    """Move a document from one of `from_statuses` to `to_status` atomically.

    Returns the updated document, or None when the current status did not allow it.
    """
    values = {"status": to_status, "updated_at": utcnow()}
    values.update(extra or {})
    return db[collection].find_one_and_update(
        {"_id": doc_id, "status": {"$in": list(from_statuses)}},
        {"$set": values},
        return_document=ReturnDocument.AFTER,
    )


def _display(user: Dict[str, Any]) -> str:
    return user.get("name") or user["email"]


# --- Requests ---

def get_request(request_id: str) -> Dict[str, Any]:
    req = get_document("sessionrequest", request_id)
    if not req:
        raise NotFound("Request not found")
    return req


def create_request(user: Dict[str, Any], listing_id: str, proposed_date: datetime,
                   duration_hours: int, message: Optional[str] = None) -> str:
    learner_id = user["email"]
    listing = get_listing(listing_id)
    if not listing.get("is_active", True):
        raise ValidationFailed("This listing is not accepting requests")
    if listing["user_id"] == learner_id:
        raise ValidationFailed("You cannot request your own listing")
    if duration_hours < 1:
        raise ValidationFailed("Duration must be at least one hour")

    total = duration_hours * listing.get("credits_per_hour", 0)
    if total > 0:
        available = ledger.balance_of(learner_id)
        if available < total:
            raise InsufficientCredits(learner_id, total, available)

    req = SessionRequest(
        from_user_id=learner_id,
        to_user_id=listing["user_id"],
        skill_listing_id=listing_id,
        message=message,
        proposed_date=as_utc(proposed_date),
        duration_hours=duration_hours,
        total_credits=total,
    )
    rid = create_document("sessionrequest", req)
    notify(listing["user_id"], "session_request", "New Session Request",
           f"{_display(user)} wants to learn {listing['title']}",
           link="Requests", related_user_id=learner_id)
    logger.info("request %s: %s -> %s for listing %s (%d credits)",
                rid, learner_id, listing["user_id"], listing_id, total)
    return rid


def list_requests(user_id: str, direction: str = "received") -> List[Dict[str, Any]]:
    field = "to_user_id" if direction == "received" else "from_user_id"
    return get_documents("sessionrequest", {field: user_id}, sort=[("created_at", -1)])


def accept_request(user: Dict[str, Any], request_id: str) -> Dict[str, Any]:
    """Accept a request and schedule its session.

    The teacher accepts a pending request; the learner accepts a counter
    proposal. The learner's credits are held until the session ends.
    """
    req = get_request(request_id)
    uid = user["email"]
    if req["status"] == "pending" and uid != req["to_user_id"]:
        raise Forbidden("Only the teacher can accept this request")
    if req["status"] == "counter_proposed" and uid != req["from_user_id"]:
        raise Forbidden("Only the learner can accept a counter proposal")
    if req["status"] not in ("pending", "counter_proposed"):
        raise InvalidTransition(f"Request is {req['status']}")

    previous = req["status"]
    claimed = _transition("sessionrequest", req["_id"], [previous], "accepted")
    if claimed is None:
        raise InvalidTransition("Request was changed by someone else")

    listing = db["skilllisting"].find_one({"_id": ObjectId(req["skill_listing_id"])}) or {}
    session = Session(
        request_id=request_id,
        teacher_id=req["to_user_id"],
        learner_id=req["from_user_id"],
        skill_listing_id=req["skill_listing_id"],
        skill_title=listing.get("title") or "Unknown Skill",
        scheduled_date=req.get("counter_proposed_date") or req["proposed_date"],
        duration_hours=req["duration_hours"],
        credits_amount=req.get("total_credits", 0),
        room_id=f"room_{secrets.token_hex(8)}",
    )
    sid = create_document("session", session)
    session_doc = db["session"].find_one({"_id": ObjectId(sid)})

    held = False
    try:
        held = ledger.hold_for_session(session_doc)
        if held:
            db["session"].update_one({"_id": session_doc["_id"]}, {"$set": {"credits_held": True}})
    except Exception:
        # a session must never stay scheduled without its hold
        if held:
            ledger.refund_hold(session_doc)
        db["session"].delete_one({"_id": session_doc["_id"]})
        db["sessionrequest"].update_one({"_id": req["_id"], "status": "accepted"},
                                        {"$set": {"status": previous, "updated_at": utcnow()}})
        logger.warning("request %s reverted to %s: holding %d credits failed",
                       request_id, previous, session.credits_amount)
        raise

    db["sessionrequest"].update_one({"_id": req["_id"]}, {"$set": {"session_id": sid}})

    other = req["from_user_id"] if uid == req["to_user_id"] else req["to_user_id"]
    notify(other, "request_accepted", "Session Request Accepted!",
           "Your session request has been accepted. Get ready to learn!"
           if other == req["from_user_id"] else "Your proposed time was accepted.",
           link="Sessions", related_session_id=sid)
    logger.info("request %s accepted, session %s scheduled", request_id, sid)
    return db["session"].find_one({"_id": ObjectId(sid)})


def decline_request(user: Dict[str, Any], request_id: str, reason: Optional[str] = None) -> None:
    req = get_request(request_id)
    if user["email"] != req["to_user_id"]:
        raise Forbidden("Only the teacher can decline this request")
    if _transition("sessionrequest", req["_id"], ["pending", "counter_proposed"], "declined",
                   {"decline_reason": reason}) is None:
        raise InvalidTransition("Request can no longer be declined")
    notify(req["from_user_id"], "request_declined", "Session Request Declined",
           reason or "Your session request was declined.", link="Requests")


def counter_propose(user: Dict[str, Any], request_id: str, new_date: datetime) -> None:
    req = get_request(request_id)
    if user["email"] != req["to_user_id"]:
        raise Forbidden("Only the teacher can propose a new time")
    if _transition("sessionrequest", req["_id"], ["pending"], "counter_proposed",
                   {"counter_proposed_date": as_utc(new_date)}) is None:
        raise InvalidTransition("Only pending requests can be counter-proposed")
    notify(req["from_user_id"], "session_request", "New Time Proposed",
           "A new time has been proposed for your session request.", link="Requests")


def cancel_request(user: Dict[str, Any], request_id: str) -> None:
    req = get_request(request_id)
    if user["email"] != req["from_user_id"]:
        raise Forbidden("Only the requester can cancel this request")
    if _transition("sessionrequest", req["_id"], ["pending", "counter_proposed"], "cancelled") is None:
        raise InvalidTransition("Request can no longer be cancelled")


# --- Sessions ---

def get_session(session_id: str) -> Dict[str, Any]:
    session = get_document("session", session_id)
    if not session:
        raise NotFound("Session not found")
    return session


def _participant_session(user_id: str, session_id: str) -> Dict[str, Any]:
    session = get_session(session_id)
    if user_id not in (session["teacher_id"], session["learner_id"]):
        raise Forbidden("You are not part of this session")
    return session


def _other_party(session: Dict[str, Any], user_id: str) -> str:
    return session["learner_id"] if session["teacher_id"] == user_id else session["teacher_id"]


def list_sessions(user_id: str, view: str = "all", now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    sessions = get_documents("session", {"$or": [{"teacher_id": user_id}, {"learner_id": user_id}]})
    sessions.sort(key=lambda s: s["scheduled_date"], reverse=True)
    now = now or utcnow()
    if view == "upcoming":
        return [s for s in sessions if s["status"] in OPEN_SESSION_STATUSES and s["scheduled_date"] > now]
    if view == "today":
        start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        end = start + timedelta(days=1)
        return [s for s in sessions
                if s["status"] in OPEN_SESSION_STATUSES and start <= s["scheduled_date"] < end]
    if view == "past":
        return [s for s in sessions if s["status"] == "completed" or s["scheduled_date"] < now]
    return sessions


def start_session(user: Dict[str, Any], session_id: str) -> Dict[str, Any]:
    session = _participant_session(user["email"], session_id)
    updated = _transition("session", session["_id"], ["scheduled"], "in_progress",
                          {"started_at": utcnow()})
    if updated is None:
        raise InvalidTransition(f"Session is {get_session(session_id)['status']}")
    return updated


def cancel_session(user: Dict[str, Any], session_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
    uid = user["email"]
    session = _participant_session(uid, session_id)
    updated = _transition("session", session["_id"], OPEN_SESSION_STATUSES, "cancelled", {
        "cancelled_at": utcnow(),
        "cancelled_by_user_id": uid,
        "cancel_reason": reason,
    })
    if updated is None:
        raise InvalidTransition(f"Session is {get_session(session_id)['status']}")
    _refund(updated)
    notify(_other_party(updated, uid), "session_cancelled", "Session Cancelled",
           f"Your session for {updated['skill_title']} has been cancelled. "
           f"Reason: {reason or 'No reason provided'}", link="Sessions")
    return get_session(session_id)


def complete_session(user: Dict[str, Any], session_id: str) -> Dict[str, Any]:
    session = _participant_session(user["email"], session_id)
    updated = _transition("session", session["_id"], OPEN_SESSION_STATUSES, "completed",
                          {"ended_at": utcnow()})
    if updated is None:
        raise InvalidTransition(f"Session is {get_session(session_id)['status']}")
    _settle(updated)
    return get_session(session_id)


def dispute_session(user: Dict[str, Any], session_id: str, reason: str) -> Dict[str, Any]:
    uid = user["email"]
    session = _participant_session(uid, session_id)
    updated = _transition("session", session["_id"], OPEN_SESSION_STATUSES, "disputed",
                          {"dispute_reason": reason})
    if updated is None:
        raise InvalidTransition(f"Session is {get_session(session_id)['status']}")
    notify(_other_party(updated, uid), "session_disputed", "Session Disputed",
           f"Your session for {updated['skill_title']} was disputed. An admin will review it.",
           link="Sessions", related_session_id=session_id)
    logger.warning("session %s disputed by %s: %s", session_id, uid, reason)
    return updated


def resolve_dispute(session_id: str, outcome: str) -> Dict[str, Any]:
    """Admin decision on a disputed session: 'complete' pays the teacher, 'refund' returns the hold."""
    session = get_session(session_id)
    if outcome == "complete":
        updated = _transition("session", session["_id"], ["disputed"], "completed", {"ended_at": utcnow()})
        if updated is None:
            raise InvalidTransition("Session is not disputed")
        _settle(updated)
    elif outcome == "refund":
        updated = _transition("session", session["_id"], ["disputed"], "cancelled",
                              {"cancelled_at": utcnow(), "cancel_reason": "Dispute resolved with refund"})
        if updated is None:
            raise InvalidTransition("Session is not disputed")
        _refund(updated)
    else:
        raise ValidationFailed("Outcome must be 'complete' or 'refund'")
    logger.info("dispute on session %s resolved: %s", session_id, outcome)
    return get_session(session_id)


def _settle(session: Dict[str, Any]) -> None:
    """Side effects of a completed session. Runs once per winning transition."""
    sid = str(session["_id"])
    ledger.release_to_teacher(session)
    marked = db["session"].find_one_and_update(
        {"_id": session["_id"], "credits_transferred": {"$ne": True}},
        {"$set": {"credits_transferred": True, "credits_held": False, "updated_at": utcnow()}},
    )
    if marked is None:
        # reconciliation already finished this session
        return

    db["profile"].update_one({"user_id": session["teacher_id"]}, {"$inc": {"total_sessions_taught": 1}})
    db["profile"].update_one({"user_id": session["learner_id"]}, {"$inc": {"total_sessions_learned": 1}})
    try:
        db["skilllisting"].update_one({"_id": ObjectId(session["skill_listing_id"])},
                                      {"$inc": {"total_sessions": 1}})
    except InvalidId:
        logger.warning("session %s points at invalid listing id %s", sid, session["skill_listing_id"])

    amount = session.get("credits_amount", 0)
    notify(session["teacher_id"], "credits_received", "Credits Received",
           f"You earned {amount} credits for teaching {session['skill_title']}",
           link="Wallet", related_session_id=sid)
    notify(session["learner_id"], "session_completed", "Session Completed",
           f"Your session for {session['skill_title']} is complete. Don't forget to leave a review!",
           link="Sessions", related_session_id=sid)
    logger.info("session %s settled: %d credits %s -> %s", sid, amount,
                session["learner_id"], session["teacher_id"])


def _refund(session: Dict[str, Any]) -> None:
    if session.get("credits_held"):
        ledger.refund_hold(session)
        db["session"].update_one({"_id": session["_id"]},
                                 {"$set": {"credits_held": False, "updated_at": utcnow()}})


def settle_pending() -> Dict[str, int]:
    """Finish settlements and refunds that were interrupted part-way.

    A session that still cannot be repaired is logged and counted under
    `failed`; the remaining sessions are processed regardless.
    """
    counts = {"settled": 0, "refunded": 0, "failed": 0}
    for session in db["session"].find({"status": "completed", "credits_transferred": {"$ne": True}}):
        logger.warning("reconciling unsettled session %s", session["_id"])
        try:
            _settle(session)
        except SkillSwapError:
            logger.exception("could not settle session %s", session["_id"])
            counts["failed"] += 1
        else:
            counts["settled"] += 1
    for session in db["session"].find({"status": "cancelled", "credits_held": True}):
        logger.warning("reconciling unrefunded session %s", session["_id"])
        try:
            _refund(session)
        except SkillSwapError:
            logger.exception("could not refund session %s", session["_id"])
            counts["failed"] += 1
        else:
            counts["refunded"] += 1
    return counts


def room_for(user_id: str, session_id: str) -> Dict[str, Any]:
    session = _participant_session(user_id, session_id)
    participants = [session["teacher_id"], session["learner_id"]]
    profiles = {p["user_id"]: p for p in db["profile"].find({"user_id": {"$in": participants}})}
    return {
        "session_id": session_id,
        "room_id": session["room_id"],
        "status": session["status"],
        "is_teacher": user_id == session["teacher_id"],
        "participants": [
            {"user_id": p, "username": (profiles.get(p) or {}).get("username"),
             "avatar_url": (profiles.get(p) or {}).get("avatar_url")}
            for p in participants
        ],
    }


# --- Reviews ---

def submit_review(user: Dict[str, Any], session_id: str, rating: int, comment: Optional[str] = None) -> str:
    uid = user["email"]
    session = _participant_session(uid, session_id)
    if session["status"] != "completed":
        raise InvalidTransition("Only completed sessions can be reviewed")
    is_teacher = session["teacher_id"] == uid
    reviewed = session["learner_id"] if is_teacher else session["teacher_id"]
    review = Review(
        session_id=session_id,
        reviewer_id=uid,
        reviewed_user_id=reviewed,
        skill_listing_id=session["skill_listing_id"],
        rating=rating,
        comment=comment,
        review_type="as_teacher" if is_teacher else "as_learner",
    )
    try:
        rid = create_document("review", review)
    except DuplicateKeyError:
        raise DuplicateAction("You already reviewed this session")

    _refresh_rating("profile", {"user_id": reviewed}, {"reviewed_user_id": reviewed})
    if not is_teacher:
        _refresh_rating("skilllisting", {"_id": ObjectId(session["skill_listing_id"])},
                        {"skill_listing_id": session["skill_listing_id"], "review_type": "as_learner"})
    notify(reviewed, "new_review", "New Review Received",
           f"You received a {rating}-star review!", link="Profile", related_session_id=session_id)
    return rid


def _refresh_rating(collection: str, target: Dict[str, Any], review_filter: Dict[str, Any]) -> None:
    ratings = [r["rating"] for r in db["review"].find(review_filter, {"rating": 1})]
    avg = sum(ratings) / len(ratings) if ratings else 0.0
    db[collection].update_one(target, {"$set": {"average_rating": round(avg, 2),
                                                "total_reviews": len(ratings),
                                                "updated_at": utcnow()}})


def reviewed_session_ids(user_id: str) -> List[str]:
    return [r["session_id"] for r in db["review"].find({"reviewer_id": user_id}, {"session_id": 1})]
