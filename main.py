import os
import hashlib
import logging
import secrets
import sys
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional, List, Dict, Any, Literal
from fastapi import FastAPI, HTTPException, Depends, Header, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, EmailStr, Field
from bson import ObjectId

from config import ADMIN_EMAILS, AUTH_SALT, CORS_ORIGINS, CREDIT_PACKS, DEFAULT_MAX_CREDITS, LOG_LEVEL, PORT
from database import db, create_document, ensure_indexes, get_document, get_documents, serialize, serialize_all, utcnow
from errors import NotFound, register_exception_handlers
from schemas import (AvailabilitySlot, Category, ChatThread, CourseContent, CreditTransaction, Level, Message,
                     Notification, Profile, Referral, Report, Review, Session, SessionRequest, SkillListing,
                     User, Wallet)
import chat
import exchange
import ledger
import marketplace
import notifications
import profiles

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger("skillswap")


@asynccontextmanager
async def lifespan(app: FastAPI):
    if db is not None:
        ensure_indexes()
    else:
        logger.warning("DATABASE_URL/DATABASE_NAME not set; running without a database")
    yield


app = FastAPI(title="SkillSwap API", version="0.2.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
register_exception_handlers(app)

# --- Helpers ---

def hash_password(pw: str) -> str:
    return hashlib.sha256((AUTH_SALT + pw).encode()).hexdigest()


def oid(val: Any) -> ObjectId:
    if isinstance(val, ObjectId):
        return val
    try:
        return ObjectId(str(val))
    except Exception:
        raise HTTPException(400, detail="Invalid id format")


def _user_for_token(authorization: Optional[str]):
    token = authorization.replace("Bearer ", "").strip()
    session = db["token"].find_one({"token": token})
    if not session:
        return None
    user = db["user"].find_one({"_id": session["user_id"]})
    if user:
        user["id"] = str(user["_id"])
    return user


def get_user_by_token(authorization: Optional[str] = Header(None)):
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing token")
    user = _user_for_token(authorization)
    if not user:
        raise HTTPException(status_code=401, detail="Invalid token")
    return user


def get_optional_user(authorization: Optional[str] = Header(None)):
    if not authorization:
        return None
    return _user_for_token(authorization)


def require_admin(user=Depends(get_user_by_token)):
    if user["role"] != "admin":
        raise HTTPException(403, detail="Admins only")
    return user

# --- Health ---
@app.get("/")
def root():
    return {"name": "SkillSwap API", "status": "ok"}

@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if db is not None:
            response["database"] = "✅ Available"
            response["connection_status"] = "Connected"
            response["collections"] = db.list_collection_names()
    except Exception as e:
        logger.warning("database check failed: %s", e)
        response["database"] = f"⚠️ Error {str(e)[:60]}"
    return response

# --- Auth ---
class RegisterPayload(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=6)
    name: str

@app.post("/auth/register")
def register(payload: RegisterPayload):
    email = payload.email.lower()
    if db["user"].find_one({"email": email}):
        raise HTTPException(400, detail="Email already registered")
    user_doc = User(
        email=email,
        password_hash=hash_password(payload.password),
        name=payload.name,
        role="admin" if email in ADMIN_EMAILS else "user",
    ).model_dump()
    user_id = create_document("user", user_doc)
    logger.info("registered %s", email)
    return {"message": "Registration successful", "user_id": user_id}

class LoginPayload(BaseModel):
    email: EmailStr
    password: str

@app.post("/auth/login")
def login(payload: LoginPayload):
    user = db["user"].find_one({"email": payload.email.lower()})
    if not user or user.get("password_hash") != hash_password(payload.password):
        raise HTTPException(401, detail="Invalid credentials")
    token = secrets.token_hex(24)
    db["token"].insert_one({"token": token, "user_id": user["_id"], "role": user["role"], "created_at": utcnow()})
    profile = profiles.get_profile(user["email"])
    return {
        "token": token,
        "role": user["role"],
        "name": user.get("name"),
        "onboarding_completed": bool(profile and profile.get("onboarding_completed")),
    }

@app.post("/auth/logout")
def logout(authorization: Optional[str] = Header(None), user=Depends(get_user_by_token)):
    db["token"].delete_one({"token": authorization.replace("Bearer ", "").strip()})
    return {"status": "ok"}

@app.get("/me")
def me(user=Depends(get_user_by_token)):
    user.pop("password_hash", None)
    user.pop("_id", None)
    profile = profiles.get_profile(user["email"])
    return {
        "user": user,
        "profile": serialize(profile),
        "unread_notifications": notifications.unread_count(user["email"]),
        "unread_messages": chat.unread_total(user["email"]),
    }

# --- Profiles ---
class ProfilePayload(BaseModel):
    username: str
    bio: Optional[str] = None
    languages: List[str] = ["English"]
    timezone: str = "UTC+00:00"
    avatar_url: Optional[str] = None
    skills_to_teach: List[str] = []
    skills_to_learn: List[str] = []
    availability: List[AvailabilitySlot] = []

class OnboardingPayload(ProfilePayload):
    referral_code: Optional[str] = None

@app.post("/onboarding")
def onboarding(payload: OnboardingPayload, user=Depends(get_user_by_token)):
    data = payload.model_dump(exclude={"referral_code"})
    profile = profiles.onboard(user, data, payload.referral_code)
    return serialize(profile)

class SettingsPayload(BaseModel):
    username: Optional[str] = None
    bio: Optional[str] = None
    languages: Optional[List[str]] = None
    timezone: Optional[str] = None
    avatar_url: Optional[str] = None
    skills_to_teach: Optional[List[str]] = None
    skills_to_learn: Optional[List[str]] = None
    availability: Optional[List[AvailabilitySlot]] = None
    email_notifications: Optional[bool] = None
    push_notifications: Optional[bool] = None

@app.get("/profile")
def my_profile(user=Depends(get_user_by_token)):
    view = profiles.profile_view(user_id=user["email"])
    return _serialize_profile_view(view)

@app.patch("/profile")
def update_profile(payload: SettingsPayload, user=Depends(get_user_by_token)):
    profile = profiles.update_settings(user["email"], payload.model_dump(exclude_unset=True))
    return serialize(profile)

@app.get("/profiles/{username}")
def public_profile(username: str):
    return _serialize_profile_view(profiles.profile_view(username=username))

def _serialize_profile_view(view: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "profile": serialize(view["profile"]),
        "listings": serialize_all(view["listings"]),
        "reviews": serialize_all(view["reviews"]),
    }

# --- Marketplace ---
@app.get("/marketplace")
def browse_marketplace(
    search: str = "",
    categories: List[str] = Query(default=[]),
    levels: List[str] = Query(default=[]),
    max_credits: Optional[int] = DEFAULT_MAX_CREDITS,
    free_only: bool = False,
    sort: str = "newest",
):
    if sort not in marketplace.SORTS:
        raise HTTPException(400, detail=f"sort must be one of {', '.join(marketplace.SORTS)}")
    listings = marketplace.browse(search, categories, levels, max_credits, free_only, sort)
    return {
        "results": serialize_all(listings),
        "count": len(listings),
        "active_filters": marketplace.active_filter_count(categories, levels, max_credits, free_only),
    }

@app.get("/marketplace/options")
def marketplace_options():
    return {"categories": marketplace.CATEGORIES, "levels": marketplace.LEVELS, "sorts": marketplace.SORTS,
            "default_max_credits": DEFAULT_MAX_CREDITS}

# --- Listings ---
class ListingPayload(BaseModel):
    title: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    category: Category
    level: Level
    credits_per_hour: int = Field(15, ge=0)
    tags: List[str] = []
    cover_image: Optional[str] = None

class ListingUpdatePayload(BaseModel):
    title: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = Field(None, min_length=1)
    category: Optional[Category] = None
    level: Optional[Level] = None
    credits_per_hour: Optional[int] = Field(None, ge=0)
    tags: Optional[List[str]] = None
    cover_image: Optional[str] = None

@app.post("/listings")
def create_listing(payload: ListingPayload, user=Depends(get_user_by_token)):
    lid = marketplace.create_listing(user["email"], payload.model_dump())
    return {"listing_id": lid}

@app.get("/listings/mine")
def my_listings(user=Depends(get_user_by_token)):
    return serialize_all(marketplace.my_listings(user["email"]))

@app.get("/listings/{listing_id}")
def listing_detail(listing_id: str, user=Depends(get_optional_user)):
    detail = marketplace.listing_detail(user["email"] if user else None, listing_id)
    detail["listing"] = serialize(detail["listing"])
    detail["teacher"] = serialize(detail["teacher"])
    detail["reviews"] = serialize_all(detail["reviews"])
    detail["course_contents"] = serialize_all(detail["course_contents"])
    return detail

@app.patch("/listings/{listing_id}")
def edit_listing(listing_id: str, payload: ListingUpdatePayload, user=Depends(get_user_by_token)):
    listing = marketplace.update_listing(user["email"], listing_id, payload.model_dump(exclude_unset=True))
    return serialize(listing)

@app.post("/listings/{listing_id}/toggle")
def toggle_listing(listing_id: str, user=Depends(get_user_by_token)):
    return {"is_active": marketplace.toggle_active(user["email"], listing_id)}

@app.delete("/listings/{listing_id}")
def delete_listing(listing_id: str, user=Depends(get_user_by_token)):
    marketplace.delete_listing(user["email"], listing_id)
    return {"status": "ok"}

class ContentPayload(BaseModel):
    type: Literal["VIDEO", "PDF"] = "VIDEO"
    title: str
    description: Optional[str] = None
    file_url: str

@app.post("/listings/{listing_id}/content")
def add_course_content(listing_id: str, payload: ContentPayload, user=Depends(get_user_by_token)):
    cid = marketplace.add_content(user["email"], listing_id, payload.model_dump())
    return {"content_id": cid}

@app.get("/listings/{listing_id}/content")
def course_content(listing_id: str, user=Depends(get_user_by_token)):
    return serialize_all(marketplace.list_content(user["email"], listing_id))

@app.delete("/content/{content_id}")
def delete_course_content(content_id: str, user=Depends(get_user_by_token)):
    marketplace.delete_content(user["email"], content_id)
    return {"status": "ok"}

# --- Session requests ---
class RequestPayload(BaseModel):
    skill_listing_id: str
    proposed_date: datetime
    duration_hours: int = Field(1, ge=1, le=12)
    message: Optional[str] = None

@app.post("/requests")
def send_request(payload: RequestPayload, user=Depends(get_user_by_token)):
    rid = exchange.create_request(user, payload.skill_listing_id, payload.proposed_date,
                                  payload.duration_hours, payload.message)
    return {"request_id": rid}

@app.get("/requests")
def my_requests(direction: str = "received", user=Depends(get_user_by_token)):
    if direction not in ("received", "sent"):
        raise HTTPException(400, detail="direction must be 'received' or 'sent'")
    return serialize_all(exchange.list_requests(user["email"], direction))

@app.post("/requests/{request_id}/accept")
def accept_request(request_id: str, user=Depends(get_user_by_token)):
    return serialize(exchange.accept_request(user, request_id))

class DeclinePayload(BaseModel):
    reason: Optional[str] = None

@app.post("/requests/{request_id}/decline")
def decline_request(request_id: str, payload: DeclinePayload, user=Depends(get_user_by_token)):
    exchange.decline_request(user, request_id, payload.reason)
    return {"status": "declined"}

class CounterPayload(BaseModel):
    new_date: datetime

@app.post("/requests/{request_id}/counter")
def counter_request(request_id: str, payload: CounterPayload, user=Depends(get_user_by_token)):
    exchange.counter_propose(user, request_id, payload.new_date)
    return {"status": "counter_proposed"}

@app.post("/requests/{request_id}/cancel")
def cancel_request(request_id: str, user=Depends(get_user_by_token)):
    exchange.cancel_request(user, request_id)
    return {"status": "cancelled"}

# --- Sessions ---
@app.get("/sessions")
def my_sessions(view: str = "all", user=Depends(get_user_by_token)):
    if view not in ("all", "upcoming", "today", "past"):
        raise HTTPException(400, detail="view must be one of all, upcoming, today, past")
    sessions = serialize_all(exchange.list_sessions(user["email"], view))
    reviewed = set(exchange.reviewed_session_ids(user["email"]))
    for s in sessions:
        s["reviewed"] = s["id"] in reviewed
    return sessions

@app.get("/sessions/{session_id}/room")
def session_room(session_id: str, user=Depends(get_user_by_token)):
    return exchange.room_for(user["email"], session_id)

@app.post("/sessions/{session_id}/start")
def start_session(session_id: str, user=Depends(get_user_by_token)):
    return serialize(exchange.start_session(user, session_id))

class CancelPayload(BaseModel):
    reason: Optional[str] = None

@app.post("/sessions/{session_id}/cancel")
def cancel_session(session_id: str, payload: CancelPayload, user=Depends(get_user_by_token)):
    return serialize(exchange.cancel_session(user, session_id, payload.reason))

@app.post("/sessions/{session_id}/complete")
def complete_session(session_id: str, user=Depends(get_user_by_token)):
    return serialize(exchange.complete_session(user, session_id))

class DisputePayload(BaseModel):
    reason: str = Field(..., min_length=1)

@app.post("/sessions/{session_id}/dispute")
def dispute_session(session_id: str, payload: DisputePayload, user=Depends(get_user_by_token)):
    return serialize(exchange.dispute_session(user, session_id, payload.reason))

class ReviewPayload(BaseModel):
    rating: int = Field(5, ge=1, le=5)
    comment: Optional[str] = None

@app.post("/sessions/{session_id}/review")
def review_session(session_id: str, payload: ReviewPayload, user=Depends(get_user_by_token)):
    rid = exchange.submit_review(user, session_id, payload.rating, payload.comment)
    return {"review_id": rid}

# --- Chat ---
class ThreadPayload(BaseModel):
    other_user_id: str

@app.get("/threads")
def my_threads(user=Depends(get_user_by_token)):
    return serialize_all(chat.list_threads(user["email"]))

@app.post("/threads")
def open_thread(payload: ThreadPayload, user=Depends(get_user_by_token)):
    return serialize(chat.open_thread(user["email"], payload.other_user_id))

@app.get("/threads/{thread_id}/messages")
def thread_messages(thread_id: str, since: Optional[datetime] = None, user=Depends(get_user_by_token)):
    return serialize_all(chat.list_messages(user["email"], thread_id, since))

class MessagePayload(BaseModel):
    content: str = Field(..., min_length=1)

@app.post("/threads/{thread_id}/messages")
def send_message(thread_id: str, payload: MessagePayload, user=Depends(get_user_by_token)):
    return {"message_id": chat.send_message(user["email"], thread_id, payload.content)}

@app.post("/threads/{thread_id}/read")
def read_thread(thread_id: str, user=Depends(get_user_by_token)):
    chat.mark_read(user["email"], thread_id)
    return {"status": "ok"}

@app.get("/messages/unread")
def unread_messages(user=Depends(get_user_by_token)):
    return {"unread": chat.unread_total(user["email"])}

# --- Notifications ---
@app.get("/notifications")
def my_notifications(unread_only: bool = False, user=Depends(get_user_by_token)):
    return serialize_all(notifications.list_for(user["email"], unread_only))

@app.get("/notifications/unread-count")
def notifications_unread(user=Depends(get_user_by_token)):
    return {"unread": notifications.unread_count(user["email"])}

@app.post("/notifications/read-all")
def notifications_read_all(user=Depends(get_user_by_token)):
    return {"updated": notifications.mark_all_read(user["email"])}

@app.post("/notifications/{notification_id}/read")
def notification_read(notification_id: str, user=Depends(get_user_by_token)):
    notifications.mark_read(user["email"], notification_id)
    return {"status": "ok"}

# --- Wallet ---
@app.get("/wallet")
def my_wallet(limit: int = 50, user=Depends(get_user_by_token)):
    wallet = db["wallet"].find_one({"user_id": user["email"]})
    if wallet is None:
        wallet = Wallet(user_id=user["email"]).model_dump()
    return {
        "wallet": ledger.public_wallet(wallet),
        "transactions": serialize_all(ledger.list_transactions(user["email"], limit)),
    }

@app.get("/wallet/packs")
def credit_packs():
    return [dict(pack, index=i) for i, pack in enumerate(CREDIT_PACKS)]

class PurchasePayload(BaseModel):
    pack_index: int

@app.post("/wallet/purchase")
def purchase_credits(payload: PurchasePayload, idempotency_key: Optional[str] = Header(None),
                     user=Depends(get_user_by_token)):
    wallet = ledger.purchase_pack(user["email"], payload.pack_index, idempotency_key)
    return ledger.public_wallet(wallet)

# --- Reports ---
class ReportPayload(BaseModel):
    reason: str = Field(..., min_length=1)
    description: Optional[str] = None
    reported_user_id: Optional[str] = None
    skill_listing_id: Optional[str] = None
    session_id: Optional[str] = None

@app.post("/reports")
def create_report(payload: ReportPayload, user=Depends(get_user_by_token)):
    if not (payload.reported_user_id or payload.skill_listing_id or payload.session_id):
        raise HTTPException(400, detail="A report needs a user, listing or session")
    r = Report(reporter_id=user["email"], **payload.model_dump()).model_dump()
    rid = create_document("report", r)
    logger.info("report %s filed by %s", rid, user["email"])
    return {"report_id": rid}

# --- Admin endpoints ---
@app.get("/admin/overview")
def admin_overview(admin=Depends(require_admin)):
    return {
        "users": db["user"].count_documents({}),
        "profiles": db["profile"].count_documents({}),
        "listings": db["skilllisting"].count_documents({"is_deleted": {"$ne": True}}),
        "sessions": db["session"].count_documents({}),
        "completed_sessions": db["session"].count_documents({"status": "completed"}),
        "disputed_sessions": db["session"].count_documents({"status": "disputed"}),
        "pending_reports": db["report"].count_documents({"status": "pending"}),
        "credits_in_circulation": ledger.credits_in_circulation(),
    }

@app.get("/admin/users")
def admin_users(admin=Depends(require_admin)):
    wallets = {w["user_id"]: w for w in db["wallet"].find({})}
    results = []
    for u in db["user"].find({}):
        w = wallets.get(u["email"]) or {}
        results.append({
            "id": str(u["_id"]),
            "email": u["email"],
            "name": u.get("name"),
            "role": u.get("role", "user"),
            "balance": w.get("balance", 0),
            "held": w.get("held", 0),
        })
    return results

class AdjustPayload(BaseModel):
    user_id: str
    amount: int
    reason: str = Field(..., min_length=1)

@app.post("/admin/credits")
def admin_adjust_credits(payload: AdjustPayload, idempotency_key: Optional[str] = Header(None),
                         admin=Depends(require_admin)):
    if not db["user"].find_one({"email": payload.user_id}):
        raise NotFound("User not found")
    wallet, applied = ledger.adjust(payload.user_id, payload.amount, payload.reason, idempotency_key)
    if applied:
        notifications.notify(payload.user_id, "system", "Credit Adjustment",
                             f"Your credit balance has been adjusted by {payload.amount}. Reason: {payload.reason}",
                             link="Wallet")
    return ledger.public_wallet(wallet)

@app.get("/admin/reports")
def admin_reports(status: Optional[str] = None, admin=Depends(require_admin)):
    query = {"status": status} if status else {}
    return serialize_all(get_documents("report", query, sort=[("created_at", -1)]))

class ResolveReportPayload(BaseModel):
    status: str = "resolved"  # resolved | dismissed
    notes: Optional[str] = None

@app.post("/admin/reports/{report_id}/resolve")
def admin_resolve_report(report_id: str, payload: ResolveReportPayload, admin=Depends(require_admin)):
    if payload.status not in ("resolved", "dismissed"):
        raise HTTPException(400, detail="status must be 'resolved' or 'dismissed'")
    if not get_document("report", report_id):
        raise NotFound("Report not found")
    db["report"].update_one({"_id": oid(report_id)}, {"$set": {
        "status": payload.status,
        "admin_notes": payload.notes,
        "resolved_at": utcnow(),
        "updated_at": utcnow(),
    }})
    return serialize(get_document("report", report_id))

class ResolveDisputePayload(BaseModel):
    outcome: str  # complete | refund

@app.post("/admin/sessions/{session_id}/resolve")
def admin_resolve_dispute(session_id: str, payload: ResolveDisputePayload, admin=Depends(require_admin)):
    return serialize(exchange.resolve_dispute(session_id, payload.outcome))

@app.post("/admin/reconcile")
def admin_reconcile(admin=Depends(require_admin)):
    return exchange.settle_pending()

# Simple schemas endpoint
@app.get("/schema")
def get_schema():
    return {
        model.__name__: model.model_json_schema()
        for model in (User, Profile, SkillListing, CourseContent, SessionRequest, Session, Review,
                      ChatThread, Message, Wallet, CreditTransaction, Referral, Notification, Report)
    }

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=PORT)
