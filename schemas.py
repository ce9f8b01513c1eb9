"""
Database Schemas for SkillSwap

Each Pydantic model corresponds to a MongoDB collection (lowercased class name).
These are used for validation before inserting via database helpers.
"""
from __future__ import annotations
from datetime import datetime
from typing import Optional, List, Literal
from pydantic import BaseModel, Field, EmailStr

Category = Literal["technology", "languages", "music", "art", "business",
                   "fitness", "cooking", "crafts", "academics", "other"]
Level = Literal["beginner", "intermediate", "advanced", "expert"]

RequestStatus = Literal["pending", "accepted", "declined", "counter_proposed", "cancelled"]
SessionStatus = Literal["scheduled", "in_progress", "completed", "cancelled", "disputed"]
TransactionType = Literal["bonus", "referral", "purchased", "earned", "spent",
                          "hold", "refund", "admin_adjustment"]

# Accounts
class User(BaseModel):
    email: EmailStr
    password_hash: str
    name: str = Field(..., description="Full name")
    role: Literal["user", "admin"] = "user"

class AvailabilitySlot(BaseModel):
    day: str
    start_time: str  # "HH:MM"
    end_time: str

class Profile(BaseModel):
    user_id: str
    username: str
    bio: Optional[str] = None
    languages: List[str] = ["English"]
    timezone: str = "UTC+00:00"
    avatar_url: Optional[str] = None
    skills_to_teach: List[str] = []
    skills_to_learn: List[str] = []
    availability: List[AvailabilitySlot] = []
    onboarding_completed: bool = True
    average_rating: float = 0.0
    total_reviews: int = 0
    total_sessions_taught: int = 0
    total_sessions_learned: int = 0
    referral_code: str
    referred_by: Optional[str] = None
    email_notifications: bool = True
    push_notifications: bool = True

# Marketplace
class SkillListing(BaseModel):
    user_id: str
    title: str
    description: str
    category: Category
    level: Level
    credits_per_hour: int = Field(15, ge=0)
    tags: List[str] = []
    cover_image: Optional[str] = None
    is_active: bool = True
    is_deleted: bool = False
    deleted_at: Optional[datetime] = None
    total_sessions: int = 0
    average_rating: float = 0.0
    total_reviews: int = 0

class CourseContent(BaseModel):
    skill_listing_id: str
    type: Literal["VIDEO", "PDF"] = "VIDEO"
    title: str
    description: Optional[str] = None
    file_url: str

# Exchange
class SessionRequest(BaseModel):
    from_user_id: str  # learner
    to_user_id: str    # teacher
    skill_listing_id: str
    message: Optional[str] = None
    proposed_date: datetime
    duration_hours: int = Field(1, ge=1, le=12)
    total_credits: int = 0
    status: RequestStatus = "pending"
    counter_proposed_date: Optional[datetime] = None
    decline_reason: Optional[str] = None
    session_id: Optional[str] = None

class Session(BaseModel):
    request_id: str
    teacher_id: str
    learner_id: str
    skill_listing_id: str
    skill_title: str
    scheduled_date: datetime
    duration_hours: int
    credits_amount: int = 0
    status: SessionStatus = "scheduled"
    room_id: str
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by_user_id: Optional[str] = None
    cancel_reason: Optional[str] = None
    dispute_reason: Optional[str] = None
    credits_held: bool = False
    credits_transferred: bool = False

class Review(BaseModel):
    session_id: str
    reviewer_id: str
    reviewed_user_id: str
    skill_listing_id: str
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None
    review_type: Literal["as_teacher", "as_learner"]

# Chat
class ChatThread(BaseModel):
    participant_ids: List[str]
    pair_key: Optional[str] = None
    last_message: Optional[str] = None
    last_message_at: Optional[datetime] = None
    last_message_sender_id: Optional[str] = None
    unread_count_user1: int = 0
    unread_count_user2: int = 0

class Message(BaseModel):
    thread_id: str
    sender_id: str
    content: str
    message_type: Literal["text"] = "text"
    is_read: bool = False

# Credits
class Wallet(BaseModel):
    user_id: str
    balance: int = 0
    held: int = 0
    total_earned: int = 0
    total_spent: int = 0
    total_purchased: int = 0
    applied_keys: List[str] = []

class CreditTransaction(BaseModel):
    user_id: str
    type: TransactionType
    amount: int
    description: str
    idempotency_key: str
    source: Optional[str] = None
    related_session_id: Optional[str] = None
    related_user_id: Optional[str] = None

class Referral(BaseModel):
    referrer_user_id: str
    referred_user_id: str
    rewarded: bool = True
    reward_amount: int = 5

# Moderation and inbox
class Notification(BaseModel):
    user_id: str
    type: str
    title: str
    message: str
    link: Optional[str] = None
    related_user_id: Optional[str] = None
    related_session_id: Optional[str] = None
    is_read: bool = False

class Report(BaseModel):
    reporter_id: str
    reported_user_id: Optional[str] = None
    skill_listing_id: Optional[str] = None
    session_id: Optional[str] = None
    reason: str
    description: Optional[str] = None
    status: Literal["pending", "resolved", "dismissed"] = "pending"
    admin_notes: Optional[str] = None
    resolved_at: Optional[datetime] = None
