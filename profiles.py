import logging
import re
import secrets
import string
from typing import Any, Dict, Optional

from pymongo.errors import DuplicateKeyError

import ledger
from config import REFERRAL_BONUS
from database import db, create_document, get_documents, update_document
from errors import NotFound, ValidationFailed
from notifications import notify
from schemas import Profile, Referral

logger = logging.getLogger(__name__)

_REFERRAL_ALPHABET = string.ascii_uppercase + string.digits

# Fields a user may change after onboarding
EDITABLE_FIELDS = {
    "username", "bio", "languages", "timezone", "avatar_url", "skills_to_teach",
    "skills_to_learn", "availability", "email_notifications", "push_notifications",
}


def normalize_username(raw: str) -> str:
    username = re.sub(r"\s+", "_", (raw or "").strip().lower())
    if not username:
        raise ValidationFailed("Username is required")
    return username


def generate_referral_code() -> str:
    return "".join(secrets.choice(_REFERRAL_ALPHABET) for _ in range(8))


def _dedupe(items):
    seen = []
    for item in items or []:
        item = item.strip()
        if item and item not in seen:
            seen.append(item)
    return seen


def get_profile(user_id: str) -> Optional[Dict[str, Any]]:
    return db["profile"].find_one({"user_id": user_id})


def _check_username_free(username: str, user_id: str) -> None:
    other = db["profile"].find_one({"username": username, "user_id": {"$ne": user_id}})
    if other:
        raise ValidationFailed("Username already taken")


def onboard(user: Dict[str, Any], data: Dict[str, Any], referral_code: Optional[str] = None) -> Dict[str, Any]:
    """Create or complete the caller's profile.

    A new profile also opens the wallet (welcome bonus) and, when a valid
    referral code from another user is supplied, rewards the referrer once.
    """
    user_id = user["email"]
    data = dict(data)
    data["username"] = normalize_username(data.get("username", ""))
    data["skills_to_teach"] = _dedupe(data.get("skills_to_teach"))
    data["skills_to_learn"] = _dedupe(data.get("skills_to_learn"))
    _check_username_free(data["username"], user_id)

    existing = get_profile(user_id)
    if existing:
        profile = Profile(
            user_id=user_id,
            referral_code=existing.get("referral_code") or generate_referral_code(),
            referred_by=existing.get("referred_by"),
            **data,
        ).model_dump(include=EDITABLE_FIELDS | {"onboarding_completed", "referral_code"})
        update_document("profile", {"_id": existing["_id"]}, profile)
        return get_profile(user_id)

    profile = Profile(user_id=user_id, referral_code=generate_referral_code(),
                      referred_by=referral_code or None, **data)
    try:
        create_document("profile", profile)
    except DuplicateKeyError:
        # a concurrent onboarding request created it first
        return onboard(user, data, referral_code)
    ledger.open_wallet(user_id)
    logger.info("profile created for %s", user_id)

    if referral_code:
        _reward_referrer(user, referral_code)
    return get_profile(user_id)


def _reward_referrer(user: Dict[str, Any], referral_code: str) -> None:
    referrer = db["profile"].find_one({"referral_code": referral_code})
    user_id = user["email"]
    if not referrer or referrer["user_id"] == user_id:
        logger.info("ignoring referral code %s for %s", referral_code, user_id)
        return
    try:
        create_document("referral", Referral(
            referrer_user_id=referrer["user_id"],
            referred_user_id=user_id,
            reward_amount=REFERRAL_BONUS,
        ))
    except DuplicateKeyError:
        logger.debug("referral for %s already recorded", user_id)
    display = user.get("name") or user_id
    applied = ledger.grant(
        referrer["user_id"],
        REFERRAL_BONUS,
        "referral",
        f"Referral bonus: {display} joined using your link",
        key=f"referral:{user_id}",
        source="referral",
        related_user_id=user_id,
        count_as_earned=True,
    )
    if applied:
        notify(referrer["user_id"], "referral_bonus", "Referral Reward!",
               f"You earned {REFERRAL_BONUS} credits! {user.get('name') or 'Someone'} joined using your referral link.",
               link="Wallet", related_user_id=user_id)


def update_settings(user_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
    existing = get_profile(user_id)
    if not existing:
        raise NotFound("Complete onboarding first")
    changes = {k: v for k, v in changes.items() if k in EDITABLE_FIELDS}
    if "username" in changes:
        changes["username"] = normalize_username(changes["username"])
        _check_username_free(changes["username"], user_id)
    for key in ("skills_to_teach", "skills_to_learn"):
        if key in changes:
            changes[key] = _dedupe(changes[key])
    merged = {k: v for k, v in existing.items() if k in Profile.model_fields}
    merged.update(changes)
    validated = Profile(**merged).model_dump(include=set(changes))
    if validated:
        update_document("profile", {"_id": existing["_id"]}, validated)
    return get_profile(user_id)


def profile_view(username: Optional[str] = None, user_id: Optional[str] = None) -> Dict[str, Any]:
    """A profile with the user's active listings and the reviews they received."""
    if username:
        profile = db["profile"].find_one({"username": username.lower()})
    else:
        profile = get_profile(user_id)
    if not profile:
        raise NotFound("Profile not found")
    listings = get_documents("skilllisting", {"user_id": profile["user_id"], "is_active": True,
                                              "is_deleted": {"$ne": True}})
    reviews = get_documents("review", {"reviewed_user_id": profile["user_id"]},
                            sort=[("created_at", -1)])
    return {"profile": profile, "listings": listings, "reviews": reviews}


def profiles_by_user(user_ids) -> Dict[str, Dict[str, Any]]:
    return {p["user_id"]: p for p in db["profile"].find({"user_id": {"$in": list(user_ids)}})}
