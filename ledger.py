"""
Credits ledger: wallets, holds and transfers.

Every balance change goes through `apply`, which performs one atomic
find_one_and_update on the wallet document. The filter carries both the
funds guard ($gte) and an idempotency guard (`applied_keys` must not yet
contain the key), and the update pushes the key in the same write. A
CreditTransaction with the same key is inserted afterwards; the unique index
on `idempotency_key` makes that insert safe to repeat, and is what recognises
keys that have aged out of the bounded `applied_keys` list.

Ledger invariant: for every wallet, the sum of its transaction amounts equals
balance + held. Holds and refunds move credits inside a wallet and are
recorded with amount 0.
"""
import logging
import uuid
from typing import Any, Dict, List, Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from config import APPLIED_KEYS_KEPT, CREDIT_PACKS, WELCOME_BONUS
from database import db, create_document, get_documents, utcnow
from errors import InsufficientCredits, ValidationFailed, WalletNotFound
from schemas import CreditTransaction, Wallet

logger = logging.getLogger(__name__)


def new_key() -> str:
    return uuid.uuid4().hex


def ensure_wallet(user_id: str) -> Dict[str, Any]:
    """Create an empty wallet for user_id if there is none. Returns the wallet."""
    blank = Wallet(user_id=user_id).model_dump()
    blank.pop("user_id")
    now = utcnow()
    try:
        db["wallet"].update_one(
            {"user_id": user_id},
            {"$setOnInsert": {**blank, "created_at": now, "updated_at": now}},
            upsert=True,
        )
    except DuplicateKeyError:
        # concurrent upsert for the same user; the other one won
        pass
    return db["wallet"].find_one({"user_id": user_id})


def open_wallet(user_id: str) -> Dict[str, Any]:
    """Create the wallet and credit the welcome bonus exactly once."""
    ensure_wallet(user_id)
    if WELCOME_BONUS > 0:
        apply(
            user_id,
            f"welcome:{user_id}",
            {"balance": WELCOME_BONUS},
            entry={"type": "bonus", "amount": WELCOME_BONUS,
                   "description": "Welcome bonus credits", "source": "bonus"},
        )
    return get_wallet(user_id)


def get_wallet(user_id: str) -> Dict[str, Any]:
    wallet = db["wallet"].find_one({"user_id": user_id})
    if wallet is None:
        raise WalletNotFound(user_id)
    return wallet


def balance_of(user_id: str) -> int:
    wallet = db["wallet"].find_one({"user_id": user_id})
    return (wallet or {}).get("balance", 0)


def apply(user_id: str, key: str, inc: Dict[str, int], *, entry: Dict[str, Any],
          guard: Optional[Dict[str, int]] = None) -> bool:
    """Apply `inc` to the wallet of user_id once per `key`.

    `guard` maps wallet fields to minimum values that must hold before the
    update. Returns True when the change was applied by this call, False when
    the key had already been applied earlier.

    The wallet keeps only the last APPLIED_KEYS_KEPT keys; older keys are
    recognised through their recorded transaction.
    """
    if db["credittransaction"].find_one({"idempotency_key": key}, {"_id": 1}):
        logger.debug("ledger key %s already recorded for %s", key, user_id)
        return False

    query: Dict[str, Any] = {"user_id": user_id, "applied_keys": {"$ne": key}}
    for field, minimum in (guard or {}).items():
        if minimum > 0:
            query[field] = {"$gte": minimum}

    updated = db["wallet"].find_one_and_update(
        query,
        {
            "$inc": inc,
            "$push": {"applied_keys": {"$each": [key], "$slice": -APPLIED_KEYS_KEPT}},
            "$set": {"updated_at": utcnow()},
        },
        return_document=ReturnDocument.AFTER,
    )
    applied = updated is not None
    if not applied:
        wallet = db["wallet"].find_one({"user_id": user_id})
        if wallet is None:
            raise WalletNotFound(user_id)
        if key not in wallet.get("applied_keys", []):
            short = next(((f, m) for f, m in (guard or {}).items() if wallet.get(f, 0) < m), None)
            if short is None:
                # the wallet changed between the two reads; try again against the new state
                return apply(user_id, key, inc, entry=entry, guard=guard)
            raise InsufficientCredits(user_id, short[1], wallet.get(short[0], 0))
        logger.debug("ledger key %s already applied for %s", key, user_id)

    _record(user_id, key, entry)
    return applied


def _record(user_id: str, key: str, entry: Dict[str, Any]) -> None:
    tx = CreditTransaction(user_id=user_id, idempotency_key=key, **entry)
    try:
        create_document("credittransaction", tx)
    except DuplicateKeyError:
        logger.debug("transaction %s already recorded", key)


def grant(user_id: str, amount: int, type: str, description: str, key: str,
          source: Optional[str] = None, related_user_id: Optional[str] = None,
          count_as_earned: bool = False) -> bool:
    if amount <= 0:
        raise ValidationFailed("Granted amount must be positive")
    ensure_wallet(user_id)
    inc = {"balance": amount}
    if count_as_earned:
        inc["total_earned"] = amount
    return apply(user_id, key, inc, entry={
        "type": type, "amount": amount, "description": description,
        "source": source, "related_user_id": related_user_id,
    })


# --- Session settlement ---

def hold_for_session(session: Dict[str, Any]) -> bool:
    """Move the session price from the learner's balance into `held`."""
    amount = session.get("credits_amount", 0)
    if amount <= 0:
        return False
    sid = str(session["_id"])
    return apply(
        session["learner_id"],
        f"hold:{sid}",
        {"balance": -amount, "held": amount},
        guard={"balance": amount},
        entry={"type": "hold", "amount": 0,
               "description": f"{amount} credits held for: {session['skill_title']}",
               "related_session_id": sid, "related_user_id": session["teacher_id"]},
    )


def release_to_teacher(session: Dict[str, Any]) -> None:
    """Spend the learner's hold and credit the teacher. Safe to repeat."""
    amount = session.get("credits_amount", 0)
    if amount <= 0:
        return
    sid = str(session["_id"])
    apply(
        session["learner_id"],
        f"spent:{sid}",
        {"held": -amount, "total_spent": amount},
        guard={"held": amount},
        entry={"type": "spent", "amount": -amount,
               "description": f"Spent on learning: {session['skill_title']}",
               "related_session_id": sid, "related_user_id": session["teacher_id"]},
    )
    ensure_wallet(session["teacher_id"])
    apply(
        session["teacher_id"],
        f"earned:{sid}",
        {"balance": amount, "total_earned": amount},
        entry={"type": "earned", "amount": amount,
               "description": f"Earned from teaching: {session['skill_title']}",
               "related_session_id": sid, "related_user_id": session["learner_id"]},
    )


def refund_hold(session: Dict[str, Any]) -> None:
    amount = session.get("credits_amount", 0)
    if amount <= 0:
        return
    sid = str(session["_id"])
    apply(
        session["learner_id"],
        f"refund:{sid}",
        {"held": -amount, "balance": amount},
        guard={"held": amount},
        entry={"type": "refund", "amount": 0,
               "description": f"{amount} credits returned for: {session['skill_title']}",
               "related_session_id": sid, "related_user_id": session["teacher_id"]},
    )


# --- Wallet top-ups and admin ---

def purchase_pack(user_id: str, pack_index: int, key: Optional[str] = None) -> Dict[str, Any]:
    if not 0 <= pack_index < len(CREDIT_PACKS):
        raise ValidationFailed("Unknown credit pack")
    pack = CREDIT_PACKS[pack_index]
    ensure_wallet(user_id)
    apply(
        user_id,
        f"purchase:{user_id}:{key or new_key()}",
        {"balance": pack["credits"], "total_purchased": pack["credits"]},
        entry={"type": "purchased", "amount": pack["credits"],
               "description": f"Purchased {pack['credits']} credits for ${pack['price']}",
               "source": "purchase"},
    )
    return get_wallet(user_id)


def adjust(user_id: str, amount: int, reason: str, key: Optional[str] = None):
    """Admin credit adjustment. Negative amounts cannot overdraw the wallet.

    Returns (wallet, applied); applied is False when `key` was seen before.
    """
    if amount == 0:
        raise ValidationFailed("Adjustment amount must be non-zero")
    ensure_wallet(user_id)
    applied = apply(
        user_id,
        f"admin:{user_id}:{key or new_key()}",
        {"balance": amount},
        guard={"balance": -amount} if amount < 0 else None,
        entry={"type": "admin_adjustment", "amount": amount,
               "description": f"Admin adjustment: {reason}", "source": "admin"},
    )
    if applied:
        logger.info("admin adjusted %s by %d (%s)", user_id, amount, reason)
    return get_wallet(user_id), applied


def list_transactions(user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
    return get_documents("credittransaction", {"user_id": user_id}, limit=limit,
                         sort=[("created_at", -1)])


def credits_in_circulation() -> int:
    total = 0
    for w in db["wallet"].find({}, {"balance": 1, "held": 1}):
        total += w.get("balance", 0) + w.get("held", 0)
    return total


def public_wallet(wallet: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "user_id": wallet["user_id"],
        "balance": wallet.get("balance", 0),
        "held": wallet.get("held", 0),
        "total_earned": wallet.get("total_earned", 0),
        "total_spent": wallet.get("total_spent", 0),
        "total_purchased": wallet.get("total_purchased", 0),
    }
