"""Unit tests for the credits ledger primitives."""
import pytest

import ledger
from errors import InsufficientCredits, ValidationFailed, WalletNotFound


def _ledger_sum(db, user_id):
    return sum(t["amount"] for t in db["credittransaction"].find({"user_id": user_id}))


def test_open_wallet_grants_welcome_bonus_once(db):
    ledger.open_wallet("ann@example.com")
    ledger.open_wallet("ann@example.com")
    wallet = ledger.get_wallet("ann@example.com")
    assert wallet["balance"] == 50
    assert db["credittransaction"].count_documents({"user_id": "ann@example.com", "type": "bonus"}) == 1


def test_get_wallet_missing_raises(db):
    with pytest.raises(WalletNotFound):
        ledger.get_wallet("nobody@example.com")


def test_apply_is_idempotent_per_key(db):
    ledger.ensure_wallet("ann@example.com")
    entry = {"type": "bonus", "amount": 7, "description": "test"}
    assert ledger.apply("ann@example.com", "k1", {"balance": 7}, entry=entry) is True
    assert ledger.apply("ann@example.com", "k1", {"balance": 7}, entry=entry) is False
    assert ledger.get_wallet("ann@example.com")["balance"] == 7
    assert db["credittransaction"].count_documents({"idempotency_key": "k1"}) == 1


def test_apply_guard_rejects_overdraft(db):
    ledger.open_wallet("ann@example.com")
    with pytest.raises(InsufficientCredits) as exc:
        ledger.apply("ann@example.com", "big", {"balance": -80},
                     entry={"type": "spent", "amount": -80, "description": "too much"},
                     guard={"balance": 80})
    assert exc.value.required == 80
    assert exc.value.available == 50
    assert ledger.get_wallet("ann@example.com")["balance"] == 50


def test_hold_release_moves_credits_between_wallets(db):
    ledger.open_wallet("learner@example.com")
    ledger.open_wallet("teacher@example.com")
    session = {"_id": "s1", "learner_id": "learner@example.com", "teacher_id": "teacher@example.com",
               "credits_amount": 20, "skill_title": "Guitar"}

    assert ledger.hold_for_session(session) is True
    learner = ledger.get_wallet("learner@example.com")
    assert (learner["balance"], learner["held"]) == (30, 20)

    ledger.release_to_teacher(session)
    ledger.release_to_teacher(session)

    learner = ledger.get_wallet("learner@example.com")
    teacher = ledger.get_wallet("teacher@example.com")
    assert (learner["balance"], learner["held"], learner["total_spent"]) == (30, 0, 20)
    assert (teacher["balance"], teacher["total_earned"]) == (70, 20)
    for user_id, w in (("learner@example.com", learner), ("teacher@example.com", teacher)):
        assert _ledger_sum(db, user_id) == w["balance"] + w["held"]


def test_refund_returns_hold(db):
    ledger.open_wallet("learner@example.com")
    session = {"_id": "s2", "learner_id": "learner@example.com", "teacher_id": "t@example.com",
               "credits_amount": 15, "skill_title": "Chess"}
    ledger.hold_for_session(session)
    ledger.refund_hold(session)
    wallet = ledger.get_wallet("learner@example.com")
    assert (wallet["balance"], wallet["held"]) == (50, 0)


def test_free_session_holds_nothing(db):
    ledger.open_wallet("learner@example.com")
    session = {"_id": "s3", "learner_id": "learner@example.com", "teacher_id": "t@example.com",
               "credits_amount": 0, "skill_title": "Free chat"}
    assert ledger.hold_for_session(session) is False
    assert ledger.get_wallet("learner@example.com")["held"] == 0


def test_purchase_with_same_key_charges_once(db):
    ledger.open_wallet("ann@example.com")
    ledger.purchase_pack("ann@example.com", 1, key="order-1")
    wallet = ledger.purchase_pack("ann@example.com", 1, key="order-1")
    assert wallet["balance"] == 150
    assert wallet["total_purchased"] == 100


def test_purchase_unknown_pack(db):
    with pytest.raises(ValidationFailed):
        ledger.purchase_pack("ann@example.com", 9)


def test_adjust_creates_wallet_and_blocks_negative_balance(db):
    wallet, applied = ledger.adjust("new@example.com", 12, "goodwill")
    assert applied is True
    assert wallet["balance"] == 12
    with pytest.raises(InsufficientCredits):
        ledger.adjust("new@example.com", -20, "clawback")
    assert ledger.adjust("new@example.com", -12, "clawback")[0]["balance"] == 0


def test_credits_in_circulation_counts_held(db):
    ledger.open_wallet("a@example.com")
    ledger.open_wallet("b@example.com")
    ledger.hold_for_session({"_id": "s4", "learner_id": "a@example.com", "teacher_id": "b@example.com",
                             "credits_amount": 10, "skill_title": "Yoga"})
    assert ledger.credits_in_circulation() == 100


def test_apply_takes_entry_and_guard_by_keyword(db):
    ledger.ensure_wallet("ann@example.com")
    with pytest.raises(TypeError):
        ledger.apply("ann@example.com", "k2", {"balance": 1}, {"type": "bonus", "amount": 1, "description": "x"})


def test_applied_keys_are_bounded_but_old_keys_stay_applied(db, monkeypatch):
    monkeypatch.setattr(ledger, "APPLIED_KEYS_KEPT", 3)
    ledger.ensure_wallet("ann@example.com")
    for i in range(5):
        ledger.grant("ann@example.com", 1, "bonus", "drip", key=f"drip:{i}")

    wallet = ledger.get_wallet("ann@example.com")
    assert wallet["applied_keys"] == ["drip:2", "drip:3", "drip:4"]
    assert wallet["balance"] == 5
    # drip:0 fell out of the wallet's list but its transaction still blocks a replay
    assert ledger.grant("ann@example.com", 1, "bonus", "drip", key="drip:0") is False
    assert ledger.get_wallet("ann@example.com")["balance"] == 5
