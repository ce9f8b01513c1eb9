"""Session requests and the session lifecycle, exercised through the API."""
from datetime import datetime, timedelta, timezone

import pytest
from bson import ObjectId

import exchange


def _when(days=2):
    return (datetime.now(timezone.utc) + timedelta(days=days)).replace(microsecond=0).isoformat()


def _wallet(client, headers):
    return client.get("/wallet", headers=headers).json()["wallet"]


def _request(client, learner, listing_id, hours=2, days=2):
    resp = client.post("/requests", json={
        "skill_listing_id": listing_id, "proposed_date": _when(days), "duration_hours": hours,
        "message": "Keen to learn!",
    }, headers=learner)
    assert resp.status_code == 200, resp.text
    return resp.json()["request_id"]


def test_request_notifies_teacher_and_computes_price(client, db, teacher, learner, listing_id):
    rid = _request(client, learner, listing_id, hours=3)
    received = client.get("/requests", headers=teacher).json()
    assert [r["id"] for r in received] == [rid]
    assert received[0]["total_credits"] == 30
    assert received[0]["status"] == "pending"
    notes = client.get("/notifications", headers=teacher).json()
    assert notes[0]["type"] == "session_request"


def test_duration_must_be_whole_hours(client, db, learner, listing_id):
    for hours in (0.04, 1.5, 0, 13):
        resp = client.post("/requests", json={
            "skill_listing_id": listing_id, "proposed_date": _when(), "duration_hours": hours,
        }, headers=learner)
        assert resp.status_code == 422, hours
    assert db["sessionrequest"].count_documents({}) == 0


def test_cannot_request_own_listing(client, teacher, listing_id):
    resp = client.post("/requests", json={
        "skill_listing_id": listing_id, "proposed_date": _when(), "duration_hours": 1,
    }, headers=teacher)
    assert resp.status_code == 400


def test_request_needs_enough_credits(client, learner, listing_id):
    resp = client.post("/requests", json={
        "skill_listing_id": listing_id, "proposed_date": _when(), "duration_hours": 6,
    }, headers=learner)
    assert resp.status_code == 409
    assert resp.json()["error"] == "INSUFFICIENT_CREDITS"


def test_accept_schedules_session_and_holds_credits(client, teacher, learner, accepted_session):
    assert accepted_session["status"] == "scheduled"
    assert accepted_session["credits_amount"] == 20
    assert accepted_session["credits_held"] is True
    assert accepted_session["room_id"].startswith("room_")
    wallet = _wallet(client, learner)
    assert (wallet["balance"], wallet["held"]) == (30, 20)
    assert client.get("/sessions?view=upcoming", headers=learner).json()[0]["id"] == accepted_session["id"]


def test_only_teacher_accepts_pending_request(client, learner, listing_id):
    rid = _request(client, learner, listing_id)
    assert client.post(f"/requests/{rid}/accept", headers=learner).status_code == 403


def test_request_cannot_be_accepted_twice(client, teacher, learner, listing_id):
    rid = _request(client, learner, listing_id)
    assert client.post(f"/requests/{rid}/accept", headers=teacher).status_code == 200
    assert client.post(f"/requests/{rid}/accept", headers=teacher).status_code == 409
    assert len(client.get("/sessions", headers=teacher).json()) == 1


def test_accept_reverts_when_learner_can_no_longer_pay(client, db, teacher, learner, listing_id):
    first = _request(client, learner, listing_id, hours=4)
    second = _request(client, learner, listing_id, hours=4)
    assert client.post(f"/requests/{first}/accept", headers=teacher).status_code == 200

    resp = client.post(f"/requests/{second}/accept", headers=teacher)
    assert resp.status_code == 409
    assert resp.json()["error"] == "INSUFFICIENT_CREDITS"
    assert db["session"].count_documents({}) == 1
    statuses = {r["id"]: r["status"] for r in client.get("/requests?direction=sent", headers=learner).json()}
    assert statuses == {first: "accepted", second: "pending"}


def test_counter_proposal_is_accepted_by_learner_at_new_time(client, teacher, learner, listing_id):
    rid = _request(client, learner, listing_id)
    new_time = _when(days=5)
    assert client.post(f"/requests/{rid}/counter", json={"new_date": new_time}, headers=teacher).status_code == 200
    assert client.post(f"/requests/{rid}/accept", headers=teacher).status_code == 403

    session = client.post(f"/requests/{rid}/accept", headers=learner).json()
    assert session["scheduled_date"].startswith(new_time[:16])


def test_decline_and_cancel(client, teacher, learner, listing_id):
    declined = _request(client, learner, listing_id)
    resp = client.post(f"/requests/{declined}/decline", json={"reason": "Fully booked"}, headers=teacher)
    assert resp.status_code == 200
    assert client.post(f"/requests/{declined}/cancel", headers=learner).status_code == 409

    cancelled = _request(client, learner, listing_id)
    assert client.post(f"/requests/{cancelled}/cancel", headers=teacher).status_code == 403
    assert client.post(f"/requests/{cancelled}/cancel", headers=learner).status_code == 200
    notes = client.get("/notifications", headers=learner).json()
    assert any(n["type"] == "request_declined" and n["message"] == "Fully booked" for n in notes)


def test_complete_pays_teacher_exactly_once(client, teacher, learner, accepted_session):
    sid = accepted_session["id"]
    assert client.post(f"/sessions/{sid}/start", headers=teacher).json()["status"] == "in_progress"
    done = client.post(f"/sessions/{sid}/complete", headers=teacher)
    assert done.status_code == 200
    assert done.json()["credits_transferred"] is True

    again = client.post(f"/sessions/{sid}/complete", headers=learner)
    assert again.status_code == 409

    teacher_wallet = _wallet(client, teacher)
    learner_wallet = _wallet(client, learner)
    assert (teacher_wallet["balance"], teacher_wallet["total_earned"]) == (70, 20)
    assert (learner_wallet["balance"], learner_wallet["held"], learner_wallet["total_spent"]) == (30, 0, 20)

    me = client.get("/profile", headers=teacher).json()["profile"]
    assert me["total_sessions_taught"] == 1
    assert client.get("/sessions?view=past", headers=learner).json()[0]["id"] == sid


def test_cancel_session_refunds_learner(client, teacher, learner, accepted_session):
    sid = accepted_session["id"]
    resp = client.post(f"/sessions/{sid}/cancel", json={"reason": "Sick"}, headers=learner)
    assert resp.status_code == 200
    assert resp.json()["status"] == "cancelled"
    assert resp.json()["cancelled_by_user_id"] == "leo@example.com"
    wallet = _wallet(client, learner)
    assert (wallet["balance"], wallet["held"]) == (50, 0)
    assert client.post(f"/sessions/{sid}/complete", headers=teacher).status_code == 409
    assert any(n["type"] == "session_cancelled" for n in client.get("/notifications", headers=teacher).json())


def test_outsider_cannot_touch_session(client, signup, accepted_session):
    stranger = signup("sam@example.com", "Sam", "sam")
    sid = accepted_session["id"]
    assert client.post(f"/sessions/{sid}/complete", headers=stranger).status_code == 403
    assert client.get(f"/sessions/{sid}/room", headers=stranger).status_code == 403


def test_room_lookup_for_participants(client, teacher, accepted_session):
    room = client.get(f"/sessions/{accepted_session['id']}/room", headers=teacher).json()
    assert room["room_id"] == accepted_session["room_id"]
    assert room["is_teacher"] is True
    assert [p["username"] for p in room["participants"]] == ["tina", "leo"]


def test_review_updates_ratings_once(client, teacher, learner, accepted_session, listing_id):
    sid = accepted_session["id"]
    assert client.post(f"/sessions/{sid}/review", json={"rating": 4}, headers=learner).status_code == 409

    client.post(f"/sessions/{sid}/complete", headers=teacher)
    assert client.post(f"/sessions/{sid}/review", json={"rating": 4, "comment": "Great"},
                       headers=learner).status_code == 200
    dup = client.post(f"/sessions/{sid}/review", json={"rating": 1}, headers=learner)
    assert dup.status_code == 409
    assert dup.json()["error"] == "DUPLICATE_ACTION"

    profile = client.get("/profiles/tina").json()
    assert profile["profile"]["average_rating"] == 4.0
    assert profile["profile"]["total_reviews"] == 1
    listing = client.get(f"/listings/{listing_id}").json()["listing"]
    assert listing["average_rating"] == 4.0
    assert listing["total_sessions"] == 1
    sessions = client.get("/sessions", headers=learner).json()
    assert sessions[0]["reviewed"] is True


def test_dispute_freezes_credits_until_admin_resolves(client, teacher, learner, admin, accepted_session):
    sid = accepted_session["id"]
    resp = client.post(f"/sessions/{sid}/dispute", json={"reason": "Teacher never showed"}, headers=learner)
    assert resp.json()["status"] == "disputed"
    assert client.post(f"/sessions/{sid}/complete", headers=teacher).status_code == 409
    assert _wallet(client, learner)["held"] == 20

    assert client.post(f"/admin/sessions/{sid}/resolve", json={"outcome": "refund"},
                       headers=teacher).status_code == 403
    resolved = client.post(f"/admin/sessions/{sid}/resolve", json={"outcome": "refund"}, headers=admin)
    assert resolved.json()["status"] == "cancelled"
    wallet = _wallet(client, learner)
    assert (wallet["balance"], wallet["held"]) == (50, 0)
    assert client.post(f"/admin/sessions/{sid}/resolve", json={"outcome": "complete"},
                       headers=admin).status_code == 409


def test_dispute_resolved_in_teachers_favour(client, teacher, learner, admin, accepted_session):
    sid = accepted_session["id"]
    client.post(f"/sessions/{sid}/dispute", json={"reason": "Left early"}, headers=learner)
    resolved = client.post(f"/admin/sessions/{sid}/resolve", json={"outcome": "complete"}, headers=admin)
    assert resolved.json()["credits_transferred"] is True
    assert _wallet(client, teacher)["balance"] == 70


def test_settle_pending_finishes_interrupted_settlement(db, teacher, learner, accepted_session):
    db["session"].update_one({"_id": ObjectId(accepted_session["id"])}, {"$set": {"status": "completed"}})

    assert exchange.settle_pending() == {"settled": 1, "refunded": 0, "failed": 0}
    assert exchange.settle_pending() == {"settled": 0, "refunded": 0, "failed": 0}
    assert db["wallet"].find_one({"user_id": "tina@example.com"})["balance"] == 70
    assert db["credittransaction"].count_documents({"type": "earned"}) == 1


def test_list_sessions_views(db, teacher, learner, accepted_session):
    now = datetime.now(timezone.utc).replace(tzinfo=None)
    assert len(exchange.list_sessions("leo@example.com", "upcoming", now=now)) == 1
    assert exchange.list_sessions("leo@example.com", "past", now=now) == []
    later = now + timedelta(days=10)
    assert len(exchange.list_sessions("leo@example.com", "past", now=later)) == 1


def test_failed_hold_never_leaves_a_scheduled_session(client, db, monkeypatch, teacher, learner, listing_id):
    rid = _request(client, learner, listing_id)

    def broken_hold(session):
        raise RuntimeError("connection reset")

    monkeypatch.setattr(exchange.ledger, "hold_for_session", broken_hold)
    with pytest.raises(RuntimeError):
        exchange.accept_request({"email": "tina@example.com", "name": "Tina Teach"}, rid)

    assert db["session"].count_documents({}) == 0
    assert db["sessionrequest"].find_one({"_id": ObjectId(rid)})["status"] == "pending"
    assert _wallet(client, learner)["held"] == 0


def test_settle_pending_skips_a_broken_session_and_repairs_the_rest(db, signup, teacher, learner,
                                                                     accepted_session):
    signup("sam@example.com", "Sam", "sam")
    db["session"].update_one({"_id": ObjectId(accepted_session["id"])}, {"$set": {"status": "completed"}})
    broken = dict(accepted_session)
    broken.pop("id")
    broken.update(learner_id="sam@example.com", status="completed", credits_held=False,
                  room_id="room_broken", scheduled_date=datetime.now(timezone.utc).replace(tzinfo=None))
    db["session"].insert_one(broken)

    assert exchange.settle_pending() == {"settled": 1, "refunded": 0, "failed": 1}
    assert db["wallet"].find_one({"user_id": "tina@example.com"})["balance"] == 70
    assert db["wallet"].find_one({"user_id": "sam@example.com"})["balance"] == 50
    assert db["session"].count_documents({"credits_transferred": True}) == 1


def test_settle_pending_refunds_cancelled_session_still_holding(db, teacher, learner, accepted_session):
    db["session"].update_one({"_id": ObjectId(accepted_session["id"])}, {"$set": {"status": "cancelled"}})

    assert exchange.settle_pending() == {"settled": 0, "refunded": 1, "failed": 0}
    wallet = db["wallet"].find_one({"user_id": "leo@example.com"})
    assert (wallet["balance"], wallet["held"]) == (50, 0)
    assert db["session"].find_one({"_id": ObjectId(accepted_session["id"])})["credits_held"] is False
    assert exchange.settle_pending() == {"settled": 0, "refunded": 0, "failed": 0}


def test_today_view_uses_the_utc_day(db, teacher, learner, accepted_session):
    scheduled = db["session"].find_one({"_id": ObjectId(accepted_session["id"])})["scheduled_date"]
    midnight = scheduled.replace(hour=0, minute=0, second=0, microsecond=0)

    today = exchange.list_sessions("leo@example.com", "today", now=midnight)
    assert [str(s["_id"]) for s in today] == [accepted_session["id"]]
    assert exchange.list_sessions("leo@example.com", "today", now=midnight - timedelta(days=1)) == []
    assert exchange.list_sessions("leo@example.com", "today", now=midnight + timedelta(days=1)) == []


def test_teacher_dispute_refunded_to_learner(client, db, teacher, learner, admin, accepted_session):
    sid = accepted_session["id"]
    resp = client.post(f"/sessions/{sid}/dispute", json={"reason": "Learner no-show"}, headers=teacher)
    assert resp.json()["status"] == "disputed"
    assert any(n["type"] == "session_disputed" for n in client.get("/notifications", headers=learner).json())

    resolved = client.post(f"/admin/sessions/{sid}/resolve", json={"outcome": "refund"}, headers=admin).json()
    assert resolved["credits_held"] is False
    assert resolved["credits_transferred"] is False
    wallet = _wallet(client, learner)
    assert (wallet["balance"], wallet["held"]) == (50, 0)
    refunds = list(db["credittransaction"].find({"type": "refund", "related_session_id": sid}))
    assert len(refunds) == 1 and refunds[0]["amount"] == 0
