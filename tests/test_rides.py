"""
Ride request lifecycle and match search.
Covers:
- Creation rules: destination, future slot, one active ride, daily quota
- Dangling current-ride pointers are cleared on the next write
- Deletion cascades every live pairing before the row is removed
- Match filters, ordering and truncation
- Expiry purge
"""
from datetime import timedelta, timezone
import pytest
from sqlmodel import select

from db import get_session
from errors import ValidationError, ConflictError, NotFoundError
from models import RideRequest, RideStatus, RefStatus, User, Conversation, Message, utcnow
import coordinator
import conversations
import matching
import purge_expired
import rides
import settings

from helpers import make_user, make_ride, next_slot, reload_ride, reload_conversation, assert_invariants


# ────────────────────────── create ──────────────────────────────────────────

def test_create_links_ride_to_owner():
    u = make_user("Dana")
    ride = rides.create(u.id, "Train Station", next_slot())
    assert ride.status == RideStatus.AVAILABLE
    assert rides.current(u.id).id == ride.id


@pytest.mark.parametrize("render", [
    lambda when: when.strftime("%Y-%m-%dT%H:%M:%SZ"),
    lambda when: when.astimezone(timezone(timedelta(hours=5, minutes=30))).isoformat(),
    lambda when: when.replace(tzinfo=None).isoformat(),
])
def test_create_normalises_departure_to_utc(render):
    u = make_user("Eli")
    when = next_slot()
    ride = rides.create(u.id, "Airport", render(when))
    assert ride.departure_time == when
    assert ride.departure_time.utcoffset() == timedelta(0)
    stored = reload_ride(ride.id)
    assert stored.departure_time == when
    assert stored.departure_time.tzinfo is not None


def test_stored_times_are_aware_utc():
    t = next_slot()
    u1, r1 = make_ride("R1", departure=t)
    u2, r2 = make_ride("R2", departure=t)
    cid = coordinator.initiate(u1.id, r2.id).conversation.id
    conversations.send_message(u1.id, cid, "hi")
    conv = reload_conversation(cid)
    assert conv.expires_at == t + timedelta(hours=2)
    assert conv.created_at.tzinfo is not None
    [message] = conversations.get_messages(u2.id, cid)
    assert message.timestamp.utcoffset() == timedelta(0)
    assert reload_ride(r1.id).created_at.utcoffset() == timedelta(0)


def test_create_rejects_unknown_destination():
    u = make_user()
    with pytest.raises(ValidationError) as err:
        rides.create(u.id, "Harbour", next_slot())
    assert err.value.kind == "invalid_input"


@pytest.mark.parametrize("departure", [
    "not-a-date",
    utcnow() - timedelta(hours=1),
])
def test_create_rejects_bad_or_past_departure(departure):
    u = make_user()
    with pytest.raises(ValidationError):
        rides.create(u.id, "Airport", departure)


def test_create_rejects_misaligned_slot():
    u = make_user()
    with pytest.raises(ValidationError):
        rides.create(u.id, "Airport", next_slot() + timedelta(minutes=10))


def test_create_rejects_second_active_ride():
    u, _ = make_ride("Fay")
    with pytest.raises(ConflictError) as err:
        rides.create(u.id, "Airport", next_slot())
    assert err.value.kind == "already_active"
    assert err.value.status_code == 409


def test_create_enforces_daily_quota(monkeypatch):
    monkeypatch.setattr(settings, "MAX_DAILY_REQUESTS", 2)
    u = make_user()
    for _ in range(2):
        rides.create(u.id, "Airport", next_slot())
        rides.delete(u.id)
    with pytest.raises(ConflictError) as err:
        rides.create(u.id, "Airport", next_slot())
    assert err.value.kind == "quota_exceeded"
    assert err.value.status_code == 429


def test_quota_resets_on_a_new_day(monkeypatch):
    monkeypatch.setattr(settings, "MAX_DAILY_REQUESTS", 1)
    u = make_user()
    rides.create(u.id, "Airport", next_slot())
    rides.delete(u.id)
    session = get_session()
    user = session.get(User, u.id)
    user.request_count_reset = user.request_count_reset - timedelta(days=1)
    session.add(user)
    session.commit()
    session.close()
    assert rides.create(u.id, "Airport", next_slot()).id is not None


def test_create_clears_dangling_pointer():
    u, ride = make_ride("Gus")
    session = get_session()
    session.delete(session.get(RideRequest, ride.id))
    session.commit()
    session.close()
    assert rides.current(u.id) is None
    fresh = rides.create(u.id, "Airport", next_slot())
    assert rides.current(u.id).id == fresh.id


# ────────────────────────── delete ──────────────────────────────────────────

def test_delete_without_ride():
    u = make_user()
    with pytest.raises(NotFoundError):
        rides.delete(u.id)


def test_delete_dangling_pointer_is_cleared():
    u, ride = make_ride("Hal")
    session = get_session()
    session.delete(session.get(RideRequest, ride.id))
    session.commit()
    session.close()
    with pytest.raises(NotFoundError):
        rides.delete(u.id)
    with get_session() as s:
        assert s.get(User, u.id).current_ride_id is None


def test_delete_declines_every_pending_pairing():
    t = next_slot()
    u1, r1 = make_ride("R1", departure=t)
    u2, r2 = make_ride("R2", departure=t)
    u3, r3 = make_ride("R3", departure=t)
    c12 = coordinator.initiate(u1.id, r2.id).conversation.id
    c31 = coordinator.initiate(u3.id, r1.id).conversation.id
    coordinator.confirm(u3.id, c31)
    rides.delete(u1.id)
    for cid in (c12, c31):
        conv = reload_conversation(cid)
        assert conv.status_a == conv.status_b == RefStatus.DECLINED
    assert reload_ride(r2.id).status == RideStatus.AVAILABLE
    assert reload_ride(r3.id).status == RideStatus.AVAILABLE
    assert reload_ride(r1.id) is None
    assert_invariants()


def test_cancelled_ride_cannot_be_paired_before_removal(monkeypatch):
    t = next_slot()
    u1, r1 = make_ride("R1", departure=t)
    u2, r2 = make_ride("R2", departure=t)
    remove = rides._remove
    candidates = []

    def initiate_then_remove(ride_id):
        with pytest.raises(NotFoundError):
            coordinator.initiate(u2.id, ride_id)
        candidates.append([m.id for m in matching.find(reload_ride(r2.id))])
        return remove(ride_id)

    monkeypatch.setattr(rides, "_remove", initiate_then_remove)
    rides.delete(u1.id)
    assert candidates == [[]]
    assert reload_ride(r1.id) is None
    assert reload_ride(r2.id).status == RideStatus.AVAILABLE
    assert_invariants()


def test_removal_declines_pairing_opened_while_cancelling(monkeypatch):
    t = next_slot()
    u1, r1 = make_ride("R1", departure=t)
    u2, r2 = make_ride("R2", departure=t)
    remove = rides._remove
    opened = []

    def pair_then_remove(ride_id):
        session = get_session()
        conv = Conversation(ride_a_id=r2.id, ride_b_id=ride_id, expires_at=t + timedelta(hours=2))
        session.add(conv)
        partner = session.get(RideRequest, r2.id)
        partner.status = RideStatus.PENDING
        session.add(partner)
        session.commit()
        opened.append(conv.id)
        session.close()
        return remove(ride_id)

    monkeypatch.setattr(rides, "_remove", pair_then_remove)
    rides.delete(u1.id)
    conv = reload_conversation(opened[0])
    assert conv.status_a == conv.status_b == RefStatus.DECLINED
    assert reload_ride(r1.id) is None
    assert reload_ride(r2.id).status == RideStatus.AVAILABLE
    assert_invariants()


def test_partner_sees_vanished_counterpart_after_delete():
    t = next_slot()
    u1, r1 = make_ride("R1", departure=t)
    u2, r2 = make_ride("R2", departure=t)
    cid = coordinator.initiate(u1.id, r2.id).conversation.id
    rides.delete(u1.id)
    [entry] = conversations.list_conversations(u2.id)
    assert entry["conversationId"] == cid
    assert entry["counterpart"] is None
    assert entry["myStatus"] == "declined"


# ────────────────────────── matching ────────────────────────────────────────

def test_find_filters_destination_window_and_owner():
    t = next_slot(180)
    u1, r1 = make_ride("R1", departure=t)
    _, near = make_ride("near", departure=t + timedelta(hours=1))
    make_ride("elsewhere", destination="Bus Terminal", departure=t)
    make_ride("too-late", departure=t + timedelta(hours=12, minutes=30))
    assert [m.id for m in matching.find(r1)] == [near.id]


def test_find_orders_by_time_difference():
    t = next_slot(600)
    u1, r1 = make_ride("R1", departure=t)
    _, far = make_ride("far", departure=t + timedelta(hours=3))
    _, close = make_ride("close", departure=t - timedelta(minutes=30))
    _, mid = make_ride("mid", departure=t + timedelta(hours=1))
    assert [m.id for m in matching.find(r1)] == [close.id, mid.id, far.id]


def test_find_truncates(monkeypatch):
    monkeypatch.setattr(settings, "MAX_MATCH_RESULTS", 2)
    t = next_slot()
    u1, r1 = make_ride("R1", departure=t)
    for i in range(4):
        make_ride(f"c{i}", departure=t + timedelta(minutes=30 * i))
    assert len(matching.find(r1)) == 2


def test_find_keeps_pending_and_drops_confirmed():
    t = next_slot()
    u1, r1 = make_ride("R1", departure=t)
    u2, r2 = make_ride("R2", departure=t)
    u3, r3 = make_ride("R3", departure=t)
    u4, r4 = make_ride("R4", departure=t)
    coordinator.initiate(u2.id, r3.id)
    cid = coordinator.initiate(u4.id, r1.id).conversation.id
    ids = [m.id for m in matching.find(r1)]
    assert r2.id in ids and r3.id in ids and r4.id in ids
    coordinator.confirm(u1.id, cid)
    coordinator.confirm(u4.id, cid)
    assert r4.id not in [m.id for m in matching.find(r1)]
    assert r1.id not in [m.id for m in matching.find(r2)]


def test_find_matches_without_ride_is_empty():
    u = make_user()
    assert rides.find_matches(u.id) == []


# ────────────────────────── expiry ──────────────────────────────────────────

def test_purge_removes_expired_rides_and_conversations():
    t = next_slot()
    u1, r1 = make_ride("R1", departure=t)
    u2, r2 = make_ride("R2", departure=t)
    cid = coordinator.initiate(u1.id, r2.id).conversation.id
    conversations.send_message(u1.id, cid, "hi")
    later = t + timedelta(hours=3)
    assert purge_expired.purge(now=later, dry_run=True) == (2, 1)
    assert purge_expired.purge(now=later) == (2, 1)
    with get_session() as s:
        assert s.get(Conversation, cid) is None
        assert s.exec(select(Message)).all() == []
    # owners keep a dangling pointer until their next write
    assert rides.current(u1.id) is None
    assert rides.create(u1.id, "Airport", next_slot()).id is not None
