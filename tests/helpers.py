"""Factories and invariant checks shared by the test modules."""
from datetime import datetime, timedelta
from sqlmodel import select
from db import get_session
from models import User, RideRequest, Conversation, RefStatus, utcnow
import handshake
import rides
import store


def next_slot(minutes_ahead: int = 60) -> datetime:
    base = utcnow().replace(second=0, microsecond=0)
    base += timedelta(minutes=30 - base.minute % 30)
    return base + timedelta(minutes=minutes_ahead)


def make_user(name="Alice"):
    session = get_session()
    u = User(name=name)
    session.add(u)
    session.commit()
    session.refresh(u)
    session.close()
    return u


def make_ride(name="Alice", destination="Airport", departure=None):
    """Create a user with an open ride through the real create path."""
    u = make_user(name)
    ride = rides.create(u.id, destination, departure or next_slot())
    return u, ride


def reload_ride(ride_id):
    with get_session() as session:
        return session.get(RideRequest, ride_id)


def reload_conversation(conversation_id):
    with get_session() as session:
        return session.get(Conversation, conversation_id)


def assert_invariants():
    """Every ride's stored status matches its pairings, and open pairs are unique."""
    with get_session() as session:
        for ride in session.exec(select(RideRequest)).all():
            refs = store.refs_for(session, ride.id)
            expected = handshake.ride_status_for(r.status for r in refs)
            assert ride.status == expected, (ride.id, ride.status, [r.status for r in refs])
            assert sum(r.status == RefStatus.CONFIRMED for r in refs) <= 1
            open_pairs = [
                r.counterpart_ride_id for r in refs
                if r.status != RefStatus.DECLINED or r.counterpart_status != RefStatus.DECLINED
            ]
            assert len(open_pairs) == len(set(open_pairs))
        for conv in session.exec(select(Conversation)).all():
            # declined and confirmed are always shared by both sides
            if RefStatus.CONFIRMED in (conv.status_a, conv.status_b):
                assert conv.status_a == conv.status_b == RefStatus.CONFIRMED
            if RefStatus.DECLINED in (conv.status_a, conv.status_b):
                assert conv.status_a == conv.status_b == RefStatus.DECLINED
