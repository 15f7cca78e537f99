from datetime import datetime, timedelta
from typing import List, Optional
from sqlmodel import select, col
from models import RideRequest, RideStatus, RefStatus, User, utcnow
from db import get_session
import settings
import store


def time_difference_minutes(a: RideRequest, b: RideRequest) -> float:
    return abs((a.departure_time - b.departure_time).total_seconds()) / 60.0


def find(ride: RideRequest, now: Optional[datetime] = None, session=None) -> List[RideRequest]:
    """Candidate rides for ``ride``, closest departure first.

    Same destination, not Confirmed, departing within the match window and not
    yet gone, and still the owner's current ride. Rides of the same owner and
    rides already confirmed with this one are left out. No locks are taken:
    results may be stale and are checked again when a conversation is initiated.
    """
    now = now or utcnow()
    window = timedelta(hours=settings.MATCH_WINDOW_HOURS)
    own_session = session is None
    session = session or get_session()
    try:
        stmt = (
            select(RideRequest)
            .join(User, User.id == RideRequest.user_id)
            .where(User.current_ride_id == RideRequest.id)
            .where(RideRequest.destination == ride.destination)
            .where(col(RideRequest.status).in_([RideStatus.AVAILABLE, RideStatus.PENDING]))
            .where(RideRequest.id != ride.id)
            .where(RideRequest.user_id != ride.user_id)
            .where(RideRequest.departure_time >= ride.departure_time - window)
            .where(RideRequest.departure_time <= ride.departure_time + window)
            .where(RideRequest.departure_time > now)
        )
        candidates = session.exec(stmt).all()
        locked_in = {
            r.counterpart_ride_id
            for r in store.refs_for(session, ride.id)
            if r.status == RefStatus.CONFIRMED
        }
    finally:
        if own_session:
            session.close()
    candidates = [c for c in candidates if c.id not in locked_in]
    candidates.sort(key=lambda c: (time_difference_minutes(c, ride), c.id))
    return candidates[:settings.MAX_MATCH_RESULTS]
