"""Create, read and cancel a user's ride request, and look up matches for it."""
from datetime import datetime, timezone
from typing import List, Optional, Union
from coordinator import execute, require_user, cascade_decline, announce
from db import get_session, ride_key, user_key
from errors import ValidationError, ConflictError, NotFoundError
from models import RideRequest, Destination, utcnow
import handshake
import matching
import settings
import store
import logging

logger = logging.getLogger(__name__)


def ride_to_dict(ride: RideRequest) -> dict:
    return {
        "id": ride.id,
        "userId": ride.user_id,
        "destination": ride.destination.value,
        "departureTime": ride.departure_time.isoformat(),
        "status": ride.status.value,
        "createdAt": ride.created_at.isoformat(),
    }


def parse_destination(value) -> Destination:
    try:
        return Destination(value)
    except ValueError:
        allowed = ", ".join(d.value for d in Destination)
        raise ValidationError(f"Invalid destination. Allowed destinations are: {allowed}.")


def parse_departure(value: Union[str, datetime], now: Optional[datetime] = None) -> datetime:
    """Parse an ISO timestamp into aware UTC and check it is a future slot.

    Timestamps without an offset are taken as UTC.
    """
    now = now or utcnow()
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError("Invalid departure time provided.")
    if not isinstance(value, datetime):
        raise ValidationError("Invalid departure time provided.")
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    else:
        value = value.astimezone(timezone.utc)
    if value <= now:
        raise ValidationError("Departure time must be in the future.")
    if value.second or value.microsecond or value.minute % settings.SLOT_MINUTES:
        raise ValidationError(f"Departure time must start on a {settings.SLOT_MINUTES}-minute slot.")
    return value


def create(actor_id: int, destination, departure_time, now: Optional[datetime] = None) -> RideRequest:
    now = now or utcnow()
    destination = parse_destination(destination)
    departure = parse_departure(departure_time, now)

    def work(tx):
        session = tx.session
        user = require_user(session, actor_id)
        store.clear_dangling_pointer(session, user)
        if user.current_ride_id is not None:
            raise ConflictError("You already have an active ride request. Please cancel it before creating a new one.",
                                kind="already_active")
        today = now.date()
        if user.request_count_reset != today:
            user.request_count = 0
            user.request_count_reset = today
        if user.request_count >= settings.MAX_DAILY_REQUESTS:
            raise ConflictError(f"Daily ride request limit ({settings.MAX_DAILY_REQUESTS}) reached. "
                                "Please try again tomorrow.", kind="quota_exceeded")
        ride = RideRequest(user_id=user.id, destination=destination, departure_time=departure, created_at=now)
        session.add(ride)
        session.flush()
        user.current_ride_id = ride.id
        user.request_count += 1
        session.add(user)
        logger.info("user %s created ride %s (%s at %s)", user.id, ride.id, destination.value, departure)
        return ride

    return execute(work, lambda: [user_key(actor_id)])


def current(actor_id: int) -> Optional[RideRequest]:
    with get_session() as session:
        user = require_user(session, actor_id)
        return store.current_ride(session, user)


def find_matches(actor_id: int, now: Optional[datetime] = None) -> List[RideRequest]:
    with get_session() as session:
        user = require_user(session, actor_id)
        ride = store.current_ride(session, user)
        if ride is None:
            return []
        return matching.find(ride, now=now, session=session)


def delete(actor_id: int) -> int:
    """Cancel the actor's ride: decline every live pairing, unlink, then remove the row."""

    def plan():
        with get_session() as session:
            user = require_user(session, actor_id)
            names = [user_key(actor_id)]
            if user.current_ride_id is not None:
                names.append(ride_key(user.current_ride_id))
                names += [ride_key(i) for i in store.counterpart_ids(session, user.current_ride_id, handshake.LIVE)]
            return names

    def work(tx):
        session = tx.session
        user = require_user(session, actor_id)
        ride = store.current_ride(session, user)
        if ride is None:
            if store.clear_dangling_pointer(session, user):
                tx.fail_after_commit(NotFoundError(
                    "Your ride request had already expired; the stale reference was cleared."))
                return None
            raise NotFoundError("No active ride request found to delete.")
        tx.require_locks([ride_key(ride.id)])
        declined = cascade_decline(tx, ride, statuses=handshake.LIVE)
        announce(tx, declined)
        user.current_ride_id = None
        session.add(user)
        logger.info("user %s cancelled ride %s", user.id, ride.id)
        return ride.id

    ride_id = execute(work, plan)
    # the row goes only once the unlinking has committed
    if not _remove(ride_id):
        logger.warning("ride %s was already gone when removing it", ride_id)
    return ride_id


def _remove(ride_id: int) -> bool:
    """Drop an unlinked ride, declining anything that paired with it in the meantime."""

    def plan():
        with get_session() as session:
            return [ride_key(ride_id)] + [ride_key(i) for i in store.counterpart_ids(session, ride_id, handshake.LIVE)]

    def work(tx):
        ride = store.get_ride(tx.session, ride_id)
        if ride is None:
            return False
        declined = cascade_decline(tx, ride, statuses=handshake.LIVE)
        if declined:
            logger.warning("ride %s was paired while being cancelled; declined %s", ride_id, [c.id for c in declined])
            announce(tx, declined)
        return store.remove_ride(tx.session, ride_id)

    return execute(work, plan)
