"""Store access for rides, users and conversations.

Rides and conversations can disappear at any moment (expiry), so every
lookup across a reference goes through a helper here that returns ``None``
instead of assuming the target is still there.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional
from sqlmodel import Session, select, or_, and_, col
from models import User, RideRequest, Conversation, Message, RefStatus, RideStatus
import handshake
import logging

logger = logging.getLogger(__name__)


@dataclass
class ConversationRef:
    """A ride's view of one pairing it takes part in."""
    conversation_id: int
    counterpart_ride_id: int
    status: RefStatus
    counterpart_status: RefStatus
    initiated_at: datetime
    expires_at: datetime

    @property
    def active(self) -> bool:
        return self.status in handshake.ACTIVE


# ────────────────────────── rides and users ───────────────────────────────

def get_user(session: Session, user_id: int) -> Optional[User]:
    return session.get(User, user_id)


def get_ride(session: Session, ride_id: Optional[int]) -> Optional[RideRequest]:
    if ride_id is None:
        return None
    return session.get(RideRequest, ride_id)


def current_ride(session: Session, user: User) -> Optional[RideRequest]:
    """Dereference the user's current-ride pointer; a dangling pointer reads as None."""
    ride = get_ride(session, user.current_ride_id)
    if ride is None and user.current_ride_id is not None:
        logger.debug("user %s points at missing ride %s", user.id, user.current_ride_id)
    return ride


def clear_dangling_pointer(session: Session, user: User) -> bool:
    """Unset the current-ride pointer if its ride is gone. Returns True when it did."""
    if user.current_ride_id is not None and get_ride(session, user.current_ride_id) is None:
        logger.warning("clearing dangling ride %s from user %s", user.current_ride_id, user.id)
        user.current_ride_id = None
        session.add(user)
        return True
    return False


def is_current(session: Session, ride: RideRequest) -> bool:
    """True while the owner still points at ``ride``; a cancelled ride is unlinked before it is removed."""
    owner = get_user(session, ride.user_id)
    return owner is not None and owner.current_ride_id == ride.id


def remove_ride(session: Session, ride_id: int) -> bool:
    ride = session.get(RideRequest, ride_id)
    if ride is None:
        return False
    session.delete(ride)
    return True


# ────────────────────────── conversations ─────────────────────────────────

def get_conversation(session: Session, conversation_id: int) -> Optional[Conversation]:
    return session.get(Conversation, conversation_id)


def conversations_for(session: Session, ride_id: int) -> List[Conversation]:
    stmt = (
        select(Conversation)
        .where(or_(Conversation.ride_a_id == ride_id, Conversation.ride_b_id == ride_id))
        .order_by(Conversation.created_at, Conversation.id)
    )
    return list(session.exec(stmt).all())


def refs_for(session: Session, ride_id: int) -> List[ConversationRef]:
    """The ordered list of pairings ``ride_id`` takes part in, seen from its side."""
    refs = []
    for conv in conversations_for(session, ride_id):
        counterpart = conv.counterpart_of(ride_id)
        refs.append(ConversationRef(
            conversation_id=conv.id,
            counterpart_ride_id=counterpart,
            status=conv.status_for(ride_id),
            counterpart_status=conv.status_for(counterpart),
            initiated_at=conv.created_at,
            expires_at=conv.expires_at,
        ))
    return refs


def open_conversation_between(session: Session, ride_x: int, ride_y: int) -> Optional[Conversation]:
    """The non-declined conversation linking two rides, in either order."""
    stmt = select(Conversation).where(
        or_(
            and_(Conversation.ride_a_id == ride_x, Conversation.ride_b_id == ride_y),
            and_(Conversation.ride_a_id == ride_y, Conversation.ride_b_id == ride_x),
        )
    )
    for conv in session.exec(stmt).all():
        if conv.status_a != RefStatus.DECLINED or conv.status_b != RefStatus.DECLINED:
            return conv
    return None


def counterpart_ids(session: Session, ride_id: int, statuses=handshake.LIVE) -> List[int]:
    return [r.counterpart_ride_id for r in refs_for(session, ride_id) if r.status in statuses]


def set_ref_statuses(session: Session, conv: Conversation, ride_id: int,
                     mine: RefStatus, theirs: RefStatus) -> None:
    """Write both sides of a pairing at once, seen from ``ride_id``.

    This is the only place conversation statuses are changed.
    """
    if conv.side_of(ride_id) == "a":
        conv.status_a, conv.status_b = mine, theirs
    else:
        conv.status_b, conv.status_a = mine, theirs
    session.add(conv)


def recompute_ride_status(session: Session, ride: RideRequest) -> RideStatus:
    session.flush()
    new_status = handshake.ride_status_for(r.status for r in refs_for(session, ride.id))
    if new_status != ride.status:
        logger.info("ride %s: %s -> %s", ride.id, ride.status.value, new_status.value)
        ride.status = new_status
        session.add(ride)
    return new_status


# ────────────────────────── messages ──────────────────────────────────────

def messages_for(session: Session, conversation_id: int) -> List[Message]:
    stmt = (
        select(Message)
        .where(Message.conversation_id == conversation_id)
        .order_by(Message.timestamp, Message.id)
    )
    return list(session.exec(stmt).all())


def last_message(session: Session, conversation_id: int) -> Optional[Message]:
    stmt = (
        select(Message)
        .where(Message.conversation_id == conversation_id)
        .order_by(col(Message.timestamp).desc(), col(Message.id).desc())
        .limit(1)
    )
    return session.exec(stmt).first()


def append_message(session: Session, message: Message, cap: int) -> int:
    """Add ``message`` and drop the oldest ones beyond ``cap``. Returns how many were dropped."""
    session.add(message)
    session.flush()
    existing = messages_for(session, message.conversation_id)
    overflow = existing[:max(0, len(existing) - cap)]
    for old in overflow:
        session.delete(old)
    if overflow:
        logger.info("conversation %s: trimmed %d old messages", message.conversation_id, len(overflow))
    return len(overflow)


# ────────────────────────── expiry ────────────────────────────────────────

def expired_counts(session: Session, now: datetime):
    rides = session.exec(select(RideRequest.id).where(RideRequest.departure_time < now)).all()
    convs = session.exec(select(Conversation.id).where(Conversation.expires_at < now)).all()
    return len(rides), len(convs)


def purge_expired(session: Session, now: datetime):
    """Delete rides past departure and conversations past expiry.

    Stands in for a store-side TTL index. User pointers to purged rides are
    left dangling on purpose; they are cleared on the next write.
    """
    convs = session.exec(select(Conversation).where(Conversation.expires_at < now)).all()
    for conv in convs:
        for message in messages_for(session, conv.id):
            session.delete(message)
        session.delete(conv)
    rides = session.exec(select(RideRequest).where(RideRequest.departure_time < now)).all()
    for ride in rides:
        session.delete(ride)
    return len(rides), len(convs)
