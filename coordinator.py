"""Initiate, confirm and decline pairings between two ride requests.

Each operation runs as one transaction over both rides of the pair and the
conversation (plus the counterparts a cascade touches). Locks are planned
from a quick read before the transaction; if the work then needs a ride it
did not lock, the attempt is aborted and retried with a fresh plan. Events
are published only after the commit.
"""
from dataclasses import dataclass, field
from datetime import timedelta
from typing import List, Optional
from db import get_session, run_transaction, ride_key
from errors import NotFoundError, ValidationError, ConflictError, AuthorizationError
from models import Conversation, RefStatus, RideRequest, RideStatus
from notifications import bus, STATUS_CHANGED
import handshake
import settings
import store
import logging

logger = logging.getLogger(__name__)


@dataclass
class InitiateResult:
    conversation: Conversation
    initiator_status: RideStatus
    target_status: RideStatus


@dataclass
class TransitionResult:
    conversation_id: int
    outcome: str
    my_status: RefStatus
    other_status: RefStatus
    ride_status: RideStatus
    message: str
    cascaded: List[int] = field(default_factory=list)


def execute(work, plan, after_commit=None):
    """Run ``work`` in a transaction, then announce what it changed."""
    result, tx = run_transaction(work, plan)
    if after_commit is not None:
        after_commit(result)
    bus.publish_all(tx.outbox)
    if tx.after_commit_error is not None:
        raise tx.after_commit_error
    return result


def require_user(session, actor_id: int):
    user = store.get_user(session, actor_id)
    if user is None:
        raise NotFoundError("User not found.")
    return user


def participant_context(session, actor_id: int, conversation_id: int):
    """Return ``(conversation, actor_ride)`` or raise if the actor is not in the pair."""
    user = require_user(session, actor_id)
    conv = store.get_conversation(session, conversation_id)
    if conv is None:
        raise NotFoundError("Conversation not found.")
    if user.current_ride_id is None or conv.side_of(user.current_ride_id) is None:
        raise AuthorizationError("You are not a participant in this conversation.")
    ride = store.get_ride(session, user.current_ride_id)
    if ride is None:
        raise NotFoundError("Your ride request no longer exists.")
    return conv, ride


def status_payload(session, conv: Conversation) -> dict:
    ride_a = store.get_ride(session, conv.ride_a_id)
    ride_b = store.get_ride(session, conv.ride_b_id)
    return {
        "conversationId": conv.id,
        "rideAStatus": ride_a.status.value if ride_a else None,
        "rideBStatus": ride_b.status.value if ride_b else None,
        "refStatusA": conv.status_a.value,
        "refStatusB": conv.status_b.value,
    }


def announce(tx, conversations) -> None:
    """Queue a status event per conversation, built from the final in-transaction state."""
    seen = set()
    for conv in conversations:
        if conv.id in seen:
            continue
        seen.add(conv.id)
        tx.publish(conv.id, STATUS_CHANGED, status_payload(tx.session, conv))


def cascade_decline(tx, ride: RideRequest, keep: Optional[int] = None,
                    statuses=handshake.ACTIVE) -> List[Conversation]:
    """Decline both sides of every other pairing ``ride`` holds in ``statuses``.

    One pass over the ride's own pairings; counterparts' other pairings are
    not followed. Each counterpart ride's status is recomputed afterwards.
    """
    session = tx.session
    declined = []
    for conv in store.conversations_for(session, ride.id):
        if conv.id == keep or conv.status_for(ride.id) not in statuses:
            continue
        other_id = conv.counterpart_of(ride.id)
        tx.require_locks([ride_key(other_id)])
        store.set_ref_statuses(session, conv, ride.id, RefStatus.DECLINED, RefStatus.DECLINED)
        other = store.get_ride(session, other_id)
        if other is not None:
            store.recompute_ride_status(session, other)
        else:
            logger.warning("conversation %s: counterpart ride %s already gone", conv.id, other_id)
        declined.append(conv)
    store.recompute_ride_status(session, ride)
    if declined:
        logger.info("ride %s: cascade declined conversations %s", ride.id, [c.id for c in declined])
    return declined


def _pair_plan(conversation_id: int, with_counterparts: bool):
    def plan():
        with get_session() as session:
            conv = store.get_conversation(session, conversation_id)
            if conv is None:
                return []
            names = {ride_key(conv.ride_a_id), ride_key(conv.ride_b_id)}
            if with_counterparts:
                for ride_id in (conv.ride_a_id, conv.ride_b_id):
                    names.update(ride_key(i) for i in store.counterpart_ids(session, ride_id, handshake.ACTIVE))
            return names
    return plan


# ────────────────────────── initiate ──────────────────────────────────────

def initiate(actor_id: int, target_ride_id: int) -> InitiateResult:
    def plan():
        with get_session() as session:
            user = require_user(session, actor_id)
            ride_id = user.current_ride_id
        return [ride_key(ride_id), ride_key(target_ride_id)] if ride_id is not None else []

    def work(tx):
        session = tx.session
        user = require_user(session, actor_id)
        ride = store.current_ride(session, user)
        if ride is None:
            raise NotFoundError("You do not have an active ride request.")
        tx.require_locks([ride_key(ride.id)])
        if ride.id == target_ride_id:
            raise ValidationError("Cannot initiate a conversation with your own ride request.", kind="self_target")
        target = store.get_ride(session, target_ride_id)
        if target is None or not store.is_current(session, target):
            raise NotFoundError("The ride request you picked no longer exists.")
        if target.user_id == user.id:
            raise ValidationError("Cannot initiate a conversation with your own ride request.", kind="self_target")
        if RideStatus.CONFIRMED in (ride.status, target.status):
            raise ConflictError("One of the ride requests is already confirmed with someone else.",
                                kind="already_confirmed")
        if store.open_conversation_between(session, ride.id, target.id) is not None:
            raise ConflictError("A conversation already exists between these ride requests.", kind="duplicate")
        limit = settings.MAX_ACTIVE_PAIRINGS
        if limit:
            for r in (ride, target):
                if len(store.counterpart_ids(session, r.id, handshake.ACTIVE)) >= limit:
                    raise ConflictError(f"Ride request {r.id} already has {limit} open conversations.",
                                        kind="pairing_limit")

        earlier = min(ride.departure_time, target.departure_time)
        conv = Conversation(
            ride_a_id=ride.id,
            ride_b_id=target.id,
            expires_at=earlier + timedelta(hours=settings.CONVERSATION_EXPIRY_BUFFER_HOURS),
        )
        session.add(conv)
        session.flush()
        store.recompute_ride_status(session, ride)
        store.recompute_ride_status(session, target)
        announce(tx, [conv])
        logger.info("conversation %s opened between rides %s and %s", conv.id, ride.id, target.id)
        return InitiateResult(conv, ride.status, target.status), (ride.user_id, target.user_id)

    def attach(result):
        initiated, owners = result
        bus.attach(initiated.conversation.id, owners)

    result, _ = execute(work, plan, after_commit=attach)
    return result


# ────────────────────────── confirm ───────────────────────────────────────

def confirm(actor_id: int, conversation_id: int) -> Optional[TransitionResult]:
    def work(tx):
        session = tx.session
        conv, ride = participant_context(session, actor_id, conversation_id)
        tx.require_locks([ride_key(conv.ride_a_id), ride_key(conv.ride_b_id)])
        other_id = conv.counterpart_of(ride.id)
        other = store.get_ride(session, other_id)
        if other is None:
            _heal_vanished_counterpart(tx, conv, ride)
            return None

        mine, theirs = conv.status_for(ride.id), conv.status_for(other_id)
        outcome, new_mine, new_theirs = handshake.confirm(mine, theirs)
        if RideStatus.CONFIRMED in (ride.status, other.status):
            raise ConflictError("One of the ride requests is already confirmed with someone else.",
                                kind="already_confirmed")
        store.set_ref_statuses(session, conv, ride.id, new_mine, new_theirs)
        touched = [conv]
        if outcome == handshake.LOCK:
            store.recompute_ride_status(session, ride)
            store.recompute_ride_status(session, other)
            touched += cascade_decline(tx, ride, keep=conv.id)
            touched += cascade_decline(tx, other, keep=conv.id)
            message = "Ride share confirmed by both riders."
            logger.info("conversation %s confirmed; rides %s and %s locked", conv.id, ride.id, other.id)
        else:
            message = "Confirmation recorded. Waiting for the other rider to confirm."
            logger.info("conversation %s: ride %s confirmed first", conv.id, ride.id)
        announce(tx, touched)
        return TransitionResult(
            conversation_id=conv.id,
            outcome=outcome,
            my_status=new_mine,
            other_status=new_theirs,
            ride_status=ride.status,
            message=message,
            cascaded=[c.id for c in touched[1:]],
        )

    return execute(work, _pair_plan(conversation_id, with_counterparts=True))


def _heal_vanished_counterpart(tx, conv: Conversation, ride: RideRequest) -> None:
    logger.warning("conversation %s: counterpart of ride %s vanished; declining", conv.id, ride.id)
    if conv.status_a != RefStatus.DECLINED or conv.status_b != RefStatus.DECLINED:
        store.set_ref_statuses(tx.session, conv, ride.id, RefStatus.DECLINED, RefStatus.DECLINED)
        store.recompute_ride_status(tx.session, ride)
        announce(tx, [conv])
    tx.fail_after_commit(NotFoundError("The other ride request no longer exists."))


# ────────────────────────── decline ───────────────────────────────────────

def decline(actor_id: int, conversation_id: int) -> TransitionResult:
    def work(tx):
        session = tx.session
        conv, ride = participant_context(session, actor_id, conversation_id)
        tx.require_locks([ride_key(conv.ride_a_id), ride_key(conv.ride_b_id)])
        other = store.get_ride(session, conv.counterpart_of(ride.id))
        if ride.status == RideStatus.CONFIRMED or (other is not None and other.status == RideStatus.CONFIRMED):
            raise ConflictError("A confirmed ride share cannot be declined.", kind="ride_already_confirmed")
        changed, new_mine, new_theirs = handshake.decline(conv.status_for(ride.id),
                                                          conv.status_for(conv.counterpart_of(ride.id)))
        if changed:
            store.set_ref_statuses(session, conv, ride.id, new_mine, new_theirs)
            store.recompute_ride_status(session, ride)
            if other is not None:
                store.recompute_ride_status(session, other)
            announce(tx, [conv])
            logger.info("conversation %s declined by ride %s", conv.id, ride.id)
        return TransitionResult(
            conversation_id=conv.id,
            outcome="declined",
            my_status=new_mine,
            other_status=new_theirs,
            ride_status=ride.status,
            message="Conversation declined." if changed else "Conversation was already declined.",
        )

    return execute(work, _pair_plan(conversation_id, with_counterparts=False))
