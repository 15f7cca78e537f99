"""Transition table for the two-party confirmation handshake.

A pairing has two sides, each holding a RefStatus. ``confirm`` and
``decline`` are pure functions over the pair of statuses; the coordinator
applies the result to the stored conversation. ``confirmed`` and ``declined``
are absorbing: nothing in this table moves a side out of either.
"""
from typing import Iterable, Tuple
from models import RefStatus, RideStatus
from errors import ConflictError

P = RefStatus.PENDING
W = RefStatus.AWAITING_CONFIRMATION
C = RefStatus.CONFIRMED
D = RefStatus.DECLINED

ACTIVE = frozenset({P, W})
LIVE = frozenset({P, W, C})

# outcome names
WAIT = "awaiting"        # first confirmer waits for the other side
LOCK = "confirmed"       # both sides confirmed
ALREADY = "already_confirmed"
INVALID = "invalid_state"

# (mine, theirs) -> outcome; every combination is listed
CONFIRM_TABLE = {
    (P, P): WAIT,
    (P, W): LOCK,
    (P, C): INVALID,
    (P, D): INVALID,
    (W, P): ALREADY,
    (W, W): ALREADY,
    (W, C): ALREADY,
    (W, D): INVALID,
    (C, P): ALREADY,
    (C, W): ALREADY,
    (C, C): ALREADY,
    (C, D): ALREADY,
    (D, P): INVALID,
    (D, W): INVALID,
    (D, C): INVALID,
    (D, D): INVALID,
}

_MESSAGES = {
    ALREADY: "You have already confirmed this ride share.",
    INVALID: "This conversation can no longer be confirmed.",
}


def confirm(mine: RefStatus, theirs: RefStatus) -> Tuple[str, RefStatus, RefStatus]:
    """Return ``(outcome, new_mine, new_theirs)`` or raise ConflictError."""
    outcome = CONFIRM_TABLE[(mine, theirs)]
    if outcome == WAIT:
        return outcome, W, theirs
    if outcome == LOCK:
        return outcome, C, C
    raise ConflictError(_MESSAGES[outcome], kind=outcome)


def decline(mine: RefStatus, theirs: RefStatus) -> Tuple[bool, RefStatus, RefStatus]:
    """Return ``(changed, new_mine, new_theirs)``.

    Declining an already declined pairing is a no-op. A confirmed side is
    never moved; callers reject declines on confirmed rides before this.
    """
    if C in (mine, theirs):
        raise ConflictError("This ride share is already confirmed.", kind="ride_already_confirmed")
    if mine == D and theirs == D:
        return False, mine, theirs
    return True, D, D


def ride_status_for(ref_statuses: Iterable[RefStatus]) -> RideStatus:
    """Derive a ride's status from its own side of every pairing it is in."""
    statuses = list(ref_statuses)
    if C in statuses:
        return RideStatus.CONFIRMED
    if any(s in ACTIVE for s in statuses):
        return RideStatus.PENDING
    return RideStatus.AVAILABLE
