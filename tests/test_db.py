"""
Transactions, locks and retries.
Covers:
- Transient failures retried with backoff, then given up after the attempt limit
- Store contention surfaces as a transient error
- Lock waits time out instead of hanging
- Work that outgrows its planned lock set is retried with a fresh plan
- Aborted work leaves no rows behind and publishes nothing
"""
import pytest
from sqlalchemy.exc import OperationalError
from sqlmodel import select

import coordinator
import db
import settings
from db import get_lock, get_session, ordered_locks, run_transaction, Transaction
from errors import ConflictError, TransientStoreError
from models import User, RefStatus, RideStatus
from notifications import bus, STATUS_CHANGED

from helpers import make_ride, next_slot, reload_ride, reload_conversation, assert_invariants


@pytest.fixture
def delays(monkeypatch):
    slept = []
    monkeypatch.setattr(db.time, "sleep", slept.append)
    return slept


def test_transient_failure_is_retried_with_backoff(delays):
    calls = []

    def work(tx):
        calls.append(1)
        if len(calls) < 3:
            raise TransientStoreError("busy")
        return "done"

    result, _ = run_transaction(work, attempts=3, backoff=0.05)
    assert result == "done"
    assert len(calls) == 3
    assert delays == [0.05, 0.1]


def test_gives_up_after_max_attempts(delays, monkeypatch):
    monkeypatch.setattr(settings, "TX_MAX_ATTEMPTS", 4)
    calls = []

    def work(tx):
        calls.append(1)
        raise TransientStoreError("busy")

    with pytest.raises(TransientStoreError):
        run_transaction(work)
    assert len(calls) == 4
    assert len(delays) == 3


def test_operational_error_becomes_transient(delays):
    def work(tx):
        raise OperationalError("UPDATE riderequest", {}, Exception("database is locked"))

    with pytest.raises(TransientStoreError) as err:
        run_transaction(work, attempts=2, backoff=0)
    assert err.value.kind == "transient"
    assert err.value.status_code == 503
    assert isinstance(err.value.__cause__, OperationalError)


def test_domain_errors_are_not_retried(delays):
    calls = []

    def work(tx):
        calls.append(1)
        raise ConflictError("nope")

    with pytest.raises(ConflictError):
        run_transaction(work, attempts=3)
    assert len(calls) == 1
    assert delays == []


def test_aborted_work_leaves_no_rows():
    def work(tx):
        tx.session.add(User(name="ghost"))
        tx.session.flush()
        raise ConflictError("changed my mind")

    with pytest.raises(ConflictError):
        run_transaction(work)
    with get_session() as session:
        assert session.exec(select(User)).all() == []


def test_lock_wait_times_out():
    held = get_lock("ride:424242")
    held.acquire()
    try:
        with pytest.raises(TransientStoreError):
            with ordered_locks(["ride:424242"], timeout=0.01):
                pass
    finally:
        held.release()
    # released locks are usable again
    with ordered_locks(["ride:424242"], timeout=0.01):
        pass


def test_locks_released_after_failed_work():
    def work(tx):
        raise ConflictError("boom")

    with pytest.raises(ConflictError):
        run_transaction(work, plan=lambda: ["ride:7", "user:7"])
    assert get_lock("ride:7").acquire(blocking=False)
    get_lock("ride:7").release()
    assert get_lock("user:7").acquire(blocking=False)
    get_lock("user:7").release()


def test_require_locks_checks_the_plan():
    session = get_session()
    try:
        tx = Transaction(session, ["ride:1", "ride:2"])
        tx.require_locks(["ride:2"])
        with pytest.raises(TransientStoreError):
            tx.require_locks(["ride:1", "ride:3"])
    finally:
        session.close()


def test_plan_is_recomputed_on_every_attempt(delays):
    plans = []

    def plan():
        plans.append(1)
        return ["ride:1"] if len(plans) == 1 else ["ride:1", "ride:2"]

    def work(tx):
        tx.require_locks(["ride:2"])
        return sorted(tx.lock_names)

    result, _ = run_transaction(work, plan=plan, attempts=3, backoff=0)
    assert result == ["ride:1", "ride:2"]
    assert len(plans) == 2


def test_nothing_published_when_work_aborts():
    got = []
    bus.subscribe(1, [99], got.append)

    def work(tx):
        tx.publish(99, STATUS_CHANGED, {"conversationId": 99})
        raise ConflictError("rolled back")

    with pytest.raises(ConflictError):
        coordinator.execute(work, lambda: ())
    assert got == []


def test_confirm_with_stale_plan_retries_and_cascades(monkeypatch):
    monkeypatch.setattr(settings, "TX_BACKOFF_SECONDS", 0)
    t = next_slot()
    u1, r1 = make_ride("R1", departure=t)
    u2, r2 = make_ride("R2", departure=t)
    u3, r3 = make_ride("R3", departure=t)
    c12 = coordinator.initiate(u1.id, r2.id).conversation.id
    c13 = coordinator.initiate(u1.id, r3.id).conversation.id
    coordinator.confirm(u2.id, c12)

    real_plan = coordinator._pair_plan
    planned = []

    def stale_first(conversation_id, with_counterparts):
        full = real_plan(conversation_id, with_counterparts)
        pair_only = real_plan(conversation_id, False)

        def plan():
            planned.append(1)
            # the first plan misses the cascade counterpart
            return pair_only() if len(planned) == 1 else full()
        return plan

    monkeypatch.setattr(coordinator, "_pair_plan", stale_first)
    events = []
    bus.subscribe(u3.id, [c13], events.append)

    result = coordinator.confirm(u1.id, c12)
    assert result.outcome == "confirmed"
    assert result.cascaded == [c13]
    assert len(planned) == 2
    conv = reload_conversation(c13)
    assert conv.status_a == conv.status_b == RefStatus.DECLINED
    assert reload_ride(r3.id).status == RideStatus.AVAILABLE
    assert [e["type"] for e in events] == [STATUS_CHANGED]
    assert_invariants()
