from contextlib import contextmanager
from sqlalchemy.exc import OperationalError
from sqlmodel import create_engine, Session
from sqlmodel import SQLModel
from errors import TransientStoreError
import settings
import threading
import logging
import time
import os

logger = logging.getLogger(__name__)

DB_FILE = os.path.join(os.path.dirname(__file__), "ridematch.db")
_default_url = f"sqlite:///{DB_FILE}"
DATABASE_URL = os.environ.get("DATABASE_URL", _default_url)

# SQLite needs check_same_thread=False; Postgres does not
_connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

# Application-level locks keyed by name (e.g. "ride:12", "user:3")
locks = {}
locks_lock = threading.Lock()


def get_lock(name: str):
    with locks_lock:
        if name not in locks:
            locks[name] = threading.Lock()
        return locks[name]


engine = create_engine(DATABASE_URL, echo=False, connect_args=_connect_args)


def init_db():
    SQLModel.metadata.create_all(engine)


def get_session():
    return Session(engine, expire_on_commit=False)


def ride_key(ride_id) -> str:
    return f"ride:{ride_id}"


def user_key(user_id) -> str:
    return f"user:{user_id}"


def conversation_key(conversation_id) -> str:
    return f"conversation:{conversation_id}"


@contextmanager
def ordered_locks(names, timeout=None):
    """Acquire the named locks in sorted order and release them in reverse.

    Sorting gives every caller the same total order, so two operations over the
    same pair of rides can never wait on each other crosswise.
    """
    timeout = settings.LOCK_TIMEOUT_SECONDS if timeout is None else timeout
    held = []
    try:
        for name in sorted(set(names)):
            lock = get_lock(name)
            if not lock.acquire(timeout=timeout):
                raise TransientStoreError(f"Timed out waiting for {name}.")
            held.append(lock)
        yield
    finally:
        for lock in reversed(held):
            lock.release()


class Transaction:
    """One unit of work: a session plus the events to announce once it commits."""

    def __init__(self, session: Session, lock_names=()):
        self.session = session
        self.lock_names = frozenset(lock_names)
        self.outbox = []
        self.after_commit_error = None

    def publish(self, conversation_id: int, kind: str, payload: dict):
        self.outbox.append((conversation_id, kind, payload))

    def require_locks(self, names):
        """Abort for a retry if the work needs documents it did not lock up front."""
        missing = set(names) - self.lock_names
        if missing:
            raise TransientStoreError(f"Lock set changed while planning ({', '.join(sorted(missing))}).")

    def fail_after_commit(self, error: Exception):
        """Report ``error`` to the caller but keep the writes made so far."""
        self.after_commit_error = error


def run_transaction(work, plan=lambda: (), attempts=None, backoff=None):
    """Run ``work(tx)`` under the locks named by ``plan()`` in one session.

    Commits on success and rolls back on any exception. Only
    TransientStoreError is retried, with exponential backoff; ``plan`` is
    re-evaluated before every attempt. Returns ``(result, tx)`` so the caller
    can flush ``tx.outbox`` after the commit.
    """
    attempts = attempts or settings.TX_MAX_ATTEMPTS
    backoff = settings.TX_BACKOFF_SECONDS if backoff is None else backoff
    for attempt in range(1, attempts + 1):
        try:
            names = tuple(plan())
            with ordered_locks(names):
                session = get_session()
                tx = Transaction(session, names)
                try:
                    result = work(tx)
                    session.commit()
                except OperationalError as exc:
                    session.rollback()
                    raise TransientStoreError("Transaction aborted by the store; please retry.") from exc
                except Exception:
                    session.rollback()
                    raise
                finally:
                    session.close()
            return result, tx
        except TransientStoreError as exc:
            if attempt == attempts:
                logger.warning("transaction gave up after %d attempts: %s", attempts, exc.message)
                raise
            delay = backoff * (2 ** (attempt - 1))
            logger.info("transaction attempt %d aborted (%s); retrying in %.3fs", attempt, exc.message, delay)
            time.sleep(delay)
