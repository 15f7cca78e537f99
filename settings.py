"""Tunables for matching, handshake and transactions.
Every value can be overridden through an environment variable of the same name.
"""
import os


def _int(name: str, default: int) -> int:
    return int(os.environ.get(name, default))


def _float(name: str, default: float) -> float:
    return float(os.environ.get(name, default))


DESTINATIONS = ("Airport", "Train Station", "Bus Terminal")

# ride creation
MAX_DAILY_REQUESTS = _int("MAX_DAILY_REQUESTS", 5)
SLOT_MINUTES = _int("SLOT_MINUTES", 30)

# matching
MATCH_WINDOW_HOURS = _float("MATCH_WINDOW_HOURS", 12)
MAX_MATCH_RESULTS = _int("MAX_MATCH_RESULTS", 15)

# conversations
CONVERSATION_EXPIRY_BUFFER_HOURS = _float("CONVERSATION_EXPIRY_BUFFER_HOURS", 2)
MESSAGE_CAP = _int("MESSAGE_CAP", 20)
MESSAGE_MAX_LENGTH = _int("MESSAGE_MAX_LENGTH", 500)
MESSAGE_OVERFLOW_POLICY = os.environ.get("MESSAGE_OVERFLOW_POLICY", "trim")  # trim | reject
# 0 means no limit on simultaneous open pairings per ride
MAX_ACTIVE_PAIRINGS = _int("MAX_ACTIVE_PAIRINGS", 0)

# transactions
LOCK_TIMEOUT_SECONDS = _float("LOCK_TIMEOUT_SECONDS", 5)
TX_MAX_ATTEMPTS = _int("TX_MAX_ATTEMPTS", 3)
TX_BACKOFF_SECONDS = _float("TX_BACKOFF_SECONDS", 0.05)

# notifications
SUBSCRIBER_QUEUE_SIZE = _int("SUBSCRIBER_QUEUE_SIZE", 100)
