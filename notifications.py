"""In-process fan-out of committed conversation changes to live sessions.

Topics are conversation ids. A session subscribes once, when it connects, to
every pairing its owner's current ride is part of; sessions of both owners
are also attached to a conversation when it is created. Delivery is
best-effort: nothing is retried or stored, and a subscriber whose delivery
fails is dropped. Clients that miss events re-fetch.
"""
from collections import defaultdict
from typing import Callable, Dict, Iterable, Set
import itertools
import logging
import threading

logger = logging.getLogger(__name__)

MESSAGE_APPENDED = "newMessage"
STATUS_CHANGED = "conversationUpdate"
CONNECTED = "connection_established"


def envelope(kind: str, payload: dict) -> dict:
    return {"type": kind, "data": payload}


class Subscriber:
    _ids = itertools.count(1)

    def __init__(self, user_id: int, send: Callable[[dict], None]):
        self.id = next(self._ids)
        self.user_id = user_id
        self.send = send
        self.topics: Set[int] = set()

    def __repr__(self):
        return f"<Subscriber {self.id} user={self.user_id} topics={sorted(self.topics)}>"


class NotificationBus:
    def __init__(self):
        self._lock = threading.Lock()
        self._topics: Dict[int, Set[Subscriber]] = defaultdict(set)
        self._by_user: Dict[int, Set[Subscriber]] = defaultdict(set)

    def subscribe(self, user_id: int, conversation_ids: Iterable[int], send) -> Subscriber:
        subscriber = Subscriber(user_id, send)
        with self._lock:
            self._by_user[user_id].add(subscriber)
            for conversation_id in conversation_ids:
                self._topics[conversation_id].add(subscriber)
                subscriber.topics.add(conversation_id)
        logger.debug("subscribed %r", subscriber)
        return subscriber

    def attach(self, conversation_id: int, user_ids: Iterable[int]) -> int:
        """Add every live session of ``user_ids`` to a (new) conversation topic."""
        attached = 0
        with self._lock:
            for user_id in user_ids:
                for subscriber in self._by_user.get(user_id, ()):
                    if conversation_id not in subscriber.topics:
                        subscriber.topics.add(conversation_id)
                        self._topics[conversation_id].add(subscriber)
                        attached += 1
        return attached

    def unsubscribe(self, subscriber: Subscriber) -> None:
        with self._lock:
            for conversation_id in subscriber.topics:
                members = self._topics.get(conversation_id)
                if members is not None:
                    members.discard(subscriber)
                    if not members:
                        del self._topics[conversation_id]
            sessions = self._by_user.get(subscriber.user_id)
            if sessions is not None:
                sessions.discard(subscriber)
                if not sessions:
                    del self._by_user[subscriber.user_id]
        logger.debug("unsubscribed %r", subscriber)

    def subscribers(self, conversation_id: int) -> Set[Subscriber]:
        with self._lock:
            return set(self._topics.get(conversation_id, ()))

    def publish(self, conversation_id: int, kind: str, payload: dict) -> int:
        """Send one event to every subscriber of ``conversation_id``. Returns deliveries made."""
        event = envelope(kind, payload)
        delivered = 0
        for subscriber in self.subscribers(conversation_id):
            try:
                subscriber.send(event)
                delivered += 1
            except Exception:
                logger.exception("dropping subscriber %r after failed %s delivery", subscriber, kind)
                self.unsubscribe(subscriber)
        return delivered

    def publish_all(self, events) -> int:
        return sum(self.publish(*event) for event in events)

    def reset(self) -> None:
        with self._lock:
            self._topics.clear()
            self._by_user.clear()


bus = NotificationBus()
