"""Conversation listing and messaging for the actor's current ride."""
from datetime import datetime
from typing import List, Optional
from coordinator import execute, require_user, participant_context
from db import get_session, conversation_key
from errors import ValidationError, ConflictError
from models import Message, utcnow
from notifications import MESSAGE_APPENDED
import handshake
import settings
import store
import logging

logger = logging.getLogger(__name__)


def message_to_dict(message: Message) -> dict:
    return {
        "id": message.id,
        "senderId": message.sender_id,
        "content": message.content,
        "timestamp": message.timestamp.isoformat(),
    }


def list_conversations(actor_id: int) -> List[dict]:
    with get_session() as session:
        user = require_user(session, actor_id)
        ride = store.current_ride(session, user)
        if ride is None:
            return []
        out = []
        for ref in store.refs_for(session, ride.id):
            other = store.get_ride(session, ref.counterpart_ride_id)
            counterpart = None
            if other is not None:
                owner = store.get_user(session, other.user_id)
                counterpart = {
                    "rideId": other.id,
                    "userId": other.user_id,
                    "name": owner.name if owner else None,
                    "destination": other.destination.value,
                    "departureTime": other.departure_time.isoformat(),
                    "status": other.status.value,
                }
            last = store.last_message(session, ref.conversation_id)
            out.append({
                "conversationId": ref.conversation_id,
                "counterpart": counterpart,
                "myStatus": ref.status.value,
                "otherPartyStatus": ref.counterpart_status.value,
                "lastMessage": message_to_dict(last) if last else None,
                "initiatedAt": ref.initiated_at.isoformat(),
                "expiresAt": ref.expires_at.isoformat(),
            })
        return out


def subscription_topics(actor_id: int) -> List[int]:
    """Conversation ids a new live session of ``actor_id`` should follow."""
    with get_session() as session:
        user = require_user(session, actor_id)
        ride = store.current_ride(session, user)
        if ride is None:
            return []
        return [r.conversation_id for r in store.refs_for(session, ride.id) if r.status in handshake.LIVE]


def get_messages(actor_id: int, conversation_id: int) -> List[Message]:
    with get_session() as session:
        participant_context(session, actor_id, conversation_id)
        return store.messages_for(session, conversation_id)


def send_message(actor_id: int, conversation_id: int, text, now: Optional[datetime] = None) -> Message:
    if not isinstance(text, str) or not text.strip():
        raise ValidationError("Message content is required.")
    text = text.strip()
    if len(text) > settings.MESSAGE_MAX_LENGTH:
        raise ValidationError(f"Messages are limited to {settings.MESSAGE_MAX_LENGTH} characters.",
                              kind="too_long")

    def work(tx):
        session = tx.session
        conv, _ride = participant_context(session, actor_id, conversation_id)
        sent_at = now or utcnow()
        if sent_at > conv.expires_at:
            raise ConflictError("This conversation has expired.", kind="expired")
        if (settings.MESSAGE_OVERFLOW_POLICY == "reject"
                and len(store.messages_for(session, conv.id)) >= settings.MESSAGE_CAP):
            raise ConflictError("This conversation has reached its message limit.", kind="full")
        message = Message(conversation_id=conv.id, sender_id=actor_id, content=text, timestamp=sent_at)
        store.append_message(session, message, settings.MESSAGE_CAP)
        tx.publish(conv.id, MESSAGE_APPENDED, {
            "conversationId": conv.id,
            "newMessage": message_to_dict(message),
        })
        return message

    return execute(work, lambda: [conversation_key(conversation_id)])
