from typing import Optional
from sqlalchemy import DateTime
from sqlalchemy.types import TypeDecorator
from sqlmodel import SQLModel, Field
from datetime import datetime, date, timezone
from enum import Enum


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC in and out, whatever the backend keeps.

    SQLite drops the offset on storage, so values are normalised to UTC before
    binding and tagged as UTC again when read back.
    """
    impl = DateTime
    cache_ok = True

    def __init__(self):
        super().__init__(timezone=True)

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError(f"naive datetime {value!r}; expected UTC")
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Destination(str, Enum):
    AIRPORT = "Airport"
    TRAIN_STATION = "Train Station"
    BUS_TERMINAL = "Bus Terminal"


class RideStatus(str, Enum):
    AVAILABLE = "Available"
    PENDING = "Pending"
    CONFIRMED = "Confirmed"


class RefStatus(str, Enum):
    PENDING = "pending"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    CONFIRMED = "confirmed"
    DECLINED = "declined"


class User(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    # may point at a ride that has since expired; always re-check on read
    current_ride_id: Optional[int] = Field(default=None)
    request_count: int = 0
    request_count_reset: date = Field(default_factory=lambda: utcnow().date())


class RideRequest(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    destination: Destination = Field(index=True)
    departure_time: datetime = Field(sa_type=UTCDateTime, index=True)
    status: RideStatus = Field(default=RideStatus.AVAILABLE, index=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class Conversation(SQLModel, table=True):
    """A pairing between two rides. Side A is the initiator.

    Each side's view of the handshake lives here, so the two mirrored statuses
    are always read and written together.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    ride_a_id: int = Field(index=True)
    ride_b_id: int = Field(index=True)
    status_a: RefStatus = Field(default=RefStatus.PENDING)
    status_b: RefStatus = Field(default=RefStatus.PENDING)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    expires_at: datetime = Field(sa_type=UTCDateTime, index=True)

    def side_of(self, ride_id: int) -> Optional[str]:
        if ride_id == self.ride_a_id:
            return "a"
        if ride_id == self.ride_b_id:
            return "b"
        return None

    def counterpart_of(self, ride_id: int) -> int:
        return self.ride_b_id if ride_id == self.ride_a_id else self.ride_a_id

    def status_for(self, ride_id: int) -> RefStatus:
        return self.status_a if ride_id == self.ride_a_id else self.status_b


class Message(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    conversation_id: int = Field(foreign_key="conversation.id", index=True)
    sender_id: int
    content: str
    timestamp: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
