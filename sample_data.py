"""Seed users and open ride requests so matching has something to find.
Run: python sample_data.py
"""
from datetime import datetime, timedelta
from db import init_db, get_session
from models import User, RideRequest, Destination, utcnow
import random


def next_slot(now: datetime, slot_minutes: int = 30) -> datetime:
    base = now.replace(second=0, microsecond=0)
    return base + timedelta(minutes=slot_minutes - base.minute % slot_minutes)


def seed(n_users: int = 20):
    init_db()
    session = get_session()
    users = [User(name=f"rider{i}") for i in range(1, n_users + 1)]
    session.add_all(users)
    session.commit()
    start = next_slot(utcnow())
    destinations = list(Destination)
    # every other user opens a ride within the next 12 hours
    for u in users[::2]:
        ride = RideRequest(
            user_id=u.id,
            destination=random.choice(destinations),
            departure_time=start + timedelta(minutes=30 * random.randint(1, 24)),
        )
        session.add(ride)
        session.flush()
        u.current_ride_id = ride.id
        u.request_count = 1
        session.add(u)
    session.commit()
    session.close()
    print(f"Seeded {len(users)} users and {len(users[::2])} ride requests")
    return users


if __name__ == "__main__":
    seed()
