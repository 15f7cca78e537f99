"""Race a confirm against a decline on the same conversation, in-process.
Exactly one of them wins; the pair never ends up half confirmed.
Run: python concurrency_demo.py
"""
import asyncio
from datetime import timedelta
from main import app
from sample_data import next_slot
from db import init_db, get_session
from models import User, utcnow
import httpx


def make_users():
    init_db()
    session = get_session()
    users = [User(name="demo-a"), User(name="demo-b")]
    session.add_all(users)
    session.commit()
    session.close()
    return users


async def run():
    a, b = make_users()
    departure = (next_slot(utcnow()) + timedelta(hours=1)).isoformat()
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        ha, hb = {"X-User-Id": str(a.id)}, {"X-User-Id": str(b.id)}
        await client.post("/rides", json={"destination": "Airport", "departureTime": departure}, headers=ha)
        ride_b = (await client.post("/rides", json={"destination": "Airport", "departureTime": departure},
                                    headers=hb)).json()["ride"]
        conv = (await client.post("/conversations", json={"targetRideId": ride_b["id"]}, headers=ha)).json()
        cid = conv["conversation"]["id"]
        await client.post(f"/conversations/{cid}/confirm", headers=ha)
        res = await asyncio.gather(
            client.post(f"/conversations/{cid}/confirm", headers=hb),
            client.post(f"/conversations/{cid}/decline", headers=ha),
        )
        for r in res:
            print(r.status_code, r.json())
        print((await client.get("/conversations", headers=ha)).json())


if __name__ == "__main__":
    asyncio.run(run())
