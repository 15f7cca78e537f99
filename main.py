from contextlib import asynccontextmanager
from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.responses import JSONResponse
from starlette.requests import Request, HTTPConnection
from starlette.routing import Route, WebSocketRoute
from starlette.websockets import WebSocket, WebSocketDisconnect
from db import init_db
from errors import RideMatchError, AuthenticationError, ValidationError
from matching import time_difference_minutes
from notifications import bus, envelope, CONNECTED
from rides import ride_to_dict
from conversations import message_to_dict
import conversations
import coordinator
import rides
import settings
import anyio
import asyncio
import json
import logging
import os

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app):
    logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO"))
    init_db()
    yield


def actor_id(conn: HTTPConnection) -> int:
    """The caller's user id, as asserted by the identity layer in front of us."""
    raw = conn.headers.get("x-user-id") or conn.query_params.get("user_id")
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise AuthenticationError("Authentication required. No user id provided.")


async def json_body(request: Request) -> dict:
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ValidationError("Request body must be valid JSON.")
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object.")
    return payload


async def handle_error(request: Request, exc: RideMatchError):
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


# ────────────────────────── rides ─────────────────────────────────────────

async def create_ride(request: Request):
    uid = actor_id(request)
    payload = await json_body(request)
    for k in ("destination", "departureTime"):
        if k not in payload:
            raise ValidationError(f"missing {k}")
    ride = await run_in_threadpool(rides.create, uid, payload["destination"], payload["departureTime"])
    return JSONResponse({"ride": ride_to_dict(ride)}, status_code=201)


async def current_ride(request: Request):
    ride = await run_in_threadpool(rides.current, actor_id(request))
    return JSONResponse({"ride": ride_to_dict(ride) if ride else None})


async def delete_ride(request: Request):
    ride_id = await run_in_threadpool(rides.delete, actor_id(request))
    return JSONResponse({"status": "deleted", "rideId": ride_id})


async def find_matches(request: Request):
    uid = actor_id(request)
    mine = await run_in_threadpool(rides.current, uid)
    out = []
    for match in await run_in_threadpool(rides.find_matches, uid):
        item = ride_to_dict(match)
        item["timeDifferenceMinutes"] = time_difference_minutes(match, mine) if mine else None
        out.append(item)
    return JSONResponse({"matches": out})


# ────────────────────────── conversations ─────────────────────────────────

async def list_conversations(request: Request):
    listing = await run_in_threadpool(conversations.list_conversations, actor_id(request))
    return JSONResponse({"conversations": listing})


async def initiate_conversation(request: Request):
    uid = actor_id(request)
    payload = await json_body(request)
    try:
        target = int(payload["targetRideId"])
    except (KeyError, TypeError, ValueError):
        raise ValidationError("Valid targetRideId is required.")
    result = await run_in_threadpool(coordinator.initiate, uid, target)
    conv = result.conversation
    return JSONResponse({
        "conversation": {
            "id": conv.id,
            "rideRequestA": conv.ride_a_id,
            "rideRequestB": conv.ride_b_id,
            "statusA": conv.status_a.value,
            "statusB": conv.status_b.value,
            "createdAt": conv.created_at.isoformat(),
            "expiresAt": conv.expires_at.isoformat(),
        },
        "initiatorRideStatus": result.initiator_status.value,
        "targetRideStatus": result.target_status.value,
    }, status_code=201)


async def get_messages(request: Request):
    cid = request.path_params["conversation_id"]
    messages = await run_in_threadpool(conversations.get_messages, actor_id(request), cid)
    return JSONResponse({"messages": [message_to_dict(m) for m in messages]})


async def send_message(request: Request):
    uid = actor_id(request)
    cid = request.path_params["conversation_id"]
    payload = await json_body(request)
    message = await run_in_threadpool(conversations.send_message, uid, cid, payload.get("content"))
    return JSONResponse({"message": message_to_dict(message)}, status_code=201)


def _transition_json(result):
    return {
        "conversationId": result.conversation_id,
        "status": result.my_status.value,
        "otherPartyStatus": result.other_status.value,
        "rideStatus": result.ride_status.value,
        "message": result.message,
        "cascadeDeclined": result.cascaded,
    }


async def confirm(request: Request):
    uid, cid = actor_id(request), request.path_params["conversation_id"]
    result = await run_in_threadpool(coordinator.confirm, uid, cid)
    return JSONResponse(_transition_json(result))


async def decline(request: Request):
    uid, cid = actor_id(request), request.path_params["conversation_id"]
    result = await run_in_threadpool(coordinator.decline, uid, cid)
    return JSONResponse(_transition_json(result))


# ────────────────────────── live updates ──────────────────────────────────

async def events(websocket: WebSocket):
    try:
        uid = actor_id(websocket)
        topics = await run_in_threadpool(conversations.subscription_topics, uid)
    except RideMatchError as exc:
        logger.info("rejecting websocket: %s", exc.message)
        await websocket.close(code=1008)
        return

    await websocket.accept()
    loop = asyncio.get_running_loop()
    queue = asyncio.Queue(maxsize=settings.SUBSCRIBER_QUEUE_SIZE)

    def offer(event):
        try:
            queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("user %s is not keeping up; dropped %s", uid, event["type"])

    subscriber = bus.subscribe(uid, topics, lambda event: loop.call_soon_threadsafe(offer, event))
    try:
        await websocket.send_json(envelope(CONNECTED, {"userId": uid, "conversationIds": sorted(topics)}))
        async with anyio.create_task_group() as tg:
            tg.start_soon(_watch_disconnect, websocket, tg.cancel_scope)
            while True:
                event = await queue.get()
                try:
                    await websocket.send_json(event)
                except WebSocketDisconnect:
                    break
            tg.cancel_scope.cancel()
    finally:
        bus.unsubscribe(subscriber)


async def _watch_disconnect(websocket: WebSocket, scope):
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            scope.cancel()
            return


routes = [
    Route("/rides", create_ride, methods=["POST"]),
    Route("/rides/current", current_ride, methods=["GET"]),
    Route("/rides/current", delete_ride, methods=["DELETE"]),
    Route("/rides/current/matches", find_matches, methods=["GET"]),
    Route("/conversations", list_conversations, methods=["GET"]),
    Route("/conversations", initiate_conversation, methods=["POST"]),
    Route("/conversations/{conversation_id:int}/messages", get_messages, methods=["GET"]),
    Route("/conversations/{conversation_id:int}/messages", send_message, methods=["POST"]),
    Route("/conversations/{conversation_id:int}/confirm", confirm, methods=["POST"]),
    Route("/conversations/{conversation_id:int}/decline", decline, methods=["POST"]),
    WebSocketRoute("/ws", events),
]

app = Starlette(
    debug=os.environ.get("DEBUG", "") == "1",
    routes=routes,
    lifespan=lifespan,
    exception_handlers={RideMatchError: handle_error},
)
