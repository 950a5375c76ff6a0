"""Live event stream over a websocket.

The first frame is a snapshot read from the ride store; everything after it is
pushed from the fan-out hub. The subscription is opened before the store is
read, so nothing committed while the snapshot loads is lost. Clients that
reconnect get a fresh snapshot, so nothing here is replayed.
"""

import asyncio
import datetime as dt
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.concurrency import run_in_threadpool
from starlette.websockets import WebSocketState

from taxiinsta.core.auth_provider import auth_provider
from taxiinsta.db import SessionLocal
from taxiinsta.models import Role
from taxiinsta.schemas import FeedEvent, ride_to_out
from taxiinsta.services import dispatch, profiles
from taxiinsta.services.errors import DispatchError
from taxiinsta.services.fanout import as_utc, get_hub
from taxiinsta.services.lifecycle import Actor
from taxiinsta.settings import settings

logger = logging.getLogger(__name__)

WS_POLICY_VIOLATION = 4401
WS_FORBIDDEN = 4403
WS_TRY_AGAIN_LATER = 1013

router = APIRouter()


def _resolve_actor(user_id: str) -> Actor:
    db = SessionLocal()
    try:
        return profiles.resolve_actor(db, user_id)
    finally:
        db.close()


def _load_snapshot(actor: Actor):
    db = SessionLocal()
    try:
        active = dispatch.get_active_ride(db, actor)
        offers = []
        if actor.role is Role.DRIVER and active is None:
            offers = dispatch.list_open_offers(db, actor)
        return active, offers
    finally:
        db.close()


def _shown_in_snapshot(event: FeedEvent, rides: dict) -> bool:
    """True when the snapshot already carries this ride at the event's version or later."""
    ride = rides.get(event.ride_id)
    if ride is None or event.ride is None:
        return False
    seen, shown = as_utc(event.ride.updated_at), as_utc(ride.updated_at)
    if seen is None or shown is None:
        return False
    return seen <= shown


def _now_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat()


async def _watch_client(websocket: WebSocket, sub) -> None:
    # inbound frames are ignored; the stream is push-only
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
    finally:
        sub.close()


@router.websocket("/ws")
async def ride_feed(websocket: WebSocket):
    claims = auth_provider.verify_token(websocket.query_params.get("token"))
    if claims is None:
        await websocket.close(code=WS_POLICY_VIOLATION)
        return

    try:
        actor = await run_in_threadpool(_resolve_actor, claims.user_id)
    except DispatchError as exc:
        logger.info("websocket refused for %s: %s", claims.user_id, exc.message)
        await websocket.close(code=WS_FORBIDDEN)
        return

    await websocket.accept()

    hub = get_hub()
    sub = hub.subscribe(actor.user_id, actor.role, loop=asyncio.get_running_loop())
    watcher = None
    try:
        active, offers = await run_in_threadpool(_load_snapshot, actor)
        hub.register_snapshot(sub, active_ride=active, offers=offers)

        rides = {str(r.id): r for r in offers}
        if active is not None:
            rides[str(active.id)] = active
        backlog = [e for e in sub.drain() if not _shown_in_snapshot(e, rides)]

        watcher = asyncio.create_task(_watch_client(websocket, sub))
        await websocket.send_json(
            {
                "type": "snapshot",
                "at": _now_iso(),
                "role": actor.role.value,
                "active_ride": ride_to_out(active).model_dump(mode="json") if active is not None else None,
                "offers": [ride_to_out(r).model_dump(mode="json") for r in offers],
            }
        )
        for event in backlog:
            await websocket.send_json(event.model_dump(mode="json"))

        while True:
            event = await sub.next_event(timeout=settings.WS_HEARTBEAT_SECONDS)
            if event is None:
                if sub.closed:
                    break
                await websocket.send_json({"type": "heartbeat", "at": _now_iso()})
                continue
            await websocket.send_json(event.model_dump(mode="json"))
    except WebSocketDisconnect:
        logger.debug("websocket closed by %s", actor.user_id)
    except DispatchError as exc:
        logger.warning("snapshot for %s failed: %s", actor.user_id, exc.message)
    finally:
        if watcher is not None:
            watcher.cancel()
        hub.unsubscribe(sub)

    if (
        websocket.client_state is WebSocketState.CONNECTED
        and websocket.application_state is WebSocketState.CONNECTED
    ):
        # the hub dropped this subscriber or the store failed; the client should resync and reconnect
        await websocket.close(code=WS_TRY_AGAIN_LATER)
