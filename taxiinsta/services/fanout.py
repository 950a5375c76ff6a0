"""In-memory subscription table and event fan-out.

Subscriptions are advisory. The ride store stays authoritative, and clients
resync through ``GET /rides/active`` whenever their stream is interrupted.

Events are published after commit from whichever thread served the request,
so two events for one ride can reach the hub in either order. The hub keeps
the furthest lifecycle rank (and ``updated_at``) it has seen per ride and
drops anything older, so a late event never re-offers a claimed ride or marks
a finished driver busy again.

Lock order: the hub lock is never held while a subscription lock is taken,
and a subscription never calls back into the hub while holding its own.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
import threading
import uuid
from collections import OrderedDict, defaultdict
from enum import Enum
from typing import Any, Iterable

from taxiinsta.models import TERMINAL_STATES, RideState, Role, lifecycle_rank, state_value
from taxiinsta.schemas import FeedEvent, ride_to_out
from taxiinsta.services.errors import NotAuthorized
from taxiinsta.settings import settings

logger = logging.getLogger(__name__)

_CLOSED = object()

# rides remembered for ordering; the oldest entries are forgotten first
TRACKED_RIDES_LIMIT = 10_000


class Interest(str, Enum):
    OWN_RIDES = "own_rides"
    PENDING_POOL = "pending_pool"
    ALL_RIDES = "all_rides"


def interests_for(role: Role) -> frozenset[Interest]:
    if role is Role.PASSENGER:
        return frozenset({Interest.OWN_RIDES})
    if role is Role.DRIVER:
        return frozenset({Interest.OWN_RIDES, Interest.PENDING_POOL})
    if role is Role.ADMIN:
        return frozenset({Interest.ALL_RIDES})
    raise NotAuthorized(f"unknown role: {role!r}")


def as_utc(value: dt.datetime | None) -> dt.datetime | None:
    """SQLite hands back naive UTC timestamps; make them comparable with aware ones."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=dt.timezone.utc)


class Subscription:
    """One connected client's mailbox.

    Events are handed over with ``deliver`` from any thread. When bound to an
    event loop the queue is only touched on that loop; otherwise every queue
    access happens under the subscription lock.
    """

    def __init__(
        self,
        hub: FanoutHub,
        user_id: str,
        role: Role,
        *,
        maxsize: int,
        loop: asyncio.AbstractEventLoop | None = None,
    ):
        self.id = uuid.uuid4().hex
        self.user_id = user_id
        self.role = role
        self.interests = interests_for(role)
        self.closed = False
        self._hub = hub
        self._loop = loop
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._withdrawn: set[str] = set()
        self._lock = threading.RLock()

    def __repr__(self) -> str:
        return f"<Subscription {self.id} user={self.user_id} role={self.role.value}>"

    def _on_loop_thread(self) -> bool:
        try:
            return asyncio.get_running_loop() is self._loop
        except RuntimeError:
            return False

    def _dispatch(self, item: Any) -> None:
        if self._loop is None or self._on_loop_thread():
            with self._lock:
                accepted = self._put(item)
            if not accepted:
                self._overflow()
            return
        try:
            self._loop.call_soon_threadsafe(self._put_on_loop, item)
        except RuntimeError:
            # loop already shut down
            self.closed = True

    def _put_on_loop(self, item: Any) -> None:
        if not self._put(item):
            self._overflow()

    def _put(self, item: Any) -> bool:
        """Enqueue ``item``; False when the queue is full and the subscriber must go."""
        if item is _CLOSED:
            try:
                self._queue.put_nowait(_CLOSED)
            except asyncio.QueueFull:
                pass
            return True
        if self.closed:
            return True
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            self.closed = True
            return False
        return True

    def _overflow(self) -> None:
        logger.warning("subscriber %s fell behind; closing its stream", self)
        self._hub.unsubscribe(self)

    def deliver(self, event: FeedEvent) -> bool:
        if self.closed:
            return False
        self._dispatch(event)
        return True

    def withdraw(self, ride_id: str) -> None:
        """Drop any offer for ``ride_id`` still waiting in the queue."""
        with self._lock:
            self._withdrawn.add(ride_id)

    def _is_stale(self, event: FeedEvent) -> bool:
        with self._lock:
            return event.type == "ride.offered" and event.ride_id in self._withdrawn

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._dispatch(_CLOSED)

    async def next_event(self, timeout: float | None = None) -> FeedEvent | None:
        """Next live event, or None on timeout or once the subscription closes."""
        while True:
            if self.closed and self._queue.empty():
                return None
            try:
                item = await asyncio.wait_for(self._queue.get(), timeout)
            except asyncio.TimeoutError:
                return None
            if item is _CLOSED:
                return None
            if self._is_stale(item):
                continue
            return item

    def drain(self) -> list[FeedEvent]:
        """Pop every queued event without waiting.

        Call it from the bound loop, or from any thread when unbound.
        """
        out = []
        with self._lock:
            while True:
                try:
                    item = self._queue.get_nowait()
                except asyncio.QueueEmpty:
                    break
                if item is _CLOSED:
                    continue
                if item.type == "ride.offered" and item.ride_id in self._withdrawn:
                    continue
                out.append(item)
        return out


class FanoutHub:
    def __init__(self, queue_size: int = 256, track_limit: int = TRACKED_RIDES_LIMIT):
        self.queue_size = queue_size
        self.track_limit = track_limit
        self._lock = threading.RLock()
        self._subs: dict[str, Subscription] = {}
        self._by_user: dict[str, set[str]] = defaultdict(set)
        # driver user id -> ride id they are serving
        self._busy: dict[str, str] = {}
        # ride id -> subscription ids that were offered the ride
        self._offers: dict[str, set[str]] = {}
        # ride id -> (lifecycle rank, updated_at, state) of the newest event seen
        self._progress: OrderedDict[str, tuple[int, dt.datetime | None, str]] = OrderedDict()

    def subscribe(
        self,
        user_id: str,
        role: Role,
        *,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> Subscription:
        sub = Subscription(self, user_id, role, maxsize=self.queue_size, loop=loop)
        with self._lock:
            self._subs[sub.id] = sub
            self._by_user[user_id].add(sub.id)
        logger.debug("subscribed %s", sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            removed = self._subs.pop(sub.id, None)
            ids = self._by_user.get(sub.user_id)
            if ids is not None:
                ids.discard(sub.id)
                if not ids:
                    self._by_user.pop(sub.user_id, None)
            for ride_id in list(self._offers):
                offered = self._offers[ride_id]
                offered.discard(sub.id)
                if not offered:
                    del self._offers[ride_id]
        sub.close()
        if removed is not None:
            logger.debug("unsubscribed %s", sub)

    def _observe(self, ride_id: str, state: RideState, updated_at: dt.datetime | None) -> bool:
        """Record the ride's position; False when something newer was already seen."""
        rank = lifecycle_rank(state)
        stamp = as_utc(updated_at)
        seen = self._progress.get(ride_id)
        if seen is not None:
            seen_rank, seen_stamp, _ = seen
            if rank < seen_rank:
                return False
            if rank == seen_rank and stamp is not None and seen_stamp is not None and stamp < seen_stamp:
                return False
            if stamp is None:
                stamp = seen_stamp
        self._progress[ride_id] = (rank, stamp, state.value)
        self._progress.move_to_end(ride_id)
        while len(self._progress) > self.track_limit:
            self._progress.popitem(last=False)
        return True

    def register_snapshot(self, sub: Subscription, *, active_ride=None, offers: Iterable = ()) -> int:
        """Fold rides a subscriber read from the store into the routing tables.

        Call it after ``subscribe`` and after reading the store. Any offer the
        hub already saw leave ``requested`` is withdrawn straight away; the
        return value is how many such notices were sent.
        """
        gone: list[tuple[str, str]] = []
        with self._lock:
            if sub.id not in self._subs:
                return 0

            if active_ride is not None:
                ride_id = str(active_ride.id)
                state = RideState(state_value(active_ride.state))
                current = self._observe(ride_id, state, active_ride.updated_at)
                if current and sub.role is Role.DRIVER and state not in TERMINAL_STATES:
                    self._busy.setdefault(sub.user_id, ride_id)

            for ride in offers:
                ride_id = str(ride.id)
                if not self._observe(ride_id, RideState.REQUESTED, ride.updated_at):
                    gone.append((ride_id, self._progress[ride_id][2]))
                    continue
                self._offers.setdefault(ride_id, set()).add(sub.id)

        for ride_id, state in gone:
            sub.withdraw(ride_id)
            sub.deliver(
                FeedEvent(
                    type="offer.withdrawn",
                    ride_id=ride_id,
                    state=state,
                    at=dt.datetime.now(dt.timezone.utc),
                )
            )
        return len(gone)

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subs)

    def publish_ride(self, ride, event_type: str, *, previous_state: RideState | None = None) -> int:
        event = FeedEvent(
            type=event_type,
            ride_id=str(ride.id),
            state=state_value(ride.state),
            previous_state=previous_state.value if previous_state is not None else None,
            ride=ride_to_out(ride),
            at=dt.datetime.now(dt.timezone.utc),
        )
        return self.publish(event, passenger_id=ride.passenger_id, driver_id=ride.driver_id)

    def publish(self, event: FeedEvent, *, passenger_id: str, driver_id: str | None) -> int:
        """Route ``event`` and return how many subscribers it was handed to.

        An event older than one already published for the same ride is
        dropped and 0 is returned.
        """
        ride_id = event.ride_id
        state = RideState(event.state)
        updated_at = event.ride.updated_at if event.ride is not None else None

        direct: dict[str, Subscription] = {}
        pool: dict[str, Subscription] = {}
        withdrawn: list[Subscription] = []

        with self._lock:
            if not self._observe(ride_id, state, updated_at):
                logger.debug("ride %s: dropped out-of-order %s (%s)", ride_id, event.type, state.value)
                return 0

            for uid in (passenger_id, driver_id):
                if uid is None:
                    continue
                for sid in self._by_user.get(uid, ()):
                    sub = self._subs[sid]
                    if Interest.OWN_RIDES in sub.interests:
                        direct[sid] = sub
            for sid, sub in self._subs.items():
                if Interest.ALL_RIDES in sub.interests:
                    direct[sid] = sub

            if driver_id is not None:
                if state in TERMINAL_STATES:
                    if self._busy.get(driver_id) == ride_id:
                        self._busy.pop(driver_id, None)
                else:
                    self._busy[driver_id] = ride_id

            if state is RideState.REQUESTED:
                offered = self._offers.setdefault(ride_id, set())
                for sid, sub in self._subs.items():
                    if sid in direct or Interest.PENDING_POOL not in sub.interests:
                        continue
                    if sub.user_id in self._busy or sub.user_id == passenger_id:
                        continue
                    pool[sid] = sub
                    offered.add(sid)
            else:
                for sid in self._offers.pop(ride_id, set()):
                    sub = self._subs.get(sid)
                    if sub is None or sid in direct or sub.user_id == driver_id:
                        continue
                    withdrawn.append(sub)

        delivered = 0
        for sub in direct.values():
            delivered += sub.deliver(event)
        if pool:
            offer = event.model_copy(update={"type": "ride.offered"})
            for sub in pool.values():
                delivered += sub.deliver(offer)
        if withdrawn:
            notice = event.model_copy(update={"type": "offer.withdrawn", "ride": None})
            for sub in withdrawn:
                sub.withdraw(ride_id)
                delivered += sub.deliver(notice)
            logger.debug("ride %s: offer withdrawn from %d subscriber(s)", ride_id, len(withdrawn))
        return delivered


hub = FanoutHub(queue_size=settings.FANOUT_QUEUE_SIZE)


def get_hub() -> FanoutHub:
    return hub
