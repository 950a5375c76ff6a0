"""Ride requests and driver claims.

Offers go to every idle driver at once; the first claim whose conditional
write lands wins. There is no ranking and no batching.
"""

from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from taxiinsta.models import Ride, RideState, Role
from taxiinsta.services import profiles, ride_store
from taxiinsta.services.errors import AlreadyActive, Conflict, NoDriversAvailable, NotAuthorized, ValidationError
from taxiinsta.services.fanout import FanoutHub
from taxiinsta.services.geocoder import Geocoder
from taxiinsta.services.lifecycle import Actor, can_view
from taxiinsta.settings import settings

logger = logging.getLogger(__name__)

OFFER_WITHDRAWN = "OFFER_NO_LONGER_AVAILABLE"


def _resolve_point(
    point: tuple[float, float] | None,
    address: str | None,
    geocoder: Geocoder | None,
) -> tuple[float, float] | None:
    if point is not None or not address or geocoder is None:
        return point
    hit = geocoder.lookup(address)
    if hit is None:
        return None
    return hit.lat, hit.lon


def request_ride(
    db: Session,
    hub: FanoutHub,
    actor: Actor,
    *,
    pickup: tuple[float, float] | None,
    dropoff: tuple[float, float] | None = None,
    pickup_address: str | None = None,
    dropoff_address: str | None = None,
    fare_estimate: float | None = None,
    geocoder: Geocoder | None = None,
    require_drivers: bool | None = None,
) -> Ride:
    if actor.role is not Role.PASSENGER:
        raise NotAuthorized("only passengers can request rides")

    existing = ride_store.find_active_for_user(db, actor.user_id)
    if existing is not None:
        raise AlreadyActive(
            "you already have an active ride",
            ride_id=str(existing.id),
            state=existing.state,
        )

    resolved_pickup = _resolve_point(pickup, pickup_address, geocoder)
    if resolved_pickup is None:
        if pickup_address:
            raise ValidationError("pickup address could not be located", field="pickup_address")
        raise ValidationError("pickup coordinates are required", field="pickup")
    # an unmatched destination address is kept as text only
    resolved_dropoff = _resolve_point(dropoff, dropoff_address, geocoder)

    if require_drivers is None:
        require_drivers = settings.DISPATCH_REQUIRE_DRIVERS
    if require_drivers and profiles.count_drivers(db) == 0:
        raise NoDriversAvailable("no drivers are registered right now")

    profile = profiles.get_profile(db, actor.user_id)
    draft = ride_store.RideDraft(
        passenger_id=actor.user_id,
        passenger_name=profile.display_name if profile is not None else None,
        pickup=resolved_pickup,
        dropoff=resolved_dropoff,
        pickup_address=pickup_address,
        dropoff_address=dropoff_address,
        fare_estimate=fare_estimate,
    )
    ride = ride_store.create(db, draft, actor_role=actor.role.value)
    delivered = hub.publish_ride(ride, "ride.requested")
    logger.info("ride %s requested by %s; offered to %d subscriber(s)", ride.id, actor.user_id, delivered)
    return ride


def claim_ride(db: Session, hub: FanoutHub, actor: Actor, ride_id: str) -> Ride:
    """Make ``actor`` the ride's driver. Losing the race raises Conflict."""
    if actor.role is not Role.DRIVER:
        raise NotAuthorized("only drivers can claim rides")

    existing = ride_store.find_active_for_user(db, actor.user_id)
    if existing is not None:
        raise AlreadyActive(
            "finish your current ride before accepting another",
            ride_id=str(existing.id),
            state=existing.state,
        )

    ride = ride_store.get(db, ride_id)
    if RideState(ride.state) is not RideState.REQUESTED or ride.driver_id is not None:
        raise Conflict("this ride is no longer available", code=OFFER_WITHDRAWN, ride_id=str(ride.id), current_state=ride.state)

    try:
        claimed = ride_store.update_state(
            db,
            ride.id,
            RideState.REQUESTED,
            RideState.ASSIGNED,
            {"driver_id": actor.user_id},
            guard=[Ride.driver_id.is_(None)],
            actor_id=actor.user_id,
            actor_role=actor.role.value,
            conflict_code=OFFER_WITHDRAWN,
        )
    except Conflict:
        logger.info("driver %s lost the claim race for ride %s", actor.user_id, ride.id)
        raise

    logger.info("ride %s assigned to driver %s", claimed.id, actor.user_id)
    hub.publish_ride(claimed, "ride.updated", previous_state=RideState.REQUESTED)
    return claimed


def get_active_ride(db: Session, actor: Actor) -> Ride | None:
    """Authoritative pull used for client resync."""
    return ride_store.find_active_for_user(db, actor.user_id)


def list_open_offers(db: Session, actor: Actor, *, limit: int = 50) -> list[Ride]:
    if actor.role is not Role.DRIVER:
        raise NotAuthorized("only drivers can browse open rides")
    if ride_store.find_active_for_user(db, actor.user_id) is not None:
        return []
    return ride_store.list_pending(db, limit=limit)


def get_ride_for(db: Session, actor: Actor, ride_id: str) -> Ride:
    ride = ride_store.get(db, ride_id)
    if not can_view(ride, actor):
        raise NotAuthorized("you are not part of this ride", ride_id=str(ride.id))
    return ride


def list_my_rides(db: Session, actor: Actor, *, limit: int = 50) -> list[Ride]:
    """Most recent rides the actor took part in, newest first."""
    return ride_store.list_for_user(db, actor.user_id, limit=limit)
