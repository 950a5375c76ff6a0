"""Driver position reports for rides in progress.

Only the assigned driver reports, and only while the ride is in one of
``TRACKING_STATES``.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.orm import Session

from taxiinsta.models import TRACKING_STATES, Ride, RideState, Role
from taxiinsta.services import ride_store
from taxiinsta.services.errors import NotAuthorized
from taxiinsta.services.fanout import FanoutHub
from taxiinsta.services.lifecycle import Actor

logger = logging.getLogger(__name__)


def report_location(db: Session, hub: FanoutHub, actor: Actor, ride_id: str, lat: Any, lon: Any) -> Ride:
    """Store the assigned driver's position and push it to the ride's subscribers.

    Reports are last-write-wins on the server receive time; a report that
    loses to a newer one is acknowledged without being published.
    """
    lat, lon = ride_store.validate_coordinates(lat, lon, label="driver location")
    if actor.role is not Role.DRIVER:
        raise NotAuthorized("only drivers report locations")

    updated = ride_store.update_location(db, ride_id, actor.user_id, lat, lon)
    if updated is None:
        ride = ride_store.get(db, ride_id)
        if ride.driver_id != actor.user_id:
            raise NotAuthorized("you are not the assigned driver for this ride", ride_id=str(ride.id))
        if RideState(ride.state) not in TRACKING_STATES:
            raise NotAuthorized("this ride is not being tracked", ride_id=str(ride.id), state=ride.state)
        logger.debug("stale location report for ride %s ignored", ride.id)
        return ride

    hub.publish_ride(updated, "ride.location")
    return updated
