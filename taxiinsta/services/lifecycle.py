"""Ride lifecycle rules.

requested -> assigned -> arrived_at_pickup -> in_progress -> completed,
plus cancellation. Transitions are checked here and applied through
``ride_store.update_state`` so a decision is never committed from a stale
read.
"""

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy.orm import Session

from taxiinsta.models import TERMINAL_STATES, Ride, RideState, Role
from taxiinsta.services import ride_store
from taxiinsta.services.errors import IllegalTransition, NotAuthorized, ValidationError
from taxiinsta.services.fanout import FanoutHub

logger = logging.getLogger(__name__)


_NEXT_STATE: dict[RideState, RideState] = {
    RideState.REQUESTED: RideState.ASSIGNED,
    RideState.ASSIGNED: RideState.ARRIVED_AT_PICKUP,
    RideState.ARRIVED_AT_PICKUP: RideState.IN_PROGRESS,
    RideState.IN_PROGRESS: RideState.COMPLETED,
}

_PASSENGER_CANCELLABLE = frozenset({RideState.REQUESTED, RideState.ASSIGNED, RideState.ARRIVED_AT_PICKUP})


@dataclass(frozen=True)
class Actor:
    user_id: str
    role: Role


def coerce_state(value: Any) -> RideState:
    if isinstance(value, RideState):
        return value
    try:
        return RideState(str(value).strip().lower())
    except ValueError:
        raise ValidationError(f"unknown ride state: {value!r}", field="target_state")


def coerce_role(value: Any) -> Role:
    """Unknown roles fail closed."""
    if isinstance(value, Role):
        return value
    try:
        return Role(str(value).strip().lower())
    except ValueError:
        raise NotAuthorized(f"unknown role: {value!r}")


def is_assigned_driver(ride: Ride, actor: Actor) -> bool:
    return actor.role is Role.DRIVER and ride.driver_id is not None and ride.driver_id == actor.user_id


def can_view(ride: Ride, actor: Actor) -> bool:
    role = actor.role
    if role is Role.ADMIN:
        return True
    if role is Role.PASSENGER:
        return ride.passenger_id == actor.user_id
    if role is Role.DRIVER:
        # an open offer is visible to every driver
        return ride.driver_id == actor.user_id or RideState(ride.state) is RideState.REQUESTED
    raise NotAuthorized(f"unknown role: {role!r}")


def _check_cancel(ride: Ride, actor: Actor, current: RideState) -> None:
    role = actor.role
    if role is Role.ADMIN:
        pass
    elif role is Role.DRIVER:
        if not is_assigned_driver(ride, actor):
            raise NotAuthorized("only the assigned driver can cancel this ride", ride_id=str(ride.id))
    elif role is Role.PASSENGER:
        if ride.passenger_id != actor.user_id:
            raise NotAuthorized("only the ride's passenger can cancel this ride", ride_id=str(ride.id))
    else:
        raise NotAuthorized(f"unknown role: {role!r}")

    if current in TERMINAL_STATES:
        raise IllegalTransition(
            f"ride is already {current.value}",
            ride_id=str(ride.id),
            current_state=current.value,
            target_state=RideState.CANCELLED.value,
        )
    if role is Role.PASSENGER and current not in _PASSENGER_CANCELLABLE:
        raise IllegalTransition(
            "passengers cannot cancel a ride in progress",
            ride_id=str(ride.id),
            current_state=current.value,
            target_state=RideState.CANCELLED.value,
        )


def check_transition(ride: Ride, actor: Actor, target: RideState) -> None:
    """Raise unless ``actor`` may move ``ride`` to ``target`` right now."""
    current = RideState(ride.state)

    if target is RideState.CANCELLED:
        _check_cancel(ride, actor, current)
        return

    if target is RideState.ASSIGNED:
        if actor.role is not Role.DRIVER:
            raise NotAuthorized("only drivers can claim rides", ride_id=str(ride.id))
        if current is not RideState.REQUESTED or ride.driver_id is not None:
            raise IllegalTransition(
                f"cannot claim a ride that is {current.value}",
                ride_id=str(ride.id),
                current_state=current.value,
                target_state=target.value,
            )
        return

    if not is_assigned_driver(ride, actor):
        raise NotAuthorized("only the assigned driver can advance this ride", ride_id=str(ride.id))

    if _NEXT_STATE.get(current) is not target:
        raise IllegalTransition(
            f"cannot move from {current.value} to {target.value}",
            ride_id=str(ride.id),
            current_state=current.value,
            target_state=target.value,
        )


def transition_fields(target: RideState, actor: Actor, reason: str | None = None) -> dict[str, Any]:
    if target is RideState.COMPLETED:
        return {"driver_lat": None, "driver_lon": None, "driver_location_at": None}
    if target is RideState.CANCELLED:
        return {
            "driver_lat": None,
            "driver_lon": None,
            "driver_location_at": None,
            "cancelled_by": actor.role.value,
            "cancel_reason": (reason or "").strip() or None,
        }
    return {}


def _apply(db: Session, hub: FanoutHub, actor: Actor, ride: Ride, target: RideState, reason: str | None = None) -> Ride:
    current = RideState(ride.state)
    meta: dict[str, Any] = {}
    if reason:
        meta["reason"] = reason

    updated = ride_store.update_state(
        db,
        ride.id,
        current,
        target,
        transition_fields(target, actor, reason),
        actor_id=actor.user_id,
        actor_role=actor.role.value,
        meta=meta or None,
    )
    logger.info("ride %s: %s -> %s by %s %s", ride.id, current.value, target.value, actor.role.value, actor.user_id)
    hub.publish_ride(updated, "ride.updated", previous_state=current)
    return updated


def advance_state(db: Session, hub: FanoutHub, actor: Actor, ride_id: str, target_state: Any) -> Ride:
    target = coerce_state(target_state)
    if target is RideState.CANCELLED:
        return cancel_ride(db, hub, actor, ride_id)
    if target is RideState.ASSIGNED:
        raise IllegalTransition("rides are assigned by claiming them", ride_id=str(ride_id), target_state=target.value)

    ride = ride_store.get(db, ride_id)
    check_transition(ride, actor, target)
    return _apply(db, hub, actor, ride, target)


def cancel_ride(db: Session, hub: FanoutHub, actor: Actor, ride_id: str, reason: str | None = None) -> Ride:
    ride = ride_store.get(db, ride_id)
    check_transition(ride, actor, RideState.CANCELLED)
    return _apply(db, hub, actor, ride, RideState.CANCELLED, reason)
