"""Durable ride records and the conditional-write primitive.

Every state change goes through :func:`update_state`, a single
``UPDATE rides ... WHERE id = :id AND state = :expected`` whose row count
decides the outcome. Exclusivity therefore holds across worker processes,
not just threads.
"""

from __future__ import annotations

import datetime as dt
import logging
import math
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterable, Iterator

from sqlalchemy import or_, update
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session

from taxiinsta.models import NON_TERMINAL_STATES, TRACKING_STATES, Ride, RideState
from taxiinsta.services.audit import log_transition
from taxiinsta.services.errors import AlreadyActive, Conflict, NotFound, Timeout, Unavailable, ValidationError

logger = logging.getLogger(__name__)

_TIMEOUT_MARKERS = ("timeout", "timed out", "database is locked", "canceling statement", "lock not available")


@dataclass(frozen=True)
class RideDraft:
    passenger_id: str
    pickup: tuple[float, float] | None
    dropoff: tuple[float, float] | None = None
    pickup_address: str | None = None
    dropoff_address: str | None = None
    fare_estimate: float | None = None
    passenger_name: str | None = None


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def validate_coordinates(lat: Any, lon: Any, label: str = "coordinates") -> tuple[float, float]:
    if lat is None or lon is None:
        raise ValidationError(f"{label} are required", field=label)
    try:
        flat, flon = float(lat), float(lon)
    except (TypeError, ValueError):
        raise ValidationError(f"{label} must be numeric", field=label)
    if not (math.isfinite(flat) and math.isfinite(flon)):
        raise ValidationError(f"{label} must be finite numbers", field=label)
    if not -90.0 <= flat <= 90.0 or not -180.0 <= flon <= 180.0:
        raise ValidationError(f"{label} out of range", field=label, lat=flat, lon=flon)
    return flat, flon


def parse_ride_id(ride_id: str | uuid.UUID) -> uuid.UUID:
    if isinstance(ride_id, uuid.UUID):
        return ride_id
    try:
        return uuid.UUID(str(ride_id))
    except (TypeError, ValueError):
        raise NotFound("ride not found", ride_id=str(ride_id))


@contextmanager
def storage_guard(db: Session, operation: str) -> Iterator[None]:
    """Translate driver-level failures into Timeout/Unavailable."""
    try:
        yield
    except PoolTimeoutError as exc:
        db.rollback()
        logger.warning("store timeout during %s: %s", operation, exc)
        raise Timeout(f"storage timed out during {operation}") from exc
    except OperationalError as exc:
        db.rollback()
        text = str(exc).lower()
        if any(marker in text for marker in _TIMEOUT_MARKERS):
            logger.warning("store timeout during %s: %s", operation, exc)
            raise Timeout(f"storage timed out during {operation}") from exc
        logger.error("store unavailable during %s: %s", operation, exc)
        raise Unavailable(f"storage unavailable during {operation}") from exc
    except DBAPIError as exc:
        if not exc.connection_invalidated:
            raise
        db.rollback()
        logger.error("store connection lost during %s: %s", operation, exc)
        raise Unavailable(f"storage unavailable during {operation}") from exc


def create(db: Session, draft: RideDraft, *, actor_role: str | None = None) -> Ride:
    if draft.pickup is None:
        raise ValidationError("pickup coordinates are required", field="pickup")
    pickup_lat, pickup_lon = validate_coordinates(*draft.pickup, label="pickup")

    dropoff_lat = dropoff_lon = None
    if draft.dropoff is not None:
        dropoff_lat, dropoff_lon = validate_coordinates(*draft.dropoff, label="dropoff")

    fare = draft.fare_estimate
    if fare is not None:
        try:
            fare = float(fare)
        except (TypeError, ValueError):
            raise ValidationError("fare_estimate must be numeric", field="fare_estimate")
        if not math.isfinite(fare) or fare < 0:
            raise ValidationError("fare_estimate must be a non-negative number", field="fare_estimate")

    ride = Ride(
        passenger_id=draft.passenger_id,
        passenger_name=draft.passenger_name,
        pickup_lat=pickup_lat,
        pickup_lon=pickup_lon,
        pickup_address=(draft.pickup_address or "").strip() or None,
        dropoff_lat=dropoff_lat,
        dropoff_lon=dropoff_lon,
        dropoff_address=(draft.dropoff_address or "").strip() or None,
        fare_estimate=fare,
        state=RideState.REQUESTED.value,
    )

    with storage_guard(db, "create"):
        db.add(ride)
        try:
            db.flush()
        except IntegrityError:
            db.rollback()
            raise AlreadyActive("passenger already has an active ride", user_id=draft.passenger_id)

        log_transition(
            db,
            ride_id=ride.id,
            actor_id=draft.passenger_id,
            actor_role=actor_role,
            from_state=None,
            to_state=RideState.REQUESTED.value,
            meta={"dropoff": draft.dropoff is not None},
        )
        db.commit()
    return ride


def get(db: Session, ride_id: str | uuid.UUID) -> Ride:
    rid = parse_ride_id(ride_id)
    with storage_guard(db, "get"):
        ride = db.get(Ride, rid, populate_existing=True)
    if ride is None:
        raise NotFound("ride not found", ride_id=str(rid))
    return ride


def find_active_for_user(db: Session, user_id: str) -> Ride | None:
    with storage_guard(db, "find_active_for_user"):
        return (
            db.query(Ride)
            .populate_existing()
            .filter(
                Ride.state.in_(sorted(s.value for s in NON_TERMINAL_STATES)),
                or_(Ride.passenger_id == user_id, Ride.driver_id == user_id),
            )
            .order_by(Ride.created_at.desc())
            .first()
        )


def list_pending(db: Session, *, limit: int = 50) -> list[Ride]:
    with storage_guard(db, "list_pending"):
        return (
            db.query(Ride)
            .populate_existing()
            .filter(Ride.state == RideState.REQUESTED.value)
            .order_by(Ride.created_at.asc())
            .limit(limit)
            .all()
        )


def list_for_user(db: Session, user_id: str, *, limit: int = 50) -> list[Ride]:
    with storage_guard(db, "list_for_user"):
        return (
            db.query(Ride)
            .filter(or_(Ride.passenger_id == user_id, Ride.driver_id == user_id))
            .order_by(Ride.created_at.desc())
            .limit(limit)
            .all()
        )


def update_state(
    db: Session,
    ride_id: str | uuid.UUID,
    expected_state: RideState,
    new_state: RideState,
    fields: dict[str, Any] | None = None,
    *,
    guard: Iterable[Any] = (),
    actor_id: str,
    actor_role: str | None = None,
    meta: dict[str, Any] | None = None,
    conflict_code: str | None = None,
) -> Ride:
    """Compare-and-swap on ``state``; raises Conflict when the row moved on."""
    rid = parse_ride_id(ride_id)
    now = utcnow()

    values = dict(fields or {})
    values["state"] = new_state.value
    values["updated_at"] = now

    stmt = (
        update(Ride)
        .where(Ride.id == rid, Ride.state == expected_state.value, *guard)
        .values(**values)
        .execution_options(synchronize_session=False)
    )

    with storage_guard(db, "update_state"):
        try:
            result = db.execute(stmt)
        except IntegrityError:
            db.rollback()
            raise AlreadyActive("actor already has an active ride", user_id=values.get("driver_id"))

        if result.rowcount != 1:
            db.rollback()
            current = db.get(Ride, rid, populate_existing=True)
            if current is None:
                raise NotFound("ride not found", ride_id=str(rid))
            raise Conflict(
                "ride changed before this update could be applied",
                code=conflict_code,
                ride_id=str(rid),
                expected_state=expected_state.value,
                current_state=current.state,
            )

        log_transition(
            db,
            ride_id=rid,
            actor_id=actor_id,
            actor_role=actor_role,
            from_state=expected_state.value,
            to_state=new_state.value,
            meta=meta,
        )
        db.commit()
        ride = db.get(Ride, rid, populate_existing=True)
    return ride


def update_location(db: Session, ride_id: str | uuid.UUID, driver_id: str, lat: float, lon: float) -> Ride | None:
    """Write the driver's position; None when no row matched the guards."""
    rid = parse_ride_id(ride_id)
    now = utcnow()

    stmt = (
        update(Ride)
        .where(
            Ride.id == rid,
            Ride.driver_id == driver_id,
            Ride.state.in_(sorted(s.value for s in TRACKING_STATES)),
            or_(Ride.driver_location_at.is_(None), Ride.driver_location_at <= now),
        )
        .values(driver_lat=lat, driver_lon=lon, driver_location_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )

    with storage_guard(db, "update_location"):
        result = db.execute(stmt)
        if result.rowcount != 1:
            db.rollback()
            return None
        db.commit()
        return db.get(Ride, rid, populate_existing=True)
