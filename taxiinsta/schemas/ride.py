import datetime as dt
from typing import Literal, Optional

from pydantic import BaseModel, Field

from taxiinsta.models.enums import state_value


class LatLon(BaseModel):
    lat: float
    lon: float


class RideRequestIn(BaseModel):
    pickup: Optional[LatLon] = None
    pickup_address: Optional[str] = None
    dropoff: Optional[LatLon] = None
    dropoff_address: Optional[str] = None
    fare_estimate: Optional[float] = None


class AdvanceIn(BaseModel):
    target_state: str = Field(..., min_length=1)


class CancelIn(BaseModel):
    reason: Optional[str] = None


class LocationIn(BaseModel):
    lat: float
    lon: float


class RideOut(BaseModel):
    id: str
    passenger_id: str
    passenger_name: Optional[str] = None
    driver_id: Optional[str] = None
    state: str
    pickup: LatLon
    pickup_address: Optional[str] = None
    dropoff: Optional[LatLon] = None
    dropoff_address: Optional[str] = None
    fare_estimate: Optional[float] = None
    driver_location: Optional[LatLon] = None
    driver_location_at: Optional[dt.datetime] = None
    cancelled_by: Optional[str] = None
    cancel_reason: Optional[str] = None
    created_at: Optional[dt.datetime] = None
    updated_at: Optional[dt.datetime] = None


class ActiveRideOut(BaseModel):
    ride: Optional[RideOut] = None


class RideEventOut(BaseModel):
    id: str
    ride_id: str
    created_at: Optional[dt.datetime] = None
    actor_id: str
    actor_role: Optional[str] = None
    from_state: Optional[str] = None
    to_state: str
    meta: Optional[dict] = None


FeedEventType = Literal[
    "ride.requested",
    "ride.offered",
    "ride.updated",
    "ride.location",
    "offer.withdrawn",
]


class FeedEvent(BaseModel):
    """One message on a subscriber's event stream."""

    type: FeedEventType
    ride_id: str
    state: str
    previous_state: Optional[str] = None
    ride: Optional[RideOut] = None
    at: dt.datetime


def ride_to_out(ride) -> RideOut:
    dropoff = None
    if ride.dropoff_lat is not None and ride.dropoff_lon is not None:
        dropoff = LatLon(lat=ride.dropoff_lat, lon=ride.dropoff_lon)
    driver_location = None
    if ride.driver_lat is not None and ride.driver_lon is not None:
        driver_location = LatLon(lat=ride.driver_lat, lon=ride.driver_lon)

    return RideOut(
        id=str(ride.id),
        passenger_id=ride.passenger_id,
        passenger_name=ride.passenger_name,
        driver_id=ride.driver_id,
        state=state_value(ride.state),
        pickup=LatLon(lat=ride.pickup_lat, lon=ride.pickup_lon),
        pickup_address=ride.pickup_address,
        dropoff=dropoff,
        dropoff_address=ride.dropoff_address,
        fare_estimate=float(ride.fare_estimate) if ride.fare_estimate is not None else None,
        driver_location=driver_location,
        driver_location_at=ride.driver_location_at,
        cancelled_by=state_value(ride.cancelled_by) if ride.cancelled_by is not None else None,
        cancel_reason=ride.cancel_reason,
        created_at=ride.created_at,
        updated_at=ride.updated_at,
    )
