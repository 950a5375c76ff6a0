from pydantic import BaseModel, Field
from typing import Literal, Optional

from .ride import (
    ActiveRideOut,
    AdvanceIn,
    CancelIn,
    FeedEvent,
    LatLon,
    LocationIn,
    RideEventOut,
    RideOut,
    RideRequestIn,
    ride_to_out,
)


RoleLiteral = Literal["passenger", "driver", "admin"]


class ProfileCreate(BaseModel):
    display_name: str = Field(..., min_length=1)
    role: Literal["passenger", "driver"] = "passenger"


class ProfileOut(BaseModel):
    id: str
    display_name: str
    role: RoleLiteral


class RoleChangeIn(BaseModel):
    role: RoleLiteral


class GeocodeOut(BaseModel):
    match: bool
    lat: Optional[float] = None
    lon: Optional[float] = None
    label: Optional[str] = None


__all__ = [
    "ActiveRideOut",
    "AdvanceIn",
    "CancelIn",
    "FeedEvent",
    "GeocodeOut",
    "LatLon",
    "LocationIn",
    "ProfileCreate",
    "ProfileOut",
    "RideEventOut",
    "RideOut",
    "RideRequestIn",
    "RoleChangeIn",
    "ride_to_out",
]
