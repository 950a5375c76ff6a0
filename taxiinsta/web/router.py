from fastapi import APIRouter, Depends, Header, HTTPException, Query
from sqlalchemy.orm import Session

from taxiinsta.core.auth_provider import auth_provider
from taxiinsta.db import get_db
from taxiinsta.models import Role, state_value
from taxiinsta.schemas import (
    ActiveRideOut,
    AdvanceIn,
    CancelIn,
    GeocodeOut,
    LocationIn,
    ProfileCreate,
    ProfileOut,
    RideEventOut,
    RideOut,
    RideRequestIn,
    RoleChangeIn,
    ride_to_out,
)
from taxiinsta.services import dispatch, lifecycle, location_relay, profiles
from taxiinsta.services.audit import list_ride_events
from taxiinsta.services.errors import NotAuthorized
from taxiinsta.services.fanout import FanoutHub, get_hub
from taxiinsta.services.geocoder import Geocoder, get_geocoder
from taxiinsta.services.lifecycle import Actor


def _unauthenticated(message: str) -> HTTPException:
    return HTTPException(
        status_code=401,
        detail={"error": "NOT_AUTHENTICATED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def current_user_id(
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
) -> str:
    if authorization:
        claims = auth_provider.verify_token(_bearer_token(authorization))
        if claims is None:
            raise _unauthenticated("invalid or expired token")
        return claims.user_id

    if auth_provider.trust_header and x_user_id and x_user_id.strip():
        return x_user_id.strip()

    raise _unauthenticated("authentication required")


def current_actor(user_id: str = Depends(current_user_id), db: Session = Depends(get_db)) -> Actor:
    return profiles.resolve_actor(db, user_id)


def _require_admin(actor: Actor = Depends(current_actor)) -> Actor:
    if actor.role is not Role.ADMIN:
        raise NotAuthorized("admin access required")
    return actor


def _profile_out(p) -> ProfileOut:
    return ProfileOut(id=p.id, display_name=p.display_name, role=state_value(p.role))


def _point(value) -> tuple[float, float] | None:
    if value is None:
        return None
    return value.lat, value.lon


router = APIRouter()
router_rides = APIRouter(prefix="/rides", tags=["rides"])
router_admin = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(_require_admin)])


# -----------------------------
# Identity / profiles
# -----------------------------

@router.post("/auth/refresh")
def refresh_token(authorization: str | None = Header(default=None)):
    token = auth_provider.refresh_token(_bearer_token(authorization))
    if token is None:
        raise _unauthenticated("invalid or expired token")
    return {"token": token}


@router.post("/profiles", response_model=ProfileOut)
def profiles_register(body: ProfileCreate, user_id: str = Depends(current_user_id), db: Session = Depends(get_db)):
    p = profiles.register_profile(db, user_id, display_name=body.display_name, role=body.role)
    return _profile_out(p)


@router.get("/profiles/me", response_model=ProfileOut)
def profiles_me(user_id: str = Depends(current_user_id), db: Session = Depends(get_db)):
    return _profile_out(profiles.get_profile_or_404(db, user_id))


@router_admin.patch("/profiles/{user_id}/role", response_model=ProfileOut)
def admin_change_role(
    user_id: str,
    body: RoleChangeIn,
    actor: Actor = Depends(current_actor),
    db: Session = Depends(get_db),
):
    return _profile_out(profiles.change_role(db, actor, user_id, body.role))


@router.get("/geocode", response_model=GeocodeOut)
def geocode(
    q: str = Query(..., min_length=1),
    _: str = Depends(current_user_id),
    geocoder: Geocoder = Depends(get_geocoder),
):
    hit = geocoder.lookup(q)
    if hit is None:
        return GeocodeOut(match=False)
    return GeocodeOut(match=True, lat=hit.lat, lon=hit.lon, label=hit.label)


# -----------------------------
# Rides
# -----------------------------

@router_rides.post("", response_model=RideOut)
def rides_request(
    body: RideRequestIn,
    actor: Actor = Depends(current_actor),
    db: Session = Depends(get_db),
    hub: FanoutHub = Depends(get_hub),
    geocoder: Geocoder = Depends(get_geocoder),
):
    ride = dispatch.request_ride(
        db,
        hub,
        actor,
        pickup=_point(body.pickup),
        dropoff=_point(body.dropoff),
        pickup_address=body.pickup_address,
        dropoff_address=body.dropoff_address,
        fare_estimate=body.fare_estimate,
        geocoder=geocoder,
    )
    return ride_to_out(ride)


@router_rides.get("", response_model=list[RideOut])
def rides_mine(
    limit: int = Query(default=50, ge=1, le=200),
    actor: Actor = Depends(current_actor),
    db: Session = Depends(get_db),
):
    return [ride_to_out(r) for r in dispatch.list_my_rides(db, actor, limit=limit)]


@router_rides.get("/active", response_model=ActiveRideOut)
def rides_active(actor: Actor = Depends(current_actor), db: Session = Depends(get_db)):
    ride = dispatch.get_active_ride(db, actor)
    return ActiveRideOut(ride=ride_to_out(ride) if ride is not None else None)


@router_rides.get("/pending", response_model=list[RideOut])
def rides_pending(
    limit: int = Query(default=50, ge=1, le=200),
    actor: Actor = Depends(current_actor),
    db: Session = Depends(get_db),
):
    return [ride_to_out(r) for r in dispatch.list_open_offers(db, actor, limit=limit)]


@router_rides.get("/{ride_id}", response_model=RideOut)
def rides_get(ride_id: str, actor: Actor = Depends(current_actor), db: Session = Depends(get_db)):
    return ride_to_out(dispatch.get_ride_for(db, actor, ride_id))


@router_rides.get("/{ride_id}/events", response_model=list[RideEventOut])
def rides_events(ride_id: str, actor: Actor = Depends(current_actor), db: Session = Depends(get_db)):
    ride = dispatch.get_ride_for(db, actor, ride_id)
    return [RideEventOut(**row) for row in list_ride_events(db, ride.id)]


@router_rides.post("/{ride_id}/claim", response_model=RideOut)
def rides_claim(
    ride_id: str,
    actor: Actor = Depends(current_actor),
    db: Session = Depends(get_db),
    hub: FanoutHub = Depends(get_hub),
):
    return ride_to_out(dispatch.claim_ride(db, hub, actor, ride_id))


@router_rides.post("/{ride_id}/advance", response_model=RideOut)
def rides_advance(
    ride_id: str,
    body: AdvanceIn,
    actor: Actor = Depends(current_actor),
    db: Session = Depends(get_db),
    hub: FanoutHub = Depends(get_hub),
):
    return ride_to_out(lifecycle.advance_state(db, hub, actor, ride_id, body.target_state))


@router_rides.post("/{ride_id}/cancel", response_model=RideOut)
def rides_cancel(
    ride_id: str,
    body: CancelIn | None = None,
    actor: Actor = Depends(current_actor),
    db: Session = Depends(get_db),
    hub: FanoutHub = Depends(get_hub),
):
    reason = body.reason if body is not None else None
    return ride_to_out(lifecycle.cancel_ride(db, hub, actor, ride_id, reason))


@router_rides.post("/{ride_id}/location", response_model=RideOut)
def rides_location(
    ride_id: str,
    body: LocationIn,
    actor: Actor = Depends(current_actor),
    db: Session = Depends(get_db),
    hub: FanoutHub = Depends(get_hub),
):
    return ride_to_out(location_relay.report_location(db, hub, actor, ride_id, body.lat, body.lon))
