import uuid
from typing import Any

from sqlalchemy.orm import Session

from taxiinsta.models import RideEvent


def log_transition(
    db: Session,
    *,
    ride_id: str | uuid.UUID,
    actor_id: str,
    actor_role: str | None,
    from_state: str | None,
    to_state: str,
    meta: dict[str, Any] | None = None,
    commit: bool = False,
) -> RideEvent:
    """Append one row to the ride history.

    Callers normally pass ``commit=False`` so the row lands in the same
    transaction as the state change it describes.
    """
    rid = ride_id if isinstance(ride_id, uuid.UUID) else uuid.UUID(str(ride_id))

    row = RideEvent(
        ride_id=rid,
        actor_id=actor_id,
        actor_role=actor_role,
        from_state=from_state,
        to_state=to_state,
        meta=meta,
    )
    db.add(row)
    if commit:
        db.commit()
        db.refresh(row)
    return row


def list_ride_events(db: Session, ride_id: uuid.UUID, *, limit: int = 200, offset: int = 0) -> list[dict[str, Any]]:
    rows = (
        db.query(RideEvent)
        .filter(RideEvent.ride_id == ride_id)
        .order_by(RideEvent.created_at.asc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return [
        {
            "id": str(r.id),
            "ride_id": str(r.ride_id),
            "created_at": r.created_at,
            "actor_id": r.actor_id,
            "actor_role": r.actor_role,
            "from_state": r.from_state,
            "to_state": r.to_state,
            "meta": r.meta,
        }
        for r in rows
    ]
