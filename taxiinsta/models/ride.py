import datetime as dt
import uuid

from sqlalchemy import JSON, DateTime, Float, ForeignKey, Index, Numeric, Text, Uuid, func, text as sql_text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin
from .enums import RideStateType, RoleType

_NOT_TERMINAL = sql_text("state NOT IN ('completed', 'cancelled')")
_DRIVER_NOT_TERMINAL = sql_text("driver_id IS NOT NULL AND state NOT IN ('completed', 'cancelled')")


class Ride(Base, TimestampMixin):
    __tablename__ = "rides"
    __table_args__ = (
        # one live ride per passenger and per driver, enforced by the database
        Index(
            "uq_rides_active_passenger",
            "passenger_id",
            unique=True,
            postgresql_where=_NOT_TERMINAL,
            sqlite_where=_NOT_TERMINAL,
        ),
        Index(
            "uq_rides_active_driver",
            "driver_id",
            unique=True,
            postgresql_where=_DRIVER_NOT_TERMINAL,
            sqlite_where=_DRIVER_NOT_TERMINAL,
        ),
        Index("ix_rides_state_created", "state", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)

    passenger_id: Mapped[str] = mapped_column(Text, nullable=False)
    passenger_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    driver_id: Mapped[str | None] = mapped_column(Text, nullable=True)

    pickup_lat: Mapped[float] = mapped_column(Float, nullable=False)
    pickup_lon: Mapped[float] = mapped_column(Float, nullable=False)
    pickup_address: Mapped[str | None] = mapped_column(Text, nullable=True)

    dropoff_lat: Mapped[float | None] = mapped_column(Float, nullable=True)
    dropoff_lon: Mapped[float | None] = mapped_column(Float, nullable=True)
    dropoff_address: Mapped[str | None] = mapped_column(Text, nullable=True)

    fare_estimate: Mapped[float | None] = mapped_column(Numeric(10, 2, asdecimal=False), nullable=True)

    state: Mapped[str] = mapped_column(RideStateType, nullable=False, server_default=sql_text("'requested'"))

    driver_lat: Mapped[float | None] = mapped_column(Float, nullable=True)
    driver_lon: Mapped[float | None] = mapped_column(Float, nullable=True)
    driver_location_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    cancelled_by: Mapped[str | None] = mapped_column(RoleType, nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(Text, nullable=True)


class RideEvent(Base):
    """Append-only history of ride creation and state transitions."""

    __tablename__ = "ride_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    ride_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("rides.id", ondelete="CASCADE"), nullable=False, index=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    actor_id: Mapped[str] = mapped_column(Text, nullable=False)
    actor_role: Mapped[str | None] = mapped_column(RoleType, nullable=True)
    from_state: Mapped[str | None] = mapped_column(RideStateType, nullable=True)
    to_state: Mapped[str] = mapped_column(RideStateType, nullable=False)
    meta: Mapped[dict | None] = mapped_column(JSON(), nullable=True)
