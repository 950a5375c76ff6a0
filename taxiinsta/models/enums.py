from enum import Enum as PyEnum

from sqlalchemy import Enum


class RideState(str, PyEnum):
    REQUESTED = "requested"
    ASSIGNED = "assigned"
    ARRIVED_AT_PICKUP = "arrived_at_pickup"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Role(str, PyEnum):
    PASSENGER = "passenger"
    DRIVER = "driver"
    ADMIN = "admin"


TERMINAL_STATES = frozenset({RideState.COMPLETED, RideState.CANCELLED})
NON_TERMINAL_STATES = frozenset(s for s in RideState if s not in TERMINAL_STATES)

# states in which the assigned driver is travelling and reports position
TRACKING_STATES = frozenset({RideState.ASSIGNED, RideState.ARRIVED_AT_PICKUP, RideState.IN_PROGRESS})


def _enum(*values: str, name: str):
    return Enum(*values, name=name, native_enum=False, create_constraint=False)


RideStateType = _enum(*(s.value for s in RideState), name="ride_state")
RoleType = _enum(*(r.value for r in Role), name="user_role")


def state_value(value) -> str:
    if isinstance(value, PyEnum):
        return value.value
    return str(value)


_LIFECYCLE_ORDER = {
    RideState.REQUESTED: 0,
    RideState.ASSIGNED: 1,
    RideState.ARRIVED_AT_PICKUP: 2,
    RideState.IN_PROGRESS: 3,
    RideState.COMPLETED: 4,
    RideState.CANCELLED: 4,
}


def lifecycle_rank(state) -> int:
    """Position on the lifecycle path; both terminal states share the last rank."""
    return _LIFECYCLE_ORDER[RideState(state_value(state))]
