from .base import Base, TimestampMixin
from .enums import (
    NON_TERMINAL_STATES,
    TERMINAL_STATES,
    TRACKING_STATES,
    RideState,
    Role,
    lifecycle_rank,
    state_value,
)
from .profile import Profile
from .ride import Ride, RideEvent

__all__ = [
    "Base",
    "TimestampMixin",
    "NON_TERMINAL_STATES",
    "TERMINAL_STATES",
    "TRACKING_STATES",
    "Profile",
    "Ride",
    "RideEvent",
    "RideState",
    "Role",
    "lifecycle_rank",
    "state_value",
]
