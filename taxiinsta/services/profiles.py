from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from taxiinsta.models import Profile, Role
from taxiinsta.services import ride_store
from taxiinsta.services.errors import AlreadyActive, Conflict, NotAuthorized, NotFound, ValidationError
from taxiinsta.services.lifecycle import Actor, coerce_role

logger = logging.getLogger(__name__)

_SELF_SERVICE_ROLES = {Role.PASSENGER, Role.DRIVER}


def get_profile(db: Session, user_id: str) -> Profile | None:
    with ride_store.storage_guard(db, "get_profile"):
        return db.get(Profile, user_id)


def get_profile_or_404(db: Session, user_id: str) -> Profile:
    p = get_profile(db, user_id)
    if p is None:
        raise NotFound("profile not found", user_id=user_id)
    return p


def resolve_actor(db: Session, user_id: str) -> Actor:
    """Authenticated user id -> Actor with the role held in the profile store."""
    p = get_profile(db, user_id)
    if p is None:
        raise NotAuthorized("no profile registered for this user", user_id=user_id)
    return Actor(user_id=p.id, role=coerce_role(p.role))


def register_profile(db: Session, user_id: str, *, display_name: str, role: str = "passenger") -> Profile:
    """Create the caller's profile, or rename it if it already exists.

    Self-registration can only pick passenger or driver; an existing role is
    never changed here.
    """
    display_name = (display_name or "").strip()
    if not display_name:
        raise ValidationError("display_name is required", field="display_name")
    wanted = coerce_role(role)
    if wanted not in _SELF_SERVICE_ROLES:
        raise NotAuthorized("this role can only be granted by an admin", role=wanted.value)

    with ride_store.storage_guard(db, "register_profile"):
        p = db.get(Profile, user_id)
        if p is not None:
            p.display_name = display_name
            db.commit()
            db.refresh(p)
            return p

        p = Profile(id=user_id, display_name=display_name, role=wanted.value)
        db.add(p)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            raise Conflict("profile was created concurrently", user_id=user_id)
        db.refresh(p)
    logger.info("registered profile %s as %s", user_id, wanted.value)
    return p


def change_role(db: Session, actor: Actor, user_id: str, role: str) -> Profile:
    """Admin-only pass-through write of a user's role."""
    if actor.role is not Role.ADMIN:
        raise NotAuthorized("only admins can change roles")
    new_role = coerce_role(role)
    p = get_profile_or_404(db, user_id)

    if p.role != new_role.value:
        active = ride_store.find_active_for_user(db, user_id)
        if active is not None:
            raise AlreadyActive(
                "cannot change the role of a user with an active ride",
                user_id=user_id,
                ride_id=str(active.id),
            )

    with ride_store.storage_guard(db, "change_role"):
        old_role = p.role
        p.role = new_role.value
        db.commit()
        db.refresh(p)
    logger.info("admin %s changed role of %s: %s -> %s", actor.user_id, user_id, old_role, new_role.value)
    return p


def count_drivers(db: Session) -> int:
    with ride_store.storage_guard(db, "count_drivers"):
        return db.query(Profile).filter(Profile.role == Role.DRIVER.value).count()
