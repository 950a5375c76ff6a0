import datetime as dt

from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from taxiinsta.settings import settings


def _engine_kwargs() -> dict:
    timeout_s = settings.STORE_TIMEOUT_SECONDS
    if settings.DATABASE_URL.lower().startswith("sqlite"):
        # busy timeout bounds how long a writer waits on the database lock
        return {
            "connect_args": {"check_same_thread": False, "timeout": timeout_s},
            "pool_pre_ping": False,
        }
    timeout_ms = int(timeout_s * 1000)
    return {
        "connect_args": {
            "connect_timeout": max(1, int(timeout_s)),
            "options": f"-c statement_timeout={timeout_ms} -c lock_timeout={timeout_ms}",
        },
        "pool_pre_ping": True,
        "pool_timeout": timeout_s,
    }


engine = create_engine(settings.DATABASE_URL, **_engine_kwargs())
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


@event.listens_for(Session, "before_flush")
def _touch_timestamps(session: Session, flush_context, instances):
    """Maintain updated_at (and created_at when missing) on ORM objects."""
    now = dt.datetime.now(dt.timezone.utc)

    for obj in session.new:
        if hasattr(obj, "created_at") and getattr(obj, "created_at") is None:
            setattr(obj, "created_at", now)
        if hasattr(obj, "updated_at"):
            setattr(obj, "updated_at", now)

    for obj in session.dirty:
        if hasattr(obj, "updated_at"):
            setattr(obj, "updated_at", now)


def init_db() -> None:
    from taxiinsta.models import Base

    Base.metadata.create_all(bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
