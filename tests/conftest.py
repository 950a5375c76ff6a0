import os
import tempfile
from pathlib import Path

import pytest

_TMP = Path(tempfile.mkdtemp(prefix="taxiinsta-tests-"))

os.environ["DATABASE_URL"] = f"sqlite+pysqlite:///{_TMP / 'test.db'}"
os.environ["APP_MODE"] = "desktop"
os.environ["APP_ENV"] = "dev"
os.environ["USER_DATA_DIR"] = str(_TMP)
os.environ["LOG_DIR"] = str(_TMP / "logs")
os.environ["SESSION_SECRET"] = "test-secret"
os.environ["AUTH_TRUST_HEADER"] = "0"
os.environ["DISPATCH_REQUIRE_DRIVERS"] = "1"
os.environ["STORE_TIMEOUT_SECONDS"] = "10"

from taxiinsta.db import SessionLocal, engine  # noqa: E402
from taxiinsta.models import Base, Profile, Role  # noqa: E402
from taxiinsta.services import fanout  # noqa: E402
from taxiinsta.services.lifecycle import Actor  # noqa: E402


@pytest.fixture(autouse=True)
def _fresh_store():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def hub(monkeypatch):
    fresh = fanout.FanoutHub(queue_size=32)
    monkeypatch.setattr(fanout, "hub", fresh)
    return fresh


@pytest.fixture
def make_actor(db):
    def _make(user_id: str, role: Role = Role.PASSENGER, name: str | None = None) -> Actor:
        db.add(Profile(id=user_id, display_name=name or user_id.title(), role=role.value))
        db.commit()
        return Actor(user_id=user_id, role=role)

    return _make


@pytest.fixture
def passenger(make_actor):
    return make_actor("pat", Role.PASSENGER, "Pat")


@pytest.fixture
def driver(make_actor):
    return make_actor("dora", Role.DRIVER, "Dora")


@pytest.fixture
def admin(make_actor):
    return make_actor("ada", Role.ADMIN, "Ada")

