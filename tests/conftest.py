"""Pytest configuration shared across test modules."""

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from site_organizer import crud
from site_organizer import models  # noqa: F401  (registers tables on Base)
from site_organizer.bulk import UndoRegistry
from site_organizer.database import Base, get_db, make_engine
from site_organizer.main import app, get_undo_registry
from site_organizer.write_safety import bulk_delete_limiter, import_limiter


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def engine():
    eng = make_engine("sqlite://")
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry(clock):
    return UndoRegistry(window_seconds=8, clock=clock)


@pytest.fixture
def client(session_factory, registry):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_undo_registry] = lambda: registry
    import_limiter.reset()
    bulk_delete_limiter.reset()
    # No context manager: the lifespan would create tables in ./sites.db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def seeded(db):
    """Category c1 and tags t1, t2 owned by u1."""
    crud.create_term(db, "categories", {"id": "c1", "name": "Dev", "color": "#111111", "user_id": "u1"})
    crud.create_term(db, "categories", {"id": "c2", "name": "Design", "color": "#222222", "user_id": "u1"})
    crud.create_term(db, "tags", {"id": "t1", "name": "git", "color": "#333333", "user_id": "u1"})
    crud.create_term(db, "tags", {"id": "t2", "name": "hosting", "user_id": "u1"})
    return db


def make_site(db, name, url, **extra):
    payload = {"name": name, "url": url, "pricing": "fully_free", "user_id": "u1"}
    payload.update(extra)
    return crud.create_site(db, payload).value


@pytest.fixture
def site_factory(db):
    return lambda name, url, **extra: make_site(db, name, url, **extra)
