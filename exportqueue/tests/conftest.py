"""
Pytest fixtures for export tests
"""
from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from exportqueue.core.db import Base
from exportqueue.exports.runner import ExportRunner
from exportqueue.exports.services import ExportService
from exportqueue.exports.sources import (
    SequenceListSource,
    SourceRegistry,
    export_jobs_source,
)
from exportqueue.exports.storage import LocalFileStore


class FakeClock:
    """Controllable replacement for utcnow"""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def make_people(count: int):
    return [
        {"id": i, "name": f"Person {i}", "email": f"person{i}@example.com"}
        for i in range(1, count + 1)
    ]


@pytest.fixture
def engine():
    """In-memory database shared by every session of a test"""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db_session(session_factory):
    """Database session fixture for testing"""
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def file_session_factory(tmp_path):
    """File-backed database whose sessions use separate connections, for interleaving tests"""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'exports.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def file_store(tmp_path):
    return LocalFileStore(str(tmp_path / "assets"))


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 10, 19, 14, 5, 0))


@pytest.fixture
def people():
    """Mutable record list behind the "people" source; tests may shrink it"""
    return make_people(5)


@pytest.fixture
def registry(people):
    registry = SourceRegistry()
    registry.register("people")(lambda db, filters, sort: SequenceListSource(people))
    registry.register("export_jobs")(export_jobs_source)
    return registry


@pytest.fixture
def export_service(db_session, file_store, registry, clock):
    return ExportService(
        db_session, file_store, registry=registry, link_prefix="/api/exports", clock=clock
    )


@pytest.fixture
def runner(db_session, file_store, registry, clock):
    return ExportRunner(
        db_session, file_store, registry=registry, page_size=2, lease_seconds=60, clock=clock
    )


@pytest.fixture
def people_ref():
    return {"source": "people", "filters": {}, "sort": []}
