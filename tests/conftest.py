from datetime import UTC, datetime
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import fibertrace.models  # noqa: F401
from fibertrace.db import Base, LocalBase, get_db
from fibertrace.models.enums import Collection
from fibertrace.schemas.records import Actor
from fibertrace.services.collections import RecordCollection
from fibertrace.services.connectivity import ConnectivityMonitor
from fibertrace.services.errors import StorageError
from fibertrace.services.record_store import MemoryKeyValueBackend, RecordStore, SqlKeyValueBackend
from fibertrace.services.scheduling import ManualClock
from fibertrace.services.sync_engine import SyncEngine
from fibertrace.services.transport import InProcessTransport


class FailingBackend(MemoryKeyValueBackend):
    """Memory backend whose next `failures` writes raise."""

    def __init__(self):
        super().__init__()
        self.failures = 0

    def write(self, values):
        if self.failures:
            self.failures -= 1
            raise StorageError("disk full")
        super().write(values)


def _sqlite_engine():
    return create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )


@pytest.fixture()
def clock():
    return ManualClock(datetime(2024, 3, 1, 8, 0, tzinfo=UTC))


@pytest.fixture()
def actor():
    return Actor(id="tech-ana", display_name="Ana Okafor")


@pytest.fixture()
def store(clock):
    record_store = RecordStore(MemoryKeyValueBackend(), clock=clock)
    record_store.initialize()
    return record_store


@pytest.fixture()
def collections(store, actor):
    """One CRUD facade per collection, acting as `actor` on device-a."""
    return {
        collection: RecordCollection(store, collection, lambda: actor, device_id="device-a")
        for collection in Collection
    }


@pytest.fixture()
def engine():
    engine = _sqlite_engine()
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def server_sessions(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture()
def db_session(engine):
    connection = engine.connect()
    transaction = connection.begin()
    SessionLocal = sessionmaker(bind=connection, autoflush=False, autocommit=False)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        transaction.rollback()
        connection.close()


@pytest.fixture()
def local_engine():
    engine = _sqlite_engine()
    LocalBase.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def sql_backend(local_engine):
    return SqlKeyValueBackend(sessionmaker(bind=local_engine, autoflush=False, autocommit=False))


@pytest.fixture()
def failing_backend():
    return FailingBackend()


@pytest.fixture()
def make_device(clock, server_sessions):
    """Build an isolated device (own store, own actor) syncing to the shared server."""

    def _make(
        device_id: str,
        technician: str | None = None,
        transport=None,
        batch_size: int = 200,
        backend=None,
    ):
        device_actor = Actor(id=technician or f"tech-{device_id}")
        store = RecordStore(backend or MemoryKeyValueBackend(), clock=clock)
        store.initialize()
        connectivity = ConnectivityMonitor(clock=clock, debounce_seconds=0, initially_online=True)
        transport = transport or InProcessTransport(server_sessions, clock=clock)
        return SimpleNamespace(
            id=device_id,
            actor=device_actor,
            store=store,
            connectivity=connectivity,
            transport=transport,
            engine=SyncEngine(store, transport, connectivity=connectivity, clock=clock, batch_size=batch_size),
            records={
                collection: RecordCollection(store, collection, lambda: device_actor, device_id=device_id)
                for collection in Collection
            },
        )

    return _make


@pytest.fixture()
def client(server_sessions):
    from fibertrace.main import app

    def _override_get_db():
        db = server_sessions()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = _override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.pop(get_db, None)
