import os

# Set up test environment variables BEFORE importing the application
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("CONTENT_SECRET", "test-content-secret")
os.environ.setdefault("CONTENT_KDF_ITERATIONS", "1000")

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import codedrop.models  # noqa: F401
from codedrop.database import Base, get_db
from codedrop.main import app
from codedrop.services.attempt_throttler import AttemptThrottler
from codedrop.services.content_cipher import ContentCipher
from codedrop.services.file_lifecycle import FileLifecycleManager
from codedrop.storage.memory import MemoryStorage
from codedrop.storage.sql import SqlStorage


class FakeClock:
    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db_session(engine):
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def file_engine(tmp_path):
    # Threads need their own connections, which an in-memory database cannot share
    engine = create_engine(
        f"sqlite:///{tmp_path / 'codedrop.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture(params=["memory", "sql"])
def storage_factory(request):
    """Hands out one store per thread, sharing the same data."""
    if request.param == "memory":
        shared = MemoryStorage()
        yield lambda: shared
        return

    SessionFactory = sessionmaker(
        autocommit=False, autoflush=False, bind=request.getfixturevalue("file_engine")
    )
    sessions = []

    def make():
        session = SessionFactory()
        sessions.append(session)
        return SqlStorage(session)

    yield make
    for session in sessions:
        session.close()


@pytest.fixture(params=["memory", "sql"])
def storage(request):
    if request.param == "memory":
        return MemoryStorage()
    return SqlStorage(request.getfixturevalue("db_session"))


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def cipher():
    return ContentCipher(secret="unit-test-secret", iterations=1000)


@pytest.fixture
def lifecycle(storage, cipher, clock):
    return FileLifecycleManager(storage, cipher=cipher, now=clock)


@pytest.fixture
def throttler(storage, clock):
    return AttemptThrottler(storage, now=clock)


@pytest.fixture
def owner(storage):
    return storage.create_user(id="owner-1", name="Ada", email="ada@example.com")


@pytest.fixture
def recipient(storage):
    return storage.create_user(id="recipient-1", name="Bob", email="bob@example.com")


@pytest.fixture
def client(db_session):
    app.dependency_overrides[get_db] = lambda: db_session
    yield TestClient(app)
    app.dependency_overrides.clear()
