from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from usersimple.admin import UserStore
from usersimple.auth import SessionAuthenticator
from usersimple.storage import SQLAlchemyStorage


class FakeClock:
    """Clock the tests move by hand."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def engine():
    """Provide an isolated in-memory database for each test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    yield engine
    engine.dispose()


@pytest.fixture
def storage(engine):
    storage = SQLAlchemyStorage(engine)
    yield storage
    storage.close()


@pytest.fixture
def store(storage):
    return UserStore.provision(storage)


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 1, 1, 12, 0, 0))


@pytest.fixture
def auth(storage, store, clock):
    return SessionAuthenticator(storage, duration=30, clock=clock)
