import os

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault('DATABASE_URL', 'sqlite:///./test.db')

from booking_engine.core import config  # noqa: E402
from booking_engine.database import Base  # noqa: E402
from booking_engine.models import appointment, listing, recurring, time_slot  # noqa: E402,F401
from booking_engine.scheduling.repository import SchedulingRepository  # noqa: E402


@pytest.fixture(autouse=True)
def serial_reads(monkeypatch: pytest.MonkeyPatch) -> None:
    # One in-memory connection is shared by every session.
    monkeypatch.setattr(config, 'FETCH_MAX_WORKERS', 1)


@pytest.fixture
def session_factory():
    engine = create_engine('sqlite://', connect_args={'check_same_thread': False}, poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    testing_session_local = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    try:
        yield testing_session_local
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def repository(session_factory) -> SchedulingRepository:
    return SchedulingRepository(session_factory)


@pytest.fixture
def add_rows(session_factory):
    def add(*rows):
        db = session_factory()
        try:
            db.add_all(rows)
            db.commit()
            return [getattr(row, 'id', None) for row in rows]
        finally:
            db.close()

    return add
