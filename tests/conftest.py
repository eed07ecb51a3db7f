"""Shared fixtures: in-memory SQLite ledger database."""
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from ledger_service.db.base import Base
from ledger_service.db.session import build_session_factory
from ledger_service.models import account, transaction  # noqa: F401


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def clock():
    """Strictly increasing created_at values for ordering assertions."""
    start = datetime(2025, 1, 1, tzinfo=timezone.utc)
    state = {"n": 0}

    def _next():
        state["n"] += 1
        return start + timedelta(seconds=state["n"])

    return _next
