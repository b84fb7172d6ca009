"""Pytest fixtures for lilith-beeper tests."""

import pathlib

import pytest
from sqlalchemy.pool import StaticPool


def pytest_configure(config: pytest.Config) -> None:
    """Load .env from project root so DATABASE_URL is set for integration tests."""
    try:
        from dotenv import load_dotenv

        root = pathlib.Path(__file__).resolve().parent.parent
        load_dotenv(root / ".env")
    except ImportError:
        pass


@pytest.fixture
def sqlite_engine():
    """Bind the app's engine to a fresh in-memory SQLite database with every table."""
    from beeper_sync import database
    from beeper_sync.models import Base

    engine = database.init_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)


@pytest.fixture
def db(sqlite_engine):
    """A session on the SQLite database; committed when the test body finishes."""
    from beeper_sync.database import db_session

    with db_session() as session:
        yield session
