"""Pytest fixtures: a fresh SQLite database per test and clean engine state."""
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from recordtrail.context import reset_context, switches
from recordtrail.database import Base
from recordtrail.serializers import set_serializer

# Import the tracked models so they register with Base.metadata and the registry
import tests.models  # noqa: F401


@pytest.fixture(scope="function")
def db_engine(tmp_path):
    """Create a fresh SQLite engine for each test."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'test.db'}", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def db(db_engine):
    """Yield a database session, closed after the test."""
    TestingSession = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = TestingSession()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def clean_state():
    """Switches, context and serializer back to defaults around every test."""
    switches.reset()
    reset_context()
    set_serializer("json")
    yield
    switches.reset()
    reset_context()
    set_serializer("json")
