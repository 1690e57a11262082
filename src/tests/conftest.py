"""Pytest configuration and fixtures for service layer tests."""

from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, scoped_session
from sqlalchemy.pool import StaticPool

from src.models.base import Base
from src.services.engine import create_consumption_engine
from src.tests.factories import add_lot, add_material
from src.utils.config import Config, reset_config


@pytest.fixture(autouse=True)
def _reset_config():
    """Each test starts from the default configuration."""
    reset_config()
    yield
    reset_config()


@pytest.fixture(scope="function")
def test_db():
    """Provide a clean test database for each test function.

    This fixture:
    1. Creates an in-memory SQLite database
    2. Creates all tables
    3. Provides the session factory to the test
    4. Drops all tables after the test completes
    """
    # Create in-memory SQLite database for testing
    engine = create_engine(
        "sqlite:///:memory:",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # Create all tables
    Base.metadata.create_all(engine)

    # Create session factory
    session_factory = sessionmaker(bind=engine, expire_on_commit=False)
    Session = scoped_session(session_factory)

    # Monkey-patch the global session factory for tests
    import src.services.database as db_module

    original_get_session = db_module.get_session_factory
    db_module.get_session_factory = lambda: Session

    # Provide database to test
    yield Session

    # Cleanup
    Session.remove()
    Base.metadata.drop_all(engine)
    engine.dispose()

    # Restore original session factory
    db_module.get_session_factory = original_get_session


@pytest.fixture
def test_config():
    """Engine configuration with retries that don't sleep."""
    config = Config("development", database_url="sqlite:///:memory:")
    config.storage_retry_backoff = 0
    return config


@pytest.fixture
def engine(test_db, test_config):
    """SQL-backed consumption engine bound to the test database."""
    return create_consumption_engine(test_db, config=test_config)


@pytest.fixture
def material_id(test_db):
    """A material with a 0.9 theoretical yield."""
    return add_material(test_db, theoretical_yield=Decimal("0.9"))


@pytest.fixture
def lots(test_db, material_id):
    """Three lots of the same material, oldest first.

    L1: 20 @ 2.50 (Jan 10), L2: 5 @ 3.00 (Feb 1), L3: 40 @ 2.75 (Mar 1)
    """
    return {
        "L1": add_lot(test_db, material_id, "L1", 20, unit_cost="2.50", intake_date=date(2025, 1, 10)),
        "L2": add_lot(test_db, material_id, "L2", 5, unit_cost="3.00", intake_date=date(2025, 2, 1)),
        "L3": add_lot(test_db, material_id, "L3", 40, unit_cost="2.75", intake_date=date(2025, 3, 1)),
    }
