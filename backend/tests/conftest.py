"""
Pytest fixtures for stock ledger tests.

Provides a deterministic clock, an engine over the in-memory repositories,
and a Flask app with an in-memory SQLite database for integration tests.
"""

from datetime import datetime, timedelta

import pytest

from stockledger import create_app
from stockledger.domain import StockKey
from stockledger.engine import StockEngine, build_sql_engine
from stockledger.extensions import db
from stockledger.locations import Store, Warehouse
from stockledger.repos import MemoryStore, build_memory_repositories
from stockledger.services.audit_service import MemoryAuditLog
from stockledger.services.side_effects import RecordingPublisher

TENANT = 1
OTHER_TENANT = 2
PRODUCT = 100
STORE = Store(1)
OTHER_STORE = Store(2)
WAREHOUSE = Warehouse(10)


class FixedClock:
    """Returns `now`, then moves it forward by `tick` so movement times stay ordered."""

    def __init__(self, now: datetime, tick: timedelta = timedelta(seconds=1)):
        self.now = now
        self.tick = tick

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + self.tick
        return current

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FixedClock(datetime(2023, 12, 1, 9, 0, 0))


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def audit_log():
    return MemoryAuditLog()


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def engine(memory_store, audit_log, publisher, clock):
    """Engine over the in-memory repositories."""
    return StockEngine(
        build_memory_repositories(memory_store),
        audit_log=audit_log,
        publisher=publisher,
        clock=clock,
    )


@pytest.fixture
def key():
    return StockKey(TENANT, PRODUCT, STORE)


def assert_ledger_consistent(engine, tenant_id=None):
    assert engine.ledger.verify_consistency(tenant_id) == []


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'LOG_LEVEL': 'DEBUG',
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture
def sql_engine(app, db_session, publisher, clock):
    """Engine over SQLAlchemy repositories, with SQL audit log."""
    return build_sql_engine(app.config, publisher=publisher, clock=clock)
