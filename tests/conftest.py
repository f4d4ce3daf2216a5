from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from starlette.testclient import TestClient

from payhook.config import Settings
from payhook.database import make_engine, make_session_factory
from payhook.intake import WebhookIntakeHandler
from payhook.main import create_app
from payhook.models import Base
from payhook.plans import StaticPlanCatalog
from tests.helpers.clock import FrozenClock

WEBHOOK_SECRET = "test-secret"
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="function")
def db_url(tmp_path):
    """A fresh file-backed SQLite DB per test; threads need a real file to share."""
    return f"sqlite:///{tmp_path / 'payhook.db'}"


@pytest.fixture(scope="function")
def db_engine(db_url):
    """The engine the application writes through."""
    engine = make_engine(db_url)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def clock():
    return FrozenClock(NOW)


@pytest.fixture(scope="function")
def plan_catalog():
    return StaticPlanCatalog.from_days({"monthly": 30, "yearly": 365})


@pytest.fixture(scope="function")
def app(db_engine, clock, plan_catalog):
    """Create a FastAPI app with isolated DB per test."""
    settings = Settings(WEBHOOK_SECRET=WEBHOOK_SECRET, DATABASE_URL="sqlite://", LOG_LEVEL="DEBUG")
    return create_app(settings, engine=db_engine, plan_catalog=plan_catalog, clock=clock)


@pytest.fixture(scope="function")
def client(app):
    """HTTP test client."""
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c


@pytest.fixture(scope="function")
def db_session(db_url, db_engine):
    """Raw DB session for direct inspection/insertion.

    Uses its own plain engine so reads never hold the application's write lock.
    """
    engine = create_engine(db_url, connect_args={"check_same_thread": False, "timeout": 30})
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    db = SessionLocal()
    yield db
    db.close()
    engine.dispose()


@pytest.fixture(scope="function")
def app_session(db_engine):
    """Session on the application engine, for driving components directly."""
    db = make_session_factory(db_engine)()
    yield db
    db.close()


@pytest.fixture(scope="function")
def handler(clock, plan_catalog):
    return WebhookIntakeHandler(secret=WEBHOOK_SECRET, plan_catalog=plan_catalog, clock=clock)
