import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from app.database import get_session
from app.main import app
from app.services.match_events import clear_subscribers

TEST_DATABASE_URL = "sqlite:///:memory:"

# ============================================================================
# CRITICAL: Test Database Setup with StaticPool
# ============================================================================
# 1. Use sqlite:///:memory: with StaticPool so ALL sessions share same DB
# 2. check_same_thread=False required for TestClient/threaded access
# 3. All models MUST be imported before create_all() (see tests/__init__.py)
# 4. App dependency overridden to use test_engine (see client_fixture)
# 5. Tables dropped and recreated per test; app startup (init_db, relay
#    subscription) never runs under test
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)


def override_get_session():
    """Override session to use test engine"""
    with Session(test_engine) as session:
        yield session


@pytest.fixture(name="session", scope="function")
def session_fixture():
    """Provide a test database session on a fresh schema."""
    SQLModel.metadata.drop_all(test_engine)
    SQLModel.metadata.create_all(test_engine)
    clear_subscribers()

    with Session(test_engine) as session:
        yield session

    clear_subscribers()


@pytest.fixture(name="client")
def client_fixture(session: Session):
    """Provide a test client with overridden database session

    CRITICAL: Override MUST be set BEFORE TestClient() and stay in place
    for the entire duration. This ensures the app never uses its own engine.
    """
    app.dependency_overrides[get_session] = override_get_session

    # No context manager: startup hooks would create the production database
    client = TestClient(app)
    yield client

    app.dependency_overrides.clear()


@pytest.fixture(name="events")
def events_fixture(session: Session):
    """Collect every published engine event."""
    from app.services.match_events import subscribe

    received = []
    subscribe(received.append)
    return received
