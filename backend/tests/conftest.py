import os
import tempfile

import httpx
import pytest


# Ensure required environment variables are present before app imports.
# Tests disable CSRF explicitly; production defaults remain hardened.
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("JWT_SECRET", "x" * 64)
os.environ.setdefault("REQUIRE_CSRF_HEADER", "false")
os.environ.setdefault("GATEWAY_BASE_URL", "http://gateway.test")
os.environ.setdefault("GATEWAY_TOKEN", "test-gateway-token")
os.environ.setdefault(
    "DATABASE_URL", "sqlite:///" + os.path.join(tempfile.gettempdir(), f"dashchat-test-{os.getpid()}.db")
)

from dashchat.config import settings  # noqa: E402

settings.REQUIRE_CSRF_HEADER = False

from tests.fixtures.fakes import FakeGateway  # noqa: E402


@pytest.fixture(scope="session", autouse=True)
def _prepare_db():
    """Create database tables for tests using the app's SQLAlchemy metadata."""
    from dashchat.db import Base, engine
    from dashchat import models  # noqa: F401

    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def _clean_tables():
    """Routes open their own sessions, so committed rows are removed after each test."""
    yield
    from dashchat.db import Base, engine

    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture(autouse=True)
def _reset_rate_limits():
    from dashchat.rate_limit import limiter

    limiter.reset()
    yield
    limiter.reset()


@pytest.fixture(autouse=True)
def _block_network(monkeypatch):
    """Real transports raise; httpx.MockTransport is unaffected."""

    def _blocked(self, request):
        raise RuntimeError(f"Network access blocked in tests: {request.url}")

    async def _blocked_async(self, request):
        raise RuntimeError(f"Network access blocked in tests: {request.url}")

    monkeypatch.setattr(httpx.HTTPTransport, "handle_request", _blocked)
    monkeypatch.setattr(httpx.AsyncHTTPTransport, "handle_async_request", _blocked_async)


@pytest.fixture()
def db_session():
    from dashchat.db import SessionLocal

    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture()
def gateway():
    return FakeGateway()


@pytest.fixture()
def client(gateway):
    from fastapi.testclient import TestClient
    from dashchat.main import create_app

    app = create_app(gateway_transport=gateway.transport)
    with TestClient(app) as test_client:
        yield test_client
