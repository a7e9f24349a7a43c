"""API-specific test fixtures."""

from contextlib import asynccontextmanager

import pytest
from fakeredis import FakeAsyncRedis
from fastapi import FastAPI
from fastapi.testclient import TestClient

from payguard.integrations.gateway_fake import FakeGateway


@pytest.fixture
def api_gateway():
    """Gateway behind the API. Tests switch ``scenario`` before calling."""
    return FakeGateway(scenario="happy_path")


@pytest.fixture
def api_client(tmp_path, settings, notifier, api_gateway):
    """FastAPI test client on a file-backed SQLite database and fake Redis.

    Both are created inside the TestClient's own event loop so route
    handlers can use the module-level session factory and Redis client.
    """
    import payguard.db.base as db_mod
    import payguard.db.redis as redis_mod
    from payguard.api.deps import get_gateway, get_notifier
    from payguard.api.routes import api_router
    from payguard.core.config import get_settings
    from payguard.db import close_db, close_redis, init_db
    from payguard.main import register_exception_handlers
    from payguard.middleware.correlation import setup_correlation_middleware

    db_url = f"sqlite+aiosqlite:///{tmp_path / 'api.db'}"

    @asynccontextmanager
    async def test_lifespan(app: FastAPI):
        """Test lifespan - no signal handlers, no sweeper."""
        db_mod._engine = None
        db_mod._session_factory = None
        await init_db(db_url)
        redis_mod._redis = FakeAsyncRedis(decode_responses=True)
        app.state.shutting_down = False
        yield
        await close_redis()
        await close_db()

    app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=test_lifespan)
    setup_correlation_middleware(app)
    register_exception_handlers(app)
    app.include_router(api_router, prefix="/api")

    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_gateway] = lambda: api_gateway
    app.dependency_overrides[get_notifier] = lambda: notifier

    with TestClient(app) as client:
        yield client
