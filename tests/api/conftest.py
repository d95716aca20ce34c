"""Pytest fixtures for API tests.

Provides a TestClient whose database, upstream clients and configuration
are replaced through FastAPI dependency overrides.
"""

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from a2p_registry.api.main import app
from a2p_registry.api.middleware.auth import reset_rate_limiter
from a2p_registry.cli.config import A2PConfig, APIConfig
from a2p_registry.db.connection import get_db
from a2p_registry.services import client_provider
from tests.helpers import OPERATOR_KEY, WEBHOOK_SECRET


@pytest.fixture
def api_config() -> A2PConfig:
    return A2PConfig(
        api=APIConfig(operator_api_key=OPERATOR_KEY, webhook_secret=WEBHOOK_SECRET)
    )


@pytest.fixture
def client(
    db_session: Session, gateway, inventory, api_config: A2PConfig, monkeypatch
) -> Generator[TestClient, None, None]:
    """TestClient wired to the in-memory database and mocked upstreams."""

    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    # Middleware and the operator guard read the config directly
    monkeypatch.setattr(client_provider, "_config", api_config)
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[client_provider.get_config] = lambda: api_config
    app.dependency_overrides[client_provider.get_gateway] = lambda: gateway
    app.dependency_overrides[client_provider.get_inventory] = lambda: inventory
    reset_rate_limiter()
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
