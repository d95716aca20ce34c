"""Root-level pytest fixtures for all tests.

Provides shared fixtures for:
- Database sessions (in-memory and file-based SQLite)
- Mock compliance gateway and phone-number inventory
- An orchestrator wired to both, and a fully prepared registration
"""

import os

# The module-level engine is created at import; keep it off the working tree.
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

import tempfile  # noqa: E402
from collections.abc import Generator  # noqa: E402
from unittest.mock import MagicMock  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import Session, sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from a2p_registry.cli.config import OrchestratorConfig  # noqa: E402
from a2p_registry.db.models import A2PRegistration, Base  # noqa: E402
from a2p_registry.services.gateway_client import (  # noqa: E402
    ComplianceGatewayClient,
    GatewayOutcome,
)
from a2p_registry.services.orchestrator import RegistrationOrchestrator  # noqa: E402
from tests.helpers import NUMBERS, FakeClock, fill_wizard  # noqa: E402


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
def db_session() -> Generator[Session, None, None]:
    """In-memory SQLite database with all tables, one session."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def file_based_db() -> Generator[str, None, None]:
    """File-based SQLite database so two sessions see each other's commits."""
    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)

    engine = create_engine(f"sqlite:///{path}")
    Base.metadata.create_all(engine)
    engine.dispose()

    yield path

    os.unlink(path)


@pytest.fixture
def session_factory(file_based_db: str) -> Generator[sessionmaker, None, None]:
    """Session factory over the file-based database."""
    engine = create_engine(
        f"sqlite:///{file_based_db}", connect_args={"check_same_thread": False}
    )
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


# ============================================================================
# Upstream Fakes
# ============================================================================


def _assign(phone_number: str, campaign_ref: str, idempotency_key: str) -> GatewayOutcome:
    return GatewayOutcome.accepted(f"PN-{phone_number[-4:]}")


@pytest.fixture
def gateway() -> MagicMock:
    """Compliance API client that accepts everything by default."""
    client = MagicMock(spec=ComplianceGatewayClient)
    client.register_brand.return_value = GatewayOutcome.accepted("BN-100")
    client.register_campaign.return_value = GatewayOutcome.accepted("CP-200")
    client.assign_number.side_effect = _assign
    client.check_status.return_value = GatewayOutcome.accepted("BN-100")
    client.find_by_idempotency_key.return_value = GatewayOutcome.not_found()
    return client


@pytest.fixture
def inventory() -> MagicMock:
    """Inventory that owns NUMBERS plus one spare for every tenant."""
    inv = MagicMock()
    inv.list_available_numbers.return_value = NUMBERS + ["+14155550103"]
    return inv


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def orchestrator(
    db_session: Session, gateway: MagicMock, inventory: MagicMock, clock: FakeClock
) -> RegistrationOrchestrator:
    return RegistrationOrchestrator(
        db_session,
        gateway,
        inventory,
        settings=OrchestratorConfig(reconciliation_timeout_seconds=900),
        clock=clock,
    )


@pytest.fixture
def ready_registration(orchestrator: RegistrationOrchestrator) -> A2PRegistration:
    """A draft with every wizard step filled in."""
    return fill_wizard(orchestrator)
