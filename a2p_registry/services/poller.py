"""Background status sweep over non-terminal registrations.

Each registration is processed independently: a failure on one is logged
and counted, and the sweep moves on. Run it from a scheduler (cron, a
systemd timer) via ``a2p ops sweep`` or ``POST /api/v1/ops/sweep``.
"""

import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from a2p_registry.cli.config import OrchestratorConfig
from a2p_registry.errors import DomainError
from a2p_registry.services.inventory import PhoneNumberInventory
from a2p_registry.services.gateway_client import ComplianceGatewayClient
from a2p_registry.services.orchestrator import RegistrationOrchestrator

logger = logging.getLogger(__name__)


def run_status_sweep(
    db: Session,
    gateway: ComplianceGatewayClient,
    inventory: PhoneNumberInventory,
    settings: OrchestratorConfig | None = None,
) -> dict[str, int]:
    """Reconcile and poll every non-terminal registration once.

    Args:
        db: Database session.
        gateway: Compliance API client.
        inventory: Phone-number inventory (needed to build the orchestrator).
        settings: Orchestrator settings; the batch size is the page size.

    Returns:
        Dict with visited, reconciled, transitioned and failed counts.
    """
    settings = settings or OrchestratorConfig()
    orchestrator = RegistrationOrchestrator(db, gateway, inventory, settings=settings)

    visited = 0
    reconciled = 0
    transitioned = 0
    failed = 0

    seen: set[str] = set()
    cursor: tuple[str, str] | None = None
    while True:
        page = orchestrator.store.list_non_terminal(
            limit=settings.sweep_batch_size, after=cursor
        )
        if not page:
            break
        # Visiting refreshes rows in place; read keys and cursor first
        keys = [(r.id, r.status) for r in page]
        cursor = (page[-1].updated_at, page[-1].id)

        for registration_id, before in keys:
            if registration_id in seen:
                # Updated earlier in this sweep and now sorts later
                continue
            seen.add(registration_id)
            visited += 1
            try:
                registration = orchestrator.store.get(registration_id)
                report = orchestrator.reconciler.reconcile_registration(registration)
                reconciled += len(report.results) - len(report.deferred)
                after = orchestrator.poll_status(registration_id)
                if after.status != before:
                    transitioned += 1
            except DomainError as e:
                failed += 1
                logger.warning("Sweep of registration %s failed: %s", registration_id, e)
            except SQLAlchemyError as e:
                db.rollback()
                failed += 1
                logger.error(
                    "Sweep of registration %s hit a database error: %s", registration_id, e
                )

    logger.info(
        "Status sweep: %d visited, %d attempts reconciled, %d transitioned, %d failed",
        visited, reconciled, transitioned, failed,
    )
    return {
        "visited": visited,
        "reconciled": reconciled,
        "transitioned": transitioned,
        "failed": failed,
    }
