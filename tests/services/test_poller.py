"""Tests for the background status sweep."""

from a2p_registry.cli.config import OrchestratorConfig
from a2p_registry.db.models import AttemptType, RegistrationStatus, SubEntityStatus
from a2p_registry.errors import RetriableGatewayError
from a2p_registry.services.gateway_client import GatewayOutcome
from a2p_registry.services.poller import run_status_sweep
from tests.helpers import fill_wizard


def _submitted(orchestrator, registration):
    for _ in range(3):
        orchestrator.advance(registration.id)
    return orchestrator.store.get(registration.id)


class TestStatusSweep:
    """run_status_sweep."""

    def test_approval_is_applied(self, db_session, orchestrator, ready_registration, gateway, inventory):
        registration = _submitted(orchestrator, ready_registration)
        assert registration.status == RegistrationStatus.submitted.value
        gateway.check_status.return_value = GatewayOutcome.accepted(
            "BN-100", upstream_status=SubEntityStatus.approved
        )

        summary = run_status_sweep(db_session, gateway, inventory)

        assert summary == {"visited": 1, "reconciled": 0, "transitioned": 1, "failed": 0}
        assert gateway.check_status.call_count == 2
        assert orchestrator.store.get(registration.id).status == RegistrationStatus.approved.value

    def test_pending_upstream_leaves_status(
        self, db_session, orchestrator, ready_registration, gateway, inventory
    ):
        registration = _submitted(orchestrator, ready_registration)

        summary = run_status_sweep(db_session, gateway, inventory)

        assert summary["transitioned"] == 0
        assert orchestrator.store.get(registration.id).status == RegistrationStatus.submitted.value

    def test_drafts_are_not_visited(self, db_session, ready_registration, gateway, inventory):
        summary = run_status_sweep(db_session, gateway, inventory)

        assert summary["visited"] == 0
        gateway.check_status.assert_not_called()

    def test_one_failure_does_not_stop_the_sweep(
        self, db_session, orchestrator, ready_registration, gateway, inventory
    ):
        _submitted(orchestrator, ready_registration)
        gateway.check_status.side_effect = RetriableGatewayError("down", code="E-3001")

        summary = run_status_sweep(db_session, gateway, inventory)

        assert summary["failed"] == 1

    def test_sweep_pages_past_batch_size(self, db_session, orchestrator, gateway, inventory):
        """Three registrations, pages of two: every sweep reaches all three."""
        ids = [
            orchestrator.advance(fill_wizard(orchestrator, tenant_id=tenant).id).id
            for tenant in ("tenant-a", "tenant-b", "tenant-c")
        ]
        settings = OrchestratorConfig(sweep_batch_size=2)

        first = run_status_sweep(db_session, gateway, inventory, settings=settings)
        second = run_status_sweep(db_session, gateway, inventory, settings=settings)

        assert first["visited"] == 3
        assert second["visited"] == 3
        for registration_id in ids:
            checks = orchestrator.attempts.list_attempts(registration_id, AttemptType.status_check)
            assert len(checks) == 2

    def test_page_keyset_has_no_overlap(self, orchestrator):
        for tenant in ("tenant-a", "tenant-b", "tenant-c"):
            orchestrator.advance(fill_wizard(orchestrator, tenant_id=tenant).id)

        page_one = orchestrator.store.list_non_terminal(limit=2)
        last = page_one[-1]
        page_two = orchestrator.store.list_non_terminal(
            limit=2, after=(last.updated_at, last.id)
        )

        assert len(page_one) == 2
        assert len(page_two) == 1
        assert page_two[0].id not in {r.id for r in page_one}
