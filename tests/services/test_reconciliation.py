"""Tests for resolving attempts left pending by a crash or lost response."""

import pytest

from a2p_registry.db.models import (
    AttemptStatus,
    AttemptType,
    NumberStatus,
    RegistrationStatus,
    SubEntityStatus,
)
from a2p_registry.errors import ReconciliationRequired
from a2p_registry.services.gateway_client import GatewayOutcome
from a2p_registry.services.reconciliation import EXPIRED, INTERRUPTED
from tests.helpers import NUMBERS, fill_wizard


def _crash_brand_dispatch(orchestrator, gateway, registration_id):
    """Dispatch the brand, then die before the response is recorded."""
    gateway.register_brand.side_effect = RuntimeError("worker killed")
    with pytest.raises(RuntimeError):
        orchestrator.advance(registration_id)
    gateway.register_brand.side_effect = None

    (attempt,) = orchestrator.list_attempts(registration_id)
    assert attempt.status == AttemptStatus.pending.value
    return attempt


class TestSubmissionRecovery:
    """Pending brand/campaign submissions."""

    def test_found_upstream_is_finalized_without_redispatch(
        self, orchestrator, ready_registration, gateway
    ):
        """A crash after dispatch: the next advance adopts the upstream record."""
        pending = _crash_brand_dispatch(orchestrator, gateway, ready_registration.id)
        gateway.find_by_idempotency_key.return_value = GatewayOutcome.accepted("BN-100")

        registration = orchestrator.advance(ready_registration.id)

        assert registration.status == RegistrationStatus.campaign_pending.value
        gateway.register_brand.assert_called_once()
        gateway.find_by_idempotency_key.assert_called_once_with(pending.idempotency_key)
        assert orchestrator.attempts.get(pending.id).status == AttemptStatus.success.value
        assert orchestrator.attempts.get(pending.id).upstream_ref == "BN-100"
        assert orchestrator.get_registration_status(registration.id)["brand_ref"] == "BN-100"

    def test_recent_attempt_not_found_blocks(self, orchestrator, ready_registration, gateway):
        pending = _crash_brand_dispatch(orchestrator, gateway, ready_registration.id)

        with pytest.raises(ReconciliationRequired) as exc_info:
            orchestrator.advance(ready_registration.id)

        assert exc_info.value.attempt_id == pending.id
        gateway.register_brand.assert_called_once()
        assert orchestrator.store.get(ready_registration.id).status == (
            RegistrationStatus.brand_pending.value
        )

    def test_old_attempt_not_found_expires_and_redispatches(
        self, orchestrator, ready_registration, gateway, clock
    ):
        pending = _crash_brand_dispatch(orchestrator, gateway, ready_registration.id)
        clock.advance(1000)

        registration = orchestrator.advance(ready_registration.id)

        assert registration.status == RegistrationStatus.campaign_pending.value
        assert gateway.register_brand.call_count == 2
        expired = orchestrator.attempts.get(pending.id)
        assert expired.status == AttemptStatus.error.value
        assert expired.error_code == "E-3006"

        brand_attempts = orchestrator.attempts.list_attempts(
            registration.id, AttemptType.brand_registration
        )
        assert len({a.idempotency_key for a in brand_attempts}) == 2

    def test_failed_lookup_leaves_attempt_pending(self, orchestrator, ready_registration, gateway):
        pending = _crash_brand_dispatch(orchestrator, gateway, ready_registration.id)
        gateway.find_by_idempotency_key.return_value = GatewayOutcome.retriable("lookup timed out")

        with pytest.raises(ReconciliationRequired):
            orchestrator.advance(ready_registration.id)

        assert orchestrator.attempts.get(pending.id).status == AttemptStatus.pending.value

    def test_found_as_rejected(self, orchestrator, ready_registration, gateway):
        pending = _crash_brand_dispatch(orchestrator, gateway, ready_registration.id)
        gateway.find_by_idempotency_key.return_value = GatewayOutcome.accepted(
            "BN-100", upstream_status=SubEntityStatus.rejected
        )

        registration = orchestrator.advance(ready_registration.id)

        assert registration.status == RegistrationStatus.brand_pending.value
        finalized = orchestrator.attempts.get(pending.id)
        assert finalized.status == AttemptStatus.error.value
        assert finalized.error_code == "E-3003"
        assert orchestrator.get_registration_status(registration.id)["brand_status"] == "rejected"


class TestStatusCheckRecovery:
    """Pending status checks are closed rather than looked up."""

    def _pending_check(self, orchestrator, registration):
        return orchestrator.attempts.record_attempt_start(
            registration, AttemptType.status_check, "BN-100", {"upstream_ref": "BN-100"}
        )

    def test_recent_check_is_left_alone(self, orchestrator, ready_registration, gateway):
        check = self._pending_check(orchestrator, ready_registration)

        report = orchestrator.reconciler.reconcile_registration(ready_registration)

        assert [r.attempt_id for r in report.deferred] == [check.id]
        gateway.find_by_idempotency_key.assert_not_called()

    def test_old_check_is_interrupted(self, orchestrator, ready_registration, clock):
        check = self._pending_check(orchestrator, ready_registration)
        clock.advance(1000)

        report = orchestrator.reconciler.reconcile_registration(ready_registration)

        assert report.counts() == {INTERRUPTED: 1}
        assert orchestrator.attempts.get(check.id).error_code == "E-4002"

    def test_force_reconcile_closes_recent_check(self, orchestrator, ready_registration):
        check = self._pending_check(orchestrator, ready_registration)

        report = orchestrator.force_reconcile(ready_registration.id)

        assert report.counts() == {INTERRUPTED: 1}
        assert orchestrator.attempts.get(check.id).status == AttemptStatus.error.value


class TestAssignmentRecovery:
    """Pending phone-number assignments."""

    @pytest.fixture
    def crashed_assignment(self, orchestrator, gateway):
        registration = fill_wizard(orchestrator, numbers=[NUMBERS[0]])
        orchestrator.advance(registration.id)
        orchestrator.advance(registration.id)

        gateway.assign_number.side_effect = RuntimeError("connection reset")
        with pytest.raises(RuntimeError):
            orchestrator.advance(registration.id)
        gateway.assign_number.side_effect = None
        gateway.assign_number.return_value = GatewayOutcome.accepted("PN-0101")

        row = orchestrator.binder.get_number(registration.id, NUMBERS[0])
        assert row.status == NumberStatus.submitted.value
        return registration

    def test_found_assignment_completes_submission(
        self, orchestrator, gateway, crashed_assignment
    ):
        gateway.find_by_idempotency_key.return_value = GatewayOutcome.accepted("PN-0101")

        registration = orchestrator.advance(crashed_assignment.id)

        assert registration.status == RegistrationStatus.submitted.value
        assert gateway.assign_number.call_count == 1
        row = orchestrator.binder.get_number(registration.id, NUMBERS[0])
        assert row.status == NumberStatus.registered.value
        assert row.upstream_ref == "PN-0101"

    def test_expired_assignment_is_requeued(
        self, orchestrator, gateway, clock, crashed_assignment
    ):
        clock.advance(1000)

        registration = orchestrator.advance(crashed_assignment.id)

        assert registration.status == RegistrationStatus.submitted.value
        assert gateway.assign_number.call_count == 2
        expired = [
            a for a in orchestrator.attempts.list_attempts(
                registration.id, AttemptType.phone_assignment
            )
            if a.error_code == "E-3006"
        ]
        assert len(expired) == 1

    def test_report_counts_expired(self, orchestrator, clock, crashed_assignment):
        clock.advance(1000)

        report = orchestrator.reconciler.reconcile_registration(
            orchestrator.store.get(crashed_assignment.id)
        )

        assert report.counts() == {EXPIRED: 1}
        row = orchestrator.binder.get_number(crashed_assignment.id, NUMBERS[0])
        assert row.status == NumberStatus.selected.value
        assert row.error_code == "E-3006"
