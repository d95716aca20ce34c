"""Tests for phone-number selection, claims and assignment."""

import pytest

from a2p_registry.db.models import (
    EventType,
    NumberStatus,
    PhoneNumberClaim,
    RegistrationNumber,
    RegistrationStatus,
)
from a2p_registry.errors import ConflictError, NumberAlreadyBoundError, ValidationError
from a2p_registry.services.attempt_log import AttemptLog
from a2p_registry.services.event_log import EventLog
from a2p_registry.services.number_binder import NumberBinder
from a2p_registry.services.state_store import RegistrationStore
from tests.helpers import NUMBERS, USER_ID


def _other_registration_holding(orchestrator, db_session, phone_number, tenant_id="tenant-2"):
    """A second active registration that selected and claimed a number."""
    other = orchestrator.store.create(tenant_id, "user-9")
    db_session.add(RegistrationNumber(registration_id=other.id, phone_number=phone_number))
    db_session.commit()
    orchestrator.binder.claim_number(other, phone_number)
    return other


def _to_campaign_pending(orchestrator, registration_id):
    orchestrator.advance(registration_id)
    return orchestrator.advance(registration_id)


class TestSelection:
    """select_numbers / remove_numbers."""

    def test_selection_replaces_previous(self, orchestrator, ready_registration):
        rows = orchestrator.binder.select_numbers(
            ready_registration, [NUMBERS[0], "+14155550103"]
        )
        assert [r.phone_number for r in rows] == [NUMBERS[0], "+14155550103"]

    def test_numbers_are_normalized_and_deduplicated(self, orchestrator):
        registration = orchestrator.start_registration("tenant-3", USER_ID)

        rows = orchestrator.binder.select_numbers(
            registration, ["(415) 555-0101", "+1 415 555 0101", "4155550102"]
        )

        assert sorted(r.phone_number for r in rows) == sorted(NUMBERS)

    def test_malformed_number(self, orchestrator):
        registration = orchestrator.start_registration("tenant-3", USER_ID)
        with pytest.raises(ValidationError) as exc_info:
            orchestrator.binder.select_numbers(registration, ["12"])
        assert exc_info.value.code == "E-1003"

    def test_number_held_by_active_registration(self, orchestrator, db_session):
        _other_registration_holding(orchestrator, db_session, NUMBERS[1])
        registration = orchestrator.start_registration("tenant-3", USER_ID)

        with pytest.raises(NumberAlreadyBoundError):
            orchestrator.save_step(registration.id, 3, NUMBERS, USER_ID)

    def test_cannot_drop_registered_number(self, orchestrator, ready_registration):
        _to_campaign_pending(orchestrator, ready_registration.id)
        orchestrator.advance(ready_registration.id)

        with pytest.raises(ConflictError):
            orchestrator.binder.remove_numbers(ready_registration, [NUMBERS[0]])


class TestClaims:
    """Cross-registration ownership."""

    def test_claim_is_idempotent_for_owner(self, orchestrator, db_session, ready_registration):
        orchestrator.binder.claim_number(ready_registration, NUMBERS[0])
        orchestrator.binder.claim_number(ready_registration, NUMBERS[0])

        claim = db_session.get(PhoneNumberClaim, NUMBERS[0])
        assert claim.registration_id == ready_registration.id
        assert claim.version == 1

    def test_claim_taken_over_from_rejected_registration(
        self, orchestrator, db_session, ready_registration
    ):
        other = _other_registration_holding(orchestrator, db_session, NUMBERS[0])
        orchestrator.store.compare_and_set(other, status=RegistrationStatus.rejected.value)

        orchestrator.binder.claim_number(ready_registration, NUMBERS[0])

        claim = db_session.get(PhoneNumberClaim, NUMBERS[0], populate_existing=True)
        assert claim.registration_id == ready_registration.id
        assert claim.version == 2

    def test_abandon_releases_claims(self, orchestrator, db_session):
        other = _other_registration_holding(orchestrator, db_session, NUMBERS[0])

        orchestrator.abandon(other.id)

        assert db_session.get(PhoneNumberClaim, NUMBERS[0], populate_existing=True) is None

    def test_second_session_cannot_claim(self, session_factory, gateway, inventory):
        """Two sessions racing for one number: the loser sees NumberAlreadyBoundError."""
        first, second = session_factory(), session_factory()
        try:
            owner = RegistrationStore(first).create("tenant-a", USER_ID)
            first.add(RegistrationNumber(registration_id=owner.id, phone_number=NUMBERS[0]))
            first.commit()
            challenger = RegistrationStore(second).create("tenant-b", USER_ID)

            NumberBinder(first, gateway, inventory, AttemptLog(first), EventLog(first)).claim_number(
                owner, NUMBERS[0]
            )
            binder = NumberBinder(second, gateway, inventory, AttemptLog(second), EventLog(second))
            with pytest.raises(NumberAlreadyBoundError) as exc_info:
                binder.claim_number(challenger, NUMBERS[0])

            assert exc_info.value.owner_registration_id == owner.id
        finally:
            first.close()
            second.close()


class TestBinding:
    """Per-number assignment, including partial failure."""

    def test_number_bound_elsewhere_fails_alone(
        self, orchestrator, db_session, ready_registration, gateway
    ):
        """One of two numbers is taken: the other registers, status waits."""
        _to_campaign_pending(orchestrator, ready_registration.id)
        _other_registration_holding(orchestrator, db_session, NUMBERS[1])

        registration = orchestrator.advance(ready_registration.id)

        assert registration.status == RegistrationStatus.campaign_pending.value
        gateway.assign_number.assert_called_once()
        by_number = {
            n["phone_number"]: n
            for n in orchestrator.get_registration_status(registration.id)["per_number_status"]
        }
        assert by_number[NUMBERS[0]]["status"] == NumberStatus.registered.value
        assert by_number[NUMBERS[1]]["status"] == NumberStatus.failed.value
        assert by_number[NUMBERS[1]]["error_code"] == "E-2002"

        warnings = orchestrator.events.get_events(
            registration.id, event_type=EventType.number_binding
        )
        assert any(NUMBERS[1] in e.message for e in warnings)

    def test_removing_failed_number_completes_submission(
        self, orchestrator, db_session, ready_registration
    ):
        _to_campaign_pending(orchestrator, ready_registration.id)
        _other_registration_holding(orchestrator, db_session, NUMBERS[1])
        orchestrator.advance(ready_registration.id)

        registration, removed = orchestrator.remove_numbers(ready_registration.id, [NUMBERS[1]])

        assert removed == [NUMBERS[1]]
        assert registration.status == RegistrationStatus.submitted.value
        assert registration.step_payload("phone_number") == {"phone_numbers": [NUMBERS[0]]}

    def test_rebinding_failed_number_after_release(
        self, orchestrator, db_session, ready_registration, gateway
    ):
        _to_campaign_pending(orchestrator, ready_registration.id)
        other = _other_registration_holding(orchestrator, db_session, NUMBERS[1])
        orchestrator.advance(ready_registration.id)
        orchestrator.abandon(other.id)

        registration, results = orchestrator.bind_numbers(ready_registration.id, [NUMBERS[1]])

        assert [r.status for r in results] == [NumberStatus.registered.value]
        assert registration.status == RegistrationStatus.submitted.value
        assert gateway.assign_number.call_count == 2

    def test_number_dropped_from_inventory(
        self, orchestrator, ready_registration, inventory, gateway
    ):
        _to_campaign_pending(orchestrator, ready_registration.id)
        inventory.list_available_numbers.return_value = [NUMBERS[0]]

        orchestrator.advance(ready_registration.id)

        row = orchestrator.binder.get_number(ready_registration.id, NUMBERS[1])
        assert row.status == NumberStatus.failed.value
        assert row.error_code == "E-1005"
        gateway.assign_number.assert_called_once()

    def test_upstream_refusal_releases_claim(
        self, orchestrator, db_session, ready_registration, gateway
    ):
        from a2p_registry.services.gateway_client import GatewayOutcome

        _to_campaign_pending(orchestrator, ready_registration.id)
        gateway.assign_number.side_effect = None
        gateway.assign_number.return_value = GatewayOutcome.rejected("number not eligible")

        orchestrator.advance(ready_registration.id)

        rows = orchestrator.binder.numbers_for(ready_registration.id)
        assert {r.status for r in rows} == {NumberStatus.failed.value}
        assert db_session.query(PhoneNumberClaim).count() == 0

    def test_bind_requires_campaign_pending(self, orchestrator, ready_registration):
        with pytest.raises(ConflictError):
            orchestrator.bind_numbers(ready_registration.id)
