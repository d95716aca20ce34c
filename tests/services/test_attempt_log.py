"""Tests for the append-only attempt log."""

import pytest

from a2p_registry.db.models import AttemptStatus, AttemptType
from a2p_registry.errors import NotFoundError, ReconciliationRequired
from a2p_registry.services.attempt_log import AttemptLog
from a2p_registry.services.state_store import RegistrationStore


@pytest.fixture
def registration(db_session):
    return RegistrationStore(db_session).create("tenant-1", "user-1")


@pytest.fixture
def log(db_session):
    return AttemptLog(db_session)


class TestRecordAttemptStart:

    def test_pending_row_with_key(self, log, registration):
        attempt = log.record_attempt_start(
            registration, AttemptType.brand_registration, "brand", {"brand_id": "b1"}
        )

        assert attempt.status == AttemptStatus.pending.value
        assert attempt.idempotency_key == (
            f"{registration.id}:brand_registration:{attempt.id}"
        )
        assert log.find_pending_attempt(registration.id, AttemptType.brand_registration) == attempt

    def test_request_is_redacted(self, log, registration):
        attempt = log.record_attempt_start(
            registration,
            AttemptType.brand_registration,
            "brand",
            {"brand_id": "b1", "payload": {"ein": "12-3456789", "company_name": "Acme"}},
        )

        payload = attempt.request_payload["payload"]
        assert payload["ein"] == "***REDACTED***"
        assert payload["company_name"] == "Acme"

    def test_second_pending_for_same_subject_is_refused(self, log, registration):
        first = log.record_attempt_start(
            registration, AttemptType.phone_assignment, "+14155550101", {}
        )

        with pytest.raises(ReconciliationRequired) as exc_info:
            log.record_attempt_start(
                registration, AttemptType.phone_assignment, "+14155550101", {}
            )

        assert exc_info.value.attempt_id == first.id

    def test_other_subjects_are_independent(self, log, registration):
        log.record_attempt_start(registration, AttemptType.phone_assignment, "+14155550101", {})
        log.record_attempt_start(registration, AttemptType.phone_assignment, "+14155550102", {})

        assert len(log.list_pending(registration.id)) == 2

    def test_finalized_subject_can_start_again(self, log, registration):
        first = log.record_attempt_start(registration, AttemptType.brand_registration, "brand", {})
        log.record_attempt_end(first.id, AttemptStatus.error, error_code="E-3001")

        second = log.record_attempt_start(registration, AttemptType.brand_registration, "brand", {})

        assert second.idempotency_key != first.idempotency_key


class TestRecordAttemptEnd:

    def test_finalizes_once(self, log, registration):
        attempt = log.record_attempt_start(registration, AttemptType.brand_registration, "brand", {})

        assert log.record_attempt_end(attempt.id, AttemptStatus.success, upstream_ref="BN-1")
        assert not log.record_attempt_end(attempt.id, AttemptStatus.error, error_code="E-3001")

        final = log.get(attempt.id)
        assert final.status == AttemptStatus.success.value
        assert final.upstream_ref == "BN-1"
        assert final.completed_at is not None

    def test_error_message_is_sanitized(self, log, registration):
        attempt = log.record_attempt_start(registration, AttemptType.brand_registration, "brand", {})

        log.record_attempt_end(
            attempt.id, AttemptStatus.error,
            error_code="E-3005", error_message="bad request: ein=12-3456789",
        )

        assert "12-3456789" not in log.get(attempt.id).error_message

    def test_pending_is_not_a_final_status(self, log, registration):
        attempt = log.record_attempt_start(registration, AttemptType.brand_registration, "brand", {})
        with pytest.raises(ValueError):
            log.record_attempt_end(attempt.id, AttemptStatus.pending)


class TestQueries:

    def test_unknown_attempt(self, log):
        with pytest.raises(NotFoundError):
            log.get("missing")

    def test_latest_by_type(self, log, registration):
        first = log.record_attempt_start(registration, AttemptType.brand_registration, "brand", {})
        log.record_attempt_end(first.id, AttemptStatus.error, error_code="E-3001")
        second = log.record_attempt_start(registration, AttemptType.brand_registration, "brand", {})

        latest = log.latest_by_type(registration.id)

        assert latest["brand_registration"].id == second.id
