"""Append-only log of compliance API attempts.

Every external call is bracketed by record_attempt_start (before dispatch)
and record_attempt_end (after the call resolves). A pending row left behind
by a crash is what the reconciliation pass looks for. Rows are never
deleted.

Usage:
    log = AttemptLog(db)
    attempt = log.record_attempt_start(
        registration, AttemptType.brand_registration, "brand", request
    )
    ...dispatch with attempt.idempotency_key...
    log.record_attempt_end(attempt.id, AttemptStatus.success, response=raw, upstream_ref="BN1")
"""

import json
import logging
from typing import Any

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from a2p_registry.db.models import (
    A2PRegistration,
    AttemptStatus,
    AttemptType,
    ComplianceAttempt,
    generate_uuid,
    utc_now_iso,
)
from a2p_registry.errors import NotFoundError, ReconciliationRequired
from a2p_registry.services.idempotency import generate_idempotency_key
from a2p_registry.utils.redaction import redact_for_logging, sanitize_error_message

logger = logging.getLogger(__name__)


class AttemptLog:
    """Reads and writes ComplianceAttempt rows.

    Attributes:
        db: SQLAlchemy session for database operations.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    def record_attempt_start(
        self,
        registration: A2PRegistration,
        attempt_type: AttemptType,
        subject: str,
        request: dict[str, Any],
    ) -> ComplianceAttempt:
        """Write a pending attempt and commit it before any dispatch.

        Args:
            registration: Owning registration.
            attempt_type: Kind of external call.
            subject: 'brand', 'campaign', an E.164 number, or the checked reference.
            request: Outbound request snapshot (redacted before storage).

        Returns:
            The committed pending ComplianceAttempt.

        Raises:
            ReconciliationRequired: Another pending attempt for the same
                (registration, type, subject) was committed first.
        """
        attempt_id = generate_uuid()
        attempt = ComplianceAttempt(
            id=attempt_id,
            tenant_id=registration.tenant_id,
            registration_id=registration.id,
            attempt_type=attempt_type.value,
            subject=subject,
            idempotency_key=generate_idempotency_key(
                registration.id, attempt_type.value, attempt_id
            ),
            request_data=json.dumps(redact_for_logging(request), default=str),
            status=AttemptStatus.pending.value,
        )
        self.db.add(attempt)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            existing = self.find_pending_attempt(registration.id, attempt_type, subject)
            logger.warning(
                "Concurrent %s attempt for registration %s subject %s",
                attempt_type.value, registration.id, subject,
            )
            raise ReconciliationRequired(
                existing.id if existing else "unknown", attempt_type.value, subject
            )

        logger.info(
            "Attempt %s started: %s %s for registration %s",
            attempt.id, attempt_type.value, subject, registration.id,
        )
        return attempt

    def record_attempt_end(
        self,
        attempt_id: str,
        status: AttemptStatus,
        response: dict[str, Any] | None = None,
        upstream_ref: str | None = None,
        error_code: str | None = None,
        error_message: str | None = None,
    ) -> bool:
        """Finalize a pending attempt to success or error.

        The update is conditional on the row still being pending, so a
        reconciliation pass and a late caller cannot both finalize it.

        Args:
            attempt_id: UUID of the attempt.
            status: AttemptStatus.success or AttemptStatus.error.
            response: Upstream response snapshot.
            upstream_ref: Reference id returned by the upstream.
            error_code: E-XXXX code when status is error.
            error_message: Error text when status is error.

        Returns:
            True if this call finalized the attempt, False if it was
            already final.
        """
        if status == AttemptStatus.pending:
            raise ValueError("record_attempt_end requires a final status")

        result = self.db.execute(
            update(ComplianceAttempt)
            .where(
                ComplianceAttempt.id == attempt_id,
                ComplianceAttempt.status == AttemptStatus.pending.value,
            )
            .values(
                status=status.value,
                response_data=(
                    json.dumps(redact_for_logging(response), default=str)
                    if response is not None
                    else None
                ),
                upstream_ref=upstream_ref,
                error_code=error_code,
                error_message=sanitize_error_message(error_message),
                completed_at=utc_now_iso(),
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()

        if result.rowcount == 0:
            logger.warning("Attempt %s was already finalized", attempt_id)
            return False

        logger.info("Attempt %s finalized: %s", attempt_id, status.value)
        return True

    def get(self, attempt_id: str) -> ComplianceAttempt:
        attempt = self.db.get(ComplianceAttempt, attempt_id, populate_existing=True)
        if attempt is None:
            raise NotFoundError("Attempt", attempt_id)
        return attempt

    def find_pending_attempt(
        self,
        registration_id: str,
        attempt_type: AttemptType,
        subject: str | None = None,
    ) -> ComplianceAttempt | None:
        """Return the in-flight attempt of a type, if any.

        Args:
            registration_id: UUID of the registration.
            attempt_type: Kind of external call.
            subject: Narrow to one subject (e.g. one phone number).

        Returns:
            The pending ComplianceAttempt, or None.
        """
        query = self.db.query(ComplianceAttempt).filter(
            ComplianceAttempt.registration_id == registration_id,
            ComplianceAttempt.attempt_type == attempt_type.value,
            ComplianceAttempt.status == AttemptStatus.pending.value,
        )
        if subject is not None:
            query = query.filter(ComplianceAttempt.subject == subject)
        return query.order_by(ComplianceAttempt.created_at.asc()).first()

    def list_pending(self, registration_id: str | None = None) -> list[ComplianceAttempt]:
        """All pending attempts, optionally for one registration, oldest first."""
        query = self.db.query(ComplianceAttempt).filter(
            ComplianceAttempt.status == AttemptStatus.pending.value
        )
        if registration_id is not None:
            query = query.filter(ComplianceAttempt.registration_id == registration_id)
        return query.order_by(ComplianceAttempt.created_at.asc()).all()

    def list_attempts(
        self,
        registration_id: str,
        attempt_type: AttemptType | None = None,
    ) -> list[ComplianceAttempt]:
        """All attempts for a registration, oldest first."""
        query = self.db.query(ComplianceAttempt).filter(
            ComplianceAttempt.registration_id == registration_id
        )
        if attempt_type is not None:
            query = query.filter(ComplianceAttempt.attempt_type == attempt_type.value)
        return query.order_by(ComplianceAttempt.created_at.asc()).all()

    def latest_by_type(self, registration_id: str) -> dict[str, ComplianceAttempt]:
        """Most recent attempt of each type for a registration."""
        latest: dict[str, ComplianceAttempt] = {}
        for attempt in self.list_attempts(registration_id):
            latest[attempt.attempt_type] = attempt
        return latest
