"""Resolution of attempts left pending by a crash or lost response.

A pending attempt means we do not know whether the upstream acted on it.
Before anything else is dispatched for the same registration, each pending
submission is looked up by its idempotency key:

- found: finalize the attempt from what the upstream recorded and apply
  the effect (reference, status) to the brand, campaign or number.
- not found and older than the reconciliation timeout: the call never
  landed; finalize as timed out so a fresh attempt may be dispatched.
- not found and recent, or the lookup itself failed: leave it pending.

Status checks change nothing upstream, so an old pending one is simply
closed as interrupted.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable

from sqlalchemy.orm import Session

from a2p_registry.db.models import (
    A2PRegistration,
    AttemptStatus,
    AttemptType,
    ComplianceAttempt,
    EventType,
    SubEntityStatus,
)
from a2p_registry.errors import ReconciliationRequired
from a2p_registry.services.attempt_log import AttemptLog
from a2p_registry.services.event_log import EventLog
from a2p_registry.services.gateway_client import ComplianceGatewayClient
from a2p_registry.services.number_binder import NumberBinder
from a2p_registry.services.registrar import ComplianceRegistrar

logger = logging.getLogger(__name__)

DEFAULT_RECONCILIATION_TIMEOUT_SECONDS = 900

# Outcomes of reconciling one attempt
FINALIZED_SUCCESS = "finalized_success"
FINALIZED_ERROR = "finalized_error"
EXPIRED = "expired"
INTERRUPTED = "interrupted"
DEFERRED = "deferred"


@dataclass
class ReconcileResult:
    """What reconciliation decided for one pending attempt."""

    attempt_id: str
    attempt_type: str
    subject: str
    action: str
    detail: str | None = None

    @property
    def is_deferred(self) -> bool:
        return self.action == DEFERRED


@dataclass
class ReconcileReport:
    """Summary of a reconciliation pass over one registration."""

    registration_id: str
    results: list[ReconcileResult] = field(default_factory=list)

    @property
    def deferred(self) -> list[ReconcileResult]:
        return [r for r in self.results if r.is_deferred]

    def counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for result in self.results:
            counts[result.action] = counts.get(result.action, 0) + 1
        return counts


def _age_seconds(attempt: ComplianceAttempt, now: datetime) -> float:
    created = datetime.fromisoformat(attempt.created_at)
    if created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)
    return (now - created).total_seconds()


class Reconciler:
    """Resolves pending attempts against the upstream's record.

    Attributes:
        timeout_seconds: Age after which an attempt the upstream never saw
            is declared timed out.
    """

    def __init__(
        self,
        db: Session,
        gateway: ComplianceGatewayClient,
        attempt_log: AttemptLog,
        event_log: EventLog,
        registrar: ComplianceRegistrar,
        binder: NumberBinder,
        timeout_seconds: int = DEFAULT_RECONCILIATION_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.db = db
        self.gateway = gateway
        self.attempts = attempt_log
        self.events = event_log
        self.registrar = registrar
        self.binder = binder
        self.timeout_seconds = timeout_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def reconcile_registration(
        self, registration: A2PRegistration, force: bool = False
    ) -> ReconcileReport:
        """Resolve every pending attempt of a registration, oldest first.

        Args:
            registration: Registration to reconcile.
            force: Close pending status checks regardless of age.
        """
        report = ReconcileReport(registration_id=registration.id)
        for attempt in self.attempts.list_pending(registration.id):
            result = self.reconcile_attempt(registration, attempt, force=force)
            report.results.append(result)

        if report.results:
            logger.info(
                "Reconciled registration %s: %s", registration.id, report.counts()
            )
        return report

    def require_clean(self, registration: A2PRegistration) -> ReconcileReport:
        """Reconcile, then refuse to continue while anything is still unresolved.

        Raises:
            ReconciliationRequired: A pending attempt could not be resolved yet.
        """
        report = self.reconcile_registration(registration)
        if report.deferred:
            first = report.deferred[0]
            raise ReconciliationRequired(first.attempt_id, first.attempt_type, first.subject)
        return report

    def reconcile_attempt(
        self,
        registration: A2PRegistration,
        attempt: ComplianceAttempt,
        force: bool = False,
    ) -> ReconcileResult:
        now = self._clock()
        age = _age_seconds(attempt, now)

        if attempt.attempt_type == AttemptType.status_check.value:
            if force or age >= self.timeout_seconds:
                self.attempts.record_attempt_end(
                    attempt.id,
                    AttemptStatus.error,
                    error_code="E-4002",
                    error_message="Status check interrupted before it completed",
                )
                return self._result(attempt, INTERRUPTED)
            return self._result(attempt, DEFERRED, "status check in flight")

        try:
            lookup = self.attempts.record_attempt_start(
                registration,
                AttemptType.status_check,
                f"attempt:{attempt.id}",
                {"reconciles": attempt.id, "attempt_type": attempt.attempt_type},
            )
        except ReconciliationRequired:
            return self._result(attempt, DEFERRED, "lookup already in flight")

        outcome = self.gateway.find_by_idempotency_key(attempt.idempotency_key)
        if outcome.is_accepted:
            self.attempts.record_attempt_end(
                lookup.id, AttemptStatus.success,
                response=outcome.as_response(), upstream_ref=outcome.upstream_ref,
            )
        else:
            self.attempts.record_attempt_end(
                lookup.id, AttemptStatus.error, response=outcome.as_response(),
                error_code=outcome.error_code, error_message=outcome.reason,
            )

        if outcome.is_accepted:
            return self._apply_found(registration, attempt, outcome)

        if outcome.is_not_found:
            if age < self.timeout_seconds:
                return self._result(attempt, DEFERRED, "not yet visible upstream")
            self.attempts.record_attempt_end(
                attempt.id,
                AttemptStatus.error,
                error_code="E-3006",
                error_message="No upstream record after the reconciliation timeout",
            )
            if attempt.attempt_type == AttemptType.phone_assignment.value:
                self.binder.requeue(
                    registration.id, attempt.subject, "E-3006",
                    "Assignment timed out; will be retried",
                )
            self.events.log_warning(
                registration.id,
                EventType.reconciliation,
                f"Attempt {attempt.id} expired without an upstream record",
                {"attempt_id": attempt.id, "attempt_type": attempt.attempt_type},
            )
            return self._result(attempt, EXPIRED)

        logger.warning(
            "Lookup for attempt %s failed: %s", attempt.id, outcome.reason
        )
        return self._result(attempt, DEFERRED, outcome.reason)

    def _apply_found(self, registration, attempt, outcome) -> ReconcileResult:
        """Finalize an attempt the upstream has a record of."""
        if attempt.attempt_type == AttemptType.phone_assignment.value:
            row = self.binder.get_number(registration.id, attempt.subject)
            if row is None:
                self.attempts.record_attempt_end(
                    attempt.id, AttemptStatus.error,
                    response=outcome.as_response(),
                    error_message="Number no longer in the selection",
                )
                return self._result(attempt, FINALIZED_ERROR, "number removed")
            bound = self.binder.record_assignment(registration, row, attempt, outcome)
            action = FINALIZED_SUCCESS if bound.error_code is None else FINALIZED_ERROR
            self._log(registration, attempt, action)
            return self._result(attempt, action)

        entity = self.registrar.entity_for_attempt(attempt)
        if entity is not None:
            self.registrar.record_outcome(entity, outcome)

        if outcome.upstream_status == SubEntityStatus.rejected:
            self.attempts.record_attempt_end(
                attempt.id, AttemptStatus.error,
                response=outcome.as_response(), upstream_ref=outcome.upstream_ref,
                error_code="E-3003", error_message=outcome.reason or "rejected by upstream",
            )
            action = FINALIZED_ERROR
        else:
            self.attempts.record_attempt_end(
                attempt.id, AttemptStatus.success,
                response=outcome.as_response(), upstream_ref=outcome.upstream_ref,
            )
            action = FINALIZED_SUCCESS
        self._log(registration, attempt, action)
        return self._result(attempt, action, outcome.upstream_ref)

    def _log(self, registration, attempt, action: str) -> None:
        self.events.log_info(
            registration.id,
            EventType.reconciliation,
            f"Attempt {attempt.id} ({attempt.attempt_type}) {action}",
            {"attempt_id": attempt.id, "subject": attempt.subject, "action": action},
        )

    @staticmethod
    def _result(attempt: ComplianceAttempt, action: str, detail: str | None = None) -> ReconcileResult:
        return ReconcileResult(
            attempt_id=attempt.id,
            attempt_type=attempt.attempt_type,
            subject=attempt.subject,
            action=action,
            detail=detail,
        )
