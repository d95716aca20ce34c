"""Registration lifecycle orchestrator.

Drives one tenant's A2P 10DLC registration through

    draft -> brand_pending -> campaign_pending -> submitted -> approved | rejected

Every entry point is safe to call repeatedly and concurrently. Status and
current_step are written only through RegistrationStore.compare_and_set;
a writer that loses a race re-reads and re-evaluates. Before anything is
dispatched, pending attempts are reconciled against the upstream so a
crash between dispatch and bookkeeping never causes a duplicate submission.

Example:
    orchestrator = RegistrationOrchestrator(db, gateway, inventory)
    registration = orchestrator.start_registration("tenant-1", "user-1")
    orchestrator.save_step(registration.id, 1, brand_form, "user-1")
    orchestrator.advance(registration.id)
"""

import logging
from typing import Any, Callable

from sqlalchemy.orm import Session

from a2p_registry.cli.config import OrchestratorConfig
from a2p_registry.db.models import (
    A2PBrand,
    A2PRegistration,
    AttemptStatus,
    ComplianceAttempt,
    EventType,
    NumberStatus,
    RegistrationEvent,
    RegistrationNumber,
    RegistrationStatus,
    SubEntityStatus,
    utc_now_iso,
)
from a2p_registry.errors import (
    CancellationNotAllowed,
    ConflictError,
    InvalidStateTransition,
    NotFoundError,
    ReconciliationRequired,
    RetriableGatewayError,
    StaleStateError,
    ValidationError,
)
from a2p_registry.services.attempt_log import AttemptLog
from a2p_registry.services.event_log import EventLog
from a2p_registry.services.gateway_client import (
    ComplianceGatewayClient,
    normalize_upstream_status,
)
from a2p_registry.services.inventory import PhoneNumberInventory
from a2p_registry.services.number_binder import BindResult, NumberBinder
from a2p_registry.services.reconciliation import (
    FINALIZED_ERROR,
    FINALIZED_SUCCESS,
    Reconciler,
    ReconcileReport,
)
from a2p_registry.services.registrar import ComplianceRegistrar
from a2p_registry.services.state_store import RegistrationStore, is_at_or_beyond
from a2p_registry.services.validation import (
    validate_brand,
    validate_campaign,
    validate_compliance,
)

logger = logging.getLogger(__name__)

# Wizard steps
STEP_BRAND = 1
STEP_CAMPAIGN = 2
STEP_PHONE_NUMBERS = 3
STEP_COMPLIANCE = 4
STEP_REVIEW = 5
WIZARD_STEPS = (STEP_BRAND, STEP_CAMPAIGN, STEP_PHONE_NUMBERS, STEP_COMPLIANCE, STEP_REVIEW)


class RegistrationOrchestrator:
    """Owns registration status and current_step.

    Attributes:
        db: SQLAlchemy session shared by every collaborator.
        store: Version-checked registration store.
        attempts: Attempt log.
        events: Registration audit trail.
        registrar: Brand and campaign submission.
        binder: Phone-number selection and assignment.
        reconciler: Pending-attempt resolution.
    """

    def __init__(
        self,
        db: Session,
        gateway: ComplianceGatewayClient,
        inventory: PhoneNumberInventory,
        settings: OrchestratorConfig | None = None,
        clock: Callable[[], Any] | None = None,
    ) -> None:
        self.db = db
        self.settings = settings or OrchestratorConfig()
        self.store = RegistrationStore(db)
        self.attempts = AttemptLog(db)
        self.events = EventLog(db)
        self.registrar = ComplianceRegistrar(db, gateway, self.store, self.attempts, self.events)
        self.binder = NumberBinder(db, gateway, inventory, self.attempts, self.events)
        self.reconciler = Reconciler(
            db,
            gateway,
            self.attempts,
            self.events,
            self.registrar,
            self.binder,
            timeout_seconds=self.settings.reconciliation_timeout_seconds,
            clock=clock,
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def advance(self, registration_id: str) -> A2PRegistration:
        """Perform the next outstanding unit of work and persist the new status.

        Idempotent: a registration whose current step is already done is
        only re-checked. Lost version races are retried from a fresh read.

        Returns:
            The registration after the work.

        Raises:
            NotFoundError: Unknown registration.
            ValidationError: The payload for the next step is incomplete.
            ReconciliationRequired: A previous attempt is still unresolved.
            RetriableGatewayError: Upstream unavailable; status unchanged.
            FatalGatewayError: Upstream rejected the submission.
            StaleStateError: Lost every version race.
        """
        last_error: StaleStateError | None = None
        for _ in range(self.settings.max_cas_retries):
            registration = self.store.get(registration_id)
            try:
                return self._advance_once(registration)
            except StaleStateError as e:
                last_error = e
                logger.info("advance(%s) lost a version race; re-reading", registration_id)
        raise last_error

    def _advance_once(self, registration: A2PRegistration) -> A2PRegistration:
        if registration.abandoned_at is not None:
            raise ConflictError(f"Registration '{registration.id}' has been abandoned")

        status = RegistrationStatus(registration.status)
        if status in (RegistrationStatus.submitted, RegistrationStatus.approved,
                      RegistrationStatus.rejected):
            return registration

        report = self.reconciler.require_clean(registration)
        if any(r.action in (FINALIZED_SUCCESS, FINALIZED_ERROR) for r in report.results):
            # Finishing an interrupted attempt is this call's unit of work
            return self._settle_transitions(registration)

        registration = self.store.get(registration.id)
        status = RegistrationStatus(registration.status)

        if status == RegistrationStatus.draft:
            # Link the brand while still a draft; a refusal here keeps it abandonable
            payload = validate_brand(registration.step_payload("brand"))
            self.registrar.prepare_brand(registration, payload)
            registration = self.store.get(registration.id)
            registration = self.store.transition(registration, RegistrationStatus.brand_pending)
            self.events.log_state_change(
                registration.id, RegistrationStatus.draft.value,
                RegistrationStatus.brand_pending.value,
            )
            status = RegistrationStatus.brand_pending

        if status == RegistrationStatus.brand_pending:
            self.registrar.submit_brand(registration)
            return self._settle_transitions(registration)

        if status == RegistrationStatus.campaign_pending:
            campaign = self.store.get_campaign(registration.campaign_id)
            if (
                campaign is None
                or not campaign.upstream_ref
                or campaign.status == SubEntityStatus.rejected.value
            ):
                brand = self.store.get_brand(registration.brand_id)
                if brand is not None and brand.status == SubEntityStatus.rejected.value:
                    # Brand rejected after acceptance: the edited brand goes first
                    self.registrar.submit_brand(registration)
                    return self._settle_transitions(registration)
                self.registrar.submit_campaign(registration)
                return self.store.get(registration.id)
            return self._bind_and_submit(registration)

        return registration

    def _bind_and_submit(self, registration: A2PRegistration) -> A2PRegistration:
        """Bind selected numbers, then move to submitted when everything is in place."""
        validate_compliance(registration.step_payload("compliance"))
        rows = self.binder.numbers_for(registration.id)
        if not rows:
            raise ValidationError(
                "No phone numbers selected", {"phone_numbers": "missing"}, code="E-1003"
            )

        campaign = self.store.get_campaign(registration.campaign_id)
        results: list[BindResult] = []
        if any(r.status == NumberStatus.selected.value for r in rows):
            results = self.binder.bind_numbers(registration, campaign)

        registration = self._try_mark_submitted(registration)
        retriable = [r for r in results if r.is_retriable]
        if retriable and registration.status != RegistrationStatus.submitted.value:
            first = retriable[0]
            raise RetriableGatewayError(
                f"{len(retriable)} number assignment(s) failed transiently: {first.error_message}",
                code=first.error_code or "E-3001",
            )
        return registration

    def _settle_transitions(self, registration: A2PRegistration) -> A2PRegistration:
        """Apply whatever forward transitions the sub-entities now allow."""
        registration = self.store.get(registration.id)
        if registration.status == RegistrationStatus.brand_pending.value:
            brand = self.store.get_brand(registration.brand_id)
            if (
                brand is not None
                and brand.upstream_ref
                and brand.status != SubEntityStatus.rejected.value
            ):
                registration = self._move(
                    registration,
                    RegistrationStatus.brand_pending,
                    RegistrationStatus.campaign_pending,
                )
            return registration
        if registration.status == RegistrationStatus.campaign_pending.value:
            return self._try_mark_submitted(registration)
        if registration.status == RegistrationStatus.submitted.value:
            return self._evaluate_terminal(registration)
        return registration

    def _try_mark_submitted(self, registration: A2PRegistration) -> A2PRegistration:
        """campaign_pending -> submitted once the campaign has a reference,
        every selected number is registered, and compliance is attested."""
        registration = self.store.get(registration.id)
        if registration.status != RegistrationStatus.campaign_pending.value:
            return registration

        campaign = self.store.get_campaign(registration.campaign_id)
        if (
            campaign is None
            or not campaign.upstream_ref
            or campaign.status == SubEntityStatus.rejected.value
        ):
            return registration

        rows = self.binder.numbers_for(registration.id)
        if not rows or any(r.status != NumberStatus.registered.value for r in rows):
            return registration

        try:
            validate_compliance(registration.step_payload("compliance"))
        except ValidationError:
            return registration

        return self._move(
            registration,
            RegistrationStatus.campaign_pending,
            RegistrationStatus.submitted,
            submitted_at=utc_now_iso(),
        )

    def _evaluate_terminal(self, registration: A2PRegistration) -> A2PRegistration:
        """submitted -> approved when brand and campaign are both approved,
        submitted -> rejected when either is rejected."""
        registration = self.store.get(registration.id)
        if registration.status != RegistrationStatus.submitted.value:
            return registration

        brand = self.store.get_brand(registration.brand_id)
        campaign = self.store.get_campaign(registration.campaign_id)
        statuses = {e.status for e in (brand, campaign) if e is not None}

        if SubEntityStatus.rejected.value in statuses:
            return self._move(
                registration, RegistrationStatus.submitted, RegistrationStatus.rejected,
                rejected_at=utc_now_iso(),
            )
        if (
            brand is not None and campaign is not None
            and statuses == {SubEntityStatus.approved.value}
        ):
            return self._move(
                registration, RegistrationStatus.submitted, RegistrationStatus.approved,
                approved_at=utc_now_iso(),
            )
        return registration

    def _move(
        self,
        registration: A2PRegistration,
        source: RegistrationStatus,
        target: RegistrationStatus,
        **values: Any,
    ) -> A2PRegistration:
        """Version-checked transition that tolerates a concurrent writer doing it first."""
        for _ in range(self.settings.max_cas_retries):
            registration = self.store.get(registration.id)
            if is_at_or_beyond(registration.status, target) or registration.status != source.value:
                return registration
            try:
                updated = self.store.transition(registration, target, **values)
            except StaleStateError:
                continue
            self.events.log_state_change(registration.id, source.value, target.value)
            return updated
        raise StaleStateError(registration.id, registration.version)

    # =========================================================================
    # Wizard
    # =========================================================================

    def start_registration(self, tenant_id: str, acting_user_id: str) -> A2PRegistration:
        """Resume the tenant's active registration or start a new draft."""
        existing = self.store.find_active(tenant_id)
        if existing is not None:
            return existing
        registration = self.store.create(tenant_id, acting_user_id)
        self.events.log_info(
            registration.id, EventType.state_change, "Registration started",
            {"tenant_id": tenant_id, "user": acting_user_id},
        )
        return registration

    def save_step(
        self,
        registration_id: str,
        step: int,
        data: Any,
        acting_user_id: str,
        expected_version: int | None = None,
    ) -> A2PRegistration:
        """Validate and persist one wizard step.

        Args:
            registration_id: Registration to update.
            step: 1 brand, 2 campaign, 3 phone numbers, 4 compliance, 5 review.
            data: Raw step payload from the wizard.
            acting_user_id: User submitting the step.
            expected_version: Version the client last saw. When given, a
                mismatch raises StaleStateError instead of retrying.

        Raises:
            ValidationError: Payload failed local checks.
            ConflictError: The step can no longer be edited.
            StaleStateError: expected_version is out of date.
        """
        if step not in WIZARD_STEPS:
            raise ValidationError(f"Unknown wizard step {step}", {"step": "invalid"})

        last_error: StaleStateError | None = None
        for _ in range(self.settings.max_cas_retries):
            registration = self.store.get(registration_id)
            if expected_version is not None and registration.version != expected_version:
                raise StaleStateError(registration_id, expected_version)
            self._ensure_editable(registration)

            values = self._step_values(registration, step, data)
            try:
                registration = self.store.compare_and_set(
                    registration, current_step=step, completed_by=acting_user_id, **values
                )
            except StaleStateError as e:
                if expected_version is not None:
                    raise
                last_error = e
                continue

            self.events.log_info(
                registration.id, EventType.step_saved, f"Step {step} saved",
                {"step": step, "user": acting_user_id},
            )
            return registration
        raise last_error

    def _ensure_editable(self, registration: A2PRegistration) -> None:
        if registration.abandoned_at is not None:
            raise ConflictError(f"Registration '{registration.id}' has been abandoned")
        if is_at_or_beyond(registration.status, RegistrationStatus.submitted):
            raise ConflictError(
                f"Registration '{registration.id}' is {registration.status}; "
                "its details can no longer be edited"
            )

    def _step_values(self, registration: A2PRegistration, step: int, data: Any) -> dict[str, Any]:
        if step == STEP_BRAND:
            brand = self.store.get_brand(registration.brand_id)
            brand_rejected = brand is not None and brand.status == SubEntityStatus.rejected.value
            if registration.status != RegistrationStatus.draft.value and not brand_rejected:
                raise ConflictError("Brand details can no longer be edited")
            validate_brand(data)
            return {"brand_data": data}

        if step == STEP_CAMPAIGN:
            campaign = self.store.get_campaign(registration.campaign_id)
            if (
                campaign is not None
                and campaign.upstream_ref
                and campaign.status != SubEntityStatus.rejected.value
            ):
                raise ConflictError("Campaign details can no longer be edited")
            validate_campaign(data)
            return {"campaign_data": data}

        if step == STEP_PHONE_NUMBERS:
            raw = data.get("phoneNumbers", data.get("phone_numbers")) if isinstance(data, dict) else data
            rows = self.binder.select_numbers(registration, raw)
            return {"phone_number_data": {"phone_numbers": [r.phone_number for r in rows]}}

        if step == STEP_COMPLIANCE:
            validate_compliance(data)
            return {"compliance_data": data}

        # Review: every earlier step must hold up
        brand = self.store.get_brand(registration.brand_id)
        if brand is None or not brand.upstream_ref:
            validate_brand(registration.step_payload("brand"))
        validate_campaign(registration.step_payload("campaign"))
        validate_compliance(registration.step_payload("compliance"))
        if not self.binder.numbers_for(registration.id):
            raise ValidationError(
                "No phone numbers selected", {"phone_numbers": "missing"}, code="E-1003"
            )
        return {}

    def abandon(self, registration_id: str) -> A2PRegistration:
        """Abandon a draft. Already-abandoned drafts are returned unchanged.

        Raises:
            CancellationNotAllowed: Anything has been dispatched already.
        """
        for _ in range(self.settings.max_cas_retries):
            registration = self.store.get(registration_id)
            if registration.abandoned_at is not None:
                return registration
            if registration.status != RegistrationStatus.draft.value:
                raise CancellationNotAllowed(registration.id, registration.status)
            try:
                registration = self.store.compare_and_set(
                    registration, abandoned_at=utc_now_iso()
                )
            except StaleStateError:
                continue

            released = self.binder.release_claims(registration)
            self.events.log_info(
                registration.id, EventType.state_change, "Registration abandoned",
                {"released_claims": released},
            )
            logger.info("Registration %s abandoned", registration.id)
            return registration
        raise StaleStateError(registration_id, registration.version)

    def resubmit(self, registration_id: str, acting_user_id: str) -> A2PRegistration:
        """Start a new draft from a rejected registration's stored forms.

        Returns the existing resubmission if one was already made.

        Raises:
            InvalidStateTransition: The registration is not rejected.
            ConflictError: The tenant already has another active registration.
        """
        old = self.store.get(registration_id)
        if old.status != RegistrationStatus.rejected.value:
            raise InvalidStateTransition(old.status, "resubmitted")

        existing = self.store.find_resubmission(old.id)
        if existing is not None:
            return existing

        active = self.store.find_active(old.tenant_id)
        if active is not None:
            raise ConflictError(
                f"Tenant '{old.tenant_id}' already has active registration '{active.id}'"
            )

        brand = self.store.get_brand(old.brand_id)
        reuse_brand = brand.id if brand and brand.status != SubEntityStatus.rejected.value else None
        payloads = {
            name: old.step_payload(name)
            for name in ("brand", "campaign", "phone_number", "compliance")
        }
        new = self.store.create(
            old.tenant_id,
            acting_user_id,
            resubmitted_from_id=old.id,
            brand_id=reuse_brand,
            payloads=payloads,
        )
        for row in self.binder.numbers_for(old.id):
            self.db.add(
                RegistrationNumber(
                    registration_id=new.id,
                    phone_number=row.phone_number,
                    status=NumberStatus.selected.value,
                )
            )
        self.db.commit()

        self.events.log_info(
            new.id, EventType.state_change, f"Resubmission of rejected registration {old.id}",
            {"resubmitted_from": old.id, "reused_brand": reuse_brand},
        )
        logger.info("Registration %s resubmitted as %s", old.id, new.id)
        return new

    # =========================================================================
    # Numbers
    # =========================================================================

    def bind_numbers(
        self, registration_id: str, numbers: list[str] | None = None
    ) -> tuple[A2PRegistration, list[BindResult]]:
        """Assign numbers to the registration's campaign.

        Raises:
            ConflictError: The campaign has no upstream reference yet.
            ReconciliationRequired: An earlier attempt is unresolved.
        """
        registration = self.store.get(registration_id)
        if registration.status != RegistrationStatus.campaign_pending.value:
            raise ConflictError(
                f"Numbers can be bound only while campaign_pending (is {registration.status})"
            )
        campaign = self.store.get_campaign(registration.campaign_id)
        if campaign is None or not campaign.upstream_ref:
            raise ConflictError("Campaign has no upstream reference yet")

        self.reconciler.require_clean(registration)
        results = self.binder.bind_numbers(registration, campaign, numbers)
        if numbers:
            self._sync_selection(registration.id)
        return self._try_mark_submitted(registration), results

    def remove_numbers(
        self, registration_id: str, numbers: list[str]
    ) -> tuple[A2PRegistration, list[str]]:
        """Drop numbers (typically failed ones) from the selection."""
        registration = self.store.get(registration_id)
        self._ensure_editable(registration)
        removed = self.binder.remove_numbers(registration, numbers)
        self._sync_selection(registration.id)
        return self._try_mark_submitted(registration), removed

    def _sync_selection(self, registration_id: str) -> None:
        for _ in range(self.settings.max_cas_retries):
            registration = self.store.get(registration_id)
            current = [r.phone_number for r in self.binder.numbers_for(registration_id)]
            try:
                self.store.compare_and_set(
                    registration, phone_number_data={"phone_numbers": current}
                )
                return
            except StaleStateError:
                continue

    # =========================================================================
    # Upstream status
    # =========================================================================

    def poll_status(self, registration_id: str) -> A2PRegistration:
        """Check pending brand/campaign status upstream and apply terminal transitions."""
        registration = self.store.get(registration_id)
        if registration.abandoned_at is not None or registration.is_terminal:
            return registration

        for entity in (
            self.store.get_brand(registration.brand_id),
            self.store.get_campaign(registration.campaign_id),
        ):
            if entity is None or not entity.upstream_ref:
                continue
            if entity.status != SubEntityStatus.pending.value:
                continue
            try:
                self.registrar.refresh_status(registration, entity)
            except ReconciliationRequired as e:
                logger.info("Status check for %s already in flight: %s", entity.upstream_ref, e)

        return self._settle_transitions(registration)

    def apply_upstream_status(
        self, upstream_ref: str, status: str, reason: str | None = None
    ) -> dict[str, Any]:
        """Apply a pushed status for a brand or campaign reference.

        Duplicate deliveries are no-ops: a final sub-entity is never changed.

        Raises:
            NotFoundError: No brand or campaign has this reference.
        """
        entity = self.registrar.find_by_upstream_ref(upstream_ref)
        if entity is None:
            raise NotFoundError("Upstream reference", upstream_ref)

        normalized = normalize_upstream_status(status)
        changed = self.registrar.apply_status(entity, normalized, reason)

        column = A2PRegistration.brand_id if isinstance(entity, A2PBrand) else A2PRegistration.campaign_id
        linked = self.db.query(A2PRegistration).filter(column == entity.id).all()
        for registration in linked:
            self.events.log_info(
                registration.id,
                EventType.upstream_status,
                f"Upstream status for {upstream_ref}: {normalized.value}",
                {"upstream_ref": upstream_ref, "status": status, "reason": reason, "changed": changed},
            )
            self._settle_transitions(registration)

        return {
            "upstream_ref": upstream_ref,
            "entity": type(entity).__name__,
            "entity_id": entity.id,
            "status": entity.status,
            "changed": changed,
            "registrations": [r.id for r in linked],
        }

    def force_reconcile(self, registration_id: str) -> ReconcileReport:
        """Operator path: resolve every pending attempt now."""
        registration = self.store.get(registration_id)
        report = self.reconciler.reconcile_registration(registration, force=True)
        self._settle_transitions(registration)
        return report

    # =========================================================================
    # Read models
    # =========================================================================

    def get_registration_status(self, registration_id: str) -> dict[str, Any]:
        """Status projection for the wizard's status display."""
        registration = self.store.get(registration_id)
        brand = self.store.get_brand(registration.brand_id)
        campaign = self.store.get_campaign(registration.campaign_id)

        return {
            "registration_id": registration.id,
            "status": registration.status,
            "current_step": registration.current_step,
            "version": registration.version,
            "abandoned": registration.abandoned_at is not None,
            "brand_status": brand.status if brand else None,
            "brand_ref": brand.upstream_ref if brand else None,
            "campaign_status": campaign.status if campaign else None,
            "campaign_ref": campaign.upstream_ref if campaign else None,
            "per_number_status": [
                {
                    "phone_number": row.phone_number,
                    "status": row.status,
                    "error_code": row.error_code,
                    "error_message": row.error_message,
                }
                for row in self.binder.numbers_for(registration.id)
            ],
            "last_error": self._last_error(registration.id),
        }

    def _last_error(self, registration_id: str) -> dict[str, Any] | None:
        failed = [
            a for a in self.attempts.latest_by_type(registration_id).values()
            if a.status == AttemptStatus.error.value
        ]
        if not failed:
            return None
        latest = max(failed, key=lambda a: a.completed_at or a.created_at)
        return {
            "attempt_id": latest.id,
            "attempt_type": latest.attempt_type,
            "error_code": latest.error_code,
            "error_message": latest.error_message,
            "at": latest.completed_at,
        }

    def list_attempts(self, registration_id: str) -> list[ComplianceAttempt]:
        registration = self.store.get(registration_id)
        return self.attempts.list_attempts(registration.id)

    def list_events(self, registration_id: str, limit: int = 1000) -> list[RegistrationEvent]:
        registration = self.store.get(registration_id)
        return self.events.get_events(registration.id, limit=limit)
