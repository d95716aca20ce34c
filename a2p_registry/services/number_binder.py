"""Phone-number selection, claims and assignment to a registered campaign.

A number may belong to at most one active registration. Ownership is a
PhoneNumberClaim row keyed by the number: taking it is an INSERT (the
primary key rejects a second owner) and taking it over from an abandoned
or rejected registration is an UPDATE conditional on the claim's version.

Per-number state lives on RegistrationNumber:

    selected -> submitted -> registered
                          -> failed      (upstream refused, or pre-checks failed)
                          -> selected    (transient failure, retry later)

The selected -> submitted move is itself a conditional update and acts as
the dispatch lock for the number.
"""

import logging
from dataclasses import dataclass

from sqlalchemy import delete, insert, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from a2p_registry.db.models import (
    A2PCampaign,
    A2PRegistration,
    AttemptStatus,
    AttemptType,
    ComplianceAttempt,
    EventType,
    NumberStatus,
    PhoneNumberClaim,
    RegistrationNumber,
    SubEntityStatus,
    utc_now_iso,
)
from a2p_registry.errors import (
    ConflictError,
    NumberAlreadyBoundError,
    ReconciliationRequired,
    ValidationError,
)
from a2p_registry.services.attempt_log import AttemptLog
from a2p_registry.services.event_log import EventLog
from a2p_registry.services.gateway_client import ComplianceGatewayClient, GatewayOutcome
from a2p_registry.services.inventory import PhoneNumberInventory
from a2p_registry.services.validation import normalize_e164, validate_phone_numbers

logger = logging.getLogger(__name__)


@dataclass
class BindResult:
    """What happened to one number in a bind pass."""

    phone_number: str
    status: str
    error_code: str | None = None
    error_message: str | None = None

    @property
    def is_retriable(self) -> bool:
        return self.status == NumberStatus.selected.value and self.error_code is not None


class NumberBinder:
    """Selects, claims and assigns phone numbers for registrations.

    Attributes:
        db: SQLAlchemy session.
        gateway: Compliance API client.
        inventory: Tenant number inventory.
    """

    def __init__(
        self,
        db: Session,
        gateway: ComplianceGatewayClient,
        inventory: PhoneNumberInventory,
        attempt_log: AttemptLog,
        event_log: EventLog,
    ) -> None:
        self.db = db
        self.gateway = gateway
        self.inventory = inventory
        self.attempts = attempt_log
        self.events = event_log

    # =========================================================================
    # Selection
    # =========================================================================

    def tenant_numbers(self, tenant_id: str) -> set[str]:
        """The tenant's inventory, normalized to E.164. Malformed entries are skipped."""
        numbers = set()
        for raw in self.inventory.list_available_numbers(tenant_id):
            try:
                numbers.add(normalize_e164(raw))
            except ValueError:
                logger.warning("Inventory returned malformed number %r", raw)
        return numbers

    def select_numbers(
        self, registration: A2PRegistration, numbers: list[str]
    ) -> list[RegistrationNumber]:
        """Replace the registration's selection with the given numbers.

        Numbers already in the selection keep their state. Numbers dropped
        from the selection are removed and their claims released.

        Raises:
            ValidationError: A number is malformed (E-1003) or not owned by
                the tenant (E-1005).
            NumberAlreadyBoundError: Another active registration holds a number.
            ConflictError: A dropped number is already submitted or registered.
        """
        wanted = validate_phone_numbers(numbers)
        owned = self.tenant_numbers(registration.tenant_id)
        missing = [n for n in wanted if n not in owned]
        if missing:
            raise ValidationError(
                f"Not in the tenant's phone-number inventory: {', '.join(missing)}",
                {n: "not in inventory" for n in missing},
                code="E-1005",
            )

        for number in wanted:
            owner = self._active_owner(number)
            if owner is not None and owner != registration.id:
                raise NumberAlreadyBoundError(number, owner)

        existing = {row.phone_number: row for row in self._rows(registration.id)}
        dropped = [existing[n] for n in existing if n not in wanted]
        locked = [
            row.phone_number
            for row in dropped
            if row.status in (NumberStatus.submitted.value, NumberStatus.registered.value)
        ]
        if locked:
            raise ConflictError(
                f"Cannot deselect numbers already sent upstream: {', '.join(locked)}"
            )

        for row in dropped:
            self.db.delete(row)
            self._release(registration.id, row.phone_number)
        for number in wanted:
            if number not in existing:
                self.db.add(
                    RegistrationNumber(
                        registration_id=registration.id,
                        phone_number=number,
                        status=NumberStatus.selected.value,
                    )
                )
        self.db.commit()
        logger.info(
            "Registration %s selection: %d number(s), %d dropped",
            registration.id, len(wanted), len(dropped),
        )
        return self._rows(registration.id)

    def remove_numbers(self, registration: A2PRegistration, numbers: list[str]) -> list[str]:
        """Remove numbers from the selection and release their claims.

        Returns:
            The numbers actually removed.

        Raises:
            ConflictError: A number is already submitted or registered upstream.
        """
        targets = validate_phone_numbers(numbers)
        rows = {row.phone_number: row for row in self._rows(registration.id)}
        locked = [
            n for n in targets
            if n in rows
            and rows[n].status in (NumberStatus.submitted.value, NumberStatus.registered.value)
        ]
        if locked:
            raise ConflictError(
                f"Cannot remove numbers already sent upstream: {', '.join(locked)}"
            )

        removed = []
        for number in targets:
            row = rows.get(number)
            if row is None:
                continue
            self.db.delete(row)
            self._release(registration.id, number)
            removed.append(number)
        self.db.commit()
        return removed

    # =========================================================================
    # Claims
    # =========================================================================

    def claim_number(self, registration: A2PRegistration, phone_number: str) -> None:
        """Take ownership of a number for this registration.

        Raises:
            NumberAlreadyBoundError: An active registration owns the number.
        """
        # Core INSERT so the primary key, not the identity map, decides
        try:
            self.db.execute(
                insert(PhoneNumberClaim).values(
                    phone_number=phone_number,
                    registration_id=registration.id,
                    tenant_id=registration.tenant_id,
                    version=1,
                    claimed_at=utc_now_iso(),
                )
            )
            self.db.commit()
            return
        except IntegrityError:
            self.db.rollback()

        current = self.db.get(PhoneNumberClaim, phone_number, populate_existing=True)
        if current is None:
            # Released between our insert and read; try once more from scratch
            return self.claim_number(registration, phone_number)
        if current.registration_id == registration.id:
            return
        if self._owner_is_active(current.registration_id, phone_number):
            raise NumberAlreadyBoundError(phone_number, current.registration_id)

        result = self.db.execute(
            update(PhoneNumberClaim)
            .where(
                PhoneNumberClaim.phone_number == phone_number,
                PhoneNumberClaim.version == current.version,
            )
            .values(
                registration_id=registration.id,
                tenant_id=registration.tenant_id,
                version=current.version + 1,
                claimed_at=utc_now_iso(),
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        if result.rowcount != 1:
            # Someone else took it over first
            winner = self.db.get(PhoneNumberClaim, phone_number, populate_existing=True)
            owner = winner.registration_id if winner else None
            if owner != registration.id:
                raise NumberAlreadyBoundError(phone_number, owner)
        logger.info(
            "Number %s claim transferred from %s to %s",
            phone_number, current.registration_id, registration.id,
        )

    def release_claims(self, registration: A2PRegistration) -> int:
        """Drop every claim this registration holds. Returns the count."""
        result = self.db.execute(
            delete(PhoneNumberClaim).where(
                PhoneNumberClaim.registration_id == registration.id
            )
        )
        self.db.commit()
        return result.rowcount

    # =========================================================================
    # Binding
    # =========================================================================

    def bind_numbers(
        self,
        registration: A2PRegistration,
        campaign: A2PCampaign,
        numbers: list[str] | None = None,
    ) -> list[BindResult]:
        """Assign numbers to the registration's campaign upstream.

        With no explicit list every selected number is attempted. Explicit
        numbers not yet selected are added; failed ones are reset and tried
        again. Each number is independent: one failure does not stop the rest.

        Returns:
            One BindResult per number attempted or skipped.
        """
        rows = {row.phone_number: row for row in self._rows(registration.id)}
        results: list[BindResult] = []

        if numbers is None:
            targets = [r for r in rows.values() if r.status == NumberStatus.selected.value]
        else:
            targets = []
            for number in validate_phone_numbers(numbers):
                row = rows.get(number)
                if row is None:
                    row = RegistrationNumber(
                        registration_id=registration.id,
                        phone_number=number,
                        status=NumberStatus.selected.value,
                    )
                    self.db.add(row)
                    self.db.commit()
                elif row.status == NumberStatus.failed.value:
                    self._set_state(row, NumberStatus.failed, NumberStatus.selected,
                                    error_code=None, error_message=None)
                elif row.status != NumberStatus.selected.value:
                    results.append(BindResult(number, row.status))
                    continue
                targets.append(row)

        if not targets:
            return results

        owned = self.tenant_numbers(registration.tenant_id)
        for row in targets:
            results.append(self._bind_one(registration, campaign, row, owned))
        return results

    def _bind_one(
        self,
        registration: A2PRegistration,
        campaign: A2PCampaign,
        row: RegistrationNumber,
        owned: set[str],
    ) -> BindResult:
        number = row.phone_number

        if number not in owned:
            message = "Number is not in the tenant's phone-number inventory"
            self._set_state(row, NumberStatus.selected, NumberStatus.failed,
                            error_code="E-1005", error_message=message)
            return BindResult(number, NumberStatus.failed.value, "E-1005", message)

        try:
            self.claim_number(registration, number)
        except NumberAlreadyBoundError as e:
            self._set_state(row, NumberStatus.selected, NumberStatus.failed,
                            error_code="E-2002", error_message=str(e))
            self.events.log_warning(
                registration.id,
                EventType.number_binding,
                f"Number {number} is already bound to another registration",
                {"phone_number": number, "owner": e.owner_registration_id},
            )
            return BindResult(number, NumberStatus.failed.value, "E-2002", str(e))

        if not self._set_state(row, NumberStatus.selected, NumberStatus.submitted):
            logger.info("Number %s is being bound by another caller", number)
            return BindResult(number, self._current_status(row))

        try:
            attempt = self.attempts.record_attempt_start(
                registration,
                AttemptType.phone_assignment,
                number,
                {"phone_number": number, "number_id": row.id, "campaign_ref": campaign.upstream_ref},
            )
        except ReconciliationRequired:
            self._set_state(row, NumberStatus.submitted, NumberStatus.selected)
            raise

        outcome = self.gateway.assign_number(
            number, campaign.upstream_ref, idempotency_key=attempt.idempotency_key
        )
        return self.record_assignment(registration, row, attempt, outcome)

    def record_assignment(
        self,
        registration: A2PRegistration,
        row: RegistrationNumber,
        attempt: ComplianceAttempt,
        outcome: GatewayOutcome,
    ) -> BindResult:
        """Apply an assignment outcome to a submitted number and finalize its attempt."""
        number = row.phone_number

        if outcome.is_accepted and outcome.upstream_status != SubEntityStatus.rejected:
            self._set_state(row, NumberStatus.submitted, NumberStatus.registered,
                            upstream_ref=outcome.upstream_ref,
                            error_code=None, error_message=None)
            self.attempts.record_attempt_end(
                attempt.id, AttemptStatus.success,
                response=outcome.as_response(), upstream_ref=outcome.upstream_ref,
            )
            self.events.log_info(
                registration.id, EventType.number_binding,
                f"Number {number} assigned to campaign",
                {"phone_number": number, "upstream_ref": outcome.upstream_ref},
            )
            return BindResult(number, NumberStatus.registered.value)

        if outcome.is_rejected or outcome.is_accepted:
            code = outcome.error_code or "E-3003"
            reason = outcome.reason or "rejected by upstream"
            self._set_state(row, NumberStatus.submitted, NumberStatus.failed,
                            error_code=code, error_message=reason)
            self._release(registration.id, number)
            self.db.commit()
            self.attempts.record_attempt_end(
                attempt.id, AttemptStatus.error, response=outcome.as_response(),
                error_code=code, error_message=reason,
            )
            self.events.log_gateway_error(
                registration.id, code, f"Number {number} rejected: {reason}",
                {"phone_number": number, "attempt_id": attempt.id},
            )
            return BindResult(number, NumberStatus.failed.value, code, reason)

        code = outcome.error_code or "E-3001"
        reason = outcome.reason or "no response"
        self._set_state(row, NumberStatus.submitted, NumberStatus.selected,
                        error_code=code, error_message=reason)
        self.attempts.record_attempt_end(
            attempt.id, AttemptStatus.error, response=outcome.as_response(),
            error_code=code, error_message=reason,
        )
        self.events.log_gateway_error(
            registration.id, code, f"Number {number} assignment failed: {reason}",
            {"phone_number": number, "attempt_id": attempt.id},
        )
        return BindResult(number, NumberStatus.selected.value, code, reason)

    def requeue(self, registration_id: str, phone_number: str, error_code: str, message: str) -> None:
        """Return a submitted number to selected after its attempt expired."""
        row = self.get_number(registration_id, phone_number)
        if row is not None:
            self._set_state(row, NumberStatus.submitted, NumberStatus.selected,
                            error_code=error_code, error_message=message)

    # =========================================================================
    # Queries
    # =========================================================================

    def get_number(self, registration_id: str, phone_number: str) -> RegistrationNumber | None:
        return (
            self.db.query(RegistrationNumber)
            .filter(
                RegistrationNumber.registration_id == registration_id,
                RegistrationNumber.phone_number == phone_number,
            )
            .populate_existing()
            .first()
        )

    def numbers_for(self, registration_id: str) -> list[RegistrationNumber]:
        return self._rows(registration_id)

    def _rows(self, registration_id: str) -> list[RegistrationNumber]:
        return (
            self.db.query(RegistrationNumber)
            .filter(RegistrationNumber.registration_id == registration_id)
            .order_by(RegistrationNumber.created_at.asc())
            .populate_existing()
            .all()
        )

    def _current_status(self, row: RegistrationNumber) -> str:
        self.db.refresh(row)
        return row.status

    def _set_state(
        self,
        row: RegistrationNumber,
        expected: NumberStatus,
        target: NumberStatus,
        **values,
    ) -> bool:
        """Conditional status move; False if the row was not in the expected state."""
        result = self.db.execute(
            update(RegistrationNumber)
            .where(
                RegistrationNumber.id == row.id,
                RegistrationNumber.status == expected.value,
            )
            .values(status=target.value, updated_at=utc_now_iso(), **values)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        self.db.refresh(row)
        return result.rowcount == 1

    def _release(self, registration_id: str, phone_number: str) -> None:
        self.db.execute(
            delete(PhoneNumberClaim).where(
                PhoneNumberClaim.phone_number == phone_number,
                PhoneNumberClaim.registration_id == registration_id,
            )
        )

    def _active_owner(self, phone_number: str) -> str | None:
        claim = self.db.get(PhoneNumberClaim, phone_number, populate_existing=True)
        if claim is None:
            return None
        if self._owner_is_active(claim.registration_id, phone_number):
            return claim.registration_id
        return None

    def _owner_is_active(self, registration_id: str, phone_number: str) -> bool:
        """A claim counts while its registration is active and still wants the number."""
        owner = self.db.get(A2PRegistration, registration_id, populate_existing=True)
        if owner is None or not owner.is_active:
            return False
        row = self.get_number(registration_id, phone_number)
        return row is not None and row.status != NumberStatus.failed.value


