"""Registration state store with version-checked writes.

Every write to an A2PRegistration goes through compare_and_set(), which
issues ``UPDATE ... WHERE id = :id AND version = :expected`` and bumps the
version. A writer that loses the race gets StaleStateError and must
re-read and re-evaluate rather than overwrite.
"""

import json
import logging
from typing import Any

from sqlalchemy import and_, or_, update
from sqlalchemy.orm import Session

from a2p_registry.db.models import (
    STATUS_RANK,
    TERMINAL_STATUSES,
    A2PBrand,
    A2PCampaign,
    A2PRegistration,
    RegistrationStatus,
    utc_now_iso,
)
from a2p_registry.errors import InvalidStateTransition, NotFoundError, StaleStateError

logger = logging.getLogger(__name__)


# Valid status transitions for the registration lifecycle. Forward only;
# approved/rejected are reachable from submitted alone.
VALID_TRANSITIONS: dict[RegistrationStatus, list[RegistrationStatus]] = {
    RegistrationStatus.draft: [RegistrationStatus.brand_pending],
    RegistrationStatus.brand_pending: [RegistrationStatus.campaign_pending],
    RegistrationStatus.campaign_pending: [RegistrationStatus.submitted],
    RegistrationStatus.submitted: [RegistrationStatus.approved, RegistrationStatus.rejected],
    RegistrationStatus.approved: [],  # terminal
    RegistrationStatus.rejected: [],  # terminal (resubmission spawns a new registration)
}

# Columns the store will write through compare_and_set
_WRITABLE_COLUMNS = frozenset({
    "status", "current_step", "brand_id", "campaign_id", "completed_by",
    "brand_data", "campaign_data", "phone_number_data", "compliance_data",
    "submitted_at", "approved_at", "rejected_at", "abandoned_at",
})


def can_transition(current: RegistrationStatus, target: RegistrationStatus) -> bool:
    """Check whether a status transition is allowed."""
    return target in VALID_TRANSITIONS.get(current, [])


class RegistrationStore:
    """Durable store for A2PRegistration aggregates.

    Attributes:
        db: SQLAlchemy session for database operations.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    # =========================================================================
    # Reads
    # =========================================================================

    def get(self, registration_id: str) -> A2PRegistration:
        """Load a registration with fresh column values.

        Raises:
            NotFoundError: If no registration has this id.
        """
        registration = self.db.get(
            A2PRegistration, registration_id, populate_existing=True
        )
        if registration is None:
            raise NotFoundError("Registration", registration_id)
        return registration

    def find_active(self, tenant_id: str) -> A2PRegistration | None:
        """The tenant's in-progress registration: not abandoned, not terminal."""
        return (
            self.db.query(A2PRegistration)
            .filter(
                A2PRegistration.tenant_id == tenant_id,
                A2PRegistration.abandoned_at.is_(None),
                A2PRegistration.status.notin_([s.value for s in TERMINAL_STATUSES]),
            )
            .order_by(A2PRegistration.created_at.desc())
            .first()
        )

    def find_resubmission(self, registration_id: str) -> A2PRegistration | None:
        return (
            self.db.query(A2PRegistration)
            .filter(A2PRegistration.resubmitted_from_id == registration_id)
            .first()
        )

    def list_for_tenant(self, tenant_id: str, limit: int = 50) -> list[A2PRegistration]:
        return (
            self.db.query(A2PRegistration)
            .filter(A2PRegistration.tenant_id == tenant_id)
            .order_by(A2PRegistration.created_at.desc())
            .limit(limit)
            .all()
        )

    def list_non_terminal(
        self, limit: int = 100, after: tuple[str, str] | None = None
    ) -> list[A2PRegistration]:
        """One page of registrations a status sweep should visit.

        Ordered by (updated_at, id), least recently updated first. Drafts are
        skipped: nothing has been dispatched for them.

        Args:
            limit: Page size.
            after: (updated_at, id) of the last row of the previous page.
        """
        query = self.db.query(A2PRegistration).filter(
            A2PRegistration.abandoned_at.is_(None),
            A2PRegistration.status.in_([
                RegistrationStatus.brand_pending.value,
                RegistrationStatus.campaign_pending.value,
                RegistrationStatus.submitted.value,
            ]),
        )
        if after is not None:
            updated_at, registration_id = after
            query = query.filter(
                or_(
                    A2PRegistration.updated_at > updated_at,
                    and_(
                        A2PRegistration.updated_at == updated_at,
                        A2PRegistration.id > registration_id,
                    ),
                )
            )
        return (
            query.order_by(A2PRegistration.updated_at.asc(), A2PRegistration.id.asc())
            .limit(limit)
            .all()
        )

    def get_brand(self, brand_id: str | None) -> A2PBrand | None:
        if not brand_id:
            return None
        return self.db.get(A2PBrand, brand_id, populate_existing=True)

    def get_campaign(self, campaign_id: str | None) -> A2PCampaign | None:
        if not campaign_id:
            return None
        return self.db.get(A2PCampaign, campaign_id, populate_existing=True)

    # =========================================================================
    # Writes
    # =========================================================================

    def create(
        self,
        tenant_id: str,
        acting_user_id: str,
        resubmitted_from_id: str | None = None,
        brand_id: str | None = None,
        payloads: dict[str, Any] | None = None,
    ) -> A2PRegistration:
        """Create a draft registration at step 0.

        Args:
            tenant_id: Owning tenant.
            acting_user_id: User starting the wizard.
            resubmitted_from_id: Rejected registration this one replaces.
            brand_id: Existing active brand to link.
            payloads: Step payloads to copy, keyed brand/campaign/phone_number/compliance.
        """
        now = utc_now_iso()
        payloads = payloads or {}
        registration = A2PRegistration(
            tenant_id=tenant_id,
            status=RegistrationStatus.draft.value,
            current_step=0,
            completed_by=acting_user_id,
            brand_id=brand_id,
            resubmitted_from_id=resubmitted_from_id,
            brand_data=_dumps(payloads.get("brand")),
            campaign_data=_dumps(payloads.get("campaign")),
            phone_number_data=_dumps(payloads.get("phone_number")),
            compliance_data=_dumps(payloads.get("compliance")),
            version=1,
            created_at=now,
            updated_at=now,
        )
        self.db.add(registration)
        self.db.commit()
        self.db.refresh(registration)
        logger.info(
            "Created registration %s for tenant %s", registration.id, tenant_id
        )
        return registration

    def compare_and_set(
        self, registration: A2PRegistration, **values: Any
    ) -> A2PRegistration:
        """Write columns only if nobody else has written since this read.

        Args:
            registration: The registration as last read.
            **values: Columns to write. Dict payload values are JSON-encoded.

        Returns:
            The registration re-read after the write.

        Raises:
            StaleStateError: The stored version differs from the one read.
        """
        unknown = set(values) - _WRITABLE_COLUMNS
        if unknown:
            raise ValueError(f"Not writable through the store: {sorted(unknown)}")

        expected_version = registration.version
        columns = {
            key: (_dumps(value) if key.endswith("_data") else value)
            for key, value in values.items()
        }
        columns["version"] = expected_version + 1
        columns["updated_at"] = utc_now_iso()

        result = self.db.execute(
            update(A2PRegistration)
            .where(
                A2PRegistration.id == registration.id,
                A2PRegistration.version == expected_version,
            )
            .values(**columns)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.rollback()
            logger.info(
                "Stale write to registration %s at version %d",
                registration.id, expected_version,
            )
            raise StaleStateError(registration.id, expected_version)

        self.db.commit()
        return self.get(registration.id)

    def transition(
        self,
        registration: A2PRegistration,
        target: RegistrationStatus,
        **values: Any,
    ) -> A2PRegistration:
        """Move a registration to a new status with a version-checked write.

        Args:
            registration: The registration as last read.
            target: Status to move to.
            **values: Extra columns written in the same update.

        Returns:
            The registration after the write.

        Raises:
            InvalidStateTransition: The lifecycle does not allow the move.
            StaleStateError: Another writer got there first.
        """
        current = RegistrationStatus(registration.status)
        if not can_transition(current, target):
            raise InvalidStateTransition(current.value, target.value)

        updated = self.compare_and_set(registration, status=target.value, **values)
        logger.info(
            "Registration %s: %s -> %s (version %d)",
            registration.id, current.value, target.value, updated.version,
        )
        return updated


def is_at_or_beyond(status: str, target: RegistrationStatus) -> bool:
    """True if status is target or later in the lifecycle."""
    return STATUS_RANK[RegistrationStatus(status)] >= STATUS_RANK[target]


def _dumps(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)
