"""SQLAlchemy ORM models for the A2P registration state database.

This module defines the registration aggregate, its brand and campaign
sub-entities, the append-only compliance attempt log, per-number binding
state, and the registration event trail. Uses SQLAlchemy 2.0 style
with Mapped and mapped_column.
"""

import json
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from sqlalchemy import (
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
    relationship,
)


def generate_uuid() -> str:
    """Generate a UUID4 string for primary keys."""
    return str(uuid4())


def utc_now_iso() -> str:
    """Generate current UTC timestamp in ISO8601 format."""
    return datetime.now(UTC).isoformat()


# Enums matching the database schema constraints


class RegistrationStatus(str, Enum):
    """Status values for an A2P registration.

    Lifecycle: draft -> brand_pending -> campaign_pending -> submitted
               submitted -> approved | rejected
    """

    draft = "draft"
    brand_pending = "brand_pending"
    campaign_pending = "campaign_pending"
    submitted = "submitted"
    approved = "approved"
    rejected = "rejected"


# Forward order used for monotonicity checks. approved/rejected share a rank.
STATUS_RANK: dict[RegistrationStatus, int] = {
    RegistrationStatus.draft: 0,
    RegistrationStatus.brand_pending: 1,
    RegistrationStatus.campaign_pending: 2,
    RegistrationStatus.submitted: 3,
    RegistrationStatus.approved: 4,
    RegistrationStatus.rejected: 4,
}

TERMINAL_STATUSES = frozenset({RegistrationStatus.approved, RegistrationStatus.rejected})


class SubEntityStatus(str, Enum):
    """Status values shared by brands and campaigns."""

    pending = "pending"
    approved = "approved"
    rejected = "rejected"


class AttemptType(str, Enum):
    """Kinds of external calls recorded in the attempt log."""

    brand_registration = "brand_registration"
    campaign_registration = "campaign_registration"
    phone_assignment = "phone_assignment"
    status_check = "status_check"


class AttemptStatus(str, Enum):
    """Lifecycle of a single attempt: pending -> success | error."""

    pending = "pending"
    success = "success"
    error = "error"


class NumberStatus(str, Enum):
    """Per-number binding state within one registration.

    Lifecycle: selected -> submitted -> registered | failed
               submitted -> selected (retriable gateway error)
    """

    selected = "selected"
    submitted = "submitted"
    registered = "registered"
    failed = "failed"


class LogLevel(str, Enum):
    """Severity levels for registration events."""

    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


class EventType(str, Enum):
    """Categories of events in the registration audit trail."""

    state_change = "state_change"
    step_saved = "step_saved"
    dispatch = "dispatch"
    reconciliation = "reconciliation"
    upstream_status = "upstream_status"
    number_binding = "number_binding"
    error = "error"


def _loads(raw: str | None) -> Any:
    """Decode a JSON text column, tolerating NULL."""
    if not raw:
        return None
    return json.loads(raw)


# SQLAlchemy Base


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# Models


class A2PRegistration(Base):
    """One tenant's A2P 10DLC compliance registration (aggregate root).

    Status and current_step are written only by the orchestrator through
    version-checked updates; see RegistrationStore.transition().

    Attributes:
        id: UUID primary key
        tenant_id: Owning tenant (sub-account) identifier
        status: Current registration status
        current_step: Wizard step ordinal (0-5) for resuming the form flow
        brand_id: Linked A2PBrand id once a brand exists
        campaign_id: Linked A2PCampaign id once a campaign exists
        completed_by: Acting user id of the last wizard write
        brand_data: Raw brand form payload (JSON)
        campaign_data: Raw campaign form payload (JSON)
        phone_number_data: Raw phone-number selection payload (JSON)
        compliance_data: Raw compliance attestation payload (JSON)
        version: Optimistic concurrency counter, bumped on every write
        resubmitted_from_id: Rejected registration this one was spawned from
        abandoned_at: Set when a draft is abandoned (rows are never deleted)
    """

    __tablename__ = "a2p_registrations"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=RegistrationStatus.draft.value
    )
    current_step: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    brand_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    campaign_id: Mapped[str | None] = mapped_column(String(36), nullable=True)

    completed_by: Mapped[str] = mapped_column(String(64), nullable=False)

    # Per-step form payloads, persisted so any step can resume after a crash
    brand_data: Mapped[str | None] = mapped_column(Text, nullable=True)
    campaign_data: Mapped[str | None] = mapped_column(Text, nullable=True)
    phone_number_data: Mapped[str | None] = mapped_column(Text, nullable=True)
    compliance_data: Mapped[str | None] = mapped_column(Text, nullable=True)

    version: Mapped[int] = mapped_column(
        Integer, nullable=False, default=1, server_default="1"
    )
    resubmitted_from_id: Mapped[str | None] = mapped_column(String(36), nullable=True)

    # Timestamps (ISO8601 strings for SQLite compatibility)
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    submitted_at: Mapped[str | None] = mapped_column(String(50), nullable=True)
    approved_at: Mapped[str | None] = mapped_column(String(50), nullable=True)
    rejected_at: Mapped[str | None] = mapped_column(String(50), nullable=True)
    abandoned_at: Mapped[str | None] = mapped_column(String(50), nullable=True)

    # Relationships
    numbers: Mapped[list["RegistrationNumber"]] = relationship(
        "RegistrationNumber",
        back_populates="registration",
        cascade="all, delete-orphan",
        order_by="RegistrationNumber.created_at",
    )
    attempts: Mapped[list["ComplianceAttempt"]] = relationship(
        "ComplianceAttempt", back_populates="registration"
    )
    events: Mapped[list["RegistrationEvent"]] = relationship(
        "RegistrationEvent", back_populates="registration"
    )

    __table_args__ = (
        Index("idx_a2p_registrations_tenant", "tenant_id"),
        Index("idx_a2p_registrations_status", "status"),
        Index("idx_a2p_registrations_updated_at", "updated_at"),
    )

    @property
    def phone_numbers(self) -> set[str]:
        """E.164 numbers currently in this registration's selection."""
        return {n.phone_number for n in self.numbers}

    @property
    def is_terminal(self) -> bool:
        return RegistrationStatus(self.status) in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        """Active means neither abandoned nor rejected."""
        return (
            self.abandoned_at is None
            and self.status != RegistrationStatus.rejected.value
        )

    def step_payload(self, name: str) -> dict | None:
        """Return a decoded wizard payload: brand, campaign, phone_number, compliance."""
        return _loads(getattr(self, f"{name}_data"))

    def __repr__(self) -> str:
        return (
            f"<A2PRegistration(id={self.id!r}, tenant_id={self.tenant_id!r}, "
            f"status={self.status!r}, version={self.version})>"
        )


class A2PBrand(Base):
    """Company-identity registration tied to one registration.

    Never mutated once approved or rejected; a rejected brand is
    resubmitted as a new row.

    Attributes:
        upstream_ref: Reference id assigned by the compliance API on accept
        payload_hash: SHA-256 of the brand payload that produced this row
        rejection_reason: Upstream reason when status is rejected
    """

    __tablename__ = "a2p_brands"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    registration_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("a2p_registrations.id"), nullable=False
    )

    company_name: Mapped[str] = mapped_column(String(255), nullable=False)
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    website: Mapped[str | None] = mapped_column(String(500), nullable=True)
    support_email: Mapped[str] = mapped_column(String(255), nullable=False)
    support_phone: Mapped[str] = mapped_column(String(30), nullable=False)
    tax_id: Mapped[str] = mapped_column(String(20), nullable=False)
    business_type: Mapped[str] = mapped_column(String(40), nullable=False)
    vertical: Mapped[str] = mapped_column(String(60), nullable=False)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=SubEntityStatus.pending.value
    )
    upstream_ref: Mapped[str | None] = mapped_column(String(64), nullable=True)
    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    __table_args__ = (
        Index("idx_a2p_brands_tenant_status", "tenant_id", "status"),
        Index("idx_a2p_brands_registration", "registration_id"),
        Index("idx_a2p_brands_upstream_ref", "upstream_ref"),
    )

    def __repr__(self) -> str:
        return f"<A2PBrand(id={self.id!r}, status={self.status!r}, ref={self.upstream_ref!r})>"


class A2PCampaign(Base):
    """Use-case registration owned by exactly one brand."""

    __tablename__ = "a2p_campaigns"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    registration_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("a2p_registrations.id"), nullable=False
    )
    brand_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("a2p_brands.id"), nullable=False
    )

    name: Mapped[str] = mapped_column(String(50), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    use_case: Mapped[str] = mapped_column(String(60), nullable=False)
    vertical: Mapped[str] = mapped_column(String(60), nullable=False)
    traffic_type: Mapped[str] = mapped_column(String(20), nullable=False)
    sample_messages: Mapped[str] = mapped_column(Text, nullable=False)
    sample_urls: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=SubEntityStatus.pending.value
    )
    upstream_ref: Mapped[str | None] = mapped_column(String(64), nullable=True)
    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    brand: Mapped["A2PBrand"] = relationship("A2PBrand")

    __table_args__ = (
        Index("idx_a2p_campaigns_registration", "registration_id"),
        Index("idx_a2p_campaigns_upstream_ref", "upstream_ref"),
    )

    @property
    def sample_message_list(self) -> list[str]:
        return _loads(self.sample_messages) or []

    def __repr__(self) -> str:
        return f"<A2PCampaign(id={self.id!r}, status={self.status!r}, ref={self.upstream_ref!r})>"


class ComplianceAttempt(Base):
    """Append-only record of one external compliance call.

    Created with status 'pending' before dispatch and finalized to
    'success' or 'error' once the call resolves (or by reconciliation).
    At most one pending attempt exists per (registration, type, subject).

    Attributes:
        attempt_type: brand_registration, campaign_registration,
            phone_assignment or status_check
        subject: What the call is about: 'brand', 'campaign', an E.164
            number, or the reference being checked
        idempotency_key: Stable key sent upstream, derived from the attempt id
        request_data: JSON snapshot of the outbound request
        response_data: JSON snapshot of the upstream response (nullable)
        upstream_ref: Reference id returned by the upstream, if any
    """

    __tablename__ = "compliance_attempts"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    registration_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("a2p_registrations.id"), nullable=False
    )
    attempt_type: Mapped[str] = mapped_column(String(32), nullable=False)
    subject: Mapped[str] = mapped_column(String(64), nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)

    request_data: Mapped[str] = mapped_column(Text, nullable=False)
    response_data: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=AttemptStatus.pending.value
    )
    error_code: Mapped[str | None] = mapped_column(String(20), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    upstream_ref: Mapped[str | None] = mapped_column(String(64), nullable=True)

    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    completed_at: Mapped[str | None] = mapped_column(String(50), nullable=True)

    registration: Mapped["A2PRegistration"] = relationship(
        "A2PRegistration", back_populates="attempts"
    )

    __table_args__ = (
        Index("idx_compliance_attempts_registration", "registration_id"),
        Index("idx_compliance_attempts_status", "status"),
        Index(
            "uq_compliance_attempts_one_pending",
            "registration_id",
            "attempt_type",
            "subject",
            unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'"),
        ),
    )

    @property
    def request_payload(self) -> dict:
        return _loads(self.request_data) or {}

    @property
    def response_payload(self) -> dict | None:
        return _loads(self.response_data)

    def __repr__(self) -> str:
        return (
            f"<ComplianceAttempt(id={self.id!r}, type={self.attempt_type!r}, "
            f"subject={self.subject!r}, status={self.status!r})>"
        )


# Glossary name used by the wizard and operations tooling
TwilioAttempt = ComplianceAttempt


class RegistrationNumber(Base):
    """Binding state of one selected phone number within a registration."""

    __tablename__ = "registration_numbers"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    registration_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("a2p_registrations.id", ondelete="CASCADE"),
        nullable=False,
    )
    phone_number: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=NumberStatus.selected.value
    )
    upstream_ref: Mapped[str | None] = mapped_column(String(64), nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(20), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    registration: Mapped["A2PRegistration"] = relationship(
        "A2PRegistration", back_populates="numbers"
    )

    __table_args__ = (
        UniqueConstraint(
            "registration_id", "phone_number", name="uq_registration_numbers_number"
        ),
        Index("idx_registration_numbers_phone", "phone_number"),
    )

    def __repr__(self) -> str:
        return (
            f"<RegistrationNumber(registration_id={self.registration_id!r}, "
            f"number={self.phone_number!r}, status={self.status!r})>"
        )


class PhoneNumberClaim(Base):
    """Cross-registration ownership record, one row per phone number.

    Claims are taken with a conditional insert (the primary key is the
    number) and transferred with a version-checked update, so two
    registrations can never hold the same number.
    """

    __tablename__ = "phone_number_claims"

    phone_number: Mapped[str] = mapped_column(String(20), primary_key=True)
    registration_id: Mapped[str] = mapped_column(String(36), nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    claimed_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    def __repr__(self) -> str:
        return f"<PhoneNumberClaim(number={self.phone_number!r}, registration_id={self.registration_id!r})>"


class RegistrationEvent(Base):
    """Audit trail entry for one registration.

    Records state changes, wizard saves, dispatch decisions, upstream
    status deliveries, and surfaced gateway errors. Details are redacted
    before storage.
    """

    __tablename__ = "registration_events"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    registration_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("a2p_registrations.id"), nullable=False
    )
    timestamp: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    level: Mapped[str] = mapped_column(String(10), nullable=False)
    event_type: Mapped[str] = mapped_column(String(20), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    details: Mapped[str | None] = mapped_column(Text, nullable=True)

    registration: Mapped[Optional["A2PRegistration"]] = relationship(
        "A2PRegistration", back_populates="events"
    )

    __table_args__ = (
        Index("idx_registration_events_registration", "registration_id"),
        Index("idx_registration_events_timestamp", "timestamp"),
    )

    def __repr__(self) -> str:
        return (
            f"<RegistrationEvent(id={self.id!r}, registration_id={self.registration_id!r}, "
            f"level={self.level!r}, type={self.event_type!r})>"
        )
