"""Brand and campaign submission to the compliance API.

Each submission follows the same bracket:

1. Make sure the sub-entity row exists and is linked to the registration
   (a version-checked write on brand_id / campaign_id).
2. Commit a pending attempt row. The partial unique index on pending
   attempts means only one caller can get past this point per sub-entity.
3. Re-read the sub-entity; if a concurrent caller already got an upstream
   reference, finalize our attempt without dispatching.
4. Dispatch with the attempt's idempotency key, record the effect on the
   sub-entity, then finalize the attempt.

The effect is written before the attempt is finalized so a crash between
the two leaves a pending attempt that reconciliation can replay.
"""

import json
import logging
from typing import Any

from sqlalchemy.orm import Session

from a2p_registry.db.models import (
    A2PBrand,
    A2PCampaign,
    A2PRegistration,
    AttemptStatus,
    AttemptType,
    ComplianceAttempt,
    SubEntityStatus,
    utc_now_iso,
)
from a2p_registry.errors import (
    ActiveBrandExistsError,
    ConflictError,
    FatalGatewayError,
    ReconciliationRequired,
    RetriableGatewayError,
)
from a2p_registry.services.attempt_log import AttemptLog
from a2p_registry.services.event_log import EventLog
from a2p_registry.services.gateway_client import ComplianceGatewayClient, GatewayOutcome
from a2p_registry.services.idempotency import payload_hash
from a2p_registry.services.state_store import RegistrationStore
from a2p_registry.services.validation import (
    BrandPayload,
    CampaignPayload,
    validate_brand,
    validate_campaign,
)

logger = logging.getLogger(__name__)

_FINAL_SUB_STATUSES = frozenset({SubEntityStatus.approved.value, SubEntityStatus.rejected.value})

SUPERSEDED_MESSAGE = "Superseded by a concurrent submission; not dispatched"


def _brand_columns(payload: BrandPayload) -> dict[str, Any]:
    return {
        "company_name": payload.legal_business_name,
        "display_name": payload.display_name or None,
        "website": payload.website or None,
        "support_email": payload.primary_contact.email,
        "support_phone": payload.primary_contact.phone,
        "tax_id": payload.ein,
        "business_type": payload.business_type,
        "vertical": payload.industry,
    }


def _campaign_columns(payload: CampaignPayload) -> dict[str, Any]:
    return {
        "name": payload.campaign_name,
        "description": payload.campaign_description or None,
        "use_case": payload.use_case,
        "vertical": payload.vertical,
        "traffic_type": payload.traffic_type,
        "sample_messages": json.dumps(payload.sample_messages),
        "sample_urls": json.dumps(payload.sample_urls) if payload.sample_urls else None,
    }


class ComplianceRegistrar:
    """Submits brands and campaigns and records what the upstream said.

    Attributes:
        db: SQLAlchemy session shared with the store and logs.
        gateway: Compliance API client.
    """

    def __init__(
        self,
        db: Session,
        gateway: ComplianceGatewayClient,
        store: RegistrationStore,
        attempt_log: AttemptLog,
        event_log: EventLog,
    ) -> None:
        self.db = db
        self.gateway = gateway
        self.store = store
        self.attempts = attempt_log
        self.events = event_log

    # =========================================================================
    # Brand
    # =========================================================================

    def prepare_brand(
        self, registration: A2PRegistration, payload: BrandPayload
    ) -> A2PBrand:
        """Find or create the brand this registration submits, and link it.

        Reuse order: the linked brand, an unlinked brand this registration
        already created, then another active brand of the same tenant that
        already has an upstream reference.

        Raises:
            FatalGatewayError: The linked brand was rejected and the brand
                details have not changed since.
            ActiveBrandExistsError: Another registration of this tenant has a
                brand in flight that has no upstream reference yet.
            StaleStateError: The registration changed while linking.
        """
        digest = payload_hash(payload.model_dump())
        brand = self.store.get_brand(registration.brand_id)

        if brand is not None:
            if brand.status != SubEntityStatus.rejected.value:
                if (
                    brand.upstream_ref is None
                    and brand.registration_id == registration.id
                    and brand.payload_hash != digest
                ):
                    self._refresh_columns(brand, _brand_columns(payload), digest)
                return brand
            if brand.payload_hash == digest:
                raise FatalGatewayError(
                    f"Brand was rejected upstream: {brand.rejection_reason or 'no reason given'}. "
                    "Edit the brand details before submitting again.",
                    code="E-3003",
                )
            logger.info(
                "Brand %s was rejected and the details changed; creating a replacement",
                brand.id,
            )
        else:
            own = (
                self.db.query(A2PBrand)
                .filter(
                    A2PBrand.registration_id == registration.id,
                    A2PBrand.status != SubEntityStatus.rejected.value,
                )
                .order_by(A2PBrand.created_at.desc())
                .first()
            )
            if own is not None:
                self.store.compare_and_set(registration, brand_id=own.id)
                return own

            others = (
                self.db.query(A2PBrand)
                .filter(
                    A2PBrand.tenant_id == registration.tenant_id,
                    A2PBrand.registration_id != registration.id,
                    A2PBrand.status != SubEntityStatus.rejected.value,
                )
                .order_by(A2PBrand.created_at.desc())
                .all()
            )
            for other in others:
                if other.upstream_ref:
                    logger.info(
                        "Registration %s reuses tenant brand %s (%s)",
                        registration.id, other.id, other.upstream_ref,
                    )
                    self.store.compare_and_set(registration, brand_id=other.id)
                    return other
                # Never sent upstream; only matters while its registration is live
                owner = self.store.get(other.registration_id)
                if owner.is_active:
                    raise ActiveBrandExistsError(registration.tenant_id, other.id)

        now = utc_now_iso()
        brand = A2PBrand(
            tenant_id=registration.tenant_id,
            registration_id=registration.id,
            status=SubEntityStatus.pending.value,
            payload_hash=digest,
            created_at=now,
            updated_at=now,
            **_brand_columns(payload),
        )
        self.db.add(brand)
        # Inserted and linked in one transaction; a lost race rolls both back
        self.db.flush()
        self.store.compare_and_set(registration, brand_id=brand.id)
        logger.info("Created brand %s for registration %s", brand.id, registration.id)
        return brand

    def submit_brand(self, registration: A2PRegistration) -> A2PBrand:
        """Register the brand upstream unless it already has a reference.

        Returns:
            The brand, carrying its upstream reference.

        Raises:
            ValidationError: Brand details are invalid (nothing dispatched).
            ReconciliationRequired: A brand submission is already in flight.
            FatalGatewayError: The upstream rejected the brand.
            RetriableGatewayError: The upstream could not be reached.
        """
        payload = validate_brand(registration.step_payload("brand"))
        brand = self.prepare_brand(registration, payload)
        if brand.upstream_ref and brand.status != SubEntityStatus.rejected.value:
            return brand

        self._ensure_nothing_pending(registration, AttemptType.brand_registration, "brand")
        body = payload.to_gateway_payload()
        attempt = self.attempts.record_attempt_start(
            registration,
            AttemptType.brand_registration,
            "brand",
            {"brand_id": brand.id, "payload": body},
        )

        brand = self.store.get_brand(brand.id)
        if brand.upstream_ref:
            self.attempts.record_attempt_end(
                attempt.id, AttemptStatus.error, error_message=SUPERSEDED_MESSAGE
            )
            return brand

        outcome = self.gateway.register_brand(body, idempotency_key=attempt.idempotency_key)
        self._settle(registration, attempt, brand, outcome, "Brand")
        return brand

    # =========================================================================
    # Campaign
    # =========================================================================

    def prepare_campaign(
        self,
        registration: A2PRegistration,
        payload: CampaignPayload,
        brand: A2PBrand,
    ) -> A2PCampaign:
        """Find or create the campaign row and link it to the registration."""
        digest = payload_hash(payload.model_dump())
        campaign = self.store.get_campaign(registration.campaign_id)

        if campaign is not None:
            if campaign.status != SubEntityStatus.rejected.value:
                if campaign.upstream_ref is None and campaign.payload_hash != digest:
                    self._refresh_columns(campaign, _campaign_columns(payload), digest)
                if campaign.upstream_ref is None and campaign.brand_id != brand.id:
                    campaign.brand_id = brand.id
                    self.db.commit()
                return campaign
            if campaign.payload_hash == digest:
                raise FatalGatewayError(
                    f"Campaign was rejected upstream: {campaign.rejection_reason or 'no reason given'}. "
                    "Edit the campaign details before submitting again.",
                    code="E-3003",
                )
        else:
            own = (
                self.db.query(A2PCampaign)
                .filter(
                    A2PCampaign.registration_id == registration.id,
                    A2PCampaign.status != SubEntityStatus.rejected.value,
                )
                .order_by(A2PCampaign.created_at.desc())
                .first()
            )
            if own is not None:
                self.store.compare_and_set(registration, campaign_id=own.id)
                return own

        now = utc_now_iso()
        campaign = A2PCampaign(
            tenant_id=registration.tenant_id,
            registration_id=registration.id,
            brand_id=brand.id,
            status=SubEntityStatus.pending.value,
            payload_hash=digest,
            created_at=now,
            updated_at=now,
            **_campaign_columns(payload),
        )
        self.db.add(campaign)
        self.db.flush()
        self.store.compare_and_set(registration, campaign_id=campaign.id)
        logger.info("Created campaign %s for registration %s", campaign.id, registration.id)
        return campaign

    def submit_campaign(self, registration: A2PRegistration) -> A2PCampaign:
        """Register the campaign upstream under the registration's brand.

        A rejected brand blocks the campaign until an edited brand has
        been accepted; the orchestrator resends the brand first.

        Raises:
            ConflictError: The brand has no upstream reference yet.
            FatalGatewayError: The brand or the campaign was rejected.
            RetriableGatewayError: The upstream could not be reached.
            ReconciliationRequired: A campaign submission is already in flight.
        """
        brand = self.store.get_brand(registration.brand_id)
        if brand is None or not brand.upstream_ref:
            raise ConflictError(
                f"Registration '{registration.id}' has no registered brand yet"
            )
        if brand.status == SubEntityStatus.rejected.value:
            raise FatalGatewayError(
                f"Brand was rejected upstream: {brand.rejection_reason or 'no reason given'}",
                code="E-3003",
            )

        payload = validate_campaign(registration.step_payload("campaign"))
        campaign = self.prepare_campaign(registration, payload, brand)
        if campaign.upstream_ref and campaign.status != SubEntityStatus.rejected.value:
            return campaign

        self._ensure_nothing_pending(
            registration, AttemptType.campaign_registration, "campaign"
        )
        body = payload.to_gateway_payload(brand.upstream_ref)
        attempt = self.attempts.record_attempt_start(
            registration,
            AttemptType.campaign_registration,
            "campaign",
            {"campaign_id": campaign.id, "payload": body},
        )

        campaign = self.store.get_campaign(campaign.id)
        if campaign.upstream_ref:
            self.attempts.record_attempt_end(
                attempt.id, AttemptStatus.error, error_message=SUPERSEDED_MESSAGE
            )
            return campaign

        outcome = self.gateway.register_campaign(body, idempotency_key=attempt.idempotency_key)
        self._settle(registration, attempt, campaign, outcome, "Campaign")
        return campaign

    # =========================================================================
    # Upstream status
    # =========================================================================

    def apply_status(
        self,
        entity: A2PBrand | A2PCampaign,
        status: SubEntityStatus,
        reason: str | None = None,
    ) -> bool:
        """Move a brand or campaign to approved/rejected.

        Approved and rejected are final: a row in either state is never
        changed again. A pending status is a no-op.

        Returns:
            True if the row changed.
        """
        if entity.status in _FINAL_SUB_STATUSES or status == SubEntityStatus.pending:
            return False
        entity.status = status.value
        if status == SubEntityStatus.rejected:
            entity.rejection_reason = reason
        entity.updated_at = utc_now_iso()
        self.db.commit()
        logger.info("%s %s is now %s", type(entity).__name__, entity.id, status.value)
        return True

    def refresh_status(
        self, registration: A2PRegistration, entity: A2PBrand | A2PCampaign
    ) -> bool:
        """Poll the upstream for one brand or campaign and apply the answer.

        Returns:
            True if the sub-entity changed state.
        """
        attempt = self.attempts.record_attempt_start(
            registration,
            AttemptType.status_check,
            entity.upstream_ref,
            {
                "entity": type(entity).__name__,
                "entity_id": entity.id,
                "upstream_ref": entity.upstream_ref,
            },
        )
        outcome = self.gateway.check_status(entity.upstream_ref, attempt.idempotency_key)
        if not outcome.is_accepted:
            self.attempts.record_attempt_end(
                attempt.id,
                AttemptStatus.error,
                response=outcome.as_response(),
                error_code=outcome.error_code,
                error_message=outcome.reason,
            )
            return False

        changed = self.apply_status(entity, outcome.upstream_status, outcome.reason)
        self.attempts.record_attempt_end(
            attempt.id,
            AttemptStatus.success,
            response=outcome.as_response(),
            upstream_ref=entity.upstream_ref,
        )
        return changed

    def find_by_upstream_ref(self, upstream_ref: str) -> A2PBrand | A2PCampaign | None:
        brand = self.db.query(A2PBrand).filter(A2PBrand.upstream_ref == upstream_ref).first()
        if brand is not None:
            return brand
        return (
            self.db.query(A2PCampaign)
            .filter(A2PCampaign.upstream_ref == upstream_ref)
            .first()
        )

    def entity_for_attempt(self, attempt: ComplianceAttempt) -> A2PBrand | A2PCampaign | None:
        """The brand or campaign a submission attempt was about."""
        request = attempt.request_payload
        if attempt.attempt_type == AttemptType.brand_registration.value:
            return self.store.get_brand(request.get("brand_id"))
        if attempt.attempt_type == AttemptType.campaign_registration.value:
            return self.store.get_campaign(request.get("campaign_id"))
        return None

    def record_outcome(
        self, entity: A2PBrand | A2PCampaign, outcome: GatewayOutcome
    ) -> None:
        """Write an upstream answer onto a brand or campaign.

        Accepted answers set the reference (once) and any final status the
        upstream already reports; rejections mark the row rejected.
        """
        if outcome.is_rejected or outcome.upstream_status == SubEntityStatus.rejected:
            if outcome.upstream_ref and not entity.upstream_ref:
                entity.upstream_ref = outcome.upstream_ref
            self.apply_status(entity, SubEntityStatus.rejected, outcome.reason)
            self.db.commit()
            return

        if outcome.upstream_ref and not entity.upstream_ref:
            entity.upstream_ref = outcome.upstream_ref
            entity.updated_at = utc_now_iso()
            self.db.commit()
        self.apply_status(entity, outcome.upstream_status, outcome.reason)

    # =========================================================================
    # Internals
    # =========================================================================

    def _ensure_nothing_pending(
        self, registration: A2PRegistration, attempt_type: AttemptType, subject: str
    ) -> None:
        pending = self.attempts.find_pending_attempt(registration.id, attempt_type, subject)
        if pending is not None:
            raise ReconciliationRequired(pending.id, attempt_type.value, subject)

    def _refresh_columns(self, entity: Any, columns: dict[str, Any], digest: str) -> None:
        for key, value in columns.items():
            setattr(entity, key, value)
        entity.payload_hash = digest
        entity.updated_at = utc_now_iso()
        self.db.commit()

    def _settle(
        self,
        registration: A2PRegistration,
        attempt: ComplianceAttempt,
        entity: A2PBrand | A2PCampaign,
        outcome: GatewayOutcome,
        label: str,
    ) -> None:
        """Apply a submission outcome, finalize the attempt, raise on failure."""
        if outcome.is_accepted and outcome.upstream_ref:
            self.record_outcome(entity, outcome)
            self.attempts.record_attempt_end(
                attempt.id,
                AttemptStatus.success,
                response=outcome.as_response(),
                upstream_ref=outcome.upstream_ref,
            )
            logger.info(
                "%s %s accepted upstream as %s", label, entity.id, outcome.upstream_ref
            )
            return

        if outcome.is_rejected:
            self.record_outcome(entity, outcome)
            self.attempts.record_attempt_end(
                attempt.id,
                AttemptStatus.error,
                response=outcome.as_response(),
                error_code=outcome.error_code,
                error_message=outcome.reason,
            )
            self.events.log_gateway_error(
                registration.id,
                outcome.error_code or "E-3003",
                f"{label} rejected: {outcome.reason}",
                {"attempt_id": attempt.id, "entity_id": entity.id},
            )
            raise FatalGatewayError(
                f"{label} rejected upstream: {outcome.reason}",
                code=outcome.error_code or "E-3003",
                attempt_id=attempt.id,
            )

        if outcome.is_accepted:
            # 2xx without a reference id cannot be linked to anything
            code, reason = "E-3005", "accepted without a reference id"
        else:
            code, reason = outcome.error_code or "E-3001", outcome.reason or "no response"
        self.attempts.record_attempt_end(
            attempt.id,
            AttemptStatus.error,
            response=outcome.as_response(),
            error_code=code,
            error_message=reason,
        )
        self.events.log_gateway_error(
            registration.id, code, f"{label} submission failed: {reason}",
            {"attempt_id": attempt.id, "entity_id": entity.id},
        )
        raise RetriableGatewayError(
            f"{label} submission failed: {reason}", code=code, attempt_id=attempt.id
        )
