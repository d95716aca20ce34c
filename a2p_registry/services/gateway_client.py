"""Compliance API client: brand, campaign and number registration calls.

Stateless wrapper around httpx. Every call carries the caller's
idempotency key in the ``Idempotency-Key`` header and returns a
GatewayOutcome instead of raising, so the caller can finalize its attempt
row whatever happened on the wire.

Upstream contract:
    POST /v1/brands                              register a brand
    POST /v1/campaigns                           register a campaign
    POST /v1/campaigns/{ref}/phone-numbers       assign a number
    GET  /v1/registrations/{ref}                 status of a brand or campaign
    GET  /v1/submissions?idempotency_key=...     record created by a key

Successful bodies look like ``{"reference_id": ..., "status": ..., "reason": ...}``;
failures like ``{"error": {"code": ..., "message": ...}}``.

Example:
    with ComplianceGatewayClient(base_url, api_key) as gateway:
        outcome = gateway.register_brand(payload, idempotency_key=key)
        if outcome.is_accepted:
            brand.upstream_ref = outcome.upstream_ref
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import httpx

from a2p_registry.db.models import SubEntityStatus
from a2p_registry.errors.gateway_translation import (
    classify_http_status,
    extract_gateway_error,
    translate_gateway_error,
)

logger = logging.getLogger(__name__)


_APPROVED_STATUSES = frozenset({
    "approved", "verified", "active", "twilio-approved", "twilio_approved",
    "registered", "assigned", "success",
})
_REJECTED_STATUSES = frozenset({
    "rejected", "failed", "failure", "twilio-rejected", "twilio_rejected",
    "suspended", "declined",
})


def normalize_upstream_status(value: str | None) -> SubEntityStatus:
    """Map an upstream status vocabulary onto pending/approved/rejected."""
    normalized = (value or "").strip().lower()
    if normalized in _APPROVED_STATUSES:
        return SubEntityStatus.approved
    if normalized in _REJECTED_STATUSES:
        return SubEntityStatus.rejected
    return SubEntityStatus.pending


class OutcomeKind(str, Enum):
    """Tag of a GatewayOutcome."""

    accepted = "accepted"
    rejected = "rejected"
    retriable = "retriable"
    not_found = "not_found"


@dataclass(frozen=True)
class GatewayOutcome:
    """Typed result of one compliance API call.

    Attributes:
        kind: accepted, rejected, retriable or not_found.
        upstream_ref: Reference id assigned by the upstream (accepted only).
        upstream_status: Normalized status of the referenced record.
        reason: Upstream or transport reason text.
        error_code: E-XXXX code for rejected/retriable outcomes.
        http_status: HTTP status, None for transport failures.
        raw: Decoded response body.
    """

    kind: OutcomeKind
    upstream_ref: str | None = None
    upstream_status: SubEntityStatus = SubEntityStatus.pending
    reason: str | None = None
    error_code: str | None = None
    http_status: int | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def accepted(
        cls,
        upstream_ref: str | None,
        upstream_status: SubEntityStatus = SubEntityStatus.pending,
        raw: dict[str, Any] | None = None,
    ) -> "GatewayOutcome":
        return cls(
            kind=OutcomeKind.accepted,
            upstream_ref=upstream_ref,
            upstream_status=upstream_status,
            raw=raw or {},
        )

    @classmethod
    def rejected(
        cls, reason: str, error_code: str = "E-3003", raw: dict[str, Any] | None = None
    ) -> "GatewayOutcome":
        return cls(
            kind=OutcomeKind.rejected,
            upstream_status=SubEntityStatus.rejected,
            reason=reason,
            error_code=error_code,
            raw=raw or {},
        )

    @classmethod
    def retriable(
        cls, reason: str, error_code: str = "E-3001", raw: dict[str, Any] | None = None
    ) -> "GatewayOutcome":
        return cls(kind=OutcomeKind.retriable, reason=reason, error_code=error_code, raw=raw or {})

    @classmethod
    def not_found(cls) -> "GatewayOutcome":
        return cls(kind=OutcomeKind.not_found, reason="no upstream record")

    @property
    def is_accepted(self) -> bool:
        return self.kind == OutcomeKind.accepted

    @property
    def is_rejected(self) -> bool:
        return self.kind == OutcomeKind.rejected

    @property
    def is_retriable(self) -> bool:
        return self.kind == OutcomeKind.retriable

    @property
    def is_not_found(self) -> bool:
        return self.kind == OutcomeKind.not_found

    def as_response(self) -> dict[str, Any]:
        """Snapshot stored on the attempt row."""
        return {
            "kind": self.kind.value,
            "upstream_ref": self.upstream_ref,
            "upstream_status": self.upstream_status.value,
            "reason": self.reason,
            "error_code": self.error_code,
            "http_status": self.http_status,
            "body": self.raw,
        }


class ComplianceGatewayClient:
    """Synchronous client for the upstream compliance API.

    Transport errors (connection failures, timeouts) are retried up to
    ``transport_retries`` times with the same idempotency key before a
    retriable outcome is returned.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout_seconds: float = 15.0,
        transport_retries: int = 2,
        client: httpx.Client | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: Compliance API base URL.
            api_key: Bearer token for the compliance API.
            timeout_seconds: Per-request timeout.
            transport_retries: Extra sends on transport failure.
            client: Pre-built httpx.Client (tests inject a MockTransport here).
        """
        headers = {"Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._owns_client = client is None
        self._client = client or httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=timeout_seconds,
            headers=headers,
        )
        if client is not None:
            self._client.headers.update(headers)
        self._transport_retries = max(0, transport_retries)

    @classmethod
    def from_config(cls, config: Any) -> "ComplianceGatewayClient":
        """Build from a GatewayConfig section."""
        return cls(
            base_url=config.base_url,
            api_key=config.api_key,
            timeout_seconds=config.timeout_seconds,
            transport_retries=config.transport_retries,
        )

    def __enter__(self) -> "ComplianceGatewayClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    # Submission calls

    def register_brand(self, payload: dict[str, Any], idempotency_key: str) -> GatewayOutcome:
        """Submit a brand registration."""
        return self._request("POST", "/v1/brands", idempotency_key, json=payload)

    def register_campaign(self, payload: dict[str, Any], idempotency_key: str) -> GatewayOutcome:
        """Submit a campaign registration; payload carries the brand reference."""
        return self._request("POST", "/v1/campaigns", idempotency_key, json=payload)

    def assign_number(
        self, phone_number: str, campaign_ref: str, idempotency_key: str
    ) -> GatewayOutcome:
        """Attach one E.164 number to a registered campaign."""
        return self._request(
            "POST",
            f"/v1/campaigns/{campaign_ref}/phone-numbers",
            idempotency_key,
            json={"phone_number": phone_number},
        )

    # Lookups

    def check_status(self, upstream_ref: str, idempotency_key: str | None = None) -> GatewayOutcome:
        """Fetch the current status of a brand or campaign by reference."""
        return self._request(
            "GET", f"/v1/registrations/{upstream_ref}", idempotency_key, lookup=True
        )

    def find_by_idempotency_key(self, idempotency_key: str) -> GatewayOutcome:
        """Ask whether the upstream recorded a submission for a key.

        Returns:
            accepted outcome describing the record (its upstream_status may
            be rejected), not_found, or retriable if the lookup itself failed.
        """
        return self._request(
            "GET",
            "/v1/submissions",
            None,
            params={"idempotency_key": idempotency_key},
            lookup=True,
        )

    # Internals

    def _request(
        self,
        method: str,
        path: str,
        idempotency_key: str | None,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        lookup: bool = False,
    ) -> GatewayOutcome:
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else {}

        last_error: httpx.TransportError | None = None
        for send in range(self._transport_retries + 1):
            try:
                response = self._client.request(
                    method, path, json=json, params=params, headers=headers
                )
            except httpx.TransportError as e:
                last_error = e
                logger.warning(
                    "Compliance API %s %s transport error (send %d/%d): %s",
                    method, path, send + 1, self._transport_retries + 1, type(e).__name__,
                )
                continue
            return self._to_outcome(response, lookup)

        code, message, _ = translate_gateway_error(
            None, "service_unavailable", str(last_error) or type(last_error).__name__
        )
        return GatewayOutcome.retriable(message, error_code=code)

    def _to_outcome(self, response: httpx.Response, lookup: bool) -> GatewayOutcome:
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {"data": body}

        classification = classify_http_status(response.status_code)
        logger.debug(
            "Compliance API %s %s -> %d",
            response.request.method, response.request.url.path, response.status_code,
        )

        if classification == "accepted":
            status = normalize_upstream_status(body.get("status"))
            # A lookup that finds a rejected record still found it; the
            # rejection is carried in upstream_status.
            if status == SubEntityStatus.rejected and not lookup:
                return GatewayOutcome(
                    kind=OutcomeKind.rejected,
                    upstream_ref=body.get("reference_id"),
                    upstream_status=status,
                    reason=body.get("reason") or "rejected by upstream",
                    error_code="E-3003",
                    http_status=response.status_code,
                    raw=body,
                )
            return GatewayOutcome(
                kind=OutcomeKind.accepted,
                upstream_ref=body.get("reference_id"),
                upstream_status=status,
                reason=body.get("reason"),
                http_status=response.status_code,
                raw=body,
            )

        if classification == "not_found" and lookup:
            return GatewayOutcome(
                kind=OutcomeKind.not_found,
                reason="no upstream record",
                http_status=response.status_code,
                raw=body,
            )

        upstream_code, upstream_message = extract_gateway_error(body)
        code, message, _ = translate_gateway_error(
            response.status_code, upstream_code, upstream_message
        )
        kind = OutcomeKind.retriable if classification == "retriable" else OutcomeKind.rejected
        return GatewayOutcome(
            kind=kind,
            upstream_status=(
                SubEntityStatus.rejected if kind == OutcomeKind.rejected else SubEntityStatus.pending
            ),
            reason=upstream_message or message,
            error_code=code,
            http_status=response.status_code,
            raw=body,
        )
