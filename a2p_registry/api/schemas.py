"""Pydantic schemas for API request/response validation.

This module defines the data contracts for the A2P registry REST API:
wizard steps, the status projection, attempt and event listings, and the
compliance webhook.
"""

import json
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _parse_json(value: str | dict | None) -> dict | None:
    """Parse a JSON text column; tolerate rows written before it was JSON."""
    if value is None or isinstance(value, dict):
        return value
    try:
        return json.loads(value)
    except (json.JSONDecodeError, TypeError):
        return None


# Registration schemas


class RegistrationCreate(BaseModel):
    """Request schema for starting or resuming a registration."""

    tenant_id: str = Field(..., min_length=1, max_length=64)


class StepSubmit(BaseModel):
    """Request schema for saving one wizard step."""

    data: Any = None
    expected_version: int | None = Field(None, ge=1)


class RegistrationResponse(BaseModel):
    """Response schema for a registration."""

    id: str
    tenant_id: str
    status: str
    current_step: int
    brand_id: str | None
    campaign_id: str | None
    completed_by: str
    version: int
    resubmitted_from_id: str | None
    created_at: str
    updated_at: str
    submitted_at: str | None
    approved_at: str | None
    rejected_at: str | None
    abandoned_at: str | None

    model_config = ConfigDict(from_attributes=True)


class NumberStatusResponse(BaseModel):
    """Binding state of one selected number."""

    phone_number: str
    status: str
    error_code: str | None = None
    error_message: str | None = None


class LastErrorResponse(BaseModel):
    attempt_id: str
    attempt_type: str
    error_code: str | None
    error_message: str | None
    at: str | None


class RegistrationStatusResponse(BaseModel):
    """Read-only status projection shown by the wizard."""

    registration_id: str
    status: str
    current_step: int
    version: int
    abandoned: bool
    brand_status: str | None
    brand_ref: str | None
    campaign_status: str | None
    campaign_ref: str | None
    per_number_status: list[NumberStatusResponse]
    last_error: LastErrorResponse | None


# Phone numbers


class NumbersRequest(BaseModel):
    """Request schema for binding or removing numbers."""

    phone_numbers: list[str] | None = None


class BindResultResponse(BaseModel):
    phone_number: str
    status: str
    error_code: str | None = None
    error_message: str | None = None

    model_config = ConfigDict(from_attributes=True)


class BindNumbersResponse(BaseModel):
    registration: RegistrationResponse
    results: list[BindResultResponse]


class RemoveNumbersResponse(BaseModel):
    registration: RegistrationResponse
    removed: list[str]


# Attempt log and audit events


class AttemptResponse(BaseModel):
    """Response schema for a compliance attempt."""

    id: str
    registration_id: str
    attempt_type: str
    subject: str
    idempotency_key: str
    status: str
    request_data: dict | None
    response_data: dict | None
    error_code: str | None
    error_message: str | None
    upstream_ref: str | None
    created_at: str
    completed_at: str | None

    @field_validator("request_data", "response_data", mode="before")
    @classmethod
    def _parse_payload(cls, v: str | dict | None) -> dict | None:
        return _parse_json(v)

    model_config = ConfigDict(from_attributes=True)


class AttemptListResponse(BaseModel):
    registration_id: str
    attempts: list[AttemptResponse]
    total: int


class EventResponse(BaseModel):
    """Response schema for an audit event."""

    id: str
    registration_id: str
    timestamp: str
    level: str
    event_type: str
    message: str
    details: dict | None

    @field_validator("details", mode="before")
    @classmethod
    def _parse_details(cls, v: str | dict | None) -> dict | None:
        return _parse_json(v)

    model_config = ConfigDict(from_attributes=True)


class EventListResponse(BaseModel):
    registration_id: str
    events: list[EventResponse]


# Operations


class ReconcileResultResponse(BaseModel):
    attempt_id: str
    attempt_type: str
    subject: str
    action: str
    detail: str | None = None

    model_config = ConfigDict(from_attributes=True)


class ReconcileReportResponse(BaseModel):
    registration_id: str
    results: list[ReconcileResultResponse]
    counts: dict[str, int]


class SweepResponse(BaseModel):
    visited: int
    reconciled: int
    transitioned: int
    failed: int


# Webhook


class ComplianceWebhook(BaseModel):
    """Status pushed by the compliance API."""

    model_config = ConfigDict(populate_by_name=True)

    upstream_ref: str = Field(..., min_length=1, alias="upstreamRef")
    status: str = Field(..., min_length=1)
    reason: str | None = None


class WebhookResponse(BaseModel):
    upstream_ref: str
    entity: str
    entity_id: str
    status: str
    changed: bool
    registrations: list[str]


# Error response schema


class ErrorResponse(BaseModel):
    """Standard error response."""

    error_code: str
    message: str
    remediation: str | None = None
    is_retryable: bool = False
    field_errors: dict[str, str] | None = None
    details: dict | None = None
