"""Error code registry with E-XXXX format codes.

Categories:
- E-1xxx: Validation errors (wizard payloads)
- E-2xxx: Conflict and lifecycle errors
- E-3xxx: Compliance gateway errors
- E-4xxx: System/internal errors

Each error includes a code, title, message template, and remediation steps.
"""

from dataclasses import dataclass
from enum import Enum


class ErrorCategory(str, Enum):
    """Categories for error codes."""

    VALIDATION = "validation"  # E-1xxx
    CONFLICT = "conflict"  # E-2xxx
    GATEWAY = "gateway"  # E-3xxx
    SYSTEM = "system"  # E-4xxx


@dataclass
class ErrorCode:
    """Definition of an error code with metadata.

    Attributes:
        code: Error code in E-XXXX format.
        category: Error category for grouping.
        title: Short title for display.
        message_template: Message with {placeholders} for context.
        remediation: Action user should take to resolve.
        is_retryable: Whether the operation can be retried without user action.
    """

    code: str
    category: ErrorCategory
    title: str
    message_template: str
    remediation: str
    is_retryable: bool = False


ERROR_REGISTRY: dict[str, ErrorCode] = {
    # Validation errors (E-1xxx)
    "E-1001": ErrorCode(
        code="E-1001",
        category=ErrorCategory.VALIDATION,
        title="Invalid Brand Details",
        message_template="Brand details failed validation: {details}",
        remediation="Correct the highlighted business fields and save the brand step again.",
    ),
    "E-1002": ErrorCode(
        code="E-1002",
        category=ErrorCategory.VALIDATION,
        title="Invalid Campaign Details",
        message_template="Campaign details failed validation: {details}",
        remediation="Correct the campaign fields and sample messages, then save again.",
    ),
    "E-1003": ErrorCode(
        code="E-1003",
        category=ErrorCategory.VALIDATION,
        title="Invalid Phone Number",
        message_template="Phone number '{value}' is not a valid E.164 number.",
        remediation="Use +<country code><number>, e.g. +15551234567.",
    ),
    "E-1004": ErrorCode(
        code="E-1004",
        category=ErrorCategory.VALIDATION,
        title="Compliance Attestations Incomplete",
        message_template="Compliance step is incomplete: {details}",
        remediation="Provide privacy and terms URLs and accept all attestations.",
    ),
    "E-1005": ErrorCode(
        code="E-1005",
        category=ErrorCategory.VALIDATION,
        title="Number Not In Inventory",
        message_template="Phone number {value} is not owned by this account.",
        remediation="Select a number from your purchased inventory.",
    ),
    # Conflict / lifecycle errors (E-2xxx)
    "E-2001": ErrorCode(
        code="E-2001",
        category=ErrorCategory.CONFLICT,
        title="Concurrent Update",
        message_template="Registration {registration_id} was updated by another request.",
        remediation="Reload the registration and retry the step.",
        is_retryable=True,
    ),
    "E-2002": ErrorCode(
        code="E-2002",
        category=ErrorCategory.CONFLICT,
        title="Number Already Bound",
        message_template="Phone number {value} is already bound to another registration.",
        remediation="Remove the number from your selection or release it from the other registration.",
    ),
    "E-2003": ErrorCode(
        code="E-2003",
        category=ErrorCategory.CONFLICT,
        title="Invalid Lifecycle Transition",
        message_template="Registration cannot move from {current} to {target}.",
        remediation="Check the registration status before retrying.",
    ),
    "E-2004": ErrorCode(
        code="E-2004",
        category=ErrorCategory.CONFLICT,
        title="Submission In Flight",
        message_template="A {attempt_type} attempt is still pending upstream.",
        remediation="Wait for reconciliation to resolve the pending attempt, then retry.",
        is_retryable=True,
    ),
    "E-2005": ErrorCode(
        code="E-2005",
        category=ErrorCategory.CONFLICT,
        title="Active Brand Exists",
        message_template="Tenant {tenant_id} already has an active brand.",
        remediation="Reuse the existing brand or wait for it to be rejected before registering a new one.",
    ),
    "E-2006": ErrorCode(
        code="E-2006",
        category=ErrorCategory.CONFLICT,
        title="Not Found",
        message_template="{resource_type} '{identifier}' not found.",
        remediation="Check the identifier and retry.",
    ),
    # Compliance gateway errors (E-3xxx)
    "E-3001": ErrorCode(
        code="E-3001",
        category=ErrorCategory.GATEWAY,
        title="Compliance API Unavailable",
        message_template="Compliance API is not responding: {reason}",
        remediation="Retry later. The submission was not accepted and is safe to resend.",
        is_retryable=True,
    ),
    "E-3002": ErrorCode(
        code="E-3002",
        category=ErrorCategory.GATEWAY,
        title="Compliance API Rate Limited",
        message_template="Too many requests to the compliance API.",
        remediation="Wait a minute and retry.",
        is_retryable=True,
    ),
    "E-3003": ErrorCode(
        code="E-3003",
        category=ErrorCategory.GATEWAY,
        title="Submission Rejected",
        message_template="Compliance API rejected the submission: {reason}",
        remediation="Correct the rejected details and resubmit.",
    ),
    "E-3004": ErrorCode(
        code="E-3004",
        category=ErrorCategory.GATEWAY,
        title="Compliance API Authentication Failed",
        message_template="Compliance API refused the configured credentials.",
        remediation="Check gateway.api_key in the configuration.",
        is_retryable=True,
    ),
    "E-3005": ErrorCode(
        code="E-3005",
        category=ErrorCategory.GATEWAY,
        title="Compliance API Unknown Error",
        message_template="Compliance API returned an unexpected error: {reason}",
        remediation="Contact support with error code E-3005 and the upstream message.",
    ),
    "E-3006": ErrorCode(
        code="E-3006",
        category=ErrorCategory.GATEWAY,
        title="Submission Timed Out",
        message_template="Pending {attempt_type} attempt expired with no upstream record.",
        remediation="A fresh attempt will be dispatched on the next advance.",
        is_retryable=True,
    ),
    # System errors (E-4xxx)
    "E-4001": ErrorCode(
        code="E-4001",
        category=ErrorCategory.SYSTEM,
        title="Database Error",
        message_template="Database operation failed: {details}",
        remediation="Retry the operation. Contact support if the issue persists.",
        is_retryable=True,
    ),
    "E-4002": ErrorCode(
        code="E-4002",
        category=ErrorCategory.SYSTEM,
        title="Interrupted Attempt",
        message_template="Attempt was interrupted before completion.",
        remediation="No action needed; the next poll repeats the check.",
        is_retryable=True,
    ),
}


def get_error(code: str) -> ErrorCode | None:
    """Get error definition by code.

    Args:
        code: Error code in E-XXXX format.

    Returns:
        ErrorCode if found, None otherwise.
    """
    return ERROR_REGISTRY.get(code)


def get_errors_by_category(category: ErrorCategory) -> list[ErrorCode]:
    """Get all errors in a category."""
    return [e for e in ERROR_REGISTRY.values() if e.category == category]
