"""Compliance API error translation to registry codes.

Maps upstream HTTP statuses, upstream error codes and message text to the
E-3xxx codes, and classifies every failure as retriable or fatal. The
classification decides whether the orchestrator may dispatch the same
submission again or must move the sub-entity to rejected.
"""

from a2p_registry.errors.registry import get_error

# Transport-level or transient upstream conditions. 401/403 are included
# because a rotated credential is fixed by configuration, not by the tenant.
RETRIABLE_HTTP_STATUSES = frozenset({401, 403, 408, 425, 429, 500, 502, 503, 504})

# Upstream looked at the payload and refused it.
FATAL_HTTP_STATUSES = frozenset({400, 409, 422})

# Map of upstream error codes to registry codes
UPSTREAM_ERROR_MAP: dict[str, str] = {
    "rate_limited": "E-3002",
    "too_many_requests": "E-3002",
    "unauthorized": "E-3004",
    "forbidden": "E-3004",
    "service_unavailable": "E-3001",
    "upstream_timeout": "E-3001",
    "invalid_payload": "E-3003",
    "invalid_tax_id": "E-3003",
    "brand_rejected": "E-3003",
    "campaign_rejected": "E-3003",
    "number_not_eligible": "E-3003",
    "duplicate_submission": "E-3003",
}

# Upstream messages that require pattern matching
UPSTREAM_MESSAGE_PATTERNS: dict[str, str] = {
    "rate limit": "E-3002",
    "unauthorized": "E-3004",
    "invalid credentials": "E-3004",
    "temporarily unavailable": "E-3001",
    "service unavailable": "E-3001",
    "already assigned": "E-3003",
    "does not meet requirements": "E-3003",
    "timed out": "E-3001",
    "rejected": "E-3003",
    "invalid ein": "E-3003",
}


def classify_http_status(status_code: int) -> str:
    """Classify an upstream HTTP status.

    Args:
        status_code: HTTP status returned by the compliance API.

    Returns:
        'accepted' for 2xx, 'not_found' for 404, 'retriable' for
        transient failures, otherwise 'rejected'.
    """
    if 200 <= status_code < 300:
        return "accepted"
    if status_code == 404:
        return "not_found"
    if status_code in RETRIABLE_HTTP_STATUSES or status_code >= 500:
        return "retriable"
    return "rejected"


def translate_gateway_error(
    status_code: int | None,
    upstream_code: str | None,
    upstream_message: str | None,
) -> tuple[str, str, str]:
    """Translate an upstream failure to a registry error.

    Args:
        status_code: HTTP status, or None for network errors and timeouts.
        upstream_code: Error code from the response body, if any.
        upstream_message: Error message from the response body, if any.

    Returns:
        Tuple of (error_code, formatted_message, remediation).
    """
    reason = upstream_message or upstream_code or (
        f"HTTP {status_code}" if status_code else "no response"
    )

    code = _lookup_code(status_code, upstream_code, upstream_message)
    error = get_error(code)
    if error:
        return (error.code, _format_message(error.message_template, reason=reason), error.remediation)

    return (
        "E-3005",
        f"Compliance API error: {reason}",
        "Contact support with this error message for assistance.",
    )


def _lookup_code(
    status_code: int | None,
    upstream_code: str | None,
    upstream_message: str | None,
) -> str:
    if upstream_code and upstream_code.lower() in UPSTREAM_ERROR_MAP:
        return UPSTREAM_ERROR_MAP[upstream_code.lower()]

    if upstream_message:
        message_lower = upstream_message.lower()
        for pattern, code in UPSTREAM_MESSAGE_PATTERNS.items():
            if pattern in message_lower:
                return code

    if status_code is None:
        return "E-3001"
    if status_code == 429:
        return "E-3002"
    if status_code in (401, 403):
        return "E-3004"
    if status_code in RETRIABLE_HTTP_STATUSES or status_code >= 500:
        return "E-3001"
    if status_code in FATAL_HTTP_STATUSES:
        return "E-3003"
    return "E-3005"


def _format_message(template: str, **kwargs: object) -> str:
    """Format a message template with context, ignoring missing keys."""
    try:
        return template.format(**kwargs)
    except KeyError:
        return template


def extract_gateway_error(response: dict) -> tuple[str | None, str | None]:
    """Extract error code and message from a compliance API response body.

    Handles ``{"error": {"code", "message"}}``, ``{"errors": [...]}`` and
    flat ``{"code", "message"}`` shapes.

    Args:
        response: Decoded response body.

    Returns:
        Tuple of (error_code, error_message), either may be None.
    """
    if isinstance(response.get("error"), dict):
        err = response["error"]
        return (err.get("code"), err.get("message"))

    if response.get("errors"):
        err = response["errors"][0]
        if isinstance(err, dict):
            return (err.get("code"), err.get("message"))
        return (None, str(err))

    if "code" in response or "message" in response:
        return (response.get("code"), response.get("message"))

    return (None, None)
