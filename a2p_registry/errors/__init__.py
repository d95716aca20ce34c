"""Error handling framework for the A2P registry.

This package provides:
- Typed domain exceptions raised by the service layer
- Error code registry with E-XXXX format codes
- Compliance API error translation and retriable/fatal classification
- Error formatting for CLI and API output

Error categories:
- E-1xxx: Validation errors
- E-2xxx: Conflict and lifecycle errors
- E-3xxx: Compliance gateway errors
- E-4xxx: System/internal errors
"""

from a2p_registry.errors.domain import (
    ActiveBrandExistsError,
    CancellationNotAllowed,
    ConflictError,
    DomainError,
    FatalGatewayError,
    GatewayError,
    InvalidStateTransition,
    NotFoundError,
    NumberAlreadyBoundError,
    ReconciliationRequired,
    RetriableGatewayError,
    StaleStateError,
    ValidationError,
)
from a2p_registry.errors.formatter import (
    A2PError,
    error_from_exception,
    format_error,
)
from a2p_registry.errors.gateway_translation import (
    UPSTREAM_ERROR_MAP,
    classify_http_status,
    extract_gateway_error,
    translate_gateway_error,
)
from a2p_registry.errors.registry import (
    ERROR_REGISTRY,
    ErrorCategory,
    ErrorCode,
    get_error,
    get_errors_by_category,
)

__all__ = [
    # Domain exceptions
    "DomainError",
    "NotFoundError",
    "ValidationError",
    "ConflictError",
    "StaleStateError",
    "NumberAlreadyBoundError",
    "ActiveBrandExistsError",
    "InvalidStateTransition",
    "CancellationNotAllowed",
    "GatewayError",
    "RetriableGatewayError",
    "FatalGatewayError",
    "ReconciliationRequired",
    # Registry
    "ErrorCode",
    "ErrorCategory",
    "ERROR_REGISTRY",
    "get_error",
    "get_errors_by_category",
    # Gateway translation
    "translate_gateway_error",
    "extract_gateway_error",
    "classify_http_status",
    "UPSTREAM_ERROR_MAP",
    # Formatter
    "A2PError",
    "error_from_exception",
    "format_error",
]
