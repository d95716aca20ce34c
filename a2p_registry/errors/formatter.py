"""Error formatting utilities.

This module provides:
- A2PError, the display form of an application error
- Conversion from typed domain exceptions to registry codes
- Error formatting for CLI and API output
"""

from dataclasses import dataclass, field

from a2p_registry.errors.domain import (
    ActiveBrandExistsError,
    CancellationNotAllowed,
    ConflictError,
    DomainError,
    GatewayError,
    InvalidStateTransition,
    NotFoundError,
    NumberAlreadyBoundError,
    ReconciliationRequired,
    StaleStateError,
    ValidationError,
)
from a2p_registry.errors.registry import get_error


@dataclass
class A2PError(Exception):
    """Application error with code, message, and context.

    Attributes:
        code: Error code in E-XXXX format.
        message: Human-readable error message.
        remediation: Action user should take to resolve.
        field_errors: Per-field validation messages, if applicable.
        is_retryable: Whether the operation can be retried without user action.
        details: Additional context dictionary.
    """

    code: str
    message: str
    remediation: str
    field_errors: dict[str, str] = field(default_factory=dict)
    is_retryable: bool = False
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"

    @classmethod
    def from_code(cls, code: str, **kwargs: object) -> "A2PError":
        """Create error from registry code with context substitution.

        Args:
            code: Error code in E-XXXX format.
            **kwargs: Context values for message template substitution.
                Special keys 'field_errors' and 'details' populate the
                matching fields rather than the message.

        Returns:
            A2PError instance with formatted message.
        """
        field_errors = kwargs.get("field_errors", {})
        if not isinstance(field_errors, dict):
            field_errors = {}
        details = kwargs.get("details", {})
        if not isinstance(details, dict):
            details = {}

        error_def = get_error(code)
        if not error_def:
            return cls(
                code=code,
                message=f"Unknown error: {code}",
                remediation="Contact support.",
                field_errors=field_errors,
                details=details,
            )

        message = error_def.message_template
        try:
            template_kwargs = {
                k: v for k, v in kwargs.items() if k not in ("field_errors", "details")
            }
            message = message.format(**template_kwargs)
        except KeyError:
            # Keep template if some placeholders are missing
            pass

        return cls(
            code=error_def.code,
            message=message,
            remediation=error_def.remediation,
            is_retryable=error_def.is_retryable,
            field_errors=field_errors,
            details=details,
        )


def error_from_exception(exc: DomainError) -> A2PError:
    """Map a typed domain exception to its registry error.

    Args:
        exc: Exception raised by the service layer.

    Returns:
        A2PError carrying the matching E-code.
    """
    if isinstance(exc, GatewayError):
        error = A2PError.from_code(exc.code, reason=str(exc))
        error.message = str(exc)
        return error
    if isinstance(exc, ValidationError):
        return A2PError(
            code=exc.code,
            message=str(exc),
            remediation="Correct the listed fields and retry.",
            field_errors=dict(exc.field_errors),
        )
    if isinstance(exc, StaleStateError):
        return A2PError.from_code("E-2001", registration_id=exc.registration_id)
    if isinstance(exc, NumberAlreadyBoundError):
        return A2PError.from_code("E-2002", value=exc.phone_number)
    if isinstance(exc, InvalidStateTransition):
        return A2PError.from_code("E-2003", current=exc.current, target=exc.target)
    if isinstance(exc, CancellationNotAllowed):
        return A2PError.from_code("E-2003", current=exc.status, target="abandoned")
    if isinstance(exc, ReconciliationRequired):
        return A2PError.from_code("E-2004", attempt_type=exc.attempt_type)
    if isinstance(exc, ActiveBrandExistsError):
        return A2PError.from_code("E-2005", tenant_id=exc.tenant_id)
    if isinstance(exc, NotFoundError):
        return A2PError.from_code(
            "E-2006", resource_type=exc.resource_type, identifier=exc.identifier
        )
    if isinstance(exc, ConflictError):
        return A2PError(code="E-2003", message=str(exc), remediation="Reload and retry.")
    return A2PError(code="E-4001", message=str(exc), remediation="Contact support.")


def format_error(error: A2PError, include_remediation: bool = True) -> str:
    """Format error for display to user.

    Args:
        error: The A2PError to format.
        include_remediation: Whether to include remediation steps.

    Returns:
        Multi-line formatted string suitable for user display.
    """
    lines = [f"{error.code}: {error.message}"]

    for field_path, message in sorted(error.field_errors.items()):
        lines.append(f"  {field_path}: {message}")

    if include_remediation:
        lines.append(f"  Action: {error.remediation}")

    return "\n".join(lines)
