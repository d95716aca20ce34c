"""Typed domain exceptions for API error mapping.

Services raise these; routes and the CLI catch specific types to choose
an HTTP status code or exit message.

Usage:
    # In service layer
    raise NotFoundError("Registration", registration_id)

    # In route handler
    try:
        registration = store.get(registration_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
"""


class DomainError(Exception):
    """Base exception for all domain errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message)


class NotFoundError(DomainError):
    """Resource was not found. Maps to HTTP 404."""

    def __init__(self, resource_type: str, identifier: str) -> None:
        super().__init__(f"{resource_type} '{identifier}' not found")
        self.resource_type = resource_type
        self.identifier = identifier


class ValidationError(DomainError):
    """Payload failed local checks. Maps to HTTP 400.

    Never dispatched upstream and never recorded as an attempt.

    Attributes:
        field_errors: Mapping of dotted field path to message.
        code: E-1xxx registry code for the failing step.
    """

    def __init__(
        self,
        message: str,
        field_errors: dict[str, str] | None = None,
        code: str = "E-1001",
    ) -> None:
        super().__init__(message)
        self.field_errors = field_errors or {}
        self.code = code


class ConflictError(DomainError):
    """Resource conflict. Maps to HTTP 409."""

    def __init__(self, message: str) -> None:
        super().__init__(message)


class StaleStateError(ConflictError):
    """A version-checked write lost a race with another writer."""

    def __init__(self, registration_id: str, expected_version: int) -> None:
        super().__init__(
            f"Registration '{registration_id}' changed concurrently "
            f"(expected version {expected_version})"
        )
        self.registration_id = registration_id
        self.expected_version = expected_version


class NumberAlreadyBoundError(ConflictError):
    """Phone number is held by another active registration."""

    def __init__(self, phone_number: str, owner_registration_id: str | None = None) -> None:
        super().__init__(f"Phone number {phone_number} is already bound")
        self.phone_number = phone_number
        self.owner_registration_id = owner_registration_id


class ActiveBrandExistsError(ConflictError):
    """Tenant already has a non-rejected brand."""

    def __init__(self, tenant_id: str, brand_id: str) -> None:
        super().__init__(f"Tenant '{tenant_id}' already has active brand '{brand_id}'")
        self.tenant_id = tenant_id
        self.brand_id = brand_id


class InvalidStateTransition(ConflictError):
    """Requested registration transition is not allowed. Maps to HTTP 409."""

    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Cannot transition registration from '{current}' to '{target}'")
        self.current = current
        self.target = target


class CancellationNotAllowed(ConflictError):
    """Registration can no longer be abandoned locally."""

    def __init__(self, registration_id: str, status: str) -> None:
        super().__init__(
            f"Registration '{registration_id}' is '{status}'; only drafts can be abandoned"
        )
        self.registration_id = registration_id
        self.status = status


class GatewayError(DomainError):
    """Base for errors surfaced from the upstream compliance API.

    Attributes:
        code: E-XXXX error code from the registry.
        attempt_id: Attempt log row that recorded the failure, if any.
    """

    def __init__(self, message: str, code: str, attempt_id: str | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.attempt_id = attempt_id


class RetriableGatewayError(GatewayError):
    """Transient upstream failure; status unchanged, safe to retry. Maps to HTTP 503."""


class FatalGatewayError(GatewayError):
    """Upstream explicitly rejected the submission. Maps to HTTP 422."""


class ReconciliationRequired(DomainError):
    """A pending attempt must be resolved before another dispatch.

    Maps to HTTP 409 with retryable=true.
    """

    def __init__(self, attempt_id: str, attempt_type: str, subject: str) -> None:
        super().__init__(
            f"Attempt '{attempt_id}' ({attempt_type} for {subject}) is still "
            "pending upstream; retry after it is reconciled"
        )
        self.attempt_id = attempt_id
        self.attempt_type = attempt_type
        self.subject = subject
