"""FastAPI routes for the registration wizard and lifecycle.

Provides endpoints to start a registration, save wizard steps, advance the
lifecycle, bind or remove numbers, and read the status projection and
audit trail. Domain errors propagate to the handlers in ``api.main``.
"""

from fastapi import APIRouter, Depends, Path, Query
from fastapi.responses import PlainTextResponse
from sqlalchemy.orm import Session

from a2p_registry.api.middleware.auth import get_acting_user
from a2p_registry.api.schemas import (
    BindNumbersResponse,
    BindResultResponse,
    EventListResponse,
    EventResponse,
    NumbersRequest,
    RegistrationCreate,
    RegistrationResponse,
    RegistrationStatusResponse,
    RemoveNumbersResponse,
    StepSubmit,
)
from a2p_registry.cli.config import A2PConfig
from a2p_registry.db.connection import get_db
from a2p_registry.db.models import A2PRegistration
from a2p_registry.errors import ValidationError
from a2p_registry.services.client_provider import get_config, get_gateway, get_inventory
from a2p_registry.services.gateway_client import ComplianceGatewayClient
from a2p_registry.services.inventory import PhoneNumberInventory
from a2p_registry.services.orchestrator import RegistrationOrchestrator

router = APIRouter(prefix="/registrations", tags=["registrations"])


def get_orchestrator(
    db: Session = Depends(get_db),
    gateway: ComplianceGatewayClient = Depends(get_gateway),
    inventory: PhoneNumberInventory = Depends(get_inventory),
    config: A2PConfig = Depends(get_config),
) -> RegistrationOrchestrator:
    """Dependency to get a RegistrationOrchestrator bound to the request session."""
    return RegistrationOrchestrator(db, gateway, inventory, settings=config.orchestrator)


@router.post("", response_model=RegistrationResponse, status_code=201)
def start_registration(
    body: RegistrationCreate,
    user_id: str = Depends(get_acting_user),
    orchestrator: RegistrationOrchestrator = Depends(get_orchestrator),
) -> A2PRegistration:
    """Start a registration, or resume the tenant's active one.

    Args:
        body: Tenant to register.
        user_id: Acting user from X-User-Id.
        orchestrator: Orchestrator dependency.

    Returns:
        The active registration.
    """
    return orchestrator.start_registration(body.tenant_id, user_id)


@router.get("/{registration_id}", response_model=RegistrationResponse)
def get_registration(
    registration_id: str,
    orchestrator: RegistrationOrchestrator = Depends(get_orchestrator),
) -> A2PRegistration:
    return orchestrator.store.get(registration_id)


@router.get("/{registration_id}/status", response_model=RegistrationStatusResponse)
def get_registration_status(
    registration_id: str,
    orchestrator: RegistrationOrchestrator = Depends(get_orchestrator),
) -> dict:
    """Status projection: lifecycle, sub-entities, per-number state, last error."""
    return orchestrator.get_registration_status(registration_id)


@router.put("/{registration_id}/steps/{step}", response_model=RegistrationResponse)
def save_step(
    registration_id: str,
    body: StepSubmit,
    step: int = Path(..., ge=1, le=5),
    user_id: str = Depends(get_acting_user),
    orchestrator: RegistrationOrchestrator = Depends(get_orchestrator),
) -> A2PRegistration:
    """Validate and save one wizard step.

    Steps: 1 brand, 2 campaign, 3 phone numbers, 4 compliance, 5 review.
    Pass ``expected_version`` to fail with 409 instead of overwriting a
    concurrent edit.
    """
    if body.data is None and step != 5:
        raise ValidationError(f"Step {step} requires data", {"data": "missing"})
    return orchestrator.save_step(
        registration_id, step, body.data, user_id, expected_version=body.expected_version
    )


@router.post("/{registration_id}/advance", response_model=RegistrationResponse)
def advance(
    registration_id: str,
    orchestrator: RegistrationOrchestrator = Depends(get_orchestrator),
) -> A2PRegistration:
    """Perform the next outstanding unit of work for the registration."""
    return orchestrator.advance(registration_id)


@router.post("/{registration_id}/poll", response_model=RegistrationResponse)
def poll(
    registration_id: str,
    orchestrator: RegistrationOrchestrator = Depends(get_orchestrator),
) -> A2PRegistration:
    return orchestrator.poll_status(registration_id)


@router.post("/{registration_id}/numbers/bind", response_model=BindNumbersResponse)
def bind_numbers(
    registration_id: str,
    body: NumbersRequest,
    orchestrator: RegistrationOrchestrator = Depends(get_orchestrator),
) -> BindNumbersResponse:
    """Bind numbers to the campaign. Omit ``phone_numbers`` to bind every selected number."""
    registration, results = orchestrator.bind_numbers(registration_id, body.phone_numbers)
    return BindNumbersResponse(
        registration=RegistrationResponse.model_validate(registration),
        results=[BindResultResponse.model_validate(r) for r in results],
    )


@router.post("/{registration_id}/numbers/remove", response_model=RemoveNumbersResponse)
def remove_numbers(
    registration_id: str,
    body: NumbersRequest,
    orchestrator: RegistrationOrchestrator = Depends(get_orchestrator),
) -> RemoveNumbersResponse:
    if not body.phone_numbers:
        raise ValidationError("phone_numbers is required", {"phone_numbers": "missing"}, "E-1003")
    registration, removed = orchestrator.remove_numbers(registration_id, body.phone_numbers)
    return RemoveNumbersResponse(
        registration=RegistrationResponse.model_validate(registration),
        removed=removed,
    )


@router.post("/{registration_id}/abandon", response_model=RegistrationResponse)
def abandon(
    registration_id: str,
    orchestrator: RegistrationOrchestrator = Depends(get_orchestrator),
) -> A2PRegistration:
    """Abandon a draft. Registrations past draft return 409."""
    return orchestrator.abandon(registration_id)


@router.post("/{registration_id}/resubmit", response_model=RegistrationResponse, status_code=201)
def resubmit(
    registration_id: str,
    user_id: str = Depends(get_acting_user),
    orchestrator: RegistrationOrchestrator = Depends(get_orchestrator),
) -> A2PRegistration:
    """Start a new draft from a rejected registration."""
    return orchestrator.resubmit(registration_id, user_id)


@router.get("/{registration_id}/events", response_model=EventListResponse)
def list_events(
    registration_id: str,
    limit: int = Query(1000, ge=1, le=5000),
    orchestrator: RegistrationOrchestrator = Depends(get_orchestrator),
) -> EventListResponse:
    events = orchestrator.list_events(registration_id, limit=limit)
    return EventListResponse(
        registration_id=registration_id,
        events=[EventResponse.model_validate(e) for e in events],
    )


@router.get("/{registration_id}/events/export", response_class=PlainTextResponse)
def export_events(
    registration_id: str,
    orchestrator: RegistrationOrchestrator = Depends(get_orchestrator),
) -> str:
    """Audit trail as plain text, for attaching to support tickets."""
    orchestrator.store.get(registration_id)
    return orchestrator.events.export_text(registration_id)
