"""Operator-only routes: attempt audit, forced reconciliation, status sweep."""

from fastapi import APIRouter, Depends

from a2p_registry.api.middleware.auth import require_operator
from a2p_registry.api.routes.registrations import get_orchestrator
from a2p_registry.api.schemas import (
    AttemptListResponse,
    AttemptResponse,
    ReconcileReportResponse,
    ReconcileResultResponse,
    SweepResponse,
)
from a2p_registry.services.orchestrator import RegistrationOrchestrator
from a2p_registry.services.poller import run_status_sweep

router = APIRouter(prefix="/ops", tags=["ops"], dependencies=[Depends(require_operator)])


@router.get("/registrations/{registration_id}/attempts", response_model=AttemptListResponse)
def list_attempts(
    registration_id: str,
    orchestrator: RegistrationOrchestrator = Depends(get_orchestrator),
) -> AttemptListResponse:
    """Every compliance API attempt for a registration, oldest first."""
    attempts = orchestrator.list_attempts(registration_id)
    return AttemptListResponse(
        registration_id=registration_id,
        attempts=[AttemptResponse.model_validate(a) for a in attempts],
        total=len(attempts),
    )


@router.post("/registrations/{registration_id}/reconcile", response_model=ReconcileReportResponse)
def force_reconcile(
    registration_id: str,
    orchestrator: RegistrationOrchestrator = Depends(get_orchestrator),
) -> ReconcileReportResponse:
    """Resolve all pending attempts now, regardless of age for status checks."""
    report = orchestrator.force_reconcile(registration_id)
    return ReconcileReportResponse(
        registration_id=report.registration_id,
        results=[ReconcileResultResponse.model_validate(r) for r in report.results],
        counts=report.counts(),
    )


@router.post("/sweep", response_model=SweepResponse)
def sweep(
    orchestrator: RegistrationOrchestrator = Depends(get_orchestrator),
) -> dict:
    """Run one status sweep over non-terminal registrations."""
    return run_status_sweep(
        orchestrator.db,
        orchestrator.registrar.gateway,
        orchestrator.binder.inventory,
        settings=orchestrator.settings,
    )
