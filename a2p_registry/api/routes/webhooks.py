"""Compliance API webhook receiver.

The upstream pushes ``{upstream_ref, status, reason?}`` when a brand or
campaign reaches a final status. Deliveries may repeat; applying the same
status twice is a no-op.
"""

import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from pydantic import ValidationError as PydanticValidationError
from starlette.concurrency import run_in_threadpool

from a2p_registry.api.middleware.auth import verify_webhook_signature
from a2p_registry.api.routes.registrations import get_orchestrator
from a2p_registry.api.schemas import ComplianceWebhook, WebhookResponse
from a2p_registry.cli.config import A2PConfig
from a2p_registry.errors import ValidationError
from a2p_registry.services.client_provider import get_config
from a2p_registry.services.orchestrator import RegistrationOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/compliance", response_model=WebhookResponse)
async def compliance_webhook(
    request: Request,
    x_compliance_signature: str | None = Header(None),
    config: A2PConfig = Depends(get_config),
    orchestrator: RegistrationOrchestrator = Depends(get_orchestrator),
) -> dict:
    """Apply a status update pushed by the compliance API.

    Raises:
        HTTPException: 401 when the signature does not match the body.
    """
    body = await request.body()
    if not verify_webhook_signature(body, x_compliance_signature, config.api.webhook_secret):
        logger.warning("Rejected compliance webhook with a bad signature")
        raise HTTPException(status_code=401, detail="Invalid webhook signature")

    try:
        payload = ComplianceWebhook.model_validate_json(body)
    except PydanticValidationError as e:
        raise ValidationError(
            "Webhook body must be {upstream_ref, status, reason?}",
            {".".join(str(p) for p in err["loc"]): err["msg"] for err in e.errors()},
            code="E-1001",
        ) from e

    logger.info("Compliance webhook: %s -> %s", payload.upstream_ref, payload.status)
    return await run_in_threadpool(
        orchestrator.apply_upstream_status, payload.upstream_ref, payload.status, payload.reason
    )
