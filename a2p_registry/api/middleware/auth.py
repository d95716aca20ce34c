"""API-key auth, operator access, webhook signatures and acting-user identity.

The registry trusts an external auth layer for who the user is: the
acting user arrives in ``X-User-Id``. What is enforced here:

- ``X-API-Key`` on every ``/api/`` path when ``api.api_key`` is configured
  (the compliance webhook is exempt; it is signed instead).
- ``X-Operator-Key`` on the operations routes when ``api.operator_api_key``
  is configured.
- ``X-Compliance-Signature`` (hex HMAC-SHA256 of the raw body) on the
  webhook when ``api.webhook_secret`` is configured.

An empty key or secret disables the corresponding check.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import threading
import time

from fastapi import Header, HTTPException, Request
from fastapi.responses import JSONResponse, Response

from a2p_registry.services.client_provider import get_config

logger = logging.getLogger(__name__)

_PUBLIC_PATH_PREFIXES = (
    "/health",
    "/docs",
    "/redoc",
    "/openapi.json",
    "/api/v1/webhooks/",
)

# Auth failures allowed per client IP within the window
_AUTH_FAIL_MAX = 10
_AUTH_FAIL_WINDOW_SECONDS = 300
_auth_failures: dict[str, list[float]] = {}
_auth_lock = threading.Lock()


def _get_client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _is_rate_limited(client_ip: str) -> bool:
    """Check if the client IP has exceeded the auth failure rate limit."""
    with _auth_lock:
        now = time.monotonic()
        timestamps = [
            t for t in _auth_failures.get(client_ip, []) if now - t < _AUTH_FAIL_WINDOW_SECONDS
        ]
        _auth_failures[client_ip] = timestamps
        return len(timestamps) >= _AUTH_FAIL_MAX


def _record_auth_failure(client_ip: str) -> None:
    with _auth_lock:
        _auth_failures.setdefault(client_ip, []).append(time.monotonic())


def reset_rate_limiter() -> None:
    """Reset the rate limiter state. Used by tests."""
    with _auth_lock:
        _auth_failures.clear()


def should_authenticate(path: str) -> bool:
    """Return True when this path should be protected by API-key auth."""
    if path.startswith(_PUBLIC_PATH_PREFIXES):
        return False
    return path.startswith("/api/")


async def maybe_require_api_key(request: Request, call_next) -> Response:
    """FastAPI middleware entrypoint for optional API-key auth."""
    if request.method.upper() == "OPTIONS":
        return await call_next(request)

    expected_key = get_config().api.api_key
    if not expected_key or not should_authenticate(request.url.path):
        return await call_next(request)

    client_ip = _get_client_ip(request)
    if _is_rate_limited(client_ip):
        logger.warning("Auth rate limit exceeded for IP %s", client_ip)
        return JSONResponse(
            status_code=429,
            content={"detail": "Too many authentication failures. Try again later."},
        )

    provided_key = request.headers.get("X-API-Key", "")
    if not provided_key or not hmac.compare_digest(provided_key, expected_key):
        _record_auth_failure(client_ip)
        return JSONResponse(status_code=401, content={"detail": "Invalid or missing API key"})
    return await call_next(request)


def require_operator(x_operator_key: str | None = Header(None)) -> None:
    """Dependency guarding the operations routes."""
    expected = get_config().api.operator_api_key
    if not expected:
        return
    if not x_operator_key or not hmac.compare_digest(x_operator_key, expected):
        raise HTTPException(status_code=403, detail="Operator key required")


def get_acting_user(x_user_id: str | None = Header(None)) -> str:
    """Acting user id supplied by the upstream auth layer."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=400, detail="X-User-Id header is required")
    return x_user_id.strip()


def compute_signature(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_webhook_signature(body: bytes, signature: str | None, secret: str) -> bool:
    """Check a webhook body against its hex HMAC-SHA256 signature.

    Always true when no secret is configured.
    """
    if not secret:
        return True
    if not signature:
        return False
    return hmac.compare_digest(compute_signature(body, secret), signature.strip().lower())
