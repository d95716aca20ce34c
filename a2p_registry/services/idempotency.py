"""Idempotency key and payload fingerprint generation for upstream submissions."""

import hashlib
import json
from typing import Any


def generate_idempotency_key(registration_id: str, attempt_type: str, attempt_id: str) -> str:
    """Generate the idempotency key sent with one compliance call.

    The key is fixed for the life of the attempt, so transport-level
    retries of the same attempt can never create a second upstream record,
    while a fresh attempt (new attempt id) gets a new key.

    Args:
        registration_id: UUID of the owning registration.
        attempt_type: Attempt type value (e.g. 'brand_registration').
        attempt_id: UUID of the attempt log row.

    Returns:
        Idempotency key string: '{registration_id}:{attempt_type}:{attempt_id}'.
    """
    return f"{registration_id}:{attempt_type}:{attempt_id}"


def payload_hash(payload: dict[str, Any]) -> str:
    """SHA-256 of a payload's canonical JSON form.

    Used to tell whether a rejected brand or campaign has been edited
    since it was last submitted.
    """
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
