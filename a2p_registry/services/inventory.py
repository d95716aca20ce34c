"""Phone-number inventory client.

The inventory is an external service that knows which numbers each tenant
owns. The orchestrator only reads from it: to populate the selection and
to verify a number belongs to the tenant before binding.
"""

import logging
from typing import Any, Protocol

import httpx

from a2p_registry.errors import RetriableGatewayError

logger = logging.getLogger(__name__)


class PhoneNumberInventory(Protocol):
    """Read-only view of a tenant's purchased numbers."""

    def list_available_numbers(self, tenant_id: str) -> list[str]:
        """Return the tenant's owned numbers in E.164 form."""
        ...


class HttpPhoneNumberInventory:
    """Inventory backed by ``GET /v1/tenants/{tenant_id}/phone-numbers``.

    The response body is either a JSON list of numbers or an object with a
    ``phone_numbers`` list whose items are strings or ``{"phone_number": ...}``.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout_seconds: float = 10.0,
        client: httpx.Client | None = None,
    ) -> None:
        headers = {"Accept": "application/json"}
        if api_key:
            headers["X-API-Key"] = api_key
        self._client = client or httpx.Client(
            base_url=base_url.rstrip("/"), timeout=timeout_seconds, headers=headers
        )

    @classmethod
    def from_config(cls, config: Any) -> "HttpPhoneNumberInventory":
        """Build from an InventoryConfig section."""
        return cls(
            base_url=config.base_url,
            api_key=config.api_key,
            timeout_seconds=config.timeout_seconds,
        )

    def close(self) -> None:
        self._client.close()

    def list_available_numbers(self, tenant_id: str) -> list[str]:
        """Fetch the tenant's numbers.

        Raises:
            RetriableGatewayError: Inventory unreachable or returned an error.
        """
        try:
            response = self._client.get(f"/v1/tenants/{tenant_id}/phone-numbers")
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("Inventory lookup for tenant %s failed: %s", tenant_id, e)
            raise RetriableGatewayError(
                f"Phone-number inventory unavailable: {type(e).__name__}", code="E-3001"
            ) from e

        body = response.json()
        items = body.get("phone_numbers", []) if isinstance(body, dict) else body
        numbers = []
        for item in items:
            if isinstance(item, dict):
                item = item.get("phone_number")
            if item:
                numbers.append(str(item))
        return numbers
