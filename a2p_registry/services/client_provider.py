"""Process-global configuration and upstream client singletons.

API routes and the CLI import their accessors from here; nothing else
constructs a ComplianceGatewayClient or HttpPhoneNumberInventory for
production use. Tests replace them through FastAPI dependency overrides
or by passing their own instances.
"""

import logging
import os
import threading

from a2p_registry.cli.config import A2PConfig, load_config
from a2p_registry.services.gateway_client import ComplianceGatewayClient
from a2p_registry.services.inventory import HttpPhoneNumberInventory

logger = logging.getLogger(__name__)

_lock = threading.Lock()
_config: A2PConfig | None = None
_gateway: ComplianceGatewayClient | None = None
_inventory: HttpPhoneNumberInventory | None = None


def get_config() -> A2PConfig:
    """Load configuration once per process (path from A2P_CONFIG_PATH if set)."""
    global _config
    if _config is None:
        with _lock:
            if _config is None:
                _config = load_config(os.environ.get("A2P_CONFIG_PATH"))
    return _config


def get_gateway() -> ComplianceGatewayClient:
    """Get or create the shared compliance API client."""
    global _gateway
    if _gateway is None:
        config = get_config()
        with _lock:
            if _gateway is None:
                _gateway = ComplianceGatewayClient.from_config(config.gateway)
                logger.info("Compliance gateway client initialized for %s", config.gateway.base_url)
    return _gateway


def get_inventory() -> HttpPhoneNumberInventory:
    """Get or create the shared phone-number inventory client."""
    global _inventory
    if _inventory is None:
        config = get_config()
        with _lock:
            if _inventory is None:
                _inventory = HttpPhoneNumberInventory.from_config(config.inventory)
                logger.info("Inventory client initialized for %s", config.inventory.base_url)
    return _inventory


def shutdown_clients() -> None:
    """Close the shared clients and forget the cached configuration."""
    global _config, _gateway, _inventory
    with _lock:
        if _gateway is not None:
            _gateway.close()
        if _inventory is not None:
            _inventory.close()
        _gateway = None
        _inventory = None
        _config = None
