"""FastAPI route modules.

Exports all route modules for inclusion in the main application.
"""

from a2p_registry.api.routes import ops, registrations, webhooks

__all__ = [
    "ops",
    "registrations",
    "webhooks",
]
