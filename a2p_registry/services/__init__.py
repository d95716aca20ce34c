"""Service layer for the A2P registry.

Provides the registration orchestrator and the stores and clients it
coordinates: attempt log, audit events, registrar, number binder and
reconciliation.
"""

from a2p_registry.services.attempt_log import AttemptLog
from a2p_registry.services.event_log import EventLog
from a2p_registry.services.orchestrator import RegistrationOrchestrator
from a2p_registry.services.state_store import InvalidStateTransition, RegistrationStore

__all__ = [
    "AttemptLog",
    "EventLog",
    "InvalidStateTransition",
    "RegistrationOrchestrator",
    "RegistrationStore",
]
