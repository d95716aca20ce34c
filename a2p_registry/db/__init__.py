"""Database module for A2P registration state and the attempt log."""

from a2p_registry.db.connection import (
    SessionLocal,
    engine,
    get_db,
    get_db_context,
    init_db,
)
from a2p_registry.db.models import (
    A2PBrand,
    A2PCampaign,
    A2PRegistration,
    AttemptStatus,
    AttemptType,
    ComplianceAttempt,
    EventType,
    LogLevel,
    NumberStatus,
    PhoneNumberClaim,
    RegistrationEvent,
    RegistrationNumber,
    RegistrationStatus,
    SubEntityStatus,
    TwilioAttempt,
)

__all__ = [
    # Models
    "A2PRegistration",
    "A2PBrand",
    "A2PCampaign",
    "ComplianceAttempt",
    "TwilioAttempt",
    "RegistrationNumber",
    "PhoneNumberClaim",
    "RegistrationEvent",
    # Enums
    "RegistrationStatus",
    "SubEntityStatus",
    "AttemptType",
    "AttemptStatus",
    "NumberStatus",
    "LogLevel",
    "EventType",
    # Connection
    "engine",
    "SessionLocal",
    "get_db",
    "get_db_context",
    "init_db",
]
