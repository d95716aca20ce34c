"""Registration-scoped audit trail with automatic redaction.

Records state changes, wizard step saves, dispatch decisions, upstream
status deliveries and surfaced gateway errors for one registration.
Supports plain text export for operators.

Usage:
    events = EventLog(db)
    events.log_state_change(registration_id, "draft", "brand_pending")
    print(events.export_text(registration_id))
"""

import json
from typing import Any

from sqlalchemy.orm import Session

from a2p_registry.db.models import EventType, LogLevel, RegistrationEvent, utc_now_iso
from a2p_registry.utils.redaction import redact_for_logging


class EventLog:
    """Service for registration-scoped audit events.

    Attributes:
        db: SQLAlchemy session for database operations.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    def log(
        self,
        registration_id: str,
        level: LogLevel,
        event_type: EventType,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> RegistrationEvent:
        """Create an event entry.

        Core method that the other log methods delegate to. Details are
        redacted and JSON-encoded before storage.

        Args:
            registration_id: UUID of the registration.
            level: Severity level.
            event_type: Category of event.
            message: Human-readable event description.
            details: Optional structured data.

        Returns:
            The committed RegistrationEvent.
        """
        details_json: str | None = None
        if details is not None:
            details_json = json.dumps(redact_for_logging(details), default=str)

        entry = RegistrationEvent(
            registration_id=registration_id,
            timestamp=utc_now_iso(),
            level=level.value,
            event_type=event_type.value,
            message=message,
            details=details_json,
        )
        self.db.add(entry)
        self.db.commit()
        return entry

    def log_info(
        self,
        registration_id: str,
        event_type: EventType,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> RegistrationEvent:
        return self.log(registration_id, LogLevel.INFO, event_type, message, details)

    def log_warning(
        self,
        registration_id: str,
        event_type: EventType,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> RegistrationEvent:
        return self.log(registration_id, LogLevel.WARNING, event_type, message, details)

    def log_state_change(
        self, registration_id: str, old_status: str, new_status: str
    ) -> RegistrationEvent:
        """Log a registration status transition."""
        return self.log(
            registration_id=registration_id,
            level=LogLevel.INFO,
            event_type=EventType.state_change,
            message=f"Registration status changed: {old_status} -> {new_status}",
            details={"old_status": old_status, "new_status": new_status},
        )

    def log_gateway_error(
        self,
        registration_id: str,
        error_code: str,
        error_message: str,
        details: dict[str, Any] | None = None,
    ) -> RegistrationEvent:
        """Log a gateway failure surfaced to the registration.

        Args:
            registration_id: UUID of the registration.
            error_code: Error code (e.g. 'E-3001').
            error_message: Human-readable error description.
            details: Optional structured error context.
        """
        error_details = {"error_code": error_code, "error_message": error_message}
        if details:
            error_details.update(details)

        return self.log(
            registration_id=registration_id,
            level=LogLevel.ERROR,
            event_type=EventType.error,
            message=f"{error_code}: {error_message}",
            details=error_details,
        )

    # Query methods

    def get_events(
        self,
        registration_id: str,
        level: LogLevel | None = None,
        event_type: EventType | None = None,
        limit: int = 1000,
    ) -> list[RegistrationEvent]:
        """Events for a registration, oldest first, with optional filters."""
        query = self.db.query(RegistrationEvent).filter(
            RegistrationEvent.registration_id == registration_id
        )
        if level is not None:
            query = query.filter(RegistrationEvent.level == level.value)
        if event_type is not None:
            query = query.filter(RegistrationEvent.event_type == event_type.value)
        return query.order_by(RegistrationEvent.timestamp.asc()).limit(limit).all()

    def export_text(self, registration_id: str) -> str:
        """Export all events for a registration as plain text.

        Example output:
            [2024-01-23T10:30:45+00:00] [INFO] [state_change] Registration status changed: draft -> brand_pending
                {
                    "old_status": "draft",
                    "new_status": "brand_pending"
                }
        """
        lines = []
        for entry in self.get_events(registration_id):
            lines.append(
                f"[{entry.timestamp}] [{entry.level}] [{entry.event_type}] {entry.message}"
            )
            if entry.details:
                try:
                    formatted = json.dumps(json.loads(entry.details), indent=4)
                except json.JSONDecodeError:
                    formatted = entry.details
                for detail_line in formatted.split("\n"):
                    lines.append(f"    {detail_line}")
        return "\n".join(lines)
