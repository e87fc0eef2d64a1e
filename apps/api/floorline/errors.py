from __future__ import annotations

from typing import Any


class FloorlineError(Exception):
    """Base class for domain errors that map onto an HTTP status."""

    status_code = 500
    code = "floorline_error"

    def __init__(self, message: str, *, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class ActionInputError(FloorlineError):
    """Raised when an action or operation is missing a required input."""

    status_code = 422
    code = "action_input_invalid"


class EntityNotFoundError(FloorlineError):
    """Raised when a referenced entity does not exist or is not visible to the caller."""

    status_code = 404
    code = "entity_not_found"

    def __init__(self, entity_type: str, entity_id: Any) -> None:
        super().__init__(f"{entity_type} not found", details={"entity_type": entity_type, "entity_id": entity_id})
        self.entity_type = entity_type
        self.entity_id = entity_id


class InvalidTransitionError(FloorlineError):
    """Raised when a document status change is not allowed from its current status."""

    status_code = 409
    code = "invalid_transition"


class NotificationDeliveryError(FloorlineError):
    """Raised by notification sinks; always absorbed by the notification service."""

    status_code = 502
    code = "notification_delivery_failed"


class PersistenceError(FloorlineError):
    """Raised when the database rejects or fails an operation."""

    status_code = 500
    code = "persistence_failed"
