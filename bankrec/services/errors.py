"""
Reconciliation error taxonomy.

Every failure the core reports to a caller is one of these types. Each carries
a stable code and the HTTP status the REST layer answers with.
"""
from __future__ import annotations

from typing import Any


class ReconciliationError(Exception):
    """Base exception with structured error info."""

    code = "RECONCILIATION_ERROR"
    status_code = 500

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        self.message = message
        self.context = context or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"error": self.code, "message": self.message}
        if self.context:
            result["context"] = self.context
        return result


class ValidationError(ReconciliationError):
    """Malformed input: blank notes, bad limit, unknown matched_type."""

    code = "VALIDATION_ERROR"
    status_code = 400


class NotFound(ReconciliationError):
    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, entity: str, entity_id: Any) -> None:
        super().__init__(f"{entity} {entity_id} not found", {"entity": entity, "id": entity_id})


class InvalidTransition(ReconciliationError):
    """Requested status change is not in the state machine."""

    code = "INVALID_TRANSITION"
    status_code = 409

    def __init__(self, current: str, requested: str, reconciliation_id: int | None = None) -> None:
        self.current = current
        self.requested = requested
        context: dict[str, Any] = {"current": current, "requested": requested}
        if reconciliation_id is not None:
            context["reconciliation_id"] = reconciliation_id
        super().__init__(f"Cannot move reconciliation from {current} to {requested}", context)


class AlreadyConfirmed(ReconciliationError):
    code = "ALREADY_CONFIRMED"
    status_code = 409


class ConcurrentModification(ReconciliationError):
    """A write lost the race against another writer."""

    code = "CONCURRENT_MODIFICATION"
    status_code = 409


class UpstreamUnavailable(ReconciliationError):
    code = "UPSTREAM_UNAVAILABLE"
    status_code = 503
