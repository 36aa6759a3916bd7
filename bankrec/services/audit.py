from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger("bankrec.audit")


class ReconciliationAuditEvent:
    """Audit event types for reconciliation operations."""
    BATCH_STARTED = "reconciliation.batch_started"
    BATCH_COMPLETED = "reconciliation.batch_completed"
    PROPOSED = "reconciliation.proposed"
    MANUAL_MATCH = "reconciliation.manual_match"
    CONFIRMED = "reconciliation.confirmed"
    REJECTED = "reconciliation.rejected"


def log_reconciliation_event(
    event_type: str,
    details: dict[str, Any],
    reconciliation_id: int | None = None,
    actor: str | None = None,
) -> None:
    """Log reconciliation event for audit trail."""
    log_entry = {
        "event": event_type,
        "reconciliation_id": reconciliation_id,
        "details": details,
        "actor": actor or "system",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    logger.info(f"Reconciliation event: {event_type}", extra=log_entry)
