"""In-process audit trail.

Entries are written for workflow definition changes, workflow runs and every sales or portal document
transition. Entries written while a workflow is running carry that run's depth, so changes made by
automation can be told apart from changes made directly by a user.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from floorline.context import get_correlation_id, get_workflow_depth

audit_entries: list[dict[str, Any]] = []


def record(
    actor_user_id: str,
    entity_type: str,
    entity_id: str,
    action: str,
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
    correlation_id: str | None = None,
) -> dict[str, Any]:
    entry = {
        "id": str(uuid.uuid4()),
        "actor_user_id": actor_user_id,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "action": action,
        "before": before,
        "after": after,
        "correlation_id": correlation_id or get_correlation_id(),
        "workflow_depth": get_workflow_depth(),
        "occurred_at": datetime.now(timezone.utc).isoformat(),
    }
    audit_entries.append(entry)
    return entry


def entries_for(entity_type: str, entity_id: object) -> list[dict[str, Any]]:
    """Entries for one entity, oldest first."""
    key = str(entity_id)
    return [entry for entry in audit_entries if entry["entity_type"] == entity_type and entry["entity_id"] == key]
