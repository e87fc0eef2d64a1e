from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any

from floorline.context import get_correlation_id, get_workflow_depth
from floorline.core.events import event_bus

logger = logging.getLogger("floorline.events")

published_events: list[dict[str, Any]] = []


def _stamp(envelope: dict[str, Any]) -> None:
    envelope.setdefault("event_id", str(uuid.uuid4()))
    envelope.setdefault("occurred_at", datetime.now(timezone.utc).isoformat())
    if envelope.get("correlation_id") is None:
        envelope["correlation_id"] = get_correlation_id()

    # Depth travels with the event so emitters can stop workflow chains.
    depth = get_workflow_depth()
    meta = dict(envelope["meta"]) if isinstance(envelope.get("meta"), dict) else {}
    if depth is not None:
        meta.setdefault("workflow_depth", depth)
    if meta:
        envelope["meta"] = meta


def publish(envelope: dict[str, Any]) -> None:
    """Stamp a domain event envelope, keep it in the outbox list and dispatch it on the in-process bus."""
    _stamp(envelope)
    published_events.append(envelope)

    event_type = envelope.get("event_type")
    if not isinstance(event_type, str) or not event_type:
        logger.warning("event_without_type", extra={"event_name": str(event_type)})
        return
    logger.debug("event_published", extra={"event_name": event_type})
    event_bus.publish(event_type, envelope)
