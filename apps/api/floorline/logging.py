"""JSON log lines for the API process.

Every record is stamped with the current correlation id at creation time, so handlers installed later
(pytest's caplog included) see the same value as stdout. Lines written inside a workflow run also carry
the run depth.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

from floorline.context import get_correlation_id, get_workflow_depth


ERROR_FIELD_LIMIT = 500

STRUCTURED_FIELDS = frozenset(
    {
        # http
        "method",
        "path",
        "status_code",
        "duration_ms",
        # workflows
        "workflow_id",
        "workflow_name",
        "trigger_type",
        "trigger_condition",
        "action_type",
        "action_index",
        "delay_hours",
        "workflow_depth",
        "max_depth",
        "pending_runs",
        "run_id",
        "reason",
        # domain
        "event_name",
        "entity_type",
        "entity_id",
        "channel",
        "recipient",
        "status",
        "error",
    }
)

_base_factory = logging.getLogRecordFactory()


def _stamped_record(*args: Any, **kwargs: Any) -> logging.LogRecord:
    record = _base_factory(*args, **kwargs)
    record.correlation_id = get_correlation_id()
    return record


class WorkflowDepthFilter(logging.Filter):
    """Adds the running workflow depth unless the call site passed one."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "workflow_depth", None) is None:
            depth = get_workflow_depth()
            if depth is not None:
                record.workflow_depth = depth
        return True


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        fields = {key: value for key, value in record.__dict__.items() if key in STRUCTURED_FIELDS}
        if isinstance(fields.get("error"), str):
            fields["error"] = fields["error"][:ERROR_FIELD_LIMIT]
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)

        return json.dumps(
            {
                "ts": datetime.now(timezone.utc).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "msg": record.getMessage(),
                "correlation_id": getattr(record, "correlation_id", None),
                "fields": fields,
            },
            default=str,
        )


def configure_logging() -> None:
    root = logging.getLogger()
    if getattr(root, "_floorline_configured", False):
        return

    level = getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO)
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JsonLogFormatter())
    handler.addFilter(WorkflowDepthFilter())

    root.handlers.clear()
    root.setLevel(level)
    root.addHandler(handler)
    logging.setLogRecordFactory(_stamped_record)
    root._floorline_configured = True  # type: ignore[attr-defined]
