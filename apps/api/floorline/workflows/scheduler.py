from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable

from floorline.context import bound_context, capture_context


logger = logging.getLogger("floorline.workflows.scheduler")


class DelayedWorkflowScheduler:
    """In-memory timers for delayed workflow runs.

    Pending runs live only in this process: a restart drops them and :meth:`shutdown` cancels them.
    The correlation id and workflow depth active at scheduling time are restored when the timer fires.
    """

    def __init__(self) -> None:
        self._timers: dict[str, threading.Timer] = {}
        self._lock = threading.Lock()

    def schedule(self, delay_seconds: float, callback: Callable[[], None]) -> str:
        run_id = uuid.uuid4().hex
        captured = capture_context()

        def _fire() -> None:
            with self._lock:
                self._timers.pop(run_id, None)
            with bound_context(**captured):
                try:
                    callback()
                except Exception as exc:
                    logger.exception("delayed_workflow_failed", extra={"error": str(exc)[:500]})

        timer = threading.Timer(delay_seconds, _fire)
        timer.daemon = True
        with self._lock:
            self._timers[run_id] = timer
        timer.start()
        return run_id

    def pending_count(self) -> int:
        with self._lock:
            return len(self._timers)

    def shutdown(self) -> int:
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()
        if timers:
            logger.warning("delayed_workflows_dropped", extra={"pending_runs": len(timers)})
        return len(timers)


workflow_scheduler = DelayedWorkflowScheduler()
