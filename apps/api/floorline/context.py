from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar, Token
from typing import Any

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
workflow_depth_var: ContextVar[int | None] = ContextVar("workflow_depth", default=None)


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def set_workflow_depth(value: int | None) -> Token[int | None]:
    return workflow_depth_var.set(value)


def reset_workflow_depth(token: Token[int | None]) -> None:
    workflow_depth_var.reset(token)


def get_workflow_depth() -> int | None:
    return workflow_depth_var.get()


def capture_context() -> dict[str, Any]:
    """Correlation id and workflow depth of the caller, for work that continues on another thread."""
    return {"correlation_id": get_correlation_id(), "workflow_depth": get_workflow_depth()}


@contextmanager
def bound_context(correlation_id: str | None, workflow_depth: int | None = None) -> Iterator[None]:
    correlation_token = correlation_id_var.set(correlation_id)
    depth_token = workflow_depth_var.set(workflow_depth)
    try:
        yield
    finally:
        workflow_depth_var.reset(depth_token)
        correlation_id_var.reset(correlation_token)
