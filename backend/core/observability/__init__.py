"""Minimal observability: JSON logging with trace and invoice context."""
import uuid
from typing import Optional

from . import logging as logging_module
from .logging import get_logger


def generate_trace_id() -> str:
    """Generate a new trace ID for a pipeline run or CLI invocation."""
    return str(uuid.uuid4())


def set_trace_id(trace_id: Optional[str] = None) -> str:
    """Set or generate trace ID for current context."""
    if not trace_id:
        trace_id = generate_trace_id()
    logging_module.set_trace_id(trace_id)
    return trace_id


def init_observability(level: Optional[str] = None) -> None:
    """Initialize all observability components."""
    logging_module.init_logging(level)


__all__ = [
    "logging_module",
    "get_logger",
    "generate_trace_id",
    "set_trace_id",
    "init_observability",
]
