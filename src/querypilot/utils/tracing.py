import uuid
from contextvars import ContextVar
from typing import Optional

# Trace id shared by every coroutine serving one request or run
trace_id_var: ContextVar[Optional[str]] = ContextVar('trace_id', default=None)


def generate_trace_id() -> str:
    return str(uuid.uuid4())


def set_trace_id(trace_id: str) -> None:
    trace_id_var.set(trace_id)


def current_trace_id() -> Optional[str]:
    return trace_id_var.get()


def get_trace_id() -> str:
    """Return the current trace id, creating one if the context has none."""
    trace_id = current_trace_id()
    if trace_id is None:
        trace_id = generate_trace_id()
        set_trace_id(trace_id)
    return trace_id
