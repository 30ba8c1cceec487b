from contextvars import ContextVar
from typing import Optional

from .datetime_utils import utc_now

request_id_context: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def get_request_id() -> Optional[str]:
    """Get the current request ID from context."""
    return request_id_context.get()


def set_request_id(request_id: str) -> None:
    """Set the request ID in context."""
    request_id_context.set(request_id)


def set_tick_request_id(prefix: str) -> str:
    """
    Bind a request ID for a scheduler tick, e.g. ``dispatch-20240615T090000``.

    Ticks run outside any HTTP request, so log lines emitted while a tick
    is processing are grouped under this identifier instead.
    """
    request_id = f"{prefix}-{utc_now().strftime('%Y%m%dT%H%M%S')}"
    request_id_context.set(request_id)
    return request_id
