"""
Per-task logging context.

Every record formatted while a context is set carries the worker's domain,
stage and id. asyncio tasks start with a copy of their parent's context, so
a value set inside a task never leaks back to the caller.
"""

from contextvars import ContextVar

LOG_CONTEXT_FIELDS = ("domain", "stage", "worker_id")

_context: dict[str, ContextVar[str]] = {
    name: ContextVar(f"log_{name}", default="") for name in LOG_CONTEXT_FIELDS
}


def set_log_context(
    *,
    domain: str | None = None,
    stage: str | None = None,
    worker_id: str | None = None,
) -> None:
    """Set the given fields; fields passed as None keep their current value."""
    for name, value in (("domain", domain), ("stage", stage), ("worker_id", worker_id)):
        if value is not None:
            _context[name].set(value)


def get_log_context() -> dict[str, str]:
    return {name: var.get() for name, var in _context.items()}


def clear_log_context() -> None:
    for var in _context.values():
        var.set("")
