"""Per-task log context (stage, worker id, sink table) read by the formatters."""

from contextvars import ContextVar

_FIELDS = ("stage", "worker_id", "table")
_EMPTY = dict.fromkeys(_FIELDS, "")

_log_context: ContextVar[dict[str, str]] = ContextVar("log_context", default=_EMPTY)


def set_log_context(
    stage: str | None = None,
    worker_id: str | None = None,
    table: str | None = None,
) -> None:
    """Update the given fields; fields passed as None keep their value."""
    updates = {"stage": stage, "worker_id": worker_id, "table": table}
    context = dict(_log_context.get())
    context.update({key: value for key, value in updates.items() if value is not None})
    _log_context.set(context)


def get_log_context() -> dict[str, str]:
    return dict(_log_context.get())


def clear_log_context() -> None:
    _log_context.set(_EMPTY)
