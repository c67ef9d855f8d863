"""Helpers for logging relay errors with their classification."""

import logging

_MAX_MESSAGE_CHARS = 500


def log_exception(
    logger: logging.Logger,
    exc: BaseException,
    msg: str,
    level: int = logging.ERROR,
    include_traceback: bool = True,
    **fields,
) -> None:
    """
    Log exc with error_type, error_message and (for relay errors) error_category.

    Extra keyword arguments become structured fields. The error message is
    cut to 500 characters.

    Example:
        log_exception(logger, e, "Batch write failed", batch_size=len(batch))
    """
    category = getattr(exc, "category", None)
    if category is not None:
        fields.setdefault("error_category", getattr(category, "value", str(category)))
    fields.setdefault("error_type", type(exc).__name__)

    text = str(exc)
    if len(text) > _MAX_MESSAGE_CHARS:
        text = text[:_MAX_MESSAGE_CHARS] + "..."
    fields["error_message"] = text

    if include_traceback:
        logger.log(level, msg, exc_info=exc, extra=fields)
    else:
        logger.log(level, msg, extra=fields)
