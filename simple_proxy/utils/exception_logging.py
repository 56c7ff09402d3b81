"""
Exception logging helpers that never raise themselves.

The proxy must always answer the caller, so anything that reports a failure
(upstream errors, broken trigger callbacks, misbehaving CORS predicates) goes
through these helpers instead of formatting exceptions inline.
"""

import logging


def _safe_str(obj) -> str:
    """
    Safely convert an object to string, handling cases where __str__ or __repr__ might fail.

    Args:
        obj: The object to convert to string

    Returns:
        A string representation of the object, falling back to safe alternatives
    """
    try:
        return str(obj)
    except Exception:
        try:
            return repr(obj)
        except Exception:
            return f"<{type(obj).__name__} object (string conversion failed)>"


def format_exception_message(exception: BaseException) -> str:
    """
    Describe an exception in one line for error bodies and logs.

    httpx transport errors frequently carry an empty message (for example a
    bare ``ConnectError()``), in which case the exception type is used so the
    caller still learns what went wrong.

    Args:
        exception: The exception to format

    Returns:
        A non-empty description of the exception
    """
    if exception is None:
        return "None"
    message = _safe_str(exception).strip()
    if message:
        return message
    cause = exception.__cause__ or exception.__context__
    cause_message = _safe_str(cause).strip() if cause is not None else ""
    if cause_message:
        return f"{type(exception).__name__}: {cause_message}"
    return type(exception).__name__


def log_exception_with_details(
    logger: logging.Logger,
    prefix: str,
    exception: BaseException,
    level: int = logging.ERROR,
) -> None:
    """
    Log an exception with its type, message and traceback.
    This function is designed to never throw exceptions itself, even when dealing with
    broken exception objects or logger failures.

    Args:
        logger: The logger instance to use
        prefix: Prefix for the log message (e.g., "[Proxy]", "[AttackDetector]")
        exception: The exception to log
        level: The logging level to use (default: ERROR)
    """
    try:
        safe_prefix = _safe_str(prefix) if prefix is not None else ""
        if exception is None:
            logger.log(level, f"{safe_prefix} Exception: None")
            return
        message = (
            f"{safe_prefix} {type(exception).__name__}: "
            f"{format_exception_message(exception)}"
        )
        try:
            logger.log(level, message, exc_info=exception)
        except Exception:
            # If logging with exc_info fails, try without it
            logger.log(level, message)
    except Exception:
        try:
            if logger is not None:
                logger.log(logging.ERROR, "Exception logging failed")
        except Exception:
            # If even this fails, give up completely (don't propagate the exception)
            pass
