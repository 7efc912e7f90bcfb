"""
Exception formatting and logging that never raises, including for exception
groups coming out of anyio task groups.
"""

import logging


def _safe_str(obj) -> str:
    """
    Safely convert an object to string, handling cases where __str__ or __repr__ might fail.
    """
    try:
        text = str(obj)
    except Exception:
        try:
            return repr(obj)
        except Exception:
            return f"<{type(obj).__name__} object (string conversion failed)>"
    # httpx transport errors often stringify to an empty message
    return text or type(obj).__name__


def _safe_get_exceptions(exception_group) -> list:
    try:
        return list(exception_group.exceptions)
    except Exception:
        return []


def find_exception_in_exception_groups(exception: BaseException, target_type):
    """
    Recursively search an exception and its sub-exceptions for one of the
    target type. Returns the first match, or None.
    """
    try:
        if isinstance(exception, target_type):
            return exception
        for sub_exc in _safe_get_exceptions(exception):
            inner_exc = find_exception_in_exception_groups(sub_exc, target_type)
            if inner_exc is not None:
                return inner_exc
        return None
    except Exception:
        return None


def format_exception_message(exception: BaseException) -> str:
    """
    Format an exception message, including sub-exceptions for exception groups.

    Args:
        exception: The exception to format

    Returns:
        A formatted string describing the exception
    """
    try:
        if exception is None:
            return "None"

        sub_exceptions = _safe_get_exceptions(exception)
        if not sub_exceptions:
            return _safe_str(exception)

        sub_exception_strs = []
        for sub_exc in sub_exceptions:
            try:
                sub_exception_strs.append(
                    f"{type(sub_exc).__name__}: {_safe_str(sub_exc)}"
                )
            except Exception:
                sub_exception_strs.append("(formatting failed)")
        return f"{_safe_str(exception)} (Sub-exceptions: {'; '.join(sub_exception_strs)})"

    except Exception:
        try:
            return f"<{type(exception).__name__} (formatting failed)>"
        except Exception:
            return "<exception (all formatting failed)>"


def log_exception_with_details(
    logger: logging.Logger,
    prefix: str,
    exception: BaseException,
    level: int = logging.ERROR,
    exc_info: bool = False,
) -> None:
    """
    Log an exception, one line per sub-exception for exception groups.
    Never throws, even for broken exception objects or logger failures.

    Args:
        logger: The logger instance to use
        prefix: Prefix for the log message (e.g., "[Forward]", "[Listener]")
        exception: The exception to log
        level: The logging level to use (default: ERROR)
        exc_info: Attach the traceback to the log record
    """
    try:
        safe_prefix = _safe_str(prefix) if prefix is not None else ""
        sub_exceptions = (
            _safe_get_exceptions(exception) if exception is not None else []
        )

        if not sub_exceptions:
            logger.log(
                level,
                f"{safe_prefix} {type(exception).__name__}: {_safe_str(exception)}",
                exc_info=exception if exc_info else None,
            )
            return

        logger.log(
            level,
            f"{safe_prefix} Exception with {len(sub_exceptions)} sub-exceptions: {_safe_str(exception)}",
        )
        for i, sub_exc in enumerate(sub_exceptions):
            try:
                logger.log(
                    level,
                    f"{safe_prefix} Sub-exception {i+1}: {type(sub_exc).__name__}: {_safe_str(sub_exc)}",
                    exc_info=sub_exc if exc_info else None,
                )
            except Exception:
                continue
    except Exception:
        try:
            logger.log(logging.ERROR, "Exception logging failed")
        except Exception:
            pass
