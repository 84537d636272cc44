"""
Structured error reporting for background and fire-and-forget sync paths.
"""

from typing import Any

import structlog

logger = structlog.get_logger()


class ErrorReporter:
    """
    Receives exceptions that must not propagate to the caller.

    The default implementation emits one structured log record. Host
    applications can subclass it to forward errors to their own tracker.
    Implementations must never raise.
    """

    def report(self, error: BaseException, action: str, **context: Any) -> None:
        logger.error(
            "sync_error_reported",
            action=action,
            error=str(error),
            error_type=type(error).__name__,
            exc_info=error,
            **context,
        )
