"""
Failure routing for the authpipe client.

This module maps classified request failures to logging and telemetry, and
owns the logout signal raised when a session cannot be recovered.
"""

import asyncio
import logging
from typing import Optional, Dict, Any, Callable, List, Set

from authpipe.shared.interfaces import ICredentialStore, ITelemetrySink
from authpipe.shared.logging_config import AuditLogger
from authpipe.shared.models import FailureClass

logger = logging.getLogger(__name__)

_STATUS_MESSAGES = {
    400: "Bad Request",
    403: "Forbidden: You do not have access to this resource.",
    404: "Not Found: The requested resource could not be found.",
    500: "Server Error: An internal server error occurred.",
}

_CLASS_MESSAGES = {
    FailureClass.NETWORK_UNREACHABLE: "Network Error: Please check your internet connection.",
    FailureClass.AUTH_EXPIRED: "Unauthorized: access token expired.",
    FailureClass.AUTH_INVALID: "Unauthorized: Please log in again.",
    FailureClass.CLIENT_ERROR: "Client Error",
    FailureClass.SERVER_ERROR: "Server Error",
    FailureClass.OTHER: "Error: An unexpected error occurred.",
}

_CLASS_LEVELS = {
    FailureClass.NETWORK_UNREACHABLE: logging.WARNING,
    FailureClass.AUTH_EXPIRED: logging.INFO,
    FailureClass.AUTH_INVALID: logging.WARNING,
    FailureClass.CLIENT_ERROR: logging.WARNING,
    FailureClass.SERVER_ERROR: logging.ERROR,
    FailureClass.OTHER: logging.ERROR,
}


def describe_failure(failure_class: FailureClass, status: Optional[int] = None,
                     detail: Optional[str] = None) -> str:
    """Build the log message for a classified failure."""
    message = _STATUS_MESSAGES.get(status) or _CLASS_MESSAGES[failure_class]
    if status is not None and status not in _STATUS_MESSAGES:
        message = f"{message} ({status})"
    if detail:
        message = f"{message}: {detail}"
    return message


class AuditTelemetrySink(ITelemetrySink):
    """Telemetry sink writing failure reports to the audit log."""

    def __init__(self, audit_logger: Optional[AuditLogger] = None):
        self.audit_logger = audit_logger or AuditLogger()

    def record(self, level: int, message: str, context: Dict[str, Any]) -> None:
        self.audit_logger.log_request_failure(
            failure_class=str(context.get('failure_class', FailureClass.OTHER.value)),
            message=message,
            context=context
        )


class FailureRouter:
    """
    Routes classified failures to logging/telemetry and emits logout signals.

    ``report`` is fire-and-forget and never raises. ``trigger_logout``
    clears the credential store, then notifies logout listeners.
    """

    def __init__(
        self,
        store: ICredentialStore,
        sinks: Optional[List[ITelemetrySink]] = None,
        audit_logger: Optional[AuditLogger] = None
    ):
        self.store = store
        self.sinks: List[ITelemetrySink] = list(sinks or [])
        self.audit_logger = audit_logger or AuditLogger()

        self._logout_callbacks: List[Callable[[], None]] = []
        self._pending: Set[asyncio.Task] = set()
        self.logout_count = 0

    def add_sink(self, sink: ITelemetrySink) -> None:
        self.sinks.append(sink)

    def add_logout_callback(self, callback: Callable[[], None]) -> None:
        """
        Add callback for logout signals.

        Args:
            callback: Function called with no arguments on every logout
        """
        self._logout_callbacks.append(callback)

    def report(self, failure_class: FailureClass, details: Optional[Dict[str, Any]] = None) -> None:
        """
        Log a classified failure and forward it to every telemetry sink.

        Args:
            failure_class: Classified failure kind
            details: Structured context (status, method, path, detail, ...)
        """
        try:
            context = dict(details or {})
            context['failure_class'] = failure_class.value
            level = _CLASS_LEVELS[failure_class]
            message = describe_failure(failure_class, context.get('status'), context.get('detail'))

            logger.log(level, message, extra={'failure': context})
        except Exception as e:
            logger.error(f"Failed to log failure report: {e}")
            return

        for sink in self.sinks:
            self._dispatch(sink, level, message, context)

    def _dispatch(self, sink: ITelemetrySink, level: int, message: str, context: Dict[str, Any]) -> None:
        """Hand one event to a sink without waiting on it."""
        try:
            result = sink.record(level, message, dict(context))
        except Exception as e:
            logger.error(f"Telemetry sink {type(sink).__name__} failed: {e}")
            return

        if not asyncio.iscoroutine(result):
            return

        try:
            task = asyncio.get_running_loop().create_task(result)
        except RuntimeError:
            result.close()
            logger.warning(f"No running event loop for async telemetry sink {type(sink).__name__}")
            return

        self._pending.add(task)
        task.add_done_callback(self._sink_task_done)

    def _sink_task_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Telemetry sink failed: {task.exception()}")

    def trigger_logout(self) -> None:
        """
        Clear stored credentials and emit the logout signal.

        Clearing is skipped when the store is already empty; the signal is
        emitted on every call.
        """
        cleared = False
        if not self.store.get().is_empty:
            self.store.clear()
            cleared = True

        self.logout_count += 1
        logger.info("Logout successful and data cleared." if cleared else "Logout signalled, no credentials stored.")
        self.audit_logger.log_logout(cleared)

        for callback in self._logout_callbacks:
            try:
                callback()
            except Exception as e:
                logger.error(f"Error in logout callback: {e}")

    async def drain(self) -> None:
        """Wait for scheduled async telemetry to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
