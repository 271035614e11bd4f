"""Error taxonomy and error monitoring for the decision framework.

Every error raised by the framework is a ``FrameworkError`` carrying a
stable id, a type, a severity, the originating function and structured
context.  ``ErrorMonitor`` records errors into the document store,
aggregates daily per-source counts and emits an alert record for
CRITICAL errors.
"""

from __future__ import annotations

import logging
import secrets
import time
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from decision_framework.persistence import DocumentStore

logger = logging.getLogger(__name__)

ERROR_LOGS = "error_logs"
ERROR_METRICS = "error_metrics"
ERROR_ALERTS = "error_alerts"


class ErrorType(str, Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND_ERROR = "NOT_FOUND_ERROR"
    AI_SERVICE_ERROR = "AI_SERVICE_ERROR"
    DATABASE_ERROR = "DATABASE_ERROR"
    PARSING_ERROR = "PARSING_ERROR"
    PERMISSION_ERROR = "PERMISSION_ERROR"
    RATE_LIMIT_ERROR = "RATE_LIMIT_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class Severity(str, Enum):
    CRITICAL = "CRITICAL"
    ERROR = "ERROR"
    WARNING = "WARNING"
    INFO = "INFO"


_SEVERITY_BY_TYPE: dict[ErrorType, Severity] = {
    ErrorType.DATABASE_ERROR: Severity.CRITICAL,
    ErrorType.AI_SERVICE_ERROR: Severity.ERROR,
    ErrorType.PERMISSION_ERROR: Severity.ERROR,
    ErrorType.UNKNOWN_ERROR: Severity.ERROR,
    ErrorType.VALIDATION_ERROR: Severity.WARNING,
    ErrorType.PARSING_ERROR: Severity.WARNING,
    ErrorType.RATE_LIMIT_ERROR: Severity.WARNING,
    ErrorType.NOT_FOUND_ERROR: Severity.WARNING,
}


def determine_severity(error_type: ErrorType, context: dict[str, Any] | None = None) -> Severity:
    """Map an error type (and optional user-impact hint) to a severity."""
    context = context or {}
    if context.get("user_impact") == "high":
        return Severity.CRITICAL
    return _SEVERITY_BY_TYPE.get(error_type, Severity.ERROR)


def generate_error_id() -> str:
    return f"err_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


class FrameworkError(Exception):
    """Base error for everything the decision framework raises."""

    error_type: ErrorType = ErrorType.UNKNOWN_ERROR
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        function: str = "unknown",
        context: dict[str, Any] | None = None,
        original_error: BaseException | None = None,
        severity: Severity | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.function = function
        self.context = dict(context or {})
        self.original_error = original_error
        self.severity = severity or determine_severity(self.error_type, self.context)
        self.error_id = generate_error_id()
        self.timestamp = datetime.now(timezone.utc).isoformat()

    def to_public_dict(self) -> dict[str, str]:
        """Caller-facing view: no stack, no original error, no context."""
        return {
            "error_id": self.error_id,
            "type": self.error_type.value,
            "message": self.message,
        }

    def to_log_record(self) -> dict[str, Any]:
        original = None
        if self.original_error is not None:
            original = {
                "name": type(self.original_error).__name__,
                "message": str(self.original_error),
            }
        return {
            "error_id": self.error_id,
            "message": self.message,
            "type": self.error_type.value,
            "severity": self.severity.value,
            "function": self.function,
            "context": self.context,
            "original_error": original,
            "timestamp": self.timestamp,
        }


class ValidationError(FrameworkError):
    error_type = ErrorType.VALIDATION_ERROR


class NotFoundError(FrameworkError):
    error_type = ErrorType.NOT_FOUND_ERROR


class AIServiceError(FrameworkError):
    error_type = ErrorType.AI_SERVICE_ERROR
    retryable = True


class DatabaseError(FrameworkError):
    error_type = ErrorType.DATABASE_ERROR
    retryable = True


class ParsingError(FrameworkError):
    error_type = ErrorType.PARSING_ERROR


class PermissionDeniedError(FrameworkError):
    error_type = ErrorType.PERMISSION_ERROR


class RateLimitError(FrameworkError):
    error_type = ErrorType.RATE_LIMIT_ERROR
    retryable = True


class UnknownError(FrameworkError):
    error_type = ErrorType.UNKNOWN_ERROR


def wrap_error(
    error: BaseException,
    *,
    function: str,
    context: dict[str, Any] | None = None,
) -> FrameworkError:
    """Return *error* as a FrameworkError, wrapping foreign exceptions."""
    if isinstance(error, FrameworkError):
        return error
    return UnknownError(
        str(error) or type(error).__name__,
        function=function,
        context=context,
        original_error=error,
    )


def is_transient(error: BaseException) -> bool:
    """True for error classes worth retrying (service / database / rate limit)."""
    return isinstance(error, FrameworkError) and error.retryable


# ---------------------------------------------------------------------------
# Error monitor
# ---------------------------------------------------------------------------


class ErrorMonitor:
    """Records errors, aggregates daily counts and raises alerts.

    Monitoring failures are logged and swallowed: recording an error must
    never mask the error being recorded.
    """

    def __init__(self, store: DocumentStore | None = None) -> None:
        self.store = store

    async def log_error(
        self,
        error: BaseException,
        source: str,
        function: str,
        context: dict[str, Any] | None = None,
    ) -> str:
        framework_error = wrap_error(error, function=function, context=context)
        record = framework_error.to_log_record()
        record["source"] = source
        record["function"] = function
        record["context"] = {**framework_error.context, **(context or {})}

        log_line = "[%s][%s:%s] %s (error_id=%s)"
        args = (
            framework_error.severity.value,
            source,
            function,
            framework_error.message,
            framework_error.error_id,
        )
        if framework_error.severity in (Severity.CRITICAL, Severity.ERROR):
            logger.error(log_line, *args)
        elif framework_error.severity is Severity.WARNING:
            logger.warning(log_line, *args)
        else:
            logger.info(log_line, *args)

        if self.store is None:
            return framework_error.error_id

        try:
            await self.store.set(ERROR_LOGS, framework_error.error_id, record)
        except Exception:
            logger.error("Failed to persist error %s", framework_error.error_id, exc_info=True)

        if framework_error.severity is Severity.CRITICAL:
            await self._emit_alert(framework_error, source, function)

        await self._update_metrics(framework_error.error_type, source)
        return framework_error.error_id

    async def _emit_alert(self, error: FrameworkError, source: str, function: str) -> None:
        try:
            await self.store.set(
                ERROR_ALERTS,
                error.error_id,
                {
                    "error_id": error.error_id,
                    "message": error.message,
                    "type": error.error_type.value,
                    "severity": error.severity.value,
                    "source": source,
                    "function": function,
                    "status": "new",
                    "notified": False,
                },
            )
            logger.info("Alert generated for critical error %s", error.error_id)
        except Exception:
            logger.error("Failed to generate alert for %s", error.error_id, exc_info=True)

    async def _update_metrics(self, error_type: ErrorType, source: str) -> None:
        today = datetime.now(timezone.utc).date().isoformat()
        doc_id = f"{source}_{today}"
        try:
            existing = await self.store.get(ERROR_METRICS, doc_id)
            if existing is None:
                await self.store.set(
                    ERROR_METRICS, doc_id, {"source": source, "date": today, "total": 0, "by_type": {}}
                )
            await self.store.increment(ERROR_METRICS, doc_id, "total", 1)
            await self.store.increment(ERROR_METRICS, doc_id, f"by_type.{error_type.value}", 1)
        except Exception:
            logger.error("Failed to update error metrics for %s", source, exc_info=True)

    async def get_error_statistics(
        self,
        source: str | None = None,
        error_type: ErrorType | None = None,
        severity: Severity | None = None,
        days: int = 7,
    ) -> dict[str, Any]:
        """Aggregate logged errors by severity, type, source and day."""
        if self.store is None:
            return {"total_errors": 0, "by_severity": {}, "by_type": {}, "by_source": {}, "by_day": {}}

        filters: dict[str, Any] = {}
        if source:
            filters["source"] = source
        if error_type:
            filters["type"] = error_type.value
        if severity:
            filters["severity"] = severity.value

        try:
            records = await self.store.query(ERROR_LOGS, **filters)
        except Exception as exc:
            raise DatabaseError(
                "Failed to get error statistics",
                function="get_error_statistics",
                context={"filters": filters},
                original_error=exc,
            ) from exc

        cutoff = datetime.now(timezone.utc) - timedelta(days=days)
        stats: dict[str, Any] = {
            "total_errors": 0,
            "by_severity": {},
            "by_type": {},
            "by_source": {},
            "by_day": {},
        }
        for record in records:
            stamp = datetime.fromisoformat(record["timestamp"])
            if stamp < cutoff:
                continue
            stats["total_errors"] += 1
            for key, field in (("by_severity", "severity"), ("by_type", "type"), ("by_source", "source")):
                value = record.get(field, "unknown")
                stats[key][value] = stats[key].get(value, 0) + 1
            day = stamp.date().isoformat()
            stats["by_day"][day] = stats["by_day"].get(day, 0) + 1
        return stats
