"""
Structured Logging for the in-memory Service Bus

Correlation tracking, JSON formatting, and helpers that give every broker
event (send, receive, settle, route, session) a consistent field layout.

Author: LocalBus Team
Date: 2026-03-04
"""

import contextvars
import json
import logging
import time
import traceback
import uuid
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Optional


# Context variable for correlation ID (safe across asyncio tasks)
correlation_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    'localbus_correlation_id', default=None
)

_STANDARD_ATTRS = frozenset({
    'name', 'msg', 'args', 'created', 'filename', 'funcName', 'levelname',
    'levelno', 'lineno', 'module', 'msecs', 'message', 'pathname', 'process',
    'processName', 'relativeCreated', 'thread', 'threadName', 'exc_info',
    'exc_text', 'stack_info', 'taskName',
})


class CorrelationContext:
    """Manages correlation ID context for tracing a client call through the broker."""

    @staticmethod
    def get_correlation_id() -> str:
        """Get current correlation ID or generate new one."""
        corr_id = correlation_id_var.get()
        if not corr_id:
            corr_id = str(uuid.uuid4())
            correlation_id_var.set(corr_id)
        return corr_id

    @staticmethod
    def set_correlation_id(corr_id: str) -> None:
        correlation_id_var.set(corr_id)

    @staticmethod
    def clear_correlation_id() -> None:
        correlation_id_var.set(None)


class StructuredFormatter(logging.Formatter):
    """JSON formatter that lifts ``extra`` fields to top-level keys."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'correlation_id': CorrelationContext.get_correlation_id(),
        }

        for key, value in record.__dict__.items():
            if key not in _STANDARD_ATTRS and not key.startswith('_'):
                log_data[key] = value

        if record.exc_info:
            log_data['exception'] = {
                'type': record.exc_info[0].__name__,
                'message': str(record.exc_info[1]),
                'traceback': ''.join(traceback.format_exception(*record.exc_info))
            }

        return json.dumps(log_data, default=str)


class StructuredLogger:
    """Structured logger with correlation tracking."""

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)

    def _log(self, level: int, message: str, **kwargs: Any) -> None:
        if not self.logger.isEnabledFor(level):
            return
        extra = {k: v for k, v in kwargs.items() if v is not None}
        self.logger.log(level, message, extra=extra)

    def debug(self, message: str, **kwargs: Any) -> None:
        self._log(logging.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs: Any) -> None:
        self._log(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self._log(logging.WARNING, message, **kwargs)

    def error(self, message: str, exc_info: bool = False, **kwargs: Any) -> None:
        if exc_info:
            extra = {k: v for k, v in kwargs.items() if v is not None}
            self.logger.error(message, exc_info=True, extra=extra)
        else:
            self._log(logging.ERROR, message, **kwargs)

    def log_operation(self, operation: str, entity_type: str, entity_name: str, **kwargs: Any) -> None:
        """Log an entity management operation."""
        self.info(
            f"{operation}: {entity_type}/{entity_name}",
            operation=operation,
            entity_type=entity_type,
            entity_name=entity_name,
            **kwargs
        )

    def log_message_operation(
        self,
        operation: str,
        entity_name: str,
        message_id: str,
        **kwargs: Any
    ) -> None:
        """Log a message moving through an entity (debug level: one line per message)."""
        self.debug(
            f"{operation}: {entity_name} message={message_id}",
            operation=operation,
            entity_name=entity_name,
            message_id=message_id,
            **kwargs
        )

    def log_dead_letter(
        self,
        entity_name: str,
        message_id: str,
        reason: str,
        **kwargs: Any
    ) -> None:
        """Log a message landing in a dead-letter sub-queue."""
        self.info(
            f"message_dead_lettered: {entity_name} message={message_id} reason={reason}",
            operation="message_dead_lettered",
            entity_name=entity_name,
            message_id=message_id,
            dead_letter_reason=reason,
            **kwargs
        )

    def log_filter_evaluation(
        self,
        rule_name: str,
        filter_result: bool,
        message_id: str,
        subscription_name: str,
        **kwargs: Any
    ) -> None:
        """Log filter evaluation result."""
        self.debug(
            f"Filter evaluation: subscription={subscription_name} rule={rule_name} "
            f"message={message_id} result={filter_result}",
            operation="filter_evaluated",
            rule_name=rule_name,
            filter_result=filter_result,
            message_id=message_id,
            subscription_name=subscription_name,
            **kwargs
        )

    def log_session_operation(self, operation: str, entity_name: str, session_id: str, **kwargs: Any) -> None:
        """Log session accept/renew/release."""
        self.debug(
            f"{operation}: {entity_name} session={session_id}",
            operation=operation,
            entity_name=entity_name,
            session_id=session_id,
            **kwargs
        )

    def log_error(
        self,
        operation: str,
        error_type: str,
        error_message: str,
        **kwargs: Any
    ) -> None:
        """Log error with context."""
        self.error(
            f"Error in {operation}: {error_message}",
            operation=operation,
            error_type=error_type,
            error_message=error_message,
            **kwargs
        )


def track_operation_time(logger: StructuredLogger, operation: str):
    """Decorator to log the duration of an async operation and any failure."""
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            start_time = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                duration_ms = (time.perf_counter() - start_time) * 1000
                logger.warning(
                    f"Operation failed: {operation}",
                    operation=operation,
                    duration_ms=round(duration_ms, 2),
                    error_type=type(e).__name__,
                    error_message=str(e)
                )
                raise
            duration_ms = (time.perf_counter() - start_time) * 1000
            logger.debug(
                f"Operation completed: {operation}",
                operation=operation,
                duration_ms=round(duration_ms, 2)
            )
            return result
        return wrapper
    return decorator
