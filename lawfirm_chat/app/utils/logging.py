"""
Structured logging system for the law-firm case chat service.

This module provides:
- Structured JSON or rich console logging through structlog
- Correlation IDs scoped to a request or a WebSocket connection
- Performance timing for database operations
- Specialised loggers for WebSocket and database events
- Security audit events for authentication and access checks
"""

import json
import logging
import sys
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog
from rich.console import Console
from rich.logging import RichHandler


# Context-local state; every connection handler runs in its own task context
_correlation_id: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
_performance_context: ContextVar[Optional[Dict[str, Any]]] = ContextVar(
    "performance_context", default=None
)

console = Console()


class CorrelationIDProcessor:
    """Structlog processor to add correlation IDs to log records."""

    def __call__(self, logger, method_name, event_dict):
        correlation_id = get_correlation_id()
        if correlation_id:
            event_dict.setdefault("correlation_id", correlation_id)
        return event_dict


class TimestampProcessor:
    """Structlog processor to add ISO timestamps to log records."""

    def __call__(self, logger, method_name, event_dict):
        event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()
        return event_dict


class PerformanceProcessor:
    """Structlog processor to add the active performance context."""

    def __call__(self, logger, method_name, event_dict):
        context = _performance_context.get()
        if context:
            for key, value in context.items():
                event_dict.setdefault(key, value)
        return event_dict


class CaseChatLogFormatter:
    """
    Log renderer producing either JSON lines or rich console markup.

    Console output puts the level, logger name and short correlation id in
    front of the event and appends the remaining context as key=value pairs.
    """

    level_colors = {
        "DEBUG": "dim white",
        "INFO": "blue",
        "WARNING": "yellow",
        "ERROR": "red",
        "CRITICAL": "bold red"
    }

    def __init__(self, use_json: bool = False):
        self.use_json = use_json

    def __call__(self, _, __, event_dict):
        if self.use_json:
            return json.dumps(event_dict, default=str)
        return self._format_console_output(event_dict)

    def _format_console_output(self, event_dict: Dict[str, Any]) -> str:
        timestamp = event_dict.get("timestamp", "")
        level = event_dict.get("level", "info").upper()
        logger_name = event_dict.get("logger", "")
        correlation_id = event_dict.get("correlation_id", "")
        event = event_dict.get("event", "")

        parts = []
        if timestamp:
            parts.append(f"[dim]{timestamp[:19]}[/dim]")

        level_color = self.level_colors.get(level, "white")
        parts.append(f"[{level_color}]{level:8}[/{level_color}]")

        if logger_name:
            parts.append(f"[cyan]{logger_name}[/cyan]")
        if correlation_id:
            parts.append(f"[magenta]{correlation_id[:8]}[/magenta]")

        parts.append(f"[white]{event}[/white]")

        context_fields = {
            k: v for k, v in event_dict.items()
            if k not in {"timestamp", "level", "logger", "correlation_id", "event"}
        }
        if context_fields:
            context_str = " ".join(f"{k}={v}" for k, v in context_fields.items())
            parts.append(f"[dim]{context_str}[/dim]")

        return " ".join(parts)


def setup_logging(
    level: str = "INFO",
    use_json: bool = False,
    enable_correlation_ids: bool = True
) -> None:
    """
    Setup structured logging for the application.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        use_json: Output structured JSON logs
        enable_correlation_ids: Enable correlation ID tracking
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.processors.add_log_level,
        TimestampProcessor(),
    ]

    if enable_correlation_ids:
        processors.append(CorrelationIDProcessor())

    processors.append(PerformanceProcessor())
    processors.append(CaseChatLogFormatter(use_json=use_json))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers.clear()

    if use_json:
        handler = logging.StreamHandler(sys.stdout)
    else:
        handler = RichHandler(
            console=console,
            show_time=False,
            show_level=False,
            show_path=False,
            rich_tracebacks=True,
            markup=True
        )
    handler.setLevel(numeric_level)
    root_logger.addHandler(handler)


def get_logger(name: str) -> structlog.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured structlog bound logger
    """
    return structlog.get_logger(name)


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """
    Set correlation ID for the current task context.

    Args:
        correlation_id: Optional correlation ID, generates UUID if None

    Returns:
        The correlation ID that was set
    """
    if correlation_id is None:
        correlation_id = str(uuid.uuid4())
    _correlation_id.set(correlation_id)
    return correlation_id


def get_correlation_id() -> Optional[str]:
    """Get the correlation ID for the current task context."""
    return _correlation_id.get()


def clear_correlation_id() -> None:
    """Clear the correlation ID for the current task context."""
    _correlation_id.set(None)


@contextmanager
def correlation_context(correlation_id: Optional[str] = None):
    """
    Context manager for correlation ID scoping.

    Usage:
        with correlation_context("req-123"):
            logger.info("This log will have correlation_id=req-123")
    """
    token = _correlation_id.set(correlation_id or str(uuid.uuid4()))
    try:
        yield _correlation_id.get()
    finally:
        _correlation_id.reset(token)


@contextmanager
def performance_context(operation: str, **context: Any):
    """
    Context manager timing an operation and logging its outcome.

    Usage:
        with performance_context("mongodb_append_messages", case_id="123"):
            ...
    """
    start_time = time.perf_counter()
    logger = get_logger("performance")
    token = _performance_context.set({"operation": operation, **context})

    try:
        yield
    except Exception as e:
        logger.warning(
            "Operation failed",
            operation=operation,
            duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
            error=str(e),
            **context
        )
        raise
    else:
        logger.debug(
            "Operation completed",
            operation=operation,
            duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
            **context
        )
    finally:
        _performance_context.reset(token)


class WebSocketLogger:
    """Specialized logger for WebSocket connections and events."""

    def __init__(self):
        self.logger = get_logger("websocket")

    def connection_established(
        self,
        connection_id: str,
        user_id: Optional[str] = None,
        role: Optional[str] = None
    ):
        """Log WebSocket connection establishment."""
        self.logger.info(
            "WebSocket connection established",
            connection_id=connection_id,
            user_id=user_id,
            role=role,
            event_type="connection_established"
        )

    def connection_closed(
        self,
        connection_id: str,
        reason: Optional[str] = None,
        code: Optional[int] = None
    ):
        """Log WebSocket connection closure."""
        self.logger.info(
            "WebSocket connection closed",
            connection_id=connection_id,
            reason=reason,
            code=code,
            event_type="connection_closed"
        )

    def message_sent(
        self,
        connection_id: str,
        message_type: str,
        message_size: Optional[int] = None
    ):
        """Log WebSocket message sending."""
        self.logger.debug(
            "WebSocket message sent",
            connection_id=connection_id,
            message_type=message_type,
            message_size=message_size,
            event_type="message_sent"
        )

    def message_received(
        self,
        connection_id: str,
        message_type: Optional[str],
        message_size: Optional[int] = None
    ):
        """Log WebSocket message reception."""
        self.logger.debug(
            "WebSocket message received",
            connection_id=connection_id,
            message_type=message_type,
            message_size=message_size,
            event_type="message_received"
        )

    def error_occurred(
        self,
        connection_id: str,
        error: str,
        error_code: Optional[str] = None
    ):
        """Log WebSocket errors."""
        self.logger.warning(
            "WebSocket error occurred",
            connection_id=connection_id,
            error=error,
            error_code=error_code,
            event_type="error"
        )


class DatabaseLogger:
    """Specialized logger for database operations."""

    def __init__(self):
        self.logger = get_logger("database")

    def query_executed(
        self,
        database_type: str,
        operation: str,
        collection: Optional[str] = None,
        result_count: Optional[int] = None
    ):
        """Log database query execution."""
        self.logger.debug(
            "Database query executed",
            database_type=database_type,
            operation=operation,
            collection=collection,
            result_count=result_count,
            event_type="query_executed"
        )

    def connection_established(self, database_type: str, database_name: str):
        """Log database connection establishment."""
        self.logger.info(
            "Database connection established",
            database_type=database_type,
            database_name=database_name,
            event_type="connection_established"
        )

    def connection_failed(self, database_type: str, error: str):
        """Log database connection failures."""
        self.logger.error(
            "Database connection failed",
            database_type=database_type,
            error=error,
            event_type="connection_failed"
        )


websocket_logger = WebSocketLogger()
database_logger = DatabaseLogger()


def initialize_logging_from_settings(settings=None) -> None:
    """Initialize logging using application settings."""
    if settings is None:
        from lawfirm_chat.config.settings import get_settings
        settings = get_settings()

    setup_logging(
        level=settings.logging.level,
        use_json=settings.logging.use_json,
        enable_correlation_ids=settings.logging.enable_correlation_ids
    )

    get_logger(__name__).info(
        "Logging system initialized",
        level=settings.logging.level,
        json_output=settings.logging.use_json
    )


def log_security_event(
    event_type: str,
    user_id: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    action: Optional[str] = None,
    success: bool = True,
    **context: Any
) -> None:
    """
    Log security-related events for audit trails.

    Args:
        event_type: Type of security event (e.g. "authentication_failed", "access_denied")
        user_id: User identifier
        resource_type: Type of resource being accessed
        resource_id: Specific resource identifier
        action: Action being performed
        success: Whether the security check succeeded
        **context: Additional security context
    """
    security_logger = get_logger("security")

    security_context = {
        "event_type": event_type,
        "success": success,
    }
    if user_id:
        security_context["user_id"] = user_id
    if resource_type:
        security_context["resource_type"] = resource_type
    if resource_id:
        security_context["resource_id"] = resource_id
    if action:
        security_context["action"] = action
    security_context.update(context)

    if not success or event_type in ("access_denied", "authentication_failed"):
        security_logger.warning(f"Security event: {event_type}", **security_context)
    else:
        security_logger.info(f"Security event: {event_type}", **security_context)


def log_business_event(
    event_type: str,
    user_id: Optional[str] = None,
    case_id: Optional[str] = None,
    **context: Any
) -> None:
    """
    Log business events such as room joins and bulk history deletes.

    Usage:
        log_business_event("chat_history_deleted", user_id="u1", case_id="c1")
    """
    event_context: Dict[str, Any] = {"event_type": event_type}
    if user_id:
        event_context["user_id"] = user_id
    if case_id:
        event_context["case_id"] = case_id
    event_context.update(context)

    get_logger("business").info(f"Business event: {event_type}", **event_context)
