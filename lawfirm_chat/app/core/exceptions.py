"""
Custom exception classes for the law-firm case chat service.

This module defines the exception hierarchy shared by the socket layer,
the batch persistence service and the HTTP routes:
- Standardized error codes for client-side handling
- HTTP status code mapping for API responses
- Structured error details with a user-facing message
- Convenience raise helpers for common failure patterns
"""

import traceback
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorCode(str, Enum):
    """
    Standardized error codes for the chat service.

    These codes provide consistent error identification across the socket
    protocol and the HTTP API.
    """

    # Configuration Errors (1xxx)
    CONFIG_VALIDATION_FAILED = "1001"

    # Database Errors (2xxx)
    DATABASE_CONNECTION_ERROR = "2001"
    DATABASE_OPERATION_FAILED = "2002"

    # Case Errors (4xxx)
    CASE_NOT_FOUND = "4001"
    CASE_ACCESS_DENIED = "4002"
    USER_NOT_FOUND = "4006"

    # Chat Errors (5xxx)
    MESSAGE_INVALID = "5001"
    MESSAGE_FORBIDDEN_TYPE = "5002"
    UPSTREAM_LOOKUP_FAILED = "5003"
    BATCH_FLUSH_FAILED = "5004"

    # WebSocket Errors (7xxx)
    WEBSOCKET_CONNECTION_FAILED = "7001"
    WEBSOCKET_MESSAGE_INVALID = "7002"
    WEBSOCKET_CONNECTION_LIMIT = "7004"

    # Authentication Errors (8xxx)
    AUTH_TOKEN_MISSING = "8000"
    AUTH_INVALID_CREDENTIALS = "8001"
    AUTH_TOKEN_EXPIRED = "8002"
    AUTH_INSUFFICIENT_PERMISSIONS = "8003"


class BaseCustomException(Exception):
    """
    Base exception class for all custom exceptions in the chat service.

    Provides common functionality for error tracking, context preservation,
    and structured error information.
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        details: Optional[Dict[str, Any]] = None,
        http_status_code: int = 500,
        correlation_id: Optional[str] = None,
        user_message: Optional[str] = None
    ):
        """
        Initialize base exception with structured error information.

        Args:
            message: Technical error message for developers
            error_code: Standardized error code for identification
            details: Additional context and debugging information
            http_status_code: HTTP status code for API responses
            correlation_id: Request correlation ID for tracking
            user_message: User-friendly error message for display
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        self.http_status_code = http_status_code
        self.correlation_id = correlation_id
        self.user_message = user_message or self._generate_user_message()
        self.traceback_info = traceback.format_exc()

    def _generate_user_message(self) -> str:
        """Generate a user-friendly error message based on the error code."""
        user_messages = {
            ErrorCode.DATABASE_CONNECTION_ERROR: "Unable to connect to the database. Please try again later.",
            ErrorCode.CASE_NOT_FOUND: "Case not found",
            ErrorCode.CASE_ACCESS_DENIED: "You do not have access to this case",
            ErrorCode.AUTH_TOKEN_MISSING: "Authentication error",
            ErrorCode.AUTH_INVALID_CREDENTIALS: "Authentication error",
            ErrorCode.AUTH_TOKEN_EXPIRED: "Authentication error",
            ErrorCode.MESSAGE_INVALID: "Invalid chat message",
        }
        return user_messages.get(self.error_code, "An unexpected error occurred. Please contact support.")

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for JSON serialization."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "user_message": self.user_message,
            "details": self.details,
            "http_status_code": self.http_status_code,
            "correlation_id": self.correlation_id,
        }

    def __str__(self) -> str:
        return f"[{self.error_code.value}] {self.message}"


class ConfigurationError(BaseCustomException):
    """Exception raised for configuration-related errors."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.CONFIG_VALIDATION_FAILED,
        config_section: Optional[str] = None,
        config_errors: Optional[Dict[str, List[str]]] = None,
        **kwargs
    ):
        details = {
            "config_section": config_section,
            "config_errors": config_errors or {},
        }
        super().__init__(
            message=message,
            error_code=error_code,
            details=details,
            http_status_code=500,
            **kwargs
        )


class DatabaseError(BaseCustomException):
    """Exception raised for database-related errors."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.DATABASE_OPERATION_FAILED,
        database_type: Optional[str] = None,
        collection_name: Optional[str] = None,
        operation: Optional[str] = None,
        **kwargs
    ):
        details = {
            "database_type": database_type,
            "collection_name": collection_name,
            "operation": operation,
        }
        super().__init__(
            message=message,
            error_code=error_code,
            details=details,
            http_status_code=503 if error_code == ErrorCode.DATABASE_CONNECTION_ERROR else 500,
            **kwargs
        )


class AuthenticationError(BaseCustomException):
    """Raised when a token is missing, malformed, expired or wrongly signed."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.AUTH_INVALID_CREDENTIALS,
        user_id: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            details={"user_id": user_id},
            http_status_code=401,
            **kwargs
        )


class AuthorizationError(BaseCustomException):
    """Raised when an authenticated user is not a participant of a case."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.CASE_ACCESS_DENIED,
        user_id: Optional[str] = None,
        case_id: Optional[str] = None,
        role: Optional[str] = None,
        **kwargs
    ):
        details = {
            "user_id": user_id,
            "case_id": case_id,
            "role": role,
        }
        super().__init__(
            message=message,
            error_code=error_code,
            details=details,
            http_status_code=403,
            **kwargs
        )


class NotFoundError(BaseCustomException):
    """Raised when a referenced case or user does not exist."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.CASE_NOT_FOUND,
        resource_type: str = "case",
        resource_id: Optional[str] = None,
        **kwargs
    ):
        details = {
            "resource_type": resource_type,
            "resource_id": resource_id,
        }
        super().__init__(
            message=message,
            error_code=error_code,
            details=details,
            http_status_code=404,
            **kwargs
        )


class UpstreamLookupError(BaseCustomException):
    """Raised when a case, user or store lookup fails for infrastructure reasons."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.UPSTREAM_LOOKUP_FAILED,
        lookup: Optional[str] = None,
        key: Optional[str] = None,
        **kwargs
    ):
        details = {
            "lookup": lookup,
            "key": key,
        }
        super().__init__(
            message=message,
            error_code=error_code,
            details=details,
            http_status_code=502,
            **kwargs
        )


class PersistenceFlushError(BaseCustomException):
    """Raised when a buffered batch cannot be written to the message store."""

    def __init__(
        self,
        message: str,
        case_id: Optional[str] = None,
        batch_size: Optional[int] = None,
        attempt: Optional[int] = None,
        **kwargs
    ):
        details = {
            "case_id": case_id,
            "batch_size": batch_size,
            "attempt": attempt,
        }
        super().__init__(
            message=message,
            error_code=ErrorCode.BATCH_FLUSH_FAILED,
            details=details,
            http_status_code=500,
            **kwargs
        )


class WebSocketError(BaseCustomException):
    """Exception raised for WebSocket-related errors."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.WEBSOCKET_CONNECTION_FAILED,
        connection_id: Optional[str] = None,
        user_id: Optional[str] = None,
        **kwargs
    ):
        details = {
            "connection_id": connection_id,
            "user_id": user_id,
        }
        super().__init__(
            message=message,
            error_code=error_code,
            details=details,
            http_status_code=400,
            **kwargs
        )


class ValidationError(BaseCustomException):
    """Exception raised for payload validation errors."""

    def __init__(
        self,
        message: str,
        field_errors: Optional[List[Dict[str, Any]]] = None,
        error_code: ErrorCode = ErrorCode.MESSAGE_INVALID,
        **kwargs
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            details={"field_errors": field_errors or []},
            http_status_code=422,
            **kwargs
        )


def get_exception_response_data(exception: BaseCustomException) -> Dict[str, Any]:
    """
    Extract response data from a custom exception for API responses.

    Args:
        exception: Custom exception instance

    Returns:
        Dictionary containing structured error data
    """
    return {
        "success": False,
        "error": {
            "code": exception.error_code.value,
            "message": exception.user_message,
            "details": exception.details,
        },
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "correlation_id": exception.correlation_id,
    }


# Convenience functions for common exception patterns

def raise_database_error(
    message: str,
    database_type: str = "mongodb",
    operation: Optional[str] = None,
    collection_name: Optional[str] = None,
    error_code: ErrorCode = ErrorCode.DATABASE_OPERATION_FAILED
) -> None:
    """Raise a database error with context."""
    raise DatabaseError(
        message=message,
        error_code=error_code,
        database_type=database_type,
        collection_name=collection_name,
        operation=operation
    )


def raise_case_not_found(case_id: str) -> None:
    """Raise a not-found error for a case."""
    raise NotFoundError(
        message=f"Case {case_id} not found",
        resource_type="case",
        resource_id=case_id,
        user_message="Case not found"
    )


def raise_case_access_denied(
    case_id: str,
    user_id: str,
    role: Optional[str] = None,
    user_message: Optional[str] = None
) -> None:
    """Raise an authorization error for a case the user does not participate in."""
    raise AuthorizationError(
        message=f"User {user_id} is not a participant of case {case_id}",
        user_id=user_id,
        case_id=case_id,
        role=role,
        user_message=user_message
    )


def raise_auth_error(
    message: str,
    error_code: ErrorCode = ErrorCode.AUTH_INVALID_CREDENTIALS,
    user_id: Optional[str] = None
) -> None:
    """Raise an authentication error."""
    raise AuthenticationError(
        message=message,
        error_code=error_code,
        user_id=user_id
    )
