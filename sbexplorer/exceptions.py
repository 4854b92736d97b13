"""
Service Bus Explorer Exception Hierarchy

Exception types for connection, authentication, management, receiver and sender
failures, each carrying a machine-readable error code and context, plus the
translation of ``azure.servicebus`` errors into them.

Author: sbexplorer Contributors
Date: 2025-12-14
"""

from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, Optional

from azure.servicebus import exceptions as sb_errors


class ServiceBusError(Exception):
    """
    Base exception for all Service Bus Explorer errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code (e.g., 'AuthFailed')
        details: Additional context (entity_path, status_code, etc.)
    """

    error_code: str = "ServiceBusError"
    is_transient: bool = False

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.error_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary format for CLI and log output."""
        return {
            "error": {
                "code": self.error_code,
                "message": self.message,
                "details": self.details
            }
        }


# ========== Connection Errors ==========

class ServiceBusConnectionError(ServiceBusError):
    """Raised when the transport to the namespace fails."""
    error_code = "ConnectionError"
    is_transient = True

    def __init__(
        self,
        reason: str,
        host: Optional[str] = None,
        message: Optional[str] = None
    ):
        message = message or f"Connection error: {reason}"
        details = {"reason": reason}
        if host:
            details["host"] = host
        super().__init__(message, details=details)


class AuthError(ServiceBusError):
    """Raised when the namespace rejects the bearer token for an entity."""
    error_code = "AuthFailed"

    def __init__(
        self,
        status_code: Optional[int],
        description: Optional[str] = None,
        entity_path: Optional[str] = None,
        message: Optional[str] = None
    ):
        message = message or f"CBS authentication failed ({status_code}): {description or 'no description'}"
        details = {"status_code": status_code, "description": description}
        if entity_path:
            details["entity_path"] = entity_path
        super().__init__(message, details=details)
        self.status_code = status_code
        self.description = description


class EntityNotFoundError(ServiceBusError):
    """Raised when the queue, topic or subscription does not exist."""
    error_code = "EntityNotFound"

    def __init__(self, entity_path: str, description: Optional[str] = None):
        message = f"Entity '{entity_path}' not found"
        if description:
            message = f"{message}: {description}"
        super().__init__(message, details={"entity_path": entity_path})
        self.entity_path = entity_path


# ========== Timeout Errors ==========

class TimeoutError(ServiceBusError):
    """Raised when a bounded wait is exceeded."""
    error_code = "OperationTimeout"
    is_transient = True

    def __init__(
        self,
        operation: str,
        timeout_seconds: Optional[float] = None,
        message: Optional[str] = None
    ):
        if timeout_seconds is None:
            message = message or f"Operation '{operation}' timed out"
        else:
            message = message or f"Operation '{operation}' timed out after {timeout_seconds}s"
        details = {"operation": operation, "timeout_seconds": timeout_seconds}
        super().__init__(message, details=details)
        self.operation = operation
        self.timeout_seconds = timeout_seconds


# ========== Management Errors ==========

class ManagementOperationError(ServiceBusError):
    """Raised when the management node rejects a request."""
    error_code = "ManagementOperationFailed"

    def __init__(
        self,
        operation: str,
        status_code: Optional[int] = None,
        description: Optional[str] = None,
        message: Optional[str] = None
    ):
        message = message or f"Management operation '{operation}' failed: {description or 'no description'}"
        details = {
            "operation": operation,
            "status_code": status_code,
            "description": description
        }
        super().__init__(message, details=details)
        self.operation = operation
        self.status_code = status_code
        self.description = description


class PeekError(ManagementOperationError):
    """Raised when a peek request is rejected."""
    error_code = "PeekFailed"

    def __init__(
        self,
        description: Optional[str] = None,
        status_code: Optional[int] = None,
        message: Optional[str] = None
    ):
        message = message or f"Peek failed: {description or 'no description'}"
        super().__init__("peek", status_code, description, message)


class BatchDeleteError(ManagementOperationError):
    """Raised when server-side batch deletion is unsupported or rejected."""
    error_code = "BatchDeleteFailed"

    def __init__(
        self,
        description: Optional[str] = None,
        status_code: Optional[int] = None,
        message: Optional[str] = None
    ):
        super().__init__("batch_delete", status_code, description, message)


class DispositionError(ManagementOperationError):
    """Raised when settling a sequence-locked message is rejected."""
    error_code = "DispositionFailed"

    def __init__(
        self,
        description: Optional[str] = None,
        status_code: Optional[int] = None,
        message: Optional[str] = None
    ):
        super().__init__("update_disposition", status_code, description, message)


# ========== Receiver and Sender Errors ==========

class ReceiverError(ServiceBusError):
    """Raised when a receiver cannot be opened or fails while receiving."""
    error_code = "ReceiverError"

    def __init__(
        self,
        reason: str,
        entity_path: Optional[str] = None,
        message: Optional[str] = None
    ):
        message = message or f"Receiver error: {reason}"
        details = {"reason": reason}
        if entity_path:
            details["entity_path"] = entity_path
        super().__init__(message, details=details)


class SendError(ServiceBusError):
    """Raised when the broker rejects or fails to accept a sent message."""
    error_code = "SendFailed"

    def __init__(
        self,
        reason: str,
        entity_path: Optional[str] = None,
        message: Optional[str] = None
    ):
        message = message or f"Send failed: {reason}"
        details = {"reason": reason}
        if entity_path:
            details["entity_path"] = entity_path
        super().__init__(message, details=details)


# ========== Dead Letter Reasons ==========

class DeadLetterReason:
    """Dead letter reasons used by explorer operations."""
    MANUAL = "ManualDeadLetter"
    PROCESSING_ERROR = "ProcessingError"
    INVALID_MESSAGE_FORMAT = "InvalidMessageFormat"


# ========== SDK Error Translation ==========

ErrorFactory = Callable[[Exception], ServiceBusError]


@contextmanager
def translate_errors(
    operation: str,
    entity_path: Optional[str] = None,
    host: Optional[str] = None,
    error_factory: Optional[ErrorFactory] = None
) -> Iterator[None]:
    """
    Re-raise ``azure.servicebus`` errors from the enclosed block as explorer errors.

    Authentication, missing-entity, connection and timeout failures map to
    their dedicated types; any other SDK error goes through ``error_factory``
    (default: ManagementOperationError for ``operation``). Explorer errors
    pass through untouched.

    Usage:
        with translate_errors("peek", entity_path, error_factory=lambda e: PeekError(str(e))):
            messages = await receiver.peek_messages(...)
    """
    try:
        yield
    except ServiceBusError:
        raise
    except sb_errors.ServiceBusAuthenticationError as e:
        raise AuthError(401, str(e), entity_path=entity_path) from e
    except sb_errors.ServiceBusAuthorizationError as e:
        raise AuthError(403, str(e), entity_path=entity_path) from e
    except sb_errors.MessagingEntityNotFoundError as e:
        raise EntityNotFoundError(entity_path or "", str(e)) from e
    except sb_errors.OperationTimeoutError as e:
        raise TimeoutError(operation, message=f"Operation '{operation}' timed out: {e}") from e
    except sb_errors.ServiceBusConnectionError as e:
        raise ServiceBusConnectionError(reason=str(e), host=host) from e
    except sb_errors.ServiceBusError as e:
        if error_factory is not None:
            raise error_factory(e) from e
        raise ManagementOperationError(operation, description=str(e)) from e


# ========== Utility Functions ==========

def is_transient_error(error: Exception) -> bool:
    """
    Determine if an error is transient and can be retried.

    Args:
        error: Exception to check

    Returns:
        True if error is transient and operation should be retried
    """
    if isinstance(error, ServiceBusError):
        return getattr(error, 'is_transient', False)

    # Standard transient exceptions
    if isinstance(error, (
        ConnectionError,
        ConnectionRefusedError,
        ConnectionResetError,
        OSError,
    )):
        return True

    return False
