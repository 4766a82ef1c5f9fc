# src/sqs_offline/exceptions.py

"""
Shared custom exceptions for the offline SQS event source.

Centralizing exception definitions in a separate module prevents circular
import errors between other modules that need to raise or catch them.

Exception Hierarchy:
- SqsOfflineError (base)
  - RetryableError (transient; logged as a warning on every retry)
    - SqsThrottlingError
    - SqsConnectionError
    - ReceiveError
    - DeleteError
  - NonRetryableError (needs operator action; a poller reports it once at
    error level, then retries quietly in case it clears)
    - ConfigurationError
    - ManifestError
    - QueueNameNotFoundError
    - HandlerLoadError
    - QueueDoesNotExistError
    - SqsAccessDeniedError
    - ProvisionError
  - InvocationError (carried inside an InvocationResult, never raised)
"""

from typing import Any, Dict, Optional


class SqsOfflineError(Exception):
    """Base exception for all offline SQS errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.context = dict(context) if context else {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for structured logging."""
        return {
            "error_type": self.__class__.__name__,
            "error_code": self.error_code,
            "message": self.message,
            "context": self.context,
            "retryable": isinstance(self, RetryableError),
        }


class RetryableError(SqsOfflineError):
    """Base class for errors that can be retried."""

    pass


class NonRetryableError(SqsOfflineError):
    """Base class for errors that retrying alone will not fix."""

    pass


# === Configuration & Manifest Errors ===


class ConfigurationError(NonRetryableError):
    """Raised when there's an error in the application configuration."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, error_code="CONFIGURATION_ERROR", **kwargs)


class ManifestError(NonRetryableError):
    """Raised when the deployment manifest cannot be parsed or validated."""

    def __init__(self, message: str, **kwargs):
        if "error_code" not in kwargs:
            kwargs["error_code"] = "INVALID_MANIFEST"
        super().__init__(message, **kwargs)


class QueueNameNotFoundError(NonRetryableError):
    """Raised when a trigger declaration does not identify any queue."""

    def __init__(self, trigger: Any, **kwargs):
        message = f"QueueName not found for trigger: {trigger!r}"
        context = {"trigger": repr(trigger)}
        super().__init__(
            message, error_code="QUEUE_NAME_NOT_FOUND", context=context, **kwargs
        )


class HandlerLoadError(NonRetryableError):
    """Raised when a function's handler cannot be imported."""

    def __init__(self, function_name: str, handler: str, reason: str, **kwargs):
        message = f"Cannot load handler '{handler}' for {function_name}: {reason}"
        context = {"function_name": function_name, "handler": handler}
        super().__init__(
            message, error_code="HANDLER_LOAD_FAILED", context=context, **kwargs
        )


# === SQS Backend Errors ===


class SqsError(SqsOfflineError):
    """Base class for queue backend errors."""

    pass


class QueueDoesNotExistError(SqsError, NonRetryableError):
    """Raised when the backend has no queue with the requested name or URL."""

    def __init__(self, queue: str, **kwargs):
        message = f"Queue does not exist: {queue}"
        context = {"queue": queue}
        if "context" in kwargs:
            context.update(kwargs.pop("context"))
        super().__init__(
            message, error_code="QUEUE_DOES_NOT_EXIST", context=context, **kwargs
        )


class SqsAccessDeniedError(SqsError, NonRetryableError):
    """Raised when the backend rejects the configured credentials."""

    def __init__(self, operation: str, **kwargs):
        message = f"Access denied for SQS operation: {operation}"
        context = {"operation": operation}
        if "context" in kwargs:
            context.update(kwargs.pop("context"))
        super().__init__(
            message, error_code="SQS_ACCESS_DENIED", context=context, **kwargs
        )


class SqsThrottlingError(SqsError, RetryableError):
    """Raised when SQS operations are being throttled."""

    def __init__(self, operation: str, **kwargs):
        message = f"SQS operation throttled: {operation}"
        context = {"operation": operation}
        if "context" in kwargs:
            context.update(kwargs.pop("context"))
        super().__init__(
            message, error_code="SQS_THROTTLING", context=context, **kwargs
        )


class SqsConnectionError(SqsError, RetryableError):
    """Raised when the SQS endpoint cannot be reached or times out."""

    def __init__(self, operation: str, endpoint_url: Optional[str] = None, **kwargs):
        message = f"SQS endpoint unreachable during: {operation}"
        context = {"operation": operation, "endpoint_url": endpoint_url}
        if "context" in kwargs:
            context.update(kwargs.pop("context"))
        super().__init__(
            message, error_code="SQS_CONNECTION_ERROR", context=context, **kwargs
        )


class ProvisionError(SqsError, NonRetryableError):
    """Raised when the backend rejects a create-queue call. Creation is attempted once."""

    def __init__(self, queue_name: str, reason: str, **kwargs):
        message = f"Failed to create queue {queue_name}: {reason}"
        context = {"queue_name": queue_name, "reason": reason}
        super().__init__(
            message, error_code="PROVISION_FAILED", context=context, **kwargs
        )


class ReceiveError(SqsError, RetryableError):
    """Raised when a receive call fails during steady-state polling."""

    def __init__(self, queue_url: str, reason: str, **kwargs):
        message = f"Failed to receive from {queue_url}: {reason}"
        context = {"queue_url": queue_url, "reason": reason}
        super().__init__(message, error_code="RECEIVE_FAILED", context=context, **kwargs)


class DeleteError(SqsError, RetryableError):
    """Raised when a batch delete fails or only partially succeeds."""

    def __init__(self, queue_url: str, failed_ids: list[str], **kwargs):
        message = f"Failed to delete {len(failed_ids)} message(s) from {queue_url}"
        context = {"queue_url": queue_url, "failed_ids": list(failed_ids)}
        if "context" in kwargs:
            context.update(kwargs.pop("context"))
        super().__init__(message, error_code="DELETE_FAILED", context=context, **kwargs)


# === Invocation Errors ===


class InvocationError(SqsOfflineError):
    """Describes a handler that raised or reported an error."""

    def __init__(self, function_name: str, reason: str, **kwargs):
        message = f"Invocation of {function_name} failed: {reason}"
        context = {"function_name": function_name, "reason": reason}
        if "context" in kwargs:
            context.update(kwargs.pop("context"))
        super().__init__(
            message, error_code="INVOCATION_FAILED", context=context, **kwargs
        )


# === Utility Functions ===


def is_retryable_error(error: Exception) -> bool:
    """Check if an error is retryable."""
    return isinstance(error, RetryableError)


def get_error_context(error: Exception) -> Dict[str, Any]:
    """Extract error context for logging."""
    if isinstance(error, SqsOfflineError):
        return error.to_dict()
    else:
        return {
            "error_type": error.__class__.__name__,
            "message": str(error),
            "retryable": False,  # Unknown errors default to non-retryable
        }
