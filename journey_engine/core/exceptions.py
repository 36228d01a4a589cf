"""Custom exceptions for the journey engine with detailed error information."""

from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
from enum import Enum


class ErrorSeverity(Enum):
    """Error severity levels for categorizing exceptions."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Categories of errors for better classification."""
    VALIDATION = "validation"
    EXECUTION = "execution"
    STORAGE = "storage"
    NETWORK = "network"
    CONFIGURATION = "configuration"
    CONCURRENCY = "concurrency"
    BUSINESS_LOGIC = "business_logic"


class JourneyEngineError(Exception):
    """Base exception for all journey engine errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.EXECUTION,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = False,
        retry_after: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.severity = severity
        self.category = category
        self.details = details or {}
        self.recoverable = recoverable
        self.retry_after = retry_after
        self.context = context or {}
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging and API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "details": self.details,
            "recoverable": self.recoverable,
            "retry_after": self.retry_after,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "exception_type": self.__class__.__name__
        }

    def add_context(self, **kwargs):
        """Add additional context to the exception."""
        self.context.update(kwargs)
        return self

    def add_details(self, **kwargs):
        """Add additional details to the exception."""
        self.details.update(kwargs)
        return self


class GraphValidationError(JourneyEngineError):
    """Raised when a workflow graph fails validation and cannot be activated."""

    def __init__(
        self,
        message: str,
        validation_errors: Optional[List[str]] = None,
        workflow_id: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.VALIDATION,
            **kwargs
        )
        self.validation_errors = validation_errors or []
        if workflow_id:
            self.add_context(workflow_id=workflow_id)
        if validation_errors:
            self.add_details(validation_errors=validation_errors)


class NodeExecutionError(JourneyEngineError):
    """Base class for failures raised by node executors."""

    def __init__(
        self,
        message: str,
        node_id: Optional[str] = None,
        execution_id: Optional[str] = None,
        recoverable: bool = False,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.EXECUTION,
            recoverable=recoverable,
            **kwargs
        )
        self.node_id = node_id
        if node_id:
            self.add_context(node_id=node_id)
        if execution_id:
            self.add_context(execution_id=execution_id)


class TransientExecutorError(NodeExecutionError):
    """Network, timeout or provider rate-limit failure; retried with backoff."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("retry_after", 5)
        super().__init__(message, recoverable=True, **kwargs)
        self.category = ErrorCategory.NETWORK


class LogicExecutorError(NodeExecutionError):
    """Malformed node configuration or data found at run time; never retried."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, recoverable=False, **kwargs)
        self.category = ErrorCategory.BUSINESS_LOGIC


class FatalExecutionError(NodeExecutionError):
    """Terminal failure recorded on the execution (retries exhausted or logic error)."""

    def __init__(
        self,
        message: str,
        retry_count: int = 0,
        cause: Optional[Exception] = None,
        **kwargs
    ):
        super().__init__(message, recoverable=False, **kwargs)
        self.severity = ErrorSeverity.CRITICAL
        self.retry_count = retry_count
        self.cause = cause
        self.add_details(retry_count=retry_count)
        if cause is not None:
            self.add_details(cause_type=type(cause).__name__)


class ExecutionEngineError(JourneyEngineError):
    """Raised when an engine operation is rejected (start, resume, cancel)."""

    def __init__(
        self,
        message: str,
        execution_id: Optional[str] = None,
        workflow_id: Optional[str] = None,
        **kwargs
    ):
        kwargs.setdefault("severity", ErrorSeverity.MEDIUM)
        kwargs.setdefault("category", ErrorCategory.BUSINESS_LOGIC)
        super().__init__(message, **kwargs)
        if execution_id:
            self.add_context(execution_id=execution_id)
        if workflow_id:
            self.add_context(workflow_id=workflow_id)


class ExecutionNotFoundError(ExecutionEngineError):
    """Raised when an execution id does not exist."""


class ExecutionLockedError(ExecutionEngineError):
    """Raised when another worker currently holds the execution lease."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.CONCURRENCY,
            recoverable=True,
            retry_after=1,
            **kwargs
        )


class StorageError(JourneyEngineError):
    """Raised when storage operations fail."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        table: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.STORAGE,
            recoverable=True,
            retry_after=3,
            **kwargs
        )
        if operation:
            self.add_context(operation=operation)
        if table:
            self.add_context(table=table)


class NotFoundError(StorageError):
    """Raised when a requested row does not exist."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, **kwargs)
        self.recoverable = False
        self.retry_after = None


class ABTestError(JourneyEngineError):
    """Raised when an A/B test operation is not allowed in the test's current state."""

    def __init__(self, message: str, test_id: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.VALIDATION,
            **kwargs
        )
        if test_id:
            self.add_context(test_id=test_id)


class ConfigurationError(JourneyEngineError):
    """Raised when configuration is invalid or missing."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.CONFIGURATION,
            **kwargs
        )
        if config_key:
            self.add_context(config_key=config_key)


def create_error_response(error: JourneyEngineError) -> Dict[str, Any]:
    """Create a standardized error response from a JourneyEngineError."""
    return {
        "error": error.error_code,
        "message": error.message,
        "details": {
            **error.details,
            "severity": error.severity.value,
            "category": error.category.value,
            "recoverable": error.recoverable,
            "retry_after": error.retry_after,
            "timestamp": error.timestamp.isoformat()
        },
        "context": error.context
    }
