"""Core journey engine components."""

from .exceptions import (
    JourneyEngineError,
    GraphValidationError,
    NodeExecutionError,
    TransientExecutorError,
    LogicExecutorError,
    FatalExecutionError,
    ExecutionEngineError,
    ExecutionLockedError,
    ExecutionNotFoundError,
    StorageError,
    NotFoundError,
    ABTestError,
    ConfigurationError,
)
from .logging import setup_logging, get_logger
from .graph import GraphModel
from .graph_validator import GraphValidator

__all__ = [
    "JourneyEngineError",
    "GraphValidationError",
    "NodeExecutionError",
    "TransientExecutorError",
    "LogicExecutorError",
    "FatalExecutionError",
    "ExecutionEngineError",
    "ExecutionLockedError",
    "ExecutionNotFoundError",
    "StorageError",
    "NotFoundError",
    "ABTestError",
    "ConfigurationError",
    "setup_logging",
    "get_logger",
    "GraphModel",
    "GraphValidator",
]
