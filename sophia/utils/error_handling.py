"""
Error handling for Sophia.

Exception taxonomy shared by the tool registry, workflow engine and API
gateway, plus helpers for logging and wrapping low-level failures.

Tool- and workflow-level failures are normally returned as result objects;
the exceptions here cover definition errors, lookups of missing entities
and infrastructure failures.
"""

import asyncio
import functools
import logging
import time
import traceback
from typing import Any, Callable, Dict, List, Optional, Type, Union


logger = logging.getLogger(__name__)


class SophiaError(Exception):
    """Base exception class for all Sophia errors."""

    http_status: int = 500

    def __init__(self, message: str, component: str = "unknown", details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.component = component
        self.details = details or {}
        self.timestamp = time.time()


class ToolNotFoundError(SophiaError):
    """A tool name does not exist in the registry."""
    http_status = 404


class ToolAlreadyExistsError(SophiaError):
    """A tool with the same name is already registered."""
    http_status = 409


class ToolValidationError(SophiaError):
    """A tool definition failed validation."""
    http_status = 400

    def __init__(self, message: str, errors: Optional[List[str]] = None, component: str = "tool_registry"):
        super().__init__(message, component=component, details={"errors": errors or []})
        self.errors = errors or []


class VersionError(SophiaError):
    """Invalid, duplicate or missing tool version."""
    http_status = 400


class CategoryError(SophiaError):
    """Invalid category operation (missing parent, cycle, children present)."""
    http_status = 400


class RegistryNotInitializedError(SophiaError):
    """The registry was used before initialize() completed."""
    http_status = 503


class StorageError(SophiaError):
    """Error with storage operations (file, vector store, etc.)."""
    http_status = 500


class LLMError(SophiaError):
    """Error when interacting with the LLM or embedding service."""
    http_status = 502


class DependencyInstallError(SophiaError):
    """A package manager invocation failed."""
    http_status = 500


class ExecutionTimeout(SophiaError):
    """Tool code exceeded its wall-clock limit."""
    http_status = 504


class WorkflowNotFoundError(SophiaError):
    """A workflow id does not exist."""
    http_status = 404


class WorkflowValidationError(SophiaError):
    """A workflow definition is malformed."""
    http_status = 400


class ExecutionNotFoundError(SophiaError):
    """No progress is recorded for a workflow execution id."""
    http_status = 404


class MappingResolutionError(SophiaError):
    """A step input mapping could not be resolved."""
    http_status = 400


class ExpressionError(SophiaError):
    """A condition expression is invalid or failed to evaluate."""
    http_status = 400


def catch_and_log(
    component: str,
    exceptions: Union[Type[Exception], tuple] = Exception,
    default_return: Any = None
) -> Callable:
    """
    Decorator to catch exceptions, log them and return a default value.

    Only for best-effort operations whose failure must not propagate.

    Args:
        component: Component name used in the log line
        exceptions: Exception(s) to catch
        default_return: Value returned if an exception is caught

    Returns:
        Decorated function
    """
    def decorator(func):
        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except exceptions as e:
                logger.error(f"Error in {func.__name__} ({component}): {e}")
                logger.debug(f"Stack trace: {traceback.format_exc()}")
                return default_return

        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            try:
                return await func(*args, **kwargs)
            except exceptions as e:
                logger.error(f"Error in {func.__name__} ({component}): {e}")
                logger.debug(f"Stack trace: {traceback.format_exc()}")
                return default_return

        if asyncio.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator


class ErrorContext:
    """
    Context manager that wraps foreign exceptions into a Sophia error.

    Example:
        with ErrorContext("vector_store", "Failed to save index", StorageError):
            json.dump(index, f)
    """

    def __init__(self, component: str, message: str,
                 error_class: Type[SophiaError] = SophiaError):
        """
        Initialize the error context.

        Args:
            component: Component name
            message: Error message prefix
            error_class: Sophia error class to raise
        """
        self.component = component
        self.message = message
        self.error_class = error_class

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is None:
            return False

        logger.error(f"Error in {self.component}: {self.message} - {exc_val}")

        if not isinstance(exc_val, SophiaError):
            raise self.error_class(
                message=f"{self.message}: {exc_val}",
                component=self.component,
                details={"original_error": exc_type.__name__}
            ) from exc_val

        return False
