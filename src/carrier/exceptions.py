"""
Carrier Exception Hierarchy.

All custom exceptions inherit from CarrierError for unified error handling.
"""

from __future__ import annotations

import logging
from typing import Any

logger = logging.getLogger(__name__)


class CarrierError(Exception):
    """Base exception for Carrier errors.

    All Carrier exceptions inherit from this class to allow catching
    any Carrier-related error with a single except clause.

    Attributes:
        message: Human-readable error description
        context: Additional context for debugging
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}
        self._log_error()

    def _log_error(self) -> None:
        """Log the error creation at debug level.

        Callers should log at appropriate level when handling the exception.
        """
        logger.debug(
            f"{self.__class__.__name__}: {self.message}",
            extra={"error_context": self.context},
        )

    def __str__(self) -> str:
        if self.context:
            ctx = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return f"{self.message} [{ctx}]"
        return self.message


class NotFoundError(CarrierError):
    """Raised when a deployment, task or fleet id does not resolve.

    Examples:
        - Unknown deployment id
        - Task id not present in the fleet definition
        - Missing fleet definition file
    """

    def __init__(
        self,
        message: str,
        deployed_id: str | None = None,
        task_id: str | None = None,
        fleet_id: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        ctx = context or {}
        if deployed_id:
            ctx["deployed_id"] = deployed_id
        if task_id:
            ctx["task_id"] = task_id
        if fleet_id:
            ctx["fleet_id"] = fleet_id
        super().__init__(message, ctx)
        self.deployed_id = deployed_id
        self.task_id = task_id
        self.fleet_id = fleet_id


class StateConflictError(CarrierError):
    """Raised when an operation is invalid for the current status.

    No mutation is performed when this is raised.

    Attributes:
        current_status: The status that blocked the operation
        requested_status: The status or operation that was requested
    """

    def __init__(
        self,
        message: str,
        current_status: str | None = None,
        requested_status: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        ctx = context or {}
        if current_status:
            ctx["current_status"] = current_status
        if requested_status:
            ctx["requested_status"] = requested_status
        super().__init__(message, ctx)
        self.current_status = current_status
        self.requested_status = requested_status


class ProcessError(CarrierError):
    """Raised when a task process cannot be spawned or supervised.

    Attributes:
        pid: Process id involved, if one was assigned
        exit_code: Exit code of the child, if it exited
    """

    def __init__(
        self,
        message: str,
        pid: int | None = None,
        exit_code: int | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        ctx = context or {}
        if pid is not None:
            ctx["pid"] = pid
        if exit_code is not None:
            ctx["exit_code"] = exit_code
        super().__init__(message, ctx)
        self.pid = pid
        self.exit_code = exit_code


class RegistryError(CarrierError):
    """Raised when registry state cannot be locked or written.

    Reads degrade to an empty registry; writes never do.
    """


class ProviderError(CarrierError):
    """Raised when the execution provider is unavailable or misconfigured."""


class ValidationError(CarrierError):
    """Raised for input validation errors.

    Examples:
        - Malformed fleet definition
        - Invalid status value
        - Invalid route condition
    """

    def __init__(
        self,
        message: str,
        field_name: str | None = None,
        value: Any = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        ctx = context or {}
        if field_name:
            ctx["field"] = field_name
        if value is not None:
            ctx["value"] = repr(value)
        super().__init__(message, ctx)
        self.field_name = field_name
        self.value = value
