"""Carrier - deploy, supervise and resume fleets of coding agents."""

__version__ = "0.1.0"

# Re-export core components for convenience
from .config import CarrierConfig, configure_logging, find_claude_cli
from .context import ContextExtractor, DeploymentContext, TaskContext
from .exceptions import (
    CarrierError,
    NotFoundError,
    ProcessError,
    ProviderError,
    RegistryError,
    StateConflictError,
    ValidationError,
)
from .models import DeployedFleet, DeployedTask, Fleet, Status, Task, TaskRoute
from .orchestrator import Carrier
from .process import LaunchResult, ProcessManager, StopResult
from .provider import ClaudeCLIProvider, Provider, TaskConfig, TaskResult, get_provider
from .registry import RegistryStore
from .reporter import APIReporter
from .routing import RouteContext, evaluate_condition, select_route
from .stream import StreamEvent, StreamEventType, StreamWriter, read_events, watch_stream

__all__ = [
    "__version__",
    "APIReporter",
    "Carrier",
    "CarrierConfig",
    "CarrierError",
    "ClaudeCLIProvider",
    "ContextExtractor",
    "DeployedFleet",
    "DeployedTask",
    "DeploymentContext",
    "Fleet",
    "LaunchResult",
    "NotFoundError",
    "ProcessError",
    "ProcessManager",
    "Provider",
    "ProviderError",
    "RegistryError",
    "RegistryStore",
    "RouteContext",
    "StateConflictError",
    "Status",
    "StopResult",
    "StreamEvent",
    "StreamEventType",
    "StreamWriter",
    "Task",
    "TaskConfig",
    "TaskContext",
    "TaskResult",
    "TaskRoute",
    "ValidationError",
    "configure_logging",
    "evaluate_condition",
    "find_claude_cli",
    "get_provider",
    "read_events",
    "select_route",
    "watch_stream",
]
