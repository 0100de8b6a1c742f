"""flowkeeper: tenant-scoped workflow automation for platform events."""

from .actions import ActionRegistry, build_default_registry
from .contracts import DispatchResult, PlatformEvent
from .dispatch import TriggerDispatcher
from .execute import ExecutionEngine
from .persistence import get_repository
from .runtime import Runtime, build_runtime
from .service import WorkflowService
from .transports import get_transport

__version__ = "0.1.0"
__all__ = [
    "ActionRegistry",
    "DispatchResult",
    "ExecutionEngine",
    "PlatformEvent",
    "Runtime",
    "TriggerDispatcher",
    "WorkflowService",
    "build_default_registry",
    "build_runtime",
    "get_repository",
    "get_transport",
]
