"""Workforce orchestration core: agent processes, task routing, and messaging."""
from .models import (
    Agent,
    AgentStatus,
    Channel,
    ChannelKind,
    Collaboration,
    CollaborationStatus,
    DeliveryState,
    Message,
    MessageType,
    Priority,
    ProcessRecord,
    ProcessStatus,
    ResourceUsage,
    SpawnConfig,
    Task,
    TaskResult,
    TaskSpec,
    TaskStatus,
)
from .config import EngineConfig
from .errors import (
    AlreadyAssignedError,
    ChannelNotFoundError,
    InvalidStateError,
    NoEligibleAgentError,
    NotFoundError,
    OrchestrationError,
    SpawnFailureError,
    ValidationError,
)

__all__ = [
    # Core engine (lazy import to avoid circular deps)
    "OrchestrationEngine",
    # Components (lazy import)
    "AgentDirectory",
    "ProcessSupervisor",
    "TaskDispatcher",
    "MessageRouter",
    "EventBus",
    "ProcessBackend",
    "ProcessHandle",
    "SubprocessBackend",
    # Models
    "Agent",
    "AgentStatus",
    "Channel",
    "ChannelKind",
    "Collaboration",
    "CollaborationStatus",
    "DeliveryState",
    "Message",
    "MessageType",
    "Priority",
    "ProcessRecord",
    "ProcessStatus",
    "ResourceUsage",
    "SpawnConfig",
    "Task",
    "TaskResult",
    "TaskSpec",
    "TaskStatus",
    # Config
    "EngineConfig",
    # YAML config (lazy import)
    "CompanyConfig",
    "load_company_config",
    # Errors
    "AlreadyAssignedError",
    "ChannelNotFoundError",
    "InvalidStateError",
    "NoEligibleAgentError",
    "NotFoundError",
    "OrchestrationError",
    "SpawnFailureError",
    "ValidationError",
]


def __getattr__(name: str):
    if name == "OrchestrationEngine":
        from .engine import OrchestrationEngine
        return OrchestrationEngine
    if name == "AgentDirectory":
        from .directory import AgentDirectory
        return AgentDirectory
    if name == "ProcessSupervisor":
        from .supervisor import ProcessSupervisor
        return ProcessSupervisor
    if name == "TaskDispatcher":
        from .dispatcher import TaskDispatcher
        return TaskDispatcher
    if name == "MessageRouter":
        from .message_router import MessageRouter
        return MessageRouter
    if name == "EventBus":
        from .events import EventBus
        return EventBus
    if name in ("ProcessBackend", "ProcessHandle", "SubprocessBackend"):
        from . import process_backend
        return getattr(process_backend, name)
    if name == "CompanyConfig":
        from .yaml_config import CompanyConfig
        return CompanyConfig
    if name == "load_company_config":
        from .yaml_config import load_company_config
        return load_company_config
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
