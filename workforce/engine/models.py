"""Core data models for the orchestration core.

All dataclasses, enums, and type aliases. Single source of truth
to avoid circular imports.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any

BROADCAST = "broadcast"
CHANNEL_PREFIX = "channel:"


class AgentStatus(str, Enum):
    """Directory-level availability of an agent."""
    ACTIVE = "active"
    BUSY = "busy"
    OFFLINE = "offline"


class ProcessStatus(str, Enum):
    """Process record lifecycle. See lifecycle.py for transition rules."""
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"


class TaskStatus(str, Enum):
    """Task lifecycle. See lifecycle.py for transition rules."""
    PENDING = "pending"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    RESOLVED = "resolved"
    REOPENED = "reopened"
    CANCELLED = "cancelled"


class Priority(str, Enum):
    """Ordinal priority shared by tasks and messages."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK: dict[Priority, int] = {
    Priority.LOW: 0,
    Priority.MEDIUM: 1,
    Priority.HIGH: 2,
    Priority.URGENT: 3,
}


class MessageType(str, Enum):
    """Types of messages routed between agents."""
    REQUEST = "request"
    RESPONSE = "response"
    NOTIFICATION = "notification"
    BROADCAST = "broadcast"


class DeliveryState(str, Enum):
    DELIVERED = "delivered"
    QUEUED = "queued"


class ChannelKind(str, Enum):
    DIRECT = "direct"
    TEAM = "team"
    DEPARTMENT = "department"
    BROADCAST = "broadcast"


class CollaborationStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


def _make_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (set, frozenset)):
        return sorted(_to_jsonable(v) for v in value)
    if isinstance(value, (list, tuple)):
        return [_to_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {str(_to_jsonable(k)): _to_jsonable(v) for k, v in value.items()}
    if hasattr(value, "to_dict"):
        return value.to_dict()
    return value


class _Serializable:
    """Mixin giving dataclasses a JSON-friendly ``to_dict``."""

    def to_dict(self) -> dict[str, Any]:
        return {
            f.name: _to_jsonable(getattr(self, f.name))
            for f in fields(self)  # type: ignore[arg-type]
            if not f.name.startswith("_")
        }


@dataclass
class Agent(_Serializable):
    """A logical worker with skills and a workload.

    Owned by AgentDirectory. Never deleted, only marked offline.
    """
    agent_id: str
    name: str
    role: str = ""
    department: str = ""
    skills: list[str] = field(default_factory=list)
    workload: int = 0
    status: AgentStatus = AgentStatus.ACTIVE
    level: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        seen: set[str] = set()
        ordered: list[str] = []
        for skill in self.skills:
            key = skill.lower()
            if key not in seen:
                seen.add(key)
                ordered.append(skill)
        self.skills = ordered
        self.status = AgentStatus(self.status)
        self.workload = max(0, min(100, int(self.workload)))

    def has_skill(self, skill: str) -> bool:
        needle = skill.lower()
        return any(s.lower() == needle for s in self.skills)


@dataclass
class SpawnConfig(_Serializable):
    """How to start the worker process backing an agent."""
    command: str
    args: list[str] = field(default_factory=list)
    cwd: str | None = None
    env: dict[str, str] = field(default_factory=dict)
    max_memory_bytes: int = 0
    max_cpu_percent: float = 0.0


@dataclass
class ResourceUsage(_Serializable):
    cpu_percent: float = 0.0
    memory_bytes: int = 0


@dataclass
class ProcessRecord(_Serializable):
    """Lifecycle-tracked worker process bound to one agent."""
    agent_id: str
    spawn_config: SpawnConfig
    process_id: str = field(default_factory=_make_id)
    pid: int = 0
    status: ProcessStatus = ProcessStatus.STARTING
    restart_count: int = 0
    created_at: datetime = field(default_factory=_utcnow)
    started_at: datetime | None = None
    stopped_at: datetime | None = None
    last_heartbeat: datetime | None = None
    cpu_percent: float = 0.0
    memory_bytes: int = 0
    task_id: str | None = None
    exit_code: int | None = None
    last_error: str | None = None
    # Set once the restart budget is exhausted; cleared only by reset().
    fatal: bool = False

    @property
    def is_terminal(self) -> bool:
        if self.status == ProcessStatus.STOPPED:
            return True
        return self.status == ProcessStatus.ERROR and self.fatal

    @property
    def is_live(self) -> bool:
        return self.status == ProcessStatus.RUNNING


@dataclass
class TaskResult(_Serializable):
    """Outcome reported by the process that worked on a task."""
    success: bool
    output: str = ""
    error: str | None = None
    metrics: dict[str, Any] = field(default_factory=dict)


@dataclass
class TaskTransition(_Serializable):
    status: TaskStatus
    at: datetime = field(default_factory=_utcnow)
    note: str = ""


@dataclass
class TaskSpec:
    """Parameters for submitting a task."""
    title: str
    skills_required: Any = field(default_factory=frozenset)
    description: str = ""
    priority: Priority = Priority.MEDIUM
    max_retries: int | None = None
    workload_cost: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class Task(_Serializable):
    """A unit of work routed to the best-scoring eligible agent.

    Terminal records are retained for audit.
    """
    title: str
    skills_required: frozenset[str] = field(default_factory=frozenset)
    task_id: str = field(default_factory=_make_id)
    description: str = ""
    priority: Priority = Priority.MEDIUM
    status: TaskStatus = TaskStatus.PENDING
    assigned_agent_id: str | None = None
    process_id: str | None = None
    retry_count: int = 0
    max_retries: int = 3
    workload_cost: int = 10
    created_at: datetime = field(default_factory=_utcnow)
    assigned_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    result: TaskResult | None = None
    history: list[TaskTransition] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    # Workload actually added to the agent (after clamping); 0 once released.
    _applied_workload: int = field(default=0, repr=False)

    @property
    def is_terminal(self) -> bool:
        return self.status in (TaskStatus.FAILED, TaskStatus.CANCELLED)


@dataclass
class Message(_Serializable):
    """A message between agents.

    ``to`` is a single agent id, a list of ids, ``"broadcast"``, or
    ``"channel:<channel_id>"``.
    """
    sender_id: str
    to: str | list[str]
    content: Any = None
    message_type: MessageType = MessageType.NOTIFICATION
    topic: str = ""
    priority: Priority = Priority.MEDIUM
    message_id: str = field(default_factory=_make_id)
    timestamp: datetime = field(default_factory=_utcnow)
    deliveries: dict[str, DeliveryState] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def delivery_state(self) -> DeliveryState | None:
        if not self.deliveries:
            return None
        if any(s == DeliveryState.QUEUED for s in self.deliveries.values()):
            return DeliveryState.QUEUED
        return DeliveryState.DELIVERED

    def envelope(self) -> dict[str, Any]:
        """Payload written to a live worker's input stream."""
        return {
            "type": "agent-message",
            "message": {
                "id": self.message_id,
                "from": self.sender_id,
                "to": _to_jsonable(self.to),
                "type": self.message_type.value,
                "topic": self.topic,
                "priority": self.priority.value,
                "content": _to_jsonable(self.content),
                "timestamp": self.timestamp.isoformat(),
            },
        }


@dataclass
class Channel(_Serializable):
    """A named group of agents used for scoped fan-out."""
    channel_id: str
    name: str
    kind: ChannelKind
    members: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utcnow)
    last_activity: datetime = field(default_factory=_utcnow)


@dataclass
class Collaboration(_Serializable):
    """Caller-managed multi-agent work session."""
    initiator: str
    participants: list[str]
    topic: str
    description: str = ""
    collaboration_id: str = field(default_factory=_make_id)
    status: CollaborationStatus = CollaborationStatus.PENDING
    created_at: datetime = field(default_factory=_utcnow)
    deadline: datetime | None = None
