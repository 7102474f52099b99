"""Exception hierarchy for the orchestration core.

One exception per failure mode. Each carries the HTTP status a thin
REST layer should map it to, so controllers never inspect messages.
"""
from __future__ import annotations


class OrchestrationError(Exception):
    """Base exception for all orchestration errors."""

    http_status: int = 500


class NotFoundError(OrchestrationError):
    """Unknown task, agent, process, or collaboration."""

    http_status = 404

    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class ChannelNotFoundError(NotFoundError):
    """Message addressed to a channel that was never registered."""

    def __init__(self, channel_id: str):
        self.channel_id = channel_id
        super().__init__("Channel", channel_id)


class InvalidStateError(OrchestrationError):
    """Operation attempted from a state that does not permit it."""

    http_status = 400

    def __init__(self, kind: str, identifier: str, state: str, action: str):
        self.kind = kind
        self.identifier = identifier
        self.state = state
        self.action = action
        super().__init__(
            f"Cannot {action} {kind.lower()} {identifier} in state {state}"
        )


class AlreadyAssignedError(InvalidStateError):
    """Task is not in a state that accepts a new assignment."""

    def __init__(self, task_id: str, state: str):
        super().__init__("Task", task_id, state, "assign")


class NoEligibleAgentError(OrchestrationError):
    """Scoring produced no viable candidate for a task."""

    http_status = 400

    def __init__(self, task_id: str, skills: list[str]):
        self.task_id = task_id
        self.skills = skills
        skills_str = ", ".join(skills) if skills else "none"
        super().__init__(
            f"No eligible agent for task {task_id} (skills: {skills_str})"
        )


class SpawnFailureError(OrchestrationError):
    """Worker process could not be started for an agent."""

    http_status = 500

    def __init__(self, agent_id: str, reason: str):
        self.agent_id = agent_id
        self.reason = reason
        super().__init__(f"Failed to spawn process for agent {agent_id}: {reason}")


class ValidationError(OrchestrationError):
    """Caller supplied a malformed entity."""

    http_status = 400

    def __init__(self, field_name: str, reason: str):
        self.field_name = field_name
        self.reason = reason
        super().__init__(f"Invalid {field_name}: {reason}")
