"""Agent directory.

Owns the table of logical agents: who they are, what they can do, and
how loaded they are. Agents are never deleted, only marked offline.
The directory knows nothing about processes or tasks; it only tells
the event bus when an agent's status or workload moves.
"""
from __future__ import annotations

import logging
from collections import Counter
from typing import TYPE_CHECKING, Any

from .errors import NotFoundError, ValidationError
from .models import Agent, AgentStatus

if TYPE_CHECKING:
    from .events import EventBus

logger = logging.getLogger(__name__)

# Workload below which an active agent counts as available.
AVAILABLE_WORKLOAD_LIMIT = 80


class AgentDirectory:
    """Registry of agents keyed by id, in registration order."""

    def __init__(
        self,
        agents: list[Agent] | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self._agents: dict[str, Agent] = {}
        self._event_bus = event_bus
        for agent in agents or []:
            self.register(agent)

    def register(self, agent: Agent) -> None:
        """Add an agent (or replace one with the same id)."""
        if not agent.agent_id:
            raise ValidationError("agent_id", "must be non-empty")
        if agent.agent_id in self._agents:
            logger.warning("Agent re-registered: %s", agent.agent_id)
        self._agents[agent.agent_id] = agent
        logger.info(
            "Agent registered: %s (%s, dept=%s, skills=%d)",
            agent.agent_id, agent.role or "-", agent.department or "-",
            len(agent.skills),
        )

    def get(self, agent_id: str) -> Agent | None:
        return self._agents.get(agent_id)

    def require(self, agent_id: str) -> Agent:
        """Get an agent by id. Raises NotFoundError if unknown."""
        agent = self._agents.get(agent_id)
        if agent is None:
            raise NotFoundError("Agent", agent_id)
        return agent

    def list(self) -> list[Agent]:
        return list(self._agents.values())

    def __contains__(self, agent_id: object) -> bool:
        return agent_id in self._agents

    def __len__(self) -> int:
        return len(self._agents)

    def find_by_skill(self, skill: str) -> list[Agent]:
        """Agents having ``skill``, compared case-insensitively."""
        return [a for a in self._agents.values() if a.has_skill(skill)]

    def find_by_department(self, department: str) -> list[Agent]:
        needle = department.lower()
        return [
            a for a in self._agents.values() if a.department.lower() == needle
        ]

    def find_by_role(self, role: str) -> list[Agent]:
        return [a for a in self._agents.values() if a.role == role]

    def available(self) -> list[Agent]:
        """Active agents with headroom for more work."""
        return [
            a for a in self._agents.values()
            if a.status == AgentStatus.ACTIVE
            and a.workload < AVAILABLE_WORKLOAD_LIMIT
        ]

    def departments(self) -> list[str]:
        seen: dict[str, None] = {}
        for agent in self._agents.values():
            if agent.department:
                seen.setdefault(agent.department, None)
        return list(seen)

    def update_workload(self, agent_id: str, delta: int) -> int:
        """Shift an agent's workload by ``delta``, clamped to [0, 100].

        Unknown agents are ignored. Returns the delta actually applied,
        which callers must use to undo the change exactly.
        """
        agent = self._agents.get(agent_id)
        if agent is None:
            logger.debug("update_workload: unknown agent %s", agent_id)
            return 0
        previous = agent.workload
        agent.workload = max(0, min(100, previous + delta))
        applied = agent.workload - previous
        if applied:
            logger.debug(
                "Workload %s: %d -> %d", agent_id, previous, agent.workload,
            )
            self._publish({
                "event": "agent-workload-changed",
                "agent_id": agent_id,
                "previous_workload": previous,
                "workload": agent.workload,
            })
        return applied

    def update_status(self, agent_id: str, status: AgentStatus | str) -> None:
        """Set an agent's status. Raises NotFoundError if unknown."""
        agent = self.require(agent_id)
        try:
            new_status = AgentStatus(status)
        except ValueError:
            raise ValidationError(
                "status", f"unknown agent status {status!r}"
            ) from None
        previous = agent.status
        if previous == new_status:
            return
        agent.status = new_status
        logger.info(
            "Agent %s status: %s -> %s",
            agent_id, previous.value, new_status.value,
        )
        self._publish({
            "event": "agent-status-changed",
            "agent_id": agent_id,
            "previous_status": previous.value,
            "status": new_status.value,
        })

    def capacity(self, department: str | None = None) -> dict[str, Any]:
        """Headcount, availability, and mean workload, optionally per department."""
        agents = (
            self.find_by_department(department) if department else self.list()
        )
        available = [
            a for a in agents
            if a.status == AgentStatus.ACTIVE
            and a.workload < AVAILABLE_WORKLOAD_LIMIT
        ]
        average = (
            sum(a.workload for a in agents) / len(agents) if agents else 0.0
        )
        return {
            "department": department,
            "total": len(agents),
            "available": len(available),
            "average_workload": round(average, 2),
        }

    def statistics(self) -> dict[str, Any]:
        by_status = Counter(a.status.value for a in self._agents.values())
        by_department = Counter(
            a.department for a in self._agents.values() if a.department
        )
        skills = Counter(
            s.lower() for a in self._agents.values() for s in a.skills
        )
        return {
            "total": len(self._agents),
            "by_status": {s.value: by_status.get(s.value, 0) for s in AgentStatus},
            "by_department": dict(by_department),
            "skills": dict(skills.most_common()),
        }

    def _publish(self, event: dict[str, Any]) -> None:
        if self._event_bus is not None:
            self._event_bus.publish(event)
