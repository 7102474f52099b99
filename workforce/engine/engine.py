"""Top-level orchestration engine.

Wires together AgentDirectory, ProcessSupervisor, TaskDispatcher,
MessageRouter, and the EventBus that connects them. Single entry
point for callers such as a REST layer or the CLI.

Usage:
    from workforce.engine import OrchestrationEngine, TaskSpec

    engine = OrchestrationEngine.from_company_file("company.yaml")
    async with engine:
        task = engine.submit_task(TaskSpec("Fix login bug", {"python"}))
        await engine.assign_task(task.task_id)
"""
from __future__ import annotations

import asyncio
import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Any

from .config import EngineConfig
from .directory import AgentDirectory
from .dispatcher import TaskDispatcher
from .events import EventBus
from .message_router import MessageRouter
from .models import (
    Agent,
    CollaborationStatus,
    Message,
    ProcessRecord,
    ProcessStatus,
    SpawnConfig,
    Task,
    TaskResult,
    TaskSpec,
    TaskStatus,
)
from .process_backend import ProcessBackend
from .supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)

_SNAKE = re.compile(r"_([a-z0-9])")


def camelize(data: Any) -> Any:
    """Recursively rewrite snake_case dict keys as camelCase."""
    if isinstance(data, dict):
        return {
            _SNAKE.sub(lambda m: m.group(1).upper(), str(k)): camelize(v)
            for k, v in data.items()
        }
    if isinstance(data, list):
        return [camelize(v) for v in data]
    return data


class OrchestrationEngine:
    """Main orchestration engine.

    Usage:
        engine = OrchestrationEngine(config, agents=[Agent(...), ...])
        await engine.start()
        ...
        await engine.shutdown()
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        agents: list[Agent] | None = None,
        backend: ProcessBackend | None = None,
        spawn_configs: dict[str, SpawnConfig] | None = None,
    ) -> None:
        self._config = config or EngineConfig.from_env()
        self._events = EventBus(buffer_size=self._config.event_buffer_size)
        self._directory = AgentDirectory(agents, event_bus=self._events)
        self._supervisor = ProcessSupervisor(
            self._config, backend=backend, event_bus=self._events,
        )
        for agent_id, spawn_config in (spawn_configs or {}).items():
            self._supervisor.set_spawn_config(agent_id, spawn_config)
        self._dispatcher = TaskDispatcher(
            self._directory, self._supervisor, self._config,
            event_bus=self._events,
        )
        self._router = MessageRouter(
            self._directory, self._supervisor, event_bus=self._events,
        )
        self._events.subscribe(
            self._on_internal_event,
            events={"agent-status-changed", "process-status-changed"},
            name="engine",
        )
        if self._config.event_callback is not None:
            self._events.subscribe(self._config.event_callback, name="external")
        self._started = False
        self._shutdown_lock = asyncio.Lock()

    @classmethod
    def from_company_file(
        cls,
        path: str | Path,
        base: EngineConfig | None = None,
        backend: ProcessBackend | None = None,
    ) -> OrchestrationEngine:
        """Build an engine from a YAML company file."""
        from .yaml_config import load_company_config

        company = load_company_config(path, base=base)
        return cls(
            company.engine,
            agents=company.agents,
            backend=backend,
            spawn_configs=company.spawn_overrides,
        )

    # ── Components ──

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def events(self) -> EventBus:
        return self._events

    @property
    def directory(self) -> AgentDirectory:
        return self._directory

    @property
    def supervisor(self) -> ProcessSupervisor:
        return self._supervisor

    @property
    def dispatcher(self) -> TaskDispatcher:
        return self._dispatcher

    @property
    def router(self) -> MessageRouter:
        return self._router

    # ── Lifecycle ──

    async def start(self) -> None:
        """Start event delivery, health checks, and the task watchdog."""
        if self._started:
            return
        self._started = True
        self._events.start()
        self._supervisor.start()
        self._dispatcher.start()
        logger.info(
            "Engine started: %d agent(s), %d channel(s)",
            len(self._directory), len(self._router.list_channels()),
        )

    async def shutdown(self) -> None:
        """Stop every process and background task."""
        if self._shutdown_lock.locked():
            logger.info("Shutdown already in progress, skipping concurrent call")
            return
        async with self._shutdown_lock:
            await self._dispatcher.stop()
            await self._supervisor.shutdown()
            if self._started:
                await self._events.drain()
            await self._events.stop()
            self._started = False
            logger.info("Engine shutdown complete")

    async def __aenter__(self) -> OrchestrationEngine:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.shutdown()

    def register_agent(
        self, agent: Agent, spawn_config: SpawnConfig | None = None,
    ) -> None:
        """Add an agent at runtime and refresh derived channels."""
        self._directory.register(agent)
        if spawn_config is not None:
            self._supervisor.set_spawn_config(agent.agent_id, spawn_config)
        self._router.refresh_channels()

    # ── Tasks ──

    def submit_task(self, spec: TaskSpec) -> Task:
        return self._dispatcher.submit(spec)

    async def assign_task(self, task_id: str, agent_id: str | None = None) -> Task:
        return await self._dispatcher.assign(task_id, agent_id)

    async def report_task_progress(
        self,
        task_id: str,
        status: TaskStatus | str,
        result: TaskResult | None = None,
    ) -> Task:
        agent_id = self._dispatcher.require(task_id).assigned_agent_id
        task = await self._dispatcher.report_progress(task_id, status, result)
        await self._release_if_idle(agent_id)
        return task

    async def cancel_task(self, task_id: str, reason: str = "") -> Task:
        agent_id = self._dispatcher.require(task_id).assigned_agent_id
        task = await self._dispatcher.cancel(task_id, reason)
        await self._release_if_idle(agent_id)
        return task

    # ── Processes ──

    async def ensure_process_running(
        self, agent_id: str, spawn_config: SpawnConfig | None = None,
    ) -> ProcessRecord:
        self._directory.require(agent_id)
        return await self._supervisor.ensure_running(agent_id, spawn_config)

    async def stop_process(self, process_id: str) -> None:
        await self._supervisor.stop(process_id)

    def reset_process(self, agent_id: str) -> bool:
        return self._supervisor.reset(agent_id)

    # ── Messaging ──

    async def send_message(self, message: Message) -> str:
        return await self._router.send(message)

    async def create_collaboration(
        self,
        initiator: str,
        participants: list[str],
        topic: str,
        description: str = "",
        deadline: datetime | None = None,
    ) -> str:
        return await self._router.create_collaboration(
            initiator, participants, topic, description, deadline,
        )

    def update_collaboration_status(
        self, collaboration_id: str, status: CollaborationStatus | str,
    ) -> None:
        self._router.update_collaboration_status(collaboration_id, status)

    def find_experts(
        self, topic: str, skills: list[str], limit: int = 3,
    ) -> list[Agent]:
        return self._router.find_experts(topic, skills, limit)

    # ── Read side ──

    def get_statistics(self, camel_case: bool = False) -> dict[str, int]:
        stats = self._dispatcher.get_statistics()
        return camelize(stats) if camel_case else stats

    def get_metrics(self, camel_case: bool = False) -> dict[str, Any]:
        metrics = self._router.get_metrics()
        return camelize(metrics) if camel_case else metrics

    def snapshot(self, camel_case: bool = False) -> dict[str, Any]:
        """Serializable view of every owned table."""
        data = {
            "agents": [a.to_dict() for a in self._directory.list()],
            "processes": [p.to_dict() for p in self._supervisor.list()],
            "tasks": [t.to_dict() for t in self._dispatcher.list()],
            "channels": [c.to_dict() for c in self._router.list_channels()],
            "collaborations": [
                c.to_dict() for c in self._router.get_collaborations()
            ],
            "task_statistics": self._dispatcher.get_statistics(),
            "process_statistics": self._supervisor.statistics(),
            "agent_statistics": self._directory.statistics(),
            "message_metrics": self._router.get_metrics(),
            "events": self._events.stats(),
        }
        return camelize(data) if camel_case else data

    # ── Internals ──

    async def _release_if_idle(self, agent_id: str | None) -> None:
        if not self._config.release_idle_processes or agent_id is None:
            return
        if self._dispatcher.active_tasks_for(agent_id):
            return
        record = self._supervisor.get_by_agent(agent_id)
        if record is not None and record.status == ProcessStatus.RUNNING:
            logger.info("Releasing idle process for agent %s", agent_id)
            await self._supervisor.stop(record.process_id)

    async def _on_internal_event(self, event: dict[str, Any]) -> None:
        name = event.get("event")
        agent_id = event.get("agent_id", "")
        status = event.get("status")

        if name == "agent-status-changed" and status == "active":
            await self._router.on_agent_became_active(agent_id)
            return

        if name != "process-status-changed":
            return
        if status == ProcessStatus.RUNNING.value:
            await self._router.on_agent_became_active(agent_id)
        elif status in (ProcessStatus.STOPPED.value, ProcessStatus.ERROR.value):
            at = event.get("at")
            await self._dispatcher.handle_process_lost(
                event["process_id"],
                event.get("error") or f"process {status}",
                lost_at=datetime.fromisoformat(at) if at else None,
            )
