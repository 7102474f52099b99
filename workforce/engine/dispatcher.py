"""Task dispatcher: owns the task table and routes tasks to agents.

assign() scores every eligible agent (see matching.py), makes sure the
winner has a running process, and books the workload, all while
holding the dispatcher lock so two assignments never read the same
workload figures. report_progress() takes the same lock.

Failures are retried by returning the task to pending until
retry_count reaches max_retries, after which the task stays failed.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

from .errors import (
    AlreadyAssignedError,
    InvalidStateError,
    NoEligibleAgentError,
    NotFoundError,
    ValidationError,
)
from .lifecycle import (
    ACTIVE_TASK_STATES,
    ASSIGNABLE_TASK_STATES,
    validate_task_transition,
)
from .matching import Candidate, rank_candidates
from .models import (
    AgentStatus,
    Priority,
    Task,
    TaskResult,
    TaskSpec,
    TaskStatus,
    TaskTransition,
)

if TYPE_CHECKING:
    from .config import EngineConfig
    from .directory import AgentDirectory
    from .events import EventBus
    from .supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)

TIMED_OUT = "timed out"

# Statuses that may be cancelled by a caller.
_CANCELLABLE = frozenset({
    TaskStatus.PENDING,
    TaskStatus.ASSIGNED,
    TaskStatus.IN_PROGRESS,
    TaskStatus.REOPENED,
})


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_skills(raw: Any) -> frozenset[str]:
    if raw is None:
        return frozenset()
    if isinstance(raw, (str, bytes)) or not isinstance(raw, Iterable):
        raise ValidationError(
            "skills_required", "must be a collection of skill names",
        )
    skills: list[str] = []
    for item in raw:
        if not isinstance(item, str):
            raise ValidationError(
                "skills_required", f"skill {item!r} is not a string",
            )
        if item.strip():
            skills.append(item.strip())
    return frozenset(skills)


class TaskDispatcher:
    """Owns tasks and their state machine."""

    def __init__(
        self,
        directory: AgentDirectory,
        supervisor: ProcessSupervisor,
        config: EngineConfig,
        event_bus: EventBus | None = None,
    ) -> None:
        self._directory = directory
        self._supervisor = supervisor
        self._config = config
        self._event_bus = event_bus
        self._tasks: dict[str, Task] = {}
        self._lock = asyncio.Lock()
        self._watchdog_task: asyncio.Task[None] | None = None

    # ── Queries ──

    def get(self, task_id: str) -> Task | None:
        return self._tasks.get(task_id)

    def require(self, task_id: str) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise NotFoundError("Task", task_id)
        return task

    def list(
        self,
        status: TaskStatus | str | None = None,
        agent_id: str | None = None,
    ) -> list[Task]:
        wanted = TaskStatus(status) if status is not None else None
        return [
            t for t in self._tasks.values()
            if (wanted is None or t.status == wanted)
            and (agent_id is None or t.assigned_agent_id == agent_id)
        ]

    def active_tasks_for(self, agent_id: str) -> list[Task]:
        """Tasks bound to ``agent_id`` that still hold workload."""
        return [
            t for t in self._tasks.values()
            if t.assigned_agent_id == agent_id and t.status in ACTIVE_TASK_STATES
        ]

    def get_statistics(self) -> dict[str, int]:
        stats = {"total": len(self._tasks)}
        for status in TaskStatus:
            stats[status.value] = 0
        for task in self._tasks.values():
            stats[task.status.value] += 1
        return stats

    def rank_candidates(self, task_id: str) -> list[Candidate]:
        """Score eligible agents for a task without assigning it."""
        task = self.require(task_id)
        return rank_candidates(
            self._directory.list(), task, exclude=self._fatal_agents(),
        )

    # ── Commands ──

    def submit(self, spec: TaskSpec) -> Task:
        """Validate and store a new pending task."""
        title = spec.title.strip() if isinstance(spec.title, str) else ""
        if not title:
            raise ValidationError("title", "must be a non-empty string")
        skills = _coerce_skills(spec.skills_required)
        try:
            priority = Priority(spec.priority)
        except ValueError:
            raise ValidationError(
                "priority", f"unknown priority {spec.priority!r}"
            ) from None

        max_retries = (
            self._config.max_task_retries
            if spec.max_retries is None else spec.max_retries
        )
        if max_retries < 1:
            raise ValidationError("max_retries", "must be at least 1")
        workload_cost = (
            self._config.default_task_workload
            if spec.workload_cost is None else spec.workload_cost
        )
        if not 0 <= workload_cost <= 100:
            raise ValidationError("workload_cost", "must be between 0 and 100")

        task = Task(
            title=title,
            skills_required=skills,
            description=spec.description,
            priority=priority,
            max_retries=max_retries,
            workload_cost=workload_cost,
            metadata=dict(spec.metadata),
        )
        task.history.append(TaskTransition(TaskStatus.PENDING, note="submitted"))
        self._tasks[task.task_id] = task
        logger.info(
            "Task submitted: %s %r (skills=%s, priority=%s)",
            task.task_id[:8], title, sorted(skills) or "-", priority.value,
        )
        self._publish_status(task, None, "submitted")
        return task

    async def assign(self, task_id: str, agent_id: str | None = None) -> Task:
        """Bind a task to an agent and make sure its process runs.

        With no explicit agent the best-scoring eligible agent wins.
        Raises NotFoundError, AlreadyAssignedError, NoEligibleAgentError,
        or SpawnFailureError. On any failure the task is left unchanged.
        """
        async with self._lock:
            task = self.require(task_id)
            if task.status not in ASSIGNABLE_TASK_STATES:
                raise AlreadyAssignedError(task_id, task.status.value)

            if agent_id is not None:
                agent = self._directory.require(agent_id)
                if agent.status == AgentStatus.OFFLINE:
                    raise InvalidStateError(
                        "Agent", agent_id, agent.status.value, "assign task to",
                    )
            else:
                ranked = rank_candidates(
                    self._directory.list(), task, exclude=self._fatal_agents(),
                )
                if not ranked:
                    raise NoEligibleAgentError(
                        task_id, sorted(task.skills_required),
                    )
                best = ranked[0]
                agent = best.agent
                logger.debug(
                    "Task %s best candidate %s (score=%d of %d candidates)",
                    task_id[:8], agent.agent_id, best.score, len(ranked),
                )

            record = await self._supervisor.ensure_running(agent.agent_id)

            task.assigned_agent_id = agent.agent_id
            task.process_id = record.process_id
            task.assigned_at = _utc_now()
            self._transition(task, TaskStatus.ASSIGNED, f"assigned to {agent.agent_id}")
            task._applied_workload = self._directory.update_workload(
                agent.agent_id, task.workload_cost,
            )
            self._supervisor.bind_task(record.process_id, task_id)
            if agent.status == AgentStatus.ACTIVE:
                self._directory.update_status(agent.agent_id, AgentStatus.BUSY)
            logger.info(
                "Task %s assigned to %s (process=%s, workload=%d)",
                task_id[:8], agent.agent_id, record.process_id[:8],
                agent.workload,
            )
            return task

    async def report_progress(
        self,
        task_id: str,
        status: TaskStatus | str,
        result: TaskResult | None = None,
    ) -> Task:
        """Advance an assigned task to in_progress, completed, or failed."""
        async with self._lock:
            return self._report(task_id, status, result)

    async def cancel(self, task_id: str, reason: str = "") -> Task:
        """Cancel a task that has not finished. Releases its workload."""
        async with self._lock:
            task = self.require(task_id)
            if task.status not in _CANCELLABLE:
                raise InvalidStateError(
                    "Task", task_id, task.status.value, "cancel",
                )
            self._release(task)
            self._transition(task, TaskStatus.CANCELLED, reason or "cancelled")
            task.completed_at = _utc_now()
            logger.info("Task %s cancelled: %s", task_id[:8], reason or "-")
            return task

    def resolve(self, task_id: str) -> Task:
        """Mark a completed task as accepted."""
        task = self.require(task_id)
        self._transition(task, TaskStatus.RESOLVED, "resolved")
        return task

    def reopen(self, task_id: str, reason: str = "") -> Task:
        """Send a resolved task back for another round of work."""
        task = self.require(task_id)
        self._transition(task, TaskStatus.REOPENED, reason or "reopened")
        task.retry_count = 0
        task.result = None
        task.assigned_agent_id = None
        task.process_id = None
        task.completed_at = None
        return task

    async def handle_process_lost(
        self,
        process_id: str,
        reason: str,
        lost_at: datetime | None = None,
    ) -> list[Task]:
        """Fail every active task bound to a process that went away.

        Tasks assigned after ``lost_at`` belong to a newer incarnation
        of the process and are left alone.
        """
        failed: list[Task] = []
        async with self._lock:
            for task in list(self._tasks.values()):
                if task.process_id != process_id:
                    continue
                if task.status not in ACTIVE_TASK_STATES:
                    continue
                if (
                    lost_at is not None
                    and task.assigned_at is not None
                    and task.assigned_at > lost_at
                ):
                    continue
                logger.warning(
                    "Task %s lost its process %s: %s",
                    task.task_id[:8], process_id[:8], reason,
                )
                failed.append(self._report(
                    task.task_id,
                    TaskStatus.FAILED,
                    TaskResult(success=False, error=reason),
                ))
        return failed

    async def check_timeouts(self, now: datetime | None = None) -> list[Task]:
        """Fail in-progress tasks that exceeded task_timeout_seconds."""
        timeout = self._config.task_timeout_seconds
        if timeout <= 0:
            return []
        now = now or _utc_now()
        limit = timedelta(seconds=timeout)
        expired: list[Task] = []
        async with self._lock:
            for task in list(self._tasks.values()):
                if task.status != TaskStatus.IN_PROGRESS or task.started_at is None:
                    continue
                if now - task.started_at <= limit:
                    continue
                logger.error(
                    "Task %s in progress for more than %.0fs; failing it",
                    task.task_id[:8], timeout,
                )
                expired.append(self._report(
                    task.task_id,
                    TaskStatus.FAILED,
                    TaskResult(success=False, error=TIMED_OUT),
                ))
        return expired

    # ── Watchdog ──

    def start(self) -> None:
        """Start the in-progress watchdog. Requires a running loop."""
        if self._config.task_timeout_seconds <= 0 or self._watchdog_task is not None:
            return
        self._watchdog_task = asyncio.create_task(
            run_task_watchdog(self, self._config.watchdog_interval_seconds)
        )

    async def stop(self) -> None:
        if self._watchdog_task is None:
            return
        self._watchdog_task.cancel()
        await asyncio.gather(self._watchdog_task, return_exceptions=True)
        self._watchdog_task = None

    # ── Internals ──

    def _report(
        self,
        task_id: str,
        status: TaskStatus | str,
        result: TaskResult | None,
    ) -> Task:
        task = self.require(task_id)
        try:
            target = TaskStatus(status)
        except ValueError:
            raise ValidationError("status", f"unknown task status {status!r}") from None
        if task.status not in ACTIVE_TASK_STATES:
            raise InvalidStateError(
                "Task", task_id, task.status.value, f"report {target.value} for",
            )

        if target == TaskStatus.IN_PROGRESS:
            validate_task_transition(task_id, task.status, target)
            agent_id = task.assigned_agent_id or ""
            if not self._supervisor.is_live(agent_id):
                raise InvalidStateError(
                    "Task", task_id, task.status.value,
                    "start without a live process for",
                )
            self._transition(task, TaskStatus.IN_PROGRESS, "started")
            task.started_at = _utc_now()

        elif target == TaskStatus.COMPLETED:
            self._transition(task, TaskStatus.COMPLETED, "completed")
            task.completed_at = _utc_now()
            task.result = result or TaskResult(success=True)
            self._release(task)
            logger.info(
                "Task %s completed by %s", task_id[:8], task.assigned_agent_id,
            )
            self._publish({
                "event": "task-completed",
                "task_id": task.task_id,
                "agent_id": task.assigned_agent_id,
                "result": task.result.to_dict(),
            })

        elif target == TaskStatus.FAILED:
            task.result = result or TaskResult(success=False, error="failed")
            task.retry_count += 1
            self._transition(task, TaskStatus.FAILED, task.result.error or "failed")
            self._release(task)
            if task.retry_count >= task.max_retries:
                task.completed_at = _utc_now()
                logger.error(
                    "Task %s failed permanently after %d attempts: %s",
                    task_id[:8], task.retry_count, task.result.error,
                )
            else:
                logger.warning(
                    "Task %s failed, retry %d/%d: %s",
                    task_id[:8], task.retry_count, task.max_retries,
                    task.result.error,
                )
                self._transition(
                    task, TaskStatus.PENDING,
                    f"retry {task.retry_count}/{task.max_retries}",
                )
                task.assigned_agent_id = None
                task.process_id = None
                task.assigned_at = None
                task.started_at = None

        else:
            raise ValidationError(
                "status", f"cannot report {target.value}; "
                "expected in_progress, completed, or failed",
            )
        return task

    def _release(self, task: Task) -> None:
        """Undo the workload booked at assignment and unbind the process.

        An agent left with no other active task goes from busy back to
        active.
        """
        agent_id = task.assigned_agent_id
        if agent_id and task._applied_workload:
            self._directory.update_workload(agent_id, -task._applied_workload)
        task._applied_workload = 0
        if task.process_id:
            self._supervisor.unbind_task(task.process_id, task.task_id)
        if not agent_id:
            return
        agent = self._directory.get(agent_id)
        if agent is None or agent.status != AgentStatus.BUSY:
            return
        if any(t is not task for t in self.active_tasks_for(agent_id)):
            return
        self._directory.update_status(agent_id, AgentStatus.ACTIVE)

    def _fatal_agents(self) -> set[str]:
        fatal: set[str] = set()
        for agent in self._directory.list():
            record = self._supervisor.get_by_agent(agent.agent_id)
            if record is not None and record.fatal:
                fatal.add(agent.agent_id)
        return fatal

    def _transition(self, task: Task, status: TaskStatus, note: str) -> None:
        validate_task_transition(task.task_id, task.status, status)
        previous = task.status
        task.status = status
        task.history.append(TaskTransition(status, note=note))
        self._publish_status(task, previous, note)

    def _publish_status(
        self, task: Task, previous: TaskStatus | None, note: str,
    ) -> None:
        self._publish({
            "event": "task-status-changed",
            "task_id": task.task_id,
            "agent_id": task.assigned_agent_id,
            "previous_status": previous.value if previous else None,
            "status": task.status.value,
            "retry_count": task.retry_count,
            "note": note,
        })

    def _publish(self, event: dict[str, Any]) -> None:
        if self._event_bus is not None:
            self._event_bus.publish(event)


async def run_task_watchdog(
    dispatcher: TaskDispatcher,
    check_interval: float = 30.0,
) -> None:
    """Background task that periodically fails timed-out tasks."""
    while True:
        try:
            await asyncio.sleep(check_interval)
            await dispatcher.check_timeouts()
        except asyncio.CancelledError:
            logger.info("Task watchdog stopped")
            return
        except Exception:
            logger.exception("Task watchdog error")
