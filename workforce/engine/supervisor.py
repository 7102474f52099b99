"""Process supervisor: starts, tracks, restarts, and stops worker processes.

Each agent has at most one non-terminal ProcessRecord. Records are kept
after they stop so callers can inspect exit codes and logs.

Restart policy:
  - An unexpected exit moves running -> error.
  - While restart_count < max_restarts a restart is scheduled after
    min(base * 2^restart_count, cap) seconds, reusing the same record.
  - Otherwise the record is marked fatal and stays in the agent's slot;
    ensure_running refuses the agent until reset() is called.
"""
from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from functools import partial
from typing import TYPE_CHECKING, Any

from .errors import SpawnFailureError
from .lifecycle import validate_process_transition
from .models import ProcessRecord, ProcessStatus, ResourceUsage, SpawnConfig
from .process_backend import ProcessBackend, ProcessHandle, SubprocessBackend

if TYPE_CHECKING:
    from .config import EngineConfig
    from .events import EventBus

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ProcessSupervisor:
    """Owns the process table and the OS handles behind it."""

    def __init__(
        self,
        config: EngineConfig,
        backend: ProcessBackend | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self._config = config
        self._backend = backend or SubprocessBackend()
        self._event_bus = event_bus
        self._records: dict[str, ProcessRecord] = {}
        # agent_id -> process_id of the record currently occupying the slot
        self._by_agent: dict[str, str] = {}
        self._handles: dict[str, ProcessHandle] = {}
        self._monitors: dict[str, asyncio.Task[None]] = {}
        self._restart_timers: dict[str, asyncio.Task[None]] = {}
        self._agent_locks: dict[str, asyncio.Lock] = {}
        self._logs: dict[str, list[str]] = {}
        # Per-agent SpawnConfig used when ensure_running gets none
        self._spawn_configs: dict[str, SpawnConfig] = {}
        self._stopping: set[str] = set()
        self._health_task: asyncio.Task[None] | None = None
        self._shutting_down = False

    def set_spawn_config(self, agent_id: str, spawn_config: SpawnConfig) -> None:
        """Remember how to start this agent's worker."""
        self._spawn_configs[agent_id] = spawn_config

    # ── Queries ──

    def get(self, process_id: str) -> ProcessRecord | None:
        return self._records.get(process_id)

    def get_by_agent(self, agent_id: str) -> ProcessRecord | None:
        """The record occupying the agent's slot, if any."""
        process_id = self._by_agent.get(agent_id)
        return self._records.get(process_id) if process_id else None

    def list(self) -> list[ProcessRecord]:
        return list(self._records.values())

    def is_live(self, agent_id: str) -> bool:
        record = self.get_by_agent(agent_id)
        if record is None or not record.is_live:
            return False
        handle = self._handles.get(record.process_id)
        return handle is not None and handle.is_alive()

    def active_count(self) -> int:
        """Records that are neither stopped nor fatal."""
        return sum(1 for r in self._records.values() if not r.is_terminal)

    def logs(self, process_id: str, limit: int = 100) -> list[str]:
        lines = self._logs.get(process_id, [])
        return lines[-limit:] if limit > 0 else list(lines)

    def statistics(self) -> dict[str, int]:
        stats = {
            "total": len(self._records),
            "starting": 0,
            "running": 0,
            "stopping": 0,
            "stopped": 0,
            "error": 0,
            "fatal": 0,
        }
        for record in self._records.values():
            stats[record.status.value] += 1
            if record.fatal:
                stats["fatal"] += 1
        return stats

    # ── Lifecycle ──

    async def ensure_running(
        self,
        agent_id: str,
        spawn_config: SpawnConfig | None = None,
    ) -> ProcessRecord:
        """Return the agent's running record, starting one if needed.

        Idempotent: concurrent calls for one agent yield one record.
        Raises SpawnFailureError if the process cannot be started or the
        agent's record is fatal.
        """
        if self._shutting_down:
            raise SpawnFailureError(agent_id, "supervisor is shutting down")

        async with self._lock_for(agent_id):
            record = self.get_by_agent(agent_id)
            if record is not None:
                if record.fatal:
                    raise SpawnFailureError(
                        agent_id,
                        f"restart budget exhausted ({record.restart_count} "
                        f"restarts); reset required. Last error: "
                        f"{record.last_error or 'unknown'}",
                    )
                if record.status == ProcessStatus.RUNNING:
                    return record
                if record.status == ProcessStatus.ERROR:
                    # Restart now instead of waiting for the backoff timer.
                    self._cancel_restart(record.process_id)
                    if spawn_config is not None:
                        record.spawn_config = spawn_config
                    await self._start(record)
                    return record

            if self.active_count() >= self._config.max_processes:
                raise SpawnFailureError(
                    agent_id,
                    f"process limit reached ({self._config.max_processes})",
                )

            record = ProcessRecord(
                agent_id=agent_id,
                spawn_config=(
                    spawn_config
                    or self._spawn_configs.get(agent_id)
                    or self._config.default_spawn_config()
                ),
            )
            self._records[record.process_id] = record
            self._by_agent[agent_id] = record.process_id
            logger.info(
                "Starting process %s for agent %s (%s)",
                record.process_id[:8], agent_id, record.spawn_config.command,
            )
            await self._start(record)
            return record

    async def stop(self, process_id: str) -> None:
        """Terminate a process and release its agent slot.

        SIGTERM first, SIGKILL after stop_timeout_seconds. Unknown ids
        are a no-op.
        """
        record = self._records.get(process_id)
        if record is None:
            logger.debug("stop: unknown process %s", process_id[:8])
            return

        async with self._lock_for(record.agent_id):
            if record.status == ProcessStatus.STOPPED:
                return
            if record.fatal:
                logger.info(
                    "stop: process %s is fatal; use reset() to release agent %s",
                    process_id[:8], record.agent_id,
                )
                return

            self._cancel_restart(process_id)
            self._stopping.add(process_id)
            try:
                if record.status != ProcessStatus.ERROR:
                    self._set_status(record, ProcessStatus.STOPPING)
                handle = self._handles.get(process_id)
                if handle is not None and handle.is_alive():
                    record.exit_code = await self._terminate(record, handle)
                monitor = self._monitors.pop(process_id, None)
                if monitor is not None and not monitor.done():
                    monitor.cancel()
                self._handles.pop(process_id, None)
                record.stopped_at = _utc_now()
                self._set_status(record, ProcessStatus.STOPPED)
                if self._by_agent.get(record.agent_id) == process_id:
                    del self._by_agent[record.agent_id]
                logger.info(
                    "Process %s stopped (agent=%s, exit=%s)",
                    process_id[:8], record.agent_id, record.exit_code,
                )
            finally:
                self._stopping.discard(process_id)

    async def stop_agent(self, agent_id: str) -> None:
        record = self.get_by_agent(agent_id)
        if record is not None:
            await self.stop(record.process_id)

    def reset(self, agent_id: str) -> bool:
        """Clear a fatal record so ensure_running may restart it.

        Returns True if a fatal record was reset.
        """
        record = self.get_by_agent(agent_id)
        if record is None or not record.fatal:
            return False
        record.fatal = False
        record.restart_count = 0
        logger.info(
            "Process %s for agent %s reset", record.process_id[:8], agent_id,
        )
        return True

    # ── I/O ──

    async def send_input(self, agent_id: str, payload: dict[str, Any]) -> bool:
        """Write ``payload`` as one JSON line to the agent's live process.

        Returns False if the agent has no live process or the write fails.
        """
        record = self.get_by_agent(agent_id)
        if record is None or not record.is_live:
            return False
        handle = self._handles.get(record.process_id)
        if handle is None or not handle.is_alive():
            return False
        try:
            await handle.write(json.dumps(payload, default=str))
        except (OSError, RuntimeError) as exc:
            logger.warning(
                "Write to process %s (agent=%s) failed: %s",
                record.process_id[:8], agent_id, exc,
            )
            return False
        record.last_heartbeat = _utc_now()
        return True

    def bind_task(self, process_id: str, task_id: str) -> None:
        record = self._records.get(process_id)
        if record is not None:
            record.task_id = task_id

    def unbind_task(self, process_id: str, task_id: str | None = None) -> None:
        record = self._records.get(process_id)
        if record is None:
            return
        if task_id is None or record.task_id == task_id:
            record.task_id = None

    async def resource_usage(self, process_id: str) -> ResourceUsage:
        """Sample CPU and memory. Zeros for unknown or exited processes."""
        record = self._records.get(process_id)
        handle = self._handles.get(process_id)
        if record is None or handle is None:
            return ResourceUsage()
        try:
            usage = await handle.resource_usage()
        except OSError:
            logger.debug(
                "Resource sample failed for %s", process_id[:8], exc_info=True,
            )
            return ResourceUsage()
        record.cpu_percent = usage.cpu_percent
        record.memory_bytes = usage.memory_bytes
        return usage

    # ── Health checks ──

    def start(self) -> None:
        """Start the periodic health check. Requires a running loop."""
        interval = self._config.health_check_interval_seconds
        if interval <= 0 or self._health_task is not None:
            return
        self._health_task = asyncio.create_task(self._health_loop(interval))

    async def check_health(self) -> None:
        """Refresh heartbeat and resource usage of every running process."""
        for record in list(self._records.values()):
            if record.status != ProcessStatus.RUNNING:
                continue
            handle = self._handles.get(record.process_id)
            if handle is None or not handle.is_alive():
                continue
            usage = await self.resource_usage(record.process_id)
            record.last_heartbeat = _utc_now()
            limits = record.spawn_config
            exceeded: list[str] = []
            if limits.max_memory_bytes and usage.memory_bytes > limits.max_memory_bytes:
                exceeded.append("memory")
            if limits.max_cpu_percent and usage.cpu_percent > limits.max_cpu_percent:
                exceeded.append("cpu")
            if exceeded:
                logger.warning(
                    "Process %s (agent=%s) over %s limit: cpu=%.1f%% mem=%d",
                    record.process_id[:8], record.agent_id,
                    "/".join(exceeded), usage.cpu_percent, usage.memory_bytes,
                )
                self._publish({
                    "event": "process-resource-exceeded",
                    "process_id": record.process_id,
                    "agent_id": record.agent_id,
                    "resources": exceeded,
                    "cpu_percent": usage.cpu_percent,
                    "memory_bytes": usage.memory_bytes,
                })

    async def _health_loop(self, interval: float) -> None:
        while True:
            try:
                await asyncio.sleep(interval)
                await self.check_health()
            except asyncio.CancelledError:
                logger.info("Process health check stopped")
                return
            except Exception:
                logger.exception("Process health check error")

    async def shutdown(self) -> None:
        """Stop every process and cancel background work."""
        self._shutting_down = True
        if self._health_task is not None:
            self._health_task.cancel()
            await asyncio.gather(self._health_task, return_exceptions=True)
            self._health_task = None
        for process_id in list(self._restart_timers):
            self._cancel_restart(process_id)
        live = [
            r.process_id for r in self._records.values()
            if r.status in (ProcessStatus.STARTING, ProcessStatus.RUNNING)
        ]
        if live:
            logger.info("Shutting down %d process(es)", len(live))
            await asyncio.gather(
                *(self.stop(pid) for pid in live), return_exceptions=True,
            )
        for monitor in list(self._monitors.values()):
            monitor.cancel()
        self._monitors.clear()

    # ── Internals ──

    def _lock_for(self, agent_id: str) -> asyncio.Lock:
        lock = self._agent_locks.get(agent_id)
        if lock is None:
            lock = asyncio.Lock()
            self._agent_locks[agent_id] = lock
        return lock

    async def _start(self, record: ProcessRecord) -> None:
        """Launch the OS process for ``record`` and wait for readiness.

        Must be called with the agent lock held.
        """
        if record.status != ProcessStatus.STARTING:
            self._set_status(record, ProcessStatus.STARTING)
        else:
            self._publish_status(record, None)
        record.pid = 0
        record.exit_code = None
        record.last_error = None

        try:
            handle = await self._backend.start(
                record.spawn_config,
                on_output=partial(self._append_log, record),
            )
        except OSError as exc:
            self._fail_start(record, f"spawn failed: {exc}")
            raise SpawnFailureError(record.agent_id, str(exc)) from exc

        record.pid = handle.pid
        self._handles[record.process_id] = handle

        timeout = self._config.startup_timeout_seconds
        ready = await handle.wait_ready(timeout)
        if not ready:
            if not handle.is_alive():
                record.exit_code = await handle.wait()
                self._handles.pop(record.process_id, None)
                reason = f"exited with code {record.exit_code} before ready"
                self._fail_start(record, reason)
                raise SpawnFailureError(record.agent_id, reason)
            logger.warning(
                "Process %s (agent=%s) sent no output within %.1fs; "
                "assuming it is running",
                record.process_id[:8], record.agent_id, timeout,
            )

        now = _utc_now()
        record.started_at = now
        record.last_heartbeat = now
        self._set_status(record, ProcessStatus.RUNNING)
        self._monitors[record.process_id] = asyncio.create_task(
            self._monitor(record, handle)
        )
        logger.info(
            "Process %s running (agent=%s, pid=%d, restarts=%d)",
            record.process_id[:8], record.agent_id, record.pid,
            record.restart_count,
        )

    def _fail_start(self, record: ProcessRecord, reason: str) -> None:
        record.last_error = reason
        logger.error(
            "Process %s for agent %s failed to start: %s",
            record.process_id[:8], record.agent_id, reason,
        )
        self._set_status(record, ProcessStatus.ERROR)

    async def _monitor(self, record: ProcessRecord, handle: ProcessHandle) -> None:
        """Wait for the process to exit and apply the restart policy."""
        code = await handle.wait()
        if self._handles.get(record.process_id) is handle:
            self._handles.pop(record.process_id, None)
        self._monitors.pop(record.process_id, None)
        if record.process_id in self._stopping:
            return
        if record.status != ProcessStatus.RUNNING:
            return
        record.exit_code = code
        self._handle_crash(record, f"exited unexpectedly with code {code}")

    def _handle_crash(self, record: ProcessRecord, reason: str) -> None:
        record.last_error = reason
        logger.warning(
            "Process %s (agent=%s) %s",
            record.process_id[:8], record.agent_id, reason,
        )
        if record.status != ProcessStatus.ERROR:
            self._set_status(record, ProcessStatus.ERROR)
        if self._shutting_down:
            return

        if record.restart_count < self._config.max_restarts:
            delay = self._config.restart_delay(record.restart_count)
            logger.info(
                "Restarting process %s in %.1fs (attempt %d/%d)",
                record.process_id[:8], delay, record.restart_count + 1,
                self._config.max_restarts,
            )
            self._restart_timers[record.process_id] = asyncio.create_task(
                self._restart_later(record, delay)
            )
            return

        record.fatal = True
        logger.error(
            "Process %s for agent %s exhausted %d restarts; marked fatal",
            record.process_id[:8], record.agent_id, self._config.max_restarts,
        )
        self._publish({
            "event": "process-fatal",
            "process_id": record.process_id,
            "agent_id": record.agent_id,
            "restart_count": record.restart_count,
            "error": record.last_error,
        })

    async def _restart_later(self, record: ProcessRecord, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            return
        self._restart_timers.pop(record.process_id, None)
        async with self._lock_for(record.agent_id):
            if (
                record.status != ProcessStatus.ERROR
                or record.fatal
                or self._shutting_down
                or self._by_agent.get(record.agent_id) != record.process_id
            ):
                return
            record.restart_count += 1
            try:
                await self._start(record)
            except SpawnFailureError as exc:
                self._handle_crash(record, exc.reason)

    def _cancel_restart(self, process_id: str) -> None:
        timer = self._restart_timers.pop(process_id, None)
        if timer is not None and not timer.done():
            timer.cancel()

    async def _terminate(self, record: ProcessRecord, handle: ProcessHandle) -> int:
        handle.terminate()
        try:
            return await asyncio.wait_for(
                handle.wait(), timeout=self._config.stop_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Process %s ignored SIGTERM for %.1fs; killing",
                record.process_id[:8], self._config.stop_timeout_seconds,
            )
            handle.kill()
            return await handle.wait()

    def _append_log(self, record: ProcessRecord, stream: str, line: str) -> None:
        lines = self._logs.setdefault(record.process_id, [])
        lines.append(f"[{stream}] {line}")
        if len(lines) > self._config.process_log_limit:
            # Keep the newest half.
            del lines[:len(lines) - self._config.process_log_limit // 2]
        record.last_heartbeat = _utc_now()

    def _set_status(self, record: ProcessRecord, status: ProcessStatus) -> None:
        validate_process_transition(record.process_id, record.status, status)
        previous = record.status
        record.status = status
        self._publish_status(record, previous)

    def _publish_status(
        self, record: ProcessRecord, previous: ProcessStatus | None,
    ) -> None:
        self._publish({
            "event": "process-status-changed",
            "process_id": record.process_id,
            "agent_id": record.agent_id,
            "previous_status": previous.value if previous else None,
            "status": record.status.value,
            "pid": record.pid,
            "restart_count": record.restart_count,
            "error": record.last_error,
            "at": _utc_now().isoformat(),
        })

    def _publish(self, event: dict[str, Any]) -> None:
        if self._event_bus is not None:
            self._event_bus.publish(event)
