"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via WORKFORCE_* env vars.
The core never computes these; they are passed through to the
supervisor, dispatcher, and router.
"""
from __future__ import annotations

import logging
import os
import shlex
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from .models import SpawnConfig

logger = logging.getLogger(__name__)


# Async callback for real-time event observation.
# Signature: async def callback(event: dict[str, Any]) -> None
EventCallback = Callable[[dict[str, Any]], Awaitable[None]]


async def fire_event(
    callback: EventCallback | None,
    event: dict[str, Any],
) -> None:
    """Fire an event callback if set. Errors are logged, never raised."""
    if callback is None:
        return
    try:
        await callback(event)
    except Exception:
        logger.warning(
            "Event callback failed for %s", event.get("event"), exc_info=True,
        )


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class EngineConfig:
    """Orchestration core configuration."""

    # Worker process defaults (used when ensure_running gets no SpawnConfig)
    spawn_command: str = "claude"
    spawn_args: list[str] = field(
        default_factory=lambda: ["--print", "--dangerously-skip-permissions"]
    )
    default_cwd: str = "."
    spawn_env: dict[str, str] = field(default_factory=dict)

    # Supervisor
    max_processes: int = 20
    max_restarts: int = 3
    restart_backoff_base_seconds: float = 2.0
    restart_backoff_max_seconds: float = 60.0
    startup_timeout_seconds: float = 10.0
    stop_timeout_seconds: float = 5.0
    # Heartbeat and resource sampling. 0 disables the periodic check.
    health_check_interval_seconds: float = 30.0
    max_memory_bytes: int = 512 * 1024 * 1024
    process_log_limit: int = 1000

    # Dispatcher
    max_task_retries: int = 3
    default_task_workload: int = 10
    # Watchdog for tasks stuck in_progress. 0 disables.
    task_timeout_seconds: float = 3600.0
    watchdog_interval_seconds: float = 30.0
    # Stop an agent's process once it has no assigned/in-progress tasks.
    release_idle_processes: bool = False

    # Events
    event_buffer_size: int = 1000

    # Logging
    log_level: str = "INFO"

    # Optional YAML company file (agents, spawn defaults, overrides)
    company_file: str | None = None

    event_callback: EventCallback | None = field(default=None, repr=False)

    def default_spawn_config(self) -> SpawnConfig:
        """SpawnConfig used when a caller does not supply one."""
        return SpawnConfig(
            command=self.spawn_command,
            args=list(self.spawn_args),
            cwd=self.default_cwd,
            env=dict(self.spawn_env),
            max_memory_bytes=self.max_memory_bytes,
        )

    def restart_delay(self, restart_count: int) -> float:
        """Exponential backoff: base * 2^restart_count, capped."""
        delay = self.restart_backoff_base_seconds * (2 ** restart_count)
        return min(delay, self.restart_backoff_max_seconds)

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from WORKFORCE_* environment variables."""
        wf_vars = {
            k: v for k, v in os.environ.items() if k.startswith("WORKFORCE_")
        }
        if wf_vars:
            logger.info(
                "EngineConfig.from_env: WORKFORCE_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(wf_vars.items())),
            )
        else:
            logger.debug(
                "EngineConfig.from_env: no WORKFORCE_* env vars set, using defaults"
            )

        defaults = cls()
        raw_args = os.getenv("WORKFORCE_SPAWN_ARGS")
        config = cls(
            spawn_command=os.getenv(
                "WORKFORCE_SPAWN_COMMAND", defaults.spawn_command
            ),
            spawn_args=(
                shlex.split(raw_args) if raw_args is not None
                else defaults.spawn_args
            ),
            default_cwd=os.getenv("WORKFORCE_DEFAULT_CWD", defaults.default_cwd),
            max_processes=int(os.getenv(
                "WORKFORCE_MAX_PROCESSES", str(defaults.max_processes)
            )),
            max_restarts=int(os.getenv(
                "WORKFORCE_MAX_RESTARTS", str(defaults.max_restarts)
            )),
            restart_backoff_base_seconds=float(os.getenv(
                "WORKFORCE_BACKOFF_BASE",
                str(defaults.restart_backoff_base_seconds),
            )),
            restart_backoff_max_seconds=float(os.getenv(
                "WORKFORCE_BACKOFF_MAX",
                str(defaults.restart_backoff_max_seconds),
            )),
            startup_timeout_seconds=float(os.getenv(
                "WORKFORCE_STARTUP_TIMEOUT",
                str(defaults.startup_timeout_seconds),
            )),
            stop_timeout_seconds=float(os.getenv(
                "WORKFORCE_STOP_TIMEOUT", str(defaults.stop_timeout_seconds)
            )),
            health_check_interval_seconds=float(os.getenv(
                "WORKFORCE_HEALTH_INTERVAL",
                str(defaults.health_check_interval_seconds),
            )),
            max_memory_bytes=int(os.getenv(
                "WORKFORCE_MAX_MEMORY_BYTES", str(defaults.max_memory_bytes)
            )),
            max_task_retries=int(os.getenv(
                "WORKFORCE_MAX_RETRIES", str(defaults.max_task_retries)
            )),
            default_task_workload=int(os.getenv(
                "WORKFORCE_TASK_WORKLOAD", str(defaults.default_task_workload)
            )),
            task_timeout_seconds=float(os.getenv(
                "WORKFORCE_TASK_TIMEOUT", str(defaults.task_timeout_seconds)
            )),
            watchdog_interval_seconds=float(os.getenv(
                "WORKFORCE_WATCHDOG_INTERVAL",
                str(defaults.watchdog_interval_seconds),
            )),
            release_idle_processes=_env_bool(
                "WORKFORCE_RELEASE_IDLE", defaults.release_idle_processes
            ),
            event_buffer_size=int(os.getenv(
                "WORKFORCE_EVENT_BUFFER", str(defaults.event_buffer_size)
            )),
            log_level=os.getenv("WORKFORCE_LOG_LEVEL", defaults.log_level),
            company_file=os.getenv("WORKFORCE_COMPANY_FILE") or None,
        )
        logger.info(
            "EngineConfig.from_env: command=%s cwd=%s max_restarts=%d "
            "max_retries=%d log_level=%s",
            config.spawn_command, config.default_cwd, config.max_restarts,
            config.max_task_retries, config.log_level,
        )
        return config
