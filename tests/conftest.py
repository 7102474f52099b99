"""Shared fakes for the orchestration tests.

_FakeBackend hands out in-memory _FakeHandle objects instead of OS
processes. Tests drive exits, output, and write failures directly.
"""
from __future__ import annotations

import asyncio
import json

import pytest

from workforce.engine.config import EngineConfig
from workforce.engine.directory import AgentDirectory
from workforce.engine.events import EventBus
from workforce.engine.models import Agent, ResourceUsage, SpawnConfig
from workforce.engine.process_backend import ProcessBackend, ProcessHandle
from workforce.engine.supervisor import ProcessSupervisor


class _FakeHandle(ProcessHandle):
    def __init__(self, pid: int, on_output=None, ready: bool = True) -> None:
        self._pid = pid
        self._on_output = on_output
        self._exited = asyncio.Event()
        self.ready = ready
        self.returncode: int | None = None
        self.written: list[dict] = []
        self.fail_writes = False
        self.write_delay = 0.0
        self.ignore_term = False
        self.terminated = False
        self.killed = False
        self.usage = ResourceUsage()

    @property
    def pid(self) -> int:
        return self._pid

    async def wait_ready(self, timeout: float) -> bool:
        await asyncio.sleep(0)
        if self.returncode is not None:
            return False
        return self.ready

    def is_alive(self) -> bool:
        return self.returncode is None

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode

    def terminate(self) -> None:
        self.terminated = True
        if not self.ignore_term:
            self.exit(-15)

    def kill(self) -> None:
        self.killed = True
        self.exit(-9)

    async def write(self, line: str) -> None:
        if self.write_delay:
            await asyncio.sleep(self.write_delay)
        if not self.is_alive() or self.fail_writes:
            raise BrokenPipeError("stdin is closed")
        self.written.append(json.loads(line))

    async def resource_usage(self) -> ResourceUsage:
        return self.usage

    # Test controls

    def exit(self, code: int) -> None:
        if self.returncode is None:
            self.returncode = code
            self._exited.set()

    def emit(self, line: str, stream: str = "stdout") -> None:
        if self._on_output is not None:
            self._on_output(stream, line)


class _FakeBackend(ProcessBackend):
    def __init__(self) -> None:
        self.handles: list[_FakeHandle] = []
        self.configs: list[SpawnConfig] = []
        self.fail_next = 0
        self.exit_before_ready = False
        self.ready = True
        self.start_delay = 0.0

    async def start(self, spawn_config, on_output=None) -> ProcessHandle:
        if self.start_delay:
            await asyncio.sleep(self.start_delay)
        self.configs.append(spawn_config)
        if self.fail_next:
            self.fail_next -= 1
            raise FileNotFoundError(f"No such file: {spawn_config.command}")
        handle = _FakeHandle(1000 + len(self.handles), on_output, ready=self.ready)
        if self.exit_before_ready:
            handle.exit(1)
        self.handles.append(handle)
        return handle

    @property
    def last(self) -> _FakeHandle:
        return self.handles[-1]


async def settle(predicate=None, timeout: float = 1.0) -> None:
    """Let background tasks run, optionally until ``predicate()`` holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        for _ in range(5):
            await asyncio.sleep(0)
        if predicate is None or predicate():
            return
        if loop.time() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(0.005)


def make_agent(agent_id: str, skills=(), workload: int = 0, **kwargs) -> Agent:
    return Agent(
        agent_id=agent_id,
        name=kwargs.pop("name", agent_id.title()),
        skills=list(skills),
        workload=workload,
        **kwargs,
    )


@pytest.fixture
def config() -> EngineConfig:
    return EngineConfig(
        spawn_command="worker",
        spawn_args=[],
        max_restarts=2,
        restart_backoff_base_seconds=0.01,
        restart_backoff_max_seconds=0.02,
        startup_timeout_seconds=0.05,
        stop_timeout_seconds=0.05,
        health_check_interval_seconds=0,
        task_timeout_seconds=0,
        max_task_retries=3,
    )


@pytest.fixture
def backend() -> _FakeBackend:
    return _FakeBackend()


@pytest.fixture
def bus() -> EventBus:
    return EventBus(buffer_size=100)


@pytest.fixture
def supervisor(config, backend, bus) -> ProcessSupervisor:
    return ProcessSupervisor(config, backend=backend, event_bus=bus)


@pytest.fixture
def directory(bus) -> AgentDirectory:
    return AgentDirectory(event_bus=bus)
