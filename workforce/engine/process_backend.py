"""OS process backends.

The supervisor never touches OS handles directly. It asks a
ProcessBackend to start a ProcessHandle and then talks to the handle
through this small interface, so tests can substitute an in-memory
fake for real subprocesses.

SubprocessBackend runs workers with asyncio subprocess pipes:
  - stdout/stderr are read line by line and forwarded to ``on_output``
  - the first stdout line marks the worker as ready
  - stdin receives one JSON document per line
"""
from __future__ import annotations

import abc
import asyncio
import logging
import os
import sys
from collections.abc import Callable

from .models import ResourceUsage, SpawnConfig

logger = logging.getLogger(__name__)

# Signature: on_output(stream_name, line)
OutputCallback = Callable[[str, str], None]


class ProcessHandle(abc.ABC):
    """A started worker process."""

    @property
    @abc.abstractmethod
    def pid(self) -> int:
        """OS process id (0 when not applicable)."""

    @abc.abstractmethod
    async def wait_ready(self, timeout: float) -> bool:
        """Wait for the readiness signal.

        Returns True once the worker signalled readiness, False if the
        timeout elapsed or the process exited first. Callers tell the
        two apart with is_alive().
        """

    @abc.abstractmethod
    def is_alive(self) -> bool:
        """True while the process has not exited."""

    @abc.abstractmethod
    async def wait(self) -> int:
        """Wait for exit and return the exit code."""

    @abc.abstractmethod
    def terminate(self) -> None:
        """Ask the process to exit (SIGTERM)."""

    @abc.abstractmethod
    def kill(self) -> None:
        """Force the process to exit (SIGKILL)."""

    @abc.abstractmethod
    async def write(self, line: str) -> None:
        """Write one line to stdin and wait for the drain."""

    @abc.abstractmethod
    async def resource_usage(self) -> ResourceUsage:
        """Best-effort CPU and memory sample. Zeros when unavailable."""


class ProcessBackend(abc.ABC):
    """Factory for process handles."""

    @abc.abstractmethod
    async def start(
        self,
        spawn_config: SpawnConfig,
        on_output: OutputCallback | None = None,
    ) -> ProcessHandle:
        """Start a worker. Raises OSError if it cannot be launched."""


async def sample_resource_usage(pid: int) -> ResourceUsage:
    """Sample %CPU and RSS for ``pid`` with ``ps``.

    Returns zeros on platforms without ``ps`` or when the pid is gone.
    """
    if pid <= 0 or sys.platform.startswith("win"):
        return ResourceUsage()
    try:
        proc = await asyncio.create_subprocess_exec(
            "ps", "-p", str(pid), "-o", "%cpu=,rss=",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
        out, _ = await proc.communicate()
    except OSError:
        return ResourceUsage()
    if proc.returncode != 0:
        return ResourceUsage()
    parts = out.decode(errors="replace").split()
    if len(parts) < 2:
        return ResourceUsage()
    try:
        cpu = float(parts[0])
        rss_kb = int(parts[1])
    except ValueError:
        return ResourceUsage()
    return ResourceUsage(cpu_percent=cpu, memory_bytes=rss_kb * 1024)


class SubprocessHandle(ProcessHandle):
    """ProcessHandle over an asyncio.subprocess.Process."""

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        on_output: OutputCallback | None = None,
    ) -> None:
        self._process = process
        self._on_output = on_output
        self._ready = asyncio.Event()
        self._exited = asyncio.Event()
        self._readers = [
            asyncio.create_task(self._pump("stdout", process.stdout)),
            asyncio.create_task(self._pump("stderr", process.stderr)),
        ]
        self._exit_watcher = asyncio.create_task(self._watch_exit())

    @property
    def pid(self) -> int:
        return self._process.pid or 0

    async def wait_ready(self, timeout: float) -> bool:
        ready = asyncio.create_task(self._ready.wait())
        exited = asyncio.create_task(self._exited.wait())
        try:
            await asyncio.wait(
                {ready, exited},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            ready.cancel()
            exited.cancel()
        return self._ready.is_set() and not self._exited.is_set()

    def is_alive(self) -> bool:
        return self._process.returncode is None

    async def wait(self) -> int:
        code = await self._process.wait()
        await asyncio.gather(*self._readers, return_exceptions=True)
        return code

    def terminate(self) -> None:
        if self.is_alive():
            try:
                self._process.terminate()
            except ProcessLookupError:
                pass

    def kill(self) -> None:
        if self.is_alive():
            try:
                self._process.kill()
            except ProcessLookupError:
                pass

    async def write(self, line: str) -> None:
        stdin = self._process.stdin
        if stdin is None or stdin.is_closing():
            raise BrokenPipeError("stdin is closed")
        stdin.write((line.rstrip("\n") + "\n").encode())
        await stdin.drain()

    async def resource_usage(self) -> ResourceUsage:
        if not self.is_alive():
            return ResourceUsage()
        return await sample_resource_usage(self.pid)

    async def _pump(
        self, stream_name: str, stream: asyncio.StreamReader | None,
    ) -> None:
        if stream is None:
            return
        while True:
            raw = await stream.readline()
            if not raw:
                return
            line = raw.decode(errors="replace").rstrip("\r\n")
            if stream_name == "stdout":
                self._ready.set()
            if self._on_output is not None:
                try:
                    self._on_output(stream_name, line)
                except Exception:
                    logger.exception("Output callback failed (pid=%d)", self.pid)

    async def _watch_exit(self) -> None:
        await self._process.wait()
        self._exited.set()


class SubprocessBackend(ProcessBackend):
    """Launches workers as local subprocesses."""

    async def start(
        self,
        spawn_config: SpawnConfig,
        on_output: OutputCallback | None = None,
    ) -> ProcessHandle:
        env = {**os.environ, **spawn_config.env}
        process = await asyncio.create_subprocess_exec(
            spawn_config.command,
            *spawn_config.args,
            cwd=spawn_config.cwd or None,
            env=env,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        logger.info(
            "Spawned %s (pid=%d, cwd=%s)",
            spawn_config.command, process.pid, spawn_config.cwd or ".",
        )
        return SubprocessHandle(process, on_output)
