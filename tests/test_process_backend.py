"""SubprocessBackend against real Python child processes."""

from __future__ import annotations

import sys

import pytest

from conftest import settle
from workforce.engine.models import SpawnConfig
from workforce.engine.process_backend import SubprocessBackend, sample_resource_usage

_ECHO_WORKER = (
    "import sys\n"
    "print('ready', flush=True)\n"
    "for line in sys.stdin:\n"
    "    print('got ' + line.strip(), flush=True)\n"
)


@pytest.mark.asyncio
async def test_subprocess_handle_reads_and_writes_lines():
    lines: list[tuple[str, str]] = []
    backend = SubprocessBackend()

    handle = await backend.start(
        SpawnConfig(command=sys.executable, args=["-c", _ECHO_WORKER]),
        on_output=lambda stream, line: lines.append((stream, line)),
    )
    try:
        assert await handle.wait_ready(5.0) is True
        assert handle.is_alive()
        assert handle.pid > 0

        await handle.write('{"type": "ping"}')
        await settle(lambda: ("stdout", 'got {"type": "ping"}') in lines, timeout=5.0)
    finally:
        handle.terminate()
        await handle.wait()

    assert not handle.is_alive()
    assert lines[0] == ("stdout", "ready")


@pytest.mark.asyncio
async def test_process_exiting_before_output_is_not_ready():
    backend = SubprocessBackend()
    handle = await backend.start(
        SpawnConfig(command=sys.executable, args=["-c", "import sys; sys.exit(3)"]),
    )

    assert await handle.wait_ready(5.0) is False
    assert await handle.wait() == 3
    assert not handle.is_alive()


@pytest.mark.asyncio
async def test_spawn_env_reaches_child():
    lines: list[str] = []
    backend = SubprocessBackend()
    handle = await backend.start(
        SpawnConfig(
            command=sys.executable,
            args=["-c", "import os; print(os.environ['WORKFORCE_ROLE'])"],
            env={"WORKFORCE_ROLE": "employee"},
        ),
        on_output=lambda stream, line: lines.append(line),
    )
    assert await handle.wait() == 0
    assert lines == ["employee"]


@pytest.mark.asyncio
async def test_missing_command_raises_oserror():
    backend = SubprocessBackend()
    with pytest.raises(OSError):
        await backend.start(SpawnConfig(command="/nonexistent/workforce-worker"))


@pytest.mark.asyncio
async def test_resource_sample_for_unknown_pid_is_zero():
    usage = await sample_resource_usage(0)
    assert usage.cpu_percent == 0.0
    assert usage.memory_bytes == 0
