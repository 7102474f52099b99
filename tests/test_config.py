from __future__ import annotations

import logging

import pytest

from workforce.engine.config import EngineConfig, fire_event


def test_engine_config_defaults() -> None:
    cfg = EngineConfig()
    assert cfg.max_restarts == 3
    assert cfg.max_task_retries == 3
    assert cfg.task_timeout_seconds == 3600.0
    assert cfg.watchdog_interval_seconds == 30.0
    assert cfg.release_idle_processes is False
    assert cfg.company_file is None


def test_engine_config_from_env_overrides(monkeypatch) -> None:
    monkeypatch.setenv("WORKFORCE_SPAWN_COMMAND", "python")
    monkeypatch.setenv("WORKFORCE_SPAWN_ARGS", "-m worker --verbose")
    monkeypatch.setenv("WORKFORCE_MAX_RESTARTS", "7")
    monkeypatch.setenv("WORKFORCE_BACKOFF_BASE", "0.5")
    monkeypatch.setenv("WORKFORCE_TASK_TIMEOUT", "0")
    monkeypatch.setenv("WORKFORCE_RELEASE_IDLE", "yes")
    monkeypatch.setenv("WORKFORCE_COMPANY_FILE", "/tmp/company.yaml")

    cfg = EngineConfig.from_env()

    assert cfg.spawn_command == "python"
    assert cfg.spawn_args == ["-m", "worker", "--verbose"]
    assert cfg.max_restarts == 7
    assert cfg.restart_backoff_base_seconds == 0.5
    assert cfg.task_timeout_seconds == 0.0
    assert cfg.release_idle_processes is True
    assert cfg.company_file == "/tmp/company.yaml"


def test_engine_config_from_env_without_overrides(monkeypatch) -> None:
    monkeypatch.delenv("WORKFORCE_MAX_RETRIES", raising=False)
    monkeypatch.delenv("WORKFORCE_COMPANY_FILE", raising=False)
    cfg = EngineConfig.from_env()
    assert cfg.max_task_retries == 3
    assert cfg.company_file is None


def test_restart_delay_doubles_and_caps() -> None:
    cfg = EngineConfig(restart_backoff_base_seconds=2.0, restart_backoff_max_seconds=10.0)
    assert cfg.restart_delay(0) == 2.0
    assert cfg.restart_delay(1) == 4.0
    assert cfg.restart_delay(2) == 8.0
    assert cfg.restart_delay(3) == 10.0


def test_default_spawn_config_copies_lists() -> None:
    cfg = EngineConfig(spawn_command="claude", spawn_args=["--print"])
    spawn = cfg.default_spawn_config()
    spawn.args.append("--extra")
    assert cfg.spawn_args == ["--print"]
    assert spawn.command == "claude"
    assert spawn.max_memory_bytes == cfg.max_memory_bytes


@pytest.mark.asyncio
async def test_fire_event_logs_and_swallows_callback_errors(caplog) -> None:
    async def _boom(event):
        raise RuntimeError("subscriber crashed")

    with caplog.at_level(logging.WARNING, logger="workforce.engine.config"):
        await fire_event(_boom, {"event": "task-completed"})

    assert "task-completed" in caplog.text


@pytest.mark.asyncio
async def test_fire_event_without_callback_is_noop() -> None:
    await fire_event(None, {"event": "x"})
